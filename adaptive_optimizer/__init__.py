"""
Adaptive Optimizer

Observes per-request execution telemetry and produces confidence-scored
optimization recommendations and system health insights.
"""

__version__ = "1.0.0"
__author__ = "Adaptive Optimizer Contributors"

# Import main components
from .config import OptimizerConfig, RequestTypeOptions
from .engine import OptimizationEngine
from .cancellation import CancellationToken
from .models import (
    AccessPattern,
    ExecutionSample,
    ModelStatistics,
    OptimizationPriority,
    OptimizationRecommendation,
    OptimizationStrategy,
    ResourceOptimizationResult,
    RiskLevel,
    SystemLoadMetrics,
    SystemPerformanceInsights,
)
from .exceptions import (
    OptimizerException,
    ConfigurationError,
    ValidationError,
    AnalysisError,
    OperationCancelledError,
    ReportGenerationError,
)

__all__ = [
    # Version info
    "__version__",
    "__author__",
    # Main classes
    "OptimizerConfig",
    "RequestTypeOptions",
    "OptimizationEngine",
    "CancellationToken",
    # Models
    "AccessPattern",
    "ExecutionSample",
    "ModelStatistics",
    "OptimizationPriority",
    "OptimizationRecommendation",
    "OptimizationStrategy",
    "ResourceOptimizationResult",
    "RiskLevel",
    "SystemLoadMetrics",
    "SystemPerformanceInsights",
    # Exceptions
    "OptimizerException",
    "ConfigurationError",
    "ValidationError",
    "AnalysisError",
    "OperationCancelledError",
    "ReportGenerationError",
]
