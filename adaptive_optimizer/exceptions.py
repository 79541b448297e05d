"""
Custom exceptions for the Adaptive Optimizer package.
"""


class OptimizerException(Exception):
    """Base exception for all optimizer-related errors."""
    pass


class ConfigurationError(OptimizerException):
    """Raised when there's an error in the configuration."""
    pass


class ValidationError(OptimizerException):
    """Raised when telemetry or utilization input fails validation."""
    pass


class AnalysisError(OptimizerException):
    """Raised when a recommendation or insight cannot be computed."""
    pass


class OperationCancelledError(OptimizerException):
    """Raised when a cancellation token fires during analysis."""
    pass


class ReportGenerationError(OptimizerException):
    """Raised when report generation fails."""
    pass
