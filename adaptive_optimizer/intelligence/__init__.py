"""Intelligence module for the adaptive optimizer."""

from .scoring import RecommendationScorer
from .pattern_analysis import PatternAnalysisService
from .caching_analysis import CachingAnalysisService
from .resource_optimization import ResourceOptimizationService
from .learning import LearningFeedbackLoop

__all__ = [
    "RecommendationScorer",
    "PatternAnalysisService",
    "CachingAnalysisService",
    "ResourceOptimizationService",
    "LearningFeedbackLoop",
]
