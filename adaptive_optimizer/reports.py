"""
Report generation for recommendations, insights and model statistics.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

from .exceptions import ReportGenerationError
from .models import ModelStatistics, OptimizationRecommendation, SystemPerformanceInsights
from .utils import calculate_statistics, format_duration, format_timestamp, save_json_file, to_primitive

logger = logging.getLogger(__name__)

RECOMMENDATION_COLUMNS = [
    "request_type",
    "strategy",
    "confidence_score",
    "estimated_improvement_ms",
    "estimated_gain_percentage",
    "priority",
    "risk",
    "auto_apply_eligible",
    "reasoning",
]


BOTTLENECK_COLUMNS = [
    "component",
    "metric",
    "severity",
    "observed_value",
    "threshold",
    "sustained_seconds",
    "impact",
]


class ReportGenerator:
    """Generates summaries and exports from engine output."""

    def __init__(
        self,
        recommendations: Mapping[str, OptimizationRecommendation],
        insights: Optional[SystemPerformanceInsights] = None,
        statistics: Optional[ModelStatistics] = None,
    ):
        """
        Initialize report generator.

        Args:
            recommendations: Recommendation per request type
            insights: Optional system insight report
            statistics: Optional model statistics
        """
        self.recommendations = dict(recommendations)
        self.insights = insights
        self.statistics = statistics
        self.timestamp = format_timestamp()

    def recommendations_frame(self) -> pd.DataFrame:
        """One row per request type, highest expected gain first."""
        rows = []
        for rec in self.recommendations.values():
            row = {column: to_primitive(getattr(rec, column)) for column in RECOMMENDATION_COLUMNS}
            for key, value in rec.parameters.items():
                row[f"param_{key}"] = to_primitive(value)
            rows.append(row)
        if not rows:
            return pd.DataFrame(columns=RECOMMENDATION_COLUMNS)
        frame = pd.DataFrame(rows)
        return frame.sort_values(
            ["estimated_gain_percentage", "request_type"], ascending=[False, True]
        ).reset_index(drop=True)

    def get_summary(self) -> Dict[str, Any]:
        """
        Generate a summary report.

        Returns:
            Summary statistics dictionary
        """
        try:
            actionable = [r for r in self.recommendations.values() if r.should_optimize]
            by_strategy: Dict[str, int] = {}
            for rec in actionable:
                by_strategy[rec.strategy.value] = by_strategy.get(rec.strategy.value, 0) + 1

            summary = {
                "timestamp": self.timestamp,
                "request_types": len(self.recommendations),
                "actionable_recommendations": len(actionable),
                "auto_apply_eligible": sum(1 for r in actionable if r.auto_apply_eligible),
                "strategies": by_strategy,
                "total_estimated_improvement": format_duration(
                    sum(r.estimated_improvement_ms for r in actionable)
                ),
            }

            if self.insights is not None:
                health = self.insights.health_score
                summary.update({
                    "health_score": health.overall,
                    "health_status": health.status,
                    "performance_grade": health.grade,
                    "bottlenecks": len(self.insights.bottlenecks),
                    "opportunities": len(self.insights.opportunities),
                })

            if self.statistics is not None:
                summary.update({
                    "model_accuracy": self.statistics.accuracy_score,
                    "model_confidence": self.statistics.model_confidence,
                })

            return summary

        except Exception as e:
            logger.error(f"Error generating summary: {e}")
            raise ReportGenerationError(f"Failed to generate summary: {e}")

    def _recommendation_statistics(self) -> Dict[str, Dict[str, float]]:
        """Distribution of confidence and expected savings over actionable recommendations."""
        actionable = [r for r in self.recommendations.values() if r.should_optimize]
        return {
            "confidence_score": calculate_statistics([r.confidence_score for r in actionable]),
            "estimated_improvement_ms": calculate_statistics([r.estimated_improvement_ms for r in actionable]),
        }

    def get_detailed_report(self) -> Dict[str, Any]:
        try:
            return {
                "metadata": {"timestamp": self.timestamp},
                "summary": self.get_summary(),
                "recommendations": {
                    name: rec.to_dict() for name, rec in sorted(self.recommendations.items())
                },
                "recommendation_statistics": self._recommendation_statistics(),
                "insights": self.insights.to_dict() if self.insights is not None else None,
                "model_statistics": self.statistics.to_dict() if self.statistics is not None else None,
            }
        except ReportGenerationError:
            raise
        except Exception as e:
            logger.error(f"Error generating detailed report: {e}")
            raise ReportGenerationError(f"Failed to generate detailed report: {e}")

    def save_json(self, filepath: str):
        """Save the detailed report as JSON."""
        report = self.get_detailed_report()
        try:
            save_json_file(report, filepath)
        except OSError as e:
            raise ReportGenerationError(f"Failed to save JSON report: {e}")
        logger.info(f"JSON report saved to {filepath}")

    def save_csv(self, filepath: str):
        """Save recommendations as CSV, one row per request type."""
        try:
            frame = self.recommendations_frame()
            if frame.empty:
                logger.warning("No recommendations to save in CSV report")
                return
            Path(filepath).parent.mkdir(parents=True, exist_ok=True)
            frame.to_csv(filepath, index=False)
            logger.info(f"CSV report saved to {filepath}")
        except Exception as e:
            logger.error(f"Error saving CSV report: {e}")
            raise ReportGenerationError(f"Failed to save CSV report: {e}")

    def save(self, filepath: str):
        """Save in the format implied by the file suffix (.csv or .json)."""
        if Path(filepath).suffix.lower() == ".csv":
            self.save_csv(filepath)
        else:
            self.save_json(filepath)


def bottlenecks_frame(insights: SystemPerformanceInsights) -> pd.DataFrame:
    rows: List[Dict[str, Any]] = [
        {
            "component": b.component,
            "metric": b.metric,
            "severity": b.severity.value,
            "observed_value": b.observed_value,
            "threshold": b.threshold,
            "sustained_seconds": b.sustained_seconds,
            "impact": b.impact,
        }
        for b in insights.bottlenecks
    ]
    return pd.DataFrame(rows, columns=BOTTLENECK_COLUMNS)
