"""
Utility functions for the Adaptive Optimizer.
"""

import json
import math
import os
import logging
from dataclasses import fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


def calculate_statistics(values: Sequence[float]) -> Dict[str, float]:
    """
    Calculate statistical metrics for a list of values.

    Args:
        values: List of numeric values

    Returns:
        dict: Statistical metrics
    """
    if len(values) == 0:
        return {
            "count": 0,
            "min": 0.0,
            "max": 0.0,
            "mean": 0.0,
            "median": 0.0,
            "stddev": 0.0,
            "p95": 0.0,
            "p99": 0.0,
        }

    arr = np.asarray(values, dtype=float)

    return {
        "count": int(arr.size),
        "min": float(arr.min()),
        "max": float(arr.max()),
        "mean": float(arr.mean()),
        "median": float(np.median(arr)),
        "stddev": float(arr.std(ddof=1)) if arr.size > 1 else 0.0,
        "p95": float(np.percentile(arr, 95)),
        "p99": float(np.percentile(arr, 99)),
    }


def coefficient_of_variation(values: Sequence[float]) -> float:
    """Sample standard deviation over mean; 0 when undefined."""
    if len(values) < 2:
        return 0.0
    arr = np.asarray(values, dtype=float)
    mean = float(arr.mean())
    if mean <= 0:
        return 0.0
    return float(arr.std(ddof=1)) / mean


def welford_update(count: int, mean: float, m2: float, value: float) -> Tuple[int, float, float]:
    """
    Fold one observation into a running mean / sum of squared deviations.

    Args:
        count: Observations folded so far
        mean: Current running mean
        m2: Current sum of squared deviations from the mean
        value: New observation

    Returns:
        tuple: Updated (count, mean, m2)
    """
    count += 1
    delta = value - mean
    mean += delta / count
    m2 += delta * (value - mean)
    return count, mean, m2


def exponential_moving_average(previous: float, value: float, alpha: float) -> float:
    return previous + alpha * (value - previous)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def safe_divide(numerator: float, denominator: float, default: float = 0) -> float:
    """
    Safely divide two numbers.

    Args:
        numerator: The numerator
        denominator: The denominator
        default: Default value if division by zero

    Returns:
        float: Division result or default
    """
    if denominator == 0:
        return default
    return numerator / denominator


def format_duration(milliseconds: float) -> str:
    """
    Format duration in milliseconds to human-readable string.

    Args:
        milliseconds: Duration in milliseconds

    Returns:
        str: Formatted duration
    """
    if milliseconds < 1000:
        return f"{milliseconds:.2f}ms"
    elif milliseconds < 60000:
        return f"{milliseconds/1000:.2f}s"
    else:
        minutes = int(milliseconds / 60000)
        seconds = (milliseconds % 60000) / 1000
        return f"{minutes}m {seconds:.2f}s"


def format_timestamp(timestamp: Optional[datetime] = None) -> str:
    if timestamp is None:
        timestamp = datetime.now()
    return timestamp.isoformat()


def to_primitive(value: Any) -> Any:
    """
    Convert models into JSON-friendly structures.

    Enums become their values, datetimes ISO strings, dataclasses and
    mappings plain dicts, tuples lists.
    """
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_primitive(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Mapping):
        return {str(to_primitive(k)): to_primitive(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_primitive(v) for v in value]
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating,)):
        result = float(value)
        return result if math.isfinite(result) else None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def load_json_file(filepath: str) -> Dict[str, Any]:
    """
    Load JSON file safely.

    Args:
        filepath: Path to JSON file

    Returns:
        dict: Parsed JSON content
    """
    try:
        with open(filepath, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"File not found: {filepath}")
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {filepath}: {e}")


def save_json_file(data: Any, filepath: str, pretty: bool = True):
    """
    Save data to JSON file.

    Args:
        data: Data to save
        filepath: Output file path
        pretty: Whether to format JSON
    """
    directory = os.path.dirname(filepath)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(filepath, "w") as f:
        if pretty:
            json.dump(data, f, indent=2, default=str)
        else:
            json.dump(data, f, default=str)


def normalize_resource_name(name: str) -> str:
    """Lower-case a resource name and strip separators: ``dbConnections`` -> ``dbconnections``."""
    return "".join(ch for ch in name.lower() if ch.isalnum())
