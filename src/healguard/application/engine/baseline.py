# src/healguard/application/engine/baseline.py
"""
Pure statistics used by the aggregator and the detector.

Nothing here touches storage: callers pass plain sequences of floats, oldest first.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, asdict
from typing import Sequence, Optional, Dict, Any, List

SEASONAL_LAG = 7
SEASONAL_AUTOCORRELATION = 0.6


def percentile(values: Sequence[float], q: float) -> float:
    """Percentile by linear interpolation between closest ranks (q in [0, 100])."""
    if not values:
        raise ValueError("percentile of empty sequence")
    ordered = sorted(values)
    if len(ordered) == 1:
        return float(ordered[0])
    rank = (q / 100.0) * (len(ordered) - 1)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return float(ordered[int(rank)])
    fraction = rank - lower
    return float(ordered[lower] + (ordered[upper] - ordered[lower]) * fraction)


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def stddev(values: Sequence[float]) -> float:
    """Population standard deviation; 0.0 below two points."""
    if len(values) < 2:
        return 0.0
    mu = mean(values)
    return math.sqrt(sum((v - mu) ** 2 for v in values) / len(values))


def trend_slope(values: Sequence[float]) -> float:
    """Least-squares slope against the sample index."""
    n = len(values)
    if n < 2:
        return 0.0
    x_mean = (n - 1) / 2.0
    y_mean = mean(values)
    num = sum((i - x_mean) * (v - y_mean) for i, v in enumerate(values))
    den = sum((i - x_mean) ** 2 for i in range(n))
    return num / den if den else 0.0


def autocorrelation(values: Sequence[float], lag: int) -> float:
    n = len(values)
    if lag <= 0 or n <= lag:
        return 0.0
    mu = mean(values)
    den = sum((v - mu) ** 2 for v in values)
    if den == 0:
        return 0.0
    num = sum((values[i] - mu) * (values[i - lag] - mu) for i in range(lag, n))
    return num / den


def deviation_percentage(observed: float, baseline: Optional[float]) -> Optional[float]:
    """Relative distance from baseline in percent. None without a usable baseline."""
    if baseline is None or baseline == 0:
        return None
    return (observed - baseline) / abs(baseline) * 100.0


@dataclass(frozen=True)
class BaselineProfile:
    mean: float
    std_dev: float
    minimum: float
    maximum: float
    trend_slope: float
    seasonal: bool
    sample_count: int

    def z_score(self, value: float) -> Optional[float]:
        if self.std_dev == 0:
            return None
        return (value - self.mean) / self.std_dev

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_profile(values: Sequence[float]) -> Optional[BaselineProfile]:
    if not values:
        return None
    values = [float(v) for v in values]
    # Seasonality needs at least two full lag periods.
    seasonal = len(values) >= 2 * SEASONAL_LAG and autocorrelation(values, SEASONAL_LAG) > SEASONAL_AUTOCORRELATION
    return BaselineProfile(
        mean=mean(values),
        std_dev=stddev(values),
        minimum=min(values),
        maximum=max(values),
        trend_slope=trend_slope(values),
        seasonal=seasonal,
        sample_count=len(values),
    )


def series(rows: Sequence[Any], attr: str) -> List[float]:
    """Pulls one numeric attribute (or dict key) out of a sequence, skipping missing values."""
    out: List[float] = []
    for row in rows:
        value = row.get(attr) if isinstance(row, dict) else getattr(row, attr, None)
        if value is not None:
            out.append(float(value))
    return out
