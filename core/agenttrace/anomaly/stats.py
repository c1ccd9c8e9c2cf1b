"""Summary statistics for outlier detection."""

from __future__ import annotations

import statistics
from dataclasses import dataclass


@dataclass(frozen=True)
class MetricStatistics:
    """Mean and population standard deviation of a sample."""

    count: int
    mean: float
    stddev: float

    @classmethod
    def from_values(cls, values: list[float]) -> MetricStatistics:
        if not values:
            return cls(count=0, mean=0.0, stddev=0.0)
        return cls(
            count=len(values),
            mean=statistics.fmean(values),
            stddev=statistics.pstdev(values),
        )

    def threshold(self, sigma: float) -> float:
        """Value above which a sample is ``sigma`` deviations out."""
        return self.mean + sigma * self.stddev

    def z_score(self, value: float) -> float:
        if self.stddev == 0:
            return 0.0 if value == self.mean else float("inf")
        return (value - self.mean) / self.stddev

    def multiple(self, value: float) -> float:
        """How many times the mean a value is."""
        if self.mean == 0:
            return 0.0 if value == 0 else float("inf")
        return value / self.mean

    def is_outlier(self, value: float, sigma: float) -> bool:
        """True when ``value`` is more than ``sigma`` deviations above the mean.

        Always False for a sample without spread.
        """
        return self.count > 0 and self.stddev > 0 and value > self.threshold(sigma)
