"""Numeric primitives for anomaly detection on event counters."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from numbers import Real
from typing import Iterable, List, Optional


@dataclass(frozen=True)
class Outlier:
    value: float
    index: int
    z: float


@dataclass(frozen=True)
class OutlierReport:
    outliers: List[Outlier] = field(default_factory=list)
    mean: float = 0.0
    std_dev: float = 0.0


@dataclass(frozen=True)
class AnomalyReport:
    anomalous: bool
    mean: float = 0.0
    std_dev: float = 0.0
    last: Optional[float] = None
    z: Optional[float] = None


class StatisticalAnalyzer:
    """Stateless helpers; every method accepts any iterable of numbers."""

    @staticmethod
    def sanitize(values: Iterable[object] | None) -> List[float]:
        """Drop anything that is not a finite real number."""

        cleaned: List[float] = []
        for value in values or ():
            if isinstance(value, bool) or not isinstance(value, Real):
                continue
            number = float(value)
            if math.isfinite(number):
                cleaned.append(number)
        return cleaned

    @classmethod
    def mean(cls, values: Iterable[object] | None) -> float:
        nums = cls.sanitize(values)
        if not nums:
            return 0.0
        return sum(nums) / len(nums)

    @classmethod
    def variance(cls, values: Iterable[object] | None) -> float:
        """Sample variance (n - 1 divisor); 0 for fewer than two points."""

        nums = cls.sanitize(values)
        if len(nums) <= 1:
            return 0.0
        m = sum(nums) / len(nums)
        return sum((v - m) ** 2 for v in nums) / (len(nums) - 1)

    @classmethod
    def std_dev(cls, values: Iterable[object] | None) -> float:
        return math.sqrt(cls.variance(values))

    @classmethod
    def detect_outliers(cls, values: Iterable[object] | None, threshold: float = 3.0) -> OutlierReport:
        """Return the elements whose absolute z-score reaches ``threshold``."""

        nums = cls.sanitize(values)
        if not nums:
            return OutlierReport()
        mean = cls.mean(nums)
        std = cls.std_dev(nums)
        if std == 0:
            return OutlierReport(mean=mean, std_dev=std)
        outliers = []
        for index, value in enumerate(nums):
            z = abs((value - mean) / std)
            if z >= threshold:
                outliers.append(Outlier(value=value, index=index, z=z))
        return OutlierReport(outliers=outliers, mean=mean, std_dev=std)

    @classmethod
    def is_last_point_anomalous(cls, values: Iterable[object] | None, k: float = 3.0) -> AnomalyReport:
        """Flag the newest point when it breaks from the preceding baseline.

        All but the last value form the baseline. At least three points are
        required and a flat baseline never flags.
        """
        nums = cls.sanitize(values)
        if len(nums) < 3:
            return AnomalyReport(anomalous=False, mean=cls.mean(nums), std_dev=cls.std_dev(nums))
        baseline, last = nums[:-1], nums[-1]
        mean = cls.mean(baseline)
        std = cls.std_dev(baseline)
        if std == 0:
            return AnomalyReport(anomalous=False, mean=mean, std_dev=std, last=last)
        z = abs((last - mean) / std)
        return AnomalyReport(anomalous=z >= k, mean=mean, std_dev=std, last=last, z=z)
