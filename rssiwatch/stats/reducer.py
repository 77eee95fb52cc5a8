"""Per-gateway statistics for a closed collection window."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List

import numpy as np  # type: ignore

from rssiwatch.util.math import round_half_up
from rssiwatch.window.types import Sample


@dataclass(frozen=True)
class SourceStatistics:
    source_id: str
    sample_count: int
    mean: float
    min: float
    max: float


@dataclass(frozen=True)
class OverallSummary:
    samples: int
    min: float
    max: float


@dataclass(frozen=True)
class WindowStatistics:
    per_source: Dict[str, SourceStatistics]
    overall: OverallSummary

    def rounded_means(self, digits: int = 2) -> Dict[str, float]:
        """Means as persisted in the workbook (half-up, two decimals by default)."""
        return {source_id: round_half_up(stat.mean, digits) for source_id, stat in self.per_source.items()}


def _summarize(source_id: str, values: np.ndarray) -> SourceStatistics:
    lo = float(values[0])
    hi = float(values[-1])
    # Sorted input makes the summation order, and so the mean, arrival-independent.
    mean = float(np.mean(values))
    mean = min(max(mean, lo), hi)
    return SourceStatistics(source_id=source_id, sample_count=int(values.size), mean=mean, min=lo, max=hi)


def reduce_samples(samples: Iterable[Sample]) -> WindowStatistics:
    """Group samples by source and compute count/mean/min/max at full precision.

    Every sample weighs the same regardless of when it arrived in the window;
    no outlier rejection is applied.
    """

    grouped: Dict[str, List[float]] = defaultdict(list)
    for sample in samples:
        grouped[sample.source_id].append(float(sample.value))
    if not grouped:
        raise ValueError("cannot reduce an empty sample set")

    per_source: Dict[str, SourceStatistics] = {}
    all_values: List[np.ndarray] = []
    for source_id in sorted(grouped):
        values = np.sort(np.asarray(grouped[source_id], dtype=np.float64))
        per_source[source_id] = _summarize(source_id, values)
        all_values.append(values)

    combined = np.concatenate(all_values)
    overall = OverallSummary(
        samples=int(combined.size),
        min=float(np.min(combined)),
        max=float(np.max(combined)),
    )
    return WindowStatistics(per_source=per_source, overall=overall)
