"""Dataclasses shared across the ingest, window, stats, and table layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple, Union


@dataclass(frozen=True)
class PointContext:
    """Single-gateway calibration: one filtered source at a known distance."""

    source_filter: str
    distance_m: float
    notes: str = ""


@dataclass(frozen=True)
class SurveyContext:
    """Fingerprint survey: every gateway heard at one location."""

    location_id: str
    x: float
    y: float
    z: float = 0.0


CollectionContext = Union[PointContext, SurveyContext]


@dataclass(frozen=True)
class Detection:
    entry_id: Optional[str]
    rssi: Optional[float]


@dataclass(frozen=True)
class DecodedMessage:
    source_id: str
    detections: Tuple[Detection, ...]


@dataclass(frozen=True)
class Sample:
    source_id: str
    value: float
    observed_at: float


@dataclass(frozen=True)
class WindowResult:
    """Frozen content of one collection window once it has closed."""

    context: CollectionContext
    samples: Tuple[Sample, ...]
    observed_sources: FrozenSet[str]
    started_at: float
    closed_at: float
    rejected_payloads: int = 0
    aborted: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.samples

    @property
    def sample_count(self) -> int:
        return len(self.samples)


@dataclass
class WindowProgress:
    state: str
    elapsed_s: float
    duration_s: float
    sample_count: int
    source_count: int
    sources: FrozenSet[str] = field(default_factory=frozenset)
