"""Operator input validation for collection contexts."""

from __future__ import annotations

import math
from typing import Optional

from rssiwatch.ingest.decoder import normalize_source_id
from rssiwatch.window.types import PointContext, SurveyContext


class ContextValidationError(ValueError):
    """Operator-supplied context fields failed validation; no window is opened."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


def _parse_finite(text: Optional[str], field: str, label: str) -> float:
    raw = (text or "").strip()
    try:
        value = float(raw)
    except ValueError:
        raise ContextValidationError(field, f"Invalid {label}: '{raw}' is not a number") from None
    if not math.isfinite(value):
        raise ContextValidationError(field, f"Invalid {label}: must be a finite number")
    return value


def _require_text(text: Optional[str], field: str, label: str) -> str:
    value = (text or "").strip()
    if not value:
        raise ContextValidationError(field, f"{label} is required")
    return value


def parse_point_context(source_text: Optional[str], distance_text: Optional[str], notes: str = "") -> PointContext:
    """Build a calibration context from raw prompt answers."""

    source = _require_text(source_text, "source_filter", "Gateway MAC")
    distance = _parse_finite(distance_text, "distance_m", "distance")
    if distance <= 0:
        raise ContextValidationError("distance_m", "Invalid distance. Must be a positive number")
    return PointContext(source_filter=normalize_source_id(source), distance_m=distance, notes=notes.strip())


def parse_survey_context(
    location_text: Optional[str],
    x_text: Optional[str],
    y_text: Optional[str],
    z_text: Optional[str] = "",
) -> SurveyContext:
    """Build a fingerprint context; a blank Z means floor level (0)."""

    location = _require_text(location_text, "location_id", "Location ID")
    x = _parse_finite(x_text, "x", "X coordinate")
    y = _parse_finite(y_text, "y", "Y coordinate")
    z = _parse_finite(z_text, "z", "Z coordinate") if (z_text or "").strip() else 0.0
    return SurveyContext(location_id=location, x=x, y=y, z=z)
