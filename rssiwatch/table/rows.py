"""Measurement rows: one completed window laid out for a layout's fixed columns."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from rssiwatch.stats.reducer import WindowStatistics
from rssiwatch.table.schema import CALIBRATION_LAYOUT, FINGERPRINT_LAYOUT, TableLayout, TableSchema
from rssiwatch.util.math import round_half_up
from rssiwatch.util.time import utc_iso_ms
from rssiwatch.window.types import CollectionContext, PointContext, SurveyContext


@dataclass(frozen=True)
class MeasurementRow:
    """Values for the fixed columns plus a rounded mean per observed source."""

    layout: TableLayout
    base: Dict[str, Any]
    sources: Dict[str, float] = field(default_factory=dict)

    def record(self, schema: TableSchema) -> Dict[str, Any]:
        """Row keyed by column name; columns this window did not observe stay empty."""
        values: Dict[str, Any] = {column: "" for column in schema.columns}
        values.update({column: value for column, value in self.base.items() if column in values})
        for column in schema.sources:
            if column in self.sources:
                values[column] = self.sources[column]
        return values


def build_measurement_row(
    context: CollectionContext,
    stats: WindowStatistics,
    *,
    timestamp: Optional[str] = None,
) -> MeasurementRow:
    if isinstance(context, PointContext):
        return _calibration_row(context, stats, timestamp or utc_iso_ms())
    if isinstance(context, SurveyContext):
        return _fingerprint_row(context, stats)
    raise TypeError(f"unsupported context {type(context).__name__}")


def _calibration_row(context: PointContext, stats: WindowStatistics, timestamp: str) -> MeasurementRow:
    source = stats.per_source.get(context.source_filter)
    if source is None:
        raise ValueError(f"no statistics for gateway {context.source_filter}")
    columns = CALIBRATION_LAYOUT.base_columns
    base = dict(
        zip(
            columns,
            (
                context.source_filter,
                context.distance_m,
                round_half_up(source.mean),
                context.notes,
                timestamp,
            ),
        )
    )
    return MeasurementRow(layout=CALIBRATION_LAYOUT, base=base)


def _fingerprint_row(context: SurveyContext, stats: WindowStatistics) -> MeasurementRow:
    columns = FINGERPRINT_LAYOUT.base_columns
    base = dict(
        zip(
            columns,
            (
                context.location_id,
                context.x,
                context.y,
                context.z,
                round_half_up(stats.overall.min),
                round_half_up(stats.overall.max),
                stats.overall.samples,
            ),
        )
    )
    return MeasurementRow(layout=FINGERPRINT_LAYOUT, base=base, sources=stats.rounded_means())
