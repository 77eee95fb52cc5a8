"""Workbook layouts, column schema, and header reconciliation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from openpyxl.utils import get_column_letter


@dataclass(frozen=True)
class TableLayout:
    """Fixed shape of one tool's sheet."""

    name: str
    sheet_name: str
    keyword: str
    base_columns: Tuple[str, ...]
    dynamic_sources: bool
    default_filename: str
    base_widths: Tuple[int, ...] = ()
    source_width: int = 18

    @property
    def anchor(self) -> str:
        """Column whose presence in the first row marks that row as a header."""
        return self.base_columns[0]

    def widths(self, schema: "TableSchema") -> List[int]:
        base = list(self.base_widths) + [self.source_width] * (len(self.base_columns) - len(self.base_widths))
        return base[: len(schema.base)] + [self.source_width] * len(schema.sources)


CALIBRATION_LAYOUT = TableLayout(
    name="calibration",
    sheet_name="Calibration Data",
    keyword="calibration",
    base_columns=("Gateway MAC", "Distance (m)", "RSSI (dBm)", "Notes", "Timestamp"),
    dynamic_sources=False,
    default_filename="gateway-calibration-data.xlsx",
    base_widths=(18, 12, 12, 40, 25),
)

FINGERPRINT_LAYOUT = TableLayout(
    name="fingerprint",
    sheet_name="Fingerprint Data",
    keyword="fingerprint",
    base_columns=(
        "Location ID",
        "X (m)",
        "Y (m)",
        "Z (m)",
        "Min RSSI (dBm)",
        "Max RSSI (dBm)",
        "Total Samples",
    ),
    dynamic_sources=True,
    default_filename="fingerprint-collection-data.xlsx",
    base_widths=(15, 10, 10, 10, 15, 15, 12),
)

LAYOUTS: Dict[str, TableLayout] = {
    CALIBRATION_LAYOUT.name: CALIBRATION_LAYOUT,
    FINGERPRINT_LAYOUT.name: FINGERPRINT_LAYOUT,
}


@dataclass(frozen=True)
class TableSchema:
    """Fixed context columns followed by discovered source columns.

    Columns are only ever added. Source columns stay lexicographically
    sorted as long as the header they came from was sorted; a hand-edited,
    unsorted header keeps its order and new sources are appended after it.
    """

    base: Tuple[str, ...]
    sources: Tuple[str, ...] = ()

    @property
    def columns(self) -> Tuple[str, ...]:
        return self.base + self.sources

    def with_sources(self, observed: Iterable[str]) -> Tuple["TableSchema", Tuple[str, ...]]:
        """Return the schema extended with ``observed`` ids plus the ids that were new."""

        existing = list(self.sources)
        known = set(existing) | set(self.base)
        added = tuple(sorted({source for source in observed if source and source not in known}))
        if not added:
            return self, ()
        if existing == sorted(existing):
            merged = tuple(sorted(existing + list(added)))
        else:
            merged = tuple(existing) + added
        return TableSchema(base=self.base, sources=merged), added

    def row_values(self, record: Dict[str, Any]) -> List[Any]:
        return [record.get(column, "") for column in self.columns]


@dataclass
class PersistedTable:
    sheet_name: str
    schema: TableSchema
    rows: List[Dict[str, Any]] = field(default_factory=list)
    synthesized_header: bool = False
    upgraded_columns: Tuple[str, ...] = ()

    def as_grid(self) -> List[List[Any]]:
        """Header plus every row, in column order, ready to be written."""
        return [list(self.schema.columns)] + [self.schema.row_values(row) for row in self.rows]


def empty_table(layout: TableLayout, sheet_name: Optional[str] = None) -> PersistedTable:
    return PersistedTable(sheet_name=sheet_name or layout.sheet_name, schema=TableSchema(base=layout.base_columns))


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _clean(value: Any) -> Any:
    return "" if value is None else value


def _trim_trailing_blank(cells: Sequence[Any]) -> List[Any]:
    cells = list(cells)
    while cells and _is_blank(cells[-1]):
        cells.pop()
    return cells


def _column_names(header: Sequence[Any], width: int) -> List[str]:
    """Header labels for ``width`` columns; blank or repeated labels get positional names."""

    names: List[str] = []
    seen = set()
    for idx in range(width):
        raw = header[idx] if idx < len(header) else None
        name = "" if _is_blank(raw) else str(raw).strip()
        if not name or name in seen:
            name = f"Column {get_column_letter(idx + 1)}"
        seen.add(name)
        names.append(name)
    return names


def reconcile_header(layout: TableLayout, sheet_name: str, grid: Sequence[Sequence[Any]]) -> PersistedTable:
    """Turn raw sheet cells into a PersistedTable with the layout's fixed columns.

    A first row containing the layout's anchor column is taken as the header;
    fixed columns it lacks are added (older files predate some of them) and
    its other columns become source columns. Without such a row a header is
    synthesized and every existing row is kept as data, mapped positionally.
    """

    rows = [list(row) for row in grid]
    while rows and all(_is_blank(cell) for cell in rows[-1]):
        rows.pop()
    if not rows:
        return empty_table(layout, sheet_name)

    width = max(len(_trim_trailing_blank(row)) for row in rows)
    first = [str(cell).strip() if not _is_blank(cell) else "" for cell in rows[0]]

    if layout.anchor in first:
        header = _trim_trailing_blank(rows[0])
        names = _column_names(header, max(width, len(header)))
        data_rows = rows[1:]
        synthesized = False
    else:
        positional = list(layout.base_columns) + [None] * max(0, width - len(layout.base_columns))
        names = _column_names(positional, max(width, len(layout.base_columns)))
        data_rows = rows
        synthesized = True

    base = layout.base_columns
    upgraded = tuple(column for column in base if column not in names)
    sources = tuple(name for name in names if name not in base)
    records: List[Dict[str, Any]] = []
    for row in data_rows:
        record = {name: _clean(row[idx]) if idx < len(row) else "" for idx, name in enumerate(names)}
        records.append(record)
    return PersistedTable(
        sheet_name=sheet_name,
        schema=TableSchema(base=base, sources=sources),
        rows=records,
        synthesized_header=synthesized,
        upgraded_columns=() if synthesized else upgraded,
    )
