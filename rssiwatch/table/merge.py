"""Merge one measurement row into the persisted workbook."""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Tuple

from openpyxl import Workbook

from rssiwatch.table.rows import MeasurementRow
from rssiwatch.table.schema import LAYOUTS, PersistedTable, TableLayout, empty_table, reconcile_header
from rssiwatch.table.store import StoreError, StoreReadError, StoreWriteError, WorkbookStore, store_lock
from rssiwatch.util.logging import get_logger

logger = get_logger(__name__)


@dataclass
class MergeOutcome:
    path: Path
    sheet_name: str
    row_count: int
    added_columns: Tuple[str, ...] = ()
    synthesized_header: bool = False
    upgraded_columns: Tuple[str, ...] = ()
    recovered_from_corrupt: bool = False
    backup_path: Optional[Path] = None


@dataclass
class _Loaded:
    workbook: Workbook
    table: PersistedTable
    fresh: bool
    recovered_from_corrupt: bool = False
    backup_path: Optional[Path] = None


class MergeEngine:
    """Load, reconcile, append, and fully rewrite one tool's sheet.

    Each call to :meth:`merge` holds the store lock for the whole
    load-reconcile-write sequence, so two merges against the same file never
    interleave.
    """

    def __init__(
        self,
        layout: TableLayout,
        path: Path | str,
        *,
        write_attempts: int = 3,
        retry_delay_s: float = 0.2,
        backup_corrupt: bool = True,
    ) -> None:
        self.layout = layout
        self.store = WorkbookStore(path)
        self.write_attempts = max(1, int(write_attempts))
        self.retry_delay_s = float(retry_delay_s)
        self.backup_corrupt = backup_corrupt

    @property
    def path(self) -> Path:
        return self.store.path

    # -----------------
    # Public interface
    # -----------------

    def load_table(self) -> PersistedTable:
        """Current table as it would be reconciled, without writing anything."""

        with store_lock(self.path):
            return self._load(backup=False).table

    def merge(self, row: MeasurementRow, observed_sources: Iterable[str] = ()) -> MergeOutcome:
        if row.layout.name != self.layout.name:
            raise ValueError(f"{row.layout.name} row cannot be merged into a {self.layout.name} table")

        try:
            with store_lock(self.path):
                loaded = self._load(backup=self.backup_corrupt)
                table = loaded.table

                added: Tuple[str, ...] = ()
                if self.layout.dynamic_sources:
                    observed = set(observed_sources) | set(row.sources)
                    table.schema, added = table.schema.with_sources(observed)

                table.rows.append(row.record(table.schema))

                try:
                    self.store.replace_sheet(
                        loaded.workbook,
                        table.sheet_name,
                        table.as_grid(),
                        widths=self.layout.widths(table.schema),
                        fresh=loaded.fresh,
                    )
                except ValueError as exc:
                    raise StoreWriteError(f"Row cannot be stored in a workbook: {exc}", path=self.path) from exc
                self._write(loaded.workbook, row)
        except StoreError as exc:
            if exc.row is None:
                exc.row = row
            raise

        outcome = MergeOutcome(
            path=self.path,
            sheet_name=table.sheet_name,
            row_count=len(table.rows),
            added_columns=added,
            synthesized_header=table.synthesized_header,
            upgraded_columns=table.upgraded_columns,
            recovered_from_corrupt=loaded.recovered_from_corrupt,
            backup_path=loaded.backup_path,
        )
        logger.info(
            "saved row %d to %s [%s]%s",
            outcome.row_count,
            self.path,
            outcome.sheet_name,
            f" (+{len(added)} columns)" if added else "",
            extra={"tool": self.layout.name, "store_path": str(self.path)},
        )
        return outcome

    # -----------------
    # Internal helpers
    # -----------------

    def _load(self, *, backup: bool) -> _Loaded:
        if not self.store.exists():
            return _Loaded(workbook=self.store.new_workbook(), table=empty_table(self.layout), fresh=True)

        try:
            workbook = self.store.load()
        except StoreReadError:
            backup_path = self._backup_corrupt() if backup else None
            logger.warning(
                "Existing store %s could not be parsed; starting a fresh table%s",
                self.path,
                f" (previous file kept as {backup_path})" if backup_path else "",
                extra={"tool": self.layout.name, "store_path": str(self.path), "error_type": "store_corrupt"},
            )
            return _Loaded(
                workbook=self.store.new_workbook(),
                table=empty_table(self.layout),
                fresh=True,
                recovered_from_corrupt=True,
                backup_path=backup_path,
            )

        claimed = tuple(layout.keyword for layout in LAYOUTS.values() if layout.name != self.layout.name)
        sheet_name = self.store.select_sheet(workbook, self.layout.keyword, skip_keywords=claimed)
        if sheet_name is None:
            return _Loaded(workbook=workbook, table=empty_table(self.layout), fresh=False)

        grid = self.store.read_rows(workbook, sheet_name)
        table = reconcile_header(self.layout, sheet_name, grid)
        if table.synthesized_header and table.rows:
            logger.warning(
                "Sheet '%s' in %s had no header row; synthesized one above %d existing rows",
                sheet_name,
                self.path,
                len(table.rows),
                extra={"tool": self.layout.name, "store_path": str(self.path)},
            )
        elif table.upgraded_columns:
            logger.info(
                "Adding missing columns %s to sheet '%s'",
                ", ".join(table.upgraded_columns),
                sheet_name,
                extra={"tool": self.layout.name, "store_path": str(self.path)},
            )
        return _Loaded(workbook=workbook, table=table, fresh=False)

    def _backup_corrupt(self) -> Optional[Path]:
        try:
            return self.store.backup()
        except OSError as exc:
            raise StoreError(
                f"Refusing to overwrite unreadable {self.path}: backup failed ({exc})",
                path=self.path,
            ) from exc

    def _write(self, workbook: Workbook, row: MeasurementRow) -> None:
        last_exc: Optional[Exception] = None
        for attempt in range(1, self.write_attempts + 1):
            try:
                self.store.save(workbook)
                return
            except (OSError, ValueError) as exc:
                last_exc = exc
                logger.warning(
                    "Write attempt %d/%d to %s failed: %s",
                    attempt,
                    self.write_attempts,
                    self.path,
                    exc,
                    extra={"tool": self.layout.name, "store_path": str(self.path), "error_type": "store_write"},
                )
                if attempt < self.write_attempts:
                    time.sleep(self.retry_delay_s * attempt)
        logger.error(
            "Measurement row not saved to %s: %s",
            self.path,
            last_exc,
            extra={"tool": self.layout.name, "store_path": str(self.path), "error_type": "store_write"},
        )
        raise StoreWriteError(
            f"Could not write {self.path} after {self.write_attempts} attempts: {last_exc}",
            path=self.path,
            row=row,
        ) from last_exc
