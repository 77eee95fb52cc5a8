"""Workbook persistence helpers (openpyxl-backed store)."""

from __future__ import annotations

import io
import os
import shutil
import threading
import zipfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from openpyxl import Workbook, load_workbook
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import InvalidFileException

from rssiwatch.util.time import utc_stamp

_LOCKS: Dict[str, threading.Lock] = {}
_LOCKS_GUARD = threading.Lock()


class StoreError(RuntimeError):
    """The workbook could not be read or written."""

    def __init__(self, message: str, *, path: Optional[Path] = None, row: Any = None) -> None:
        super().__init__(message)
        self.path = path
        self.row = row


class StoreReadError(StoreError):
    """The file exists but is not a workbook we can parse."""


class StoreWriteError(StoreError):
    """Serializing or replacing the workbook failed; ``row`` holds the unsaved measurement."""


def store_lock(path: Path) -> threading.Lock:
    """Process-wide lock guarding one workbook's load-reconcile-write sequence."""

    key = str(Path(path).expanduser().resolve())
    with _LOCKS_GUARD:
        lock = _LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _LOCKS[key] = lock
        return lock


def _atomic_write_bytes(path: Path, data: bytes, *, tmp_suffix: str = ".tmp") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + tmp_suffix)
    fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        with os.fdopen(fd, "wb", closefd=True) as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


class WorkbookStore:
    """One .xlsx file holding one or more named sheets."""

    def __init__(self, path: os.PathLike | str):
        self.path = Path(path).expanduser()

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Workbook:
        """Parse the workbook; raises StoreReadError when the bytes are not a workbook."""

        try:
            data = self.path.read_bytes()
        except OSError as exc:
            raise StoreError(f"Cannot open {self.path}: {exc}", path=self.path) from exc
        try:
            return load_workbook(io.BytesIO(data))
        # SyntaxError is the base of malformed-XML errors from ElementTree and lxml.
        except (
            InvalidFileException,
            zipfile.BadZipFile,
            SyntaxError,
            KeyError,
            ValueError,
            TypeError,
            EOFError,
        ) as exc:
            raise StoreReadError(f"{self.path} is not a readable workbook: {exc}", path=self.path) from exc

    @staticmethod
    def new_workbook() -> Workbook:
        return Workbook()

    @staticmethod
    def select_sheet(workbook: Workbook, keyword: str, *, skip_keywords: Sequence[str] = ()) -> Optional[str]:
        """First sheet whose name contains ``keyword`` (any case), else the first sheet.

        The fallback ignores sheets named after ``skip_keywords`` so one tool
        never adopts a sheet that clearly belongs to another.
        """

        names = list(workbook.sheetnames)
        lowered = keyword.lower()
        for name in names:
            if lowered in name.lower():
                return name
        skipped = [word.lower() for word in skip_keywords]
        for name in names:
            if not any(word in name.lower() for word in skipped):
                return name
        return None

    @staticmethod
    def read_rows(workbook: Workbook, sheet_name: str) -> List[List[Any]]:
        worksheet = workbook[sheet_name]
        return [list(row) for row in worksheet.iter_rows(values_only=True)]

    @staticmethod
    def replace_sheet(
        workbook: Workbook,
        sheet_name: str,
        grid: Sequence[Sequence[Any]],
        *,
        widths: Sequence[int] = (),
        fresh: bool = False,
    ) -> None:
        """Rewrite ``sheet_name`` in place (same position); other sheets are untouched."""

        if fresh:
            worksheet = workbook.active
            worksheet.title = sheet_name
        elif sheet_name in workbook.sheetnames:
            index = workbook.sheetnames.index(sheet_name)
            workbook.remove(workbook[sheet_name])
            worksheet = workbook.create_sheet(sheet_name, index)
        else:
            worksheet = workbook.create_sheet(sheet_name)

        for row in grid:
            worksheet.append([None if isinstance(value, str) and value == "" else value for value in row])
        for idx, width in enumerate(widths, start=1):
            worksheet.column_dimensions[get_column_letter(idx)].width = width

    def save(self, workbook: Workbook) -> None:
        buffer = io.BytesIO()
        workbook.save(buffer)
        _atomic_write_bytes(self.path, buffer.getvalue())

    def backup(self, label: str = "corrupt") -> Path:
        """Copy the current file aside before it gets overwritten."""

        target = self.path.with_name(f"{self.path.stem}.{label}-{utc_stamp()}{self.path.suffix}")
        counter = 1
        while target.exists():
            target = self.path.with_name(f"{self.path.stem}.{label}-{utc_stamp()}-{counter}{self.path.suffix}")
            counter += 1
        shutil.copy2(self.path, target)
        return target

