"""Structured cycle event logging (JSON lines next to the workbook)."""

from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Optional

from rssiwatch.util.time import utc_now_str

EVENT_LOG_NAME = "rssiwatch-events.log"


class EventLog:
    def __init__(self, log_path: Path, tool: str):
        self.log_path = log_path
        self.tool = tool
        self._ensure_parent(self.log_path)
        self.run_id = f"run-{int(time.time() * 1000)}-pid{os.getpid()}"
        self.current_cycle: Optional[int] = None

    @staticmethod
    def _ensure_parent(path: Path) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            pass

    @classmethod
    def beside_store(cls, store_path: str, tool: str) -> "EventLog":
        expanded = Path(store_path).expanduser()
        if not expanded.is_absolute():
            expanded = (Path.cwd() / expanded).absolute()
        return cls(expanded.parent / EVENT_LOG_NAME, tool)

    def start_cycle(self, cycle_id: int, **metadata: Any) -> None:
        self.current_cycle = cycle_id
        self.log("cycle_start", **metadata)

    def log(self, event: str, **fields: Any) -> None:
        record = {
            "ts": utc_now_str(),
            "run_id": self.run_id,
            "tool": self.tool,
            "cycle_id": self.current_cycle,
            "event": event,
            **fields,
        }
        try:
            with self.log_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(record, default=str) + "\n")
        except OSError:
            pass
