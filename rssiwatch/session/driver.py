"""Interactive session loop: prompt, record one window, reduce, merge."""

from __future__ import annotations

import enum
import sys
from typing import Callable, List, Optional, TextIO

from rssiwatch.stats.reducer import WindowStatistics, reduce_samples
from rssiwatch.table.merge import MergeEngine, MergeOutcome
from rssiwatch.table.rows import MeasurementRow, build_measurement_row
from rssiwatch.table.schema import TableLayout
from rssiwatch.table.store import StoreError
from rssiwatch.util.event_log import EventLog
from rssiwatch.util.exit_codes import ExitCode
from rssiwatch.util.logging import cycle_logger, get_logger
from rssiwatch.window.context import ContextValidationError, parse_point_context, parse_survey_context
from rssiwatch.window.controller import WindowController
from rssiwatch.window.types import CollectionContext, PointContext, SurveyContext, WindowResult

logger = get_logger(__name__)

Prompt = Callable[[str], str]


class CycleOutcome(str, enum.Enum):
    RECORDED = "recorded"
    SKIPPED_INVALID = "skipped_invalid"
    NO_DATA = "no_data"
    WRITE_FAILED = "write_failed"
    ABORTED = "aborted"


def prompt_point_context(prompt: Prompt) -> PointContext:
    gateway = prompt("Enter Gateway MAC address: ")
    if not gateway.strip():
        raise ContextValidationError("source_filter", "Gateway MAC is required")
    distance = prompt("Enter distance from gateway (meters): ")
    return parse_point_context(gateway, distance)


def prompt_survey_context(prompt: Prompt) -> SurveyContext:
    location = prompt("Enter Location ID (e.g., point-2-3): ")
    if not location.strip():
        raise ContextValidationError("location_id", "Location ID is required")
    x = prompt("Enter X coordinate (meters): ")
    y = prompt("Enter Y coordinate (meters): ")
    z = prompt("Enter Z coordinate (meters, optional, press Enter for 0): ")
    return parse_survey_context(location, x, y, z)


class SessionDriver:
    """Bind operator prompts to the window controller and the merge engine."""

    def __init__(
        self,
        layout: TableLayout,
        controller: WindowController,
        engine: MergeEngine,
        *,
        prompt: Prompt = input,
        out: TextIO = sys.stdout,
        progress_interval_s: float = 1.0,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self.layout = layout
        self.controller = controller
        self.engine = engine
        self.prompt = prompt
        self.out = out
        self.progress_interval_s = max(0.05, float(progress_interval_s))
        self.event_log = event_log
        self.cycle_seq = 0
        self.unsaved: List[MeasurementRow] = []
        self.log = cycle_logger(logger, tool=layout.name)

    # -----------------
    # Public interface
    # -----------------

    def run(self) -> int:
        noun = "location" if self.layout.dynamic_sources else "measurement"
        self._print(f"\nReady to record {self.layout.name} data.\n")
        try:
            while True:
                answer = self.prompt(f"Record another {noun}? (y/n): ")
                if answer.strip().lower() != "y":
                    break
                self.run_cycle()
        except (KeyboardInterrupt, EOFError):
            self.controller.abort()
            self._print("\nSession interrupted.")
            if self.unsaved:
                self._print(f"⚠ {len(self.unsaved)} measurement(s) were not saved; see the log for their values.")
            return ExitCode.INTERRUPTED

        self._print(f"\n✓ {self.layout.name.capitalize()} session complete!")
        self._print(f"Data saved to: {self.engine.path}\n")
        if self.unsaved:
            self._print(f"⚠ {len(self.unsaved)} measurement(s) could not be saved; see the log for their values.")
            return ExitCode.STORE_ERROR
        return ExitCode.SUCCESS

    def run_cycle(self) -> CycleOutcome:
        self.cycle_seq += 1
        self.log = cycle_logger(logger, tool=self.layout.name, cycle_id=self.cycle_seq)
        if self.event_log:
            self.event_log.start_cycle(self.cycle_seq)
        self._print(f"\n=== {self.layout.sheet_name} Recording ===\n")

        try:
            context = self._read_context()
        except ContextValidationError as exc:
            self._print(f"{exc}. Skipping...\n")
            self.log.info("cycle skipped: %s", exc)
            self._event("cycle_skipped", field=exc.field, reason=str(exc))
            return CycleOutcome.SKIPPED_INVALID

        result = self._record(context)
        if result is None or result.aborted:
            self._event("window_aborted")
            return CycleOutcome.ABORTED
        self._event(
            "window_closed",
            samples=result.sample_count,
            sources=sorted(result.observed_sources),
            rejected_payloads=result.rejected_payloads,
        )
        if result.is_empty:
            self.log.warning("window closed without samples (%d payloads discarded)", result.rejected_payloads)
            self._report_no_data(context)
            return CycleOutcome.NO_DATA

        stats = reduce_samples(result.samples)
        self._report_stats(result, stats)
        row = build_measurement_row(context, stats)
        return self._persist(row, result)

    # -----------------
    # Internal helpers
    # -----------------

    def _read_context(self) -> CollectionContext:
        if self.layout.dynamic_sources:
            return prompt_survey_context(self.prompt)
        return prompt_point_context(self.prompt)

    def _record(self, context: CollectionContext) -> Optional[WindowResult]:
        duration = self.controller.duration_s
        if isinstance(context, PointContext):
            self._print(
                f"\nRecording RSSI for gateway {context.source_filter} at {context.distance_m:g}m distance..."
            )
        else:
            self._print(
                f"\nRecording RSSI from all gateways at location {context.location_id} "
                f"({context.x:g}, {context.y:g}, {context.z:g})..."
            )
        self._print(f"Recording for {duration:g}s. Please keep the device in place.\n")

        self.controller.arm(context)
        self._event("window_armed", duration_s=duration)
        try:
            while True:
                result = self.controller.wait(self.progress_interval_s)
                if result is not None:
                    break
                self._report_progress()
        except KeyboardInterrupt:
            self.controller.abort()
            self._print("\n\nRecording aborted; samples discarded.\n")
            return None
        self._print("\n")
        return result

    def _report_progress(self) -> None:
        progress = self.controller.progress()
        if progress.state != "armed":
            return
        line = (
            f"\rRecording... {int(progress.elapsed_s)}s / {progress.duration_s:g}s "
            f"({progress.sample_count} samples"
        )
        if self.layout.dynamic_sources:
            line += f", {progress.source_count} gateways"
        self.out.write(line + ")")
        self.out.flush()

    def _report_no_data(self, context: CollectionContext) -> None:
        self._print("⚠ No RSSI readings received during recording period.")
        self._print("Please check:")
        self._print("  1. MQTT broker is running")
        self._print("  2. Device is publishing RSSI data")
        if isinstance(context, PointContext):
            self._print("  3. Gateway MAC address matches\n")
        else:
            self._print("  3. Gateways are active\n")

    def _report_stats(self, result: WindowResult, stats: WindowStatistics) -> None:
        self._print("✓ Recording complete!")
        if self.layout.dynamic_sources:
            overall = stats.overall
            self._print(f"   Gateways detected: {len(result.observed_sources)}")
            self._print(f"   Total samples: {overall.samples}")
            self._print(f"   Overall RSSI range: {overall.min:.2f} to {overall.max:.2f} dBm")
            for source_id, stat in stats.per_source.items():
                self._print(
                    f"   {source_id}: {stat.sample_count} samples, avg: {stat.mean:.2f} dBm "
                    f"({stat.min:.2f} to {stat.max:.2f})"
                )
            self._print("")
            return
        for stat in stats.per_source.values():
            self._print(f"   Samples collected: {stat.sample_count}")
            self._print(f"   Average RSSI: {stat.mean:.2f} dBm")
            self._print(f"   Min RSSI: {stat.min:.2f} dBm")
            self._print(f"   Max RSSI: {stat.max:.2f} dBm\n")

    def _persist(self, row: MeasurementRow, result: WindowResult) -> CycleOutcome:
        while True:
            try:
                outcome = self.engine.merge(row, result.observed_sources)
            except StoreError as exc:
                self._print(f"✗ Failed to save measurement: {exc}")
                self._print(f"   Unsaved row: {row.base} {row.sources or ''}".rstrip())
                self._event("store_write_failed", error=str(exc), row=row.base, sources=row.sources)
                # Recorded before prompting so an interrupted prompt still reports the row.
                if not any(pending is row for pending in self.unsaved):
                    self.unsaved.append(row)
                    self.log.error("Measurement not saved: %s %s", row.base, row.sources)
                if self.prompt("Retry saving? (y/n): ").strip().lower() == "y":
                    continue
                return CycleOutcome.WRITE_FAILED
            self.unsaved = [pending for pending in self.unsaved if pending is not row]
            self._report_saved(outcome)
            return CycleOutcome.RECORDED

    def _report_saved(self, outcome: MergeOutcome) -> None:
        if outcome.recovered_from_corrupt:
            kept = f" Previous file kept as {outcome.backup_path}." if outcome.backup_path else ""
            self._print(f"⚠ Existing file could not be read; started a new table.{kept}")
            self._event("store_recovered", backup_path=outcome.backup_path)
        if outcome.added_columns:
            self._print(f"   New gateway columns: {', '.join(outcome.added_columns)}")
        self._print(f"✓ Data saved to: {outcome.path} ({outcome.row_count} total entries)\n")
        self._event(
            "merge_complete",
            row_count=outcome.row_count,
            sheet=outcome.sheet_name,
            added_columns=list(outcome.added_columns),
        )

    def _event(self, name: str, **fields) -> None:
        if self.event_log:
            self.event_log.log(name, **fields)

    def _print(self, text: str) -> None:
        print(text, file=self.out, flush=True)
