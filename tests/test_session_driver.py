import io
import json
from pathlib import Path

from openpyxl import load_workbook

from rssiwatch.session.driver import CycleOutcome, SessionDriver
from rssiwatch.table.merge import MergeEngine
from rssiwatch.table.schema import CALIBRATION_LAYOUT, FINGERPRINT_LAYOUT
from rssiwatch.util.event_log import EventLog
from rssiwatch.util.exit_codes import ExitCode
from rssiwatch.window.controller import WindowController, WindowState

GATEWAY = "AA:BB:CC:DD:EE:FF"


def _payload(gateway: str, *rssi) -> bytes:
    return json.dumps(
        {"device_info": {"mac": gateway}, "data": [{"mac": "11:22:33:44:55:66", "rssi": v} for v in rssi]}
    ).encode()


class FakeBus:
    """Delivers scripted payload batches into the controller, one batch per window.

    It stands in for threading.Timer: starting the "timer" feeds the batch and
    then closes the window immediately.
    """

    def __init__(self, batches):
        self.batches = list(batches)
        self.controller = None
        self.windows_opened = 0

    def timer(self, interval, function):
        bus = self

        class _Timer:
            daemon = False

            def start(self):
                bus.windows_opened += 1
                batch = bus.batches.pop(0) if bus.batches else []
                for payload in batch:
                    bus.controller.ingest(payload)
                function()

            def cancel(self):
                pass

        return _Timer()


def _controller(bus: FakeBus) -> WindowController:
    controller = WindowController(60.0, timer_factory=bus.timer)
    bus.controller = controller
    return controller


class ScriptedPrompt:
    def __init__(self, answers):
        self.answers = list(answers)
        self.asked = []

    def __call__(self, text: str) -> str:
        self.asked.append(text)
        if not self.answers:
            raise EOFError
        return self.answers.pop(0)


def _driver(layout, bus, path, answers, **kwargs):
    prompt = ScriptedPrompt(answers)
    driver = SessionDriver(
        layout,
        _controller(bus),
        MergeEngine(layout, path, **kwargs),
        prompt=prompt,
        out=io.StringIO(),
    )
    return driver, prompt


def test_calibration_cycle_records_point_scenario(tmp_path: Path) -> None:
    values = [-60, -62, -59, -61, -60, -63, -58, -61, -60, -62]
    batch = [_payload(GATEWAY.lower(), v) for v in values] + [_payload("00:00:00:00:00:01", -30)]
    path = tmp_path / "cal.xlsx"
    driver, _ = _driver(CALIBRATION_LAYOUT, FakeBus([batch]), path, [GATEWAY, "2.5"])

    assert driver.run_cycle() is CycleOutcome.RECORDED
    rows = [list(r) for r in load_workbook(path)["Calibration Data"].iter_rows(values_only=True)]
    assert rows[1][:3] == [GATEWAY, 2.5, -60.6]
    output = driver.out.getvalue()
    assert "Samples collected: 10" in output
    assert "Average RSSI: -60.60 dBm" in output
    assert "(1 total entries)" in output


def test_invalid_distance_skips_before_arming(tmp_path: Path) -> None:
    bus = FakeBus([[_payload(GATEWAY, -60)]])
    path = tmp_path / "cal.xlsx"
    driver, _ = _driver(CALIBRATION_LAYOUT, bus, path, [GATEWAY, "-5"])

    assert driver.run_cycle() is CycleOutcome.SKIPPED_INVALID
    assert bus.windows_opened == 0
    assert driver.controller.state is WindowState.IDLE
    assert not path.exists()
    assert "Skipping" in driver.out.getvalue()


def test_empty_window_leaves_store_untouched(tmp_path: Path) -> None:
    path = tmp_path / "cal.xlsx"
    bus = FakeBus([[_payload(GATEWAY, -60)], [_payload("00:00:00:00:00:01", -40), b"noise"]])
    driver, _ = _driver(CALIBRATION_LAYOUT, bus, path, [GATEWAY, "1", GATEWAY, "2"])
    assert driver.run_cycle() is CycleOutcome.RECORDED
    before = path.read_bytes()

    assert driver.run_cycle() is CycleOutcome.NO_DATA
    assert path.read_bytes() == before
    assert "No RSSI readings received" in driver.out.getvalue()


def test_fingerprint_session_loop(tmp_path: Path) -> None:
    path = tmp_path / "fp.xlsx"
    bus = FakeBus([[_payload("X1", -70, -72, -71), _payload("X2", -50, -52)]])
    prompt = ScriptedPrompt(["y", "point-1-2", "1", "2", "", "n"])
    events = EventLog(tmp_path / "events.log", "fingerprint")
    driver = SessionDriver(
        FINGERPRINT_LAYOUT,
        _controller(bus),
        MergeEngine(FINGERPRINT_LAYOUT, path),
        prompt=prompt,
        out=io.StringIO(),
        event_log=events,
    )

    assert driver.run() == ExitCode.SUCCESS
    assert prompt.asked[0] == "Record another location? (y/n): "
    rows = [list(r) for r in load_workbook(path)["Fingerprint Data"].iter_rows(values_only=True)]
    assert rows[0][7:] == ["X1", "X2"]
    assert rows[1][0] == "point-1-2"
    assert rows[1][7:] == [-71, -51]

    logged = [json.loads(line)["event"] for line in (tmp_path / "events.log").read_text().splitlines()]
    for name in ("window_armed", "window_closed", "merge_complete"):
        assert name in logged


def test_declined_retry_reports_store_error(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "cal.xlsx"
    bus = FakeBus([[_payload(GATEWAY, -60)]])
    driver, _ = _driver(
        CALIBRATION_LAYOUT,
        bus,
        path,
        ["y", GATEWAY, "2", "n", "n"],
        write_attempts=1,
    )

    def failing_save(workbook):
        raise PermissionError("locked by another program")

    monkeypatch.setattr(driver.engine.store, "save", failing_save)

    assert driver.run() == ExitCode.STORE_ERROR
    assert len(driver.unsaved) == 1
    assert driver.unsaved[0].base["Gateway MAC"] == GATEWAY
    assert "Failed to save measurement" in driver.out.getvalue()


def test_retry_after_write_failure_saves_row(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "cal.xlsx"
    bus = FakeBus([[_payload(GATEWAY, -60)]])
    driver, _ = _driver(CALIBRATION_LAYOUT, bus, path, [GATEWAY, "2", "y"], write_attempts=1)
    store = driver.engine.store
    real_save = store.save
    failures = [PermissionError("busy")]

    def flaky_save(workbook):
        if failures:
            raise failures.pop()
        real_save(workbook)

    monkeypatch.setattr(store, "save", flaky_save)

    assert driver.run_cycle() is CycleOutcome.RECORDED
    rows = list(load_workbook(path)["Calibration Data"].iter_rows(values_only=True))
    assert len(rows) == 2


def test_end_of_input_interrupts_session(tmp_path: Path) -> None:
    driver, _ = _driver(CALIBRATION_LAYOUT, FakeBus([]), tmp_path / "cal.xlsx", [])
    assert driver.run() == ExitCode.INTERRUPTED


def test_interrupted_retry_prompt_keeps_row_as_unsaved(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "cal.xlsx"
    bus = FakeBus([[_payload(GATEWAY, -60)]])
    # Input ends at the "Retry saving?" prompt.
    driver, prompt = _driver(CALIBRATION_LAYOUT, bus, path, ["y", GATEWAY, "2"], write_attempts=1)

    def failing_save(workbook):
        raise PermissionError("locked by another program")

    monkeypatch.setattr(driver.engine.store, "save", failing_save)

    assert driver.run() == ExitCode.INTERRUPTED
    assert prompt.asked[-1] == "Retry saving? (y/n): "
    assert len(driver.unsaved) == 1
    assert driver.unsaved[0].base["Distance (m)"] == 2.0
    assert "were not saved" in driver.out.getvalue()


def test_successful_retry_clears_unsaved_row(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "cal.xlsx"
    bus = FakeBus([[_payload(GATEWAY, -60)]])
    driver, _ = _driver(CALIBRATION_LAYOUT, bus, path, ["y", GATEWAY, "2", "y", "n"], write_attempts=1)
    store = driver.engine.store
    real_save = store.save
    failures = [PermissionError("busy")]

    def flaky_save(workbook):
        if failures:
            raise failures.pop()
        real_save(workbook)

    monkeypatch.setattr(store, "save", flaky_save)

    assert driver.run() == ExitCode.SUCCESS
    assert driver.unsaved == []
