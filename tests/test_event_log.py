import json

from rssiwatch.util.event_log import EVENT_LOG_NAME, EventLog


def test_event_log_sits_beside_store(tmp_path) -> None:
    log = EventLog.beside_store(str(tmp_path / "nested" / "cal.xlsx"), "calibration")
    assert log.log_path == tmp_path / "nested" / EVENT_LOG_NAME


def test_event_records_carry_cycle_and_fields(tmp_path) -> None:
    log = EventLog(tmp_path / "events.log", "fingerprint")
    log.start_cycle(3)
    log.log("window_closed", samples=12, sources=["X1", "X2"])

    records = [json.loads(line) for line in (tmp_path / "events.log").read_text().splitlines()]
    assert [r["event"] for r in records] == ["cycle_start", "window_closed"]
    closed = records[-1]
    assert closed["cycle_id"] == 3
    assert closed["tool"] == "fingerprint"
    assert closed["samples"] == 12
    assert closed["sources"] == ["X1", "X2"]
    assert closed["run_id"] == log.run_id
