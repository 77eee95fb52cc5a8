import zipfile
from pathlib import Path

import pytest
from openpyxl import Workbook, load_workbook

from rssiwatch.stats.reducer import reduce_samples
from rssiwatch.table.merge import MergeEngine
from rssiwatch.table.rows import build_measurement_row
from rssiwatch.table.schema import CALIBRATION_LAYOUT, FINGERPRINT_LAYOUT
from rssiwatch.table.store import StoreWriteError
from rssiwatch.window.types import PointContext, Sample, SurveyContext

TS = "2024-05-01T12:00:00.000Z"


def _stats(by_source):
    samples = [
        Sample(source_id=source, value=float(v), observed_at=0.0)
        for source, values in by_source.items()
        for v in values
    ]
    return reduce_samples(samples)


def _point_row(mac="AA:BB:CC:DD:EE:FF", distance=2.5, values=(-60, -62, -59, -61, -60, -63, -58, -61, -60, -62)):
    context = PointContext(source_filter=mac, distance_m=distance)
    return build_measurement_row(context, _stats({mac: values}), timestamp=TS)


def _survey_row(location, by_source, x=1.0, y=2.0):
    return build_measurement_row(SurveyContext(location_id=location, x=x, y=y), _stats(by_source))


def _sheet_rows(path: Path, sheet: str):
    wb = load_workbook(path)
    return [list(row) for row in wb[sheet].iter_rows(values_only=True)]


def _write_workbook(path: Path, sheets):
    wb = Workbook()
    first = True
    for name, rows in sheets:
        ws = wb.active if first else wb.create_sheet(name)
        ws.title = name
        first = False
        for row in rows:
            ws.append(row)
    wb.save(path)


def test_point_scenario_row_is_persisted(tmp_path: Path) -> None:
    path = tmp_path / "cal.xlsx"
    engine = MergeEngine(CALIBRATION_LAYOUT, path)
    outcome = engine.merge(_point_row())

    assert outcome.row_count == 1
    assert outcome.added_columns == ()
    rows = _sheet_rows(path, "Calibration Data")
    assert rows[0] == list(CALIBRATION_LAYOUT.base_columns)
    mac, distance, rssi, notes, stamp = rows[1]
    assert (mac, distance, rssi) == ("AA:BB:CC:DD:EE:FF", 2.5, -60.6)
    assert notes in (None, "")
    assert stamp == TS


def test_survey_scenario_with_preexisting_source(tmp_path: Path) -> None:
    path = tmp_path / "fp.xlsx"
    header = list(FINGERPRINT_LAYOUT.base_columns) + ["X0"]
    old_row = ["point-0-0", 0, 0, 0, -80, -75, 4, -77.5]
    _write_workbook(path, [("Fingerprint Data", [header, old_row])])

    engine = MergeEngine(FINGERPRINT_LAYOUT, path)
    row = _survey_row("point-1-2", {"X1": [-70, -72, -71], "X2": [-50, -52]})
    outcome = engine.merge(row, {"X1", "X2"})

    assert outcome.added_columns == ("X1", "X2")
    rows = _sheet_rows(path, "Fingerprint Data")
    assert rows[0] == header + ["X1", "X2"]
    assert rows[1] == old_row + [None, None]
    assert rows[2][:7] == ["point-1-2", 1, 2, 0, -72, -50, 5]
    assert rows[2][7:] == [None, -71.0, -51.0]


def test_disjoint_cycles_give_sorted_union_in_either_order(tmp_path: Path) -> None:
    first = {"GW-C": [-60], "GW-A": [-61]}
    second = {"GW-B": [-62], "GW-D": [-63]}

    forward = MergeEngine(FINGERPRINT_LAYOUT, tmp_path / "forward.xlsx")
    forward.merge(_survey_row("p1", first))
    forward.merge(_survey_row("p2", second))

    backward = MergeEngine(FINGERPRINT_LAYOUT, tmp_path / "backward.xlsx")
    backward.merge(_survey_row("p2", second))
    backward.merge(_survey_row("p1", first))

    expected = list(FINGERPRINT_LAYOUT.base_columns) + ["GW-A", "GW-B", "GW-C", "GW-D"]
    assert _sheet_rows(tmp_path / "forward.xlsx", "Fingerprint Data")[0] == expected
    assert _sheet_rows(tmp_path / "backward.xlsx", "Fingerprint Data")[0] == expected


def test_merges_never_drop_or_reorder_rows(tmp_path: Path) -> None:
    path = tmp_path / "fp.xlsx"
    engine = MergeEngine(FINGERPRINT_LAYOUT, path)
    engine.merge(_survey_row("p1", {"B": [-60]}))
    after_one = _sheet_rows(path, "Fingerprint Data")
    engine.merge(_survey_row("p2", {"A": [-55]}))
    outcome = engine.merge(_survey_row("p3", {"B": [-70], "C": [-65]}))

    rows = _sheet_rows(path, "Fingerprint Data")
    assert outcome.row_count == 3
    assert [r[0] for r in rows[1:]] == ["p1", "p2", "p3"]
    assert rows[0][7:] == ["A", "B", "C"]
    assert rows[1][:7] == after_one[1][:7]
    assert rows[1][7:] == [None, -60, None]


def test_headerless_sheet_gets_synthesized_header(tmp_path: Path) -> None:
    path = tmp_path / "cal.xlsx"
    _write_workbook(path, [("Calibration Data", [["11:22:33:44:55:66", 1.0, -55.0, "near wall", "t0"]])])

    outcome = MergeEngine(CALIBRATION_LAYOUT, path).merge(_point_row())

    assert outcome.synthesized_header
    rows = _sheet_rows(path, "Calibration Data")
    assert rows[0] == list(CALIBRATION_LAYOUT.base_columns)
    assert rows[1] == ["11:22:33:44:55:66", 1, -55, "near wall", "t0"]
    assert rows[2][0] == "AA:BB:CC:DD:EE:FF"


def test_legacy_header_is_upgraded(tmp_path: Path) -> None:
    path = tmp_path / "cal.xlsx"
    _write_workbook(
        path,
        [("Calibration Data", [["Gateway MAC", "Distance (m)", "RSSI (dBm)"], ["11:22", 1.0, -55.0]])],
    )
    outcome = MergeEngine(CALIBRATION_LAYOUT, path).merge(_point_row())

    assert outcome.upgraded_columns == ("Notes", "Timestamp")
    rows = _sheet_rows(path, "Calibration Data")
    assert rows[0] == list(CALIBRATION_LAYOUT.base_columns)
    assert rows[1] == ["11:22", 1, -55, None, None]


def test_other_sheets_are_left_alone(tmp_path: Path) -> None:
    path = tmp_path / "shared.xlsx"
    fp_header = list(FINGERPRINT_LAYOUT.base_columns) + ["X1"]
    fp_row = ["p1", 1, 2, 0, -70, -60, 3, -65]
    _write_workbook(path, [("Fingerprint Data", [fp_header, fp_row])])

    MergeEngine(CALIBRATION_LAYOUT, path).merge(_point_row())

    wb = load_workbook(path)
    assert wb.sheetnames == ["Fingerprint Data", "Calibration Data"]
    assert _sheet_rows(path, "Fingerprint Data") == [fp_header, fp_row]
    assert len(_sheet_rows(path, "Calibration Data")) == 2


def test_sheet_name_match_is_case_insensitive(tmp_path: Path) -> None:
    path = tmp_path / "cal.xlsx"
    _write_workbook(
        path,
        [
            ("Readme", [["notes only"]]),
            ("gateway CALIBRATION", [list(CALIBRATION_LAYOUT.base_columns)]),
        ],
    )
    outcome = MergeEngine(CALIBRATION_LAYOUT, path).merge(_point_row())

    assert outcome.sheet_name == "gateway CALIBRATION"
    wb = load_workbook(path)
    assert wb.sheetnames == ["Readme", "gateway CALIBRATION"]
    assert _sheet_rows(path, "Readme") == [["notes only"]]


def test_corrupt_store_is_backed_up_and_replaced(tmp_path: Path) -> None:
    path = tmp_path / "cal.xlsx"
    path.write_bytes(b"this is not a workbook")

    outcome = MergeEngine(CALIBRATION_LAYOUT, path).merge(_point_row())

    assert outcome.recovered_from_corrupt
    assert outcome.backup_path is not None
    assert outcome.backup_path.read_bytes() == b"this is not a workbook"
    assert outcome.backup_path.name.startswith("cal.corrupt-")
    rows = _sheet_rows(path, "Calibration Data")
    assert len(rows) == 2


def test_write_failure_raises_with_unsaved_row(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "cal.xlsx"
    engine = MergeEngine(CALIBRATION_LAYOUT, path, write_attempts=2, retry_delay_s=0.0)
    calls = []

    def failing_save(workbook):
        calls.append(workbook)
        raise PermissionError("read-only volume")

    monkeypatch.setattr(engine.store, "save", failing_save)
    row = _point_row()
    with pytest.raises(StoreWriteError) as excinfo:
        engine.merge(row)

    assert excinfo.value.row is row
    assert len(calls) == 2
    assert not path.exists()


def test_row_layout_must_match_engine(tmp_path: Path) -> None:
    engine = MergeEngine(FINGERPRINT_LAYOUT, tmp_path / "fp.xlsx")
    with pytest.raises(ValueError):
        engine.merge(_point_row())


def test_load_table_does_not_write(tmp_path: Path) -> None:
    path = tmp_path / "fp.xlsx"
    engine = MergeEngine(FINGERPRINT_LAYOUT, path)
    table = engine.load_table()
    assert table.rows == []
    assert not path.exists()


def test_store_with_malformed_xml_is_recovered(tmp_path: Path) -> None:
    path = tmp_path / "cal.xlsx"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("[Content_Types].xml", "<Types><not-closed>")
    original = path.read_bytes()

    outcome = MergeEngine(CALIBRATION_LAYOUT, path).merge(_point_row())

    assert outcome.recovered_from_corrupt
    assert outcome.backup_path.read_bytes() == original
    rows = _sheet_rows(path, "Calibration Data")
    assert rows[0] == list(CALIBRATION_LAYOUT.base_columns)
    assert len(rows) == 2
