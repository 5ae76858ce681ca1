import json
from pathlib import Path

import pytest

from sensorreplay.errors import MalformedData
from sensorreplay.measurements import (FORWARDED_TYPES, Measurement,
                                       MeasurementStore, MeasurementType,
                                       flatten, group, load, sorted_groups)


def m(date, value, mtype, user_id=1):
    return Measurement(date=date, value=value, user_id=user_id,
                       measure_type=mtype)


def write_json(path: Path, payload) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_load_reads_json_array(tmp_path):
    path = write_json(tmp_path / "user1.json", [{"data": []}])
    assert load(path) == [{"data": []}]


def test_load_rejects_invalid_json(tmp_path):
    path = tmp_path / "user1.json"
    path.write_text("[{\"data\": [", encoding="utf-8")
    with pytest.raises(MalformedData):
        load(path)


def test_load_rejects_non_utf8_bytes(tmp_path, capsys):
    path = tmp_path / "user1.json"
    path.write_bytes(b'[{"data": []}]\xff\xfe')
    with pytest.raises(MalformedData) as excinfo:
        load(path)
    assert isinstance(excinfo.value.__cause__, UnicodeDecodeError)
    assert "[data] ERROR" in capsys.readouterr().err


def test_flatten_concatenates_users_in_order():
    users = [
        {"data": [
            {"date": 1, "value": [60], "userId": 1, "measureType": "HeartRate"},
            {"date": 2, "value": [61], "userId": 1, "measureType": "HeartRate"},
        ]},
        {"data": [
            {"date": 1, "value": [12], "userId": 2,
             "measureType": "BreathFrequency"},
        ]},
    ]
    flat = flatten(users)
    assert [(x.user_id, x.date) for x in flat] == [(1, 1), (1, 2), (2, 1)]
    assert flat[0].to_dict() == {"date": 1, "value": [60], "userId": 1,
                                 "measureType": "HeartRate"}


def test_flatten_accepts_single_user_object():
    flat = flatten({"data": [{"date": 1, "value": [59], "userId": 1,
                              "measureType": "HeartRate"}]})
    assert flat == [m(1, [59], "HeartRate")]


def test_flatten_reports_missing_fields():
    with pytest.raises(MalformedData):
        flatten([{"data": [{"date": 1, "value": [59]}]}])


def test_group_drops_ignored_and_unknown_types():
    groups = group([
        m(5, [800], "R2R"),
        m(5, [1, 2, 3], "ECG"),
        m(6, [1], "Temperature"),
        m(7, [70], "HeartRate"),
    ])
    assert list(groups) == [7]
    for datum in groups.values():
        assert MeasurementType.R2R not in datum.values
        assert MeasurementType.ECG not in datum.values


def test_group_last_write_wins_per_timestamp_and_field():
    groups = group([
        m(10, [70], "HeartRate"),
        m(10, [0.5], "AccelerationX"),
        m(10, [71], "HeartRate"),
    ])
    datum = groups[10]
    assert datum.values[MeasurementType.HEART_RATE] == [71]
    assert datum.as_fields() == {"heartRate": [71], "accelerationX": [0.5]}


def test_group_reconstructs_retained_measurements():
    measurements = [
        m(3, [1], "Position"),
        m(1, [60], "HeartRate"),
        m(1, [900], "R2R"),
        m(2, [0.1], "AccelerationZ"),
        m(1, [14], "BreathFrequency"),
        m(2, [0.2], "AccelerationZ"),
    ]
    groups = group(measurements)

    rebuilt = {(ts, mt.value, repr(v))
               for ts, datum in groups.items()
               for mt, v in datum.values.items()}

    expected = {}
    for x in measurements:
        if x.measure_type not in ("R2R", "ECG"):
            expected[(x.date, x.measure_type)] = x.value
    assert rebuilt == {(ts, mt, repr(v)) for (ts, mt), v in expected.items()}


def test_sorted_groups_ascending_regardless_of_input_order():
    groups = group([m(30, [1], "HeartRate"), m(10, [1], "HeartRate"),
                    m(20, [1], "HeartRate")])
    assert [g.timestamp for g in sorted_groups(groups)] == [10, 20, 30]


def test_group_user_id_comes_from_first_measurement():
    groups = group([m(1, [60], "HeartRate", user_id=7),
                    m(1, [12], "BreathFrequency", user_id=8)])
    assert groups[1].user_id == 7


def test_populated_follows_fixed_order_and_skips_none():
    groups = group([
        m(1, [1], "Position"),
        m(1, [60], "HeartRate"),
        m(1, None, "Respiration"),
        m(1, [0.1], "AccelerationY"),
    ])
    assert groups[1].populated() == [MeasurementType.HEART_RATE,
                                     MeasurementType.ACCELERATION_Y,
                                     MeasurementType.POSITION]


def test_forwarded_types_have_field_names():
    assert [mt.field_name for mt in FORWARDED_TYPES] == [
        "heartRate", "breathFrequency", "respiration", "accelerationX",
        "accelerationY", "accelerationZ", "position",
    ]


def test_store_loads_and_groups(tmp_path, capsys):
    write_json(tmp_path / "rec.json", [{"data": [
        {"date": 9, "value": [70], "userId": 1, "measureType": "HeartRate"},
        {"date": 4, "value": [69], "userId": 1, "measureType": "HeartRate"},
        {"date": 4, "value": [5], "userId": 1, "measureType": "ECG"},
    ]}])
    store = MeasurementStore(tmp_path, "rec.json")
    groups = store.load_all()

    assert [g.timestamp for g in groups] == [4, 9]
    assert len(store.measurements) == 3
    out = capsys.readouterr().out
    assert "Loaded 3 measurements" in out
    assert "Kept 2 values in 2 timestamp groups" in out


def test_store_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        MeasurementStore(tmp_path, "nope.json").load_all()


def test_bundled_sample_recording_loads():
    data_dir = Path(__file__).resolve().parents[1] / "data"
    groups = MeasurementStore(data_dir).load_all()
    assert [g.timestamp for g in groups] == [1700000000, 1700000001,
                                             1700000003]
