"""Load recorded measurements and group them by timestamp."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
from pathlib import Path
import sys
from typing import Any, Dict, Iterable, List, Optional

from .errors import MalformedData


class MeasurementType(str, Enum):
    """Raw measurement type codes as stored in the recordings."""

    HEART_RATE = "HeartRate"
    BREATH_FREQUENCY = "BreathFrequency"
    RESPIRATION = "Respiration"
    ACCELERATION_X = "AccelerationX"
    ACCELERATION_Y = "AccelerationY"
    ACCELERATION_Z = "AccelerationZ"
    POSITION = "Position"
    R2R = "R2R"
    ECG = "ECG"

    @property
    def field_name(self) -> str:
        """Name of the DataGroup field this code is stored under."""

        return _FIELD_NAMES[self]

    @classmethod
    def from_code(cls, code: Any) -> Optional["MeasurementType"]:
        try:
            return cls(code)
        except ValueError:
            return None


_FIELD_NAMES: Dict[MeasurementType, str] = {
    MeasurementType.HEART_RATE: "heartRate",
    MeasurementType.BREATH_FREQUENCY: "breathFrequency",
    MeasurementType.RESPIRATION: "respiration",
    MeasurementType.ACCELERATION_X: "accelerationX",
    MeasurementType.ACCELERATION_Y: "accelerationY",
    MeasurementType.ACCELERATION_Z: "accelerationZ",
    MeasurementType.POSITION: "position",
    MeasurementType.R2R: "r2r",
    MeasurementType.ECG: "ecg",
}

# Forwarded types, in emission order.
FORWARDED_TYPES = (
    MeasurementType.HEART_RATE,
    MeasurementType.BREATH_FREQUENCY,
    MeasurementType.RESPIRATION,
    MeasurementType.ACCELERATION_X,
    MeasurementType.ACCELERATION_Y,
    MeasurementType.ACCELERATION_Z,
    MeasurementType.POSITION,
)

IGNORED_TYPES = frozenset({MeasurementType.R2R, MeasurementType.ECG})


@dataclass(frozen=True)
class Measurement:
    date: int
    value: Any
    user_id: int
    measure_type: str

    @classmethod
    def from_dict(cls, entry: Any) -> "Measurement":
        if not isinstance(entry, dict):
            raise MalformedData(f"Measurement is not an object: {entry!r}")
        try:
            return cls(
                date=entry["date"],
                value=entry["value"],
                user_id=entry["userId"],
                measure_type=entry["measureType"],
            )
        except KeyError as exc:
            raise MalformedData(
                f"Measurement missing field {exc.args[0]!r}: {entry!r}"
            ) from exc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "value": self.value,
            "userId": self.user_id,
            "measureType": self.measure_type,
        }


@dataclass
class DataGroup:
    """All forwarded values recorded at one timestamp."""

    timestamp: int
    user_id: int
    values: Dict[MeasurementType, Any] = field(default_factory=dict)

    def populated(self) -> List[MeasurementType]:
        """Forwarded types that carry a value, in emission order."""

        return [mt for mt in FORWARDED_TYPES
                if self.values.get(mt) is not None]

    def as_fields(self) -> Dict[str, Any]:
        """Field-name view, e.g. ``{"heartRate": [59]}``."""

        return {mt.field_name: value for mt, value in self.values.items()}


def load(path: str | Path) -> List[Dict[str, Any]]:
    """Read one recording file: a JSON array with one entry per user."""

    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        print(f"[data] ERROR: failed to parse {path}: {exc}",
              file=sys.stderr)
        raise MalformedData(f"Failed to parse user data JSON in {path}") \
            from exc


def flatten(users: Any) -> List[Measurement]:
    """Concatenate every user's measurement list, keeping order."""

    # A single user object is accepted as well as the usual array of them.
    if isinstance(users, dict):
        users = [users]
    if not isinstance(users, list):
        raise MalformedData("User data must be a JSON array")

    measurements: List[Measurement] = []
    for user in users:
        if not isinstance(user, dict):
            raise MalformedData(f"User entry is not an object: {user!r}")
        for entry in user.get("data") or []:
            measurements.append(Measurement.from_dict(entry))
    return measurements


def group(measurements: Iterable[Measurement]) -> Dict[int, DataGroup]:
    """Group forwarded measurements by timestamp.

    A later measurement with the same timestamp and type replaces the
    earlier value.
    """

    groups: Dict[int, DataGroup] = {}
    for measurement in measurements:
        mt = MeasurementType.from_code(measurement.measure_type)
        if mt is None or mt in IGNORED_TYPES:
            continue

        timestamp = measurement.date
        datum = groups.get(timestamp)
        if datum is None:
            datum = DataGroup(timestamp=timestamp, user_id=measurement.user_id)
            groups[timestamp] = datum
        datum.values[mt] = measurement.value
    return groups


def sorted_groups(groups: Dict[int, DataGroup]) -> List[DataGroup]:
    return [groups[ts] for ts in sorted(groups)]


class MeasurementStore:
    """Load a recording from the data folder and keep it grouped."""

    def __init__(self, data_folder: str | Path,
                 data_file: str = "user1.json") -> None:
        self.path = Path(data_folder).expanduser() / data_file
        self.measurements: List[Measurement] = []
        self.groups: Dict[int, DataGroup] = {}

    def load_all(self) -> List[DataGroup]:
        """Load, flatten and group the recording; return ordered groups."""

        if not self.path.exists():
            raise FileNotFoundError(f"Recording not found at {self.path}")

        self.measurements = flatten(load(self.path))
        self.groups = group(self.measurements)

        self.load_summary()
        return sorted_groups(self.groups)

    def load_summary(self, prefix: str = "[data]") -> None:
        """Print a one-shot summary of the loaded recording."""

        kept = sum(len(g.values) for g in self.groups.values())
        print(f"{prefix} Loaded {len(self.measurements)} measurements "
              f"from {self.path}")
        print(f"{prefix} Kept {kept} values in {len(self.groups)} "
              "timestamp groups")
