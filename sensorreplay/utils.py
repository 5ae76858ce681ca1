"""Shared utilities for the sensor replay."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Dict, Mapping, Optional


DEFAULT_BAUDRATE = 115200


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, normally read from the environment."""

    device_address: str = ""
    device_name: str = ""
    data_folder: str = "data"
    data_file: str = "user1.json"
    rfcomm_slot: str = "rfcomm0"
    use_sudo: bool = True
    baudrate: int = DEFAULT_BAUDRATE

    @property
    def device_identifier(self) -> str:
        """Address if configured, otherwise the name fragment."""

        return (self.device_address or self.device_name).strip()

    @property
    def data_path(self) -> Path:
        return Path(self.data_folder).expanduser() / self.data_file


def _coerce_bool(value: Optional[str], default: bool) -> bool:
    """Return True for truthy user inputs like "yes" or "1"."""

    if value is None:
        return default
    text = value.strip().lower()
    if not text:
        return default
    return text in {"1", "true", "yes", "on"}


def _coerce_baudrate(value: Optional[str]) -> int:
    # An rfcomm tty ignores the line speed; only a sane positive int matters.
    try:
        baudrate = int((value or "").strip())
    except ValueError:
        return DEFAULT_BAUDRATE
    return baudrate if baudrate > 0 else DEFAULT_BAUDRATE


def load_settings(environ: Optional[Mapping[str, str]] = None,
                  **overrides: object) -> Settings:
    """Build the settings from environment variables.

    Keyword overrides (typically from the command line) win over the
    environment when they are not None.
    """

    env = os.environ if environ is None else environ

    values: Dict[str, object] = {
        "device_address": env.get("BLUETOOTH_DEVICE_ADDRESS", "").strip(),
        "device_name": env.get("BLUETOOTH_DEVICE_NAME", "").strip(),
        "data_folder": env.get("DATA_FOLDER") or "data",
        "data_file": env.get("DATA_FILE") or "user1.json",
        "rfcomm_slot": env.get("RFCOMM_DEVICE") or "rfcomm0",
        "use_sudo": _coerce_bool(env.get("RFCOMM_USE_SUDO"), True),
        "baudrate": _coerce_baudrate(env.get("SERIAL_BAUDRATE")),
    }

    for key, value in overrides.items():
        if key not in values:
            raise TypeError(f"Unknown setting: {key}")
        if value is not None:
            values[key] = value

    return Settings(**values)  # type: ignore[arg-type]
