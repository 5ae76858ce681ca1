#!/usr/bin/env python3
"""List paired Bluetooth devices and show how to configure one."""

from __future__ import annotations

import shutil
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from sensorreplay.bluetooth import list_paired_devices, run_command


STATUS_KEYS = ("Name:", "Powered:", "Discoverable:", "Pairable:")


def main() -> None:
    print("=== Bluetooth Device Discovery ===")
    print()

    if shutil.which("bluetoothctl") is None:
        print("bluetoothctl not found. Please install the bluez package:")
        print("   sudo apt install bluez")
        sys.exit(1)

    devices = list_paired_devices()
    print()
    if not devices:
        print("No paired devices found.")
        print("   To pair a device:")
        print("   1. Make your mobile device discoverable")
        print("   2. Run: bluetoothctl")
        print("   3. In the bluetoothctl prompt:")
        print("      scan on")
        print("      pair XX:XX:XX:XX:XX:XX")
        print("      trust XX:XX:XX:XX:XX:XX")
        print("      connect XX:XX:XX:XX:XX:XX")
    else:
        print("Found paired devices:")
        for device in devices:
            print(f"   {device.name} ({device.address})")
        print()
        print("To use one, set in the environment:")
        print("   BLUETOOTH_DEVICE_ADDRESS=XX:XX:XX:XX:XX:XX")
        print("   # or")
        print("   BLUETOOTH_DEVICE_NAME=DeviceName")

    print()
    print("Current Bluetooth status:")
    for line in run_command(["bluetoothctl", "show"]).splitlines():
        if line.strip().startswith(STATUS_KEYS):
            print(f"   {line.strip()}")


if __name__ == "__main__":
    main()
