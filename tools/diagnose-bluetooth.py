#!/usr/bin/env python3
"""Check the pieces a replay needs before talking to the phone."""

from __future__ import annotations

import argparse
import grp
import os
import shutil
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from sensorreplay.bluetooth import (SPP_UUID, browse_services, is_connected,
                                    resolve_device, run_command)
from sensorreplay.errors import DeviceNotFound
from sensorreplay.utils import load_settings


def _in_dialout_group() -> bool:
    try:
        dialout = grp.getgrnam("dialout")
    except KeyError:
        return False
    return dialout.gr_gid in os.getgroups()


def diagnose(address: str) -> None:
    print("=== Bluetooth Connection Diagnostic ===")
    print()

    print("1. Checking if the phone is connected...")
    if is_connected(address):
        print("   Phone is connected")
    else:
        print("   Phone is not connected")
        print(f"   Run: bluetoothctl connect {address}")

    print()
    print("2. Checking available RFCOMM services...")
    services = browse_services(address)
    channels = [svc for svc in services if svc.channel is not None]
    if channels:
        for svc in channels:
            print(f"   Channel {svc.channel}: {svc.name}")
    else:
        print("   No RFCOMM channels advertised")

    print()
    print("3. Looking for Serial Port Profile (SPP)...")
    spp = [svc for svc in services if svc.is_serial_port]
    if spp:
        for svc in spp:
            print(f"   SPP service found: {svc.name} (channel {svc.channel})")
    else:
        print("   No SPP service found")
        print("   The phone app must be running and listening on a "
              "BluetoothServerSocket")
        print(f"   with UUID: {SPP_UUID}")

    print()
    print("4. Testing rfcomm availability...")
    if shutil.which("rfcomm"):
        print("   rfcomm command available")
        print("   Current rfcomm devices:")
        shown = run_command(["rfcomm", "show"]).strip()
        print(f"   {shown}" if shown else "   None")
    else:
        print("   rfcomm not found. Install: sudo apt install bluez")

    print()
    print("5. Checking dialout group membership...")
    if _in_dialout_group():
        print("   User is in the dialout group (can write to /dev/rfcomm0)")
    else:
        print("   User not in the dialout group. Add with:")
        print("   sudo usermod -aG dialout $USER")
        print("   Then log out and back in")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Diagnose the Bluetooth serial link to the phone.",
    )
    parser.add_argument(
        "device",
        nargs="?",
        help="Address or name fragment (default: from the environment)",
    )
    args = parser.parse_args()

    identifier = args.device or load_settings().device_identifier
    if not identifier:
        raise SystemExit("Give a device address or set "
                         "BLUETOOTH_DEVICE_ADDRESS / BLUETOOTH_DEVICE_NAME")
    try:
        address = resolve_device(identifier)
    except DeviceNotFound as exc:
        raise SystemExit(str(exc))

    diagnose(address)


if __name__ == "__main__":
    main()
