#!/usr/bin/env python3
"""Connect to the first paired device, send one test line and disconnect.

Useful to check the phone side before replaying a whole recording.
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from sensorreplay.bluetooth import ChannelNegotiator, list_paired_devices
from sensorreplay.errors import ReplayError
from sensorreplay.transport import SerialTransport
from sensorreplay.utils import load_settings


def main() -> None:
    settings = load_settings()

    devices = list_paired_devices()
    if not devices:
        print("No paired devices found. Use tools/discover-devices.py to "
              "check your setup.")
        return

    device = devices[0]
    print(f"Testing connection to {device.name} ({device.address})...")

    negotiator = ChannelNegotiator(slot=settings.rfcomm_slot,
                                   use_sudo=settings.use_sudo)
    try:
        connection = negotiator.negotiate(device.address)
    except ReplayError as exc:
        print(f"Connection test failed (expected if the phone app is not "
              f"running): {exc}")
        return
    print("Connection test successful")

    transport = SerialTransport(connection,
                                baudrate=settings.baudrate,
                                negotiator=negotiator)
    try:
        transport.open()
        transport.send('{"test": "message"}')
        print("Message test successful")
    except ReplayError as exc:
        print(f"Message test failed: {exc}", file=sys.stderr)
    finally:
        transport.close()
    print("Disconnection test done")


if __name__ == "__main__":
    main()
