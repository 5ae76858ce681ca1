"""Replay recorded measurements to a phone over Bluetooth.

The recording is grouped by timestamp and every group is sent as one
JSON line per measurement, stamped with the current time. Between groups
the driver sleeps for the original gap between the two timestamps, so the
phone sees the data at the pace it was recorded.

Run as ``python -m sensorreplay.playback`` (or ``sensor-replay``) with
``BLUETOOTH_DEVICE_ADDRESS`` or ``BLUETOOTH_DEVICE_NAME`` set.
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
import time
from typing import Callable, List, Optional, Protocol, Sequence

from .bluetooth import ChannelNegotiator, resolve_device
from .errors import (ConfigurationMissing, NotConnected, ReplayError,
                     TransportWriteFailure)
from .measurements import DataGroup, MeasurementStore
from .transport import SerialTransport
from .utils import Settings, load_settings


class LineSender(Protocol):
    def send(self, message: str) -> None:
        ...


def compute_deltas(timestamps: Sequence[int]) -> List[int]:
    """Gaps in seconds between successive timestamps."""

    return [b - a for a, b in zip(timestamps, timestamps[1:])]


def build_messages(datum: DataGroup,
                   clock: Callable[[], float] = time.time) -> List[str]:
    """One JSON message per populated field, in the fixed field order.

    ``date`` is the wall clock at build time in epoch milliseconds, not the
    recorded timestamp.
    """

    messages = []
    for mt in datum.populated():
        msg = {
            "date": int(clock() * 1000),
            "value": datum.values[mt],
            "userId": datum.user_id,
            "measureType": mt.value,
        }
        messages.append(json.dumps(msg, separators=(",", ":")))
    return messages


def play(groups: Sequence[DataGroup], transport: LineSender,
         stop_event: threading.Event,
         sleep: Callable[[float], None] = time.sleep,
         clock: Callable[[], float] = time.time) -> int:
    """Send all groups in timestamp order; return the number of messages.

    The stop event is checked before each group and again once all of a
    group's messages are out. A send or a sleep in progress is never
    interrupted.
    """

    ordered = sorted(groups, key=lambda g: g.timestamp)
    deltas = compute_deltas([g.timestamp for g in ordered])

    sent = 0
    for idx, datum in enumerate(ordered):
        if stop_event.is_set():
            print("[replay] Stop requested; not sending further groups.")
            break

        for message in build_messages(datum, clock):
            try:
                transport.send(message)
            except TransportWriteFailure as exc:
                if exc.connection_lost:
                    print(f"[replay] ERROR: connection lost: {exc}",
                          file=sys.stderr)
                    raise
                print(f"[replay] WARNING: could not send message: {exc}",
                      file=sys.stderr)
                continue
            sent += 1
            print(f"[replay] Sent {message}")

        if stop_event.is_set():
            print("[replay] Stop requested; not sending further groups.")
            break

        if idx < len(deltas) and deltas[idx] > 0:
            sleep(float(deltas[idx]))

    print(f"[replay] Playback finished; {sent} messages sent.")
    return sent


class PlaybackSession:
    """Handle to a playback running in the background.

    Calling the session (or ``close()``) stops playback and releases the
    Bluetooth connection.
    """

    def __init__(self, groups: Sequence[DataGroup], transport: SerialTransport,
                 stop_event: threading.Event) -> None:
        self.transport = transport
        self.stop_event = stop_event
        self.error: Optional[ReplayError] = None
        self.sent = 0
        self._thread = threading.Thread(
            target=self._run,
            args=(groups,),
            daemon=True,
            name="playback",
        )

    def start(self) -> None:
        self._thread.start()

    def _run(self, groups: Sequence[DataGroup]) -> None:
        try:
            self.sent = play(groups, self.transport, self.stop_event)
        except (TransportWriteFailure, NotConnected) as exc:
            print(f"[replay] ERROR: playback aborted: {exc}", file=sys.stderr)
            self.error = exc

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for playback to end; True if it has."""

        self._thread.join(timeout)
        return not self._thread.is_alive()

    def close(self, timeout: float = 2.0) -> None:
        self.stop_event.set()
        if self._thread.is_alive() and \
                self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self.transport.close()

    __call__ = close


def start(settings: Settings, stop_event: threading.Event) -> PlaybackSession:
    """Load the recording, connect, and start playback in the background."""

    identifier = settings.device_identifier
    if not identifier:
        raise ConfigurationMissing(
            "Device address or name is required. Set "
            "BLUETOOTH_DEVICE_ADDRESS or BLUETOOTH_DEVICE_NAME."
        )

    store = MeasurementStore(settings.data_folder, settings.data_file)
    groups = store.load_all()

    address = resolve_device(identifier)
    negotiator = ChannelNegotiator(slot=settings.rfcomm_slot,
                                   use_sudo=settings.use_sudo)
    connection = negotiator.negotiate(address)

    transport = SerialTransport(connection,
                                baudrate=settings.baudrate,
                                negotiator=negotiator)
    try:
        transport.open()
    except ReplayError:
        transport.close()
        raise

    session = PlaybackSession(groups, transport, stop_event)
    session.start()
    return session


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Replay recorded sensor data to a phone over Bluetooth.",
    )
    parser.add_argument(
        "--address",
        help="Bluetooth address of the phone (default: "
             "$BLUETOOTH_DEVICE_ADDRESS)",
    )
    parser.add_argument(
        "--name",
        help="Part of the paired device name, used when no address is "
             "given (default: $BLUETOOTH_DEVICE_NAME)",
    )
    parser.add_argument(
        "--folder",
        help="Folder with the recording (default: $DATA_FOLDER or data)",
    )
    parser.add_argument(
        "--file",
        help="Recording file name (default: $DATA_FILE or user1.json)",
    )
    parser.add_argument(
        "--slot",
        help="Local rfcomm slot to bind (default: $RFCOMM_DEVICE or rfcomm0)",
    )
    parser.add_argument(
        "--no-sudo",
        dest="use_sudo",
        action="store_const",
        const=False,
        default=None,
        help="Run rfcomm without sudo",
    )
    parser.add_argument(
        "--baudrate",
        type=int,
        help="Baudrate for the rfcomm tty (default: $SERIAL_BAUDRATE or "
             "115200)",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    settings = load_settings(
        device_address=args.address,
        device_name=args.name,
        data_folder=args.folder,
        data_file=args.file,
        rfcomm_slot=args.slot,
        use_sudo=args.use_sudo,
        baudrate=args.baudrate,
    )

    stop_event = threading.Event()

    # Ctrl-C interrupts lookup and negotiation outright; once playback
    # runs it only asks the driver to stop after the current group.
    try:
        session = start(settings, stop_event)
    except (ReplayError, FileNotFoundError) as exc:
        print(f"[replay] ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("[replay] Interrupted while connecting, shutting down.")
        sys.exit(130)

    def _shutdown_handler(signum, _frame) -> None:
        print("[replay] Interrupted; stopping after the current group.")
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown_handler)
    signal.signal(signal.SIGTERM, _shutdown_handler)

    try:
        while not session.wait(timeout=0.5):
            pass
    finally:
        session.close()

    if session.error is not None:
        sys.exit(1)
    print("[replay] Shutdown complete.")


if __name__ == "__main__":
    main()
