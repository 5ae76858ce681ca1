"""Line-oriented writes to the rfcomm serial device."""

from __future__ import annotations

import errno
from typing import Optional

import serial

from .bluetooth import (ChannelNegotiator, Connection, disconnect_device,
                        terminate_process)
from .errors import NotConnected, TransportWriteFailure
from .utils import DEFAULT_BAUDRATE


# errno values meaning the Bluetooth link is gone rather than a single
# write going wrong.
LINK_LOST_ERRNOS = frozenset({
    errno.EIO,
    errno.ENODEV,
    errno.ENXIO,
    errno.EPIPE,
    errno.ENOTCONN,
    errno.ECONNRESET,
    errno.EHOSTDOWN,
    errno.EHOSTUNREACH,
})


def is_link_lost(exc: BaseException) -> bool:
    """True if the exception (or what caused it) says the link dropped."""

    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, serial.PortNotOpenError):
            return True
        if isinstance(current, OSError) and current.errno in LINK_LOST_ERRNOS:
            return True
        current = current.__cause__ or current.__context__
    return False


class SerialTransport:
    """Serial port on the device created by a successful negotiation."""

    def __init__(self, connection: Connection,
                 baudrate: int = DEFAULT_BAUDRATE,
                 negotiator: Optional[ChannelNegotiator] = None) -> None:
        self.connection = connection
        self.baudrate = baudrate
        self.negotiator = negotiator
        self._ser: Optional[serial.Serial] = None
        self._released = False

    @property
    def is_open(self) -> bool:
        return self._ser is not None and bool(self._ser.is_open)

    def open(self) -> None:
        try:
            # Blocking writes: flush() returns once the tty took the bytes.
            self._ser = serial.Serial(port=self.connection.device_path,
                                      baudrate=self.baudrate,
                                      write_timeout=None)
        except serial.SerialException as exc:
            raise NotConnected(
                f"Could not open {self.connection.device_path}: {exc}. "
                "Check that your user is in the dialout group."
            ) from exc
        print(f"[transport] {self.connection.device_path} opened "
              f"(channel {self.connection.channel})")

    def send(self, message: str) -> None:
        """Write one line and wait until the OS has taken it."""

        if not self.is_open:
            raise NotConnected("Bluetooth serial port is not open")

        line = message if message.endswith("\n") else message + "\n"
        try:
            self._ser.write(line.encode("utf-8"))
            self._ser.flush()
        except serial.SerialTimeoutException as exc:
            raise TransportWriteFailure(f"Write timed out: {exc}") from exc
        except (serial.SerialException, OSError) as exc:
            raise TransportWriteFailure(
                f"Write failed: {exc}", connection_lost=is_link_lost(exc)
            ) from exc

    def close(self) -> None:
        """Release everything; safe to call more than once, never raises."""

        ser, self._ser = self._ser, None
        if ser is not None:
            try:
                ser.close()
            except Exception:
                pass

        if self._released:
            return
        self._released = True

        if self.negotiator is not None:
            try:
                self.negotiator.release()
            except Exception:
                pass
        try:
            terminate_process(self.connection.process)
        except Exception:
            pass
        try:
            disconnect_device(self.connection.address)
        except Exception:
            pass
        print("[transport] Bluetooth connection closed")
