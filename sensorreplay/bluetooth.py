"""Bluetooth helpers built on the BlueZ command line tools.

Nothing here speaks the Bluetooth protocol. Paired devices come from
``bluetoothctl``, services from ``sdptool`` and the serial binding from
``rfcomm connect``, which creates ``/dev/rfcommN`` once the peer accepts
the RFCOMM channel. The peer (a phone app listening on an SPP socket)
must already be running; its channel number is not known in advance, so
a short list of candidates is tried in order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import queue
import re
import subprocess
import sys
import threading
import time
from typing import Callable, IO, List, Optional, Sequence, Tuple

from .errors import ChannelNegotiationFailed, DeviceNotFound


ADDRESS_RE = re.compile(r"^[0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5}$")
DEVICE_LINE_RE = re.compile(r"Device ([A-Fa-f0-9:]{17}) (.+)")

# Channels commonly used by SPP listeners on phones.
CANDIDATE_CHANNELS: Tuple[int, ...] = (1, 2, 3, 4, 5)
CONNECT_TIMEOUT = 5.0
SUCCESS_MARKER = "Connected"

SPP_UUID = "00001101-0000-1000-8000-00805F9B34FB"


@dataclass(frozen=True)
class BluetoothDevice:
    address: str
    name: str
    paired: bool = True


@dataclass(frozen=True)
class Connection:
    """An established RFCOMM binding.

    ``process`` is the ``rfcomm connect`` child holding the binding open;
    the binding disappears when it exits.
    """

    address: str
    channel: int
    slot: str
    device_path: str
    process: Optional[subprocess.Popen] = field(default=None, compare=False,
                                                repr=False)


@dataclass(frozen=True)
class SdpService:
    """One record from ``sdptool browse``."""

    name: str
    channel: Optional[int] = None
    service_classes: Tuple[str, ...] = ()

    @property
    def is_serial_port(self) -> bool:
        """True if the record advertises the Serial Port Profile.

        Judged by the service class list, not the name: phone apps give
        their SPP listener any name they like.
        """

        for entry in self.service_classes:
            text = entry.lower()
            if ("serial port" in text or "0x1101" in text
                    or SPP_UUID.lower() in text):
                return True
        return False


def run_command(args: Sequence[str], timeout: float = 10.0) -> str:
    """Run a command and return its standard output.

    Failures are reported on stderr and produce an empty string.
    """

    try:
        cp = subprocess.run(
            list(args),
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        print(f"[bluetooth] ERROR: command not found: {args[0]}",
              file=sys.stderr)
        return ""
    except subprocess.TimeoutExpired:
        print(f"[bluetooth] WARNING: {' '.join(args)} timed out after "
              f"{timeout:.0f}s", file=sys.stderr)
        return ""

    if cp.returncode != 0:
        err = (cp.stderr or "").strip()
        print(f"[bluetooth] WARNING: {' '.join(args)} exited with "
              f"{cp.returncode}" + (f": {err}" if err else ""),
              file=sys.stderr)
    return cp.stdout or ""


def is_address(value: str) -> bool:
    return bool(ADDRESS_RE.match(value or ""))


def parse_device_lines(text: str) -> List[BluetoothDevice]:
    """Parse ``bluetoothctl devices`` output lines."""

    devices: List[BluetoothDevice] = []
    for line in text.splitlines():
        match = DEVICE_LINE_RE.search(line.strip())
        if match:
            devices.append(BluetoothDevice(address=match.group(1),
                                           name=match.group(2).strip(),
                                           paired=True))
    return devices


def list_paired_devices() -> List[BluetoothDevice]:
    print("[bluetooth] Discovering paired Bluetooth devices...")
    devices = parse_device_lines(
        run_command(["bluetoothctl", "devices", "Paired"])
    )
    print(f"[bluetooth] Found {len(devices)} paired devices")
    return devices


def resolve_device(
    identifier: str,
    lister: Callable[[], List[BluetoothDevice]] = list_paired_devices,
) -> str:
    """Turn a name fragment or address into a device address.

    An identifier that already looks like an address is returned as is,
    without asking BlueZ.
    """

    identifier = (identifier or "").strip()
    if is_address(identifier):
        return identifier

    devices = lister()
    needle = identifier.lower()
    for device in devices:
        if needle and needle in device.name.lower():
            print(f"[bluetooth] Using {device.name} ({device.address})")
            return device.address

    if devices:
        listing = ", ".join(f"{d.name} ({d.address})" for d in devices)
        detail = f"Available paired devices: {listing}"
    else:
        detail = "No paired devices found"
    raise DeviceNotFound(
        f"Device not found: {identifier!r}. Make sure the device is paired. "
        f"{detail}"
    )


def is_connected(address: str) -> bool:
    return "Connected: yes" in run_command(["bluetoothctl", "info", address])


def connect_device(address: str) -> bool:
    """Ask BlueZ to connect the device; returns True on success."""

    out = run_command(["bluetoothctl", "connect", address], timeout=15.0)
    return "Connection successful" in out


def disconnect_device(address: str) -> bool:
    out = run_command(["bluetoothctl", "disconnect", address])
    return "Successful disconnected" in out


def browse_services(address: str) -> List[SdpService]:
    """Return the service records sdptool finds on the device."""

    out = run_command(["sdptool", "browse", address], timeout=30.0)

    services: List[SdpService] = []
    name: Optional[str] = None
    channel: Optional[int] = None
    classes: List[str] = []
    in_classes = False

    def finish() -> None:
        if name is not None:
            services.append(SdpService(name, channel, tuple(classes)))

    for line in out.splitlines():
        text = line.strip()
        if in_classes:
            if text.startswith('"') or text.startswith("UUID"):
                classes.append(text)
                continue
            in_classes = False

        if text.startswith("Service Name:"):
            finish()
            name = text.split(":", 1)[1].strip()
            channel = None
            classes = []
        elif text == "Service Class ID List:" and name is not None:
            in_classes = True
        elif text.startswith("Channel:") and name is not None:
            try:
                channel = int(text.split(":", 1)[1].strip())
            except ValueError:
                channel = None
    finish()
    return services


def terminate_process(proc: Optional[subprocess.Popen],
                      timeout: float = 2.0) -> None:
    """Stop a child process, escalating to kill if it does not exit."""

    if proc is None:
        return
    try:
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait(timeout=timeout)
    except (OSError, subprocess.SubprocessError) as exc:
        print(f"[bluetooth] WARNING: could not stop process: {exc}",
              file=sys.stderr)


def _pump_output(stream: IO[str], lines: "queue.Queue[Optional[str]]") \
        -> None:
    """Forward a child's output lines into a queue; None marks the end."""

    try:
        for line in iter(stream.readline, ""):
            lines.put(line)
    except (OSError, ValueError):
        pass
    finally:
        lines.put(None)


class ChannelNegotiator:
    """Bind a local rfcomm slot to the first channel the peer accepts."""

    def __init__(self, slot: str = "rfcomm0",
                 channels: Sequence[int] = CANDIDATE_CHANNELS,
                 timeout: float = CONNECT_TIMEOUT,
                 use_sudo: bool = True,
                 settle_time: float = 2.0) -> None:
        self.slot = slot
        self.channels = tuple(channels)
        self.timeout = timeout
        self.use_sudo = use_sudo
        self.settle_time = settle_time

    @property
    def device_path(self) -> str:
        return f"/dev/{self.slot}"

    def rfcomm_command(self, *args: str) -> List[str]:
        prefix = ["sudo"] if self.use_sudo else []
        return prefix + ["rfcomm", *args]

    def release(self) -> None:
        run_command(self.rfcomm_command("release", self.slot))

    def negotiate(self, address: str) -> Connection:
        """Try every candidate channel; return the first that connects."""

        print(f"[bluetooth] Connecting to Bluetooth device {address}")
        if not connect_device(address):
            print("[bluetooth] WARNING: bluetoothctl connect did not report "
                  "success; trying RFCOMM anyway", file=sys.stderr)
        if self.settle_time > 0:
            time.sleep(self.settle_time)

        for channel in self.channels:
            self.release()
            print(f"[bluetooth] Trying RFCOMM channel {channel} on "
                  f"{self.device_path}...")
            proc = self._spawn(address, channel)
            if self._wait_for_success(proc):
                print(f"[bluetooth] Connected on channel {channel}")
                return Connection(address=address, channel=channel,
                                  slot=self.slot,
                                  device_path=self.device_path,
                                  process=proc)
            print(f"[bluetooth] Channel {channel} failed", file=sys.stderr)

        # Undo the pre-connect so the phone is not left linked to us.
        self.release()
        disconnect_device(address)
        raise ChannelNegotiationFailed(
            f"Could not open an RFCOMM channel to {address} (tried "
            f"{', '.join(str(c) for c in self.channels)}). Start the "
            "Bluetooth server app on the phone so it listens for SPP "
            f"connections ({SPP_UUID}) and try again."
        )

    def _spawn(self, address: str, channel: int) -> subprocess.Popen:
        cmd = self.rfcomm_command("connect", self.slot, address, str(channel))
        try:
            return subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as exc:
            raise ChannelNegotiationFailed(
                f"Command not found: {cmd[0]}. Install bluez "
                "(sudo apt install bluez)."
            ) from exc

    def _wait_for_success(self, proc: subprocess.Popen) -> bool:
        """Race the child's output against the timeout.

        Success is the marker line; the child exiting or the deadline
        passing is a failure, and the child is always stopped then.
        """

        lines: "queue.Queue[Optional[str]]" = queue.Queue()
        reader = threading.Thread(target=_pump_output,
                                  args=(proc.stdout, lines),
                                  daemon=True, name="rfcomm-output")
        reader.start()

        deadline = time.monotonic() + self.timeout
        success = False
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    print(f"[bluetooth] No answer within {self.timeout:.1f}s",
                          file=sys.stderr)
                    return False
                try:
                    line = lines.get(timeout=remaining)
                except queue.Empty:
                    continue
                if line is None:
                    return False
                print(f"[bluetooth] rfcomm: {line.rstrip()}")
                if SUCCESS_MARKER in line:
                    success = True
                    return True
        finally:
            if not success:
                terminate_process(proc)
