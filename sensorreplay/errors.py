"""Errors raised while replaying sensor data over Bluetooth."""

from __future__ import annotations


class ReplayError(RuntimeError):
    """Base class for all replay failures."""


class ConfigurationMissing(ReplayError):
    """Neither a device address nor a device name was configured."""


class DeviceNotFound(ReplayError):
    """No paired device matched the requested name or address."""


class ChannelNegotiationFailed(ReplayError):
    """Every candidate RFCOMM channel was tried without success."""


class MalformedData(ReplayError):
    """The measurement file could not be parsed."""


class NotConnected(ReplayError):
    """A message was sent while no serial port was open."""


class TransportWriteFailure(ReplayError):
    """Writing to the serial port failed.

    ``connection_lost`` is True when the failure means the Bluetooth link
    itself is gone, in which case further writes are pointless.
    """

    def __init__(self, message: str, connection_lost: bool = False) -> None:
        super().__init__(message)
        self.connection_lost = connection_lost
