"""
Error taxonomy for the monitoring client.

Only errors that decide whether a session can run at all reach the user;
everything raised for a single frame or message is handled locally.
"""

from enum import Enum


class MonitorClientError(Exception):
    """Base class for all client errors."""


class ConnectError(MonitorClientError):
    """Handshake failed or a connection attempt is already in flight."""


class NotConnectedError(MonitorClientError):
    """A send was attempted without an open connection."""


class TransportErrorKind(Enum):
    """Classification of mid-stream transport failures."""
    CONNECTION_LOST = "connection_lost"
    PROTOCOL = "protocol"
    IO = "io"


class TransportError(MonitorClientError):
    """Mid-stream I/O failure. Ends the receive loop; never auto-reconnects."""

    def __init__(self, kind: TransportErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind


class MalformedMessageError(MonitorClientError):
    """Inbound payload failed structural parsing."""


class DeviceError(MonitorClientError):
    """Frame source could not be opened."""


class EncodeError(MonitorClientError):
    """Frame could not be compressed."""
