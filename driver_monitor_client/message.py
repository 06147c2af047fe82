"""
Message Schema and Parsing for client-server communication.

Defines the logical message types exchanged over the WebSocket and parses
inbound JSON control messages into typed records:

- Alert:        {"level": int, "message": str, "elapsed_time": float}
- Reset:        {"type": "reset_confirm"}
- Anything else that is a JSON object is an informational event.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Union

from .errors import MalformedMessageError

logger = logging.getLogger(__name__)

START_STREAM_COMMAND = "start_stream"
RESET_CONFIRM_TYPE = "reset_confirm"


class MessageKind(Enum):
    """Wire-level type tag of a logical message."""
    TEXT = "text"
    BINARY = "binary"


class FrameKind(Enum):
    """Logical type tag of an outbound frame."""
    VIDEO = "video"


class AlertLevel(IntEnum):
    """Ordered alert severity. CRITICAL is the only level that escalates."""
    INFO = 0
    WARNING = 1
    CRITICAL = 2


@dataclass
class InboundMessage:
    """A fully reassembled inbound message."""
    kind: MessageKind
    payload: Union[bytes, str]

    @property
    def is_text(self) -> bool:
        return self.kind is MessageKind.TEXT


@dataclass
class OutboundFrame:
    """An encoded frame waiting to be sent once."""
    payload: bytes
    kind: FrameKind = FrameKind.VIDEO


@dataclass
class AlertRecord:
    """
    Server-reported condition.

    Attributes:
        level: Severity of the condition
        message: Human-readable description
        elapsed_time: Seconds the condition has lasted, as measured by the server
    """
    level: AlertLevel
    message: str = ""
    elapsed_time: float = 0.0

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'AlertRecord':
        """
        Build an alert from a decoded JSON object.

        Raises:
            MalformedMessageError: if level, message or elapsed_time have the
                wrong type or the level is unknown.
        """
        raw_level = d.get("level")
        if raw_level is None and d.get("type") == "alert":
            # Older servers send {"type": "alert", "message": ...} without a level
            raw_level = int(AlertLevel.CRITICAL)

        if isinstance(raw_level, bool) or not isinstance(raw_level, int):
            raise MalformedMessageError(f"Alert level must be an integer, got {raw_level!r}")
        try:
            level = AlertLevel(raw_level)
        except ValueError:
            raise MalformedMessageError(f"Unknown alert level {raw_level}") from None

        message = d.get("message", "")
        if not isinstance(message, str):
            raise MalformedMessageError(f"Alert message must be a string, got {message!r}")

        elapsed = d.get("elapsed_time", 0.0)
        if isinstance(elapsed, bool) or not isinstance(elapsed, (int, float)):
            raise MalformedMessageError(f"elapsed_time must be a number, got {elapsed!r}")

        return cls(level=level, message=message, elapsed_time=float(elapsed))


@dataclass
class ResetConfirmation:
    """Server confirmation that an acknowledged alert has been reset."""
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InfoEvent:
    """Well-formed control message with no alert or reset meaning."""
    payload: Dict[str, Any] = field(default_factory=dict)


ControlMessage = Union[AlertRecord, ResetConfirmation, InfoEvent]


def parse_control_message(text: str) -> ControlMessage:
    """
    Classify an inbound text payload.

    Args:
        text: Raw text message from the server

    Returns:
        AlertRecord, ResetConfirmation or InfoEvent

    Raises:
        MalformedMessageError: if the text is not a JSON object or carries a
            broken alert schema.
    """
    try:
        d = json.loads(text)
    except (TypeError, ValueError) as e:
        raise MalformedMessageError(f"Invalid JSON: {e}") from e

    if not isinstance(d, dict):
        raise MalformedMessageError(f"Expected JSON object, got {type(d).__name__}")

    msg_type = d.get("type")
    if msg_type is not None and not isinstance(msg_type, str):
        raise MalformedMessageError(f"type must be a string, got {type(msg_type).__name__}")

    if msg_type == RESET_CONFIRM_TYPE:
        return ResetConfirmation(payload=d)

    if "level" in d or msg_type == "alert":
        return AlertRecord.from_dict(d)

    return InfoEvent(payload=d)


def encode_reset_confirm() -> str:
    """Serialize the acknowledgement sent when the user dismisses an alert."""
    return json.dumps({"type": RESET_CONFIRM_TYPE})
