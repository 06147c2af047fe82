"""
Message Dispatcher - routes inbound messages.

Binary messages are relayed frames for the render sink; text messages are
JSON control messages for the alert state machine. A bad message is logged
and dropped, never allowed to end the stream.
"""

import logging
from typing import Awaitable, Callable, Optional, Protocol

from .alerts import AlertStateMachine
from .errors import MalformedMessageError, TransportError
from .message import (
    AlertRecord,
    InboundMessage,
    MessageKind,
    ResetConfirmation,
    parse_control_message,
)

logger = logging.getLogger(__name__)


class RenderSink(Protocol):
    def display(self, payload: bytes) -> None: ...


class MessageDispatcher:
    """Single consumer of a transport's event surface."""

    def __init__(
        self,
        render_sink: RenderSink,
        alerts: AlertStateMachine,
        on_fault: Optional[Callable[[TransportError], Awaitable[None]]] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            render_sink: Receives relayed frame payloads
            alerts: Receives alerts and reset confirmations
            on_fault: Called after a transport error has been handled
        """
        self.render_sink = render_sink
        self.alerts = alerts
        self.on_fault = on_fault

        self._frames = 0
        self._alerts = 0
        self._resets = 0
        self._info = 0
        self._malformed = 0
        self._render_errors = 0

    async def on_inbound_message(self, message: InboundMessage) -> None:
        """Route one complete inbound message."""
        if message.kind is MessageKind.BINARY:
            self._frames += 1
            try:
                self.render_sink.display(message.payload)
            except Exception as e:
                self._render_errors += 1
                logger.warning(f"Render sink rejected frame: {e}")
            return

        try:
            control = parse_control_message(message.payload)
        except MalformedMessageError as e:
            self._malformed += 1
            logger.warning(f"Discarding malformed message: {e}")
            return

        if isinstance(control, AlertRecord):
            self._alerts += 1
            await self.alerts.handle_alert(control)
        elif isinstance(control, ResetConfirmation):
            self._resets += 1
            await self.alerts.handle_reset_confirm()
        else:
            self._info += 1
            logger.info(f"Server message: {control.payload}")

    async def on_transport_error(self, error: TransportError) -> None:
        """Handle a terminal receive failure."""
        logger.warning(f"Transport error ({error.kind.value}): {error}")
        await self.alerts.handle_disconnect()
        if self.on_fault is not None:
            await self.on_fault(error)

    def get_stats(self) -> dict:
        return {
            "frames": self._frames,
            "alerts": self._alerts,
            "resets": self._resets,
            "info": self._info,
            "malformed": self._malformed,
            "render_errors": self._render_errors,
        }
