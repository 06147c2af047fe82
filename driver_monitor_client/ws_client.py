"""
WebSocket transport for server communication.

Handles:
- One duplex WebSocket connection per transport instance
- Serialized binary/text sends
- Reassembly of fragmented inbound messages
- Bounded graceful close with forced release on every exit path
- A single registered consumer for inbound messages and transport errors

Reconnection is never automatic: the session owner decides.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedOK,
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

from .errors import (
    ConnectError,
    MalformedMessageError,
    NotConnectedError,
    TransportError,
    TransportErrorKind,
)
from .message import InboundMessage, MessageKind

logger = logging.getLogger(__name__)

# Relayed JPEG frames can be large
MAX_MESSAGE_SIZE = 8 * 1024 * 1024

MessageHandler = Callable[[InboundMessage], Awaitable[None]]
ErrorHandler = Callable[[TransportError], Awaitable[None]]


class ConnectionState(Enum):
    """Lifecycle of the transport's connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    FAULTED = "faulted"


@dataclass
class ConnectionStats:
    """Statistics about WebSocket connection."""
    connected: bool = False
    connect_time: Optional[float] = None
    disconnect_time: Optional[float] = None
    messages_sent: int = 0
    messages_received: int = 0
    messages_failed: int = 0
    last_send_time: Optional[float] = None


class FragmentAssembler:
    """
    Accumulates wire fragments into complete logical messages.

    All fragments of one message share a type; a fragment of another type
    before the end-of-message fragment is a protocol violation.
    """

    def __init__(self):
        self._kind: Optional[MessageKind] = None
        self._buffer = bytearray()

    @property
    def in_progress(self) -> bool:
        return self._kind is not None

    def feed(self, fragment: Union[bytes, str], fin: bool = False) -> Optional[InboundMessage]:
        """
        Add one fragment.

        Args:
            fragment: str for text fragments, bytes for binary fragments
            fin: True if this fragment ends the message

        Returns:
            The complete InboundMessage when fin is set, otherwise None.

        Raises:
            MalformedMessageError: if the fragment type differs from the
                message in progress.
        """
        if isinstance(fragment, str):
            kind = MessageKind.TEXT
            data = fragment.encode("utf-8")
        else:
            kind = MessageKind.BINARY
            data = bytes(fragment)

        if self._kind is None:
            self._kind = kind
        elif kind is not self._kind:
            expected = self._kind
            self.reset()
            raise MalformedMessageError(
                f"{kind.value} fragment inside a {expected.value} message"
            )

        self._buffer.extend(data)

        if fin:
            return self.finish()
        return None

    def finish(self) -> InboundMessage:
        """Emit the accumulated message and reset for the next one."""
        if self._kind is None:
            raise MalformedMessageError("End of message without any fragment")

        kind = self._kind
        data = bytes(self._buffer)
        self.reset()

        if kind is MessageKind.TEXT:
            try:
                return InboundMessage(kind, data.decode("utf-8"))
            except UnicodeDecodeError as e:
                raise MalformedMessageError(f"Text message is not valid UTF-8: {e}") from e
        return InboundMessage(kind, data)

    def reset(self) -> None:
        """Drop any partial message."""
        self._kind = None
        self._buffer = bytearray()


class WebSocketTransport:
    """
    Owner of exactly one duplex WebSocket connection.

    Features:
    - Idempotent connect, rejected while an attempt is in flight
    - Send lock so logical messages never interleave on the wire
    - Single background receive task with in-order delivery
    - Graceful close bounded by close_timeout, socket aborted otherwise
    """

    def __init__(
        self,
        server_url: str,
        open_timeout: float = 10.0,
        close_timeout: float = 5.0,
        ping_interval: Optional[float] = 20.0,
        ping_timeout: Optional[float] = 10.0,
    ):
        """
        Initialize WebSocket transport.

        Args:
            server_url: WebSocket server URL (e.g., ws://127.0.0.1:8000/video_stream)
            open_timeout: Maximum time for the opening handshake
            close_timeout: Maximum time for the closing handshake
            ping_interval: Keepalive ping interval, None to disable
            ping_timeout: Keepalive pong timeout, None to disable
        """
        self.server_url = server_url
        self.open_timeout = open_timeout
        self.close_timeout = close_timeout
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout

        # Connection state
        self._ws: Optional[ClientConnection] = None
        self._state = ConnectionState.DISCONNECTED
        self._send_lock = asyncio.Lock()
        self._assembler = FragmentAssembler()
        self._receive_task: Optional[asyncio.Task] = None

        # Single consumer
        self._on_message: Optional[MessageHandler] = None
        self._on_error: Optional[ErrorHandler] = None

        # Statistics
        self.stats = ConnectionStats()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        """Check if the connection can carry sends."""
        return self._state is ConnectionState.OPEN and self._ws is not None

    def subscribe(self, on_message: MessageHandler, on_error: ErrorHandler) -> None:
        """
        Register the consumer of inbound messages and transport errors.

        Raises:
            RuntimeError: if a consumer is already registered
        """
        if self._on_message is not None or self._on_error is not None:
            raise RuntimeError("Transport already has a subscriber")
        self._on_message = on_message
        self._on_error = on_error

    def unsubscribe(self) -> None:
        self._on_message = None
        self._on_error = None

    async def connect(self) -> None:
        """
        Open the connection and start the receive loop.

        No-op if already open.

        Raises:
            ConnectError: if an attempt is already in flight or the handshake fails
        """
        if self._state is ConnectionState.OPEN:
            return
        if self._state is ConnectionState.CONNECTING:
            raise ConnectError("Connection attempt already in progress")
        if self._state is ConnectionState.CLOSING:
            raise ConnectError("Connection is closing")

        # A faulted connection still holds its socket until released
        if self._ws is not None:
            await self._release()

        self._state = ConnectionState.CONNECTING
        logger.info(f"Connecting to {self.server_url}...")

        try:
            self._ws = await connect(
                self.server_url,
                open_timeout=self.open_timeout,
                close_timeout=self.close_timeout,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                max_size=MAX_MESSAGE_SIZE,
            )
        except InvalidURI as e:
            self._state = ConnectionState.DISCONNECTED
            logger.error(f"Invalid server URL: {e}")
            raise ConnectError(f"Invalid server URL: {self.server_url}") from e
        except InvalidHandshake as e:
            self._state = ConnectionState.DISCONNECTED
            logger.error(f"Handshake rejected: {e}")
            raise ConnectError(f"Handshake rejected: {e}") from e
        except (OSError, asyncio.TimeoutError) as e:
            self._state = ConnectionState.DISCONNECTED
            logger.error(f"Connection refused - is the server running? ({e!r})")
            raise ConnectError(f"Could not reach {self.server_url}") from e

        self._assembler.reset()
        self._state = ConnectionState.OPEN
        self.stats.connected = True
        self.stats.connect_time = time.time()
        logger.info("WebSocket connected successfully")

        self._receive_task = asyncio.create_task(self._receive_loop(self._ws))

    async def send_binary(self, payload: bytes) -> None:
        """
        Send one binary message.

        Raises:
            NotConnectedError: if the connection is not open
            TransportError: if the socket fails during the write
        """
        await self._send(bytes(payload))

    async def send_text(self, text: str) -> None:
        """
        Send one text message.

        Raises:
            NotConnectedError: if the connection is not open
            TransportError: if the socket fails during the write
        """
        await self._send(text)

    async def _send(self, message: Union[bytes, str]) -> None:
        if not self.is_open:
            raise NotConnectedError(f"Cannot send while {self._state.value}")

        async with self._send_lock:
            # State may have changed while waiting for the lock
            ws = self._ws
            if ws is None or self._state is not ConnectionState.OPEN:
                raise NotConnectedError(f"Cannot send while {self._state.value}")
            try:
                await ws.send(message)
            except ConnectionClosed as e:
                self.stats.messages_failed += 1
                raise TransportError(TransportErrorKind.CONNECTION_LOST, f"Send failed: {e}") from e
            except WebSocketException as e:
                self.stats.messages_failed += 1
                raise TransportError(TransportErrorKind.PROTOCOL, f"Send failed: {e}") from e

        self.stats.messages_sent += 1
        self.stats.last_send_time = time.time()

    async def disconnect(self) -> None:
        """
        Close the connection.

        Performs the closing handshake when open, bounded by close_timeout,
        and always releases the socket.
        """
        if self._ws is None:
            self._state = ConnectionState.CLOSED
            return

        was_open = self._state is ConnectionState.OPEN
        self._state = ConnectionState.CLOSING
        try:
            if was_open:
                logger.info("Closing WebSocket connection...")
                await asyncio.wait_for(self._ws.close(), timeout=self.close_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Close handshake timed out after {self.close_timeout:.1f}s")
        except (OSError, WebSocketException) as e:
            logger.warning(f"Error during close: {e}")
        finally:
            await self._release()
            logger.info("WebSocket disconnected")

    async def _release(self) -> None:
        """Cancel the receive loop and drop the socket."""
        task = self._receive_task
        self._receive_task = None
        if task is not None and task is not asyncio.current_task():
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        ws = self._ws
        self._ws = None
        if ws is not None and ws.transport is not None:
            ws.transport.abort()

        self._assembler.reset()
        self._state = ConnectionState.CLOSED
        self.stats.connected = False
        self.stats.disconnect_time = time.time()

    async def _receive_loop(self, ws: ClientConnection) -> None:
        """Read messages fragment by fragment and deliver them in order."""
        try:
            while True:
                async for fragment in ws.recv_streaming():
                    self._assembler.feed(fragment)
                try:
                    message = self._assembler.finish()
                except MalformedMessageError as e:
                    logger.warning(f"Discarding inbound message: {e}")
                    continue

                self.stats.messages_received += 1
                await self._deliver(message)

        except asyncio.CancelledError:
            raise
        except ConnectionClosedOK:
            logger.info("Connection closed normally")
            self._finish_receive(ConnectionState.CLOSED)
        except ConnectionClosed as e:
            await self._fault(TransportErrorKind.CONNECTION_LOST, f"Connection lost: {e}")
        except MalformedMessageError as e:
            await self._fault(TransportErrorKind.PROTOCOL, f"Protocol violation: {e}")
        except (OSError, WebSocketException) as e:
            await self._fault(TransportErrorKind.IO, f"Receive failed: {e}")

    def _finish_receive(self, state: ConnectionState) -> bool:
        """Record the end of the receive loop. Returns False during a local close."""
        self._assembler.reset()
        self.stats.connected = False
        self.stats.disconnect_time = time.time()
        if self._state is ConnectionState.CLOSING:
            return False
        self._state = state
        return True

    async def _fault(self, kind: TransportErrorKind, reason: str) -> None:
        if not self._finish_receive(ConnectionState.FAULTED):
            logger.debug(f"Ignoring receive error during close: {reason}")
            return
        logger.error(reason)
        await self._report(TransportError(kind, reason))

    async def _deliver(self, message: InboundMessage) -> None:
        if self._on_message is None:
            logger.debug(f"No subscriber, dropping {message.kind.value} message")
            return
        try:
            await self._on_message(message)
        except Exception:
            logger.exception("Inbound message handler failed")

    async def _report(self, error: TransportError) -> None:
        if self._on_error is None:
            return
        try:
            await self._on_error(error)
        except Exception:
            logger.exception("Transport error handler failed")

    def get_stats(self) -> dict:
        """Get connection statistics."""
        return {
            "state": self._state.value,
            "connected": self.is_open,
            "connect_time": self.stats.connect_time,
            "disconnect_time": self.stats.disconnect_time,
            "messages_sent": self.stats.messages_sent,
            "messages_received": self.stats.messages_received,
            "messages_failed": self.stats.messages_failed,
            "last_send_time": self.stats.last_send_time,
        }
