"""
Monitoring Session - lifecycle owner for one streaming session.

Wires the frame source, transport, dispatcher, frame pipeline and alert
state machine together. At most one session runs at a time: start() always
fully stops the previous one first, and every start builds a new transport,
pipeline and cancellation event.
"""

import asyncio
import logging
from typing import Callable, Optional

from .alerts import AlertStateMachine
from .config import ClientConfig
from .dispatcher import MessageDispatcher, RenderSink
from .errors import NotConnectedError, TransportError
from .message import START_STREAM_COMMAND
from .pipeline import FrameEncoder, FramePipeline
from .ws_client import ConnectionState, WebSocketTransport

logger = logging.getLogger(__name__)


class MonitoringSession:
    """
    Start/stop/restart of the streaming session.

    Reconnection is an explicit decision: after a transport fault the
    session keeps its pipeline running (frames are dropped) until the owner
    calls restart() or stop().
    """

    def __init__(
        self,
        config: ClientConfig,
        source_factory: Callable[[], object],
        encoder: FrameEncoder,
        render_sink: RenderSink,
        alerts: AlertStateMachine,
        transport_factory: Optional[Callable[[], WebSocketTransport]] = None,
        on_notice: Optional[Callable[[str], None]] = None,
    ):
        """
        Initialize the session owner.

        Args:
            config: Client configuration
            source_factory: Returns an opened frame source; raises DeviceError
                if the device is unavailable
            encoder: Frame encoder
            render_sink: Receives frames relayed by the server
            alerts: Alert state machine shared across restarts
            transport_factory: Builds a fresh transport for each start
            on_notice: Called with a user-visible message on transport faults
        """
        self.config = config
        self.source_factory = source_factory
        self.encoder = encoder
        self.render_sink = render_sink
        self.alerts = alerts
        self.transport_factory = transport_factory or self._default_transport
        self.on_notice = on_notice

        self._lifecycle_lock = asyncio.Lock()
        self._source = None
        self._transport: Optional[WebSocketTransport] = None
        self._dispatcher: Optional[MessageDispatcher] = None
        self._pipeline: Optional[FramePipeline] = None
        self._cancel: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

        self.faulted = False
        self.sessions_started = 0

    def _default_transport(self) -> WebSocketTransport:
        return WebSocketTransport(
            self.config.server_url,
            open_timeout=self.config.connect_timeout,
            close_timeout=self.config.close_timeout,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def connection_state(self) -> ConnectionState:
        if self._transport is None:
            return ConnectionState.DISCONNECTED
        return self._transport.state

    @property
    def pipeline(self) -> Optional[FramePipeline]:
        return self._pipeline

    @property
    def transport(self) -> Optional[WebSocketTransport]:
        return self._transport

    async def start(self) -> None:
        """
        Start streaming.

        Raises:
            DeviceError: if the frame source cannot be opened
            ConnectError: if the server cannot be reached
        """
        async with self._lifecycle_lock:
            await self._stop_locked()

            logger.info("Starting monitoring session...")
            loop = asyncio.get_running_loop()
            source = await loop.run_in_executor(None, self.source_factory)

            transport = self.transport_factory()
            dispatcher = MessageDispatcher(self.render_sink, self.alerts, on_fault=self._on_fault)
            transport.subscribe(dispatcher.on_inbound_message, dispatcher.on_transport_error)

            try:
                await transport.connect()
            except BaseException:
                transport.unsubscribe()
                source.release()
                raise

            self.alerts.attach_transport(transport)
            try:
                await transport.send_text(START_STREAM_COMMAND)
            except (NotConnectedError, TransportError) as e:
                logger.warning(f"Failed to send {START_STREAM_COMMAND}: {e}")

            pipeline = FramePipeline(
                source,
                self.encoder,
                transport,
                interval_s=self.config.frame_interval_s,
                quality=self.config.jpeg_quality,
            )
            cancel = asyncio.Event()

            self._source = source
            self._transport = transport
            self._dispatcher = dispatcher
            self._pipeline = pipeline
            self._cancel = cancel
            self._task = asyncio.create_task(pipeline.run_loop(cancel))
            self.faulted = False
            self.sessions_started += 1

            logger.info("Monitoring session started")

    async def stop(self) -> None:
        """Stop streaming. Safe to call when nothing is running."""
        async with self._lifecycle_lock:
            await self._stop_locked()

    async def restart(self) -> None:
        """Reconnect with a fresh transport and pipeline."""
        logger.info("Restarting monitoring session...")
        await self.start()

    async def _stop_locked(self) -> None:
        if self._task is None and self._transport is None and self._source is None:
            return

        logger.info("Stopping monitoring session...")

        # Take ownership so every handle is released exactly once
        task, self._task = self._task, None
        cancel, self._cancel = self._cancel, None
        transport, self._transport = self._transport, None
        source, self._source = self._source, None
        pipeline = self._pipeline
        self._dispatcher = None

        try:
            if cancel is not None:
                cancel.set()
            if task is not None and pipeline is not None:
                await self._await_pipeline(task, pipeline)
        finally:
            try:
                self.alerts.detach_transport()
                if transport is not None:
                    await transport.disconnect()
                    transport.unsubscribe()
            finally:
                if source is not None:
                    loop = asyncio.get_running_loop()
                    await loop.run_in_executor(None, source.release)
                logger.info("Monitoring session stopped")

    async def _await_pipeline(self, task: asyncio.Task, pipeline: FramePipeline) -> None:
        """Wait a bounded time for the in-flight cycle, then for the loop to exit."""
        timeout = self.config.stop_timeout
        if not await pipeline.wait_idle(timeout):
            logger.warning(f"Frame pipeline did not stop within {timeout:.1f}s, cancelling")
            task.cancel()

        try:
            await asyncio.wait_for(task, timeout=timeout)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        except asyncio.TimeoutError:
            logger.warning("Frame pipeline loop cancelled after timeout")
        except Exception as e:
            logger.error(f"Frame pipeline ended with error: {e}")

    async def _on_fault(self, error: TransportError) -> None:
        self.faulted = True
        notice = f"Connection to server lost ({error.kind.value}). Restart the stream to reconnect."
        logger.warning(notice)
        if self.on_notice is not None:
            self.on_notice(notice)

    async def acknowledge(self) -> bool:
        """User acknowledgement of the current alert."""
        return await self.alerts.acknowledge()

    async def close(self) -> None:
        """Stop the session and silence any alert feedback."""
        await self.stop()
        await self.alerts.close()

    def get_stats(self) -> dict:
        """Get statistics for every component of the running session."""
        return {
            "running": self.running,
            "faulted": self.faulted,
            "sessions_started": self.sessions_started,
            "connection": self._transport.get_stats() if self._transport else None,
            "pipeline": self._pipeline.get_stats() if self._pipeline else None,
            "dispatcher": self._dispatcher.get_stats() if self._dispatcher else None,
            "alerts": self.alerts.get_stats(),
        }
