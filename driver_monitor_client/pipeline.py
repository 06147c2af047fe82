"""
Frame Pipeline - capture -> encode -> send at a fixed cadence.

Frames are never queued: while the connection is not open they are dropped,
so memory stays bounded no matter how long the server is unreachable. A
single-slot guard keeps encode/send cycles from overlapping.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import numpy as np

from .capture import DEFAULT_JPEG_QUALITY
from .errors import NotConnectedError
from .message import OutboundFrame
from .ws_client import WebSocketTransport

logger = logging.getLogger(__name__)

# ~30 frames per second
FRAME_INTERVAL_S = 0.033


class FrameSource(Protocol):
    def try_capture(self) -> Optional[np.ndarray]: ...


class FrameEncoder(Protocol):
    def encode(self, frame: np.ndarray, quality: int) -> bytes: ...


@dataclass
class PipelineStats:
    """Counters for the frame pipeline."""
    cycles: int = 0
    frames_captured: int = 0
    frames_empty: int = 0
    frames_sent: int = 0
    frames_dropped: int = 0
    cycle_errors: int = 0
    last_send_time: Optional[float] = None


class FramePipeline:
    """
    Pulls frames from a source and streams them through the transport.

    Blocking capture and encode calls run on the default executor so the
    receive loop keeps running while a frame is being read.
    """

    def __init__(
        self,
        source: FrameSource,
        encoder: FrameEncoder,
        transport: WebSocketTransport,
        interval_s: float = FRAME_INTERVAL_S,
        quality: int = DEFAULT_JPEG_QUALITY,
    ):
        """
        Initialize the pipeline.

        Args:
            source: Frame source with try_capture()
            encoder: Encoder with encode(frame, quality)
            transport: Transport used for outbound frames
            interval_s: Pause between cycles
            quality: JPEG quality passed to the encoder
        """
        self.source = source
        self.encoder = encoder
        self.transport = transport
        self.interval_s = interval_s
        self.quality = quality

        self._guard = asyncio.Semaphore(1)
        self.stats = PipelineStats()

    @property
    def guard_available(self) -> bool:
        """True when no cycle holds the guard."""
        return not self._guard.locked()

    async def run_loop(self, cancel: asyncio.Event) -> None:
        """
        Run cycles until cancel is set.

        A stop request interrupts the pause between cycles; a cycle that has
        already started is allowed to finish.
        """
        logger.info(f"Frame pipeline started (interval {self.interval_s * 1000:.0f}ms)")

        while not cancel.is_set():
            async with self._guard:
                try:
                    await self._run_cycle()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.stats.cycle_errors += 1
                    logger.error(f"Error in frame cycle: {e}")

            try:
                await asyncio.wait_for(cancel.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass

        logger.info("Frame pipeline stopped")

    async def _run_cycle(self) -> None:
        """Capture, encode and send a single frame."""
        self.stats.cycles += 1
        loop = asyncio.get_running_loop()

        frame = await loop.run_in_executor(None, self.source.try_capture)
        if frame is None:
            self.stats.frames_empty += 1
            return
        self.stats.frames_captured += 1

        payload = await loop.run_in_executor(None, self.encoder.encode, frame, self.quality)
        outbound = OutboundFrame(payload)

        if not self.transport.is_open:
            self.stats.frames_dropped += 1
            return

        try:
            await self.transport.send_binary(outbound.payload)
        except NotConnectedError:
            # Connection closed between the check and the send
            self.stats.frames_dropped += 1
            return

        self.stats.frames_sent += 1
        self.stats.last_send_time = time.time()

    async def wait_idle(self, timeout: float) -> bool:
        """
        Wait until no cycle holds the guard.

        Args:
            timeout: Maximum time to wait

        Returns:
            True if the guard was free within timeout
        """
        try:
            await asyncio.wait_for(self._guard.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Frame cycle still running after {timeout:.1f}s")
            return False
        self._guard.release()
        return True

    def get_stats(self) -> dict:
        """Get pipeline statistics."""
        return {
            "cycles": self.stats.cycles,
            "frames_captured": self.stats.frames_captured,
            "frames_empty": self.stats.frames_empty,
            "frames_sent": self.stats.frames_sent,
            "frames_dropped": self.stats.frames_dropped,
            "cycle_errors": self.stats.cycle_errors,
            "last_send_time": self.stats.last_send_time,
        }
