"""
Frame Gate - Validates camera captures before they are encoded.

A failed or broken read is not an error for the pipeline: it is reported as
"no frame this cycle". The gate also notices when the camera has produced
nothing usable for a while so the stall can be logged once.
"""

import time
import logging
from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class FrameValidationResult:
    """Result of frame validation."""
    valid: bool
    reason: str
    frame: Optional[np.ndarray] = None


class FrameGate:
    """
    Quality gate for frames returned by cv2.VideoCapture.read().

    Rejects:
    - failed reads and None frames
    - empty arrays
    - frames that are not (H, W, 3)
    - frames whose shape differs from the previous valid frame
    """

    def __init__(
        self,
        stall_timeout_ms: int = 2000,
        allow_shape_change: bool = False,
    ):
        """
        Initialize FrameGate.

        Args:
            stall_timeout_ms: Time in ms of consecutive invalid frames after
                which the source is reported as stalled.
            allow_shape_change: If True, a resolution change is accepted.
        """
        self.stall_timeout_ms = stall_timeout_ms
        self.allow_shape_change = allow_shape_change

        self._invalid_since: Optional[float] = None
        self._last_valid_shape: Optional[Tuple[int, ...]] = None
        self._stall_reported = False
        self._total_invalid_count = 0
        self._total_valid_count = 0

    def validate(self, ok: bool, frame: Optional[np.ndarray]) -> FrameValidationResult:
        """
        Validate a frame from cap.read().

        Args:
            ok: The boolean return value from cap.read()
            frame: The frame array from cap.read()

        Returns:
            FrameValidationResult with valid flag, reason, and frame if valid.
        """
        if not ok:
            return self._reject("read_failed")
        if frame is None:
            return self._reject("frame_none")
        if frame.size == 0:
            return self._reject("empty_frame")
        if frame.ndim != 3:
            return self._reject("invalid_dims")
        if frame.shape[2] != 3:
            return self._reject("invalid_channels")

        if (
            not self.allow_shape_change
            and self._last_valid_shape is not None
            and frame.shape != self._last_valid_shape
        ):
            logger.warning(
                f"Frame shape changed from {self._last_valid_shape} to {frame.shape}"
            )
            return self._reject("shape_changed")

        self._total_valid_count += 1
        self._last_valid_shape = frame.shape
        self._invalid_since = None
        self._stall_reported = False
        return FrameValidationResult(True, "ok", frame)

    def _reject(self, reason: str) -> FrameValidationResult:
        self._total_invalid_count += 1
        if self._invalid_since is None:
            self._invalid_since = time.monotonic()
        logger.debug(f"Frame rejected: {reason}")
        return FrameValidationResult(False, reason)

    def check_stalled(self) -> bool:
        """
        Report a stalled source once per invalid streak.

        Returns:
            True the first time the current invalid streak exceeds
            stall_timeout_ms, False otherwise.
        """
        if self._invalid_since is None or self._stall_reported:
            return False

        elapsed_ms = (time.monotonic() - self._invalid_since) * 1000
        if elapsed_ms < self.stall_timeout_ms:
            return False

        self._stall_reported = True
        logger.warning(f"Camera produced no usable frame for {elapsed_ms:.0f}ms")
        return True

    def reset(self) -> None:
        """Reset tracking state."""
        self._invalid_since = None
        self._last_valid_shape = None
        self._stall_reported = False

    def get_stats(self) -> dict:
        """Get validation statistics."""
        total = self._total_valid_count + self._total_invalid_count
        return {
            "total_frames": total,
            "valid_frames": self._total_valid_count,
            "invalid_frames": self._total_invalid_count,
            "valid_rate": self._total_valid_count / total if total > 0 else 0.0,
            "last_valid_shape": self._last_valid_shape,
        }
