"""
Camera capture and JPEG encoding.

CameraSource wraps cv2.VideoCapture behind the frame-source contract
(try_capture returns a frame or None); JpegEncoder compresses frames for
the wire.
"""

import logging
import threading
from typing import Optional

import cv2
import numpy as np

from .errors import DeviceError, EncodeError
from .frame_gate import FrameGate

logger = logging.getLogger(__name__)

DEFAULT_JPEG_QUALITY = 75


class CameraSource:
    """Local camera opened with OpenCV."""

    def __init__(
        self,
        camera_index: int = 0,
        width: int = 640,
        height: int = 480,
        frame_gate: Optional[FrameGate] = None,
    ):
        """
        Initialize camera source. The device is not opened until open().

        Args:
            camera_index: Camera device index
            width: Requested capture width
            height: Requested capture height
            frame_gate: Validator for captured frames
        """
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self.frame_gate = frame_gate or FrameGate()

        self._cap: Optional[cv2.VideoCapture] = None
        # release() may run while a capture is in flight on the executor
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    def open(self) -> None:
        """
        Open the camera device.

        Raises:
            DeviceError: if the device cannot be opened
        """
        logger.info(f"Opening camera index: {self.camera_index}")
        cap = cv2.VideoCapture(self.camera_index)

        if not cap.isOpened():
            cap.release()
            raise DeviceError(f"Camera {self.camera_index} not detected")

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)

        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        fps = cap.get(cv2.CAP_PROP_FPS)
        logger.info(f"Camera opened: {width}x{height} @ {fps:.1f} fps")

        with self._lock:
            self._cap = cap
        self.frame_gate.reset()

    def try_capture(self) -> Optional[np.ndarray]:
        """
        Read one frame.

        Returns:
            A BGR frame, or None if the camera produced nothing usable.
        """
        with self._lock:
            if self._cap is None:
                return None
            ok, frame = self._cap.read()

        result = self.frame_gate.validate(ok, frame)
        if not result.valid:
            self.frame_gate.check_stalled()
            return None
        return result.frame

    def release(self) -> None:
        """Release the device. Safe to call more than once."""
        with self._lock:
            cap = self._cap
            self._cap = None
        if cap is not None:
            cap.release()
            logger.info(f"Camera {self.camera_index} released")


class JpegEncoder:
    """Compresses BGR frames to JPEG bytes."""

    def encode(self, frame: np.ndarray, quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
        """
        Encode a frame.

        Args:
            frame: BGR image
            quality: JPEG quality on a 0-100 scale

        Returns:
            JPEG payload

        Raises:
            EncodeError: if OpenCV rejects the frame
        """
        quality = max(0, min(100, int(quality)))
        ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
        if not ok:
            raise EncodeError(f"JPEG encoding failed for frame of shape {frame.shape}")
        return buf.tobytes()
