"""
Feedback sinks: alert sound and the OpenCV view.

OpenCVDisplay only stores what it is given so the dispatcher never blocks
on drawing; the preview loop in main.py calls render() to decode the latest
relayed frame and paint the alert overlay.
"""

import logging
import os
import wave
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from .message import AlertRecord

logger = logging.getLogger(__name__)

_SAMPLE_DTYPES = {1: np.uint8, 2: np.int16, 4: np.int32}


def load_wav(path: str) -> Tuple[np.ndarray, int]:
    """
    Read a PCM WAV file.

    Returns:
        Tuple of (samples shaped (frames, channels), sample_rate)
    """
    with wave.open(path, "rb") as wf:
        channels = wf.getnchannels()
        width = wf.getsampwidth()
        rate = wf.getframerate()
        raw = wf.readframes(wf.getnframes())

    dtype = _SAMPLE_DTYPES.get(width)
    if dtype is None:
        raise ValueError(f"Unsupported sample width {width} in {path}")

    samples = np.frombuffer(raw, dtype=dtype).reshape(-1, channels)
    return samples, rate


class SoundDeviceAudioSink:
    """Plays named WAV files from a directory through sounddevice."""

    def __init__(self, sound_dir: str):
        """
        Args:
            sound_dir: Directory holding <name>.wav files
        """
        self.sound_dir = sound_dir
        self._cache: Dict[str, Tuple[np.ndarray, int]] = {}
        self._playing: Optional[str] = None

    @property
    def playing(self) -> Optional[str]:
        return self._playing

    def _load(self, name: str) -> Optional[Tuple[np.ndarray, int]]:
        if name in self._cache:
            return self._cache[name]

        path = os.path.join(self.sound_dir, f"{name}.wav")
        if not os.path.isfile(path):
            logger.error(f"Sound file not found: {path}")
            return None

        try:
            sound = load_wav(path)
        except (OSError, EOFError, ValueError, wave.Error) as e:
            logger.error(f"Could not read sound file {path}: {e}")
            return None

        self._cache[name] = sound
        return sound

    def play_looping(self, name: str) -> None:
        """Loop a sound until stop(). Restarting the playing sound is a no-op."""
        if self._playing == name:
            return

        sound = self._load(name)
        if sound is None:
            return

        # PortAudio is loaded on import
        import sounddevice as sd

        samples, rate = sound
        try:
            sd.play(samples, rate, loop=True)
        except sd.PortAudioError as e:
            logger.error(f"Audio playback failed: {e}")
            return
        self._playing = name
        logger.debug(f"Playing {name} on loop")

    def stop(self) -> None:
        if self._playing is None:
            return

        import sounddevice as sd

        try:
            sd.stop()
        except sd.PortAudioError as e:
            logger.warning(f"Audio stop failed: {e}")
        self._playing = None


class NullAudioSink:
    """Audio sink for headless runs; remembers what would have played."""

    def __init__(self):
        self.played: List[str] = []
        self.playing: Optional[str] = None

    def play_looping(self, name: str) -> None:
        self.played.append(name)
        self.playing = name

    def stop(self) -> None:
        self.playing = None


class OpenCVDisplay:
    """
    Render sink and alert indicator backed by an OpenCV window.
    """

    ALERT_COLOR = (0, 0, 255)
    FLASH_ALT_COLOR = (0, 255, 255)
    TEXT_COLOR = (255, 255, 255)

    def __init__(
        self,
        window_name: str = "Driver Monitor",
        placeholder_size: Tuple[int, int] = (480, 640),
    ):
        self.window_name = window_name
        self.placeholder_size = placeholder_size
        self.font = cv2.FONT_HERSHEY_SIMPLEX

        self._pending: Optional[bytes] = None
        self._frame: Optional[np.ndarray] = None
        self._alert: Optional[AlertRecord] = None
        self._flash = False
        self._ack_enabled = True

        self.frames_received = 0
        self.frames_decoded = 0
        self.decode_failures = 0

    # Render sink

    def display(self, payload: bytes) -> None:
        self._pending = payload
        self.frames_received += 1

    # Alert indicator

    def show_alert(self, record: AlertRecord) -> None:
        self._alert = record

    def set_flash(self, on: bool) -> None:
        self._flash = on

    def set_ack_enabled(self, enabled: bool) -> None:
        self._ack_enabled = enabled

    def clear_alert(self) -> None:
        self._alert = None
        self._flash = False

    @property
    def alert(self) -> Optional[AlertRecord]:
        return self._alert

    @property
    def flash_on(self) -> bool:
        return self._flash

    @property
    def ack_enabled(self) -> bool:
        return self._ack_enabled

    def _decode_pending(self) -> None:
        payload = self._pending
        if payload is None:
            return
        self._pending = None

        image = cv2.imdecode(np.frombuffer(payload, dtype=np.uint8), cv2.IMREAD_COLOR)
        if image is None:
            self.decode_failures += 1
            logger.debug(f"Could not decode relayed frame ({len(payload)} bytes)")
            return
        self._frame = image
        self.frames_decoded += 1

    def compose(self, status: str = "") -> np.ndarray:
        """Build the image to show: latest frame plus overlays."""
        self._decode_pending()

        if self._frame is None:
            h, w = self.placeholder_size
            canvas = np.zeros((h, w, 3), dtype=np.uint8)
        else:
            canvas = self._frame.copy()
        h, w = canvas.shape[:2]

        if status:
            cv2.putText(canvas, status, (10, 25), self.font, 0.6, self.TEXT_COLOR, 1)

        if self._alert is not None:
            cv2.rectangle(canvas, (0, h - 90), (w, h), self.ALERT_COLOR, -1)
            cv2.putText(
                canvas,
                self._alert.message or "ALERT",
                (15, h - 55),
                self.font, 0.8, self.TEXT_COLOR, 2
            )
            hint = "Press A to acknowledge" if self._ack_enabled else "Waiting for server..."
            cv2.putText(canvas, hint, (15, h - 20), self.font, 0.6, self.TEXT_COLOR, 1)

        if self._flash:
            cv2.rectangle(canvas, (0, 0), (w - 1, h - 1), self.FLASH_ALT_COLOR, 16)

        return canvas

    def render(self, status: str = "") -> None:
        """Show the composed image. Must be called from the preview loop."""
        cv2.imshow(self.window_name, self.compose(status))

    def close(self) -> None:
        try:
            cv2.destroyWindow(self.window_name)
        except cv2.error as e:
            logger.debug(f"Window already closed: {e}")
