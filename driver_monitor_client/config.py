"""
Client configuration.

Defaults can be overridden through environment variables; main.py uses
them as defaults for its command-line arguments.

Environment Variables:
    MONITOR_SERVER_URL: WebSocket endpoint (default: ws://127.0.0.1:8000/video_stream)
    MONITOR_CAMERA_INDEX: Camera device index (default: 0)
    MONITOR_JPEG_QUALITY: JPEG quality 0-100 (default: 75)
    MONITOR_FRAME_INTERVAL_MS: Pause between frames in ms (default: 33)
    MONITOR_ACK_TIMEOUT: Seconds to wait for a reset confirmation (default: 10)
    MONITOR_SOUND_DIR: Directory holding alert sounds (default: ./assets)
    MONITOR_ALERT_SOUND: Alert sound name without .wav (default: alert)
"""

import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional


@dataclass
class ClientConfig:
    """Settings for one client process."""
    server_url: str = "ws://127.0.0.1:8000/video_stream"
    camera_index: int = 0
    frame_width: int = 640
    frame_height: int = 480
    jpeg_quality: int = 75
    frame_interval_ms: int = 33

    connect_timeout: float = 10.0
    close_timeout: float = 5.0
    stop_timeout: float = 2.0
    ack_timeout: float = 10.0

    flash_toggles: int = 10
    flash_interval_ms: int = 300
    sound_dir: str = "assets"
    alert_sound: str = "alert"

    preview: bool = False

    @property
    def frame_interval_s(self) -> float:
        return self.frame_interval_ms / 1000.0

    @property
    def flash_interval_s(self) -> float:
        return self.flash_interval_ms / 1000.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'ClientConfig':
        """
        Build a config from MONITOR_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ

        Raises:
            ValueError: if a variable cannot be converted to its field type
        """
        env = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = env.get(f"MONITOR_{f.name.upper()}")
            if raw is None:
                continue
            values[f.name] = _convert(f.name, raw, type(f.default))
        return cls(**values)


def _convert(name: str, raw: str, kind: type):
    if kind is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    try:
        return kind(raw)
    except ValueError:
        raise ValueError(f"MONITOR_{name.upper()}={raw!r} is not a valid {kind.__name__}") from None
