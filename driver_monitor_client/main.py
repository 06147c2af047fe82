#!/usr/bin/env python3
"""
Driver Monitor Client - Main Entry Point

Streams the local camera to the drowsiness analysis server, shows the frames
the server relays back, and raises an alarm when the server reports a
critical alert.

Preview window keys:
    a       acknowledge the current alert
    s       start/stop streaming
    r       reconnect (restart the stream)
    q, Esc  quit

Usage:
    python -m driver_monitor_client.main --server ws://127.0.0.1:8000/video_stream --camera 0 --preview
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

import cv2

from .alerts import AlertStateMachine
from .capture import CameraSource, JpegEncoder
from .config import ClientConfig
from .errors import ConnectError, DeviceError
from .feedback import NullAudioSink, OpenCVDisplay, SoundDeviceAudioSink
from .session import MonitoringSession

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Preview refresh, independent of the streaming rate
PREVIEW_INTERVAL_S = 0.03


class MonitorClient:
    """
    Main client that integrates all components:
    - Camera capture and JPEG encoding
    - WebSocket streaming session
    - Alert state machine with sound and overlay
    - Optional OpenCV preview with keyboard controls
    """

    def __init__(self, config: ClientConfig, audio=None, display: Optional[OpenCVDisplay] = None):
        """
        Initialize the client.

        Args:
            config: Client configuration
            audio: Audio sink, defaults to sounddevice playback
            display: Render sink and alert indicator
        """
        self.config = config
        self.display = display or OpenCVDisplay()
        self.audio = audio or SoundDeviceAudioSink(config.sound_dir)

        self.alerts = AlertStateMachine(
            audio=self.audio,
            indicator=self.display,
            sound_name=config.alert_sound,
            flash_toggles=config.flash_toggles,
            flash_interval_s=config.flash_interval_s,
            ack_timeout_s=config.ack_timeout,
        )
        self.session = MonitoringSession(
            config=config,
            source_factory=self._open_camera,
            encoder=JpegEncoder(),
            render_sink=self.display,
            alerts=self.alerts,
            on_notice=self._on_notice,
        )

        self._running = False
        self._notice = ""

    def _open_camera(self) -> CameraSource:
        source = CameraSource(
            camera_index=self.config.camera_index,
            width=self.config.frame_width,
            height=self.config.frame_height,
        )
        source.open()
        return source

    def _on_notice(self, notice: str) -> None:
        self._notice = notice

    async def start_stream(self) -> bool:
        """Start streaming; report failures without ending the client."""
        try:
            await self.session.start()
        except DeviceError as e:
            logger.error(f"Camera unavailable: {e}")
            self._notice = str(e)
            return False
        except ConnectError as e:
            logger.error(f"Could not connect to server: {e}")
            self._notice = str(e)
            return False
        self._notice = ""
        return True

    async def toggle_stream(self) -> None:
        if self.session.running:
            await self.session.stop()
        else:
            await self.start_stream()

    async def run(self) -> None:
        """Run until stop() is called."""
        self._running = True
        await self.start_stream()

        if self.config.preview:
            await self._preview_loop()
        else:
            while self._running:
                await asyncio.sleep(0.5)

    async def _preview_loop(self) -> None:
        while self._running:
            self.display.render(self._status_line())

            key = cv2.waitKey(1) & 0xFF
            if key in (27, ord('q')):
                logger.info("Quit requested")
                self._running = False
            elif key in (ord('a'), ord('A')):
                await self.session.acknowledge()
            elif key in (ord('s'), ord('S')):
                await self.toggle_stream()
            elif key in (ord('r'), ord('R')):
                await self.start_stream()

            await asyncio.sleep(PREVIEW_INTERVAL_S)

    def _status_line(self) -> str:
        if self._notice:
            return self._notice
        state = self.session.connection_state.value
        streaming = "streaming" if self.session.running else "stopped"
        return f"Server: {state} | {streaming} | alert: {self.alerts.phase.value}"

    def request_stop(self) -> None:
        """Ask run() to return."""
        self._running = False

    async def stop(self) -> None:
        """Stop streaming and clean up resources."""
        logger.info("Stopping Driver Monitor Client...")
        self._running = False
        await self.session.close()
        if self.config.preview:
            self.display.close()
        logger.info("Driver Monitor Client stopped")


def build_parser(defaults: ClientConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Driver Monitor Client",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--server",
        type=str,
        default=defaults.server_url,
        help="WebSocket server URL",
    )
    parser.add_argument(
        "--camera",
        type=int,
        default=defaults.camera_index,
        help="Camera device index",
    )
    parser.add_argument(
        "--quality",
        type=int,
        default=defaults.jpeg_quality,
        help="JPEG quality (0-100)",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=defaults.frame_interval_ms,
        help="Pause between frames (ms)",
    )
    parser.add_argument(
        "--ack-timeout",
        type=float,
        default=defaults.ack_timeout,
        help="Seconds to wait for the server to confirm an acknowledged alert",
    )
    parser.add_argument(
        "--sound-dir",
        type=str,
        default=defaults.sound_dir,
        help="Directory holding the alert sound",
    )
    parser.add_argument(
        "--sound",
        type=str,
        default=defaults.alert_sound,
        help="Alert sound name (without .wav)",
    )
    parser.add_argument(
        "--mute",
        action="store_true",
        help="Do not play alert sounds",
    )
    parser.add_argument(
        "--preview",
        action="store_true",
        default=defaults.preview,
        help="Show preview window",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def config_from_args(args: argparse.Namespace, defaults: ClientConfig) -> ClientConfig:
    """Overlay parsed arguments onto the environment defaults."""
    return ClientConfig(
        server_url=args.server,
        camera_index=args.camera,
        frame_width=defaults.frame_width,
        frame_height=defaults.frame_height,
        jpeg_quality=args.quality,
        frame_interval_ms=args.interval,
        connect_timeout=defaults.connect_timeout,
        close_timeout=defaults.close_timeout,
        stop_timeout=defaults.stop_timeout,
        ack_timeout=args.ack_timeout,
        flash_toggles=defaults.flash_toggles,
        flash_interval_ms=defaults.flash_interval_ms,
        sound_dir=args.sound_dir,
        alert_sound=args.sound,
        preview=args.preview,
    )


async def main_async(config: ClientConfig, mute: bool = False) -> None:
    """Async main entry point."""
    client = MonitorClient(config, audio=NullAudioSink() if mute else None)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Shutdown signal received")
        client.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await client.run()
    except Exception as e:
        logger.error(f"Client error: {e}")
    finally:
        await client.stop()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    try:
        defaults = ClientConfig.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    parser = build_parser(defaults)
    args = parser.parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    config = config_from_args(args, defaults)

    try:
        asyncio.run(main_async(config, mute=args.mute))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
