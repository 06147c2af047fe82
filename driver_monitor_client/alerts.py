"""
Alert State Machine - escalation and acknowledgement of server alerts.

    IDLE --alert S--> ACTIVE(S) --alert S' > S--> ACTIVE(S')
    ACTIVE --user ack--> AWAITING_ACK --server reset_confirm--> IDLE
    ACTIVE --user ack, no connection--> IDLE

Only CRITICAL alerts escalate (looping sound plus a time-bounded flash);
lower levels are logged. The receive loop and the user's acknowledge action
both mutate this state, so every transition runs under one lock.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from .errors import NotConnectedError, TransportError
from .message import AlertLevel, AlertRecord, encode_reset_confirm
from .ws_client import WebSocketTransport

logger = logging.getLogger(__name__)


class AudioSink(Protocol):
    def play_looping(self, name: str) -> None: ...

    def stop(self) -> None: ...


class AlertIndicator(Protocol):
    def show_alert(self, record: AlertRecord) -> None: ...

    def set_flash(self, on: bool) -> None: ...

    def set_ack_enabled(self, enabled: bool) -> None: ...

    def clear_alert(self) -> None: ...


class AlertPhase(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    AWAITING_ACK = "awaiting_ack"


@dataclass(frozen=True)
class AlertState:
    """Snapshot of the alert state. ack_pending implies active."""
    active: bool = False
    severity: Optional[AlertLevel] = None
    ack_pending: bool = False


class AlertStateMachine:
    """
    Tracks the current alert and drives audio/visual feedback.

    One instance lives for the whole client process and survives stream
    restarts; the acknowledgement channel is attached per connection.
    """

    def __init__(
        self,
        audio: AudioSink,
        indicator: AlertIndicator,
        sound_name: str = "alert",
        flash_toggles: int = 10,
        flash_interval_s: float = 0.3,
        ack_timeout_s: float = 10.0,
    ):
        """
        Initialize the state machine.

        Args:
            audio: Sink for the looping alert sound
            indicator: Visual surface for the alert overlay and flash
            sound_name: Sound played on critical alerts
            flash_toggles: Number of on/off toggles per flash sequence
            flash_interval_s: Time between flash toggles
            ack_timeout_s: How long to wait for the server's reset
                confirmation before resetting locally
        """
        self.audio = audio
        self.indicator = indicator
        self.sound_name = sound_name
        self.flash_toggles = flash_toggles
        self.flash_interval_s = flash_interval_s
        self.ack_timeout_s = ack_timeout_s

        self._lock = asyncio.Lock()
        self._phase = AlertPhase.IDLE
        self._severity: Optional[AlertLevel] = None
        self._transport: Optional[WebSocketTransport] = None

        self._flash_task: Optional[asyncio.Task] = None
        self._ack_timer: Optional[asyncio.Task] = None

        self.current: Optional[AlertRecord] = None
        self.escalation_count = 0
        self.alerts_received = 0

    @property
    def phase(self) -> AlertPhase:
        return self._phase

    @property
    def state(self) -> AlertState:
        return AlertState(
            active=self._phase is not AlertPhase.IDLE,
            severity=self._severity,
            ack_pending=self._phase is AlertPhase.AWAITING_ACK,
        )

    @property
    def flashing(self) -> bool:
        return self._flash_task is not None and not self._flash_task.done()

    def attach_transport(self, transport: WebSocketTransport) -> None:
        """Use this transport for acknowledgements."""
        self._transport = transport

    def detach_transport(self) -> None:
        self._transport = None

    async def handle_alert(self, record: AlertRecord) -> None:
        """Apply a new alert from the server."""
        async with self._lock:
            self.alerts_received += 1

            if self._phase is AlertPhase.AWAITING_ACK:
                logger.info(
                    f"Alert while awaiting reset confirmation "
                    f"({record.level.name}): {record.message}"
                )
                return

            if self._phase is AlertPhase.IDLE:
                self._phase = AlertPhase.ACTIVE
                self._severity = record.level
                self.current = record
                self._escalate(record)
                return

            if record.level > self._severity:
                logger.info(f"Alert raised from {self._severity.name} to {record.level.name}")
                self._severity = record.level
                self.current = record
                self._escalate(record)
                return

            if record.level == self._severity:
                self.current = record
            logger.info(
                f"Alert {record.level.name} while {self._severity.name} active: "
                f"{record.message} ({record.elapsed_time:.1f}s)"
            )

    def _escalate(self, record: AlertRecord) -> None:
        if record.level < AlertLevel.CRITICAL:
            logger.info(
                f"Alert {record.level.name}: {record.message} ({record.elapsed_time:.1f}s)"
            )
            return

        self.escalation_count += 1
        logger.warning(f"CRITICAL alert: {record.message} ({record.elapsed_time:.1f}s)")

        self.indicator.show_alert(record)
        self.indicator.set_ack_enabled(True)
        self.audio.play_looping(self.sound_name)

        if not self.flashing:
            self._flash_task = asyncio.create_task(self._flash())

    async def _flash(self) -> None:
        """Alternate the flash a fixed number of times, then stop."""
        on = False
        try:
            for _ in range(self.flash_toggles):
                on = not on
                self.indicator.set_flash(on)
                await asyncio.sleep(self.flash_interval_s)
        finally:
            self.indicator.set_flash(False)

    def _stop_escalation(self) -> None:
        self.audio.stop()
        if self._flash_task is not None:
            self._flash_task.cancel()
            self._flash_task = None
        self.indicator.set_flash(False)

    async def acknowledge(self) -> bool:
        """
        User acknowledgement of the active alert.

        Returns:
            False if there was nothing to acknowledge (control disabled).
        """
        async with self._lock:
            if self._phase is not AlertPhase.ACTIVE:
                logger.debug(f"Acknowledge ignored in phase {self._phase.value}")
                return False
            if self._severity is not AlertLevel.CRITICAL:
                logger.debug(f"Acknowledge ignored for {self._severity.name} alert")
                return False

            self._stop_escalation()
            self.indicator.set_ack_enabled(False)

            transport = self._transport
            if transport is None or not transport.is_open:
                logger.info("No connection, alert reset locally")
                self._reset_locked()
                return True

            self._phase = AlertPhase.AWAITING_ACK
            try:
                await transport.send_text(encode_reset_confirm())
            except (NotConnectedError, TransportError) as e:
                logger.warning(f"Acknowledgement not delivered ({e}), alert reset locally")
                self._reset_locked()
                return True

            self._ack_timer = asyncio.create_task(self._ack_timeout())
            logger.info("Acknowledgement sent, waiting for server confirmation")
            return True

    async def _ack_timeout(self) -> None:
        await asyncio.sleep(self.ack_timeout_s)
        async with self._lock:
            self._ack_timer = None
            if self._phase is AlertPhase.AWAITING_ACK:
                logger.warning(
                    f"No reset confirmation after {self.ack_timeout_s:.1f}s, alert reset locally"
                )
                self._reset_locked()

    async def handle_reset_confirm(self) -> bool:
        """
        Server confirmed the reset of an acknowledged alert.

        Returns:
            True if this completed a pending acknowledgement.
        """
        async with self._lock:
            if self._phase is not AlertPhase.AWAITING_ACK:
                logger.info(f"Reset confirmation ignored in phase {self._phase.value}")
                return False
            logger.info("Server confirmed alert reset")
            self._reset_locked()
            return True

    async def handle_disconnect(self) -> None:
        """Connection lost: a pending acknowledgement can no longer complete."""
        async with self._lock:
            if self._phase is AlertPhase.AWAITING_ACK:
                logger.info("Connection lost while awaiting confirmation, alert reset locally")
                self._reset_locked()

    async def reset(self) -> None:
        """Reset to IDLE from any phase."""
        async with self._lock:
            self._reset_locked()

    def _reset_locked(self) -> None:
        self._stop_escalation()
        if self._ack_timer is not None:
            self._ack_timer.cancel()
            self._ack_timer = None

        self._phase = AlertPhase.IDLE
        self._severity = None
        self.current = None

        self.indicator.clear_alert()
        self.indicator.set_ack_enabled(True)

    async def close(self) -> None:
        """Stop feedback and background tasks."""
        async with self._lock:
            self._stop_escalation()
            if self._ack_timer is not None:
                self._ack_timer.cancel()
                self._ack_timer = None

    def get_stats(self) -> dict:
        return {
            "phase": self._phase.value,
            "severity": self._severity.name if self._severity is not None else None,
            "alerts_received": self.alerts_received,
            "escalations": self.escalation_count,
        }
