import asyncio

from driver_monitor_client.alerts import AlertPhase, AlertStateMachine
from driver_monitor_client.dispatcher import MessageDispatcher
from driver_monitor_client.errors import TransportError, TransportErrorKind
from driver_monitor_client.message import AlertLevel, InboundMessage, MessageKind

from .fakes import FakeTransport, RecordingAudio, RecordingIndicator, RecordingRenderSink


def make_dispatcher(on_fault=None):
    audio = RecordingAudio()
    alerts = AlertStateMachine(audio, RecordingIndicator(), flash_toggles=2, flash_interval_s=0.01)
    sink = RecordingRenderSink()
    return MessageDispatcher(sink, alerts, on_fault=on_fault), sink, alerts, audio


def text(payload: str) -> InboundMessage:
    return InboundMessage(MessageKind.TEXT, payload)


def test_binary_goes_to_render_sink():
    async def runner():
        dispatcher, sink, alerts, _ = make_dispatcher()
        await dispatcher.on_inbound_message(InboundMessage(MessageKind.BINARY, b"\xff\xd8frame"))

        assert sink.payloads == [b"\xff\xd8frame"]
        assert alerts.phase is AlertPhase.IDLE

    asyncio.run(runner())


def test_critical_alert_from_idle():
    async def runner():
        dispatcher, _, alerts, audio = make_dispatcher()
        await dispatcher.on_inbound_message(text('{"level":2,"message":"drowsy","elapsed_time":3.5}'))

        assert alerts.phase is AlertPhase.ACTIVE
        assert alerts.state.severity is AlertLevel.CRITICAL
        assert alerts.escalation_count == 1
        assert audio.played == ["alert"]
        await alerts.close()

    asyncio.run(runner())


def test_warning_while_critical_is_log_only():
    async def runner():
        dispatcher, _, alerts, audio = make_dispatcher()
        await dispatcher.on_inbound_message(text('{"level":2,"message":"drowsy","elapsed_time":3.5}'))
        await dispatcher.on_inbound_message(text('{"level":1,"message":"yawn","elapsed_time":1.0}'))

        assert alerts.state.severity is AlertLevel.CRITICAL
        assert alerts.escalation_count == 1
        assert len(audio.played) == 1
        await alerts.close()

    asyncio.run(runner())


def test_malformed_text_is_discarded():
    async def runner():
        dispatcher, sink, alerts, _ = make_dispatcher()
        await dispatcher.on_inbound_message(text('{"level":'))

        assert alerts.phase is AlertPhase.IDLE
        assert sink.payloads == []
        assert dispatcher.get_stats()["malformed"] == 1

    asyncio.run(runner())


def test_non_string_type_is_discarded_as_malformed():
    async def runner():
        dispatcher, sink, alerts, _ = make_dispatcher()
        await dispatcher.on_inbound_message(text('{"type": ["x"]}'))
        await dispatcher.on_inbound_message(text('{"type": {}}'))

        assert alerts.phase is AlertPhase.IDLE
        assert sink.payloads == []
        assert dispatcher.get_stats()["malformed"] == 2

    asyncio.run(runner())


def test_info_message_is_ignored():
    async def runner():
        dispatcher, _, alerts, _ = make_dispatcher()
        await dispatcher.on_inbound_message(text('{"type":"status","message":"stream started"}'))

        assert alerts.phase is AlertPhase.IDLE
        assert dispatcher.get_stats()["info"] == 1

    asyncio.run(runner())


def test_reset_confirmation_completes_ack():
    async def runner():
        dispatcher, _, alerts, _ = make_dispatcher()
        alerts.attach_transport(FakeTransport(open_=True))
        await dispatcher.on_inbound_message(text('{"level":2,"message":"drowsy","elapsed_time":3.5}'))
        await alerts.acknowledge()
        assert alerts.phase is AlertPhase.AWAITING_ACK

        await dispatcher.on_inbound_message(text('{"type":"reset_confirm"}'))
        assert alerts.phase is AlertPhase.IDLE

    asyncio.run(runner())


def test_render_failure_is_contained():
    class BrokenSink:
        def display(self, payload):
            raise ValueError("bad surface")

    async def runner():
        _, _, alerts, _ = make_dispatcher()
        dispatcher = MessageDispatcher(BrokenSink(), alerts)
        await dispatcher.on_inbound_message(InboundMessage(MessageKind.BINARY, b"x"))
        assert dispatcher.get_stats()["render_errors"] == 1

    asyncio.run(runner())


def test_transport_error_resets_pending_ack_and_notifies_owner():
    async def runner():
        faults = []

        async def on_fault(error):
            faults.append(error)

        dispatcher, _, alerts, _ = make_dispatcher(on_fault=on_fault)
        alerts.attach_transport(FakeTransport(open_=True))
        await dispatcher.on_inbound_message(text('{"level":2,"message":"drowsy","elapsed_time":3.5}'))
        await alerts.acknowledge()

        error = TransportError(TransportErrorKind.CONNECTION_LOST, "reset by peer")
        await dispatcher.on_transport_error(error)

        assert alerts.phase is AlertPhase.IDLE
        assert faults == [error]

    asyncio.run(runner())
