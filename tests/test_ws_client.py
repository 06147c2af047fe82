import asyncio

import pytest
from websockets.asyncio.server import serve

from driver_monitor_client.errors import (
    ConnectError,
    MalformedMessageError,
    NotConnectedError,
    TransportErrorKind,
)
from driver_monitor_client.message import MessageKind
from driver_monitor_client.ws_client import (
    ConnectionState,
    FragmentAssembler,
    WebSocketTransport,
)


class Inbox:
    def __init__(self):
        self.messages = []
        self.errors = []
        self.arrived = asyncio.Event()

    async def on_message(self, message):
        self.messages.append(message)
        self.arrived.set()

    async def on_error(self, error):
        self.errors.append(error)
        self.arrived.set()

    async def wait(self, count=1, timeout=2.0):
        async def _wait():
            while len(self.messages) + len(self.errors) < count:
                self.arrived.clear()
                await self.arrived.wait()
        await asyncio.wait_for(_wait(), timeout)


def url_for(server) -> str:
    port = server.sockets[0].getsockname()[1]
    return f"ws://127.0.0.1:{port}/video_stream"


# Reassembly

def test_fragments_reassemble_in_order():
    assembler = FragmentAssembler()
    assert assembler.feed(b"f1") is None
    assert assembler.feed(b"f2") is None
    message = assembler.feed(b"f3", fin=True)

    assert message.kind is MessageKind.BINARY
    assert message.payload == b"f1f2f3"
    assert not assembler.in_progress


def test_text_fragments_reassemble_to_str():
    assembler = FragmentAssembler()
    assembler.feed('{"level":')
    message = assembler.feed(' 2}', fin=True)
    assert message.kind is MessageKind.TEXT
    assert message.payload == '{"level": 2}'


def test_single_fragment_message():
    message = FragmentAssembler().feed(b"whole", fin=True)
    assert message.payload == b"whole"


def test_mixed_fragment_types_rejected_and_buffer_cleared():
    assembler = FragmentAssembler()
    assembler.feed(b"binary")
    with pytest.raises(MalformedMessageError):
        assembler.feed("text")
    assert not assembler.in_progress

    message = assembler.feed("fresh", fin=True)
    assert message.payload == "fresh"


def test_reset_discards_partial_message():
    assembler = FragmentAssembler()
    assembler.feed(b"stale")
    assembler.reset()
    assert assembler.feed(b"new", fin=True).payload == b"new"


# Transport against a local server

def test_send_requires_open_connection():
    async def runner():
        transport = WebSocketTransport("ws://127.0.0.1:9/none")
        with pytest.raises(NotConnectedError):
            await transport.send_binary(b"frame")
        with pytest.raises(NotConnectedError):
            await transport.send_text("hello")

    asyncio.run(runner())


def test_connect_refused_raises_connect_error():
    async def runner():
        async with serve(lambda ws: ws.wait_closed(), "127.0.0.1", 0) as server:
            url = url_for(server)
        # Server is gone, port is closed
        transport = WebSocketTransport(url, open_timeout=2.0)
        with pytest.raises(ConnectError):
            await transport.connect()
        assert transport.state is ConnectionState.DISCONNECTED

    asyncio.run(runner())


def test_invalid_url_raises_connect_error():
    async def runner():
        transport = WebSocketTransport("http://not-a-websocket")
        with pytest.raises(ConnectError):
            await transport.connect()

    asyncio.run(runner())


def test_round_trip_binary_and_text():
    async def runner():
        received = []

        async def echo(ws):
            async for msg in ws:
                received.append(msg)
                await ws.send(msg)

        async with serve(echo, "127.0.0.1", 0) as server:
            inbox = Inbox()
            transport = WebSocketTransport(url_for(server))
            transport.subscribe(inbox.on_message, inbox.on_error)

            await transport.connect()
            assert transport.state is ConnectionState.OPEN

            await transport.send_binary(b"\xff\xd8jpeg")
            await transport.send_text('{"type":"reset_confirm"}')
            await inbox.wait(2)

            assert received == [b"\xff\xd8jpeg", '{"type":"reset_confirm"}']
            assert [m.kind for m in inbox.messages] == [MessageKind.BINARY, MessageKind.TEXT]
            assert inbox.messages[0].payload == b"\xff\xd8jpeg"
            assert transport.stats.messages_sent == 2
            assert transport.stats.messages_received == 2

            await transport.disconnect()
            assert transport.state is ConnectionState.CLOSED
            assert inbox.errors == []

    asyncio.run(runner())


def test_concurrent_sends_arrive_whole_and_in_order():
    async def runner():
        received = []
        all_in = asyncio.Event()
        expected = []
        for i in range(20):
            expected.append(bytes([i]) * 150_000)
            expected.append(f'{{"type": "status", "seq": {i}}}')

        async def collect(ws):
            async for msg in ws:
                received.append(msg)
                if len(received) == len(expected):
                    all_in.set()

        async with serve(collect, "127.0.0.1", 0) as server:
            transport = WebSocketTransport(url_for(server))
            await transport.connect()

            await asyncio.gather(*[
                transport.send_binary(m) if isinstance(m, bytes) else transport.send_text(m)
                for m in expected
            ])
            await asyncio.wait_for(all_in.wait(), 5.0)

            assert received == expected
            assert transport.stats.messages_sent == len(expected)
            await transport.disconnect()

    asyncio.run(runner())


def test_send_waiting_for_lock_fails_once_connection_closes():
    async def runner():
        async def idle(ws):
            await ws.wait_closed()

        async with serve(idle, "127.0.0.1", 0) as server:
            transport = WebSocketTransport(url_for(server))
            await transport.connect()

            await transport._send_lock.acquire()
            pending = asyncio.create_task(transport.send_binary(b"frame"))
            await asyncio.sleep(0.01)
            assert not pending.done()

            await transport.disconnect()
            transport._send_lock.release()

            with pytest.raises(NotConnectedError):
                await pending
            assert transport.stats.messages_sent == 0

    asyncio.run(runner())


def test_connect_is_idempotent_when_open():
    async def runner():
        connections = []

        async def handler(ws):
            connections.append(ws)
            await ws.wait_closed()

        async with serve(handler, "127.0.0.1", 0) as server:
            transport = WebSocketTransport(url_for(server))
            await transport.connect()
            await transport.connect()
            await asyncio.sleep(0.05)
            assert len(connections) == 1
            await transport.disconnect()

    asyncio.run(runner())


def test_connect_while_connecting_raises():
    async def runner():
        async with serve(lambda ws: ws.wait_closed(), "127.0.0.1", 0) as server:
            transport = WebSocketTransport(url_for(server))
            first = asyncio.create_task(transport.connect())
            await asyncio.sleep(0)
            assert transport.state is ConnectionState.CONNECTING
            with pytest.raises(ConnectError):
                await transport.connect()
            await first
            await transport.disconnect()

    asyncio.run(runner())


def test_fragmented_server_message_yields_one_message():
    async def runner():
        async def handler(ws):
            await ws.send([b"f1", b"f2", b"f3"])
            await ws.send(["{\"level\":", " 1}"])
            await ws.wait_closed()

        async with serve(handler, "127.0.0.1", 0) as server:
            inbox = Inbox()
            transport = WebSocketTransport(url_for(server))
            transport.subscribe(inbox.on_message, inbox.on_error)
            await transport.connect()
            await inbox.wait(2)

            assert len(inbox.messages) == 2
            assert inbox.messages[0].payload == b"f1f2f3"
            assert inbox.messages[1].payload == '{"level": 1}'
            await transport.disconnect()

    asyncio.run(runner())


def test_server_close_is_normal_termination():
    async def runner():
        async def handler(ws):
            await ws.send("bye")

        async with serve(handler, "127.0.0.1", 0) as server:
            inbox = Inbox()
            transport = WebSocketTransport(url_for(server))
            transport.subscribe(inbox.on_message, inbox.on_error)
            await transport.connect()
            await inbox.wait(1)

            for _ in range(100):
                if transport.state is ConnectionState.CLOSED:
                    break
                await asyncio.sleep(0.01)

            assert transport.state is ConnectionState.CLOSED
            assert inbox.errors == []
            with pytest.raises(NotConnectedError):
                await transport.send_text("late")
            await transport.disconnect()

    asyncio.run(runner())


def test_abnormal_close_reports_transport_error():
    async def runner():
        async def handler(ws):
            await ws.close(code=1011, reason="analysis crashed")

        async with serve(handler, "127.0.0.1", 0) as server:
            inbox = Inbox()
            transport = WebSocketTransport(url_for(server))
            transport.subscribe(inbox.on_message, inbox.on_error)
            await transport.connect()
            await inbox.wait(1)

            assert transport.state is ConnectionState.FAULTED
            assert len(inbox.errors) == 1
            assert inbox.errors[0].kind is TransportErrorKind.CONNECTION_LOST

            await transport.disconnect()
            assert transport.state is ConnectionState.CLOSED

    asyncio.run(runner())


def test_reconnect_after_disconnect_uses_fresh_connection():
    async def runner():
        connections = []

        async def handler(ws):
            connections.append(ws)
            async for msg in ws:
                await ws.send(msg)

        async with serve(handler, "127.0.0.1", 0) as server:
            inbox = Inbox()
            transport = WebSocketTransport(url_for(server))
            transport.subscribe(inbox.on_message, inbox.on_error)

            await transport.connect()
            await transport.disconnect()
            await transport.connect()
            await transport.send_text("again")
            await inbox.wait(1)

            assert len(connections) == 2
            assert inbox.messages[-1].payload == "again"
            await transport.disconnect()

    asyncio.run(runner())


def test_consumer_failure_does_not_end_receive_loop():
    async def runner():
        async def handler(ws):
            await ws.send("first")
            await ws.send("second")
            await ws.wait_closed()

        async with serve(handler, "127.0.0.1", 0) as server:
            seen = []
            done = asyncio.Event()

            async def on_message(message):
                seen.append(message.payload)
                if message.payload == "first":
                    raise RuntimeError("consumer bug")
                done.set()

            async def on_error(error):
                pass

            transport = WebSocketTransport(url_for(server))
            transport.subscribe(on_message, on_error)
            await transport.connect()
            await asyncio.wait_for(done.wait(), 2.0)

            assert seen == ["first", "second"]
            assert transport.state is ConnectionState.OPEN
            await transport.disconnect()

    asyncio.run(runner())


def test_only_one_subscriber():
    async def noop(_):
        pass

    transport = WebSocketTransport("ws://127.0.0.1:9/none")
    transport.subscribe(noop, noop)
    with pytest.raises(RuntimeError):
        transport.subscribe(noop, noop)

    transport.unsubscribe()
    transport.subscribe(noop, noop)


def test_disconnect_without_connection_is_safe():
    async def runner():
        transport = WebSocketTransport("ws://127.0.0.1:9/none")
        await transport.disconnect()
        await transport.disconnect()
        assert transport.state is ConnectionState.CLOSED

    asyncio.run(runner())
