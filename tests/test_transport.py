"""Tests for the SSE session transport."""

import json
import os
import re
from collections import Counter

import anyio
import pytest
from mcp import types
from mcp.server.fastmcp import FastMCP
from mcp.shared.message import SessionMessage
import sse_starlette.sse as sse_module

from mcp_publish_tools.transport import (
    RouteStatus,
    SessionState,
    SessionTransportManager,
    new_session_id,
)

PING = json.dumps({"jsonrpc": "2.0", "id": 1, "method": "ping"}).encode()

SCOPE = {
    "type": "http",
    "method": "GET",
    "path": "/mcp",
    "root_path": "",
    "headers": [],
    "query_string": b"",
}


@pytest.fixture(autouse=True)
def fresh_sse_exit_event():
    """sse-starlette may keep its shutdown event bound to the first event loop."""
    app_status = getattr(sse_module, "AppStatus", None)
    if app_status is not None and hasattr(app_status, "should_exit_event"):
        app_status.should_exit_event = None
    yield


def _response(message_id: int) -> SessionMessage:
    return SessionMessage(types.JSONRPCMessage(
        types.JSONRPCResponse(jsonrpc="2.0", id=message_id, result={})
    ))


def _open(manager: SessionTransportManager, client_key: str = "10.0.0.1"):
    session, streams = manager.create_session(client_key)
    manager.mark_open(session.id)
    return session, streams


class FakeClient:
    """ASGI receive/send pair that disconnects on demand."""

    def __init__(self):
        self.sent = []
        self.disconnected = anyio.Event()

    async def receive(self):
        await self.disconnected.wait()
        return {"type": "http.disconnect"}

    async def send(self, message):
        self.sent.append(message)

    def body(self) -> bytes:
        return b"".join(m.get("body", b"") for m in self.sent if m["type"] == "http.response.body")


async def _wait_for_open_session(manager: SessionTransportManager) -> str:
    while not manager.session_ids or manager.get(manager.session_ids[0]) is None:
        await anyio.sleep(0.01)
    return manager.session_ids[0]


class TestSessionIds:

    def test_ids_are_256_bit_hex(self):
        assert re.fullmatch(r"[0-9a-f]{64}", new_session_id())

    def test_ten_thousand_opens_are_unique(self):
        """No two sessions ever share an id."""
        manager = SessionTransportManager()
        ids = {manager.create_session()[0].id for _ in range(10_000)}

        assert len(ids) == 10_000
        assert len(manager) == 10_000
        manager.close_all()

    def test_consecutive_ids_share_no_long_prefix(self):
        """An id says nothing about the next one."""
        ids = [new_session_id() for _ in range(10_000)]

        longest = max(len(os.path.commonprefix([a, b])) for a, b in zip(ids, ids[1:]))

        # 8 shared hex digits happen with probability 16**-8 per pair
        assert longest < 8

    def test_hex_digits_are_uniform(self):
        ids = [new_session_id() for _ in range(10_000)]
        counts = Counter("".join(ids))

        expected = 10_000 * 64 / 16
        assert set(counts) == set("0123456789abcdef")
        # roughly six standard deviations
        assert all(abs(n - expected) < 1_200 for n in counts.values())

    def test_bits_are_balanced_per_position(self):
        values = [int(new_session_id(), 16) for _ in range(10_000)]

        for bit in range(256):
            ones = sum((value >> bit) & 1 for value in values)
            assert abs(ones - 5_000) < 300, f"bit {bit} set {ones} times"

    def test_colliding_factory_is_retried(self):
        ids = iter(["dup", "dup", "fresh"])
        manager = SessionTransportManager(id_factory=lambda: next(ids))

        first, _ = manager.create_session()
        second, _ = manager.create_session()

        assert (first.id, second.id) == ("dup", "fresh")
        manager.close_all()


class TestLifecycle:

    def test_new_session_is_opening(self):
        manager = SessionTransportManager()
        session, _ = manager.create_session()

        assert session.state is SessionState.OPENING
        assert manager.get(session.id) is None
        manager.close_all()

    def test_mark_open(self):
        manager = SessionTransportManager()
        session, _ = _open(manager)

        assert session.state is SessionState.OPEN
        assert manager.get(session.id) is session
        manager.close_all()

    def test_close_removes_and_is_idempotent(self):
        manager = SessionTransportManager()
        session, _ = _open(manager)

        assert manager.close(session.id) is True
        assert manager.close(session.id) is False
        assert session.state is SessionState.CLOSED
        assert session.id not in manager

    def test_idle_session_ends_handler_input_at_once(self):
        manager = SessionTransportManager()
        session, streams = _open(manager)

        manager.close(session.id)

        with pytest.raises(anyio.EndOfStream):
            streams.read_stream.receive_nowait()


class TestRoute:

    @pytest.mark.anyio
    async def test_unknown_session_is_not_found(self):
        manager = SessionTransportManager()

        result = await manager.route("does-not-exist", PING)

        assert result.status is RouteStatus.NOT_FOUND
        assert result.http_status == 404

    @pytest.mark.anyio
    async def test_missing_session_id_is_not_found(self):
        result = await SessionTransportManager().route(None, PING)
        assert result.status is RouteStatus.NOT_FOUND

    @pytest.mark.anyio
    async def test_opening_session_is_not_routable(self):
        manager = SessionTransportManager()
        session, _ = manager.create_session()

        result = await manager.route(session.id, PING)

        assert result.status is RouteStatus.NOT_FOUND
        manager.close_all()

    @pytest.mark.anyio
    async def test_message_reaches_protocol_handler(self):
        manager = SessionTransportManager()
        session, streams = _open(manager)

        result = await manager.route(session.id, PING)
        received = streams.read_stream.receive_nowait()

        assert result.status is RouteStatus.ACCEPTED
        assert result.http_status == 202
        assert received.message.root.method == "ping"
        assert session.pending == {1}
        manager.close_all()

    @pytest.mark.anyio
    async def test_notifications_are_not_awaited(self):
        manager = SessionTransportManager()
        session, _ = _open(manager)

        body = json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}).encode()
        assert (await manager.route(session.id, body)).accepted

        assert session.pending == set()
        manager.close_all()

    @pytest.mark.anyio
    async def test_unparseable_body_is_invalid(self):
        """Bad JSON-RPC is rejected with 400 and the error is forwarded to the handler."""
        manager = SessionTransportManager()
        session, streams = _open(manager)

        result = await manager.route(session.id, b"not json")

        assert result.status is RouteStatus.INVALID
        assert isinstance(streams.read_stream.receive_nowait(), Exception)
        manager.close_all()

    @pytest.mark.anyio
    async def test_closed_session_is_not_found(self):
        manager = SessionTransportManager()
        session, _ = _open(manager)
        manager.close(session.id)

        result = await manager.route(session.id, PING)

        assert result.status is RouteStatus.NOT_FOUND

    @pytest.mark.anyio
    async def test_dead_stream_closes_session(self):
        """A handler that went away is detected on delivery."""
        manager = SessionTransportManager()
        session, streams = _open(manager)
        streams.read_stream.close()

        result = await manager.route(session.id, PING)

        assert result.status is RouteStatus.NOT_FOUND
        assert session.id not in manager


class TestDisconnectMidCall:

    @pytest.mark.anyio
    async def test_handler_input_stays_open_until_answered(self):
        """Closing a session with a call in flight leaves the handler running."""
        manager = SessionTransportManager()
        session, streams = _open(manager)

        assert (await manager.route(session.id, PING)).accepted
        request = await streams.read_stream.receive()
        assert request.message.root.id == 1

        manager.close(session.id)

        assert session.id not in manager
        assert (await manager.route(session.id, PING)).status is RouteStatus.NOT_FOUND
        with pytest.raises(anyio.WouldBlock):
            streams.read_stream.receive_nowait()

        dropped = []

        async def drain():
            dropped.append(await manager.discard_outbound(session, streams.outbound))

        with anyio.fail_after(5):
            async with anyio.create_task_group() as tg:
                tg.start_soon(drain)
                await streams.write_stream.send(_response(1))
                with pytest.raises(anyio.EndOfStream):
                    await streams.read_stream.receive()
                streams.write_stream.close()

        assert dropped == [1]
        assert session.pending == set()

    @pytest.mark.anyio
    async def test_shutdown_does_not_wait_for_calls(self):
        manager = SessionTransportManager()
        session, streams = _open(manager)
        await manager.route(session.id, PING)
        await streams.read_stream.receive()

        manager.close_all()

        with pytest.raises(anyio.EndOfStream):
            streams.read_stream.receive_nowait()

    @pytest.mark.anyio
    async def test_running_tool_finishes_after_client_leaves(self):
        """A real server keeps executing a tool call whose client disconnected."""
        server = FastMCP("disconnect-test")
        started = anyio.Event()
        release = anyio.Event()
        finished = []

        @server.tool()
        async def slow() -> str:
            started.set()
            await release.wait()
            finished.append(True)
            return "done"

        manager = SessionTransportManager()
        client = FakeClient()
        lowlevel = server._mcp_server

        async def serve():
            async with manager.connect_sse(SCOPE, client.receive, client.send, client_key="10.0.0.1") as streams:
                await lowlevel.run(streams[0], streams[1], lowlevel.create_initialization_options())

        def rpc(**payload) -> bytes:
            return json.dumps({"jsonrpc": "2.0", **payload}).encode()

        with anyio.fail_after(10):
            async with anyio.create_task_group() as tg:
                tg.start_soon(serve)
                session_id = await _wait_for_open_session(manager)

                await manager.route(session_id, rpc(
                    id=1,
                    method="initialize",
                    params={
                        "protocolVersion": types.LATEST_PROTOCOL_VERSION,
                        "capabilities": {},
                        "clientInfo": {"name": "test-client", "version": "1.0"},
                    },
                ))
                while b'"id":1' not in client.body():
                    await anyio.sleep(0.01)
                await manager.route(session_id, rpc(method="notifications/initialized"))
                await manager.route(session_id, rpc(
                    id=2, method="tools/call", params={"name": "slow", "arguments": {}},
                ))
                await started.wait()

                client.disconnected.set()
                while session_id in manager:
                    await anyio.sleep(0.01)
                assert (await manager.route(session_id, PING)).status is RouteStatus.NOT_FOUND

                release.set()

        assert finished == [True]
        assert b'"id":2' not in client.body()


class TestConnectSse:

    @pytest.mark.anyio
    async def test_endpoint_event_and_message_stream(self):
        """The stream announces the POST endpoint, then carries handler output."""
        manager = SessionTransportManager()
        client = FakeClient()

        with anyio.fail_after(10):
            async with manager.connect_sse(SCOPE, client.receive, client.send, client_key="10.0.0.1") as (read_stream, write_stream):
                session_id = await _wait_for_open_session(manager)

                assert (await manager.route(session_id, PING)).accepted
                request = await read_stream.receive()
                await write_stream.send(_response(request.message.root.id))

                while b"event: message" not in client.body():
                    await anyio.sleep(0.01)
                client.disconnected.set()

        assert b"event: endpoint" in client.body()
        assert f"/messages?sessionId={session_id}".encode() in client.body()
        assert b'"id":1' in client.body()
        assert session_id not in manager
