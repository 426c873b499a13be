"""SSE session transport for the MCP protocol handler.

Owns the table of live SSE sessions. Each session pairs one long-lived SSE
response with two in-memory streams that the MCP low-level server reads from
and writes to:

    GET  /mcp                           -> connect_sse(): session created, "endpoint" event sent
    POST /messages?sessionId=<id>       -> route(): JSON-RPC envelope enqueued, 202 returned
    protocol handler output             -> "message" events on the SSE stream

A session moves OPENING -> OPEN -> CLOSED. Closing removes it from the table
straight away, so a POST can never reach a dead stream. Tool calls already in
flight keep running: the protocol handler's input stays open until every
request routed to the session has been answered, and those late answers are
drained and dropped.

The table is a plain dict. The gateway runs on one event loop and never
touches it from another thread.
"""

import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import quote

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp import types
from mcp.shared.message import SessionMessage
from pydantic import ValidationError
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

logger = logging.getLogger(__name__)

SESSION_ID_PARAM = "sessionId"
INBOUND_BUFFER_SIZE = 16
MAX_BODY_BYTES = 10 * 1024 * 1024


def new_session_id() -> str:
    """256 bits from the OS CSPRNG, hex encoded."""
    return secrets.token_hex(32)


class SessionState(str, Enum):
    OPENING = "opening"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class SessionStreams:
    """The protocol handler's side of a session, plus the outbound queue."""
    read_stream: MemoryObjectReceiveStream
    write_stream: MemoryObjectSendStream
    outbound: MemoryObjectReceiveStream


@dataclass
class Session:
    """One client's SSE connection."""
    id: str
    client_key: str
    inbound: MemoryObjectSendStream = field(repr=False)
    state: SessionState = SessionState.OPENING
    pending: set[types.RequestId] = field(default_factory=set)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RouteStatus(Enum):
    ACCEPTED = 202
    INVALID = 400
    NOT_FOUND = 404


@dataclass(frozen=True)
class RouteResult:
    """Outcome of routing one POSTed message."""
    status: RouteStatus
    message: str

    @property
    def http_status(self) -> int:
        return self.status.value

    @property
    def accepted(self) -> bool:
        return self.status is RouteStatus.ACCEPTED


class SessionTransportManager:
    """Creates, routes to and tears down SSE sessions."""

    def __init__(
        self,
        endpoint: str = "/messages",
        id_factory: Callable[[], str] = new_session_id,
    ):
        self._endpoint = endpoint
        self._id_factory = id_factory
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        """Return the session if it exists and is OPEN."""
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None or session.state is not SessionState.OPEN:
            return None
        return session

    # =====================
    # Lifecycle
    # =====================

    def create_session(self, client_key: str = "unknown") -> tuple[Session, SessionStreams]:
        """Register a new OPENING session and build its streams."""
        session_id = self._id_factory()
        while session_id in self._sessions:
            session_id = self._id_factory()

        inbound, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](
            INBOUND_BUFFER_SIZE
        )
        write_stream, outbound = anyio.create_memory_object_stream[SessionMessage](0)

        session = Session(id=session_id, client_key=client_key, inbound=inbound)
        self._sessions[session_id] = session
        logger.debug(f"Session {session_id[:8]}... opening for {client_key}")
        return session, SessionStreams(read_stream=read_stream, write_stream=write_stream, outbound=outbound)

    def mark_open(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None and session.state is SessionState.OPENING:
            session.state = SessionState.OPEN
            logger.info(f"Established SSE stream with session ID: {session_id[:8]}...")

    def close(self, session_id: str, force: bool = False) -> bool:
        """Remove the session from the table.

        The protocol handler keeps its input until the session's outstanding
        requests are answered, unless force is set.

        Returns:
            True if a session was removed, False if it was already gone
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.state = SessionState.CLOSED
        if force or not session.pending:
            session.inbound.close()
            logger.info(f"SSE transport closed for session {session_id[:8]}...")
        else:
            logger.info(
                f"SSE transport closed for session {session_id[:8]}..., "
                f"{len(session.pending)} call(s) still running"
            )
        return True

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.close(session_id, force=True)

    def _release_if_idle(self, session: Session) -> None:
        """End the protocol handler's input once a closed session owes no answers."""
        if session.state is SessionState.CLOSED and not session.pending:
            session.inbound.close()

    def _settle(self, session: Session, session_message: SessionMessage) -> Optional[types.RequestId]:
        """Mark the request a response answers as done. Returns the response id."""
        root = session_message.message.root
        if isinstance(root, (types.JSONRPCResponse, types.JSONRPCError)):
            session.pending.discard(root.id)
            return root.id
        return None

    # =====================
    # Inbound routing
    # =====================

    async def route(self, session_id: Optional[str], body: bytes) -> RouteResult:
        """Hand a POSTed JSON-RPC envelope to the session's protocol handler.

        Never raises: unknown or closed sessions map to NOT_FOUND so the client
        knows to open a new session; bodies that are not JSON-RPC map to INVALID.
        """
        session = self.get(session_id)
        if session is None:
            logger.warning(f"No active transport found for session ID: {session_id!r}")
            return RouteResult(RouteStatus.NOT_FOUND, "Session not found")

        try:
            message = types.JSONRPCMessage.model_validate_json(body)
        except ValidationError as err:
            logger.warning(f"Failed to parse message for session {session.id[:8]}...: {err}")
            await self._deliver(session, err)
            return RouteResult(RouteStatus.INVALID, "Could not parse message")

        if isinstance(message.root, types.JSONRPCRequest):
            session.pending.add(message.root.id)
        if not await self._deliver(session, SessionMessage(message)):
            return RouteResult(RouteStatus.NOT_FOUND, "Session not found")
        return RouteResult(RouteStatus.ACCEPTED, "Accepted")

    async def _deliver(self, session: Session, item: Any) -> bool:
        try:
            await session.inbound.send(item)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.warning(f"Stream for session {session.id[:8]}... is gone, closing it")
            self.close(session.id, force=True)
            return False
        return True

    async def handle_post_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI handler for POST /messages."""
        request = Request(scope, receive)
        session_id = request.query_params.get(SESSION_ID_PARAM)
        body = await _read_limited_body(request)
        if body is None:
            logger.warning(f"Rejected message over {MAX_BODY_BYTES} bytes for session {session_id!r}")
            response = JSONResponse({"error": "Payload too large"}, status_code=413)
            await response(scope, receive, send)
            return

        result = await self.route(session_id, body)
        if result.accepted:
            response = Response(result.message, status_code=result.http_status)
        else:
            response = JSONResponse({"error": result.message}, status_code=result.http_status)
        await response(scope, receive, send)

    # =====================
    # Outbound stream
    # =====================

    def endpoint_url(self, scope: Scope, session_id: str) -> str:
        root_path = scope.get("root_path", "")
        path = root_path.rstrip("/") + self._endpoint
        return f"{quote(path)}?{SESSION_ID_PARAM}={session_id}"

    async def discard_outbound(self, session: Session, outbound: MemoryObjectReceiveStream) -> int:
        """Consume responses that arrive after the client went away.

        Each answer settles its request; the last one ends the protocol
        handler's input. Runs until the handler closes its write stream.

        Returns:
            Number of messages dropped
        """
        dropped = 0
        async with outbound:
            async for session_message in outbound:
                dropped += 1
                message_id = self._settle(session, session_message)
                logger.debug(
                    f"Discarding response {message_id!r} for closed session {session.id[:8]}..."
                )
                self._release_if_idle(session)
        return dropped

    @asynccontextmanager
    async def connect_sse(self, scope: Scope, receive: Receive, send: Send, client_key: str = "unknown"):
        """Open a session and hold its SSE response for the lifetime of the block.

        Yields:
            (read_stream, write_stream) for the MCP server's run() loop
        """
        session, streams = self.create_session(client_key)
        sse_send, sse_receive = anyio.create_memory_object_stream[dict[str, Any]](0)

        async def sse_writer():
            async with sse_send:
                await sse_send.send({"event": "endpoint", "data": self.endpoint_url(scope, session.id)})
                self.mark_open(session.id)
                async for session_message in streams.outbound:
                    self._settle(session, session_message)
                    await sse_send.send({
                        "event": "message",
                        "data": session_message.message.model_dump_json(by_alias=True, exclude_none=True),
                    })

        async def response_wrapper():
            try:
                await EventSourceResponse(content=sse_receive, data_sender_callable=sse_writer)(
                    scope, receive, send
                )
            finally:
                self.close(session.id)
            await self.discard_outbound(session, streams.outbound)

        async with anyio.create_task_group() as tg:
            tg.start_soon(response_wrapper)
            try:
                yield streams.read_stream, streams.write_stream
            finally:
                # Ends sse_writer (and with it the response) if the handler stopped
                # first, or ends discard_outbound once late responses are drained.
                streams.write_stream.close()


async def _read_limited_body(request: Request) -> Optional[bytes]:
    """Read the request body, or return None once it passes MAX_BODY_BYTES."""
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > MAX_BODY_BYTES:
        return None

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > MAX_BODY_BYTES:
            return None
        chunks.append(chunk)
    return b"".join(chunks)
