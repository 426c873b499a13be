"""
HTTP gateway for the SSE transport.

Routes:
    GET  /health                        liveness check, no auth, no rate limit
    GET  /agent                         agent definition Markdown (rate limit)
    GET  /mcp/vscode                    VS Code connection settings (rate limit)
    GET  /mcp                           open an SSE session (rate limit + auth)
    POST /messages?sessionId=<id>       send a JSON-RPC message (rate limit + auth)

Every gated request is counted against the client's rate limit before the
API key is checked, so failed authentication attempts are throttled too.
The onboarding documents carry no secrets and only pass the rate limit.

The SSE and message endpoints are raw ASGI callables: the transport writes
the response itself and Starlette must not send a second one.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from mcp.server.fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.datastructures import MutableHeaders
from starlette.requests import HTTPConnection, Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .auth import Authenticator, extract_credential
from .config import Settings
from .errors import AuthenticationError, ConfigurationError
from .onboarding import agent_definition, vscode_settings
from .rate_limit import RateLimiter
from .transport import SessionTransportManager

logger = logging.getLogger(__name__)

SSE_PATH = "/mcp"
MESSAGES_PATH = "/messages"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'self'",
}


class SecurityHeadersMiddleware:
    """Adds security headers to every HTTP response.

    Pure ASGI so streaming (SSE) responses pass through untouched.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                headers = MutableHeaders(scope=message)
                for name, value in SECURITY_HEADERS.items():
                    headers.setdefault(name, value)
            await send(message)

        await self.app(scope, receive, send_with_headers)


@dataclass
class GatewayContext:
    """Everything the gateway owns for one running server."""
    settings: Settings
    authenticator: Authenticator
    rate_limiter: RateLimiter
    transport: SessionTransportManager
    server: FastMCP


def create_context(settings: Settings, server: Optional[FastMCP] = None) -> GatewayContext:
    """Build the gateway's state from settings.

    Raises:
        ConfigurationError: If MCP_API_KEY is not configured
    """
    if server is None:
        from .server import mcp as server

    return GatewayContext(
        settings=settings,
        authenticator=Authenticator(settings.require_api_key()),
        rate_limiter=RateLimiter(
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
        ),
        transport=SessionTransportManager(endpoint=MESSAGES_PATH),
        server=server,
    )


def client_key(connection: HTTPConnection, trust_proxy: bool) -> str:
    """Identify the client: first X-Forwarded-For hop behind a proxy, else the peer address."""
    if trust_proxy:
        forwarded = connection.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    if connection.client is not None and connection.client.host:
        return connection.client.host
    return "unknown"


def limit(context: GatewayContext, connection: HTTPConnection) -> Optional[Response]:
    """Count the request against the client's rate limit; return the 429 once it is spent."""
    admission = context.rate_limiter.admit(client_key(connection, context.settings.trust_proxy))
    if not admission.allowed:
        return JSONResponse(
            {"error": "Rate limit exceeded", "retryAfter": admission.retry_after},
            status_code=429,
            headers={"Retry-After": str(admission.retry_after)},
        )
    return None


def gate(context: GatewayContext, connection: HTTPConnection) -> Optional[Response]:
    """Apply rate limiting and authentication.

    Returns:
        The rejection response, or None if the request may proceed
    """
    rejection = limit(context, connection)
    if rejection is not None:
        return rejection

    key = client_key(connection, context.settings.trust_proxy)
    try:
        context.authenticator.authenticate(
            extract_credential(connection),
            origin=key,
            user_agent=connection.headers.get("user-agent"),
        )
    except AuthenticationError as e:
        return JSONResponse({"error": str(e)}, status_code=401)

    return None


class SseEndpoint:
    """GET /mcp: hold an SSE stream open and run the MCP server over it."""

    def __init__(self, context: GatewayContext):
        self.context = context

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        connection = HTTPConnection(scope)
        rejection = gate(self.context, connection)
        if rejection is not None:
            await rejection(scope, receive, send)
            return

        key = client_key(connection, self.context.settings.trust_proxy)
        server = self.context.server._mcp_server
        async with self.context.transport.connect_sse(scope, receive, send, client_key=key) as streams:
            await server.run(streams[0], streams[1], server.create_initialization_options())


class MessageEndpoint:
    """POST /messages: route a JSON-RPC message to its session."""

    def __init__(self, context: GatewayContext):
        self.context = context

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        rejection = gate(self.context, HTTPConnection(scope))
        if rejection is not None:
            await rejection(scope, receive, send)
            return
        await self.context.transport.handle_post_message(scope, receive, send)


async def health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


async def agent(request: Request) -> Response:
    context: GatewayContext = request.app.state.gateway
    rejection = limit(context, request)
    if rejection is not None:
        return rejection
    return PlainTextResponse(await agent_definition(context.server), media_type="text/markdown")


def _wants_json(request: Request) -> bool:
    accept = request.headers.get("accept", "")
    return not accept or "application/json" in accept or "*/*" in accept


async def vscode(request: Request) -> Response:
    context: GatewayContext = request.app.state.gateway
    rejection = limit(context, request)
    if rejection is not None:
        return rejection

    try:
        settings = vscode_settings(
            request.url.scheme,
            request.headers.get("host", f"localhost:{context.settings.port}"),
            SSE_PATH,
            devcontainer=request.query_params.get("devcontainer") == "true",
            project=request.query_params.get("project", ""),
        )
    except ConfigurationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    if _wants_json(request):
        return JSONResponse(settings.to_dict())
    return PlainTextResponse(settings.instructions(), media_type="text/markdown")


def create_app(context: GatewayContext) -> Starlette:
    """Build the Starlette application for the SSE gateway."""

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("SSE gateway ready")
        try:
            yield
        finally:
            context.transport.close_all()
            logger.info("SSE gateway stopped")

    app = Starlette(
        routes=[
            Route("/health", endpoint=health, methods=["GET"]),
            Route("/agent", endpoint=agent, methods=["GET"]),
            Route(f"{SSE_PATH}/vscode", endpoint=vscode, methods=["GET"]),
            Route(SSE_PATH, endpoint=SseEndpoint(context), methods=["GET"]),
            Route(MESSAGES_PATH, endpoint=MessageEndpoint(context), methods=["POST"]),
        ],
        lifespan=lifespan,
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.state.gateway = context
    return app
