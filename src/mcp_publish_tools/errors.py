"""Typed exception hierarchy for the MCP publish tools.

Every error raised by the gateway, the converters and the Confluence client
inherits from GatewayError so callers can catch application failures in one
place. Tool functions convert these into JSON error payloads; the HTTP layer
converts the gateway ones into status codes.
"""

from typing import Optional


class GatewayError(Exception):
    """Base exception for all mcp-publish-tools errors."""
    pass


class ConfigurationError(GatewayError):
    """Raised when required configuration is missing or invalid.

    Fatal at startup, never retried.
    """
    pass


class AuthenticationError(GatewayError):
    """Raised when a request carries a missing or wrong API key."""

    def __init__(self, origin: str = "unknown", user_agent: Optional[str] = None):
        super().__init__("Unauthorized: Invalid or missing API key")
        self.origin = origin
        self.user_agent = user_agent


class RateLimitError(GatewayError):
    """Raised when a client exceeds the request ceiling for the current window."""

    def __init__(self, client_key: str, retry_after: int):
        super().__init__(
            f"Rate limit exceeded for {client_key}, retry after {retry_after}s"
        )
        self.client_key = client_key
        self.retry_after = retry_after


class ConversionError(GatewayError):
    """Raised when an external conversion (diagram or document) fails."""
    pass


class ConflictError(GatewayError):
    """Raised when a page update carries a stale version number."""

    def __init__(self, page_id: str, version: Optional[int] = None, detail: str = ""):
        message = f"Version conflict updating page {page_id}"
        if version is not None:
            message += f" (version {version} is stale)"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.page_id = page_id
        self.version = version


class PublishError(GatewayError):
    """Raised when the publish workflow cannot complete.

    Carries whatever the workflow had already done so the caller can finish
    the job with a follow-up update.
    """

    def __init__(
        self,
        message: str,
        page_id: Optional[str] = None,
        attachments: Optional[list[str]] = None,
    ):
        super().__init__(message)
        self.page_id = page_id
        self.attachments = attachments or []


class ConfluenceError(GatewayError):
    """Base exception for Confluence REST API failures."""
    pass


class InvalidCredentialsError(ConfluenceError):
    """Raised when Confluence rejects the configured credentials."""

    def __init__(self, user: str, endpoint: str):
        super().__init__(f"API key is invalid (user: {user}, endpoint: {endpoint})")
        self.user = user
        self.endpoint = endpoint


class PageNotFoundError(ConfluenceError):
    """Raised when a requested page does not exist."""

    def __init__(self, page_id: str):
        super().__init__(f"Page {page_id} not found")
        self.page_id = page_id


class APIUnreachableError(ConfluenceError):
    """Raised when the Confluence API cannot be reached."""

    def __init__(self, endpoint: str):
        super().__init__(f"API is not available at {endpoint}")
        self.endpoint = endpoint
