"""Shared-secret authentication for the SSE gateway.

Clients authenticate with a single static API key:
    1. Header: x-mcp-api-key: <key>
    2. Query parameter: ?apiKey=<key> (for EventSource clients that cannot set headers)

An unset server secret is a configuration error, never an open door.
"""

import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

from starlette.requests import HTTPConnection

from .errors import AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-mcp-api-key"
API_KEY_QUERY_PARAM = "apiKey"


def extract_credential(connection: HTTPConnection) -> Optional[str]:
    """Pull the API key from the header, falling back to the query string."""
    return connection.headers.get(API_KEY_HEADER) or connection.query_params.get(API_KEY_QUERY_PARAM)


class Authenticator:
    """Validates the shared secret on every inbound request."""

    def __init__(self, secret: Optional[str]):
        """
        Args:
            secret: The configured MCP API key

        Raises:
            ConfigurationError: If the secret is unset or empty
        """
        if not secret:
            raise ConfigurationError("MCP_API_KEY not configured on server")
        self._secret = secret.encode("utf-8")

    def is_valid(self, credential: Optional[str]) -> bool:
        if not credential:
            return False
        return hmac.compare_digest(credential.encode("utf-8"), self._secret)

    def authenticate(
        self,
        credential: Optional[str],
        origin: str = "unknown",
        user_agent: Optional[str] = None,
    ) -> None:
        """Accept the request or raise.

        Raises:
            AuthenticationError: If the credential is missing or does not match
        """
        if self.is_valid(credential):
            return

        logger.warning(
            "Unauthorized access attempt: ip=%s user_agent=%s timestamp=%s",
            origin,
            user_agent or "-",
            datetime.now(timezone.utc).isoformat(),
        )
        raise AuthenticationError(origin=origin, user_agent=user_agent)
