"""Tests for shared-secret authentication."""

import logging

import pytest
from starlette.requests import HTTPConnection

from mcp_publish_tools.auth import Authenticator, extract_credential
from mcp_publish_tools.errors import AuthenticationError, ConfigurationError


def _connection(headers=None, query=b""):
    return HTTPConnection({
        "type": "http",
        "method": "GET",
        "path": "/mcp",
        "headers": [(k.encode(), v.encode()) for k, v in (headers or {}).items()],
        "query_string": query,
    })


class TestAuthenticator:

    @pytest.mark.parametrize("secret", [None, ""])
    def test_missing_secret_is_configuration_error(self, secret):
        """An unset secret never means 'no authentication'."""
        with pytest.raises(ConfigurationError):
            Authenticator(secret)

    def test_accepts_matching_credential(self):
        Authenticator("s3cret").authenticate("s3cret", origin="10.0.0.1")

    @pytest.mark.parametrize("credential", [None, "", "wrong", "s3cret "])
    def test_rejects_missing_or_wrong_credential(self, credential):
        with pytest.raises(AuthenticationError) as exc_info:
            Authenticator("s3cret").authenticate(credential, origin="10.0.0.1", user_agent="curl/8")

        assert str(exc_info.value) == "Unauthorized: Invalid or missing API key"
        assert exc_info.value.origin == "10.0.0.1"

    def test_failure_log_omits_credential(self, caplog):
        """The warning names origin and user agent but never the key tried."""
        with caplog.at_level(logging.WARNING, logger="mcp_publish_tools.auth"):
            with pytest.raises(AuthenticationError):
                Authenticator("s3cret").authenticate("guess-123", origin="10.0.0.9", user_agent="scanner/1")

        assert "10.0.0.9" in caplog.text
        assert "scanner/1" in caplog.text
        assert "guess-123" not in caplog.text


class TestExtractCredential:

    def test_reads_header(self):
        assert extract_credential(_connection({"x-mcp-api-key": "abc"})) == "abc"

    def test_falls_back_to_query_parameter(self):
        assert extract_credential(_connection(query=b"apiKey=xyz")) == "xyz"

    def test_header_wins_over_query(self):
        conn = _connection({"x-mcp-api-key": "abc"}, query=b"apiKey=xyz")
        assert extract_credential(conn) == "abc"

    def test_missing(self):
        assert extract_credential(_connection()) is None
