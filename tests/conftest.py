"""Shared fixtures for the mcp-publish-tools test suite."""

from pathlib import Path

import pytest

from mcp_publish_tools.config import ConfluenceCredentials, Settings


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        api_key="test-secret",
        trust_proxy=True,
        rate_limit_window_ms=60_000,
        rate_limit_max_requests=5,
        converter_url="http://converter.test",
        confluence=ConfluenceCredentials(
            base_url="https://example.atlassian.net",
            username="jane.doe@example.com",
            api_token="token-123",
        ),
        default_space_key="DOCS",
        project_dir=tmp_path,
    )
