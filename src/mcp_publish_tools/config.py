"""Configuration from environment variables.

Values are read once per Settings.from_env() call. A .env file in the working
directory is loaded first, so local development does not need exported
variables.

Environment Variables:
    MCP_API_KEY: Shared secret every MCP client must send (required for SSE)
    HOST / PORT: Bind address for the SSE server (default: 0.0.0.0:3001)
    TRUST_PROXY: Use X-Forwarded-For for client identity (default: true)
    RATE_LIMIT_WINDOW_MS: Rate limit window length, at least 1000 (default: 15 minutes)
    RATE_LIMIT_MAX_REQUESTS: Requests allowed per window (default: 100)
    DIAGRAM_CONVERTER_URL: Diagram converter service base URL
    DIAGRAM_CONVERTER_TIMEOUT: Seconds to wait for one conversion (default: 30)
    CONFLUENCE_BASE_URL / CONFLUENCE_USERNAME / CONFLUENCE_API_TOKEN
    CONFLUENCE_SPACE_KEY: Process-wide default space
    MCP_PROJECT_DIR: Directory holding project config, cache and diagram files
    WORKSPACE_DIR: Root that document conversions may read and write
    PANDOC_DATA_DIR, DEFAULT_INPUT_FORMAT, DEFAULT_OUTPUT_FORMAT
    LOG_LEVEL: Logging level name (default: INFO)
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

DEFAULT_PORT = 3001
DEFAULT_RATE_LIMIT_WINDOW_MS = 15 * 60 * 1000
# Retry-After is whole seconds
MIN_RATE_LIMIT_WINDOW_MS = 1000
DEFAULT_RATE_LIMIT_MAX_REQUESTS = 100
DEFAULT_CONVERTER_URL = "http://diagram-converter:3000"
DEFAULT_CONVERTER_TIMEOUT = 30.0


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got: {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got: {value!r}")


@dataclass(frozen=True)
class ConfluenceCredentials:
    """Confluence API credentials."""
    base_url: str = ""
    username: str = ""
    api_token: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.username and self.api_token)


@dataclass(frozen=True)
class Settings:
    """Process-wide settings for the gateway and the tools."""

    api_key: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    trust_proxy: bool = True
    rate_limit_window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS
    rate_limit_max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS
    converter_url: str = DEFAULT_CONVERTER_URL
    converter_timeout: float = DEFAULT_CONVERTER_TIMEOUT
    confluence: ConfluenceCredentials = field(default_factory=ConfluenceCredentials)
    default_space_key: Optional[str] = None
    project_dir: Path = field(default_factory=lambda: Path.cwd().resolve())
    workspace_dir: Optional[Path] = None
    pandoc_data_dir: Optional[str] = None
    default_input_format: str = "markdown"
    default_output_format: str = "html"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> "Settings":
        """Build settings from the environment (and .env, if present)."""
        if load_env_file:
            load_dotenv()

        project_dir = Path(os.getenv("MCP_PROJECT_DIR") or os.getcwd()).resolve()
        workspace = os.getenv("WORKSPACE_DIR")

        window_ms = _env_int("RATE_LIMIT_WINDOW_MS", DEFAULT_RATE_LIMIT_WINDOW_MS)
        if window_ms < MIN_RATE_LIMIT_WINDOW_MS:
            raise ConfigurationError(
                f"RATE_LIMIT_WINDOW_MS must be at least {MIN_RATE_LIMIT_WINDOW_MS}, got: {window_ms}"
            )
        max_requests = _env_int("RATE_LIMIT_MAX_REQUESTS", DEFAULT_RATE_LIMIT_MAX_REQUESTS)
        if max_requests < 1:
            raise ConfigurationError(f"RATE_LIMIT_MAX_REQUESTS must be at least 1, got: {max_requests}")

        return cls(
            api_key=os.getenv("MCP_API_KEY") or None,
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", DEFAULT_PORT),
            trust_proxy=_env_bool("TRUST_PROXY", True),
            rate_limit_window_ms=window_ms,
            rate_limit_max_requests=max_requests,
            converter_url=os.getenv("DIAGRAM_CONVERTER_URL", DEFAULT_CONVERTER_URL).rstrip("/"),
            converter_timeout=_env_float("DIAGRAM_CONVERTER_TIMEOUT", DEFAULT_CONVERTER_TIMEOUT),
            confluence=ConfluenceCredentials(
                base_url=os.getenv("CONFLUENCE_BASE_URL", ""),
                username=os.getenv("CONFLUENCE_USERNAME", ""),
                api_token=os.getenv("CONFLUENCE_API_TOKEN", ""),
            ),
            default_space_key=os.getenv("CONFLUENCE_SPACE_KEY") or None,
            project_dir=project_dir,
            workspace_dir=Path(workspace).resolve() if workspace else None,
            pandoc_data_dir=os.getenv("PANDOC_DATA_DIR") or None,
            default_input_format=os.getenv("DEFAULT_INPUT_FORMAT", "markdown"),
            default_output_format=os.getenv("DEFAULT_OUTPUT_FORMAT", "html"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def workspace(self) -> Path:
        """Root directory for document conversions (defaults to the project dir)."""
        return self.workspace_dir or self.project_dir

    @property
    def rate_limit_window_seconds(self) -> float:
        return self.rate_limit_window_ms / 1000.0

    def require_api_key(self) -> str:
        """Return the MCP API key or fail.

        Raises:
            ConfigurationError: If MCP_API_KEY is unset or empty
        """
        if not self.api_key:
            raise ConfigurationError(
                "MCP_API_KEY is not configured. The SSE server refuses to start "
                "without a shared secret. Generate one with: openssl rand -hex 32"
            )
        return self.api_key

    def with_overrides(self, **changes) -> "Settings":
        """Return a copy with the given fields replaced (CLI flags)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
