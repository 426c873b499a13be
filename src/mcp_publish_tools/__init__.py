"""
MCP Publish Tools

An MCP server for document conversion, Mermaid/SVG diagram rendering and
Markdown publishing to Confluence, served over stdio or an authenticated,
rate-limited SSE gateway.
"""

__version__ = "0.1.0"

from .server import create_server, mcp

__all__ = ["create_server", "mcp", "__version__"]
