#!/usr/bin/env python3
"""
MCP Publish Tools - Entry Point

Supports two transport modes:
- stdio: Standard I/O (default, for local MCP clients)
- sse: Server-Sent Events over HTTP, with API key auth and rate limiting
"""

import argparse
import logging
import os
import sys

from .config import Settings
from .errors import ConfigurationError


def main():
    parser = argparse.ArgumentParser(
        description="MCP server for document conversion, diagrams and Confluence publishing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with STDIO transport (default)
  mcp-publish-tools

  # Run the SSE gateway on port 3001 (requires MCP_API_KEY)
  MCP_API_KEY=$(openssl rand -hex 32) mcp-publish-tools --transport sse --port 3001

  # Specify project directory for file operations and the page cache
  mcp-publish-tools --project-dir /path/to/docs

Note: Diagram rendering requires the diagram converter service (DIAGRAM_CONVERTER_URL)
and document conversion requires pandoc on PATH.
"""
    )
    parser.add_argument(
        "--transport",
        choices=["stdio", "sse"],
        default="stdio",
        help="Transport mode (default: stdio)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for SSE transport (default: PORT or 3001)"
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind for SSE transport (default: HOST or 0.0.0.0)"
    )
    parser.add_argument(
        "--project-dir",
        type=str,
        default=None,
        help="Project directory for file operations (default: MCP_PROJECT_DIR or current directory)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: LOG_LEVEL or INFO)"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__import__('mcp_publish_tools').__version__}"
    )

    args = parser.parse_args()

    # Set project directory environment variable before settings are read
    if args.project_dir:
        os.environ["MCP_PROJECT_DIR"] = os.path.abspath(args.project_dir)

    try:
        settings = Settings.from_env().with_overrides(
            host=args.host,
            port=args.port,
            log_level=args.log_level,
        )
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    # stdout carries the stdio transport, so logs go to stderr
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logger = logging.getLogger("mcp_publish_tools")

    # Tools read their collaborators from here
    from .server import Services, configure_services, mcp
    configure_services(Services.from_settings(settings))

    if args.transport == "stdio":
        mcp.run()

    elif args.transport == "sse":
        import uvicorn

        from .app import SSE_PATH, create_app, create_context

        try:
            context = create_context(settings, mcp)
        except ConfigurationError as e:
            logger.error(str(e))
            sys.exit(1)

        logger.info(f"Starting SSE server on {settings.host}:{settings.port}")
        logger.info(f"SSE endpoint: http://{settings.host}:{settings.port}{SSE_PATH}")
        logger.info(f"Project directory: {settings.project_dir}")
        uvicorn.run(
            create_app(context),
            host=settings.host,
            port=settings.port,
            proxy_headers=settings.trust_proxy,
            log_level=settings.log_level.lower(),
        )


if __name__ == "__main__":
    main()
