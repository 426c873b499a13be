#!/usr/bin/env python3
"""
MCP Publish Tools - Server Implementation
==========================================

Provides tools to convert documents, render diagrams and publish Markdown
to Confluence.

Tools:
- document_convert / document_convert_file / document_info: Pandoc conversion
- diagram_convert_mermaid / diagram_convert_svg: render diagrams to PNG
- markdown_process_diagrams: render every Mermaid block in a Markdown document
- confluence_publish_page / confluence_create_page / confluence_update_page /
  confluence_delete_page: publish Markdown (diagrams become attachments)
- confluence_list_spaces / confluence_list_pages: browse Confluence
- confluence_setup_project / confluence_show_config / confluence_test_connection:
  project configuration
- converter_health: check the diagram converter service

Tool failures raise ToolError whose text is a JSON error object, so clients
see the result flagged isError. Status reports (converter_health,
confluence_test_connection) return normally.
"""

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Optional

import httpx
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import Field

from .cache import MarkdownPageCache
from .config import ConfluenceCredentials, Settings
from .confluence import ConfluenceClient
from .converter import DEFAULT_DENSITY, DiagramConverterClient
from .diagrams import DiagramPipeline, save_artifacts
from .errors import ConfigurationError, GatewayError, PublishError
from .markdown import MarkdownConverter
from .pandoc import PandocOptions, PandocService, infer_output_format
from .project_config import ProjectConfig, ProjectConfigManager, mask_username
from .publish import MISSING_SPACE_MESSAGE, PublishWorkflow

logger = logging.getLogger(__name__)

CONFLUENCE_TROUBLESHOOTING = [
    "Check your Confluence base URL",
    "Verify your username/email is correct",
    "Ensure your API token is valid",
    "Make sure you have access to the Confluence instance",
]


# ============================================================================
# Services
# ============================================================================

@dataclass
class Services:
    """Collaborators the tools work with, built once from Settings."""
    settings: Settings
    converter: DiagramConverterClient
    pandoc: PandocService
    cache: MarkdownPageCache
    project_config: ProjectConfigManager
    confluence_transport: Optional[httpx.AsyncBaseTransport] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Services":
        return cls(
            settings=settings,
            converter=DiagramConverterClient(settings.converter_url, timeout=settings.converter_timeout),
            pandoc=PandocService(
                workspace_dir=settings.workspace,
                data_dir=settings.pandoc_data_dir,
                default_input_format=settings.default_input_format,
                default_output_format=settings.default_output_format,
            ),
            cache=MarkdownPageCache(settings.project_dir),
            project_config=ProjectConfigManager(settings.project_dir),
        )

    @property
    def project_dir(self) -> Path:
        return self.settings.project_dir

    def resolve_path(self, path: str) -> Path:
        """Resolve path relative to project directory and validate it stays within."""
        project_dir = self.project_dir.resolve()
        resolved = (project_dir / path).resolve()
        try:
            resolved.relative_to(project_dir)
        except ValueError:
            raise ValueError(f"Path '{path}' escapes the project directory")
        return resolved

    def confluence_credentials(self) -> ConfluenceCredentials:
        """Project config credentials when saved, otherwise the environment's."""
        config = self.project_config.get_config()
        if config is not None and config.credentials.is_configured:
            return config.credentials
        return self.settings.confluence

    def confluence_client(self, credentials: Optional[ConfluenceCredentials] = None) -> ConfluenceClient:
        return ConfluenceClient(
            credentials or self.confluence_credentials(),
            transport=self.confluence_transport,
        )

    def pipeline(self) -> DiagramPipeline:
        return DiagramPipeline(self.converter, timeout=self.settings.converter_timeout)

    def workflow(self) -> PublishWorkflow:
        return PublishWorkflow(
            client=self.confluence_client(),
            pipeline=self.pipeline(),
            converter=MarkdownConverter(self.pandoc),
            cache=self.cache,
            project_config=self.project_config,
            default_space_key=self.settings.default_space_key,
        )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = Services.from_settings(Settings.from_env())
    return _services


def configure_services(services: Services) -> None:
    global _services
    _services = services


def reset_services() -> None:
    global _services
    _services = None


@asynccontextmanager
async def server_lifespan(server: FastMCP):
    """Initialize on startup, cleanup on shutdown."""
    get_services().project_dir.mkdir(parents=True, exist_ok=True)
    yield


# Initialize the MCP server
mcp = FastMCP("mcp-publish-tools", lifespan=server_lifespan)


def create_server() -> FastMCP:
    """Create and return the MCP server instance."""
    return mcp


def _tool_error(payload: dict) -> ToolError:
    """Tool failures are raised so the result is flagged isError; the text stays JSON."""
    return ToolError(json.dumps(payload, indent=2))


def _error(e: Exception, prefix: str = "") -> ToolError:
    message = f"{prefix}: {e}" if prefix else str(e)
    return _tool_error({"error": message, "error_type": type(e).__name__})


# ============================================================================
# Document Conversion
# ============================================================================

def _pandoc_options(
    input_format: Optional[str],
    output_format: Optional[str],
    standalone: bool,
    toc: bool,
    toc_depth: Optional[int],
    number_sections: bool,
    highlight_style: Optional[str],
    template: Optional[str],
    variables: Optional[dict[str, str]],
    metadata: Optional[dict[str, str]],
) -> PandocOptions:
    return PandocOptions(
        input_format=input_format,
        output_format=output_format,
        template=template,
        variables=variables or {},
        metadata=metadata or {},
        standalone=standalone,
        toc=toc,
        toc_depth=toc_depth,
        number_sections=number_sections,
        highlight_style=highlight_style,
    )


@mcp.tool()
async def document_convert(
    content: Annotated[str, Field(description="Document text to convert")],
    input_format: Annotated[Optional[str], Field(description="Input format (e.g. markdown, html, rst, docx)")] = None,
    output_format: Annotated[Optional[str], Field(description="Output format (e.g. html, markdown, latex, plain)")] = None,
    standalone: Annotated[bool, Field(description="Produce a complete document with header and footer")] = False,
    toc: Annotated[bool, Field(description="Include a table of contents")] = False,
    toc_depth: Annotated[Optional[int], Field(description="Table of contents depth (1-6)", ge=1, le=6)] = None,
    number_sections: Annotated[bool, Field(description="Number section headings")] = False,
    highlight_style: Annotated[Optional[str], Field(description="Syntax highlighting style (e.g. pygments, tango)")] = None,
    template: Annotated[Optional[str], Field(description="Template path inside the workspace")] = None,
    variables: Annotated[Optional[dict[str, str]], Field(description="Template variables (-V key=value)")] = None,
    metadata: Annotated[Optional[dict[str, str]], Field(description="Document metadata (-M key=value)")] = None,
) -> str:
    """Convert document text between formats using Pandoc.

    Returns:
        JSON string with success status, output and format
    """
    services = get_services()
    options = _pandoc_options(
        input_format, output_format, standalone, toc, toc_depth,
        number_sections, highlight_style, template, variables, metadata,
    )
    result = await services.pandoc.convert(content, options)
    if not result.success:
        raise _tool_error(result.to_dict())
    return json.dumps(result.to_dict(), indent=2)


@mcp.tool()
async def document_convert_file(
    input_path: Annotated[str, Field(description="Input file path (relative to the workspace)")],
    output_path: Annotated[str, Field(description="Output file path (relative to the workspace)")],
    input_format: Annotated[Optional[str], Field(description="Input format (inferred by Pandoc if omitted)")] = None,
    output_format: Annotated[Optional[str], Field(description="Output format (inferred from the output extension if omitted)")] = None,
    standalone: Annotated[bool, Field(description="Produce a complete document with header and footer")] = False,
    toc: Annotated[bool, Field(description="Include a table of contents")] = False,
    toc_depth: Annotated[Optional[int], Field(description="Table of contents depth (1-6)", ge=1, le=6)] = None,
    number_sections: Annotated[bool, Field(description="Number section headings")] = False,
    highlight_style: Annotated[Optional[str], Field(description="Syntax highlighting style")] = None,
    template: Annotated[Optional[str], Field(description="Template path inside the workspace")] = None,
    variables: Annotated[Optional[dict[str, str]], Field(description="Template variables (-V key=value)")] = None,
    metadata: Annotated[Optional[dict[str, str]], Field(description="Document metadata (-M key=value)")] = None,
) -> str:
    """Convert a workspace file into another format using Pandoc.

    Both paths must stay inside the workspace directory. Text output is
    returned inline; binary formats (pdf, docx, odt, epub) only report the
    written path.
    """
    services = get_services()
    if output_format is None:
        output_format = infer_output_format(output_path)
    options = _pandoc_options(
        input_format, output_format, standalone, toc, toc_depth,
        number_sections, highlight_style, template, variables, metadata,
    )
    result = await services.pandoc.convert_file(input_path, output_path, options)
    if not result.success:
        raise _tool_error(result.to_dict())
    return json.dumps(result.to_dict(), indent=2)


@mcp.tool()
async def document_info() -> str:
    """Report the Pandoc version and the supported input and output formats."""
    pandoc = get_services().pandoc
    return json.dumps({
        "version": await pandoc.get_version(),
        "input_formats": await pandoc.list_input_formats(),
        "output_formats": await pandoc.list_output_formats(),
    }, indent=2)


# ============================================================================
# Diagram Conversion
# ============================================================================

@mcp.tool()
async def diagram_convert_mermaid(
    mermaid_code: Annotated[str, Field(description="Mermaid diagram syntax (flowchart, sequence, etc.)")],
    output_path: Annotated[str, Field(description="Output path for the .png file (relative to project directory)")],
) -> str:
    """Render Mermaid syntax to a PNG file using the diagram converter service.

    Example Mermaid code:
    ```
    flowchart LR
        A[Start] --> B{Decision}
        B -->|Yes| C[Process]
        B -->|No| D[End]
    ```

    Returns:
        JSON string with success status, output path and size
    """
    try:
        services = get_services()
        target = services.resolve_path(output_path)
        if target.suffix.lower() != ".png":
            raise _tool_error({"error": f"Output path must end with .png, got: {output_path}"})

        png = await services.converter.mermaid_to_png(mermaid_code)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(png)

        return json.dumps({
            "success": True,
            "path": str(target.relative_to(services.project_dir.resolve())),
            "format": "png",
            "size": len(png),
        }, indent=2)

    except (ValueError, GatewayError) as e:
        raise _error(e) from e
    except OSError as e:
        raise _error(e, "Failed to write diagram") from e


@mcp.tool()
async def diagram_convert_svg(
    path: Annotated[str, Field(description="Path to the .svg file (relative to project directory)")],
    output_path: Annotated[Optional[str], Field(description="Output .png path (defaults to the SVG path with .png)")] = None,
    density: Annotated[int, Field(description="Rendering density in DPI (1-1200)", ge=1, le=1200)] = DEFAULT_DENSITY,
) -> str:
    """Render an SVG file to PNG using the diagram converter service."""
    try:
        services = get_services()
        source = services.resolve_path(path)
        if not source.exists():
            raise _tool_error({"error": f"Source file not found: {path}"})
        if source.suffix.lower() != ".svg":
            raise _tool_error({"error": f"Not an SVG file: {path}"})

        target = services.resolve_path(output_path) if output_path else source.with_suffix(".png")
        png = await services.converter.svg_to_png(source.read_bytes(), source.name, density)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(png)

        return json.dumps({
            "success": True,
            "source": path,
            "path": str(target.relative_to(services.project_dir.resolve())),
            "density": density,
            "size": len(png),
        }, indent=2)

    except (ValueError, GatewayError) as e:
        raise _error(e) from e
    except OSError as e:
        raise _error(e, "Failed to convert SVG") from e


@mcp.tool()
async def markdown_process_diagrams(
    markdown_content: Annotated[Optional[str], Field(description="Markdown text (omit to read markdown_path)")] = None,
    markdown_path: Annotated[Optional[str], Field(description="Markdown file path (relative to project directory)")] = None,
    save_assets: Annotated[bool, Field(description="Write .mmd and .png files to an assets/ folder next to the Markdown file")] = False,
) -> str:
    """Render every ```mermaid block in a Markdown document to PNG.

    Rendered blocks are replaced with image references
    (![Diagram n](<name>-diagram-n.png)); blocks that fail to render are left
    as they were. One failing diagram never fails the document.

    Returns:
        JSON string with the rewritten Markdown and a per-diagram report
    """
    try:
        services = get_services()
        source = services.resolve_path(markdown_path) if markdown_path else None
        if markdown_content is None:
            if source is None:
                raise _tool_error({"error": "Provide markdown_content or markdown_path"})
            if not source.exists():
                raise _tool_error({"error": f"File not found: {markdown_path}"})
            markdown_content = source.read_text(encoding="utf-8")

        result = await services.pipeline().process(markdown_content, markdown_path)

        saved = []
        if save_assets and result.artifacts:
            if source is None:
                raise _tool_error({"error": "save_assets requires markdown_path"})
            project_dir = services.project_dir.resolve()
            saved = [str(p.relative_to(project_dir)) for p in save_artifacts(source, result.artifacts)]

        return json.dumps({
            "success": True,
            **result.summary(),
            "saved_files": saved,
            "markdown": result.markdown,
        }, indent=2)

    except (ValueError, GatewayError) as e:
        raise _error(e) from e
    except OSError as e:
        raise _error(e, "Failed to process diagrams") from e


@mcp.tool()
async def converter_health() -> str:
    """Check whether the diagram converter service is reachable."""
    converter = get_services().converter
    try:
        health = await converter.health()
        return json.dumps({"available": True, "url": converter.base_url, "health": health}, indent=2)
    except GatewayError as e:
        return json.dumps({"available": False, "url": converter.base_url, "error": str(e)}, indent=2)


# ============================================================================
# Confluence Publishing
# ============================================================================

def _publish_error(e: PublishError) -> ToolError:
    return _tool_error({
        "error": str(e),
        "error_type": type(e).__name__,
        "page_id": e.page_id,
        "attachments": e.attachments,
    })


@mcp.tool()
async def confluence_publish_page(
    markdown_path: Annotated[str, Field(description="Path of the Markdown file in the local codebase (cache key)")],
    title: Annotated[str, Field(description="Page title")],
    markdown_content: Annotated[Optional[str], Field(description="Markdown content (read from markdown_path if omitted)")] = None,
    version: Annotated[Optional[int], Field(description="Current page version (required when the file was published before)")] = None,
    space_key: Annotated[Optional[str], Field(description="Override the space from project config")] = None,
    parent_page_id: Annotated[Optional[str], Field(description="Override the parent page from project config")] = None,
) -> str:
    """Publish a Markdown file: create its page the first time, update it afterwards.

    Mermaid diagrams are rendered and attached as PNG images.
    """
    try:
        services = get_services()
        if markdown_content is None:
            markdown_content = services.resolve_path(markdown_path).read_text(encoding="utf-8")

        result = await services.workflow().publish(
            markdown_path, title, markdown_content, version, space_key, parent_page_id
        )
        action = "created" if result.created else "updated"
        return json.dumps({
            **result.to_dict(),
            "message": f"Page '{title}' {action} successfully",
        }, indent=2)

    except PublishError as e:
        raise _publish_error(e) from e
    except (ValueError, GatewayError) as e:
        raise _error(e) from e
    except OSError as e:
        raise _error(e, "Failed to read Markdown file") from e


@mcp.tool()
async def confluence_create_page(
    title: Annotated[str, Field(description="The title of the new page")],
    markdown_content: Annotated[str, Field(description="The Markdown content for the page")],
    markdown_path: Annotated[Optional[str], Field(description="Path of the Markdown file in the local codebase, for caching")] = None,
    space_key: Annotated[Optional[str], Field(description="Override the space from project config")] = None,
    parent_page_id: Annotated[Optional[str], Field(description="Override the parent page from project config")] = None,
) -> str:
    """Create a new Confluence page from Markdown content."""
    try:
        result = await get_services().workflow().create(
            title, markdown_content, markdown_path, space_key, parent_page_id
        )
        return json.dumps({**result.to_dict(), "message": f"Page '{title}' created successfully"}, indent=2)
    except PublishError as e:
        raise _publish_error(e) from e
    except GatewayError as e:
        raise _error(e) from e


@mcp.tool()
async def confluence_update_page(
    page_id: Annotated[str, Field(description="The ID of the page to update")],
    title: Annotated[str, Field(description="The new title for the page")],
    markdown_content: Annotated[str, Field(description="The Markdown content for the page")],
    version: Annotated[int, Field(description="The current version number of the page", ge=1)],
    markdown_path: Annotated[Optional[str], Field(description="Path of the Markdown file in the local codebase, for caching")] = None,
    parent_page_id: Annotated[Optional[str], Field(description="Override the parent page from project config")] = None,
) -> str:
    """Update an existing Confluence page from Markdown content.

    A stale version is reported as a ConflictError; fetch the page again and
    retry with its current version.
    """
    try:
        result = await get_services().workflow().update(
            page_id, title, markdown_content, version, markdown_path, parent_page_id
        )
        return json.dumps({**result.to_dict(), "message": f"Page '{title}' updated successfully"}, indent=2)
    except PublishError as e:
        raise _publish_error(e) from e
    except GatewayError as e:
        raise _error(e) from e


@mcp.tool()
async def confluence_delete_page(
    page_id: Annotated[str, Field(description="The ID of the page to delete")],
    markdown_path: Annotated[Optional[str], Field(description="Markdown path to remove from the cache")] = None,
) -> str:
    """Delete a Confluence page and remove it from the cache."""
    try:
        unmapped = await get_services().workflow().delete(page_id, markdown_path)
        return json.dumps({
            "success": True,
            "message": f"Page {page_id} deleted successfully",
            "unmapped_path": unmapped,
        }, indent=2)
    except GatewayError as e:
        raise _error(e) from e


@mcp.tool()
async def confluence_list_spaces() -> str:
    """List all available Confluence spaces."""
    try:
        spaces = await get_services().confluence_client().list_spaces()
        return json.dumps({"spaces": spaces}, indent=2)
    except GatewayError as e:
        raise _error(e) from e


@mcp.tool()
async def confluence_list_pages(
    space_key: Annotated[Optional[str], Field(description="Space key (defaults to project config, then CONFLUENCE_SPACE_KEY)")] = None,
) -> str:
    """List all pages in a Confluence space."""
    try:
        services = get_services()
        config = services.project_config.get_config()
        resolved = space_key or (config.space_key if config else None) or services.settings.default_space_key
        if not resolved:
            raise ConfigurationError(MISSING_SPACE_MESSAGE)

        pages = await services.confluence_client().list_pages(resolved)
        return json.dumps({
            "space_key": resolved,
            "pages": [
                {"id": p.id, "title": p.title, "space_key": p.space_key, "version": p.version}
                for p in pages
            ],
        }, indent=2)
    except GatewayError as e:
        raise _error(e) from e


# ============================================================================
# Project Configuration
# ============================================================================

@mcp.tool()
async def confluence_setup_project(
    confluence_url: Annotated[str, Field(description="Confluence base URL (e.g. https://example.atlassian.net/)")],
    username: Annotated[str, Field(description="Confluence username/email")],
    api_token: Annotated[str, Field(description="Confluence API token")],
    space_key: Annotated[str, Field(description="Default space key")],
    parent_page_title: Annotated[Optional[str], Field(description="Title of the parent page new pages go under")] = None,
    base_dir: Annotated[Optional[str], Field(description="Local directory the Markdown files live in")] = None,
) -> str:
    """Validate Confluence settings and save them as the project configuration.

    Checks that the credentials work, that the space exists and, if given,
    that the parent page exists in that space.
    """
    services = get_services()
    credentials = ConfluenceCredentials(base_url=confluence_url, username=username, api_token=api_token)

    try:
        client = services.confluence_client(credentials)
        spaces = await client.list_spaces()
    except GatewayError as e:
        raise _tool_error({
            "error": f"Failed to connect to Confluence: {e}",
            "error_type": type(e).__name__,
            "troubleshooting": CONFLUENCE_TROUBLESHOOTING,
        }) from e

    if not any(space["key"] == space_key for space in spaces):
        raise _tool_error({
            "error": f"Space with key '{space_key}' not found",
            "available_spaces": spaces,
        })

    parent_page_id = None
    if parent_page_title:
        try:
            pages = await client.list_pages(space_key)
        except GatewayError as e:
            raise _error(e, "Failed to find parent page") from e
        parent = next((p for p in pages if p.title == parent_page_title), None)
        if parent is None:
            raise _tool_error({
                "error": f"Parent page '{parent_page_title}' not found in space '{space_key}'",
                "available_pages": [{"id": p.id, "title": p.title} for p in pages[:10]],
            })
        parent_page_id = parent.id

    config = services.project_config.save_config(ProjectConfig(
        confluence_url=confluence_url,
        username=username,
        api_token=api_token,
        space_key=space_key,
        parent_page_title=parent_page_title,
        parent_page_id=parent_page_id,
        base_dir=base_dir,
    ))

    return json.dumps({
        "success": True,
        "message": "Confluence project configuration saved successfully",
        "config": config.public_view(),
    }, indent=2)


@mcp.tool()
async def confluence_show_config() -> str:
    """Show the current project configuration (username masked, token hidden)."""
    services = get_services()
    config = services.project_config.get_config()
    if config is None:
        env = services.settings.confluence
        return json.dumps({
            "configured": False,
            "message": "No project configuration found. Use confluence_setup_project to configure.",
            "environment": {
                "confluence_url": env.base_url or None,
                "username": mask_username(env.username) or None,
                "space_key": services.settings.default_space_key,
            },
        }, indent=2)

    return json.dumps({"configured": True, "config": config.public_view()}, indent=2)


@mcp.tool()
async def confluence_test_connection() -> str:
    """Test the Confluence connection by listing spaces."""
    try:
        spaces = await get_services().confluence_client().list_spaces()
        return json.dumps({
            "success": True,
            "message": f"Connection successful! Found {len(spaces)} spaces.",
            "spaces_count": len(spaces),
        }, indent=2)
    except GatewayError as e:
        return json.dumps({
            "success": False,
            "error": f"Connection failed: {e}",
            "error_type": type(e).__name__,
            "troubleshooting": CONFLUENCE_TROUBLESHOOTING,
        }, indent=2)
