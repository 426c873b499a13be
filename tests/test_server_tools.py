"""Tests for the MCP tool functions, with HTTP services faked by MockTransport."""

import dataclasses
import json

import httpx
import pytest
from mcp.server.fastmcp.exceptions import ToolError
from mcp.shared.memory import create_connected_server_and_client_session

from mcp_publish_tools import server
from mcp_publish_tools.cache import PageMapping
from mcp_publish_tools.converter import DiagramConverterClient
from mcp_publish_tools.pandoc import ConversionResult
from mcp_publish_tools.server import Services, configure_services, reset_services

MARKDOWN = """# Guide

```mermaid
graph TD; A-->B
```

```mermaid
broken
```
"""


def converter_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/health":
        return httpx.Response(200, json={"status": "healthy"})
    if b"broken" in request.content:
        return httpx.Response(400, json={"error": "Parse error"})
    return httpx.Response(200, content=b"\x89PNG", headers={"Content-Type": "image/png"})


class FakeConfluenceApi:
    """Just enough of the Confluence REST API for the tools."""

    def __init__(self):
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        path = request.url.path.removeprefix("/wiki/rest/api/")
        if path == "space":
            return httpx.Response(200, json={"results": [{"key": "DOCS", "name": "Docs"}]})
        if path == "content" and request.method == "GET":
            return httpx.Response(200, json={"results": [
                {"id": "42", "title": "Handbook", "space": {"key": "DOCS"}, "version": {"number": 3}},
            ]})
        if path == "content" and request.method == "POST":
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "id": "100", "title": body["title"], "space": body["space"], "version": {"number": 1},
            })
        if path.endswith("/child/attachment"):
            return httpx.Response(200, json={"results": [{"id": "att1"}]})
        if request.method == "PUT":
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "id": body["id"], "title": body["title"], "space": {"key": "DOCS"}, "version": body["version"],
            })
        if request.method == "DELETE":
            return httpx.Response(204)
        return httpx.Response(404)


@pytest.fixture
def confluence_api():
    return FakeConfluenceApi()


@pytest.fixture
def services(settings, confluence_api, monkeypatch):
    services = Services.from_settings(settings)
    services.converter = DiagramConverterClient(
        settings.converter_url, transport=httpx.MockTransport(converter_handler)
    )
    services.confluence_transport = httpx.MockTransport(confluence_api)

    async def fake_convert(content, options=None):
        return ConversionResult(success=True, output=f"<p>{len(content)}</p>", format="html")

    monkeypatch.setattr(services.pandoc, "convert", fake_convert)
    configure_services(services)
    yield services
    reset_services()


async def tool_failure(call) -> dict:
    with pytest.raises(ToolError) as exc_info:
        await call
    return json.loads(str(exc_info.value))


class TestDiagramTools:

    @pytest.mark.anyio
    async def test_process_diagrams_isolates_failures(self, services):
        result = json.loads(await server.markdown_process_diagrams(markdown_content=MARKDOWN))

        assert result["success"] is True
        assert result["diagrams_found"] == 2
        assert result["diagrams_converted"] == 1
        assert result["diagrams"][1]["success"] is False
        assert "![Diagram 1](diagram-diagram-1.png)" in result["markdown"]
        assert "```mermaid\nbroken\n```" in result["markdown"]

    @pytest.mark.anyio
    async def test_process_diagrams_saves_assets(self, services, tmp_path):
        (tmp_path / "docs").mkdir()
        (tmp_path / "docs" / "guide.md").write_text(MARKDOWN)

        result = json.loads(await server.markdown_process_diagrams(
            markdown_path="docs/guide.md", save_assets=True
        ))

        assert result["saved_files"] == ["docs/assets/guide-diagram-1.mmd", "docs/assets/guide-diagram-1.png"]
        assert (tmp_path / "docs" / "assets" / "guide-diagram-1.png").read_bytes() == b"\x89PNG"

    @pytest.mark.anyio
    async def test_mermaid_to_file(self, services, tmp_path):
        result = json.loads(await server.diagram_convert_mermaid("graph TD; A-->B", "out/flow.png"))

        assert result["success"] is True
        assert result["path"] == "out/flow.png"
        assert (tmp_path / "out" / "flow.png").exists()

    @pytest.mark.anyio
    async def test_mermaid_output_must_stay_in_project(self, services):
        result = await tool_failure(server.diagram_convert_mermaid("graph TD; A-->B", "../escape.png"))
        assert "escapes the project directory" in result["error"]

    @pytest.mark.anyio
    async def test_mermaid_output_must_be_png(self, services):
        result = await tool_failure(server.diagram_convert_mermaid("graph TD; A-->B", "flow.jpg"))
        assert "must end with .png" in result["error"]

    @pytest.mark.anyio
    async def test_failure_is_flagged_to_the_client(self, services):
        async with create_connected_server_and_client_session(server.mcp._mcp_server) as client:
            result = await client.call_tool(
                "diagram_convert_mermaid", {"mermaid_code": "graph TD; A-->B", "output_path": "flow.jpg"}
            )

        assert result.isError is True
        assert "must end with .png" in result.content[0].text

    @pytest.mark.anyio
    async def test_converter_health(self, services):
        result = json.loads(await server.converter_health())
        assert result["available"] is True
        assert result["health"]["status"] == "healthy"


class TestConfluenceTools:

    @pytest.mark.anyio
    async def test_publish_then_delete(self, services, tmp_path, confluence_api):
        (tmp_path / "guide.md").write_text(MARKDOWN)

        published = json.loads(await server.confluence_publish_page("guide.md", "Guide"))

        assert published["created"] is True
        assert published["page"]["id"] == "100"
        assert published["attachments"] == ["guide-diagram-1.png"]
        assert published["diagram_failures"][0]["index"] == 2
        assert services.cache.get_page_mapping("guide.md").page_id == "100"

        deleted = json.loads(await server.confluence_delete_page("100"))

        assert deleted["unmapped_path"] == "guide.md"
        assert ("DELETE", "/wiki/rest/api/content/100") in confluence_api.requests

    @pytest.mark.anyio
    async def test_republish_without_version(self, services):
        services.cache.set_page_mapping("guide.md", PageMapping("guide.md", "55", "DOCS", "Guide"))

        result = await tool_failure(server.confluence_publish_page("guide.md", "Guide", markdown_content="# x"))

        assert result["error_type"] == "PublishError"
        assert result["page_id"] == "55"

    @pytest.mark.anyio
    async def test_list_pages_needs_a_space(self, services):
        services.settings = dataclasses.replace(services.settings, default_space_key=None)

        result = await tool_failure(server.confluence_list_pages())

        assert result["error_type"] == "ConfigurationError"
        assert "No space key" in result["error"]

    @pytest.mark.anyio
    async def test_list_pages(self, services):
        result = json.loads(await server.confluence_list_pages())

        assert result["space_key"] == "DOCS"
        assert result["pages"] == [{"id": "42", "title": "Handbook", "space_key": "DOCS", "version": 3}]

    @pytest.mark.anyio
    async def test_test_connection(self, services):
        result = json.loads(await server.confluence_test_connection())
        assert result["success"] is True
        assert result["spaces_count"] == 1


class TestProjectConfigTools:

    @pytest.mark.anyio
    async def test_show_config_without_project_config(self, services):
        result = json.loads(await server.confluence_show_config())

        assert result["configured"] is False
        assert result["environment"]["username"] == "jan***@example.com"
        assert result["environment"]["space_key"] == "DOCS"

    @pytest.mark.anyio
    async def test_setup_rejects_unknown_space(self, services):
        result = await tool_failure(server.confluence_setup_project(
            "https://example.atlassian.net", "jane.doe@example.com", "token", "NOPE"
        ))

        assert "not found" in result["error"]
        assert result["available_spaces"] == [{"key": "DOCS", "name": "Docs"}]
        assert services.project_config.has_config() is False

    @pytest.mark.anyio
    async def test_setup_resolves_parent_and_saves(self, services):
        result = json.loads(await server.confluence_setup_project(
            "https://example.atlassian.net", "jane.doe@example.com", "token", "DOCS",
            parent_page_title="Handbook",
        ))

        assert result["success"] is True
        assert result["config"]["parent_page_id"] == "42"
        assert "api_token" not in result["config"]

        shown = json.loads(await server.confluence_show_config())
        assert shown["configured"] is True
        assert shown["config"]["username"] == "jan***@example.com"


class TestDocumentTools:

    @pytest.mark.anyio
    async def test_convert(self, services):
        result = json.loads(await server.document_convert("# Hi", output_format="html"))
        assert result["success"] is True
        assert result["output"] == "<p>4</p>"

    @pytest.mark.anyio
    async def test_failed_conversion_is_a_tool_error(self, services, monkeypatch):
        async def failing_convert(content, options=None):
            return ConversionResult(success=False, error="Unknown output format nope")

        monkeypatch.setattr(services.pandoc, "convert", failing_convert)

        result = await tool_failure(server.document_convert("# Hi", output_format="nope"))

        assert result["success"] is False
        assert "Unknown output format" in result["error"]
