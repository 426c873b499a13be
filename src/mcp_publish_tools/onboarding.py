"""
Client onboarding documents served next to the SSE endpoint.

- agent_definition(): a Markdown agent file (frontmatter + workflow) that
  lists the tools the server currently registers
- vscode_settings(): the mcpServers block a VS Code client needs to connect,
  pointing at the devcontainer service name or at the host that was asked
"""

import json
import re
from dataclasses import dataclass
from typing import Optional

from mcp.server.fastmcp import FastMCP

from .config import DEFAULT_PORT
from .errors import ConfigurationError

API_KEY_PLACEHOLDER = "${MCP_API_KEY}"
CONTAINER_NAME = "mcp-publish-tools"

_PROJECT_PATTERN = re.compile(r"[A-Za-z0-9_-]*")

AGENT_FRONTMATTER = """---
description: Publish and manage documentation on Confluence using the MCP server
name: confluence-publisher
argument-hint: Specify what to publish or which Confluence space to use
tools: ['edit', 'search', 'usages']
target: vscode
---
"""

AGENT_WORKFLOW = """
## Workflow

1. Check the server is up: `curl http://{container}:{port}/health`
2. Run `confluence_show_config`; if nothing is configured, run
   `confluence_setup_project` with the user's URL, credentials and space
3. Publish with `confluence_publish_page`. Mermaid blocks are rendered and
   attached as PNG images; blocks that fail to render stay as code
4. A file that was published before needs the page's current version.
   On a version conflict, list the pages again and retry with the new version
5. Report the page id, version and any diagrams that failed to render

## Notes

- Never echo API tokens back to the user
- Confirm with the user before deleting pages
"""


def _summary(description: Optional[str]) -> str:
    lines = (description or "").strip().splitlines()
    return lines[0] if lines else ""


async def agent_definition(server: FastMCP) -> str:
    """Render the agent definition Markdown for the registered tools."""
    tools = await server.list_tools()
    tool_lines = "\n".join(
        f"{n}. **{tool.name}** - {_summary(tool.description)}"
        for n, tool in enumerate(sorted(tools, key=lambda t: t.name), start=1)
    )
    return (
        AGENT_FRONTMATTER
        + "\n# Confluence Publishing Agent\n\n"
        + "You publish Markdown documentation to Confluence through the MCP publish tools server.\n\n"
        + "## Endpoints\n\n"
        + f"- **From a devcontainer**: `http://{CONTAINER_NAME}:{DEFAULT_PORT}`\n"
        + f"- **From the host**: `http://localhost:{DEFAULT_PORT}`\n"
        + "- **SSE stream**: `GET /mcp` (send the `x-mcp-api-key` header)\n"
        + "- **Health**: `GET /health`\n\n"
        + "## Tools\n\n"
        + tool_lines
        + "\n"
        + AGENT_WORKFLOW.format(container=CONTAINER_NAME, port=DEFAULT_PORT)
    )


@dataclass(frozen=True)
class VscodeSettings:
    """Connection settings for one VS Code client."""
    server_url: str
    server_name: str
    display_name: str
    devcontainer: bool
    project: str
    host: str

    def mcp_settings(self) -> dict:
        return {
            "mcpServers": {
                self.server_name: {
                    "url": self.server_url,
                    "transport": {"type": "sse"},
                    "headers": {"x-mcp-api-key": API_KEY_PLACEHOLDER},
                    "description": self.display_name,
                }
            }
        }

    def instructions(self) -> str:
        context = "Devcontainer" if self.devcontainer else "Host machine"
        if self.project:
            context += f" (Project: {self.project})"
        return (
            "# VS Code MCP Server Configuration\n\n"
            "Add this to your VS Code settings.json:\n\n"
            f"```json\n{json.dumps(self.mcp_settings(), indent=2)}\n```\n\n"
            f"`{API_KEY_PLACEHOLDER}` is substituted from the environment; "
            "set MCP_API_KEY before starting VS Code.\n\n"
            "## Connection Details\n\n"
            f"- **Server URL**: {self.server_url}\n"
            "- **Transport**: Server-Sent Events (SSE)\n"
            "- **Authentication**: x-mcp-api-key header\n"
            "- **Tool Discovery**: Automatic via MCP\n"
            f"- **Context**: {context}\n"
        )

    def to_dict(self) -> dict:
        return {
            "config": self.mcp_settings(),
            "instructions": self.instructions(),
            "serverUrl": self.server_url,
            "apiKeyPlaceholder": API_KEY_PLACEHOLDER,
            "context": {
                "isDevcontainer": self.devcontainer,
                "projectName": self.project or None,
                "host": self.host,
            },
        }


def vscode_settings(scheme: str, host: str, sse_path: str, devcontainer: bool = False, project: str = "") -> VscodeSettings:
    """
    Raises:
        ConfigurationError: If project holds anything but [A-Za-z0-9_-]
    """
    if not _PROJECT_PATTERN.fullmatch(project):
        raise ConfigurationError(f"Invalid project name: {project!r}")

    if devcontainer:
        container = f"{project}-{CONTAINER_NAME}" if project else CONTAINER_NAME
        server_url = f"http://{container}:{DEFAULT_PORT}{sse_path}"
        display_name = f"MCP Publish Tools ({project})" if project else "MCP Publish Tools"
    else:
        server_url = f"{scheme}://{host}{sse_path}"
        display_name = "MCP Publish Tools (localhost)"

    return VscodeSettings(
        server_url=server_url,
        server_name=f"publish-tools-{project}" if project else "publish-tools",
        display_name=display_name,
        devcontainer=devcontainer,
        project=project,
        host=host,
    )
