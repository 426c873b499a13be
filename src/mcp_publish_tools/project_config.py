"""Per-project Confluence settings.

Saved by the confluence_setup_project tool to <project_dir>/.confluence-mcp.json
and used as the middle layer of target resolution:
explicit tool argument > project config > environment default.
"""

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import ConfluenceCredentials

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".confluence-mcp.json"

_EMAIL_MASK = re.compile(r"(.{3}).*(@.*)")


def mask_username(username: str) -> str:
    """jane.doe@example.com -> jan***@example.com"""
    return _EMAIL_MASK.sub(r"\1***\2", username or "")


@dataclass
class ProjectConfig:
    """Confluence connection and placement defaults for one project."""
    confluence_url: str
    username: str
    api_token: str
    space_key: str
    parent_page_title: Optional[str] = None
    parent_page_id: Optional[str] = None
    base_dir: Optional[str] = None
    last_updated: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def credentials(self) -> ConfluenceCredentials:
        return ConfluenceCredentials(
            base_url=self.confluence_url,
            username=self.username,
            api_token=self.api_token,
        )

    def public_view(self) -> dict:
        """Config safe to show to a client: username masked, no token."""
        return {
            "confluence_url": self.confluence_url,
            "username": mask_username(self.username),
            "space_key": self.space_key,
            "parent_page_title": self.parent_page_title,
            "parent_page_id": self.parent_page_id,
            "base_dir": self.base_dir,
            "last_updated": self.last_updated,
        }


class ProjectConfigManager:
    """Reads and writes the project config file."""

    def __init__(self, project_dir: Path):
        self.config_file = Path(project_dir) / CONFIG_FILENAME

    def get_config(self) -> Optional[ProjectConfig]:
        try:
            data = json.loads(self.config_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable project config {self.config_file}: {e}")
            return None

        try:
            return ProjectConfig(**data)
        except TypeError as e:
            logger.warning(f"Ignoring malformed project config {self.config_file}: {e}")
            return None

    def save_config(self, config: ProjectConfig) -> ProjectConfig:
        config.last_updated = datetime.now(timezone.utc).isoformat()
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(json.dumps(asdict(config), indent=2), encoding="utf-8")
        logger.info(f"Saved project configuration to {self.config_file}")
        return config

    def has_config(self) -> bool:
        return self.get_config() is not None
