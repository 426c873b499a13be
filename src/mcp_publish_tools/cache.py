"""Local Markdown path -> Confluence page cache.

Remembers which page each Markdown file was published to, so a second
publish of the same file updates that page instead of creating a new one.

File structure (<project_dir>/.confluence-cache.json):
    {
      "docs/guide.md": {
        "markdown_path": "docs/guide.md",
        "page_id": "123456",
        "space_key": "DOCS",
        "title": "Guide",
        "last_updated": "2026-01-15T10:30:00+00:00"
      }
    }

A missing or unreadable file is treated as an empty cache.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

CACHE_FILENAME = ".confluence-cache.json"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_path(markdown_path: str) -> str:
    """Cache key for a Markdown path: normalized, forward slashes."""
    return Path(os.path.normpath(markdown_path)).as_posix()


@dataclass
class PageMapping:
    """Which Confluence page a Markdown file was last published to."""
    markdown_path: str
    page_id: str
    space_key: str
    title: str
    last_updated: str = field(default_factory=_now)

    @classmethod
    def from_dict(cls, data: dict) -> "PageMapping":
        return cls(
            markdown_path=data["markdown_path"],
            page_id=str(data["page_id"]),
            space_key=data.get("space_key", ""),
            title=data.get("title", ""),
            last_updated=data.get("last_updated") or _now(),
        )

    def to_dict(self) -> dict:
        return asdict(self)


class MarkdownPageCache:
    """JSON-file backed map of Markdown path to PageMapping."""

    def __init__(self, project_dir: Path):
        self.cache_file = Path(project_dir) / CACHE_FILENAME

    def _load(self) -> dict[str, PageMapping]:
        try:
            raw = json.loads(self.cache_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable page cache {self.cache_file}: {e}")
            return {}

        mappings = {}
        for path, entry in raw.items():
            try:
                mappings[path] = PageMapping.from_dict(entry)
            except (KeyError, TypeError, AttributeError):
                logger.warning(f"Skipping malformed cache entry for {path!r}")
        return mappings

    def _save(self, mappings: dict[str, PageMapping]) -> None:
        self.cache_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.cache_file.with_suffix(".tmp")
        tmp.write_text(
            json.dumps({path: m.to_dict() for path, m in mappings.items()}, indent=2),
            encoding="utf-8",
        )
        tmp.replace(self.cache_file)

    def get_page_mapping(self, markdown_path: str) -> Optional[PageMapping]:
        return self._load().get(normalize_path(markdown_path))

    def set_page_mapping(self, markdown_path: str, mapping: PageMapping) -> PageMapping:
        """Insert or overwrite the mapping for markdown_path."""
        key = normalize_path(markdown_path)
        mapping.markdown_path = key
        mappings = self._load()
        mappings[key] = mapping
        self._save(mappings)
        logger.debug(f"Cached {key} -> page {mapping.page_id}")
        return mapping

    def remove_page_mapping(self, markdown_path: str) -> bool:
        key = normalize_path(markdown_path)
        mappings = self._load()
        if mappings.pop(key, None) is None:
            return False
        self._save(mappings)
        return True

    def find_path_by_page_id(self, page_id: str) -> Optional[str]:
        for path, mapping in self._load().items():
            if mapping.page_id == str(page_id):
                return path
        return None

    def remove_by_page_id(self, page_id: str) -> Optional[str]:
        """Remove the first mapping pointing at page_id.

        Returns:
            The Markdown path that was unmapped, or None
        """
        path = self.find_path_by_page_id(page_id)
        if path is not None:
            self.remove_page_mapping(path)
        return path

    def get_all_mappings(self) -> dict[str, PageMapping]:
        return self._load()
