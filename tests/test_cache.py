"""Tests for the Markdown path -> page cache and the project config file."""

import json

from mcp_publish_tools.cache import CACHE_FILENAME, MarkdownPageCache, PageMapping
from mcp_publish_tools.project_config import (
    CONFIG_FILENAME,
    ProjectConfig,
    ProjectConfigManager,
    mask_username,
)


def _mapping(page_id="100", title="Guide"):
    return PageMapping(markdown_path="docs/guide.md", page_id=page_id, space_key="DOCS", title=title)


class TestMarkdownPageCache:

    def test_empty_when_file_missing(self, tmp_path):
        cache = MarkdownPageCache(tmp_path)
        assert cache.get_page_mapping("docs/guide.md") is None
        assert cache.get_all_mappings() == {}

    def test_set_and_get(self, tmp_path):
        cache = MarkdownPageCache(tmp_path)
        cache.set_page_mapping("docs/guide.md", _mapping())

        mapping = MarkdownPageCache(tmp_path).get_page_mapping("docs/guide.md")

        assert mapping.page_id == "100"
        assert mapping.space_key == "DOCS"
        assert (tmp_path / CACHE_FILENAME).exists()

    def test_overwrite_keeps_one_mapping_per_path(self, tmp_path):
        cache = MarkdownPageCache(tmp_path)
        cache.set_page_mapping("docs/guide.md", _mapping(title="v1"))
        cache.set_page_mapping("./docs//guide.md", _mapping(title="v2"))

        mappings = cache.get_all_mappings()

        assert list(mappings) == ["docs/guide.md"]
        assert mappings["docs/guide.md"].title == "v2"

    def test_remove_by_path(self, tmp_path):
        cache = MarkdownPageCache(tmp_path)
        cache.set_page_mapping("docs/guide.md", _mapping())

        assert cache.remove_page_mapping("docs/guide.md") is True
        assert cache.remove_page_mapping("docs/guide.md") is False
        assert cache.get_all_mappings() == {}

    def test_remove_by_page_id(self, tmp_path):
        cache = MarkdownPageCache(tmp_path)
        cache.set_page_mapping("a.md", _mapping(page_id="1"))
        cache.set_page_mapping("b.md", _mapping(page_id="2"))

        assert cache.remove_by_page_id("2") == "b.md"
        assert cache.remove_by_page_id("2") is None
        assert list(cache.get_all_mappings()) == ["a.md"]

    def test_corrupt_file_treated_as_empty(self, tmp_path):
        (tmp_path / CACHE_FILENAME).write_text("{not json")
        cache = MarkdownPageCache(tmp_path)

        assert cache.get_all_mappings() == {}
        cache.set_page_mapping("a.md", _mapping())
        assert json.loads((tmp_path / CACHE_FILENAME).read_text())["a.md"]["page_id"] == "100"


class TestProjectConfig:

    def _config(self):
        return ProjectConfig(
            confluence_url="https://example.atlassian.net",
            username="jane.doe@example.com",
            api_token="secret-token",
            space_key="DOCS",
            parent_page_title="Handbook",
            parent_page_id="42",
        )

    def test_missing_config(self, tmp_path):
        assert ProjectConfigManager(tmp_path).get_config() is None

    def test_save_and_load(self, tmp_path):
        manager = ProjectConfigManager(tmp_path)
        manager.save_config(self._config())

        loaded = ProjectConfigManager(tmp_path).get_config()

        assert loaded.space_key == "DOCS"
        assert loaded.parent_page_id == "42"
        assert loaded.credentials.is_configured
        assert (tmp_path / CONFIG_FILENAME).exists()

    def test_public_view_hides_secrets(self):
        view = self._config().public_view()

        assert view["username"] == "jan***@example.com"
        assert "api_token" not in view
        assert "secret-token" not in json.dumps(view)

    def test_mask_username_without_email(self):
        assert mask_username("jdoe") == "jdoe"
