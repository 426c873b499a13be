"""
Publishing Markdown documents to Confluence.

Create:
    1. Render Mermaid diagrams (failures keep their source block)
    2. Create the page from the original Markdown
    3. Record path -> page in the cache
    4. Upload rendered diagrams as attachments
    5. Update the page body to reference the attachments

Update:
    1. Render diagrams and upload them
    2. Update the page at the version the caller last saw

There is no rollback across these steps. A create that fails after step 2
leaves a valid page that still shows the diagram source; the PublishError
raised names the page and the attachments already uploaded, so the caller
can finish with an update.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .cache import MarkdownPageCache, PageMapping
from .confluence import ConfluenceClient, RemotePage
from .diagrams import DiagramBlock, DiagramPipeline
from .errors import ConfigurationError, ConfluenceError, GatewayError, PublishError
from .markdown import MarkdownConverter
from .project_config import ProjectConfigManager

logger = logging.getLogger(__name__)

MISSING_SPACE_MESSAGE = (
    "No space key provided. Either:\n"
    "1. Pass space_key, or\n"
    "2. Set up project config with confluence_setup_project, or\n"
    "3. Set CONFLUENCE_SPACE_KEY in the environment or .env file"
)


@dataclass(frozen=True)
class PublishTarget:
    space_key: str
    parent_page_id: Optional[str] = None


@dataclass
class PublishResult:
    """What a publish run did."""
    page: RemotePage
    created: bool
    parent_page_id: Optional[str] = None
    attachments: list[str] = field(default_factory=list)
    diagram_failures: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "created": self.created,
            "page": {**self.page.to_dict(), "parent_page_id": self.parent_page_id},
            "attachments": self.attachments,
            "diagram_failures": self.diagram_failures,
        }


def _failure_report(blocks: list[DiagramBlock]) -> list[dict]:
    return [
        {"index": block.ordinal, "filename": block.filename, "error": block.error}
        for block in blocks
    ]


class PublishWorkflow:
    """Create, update and delete Confluence pages from Markdown."""

    def __init__(
        self,
        client: ConfluenceClient,
        pipeline: DiagramPipeline,
        converter: MarkdownConverter,
        cache: MarkdownPageCache,
        project_config: ProjectConfigManager,
        default_space_key: Optional[str] = None,
    ):
        self.client = client
        self.pipeline = pipeline
        self.converter = converter
        self.cache = cache
        self.project_config = project_config
        self.default_space_key = default_space_key

    def resolve_target(
        self,
        space_key: Optional[str] = None,
        parent_page_id: Optional[str] = None,
    ) -> PublishTarget:
        """Explicit argument > project config > environment default.

        Raises:
            ConfigurationError: If no layer provides a space key
        """
        config = self.project_config.get_config()
        resolved_space = space_key or (config.space_key if config else None) or self.default_space_key
        if not resolved_space:
            raise ConfigurationError(MISSING_SPACE_MESSAGE)
        resolved_parent = parent_page_id or (config.parent_page_id if config else None)
        return PublishTarget(space_key=resolved_space, parent_page_id=resolved_parent or None)

    def _record(self, source_path: Optional[str], page: RemotePage) -> None:
        if not source_path:
            return
        self.cache.set_page_mapping(
            source_path,
            PageMapping(
                markdown_path=source_path,
                page_id=page.id,
                space_key=page.space_key,
                title=page.title,
                last_updated=datetime.now(timezone.utc).isoformat(),
            ),
        )

    async def _upload(self, page_id: str, blocks: list[DiagramBlock], uploaded: list[str]) -> None:
        """Upload rendered diagrams, appending each filename to uploaded as it lands."""
        for block in blocks:
            await self.client.upload_attachment(page_id, block.filename, block.rendered)
            uploaded.append(block.filename)

    async def create(
        self,
        title: str,
        markdown: str,
        source_path: Optional[str] = None,
        space_key: Optional[str] = None,
        parent_page_id: Optional[str] = None,
    ) -> PublishResult:
        target = self.resolve_target(space_key, parent_page_id)
        processed = await self.pipeline.process(markdown, source_path)

        page = await self.client.create_page(
            target.space_key,
            title,
            await self.converter.convert_to_storage(markdown),
            target.parent_page_id,
        )
        self._record(source_path, page)

        uploaded: list[str] = []
        if processed.artifacts:
            try:
                await self._upload(page.id, processed.artifacts, uploaded)
                body = await self.converter.convert_to_storage(processed.markdown)
                page = await self.client.update_page(
                    page.id, title, body, page.version, target.parent_page_id
                )
            except GatewayError as e:
                logger.error(f"Page {page.id} created but diagram publishing failed: {e}")
                raise PublishError(
                    f"Page {page.id} was created but its diagrams could not be published: {e}. "
                    f"Retry with an update at version {page.version}.",
                    page_id=page.id,
                    attachments=uploaded,
                ) from e
            self._record(source_path, page)

        return PublishResult(
            page=page,
            created=True,
            parent_page_id=target.parent_page_id,
            attachments=uploaded,
            diagram_failures=_failure_report(processed.failures),
        )

    async def update(
        self,
        page_id: str,
        title: str,
        markdown: str,
        version: int,
        source_path: Optional[str] = None,
        parent_page_id: Optional[str] = None,
    ) -> PublishResult:
        """Update a page at the caller's version.

        Raises:
            ConflictError: If version is stale (the cache is left untouched)
        """
        config = self.project_config.get_config()
        parent = parent_page_id or (config.parent_page_id if config else None) or None
        processed = await self.pipeline.process(markdown, source_path)

        uploaded: list[str] = []
        try:
            await self._upload(page_id, processed.artifacts, uploaded)
        except ConfluenceError as e:
            raise PublishError(
                f"Could not upload diagrams to page {page_id}: {e}",
                page_id=page_id,
                attachments=uploaded,
            ) from e

        body = await self.converter.convert_to_storage(processed.markdown)
        page = await self.client.update_page(page_id, title, body, version, parent)
        self._record(source_path, page)

        return PublishResult(
            page=page,
            created=False,
            parent_page_id=parent,
            attachments=uploaded,
            diagram_failures=_failure_report(processed.failures),
        )

    async def publish(
        self,
        source_path: str,
        title: str,
        markdown: str,
        version: Optional[int] = None,
        space_key: Optional[str] = None,
        parent_page_id: Optional[str] = None,
    ) -> PublishResult:
        """Create the page for source_path, or update the one it is mapped to."""
        mapping = self.cache.get_page_mapping(source_path)
        if mapping is None:
            return await self.create(title, markdown, source_path, space_key, parent_page_id)

        if version is None:
            raise PublishError(
                f"{source_path} is already published as page {mapping.page_id}. "
                "Pass the page's current version to update it.",
                page_id=mapping.page_id,
            )
        return await self.update(
            mapping.page_id, title, markdown, version, source_path, parent_page_id
        )

    async def delete(self, page_id: str, source_path: Optional[str] = None) -> Optional[str]:
        """Delete the page and forget its mapping.

        Returns:
            The Markdown path that was unmapped, or None
        """
        await self.client.delete_page(page_id)
        if source_path:
            return source_path if self.cache.remove_page_mapping(source_path) else None
        return self.cache.remove_by_page_id(page_id)
