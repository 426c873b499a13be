"""
Mermaid diagram extraction and rendering for Markdown documents.

A single scan produces an ordered list of DiagramBlock descriptors. Every
later step (conversion, rewriting, saving) works from that same list, so a
block is identified by its position in the document, never by its source
text. Two identical diagrams are two independent blocks.

One failing diagram never fails the document: the block keeps its original
fenced source and the rest of the document is processed as usual.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

import anyio

from .errors import ConversionError

logger = logging.getLogger(__name__)

MERMAID_BLOCK_PATTERN = re.compile(r"```mermaid\n(.*?)\n```", re.DOTALL)
DEFAULT_BASE_NAME = "diagram"
DEFAULT_TIMEOUT = 30.0


class MermaidRenderer(Protocol):
    async def mermaid_to_png(self, mermaid_code: str) -> bytes: ...


@dataclass
class DiagramBlock:
    """One fenced Mermaid block and the outcome of rendering it."""
    index: int
    source_code: str
    start: int
    end: int
    filename: str
    rendered: Optional[bytes] = field(default=None, repr=False)
    error: Optional[str] = None

    @property
    def ordinal(self) -> int:
        return self.index + 1

    @property
    def succeeded(self) -> bool:
        return self.rendered is not None and self.error is None

    @property
    def image_reference(self) -> str:
        return f"![Diagram {self.ordinal}]({self.filename})"


@dataclass
class PipelineResult:
    """Rewritten Markdown plus every block found in the original."""
    markdown: str
    blocks: list[DiagramBlock]

    @property
    def artifacts(self) -> list[DiagramBlock]:
        return [block for block in self.blocks if block.succeeded]

    @property
    def failures(self) -> list[DiagramBlock]:
        return [block for block in self.blocks if not block.succeeded]

    def summary(self) -> dict:
        return {
            "diagrams_found": len(self.blocks),
            "diagrams_converted": len(self.artifacts),
            "diagrams": [
                {
                    "index": block.ordinal,
                    "filename": block.filename,
                    "success": block.succeeded,
                    **({"size": len(block.rendered)} if block.succeeded else {"error": block.error}),
                }
                for block in self.blocks
            ],
        }


def base_name_for(source_path: Optional[str]) -> str:
    if not source_path:
        return DEFAULT_BASE_NAME
    return Path(source_path).stem or DEFAULT_BASE_NAME


def extract_blocks(document: str, source_path: Optional[str] = None) -> list[DiagramBlock]:
    """Find every fenced mermaid block, in document order."""
    base_name = base_name_for(source_path)
    return [
        DiagramBlock(
            index=i,
            source_code=match.group(1).strip(),
            start=match.start(),
            end=match.end(),
            filename=f"{base_name}-diagram-{i + 1}.png",
        )
        for i, match in enumerate(MERMAID_BLOCK_PATTERN.finditer(document))
    ]


def rewrite_document(document: str, blocks: list[DiagramBlock]) -> str:
    """Replace rendered blocks with image references; leave failed ones verbatim."""
    parts = []
    cursor = 0
    for block in blocks:
        parts.append(document[cursor:block.start])
        if block.succeeded:
            parts.append(block.image_reference)
        else:
            parts.append(document[block.start:block.end])
        cursor = block.end
    parts.append(document[cursor:])
    return "".join(parts)


def save_artifacts(markdown_path: Path, blocks: list[DiagramBlock]) -> list[Path]:
    """Write <name>.mmd and <name>.png into an assets/ folder next to the Markdown file.

    Only rendered blocks are written.

    Returns:
        Paths of the files written
    """
    assets_dir = Path(markdown_path).parent / "assets"
    assets_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for block in blocks:
        if not block.succeeded:
            continue
        png_path = assets_dir / block.filename
        mmd_path = png_path.with_suffix(".mmd")
        mmd_path.write_text(block.source_code, encoding="utf-8")
        png_path.write_bytes(block.rendered)
        logger.info(f"Saved diagram {block.ordinal}: {mmd_path.name}, {png_path.name}")
        written.extend([mmd_path, png_path])
    return written


class DiagramPipeline:
    """Extracts, renders and rewrites Mermaid diagrams in Markdown."""

    def __init__(self, renderer: MermaidRenderer, timeout: float = DEFAULT_TIMEOUT):
        self.renderer = renderer
        self.timeout = timeout

    async def render_block(self, block: DiagramBlock) -> DiagramBlock:
        """Render one block. Failures are recorded on the block, never raised."""
        try:
            with anyio.fail_after(self.timeout):
                png = await self.renderer.mermaid_to_png(block.source_code)
            if not png:
                raise ConversionError("Diagram converter returned an empty image")
            block.rendered = png
            logger.info(f"Converted {block.filename}: {len(png)} bytes")
        except TimeoutError:
            block.error = f"Conversion timed out after {self.timeout:g} seconds"
            logger.error(f"Failed to convert diagram {block.ordinal}: {block.error}")
        except ConversionError as e:
            block.error = str(e)
            logger.error(f"Failed to convert diagram {block.ordinal}: {e}")
        return block

    async def process(self, document: str, source_path: Optional[str] = None) -> PipelineResult:
        """Render every Mermaid block and rewrite the document around the results."""
        blocks = extract_blocks(document, source_path)
        if not blocks:
            return PipelineResult(markdown=document, blocks=[])

        logger.info(f"Found {len(blocks)} Mermaid diagram(s) to process")
        for block in blocks:
            await self.render_block(block)

        return PipelineResult(markdown=rewrite_document(document, blocks), blocks=blocks)
