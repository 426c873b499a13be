"""
Pandoc document conversion.

Runs the pandoc binary as a subprocess. Text conversions go through
stdin/stdout; file conversions read and write inside the workspace directory
only. Every user-supplied value that ends up on the command line is
validated first, and free-form extra arguments are never passed through.
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .errors import ConversionError

logger = logging.getLogger(__name__)

PANDOC_BINARY = "pandoc"
DEFAULT_TIMEOUT = 60.0

_FORMAT_PATTERN = re.compile(r"[^a-zA-Z0-9_+-]")
_IDENTIFIER_PATTERN = re.compile(r"[^a-zA-Z0-9_-]")
_QUOTES_PATTERN = re.compile(r"[\"']")

OUTPUT_FORMATS_BY_EXTENSION = {
    ".html": "html",
    ".pdf": "pdf",
    ".docx": "docx",
    ".odt": "odt",
    ".epub": "epub",
    ".tex": "latex",
    ".md": "markdown",
    ".rst": "rst",
    ".txt": "plain",
}

BINARY_OUTPUT_FORMATS = {"pdf", "docx", "odt", "epub"}


@dataclass
class PandocOptions:
    """Conversion options, mapped onto pandoc command line flags."""
    input_format: Optional[str] = None
    output_format: Optional[str] = None
    template: Optional[str] = None
    variables: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    standalone: bool = False
    toc: bool = False
    toc_depth: Optional[int] = None
    number_sections: bool = False
    highlight_style: Optional[str] = None


@dataclass
class ConversionResult:
    """Outcome of one pandoc run."""
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    format: Optional[str] = None
    output_path: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


def sanitize_format(name: str) -> str:
    """Reject format names with anything but [a-zA-Z0-9_+-]."""
    if not name or _FORMAT_PATTERN.search(name):
        raise ConversionError(f"Invalid format name: {name}")
    return name


def sanitize_identifier(name: str) -> str:
    """Reject variable/metadata keys with anything but [a-zA-Z0-9_-]."""
    if not name or _IDENTIFIER_PATTERN.search(name):
        raise ConversionError(f"Invalid identifier: {name}")
    return name


def infer_output_format(path: str) -> str:
    return OUTPUT_FORMATS_BY_EXTENSION.get(Path(path).suffix.lower(), "html")


class PandocService:
    """Async wrapper around the pandoc command line."""

    def __init__(
        self,
        workspace_dir: Path,
        data_dir: Optional[str] = None,
        default_input_format: str = "markdown",
        default_output_format: str = "html",
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.workspace_dir = Path(workspace_dir).resolve()
        self.data_dir = data_dir
        self.default_input_format = default_input_format
        self.default_output_format = default_output_format
        self.timeout = timeout

    def resolve_path(self, path: str) -> Path:
        """Resolve path relative to the workspace and validate it stays within."""
        resolved = (self.workspace_dir / path).resolve()
        try:
            resolved.relative_to(self.workspace_dir)
        except ValueError:
            raise ConversionError(
                f"Path traversal detected: '{path}' is outside the workspace directory"
            )
        return resolved

    def build_args(self, options: PandocOptions) -> list[str]:
        """Translate options into pandoc arguments."""
        args = [
            "-f", sanitize_format(options.input_format) if options.input_format else self.default_input_format,
            "-t", sanitize_format(options.output_format) if options.output_format else self.default_output_format,
        ]

        if options.standalone:
            args.append("--standalone")

        if options.toc:
            args.append("--toc")
            if options.toc_depth is not None and 1 <= options.toc_depth <= 6:
                args.append(f"--toc-depth={options.toc_depth}")

        if options.number_sections:
            args.append("--number-sections")

        if options.highlight_style:
            args.append(f"--highlight-style={sanitize_identifier(options.highlight_style)}")

        if options.template:
            args.extend(["--template", str(self.resolve_path(options.template))])

        for key, value in options.variables.items():
            args.extend(["-V", f"{sanitize_identifier(key)}={_QUOTES_PATTERN.sub('', str(value))}"])

        for key, value in options.metadata.items():
            text = value if isinstance(value, str) else json.dumps(value)
            args.extend(["-M", f"{sanitize_identifier(key)}={_QUOTES_PATTERN.sub('', text)}"])

        return args

    async def _run(self, args: list[str], input_data: Optional[bytes] = None) -> tuple[int, bytes, bytes]:
        """Run pandoc and return (returncode, stdout, stderr)."""
        env = dict(os.environ)
        if self.data_dir:
            env["PANDOC_DATA_DIR"] = self.data_dir

        try:
            process = await asyncio.create_subprocess_exec(
                PANDOC_BINARY, *args,
                stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError:
            raise ConversionError(
                "Pandoc not found. Install: apt-get install pandoc (Linux), "
                "brew install pandoc (macOS) or see https://pandoc.org/installing.html"
            )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input=input_data),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ConversionError(f"Pandoc conversion timed out after {self.timeout:g} seconds")

        return process.returncode, stdout or b"", stderr or b""

    async def convert(self, text: str, options: Optional[PandocOptions] = None) -> ConversionResult:
        """Convert text through stdin/stdout."""
        options = options or PandocOptions()
        try:
            args = self.build_args(options)
            returncode, stdout, stderr = await self._run(args, text.encode("utf-8"))
            output = stdout.decode("utf-8", errors="replace")
            error_text = stderr.decode("utf-8", errors="replace").strip()

            if returncode != 0 or (error_text and not output):
                raise ConversionError(error_text or "Pandoc conversion failed")

            return ConversionResult(
                success=True,
                output=output,
                format=options.output_format or self.default_output_format,
            )
        except ConversionError as e:
            logger.error(f"Pandoc conversion error: {e}")
            return ConversionResult(success=False, error=str(e))

    async def convert_file(
        self,
        input_path: str,
        output_path: str,
        options: Optional[PandocOptions] = None,
    ) -> ConversionResult:
        """Convert a workspace file into another workspace file."""
        options = options or PandocOptions()
        try:
            source = self.resolve_path(input_path)
            target = self.resolve_path(output_path)

            if not source.exists():
                raise ConversionError(f"Input file not found: {input_path}")

            target.parent.mkdir(parents=True, exist_ok=True)

            args = self.build_args(options)
            args.extend(["-o", str(target), str(source)])
            logger.debug(f"Executing pandoc file conversion: {args}")

            returncode, _, stderr = await self._run(args)
            error_text = stderr.decode("utf-8", errors="replace").strip()
            if returncode != 0:
                raise ConversionError(f"Pandoc failed: {error_text}")
            if error_text:
                logger.warning(f"Pandoc warnings: {error_text}")

            output_format = options.output_format or infer_output_format(output_path)
            output = None
            if output_format not in BINARY_OUTPUT_FORMATS:
                output = target.read_text(encoding="utf-8", errors="replace")

            return ConversionResult(
                success=True,
                output=output,
                format=output_format,
                output_path=str(target.relative_to(self.workspace_dir)),
            )
        except ConversionError as e:
            logger.error(f"Pandoc file conversion error: {e}")
            return ConversionResult(success=False, error=str(e))

    async def _lines(self, *args: str) -> list[str]:
        try:
            returncode, stdout, _ = await self._run(list(args))
        except ConversionError as e:
            logger.warning(f"pandoc {' '.join(args)} failed: {e}")
            return []
        if returncode != 0:
            return []
        return [line for line in stdout.decode("utf-8", errors="replace").splitlines() if line.strip()]

    async def get_version(self) -> str:
        lines = await self._lines("--version")
        return lines[0] if lines else "Unknown"

    async def list_input_formats(self) -> list[str]:
        return await self._lines("--list-input-formats")

    async def list_output_formats(self) -> list[str]:
        return await self._lines("--list-output-formats")
