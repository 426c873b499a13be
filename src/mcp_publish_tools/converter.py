"""
HTTP client for the diagram converter service.

The converter is a separate container that renders Mermaid and SVG to PNG:

    POST /convert/mermaid2png    text/plain Mermaid source -> image/png
    POST /convert/svg2png        multipart "file" + "density" -> image/png
    POST /convert/mermaid-file   multipart "file" (.mmd) -> image/png
    GET  /health                 {"status": "healthy", ...}
"""

import logging
from typing import Any, Optional

import httpx

from .errors import ConversionError

logger = logging.getLogger(__name__)

MIN_DENSITY = 1
MAX_DENSITY = 1200
DEFAULT_DENSITY = 300


class DiagramConverterClient:
    """Async client for the diagram converter service."""

    DEFAULT_TIMEOUT = 30.0
    HEALTH_TIMEOUT = 5.0

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _post_for_png(self, path: str, **kwargs) -> bytes:
        """POST to a conversion endpoint and return the PNG body."""
        url = f"{self.base_url}{path}"

        async with self._client(self.timeout) as client:
            try:
                response = await client.post(url, **kwargs)
            except httpx.TimeoutException:
                raise ConversionError(
                    f"Diagram converter timed out after {self.timeout:g} seconds"
                )
            except httpx.RequestError:
                raise ConversionError(
                    f"Cannot reach diagram-converter at {self.base_url}. Is the service running?"
                )

        if response.status_code >= 400:
            raise ConversionError(
                f"Diagram converter returned {response.status_code}: {response.reason_phrase}"
            )
        if not response.content:
            raise ConversionError("Diagram converter returned an empty image")
        return response.content

    async def mermaid_to_png(self, mermaid_code: str) -> bytes:
        """Render Mermaid source to PNG.

        Raises:
            ConversionError: On timeout, non-2xx status, empty body or unreachable service
        """
        if not mermaid_code or not mermaid_code.strip():
            raise ConversionError("mermaid_code cannot be empty")

        return await self._post_for_png(
            "/convert/mermaid2png",
            content=mermaid_code.encode("utf-8"),
            headers={"Content-Type": "text/plain"},
        )

    async def svg_to_png(
        self,
        svg: bytes,
        filename: str = "diagram.svg",
        density: int = DEFAULT_DENSITY,
    ) -> bytes:
        """Render an SVG document to PNG at the given density (DPI)."""
        if not MIN_DENSITY <= density <= MAX_DENSITY:
            raise ConversionError(
                f"density must be between {MIN_DENSITY} and {MAX_DENSITY}, got: {density}"
            )

        return await self._post_for_png(
            "/convert/svg2png",
            files={"file": (filename, svg, "image/svg+xml")},
            data={"density": str(density)},
        )

    async def mermaid_file_to_png(self, content: bytes, filename: str = "diagram.mmd") -> bytes:
        """Render an uploaded .mmd file to PNG."""
        return await self._post_for_png(
            "/convert/mermaid-file",
            files={"file": (filename, content, "text/plain")},
        )

    async def health(self) -> dict[str, Any]:
        """Return the converter's /health payload.

        Raises:
            ConversionError: If the service is unreachable or unhealthy
        """
        url = f"{self.base_url}/health"

        async with self._client(self.HEALTH_TIMEOUT) as client:
            try:
                response = await client.get(url)
            except httpx.HTTPError as e:
                raise ConversionError(f"Cannot reach diagram-converter at {self.base_url}: {e}")

        if response.status_code != 200:
            raise ConversionError(f"Diagram converter health check returned {response.status_code}")
        try:
            return response.json()
        except ValueError:
            return {"status": response.text.strip() or "ok"}

    async def is_available(self) -> bool:
        try:
            await self.health()
        except ConversionError as e:
            logger.warning(f"Diagram converter unavailable: {e}")
            return False
        return True
