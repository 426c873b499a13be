"""
Async client for the Confluence REST API (v1, storage format).

Translates HTTP failures into the typed errors from errors.py and retries
429 responses with exponential backoff (1s, 2s, 4s). Nothing else is retried:
a version conflict in particular always surfaces to the caller.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import anyio
import httpx

from .config import ConfluenceCredentials
from .errors import (
    APIUnreachableError,
    ConfigurationError,
    ConflictError,
    ConfluenceError,
    InvalidCredentialsError,
    PageNotFoundError,
)

logger = logging.getLogger(__name__)

PAGE_EXPAND = "version,space,ancestors"


@dataclass
class RemotePage:
    """A Confluence page as returned by the API."""
    id: str
    title: str
    space_key: str
    version: int
    parent_id: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict, space_key: str = "") -> "RemotePage":
        ancestors = data.get("ancestors") or []
        links = data.get("_links") or {}
        url = None
        if links.get("webui"):
            url = f"{links.get('base', '')}{links['webui']}"
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            space_key=(data.get("space") or {}).get("key") or space_key,
            version=int((data.get("version") or {}).get("number", 1)),
            parent_id=str(ancestors[-1]["id"]) if ancestors else None,
            url=url,
        )

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


def api_base_url(base_url: str) -> str:
    """https://x.atlassian.net[/wiki] -> https://x.atlassian.net/wiki/rest/api"""
    base = base_url.rstrip("/")
    if not base.endswith("/wiki"):
        base += "/wiki"
    return f"{base}/rest/api"


def _storage_body(body: str) -> dict:
    return {"storage": {"value": body, "representation": "storage"}}


class ConfluenceClient:
    """Thin async wrapper over the Confluence content and space endpoints."""

    DEFAULT_TIMEOUT = 30.0
    MAX_RETRIES = 3
    PAGE_SIZE = 100

    def __init__(
        self,
        credentials: ConfluenceCredentials,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
    ):
        """
        Raises:
            ConfigurationError: If base URL, username or API token is missing
        """
        if not credentials.is_configured:
            raise ConfigurationError(
                "Confluence is not configured. Set CONFLUENCE_BASE_URL, CONFLUENCE_USERNAME "
                "and CONFLUENCE_API_TOKEN, or run confluence_setup_project."
            )
        self.credentials = credentials
        self.base_url = api_base_url(credentials.base_url)
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        async with httpx.AsyncClient(
            auth=httpx.BasicAuth(self.credentials.username, self.credentials.api_token),
            timeout=self.timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        ) as client:
            try:
                return await client.request(method, url, **kwargs)
            except httpx.RequestError as e:
                logger.error(f"Confluence request {method} {path} failed: {e}")
                raise APIUnreachableError(self.credentials.base_url)

    async def _request(
        self,
        method: str,
        path: str,
        page_id: Optional[str] = None,
        version: Optional[int] = None,
        **kwargs,
    ) -> httpx.Response:
        """Send a request, retrying 429s, and map error statuses to exceptions."""
        for retry_num in range(self.MAX_RETRIES + 1):
            response = await self._send(method, path, **kwargs)
            if response.status_code != 429:
                break
            if retry_num >= self.MAX_RETRIES:
                logger.error(f"Rate limit persisted after {self.MAX_RETRIES} retries, giving up")
                raise ConfluenceError(f"Confluence API failure (after {self.MAX_RETRIES} retries)")
            wait_time = 2 ** retry_num
            logger.info(
                f"Rate limit hit, retrying in {wait_time}s (retry {retry_num + 1}/{self.MAX_RETRIES})"
            )
            await self._sleep(wait_time)

        status = response.status_code
        if status < 400:
            return response
        if status == 401:
            raise InvalidCredentialsError(self.credentials.username, self.credentials.base_url)
        if status == 404:
            raise PageNotFoundError(page_id or path)
        if status == 409:
            raise ConflictError(page_id or "unknown", version, detail=_error_message(response))
        raise ConfluenceError(
            f"Confluence API returned {status} for {method} {path}: {_error_message(response)}"
        )

    # =====================
    # Spaces
    # =====================

    async def list_spaces(self) -> list[dict]:
        spaces = []
        start = 0
        while True:
            response = await self._request("GET", "space", params={"start": start, "limit": self.PAGE_SIZE})
            results = response.json().get("results", [])
            spaces.extend({"key": s["key"], "name": s.get("name", "")} for s in results)
            if len(results) < self.PAGE_SIZE:
                return spaces
            start += len(results)

    # =====================
    # Pages
    # =====================

    async def list_pages(self, space_key: str) -> list[RemotePage]:
        pages = []
        start = 0
        while True:
            response = await self._request(
                "GET",
                "content",
                params={
                    "spaceKey": space_key,
                    "type": "page",
                    "expand": "version,space",
                    "start": start,
                    "limit": self.PAGE_SIZE,
                },
            )
            results = response.json().get("results", [])
            pages.extend(RemotePage.from_api(p, space_key) for p in results)
            if len(results) < self.PAGE_SIZE:
                return pages
            start += len(results)

    async def get_page(self, page_id: str) -> RemotePage:
        response = await self._request(
            "GET", f"content/{page_id}", page_id=page_id, params={"expand": PAGE_EXPAND}
        )
        return RemotePage.from_api(response.json())

    async def create_page(
        self,
        space_key: str,
        title: str,
        body: str,
        parent_id: Optional[str] = None,
    ) -> RemotePage:
        payload: dict[str, Any] = {
            "type": "page",
            "title": title,
            "space": {"key": space_key},
            "body": _storage_body(body),
        }
        if parent_id:
            payload["ancestors"] = [{"id": parent_id}]

        response = await self._request("POST", "content", json=payload)
        page = RemotePage.from_api(response.json(), space_key)
        logger.info(f"Created page {page.id} '{title}' in space {space_key}")
        return page

    async def update_page(
        self,
        page_id: str,
        title: str,
        body: str,
        version: int,
        parent_id: Optional[str] = None,
    ) -> RemotePage:
        """Replace the page body.

        Args:
            version: The current version the caller last observed; the update
                is sent as version + 1

        Raises:
            ConflictError: If version is stale
        """
        payload: dict[str, Any] = {
            "id": page_id,
            "type": "page",
            "title": title,
            "version": {"number": version + 1},
            "body": _storage_body(body),
        }
        if parent_id:
            payload["ancestors"] = [{"id": parent_id}]

        response = await self._request(
            "PUT", f"content/{page_id}", page_id=page_id, version=version, json=payload
        )
        page = RemotePage.from_api(response.json())
        logger.info(f"Updated page {page.id} to version {page.version}")
        return page

    async def delete_page(self, page_id: str) -> None:
        await self._request("DELETE", f"content/{page_id}", page_id=page_id)
        logger.info(f"Deleted page {page_id}")

    async def upload_attachment(
        self,
        page_id: str,
        filename: str,
        data: bytes,
        content_type: str = "image/png",
    ) -> dict:
        """Create or replace an attachment on a page."""
        response = await self._request(
            "PUT",
            f"content/{page_id}/child/attachment",
            page_id=page_id,
            files={"file": (filename, data, content_type)},
            data={"minorEdit": "true"},
            headers={"X-Atlassian-Token": "no-check"},
        )
        results = response.json().get("results") or [{}]
        logger.info(f"Uploaded attachment {filename} to page {page_id}")
        return results[0]


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("message", "") or response.reason_phrase
    except ValueError:
        return response.text[:200] or response.reason_phrase
