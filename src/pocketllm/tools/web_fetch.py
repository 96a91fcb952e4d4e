"""Built-in ``web_fetch`` tool returning the visible text of a page."""

from __future__ import annotations

import logging
import re
from typing import Callable

import httpx

from .types import ParameterSchema, ToolSpec

__all__ = ["MAX_FETCH_CHARS", "build_web_fetch_spec", "html_to_text"]

LOGGER = logging.getLogger(__name__)

MAX_FETCH_CHARS = 4000
_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")
_SCRIPT_RE = re.compile(r"<(script|style)\b.*?</\1>", re.IGNORECASE | re.DOTALL)


def html_to_text(body: str, *, limit: int = MAX_FETCH_CHARS) -> str:
    text = _SCRIPT_RE.sub(" ", body)
    text = _TAG_RE.sub(" ", text)
    return _SPACE_RE.sub(" ", text).strip()[:limit]


def build_web_fetch_spec(
    *,
    timeout: float = 15.0,
    client_factory: Callable[[], httpx.AsyncClient] | None = None,
) -> ToolSpec:
    """Create the ``web_fetch`` tool.

    Args:
        timeout: Per-request timeout in seconds.
        client_factory: Optional factory for the HTTP client, used to plug
            in a mock transport.
    """

    def _client() -> httpx.AsyncClient:
        if client_factory is not None:
            return client_factory()
        return httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def web_fetch(url: str) -> str:
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"Only http(s) URLs can be fetched: {url}")
        try:
            async with _client() as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.warning("web_fetch failed for %s: %s", url, exc)
            return f"Error: failed to fetch {url}: {exc}"
        return html_to_text(response.text)

    return ToolSpec(
        name="web_fetch",
        description="Fetch a web page and return its text content (first 4000 characters).",
        handler=web_fetch,
        parameters=[
            ParameterSchema(name="url", type="string", description="The http(s) URL to fetch.", required=True)
        ],
        built_in=True,
        enabled_by_default=False,
    )
