"""Link preview scraping.

Fetches a page with a short timeout and pulls the title (og:title preferred
over <title>) and og:image out of the HTML. Any failure degrades to "no
preview"; callers never see an exception.
"""
import asyncio
import logging
import re
from html import unescape
from typing import Optional
from urllib.parse import urljoin, urlparse

import httpx

from myflow.chat.schemas import LinkPreview
from myflow.errors import ExternalServiceError

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)

_TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)
_META_RE = re.compile(r"<meta\s+[^>]*>", re.IGNORECASE)
_ATTR_RE = re.compile(r"""([a-zA-Z:_-]+)\s*=\s*["']([^"']*)["']""")

# Characters commonly glued to the end of a URL in prose
_TRAILING_PUNCTUATION = ".,;:!?)]}"

# Titles and og tags live in <head>; the rest of a large page is never read.
DEFAULT_MAX_BYTES = 512 * 1024


def first_url(text: Optional[str]) -> Optional[str]:
    """Return the first http(s) URL in *text*.

    Examples:
        >>> first_url("see https://example.com/a, thanks")
        'https://example.com/a'
        >>> first_url("no links") is None
        True
    """
    if not text:
        return None
    match = URL_PATTERN.search(text)
    if not match:
        return None
    return match.group(0).rstrip(_TRAILING_PUNCTUATION)


def _meta_content(html: str, prop: str) -> str:
    for tag in _META_RE.findall(html):
        attrs = {k.lower(): v for k, v in _ATTR_RE.findall(tag)}
        if attrs.get("property", attrs.get("name", "")).lower() == prop:
            return unescape(attrs.get("content", "")).strip()
    return ""


def parse_preview(html: str, page_url: str) -> Optional[LinkPreview]:
    """Extract title and image from an HTML document; None when neither exists."""
    title = _meta_content(html, "og:title")
    if not title:
        match = _TITLE_RE.search(html)
        title = unescape(match.group(1)).strip() if match else ""

    image = _meta_content(html, "og:image")
    if image:
        image = urljoin(page_url, image)

    if not title and not image:
        return None
    return LinkPreview(title=title, image=image)


class LinkPreviewService:
    """Fetches link previews over HTTP."""

    _instance: Optional["LinkPreviewService"] = None

    def __init__(
        self,
        timeout_seconds: float = 3.0,
        user_agent: str = "MyFlow/1.0",
        max_bytes: int = DEFAULT_MAX_BYTES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self.max_bytes = max_bytes
        self.transport = transport

    @classmethod
    def get_instance(cls, **kwargs) -> "LinkPreviewService":
        if cls._instance is None:
            cls._instance = cls(**kwargs)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    async def _download(self, url: str) -> str:
        """Read at most ``max_bytes`` of the page body."""
        body = bytearray()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                async with client.stream(
                    "GET",
                    url,
                    headers={"User-Agent": self.user_agent, "Accept": "text/html"},
                ) as response:
                    if response.status_code != 200:
                        raise ExternalServiceError(
                            f"Fetching {url} returned HTTP {response.status_code}"
                        )
                    async for chunk in response.aiter_bytes():
                        body.extend(chunk)
                        if len(body) >= self.max_bytes:
                            break
                    encoding = response.charset_encoding or "utf-8"
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            raise ExternalServiceError(f"Fetching {url} failed: {e}") from e
        try:
            return bytes(body[:self.max_bytes]).decode(encoding, errors="replace")
        except LookupError:
            return bytes(body[:self.max_bytes]).decode("utf-8", errors="replace")

    async def fetch(self, url: str) -> Optional[LinkPreview]:
        """Return the preview of *url*, or None on any failure.

        ``timeout_seconds`` bounds the whole fetch, not each network phase.
        """
        try:
            if urlparse(url or "").scheme not in ("http", "https"):
                return None
            html = await asyncio.wait_for(self._download(url), self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"[Preview] Fetching {url} took longer than {self.timeout_seconds}s")
            return None
        except ExternalServiceError as e:
            logger.warning(f"[Preview] {e}")
            return None
        except ValueError as e:
            logger.warning(f"[Preview] Unusable URL {url!r}: {e}")
            return None
        except Exception:
            logger.exception(f"[Preview] Unexpected failure fetching {url}")
            return None
        preview = parse_preview(html, url)
        if preview is None:
            logger.debug(f"[Preview] No title or image found at {url}")
        return preview

    async def preview_for_text(self, text: str) -> Optional[LinkPreview]:
        url = first_url(text)
        return await self.fetch(url) if url else None
