from __future__ import annotations

import logging
import re
from typing import Optional, Protocol, Tuple
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from .errors import ScrapeError
from .models import ScrapeResult
from .storage import BlobStorage, StoragePaths

logger = logging.getLogger(__name__)

READER_BASE_URL = "https://r.jina.ai/"
READER_TIMEOUT_SECONDS = 60.0
DIRECT_TIMEOUT_SECONDS = 30.0
MIN_READER_CHARS = 50
USER_AGENT = "Mozilla/5.0 (compatible; elasticdocument/1.0)"


class UrlScraper(Protocol):
    async def scrape(self, url: str, owner_id: str) -> ScrapeResult:
        ...


def file_name_for_url(url: str) -> str:
    parsed = urlparse(url)
    return re.sub(r"[^a-zA-Z0-9]", "_", f"{parsed.hostname or ''}{parsed.path}")[:100] + ".html"


def html_to_markdown(html: str) -> str:
    """
    Lightweight HTML to markdown conversion: drops scripts and styles, keeps
    headings, paragraphs, lists, links, emphasis, quotes and code.
    """
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "head"]):
        tag.decompose()
    root = soup.body or soup
    text = _render_children(root)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n[ \t]+", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _render_children(node: Tag) -> str:
    return "".join(_render(child) for child in node.children)


def _render(node) -> str:
    if isinstance(node, Comment):
        return ""
    if isinstance(node, NavigableString):
        return str(node)
    if not isinstance(node, Tag):
        return ""

    name = node.name.lower()
    inner = _render_children(node)
    if re.fullmatch(r"h[1-6]", name):
        return f"\n{'#' * int(name[1])} {inner.strip()}\n"
    if name == "p":
        return f"{inner}\n\n"
    if name == "br":
        return "\n"
    if name == "div":
        return f"{inner}\n"
    if name == "li":
        return f"- {inner.strip()}\n"
    if name == "a" and node.get("href"):
        return f"[{inner}]({node['href']})"
    if name in ("strong", "b"):
        return f"**{inner}**"
    if name in ("em", "i"):
        return f"*{inner}*"
    if name == "blockquote":
        return f"> {inner.strip()}\n"
    if name == "pre":
        return f"\n```\n{node.get_text()}\n```\n"
    if name == "code":
        return f"`{inner}`"
    return inner


class ReaderUrlScraper:
    """
    Renders pages through the Jina Reader API (handles JavaScript-heavy sites)
    and falls back to a direct fetch plus HTML conversion. The retrieved copy
    is kept in blob storage for reference.
    """

    def __init__(
        self,
        storage: BlobStorage,
        paths: StoragePaths,
        reader_timeout: float = READER_TIMEOUT_SECONDS,
        direct_timeout: float = DIRECT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.storage = storage
        self.paths = paths
        self.reader_timeout = reader_timeout
        self.direct_timeout = direct_timeout
        self._transport = transport

    async def scrape(self, url: str, owner_id: str) -> ScrapeResult:
        file_name = file_name_for_url(url)
        markdown = await self._fetch_via_reader(url)
        if markdown:
            stored = self.storage.put(self.paths.document_key(owner_id, file_name), markdown.encode("utf-8"))
            return ScrapeResult(stored_location=stored, display_name=file_name, markdown=markdown)

        content, content_type = await self._direct_fetch(url)
        stored = self.storage.put(self.paths.document_key(owner_id, file_name), content)
        markdown = html_to_markdown(content.decode("utf-8", errors="replace"))
        logger.info("Scraped %s directly (%s, %s chars)", url, content_type, len(markdown))
        return ScrapeResult(stored_location=stored, display_name=file_name, markdown=markdown)

    async def _fetch_via_reader(self, url: str) -> str:
        headers = {"Accept": "text/markdown", "X-Return-Format": "markdown", "X-No-Cache": "true"}
        try:
            async with httpx.AsyncClient(timeout=self.reader_timeout, transport=self._transport) as client:
                response = await client.get(f"{READER_BASE_URL}{url}", headers=headers)
        except httpx.HTTPError as exc:
            logger.info("Reader fetch failed for %s: %s", url, exc)
            return ""
        if response.status_code >= 400:
            return ""
        text = response.text
        if len(re.sub(r"\s+", " ", text).strip()) < MIN_READER_CHARS:
            return ""
        return text

    async def _direct_fetch(self, url: str) -> Tuple[bytes, str]:
        try:
            async with httpx.AsyncClient(
                timeout=self.direct_timeout, follow_redirects=True, transport=self._transport
            ) as client:
                response = await client.get(url, headers={"User-Agent": USER_AGENT})
        except httpx.HTTPError as exc:
            raise ScrapeError(f"Failed to fetch URL: {url} ({exc})") from exc
        if response.status_code >= 400:
            raise ScrapeError(f"Failed to fetch URL ({response.status_code}): {url}")
        return response.content, response.headers.get("content-type", "text/html")
