"""
Sitemap discovery.

Fetches ``/sitemap.xml`` (or ``/sitemap_index.xml``) for a domain, expands
sitemap indexes recursively and returns the page URLs found.
"""

import html
import logging
import re
import ssl
from dataclasses import dataclass
from typing import List, Optional

import aiohttp
import certifi

from audit_settings import PageAuditError

logger = logging.getLogger(__name__)

SITEMAP_TIMEOUT_S = 10.0
MAX_SITEMAP_DEPTH = 3
SITEMAP_CANDIDATES = ("sitemap.xml", "sitemap_index.xml")

_LOC = re.compile(r"<loc>\s*(.*?)\s*</loc>", re.I | re.S)
_INDEX_MARKER = re.compile(r"<sitemap(?:index)?[\s>]", re.I)


class SitemapNotFoundError(PageAuditError):
    pass


class SitemapEmptyError(PageAuditError):
    pass


@dataclass
class SitemapResult:
    urls: List[str]
    sitemap_url: str

    def to_dict(self):
        return {"urls": self.urls, "count": len(self.urls), "sitemapUrl": self.sitemap_url}


def normalize_base_url(domain: str) -> str:
    base = domain.strip()
    if not base.startswith(("http://", "https://")):
        base = "https://" + base
    return base.rstrip("/")


def _locations(xml_text: str) -> List[str]:
    return [html.unescape(loc).strip() for loc in _LOC.findall(xml_text) if loc.strip()]


async def _fetch_sitemap(session: aiohttp.ClientSession, sitemap_url: str, depth: int = 0) -> List[str]:
    async with session.get(sitemap_url) as response:
        if response.status >= 400:
            raise SitemapNotFoundError(f"Failed to fetch {sitemap_url} ({response.status})")
        xml_text = await response.text()

    locations = _locations(xml_text)
    if not _INDEX_MARKER.search(xml_text):
        return locations

    if depth >= MAX_SITEMAP_DEPTH:
        logger.warning("[Sitemap] Not expanding %s, index nesting too deep", sitemap_url)
        return []

    urls: List[str] = []
    for nested in locations:
        try:
            urls.extend(await _fetch_sitemap(session, nested, depth + 1))
        except Exception as e:
            logger.warning("[Sitemap] Failed to fetch nested sitemap %s: %s", nested, e)
    return urls


async def discover_sitemap_urls(domain: str, session: Optional[aiohttp.ClientSession] = None) -> SitemapResult:
    """Page URLs listed in the domain's sitemap, de-duplicated in order.

    Raises SitemapNotFoundError when neither candidate can be fetched and
    SitemapEmptyError when the sitemap lists no pages.
    """
    base_url = normalize_base_url(domain)
    owns_session = session is None
    if session is None:
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(ssl=ssl_context),
            timeout=aiohttp.ClientTimeout(total=SITEMAP_TIMEOUT_S),
        )

    try:
        urls = None
        sitemap_url = ""
        for candidate in SITEMAP_CANDIDATES:
            sitemap_url = f"{base_url}/{candidate}"
            try:
                urls = await _fetch_sitemap(session, sitemap_url)
                break
            except Exception as e:
                logger.info("[Sitemap] %s unavailable: %s", sitemap_url, e)
        if urls is None:
            raise SitemapNotFoundError("Sitemap not found")
    finally:
        if owns_session:
            await session.close()

    pages = [url for url in dict.fromkeys(urls) if not url.lower().endswith((".xml", ".xsl"))]
    if not pages:
        raise SitemapEmptyError("No URLs found in sitemap")
    return SitemapResult(urls=pages, sitemap_url=sitemap_url)
