"""
Broken link detection.

Links are de-duplicated, capped, and probed concurrently with a HEAD request
that falls back to GET. Every probe has its own timeout and never raises.
"""

import asyncio
import logging
import ssl
from dataclasses import dataclass, field
from typing import Iterable, List, Optional
from urllib.parse import urlparse

import aiohttp
import certifi

from audit_models import BrokenLink

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; PageAuditBot/1.0)"

# Servers that refuse HEAD outright get a second chance with GET.
_HEAD_REJECTED = {405, 501}


@dataclass
class LinkCheckReport:
    results: List[BrokenLink] = field(default_factory=list)
    total_found: int = 0
    total_checked: int = 0

    @property
    def broken(self) -> List[BrokenLink]:
        return [r for r in self.results if not r.ok]


def unique_http_links(links: Iterable[str]) -> List[str]:
    """http(s) links in first-seen order without duplicates."""
    seen = {}
    for link in links:
        if not link:
            continue
        link = link.strip()
        if urlparse(link).scheme in ("http", "https"):
            seen.setdefault(link, None)
    return list(seen)


class LinkChecker:
    def __init__(self, limit: int = 20, timeout_s: float = 5.0, user_agent: Optional[str] = None):
        self.limit = limit
        self.timeout_s = timeout_s
        self.user_agent = user_agent or DEFAULT_USER_AGENT

    async def check(self, links: Iterable[str]) -> LinkCheckReport:
        unique = unique_http_links(links)
        to_check = unique[:self.limit]
        if not to_check:
            return LinkCheckReport(results=[], total_found=len(unique), total_checked=0)

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        # No pool limit: the cap on link count is the only bound.
        connector = aiohttp.TCPConnector(ssl=ssl_context, limit=0)
        async with aiohttp.ClientSession(connector=connector, headers={"User-Agent": self.user_agent}) as session:
            results = await asyncio.gather(*(self._check_link(session, link) for link in to_check))

        return LinkCheckReport(results=list(results), total_found=len(unique), total_checked=len(to_check))

    async def _probe(self, session: aiohttp.ClientSession, method: str, link: str) -> int:
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        async with session.request(method, link, timeout=timeout, allow_redirects=True) as response:
            return response.status

    async def _check_link(self, session: aiohttp.ClientSession, link: str) -> BrokenLink:
        try:
            status = await self._probe(session, "HEAD", link)
            if status not in _HEAD_REJECTED:
                return BrokenLink(link=link, status=status, ok=200 <= status < 300)
        except Exception as e:
            logger.debug("[Links] HEAD %s failed: %r", link, e)

        try:
            status = await self._probe(session, "GET", link)
            return BrokenLink(link=link, status=status, ok=200 <= status < 300)
        except asyncio.TimeoutError:
            return BrokenLink(link=link, status=0, ok=False, error="Timeout")
        except aiohttp.ClientError as e:
            return BrokenLink(link=link, status=0, ok=False, error=str(e) or "Failed to fetch")
        except Exception as e:
            logger.debug("[Links] GET %s failed: %r", link, e)
            return BrokenLink(link=link, status=0, ok=False, error="Failed to fetch")
