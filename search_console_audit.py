"""
Search Console ownership verification detection.

Checks the ``google-site-verification`` meta tag already extracted from the
page and the domain's DNS TXT records. TXT lookups go through a per-batch
``DnsTxtCache`` so pages on the same domain share one query, even when they
ask concurrently.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import dns.asyncresolver
import dns.exception

from audit_models import SearchConsoleData

logger = logging.getLogger(__name__)

VERIFICATION_MARKER = "google-site-verification"
DNS_LIFETIME_S = 5.0

TxtResolver = Callable[[str], Awaitable[Sequence[str]]]


async def resolve_txt(domain: str) -> List[str]:
    """TXT record values for ``domain``; multi-string records are joined."""
    answer = await dns.asyncresolver.resolve(domain, "TXT", lifetime=DNS_LIFETIME_S)
    values = []
    for record in answer:
        values.append(b"".join(record.strings).decode("utf-8", errors="replace"))
    return values


def verification_domain(url: str) -> str:
    """Host of ``url`` without a leading ``www.``; verification is per domain."""
    hostname = (urlparse(url).hostname or "").lower().rstrip(".")
    if hostname.startswith("www."):
        hostname = hostname[4:]
    return hostname


class DnsTxtCache:
    """Get-or-create-pending cache of TXT lookups, keyed by domain.

    The first caller for a domain starts the lookup; later callers await the
    same pending task. Lookup failures resolve to an empty list and are
    cached too, so a failing domain is queried once per batch.
    """

    def __init__(self, resolver: Optional[TxtResolver] = None):
        self._resolver = resolver or resolve_txt
        self._entries: Dict[str, "asyncio.Task[List[str]]"] = {}

    def __contains__(self, domain: str) -> bool:
        return domain in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def _resolve(self, domain: str) -> List[str]:
        try:
            return [str(value) for value in await self._resolver(domain)]
        except (dns.exception.DNSException, OSError) as e:
            logger.info("[SearchConsole] No TXT records for %s: %s", domain, e)
        except Exception as e:
            logger.warning("[SearchConsole] DNS lookup failed for %s: %r", domain, e)
        return []

    async def lookup(self, domain: str) -> List[str]:
        task = self._entries.get(domain)
        if task is None:
            logger.debug("[SearchConsole] Looking up TXT records for %s", domain)
            task = asyncio.ensure_future(self._resolve(domain))
            self._entries[domain] = task
        else:
            logger.debug("[SearchConsole] Using cached TXT records for %s", domain)
        # A caller timing out must not cancel the lookup other pages wait on.
        return await asyncio.shield(task)

    def close(self) -> None:
        for task in self._entries.values():
            if not task.done():
                task.cancel()


async def detect_search_console(
    url: str,
    meta_content: Optional[str],
    dns_cache: Optional[DnsTxtCache] = None,
) -> SearchConsoleData:
    """Report which verification methods are visible for ``url``.

    HTML file verification needs the token file name, which cannot be
    discovered from outside, so ``has_html_file`` is always False.
    """
    data = SearchConsoleData(
        has_meta_tag=bool(meta_content),
        meta_tag_content=meta_content or None,
    )

    domain = verification_domain(url)
    if not domain:
        return data

    try:
        if dns_cache is not None:
            records = await dns_cache.lookup(domain)
        else:
            records = await DnsTxtCache().lookup(domain)
    except Exception as e:
        logger.warning("[SearchConsole] TXT check failed for %s: %s", domain, e)
        return data

    for record in records:
        if VERIFICATION_MARKER in record.lower():
            data.has_dns_txt = True
            data.dns_txt_content = record
            break
    return data
