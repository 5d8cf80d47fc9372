"""Shared fakes for the Playwright objects and network collaborators."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from accessibility_audit import AXE_PRESENT_JS, AXE_RUN_JS
from audit_models import BrokenLink
from audit_settings import BrowserLaunchError, OrchestratorConfig
from link_audit import LinkCheckReport, unique_http_links
from page_audit import AUTO_SCROLL_JS, EXTRACT_PAGE_DATA_JS, SITE_PROBE_JS

LONG_DESCRIPTION = "A page description that is comfortably longer than fifty characters in total."


def page_data(**overrides) -> Dict[str, Any]:
    """Extraction payload of a well formed page."""
    data = {
        "headings": [
            {"tag": "h1", "text": "Welcome", "level": 1},
            {"tag": "h2", "text": "About", "level": 2},
        ],
        "links": ["https://example.com/a", "https://example.com/b"],
        "images": [{"src": "https://example.com/logo.png", "alt": "Logo"}],
        "title": "Example",
        "metaDescription": LONG_DESCRIPTION,
        "scripts": ["https://www.googletagmanager.com/gtag/js?id=G-ABC1234567"],
        "inlineScripts": [],
        "searchConsoleMeta": None,
        "bodyHtmlLength": 4000,
    }
    data.update(overrides)
    return data


class PageBehavior:
    def __init__(
        self,
        data: Optional[Dict[str, Any]] = None,
        goto_delay: float = 0.0,
        hang: bool = False,
        networkidle_times_out: bool = False,
        goto_error: Optional[Exception] = None,
        violations: Optional[List[Dict[str, Any]]] = None,
        html: str = "<html><body></body></html>",
    ):
        self.data = data if data is not None else page_data()
        self.goto_delay = goto_delay
        self.hang = hang
        self.networkidle_times_out = networkidle_times_out
        self.goto_error = goto_error
        self.violations = violations or []
        self.html = html


class FakeSite:
    """Per-URL page behaviors plus a record of every page opened."""

    def __init__(self, behaviors: Optional[Dict[str, PageBehavior]] = None):
        self.behaviors = behaviors or {}
        self.pages: List["FakePage"] = []
        self.open_pages = 0
        self.peak_open_pages = 0

    def behavior_for(self, url: str) -> PageBehavior:
        return self.behaviors.get(url) or PageBehavior()


class FakePage:
    def __init__(self, site: FakeSite):
        self.site = site
        self.url = "about:blank"
        self.behavior = PageBehavior()
        self.goto_calls: List[tuple] = []
        self.viewports: List[Dict[str, int]] = []
        self.axe_loaded = False
        self.injections = 0
        self.closed = False
        site.open_pages += 1
        site.peak_open_pages = max(site.peak_open_pages, site.open_pages)

    async def goto(self, url: str, wait_until: str = "load", timeout: Optional[int] = None):
        self.url = url
        self.behavior = self.site.behavior_for(url)
        self.goto_calls.append((wait_until, timeout))
        if self.behavior.hang:
            await asyncio.sleep(3600)
        if self.behavior.goto_delay:
            await asyncio.sleep(self.behavior.goto_delay)
        if self.behavior.goto_error is not None:
            raise self.behavior.goto_error
        if wait_until == "networkidle" and self.behavior.networkidle_times_out:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded.")
        return None

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if script is EXTRACT_PAGE_DATA_JS:
            return self.behavior.data
        if script is SITE_PROBE_JS:
            data = self.behavior.data
            return {
                "scripts": data.get("scripts", []),
                "inlineScripts": data.get("inlineScripts", []),
                "searchConsoleMeta": data.get("searchConsoleMeta"),
            }
        if script is AUTO_SCROLL_JS:
            return True
        if script is AXE_PRESENT_JS:
            return self.axe_loaded
        if script is AXE_RUN_JS:
            return {"violations": self.behavior.violations}
        raise AssertionError(f"Unexpected script: {script[:40]!r}")

    async def add_script_tag(self, content: Optional[str] = None, **kwargs) -> None:
        self.injections += 1
        self.axe_loaded = True

    async def wait_for_timeout(self, timeout: float) -> None:
        await asyncio.sleep(0)

    async def content(self) -> str:
        return self.behavior.html

    async def set_viewport_size(self, size: Dict[str, int]) -> None:
        self.viewports.append(size)

    async def screenshot(self, **kwargs) -> bytes:
        return b"\xff\xd8jpeg"

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.site.open_pages -= 1


class FakeContext:
    def __init__(self, site: FakeSite):
        self.site = site
        self.pages: List[FakePage] = []
        self.closed = False

    async def new_page(self) -> FakePage:
        page = FakePage(self.site)
        self.pages.append(page)
        self.site.pages.append(page)
        return page

    async def close(self) -> None:
        self.closed = True


class FakeProvider:
    """Stands in for BrowserProvider without a browser."""

    def __init__(self, site: FakeSite, fail_launch: bool = False):
        self.site = site
        self.fail_launch = fail_launch
        self.started = False
        self.closed = False
        self.shared: Optional[FakeContext] = None
        self.contexts: List[FakeContext] = []

    async def start(self) -> None:
        if self.fail_launch:
            raise BrowserLaunchError("Executable doesn't exist")
        self.started = True

    async def shared_context(self) -> FakeContext:
        if self.shared is None:
            self.shared = FakeContext(self.site)
        return self.shared

    async def new_context(self) -> FakeContext:
        context = FakeContext(self.site)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.closed = True


class FakeLinkChecker:
    """Reports every link as healthy except those listed as broken."""

    def __init__(self, broken=(), limit: int = 20):
        self.broken = set(broken)
        self.limit = limit
        self.calls: List[List[str]] = []

    async def check(self, links) -> LinkCheckReport:
        unique = unique_http_links(links)
        to_check = unique[:self.limit]
        self.calls.append(to_check)
        results = [
            BrokenLink(link=link, status=404, ok=False) if link in self.broken
            else BrokenLink(link=link, status=200, ok=True)
            for link in to_check
        ]
        return LinkCheckReport(results=results, total_found=len(unique), total_checked=len(to_check))


class FakeResolver:
    """TXT resolver that counts lookups per domain."""

    def __init__(self, records: Optional[Dict[str, List[str]]] = None, error: Optional[Exception] = None,
                 delay: float = 0.01):
        self.records = records or {}
        self.error = error
        self.delay = delay
        self.calls: List[str] = []

    async def __call__(self, domain: str) -> List[str]:
        self.calls.append(domain)
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.records.get(domain, [])


@pytest.fixture
def site():
    return FakeSite()


@pytest.fixture
def resolver():
    return FakeResolver({"example.com": ["v=spf1 -all", "google-site-verification=abc123"]})


@pytest.fixture
def config():
    return OrchestratorConfig(settle_delay_ms=0, global_timeout_ms=2000)
