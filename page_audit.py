"""
Single page analysis.

``PageAnalysisTask`` loads one URL in a browser context it borrows from the
batch, extracts the page data in one evaluation and runs the SEO,
accessibility, link and analytics checks over it. ``probe_site_configuration``
is the lighter one-off load used for site-wide analytics detection.
"""

import asyncio
import base64
import logging
from typing import Any, Awaitable, Callable, Optional

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from accessibility_audit import AccessibilityAuditor
from analytics_audit import detect_analytics
from audit_events import CancellationToken
from audit_models import AnalysisResult, AnalyticsData, GlobalResult, PageData, Screenshots
from audit_settings import AnalysisSettings, BatchAborted, OrchestratorConfig
from link_audit import LinkChecker
from search_console_audit import DnsTxtCache, detect_search_console
from seo_audit import analyze_seo

logger = logging.getLogger(__name__)

LogFn = Callable[[str], None]
ContextFactory = Callable[[], Awaitable[Any]]

EMPTY_PAGE_HTML_LENGTH = 500

# Share of the navigation budget given to the network-idle attempt; the
# "load" retry gets whatever is left.
NETWORK_IDLE_SHARE = 0.6

SCREENSHOT_VIEWPORTS = (
    ("mobile", 375, 667),
    ("tablet", 768, 1024),
    ("desktop", 1920, 1080),
)

EXTRACT_PAGE_DATA_JS = """
() => {
    const headings = Array.from(document.querySelectorAll('h1, h2, h3, h4, h5, h6')).map(el => ({
        tag: el.tagName.toLowerCase(),
        text: (el.textContent || '').trim(),
        level: parseInt(el.tagName.substring(1))
    }));
    const links = Array.from(document.querySelectorAll('a[href]'))
        .map(a => a.href)
        .filter(href => href && !href.startsWith('javascript:') && !href.startsWith('mailto:') && !href.startsWith('tel:'));
    const images = Array.from(document.querySelectorAll('img')).map(img => ({
        src: img.currentSrc || img.src || '',
        alt: img.getAttribute('alt') || ''
    }));
    const description = document.querySelector('meta[name="description"]');
    const verification = document.querySelector('meta[name="google-site-verification"]');
    return {
        headings,
        links,
        images,
        title: document.title || '',
        metaDescription: description ? description.getAttribute('content') : null,
        scripts: Array.from(document.querySelectorAll('script[src]')).map(s => s.src),
        inlineScripts: Array.from(document.querySelectorAll('script:not([src])'))
            .map(s => (s.textContent || '').substring(0, 20000))
            .filter(text => text.trim()),
        searchConsoleMeta: verification ? verification.getAttribute('content') : null,
        bodyHtmlLength: document.body ? document.body.innerHTML.length : 0
    };
}
"""

SITE_PROBE_JS = """
() => {
    const verification = document.querySelector('meta[name="google-site-verification"]');
    return {
        scripts: Array.from(document.querySelectorAll('script[src]')).map(s => s.src),
        inlineScripts: Array.from(document.querySelectorAll('script:not([src])'))
            .map(s => (s.textContent || '').substring(0, 20000))
            .filter(text => text.trim()),
        searchConsoleMeta: verification ? verification.getAttribute('content') : null
    };
}
"""

# Stops at the bottom of the document or after maxSteps, whichever is first,
# so infinite-scroll pages cannot keep it running.
AUTO_SCROLL_JS = """
async ([step, maxSteps]) => {
    await new Promise((resolve) => {
        let total = 0;
        let steps = 0;
        const timer = setInterval(() => {
            const height = document.body ? document.body.scrollHeight : 0;
            window.scrollBy(0, step);
            total += step;
            steps += 1;
            if (total >= height || steps >= maxSteps) {
                clearInterval(timer);
                resolve();
            }
        }, 100);
    });
    window.scrollTo(0, 0);
    return true;
}
"""


def _default_log(message: str) -> None:
    logger.info(message)


class _Lease:
    """Browser objects a task opened and therefore must close."""

    def __init__(self):
        self.page: Any = None
        self.context: Any = None


class PageAnalysisTask:
    """Analyze one URL. ``run`` never raises.

    The context is borrowed: with ``new_context`` set (per-URL strategy) the
    task opens and closes its own context, otherwise it only opens and closes
    a page inside the shared ``context``.
    """

    def __init__(
        self,
        url: str,
        settings: AnalysisSettings,
        token: CancellationToken,
        context: Any = None,
        new_context: Optional[ContextFactory] = None,
        config: Optional[OrchestratorConfig] = None,
        log: Optional[LogFn] = None,
        link_checker: Optional[LinkChecker] = None,
        auditor: Optional[AccessibilityAuditor] = None,
        dns_cache: Optional[DnsTxtCache] = None,
    ):
        if context is None and new_context is None:
            raise ValueError("Either a shared context or a context factory is required")
        self.url = url
        self.settings = settings
        self.token = token
        self.context = context
        self.new_context = new_context
        self.config = config or OrchestratorConfig()
        self.log = log or _default_log
        self.link_checker = link_checker or LinkChecker(
            limit=self.config.link_check_limit, timeout_s=self.config.link_timeout_s
        )
        self.auditor = auditor or AccessibilityAuditor()
        self.dns_cache = dns_cache

    async def run(self) -> Optional[AnalysisResult]:
        """The result, an error result, or None if the batch was aborted."""
        if self.token.cancelled:
            return None

        lease = _Lease()
        timeout_ms = self.settings.timeout_ms
        try:
            result = await asyncio.wait_for(self._analyze(lease), timeout=timeout_ms / 1000)
        except BatchAborted:
            logger.debug("[Page] Abandoned %s after abort", self.url)
            return None
        except asyncio.TimeoutError:
            if self.token.cancelled:
                return None
            self.log(f"Timed out after {timeout_ms}ms: {self.url}")
            return AnalysisResult.failed(self.url, f"Analysis timed out after {timeout_ms}ms")
        except Exception as e:
            if self.token.cancelled:
                return None
            logger.warning("[Page] Analysis of %s failed: %r", self.url, e)
            self.log(f"Error analyzing {self.url}: {e}")
            return AnalysisResult.failed(self.url, str(e) or e.__class__.__name__)
        finally:
            await self._release(lease)

        if self.token.cancelled:
            return None
        return result

    async def _analyze(self, lease: _Lease) -> AnalysisResult:
        token = self.token
        token.raise_if_cancelled()

        if self.new_context is not None:
            lease.context = await self.new_context()
            token.raise_if_cancelled()
            context = lease.context
        else:
            context = self.context
        lease.page = page = await context.new_page()
        token.raise_if_cancelled()

        self.log(f"Analyzing: {self.url}")
        await self._navigate(page)
        token.raise_if_cancelled()

        data = PageData.from_dict(await page.evaluate(EXTRACT_PAGE_DATA_JS))
        token.raise_if_cancelled()
        if data.body_html_length < EMPTY_PAGE_HTML_LENGTH:
            self.log(f"Warning: {self.url} looks empty, the page may be blocked or failed to load.")

        seo_issues = analyze_seo(data.headings, data.title, data.meta_description)

        await self._auto_scroll(page)
        token.raise_if_cancelled()

        violations = await self.auditor.audit(page, self.settings.accessibility_tags)
        token.raise_if_cancelled()

        links = await self.link_checker.check(data.links)
        token.raise_if_cancelled()

        google_analytics = detect_analytics(data.script_srcs, data.inline_scripts)
        search_console = await detect_search_console(self.url, data.search_console_meta, self.dns_cache)
        token.raise_if_cancelled()

        screenshots = None
        if self.settings.capture_screenshots:
            screenshots = await self._capture_screenshots(page)
            token.raise_if_cancelled()

        self.log(
            f"Done: {self.url} ({len(seo_issues)} SEO issues, {len(violations)} accessibility rules failed, "
            f"{len(links.broken)}/{links.total_checked} links broken)"
        )
        return AnalysisResult(
            url=self.url,
            headings=data.headings,
            seo_issues=seo_issues,
            accessibility_issues=violations,
            broken_links=links.broken,
            total_links_checked=links.total_checked,
            total_links_found=links.total_found,
            images=data.images,
            scripts=data.script_srcs,
            analytics=AnalyticsData(google_analytics=google_analytics, search_console=search_console),
            screenshots=screenshots,
        )

    async def _navigate(self, page: Any) -> None:
        """Wait for network idle, retrying once on "load" within the same budget."""
        budget_ms = self.settings.navigation_timeout_ms
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            await page.goto(self.url, wait_until="networkidle", timeout=max(1, int(budget_ms * NETWORK_IDLE_SHARE)))
            return
        except PlaywrightTimeoutError:
            self.token.raise_if_cancelled()
            remaining_ms = budget_ms - int((loop.time() - started) * 1000)
            if remaining_ms <= 0:
                raise
            self.log("Network idle timeout, falling back to load...")
        await page.goto(self.url, wait_until="load", timeout=remaining_ms)

    async def _auto_scroll(self, page: Any) -> None:
        try:
            await page.evaluate(AUTO_SCROLL_JS, [self.config.scroll_step_px, self.config.scroll_max_steps])
            self.token.raise_if_cancelled()
            await page.wait_for_timeout(self.config.settle_delay_ms)
        except BatchAborted:
            raise
        except Exception as e:
            logger.info("[Page] Auto-scroll failed on %s: %s", self.url, e)

    async def _capture_screenshots(self, page: Any) -> Screenshots:
        shots = Screenshots()
        for name, width, height in SCREENSHOT_VIEWPORTS:
            self.token.raise_if_cancelled()
            try:
                await page.set_viewport_size({"width": width, "height": height})
                image = await page.screenshot(type="jpeg", quality=60, full_page=False)
            except Exception as e:
                logger.warning("[Page] %s screenshot of %s failed: %s", name, self.url, e)
                continue
            setattr(shots, name, "data:image/jpeg;base64," + base64.b64encode(image).decode("ascii"))
        return shots

    async def _release(self, lease: _Lease) -> None:
        if lease.page is not None:
            try:
                await lease.page.close()
            except Exception as e:
                logger.debug("[Page] Closing page for %s failed: %s", self.url, e)
        if lease.context is not None:
            try:
                await lease.context.close()
            except Exception as e:
                logger.debug("[Page] Closing context for %s failed: %s", self.url, e)


async def probe_site_configuration(
    context: Any,
    url: str,
    config: Optional[OrchestratorConfig] = None,
    dns_cache: Optional[DnsTxtCache] = None,
    token: Optional[CancellationToken] = None,
) -> GlobalResult:
    """Site-wide analytics and Search Console detection from one quick load.

    Raises BatchAborted at the first checkpoint after ``token`` is cancelled.
    """
    config = config or OrchestratorConfig()
    token = token or CancellationToken()
    page = await context.new_page()
    try:
        token.raise_if_cancelled()
        await page.goto(url, wait_until="domcontentloaded", timeout=config.global_timeout_ms)
        token.raise_if_cancelled()
        data = PageData.from_dict(await page.evaluate(SITE_PROBE_JS))
        token.raise_if_cancelled()
        html = await page.content()
        token.raise_if_cancelled()
    finally:
        try:
            await page.close()
        except Exception as e:
            logger.debug("[Page] Closing probe page failed: %s", e)

    google_analytics = detect_analytics(data.script_srcs, data.inline_scripts, html=html)
    search_console = await detect_search_console(url, data.search_console_meta, dns_cache)
    token.raise_if_cancelled()
    return GlobalResult(analytics=AnalyticsData(google_analytics=google_analytics, search_console=search_console))
