"""
Browser acquisition for batch audits.

Either launches an isolated headless Chromium or attaches to an already
running browser over the Chrome DevTools Protocol. The two modes are
mutually exclusive and chosen by ``OrchestratorConfig.browser_mode``.
"""

import logging
from typing import Any, Dict, Optional

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright

from audit_settings import BrowserLaunchError, BrowserMode, OrchestratorConfig

logger = logging.getLogger(__name__)


class BrowserProvider:
    """Owns the Playwright driver, the browser and the shared context."""

    def __init__(self, config: Optional[OrchestratorConfig] = None):
        self.config = config or OrchestratorConfig()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._shared_context: Optional[BrowserContext] = None
        self._owns_shared_context = False

    async def __aenter__(self) -> "BrowserProvider":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def browser(self) -> Optional[Browser]:
        return self._browser

    def _context_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {"ignore_https_errors": True}
        if self.config.user_agent:
            options["user_agent"] = self.config.user_agent
        return options

    async def start(self) -> None:
        """Launch or attach. Raises BrowserLaunchError on failure."""
        if self._browser is not None:
            return
        try:
            self._playwright = await async_playwright().start()
            if self.config.browser_mode == BrowserMode.ATTACH:
                self._browser = await self._playwright.chromium.connect_over_cdp(self.config.cdp_endpoint)
                logger.info("[Browser] Attached over CDP at %s", self.config.cdp_endpoint)
            else:
                self._browser = await self._playwright.chromium.launch(headless=self.config.headless)
                logger.info("[Browser] Chromium launched (headless=%s)", self.config.headless)
        except Exception as e:
            logger.error("[Browser] Failed to start: %s", e)
            await self.close()
            raise BrowserLaunchError(str(e)) from e

    async def shared_context(self) -> BrowserContext:
        """The one context reused by every page of the batch."""
        if self._shared_context is not None:
            return self._shared_context
        if self._browser is None:
            raise BrowserLaunchError("Browser is not started")

        existing = self._browser.contexts
        if self.config.browser_mode == BrowserMode.ATTACH and existing:
            # The attached browser's default context is not ours to close.
            self._shared_context = existing[0]
            self._owns_shared_context = False
        else:
            self._shared_context = await self._browser.new_context(**self._context_options())
            self._owns_shared_context = True
        return self._shared_context

    async def new_context(self) -> BrowserContext:
        """A dedicated context for one URL; the caller closes it."""
        if self._browser is None:
            raise BrowserLaunchError("Browser is not started")
        return await self._browser.new_context(**self._context_options())

    async def close(self) -> None:
        """Release the shared context, the browser and the driver independently."""
        if self._shared_context is not None and self._owns_shared_context:
            try:
                await self._shared_context.close()
            except Exception as e:
                logger.warning("[Browser] Failed to close shared context: %s", e)
        self._shared_context = None
        self._owns_shared_context = False

        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:
                logger.warning("[Browser] Failed to close browser: %s", e)
        self._browser = None

        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.warning("[Browser] Failed to stop Playwright: %s", e)
        self._playwright = None
