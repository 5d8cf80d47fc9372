"""
Batch page analysis orchestrator.

Owns the browser and the shared context for one batch, runs the site-wide
analytics probe once, then analyzes every URL with at most
``settings.concurrency`` pages open at a time. Progress, results and errors
go out through an ``EventStream``; the batch never raises past it.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Deque, Dict, Optional, TypeVar, Union

from accessibility_audit import AccessibilityAuditor, load_engine_source
from audit_events import (
    CancellationToken,
    DoneEvent,
    ErrorEvent,
    EventStream,
    GlobalResultEvent,
    LogEvent,
    ResultEvent,
)
from audit_settings import AnalysisRequest, BatchAborted, ContextStrategy, OrchestratorConfig
from browser_provider import BrowserProvider
from link_audit import LinkChecker
from page_audit import PageAnalysisTask, probe_site_configuration
from search_console_audit import DnsTxtCache, TxtResolver

logger = logging.getLogger(__name__)

# Slack on top of the probe's own navigation timeout for extraction and DNS.
GLOBAL_PHASE_SLACK_S = 5.0

T = TypeVar("T")


async def _until_aborted(coro: Awaitable[T], token: CancellationToken, timeout: float) -> T:
    """Await ``coro`` within ``timeout``, giving up as soon as ``token`` is cancelled.

    The abandoned work is cancelled and awaited so its own cleanup runs
    before BatchAborted is raised.
    """
    work = asyncio.ensure_future(asyncio.wait_for(coro, timeout=timeout))
    aborted = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, aborted}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        aborted.cancel()
        if not work.done():
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
    token.raise_if_cancelled()
    return work.result()


class _BatchLog:
    """Writes progress both to the server log and to the client stream."""

    def __init__(self, stream: EventStream):
        self.stream = stream

    def __call__(self, message: str) -> None:
        logger.info("[Batch] %s", message)
        self.stream.emit(LogEvent(message))


class BatchOrchestrator:
    """Runs one analysis batch at a time.

    ``in_flight`` and ``peak_in_flight`` count open page analyses and are
    how the concurrency bound can be observed from outside.
    """

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        browser_provider: Optional[BrowserProvider] = None,
        link_checker: Optional[LinkChecker] = None,
        auditor: Optional[AccessibilityAuditor] = None,
        dns_resolver: Optional[TxtResolver] = None,
    ):
        self.config = config or OrchestratorConfig()
        self.browser_provider = browser_provider
        self.link_checker = link_checker or LinkChecker(
            limit=self.config.link_check_limit,
            timeout_s=self.config.link_timeout_s,
            user_agent=self.config.user_agent,
        )
        self.auditor = auditor or AccessibilityAuditor(load_engine_source(self.config.axe_source_path))
        self.dns_resolver = dns_resolver
        self.in_flight = 0
        self.peak_in_flight = 0

    def analyze(
        self,
        request: Union[AnalysisRequest, Dict[str, Any]],
        token: Optional[CancellationToken] = None,
    ) -> EventStream:
        """Validate ``request`` and start the batch; returns its live stream.

        Raises InvalidRequestError synchronously for a malformed payload.
        Must be called with a running event loop.
        """
        if not isinstance(request, AnalysisRequest):
            request = AnalysisRequest.from_payload(request)
        stream = EventStream(token)
        stream.attach(asyncio.ensure_future(self.run(request, stream)))
        return stream

    async def collect(
        self,
        request: Union[AnalysisRequest, Dict[str, Any]],
        token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """Run a batch to the end and gather its events into one dict."""
        stream = self.analyze(request, token)
        summary: Dict[str, Any] = {"results": [], "global": None, "logs": [], "error": None}
        try:
            async for event in stream:
                if isinstance(event, ResultEvent):
                    summary["results"].append(event.result.to_dict())
                elif isinstance(event, GlobalResultEvent):
                    summary["global"] = event.result.to_dict()
                elif isinstance(event, LogEvent):
                    summary["logs"].append(event.message)
                elif isinstance(event, ErrorEvent):
                    summary["error"] = event.message
        finally:
            if not stream.closed:
                stream.token.cancel("Consumer stopped")
            await stream.wait_closed()
        return summary

    async def run(self, request: AnalysisRequest, stream: EventStream) -> None:
        token = stream.token
        settings = request.settings
        urls = request.urls
        log = _BatchLog(stream)
        provider = self.browser_provider or BrowserProvider(self.config)
        dns_cache = DnsTxtCache(self.dns_resolver)
        failed = False

        try:
            log(
                f"Starting analysis of {len(urls)} URL(s), concurrency {settings.concurrency}, "
                f"accessibility tags: {', '.join(settings.accessibility_tags)}"
            )
            try:
                await provider.start()
            except Exception as e:
                failed = True
                logger.error("[Batch] Browser launch failed: %s", e)
                stream.emit(ErrorEvent(f"Browser launch failed: {e}"))
                return
            log(f"Browser ready ({self.config.browser_mode.value} mode).")
            if token.cancelled:
                return

            shared_context = None
            if self.config.context_strategy == ContextStrategy.SHARED:
                shared_context = await provider.shared_context()
            if token.cancelled:
                return

            await self._run_global_phase(urls[0], provider, shared_context, dns_cache, stream, log)
            if token.cancelled:
                return

            await self._dispatch(request, provider, shared_context, dns_cache, stream, log)
            if not token.cancelled:
                log(f"All {len(urls)} tasks completed.")
        except Exception as e:
            failed = True
            logger.exception("[Batch] Batch failed")
            stream.emit(ErrorEvent(str(e) or e.__class__.__name__))
        finally:
            dns_cache.close()
            try:
                await provider.close()
            except Exception as e:
                logger.warning("[Batch] Browser cleanup failed: %s", e)
            if not failed and not token.cancelled:
                stream.emit(DoneEvent())
            stream.close()

    async def _run_global_phase(
        self,
        url: str,
        provider: BrowserProvider,
        shared_context: Any,
        dns_cache: DnsTxtCache,
        stream: EventStream,
        log: _BatchLog,
    ) -> None:
        """Best effort: any failure is logged and the batch carries on.

        Returns as soon as the batch is aborted, without waiting for the probe.
        """
        token = stream.token
        log(f"Detecting site-wide analytics on {url}")
        context = shared_context
        owned_context = None
        try:
            if context is None:
                context = owned_context = await provider.new_context()
                token.raise_if_cancelled()
            result = await _until_aborted(
                probe_site_configuration(context, url, self.config, dns_cache, token),
                token,
                timeout=self.config.global_timeout_ms / 1000 + GLOBAL_PHASE_SLACK_S,
            )
        except BatchAborted:
            logger.debug("[Batch] Site-wide probe abandoned after abort")
            return
        except Exception as e:
            log(f"Site-wide analytics detection skipped: {str(e) or e.__class__.__name__}")
            return
        finally:
            if owned_context is not None:
                try:
                    await owned_context.close()
                except Exception as e:
                    logger.debug("[Batch] Closing probe context failed: %s", e)

        stream.emit(GlobalResultEvent(result))

    async def _dispatch(
        self,
        request: AnalysisRequest,
        provider: BrowserProvider,
        shared_context: Any,
        dns_cache: DnsTxtCache,
        stream: EventStream,
        log: _BatchLog,
    ) -> None:
        pending: Deque[str] = deque(request.urls)
        workers = min(request.settings.concurrency, self.config.max_concurrency, len(pending))
        await asyncio.gather(*(
            self._worker(pending, request, provider, shared_context, dns_cache, stream, log)
            for _ in range(workers)
        ))

    async def _worker(
        self,
        pending: Deque[str],
        request: AnalysisRequest,
        provider: BrowserProvider,
        shared_context: Any,
        dns_cache: DnsTxtCache,
        stream: EventStream,
        log: _BatchLog,
    ) -> None:
        token = stream.token
        while pending and not token.cancelled:
            url = pending.popleft()
            task = PageAnalysisTask(
                url,
                settings=request.settings,
                token=token,
                context=shared_context,
                new_context=provider.new_context if shared_context is None else None,
                config=self.config,
                log=log,
                link_checker=self.link_checker,
                auditor=self.auditor,
                dns_cache=dns_cache,
            )
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                result = await task.run()
            finally:
                self.in_flight -= 1
            if result is not None:
                stream.emit(ResultEvent(url, result))
