#!/usr/bin/env python3
"""
Batch Page Audit HTTP server.

POST /api/analyze streams newline-delimited LOG/RESULT/GLOBAL_RESULT/ERROR
lines while a batch runs; GET /api/sitemap lists a domain's sitemap URLs.
"""

import asyncio
import json
import logging
import os
from typing import Callable, Optional

from aiohttp import web

from audit_events import CancellationToken
from audit_settings import AnalysisRequest, InvalidRequestError, OrchestratorConfig, configure_logging
from batch_audit import BatchOrchestrator
from sitemap_audit import SitemapEmptyError, SitemapNotFoundError, discover_sitemap_urls

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[OrchestratorConfig], BatchOrchestrator]

CONFIG_KEY = web.AppKey("config", OrchestratorConfig)
FACTORY_KEY = web.AppKey("orchestrator_factory", object)

DISCONNECT_POLL_S = 0.5

routes = web.RouteTableDef()


async def _watch_disconnect(request: web.Request, token: CancellationToken) -> None:
    """Cancel the batch once the client goes away, even between writes."""
    while not token.cancelled:
        transport = request.transport
        if transport is None or transport.is_closing():
            logger.info("[Server] Client disconnected, aborting batch")
            token.cancel("Client disconnected")
            return
        await asyncio.sleep(DISCONNECT_POLL_S)


@routes.post("/api/analyze")
async def analyze(request: web.Request) -> web.StreamResponse:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return web.json_response({"error": "Request body must be valid JSON"}, status=400)
    try:
        analysis_request = AnalysisRequest.from_payload(body)
    except InvalidRequestError as e:
        return web.json_response({"error": str(e)}, status=400)

    orchestrator = request.app[FACTORY_KEY](request.app[CONFIG_KEY])
    token = CancellationToken()
    stream = orchestrator.analyze(analysis_request, token)

    response = web.StreamResponse(headers={"Content-Type": "text/plain; charset=utf-8", "Cache-Control": "no-cache"})
    response.enable_chunked_encoding()
    watcher = asyncio.ensure_future(_watch_disconnect(request, token))
    try:
        await response.prepare(request)
        async for line in stream.lines():
            if token.cancelled:
                break
            try:
                await response.write(line.encode("utf-8"))
            except (ConnectionError, RuntimeError) as e:
                logger.info("[Server] Write failed, aborting batch: %s", e)
                token.cancel("Client disconnected")
                break
    except asyncio.CancelledError:
        token.cancel("Client disconnected")
        raise
    finally:
        watcher.cancel()
        if stream.closed:
            await stream.wait_closed()
        else:
            await stream.aclose("Client disconnected")

    if not token.cancelled:
        try:
            await response.write_eof()
        except (ConnectionError, RuntimeError) as e:
            logger.debug("[Server] Closing response failed: %s", e)
    return response


@routes.get("/api/sitemap")
async def sitemap(request: web.Request) -> web.Response:
    url = request.query.get("url", "").strip()
    if not url:
        return web.json_response({"error": "URL is required"}, status=400)
    try:
        result = await discover_sitemap_urls(url)
    except SitemapNotFoundError as e:
        return web.json_response({"error": str(e)}, status=404)
    except SitemapEmptyError as e:
        return web.json_response({"error": str(e)}, status=404)
    except Exception as e:
        logger.exception("[Server] Sitemap discovery failed for %s", url)
        return web.json_response({"error": "Failed to fetch sitemap", "details": str(e)}, status=500)
    return web.json_response(result.to_dict())


@routes.get("/health")
async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


def create_app(
    config: Optional[OrchestratorConfig] = None,
    orchestrator_factory: Optional[OrchestratorFactory] = None,
) -> web.Application:
    app = web.Application()
    app[CONFIG_KEY] = config or OrchestratorConfig.from_env()
    app[FACTORY_KEY] = orchestrator_factory or BatchOrchestrator
    app.add_routes(routes)
    return app


def main() -> None:
    configure_logging()
    host = os.getenv("PAGE_AUDIT_HOST", "127.0.0.1")
    port = int(os.getenv("PAGE_AUDIT_PORT", "3000"))
    web.run_app(create_app(), host=host, port=port)


if __name__ == "__main__":
    main()
