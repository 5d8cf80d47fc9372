#!/usr/bin/env python3
"""
Batch Page Audit MCP Server
Exposes batch page analysis, sitemap discovery and link checking as MCP tools.
"""

import logging
from typing import Any, Dict, List

from fastmcp import FastMCP

from audit_settings import InvalidRequestError, OrchestratorConfig, configure_logging
from batch_audit import BatchOrchestrator
from link_audit import LinkChecker
from sitemap_audit import SitemapEmptyError, SitemapNotFoundError, discover_sitemap_urls

logger = logging.getLogger(__name__)

# Initialize MCP server
mcp = FastMCP("Batch Page Audit")


@mcp.tool()
async def analyze_pages(
    urls: List[str],
    concurrency: int = 2,
    timeout_ms: int = 30000,
    accessibility_standard: str = "2.0-AA",
    best_practices: bool = True,
    capture_screenshots: bool = False,
) -> Dict[str, Any]:
    """
    Analyze a batch of pages for SEO, accessibility, broken links and analytics.

    Args:
        urls: Pages to analyze (must include http:// or https://)
        concurrency: Pages analyzed at the same time (default: 2)
        timeout_ms: Time budget for each page in milliseconds (default: 30000)
        accessibility_standard: WCAG level, one of 2.0-A, 2.0-AA, 2.1-A, 2.1-AA, 2.2-A, 2.2-AA
        best_practices: Also run best-practice accessibility rules
        capture_screenshots: Attach mobile, tablet and desktop screenshots to each result

    Returns:
        Dictionary containing:
        - results: One record per URL (a record with "error" when that page failed)
        - global: Site-wide analytics detected on the first URL, or None
        - logs: Progress messages
        - error: Batch level failure, or None
    """
    payload = {
        "urls": urls,
        "settings": {
            "concurrency": concurrency,
            "timeoutMs": timeout_ms,
            "accessibilityStandard": accessibility_standard,
            "bestPractices": best_practices,
            "captureScreenshots": capture_screenshots,
        },
    }
    try:
        orchestrator = BatchOrchestrator(OrchestratorConfig.from_env())
        return await orchestrator.collect(payload)
    except InvalidRequestError as e:
        return {"error": str(e)}


@mcp.tool()
async def discover_sitemap(domain: str) -> Dict[str, Any]:
    """
    List the page URLs published in a domain's sitemap.

    Args:
        domain: Domain or base URL, e.g. "example.com" or "https://example.com"

    Returns:
        Dictionary with urls, count and sitemapUrl, or an error message
    """
    try:
        result = await discover_sitemap_urls(domain)
    except (SitemapNotFoundError, SitemapEmptyError) as e:
        return {"error": str(e)}
    except Exception as e:
        logger.exception("[MCP] Sitemap discovery failed for %s", domain)
        return {"error": f"Failed to fetch sitemap for {domain}: {str(e)}"}
    return result.to_dict()


@mcp.tool()
async def check_page_links(links: List[str]) -> Dict[str, Any]:
    """
    Check whether links respond successfully.

    Args:
        links: Absolute http(s) links; duplicates are ignored and at most
            PAGE_AUDIT_LINK_CHECK_LIMIT (default 20) are probed

    Returns:
        Dictionary with every probe result, the broken subset and the counts
    """
    config = OrchestratorConfig.from_env()
    checker = LinkChecker(limit=config.link_check_limit, timeout_s=config.link_timeout_s, user_agent=config.user_agent)
    report = await checker.check(links)
    return {
        "results": [r.to_dict() for r in report.results],
        "brokenLinks": [r.to_dict() for r in report.broken],
        "totalLinksFound": report.total_found,
        "totalLinksChecked": report.total_checked,
    }


def main() -> None:
    configure_logging()
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
