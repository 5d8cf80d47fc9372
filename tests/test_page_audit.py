import asyncio

import pytest

from audit_events import CancellationToken
from audit_settings import AnalysisSettings, BatchAborted
from page_audit import PageAnalysisTask, probe_site_configuration
from search_console_audit import DnsTxtCache

from conftest import FakeContext, FakeLinkChecker, FakeSite, PageBehavior, page_data

URL = "https://example.com/"


def _task(site, config, resolver=None, settings=None, token=None, logs=None, **kwargs):
    context = FakeContext(site)
    task = PageAnalysisTask(
        URL,
        settings=settings or AnalysisSettings(),
        token=token or CancellationToken(),
        context=context,
        config=config,
        log=(logs.append if logs is not None else None),
        link_checker=kwargs.pop("link_checker", FakeLinkChecker()),
        dns_cache=DnsTxtCache(resolver),
        **kwargs,
    )
    return task, context


@pytest.mark.asyncio
async def test_successful_analysis(config, resolver):
    site = FakeSite({URL: PageBehavior(violations=[
        {"id": "image-alt", "impact": "critical", "description": "Images must have alternate text",
         "nodes": [{"target": ["img"]}]},
    ])})
    checker = FakeLinkChecker(broken={"https://example.com/b"})
    task, context = _task(site, config, resolver, link_checker=checker)

    result = await task.run()

    assert result.error is None
    assert result.url == URL
    assert [h.tag for h in result.headings] == ["h1", "h2"]
    assert result.seo_issues == []
    assert [v.id for v in result.accessibility_issues] == ["image-alt"]
    assert result.total_links_found == 2
    assert result.total_links_checked == 2
    assert [b.link for b in result.broken_links] == ["https://example.com/b"]
    assert result.analytics.google_analytics.measurement_ids == ["G-ABC1234567"]
    assert result.analytics.search_console.has_dns_txt
    assert result.screenshots is None
    assert context.pages[0].closed
    assert not context.closed


@pytest.mark.asyncio
async def test_timeout_yields_error_record(config):
    site = FakeSite({URL: PageBehavior(hang=True)})
    logs = []
    task, context = _task(site, config, settings=AnalysisSettings(timeout_ms=100), logs=logs)

    result = await task.run()

    assert result.error == "Analysis timed out after 100ms"
    data = result.to_dict()
    assert data["headings"] == [] and data["seoIssues"] == []
    assert data["accessibilityIssues"] == [] and data["brokenLinks"] == []
    assert data["totalLinksChecked"] == 0 and data["totalLinksFound"] == 0
    assert context.pages[0].closed
    assert any("Timed out" in line for line in logs)


@pytest.mark.asyncio
async def test_navigation_error_yields_error_record(config):
    site = FakeSite({URL: PageBehavior(goto_error=RuntimeError("net::ERR_NAME_NOT_RESOLVED"))})
    task, context = _task(site, config)
    result = await task.run()
    assert result.error == "net::ERR_NAME_NOT_RESOLVED"
    assert context.pages[0].closed


@pytest.mark.asyncio
async def test_network_idle_timeout_falls_back_to_load(config, resolver):
    site = FakeSite({URL: PageBehavior(networkidle_times_out=True)})
    logs = []
    task, context = _task(site, config, resolver, logs=logs)

    result = await task.run()

    assert result.error is None
    waits = [wait_until for wait_until, _ in context.pages[0].goto_calls]
    assert waits == ["networkidle", "load"]
    budgets = [timeout for _, timeout in context.pages[0].goto_calls]
    assert budgets[0] == int(AnalysisSettings().navigation_timeout_ms * 0.6)
    assert budgets[1] <= AnalysisSettings().navigation_timeout_ms
    assert "Network idle timeout, falling back to load..." in logs


@pytest.mark.asyncio
async def test_abort_mid_analysis_yields_nothing(config):
    site = FakeSite({URL: PageBehavior(goto_delay=0.2)})
    token = CancellationToken()
    task, context = _task(site, config, token=token)

    running = asyncio.ensure_future(task.run())
    await asyncio.sleep(0.05)
    token.cancel()

    assert await running is None
    assert context.pages[0].closed


@pytest.mark.asyncio
async def test_already_aborted_task_opens_nothing(config):
    token = CancellationToken()
    token.cancel()
    site = FakeSite()
    task, context = _task(site, config, token=token)
    assert await task.run() is None
    assert context.pages == []


@pytest.mark.asyncio
async def test_per_url_context_is_closed(config, resolver):
    site = FakeSite()
    opened = []

    async def new_context():
        context = FakeContext(site)
        opened.append(context)
        return context

    task = PageAnalysisTask(
        URL,
        settings=AnalysisSettings(),
        token=CancellationToken(),
        new_context=new_context,
        config=config,
        link_checker=FakeLinkChecker(),
        dns_cache=DnsTxtCache(resolver),
    )
    result = await task.run()
    assert result.error is None
    assert len(opened) == 1 and opened[0].closed
    assert opened[0].pages[0].closed


@pytest.mark.asyncio
async def test_empty_page_warning(config, resolver):
    site = FakeSite({URL: PageBehavior(data=page_data(bodyHtmlLength=12))})
    logs = []
    task, _ = _task(site, config, resolver, logs=logs)
    await task.run()
    assert any("looks empty" in line for line in logs)


@pytest.mark.asyncio
async def test_screenshots_on_request(config, resolver):
    site = FakeSite()
    task, context = _task(site, config, resolver, settings=AnalysisSettings(capture_screenshots=True))
    result = await task.run()
    shots = result.to_dict()["screenshots"]
    assert set(shots) == {"mobile", "tablet", "desktop"}
    assert shots["mobile"].startswith("data:image/jpeg;base64,")
    assert context.pages[0].viewports[0] == {"width": 375, "height": 667}


def test_task_needs_a_context(config):
    with pytest.raises(ValueError):
        PageAnalysisTask(URL, settings=AnalysisSettings(), token=CancellationToken(), config=config)


@pytest.mark.asyncio
async def test_probe_site_configuration(config, resolver):
    html = '<noscript><iframe src="https://www.googletagmanager.com/ns.html?id=GTM-SITE42"></iframe></noscript>'
    site = FakeSite({URL: PageBehavior(html=html, data=page_data(searchConsoleMeta="meta-token"))})
    context = FakeContext(site)

    result = await probe_site_configuration(context, URL, config, DnsTxtCache(resolver))

    analytics = result.to_dict()["analytics"]
    assert analytics["googleAnalytics"]["hasGA4"]
    assert analytics["googleAnalytics"]["gtmContainers"] == ["GTM-SITE42"]
    assert analytics["searchConsole"]["hasMetaTag"]
    assert analytics["searchConsole"]["hasDnsTxt"]
    assert context.pages[0].goto_calls == [("domcontentloaded", config.global_timeout_ms)]
    assert context.pages[0].closed


@pytest.mark.asyncio
async def test_probe_stops_at_abort(config, resolver):
    site = FakeSite({URL: PageBehavior(goto_delay=0.1)})
    context = FakeContext(site)
    token = CancellationToken()

    probing = asyncio.ensure_future(probe_site_configuration(context, URL, config, DnsTxtCache(resolver), token))
    await asyncio.sleep(0.02)
    token.cancel()

    with pytest.raises(BatchAborted):
        await probing
    assert context.pages[0].closed
    assert resolver.calls == []
