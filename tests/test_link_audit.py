import asyncio

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from link_audit import LinkChecker, unique_http_links


@pytest_asyncio.fixture
async def link_server():
    hits = []

    async def ok(request):
        hits.append((request.method, request.path_qs))
        return web.Response(text="ok")

    async def missing(request):
        hits.append((request.method, request.path_qs))
        return web.Response(status=404)

    async def head_not_allowed(request):
        hits.append((request.method, request.path_qs))
        return web.Response(status=405)

    async def slow(request):
        await asyncio.sleep(0.5)
        return web.Response(text="late")

    app = web.Application()
    app.router.add_get("/ok", ok)
    app.router.add_get("/missing", missing)
    app.router.add_route("HEAD", "/nohead", head_not_allowed)
    app.router.add_get("/nohead", ok, allow_head=False)
    app.router.add_get("/slow", slow)
    server = TestServer(app)
    await server.start_server()
    server.hits = hits
    yield server
    await server.close()


def test_unique_http_links():
    links = [
        "https://example.com/a",
        "mailto:someone@example.com",
        "https://example.com/a",
        "http://example.com/b",
        "",
        "ftp://example.com/file",
    ]
    assert unique_http_links(links) == ["https://example.com/a", "http://example.com/b"]


@pytest.mark.asyncio
async def test_healthy_and_broken_links(link_server):
    checker = LinkChecker()
    ok_url = str(link_server.make_url("/ok"))
    missing_url = str(link_server.make_url("/missing"))
    report = await checker.check([ok_url, missing_url, ok_url])
    assert report.total_found == 2
    assert report.total_checked == 2
    assert [b.link for b in report.broken] == [missing_url]
    assert report.broken[0].status == 404
    assert report.broken[0].to_dict() == {"link": missing_url, "status": 404, "ok": False}


@pytest.mark.asyncio
async def test_probes_are_capped(link_server):
    checker = LinkChecker(limit=20)
    links = [str(link_server.make_url(f"/ok?n={n}")) for n in range(25)]
    report = await checker.check(links)
    assert report.total_found == 25
    assert report.total_checked == 20
    assert len(report.results) == 20
    assert len(link_server.hits) == 20
    assert all(method == "HEAD" for method, _ in link_server.hits)


@pytest.mark.asyncio
async def test_head_rejected_falls_back_to_get(link_server):
    checker = LinkChecker()
    report = await checker.check([str(link_server.make_url("/nohead"))])
    assert report.broken == []
    assert report.results[0].status == 200
    assert [method for method, _ in link_server.hits] == ["HEAD", "GET"]


@pytest.mark.asyncio
async def test_unreachable_link_reports_status_zero():
    checker = LinkChecker(timeout_s=2)
    report = await checker.check(["http://127.0.0.1:1/"])
    result = report.results[0]
    assert result.status == 0
    assert not result.ok
    assert result.error


@pytest.mark.asyncio
async def test_slow_link_times_out(link_server):
    checker = LinkChecker(timeout_s=0.1)
    report = await checker.check([str(link_server.make_url("/slow"))])
    assert report.results[0].status == 0
    assert report.results[0].error == "Timeout"


@pytest.mark.asyncio
async def test_no_links():
    report = await LinkChecker().check([])
    assert report.total_found == 0 and report.total_checked == 0 and report.results == []
