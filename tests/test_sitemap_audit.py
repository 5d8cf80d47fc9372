import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from sitemap_audit import (
    SitemapEmptyError,
    SitemapNotFoundError,
    discover_sitemap_urls,
    normalize_base_url,
)

URLSET = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>{base}/</loc></url>
  <url><loc>{base}/about?a=1&amp;b=2</loc></url>
  <url><loc>{base}/</loc></url>
  <url><loc>{base}/feed.xml</loc></url>
</urlset>
"""

INDEX = """<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>{base}/pages.xml</loc></sitemap>
  <sitemap><loc>{base}/posts.xml</loc></sitemap>
</sitemapindex>
"""


async def _serve(routes):
    app = web.Application()
    for path, body in routes.items():
        async def handler(request, body=body):
            base = f"http://{request.host}"
            return web.Response(text=body.format(base=base), content_type="application/xml")
        app.router.add_get(path, handler)
    server = TestServer(app)
    await server.start_server()
    return server


def _base(server):
    return str(server.make_url("/")).rstrip("/")


def test_normalize_base_url():
    assert normalize_base_url("example.com/") == "https://example.com"
    assert normalize_base_url("http://example.com") == "http://example.com"


@pytest.mark.asyncio
async def test_urlset_is_deduplicated_and_filtered():
    server = await _serve({"/sitemap.xml": URLSET})
    try:
        base = _base(server)
        result = await discover_sitemap_urls(base)
    finally:
        await server.close()
    assert result.urls == [f"{base}/", f"{base}/about?a=1&b=2"]
    assert result.to_dict() == {"urls": result.urls, "count": 2, "sitemapUrl": f"{base}/sitemap.xml"}


@pytest.mark.asyncio
async def test_index_is_expanded():
    server = await _serve({
        "/sitemap.xml": INDEX,
        "/pages.xml": "<urlset><url><loc>{base}/one</loc></url></urlset>",
        "/posts.xml": "<urlset><url><loc>{base}/two</loc></url></urlset>",
    })
    try:
        base = _base(server)
        result = await discover_sitemap_urls(base)
    finally:
        await server.close()
    assert result.urls == [f"{base}/one", f"{base}/two"]


@pytest.mark.asyncio
async def test_falls_back_to_sitemap_index():
    server = await _serve({
        "/sitemap_index.xml": INDEX,
        "/pages.xml": "<urlset><url><loc>{base}/one</loc></url></urlset>",
    })
    try:
        base = _base(server)
        result = await discover_sitemap_urls(base)
    finally:
        await server.close()
    assert result.urls == [f"{base}/one"]
    assert result.sitemap_url == f"{base}/sitemap_index.xml"


@pytest.mark.asyncio
async def test_missing_sitemap():
    server = await _serve({})
    try:
        with pytest.raises(SitemapNotFoundError):
            await discover_sitemap_urls(_base(server))
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_empty_sitemap():
    server = await _serve({"/sitemap.xml": "<urlset></urlset>"})
    try:
        with pytest.raises(SitemapEmptyError):
            await discover_sitemap_urls(_base(server))
    finally:
        await server.close()
