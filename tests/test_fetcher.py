import asyncio

import pytest
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer

import utils
from config import Config
from errors import FetchTimeout, HttpError, NetworkError, TooManyRedirects
from fetcher import HttpFetcher, detect_encoding, is_on_domain


@pytest.fixture
def delays(monkeypatch):
    recorded = []

    async def fake_sleep(delay):
        recorded.append(delay)

    monkeypatch.setattr(utils, "sleep", fake_sleep)
    return recorded


async def start_server(routes):
    app = web.Application()
    app.add_routes(routes)
    server = TestServer(app)
    await server.start_server()
    return server


@pytest.mark.asyncio
async def test_relative_location_is_resolved_against_current_url():
    async def start(request):
        raise web.HTTPFound("landing")

    async def landing(request):
        return web.Response(text="arrived", content_type="text/plain")

    server = await start_server([web.get("/a/start", start), web.get("/a/landing", landing)])
    try:
        async with ClientSession() as session:
            fetcher = HttpFetcher(session, Config())
            document = await fetcher.fetch(str(server.make_url("/a/start")))
    finally:
        await server.close()

    assert document.text == "arrived"
    assert document.url.endswith("/a/landing")
    assert document.status == 200


@pytest.mark.asyncio
async def test_redirect_chain_stops_after_five_hops():
    hits = []

    async def hop(request):
        n = int(request.match_info["n"])
        hits.append(n)
        raise web.HTTPFound(f"/hop/{n + 1}")

    server = await start_server([web.get("/hop/{n}", hop)])
    try:
        async with ClientSession() as session:
            fetcher = HttpFetcher(session, Config())
            with pytest.raises(TooManyRedirects) as exc_info:
                await fetcher.fetch(str(server.make_url("/hop/0")))
    finally:
        await server.close()

    assert hits == [0, 1, 2, 3, 4]
    assert str(exc_info.value) == "Too many redirects"


@pytest.mark.asyncio
async def test_error_status_raises_http_error():
    async def missing(request):
        return web.Response(status=404, text="nope")

    server = await start_server([web.get("/missing", missing)])
    try:
        async with ClientSession() as session:
            fetcher = HttpFetcher(session, Config())
            with pytest.raises(HttpError) as exc_info:
                await fetcher.fetch(str(server.make_url("/missing")))
    finally:
        await server.close()

    assert exc_info.value.status == 404
    assert str(exc_info.value) == "HTTP 404"


@pytest.mark.asyncio
async def test_declared_charset_is_used_for_decoding():
    async def latin(request):
        body = "Grüße aus Köln".encode("latin-1")
        return web.Response(body=body, headers={"Content-Type": "text/html; charset=ISO-8859-1"})

    async def cyrillic(request):
        body = "Новости дня".encode("cp1251")
        return web.Response(body=body, headers={"Content-Type": "text/html; charset=windows-1251"})

    async def undeclared(request):
        return web.Response(body="Überblick".encode("utf-8"), headers={"Content-Type": "text/html"})

    server = await start_server([
        web.get("/latin", latin),
        web.get("/cyrillic", cyrillic),
        web.get("/undeclared", undeclared),
    ])
    try:
        async with ClientSession() as session:
            fetcher = HttpFetcher(session, Config())
            latin_doc = await fetcher.fetch(str(server.make_url("/latin")))
            cyrillic_doc = await fetcher.fetch(str(server.make_url("/cyrillic")))
            undeclared_doc = await fetcher.fetch(str(server.make_url("/undeclared")))
    finally:
        await server.close()

    assert latin_doc.text == "Grüße aus Köln"
    assert cyrillic_doc.text == "Новости дня"
    assert undeclared_doc.text == "Überblick"


@pytest.mark.asyncio
async def test_slow_response_raises_timeout():
    async def slow(request):
        await asyncio.sleep(1)
        return web.Response(text="late")

    server = await start_server([web.get("/slow", slow)])
    settings = Config()
    settings.HTTP_TIMEOUT = 0.1
    try:
        async with ClientSession() as session:
            fetcher = HttpFetcher(session, settings)
            with pytest.raises(FetchTimeout) as exc_info:
                await fetcher.fetch(str(server.make_url("/slow")))
    finally:
        await server.close()

    assert str(exc_info.value) == "Timeout"
    assert exc_info.value.url.endswith("/slow")


@pytest.mark.asyncio
async def test_fetch_with_retry_recovers_after_one_failure(delays):
    attempts = []

    async def flaky(request):
        attempts.append(1)
        if len(attempts) == 1:
            return web.Response(status=503)
        return web.Response(text="ok")

    server = await start_server([web.get("/flaky", flaky)])
    try:
        async with ClientSession() as session:
            fetcher = HttpFetcher(session, Config())
            document = await fetcher.fetch_with_retry(str(server.make_url("/flaky")))
    finally:
        await server.close()

    assert document.text == "ok"
    assert len(attempts) == 2
    assert delays == [1.0]


@pytest.mark.asyncio
async def test_fetch_with_retry_gives_up_after_second_attempt(delays):
    attempts = []

    async def broken(request):
        attempts.append(1)
        return web.Response(status=500)

    server = await start_server([web.get("/broken", broken)])
    try:
        async with ClientSession() as session:
            fetcher = HttpFetcher(session, Config())
            with pytest.raises(HttpError):
                await fetcher.fetch_with_retry(str(server.make_url("/broken")))
    finally:
        await server.close()

    assert len(attempts) == 2
    assert delays == [1.0]


@pytest.mark.asyncio
async def test_connection_refused_is_a_network_error():
    async with ClientSession() as session:
        fetcher = HttpFetcher(session, Config())
        with pytest.raises(NetworkError):
            await fetcher.fetch("http://127.0.0.1:1/unreachable")


@pytest.mark.asyncio
async def test_aggregator_redirect_stops_at_first_off_domain_hop():
    seen_agents = []

    async def wrapper(request):
        seen_agents.append(request.headers.get("User-Agent"))
        raise web.HTTPFound("https://publisher.example/story")

    server = await start_server([web.get("/rss/articles/abc", wrapper)])
    settings = Config()
    # The local test server stands in for the aggregator domain
    settings.AGGREGATOR_DOMAIN = "127.0.0.1"
    try:
        async with ClientSession() as session:
            fetcher = HttpFetcher(session, settings)
            resolved = await fetcher.resolve_aggregator_redirect(str(server.make_url("/rss/articles/abc")))
    finally:
        await server.close()

    assert resolved == "https://publisher.example/story"
    assert seen_agents == [settings.AGGREGATOR_USER_AGENT]


@pytest.mark.asyncio
async def test_aggregator_redirect_gives_up_after_three_hops():
    hits = []

    async def hop(request):
        n = int(request.match_info["n"])
        hits.append(n)
        raise web.HTTPFound(f"/rss/articles/{n + 1}")

    server = await start_server([web.get("/rss/articles/{n}", hop)])
    settings = Config()
    settings.AGGREGATOR_DOMAIN = "127.0.0.1"
    try:
        async with ClientSession() as session:
            fetcher = HttpFetcher(session, settings)
            resolved = await fetcher.resolve_aggregator_redirect(str(server.make_url("/rss/articles/0")))
    finally:
        await server.close()

    assert hits == [0, 1, 2]
    assert resolved == str(server.make_url("/rss/articles/3"))


@pytest.mark.asyncio
async def test_aggregator_redirect_returns_current_url_without_redirect():
    async def page(request):
        return web.Response(text="<html></html>", content_type="text/html")

    server = await start_server([web.get("/rss/articles/xyz", page)])
    url = str(server.make_url("/rss/articles/xyz"))
    try:
        async with ClientSession() as session:
            fetcher = HttpFetcher(session, Config())
            assert await fetcher.resolve_aggregator_redirect(url) == url
    finally:
        await server.close()


def test_detect_encoding():
    assert detect_encoding("text/html; charset=UTF-8") == "utf-8"
    assert detect_encoding("text/html; charset=latin1") == "latin-1"
    assert detect_encoding("text/xml; charset=\"iso-8859-1\"") == "latin-1"
    assert detect_encoding("text/html") == "utf-8"
    assert detect_encoding("text/html; charset=not-a-codec") == "utf-8"


def test_is_on_domain():
    assert is_on_domain("https://news.google.com/rss/articles/x", "news.google.com")
    assert is_on_domain("https://m.news.google.com/x", "news.google.com")
    assert not is_on_domain("https://example.com/?u=news.google.com", "news.google.com")
    assert not is_on_domain(None, "news.google.com")
