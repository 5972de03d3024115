from __future__ import annotations

import asyncio

import httpx
import pytest

from imgpro.common.networking import EgressDenied, OriginEgressGuard
from imgpro.edge.errors import PayloadTooLarge, UpstreamError, UpstreamTimeout
from imgpro.edge.origin import (
    DEFAULT_USER_AGENT,
    HTML_CHALLENGE_MAX_BYTES,
    OriginFetcher,
    build_origin_headers,
    classify_response,
)


def _fetcher(handler, resolver, **kwargs) -> OriginFetcher:
    guard = OriginEgressGuard(resolver=resolver)
    return OriginFetcher(guard, transport=httpx.MockTransport(handler), **kwargs)


def test_build_origin_headers_copies_only_allow_listed_headers() -> None:
    headers = build_origin_headers(
        {
            "User-Agent": "Mozilla/5.0",
            "Accept": "image/avif,image/webp",
            "Accept-Language": "en-GB",
            "Referer": "https://blog.example.com/post",
            "Authorization": "Bearer secret",
            "Cookie": "session=1",
            "Host": "edge.internal",
            "X-Forwarded-For": "1.2.3.4",
            "Proxy-Authorization": "Basic abc",
        }
    )

    assert headers == {
        "user-agent": "Mozilla/5.0",
        "accept": "image/avif,image/webp",
        "accept-language": "en-GB",
        "referer": "https://blog.example.com/post",
    }


def test_build_origin_headers_defaults_user_agent() -> None:
    assert build_origin_headers({}) == {"user-agent": DEFAULT_USER_AGENT}


def test_build_origin_headers_override_and_client_ip() -> None:
    headers = build_origin_headers(
        {"User-Agent": "Mozilla/5.0"},
        user_agent_override="ImgPro-Test/1.0",
        client_ip="203.0.113.9",
        forward_client_ip=True,
    )

    assert headers["user-agent"] == "ImgPro-Test/1.0"
    assert headers["x-forwarded-for"] == "203.0.113.9"


def test_build_origin_headers_does_not_forward_ip_by_default() -> None:
    headers = build_origin_headers({}, client_ip="203.0.113.9")

    assert "x-forwarded-for" not in headers


@pytest.mark.parametrize(
    ("status", "content_type", "size", "expected"),
    [
        (401, "text/html", 10, "http_401"),
        (403, "image/jpeg", 10, "http_403"),
        (429, "text/plain", 10, "rate_limited"),
        (200, "text/html; charset=utf-8", 2000, "html_challenge_page"),
        (200, "text/html", None, "html_challenge_page"),
        (200, "text/html", HTML_CHALLENGE_MAX_BYTES, "html_instead_of_image"),
        (200, "text/plain", 10, "text_instead_of_image"),
        (200, "application/json", 10, "json_instead_of_image"),
        (200, "application/octet-stream", 10, "non_image_content_type"),
        (200, "image/png", 10, None),
        (200, None, 10, None),
        (500, "image/png", 10, None),
    ],
)
def test_classify_response(status: int, content_type, size, expected) -> None:
    assert classify_response(status, content_type, size) == expected


@pytest.mark.asyncio
async def test_fetch_returns_unblocked_image(public_resolver) -> None:
    captured: dict[str, httpx.Headers] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["headers"] = request.headers
        return httpx.Response(200, headers={"content-type": "image/png"}, content=b"\x89PNG" + b"0" * 96)

    fetcher = _fetcher(handler, public_resolver)
    try:
        outcome = await fetcher.fetch(
            "https://example.com/a.png",
            client_headers={"Cookie": "a=b", "Accept": "image/*"},
        )
        body = await outcome.read_body(1024)
    finally:
        await fetcher.aclose()

    assert outcome.ok
    assert outcome.blocked is False
    assert outcome.final_url == "https://example.com/a.png"
    assert len(body) == 100
    assert "cookie" not in captured["headers"]
    assert captured["headers"]["accept"] == "image/*"
    assert captured["headers"]["user-agent"] == DEFAULT_USER_AGENT


@pytest.mark.asyncio
async def test_fetch_classifies_challenge_page_without_raising(public_resolver) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/html"}, content=b"<html>" + b"a" * 1994)

    fetcher = _fetcher(handler, public_resolver)
    try:
        outcome = await fetcher.fetch("https://example.com/a.jpg")
    finally:
        await fetcher.aclose()

    assert outcome.blocked is True
    assert outcome.block_reason == "html_challenge_page"


@pytest.mark.asyncio
async def test_fetch_measures_html_without_content_length(public_resolver) -> None:
    async def chunks():
        yield b"<html>"
        yield b"a" * (HTML_CHALLENGE_MAX_BYTES + 10)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/html"}, content=chunks())

    fetcher = _fetcher(handler, public_resolver)
    try:
        outcome = await fetcher.fetch("https://example.com/a.jpg")
    finally:
        await fetcher.aclose()

    assert outcome.block_reason == "html_instead_of_image"


@pytest.mark.asyncio
async def test_fetch_rejects_redirect_to_private_address(static_resolver) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "cdn.example.com":
            return httpx.Response(301, headers={"location": "http://router.example.com/admin.png"})
        return httpx.Response(200, headers={"content-type": "image/png"}, content=b"png")

    resolver = static_resolver({"cdn.example.com": ["93.184.216.34"], "router.example.com": ["192.168.0.1"]})
    fetcher = _fetcher(handler, resolver)
    try:
        with pytest.raises(EgressDenied):
            await fetcher.fetch("https://cdn.example.com/a.png")
    finally:
        await fetcher.aclose()


@pytest.mark.asyncio
async def test_fetch_rejects_redirect_failing_custom_validator(public_resolver) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "img.example.com":
            return httpx.Response(302, headers={"location": "https://elsewhere.test/a.png"})
        return httpx.Response(200, headers={"content-type": "image/png"}, content=b"png")

    fetcher = _fetcher(
        handler,
        public_resolver,
        redirect_validator=lambda url: httpx.URL(url).host.endswith("example.com"),
    )
    try:
        with pytest.raises(EgressDenied) as exc_info:
            await fetcher.fetch("https://img.example.com/a.png")
    finally:
        await fetcher.aclose()

    assert "elsewhere.test" in str(exc_info.value)


@pytest.mark.asyncio
async def test_fetch_follows_allowed_redirects(public_resolver) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/old.png":
            return httpx.Response(302, headers={"location": "https://img.example.com/new.png"})
        return httpx.Response(200, headers={"content-type": "image/png"}, content=b"png")

    fetcher = _fetcher(handler, public_resolver, redirect_validator=lambda url: True)
    try:
        outcome = await fetcher.fetch("https://img.example.com/old.png")
        await outcome.aclose()
    finally:
        await fetcher.aclose()

    assert outcome.final_url == "https://img.example.com/new.png"


@pytest.mark.asyncio
async def test_fetch_too_many_redirects_is_upstream_error(public_resolver) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"location": "https://img.example.com/loop.png"})

    fetcher = _fetcher(handler, public_resolver, max_redirects=2)
    try:
        with pytest.raises(UpstreamError):
            await fetcher.fetch("https://img.example.com/loop.png")
    finally:
        await fetcher.aclose()


@pytest.mark.asyncio
async def test_fetch_times_out(public_resolver) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1.0)
        return httpx.Response(200)

    fetcher = _fetcher(handler, public_resolver, timeout_seconds=0.05)
    try:
        with pytest.raises(UpstreamTimeout) as exc_info:
            await fetcher.fetch("https://slow.example.com/a.jpg")
    finally:
        await fetcher.aclose()

    assert exc_info.value.status_code == 504
    assert exc_info.value.message == "Request timeout after 0.05s"


@pytest.mark.asyncio
async def test_fetch_transport_error_is_upstream_error(public_resolver) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    fetcher = _fetcher(handler, public_resolver)
    try:
        with pytest.raises(UpstreamError):
            await fetcher.fetch("https://down.example.com/a.jpg")
    finally:
        await fetcher.aclose()


@pytest.mark.asyncio
async def test_read_body_rejects_declared_oversize(public_resolver) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "image/jpeg"}, content=b"x" * 200)

    fetcher = _fetcher(handler, public_resolver)
    try:
        outcome = await fetcher.fetch("https://example.com/big.jpg")
        with pytest.raises(PayloadTooLarge) as exc_info:
            await outcome.read_body(100)
    finally:
        await fetcher.aclose()

    assert exc_info.value.message == "File too large: 200 bytes (max 100 bytes)"


@pytest.mark.asyncio
async def test_read_body_rejects_understated_content_length(public_resolver) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-type": "image/jpeg", "content-length": "10"},
            content=b"x" * 500,
        )

    fetcher = _fetcher(handler, public_resolver)
    try:
        outcome = await fetcher.fetch("https://example.com/liar.jpg")
        with pytest.raises(PayloadTooLarge):
            await outcome.read_body(100)
    finally:
        await fetcher.aclose()


@pytest.mark.asyncio
async def test_read_body_accepts_body_at_limit(public_resolver) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "image/jpeg"}, content=b"x" * 100)

    fetcher = _fetcher(handler, public_resolver)
    try:
        outcome = await fetcher.fetch("https://example.com/exact.jpg")
        body = await outcome.read_body(100)
    finally:
        await fetcher.aclose()

    assert body == b"x" * 100
