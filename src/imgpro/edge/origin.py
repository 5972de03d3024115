"""Origin fetching: guarded outbound requests, block-page detection and bounded body reads."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

import httpx
import structlog

from ..common.networking import EgressDenied, OriginEgressGuard, create_guarded_async_client
from .errors import PayloadTooLarge, UpstreamError, UpstreamTimeout

LOGGER = structlog.get_logger("imgpro.edge.origin")

DEFAULT_USER_AGENT = "ImgPro/1.1.0 CDN Cache (+image cache proxy)"
FORWARDED_HEADERS = ("user-agent", "accept", "accept-language", "referer")
NEVER_FORWARDED_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "host",
        "connection",
        "keep-alive",
        "proxy-authorization",
        "proxy-authenticate",
        "proxy-connection",
        "www-authenticate",
        "set-cookie",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "forwarded",
        "x-forwarded-for",
        "x-real-ip",
        "content-length",
    }
)
HTML_CHALLENGE_MAX_BYTES = 50_000


def build_origin_headers(
    client_headers: Mapping[str, str] | None = None,
    *,
    user_agent_override: Optional[str] = None,
    client_ip: Optional[str] = None,
    forward_client_ip: bool = False,
) -> dict[str, str]:
    """Select the outbound headers for an origin request.

    Only the allow-listed caller headers are copied; credentials, hop-by-hop
    and proxy headers are never sent upstream.
    """
    incoming = httpx.Headers(client_headers or {})
    headers: dict[str, str] = {}
    for name in FORWARDED_HEADERS:
        if name in NEVER_FORWARDED_HEADERS:
            continue
        value = incoming.get(name)
        if value:
            headers[name] = value

    if user_agent_override:
        headers["user-agent"] = user_agent_override
    elif not headers.get("user-agent"):
        headers["user-agent"] = DEFAULT_USER_AGENT

    if forward_client_ip and client_ip:
        headers["x-forwarded-for"] = client_ip
    return headers


def classify_response(status_code: int, content_type: str | None, body_size: Optional[int]) -> Optional[str]:
    """Name the kind of refusal a response represents, or ``None`` when it looks like real content.

    ``body_size`` of ``None`` means the size is unknown; unknown-size HTML is
    treated as a challenge page.
    """
    if status_code in (401, 403):
        return f"http_{status_code}"
    if status_code == 429:
        return "rate_limited"

    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    if not media_type:
        return None
    if media_type == "text/html":
        if body_size is None or body_size < HTML_CHALLENGE_MAX_BYTES:
            return "html_challenge_page"
        return "html_instead_of_image"
    if media_type.startswith("text/"):
        return "text_instead_of_image"
    if media_type == "application/json":
        return "json_instead_of_image"
    if not media_type.startswith("image/"):
        return "non_image_content_type"
    return None


def _declared_length(headers: httpx.Headers) -> Optional[int]:
    value = headers.get("content-length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _too_large(size: int, max_bytes: int) -> PayloadTooLarge:
    return PayloadTooLarge(f"File too large: {size} bytes (max {max_bytes} bytes)")


@dataclass
class FetchOutcome:
    """An origin response whose body has not necessarily been read yet."""

    status_code: int
    reason: str
    headers: httpx.Headers
    final_url: str
    response: httpx.Response
    timeout_seconds: float
    deadline: float
    blocked: bool = False
    block_reason: Optional[str] = None
    _body: Optional[bytes] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    async def read_body(self, max_bytes: int) -> bytes:
        """Read the whole body, failing once it exceeds ``max_bytes``.

        ``Content-Length`` is checked first but never trusted: the running
        total is checked while streaming.
        """
        if self._body is not None:
            if len(self._body) > max_bytes:
                raise _too_large(len(self._body), max_bytes)
            return self._body

        declared = _declared_length(self.headers)
        if declared is not None and declared > max_bytes:
            await self.aclose()
            raise _too_large(declared, max_bytes)

        remaining = self.deadline - asyncio.get_running_loop().time()
        try:
            self._body = await asyncio.wait_for(self._read_stream(max_bytes), timeout=max(0.0, remaining))
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            await self.aclose()
            raise UpstreamTimeout(f"Request timeout after {self.timeout_seconds:g}s") from exc
        except httpx.HTTPError as exc:
            await self.aclose()
            raise UpstreamError(f"Origin body read failed: {exc}") from exc
        return self._body

    async def _read_stream(self, max_bytes: int) -> bytes:
        data = bytearray()
        try:
            async for chunk in self.response.aiter_bytes():
                data.extend(chunk)
                if len(data) > max_bytes:
                    raise _too_large(len(data), max_bytes)
        finally:
            await self.response.aclose()
        return bytes(data)

    async def aclose(self) -> None:
        await self.response.aclose()


class OriginFetcher:
    """Fetches source URLs through an SSRF-guarded client."""

    def __init__(
        self,
        guard: OriginEgressGuard,
        *,
        timeout_seconds: float = 30.0,
        max_redirects: int = 5,
        max_body_bytes: int = 50 * 1024 * 1024,
        user_agent_override: Optional[str] = None,
        forward_client_ip: bool = False,
        redirect_validator: Optional[Callable[[str], bool]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._guard = guard
        self._timeout = timeout_seconds
        self._max_body_bytes = max_body_bytes
        self._user_agent_override = user_agent_override
        self._forward_client_ip = forward_client_ip
        self._redirect_validator = redirect_validator
        self._client = create_guarded_async_client(
            guard=guard,
            timeout=timeout_seconds,
            max_redirects=max_redirects,
            transport=transport,
        )

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch(
        self,
        url: str,
        *,
        client_headers: Mapping[str, str] | None = None,
        client_ip: Optional[str] = None,
    ) -> FetchOutcome:
        """Send the request and classify the response.

        Raises ``EgressDenied`` when the URL or any redirect target is not
        allowed, ``UpstreamTimeout`` past the deadline and ``UpstreamError``
        for transport failures. Refusal pages are reported on the outcome,
        not raised.
        """
        headers = build_origin_headers(
            client_headers,
            user_agent_override=self._user_agent_override,
            client_ip=client_ip,
            forward_client_ip=self._forward_client_ip,
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        try:
            response = await asyncio.wait_for(self._send(url, headers), timeout=self._timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UpstreamTimeout(f"Request timeout after {self._timeout:g}s") from exc
        except httpx.TooManyRedirects as exc:
            raise UpstreamError(f"Too many redirects fetching {url}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Origin request failed: {exc}") from exc

        outcome = FetchOutcome(
            status_code=response.status_code,
            reason=response.reason_phrase,
            headers=response.headers,
            final_url=str(response.url),
            response=response,
            timeout_seconds=self._timeout,
            deadline=deadline,
        )
        try:
            await self._validate_final_url(url, outcome.final_url)
            await self._classify(outcome)
        except BaseException:
            await outcome.aclose()
            raise
        return outcome

    async def _send(self, url: str, headers: dict[str, str]) -> httpx.Response:
        request = self._client.build_request("GET", url, headers=headers)
        return await self._client.send(request, stream=True)

    async def _validate_final_url(self, requested_url: str, final_url: str) -> None:
        await self._guard.ensure_allowed(final_url)
        if final_url == requested_url or self._redirect_validator is None:
            return
        if not self._redirect_validator(final_url):
            LOGGER.warning("origin_redirect_rejected", url=requested_url, final_url=final_url)
            raise EgressDenied(f"Redirect target not allowed: {final_url}")

    async def _classify(self, outcome: FetchOutcome) -> None:
        body_size = _declared_length(outcome.headers)
        media_type = outcome.content_type.split(";", 1)[0].strip().lower()
        if outcome.ok and media_type == "text/html" and body_size is None:
            try:
                body_size = len(await outcome.read_body(self._max_body_bytes))
            except PayloadTooLarge:
                body_size = self._max_body_bytes + 1

        reason = classify_response(outcome.status_code, outcome.content_type, body_size)
        if reason is not None:
            outcome.blocked = True
            outcome.block_reason = reason
            LOGGER.info(
                "origin_response_blocked",
                url=outcome.final_url,
                status=outcome.status_code,
                reason=reason,
                content_type=outcome.content_type,
            )
