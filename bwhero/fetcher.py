"""Outbound fetch of the proxied resource.

OriginFetcher owns the process-wide httpx.AsyncClient. Responses are always
opened in streaming mode; the caller either pipes the body or closes it.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass

import httpx

from .config import USER_AGENT, VIA_MARKER
from .exceptions import FetchError, FetchErrorKind, OriginErrorStatus, OriginNetworkError

logger = logging.getLogger("bwhero.fetcher")

# Inbound headers that may reach the origin. Everything else is dropped.
FORWARDED_HEADERS = ("cookie", "dnt", "referer", "range")


def pick(headers: Mapping[str, str], keys: tuple[str, ...]) -> dict[str, str]:
    """Subset of headers limited to keys, skipping the ones not present."""
    return {k: headers[k] for k in keys if k in headers}


def build_origin_headers(inbound: Mapping[str, str], forwarded_for: str) -> dict[str, str]:
    """Header set sent to the origin: the allow-listed inbound headers plus our identity."""
    headers = pick(inbound, FORWARDED_HEADERS)
    headers.update(
        {
            "user-agent": USER_AGENT,
            "x-forwarded-for": forwarded_for,
            "via": VIA_MARKER,
            # Keep origin bytes and origin content-length in agreement
            "accept-encoding": "identity",
        }
    )
    return headers


@dataclass
class OriginResponse:
    """Status, headers and open body stream of the final origin response."""

    status_code: int
    headers: httpx.Headers
    url: str
    response: httpx.Response

    @property
    def content_encoded(self) -> bool:
        """True when httpx will transfer-decode the body we stream."""
        encoding = self.headers.get("content-encoding", "identity").strip().lower()
        return encoding not in ("", "identity")

    def raise_for_status(self) -> None:
        """Raise OriginErrorStatus for 4xx/5xx and for a redirect left unfollowed."""
        status = self.status_code
        if status >= 400 or (300 <= status < 400 and self.headers.get("location")):
            raise OriginErrorStatus(status, details={"url": self.url})

    async def aiter_bytes(self, chunk_size: int | None = None) -> AsyncIterator[bytes]:
        async for chunk in self.response.aiter_bytes(chunk_size):
            yield chunk

    async def aclose(self) -> None:
        await self.response.aclose()


class OriginFetcher:
    """Fetches origin resources with a restricted header set and bounded redirects."""

    def __init__(
        self,
        max_redirects: int = 4,
        timeout: httpx.Timeout | None = None,
        limits: httpx.Limits | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_redirects = max_redirects
        self.timeout = timeout or httpx.Timeout(30.0, connect=10.0)
        self.limits = limits or httpx.Limits(max_connections=500, max_keepalive_connections=100)
        self.transport = transport
        self.http_client: httpx.AsyncClient | None = None

    async def startup(self) -> None:
        """Open the shared HTTP client."""
        if self.http_client is None:
            self.http_client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=self.limits,
                transport=self.transport,
                follow_redirects=False,
            )

    async def shutdown(self) -> None:
        if self.http_client:
            await self.http_client.aclose()
            self.http_client = None

    async def fetch(
        self,
        url: str,
        inbound_headers: Mapping[str, str],
        forwarded_for: str,
    ) -> OriginResponse:
        """GET url and return the final response with its body still unread.

        Redirects are followed up to max_redirects times. Past the bound the
        last redirect response is returned as-is rather than raised.

        Raises:
            FetchError: kind INVALID_URL for unusable URLs.
            OriginNetworkError: DNS, connect, timeout, TLS or protocol failures.
        """
        if self.http_client is None:
            await self.startup()

        headers = build_origin_headers(inbound_headers, forwarded_for)

        try:
            request = self.http_client.build_request("GET", url, headers=headers)
            response = await self.http_client.send(request, stream=True)

            redirects = 0
            while response.next_request is not None and redirects < self.max_redirects:
                next_request = response.next_request
                await response.aclose()
                redirects += 1
                logger.debug(f"Following redirect {redirects} to {next_request.url}")
                response = await self.http_client.send(next_request, stream=True)

        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise FetchError(
                "Invalid URL", kind=FetchErrorKind.INVALID_URL, details={"url": url}
            ) from e
        except httpx.HTTPError as e:
            raise OriginNetworkError(
                f"{type(e).__name__}: {e}", details={"url": url}
            ) from e

        return OriginResponse(
            status_code=response.status_code,
            headers=response.headers,
            url=str(response.url),
            response=response,
        )
