"""Projection of origin responses onto the client response.

ProxyReply collects headers the way a framework reply object does and commits
exactly once. ResponseProjector implements the three paths (redirect, bypass,
compress) on top of it.

Header contract:
- Every proxied response carries content-encoding: identity and the CORS
  triplet, because we never re-apply compression we did not produce.
- Compressed responses only learn content-type/content-length once the
  encoder is done, so the response is not committed before that.
- Redirects drop caching headers so browsers do not cache the 302.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from urllib.parse import quote

import httpx
from fastapi import Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
from starlette.datastructures import MutableHeaders

from bwhero.exceptions import BandwidthHeroError, TranscodeError
from bwhero.fetcher import OriginResponse
from bwhero.image.transcoder import StreamTranscoder
from bwhero.policy import CompressionDecision, Decision, ProxyRequest, TranscodeParams

logger = logging.getLogger("bwhero.proxy")

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "cross-origin-resource-policy": "cross-origin",
    "cross-origin-embedder-policy": "unsafe-none",
}

# Owned by the ASGI server on the client side of the connection
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

CACHE_HEADERS = ("cache-control", "expires", "date", "etag")

BYPASS_ORIGIN_HEADERS = ("accept-ranges", "content-type", "content-length", "content-range")

# Characters encodeURI leaves alone, beyond the ones quote() always keeps
_URI_SAFE = ";,/?:@&=+$!*'()#"


def encode_uri(url: str) -> str:
    """Percent-encode a URL for a Location header, keeping its structure."""
    return quote(url, safe=_URI_SAFE)


class ProxyReply:
    """Mutable client response that can be committed exactly once."""

    def __init__(self):
        self.headers = MutableHeaders()
        self.status_code = 200
        self.sent = False

    def header(self, name: str, value: str | int) -> None:
        if self.sent:
            raise BandwidthHeroError("Headers already sent", details={"header": name})
        self.headers[name] = str(value)

    def remove_header(self, name: str) -> None:
        if self.sent:
            raise BandwidthHeroError("Headers already sent", details={"header": name})
        del self.headers[name]

    def _commit(self, status_code: int | None) -> dict[str, str]:
        if self.sent:
            raise BandwidthHeroError("Response already sent")
        if status_code is not None:
            self.status_code = status_code
        self.sent = True
        return dict(self.headers)

    def send(self, body: bytes = b"", status_code: int | None = None) -> Response:
        headers = self._commit(status_code)
        return Response(content=body, status_code=self.status_code, headers=headers)

    def stream(
        self,
        content: AsyncIterator[bytes],
        status_code: int | None = None,
        background: BackgroundTask | None = None,
    ) -> StreamingResponse:
        headers = self._commit(status_code)
        return StreamingResponse(
            content, status_code=self.status_code, headers=headers, background=background
        )


async def pipe_origin(origin: OriginResponse) -> AsyncIterator[bytes]:
    """Stream the origin body, closing the origin connection however it ends.

    Errors after the first byte cannot be turned into a redirect anymore; they
    propagate so the server drops the client connection.
    """
    try:
        async for chunk in origin.aiter_bytes():
            yield chunk
    except httpx.HTTPError as e:
        logger.warning(f"Origin stream failed mid-response for {origin.url}: {e}")
        raise
    finally:
        await origin.aclose()


class ResponseProjector:
    """Writes the client response for a CompressionDecision."""

    def __init__(self, stream_transcoder: StreamTranscoder | None = None):
        self.stream_transcoder = stream_transcoder or StreamTranscoder()

    def copy_headers(self, origin: OriginResponse, reply: ProxyReply) -> None:
        """Origin headers as the baseline, then identity encoding and CORS on top."""
        for raw_key, raw_value in origin.headers.raw:
            key = raw_key.decode("latin-1").lower()
            if key in HOP_BY_HOP_HEADERS:
                continue
            try:
                reply.header(key, raw_value.decode("latin-1"))
            except (UnicodeError, ValueError) as e:
                logger.debug(f"Skipping origin header {key}: {e}")

        reply.header("content-encoding", "identity")
        for key, value in CORS_HEADERS.items():
            reply.header(key, value)

    def redirect(self, req: ProxyRequest | str, reply: ProxyReply) -> Response | None:
        """Send the client to the original URL.

        Returns None without touching the reply if a response was already sent.
        """
        if reply.sent:
            return None

        url = req.url if isinstance(req, ProxyRequest) else req
        reply.header("content-length", 0)
        for name in CACHE_HEADERS:
            reply.remove_header(name)
        reply.header("location", encode_uri(url))
        return reply.send(status_code=302)

    def bypass(self, origin: OriginResponse, reply: ProxyReply) -> StreamingResponse:
        """Stream origin bytes unchanged."""
        self.copy_headers(origin, reply)
        reply.header("x-proxy-bypass", 1)

        for name in BYPASS_ORIGIN_HEADERS:
            value = origin.headers.get(name)
            if value:
                reply.header(name, value)

        if origin.content_encoded:
            # httpx hands us decoded bytes, so the origin length is wrong
            reply.remove_header("content-length")

        status = origin.status_code if 200 <= origin.status_code < 300 else 200
        return reply.stream(
            pipe_origin(origin), status_code=status, background=BackgroundTask(origin.aclose)
        )

    async def compress(
        self,
        req: ProxyRequest,
        origin: OriginResponse,
        reply: ProxyReply,
        params: TranscodeParams,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> StreamingResponse:
        """Transcode the origin body and send it once its size is known.

        Raises:
            TranscodeError: nothing has been sent; the caller may redirect.
            ClientDisconnected: the client left while the origin was being read.
        """
        self.copy_headers(origin, reply)

        try:
            image = await self.stream_transcoder.transcode(
                origin.aiter_bytes(), params, is_disconnected=is_disconnected
            )
        finally:
            await origin.aclose()

        result = image.result
        reply.header("content-type", params.media_type)
        reply.header("content-length", result.encoded_size)
        reply.header("x-original-size", req.origin_size)
        reply.header("x-bytes-saved", req.origin_size - result.encoded_size)

        if req.origin_size:
            saved_pct = (req.origin_size - result.encoded_size) / req.origin_size * 100
            logger.info(
                f"Compressed {req.url}: {req.origin_size:,} -> {result.encoded_size:,} bytes "
                f"({saved_pct:.1f}% saved)"
            )

        return reply.stream(
            image.aiter_bytes(), status_code=200, background=BackgroundTask(image.close)
        )

    async def project(
        self,
        decision: CompressionDecision,
        req: ProxyRequest,
        origin: OriginResponse,
        reply: ProxyReply,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> Response | None:
        """Dispatch to the path chosen by the decision."""
        if decision.action is Decision.REDIRECT:
            await origin.aclose()
            return self.redirect(req, reply)

        if decision.action is Decision.BYPASS:
            return self.bypass(origin, reply)

        try:
            return await self.compress(req, origin, reply, decision.params, is_disconnected)
        except TranscodeError as e:
            logger.warning(f"Transcode failed for {req.url}, redirecting: {e}")
            return self.redirect(req, reply)
