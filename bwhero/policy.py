"""Request parsing and the compress/bypass/redirect decision.

Everything here is pure: a ProxyRequest is built once from the inbound query
and headers, enriched once with the origin's type and size, and classified
against the origin status and headers. No I/O happens in this module.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum
from urllib.parse import unquote, urlsplit

from .config import DEFAULT_QUALITY, MAX_DIMENSION, MAX_QUALITY, MIN_QUALITY, PolicyConfig
from .exceptions import InvalidTargetURL


class Decision(str, Enum):
    """What to do with the origin response."""

    COMPRESS = "compress"
    BYPASS = "bypass"
    REDIRECT = "redirect"


@dataclass(frozen=True)
class TranscodeParams:
    """Encoder settings for a single compression."""

    quality: int
    grayscale: bool
    format: str = "jpeg"
    chroma_subsampling: str = "4:4:4"
    max_dimension: int = MAX_DIMENSION

    @property
    def media_type(self) -> str:
        return f"image/{self.format}"


@dataclass(frozen=True)
class CompressionDecision:
    """Result of classifying an origin response."""

    action: Decision
    reason: str
    params: TranscodeParams | None = None


@dataclass(frozen=True)
class ProxyRequest:
    """Normalized per-request descriptor.

    origin_type and origin_size stay empty until the origin headers are known;
    with_origin() returns the enriched copy.
    """

    url: str
    webp: bool = True
    grayscale: bool = True
    quality: int = DEFAULT_QUALITY
    client_range: bool = False
    forwarded_for: str = ""

    origin_type: str = ""
    origin_size: int = 0

    def with_origin(self, headers: Mapping[str, str]) -> ProxyRequest:
        return replace(
            self,
            origin_type=headers.get("content-type") or "",
            origin_size=parse_content_length(headers.get("content-length")),
        )


def parse_content_length(value: str | None) -> int:
    """Content-Length as an int; missing or non-numeric counts as 0."""
    if value is None:
        return 0
    value = value.strip()
    if not value.isdigit():
        return 0
    return int(value)


def parse_quality(value: str | None, default: int = DEFAULT_QUALITY) -> int:
    """Parse the ``l`` parameter, falling back to the default and clamping to 1-100."""
    if not value:
        return default
    try:
        quality = int(value.strip())
    except ValueError:
        return default
    if quality == 0:
        return default
    return max(MIN_QUALITY, min(MAX_QUALITY, quality))


def validate_target_url(url: str) -> str:
    """Return url if it is an absolute http(s) URL, else raise InvalidTargetURL."""
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise InvalidTargetURL("Invalid URL", details={"url": url, "error": str(e)}) from None

    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        raise InvalidTargetURL("Invalid URL", details={"url": url})
    return url


def parse_request(
    query: Mapping[str, str],
    headers: Mapping[str, str],
    client_host: str | None,
    config: PolicyConfig | None = None,
) -> ProxyRequest | None:
    """Build a ProxyRequest from the inbound query string and headers.

    Returns None when no ``url`` parameter was given; the caller answers with
    the identification string instead of proxying.

    Raises:
        InvalidTargetURL: the target is not an absolute http(s) URL.
    """
    config = config or PolicyConfig()

    raw_url = query.get("url")
    if not raw_url:
        return None

    url = validate_target_url(unquote(raw_url).strip())

    return ProxyRequest(
        url=url,
        webp=not query.get("jpeg"),
        grayscale=query.get("bw") != "0",
        quality=parse_quality(query.get("l"), config.default_quality),
        client_range="range" in headers,
        forwarded_for=headers.get("x-forwarded-for") or client_host or "",
    )


def classify(
    req: ProxyRequest,
    origin_status: int,
    origin_headers: Mapping[str, str],
    config: PolicyConfig | None = None,
) -> CompressionDecision:
    """Decide whether to compress, bypass or redirect.

    Rules are evaluated in order and the first match wins. origin_type and
    origin_size are taken from origin_headers, so req does not need to have
    been enriched with with_origin() first.
    """
    config = config or PolicyConfig()

    if origin_status >= 400:
        return CompressionDecision(Decision.REDIRECT, f"origin status {origin_status}")
    if 300 <= origin_status < 400 and origin_headers.get("location"):
        return CompressionDecision(Decision.REDIRECT, "unresolved origin redirect")

    origin_type = origin_headers.get("content-type") or ""
    origin_size = parse_content_length(origin_headers.get("content-length"))

    if not origin_type.startswith("image/"):
        return CompressionDecision(Decision.BYPASS, "not an image")
    if origin_size == 0:
        return CompressionDecision(Decision.BYPASS, "unknown or empty size")
    if req.client_range:
        return CompressionDecision(Decision.BYPASS, "range request")
    if req.webp and origin_size < config.min_compress_length:
        return CompressionDecision(Decision.BYPASS, "too small to compress")

    subtype = origin_type.split(";", 1)[0].strip().lower()
    if (
        not req.webp
        and (subtype.endswith("png") or subtype.endswith("gif"))
        and origin_size < config.min_transparent_compress_length
    ):
        return CompressionDecision(Decision.BYPASS, "small png/gif")

    return CompressionDecision(
        Decision.COMPRESS,
        "compressible image",
        TranscodeParams(quality=req.quality, grayscale=req.grayscale),
    )
