"""Custom exceptions for bwhero.

All exceptions inherit from BandwidthHeroError, making it easy to catch
every proxy-related error in one place:

    from bwhero import BandwidthHeroError, FetchError

    try:
        origin = await fetcher.fetch(url, headers, forwarded_for)
    except FetchError as e:
        print(f"Origin unreachable: {e}")
    except BandwidthHeroError as e:
        print(f"Proxy error: {e}")
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class BandwidthHeroError(Exception):
    """Base exception for all bwhero errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class ConfigurationError(BandwidthHeroError):
    """Raised when the proxy is misconfigured.

    Example:
        ConfigurationError(
            "Transcoder workers must be positive",
            details={"workers": 0}
        )
    """

    pass


class InvalidTargetURL(BandwidthHeroError):
    """Raised when the ``url`` query parameter is not an absolute http(s) URL.

    Surfaced to the client as HTTP 400. Never retried.
    """

    pass


class FetchErrorKind(str, Enum):
    """Why an outbound fetch failed."""

    INVALID_URL = "invalid_url"
    NETWORK = "network"


class FetchError(BandwidthHeroError):
    """Raised when the origin could not be fetched.

    Example:
        FetchError(
            "Connection refused",
            kind=FetchErrorKind.NETWORK,
            details={"url": "https://example.com/a.png"}
        )
    """

    def __init__(
        self,
        message: str,
        kind: FetchErrorKind = FetchErrorKind.NETWORK,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.kind = kind


class OriginNetworkError(FetchError):
    """DNS failure, refused connection, timeout or TLS failure."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, kind=FetchErrorKind.NETWORK, details=details)


class OriginErrorStatus(BandwidthHeroError):
    """Origin answered 4xx/5xx or a redirect that could not be resolved.

    Raised by OriginResponse.raise_for_status(); the request pipeline answers
    it with a redirect to the original URL.
    """

    def __init__(self, status_code: int, details: dict[str, Any] | None = None):
        super().__init__(f"Origin returned status {status_code}", details)
        self.status_code = status_code


class TranscodeError(BandwidthHeroError):
    """Raised when the image could not be decoded or re-encoded.

    This includes:
    - Corrupt or truncated image data
    - Unsupported image subformats
    - Origin body errors while the image was being read
    """

    pass


class LoopDetected(BandwidthHeroError):
    """The proxy was asked to fetch through itself from loopback."""

    pass


class ClientDisconnected(BandwidthHeroError):
    """The client went away before the response was committed."""

    pass
