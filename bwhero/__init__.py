"""
bwhero - a bandwidth-saving image compression proxy.

Serves the Bandwidth Hero browser extension: images are fetched from their
origin, re-encoded as small (optionally grayscale) JPEGs and streamed back;
anything not worth compressing passes through untouched.

Quick Start:

    bwhero proxy --port 8080

Programmatic use:

    from bwhero.proxy.server import ProxyConfig, create_app

    app = create_app(ProxyConfig(port=8080))

Error Handling:

    from bwhero import BandwidthHeroError, FetchError

    try:
        origin = await fetcher.fetch(url, headers, forwarded_for)
    except FetchError as e:
        print(f"Origin unreachable: {e.kind.value}")
    except BandwidthHeroError as e:
        print(f"Proxy error: {e}")
"""

__version__ = "1.0.0"

from .config import (  # noqa: E402
    PROXY_NAME,
    USER_AGENT,
    VIA_MARKER,
    PolicyConfig,
    TranscoderConfig,
)
from .exceptions import (  # noqa: E402
    BandwidthHeroError,
    ClientDisconnected,
    ConfigurationError,
    FetchError,
    FetchErrorKind,
    InvalidTargetURL,
    LoopDetected,
    OriginErrorStatus,
    OriginNetworkError,
    TranscodeError,
)
from .loop_guard import ensure_not_loop, is_loop  # noqa: E402
from .policy import (  # noqa: E402
    CompressionDecision,
    Decision,
    ProxyRequest,
    TranscodeParams,
    classify,
    parse_request,
)

__all__ = [
    "__version__",
    # Identity
    "PROXY_NAME",
    "USER_AGENT",
    "VIA_MARKER",
    # Config
    "PolicyConfig",
    "TranscoderConfig",
    # Exceptions
    "BandwidthHeroError",
    "ClientDisconnected",
    "ConfigurationError",
    "FetchError",
    "FetchErrorKind",
    "InvalidTargetURL",
    "LoopDetected",
    "OriginErrorStatus",
    "OriginNetworkError",
    "TranscodeError",
    # Policy
    "CompressionDecision",
    "Decision",
    "ProxyRequest",
    "TranscodeParams",
    "classify",
    "parse_request",
    # Loop guard
    "ensure_not_loop",
    "is_loop",
]
