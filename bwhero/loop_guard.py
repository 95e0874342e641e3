"""Self-loop detection.

A request that carries our own Via marker and comes from loopback is the proxy
fetching itself; following it would hang the worker. Chained proxies on other
hosts are deliberately let through.
"""

from __future__ import annotations

from collections.abc import Mapping

from .config import VIA_MARKER
from .exceptions import LoopDetected

LOOPBACK_ADDRESSES = frozenset({"127.0.0.1", "::1"})


def caller_address(headers: Mapping[str, str], client_host: str | None) -> str:
    """Apparent caller: x-forwarded-for when present, else the peer address."""
    return (headers.get("x-forwarded-for") or client_host or "").strip()


def is_loop(headers: Mapping[str, str], client_host: str | None) -> bool:
    if headers.get("via") != VIA_MARKER:
        return False
    return caller_address(headers, client_host) in LOOPBACK_ADDRESSES


def ensure_not_loop(headers: Mapping[str, str], client_host: str | None) -> None:
    """Raise LoopDetected if the request is the proxy calling itself."""
    if is_loop(headers, client_host):
        raise LoopDetected(
            "Proxy loop detected",
            details={"via": headers.get("via"), "caller": caller_address(headers, client_host)},
        )
