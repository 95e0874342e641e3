"""Bandwidth Hero Proxy Server.

Fetches images on behalf of a browser extension and re-encodes them as small
JPEGs; anything that is not worth compressing is streamed through untouched.

Usage:
    python -m bwhero.proxy.server --port 8080

    # Then point the Bandwidth Hero extension at:
    http://localhost:8080/
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse

from bwhero import __version__
from bwhero.config import PROXY_NAME, PolicyConfig, TranscoderConfig
from bwhero.exceptions import (
    BandwidthHeroError,
    ClientDisconnected,
    ConfigurationError,
    FetchError,
    FetchErrorKind,
    InvalidTargetURL,
    LoopDetected,
    OriginErrorStatus,
)
from bwhero.fetcher import OriginFetcher
from bwhero.image.transcoder import (
    StreamTranscoder,
    TranscoderRuntime,
    configure_transcoder,
    shutdown_transcoder,
)
from bwhero.loop_guard import ensure_not_loop
from bwhero.policy import classify, parse_request
from bwhero.proxy.projector import ProxyReply, ResponseProjector

logger = logging.getLogger("bwhero.proxy")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class ProxyConfig:
    """Proxy configuration."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # Origin fetching
    max_redirects: int = 4
    connect_timeout_seconds: float = 10
    request_timeout_seconds: float = 60
    max_connections: int = 500
    max_keepalive_connections: int = 100

    # Logging
    log_level: str = "INFO"

    policy: PolicyConfig = field(default_factory=PolicyConfig)
    transcoder: TranscoderConfig = field(default_factory=TranscoderConfig)

    def validate(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ConfigurationError("Port out of range", details={"port": self.port})
        if self.max_redirects < 0:
            raise ConfigurationError(
                "Max redirects must not be negative", details={"max_redirects": self.max_redirects}
            )
        self.policy.validate()
        self.transcoder.validate()


# =============================================================================
# Main Proxy
# =============================================================================


class BandwidthHeroProxy:
    """Per-request pipeline: parse, loop guard, fetch, classify, project."""

    def __init__(
        self,
        config: ProxyConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        config.validate()
        self.config = config

        self.fetcher = OriginFetcher(
            max_redirects=config.max_redirects,
            timeout=httpx.Timeout(
                connect=config.connect_timeout_seconds,
                read=config.request_timeout_seconds,
                write=config.request_timeout_seconds,
                pool=config.connect_timeout_seconds,
            ),
            limits=httpx.Limits(
                max_connections=config.max_connections,
                max_keepalive_connections=config.max_keepalive_connections,
            ),
            transport=transport,
        )

        self.runtime: TranscoderRuntime | None = None
        self.projector: ResponseProjector | None = None

    async def startup(self):
        """Initialize process-wide resources."""
        self.runtime = configure_transcoder(self.config.transcoder)
        self.projector = ResponseProjector(StreamTranscoder(runtime=self.runtime))
        await self.fetcher.startup()
        logger.info("Bandwidth Hero proxy started")

    async def shutdown(self):
        """Cleanup process-wide resources."""
        await self.fetcher.shutdown()
        shutdown_transcoder()
        self.runtime = None
        logger.info("Bandwidth Hero proxy stopped")

    async def handle(self, request: Request) -> Response:
        """Proxy a single request."""
        client_host = request.client.host if request.client else None

        try:
            req = parse_request(
                request.query_params, request.headers, client_host, self.config.policy
            )
        except InvalidTargetURL as e:
            logger.info(f"Rejected request: {e}")
            return PlainTextResponse("Invalid URL", status_code=400)

        if req is None:
            return PlainTextResponse(PROXY_NAME)

        reply = ProxyReply()

        try:
            ensure_not_loop(request.headers, client_host)
        except LoopDetected as e:
            logger.warning(f"{e}, redirecting to {req.url}")
            return self.projector.redirect(req, reply)

        try:
            origin = await self.fetcher.fetch(req.url, request.headers, req.forwarded_for)
        except FetchError as e:
            if e.kind is FetchErrorKind.INVALID_URL:
                logger.info(f"Rejected request: {e}")
                return PlainTextResponse("Invalid URL", status_code=400)
            logger.warning(f"Origin fetch failed, redirecting: {e}")
            return self.projector.redirect(req, reply)

        try:
            origin.raise_for_status()
        except OriginErrorStatus as e:
            logger.info(f"{e}, redirecting to {req.url}")
            await origin.aclose()
            return self.projector.redirect(req, reply)

        req = req.with_origin(origin.headers)
        decision = classify(req, origin.status_code, origin.headers, self.config.policy)
        logger.debug(
            f"{req.url}: status={origin.status_code} type={req.origin_type!r} "
            f"size={req.origin_size} -> {decision.action.value} ({decision.reason})"
        )

        try:
            response = await self.projector.project(
                decision, req, origin, reply, is_disconnected=request.is_disconnected
            )
        except ClientDisconnected:
            logger.debug(f"Client went away while fetching {req.url}")
            await origin.aclose()
            return Response(status_code=499)
        except BandwidthHeroError as e:
            logger.error(f"Proxy error for {req.url}: {e}")
            await origin.aclose()
            response = self.projector.redirect(req, reply)
        except Exception:
            logger.exception(f"Unexpected error proxying {req.url}")
            await origin.aclose()
            response = self.projector.redirect(req, reply)

        if response is None:
            # Something already committed this reply; nothing else may be sent
            return Response(status_code=500)
        return response


# =============================================================================
# FastAPI App
# =============================================================================


def create_app(
    config: ProxyConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create FastAPI application.

    transport replaces the network layer used for origin requests, e.g. an
    httpx.MockTransport in tests.
    """
    config = config or ProxyConfig()

    app = FastAPI(
        title="Bandwidth Hero Proxy",
        description="Image compression proxy for the Bandwidth Hero extension",
        version=__version__,
    )

    proxy = BandwidthHeroProxy(config, transport=transport)
    app.state.proxy = proxy

    @app.on_event("startup")
    async def startup():
        await proxy.startup()

    @app.on_event("shutdown")
    async def shutdown():
        await proxy.shutdown()

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "version": __version__,
            "config": {
                "max_redirects": config.max_redirects,
                "default_quality": config.policy.default_quality,
                "transcoder_workers": proxy.runtime.workers if proxy.runtime else None,
            },
        }

    @app.api_route("/", methods=["GET", "HEAD", "POST", "PUT", "DELETE"])
    async def bandwidth_hero(request: Request):
        return await proxy.handle(request)

    return app


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def run_server(config: ProxyConfig | None = None):
    """Run the proxy server."""
    config = config or ProxyConfig()
    configure_logging(config.log_level)
    app = create_app(config)

    logger.info(f"Listening on {config.host}:{config.port}")
    uvicorn.run(app, host=config.host, port=config.port, log_level="warning")


if __name__ == "__main__":
    # Same options and environment variables as `bwhero proxy`
    from bwhero.cli.proxy import proxy

    proxy(prog_name="python -m bwhero.proxy.server")
