"""Proxy server CLI commands."""

import click

from .main import main


@main.command()
@click.option(
    "--host", default="0.0.0.0", envvar="BWHERO_HOST", help="Host to bind to (default: 0.0.0.0)"
)
@click.option(
    "--port", "-p", default=8080, type=int, envvar="PORT", help="Port to bind to (default: 8080)"
)
@click.option(
    "--quality",
    "-q",
    default=40,
    type=click.IntRange(1, 100),
    envvar="BWHERO_QUALITY",
    help="JPEG quality when the client sends none (default: 40)",
)
@click.option(
    "--workers",
    default=None,
    type=click.IntRange(min=1),
    envvar="BWHERO_WORKERS",
    help="Transcoder worker threads (default: one per CPU)",
)
@click.option(
    "--max-pixels",
    default=50_000_000,
    type=click.IntRange(min=1),
    envvar="BWHERO_MAX_PIXELS",
    help="Largest image, in pixels, that is decoded; bigger ones are redirected",
)
@click.option(
    "--max-redirects",
    default=4,
    type=click.IntRange(min=0),
    envvar="BWHERO_MAX_REDIRECTS",
    help="Origin redirects to follow (default: 4)",
)
@click.option(
    "--connect-timeout",
    default=10.0,
    type=float,
    envvar="BWHERO_CONNECT_TIMEOUT",
    help="Origin connect timeout in seconds (default: 10)",
)
@click.option(
    "--read-timeout",
    default=60.0,
    type=float,
    envvar="BWHERO_READ_TIMEOUT",
    help="Origin read timeout in seconds (default: 60)",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    envvar="BWHERO_LOG_LEVEL",
    help="Log level (default: INFO)",
)
def proxy(
    host: str,
    port: int,
    quality: int,
    workers: int | None,
    max_pixels: int,
    max_redirects: int,
    connect_timeout: float,
    read_timeout: float,
    log_level: str,
) -> None:
    """Start the image compression proxy.

    \b
    Examples:
        bwhero proxy                    Start proxy on port 8080
        bwhero proxy --port 9000        Start proxy on port 9000
        PORT=9000 bwhero proxy          Same, from the environment

    \b
    Point the Bandwidth Hero extension at:
        http://<host>:<port>/
    """
    # Import here to avoid slow startup
    from bwhero.config import PolicyConfig, TranscoderConfig
    from bwhero.exceptions import ConfigurationError
    from bwhero.proxy.server import ProxyConfig, run_server

    config = ProxyConfig(
        host=host,
        port=port,
        max_redirects=max_redirects,
        connect_timeout_seconds=connect_timeout,
        request_timeout_seconds=read_timeout,
        log_level=log_level.upper(),
        policy=PolicyConfig(default_quality=quality),
        transcoder=TranscoderConfig(workers=workers, max_pixels=max_pixels),
    )

    try:
        config.validate()
    except ConfigurationError as e:
        raise click.BadParameter(str(e)) from None

    click.echo(f"""
Bandwidth Hero proxy

  URL:             http://{config.host}:{config.port}/
  Default quality: {config.policy.default_quality}
  Workers:         {config.transcoder.workers or "one per CPU"}
  Max redirects:   {config.max_redirects}
  Max pixels:      {config.transcoder.max_pixels:,}

Press Ctrl+C to stop.
""")

    try:
        run_server(config)
    except KeyboardInterrupt:
        click.echo("\nShutting down...")
