"""Entry point for the ``bwhero`` command."""

import click

from bwhero import __version__


@click.group()
@click.version_option(version=__version__, prog_name="bwhero")
def main() -> None:
    """bwhero - Bandwidth Hero image compression proxy.

    \b
    Examples:
        bwhero proxy                Start the proxy on port 8080
        bwhero proxy --port 9000    Start the proxy on port 9000
        python -m bwhero proxy      Same, without the console script
    """


# Subcommands attach themselves to the group on import
from . import proxy  # noqa: E402, F401
