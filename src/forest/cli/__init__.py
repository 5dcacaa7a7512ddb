"""Command line entry points for forest-server utilities."""

import logging

import typer
from typer import Typer

from .clock import clock_app


cli = Typer(help="forest-server command line tools")
cli.add_typer(clock_app, name="clock")


@cli.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """forest-server command line tools."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = ["cli", "clock_app"]
