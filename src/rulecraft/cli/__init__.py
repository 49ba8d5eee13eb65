"""Command line entry points for Rulecraft."""

from typer import Typer

from ..configuration.cli import config_app
from ..integrations.github.cli import app as github_app


cli = Typer(help="Rulecraft command line tools")
cli.add_typer(config_app, name="config")
cli.add_typer(github_app, name="github")

__all__ = ["cli", "config_app", "github_app"]
