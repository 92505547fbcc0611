# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Main CLI entry point for GitVan.

Thin host over the core: each command group loads config, builds the
component it needs and maps GitVanError to exit codes
(0 ok, 1 user/validation/dependency, 2 operational, 3 lock held).
"""

import logging
from typing import Optional

import typer

from gitvan import __version__
from gitvan.commands import config, cron, daemon, event, job, pack

app = typer.Typer(
    name="gitvan",
    help="Git-native job automation",
    no_args_is_help=True,
)


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
    root: Optional[str] = typer.Option(None, "--root", help="Repository root (default $GITVAN_ROOT_DIR or cwd)"),
):
    """GitVan: discover, schedule, run and audit jobs against a git worktree."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["root"] = root
    ctx.obj["verbose"] = verbose


@app.command()
def version():
    """Show version information."""
    typer.echo(f"gitvan version {__version__}")


app.add_typer(daemon.app, name="daemon")
app.add_typer(cron.app, name="cron")
app.add_typer(event.app, name="event")
app.add_typer(job.app, name="job")
app.add_typer(pack.app, name="pack")
app.add_typer(config.app, name="config")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
