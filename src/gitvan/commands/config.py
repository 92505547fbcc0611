# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Config command for GitVan.

Provides basic configuration validation.
"""

import typer

from gitvan.commands.common import echo_json, get_config

app = typer.Typer(help="Manage and validate configuration", no_args_is_help=True)


@app.command()
def validate(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print the resolved configuration as JSON"),
):
    """
    Validate configuration.

    Loads defaults, the YAML file and environment overrides, and prints
    the resolved values.
    """
    config = get_config(ctx)
    if as_json:
        echo_json(config.to_dict())
        return

    typer.echo("Configuration is valid")
    typer.echo()
    for key, value in sorted(config.to_dict().items()):
        typer.echo(f"  {key}: {value}")
