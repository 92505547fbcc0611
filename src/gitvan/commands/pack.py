# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Pack command for GitVan.

Install packs from the local registry (packs_dirs), apply a pack
directory, roll back, list and verify installed packs.
"""

from pathlib import Path
from typing import List, Optional

import typer

from gitvan.commands.common import build_hooks, echo_json, fail, get_config, parse_kv_args
from gitvan.errors import GitVanError
from gitvan.packs.engine import PackEngine, PackResult

app = typer.Typer(help="Apply, roll back and verify packs", no_args_is_help=True)


def _engine(ctx: typer.Context) -> PackEngine:
    config = get_config(ctx)
    return PackEngine(config.root_dir, config, hooks=build_hooks(config))


def _report(result: PackResult) -> None:
    for dep in result.dependencies:
        typer.echo(f"  {dep.pack_id}@{dep.version}: {dep.status}")
    typer.echo(f"{result.pack_id}@{result.version}: {result.status}")
    if result.status == "installed":
        for artifact in result.artifacts:
            typer.echo(f"  {artifact.action:<9} {artifact.path}")


def _split_spec(spec: str):
    """`id@constraint` -> (id, constraint). Scoped ids keep their leading @."""
    at = spec.rfind("@")
    if at > 0:
        return spec[:at], spec[at + 1:] or "*"
    return spec, "*"


@app.command("install")
def install_command(
    ctx: typer.Context,
    spec: str = typer.Argument(..., help="Pack id, optionally id@constraint (e.g. docs@^1.2)"),
    inputs: Optional[List[str]] = typer.Argument(None, help="key=value inputs for templates"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """Resolve a pack from the registry and apply it with its dependencies.

    Examples:
        gitvan pack install node-basics
        gitvan pack install node-basics@^1.2 license=MIT
    """
    pack_id, constraint = _split_spec(spec)
    engine = _engine(ctx)
    try:
        result = engine.install(pack_id, constraint, inputs=parse_kv_args(inputs))
    except GitVanError as e:
        fail(e)
    if as_json:
        echo_json(result.to_dict())
    else:
        _report(result)


@app.command("apply")
def apply_command(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Pack directory"),
    inputs: Optional[List[str]] = typer.Argument(None, help="key=value inputs for templates"),
    force: bool = typer.Option(False, "--force", help="Re-apply even if already applied"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """Apply the pack in a directory.

    Applying the same pack twice is a no-op the second time.
    """
    engine = _engine(ctx)
    try:
        result = engine.apply(path, inputs=parse_kv_args(inputs), force=force)
    except GitVanError as e:
        fail(e)
    if as_json:
        echo_json(result.to_dict())
    else:
        _report(result)


@app.command("rollback")
def rollback_command(
    ctx: typer.Context,
    pack_id: str = typer.Argument(..., help="Installed pack id"),
):
    """Undo an installed pack: delete files it created, restore files it changed."""
    engine = _engine(ctx)
    try:
        report = engine.rollback(pack_id)
    except GitVanError as e:
        fail(e)

    for step in report.steps:
        mark = "ok" if step.ok else f"FAILED: {step.error}"
        typer.echo(f"  {step.action:<8} {step.path} {mark}")
    if not report.ok:
        typer.echo(f"Rollback of {pack_id} incomplete ({len(report.errors)} error(s))", err=True)
        raise typer.Exit(2)
    typer.echo(f"Rolled back {pack_id}@{report.version}")


@app.command("list")
def list_command(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """List installed packs and available updates."""
    engine = _engine(ctx)
    try:
        rows = engine.list()
    except GitVanError as e:
        fail(e)
    if as_json:
        echo_json(rows)
        return
    if not rows:
        typer.echo("No packs installed.")
        return
    for row in rows:
        update = f" (update available: {row['latest']})" if row["updateAvailable"] else ""
        typer.echo(f"  {row['packId']}@{row['version']}{update}")


@app.command("verify")
def verify_command(
    ctx: typer.Context,
    pack_id: str = typer.Argument(..., help="Installed pack id"),
):
    """Check that files written by a pack still have their recorded content."""
    engine = _engine(ctx)
    try:
        report = engine.verify(pack_id)
    except GitVanError as e:
        fail(e)

    for path in report.missing:
        typer.echo(f"  missing   {path}")
    for path in report.modified:
        typer.echo(f"  modified  {path}")
    if not report.ok:
        raise typer.Exit(1)
    typer.echo(f"{pack_id}@{report.version}: {len(report.intact)} file(s) intact")
