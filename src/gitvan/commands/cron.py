# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Cron command for GitVan.

All times are UTC.
"""

from typing import Optional

import typer

from gitvan.commands.common import build_hooks, echo_json, fail, get_config, open_registry, open_runner
from gitvan.cron import CronScheduler, minute_key, next_fire, parse_minute, utc_now
from gitvan.errors import EXIT_OK, AlreadyRunning, GitVanError
from gitvan.schemas.job_def import KIND_CRON
from gitvan.schemas.receipt import Trigger

app = typer.Typer(help="Inspect and fire cron jobs (UTC)", no_args_is_help=True)


@app.command("list")
def list_command(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """List cron jobs with their next fire time."""
    config = get_config(ctx)
    registry = open_registry(config, build_hooks(config))
    now = utc_now()
    rows = [
        {"id": job.id, "cron": job.cron, "next": minute_key(next_fire(job.cron, now))}
        for job in registry.cron_jobs()
    ]
    if as_json:
        echo_json(rows)
        return
    if not rows:
        typer.echo("No cron jobs.")
        return
    for row in rows:
        typer.echo(f"  {row['id']:<30} {row['cron']:<15} next {row['next']}")


@app.command("tick")
def tick_command(
    ctx: typer.Context,
    at: Optional[str] = typer.Option(None, "--at", help="UTC minute to evaluate (default: now)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show due jobs without running them"),
):
    """Run every cron job due at one minute.

    A minute that already has a receipt is skipped, so ticking the same
    minute twice runs nothing the second time.

    Examples:
        gitvan cron tick
        gitvan cron tick --at 2025-01-01T02:00Z
    """
    config = get_config(ctx)
    hooks = build_hooks(config)
    registry = open_registry(config, hooks)
    try:
        minute = parse_minute(at) if at else utc_now()
    except GitVanError as e:
        fail(e)

    ticks = CronScheduler(registry.cron_jobs).between(minute, minute)
    if not ticks:
        typer.echo(f"No cron jobs due at {minute_key(minute)}")
        return
    if dry_run:
        for tick in ticks:
            typer.echo(f"  would run {tick.job.id} for {tick.minute_utc}")
        return

    runner = open_runner(config, hooks)
    exit_code = EXIT_OK
    for tick in ticks:
        hooks.emit("cron:tick", {"job_id": tick.job.id, "minute": tick.minute_utc})
        trigger = Trigger(kind=KIND_CRON, minute_utc=tick.minute_utc)
        try:
            result = runner.run(tick.job, trigger, meta={"scheduledMinute": tick.minute_utc}, raise_on_error=True)
        except AlreadyRunning as e:
            typer.echo(f"  {tick.job.id}: busy ({e})", err=True)
            exit_code = max(exit_code, e.exit_code)
            continue
        except GitVanError as e:
            typer.echo(f"  {tick.job.id}: error: {e}", err=True)
            exit_code = max(exit_code, e.exit_code)
            continue
        if result.skipped:
            typer.echo(f"  {tick.job.id}: skipped (already ran for {tick.minute_utc})")
        elif result.success:
            typer.echo(f"  {tick.job.id}: success ({result.duration}ms)")
        else:
            typer.echo(f"  {tick.job.id}: error: {result.error}", err=True)
            exit_code = max(exit_code, 1)
    if exit_code != EXIT_OK:
        raise typer.Exit(exit_code)
