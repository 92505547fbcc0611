# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Job command for GitVan.

List discovered jobs, run one on demand, and read its receipts.
"""

from typing import List, Optional

import typer

from gitvan.commands.common import (
    build_hooks,
    echo_json,
    fail,
    get_config,
    open_registry,
    open_runner,
    parse_kv_args,
)
from gitvan.errors import GitVanError, ValidationError
from gitvan.events.predicate import predicate_to_dict

app = typer.Typer(help="List, run and audit jobs", no_args_is_help=True)


@app.command("list")
def list_command(
    ctx: typer.Context,
    tag: Optional[str] = typer.Option(None, "--tag", "-t", help="Only jobs carrying this tag"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """List jobs discovered under the jobs directories.

    Examples:
        gitvan job list
        gitvan job list --tag release
    """
    config = get_config(ctx)
    registry = open_registry(config, build_hooks(config))
    jobs = registry.by_tag(tag) if tag else registry.jobs()

    if as_json:
        echo_json([
            {
                "id": job.id,
                "kind": job.kind,
                "cron": job.cron,
                "on": predicate_to_dict(job.on) if job.on else None,
                "version": job.version,
                "desc": job.meta.desc,
                "tags": job.meta.tags,
                "source": str(job.source) if job.source else None,
            }
            for job in jobs
        ])
        return

    if not jobs:
        typer.echo("No jobs found.")
        return
    for job in jobs:
        trigger = f" [{job.cron}]" if job.cron else ""
        typer.echo(f"  {job.id} ({job.kind}){trigger}")
        if job.meta.desc:
            typer.echo(f"    {job.meta.desc}")


@app.command("run")
def run_command(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job ID to run"),
    args: Optional[List[str]] = typer.Argument(None, help="key=value payload arguments"),
    force: bool = typer.Option(False, "--force", help="Run even if a receipt exists for this payload"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Run a job by ID with payload arguments.

    The run is recorded as a receipt keyed on the payload; running again
    with the same payload is skipped unless --force is given.

    Examples:
        gitvan job run docs.build
        gitvan job run release.notes version=1.2.3
    """
    payload = parse_kv_args(args)
    config = get_config(ctx)
    hooks = build_hooks(config)
    registry = open_registry(config, hooks)

    job = registry.get(job_id)
    if job is None:
        fail(ValidationError("job", job_id, "no such job"))

    runner = open_runner(config, hooks)
    try:
        result = runner.run(job, payload=payload, force=force, raise_on_error=True)
    except GitVanError as e:
        fail(e)

    if as_json:
        echo_json({
            "jobId": job.id,
            "status": result.status,
            "fingerprint": result.fingerprint,
            "runId": result.run_id,
            "duration": result.duration,
            "attempts": result.attempts,
            "artifacts": result.artifacts,
            "output": result.output,
            "error": result.error,
        })
    elif result.skipped:
        typer.echo(f"Skipped {job.id}: already ran for this payload (use --force to rerun)")
    elif result.success:
        typer.echo(f"Ran {job.id} in {result.duration}ms")
        for artifact in result.artifacts:
            typer.echo(f"  artifact: {artifact}")
    if not result.success:
        typer.echo(f"Job {job.id} failed: {result.error}", err=True)
        raise typer.Exit(1)


@app.command("receipts")
def receipts_command(
    ctx: typer.Context,
    job_id: Optional[str] = typer.Argument(None, help="Only receipts of this job"),
    status: Optional[str] = typer.Option(None, "--status", help="success or error"),
    since: Optional[str] = typer.Option(None, "--since", help="ISO timestamp lower bound"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum receipts to show"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """Show recorded receipts, newest first."""
    config = get_config(ctx)
    runner = open_runner(config, build_hooks(config))
    try:
        receipts = runner.receipts.list(job_id=job_id, status=status, since=since, limit=limit)
    except GitVanError as e:
        fail(e)

    if as_json:
        echo_json([dict(r.to_dict(), commit=r.commit) for r in receipts])
        return
    if not receipts:
        typer.echo("No receipts.")
        return
    for receipt in receipts:
        commit = (receipt.commit or "")[:8]
        line = f"  {receipt.timestamp}  {receipt.status:<7} {receipt.job_id}  {commit}  {receipt.fingerprint[:12]}"
        if receipt.error:
            line += f"  ({receipt.error})"
        typer.echo(line)
