# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Event command for GitVan.

`simulate` builds EventMetadata from options (or from a real commit) and
reports which jobs would fire. Nothing is run and nothing is recorded.
"""

import json
from typing import Any, Dict, List, Optional

import typer

from gitvan.commands.common import build_hooks, echo_json, fail, get_config, open_registry
from gitvan.errors import GitVanError, ValidationError
from gitvan.events import metadata as event_metadata
from gitvan.events.predicate import evaluate, explain, predicate_to_dict
from gitvan.git import GitAdapter

app = typer.Typer(help="Inspect event bindings and simulate git events", no_args_is_help=True)


@app.command("list")
def list_command(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """List every predicate -> job binding."""
    config = get_config(ctx)
    registry = open_registry(config, build_hooks(config))
    rows = []
    for event in registry.events():
        rows.append({
            "id": event.id,
            "on": predicate_to_dict(event.on),
            "job": event.job or event.id,
            "priority": event.priority,
            "source": str(event.source) if event.source else None,
        })
    for job in registry.event_jobs():
        rows.append({
            "id": job.id,
            "on": predicate_to_dict(job.on),
            "job": job.id,
            "priority": job.meta.priority,
            "source": str(job.source) if job.source else None,
        })

    if as_json:
        echo_json(rows)
        return
    if not rows:
        typer.echo("No event bindings.")
        return
    for row in rows:
        target = "" if row["job"] == row["id"] else f" -> {row['job']}"
        typer.echo(f"  {row['id']}{target}")
        typer.echo(f"    on: {json.dumps(row['on'], sort_keys=True)}")


def _metadata_from_options(
    branch: Optional[str],
    files: List[str],
    tags: List[str],
    message: Optional[str],
    merged_to: Optional[str],
    merged_from: Optional[str],
    branch_created: Optional[str],
    author_email: Optional[str],
    signed: bool,
    raw: Optional[str],
) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if raw:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError("metadata", raw, f"invalid JSON: {e}")
        if not isinstance(data, dict):
            raise ValidationError("metadata", raw, "must be a JSON object")
    options = {
        "branch": branch,
        "filesChanged": files or None,
        "tagsCreated": tags or None,
        "message": message,
        "mergedTo": merged_to,
        "mergedFrom": merged_from,
        "branchCreated": branch_created,
        "authorEmail": author_email,
        "signed": signed or None,
    }
    data.update({k: v for k, v in options.items() if v is not None})
    return data


@app.command("simulate")
def simulate_command(
    ctx: typer.Context,
    commit: Optional[str] = typer.Option(None, "--commit", help="Build metadata from this commit"),
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Branch the event happened on"),
    files: List[str] = typer.Option([], "--file", "-f", help="Changed path (repeatable)"),
    tags: List[str] = typer.Option([], "--tag", help="Created tag (repeatable)"),
    message: Optional[str] = typer.Option(None, "--message", "-m", help="Commit message"),
    merged_to: Optional[str] = typer.Option(None, "--merged-to", help="Merge target branch"),
    merged_from: Optional[str] = typer.Option(None, "--merged-from", help="Merge source branch"),
    branch_created: Optional[str] = typer.Option(None, "--branch-created", help="Newly created branch"),
    author_email: Optional[str] = typer.Option(None, "--author-email", help="Author email"),
    signed: bool = typer.Option(False, "--signed", help="Commit is signed"),
    raw: Optional[str] = typer.Option(None, "--metadata", help="Metadata as a JSON object"),
    show_explain: bool = typer.Option(False, "--explain", help="Show per-matcher results"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """Report which jobs would fire for an event.

    Examples:
        gitvan event simulate --file src/app.js
        gitvan event simulate --tag v1.2.3
        gitvan event simulate --commit HEAD --branch main
        gitvan event simulate --message "feat(api): add endpoint" --explain
    """
    config = get_config(ctx)
    registry = open_registry(config, build_hooks(config))

    try:
        if commit:
            git = GitAdapter(config.root_dir, timeout=config.git_timeout)
            meta = event_metadata.from_commit(git, commit, branch=branch or git.current_branch())
            if tags:
                meta.tags_created = list(tags)
        else:
            meta = event_metadata.from_dict(_metadata_from_options(
                branch, files, tags, message, merged_to, merged_from,
                branch_created, author_email, signed, raw,
            ))
    except GitVanError as e:
        fail(e)

    matches = []
    for predicate, job in registry.bindings():
        matched = evaluate(predicate, meta)
        entry: Dict[str, Any] = {"job": job.id, "matched": matched}
        if show_explain:
            entry["explain"] = explain(predicate, meta)
        if matched or show_explain:
            matches.append(entry)

    if as_json:
        echo_json({"metadata": meta.to_dict(), "results": matches})
        return

    fired = [m["job"] for m in matches if m["matched"]]
    if fired:
        typer.echo("Would run:")
        for job_id in fired:
            typer.echo(f"  {job_id}")
    else:
        typer.echo("No jobs match.")
    if show_explain:
        typer.echo()
        for entry in matches:
            typer.echo(f"  {entry['job']}: {json.dumps(entry['explain'], sort_keys=True)}")
