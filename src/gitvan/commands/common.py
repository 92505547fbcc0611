# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Helpers shared by the CLI command groups."""

import json
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

import typer

from gitvan.config import GitVanConfig, load_config
from gitvan.errors import GitOperationError, GitVanError
from gitvan.event_client import EventClient
from gitvan.git import GitAdapter
from gitvan.hooks import HookBus
from gitvan.jobs.registry import JobRegistry
from gitvan.jobs.runner import JobRunner
from gitvan.locks import LockManager
from gitvan.receipts import ReceiptStore


def fail(error: GitVanError) -> NoReturn:
    """Print an error and exit with its mapped code."""
    typer.echo(f"Error: {error}", err=True)
    raise typer.Exit(error.exit_code)


def get_config(ctx: typer.Context) -> GitVanConfig:
    """Load (once per invocation) the config selected by the global options."""
    obj = ctx.ensure_object(dict)
    if "config" not in obj:
        root = obj.get("root")
        try:
            obj["config"] = load_config(
                root=Path(root) if root else None,
                config_path=obj.get("config_path"),
            )
        except GitVanError as e:
            fail(e)
    return obj["config"]


def build_hooks(config: GitVanConfig) -> HookBus:
    client = None
    if config.event_log:
        client = EventClient(config.resolve(config.event_log))
    return HookBus(event_client=client)


def open_registry(config: GitVanConfig, hooks: HookBus) -> JobRegistry:
    registry = JobRegistry.from_config(config, hooks=hooks)
    report = registry.scan()
    for path, reason in report.rejected:
        typer.echo(f"Warning: rejected {path}: {reason}", err=True)
    return registry


def open_runner(config: GitVanConfig, hooks: HookBus) -> JobRunner:
    """Runner for the worktree at the config root."""
    git = GitAdapter(config.root_dir, timeout=config.git_timeout)
    if not git.is_repository():
        fail(GitOperationError("rev-parse", None, f"{config.root_dir} is not a git worktree"))
    locks = LockManager(config.locks_dir)
    receipts = ReceiptStore(git, locks, notes_ref=config.notes_ref, hooks=hooks)
    return JobRunner(git, receipts, locks, hooks=hooks, config=config, worktree=config.root_dir)


def parse_kv_args(args: Optional[List[str]]) -> Dict[str, Any]:
    """Parse key=value arguments into a dict.

    Supports:
    - Booleans: true, false
    - Nulls: null, none
    - Numbers: integers and floats
    - JSON: values starting with { or [ are parsed as JSON
    - Strings: everything else
    """
    result: Dict[str, Any] = {}
    for arg in args or []:
        if "=" not in arg:
            raise typer.BadParameter(f"expected key=value, got '{arg}'")
        key, value = arg.split("=", 1)
        lowered = value.lower()
        if lowered in ("true", "false"):
            result[key] = lowered == "true"
        elif lowered in ("null", "none"):
            result[key] = None
        elif value.startswith(("{", "[")):
            try:
                result[key] = json.loads(value)
            except json.JSONDecodeError:
                result[key] = value
        else:
            try:
                result[key] = int(value)
            except ValueError:
                try:
                    result[key] = float(value)
                except ValueError:
                    result[key] = value
    return result


def echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, sort_keys=True, default=str))
