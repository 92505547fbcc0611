# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Daemon command for GitVan.

`start` runs the daemon in the foreground of this process and records its
pid and status in <root>/.gitvan/state/daemon.json; `stop`, `status` and
`restart` talk to that process through the pid file and SIGTERM.
"""

import os
import signal
import threading
import time

import typer

from gitvan.commands.common import build_hooks, echo_json, fail, get_config
from gitvan.config import GitVanConfig
from gitvan.daemon.daemon import Daemon, clear_pidfile, read_pidfile, write_pidfile
from gitvan.errors import EXIT_LOCKED, GitVanError
from gitvan.locks import pid_alive

app = typer.Typer(help="Run and control the GitVan daemon", no_args_is_help=True)


def _running_pid(config: GitVanConfig):
    """Pid of a live daemon for this root, clearing a stale pid file."""
    info = read_pidfile(config)
    if not info:
        return None
    pid = info.get("pid")
    if isinstance(pid, int) and pid != os.getpid() and pid_alive(pid):
        return pid
    clear_pidfile(config)
    return None


def _serve(config: GitVanConfig, once: bool) -> None:
    daemon = Daemon(config, hooks=build_hooks(config))

    if once:
        try:
            daemon.start(background=False)
        except GitVanError as e:
            fail(e)
        daemon.poll_once()
        status = daemon.status()
        daemon.stop()
        for worktree, stats in status["worktrees"].items():
            typer.echo(
                f"{worktree}: {stats['matched']} matched, {stats['succeeded']} succeeded, "
                f"{stats['failed']} failed, {stats['skipped']} skipped"
            )
        return

    stop_requested = threading.Event()

    def handle_signal(signum, frame):
        stop_requested.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    try:
        daemon.start(background=True)
    except GitVanError as e:
        fail(e)

    typer.echo(f"GitVan daemon running (pid {os.getpid()}); Ctrl-C to stop")
    try:
        while not stop_requested.is_set():
            write_pidfile(config, daemon.status())
            stop_requested.wait(config.poll_interval)
    finally:
        typer.echo("Draining...")
        daemon.stop()
        clear_pidfile(config)
    typer.echo("GitVan daemon stopped")


def _stop(config: GitVanConfig) -> bool:
    pid = _running_pid(config)
    if pid is None:
        return False
    os.kill(pid, signal.SIGTERM)
    deadline = time.monotonic() + config.drain_deadline + config.timeout_grace + config.poll_interval
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.2)
    typer.echo(f"Daemon (pid {pid}) did not exit within the drain deadline", err=True)
    raise typer.Exit(2)


@app.command("start")
def start_command(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Poll every worktree once, then exit"),
):
    """Start the daemon in the foreground.

    Examples:
        gitvan daemon start
        gitvan daemon start --once
    """
    config = get_config(ctx)
    pid = _running_pid(config)
    if pid is not None:
        typer.echo(f"Error: daemon already running (pid {pid})", err=True)
        raise typer.Exit(EXIT_LOCKED)
    _serve(config, once)


@app.command("stop")
def stop_command(ctx: typer.Context):
    """Ask a running daemon to drain and exit."""
    config = get_config(ctx)
    if _stop(config):
        typer.echo("Daemon stopped")
    else:
        typer.echo("Daemon is not running")


@app.command("restart")
def restart_command(ctx: typer.Context):
    """Stop a running daemon, then start one in the foreground."""
    config = get_config(ctx)
    if _stop(config):
        typer.echo("Daemon stopped")
    _serve(config, once=False)


@app.command("status")
def status_command(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """Show whether a daemon is running and its per-worktree counters."""
    config = get_config(ctx)
    pid = _running_pid(config)
    info = read_pidfile(config) if pid is not None else None

    if as_json:
        echo_json(info or {"state": "stopped"})
        return
    if info is None:
        typer.echo("Daemon is not running")
        return

    typer.echo(f"Daemon {info.get('state')} (pid {pid}, since {info.get('startedAt')})")
    for worktree, stats in (info.get("worktrees") or {}).items():
        role = "primary" if stats.get("primary") else "secondary"
        typer.echo(f"  {worktree} [{role}]")
        typer.echo(
            f"    polls={stats.get('polls')} matched={stats.get('matched')} "
            f"succeeded={stats.get('succeeded')} failed={stats.get('failed')} "
            f"skipped={stats.get('skipped')} busy={stats.get('busy')}"
        )
        if stats.get("last_error"):
            typer.echo(f"    last error: {stats['last_error']}")
