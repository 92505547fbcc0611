# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""End-to-end tests for the daemon poll cycle against a real repository."""

import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from gitvan.config import GitVanConfig
from gitvan.daemon import Daemon
from gitvan.daemon.daemon import InvalidTransition, clear_pidfile, read_pidfile, write_pidfile
from gitvan.errors import GitOperationError
from gitvan.hooks import HookBus, HookRecorder

BUILD_JOB = '''
on = {"pathChanged": ["src/**/*.js"]}


def run(ctx, payload, meta):
    log = ctx.worktree / "dist" / "builds.log"
    log.parent.mkdir(parents=True, exist_ok=True)
    with open(log, "a") as f:
        f.write(meta["commit"] + "\\n")
    return {"ok": True, "artifacts": ["dist/builds.log"]}
'''

RELEASE_JOB = '''
import json

on = {"any": [{"tagCreate": "v.*"}, {"semverTag": True}]}


def run(ctx, payload, meta):
    stamp = ctx.start_time.replace(":", "").replace("-", "")
    target = ctx.worktree / "dist" / "notifications" / f"{stamp}-release.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps({"tag": meta["tagsCreated"][0], "commit": meta["commit"]}))
    return {"ok": True, "artifacts": [str(target.relative_to(ctx.worktree))]}
'''

NIGHTLY_JOB = '''
cron = "0 2 * * *"


def run(ctx, payload, meta):
    return {"ok": True}
'''


BLOCKING_JOB = '''
on = {"pathChanged": ["src/**"]}


def run(ctx, payload, meta):
    marker = ctx.worktree / "dist" / "started"
    marker.parent.mkdir(parents=True, exist_ok=True)
    marker.write_text(ctx.id)
    ctx.cancel_event.wait(30)
    ctx.check_cancelled()
'''


def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition() and time.monotonic() < deadline:
        time.sleep(0.05)
    return condition()


class FakeClock:
    def __init__(self, start):
        self.now = start
        self.mono = 1000.0

    def __call__(self):
        return self.now

    def monotonic(self):
        return self.mono

    def advance_to(self, when):
        self.mono += (when - self.now).total_seconds()
        self.now = when


@pytest.fixture
def workspace(repo):
    """Repo with generated output and bytecode kept out of commits."""
    with open(repo.path / ".git" / "info" / "exclude", "a") as f:
        f.write("dist/\n__pycache__/\n")
    return repo


def make_daemon(repo, clock=None, **config):
    hooks = HookBus()
    recorder = HookRecorder()
    hooks.subscribe("*", recorder)
    kwargs = {"clock": clock} if clock else {}
    daemon = Daemon(repo.config(**config), hooks=hooks, **kwargs)
    daemon.recorder = recorder
    daemon.start(background=False)
    if clock:
        for supervisor in daemon.supervisors:
            supervisor.scheduler.monotonic = clock.monotonic
    return daemon


class TestEventJobs:
    def test_path_changed_job_runs_once(self, workspace):
        """A matching commit runs the job once, across polls and restarts."""
        workspace.commit("chore: add build job", {"jobs/build.py": BUILD_JOB})
        daemon = make_daemon(workspace)
        assert daemon.poll_once() is None
        supervisor = daemon.supervisors[0]
        assert supervisor.stats.succeeded == 0

        sha = workspace.commit("feat: add script", {"src/app/a.js": "console.log(1)\n"})
        daemon.poll_once()
        daemon.poll_once()

        log = workspace.path / "dist" / "builds.log"
        assert log.read_text().splitlines() == [sha]
        assert supervisor.stats.succeeded == 1
        assert "job:success" in daemon.recorder.names()
        daemon.stop()

        again = make_daemon(workspace)
        again.poll_once()
        assert log.read_text().splitlines() == [sha]
        again.stop()

    def test_unrelated_paths_do_not_match(self, workspace):
        workspace.commit("chore: add build job", {"jobs/build.py": BUILD_JOB})
        daemon = make_daemon(workspace)
        daemon.poll_once()

        workspace.commit("docs: readme", {"docs/guide.md": "hi\n", "src/a.ts": "x\n"})
        daemon.poll_once()

        assert not (workspace.path / "dist" / "builds.log").exists()
        assert daemon.supervisors[0].stats.matched == 0
        daemon.stop()

    def test_commits_since_checkpoint_are_all_observed(self, workspace):
        workspace.commit("chore: add build job", {"jobs/build.py": BUILD_JOB})
        daemon = make_daemon(workspace)
        daemon.poll_once()

        first = workspace.commit("feat: one", {"src/one.js": "1\n"})
        second = workspace.commit("feat: two", {"src/two.js": "2\n"})
        daemon.poll_once()

        log = workspace.path / "dist" / "builds.log"
        assert log.read_text().splitlines() == [first, second]
        daemon.stop()

    def test_semver_tag_release(self, workspace):
        """Tagging v1.2.3 writes one release notification naming the tag."""
        workspace.commit("chore: add release job", {"jobs/release.py": RELEASE_JOB})
        daemon = make_daemon(workspace)
        daemon.poll_once()

        workspace.tag("v1.2.3")
        daemon.poll_once()
        daemon.poll_once()

        notifications = list((workspace.path / "dist" / "notifications").glob("*-release.json"))
        assert len(notifications) == 1
        body = json.loads(notifications[0].read_text())
        assert body["tag"] == "v1.2.3"
        assert body["commit"] == workspace.head()
        daemon.stop()

    def test_non_release_tag_is_ignored(self, workspace):
        workspace.commit("chore: add release job", {"jobs/release.py": RELEASE_JOB})
        daemon = make_daemon(workspace)
        daemon.poll_once()

        workspace.tag("nightly-build")
        daemon.poll_once()

        assert not (workspace.path / "dist" / "notifications").exists()
        daemon.stop()

    def test_job_failure_does_not_stop_polling(self, workspace):
        broken = 'on = {"pathChanged": ["src/**"]}\n\ndef run(ctx, payload, meta):\n    raise RuntimeError("nope")\n'
        workspace.commit("chore: jobs", {"jobs/broken.py": broken, "jobs/build.py": BUILD_JOB})
        daemon = make_daemon(workspace)
        daemon.poll_once()

        workspace.commit("feat: js", {"src/a.js": "x\n"})
        daemon.poll_once()

        stats = daemon.supervisors[0].stats
        assert stats.failed == 1
        assert stats.succeeded == 1
        assert "nope" in stats.last_error
        assert daemon.state == "running"
        daemon.stop()


class TestCron:
    def test_cron_fires_once_per_minute(self, workspace):
        workspace.commit("chore: nightly", {"jobs/nightly.py": NIGHTLY_JOB})
        clock = FakeClock(datetime(2025, 1, 1, 1, 59, 30, tzinfo=timezone.utc))
        daemon = make_daemon(workspace, clock=clock)
        supervisor = daemon.supervisors[0]

        daemon.poll_once()
        assert supervisor.stats.succeeded == 0

        clock.advance_to(datetime(2025, 1, 1, 2, 0, 10, tzinfo=timezone.utc))
        daemon.poll_once()
        clock.advance_to(datetime(2025, 1, 1, 2, 0, 50, tzinfo=timezone.utc))
        daemon.poll_once()

        assert supervisor.stats.succeeded == 1
        receipts = daemon.receipts.list(job_id="nightly")
        assert [r.metadata["trigger"]["minuteUTC"] for r in receipts] == ["2025-01-01T02:00Z"]
        assert supervisor.checkpoint.last_cron_minute == "2025-01-01T02:00Z"
        daemon.stop()

    def test_missed_minutes_are_caught_up_after_restart(self, workspace):
        workspace.commit("chore: nightly", {"jobs/nightly.py": NIGHTLY_JOB})
        clock = FakeClock(datetime(2025, 1, 1, 1, 58, 0, tzinfo=timezone.utc))
        daemon = make_daemon(workspace, clock=clock)
        daemon.poll_once()
        daemon.stop()

        clock.advance_to(datetime(2025, 1, 1, 2, 3, 0, tzinfo=timezone.utc))
        later = make_daemon(workspace, clock=clock)
        later.poll_once()

        assert later.supervisors[0].stats.succeeded == 1
        later.stop()


class TestDrain:
    def test_nothing_is_observed_while_draining(self, workspace):
        workspace.commit("chore: add build job", {"jobs/build.py": BUILD_JOB})
        daemon = make_daemon(workspace)
        daemon.poll_once()

        sha = workspace.commit("feat: add script", {"src/a.js": "x\n"})
        supervisor = daemon.supervisors[0]
        supervisor.stop_accepting()
        assert supervisor.poll_once() == []
        daemon.stop()

        log = workspace.path / "dist" / "builds.log"
        assert not log.exists()
        again = make_daemon(workspace)
        again.poll_once()
        assert log.read_text().splitlines() == [sha]
        again.stop()

    def test_deferred_items_are_seen_again_after_restart(self, workspace, monkeypatch):
        """A drain between matching and dispatch leaves the checkpoint alone."""
        workspace.commit("chore: add build job", {"jobs/build.py": BUILD_JOB})
        daemon = make_daemon(workspace)
        daemon.poll_once()
        supervisor = daemon.supervisors[0]
        match = supervisor.match

        def match_then_drain(events):
            items = match(events)
            supervisor.stop_accepting()
            return items

        monkeypatch.setattr(supervisor, "match", match_then_drain)
        sha = workspace.commit("feat: add script", {"src/a.js": "x\n"})
        assert [item.job.id for item in supervisor.poll_once()] == ["build"]
        daemon.stop()

        log = workspace.path / "dist" / "builds.log"
        assert not log.exists()
        again = make_daemon(workspace)
        again.poll_once()
        assert log.read_text().splitlines() == [sha]
        assert [r.status for r in again.receipts.list(job_id="build")] == ["success"]
        again.stop()

    def test_in_flight_run_is_cancelled_at_drain_deadline(self, workspace):
        workspace.commit("chore: add blocking job", {"jobs/blocking.py": BLOCKING_JOB})
        daemon = Daemon(workspace.config(drain_deadline=0.3, timeout_grace=2.0))
        daemon.start()
        try:
            assert wait_for(lambda: daemon.supervisors[0].stats.polls > 0)
            workspace.commit("feat: add script", {"src/a.js": "x\n"})
            assert wait_for((workspace.path / "dist" / "started").exists)
        finally:
            started = time.monotonic()
            daemon.stop()

        assert daemon.state == "stopped"
        assert time.monotonic() - started < 3
        (receipt,) = daemon.receipts.list(job_id="blocking")
        assert receipt.status == "error"
        assert "cancelled" in receipt.error
        assert daemon.supervisors[0].stats.failed == 1

    def test_unexpected_poll_error_keeps_daemon_running(self, workspace):
        daemon = make_daemon(workspace)
        supervisor = daemon.supervisors[0]

        def broken():
            raise OSError("disk full")

        supervisor.poll_once = broken
        daemon.poll_once()
        assert supervisor.stats.last_error == "OSError: disk full"
        assert daemon.state == "running"

        del supervisor.poll_once
        daemon.poll_once()
        assert supervisor.stats.polls == 1
        daemon.stop()


class TestLifecycle:
    def test_state_transitions(self, workspace):
        hooks = HookBus()
        recorder = HookRecorder()
        hooks.subscribe("daemon:state", recorder)
        daemon = Daemon(workspace.config(), hooks=hooks)
        assert daemon.state == "idle"

        with pytest.raises(InvalidTransition):
            daemon.poll_once()

        daemon.start(background=False)
        with pytest.raises(InvalidTransition):
            daemon.start(background=False)

        daemon.restart(background=False)
        assert daemon.state == "running"
        daemon.stop()
        assert daemon.state == "stopped"
        daemon.stop()

        transitions = [(p["from"], p["to"]) for p in recorder.of("daemon:state")]
        assert transitions == [
            ("idle", "starting"), ("starting", "running"),
            ("running", "draining"), ("draining", "stopped"),
            ("stopped", "starting"), ("starting", "running"),
            ("running", "draining"), ("draining", "stopped"),
        ]

    def test_start_outside_repository_ends_stopped(self, tmp_path):
        daemon = Daemon(GitVanConfig(root_dir=tmp_path, event_log=None))
        with pytest.raises(GitOperationError):
            daemon.start(background=False)
        assert daemon.state == "stopped"

    def test_status(self, workspace):
        daemon = make_daemon(workspace)
        daemon.poll_once()
        status = daemon.status()

        assert status["state"] == "running"
        assert status["parallelism"] == 1
        assert status["startedAt"]
        (worktree, stats), = status["worktrees"].items()
        assert stats["primary"] is True
        assert stats["polls"] == 1
        daemon.stop()

    def test_background_threads_pick_up_commits(self, workspace):
        workspace.commit("chore: add build job", {"jobs/build.py": BUILD_JOB})
        daemon = Daemon(workspace.config())
        daemon.start()
        try:
            deadline = time.monotonic() + 5
            while daemon.supervisors[0].stats.polls == 0 and time.monotonic() < deadline:
                time.sleep(0.05)
            workspace.commit("feat: js", {"src/a.js": "x\n"})
            log = workspace.path / "dist" / "builds.log"
            while not log.exists() and time.monotonic() < deadline:
                time.sleep(0.05)
            assert log.exists()
        finally:
            daemon.stop()
        assert daemon.state == "stopped"

    def test_pidfile(self, workspace):
        config = workspace.config()
        assert read_pidfile(config) is None
        write_pidfile(config, {"state": "running", "pid": 42})
        assert read_pidfile(config)["pid"] == 42
        clear_pidfile(config)
        clear_pidfile(config)
        assert read_pidfile(config) is None
