# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for the gitvan command line."""

import json
import os

import pytest
import yaml
from typer.testing import CliRunner

from gitvan import __version__
from gitvan.cli import app
from gitvan.config import GitVanConfig
from gitvan.daemon.daemon import write_pidfile

runner = CliRunner()

HELLO_JOB = {
    "meta": {"desc": "Say hello", "tags": ["demo"]},
    "defaults": {"name": "world"},
    "steps": [
        {"step_id": "write", "op": "file.write",
         "params": {"path": "out/hello.txt", "content": "hello {@payload.name}\n"}},
    ],
}

BUILD_JOB = {
    "on": {"pathChanged": ["src/**/*.js"]},
    "steps": [
        {"step_id": "mark", "op": "file.write",
         "params": {"path": "out/built.txt", "content": "@ctx.head"}},
    ],
}

NIGHTLY_JOB = {
    "cron": "0 2 * * *",
    "steps": [{"step_id": "noop", "op": "shell.run", "params": {"command": "true"}}],
}


def invoke(root, *args):
    return runner.invoke(app, ["--root", str(root), *args])


def write_job(root, name, data):
    target = root / "jobs" / f"{name}.yaml"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(yaml.safe_dump(data))
    return target


@pytest.fixture
def project(repo):
    """Repository with a few jobs on disk and generated output ignored."""
    with open(repo.path / ".git" / "info" / "exclude", "a") as f:
        f.write("out/\n")
    write_job(repo.path, "hello", HELLO_JOB)
    write_job(repo.path, "build", BUILD_JOB)
    write_job(repo.path, "nightly", NIGHTLY_JOB)
    return repo


class TestVersion:
    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout


class TestJobCommands:
    """Tests for gitvan job list/run/receipts."""

    def test_list(self, project):
        result = invoke(project.path, "job", "list")
        assert result.exit_code == 0
        assert "hello (on-demand)" in result.stdout
        assert "nightly (cron) [0 2 * * *]" in result.stdout
        assert "Say hello" in result.stdout

    def test_list_by_tag_json(self, project):
        result = invoke(project.path, "job", "list", "--tag", "demo", "--json")
        assert result.exit_code == 0
        rows = json.loads(result.stdout)
        assert [row["id"] for row in rows] == ["hello"]

    def test_run_then_skip_then_force(self, project):
        first = invoke(project.path, "job", "run", "hello", "name=gitvan")
        assert first.exit_code == 0
        assert "Ran hello" in first.stdout
        assert "artifact: out/hello.txt" in first.stdout
        assert (project.path / "out" / "hello.txt").read_text() == "hello gitvan\n"

        second = invoke(project.path, "job", "run", "hello", "name=gitvan")
        assert second.exit_code == 0
        assert "Skipped hello" in second.stdout

        forced = invoke(project.path, "job", "run", "hello", "name=gitvan", "--force")
        assert "Ran hello" in forced.stdout

    def test_run_json(self, project):
        result = invoke(project.path, "job", "run", "hello", "--json")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["status"] == "success"
        assert len(data["fingerprint"]) == 64

    def test_unknown_job_is_user_error(self, project):
        result = invoke(project.path, "job", "run", "ghost")
        assert result.exit_code == 1

    def test_failing_job_exits_nonzero(self, project):
        write_job(project.path, "broken", {
            "steps": [{"step_id": "boom", "op": "shell.run", "params": {"command": "exit 3"}}],
        })
        result = invoke(project.path, "job", "run", "broken")
        assert result.exit_code != 0

    def test_outside_repository_is_operational_error(self, tmp_path):
        write_job(tmp_path, "hello", HELLO_JOB)
        result = invoke(tmp_path, "job", "run", "hello")
        assert result.exit_code == 2

    def test_receipts(self, project):
        invoke(project.path, "job", "run", "hello")
        result = invoke(project.path, "job", "receipts", "hello", "--json")
        assert result.exit_code == 0
        receipts = json.loads(result.stdout)
        assert len(receipts) == 1
        assert receipts[0]["jobId"] == "hello"
        assert receipts[0]["status"] == "success"
        assert receipts[0]["commit"] == project.head()

    def test_no_receipts(self, project):
        result = invoke(project.path, "job", "receipts")
        assert result.exit_code == 0
        assert "No receipts." in result.stdout


class TestCronCommands:
    def test_list(self, project):
        result = invoke(project.path, "cron", "list", "--json")
        assert result.exit_code == 0
        (row,) = json.loads(result.stdout)
        assert row["id"] == "nightly"
        assert row["next"].endswith("T02:00Z")

    def test_tick_is_idempotent_per_minute(self, project):
        first = invoke(project.path, "cron", "tick", "--at", "2025-01-01T02:00Z")
        assert first.exit_code == 0
        assert "nightly: success" in first.stdout

        second = invoke(project.path, "cron", "tick", "--at", "2025-01-01T02:00Z")
        assert "nightly: skipped" in second.stdout

    def test_tick_nothing_due(self, project):
        result = invoke(project.path, "cron", "tick", "--at", "2025-01-01T03:00Z")
        assert result.exit_code == 0
        assert "No cron jobs due at 2025-01-01T03:00Z" in result.stdout

    def test_dry_run(self, project):
        result = invoke(project.path, "cron", "tick", "--at", "2025-01-01T02:00Z", "--dry-run")
        assert "would run nightly" in result.stdout
        assert invoke(project.path, "job", "receipts").stdout.strip() == "No receipts."


class TestEventCommands:
    def test_list(self, project):
        result = invoke(project.path, "event", "list", "--json")
        rows = json.loads(result.stdout)
        assert [row["id"] for row in rows] == ["build"]
        assert rows[0]["on"] == {"pathChanged": ["src/**/*.js"]}

    def test_simulate_match(self, project):
        result = invoke(project.path, "event", "simulate", "--file", "src/app/main.js")
        assert result.exit_code == 0
        assert "Would run:" in result.stdout
        assert "build" in result.stdout

    def test_simulate_no_match_explain(self, project):
        result = invoke(project.path, "event", "simulate", "--file", "docs/a.md", "--json", "--explain")
        data = json.loads(result.stdout)
        assert data["metadata"]["filesChanged"] == ["docs/a.md"]
        assert data["results"][0]["matched"] is False

    def test_simulate_bad_metadata(self, project):
        result = invoke(project.path, "event", "simulate", "--metadata", "[1, 2]")
        assert result.exit_code == 1


class TestConfigCommands:
    def test_validate(self, project):
        result = invoke(project.path, "config", "validate", "--json")
        assert result.exit_code == 0
        assert json.loads(result.stdout)["jobs_dirs"] == ["jobs"]

    def test_invalid_config(self, tmp_path):
        (tmp_path / "gitvan.config.yaml").write_text("max_parallel: 0\n")
        result = invoke(tmp_path, "config", "validate")
        assert result.exit_code == 1


class TestPackCommands:
    @pytest.fixture
    def pack_dir(self, tmp_path):
        path = tmp_path / "packs-src" / "readme"
        path.mkdir(parents=True)
        (path / "pack.yaml").write_text(yaml.safe_dump({
            "id": "readme",
            "version": "1.0.0",
            "transforms": [
                {"op": "write", "target": "CONTRIBUTING.md", "content": "Be kind.\n"},
            ],
        }))
        return path

    def test_apply_verify_rollback(self, repo, pack_dir):
        applied = invoke(repo.path, "pack", "apply", str(pack_dir))
        assert applied.exit_code == 0
        assert "readme@1.0.0: installed" in applied.stdout
        assert (repo.path / "CONTRIBUTING.md").read_text() == "Be kind.\n"

        again = invoke(repo.path, "pack", "apply", str(pack_dir))
        assert "readme@1.0.0: skipped" in again.stdout

        verified = invoke(repo.path, "pack", "verify", "readme")
        assert verified.exit_code == 0
        assert "1 file(s) intact" in verified.stdout

        (repo.path / "CONTRIBUTING.md").write_text("changed\n")
        modified = invoke(repo.path, "pack", "verify", "readme")
        assert modified.exit_code == 1
        assert "modified  CONTRIBUTING.md" in modified.stdout

        rolled = invoke(repo.path, "pack", "rollback", "readme")
        assert rolled.exit_code == 0
        assert not (repo.path / "CONTRIBUTING.md").exists()

    def test_install_and_list(self, repo):
        registry = repo.path / "packs" / "readme-1.1.0"
        registry.mkdir(parents=True)
        (registry / "pack.yaml").write_text(yaml.safe_dump({
            "id": "readme", "version": "1.1.0",
            "transforms": [{"op": "write", "target": "NOTES.md", "content": "notes\n"}],
        }))

        installed = invoke(repo.path, "pack", "install", "readme@^1.0", "--json")
        assert installed.exit_code == 0
        assert json.loads(installed.stdout)["status"] == "installed"

        listed = invoke(repo.path, "pack", "list", "--json")
        (row,) = json.loads(listed.stdout)
        assert row["packId"] == "readme"
        assert row["updateAvailable"] is False

    def test_install_unresolved(self, repo):
        result = invoke(repo.path, "pack", "install", "missing@^2.0")
        assert result.exit_code == 1

    def test_rollback_unknown(self, repo):
        assert invoke(repo.path, "pack", "rollback", "never-installed").exit_code != 0


class TestDaemonCommands:
    def test_start_once(self, project):
        (project.path / "jobs" / "nightly.yaml").unlink()
        project.commit("feat: first script", {"src/main.js": "x\n"})
        result = invoke(project.path, "daemon", "start", "--once")
        assert result.exit_code == 0
        assert "1 matched, 1 succeeded, 0 failed, 0 skipped" in result.stdout
        assert (project.path / "out" / "built.txt").read_text() == project.head()

    def test_start_once_outside_repository(self, tmp_path):
        result = invoke(tmp_path, "daemon", "start", "--once")
        assert result.exit_code == 2

    def test_status_when_stopped(self, project):
        result = invoke(project.path, "daemon", "status")
        assert result.exit_code == 0
        assert "Daemon is not running" in result.stdout

    def test_start_refuses_when_another_daemon_is_live(self, project):
        config = GitVanConfig(root_dir=project.path)
        write_pidfile(config, {"state": "running", "pid": os.getppid(), "worktrees": {}})

        status = invoke(project.path, "daemon", "status", "--json")
        assert json.loads(status.stdout)["pid"] == os.getppid()

        result = invoke(project.path, "daemon", "start", "--once")
        assert result.exit_code == 3
