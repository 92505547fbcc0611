# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for declarative step compilation and execution."""

import json

import pytest
import yaml

from gitvan.config import GitVanConfig
from gitvan.errors import JobTimeoutError
from gitvan.jobs.compiler import CompileError, compile_job
from gitvan.jobs.define import job_from_dict
from gitvan.jobs.executor import execute, resolve_run_refs
from gitvan.schemas.job_def import JobContext


def make_job(steps, **extra):
    return job_from_dict({"id": "demo", "steps": steps, **extra})


def make_ctx(job, worktree, **kwargs):
    values = dict(
        id="01TESTRUN",
        job=job,
        start_time="2025-01-01T00:00:00Z",
        worktree=worktree,
        branch="main",
        head="a" * 40,
        env={"TZ": "UTC"},
        fingerprint="f" * 64,
        trigger={"kind": "on-demand", "payloadHash": "h"},
    )
    values.update(kwargs)
    return JobContext(**values)


class TestCompiler:
    """Test compile-time reference resolution."""

    def test_ctx_payload_and_self_refs(self, tmp_path):
        job = make_job(
            [{"step_id": "s", "op": "file.write", "params": {
                "path": "@self.targets.@payload.env.path",
                "content": "built {@ctx.head} for {@payload.env}",
                "branch": "@ctx.branch",
                "missing": "@payload.nothing",
                "later": "@run.prev.stdout",
            }}],
            defaults={"env": "prod"},
        )
        job.raw["targets"] = {"prod": {"path": "out/prod.txt"}}
        instance = compile_job(job, make_ctx(job, tmp_path))
        params = instance.steps[0].params

        assert params["path"] == "out/prod.txt"
        assert params["content"] == f"built {'a' * 40} for prod"
        assert params["branch"] == "main"
        assert params["missing"] is None
        assert params["later"] == "@run.prev.stdout"

    def test_payload_overrides_defaults(self, tmp_path):
        job = make_job([{"step_id": "s", "op": "shell.run", "params": {"command": "@payload.cmd"}}],
                       defaults={"cmd": "true"})
        instance = compile_job(job, make_ctx(job, tmp_path), {"cmd": "false"})
        assert instance.steps[0].params["command"] == "false"

    def test_missing_self_path_fails(self, tmp_path):
        job = make_job([{"step_id": "s", "op": "shell.run", "params": {"command": "@self.nope"}}])
        with pytest.raises(CompileError):
            compile_job(job, make_ctx(job, tmp_path))

    def test_dynamic_key_must_be_set(self, tmp_path):
        job = make_job([{"step_id": "s", "op": "shell.run", "params": {"command": "@self.steps.@payload.idx"}}])
        with pytest.raises(CompileError):
            compile_job(job, make_ctx(job, tmp_path))

    def test_list_index(self, tmp_path):
        job = make_job([{"step_id": "s", "op": "shell.run", "params": {"command": "@self.steps.0.step_id"}}])
        assert compile_job(job, make_ctx(job, tmp_path)).steps[0].params["command"] == "s"


class TestRunRefs:
    def test_resolve_nested_and_indexed(self):
        outputs = {"read": {"content": {"items": ["x", "y"]}}}
        assert resolve_run_refs({"a": ["@run.read.content.items[1]"]}, outputs) == {"a": ["y"]}

    def test_unknown_step(self):
        with pytest.raises(ValueError):
            resolve_run_refs("@run.ghost.stdout", {})


class TestExecutor:
    """Test ops and step flow."""

    def run(self, tmp_path, steps, dry_run=False, **ctx_kwargs):
        job = make_job(steps)
        ctx = make_ctx(job, tmp_path, **ctx_kwargs)
        return execute(compile_job(job, ctx), ctx, dry_run=dry_run)

    def test_file_read_write_chain(self, tmp_path):
        (tmp_path / "in.json").write_text(json.dumps({"name": "gitvan"}))
        record = self.run(tmp_path, [
            {"step_id": "read", "op": "file.read", "params": {"path": "in.json", "format": "json"}},
            {"step_id": "write", "op": "file.write", "params": {"path": "out/name.txt", "content": "@run.read.content.name"}},
        ])
        assert record.success
        assert (tmp_path / "out" / "name.txt").read_text() == "gitvan"
        assert record.artifacts == ["out/name.txt"]

    def test_write_modes(self, tmp_path):
        (tmp_path / "log.txt").write_text("a\n")
        record = self.run(tmp_path, [
            {"step_id": "append", "op": "file.write", "params": {"path": "log.txt", "content": "b\n", "mode": "append"}},
            {"step_id": "create", "op": "file.write", "params": {"path": "log.txt", "content": "c\n", "mode": "create"}},
            {"step_id": "data", "op": "file.write", "params": {"path": "data.json", "content": {"k": 1}}},
        ])
        assert (tmp_path / "log.txt").read_text() == "a\nb\n"
        assert [o.status for o in record.outcomes] == ["completed", "skipped", "completed"]
        assert json.loads((tmp_path / "data.json").read_text()) == {"k": 1}

    def test_failure_stops_unless_continue_on_error(self, tmp_path):
        record = self.run(tmp_path, [
            {"step_id": "soft", "op": "shell.run", "params": {"command": "exit 1"}, "continue_on_error": True},
            {"step_id": "hard", "op": "shell.run", "params": {"command": "exit 2"}},
            {"step_id": "never", "op": "shell.run", "params": {"command": "touch never"}},
        ])
        assert not record.success
        assert [o.status for o in record.outcomes] == ["failed", "failed"]
        assert "exited with 2" in record.outcomes[1].error
        assert not (tmp_path / "never").exists()

    def test_condition_skips_step(self, tmp_path):
        record = self.run(tmp_path, [
            {"step_id": "maybe", "op": "shell.run", "params": {"command": "touch ran"},
             "condition": {"file_exists": "flag"}},
        ])
        assert record.success
        assert record.outcomes[0].status == "skipped"
        assert not (tmp_path / "ran").exists()

    def test_unknown_op_fails(self, tmp_path):
        record = self.run(tmp_path, [{"step_id": "x", "op": "teleport"}])
        assert not record.success
        assert "Unknown op" in record.outcomes[0].error

    def test_dry_run_writes_nothing(self, tmp_path):
        record = self.run(tmp_path, [
            {"step_id": "cmd", "op": "shell.run", "params": {"command": "touch nope"}},
            {"step_id": "w", "op": "file.write", "params": {"path": "nope.txt", "content": "x"}},
        ], dry_run=True)
        assert record.success
        assert list(tmp_path.iterdir()) == []

    def test_cancelled_context_stops(self, tmp_path):
        job = make_job([{"step_id": "s", "op": "shell.run", "params": {"command": "true"}}])
        ctx = make_ctx(job, tmp_path)
        ctx.cancel_event.set()
        with pytest.raises(JobTimeoutError):
            execute(compile_job(job, ctx), ctx)

    def test_git_ops(self, repo):
        record = self.run(repo.path, [
            {"step_id": "tag", "op": "git.tag", "params": {"name": "v9.9.9"}},
            {"step_id": "note", "op": "git.note", "params": {"content": {"built": True}}},
        ], git=repo.adapter, head=repo.head())
        assert record.success
        assert repo.adapter.tags()["v9.9.9"] == repo.head()
        assert repo.adapter.note_read("refs/notes/gitvan/steps", repo.head()).strip() == '{"built": true}'

    def test_pack_apply_op(self, tmp_path):
        pack_dir = tmp_path / "packs" / "hello"
        pack_dir.mkdir(parents=True)
        (pack_dir / "pack.yaml").write_text(yaml.safe_dump({
            "id": "hello", "version": "1.0.0",
            "transforms": [{"op": "write", "target": "HELLO.md", "content": "hi\n"}],
        }))
        steps = [{"step_id": "apply", "op": "pack.apply", "params": {"id": "hello", "constraint": "^1.0.0"}}]
        config = GitVanConfig(root_dir=tmp_path, event_log=None)

        first = self.run(tmp_path, steps, config=config)
        assert first.success
        assert first.outcomes[0].output["status"] == "installed"
        assert first.artifacts == ["HELLO.md"]

        second = self.run(tmp_path, steps, config=config)
        assert second.outcomes[0].status == "skipped"

    def test_pack_apply_needs_config(self, tmp_path):
        record = self.run(tmp_path, [{"step_id": "apply", "op": "pack.apply", "params": {"id": "x"}}])
        assert "configured runner" in record.outcomes[0].error
