# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for configuration loading and fingerprints."""

import pytest

from gitvan.config import DEFAULT_NOTES_REF, load_config
from gitvan.errors import FilesystemError, ValidationError
from gitvan.fingerprint import compute_fingerprint, payload_hash
from gitvan.schemas.receipt import Trigger


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        config = load_config(root=tmp_path, env={})
        assert config.root_dir == tmp_path.resolve()
        assert config.notes_ref == DEFAULT_NOTES_REF
        assert config.jobs_dirs == ["jobs"]
        assert config.snapshot_retention_days == 30
        assert config.max_parallel >= 1

    def test_yaml_file_is_discovered(self, tmp_path):
        (tmp_path / "gitvan.config.yaml").write_text(
            "jobs_dirs: automation/jobs\nmax_parallel: 3\npoll_interval: 1\n"
        )
        config = load_config(root=tmp_path, env={})
        assert config.jobs_dirs == ["automation/jobs"]
        assert config.max_parallel == 3
        assert config.poll_interval == 1.0
        assert config.resolve("automation/jobs") == tmp_path.resolve() / "automation" / "jobs"

    def test_dot_gitvan_config(self, tmp_path):
        (tmp_path / ".gitvan").mkdir()
        (tmp_path / ".gitvan" / "config.yaml").write_text("snapshot_retention_days: 7\n")
        assert load_config(root=tmp_path, env={}).snapshot_retention_days == 7

    def test_environment_overrides_file(self, tmp_path):
        (tmp_path / "gitvan.config.yaml").write_text("max_parallel: 3\n")
        env = {"GITVAN_MAX_PARALLEL": "5", "GITVAN_NOTES_REF": "refs/notes/ci"}
        config = load_config(root=tmp_path, env=env)
        assert config.max_parallel == 5
        assert config.notes_ref == "refs/notes/ci"

    def test_root_from_environment(self, tmp_path):
        config = load_config(env={"GITVAN_ROOT_DIR": str(tmp_path)})
        assert config.root_dir == tmp_path.resolve()

    def test_unknown_keys_warn(self, tmp_path, caplog):
        (tmp_path / "gitvan.config.yaml").write_text("colour: blue\n")
        load_config(root=tmp_path, env={})
        assert "Unknown config key 'colour'" in caplog.text

    def test_explicit_path_must_exist(self, tmp_path):
        with pytest.raises(FilesystemError):
            load_config(root=tmp_path, config_path=str(tmp_path / "missing.yaml"), env={})

    @pytest.mark.parametrize("text", [
        "max_parallel: 0\n",
        "max_parallel: lots\n",
        "poll_interval: -1\n",
        "notes_ref: refs/heads/main\n",
        "jobs_dirs: [1, 2]\n",
        "- just\n- a list\n",
        "key: [unclosed\n",
    ])
    def test_invalid_values(self, tmp_path, text):
        (tmp_path / "gitvan.config.yaml").write_text(text)
        with pytest.raises(ValidationError):
            load_config(root=tmp_path, env={})


class TestFingerprint:
    def test_payload_hash_ignores_key_order(self):
        assert payload_hash({"a": 1, "b": 2}) == payload_hash({"b": 2, "a": 1})
        assert payload_hash(None) == payload_hash({})

    def test_fingerprint_depends_on_every_part(self):
        cron = Trigger(kind="cron", minute_utc="2025-01-01T02:00Z").to_dict()
        base = compute_fingerprint("nightly", "1.0.0", cron)
        assert base == compute_fingerprint("nightly", "1.0.0", cron)
        assert base != compute_fingerprint("nightly", "1.0.1", cron)
        assert base != compute_fingerprint("other", "1.0.0", cron)
        later = Trigger(kind="cron", minute_utc="2025-01-01T02:01Z").to_dict()
        assert base != compute_fingerprint("nightly", "1.0.0", later)

    def test_trigger_shapes(self):
        assert Trigger(kind="event", commit="abc", matcher_key="k").to_dict() == {
            "kind": "event", "commit": "abc", "matcherKey": "k",
        }
        assert Trigger(kind="on-demand", payload_hash="h").to_dict() == {
            "kind": "on-demand", "payloadHash": "h",
        }
