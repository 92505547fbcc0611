# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for the git-notes receipt store and named locks."""

import json
import os
import threading

import pytest

from gitvan.errors import LockUnavailable, ReceiptConflict
from gitvan.hooks import HookBus, HookRecorder
from gitvan.locks import LockManager
from gitvan.receipts import ReceiptStore
from gitvan.schemas.receipt import Receipt, parse_note

REF = "refs/notes/gitvan/results"


def receipt(job_id="docs.build", fingerprint="f" * 64, status="success", ts="2025-01-01T00:00:00Z", **kwargs):
    return Receipt(job_id=job_id, fingerprint=fingerprint, status=status, timestamp=ts, **kwargs)


@pytest.fixture
def store(repo, tmp_path):
    return ReceiptStore(repo.adapter, LockManager(tmp_path / "locks"), REF)


class TestReceiptStore:
    def test_record_and_has(self, store, repo):
        assert not store.has("docs.build", "f" * 64)
        stored = store.record(receipt(artifacts=["dist/a.txt"], duration=12))
        assert stored.commit == repo.head()
        assert store.has("docs.build", "f" * 64)

        note = repo.git("notes", "--ref", REF, "show", "HEAD")
        data = json.loads(note)
        assert data["receiptVersion"] == 1
        assert data["jobId"] == "docs.build"
        assert data["artifacts"] == ["dist/a.txt"]

    def test_identical_replay_is_a_noop(self, store, repo):
        store.record(receipt())
        store.record(receipt(ts="2025-01-02T00:00:00Z"))
        note = repo.git("notes", "--ref", REF, "show", "HEAD")
        assert len(note.splitlines()) == 1

    def test_divergent_status_conflicts(self, store):
        store.record(receipt())
        with pytest.raises(ReceiptConflict) as exc:
            store.record(receipt(status="error", error="boom"))
        assert exc.value.existing == "success"

    def _record_concurrently(self, repo, tmp_path, receipts):
        stores = [ReceiptStore(repo.adapter, LockManager(tmp_path / "locks"), REF) for _ in receipts]
        barrier = threading.Barrier(len(receipts))
        stored, conflicts = [], []

        def worker(target, item):
            barrier.wait(5)
            try:
                stored.append(target.record(item))
            except ReceiptConflict as e:
                conflicts.append(e)

        threads = [threading.Thread(target=worker, args=pair) for pair in zip(stores, receipts)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return stored, conflicts

    def test_concurrent_identical_records_both_succeed(self, repo, tmp_path):
        stored, conflicts = self._record_concurrently(
            repo, tmp_path, [receipt(), receipt(ts="2025-01-02T00:00:00Z")])

        assert len(stored) == 2
        assert conflicts == []
        assert {r.status for r in stored} == {"success"}
        note = repo.git("notes", "--ref", REF, "show", "HEAD")
        assert len(parse_note(note)) == 1

    def test_concurrent_divergent_records_one_wins(self, repo, tmp_path):
        stored, conflicts = self._record_concurrently(
            repo, tmp_path, [receipt(), receipt(status="error", error="boom")])

        assert len(stored) == 1
        assert len(conflicts) == 1
        (written,) = parse_note(repo.git("notes", "--ref", REF, "show", "HEAD"))
        assert written.status == stored[0].status
        assert conflicts[0].existing == written.status

    def test_many_receipts_share_one_note(self, store, repo):
        for i in range(3):
            store.record(receipt(fingerprint=f"{i:064d}"))
        note = repo.git("notes", "--ref", REF, "show", "HEAD")
        assert len(parse_note(note)) == 3

    def test_new_store_sees_existing_receipts(self, store, repo, tmp_path):
        store.record(receipt())
        fresh = ReceiptStore(repo.adapter, LockManager(tmp_path / "locks"), REF)
        assert fresh.has("docs.build", "f" * 64)
        assert fresh.get("docs.build", "f" * 64).status == "success"

    def test_refresh_picks_up_foreign_writes(self, store, repo):
        assert not store.has("other", "a" * 64)
        line = receipt(job_id="other", fingerprint="a" * 64).to_line()
        repo.adapter.note(REF, repo.head(), line + "\n")
        assert store.has("other", "a" * 64, refresh=True)

    def test_anchor_on_other_commit(self, store, repo):
        first = repo.head()
        repo.commit("second")
        stored = store.record(receipt(), anchor=first)
        assert stored.commit == first
        assert repo.adapter.note_read(REF, repo.head()) is None

    def test_list_filters_newest_first(self, store):
        store.record(receipt(job_id="a", fingerprint="1" * 64, ts="2025-01-01T00:00:00Z"))
        store.record(receipt(job_id="a", fingerprint="2" * 64, ts="2025-01-03T00:00:00Z", status="error"))
        store.record(receipt(job_id="b", fingerprint="3" * 64, ts="2025-01-02T00:00:00Z"))

        assert [r.fingerprint[0] for r in store.list()] == ["2", "3", "1"]
        assert [r.job_id for r in store.list(job_id="b")] == ["b"]
        assert [r.status for r in store.list(status="error")] == ["error"]
        assert len(store.list(since="2025-01-02T00:00:00Z")) == 2
        assert len(store.list(limit=1)) == 1

    def test_compact_drops_duplicates_and_junk(self, store, repo):
        line = receipt().to_line()
        repo.adapter.note(REF, repo.head(), f"{line}\nnot json\n{line}\n")
        assert store.compact() == 1
        assert repo.adapter.note_read(REF, repo.head()) == line + "\n"
        assert store.has("docs.build", "f" * 64)

    def test_receipt_write_hook(self, repo, tmp_path):
        hooks = HookBus()
        recorder = HookRecorder()
        hooks.subscribe("receipt:write", recorder)
        store = ReceiptStore(repo.adapter, LockManager(tmp_path / "locks"), REF, hooks=hooks)
        store.record(receipt())
        assert recorder.of("receipt:write")[0]["status"] == "success"


class TestParseNote:
    def test_ignores_foreign_lines(self):
        note = "\n".join([
            "hand-written remark",
            receipt().to_line(),
            "{broken",
            json.dumps({"something": "else"}),
        ])
        parsed = parse_note(note, commit="abc")
        assert len(parsed) == 1
        assert parsed[0].commit == "abc"

    def test_error_field_only_when_set(self):
        assert "error" not in receipt().to_dict()
        assert receipt(status="error", error="x").to_dict()["error"] == "x"


class TestLocks:
    def test_acquire_is_exclusive(self, tmp_path):
        locks = LockManager(tmp_path)
        handle = locks.acquire("job:a")
        with pytest.raises(LockUnavailable):
            locks.acquire("job:a")
        assert locks.is_locked("job:a")
        locks.release(handle)
        assert not locks.is_locked("job:a")

    def test_exclusive_across_managers(self, tmp_path):
        first = LockManager(tmp_path)
        second = LockManager(tmp_path)
        with first.hold("shared"):
            with pytest.raises(LockUnavailable) as exc:
                second.acquire("shared")
            assert str(os.getpid()) in str(exc.value)

    def test_stale_lock_is_broken(self, tmp_path):
        locks = LockManager(tmp_path)
        path = locks._path_for("stale")
        path.write_text(json.dumps({"name": "stale", "pid": 2 ** 22 + 12345, "host": locks._host}))
        handle = locks.acquire("stale")
        assert json.loads(handle.path.read_text())["pid"] == os.getpid()

    def test_acquire_wait_succeeds_after_release(self, tmp_path):
        locks = LockManager(tmp_path)
        other = LockManager(tmp_path)
        handle = other.acquire("slow")
        timer = threading.Timer(0.1, other.release, args=[handle])
        timer.start()
        try:
            with locks.hold("slow", wait=5.0):
                assert locks.is_locked("slow")
        finally:
            timer.join()

    def test_acquire_wait_times_out(self, tmp_path):
        locks = LockManager(tmp_path)
        with locks.hold("busy"):
            with pytest.raises(LockUnavailable):
                LockManager(tmp_path).acquire_wait("busy", timeout=0.1, interval=0.02)
