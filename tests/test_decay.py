"""Tests for decay scoring and the archival pass."""

import os
import tempfile
import threading
from unittest import mock

import numpy as np
import pytest

from memforge.decay import (
    decay_score,
    decay_scores,
    is_archived,
    record_access,
    reforge_stats,
    run_decay_pass,
)
from memforge.models import DecayEntry, Memory, MemoryKind, PassStats
from memforge.storage import Storage, StoreError

NOW = 1_800_000_000.0
HOUR = 3600.0


@pytest.fixture
def storage():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    s = Storage(path)
    yield s
    s.close()
    os.unlink(path)


def _mem(storage, age_hours, kind=MemoryKind.NOTE, source="", content="memory"):
    mem = Memory(content=content, agent_id="alpha", kind=kind, source=source,
                 created_at=NOW - age_hours * HOUR)
    storage.save_memory(mem)
    return mem


# ── Scorer ─────────────────────────────────────────────────────────────


class TestDecayScore:
    def test_fresh_goal_clamped_to_one(self):
        assert decay_score(0, 0, "goal", False) == 1.0

    def test_half_life(self):
        assert decay_score(72, 0, "outcome", False) == pytest.approx(0.5)

    def test_within_unit_interval(self):
        for age in (0, 1, 10, 72, 500, 10_000):
            for kind in MemoryKind:
                score = decay_score(age, 0, kind, False)
                assert 0.0 <= score <= 1.0

    def test_monotonic_in_age(self):
        ages = [0, 1, 5, 24, 72, 100, 200, 1000]
        scores = [decay_score(a, 0, "note", False) for a in ages]
        assert scores == sorted(scores, reverse=True)

    def test_access_boost_capped(self):
        base = decay_score(200, 0, "outcome", False)
        assert decay_score(200, 1, "outcome", False) == pytest.approx(base + 0.1)
        assert decay_score(200, 3, "outcome", False) == pytest.approx(base + 0.3)
        assert decay_score(200, 50, "outcome", False) == pytest.approx(base + 0.3)

    def test_kind_multipliers(self):
        age = 100
        goal = decay_score(age, 0, MemoryKind.GOAL, False)
        error = decay_score(age, 0, MemoryKind.ERROR, False)
        assert goal > error
        assert decay_score(age, 0, "unheard-of", False) == \
            decay_score(age, 0, "outcome", False)

    def test_anchor_floor(self):
        for kind in MemoryKind:
            assert decay_score(10_000, 0, kind, True) >= 0.3

    def test_vectorised_matches_scalar(self):
        ages = np.array([0.0, 12.0, 72.0, 150.0, 400.0])
        access = np.array([0, 1, 2, 0, 5])
        kinds = ["goal", "fact", "error", "note", "observation"]
        anchored = np.array([False, False, True, False, True])
        vec = decay_scores(ages, access, kinds, anchored)
        for i in range(len(ages)):
            assert vec[i] == pytest.approx(
                decay_score(ages[i], access[i], kinds[i], anchored[i]))


# ── Pass ───────────────────────────────────────────────────────────────


class TestDecayPass:
    def test_scores_every_memory(self, storage):
        for age in (1, 50, 100):
            _mem(storage, age)
        result = run_decay_pass(storage, now=NOW)
        assert result.scored == 3
        assert len(storage.decay_entries()) == 3

    def test_scores_rounded(self, storage):
        mem = _mem(storage, 37)
        run_decay_pass(storage, now=NOW)
        entry = storage.load_decay(mem.id)
        assert entry.decay_score == round(entry.decay_score, 3)

    def test_archives_stale(self, storage):
        old = _mem(storage, 400)
        fresh = _mem(storage, 1)
        result = run_decay_pass(storage, now=NOW)
        assert result.archived == 1
        assert storage.load_decay(old.id).is_archived
        assert "below 0.15" in storage.load_decay(old.id).archive_reason
        assert not storage.load_decay(fresh.id).is_archived

    def test_anchor_never_archived(self, storage):
        anchor = _mem(storage, 5000, kind=MemoryKind.ERROR, source="anchor")
        result = run_decay_pass(storage, now=NOW)
        entry = storage.load_decay(anchor.id)
        assert result.archived == 0
        assert not entry.is_archived
        assert entry.decay_score == 0.3

    def test_archival_is_monotonic(self, storage):
        mem = _mem(storage, 400)
        run_decay_pass(storage, now=NOW)
        assert storage.load_decay(mem.id).is_archived

        # Plenty of accesses would lift the score above the cutoff
        for _ in range(5):
            record_access(storage, mem.id, now=NOW)
        second = run_decay_pass(storage, now=NOW)
        entry = storage.load_decay(mem.id)
        assert entry.decay_score >= 0.15
        assert entry.is_archived
        assert second.archived == 0

    def test_archived_entry_survives_stale_writer(self, storage):
        mem = _mem(storage, 10)
        storage.upsert_decay([DecayEntry(memory_id=mem.id, decay_score=0.0,
                                         is_archived=True, archive_reason="manual",
                                         updated_at=NOW)])
        storage.upsert_decay([DecayEntry(memory_id=mem.id, decay_score=0.9,
                                         is_archived=False, updated_at=NOW)])
        entry = storage.load_decay(mem.id)
        assert entry.is_archived
        assert entry.archive_reason == "manual"

    def test_reforge_candidates(self, storage):
        candidate = _mem(storage, 100)                        # ~0.305
        _mem(storage, 1)                                      # fresh
        _mem(storage, 400)                                    # archived
        _mem(storage, 100, source="anchor")                   # anchored
        result = run_decay_pass(storage, now=NOW)
        assert [c.memory_id for c in result.candidates] == [candidate.id]
        assert 0.15 <= result.candidates[0].decay_score < 0.4

    def test_access_count_carried_forward(self, storage):
        mem = _mem(storage, 100)
        record_access(storage, mem.id, now=NOW)
        record_access(storage, mem.id, now=NOW)
        run_decay_pass(storage, now=NOW)
        entry = storage.load_decay(mem.id)
        assert entry.access_count == 2
        assert entry.decay_score == pytest.approx(
            decay_score(100, 2, "note", False), abs=1e-3)

    def test_foreign_kind_scored_with_neutral_multiplier(self, storage):
        storage.conn.execute(
            "INSERT INTO memories (id, agent_id, kind, content, source, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?)",
            ("foreign1", "scout", "insight", "written elsewhere", "", NOW - 72 * HOUR),
        )
        storage.conn.commit()
        _mem(storage, 1)

        result = run_decay_pass(storage, now=NOW)
        assert result.scored == 2
        assert storage.load_memory("foreign1").kind == "insight"
        assert storage.load_decay("foreign1").decay_score == pytest.approx(0.5)

    def test_pass_limit(self, storage):
        for age in range(10):
            _mem(storage, age)
        result = run_decay_pass(storage, now=NOW, limit=4)
        assert result.scored == 4

    def test_failed_chunk_does_not_stop_pass(self, storage):
        for age in range(5):
            _mem(storage, age)
        real_upsert = storage.upsert_decay
        calls = []

        def flaky(entries):
            calls.append(len(entries))
            if len(calls) == 1:
                raise StoreError("disk I/O error")
            real_upsert(entries)

        with mock.patch.object(storage, "upsert_decay", side_effect=flaky):
            result = run_decay_pass(storage, now=NOW, chunk_size=2)

        assert calls == [2, 2, 1]
        assert result.failed_chunks == 1
        assert result.scored == 5
        assert len(storage.decay_entries()) == 3

    def test_store_unavailable_degrades(self, storage):
        with mock.patch.object(storage, "recent_memories",
                               side_effect=StoreError("no such table: memories")):
            result = run_decay_pass(storage, now=NOW)
        assert result.scored == 0
        assert result.candidates == []

    def test_stats_accumulate(self, storage):
        _mem(storage, 400)
        _mem(storage, 1)
        stats = PassStats()
        run_decay_pass(storage, now=NOW, stats=stats)
        run_decay_pass(storage, now=NOW, stats=stats)
        assert stats.passes == 2
        assert stats.scored == 4
        assert stats.archived == 1

    def test_concurrent_passes(self, storage):
        for age in (1, 100, 400, 900):
            _mem(storage, age)
        errors = []

        def worker():
            try:
                run_decay_pass(storage, now=NOW)
            except Exception as exc:  # pragma: no cover
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        entries = storage.decay_entries()
        assert len(entries) == 4
        assert sum(e.is_archived for e in entries.values()) == 2


# ── Helpers ────────────────────────────────────────────────────────────


class TestAccessAndStats:
    def test_record_access_creates_entry(self, storage):
        mem = _mem(storage, 3)
        record_access(storage, mem.id, now=NOW)
        entry = storage.load_decay(mem.id)
        assert entry.access_count == 1
        assert entry.decay_score == 1.0
        assert entry.last_accessed == NOW

    def test_is_archived(self, storage):
        old = _mem(storage, 400)
        fresh = _mem(storage, 1)
        run_decay_pass(storage, now=NOW)
        assert is_archived(storage, old.id)
        assert not is_archived(storage, fresh.id)
        assert not is_archived(storage, "missing")

    def test_reforge_stats(self, storage):
        _mem(storage, 1)      # healthy
        _mem(storage, 100)    # decaying
        _mem(storage, 400)    # archived
        run_decay_pass(storage, now=NOW)
        stats = reforge_stats(storage)
        assert stats.total_memories == 3
        assert stats.archived == 1
        assert stats.decaying == 1
        assert stats.healthy == 1
        assert stats.reforged_crystals == 0

    def test_reforge_stats_empty(self, storage):
        assert reforge_stats(storage).avg_decay == 1.0
