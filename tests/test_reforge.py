"""Tests for reforge targeting, compression and auto-reforge."""

import os
import random
import tempfile
from datetime import datetime, timezone
from unittest import mock

import pytest

from memforge.decay import run_decay_pass
from memforge.models import DecayEntry, Memory, MemoryKind, PassStats
from memforge.reforge import (
    LEGENDARY_PREFIXES,
    LEGENDARY_SUFFIXES,
    auto_reforge,
    find_reforge_targets,
    legendary_name,
    recent_reforges,
    reforge_memories,
)
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


def _seed(storage, content, score, kind=MemoryKind.NOTE, agent="alpha", age_hours=0.0):
    """Store a memory together with its decay entry."""
    mem = Memory(content=content, agent_id=agent, kind=kind,
                 created_at=NOW - age_hours * HOUR)
    storage.save_memory(mem)
    storage.upsert_decay([DecayEntry(memory_id=mem.id, decay_score=score,
                                     updated_at=NOW)])
    return mem


def _group(storage, words, n, base_score, kind=MemoryKind.NOTE, agents=("alpha",)):
    return [
        _seed(storage, f"{words} entry{i}", round(base_score + i * 0.001, 3),
              kind=kind, agent=agents[i % len(agents)], age_hours=n - i)
        for i in range(n)
    ]


# ── Names ──────────────────────────────────────────────────────────────


class TestLegendaryName:
    def test_shape(self):
        name = legendary_name(["deploy", "pipeline"], random.Random(3))
        prefix, keyword, suffix = name.split(" ")
        assert prefix in LEGENDARY_PREFIXES
        assert keyword == "Deploy"
        assert suffix in LEGENDARY_SUFFIXES

    def test_no_keywords(self):
        assert legendary_name([], random.Random(3)).split(" ")[1] == "Unknown"

    def test_seeded_is_deterministic(self):
        assert legendary_name(["cache"], random.Random(42)) == \
            legendary_name(["cache"], random.Random(42))


# ── Targeting ──────────────────────────────────────────────────────────


class TestFindTargets:
    def test_too_few_candidates(self, storage):
        _group(storage, "deploy pipeline staging", 4, 0.2)
        assert find_reforge_targets(storage) == []

    def test_groups_related(self, storage):
        mems = _group(storage, "deploy pipeline staging", 6, 0.2)
        targets = find_reforge_targets(storage)
        assert len(targets) == 1
        assert targets[0].count == 6
        assert set(targets[0].memory_ids) == {m.id for m in mems}
        assert "deploy" in targets[0].keywords
        assert targets[0].avg_decay == pytest.approx(0.2025)

    def test_unrelated_not_grouped(self, storage):
        for i, text in enumerate(["apples oranges", "rocket engines",
                                  "violin concerto", "glacier melting",
                                  "tax filing", "chess opening"]):
            _seed(storage, text, 0.2 + i * 0.01)
        assert find_reforge_targets(storage) == []

    def test_scan_window_bounds_group(self, storage):
        _group(storage, "deploy pipeline staging", 10, 0.1)
        targets = find_reforge_targets(storage)
        # seed + the next 8 candidates; the tenth is left alone
        assert [t.count for t in targets] == [9]

    def test_sparse_keywords_skipped(self, storage):
        _group(storage, "deploy pipeline staging", 4, 0.2)
        _seed(storage, "ok", 0.21)
        assert find_reforge_targets(storage) == []

    def test_archived_and_fresh_excluded(self, storage):
        mems = _group(storage, "deploy pipeline staging", 5, 0.2)
        storage.upsert_decay([DecayEntry(memory_id=mems[0].id, decay_score=0.2,
                                         is_archived=True, updated_at=NOW)])
        _seed(storage, "deploy pipeline staging fresh", 0.9)
        _seed(storage, "deploy pipeline staging gone", 0.01)
        assert find_reforge_targets(storage) == []

    def test_sorted_by_staleness(self, storage):
        stale = _group(storage, "kafka consumer lag", 5, 0.10)
        warm = _group(storage, "invoice rounding tax", 5, 0.30)
        targets = find_reforge_targets(storage)
        assert [t.count for t in targets] == [5, 5]
        assert set(targets[0].memory_ids) == {m.id for m in stale}
        assert set(targets[1].memory_ids) == {m.id for m in warm}
        assert targets[0].avg_decay < targets[1].avg_decay

    def test_members_are_disjoint(self, storage):
        _group(storage, "kafka consumer lag", 7, 0.10)
        _group(storage, "kafka consumer rebalance", 7, 0.20)
        seen = set()
        for target in find_reforge_targets(storage):
            assert seen.isdisjoint(target.memory_ids)
            seen.update(target.memory_ids)

    def test_store_failure_degrades(self, storage):
        with mock.patch.object(storage, "decay_candidates",
                               side_effect=StoreError("no such table")):
            assert find_reforge_targets(storage) == []


# ── Reforging ──────────────────────────────────────────────────────────


class TestReforge:
    def test_five_memories(self, storage):
        mems = _group(storage, "deploy pipeline staging", 5, 0.2)
        result = reforge_memories(storage, [m.id for m in mems],
                                  rng=random.Random(1), now=NOW)
        assert result is not None
        assert result.source_count == 5
        assert result.compression_ratio == pytest.approx(0.2)
        assert result.source_memory_ids == [m.id for m in mems]

    def test_six_memories_archives_all(self, storage):
        mems = _group(storage, "database timeout replica", 6, 0.2,
                      kind=MemoryKind.ERROR, agents=("alpha", "beta"))
        result = reforge_memories(storage, [m.id for m in mems],
                                  rng=random.Random(1), now=NOW)

        assert result.source_count == 6
        assert result.compression_ratio == pytest.approx(1 / 6)
        for mem in mems:
            entry = storage.load_decay(mem.id)
            assert entry.is_archived
            assert entry.decay_score == 0.0
            assert entry.archive_reason == f'Reforged into "{result.legendary_name}"'

    def test_summary(self, storage):
        mems = _group(storage, "database timeout replica", 6, 0.2,
                      kind=MemoryKind.ERROR, agents=("alpha", "beta"))
        result = reforge_memories(storage, [m.id for m in mems],
                                  rng=random.Random(1), now=NOW)
        lines = result.summary.splitlines()
        first = datetime.fromtimestamp(mems[0].created_at, tz=timezone.utc)
        last = datetime.fromtimestamp(mems[-1].created_at, tz=timezone.utc)
        assert lines[0] == (f"REFORGED CRYSTAL: {first:%Y-%m-%d} to "
                            f"{last:%Y-%m-%d}")
        assert "6 errors" in lines[1]
        assert "alpha, beta" in lines[2]
        assert "database" in result.keywords
        assert lines[-1] == "  ... and 1 more."

    def test_legendary_crystal(self, storage):
        mems = _group(storage, "database timeout replica", 6, 0.2,
                      kind=MemoryKind.ERROR)
        result = reforge_memories(storage, [m.id for m in mems],
                                  reforged_by="ops", rng=random.Random(1), now=NOW)
        crystal = storage.load_crystal(result.result_crystal_id)
        assert crystal.name == result.legendary_name
        assert crystal.crystal_class == "godhand"
        assert crystal.crystal_type == "incident"
        assert crystal.star_rating == 5
        assert crystal.xp == 600
        assert crystal.level == 20
        assert crystal.is_legendary
        assert crystal.agent_id == "ops"

    def test_foreign_kind(self, storage):
        mems = _group(storage, "telemetry drift sensor", 5, 0.2, kind="insight")
        result = reforge_memories(storage, [m.id for m in mems],
                                  rng=random.Random(1), now=NOW)
        assert "5 insights" in result.summary.splitlines()[1]
        assert storage.load_crystal(result.result_crystal_id).crystal_type == "milestone"

    def test_too_few_ids_writes_nothing(self, storage):
        mems = _group(storage, "deploy pipeline staging", 4, 0.2)
        assert reforge_memories(storage, [m.id for m in mems], now=NOW) is None
        assert storage.unfused_crystals() == []
        assert storage.recent_reforged() == []
        assert not any(e.is_archived for e in storage.decay_entries().values())

    def test_unresolved_ids_write_nothing(self, storage):
        mems = _group(storage, "deploy pipeline staging", 4, 0.2)
        ids = [m.id for m in mems] + ["doesnotexist"]
        assert reforge_memories(storage, ids, now=NOW) is None
        assert storage.recent_reforged() == []

    def test_crystal_failure_still_archives(self, storage):
        mems = _group(storage, "deploy pipeline staging", 5, 0.2)
        with mock.patch.object(storage, "save_crystal",
                               side_effect=StoreError("no such table: crystals")):
            result = reforge_memories(storage, [m.id for m in mems], now=NOW)
        assert result is not None
        assert result.result_crystal_id is None
        assert all(storage.load_decay(m.id).is_archived for m in mems)
        assert len(storage.recent_reforged()) == 1

    def test_archive_failure_still_logs_reforge(self, storage):
        mems = _group(storage, "deploy pipeline staging", 5, 0.2)
        with mock.patch.object(storage, "upsert_decay",
                               side_effect=StoreError("database is locked")):
            result = reforge_memories(storage, [m.id for m in mems], now=NOW)
        assert result.result_crystal_id is not None
        assert not any(storage.load_decay(m.id).is_archived for m in mems)
        assert [r.id for r in recent_reforges(storage)] == [result.id]

    def test_reforged_sources_leave_targeting(self, storage):
        mems = _group(storage, "deploy pipeline staging", 6, 0.2)
        reforge_memories(storage, [m.id for m in mems], now=NOW)
        assert find_reforge_targets(storage) == []


# ── Auto ───────────────────────────────────────────────────────────────


class TestAutoReforge:
    def test_small_groups_left_alone(self, storage):
        _group(storage, "deploy pipeline staging", 7, 0.2)
        assert auto_reforge(storage, now=NOW) == []

    def test_at_most_two_per_cycle(self, storage):
        first = _group(storage, "kafka consumer lag", 9, 0.06)
        second = _group(storage, "invoice rounding tax", 9, 0.15)
        third = _group(storage, "gpu memory fragmentation", 9, 0.25)
        stats = PassStats()
        crystals = auto_reforge(storage, rng=random.Random(5), now=NOW, stats=stats)

        assert len(crystals) == 2
        assert stats.reforged == 2
        assert set(crystals[0].source_memory_ids) == {m.id for m in first}
        assert set(crystals[1].source_memory_ids) == {m.id for m in second}
        assert not any(storage.load_decay(m.id).is_archived for m in third)

    def test_after_decay_pass(self, storage):
        # Ages ~100h put notes inside the reforge band
        for i in range(8):
            storage.save_memory(Memory(content=f"cache eviction storm shard{i}",
                                       created_at=NOW - (100 + i) * HOUR))
        run_decay_pass(storage, now=NOW)
        crystals = auto_reforge(storage, now=NOW)
        assert len(crystals) == 1
        assert crystals[0].source_count == 8
