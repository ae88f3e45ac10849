"""Tests for dream sessions, clustering and the full dream cycle."""

import os
import random
import tempfile
from unittest import mock

import pytest

from memforge.dream import (
    cluster_memories,
    end_session,
    generate_insight,
    run_dream_cycle,
    start_session,
)
from memforge.models import (
    DecayEntry,
    InsightCategory,
    Manifestation,
    ManifestationCategory,
    ManifestationStatus,
    Memory,
    MemoryCluster,
    MemoryKind,
    PassStats,
    SessionStatus,
    TriggerType,
)
from memforge.storage import Storage

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


def _save(storage, content, age_hours=1.0, kind=MemoryKind.NOTE, agent="alpha"):
    mem = Memory(content=content, agent_id=agent, kind=kind,
                 created_at=NOW - age_hours * HOUR)
    storage.save_memory(mem)
    return mem


def _cluster(kinds):
    memories = [Memory(content=f"deploy pipeline step{i}", kind=k, agent_id="alpha")
                for i, k in enumerate(kinds)]
    return MemoryCluster(keywords=["deploy", "pipeline"], memories=memories,
                         agents=["alpha"] * len(memories))


# ── Clustering ─────────────────────────────────────────────────────────


class TestClustering:
    def test_groups_by_keywords(self):
        memories = [
            Memory(content="deploy pipeline staging"),
            Memory(content="tax invoice"),
            Memory(content="deploy pipeline prod"),
            Memory(content="tax invoice rounding"),
            Memory(content="tax invoice vat"),
            Memory(content="ok"),
        ]
        clusters = cluster_memories(memories)
        assert [len(c.memories) for c in clusters] == [3, 2]
        assert {m.content for m in clusters[0].memories} == {
            "tax invoice", "tax invoice rounding", "tax invoice vat"}
        assert "rounding" in clusters[0].keywords
        assert "vat" in clusters[0].keywords

    def test_singletons_kept(self):
        clusters = cluster_memories([Memory(content="alpha centauri"),
                                     Memory(content="violin concerto")])
        assert [len(c.memories) for c in clusters] == [1, 1]

    def test_custom_keyword_fn(self):
        memories = [Memory(content="a"), Memory(content="b")]
        clusters = cluster_memories(memories, keyword_fn=lambda text: ["same"])
        assert len(clusters) == 1


class TestInsights:
    def test_errors_become_correction(self):
        insight = generate_insight(_cluster([MemoryKind.ERROR] * 3 + [MemoryKind.OUTCOME]),
                                   now=NOW)
        assert insight.category == InsightCategory.CORRECTION
        assert insight.confidence == 0.7
        assert insight.generated_at == NOW
        assert "3/4" in insight.insight

    def test_outcomes_become_pattern(self):
        insight = generate_insight(_cluster([MemoryKind.OUTCOME] * 4))
        assert insight.category == InsightCategory.PATTERN
        assert insight.confidence == 0.8

    def test_busy_cluster_becomes_summary(self):
        insight = generate_insight(_cluster([MemoryKind.NOTE] * 4))
        assert insight.category == InsightCategory.SUMMARY
        assert insight.confidence == 0.5
        assert len(insight.source_memories) == 4

    def test_quiet_cluster_says_nothing(self):
        assert generate_insight(_cluster([MemoryKind.NOTE] * 2)) is None


# ── Sessions ───────────────────────────────────────────────────────────


class TestSessions:
    def test_start_and_end(self, storage):
        session = start_session(storage, "scheduled", fleet_idle_hours=2.5, now=NOW)
        assert storage.load_session(session.id).status == SessionStatus.DREAMING

        end_session(storage, session, now=NOW + 5)
        stored = storage.load_session(session.id)
        assert stored.trigger_type == TriggerType.SCHEDULED
        assert stored.fleet_idle_hours == 2.5
        assert stored.status == SessionStatus.COMPLETED
        assert stored.ended_at == NOW + 5

    def test_end_twice_is_noop(self, storage):
        session = start_session(storage, now=NOW)
        end_session(storage, session, now=NOW + 5)
        end_session(storage, session, SessionStatus.INTERRUPTED, now=NOW + 9)
        stored = storage.load_session(session.id)
        assert stored.status == SessionStatus.COMPLETED
        assert stored.ended_at == NOW + 5


# ── Cycle ──────────────────────────────────────────────────────────────


class TestDreamCycle:
    def test_too_few_memories(self, storage):
        _save(storage, "deploy pipeline staging")
        _save(storage, "deploy pipeline prod")
        session = run_dream_cycle(storage, now=NOW)
        assert session.status == SessionStatus.COMPLETED
        assert session.memories_scanned == 2
        assert session.proposals_created == 0
        assert storage.load_session(session.id).ended_at == NOW

    def test_window_and_archive_filter(self, storage):
        _save(storage, "deploy pipeline staging")
        _save(storage, "deploy pipeline prod")
        archived = _save(storage, "deploy pipeline canary")
        _save(storage, "deploy pipeline legacy", age_hours=60)
        storage.upsert_decay([DecayEntry(memory_id=archived.id, decay_score=0.1,
                                         is_archived=True, updated_at=NOW)])
        session = run_dream_cycle(storage, now=NOW)
        assert session.memories_scanned == 2

    def test_full_cycle(self, storage):
        for i in range(4):
            _save(storage, f"deploy pipeline canary release step{i}",
                  age_hours=i + 1, kind=MemoryKind.OUTCOME,
                  agent=("alpha", "beta")[i % 2])
        stats = PassStats()
        session = run_dream_cycle(storage, TriggerType.IDLE, fleet_idle_hours=3,
                                  now=NOW, stats=stats)

        assert session.status == SessionStatus.COMPLETED
        assert session.memories_scanned == 4
        assert session.clusters_found == 1
        assert session.insights_generated == 1
        assert session.proposals_created == 3

        stored = storage.manifestations(session_id=session.id)
        categories = sorted(m.category.value for m in stored)
        assert categories == ["association", "meeting", "pattern"]
        pattern = next(m for m in stored if m.category == ManifestationCategory.PATTERN)
        assert pattern.status == ManifestationStatus.AUTO_EXECUTED

        executed = sum(m.status == ManifestationStatus.AUTO_EXECUTED for m in stored)
        assert session.auto_executed == executed
        assert stats.auto_executed == executed
        assert storage.load_session(session.id).proposals_created == 3
        assert len(storage.recent_insights()) == 1

    def test_expires_stale_proposals(self, storage):
        stale = Manifestation(title="old", description="old",
                              category=ManifestationCategory.MEETING,
                              confidence=0.6, priority=2,
                              proposed_action={"type": "trigger_meeting"},
                              created_at=NOW - 80 * HOUR)
        storage.save_manifestations([stale])
        run_dream_cycle(storage, now=NOW)
        assert storage.load_manifestation(stale.id).status == ManifestationStatus.EXPIRED

    def test_auto_reforge(self, storage):
        for i in range(9):
            mem = _save(storage, f"kafka consumer lag partition{i}", age_hours=200 + i)
            storage.upsert_decay([DecayEntry(memory_id=mem.id,
                                             decay_score=0.1 + i * 0.001,
                                             updated_at=NOW)])
        for text in ("violin concerto", "glacier melting", "chess opening"):
            _save(storage, text)

        run_dream_cycle(storage, now=NOW, reforge=False)
        assert storage.recent_reforged() == []

        run_dream_cycle(storage, rng=random.Random(2), now=NOW)
        reforged = storage.recent_reforged()
        assert len(reforged) == 1
        assert reforged[0].source_count == 9

    def test_failure_interrupts_session(self, storage):
        for i in range(3):
            _save(storage, f"deploy pipeline step{i}")
        with mock.patch("memforge.dream.generate_proposals",
                        side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                run_dream_cycle(storage, now=NOW)
        session = storage.recent_sessions(limit=1)[0]
        assert session.status == SessionStatus.INTERRUPTED
        assert session.ended_at == NOW
