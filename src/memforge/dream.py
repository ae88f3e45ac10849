"""Dream mode. Periodic analysis of recent memories into insights and proposals.

One cycle = one DreamSession:
    expire stale proposals -> cluster recent memories -> derive insights ->
    generate proposals (auto-executing the safe ones) -> prune weak
    associations -> auto-reforge -> close the session with its counters.
"""

from __future__ import annotations

import logging
import random
import time

from memforge.associations import prune_weak_associations
from memforge.executor import expire_old_proposals
from memforge.keywords import KeywordFn, extract_keywords
from memforge.models import (
    SHARED_AGENT,
    DreamInsight,
    DreamSession,
    InsightCategory,
    Memory,
    MemoryCluster,
    MemoryKind,
    PassStats,
    SessionStatus,
    TriggerType,
)
from memforge.proposals import generate_proposals
from memforge.reforge import auto_reforge
from memforge.storage import Storage, StoreError

logger = logging.getLogger(__name__)

DREAM_WINDOW_HOURS = 48.0
MIN_DREAM_MEMORIES = 3


# ── Sessions ───────────────────────────────────────────────────────────


def start_session(storage: Storage,
                  trigger_type: str | TriggerType = TriggerType.IDLE,
                  fleet_idle_hours: float | None = None,
                  now: float | None = None) -> DreamSession:
    if now is None:
        now = time.time()
    session = DreamSession(
        trigger_type=TriggerType(trigger_type),
        fleet_idle_hours=fleet_idle_hours,
        started_at=now,
    )
    try:
        storage.save_session(session)
    except StoreError as exc:
        logger.warning("dream session %s not persisted: %s", session.id, exc)
    return session


def end_session(storage: Storage, session: DreamSession,
                status: SessionStatus = SessionStatus.COMPLETED,
                now: float | None = None) -> DreamSession:
    """Close a session with its final counters. Closing twice does nothing."""
    if session.status != SessionStatus.DREAMING:
        return session
    session.status = status
    session.ended_at = time.time() if now is None else now
    try:
        storage.save_session(session)
    except StoreError as exc:
        logger.warning("dream session %s close not persisted: %s", session.id, exc)
    return session


def recent_sessions(storage: Storage, limit: int = 5) -> list[DreamSession]:
    try:
        return storage.recent_sessions(limit=limit)
    except StoreError as exc:
        logger.warning("recent dream sessions unavailable: %s", exc)
        return []


# ── Clustering & insights ──────────────────────────────────────────────


def cluster_memories(memories: list[Memory],
                     keyword_fn: KeywordFn = extract_keywords) -> list[MemoryCluster]:
    """Greedy keyword clustering of recent memories, biggest cluster first.

    A memory joins the seed's cluster when they share >= 2 keywords or more
    than 40% of the longer keyword list.
    """
    keyed = [(m, keyword_fn(m.content)) for m in memories]
    clusters: list[MemoryCluster] = []
    assigned: set[int] = set()

    for i, (seed, seed_keywords) in enumerate(keyed):
        if i in assigned or not seed_keywords:
            continue
        assigned.add(i)
        cluster = MemoryCluster(keywords=list(seed_keywords), memories=[seed],
                                agents=[seed.agent_id])
        seed_set = set(seed_keywords)

        for j in range(i + 1, len(keyed)):
            if j in assigned:
                continue
            other, other_keywords = keyed[j]
            if not other_keywords:
                continue
            overlap = len(seed_set.intersection(other_keywords))
            similarity = overlap / max(len(seed_keywords), len(other_keywords))
            if overlap >= 2 or similarity > 0.4:
                cluster.memories.append(other)
                cluster.agents.append(other.agent_id)
                cluster.keywords.extend(
                    kw for kw in other_keywords if kw not in cluster.keywords
                )
                assigned.add(j)

        clusters.append(cluster)

    clusters.sort(key=lambda c: len(c.memories), reverse=True)
    return clusters


def generate_insight(cluster: MemoryCluster,
                     now: float | None = None) -> DreamInsight | None:
    """Errors, successes or plain activity. None if the cluster says nothing."""
    agents = [a for a in dict.fromkeys(cluster.agents) if a != SHARED_AGENT]
    topic = ", ".join(cluster.keywords[:5])
    total = len(cluster.memories)
    outcomes = sum(1 for m in cluster.memories if m.kind == MemoryKind.OUTCOME)
    errors = sum(1 for m in cluster.memories if m.kind == MemoryKind.ERROR)

    if errors > outcomes and errors >= 2:
        text = (f"Recurring issues around [{topic}]: {errors}/{total} memories "
                f"are errors. Agents involved: {', '.join(agents)}.")
        category = InsightCategory.CORRECTION
        confidence = min(0.9, 0.4 + errors * 0.1)
    elif outcomes >= 3:
        text = (f"Strong track record with [{topic}]: {outcomes}/{total} "
                f"successful outcomes across {len(agents)} agent(s).")
        category = InsightCategory.PATTERN
        confidence = min(0.9, 0.4 + outcomes * 0.1)
    elif total >= 4:
        text = (f"High activity around [{topic}]: {total} related memories "
                f"in the last {DREAM_WINDOW_HOURS:.0f}h. "
                f"Agents: {', '.join(agents)}.")
        category = InsightCategory.SUMMARY
        confidence = 0.5
    else:
        return None

    return DreamInsight(
        insight=text,
        category=category,
        confidence=round(confidence, 2),
        source_memories=[m.id for m in cluster.memories],
        generated_at=time.time() if now is None else now,
    )


# ── Cycle ──────────────────────────────────────────────────────────────


def run_dream_cycle(storage: Storage,
                    trigger_type: str | TriggerType = TriggerType.IDLE,
                    fleet_idle_hours: float | None = None,
                    keyword_fn: KeywordFn = extract_keywords,
                    rng: random.Random | None = None,
                    now: float | None = None,
                    window_hours: float = DREAM_WINDOW_HOURS,
                    reforge: bool = True,
                    stats: PassStats | None = None) -> DreamSession:
    """Run one dream cycle and return its closed session.

    An unexpected error closes the session as interrupted and propagates.
    """
    if now is None:
        now = time.time()
    session = start_session(storage, trigger_type, fleet_idle_hours, now)
    try:
        expire_old_proposals(storage, now)

        try:
            memories = storage.memories_since(now - window_hours * 3600)
        except StoreError as exc:
            logger.warning("dream %s: memories unavailable: %s", session.id, exc)
            memories = []
        session.memories_scanned = len(memories)
        if len(memories) < MIN_DREAM_MEMORIES:
            logger.info("dream %s: not enough recent memories (%d)",
                        session.id, len(memories))
            return end_session(storage, session, now=now)

        clusters = cluster_memories(memories, keyword_fn)
        session.clusters_found = len(clusters)

        insights = [
            insight for insight in (
                generate_insight(c, now) for c in clusters if len(c.memories) >= 2
            )
            if insight is not None
        ]
        session.insights_generated = len(insights)
        if insights:
            try:
                storage.save_insights(insights)
            except StoreError as exc:
                logger.warning("dream %s: %d insights not persisted: %s",
                               session.id, len(insights), exc)

        proposals, executed = generate_proposals(
            storage, clusters, insights, session.id, keyword_fn, now, stats,
        )
        session.proposals_created = len(proposals)
        session.auto_executed = executed

        prune_weak_associations(storage)
        if reforge:
            auto_reforge(storage, keyword_fn, rng, now, stats)
    except Exception:
        end_session(storage, session, SessionStatus.INTERRUPTED, now)
        raise

    logger.info("dream %s: %d memories, %d clusters, %d insights, %d proposals",
                session.id, session.memories_scanned, session.clusters_found,
                session.insights_generated, session.proposals_created)
    return end_session(storage, session, now=now)
