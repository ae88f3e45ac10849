"""Decay scoring and archival. Memories that aren't used fade, then get archived."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field

import numpy as np

from memforge.models import DecayEntry, MemoryKind, PassStats, kind_value
from memforge.storage import Storage, StoreError

logger = logging.getLogger(__name__)

HALF_LIFE_HOURS = 72.0
ACCESS_BOOST = 0.1          # per recorded access
MAX_ACCESS_BOOST = 0.3
ANCHOR_FLOOR = 0.3
ARCHIVE_THRESHOLD = 0.15
REFORGE_CEILING = 0.4       # candidates: ARCHIVE_THRESHOLD <= score < REFORGE_CEILING
PASS_LIMIT = 2000
CHUNK_SIZE = 100

# Goals persist, errors fade
KIND_MULTIPLIERS: dict[str, float] = {
    MemoryKind.GOAL.value: 1.3,
    MemoryKind.FACT.value: 1.2,
    MemoryKind.OUTCOME.value: 1.0,
    MemoryKind.OBSERVATION.value: 0.9,
    MemoryKind.NOTE.value: 0.8,
    MemoryKind.ERROR.value: 0.7,
}


def decay_score(age_hours: float, access_count: int,
                kind: str | MemoryKind, is_anchored: bool) -> float:
    """Freshness of a memory in [0, 1].

    Formula: 0.5^(age/72) + min(0.3, 0.1 * accesses), times the kind
    multiplier. Anchored memories never drop below 0.3.
    """
    score = math.pow(0.5, age_hours / HALF_LIFE_HOURS)
    score += min(MAX_ACCESS_BOOST, access_count * ACCESS_BOOST)
    score *= KIND_MULTIPLIERS.get(kind_value(kind), 1.0)
    if is_anchored:
        score = max(ANCHOR_FLOOR, score)
    return max(0.0, min(1.0, score))


def decay_scores(ages: np.ndarray, access_counts: np.ndarray,
                 kinds: list[str | MemoryKind], anchored: np.ndarray) -> np.ndarray:
    """Vectorised decay_score over a whole pass."""
    ages = np.asarray(ages, dtype=np.float64)
    access = np.asarray(access_counts, dtype=np.float64)
    anchored = np.asarray(anchored, dtype=bool)
    multipliers = np.array(
        [KIND_MULTIPLIERS.get(kind_value(k), 1.0) for k in kinds], dtype=np.float64,
    )

    scores = np.power(0.5, ages / HALF_LIFE_HOURS)
    scores = scores + np.minimum(MAX_ACCESS_BOOST, access * ACCESS_BOOST)
    scores = scores * multipliers
    scores = np.where(anchored, np.maximum(ANCHOR_FLOOR, scores), scores)
    return np.clip(scores, 0.0, 1.0)


@dataclass
class DecayPassResult:
    scored: int = 0
    archived: int = 0
    candidates: list[DecayEntry] = field(default_factory=list)
    failed_chunks: int = 0
    stats: PassStats = field(default_factory=PassStats)


def run_decay_pass(storage: Storage, now: float | None = None,
                   stats: PassStats | None = None,
                   limit: int = PASS_LIMIT,
                   chunk_size: int = CHUNK_SIZE) -> DecayPassResult:
    """Score the most recent memories, archive the stale ones.

    Returns the scored/archived counts and the reforge candidates
    (unanchored memories with ARCHIVE_THRESHOLD <= score < REFORGE_CEILING).
    A failed chunk write is logged and the pass moves on; the next pass
    recomputes everything from source state.
    """
    if now is None:
        now = time.time()
    if stats is None:
        stats = PassStats()
    result = DecayPassResult(stats=stats)
    stats.passes += 1

    try:
        memories = storage.recent_memories(limit=limit)
        existing = storage.decay_entries()
    except StoreError as exc:
        logger.warning("decay pass: could not load memories: %s", exc)
        return result

    if not memories:
        logger.info("decay pass: no memories to score")
        return result

    ages = np.array([max(0.0, (now - m.created_at) / 3600.0) for m in memories])
    access = np.array([existing[m.id].access_count if m.id in existing else 0
                       for m in memories])
    anchored = np.array([m.is_anchored for m in memories])
    scores = decay_scores(ages, access, [m.kind for m in memories], anchored)

    upserts: list[DecayEntry] = []
    for mem, score, accesses in zip(memories, scores.tolist(), access.tolist()):
        previous = existing.get(mem.id)
        was_archived = previous.is_archived if previous else False
        should_archive = (score < ARCHIVE_THRESHOLD and not mem.is_anchored
                          and not was_archived)

        upserts.append(DecayEntry(
            memory_id=mem.id,
            decay_score=round(score, 3),
            access_count=int(accesses),
            is_archived=was_archived or should_archive,
            archive_reason=(
                f"Auto-archived: decay score {score:.3f} below {ARCHIVE_THRESHOLD}"
                if should_archive else None
            ),
            updated_at=now,
        ))
        if should_archive:
            result.archived += 1

        if ARCHIVE_THRESHOLD <= score < REFORGE_CEILING and not mem.is_anchored:
            result.candidates.append(DecayEntry(
                memory_id=mem.id,
                decay_score=score,
                access_count=int(accesses),
                is_archived=False,
                last_accessed=mem.created_at,
                updated_at=now,
            ))

    for start in range(0, len(upserts), chunk_size):
        chunk = upserts[start:start + chunk_size]
        try:
            storage.upsert_decay(chunk)
        except StoreError as exc:
            result.failed_chunks += 1
            logger.warning("decay pass: upsert of chunk %d-%d failed: %s",
                           start, start + len(chunk) - 1, exc)

    result.scored = len(memories)
    stats.scored += result.scored
    stats.archived += result.archived
    stats.failed_writes += result.failed_chunks

    logger.info("decay pass: scored %d memories, archived %d, %d reforge candidates",
                result.scored, result.archived, len(result.candidates))
    return result


def record_access(storage: Storage, memory_id: str,
                  now: float | None = None) -> None:
    """A memory was read into context: bump its access count."""
    if now is None:
        now = time.time()
    try:
        storage.increment_access(memory_id, now)
    except StoreError as exc:
        logger.warning("record access %s failed: %s", memory_id, exc)


def is_archived(storage: Storage, memory_id: str) -> bool:
    try:
        entry = storage.load_decay(memory_id)
    except StoreError as exc:
        logger.warning("archive lookup %s failed: %s", memory_id, exc)
        return False
    return entry.is_archived if entry else False


@dataclass
class ReforgeStats:
    total_memories: int = 0
    archived: int = 0
    decaying: int = 0
    healthy: int = 0
    reforged_crystals: int = 0
    total_compressed: int = 0
    avg_decay: float = 1.0


def reforge_stats(storage: Storage) -> ReforgeStats:
    """Decay and reforge totals for dashboards."""
    try:
        entries = list(storage.decay_entries().values())
        reforged = storage.recent_reforged()
    except StoreError as exc:
        logger.warning("reforge stats unavailable: %s", exc)
        return ReforgeStats()

    stats = ReforgeStats(
        total_memories=len(entries),
        archived=sum(1 for e in entries if e.is_archived),
        decaying=sum(1 for e in entries
                     if not e.is_archived and e.decay_score < REFORGE_CEILING),
        healthy=sum(1 for e in entries
                    if not e.is_archived and e.decay_score >= REFORGE_CEILING),
        reforged_crystals=len(reforged),
        total_compressed=sum(r.source_count for r in reforged),
    )
    if entries:
        stats.avg_decay = round(float(np.mean([e.decay_score for e in entries])), 2)
    return stats
