"""Memory reforging. Related decaying memories compress into one legendary crystal.

1. find_reforge_targets: greedy keyword-overlap groups of stale memories
2. reforge_memories: summarize a group, create its crystal, archive sources
3. auto_reforge: reforge the largest-enough groups during a dream cycle

Reforge is not transactional. Crystal creation, source archival and the
reforge log are independent writes; a failure in one is logged and the
others still happen.
"""

from __future__ import annotations

import logging
import random
import time
from collections import Counter
from datetime import datetime, timezone

import numpy as np

from memforge.decay import REFORGE_CEILING
from memforge.keywords import KeywordFn, extract_keywords
from memforge.models import (
    SHARED_AGENT,
    Crystal,
    DecayEntry,
    MemoryKind,
    PassStats,
    ReforgedCrystal,
    ReforgeTarget,
    kind_value,
)
from memforge.storage import Storage, StoreError

logger = logging.getLogger(__name__)

REFORGE_MIN_SOURCES = 5
AUTO_REFORGE_MIN_SOURCES = 8
AUTO_REFORGE_MAX_PER_CYCLE = 2
CANDIDATE_LIMIT = 200
CANDIDATE_FLOOR = 0.05
MIN_KEYWORDS = 2
MIN_OVERLAP = 2
SCAN_WINDOW = 8             # unassigned candidates compared against each seed
TARGET_KEYWORD_SAMPLE = 8
SUMMARY_KEYWORDS = 10
SNIPPET_CHARS = 100
SUMMARY_SNIPPETS = 5

LEGENDARY_PREFIXES = (
    "The", "Ancient", "Eternal", "Lost", "Forgotten", "Sacred",
    "Shattered", "Luminous", "Shadow", "Crystal", "Void", "Genesis",
)

LEGENDARY_SUFFIXES = (
    "Archive", "Chronicle", "Codex", "Fragment", "Remnant", "Tome",
    "Memory", "Echo", "Sigil", "Prism", "Core", "Nexus",
)

# Crystal type by dominant memory kind, "milestone" otherwise
CRYSTAL_TYPES = {
    MemoryKind.ERROR.value: "incident",
    MemoryKind.GOAL.value: "decision",
}


def legendary_name(keywords: list[str], rng: random.Random | None = None) -> str:
    """'<Prefix> <Keyword> <Suffix>', seeded by the top keyword."""
    rng = rng or random.Random()
    prefix = rng.choice(LEGENDARY_PREFIXES)
    suffix = rng.choice(LEGENDARY_SUFFIXES)
    keyword = keywords[0][:1].upper() + keywords[0][1:] if keywords else "Unknown"
    return f"{prefix} {keyword} {suffix}"


# ── Targeting ──────────────────────────────────────────────────────────


def find_reforge_targets(storage: Storage,
                         keyword_fn: KeywordFn = extract_keywords) -> list[ReforgeTarget]:
    """Groups of >= 5 stale, unarchived memories sharing >= 2 keywords.

    Greedy and order dependent: candidates are visited stalest first, each
    seed only looks at the next SCAN_WINDOW unassigned candidates, and a
    memory joins at most one group. Memories with fewer than 2 keywords are
    left out. Groups come back stalest (lowest mean decay) first.
    """
    try:
        candidates = storage.decay_candidates(CANDIDATE_FLOOR, REFORGE_CEILING,
                                              CANDIDATE_LIMIT)
    except StoreError as exc:
        logger.warning("reforge targeting: decay entries unavailable: %s", exc)
        return []
    if len(candidates) < REFORGE_MIN_SOURCES:
        return []

    try:
        memories = storage.memories_by_ids([c.memory_id for c in candidates])
    except StoreError as exc:
        logger.warning("reforge targeting: memories unavailable: %s", exc)
        return []
    if len(memories) < REFORGE_MIN_SOURCES:
        return []

    by_id = {m.id: m for m in memories}
    pool: list[tuple[str, set[str], list[str], float]] = []
    for c in candidates:
        mem = by_id.get(c.memory_id)
        if mem is None:
            continue
        keywords = keyword_fn(mem.content)
        if len(keywords) < MIN_KEYWORDS:
            continue
        pool.append((mem.id, set(keywords), keywords, c.decay_score))

    targets: list[ReforgeTarget] = []
    assigned: set[int] = set()
    for i, (seed_id, seed_set, seed_keywords, seed_decay) in enumerate(pool):
        if i in assigned:
            continue
        assigned.add(i)
        member_ids = [seed_id]
        decays = [seed_decay]

        scanned = 0
        for j in range(i + 1, len(pool)):
            if scanned >= SCAN_WINDOW:
                break
            if j in assigned:
                continue
            scanned += 1
            other_id, other_set, _, other_decay = pool[j]
            if len(seed_set & other_set) >= MIN_OVERLAP:
                member_ids.append(other_id)
                decays.append(other_decay)
                assigned.add(j)

        if len(member_ids) >= REFORGE_MIN_SOURCES:
            targets.append(ReforgeTarget(
                memory_ids=member_ids,
                keywords=seed_keywords[:TARGET_KEYWORD_SAMPLE],
                count=len(member_ids),
                avg_decay=float(np.mean(decays)),
            ))

    targets.sort(key=lambda t: t.avg_decay)
    return targets


# ── Reforging ──────────────────────────────────────────────────────────


def _day(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


def reforge_memories(storage: Storage, memory_ids: list[str],
                     reforged_by: str = "soul",
                     keyword_fn: KeywordFn = extract_keywords,
                     rng: random.Random | None = None,
                     now: float | None = None) -> ReforgedCrystal | None:
    """Compress >= 5 memories into one legendary crystal and archive them.

    Returns None, writing nothing, when fewer than 5 memories resolve.
    """
    if len(memory_ids) < REFORGE_MIN_SOURCES:
        logger.info("reforge: need at least %d memories, got %d",
                    REFORGE_MIN_SOURCES, len(memory_ids))
        return None
    if now is None:
        now = time.time()

    try:
        memories = storage.memories_by_ids(memory_ids)
    except StoreError as exc:
        logger.warning("reforge: could not load memories: %s", exc)
        return None
    if len(memories) < REFORGE_MIN_SOURCES:
        logger.info("reforge: only %d of %d memories resolved",
                    len(memories), len(memory_ids))
        return None

    keywords: dict[str, None] = {}
    agents: dict[str, None] = {}
    kinds: Counter[str] = Counter()
    snippets: list[str] = []
    for mem in memories:
        for kw in keyword_fn(mem.content):
            keywords.setdefault(kw, None)
        agents.setdefault(mem.agent_id, None)
        kinds[kind_value(mem.kind)] += 1
        snippets.append(mem.content[:SNIPPET_CHARS])

    top_keywords = list(keywords)[:SUMMARY_KEYWORDS]
    agent_list = [a for a in agents if a != SHARED_AGENT]
    ranked_kinds = kinds.most_common()
    kinds_summary = ", ".join(f"{count} {kind}s" for kind, count in ranked_kinds)

    lines = [
        f"REFORGED CRYSTAL: {_day(memories[0].created_at)} to "
        f"{_day(memories[-1].created_at)}",
        f"Compressed {len(memories)} memories ({kinds_summary}) "
        "into a single legendary crystal.",
        f"Agents involved: {', '.join(agent_list) or 'none'}.",
        f"Core themes: {', '.join(top_keywords)}.",
        "",
        "Key moments:",
    ]
    lines.extend(f"  {n}. {s}..." for n, s in enumerate(snippets[:SUMMARY_SNIPPETS], 1))
    if len(memories) > SUMMARY_SNIPPETS:
        lines.append(f"  ... and {len(memories) - SUMMARY_SNIPPETS} more.")
    summary = "\n".join(lines)

    name = legendary_name(top_keywords, rng)
    dominant_kind = ranked_kinds[0][0]
    source_ids = [m.id for m in memories]

    crystal = Crystal(
        name=name,
        description=summary,
        crystal_type=CRYSTAL_TYPES.get(dominant_kind, "milestone"),
        crystal_class="godhand",
        star_rating=5,
        xp=len(memories) * 100,
        level=20,
        is_legendary=True,
        agent_id=reforged_by,
        created_at=now,
    )
    result_crystal_id = None
    try:
        storage.save_crystal(crystal)
        result_crystal_id = crystal.id
        logger.info("reforge: created legendary crystal %r (%s)", name, crystal.id)
    except StoreError as exc:
        logger.warning("reforge: could not create crystal %r: %s", name, exc)

    try:
        storage.upsert_decay([
            DecayEntry(memory_id=mid, decay_score=0.0, is_archived=True,
                       archive_reason=f'Reforged into "{name}"', updated_at=now)
            for mid in source_ids
        ])
    except StoreError as exc:
        logger.warning("reforge: archiving %d sources of %r failed: %s",
                       len(source_ids), name, exc)

    reforged = ReforgedCrystal(
        source_memory_ids=source_ids,
        result_crystal_id=result_crystal_id,
        compression_ratio=1 / len(memories),
        source_count=len(memories),
        reforged_by=reforged_by,
        legendary_name=name,
        summary=summary,
        keywords=top_keywords,
        created_at=now,
    )
    try:
        storage.save_reforged(reforged)
    except StoreError as exc:
        logger.warning("reforge: could not log reforge %s: %s", reforged.id, exc)

    logger.info("reforge: %d memories -> %r", len(memories), name)
    return reforged


def auto_reforge(storage: Storage, keyword_fn: KeywordFn = extract_keywords,
                 rng: random.Random | None = None, now: float | None = None,
                 stats: PassStats | None = None) -> list[ReforgedCrystal]:
    """Reforge up to 2 targets of >= 8 memories."""
    crystals: list[ReforgedCrystal] = []
    for target in find_reforge_targets(storage, keyword_fn):
        if target.count < AUTO_REFORGE_MIN_SOURCES:
            continue
        reforged = reforge_memories(storage, target.memory_ids,
                                    keyword_fn=keyword_fn, rng=rng, now=now)
        if reforged is not None:
            crystals.append(reforged)
        if len(crystals) >= AUTO_REFORGE_MAX_PER_CYCLE:
            break

    if stats is not None:
        stats.reforged += len(crystals)
    if crystals:
        logger.info("auto reforge: reforged %d group(s)", len(crystals))
    return crystals


def recent_reforges(storage: Storage, limit: int = 10) -> list[ReforgedCrystal]:
    try:
        return storage.recent_reforged(limit=limit)
    except StoreError as exc:
        logger.warning("recent reforges unavailable: %s", exc)
        return []
