"""Association graph between memories. Built on write, reinforced on use, pruned in dreams."""

from __future__ import annotations

import logging
import time

from memforge.keywords import KeywordFn, extract_keywords
from memforge.models import SHARED_AGENT, Association, Memory
from memforge.storage import Storage, StoreError

logger = logging.getLogger(__name__)

MIN_STRENGTH = 0.15
SCAN_WINDOW = 30
MAX_NEW_LINKS = 5


def build_associations(storage: Storage, memory: Memory,
                       keyword_fn: KeywordFn = extract_keywords,
                       now: float | None = None) -> int:
    """Link a freshly written memory to related recent memories.

    Strength is the keyword overlap ratio plus a temporal bonus (0.2 within
    an hour, 0.1 within six). Only the 5 strongest links of at least 0.15
    are stored. Returns how many were written.
    """
    if now is None:
        now = time.time()
    keywords = keyword_fn(memory.content)
    if not keywords:
        return 0

    try:
        recent = storage.memories_for_agents([memory.agent_id, SHARED_AGENT],
                                             exclude_id=memory.id,
                                             limit=SCAN_WINDOW)
    except StoreError as exc:
        logger.warning("associations for %s: recent memories unavailable: %s",
                       memory.id, exc)
        return 0

    links: list[Association] = []
    for other in recent:
        other_keywords = keyword_fn(other.content)
        if not other_keywords:
            continue
        overlap = set(keywords) & set(other_keywords)
        if not overlap:
            continue

        keyword_strength = len(overlap) / max(len(keywords), len(other_keywords))
        hours_apart = abs(memory.created_at - other.created_at) / 3600.0
        temporal_bonus = 0.2 if hours_apart < 1 else 0.1 if hours_apart < 6 else 0.0
        strength = min(1.0, keyword_strength + temporal_bonus)
        if strength < MIN_STRENGTH:
            continue

        assoc_type = "related"
        if hours_apart < 1:
            assoc_type = "sequential"
        if keyword_strength > 0.5:
            assoc_type = "similar"

        links.append(Association(
            memory_id=memory.id,
            related_memory_id=other.id,
            association_type=assoc_type,
            strength=round(strength, 2),
            created_at=now,
        ))

    if not links:
        return 0
    links.sort(key=lambda a: a.strength, reverse=True)
    links = links[:MAX_NEW_LINKS]
    try:
        storage.upsert_associations(links)
    except StoreError as exc:
        logger.warning("associations for %s: write failed: %s", memory.id, exc)
        return 0
    return len(links)


def reinforce_association(storage: Storage, memory_id: str,
                          related_memory_id: str, boost: float = 0.1) -> float | None:
    """Strengthen an existing link. Returns the new strength, None if absent."""
    try:
        assoc = storage.load_association(memory_id, related_memory_id)
        if assoc is None:
            return None
        strength = min(1.0, assoc.strength + boost)
        storage.update_association_strength(memory_id, related_memory_id, strength)
    except StoreError as exc:
        logger.warning("reinforce %s -> %s failed: %s",
                       memory_id, related_memory_id, exc)
        return None
    return strength


def prune_weak_associations(storage: Storage,
                            min_strength: float = MIN_STRENGTH) -> int:
    try:
        pruned = storage.delete_weak_associations(min_strength)
    except StoreError as exc:
        logger.warning("association pruning failed: %s", exc)
        return 0
    if pruned:
        logger.info("pruned %d weak associations", pruned)
    return pruned
