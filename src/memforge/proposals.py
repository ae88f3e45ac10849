"""Lucid dream proposals. Clusters and insights turn into actionable manifestations.

Each analyzer is independent; their outputs are concatenated, stamped with the
dream session, persisted in one batch and offered to the executor, which
auto-executes the safe high-confidence subset and leaves the rest proposed.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict

from memforge.executor import auto_execute
from memforge.keywords import KeywordFn, extract_keywords
from memforge.models import (
    BRIDGE_AGENT,
    SHARED_AGENT,
    Crystal,
    DreamInsight,
    InsightCategory,
    Manifestation,
    ManifestationCategory as Category,
    MemoryCluster,
    MemoryKind,
    PassStats,
)
from memforge.storage import Storage, StoreError

logger = logging.getLogger(__name__)

ASSOCIATION_SAMPLE = 8
WEAK_LINK_RANGE = (0.15, 0.4)
REINFORCE_BOOST = 0.15
FUSION_CANDIDATES = 50
USAGE_WINDOW = 100
MIN_USAGE_ROWS = 10
NON_PARTICIPANTS = frozenset({SHARED_AGENT, BRIDGE_AGENT})


def _insight_ids(insight: DreamInsight) -> list[str]:
    return [insight.id] if insight.id else []


# ── Associations ───────────────────────────────────────────────────────


def analyze_association_opportunities(storage: Storage,
                                      clusters: list[MemoryCluster]) -> list[Manifestation]:
    """Missing links and weak links between memories of the same cluster."""
    proposals = []
    for cluster in clusters:
        if len(cluster.memories) < 3:
            continue
        sample = [m.id for m in cluster.memories[:ASSOCIATION_SAMPLE]]
        try:
            existing = storage.associations_among(sample)
        except StoreError as exc:
            logger.warning("association analysis skipped for [%s]: %s",
                           ", ".join(cluster.keywords[:3]), exc)
            continue

        linked = {(a.memory_id, a.related_memory_id) for a in existing}
        missing_pairs = [
            [a, b]
            for i, a in enumerate(sample)
            for b in sample[i + 1:]
            if (a, b) not in linked and (b, a) not in linked
        ]
        low, high = WEAK_LINK_RANGE
        weak = [a for a in existing if low <= a.strength < high]

        missing = len(missing_pairs)
        if missing >= 2:
            proposals.append(Manifestation(
                title=f"Link {missing} unconnected memories",
                description=(
                    f"Cluster [{', '.join(cluster.keywords[:4])}] has "
                    f"{len(cluster.memories)} memories but {missing} pairs lack "
                    "associations. Creating links would strengthen this "
                    "knowledge cluster."
                ),
                category=Category.ASSOCIATION,
                confidence=min(0.9, 0.5 + missing * 0.05),
                priority=min(4, 2 + missing // 3),
                source_memories=sample[:5],
                proposed_action={
                    "type": "create_associations",
                    "memory_pairs": missing_pairs,
                    "cluster_keywords": cluster.keywords[:5],
                    "missing_count": missing,
                },
            ))

        if len(weak) >= 2:
            proposals.append(Manifestation(
                title=f"Reinforce {len(weak)} weak connections",
                description=(
                    f"Found {len(weak)} associations in "
                    f"[{', '.join(cluster.keywords[:3])}] cluster with strength "
                    f"<{high}. Dream analysis confirms these memories are "
                    "genuinely related."
                ),
                category=Category.ASSOCIATION,
                confidence=0.75,
                priority=2,
                source_memories=[a.memory_id for a in weak],
                proposed_action={
                    "type": "reinforce_associations",
                    "associations": [
                        {
                            "memory_id": a.memory_id,
                            "related_memory_id": a.related_memory_id,
                            "current_strength": a.strength,
                            "proposed_boost": REINFORCE_BOOST,
                        }
                        for a in weak
                    ],
                },
            ))
    return proposals


# ── Errors ─────────────────────────────────────────────────────────────


def analyze_error_patterns(clusters: list[MemoryCluster],
                           insights: list[DreamInsight]) -> list[Manifestation]:
    proposals = []
    for cluster in clusters:
        errors = [m for m in cluster.memories if m.kind == MemoryKind.ERROR]
        total = len(cluster.memories)
        if len(errors) < 3 or len(errors) / total <= 0.5:
            continue

        agents = list(dict.fromkeys(e.agent_id for e in errors))
        proposals.append(Manifestation(
            title=f"Recurring error: {' '.join(cluster.keywords[:3])}",
            description=(
                f"{len(errors)}/{total} memories in "
                f"[{', '.join(cluster.keywords[:4])}] are errors. Agents "
                f"affected: {', '.join(agents)}. This pattern suggests a "
                "systematic issue that needs attention."
            ),
            category=Category.CORRECTION,
            confidence=min(0.95, 0.5 + len(errors) * 0.1),
            priority=min(5, 3 + len(errors) // 2),
            source_memories=[e.id for e in errors][:5],
            proposed_action={
                "type": "flag_error_pattern",
                "error_keywords": cluster.keywords[:5],
                "affected_agents": agents,
                "error_count": len(errors),
                "sample_errors": [e.content[:200] for e in errors[:3]],
            },
        ))

    for insight in insights:
        if insight.category != InsightCategory.CORRECTION or insight.confidence < 0.6:
            continue
        proposals.append(Manifestation(
            title="Dream insight: correction needed",
            description=insight.insight,
            category=Category.CORRECTION,
            confidence=insight.confidence,
            priority=4,
            source_memories=list(insight.source_memories),
            source_insights=_insight_ids(insight),
            proposed_action={
                "type": "apply_correction",
                "insight_text": insight.insight,
            },
        ))
    return proposals


# ── Meetings ───────────────────────────────────────────────────────────


def analyze_cross_agent_patterns(clusters: list[MemoryCluster]) -> list[Manifestation]:
    proposals = []
    for cluster in clusters:
        agents = [a for a in dict.fromkeys(cluster.agents) if a not in NON_PARTICIPANTS]
        size = len(cluster.memories)
        if len(agents) < 2 or size < 4:
            continue

        topic = " + ".join(cluster.keywords[:3])
        proposals.append(Manifestation(
            title=f"Meeting: {' x '.join(agents[:3])}",
            description=(
                f"{len(agents)} agents share significant memory overlap around "
                f"[{topic}]. A coordinated meeting could align their work and "
                "reduce duplicate effort."
            ),
            category=Category.MEETING,
            confidence=min(0.85, 0.4 + len(agents) * 0.15),
            priority=min(4, 1 + len(agents)),
            source_memories=[m.id for m in cluster.memories][:5],
            proposed_action={
                "type": "trigger_meeting",
                "agents": agents,
                "topic": topic,
                "urgency": "high" if size > 8 else "normal",
                "context_keywords": cluster.keywords[:6],
            },
        ))
    return proposals


# ── Fusion ─────────────────────────────────────────────────────────────


def analyze_fusion_opportunities(storage: Storage) -> list[Manifestation]:
    """Same-class pairs of unfused crystals, plus one cross-class gamble."""
    try:
        crystals = storage.unfused_crystals(limit=FUSION_CANDIDATES)
    except StoreError as exc:
        logger.warning("fusion analysis skipped: %s", exc)
        return []
    if len(crystals) < 2:
        return []

    by_class: dict[str, list[Crystal]] = defaultdict(list)
    for c in crystals:
        by_class[c.crystal_class or "unknown"].append(c)

    proposals = []
    for cls, members in by_class.items():
        if len(members) < 2:
            continue
        a, b = members[0], members[1]
        proposals.append(Manifestation(
            title=f"Fuse {cls} crystals ({a.star_rating}* + {b.star_rating}*)",
            description=(
                f"Two {cls}-class crystals detected. Fusion could yield a "
                "higher-tier crystal with combined effects. Crystal types: "
                f"{a.crystal_type}, {b.crystal_type}."
            ),
            category=Category.FUSION,
            confidence=0.7,
            priority=2,
            source_memories=[m for m in (a.memory_id, b.memory_id) if m],
            proposed_action={
                "type": "fuse_crystals",
                "crystal_a": a.id,
                "crystal_b": b.id,
                "crystal_a_type": a.crystal_type,
                "crystal_b_type": b.crystal_type,
                "expected_class": cls,
            },
        ))

    classes = [cls for cls in by_class if cls != "unknown"]
    if len(classes) >= 2:
        class_a, class_b = classes[0], classes[1]
        a, b = by_class[class_a][0], by_class[class_b][0]
        proposals.append(Manifestation(
            title=f"Cross-class fusion: {class_a} x {class_b}",
            description=(
                f"Crystals from different classes ({class_a}, {class_b}) could "
                "create a legendary hybrid. This is experimental but high-reward."
            ),
            category=Category.FUSION,
            confidence=0.5,
            priority=3,
            source_memories=[m for m in (a.memory_id, b.memory_id) if m],
            proposed_action={
                "type": "fuse_crystals",
                "crystal_a": a.id,
                "crystal_b": b.id,
                "cross_class": True,
                "class_a": class_a,
                "class_b": class_b,
            },
        ))
    return proposals


# ── Insights ───────────────────────────────────────────────────────────


def analyze_insight_actions(insights: list[DreamInsight],
                            keyword_fn: KeywordFn = extract_keywords) -> list[Manifestation]:
    proposals = []
    for insight in insights:
        if insight.category == InsightCategory.CORRECTION:
            continue  # analyze_error_patterns

        if insight.category == InsightCategory.PATTERN and insight.confidence >= 0.6:
            proposals.append(Manifestation(
                title="Emerging pattern detected",
                description=insight.insight,
                category=Category.PATTERN,
                confidence=insight.confidence,
                priority=2,
                source_memories=list(insight.source_memories),
                source_insights=_insight_ids(insight),
                proposed_action={
                    "type": "highlight_pattern",
                    "pattern_text": insight.insight,
                },
            ))

        if insight.category == InsightCategory.SUMMARY and insight.confidence >= 0.5:
            keywords = keyword_fn(insight.insight)
            if len(keywords) < 3:
                continue
            proposals.append(Manifestation(
                title=f"Skill opportunity: {' '.join(keywords[:2])}",
                description=(
                    f"Frequent activity around [{', '.join(keywords[:4])}] "
                    "suggests agents could benefit from a specialized skill or "
                    "workflow in this area."
                ),
                category=Category.SKILL,
                confidence=min(0.7, insight.confidence),
                priority=2,
                source_memories=list(insight.source_memories),
                source_insights=_insight_ids(insight),
                proposed_action={
                    "type": "suggest_skill",
                    "skill_keywords": keywords[:5],
                    "activity_summary": insight.insight,
                },
            ))
    return proposals


# ── Pricing ────────────────────────────────────────────────────────────


def analyze_pricing_patterns(storage: Storage) -> list[Manifestation]:
    """Busy-but-cheap and quiet-but-expensive endpoints."""
    try:
        rows = storage.recent_usage(limit=USAGE_WINDOW)
    except StoreError as exc:
        logger.debug("pricing analysis skipped: %s", exc)
        return []
    if len(rows) < MIN_USAGE_ROWS:
        return []

    by_endpoint: dict[str, list[float]] = defaultdict(list)
    for row in rows:
        by_endpoint[row.endpoint].append(row.revenue or 0.0)

    proposals = []
    for endpoint, revenues in by_endpoint.items():
        calls = len(revenues)
        total = sum(revenues)
        avg = total / calls
        action = {
            "type": "review_pricing",
            "endpoint": endpoint,
            "call_count": calls,
            "total_revenue": total,
            "avg_revenue": avg,
        }

        if calls >= 10 and avg < 0.03:
            proposals.append(Manifestation(
                title=f"Price review: {endpoint}",
                description=(
                    f"Endpoint {endpoint} has {calls} calls but only {total:.4f} "
                    f"total revenue ({avg:.4f}/call). Consider increasing the "
                    "price or evaluating value delivered."
                ),
                category=Category.PRICING,
                confidence=0.6,
                priority=2,
                proposed_action={**action, "suggestion": "increase"},
            ))

        if calls <= 3 and avg > 0.2:
            proposals.append(Manifestation(
                title=f"Price review: {endpoint} (over-priced?)",
                description=(
                    f"Endpoint {endpoint} has only {calls} calls despite high "
                    f"avg revenue ({avg:.4f}). Consider lowering the price to "
                    "drive volume."
                ),
                category=Category.PRICING,
                confidence=0.5,
                priority=1,
                proposed_action={**action, "suggestion": "decrease"},
            ))
    return proposals


# ── Entry point ────────────────────────────────────────────────────────


def generate_proposals(storage: Storage, clusters: list[MemoryCluster],
                       insights: list[DreamInsight], session_id: str,
                       keyword_fn: KeywordFn = extract_keywords,
                       now: float | None = None,
                       stats: PassStats | None = None) -> tuple[list[Manifestation], int]:
    """Run every analyzer, persist the proposals, auto-execute the safe ones.

    Returns:
        (proposals, auto_executed_count)
    """
    if now is None:
        now = time.time()

    proposals: list[Manifestation] = []
    proposals += analyze_association_opportunities(storage, clusters)
    proposals += analyze_error_patterns(clusters, insights)
    proposals += analyze_cross_agent_patterns(clusters)
    proposals += analyze_fusion_opportunities(storage)
    proposals += analyze_insight_actions(insights, keyword_fn)
    proposals += analyze_pricing_patterns(storage)

    for p in proposals:
        p.dream_session_id = session_id
        p.created_at = now

    if proposals:
        try:
            storage.save_manifestations(proposals)
        except StoreError as exc:
            logger.warning("could not persist %d proposals for session %s: %s",
                           len(proposals), session_id, exc)

    executed = auto_execute(storage, session_id, now)
    if executed:
        try:
            settled = {m.id: m for m in storage.manifestations(session_id=session_id)}
        except StoreError as exc:
            logger.warning("could not reload proposals for session %s: %s",
                           session_id, exc)
            settled = {}
        proposals = [settled.get(p.id, p) for p in proposals]

    if stats is not None:
        stats.proposals += len(proposals)
        stats.auto_executed += executed

    logger.info("session %s: generated %d proposals, auto-executed %d",
                session_id, len(proposals), executed)
    return proposals, executed
