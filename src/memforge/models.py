"""Core data models. Memories age, get archived, get reforged, spawn proposals."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


ANCHOR_SOURCE = "anchor"
SHARED_AGENT = "_shared"      # shared memory pool, not a real agent
BRIDGE_AGENT = "bridge"       # infrastructure, never a meeting participant


class MemoryKind(str, Enum):
    GOAL = "goal"
    FACT = "fact"
    OUTCOME = "outcome"
    OBSERVATION = "observation"
    NOTE = "note"
    ERROR = "error"


def kind_value(kind: str | MemoryKind) -> str:
    return kind.value if isinstance(kind, MemoryKind) else kind


def parse_kind(value: str) -> MemoryKind | str:
    """Known kinds become MemoryKind; kinds written by other producers stay as-is."""
    try:
        return MemoryKind(value)
    except ValueError:
        return value


@dataclass
class Memory:
    """Atomic unit of agent experience. Immutable once written."""

    content: str
    agent_id: str = SHARED_AGENT
    kind: MemoryKind | str = MemoryKind.NOTE
    source: str = ""
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_id)

    @property
    def is_anchored(self) -> bool:
        return self.source == ANCHOR_SOURCE


@dataclass
class DecayEntry:
    memory_id: str
    decay_score: float = 1.0        # 1.0 = fresh, 0.0 = forgotten
    access_count: int = 0
    is_archived: bool = False       # monotonic
    archive_reason: str | None = None
    last_accessed: float | None = None
    updated_at: float = field(default_factory=time.time)


@dataclass
class ReforgedCrystal:
    """One reforge event. Written once, never mutated."""

    source_memory_ids: list[str]
    compression_ratio: float
    source_count: int
    legendary_name: str
    summary: str
    keywords: list[str] = field(default_factory=list)
    reforged_by: str = "soul"
    result_crystal_id: str | None = None
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_id)


@dataclass
class Crystal:
    """Compression artifact. Reforge writes them, fusion proposals read them."""

    name: str
    description: str = ""
    crystal_type: str = "milestone"
    crystal_class: str = "unknown"
    star_rating: int = 1
    xp: int = 0
    level: int = 1
    is_fused: bool = False
    is_legendary: bool = False
    agent_id: str = ""
    memory_id: str | None = None
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_id)


class ManifestationCategory(str, Enum):
    FUSION = "fusion"
    ASSOCIATION = "association"
    PRICING = "pricing"
    SKILL = "skill"
    MEETING = "meeting"
    PATTERN = "pattern"
    CORRECTION = "correction"


class ManifestationStatus(str, Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    AUTO_EXECUTED = "auto_executed"
    EXPIRED = "expired"


@dataclass
class Manifestation:
    """A proposed action produced by a dream session.

    ``proposed_action`` is a dict tagged by its ``type`` key
    (``create_associations``, ``reinforce_associations``, ``highlight_pattern``,
    ``flag_error_pattern``, ``apply_correction``, ``trigger_meeting``,
    ``fuse_crystals``, ``suggest_skill``, ``review_pricing``).
    """

    title: str
    description: str
    category: ManifestationCategory
    confidence: float
    priority: int                   # 1-5, 5 = highest
    proposed_action: dict = field(default_factory=dict)
    source_memories: list[str] = field(default_factory=list)
    source_insights: list[str] = field(default_factory=list)
    status: ManifestationStatus = ManifestationStatus.PROPOSED
    dream_session_id: str | None = None
    approved_by: str | None = None
    approved_at: float | None = None
    executed_at: float | None = None
    execution_result: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float | None = None
    id: str = field(default_factory=_new_id)

    @property
    def action_type(self) -> str | None:
        return self.proposed_action.get("type")


class TriggerType(str, Enum):
    IDLE = "idle"
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class SessionStatus(str, Enum):
    DREAMING = "dreaming"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


@dataclass
class DreamSession:
    trigger_type: TriggerType = TriggerType.IDLE
    fleet_idle_hours: float | None = None
    status: SessionStatus = SessionStatus.DREAMING
    memories_scanned: int = 0
    clusters_found: int = 0
    insights_generated: int = 0
    proposals_created: int = 0
    auto_executed: int = 0
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None
    id: str = field(default_factory=_new_id)


class InsightCategory(str, Enum):
    PATTERN = "pattern"
    RECOMMENDATION = "recommendation"
    SUMMARY = "summary"
    CORRECTION = "correction"


@dataclass
class DreamInsight:
    insight: str
    category: InsightCategory
    confidence: float
    source_memories: list[str] = field(default_factory=list)
    generated_at: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_id)


@dataclass
class Association:
    memory_id: str
    related_memory_id: str
    strength: float                 # 0.0-1.0
    association_type: str = "related"
    created_at: float = field(default_factory=time.time)


@dataclass
class AssociationModification:
    """Audit trail entry for a change the executor made to the association graph."""

    manifestation_id: str
    memory_id: str
    related_memory_id: str
    modification_type: str          # create | reinforce | weaken | retype
    old_strength: float | None = None
    new_strength: float | None = None
    reason: str = "Lucid dream auto-execution"
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_id)


@dataclass
class UsageRecord:
    endpoint: str
    revenue: float = 0.0
    price_variant: str = ""
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_id)


@dataclass
class MemoryCluster:
    """Keyword group of memories handed to the proposal generator."""

    keywords: list[str]
    memories: list[Memory]
    agents: list[str] = field(default_factory=list)


@dataclass
class ReforgeTarget:
    memory_ids: list[str]
    keywords: list[str]
    count: int
    avg_decay: float


@dataclass
class PassStats:
    """Running totals across passes. Passed in, updated, handed back."""

    passes: int = 0
    scored: int = 0
    archived: int = 0
    failed_writes: int = 0
    reforged: int = 0
    proposals: int = 0
    auto_executed: int = 0


@dataclass
class Trace:
    """Registro de una operación del engine."""

    operation: str
    input_text: str = ""
    output_text: str = ""
    source: str = ""
    duration_ms: float | None = None
    metadata: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_id)
