"""memforge: decay, archival, reforging and dream proposals for agent memories."""

from memforge.models import (
    DecayEntry,
    DreamInsight,
    DreamSession,
    Manifestation,
    ManifestationCategory,
    ManifestationStatus,
    Memory,
    MemoryKind,
    PassStats,
    ReforgedCrystal,
    Trace,
)
from memforge.decay import decay_score
from memforge.engine import Engine
from memforge.keywords import extract_keywords
from memforge.storage import Storage, StoreError

__version__ = "0.1.0"
__all__ = [
    "Engine", "Storage", "StoreError", "Memory", "MemoryKind", "DecayEntry",
    "ReforgedCrystal", "Manifestation", "ManifestationCategory",
    "ManifestationStatus", "DreamSession", "DreamInsight", "PassStats", "Trace",
    "decay_score", "extract_keywords",
]
