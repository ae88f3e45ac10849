"""Engine: the lifecycle facade. One SQLite file, every pass over it."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import asdict
from pathlib import Path

from memforge import associations, decay, dream, executor, reforge
from memforge.decay import DecayPassResult, ReforgeStats
from memforge.executor import ApprovalResult
from memforge.keywords import KeywordFn, extract_keywords
from memforge.models import (
    SHARED_AGENT,
    DreamSession,
    Manifestation,
    Memory,
    MemoryKind,
    PassStats,
    ReforgedCrystal,
    ReforgeTarget,
    Trace,
    TriggerType,
)
from memforge.storage import Storage, StoreError

logger = logging.getLogger(__name__)


class Engine:
    """El ciclo de vida de la memoria de una flota. Un archivo SQLite = un engine.

    API:
        engine.remember(text)      : guardar un recuerdo
        engine.decay_pass()        : puntuar y archivar
        engine.reforge_targets()   : grupos candidatos a comprimir
        engine.reforge(ids)        : comprimir un grupo en un cristal
        engine.dream()             : insights, propuestas, auto-ejecución
        engine.approve(id)         : aprobar y ejecutar una propuesta
        engine.reject(id)          : rechazar una propuesta
        engine.expire()            : caducar propuestas viejas
        engine.traces()            : consultar trazas de operaciones
    """

    def __init__(self, path: str | Path = "memforge.db",
                 keyword_fn: KeywordFn = extract_keywords,
                 rng: random.Random | None = None,
                 enable_traces: bool = False,
                 _storage: Storage | None = None) -> None:
        self._storage = _storage or Storage(path)
        self._keyword_fn = keyword_fn
        self._rng = rng or random.Random()
        self._enable_traces = enable_traces

    @property
    def storage(self) -> Storage:
        return self._storage

    # ── memories ───────────────────────────────────────────────────────

    def remember(self, content: str, agent_id: str = SHARED_AGENT,
                 kind: str | MemoryKind = MemoryKind.NOTE, source: str = "",
                 now: float | None = None) -> Memory:
        """Guarda un recuerdo y lo enlaza con los recientes del mismo agente."""
        t0 = time.time()
        mem = Memory(content=content, agent_id=agent_id, kind=MemoryKind(kind),
                     source=source, created_at=time.time() if now is None else now)
        self._storage.save_memory(mem)
        self.associate(mem, now)
        self._trace("remember", content, mem.id, t0)
        return mem

    # ── decay ──────────────────────────────────────────────────────────

    def decay_pass(self, now: float | None = None,
                   stats: PassStats | None = None) -> DecayPassResult:
        t0 = time.time()
        result = decay.run_decay_pass(self._storage, now=now, stats=stats)
        self._trace("decay_pass", "", f"{result.scored} scored, "
                    f"{result.archived} archived", t0)
        return result

    def record_access(self, memory_id: str, now: float | None = None) -> None:
        decay.record_access(self._storage, memory_id, now)

    def is_archived(self, memory_id: str) -> bool:
        return decay.is_archived(self._storage, memory_id)

    # ── reforge ────────────────────────────────────────────────────────

    def reforge_targets(self) -> list[ReforgeTarget]:
        return reforge.find_reforge_targets(self._storage, self._keyword_fn)

    def reforge(self, memory_ids: list[str], reforged_by: str = "soul",
                now: float | None = None) -> ReforgedCrystal | None:
        t0 = time.time()
        crystal = reforge.reforge_memories(
            self._storage, memory_ids, reforged_by=reforged_by,
            keyword_fn=self._keyword_fn, rng=self._rng, now=now,
        )
        self._trace("reforge", f"{len(memory_ids)} memories",
                    crystal.legendary_name if crystal else "none", t0)
        return crystal

    def auto_reforge(self, now: float | None = None,
                     stats: PassStats | None = None) -> list[ReforgedCrystal]:
        t0 = time.time()
        crystals = reforge.auto_reforge(self._storage, self._keyword_fn,
                                        self._rng, now, stats)
        self._trace("auto_reforge", "", f"{len(crystals)} reforged", t0)
        return crystals

    def recent_reforges(self, limit: int = 10) -> list[ReforgedCrystal]:
        return reforge.recent_reforges(self._storage, limit)

    # ── associations ───────────────────────────────────────────────────

    def associate(self, memory: Memory, now: float | None = None) -> int:
        """Enlaza un recuerdo nuevo con los recientes relacionados."""
        return associations.build_associations(self._storage, memory,
                                               self._keyword_fn, now)

    # ── dream ──────────────────────────────────────────────────────────

    def dream(self, trigger_type: str | TriggerType = TriggerType.MANUAL,
              fleet_idle_hours: float | None = None,
              now: float | None = None, include_reforge: bool = True,
              stats: PassStats | None = None) -> DreamSession:
        t0 = time.time()
        session = dream.run_dream_cycle(
            self._storage, trigger_type, fleet_idle_hours,
            keyword_fn=self._keyword_fn, rng=self._rng, now=now,
            reforge=include_reforge, stats=stats,
        )
        self._trace("dream", str(session.trigger_type.value),
                    f"{session.proposals_created} proposals, "
                    f"{session.auto_executed} auto-executed", t0)
        return session

    def recent_sessions(self, limit: int = 5) -> list[DreamSession]:
        return dream.recent_sessions(self._storage, limit)

    # ── proposals ──────────────────────────────────────────────────────

    def approve(self, manifest_id: str, approved_by: str = "user",
                now: float | None = None) -> ApprovalResult:
        t0 = time.time()
        result = executor.approve_manifest(self._storage, manifest_id,
                                           approved_by, now)
        self._trace("approve", manifest_id,
                    "executed" if result.success else (result.error or ""), t0)
        return result

    def reject(self, manifest_id: str, reason: str | None = None,
               now: float | None = None) -> bool:
        t0 = time.time()
        rejected = executor.reject_manifest(self._storage, manifest_id, reason, now)
        self._trace("reject", manifest_id, str(rejected), t0)
        return rejected

    def expire(self, now: float | None = None) -> int:
        return executor.expire_old_proposals(self._storage, now)

    def active_proposals(self, limit: int = 20) -> list[Manifestation]:
        return executor.active_proposals(self._storage, limit)

    # ── stats & traces ─────────────────────────────────────────────────

    def stats(self) -> dict:
        """Decay/reforge totals and proposal counts in one dict."""
        reforge_stats: ReforgeStats = decay.reforge_stats(self._storage)
        return {
            "memory": asdict(reforge_stats),
            "proposals": executor.manifestation_stats(self._storage),
        }

    def _trace(self, operation: str, input_text: str,
               output_text: str, t0: float) -> None:
        """Registra un trace si enable_traces=True."""
        if not self._enable_traces:
            return
        trace = Trace(
            operation=operation,
            input_text=str(input_text)[:500],
            output_text=str(output_text)[:500],
            duration_ms=(time.time() - t0) * 1000,
        )
        try:
            self._storage.save_trace(trace)
        except StoreError as exc:
            logger.warning("trace %s not saved: %s", operation, exc)

    def traces(self, operation: str | None = None,
               limit: int = 100) -> list[Trace]:
        return self._storage.load_traces(operation=operation, limit=limit)

    # ── utilidades ─────────────────────────────────────────────────────

    @property
    def count(self) -> int:
        """Cuántos recuerdos hay."""
        return self._storage.count()

    def close(self) -> None:
        self._storage.close()

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Engine(memories={self.count})"
