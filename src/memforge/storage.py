"""SQLite storage. One file holds the whole memory lifecycle."""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import suppress
from pathlib import Path
from typing import Iterable

from memforge.models import (
    Association,
    AssociationModification,
    Crystal,
    DecayEntry,
    DreamInsight,
    DreamSession,
    InsightCategory,
    Manifestation,
    ManifestationCategory,
    ManifestationStatus,
    Memory,
    ReforgedCrystal,
    SessionStatus,
    Trace,
    TriggerType,
    UsageRecord,
    kind_value,
    parse_kind,
)


class StoreError(Exception):
    """A storage operation failed (database unavailable, table missing...)."""


class Storage:
    """SQLite backend. Zero config. Safe to share between threads."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.conn = sqlite3.connect(str(self.path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                kind TEXT NOT NULL DEFAULT 'note',
                content TEXT NOT NULL,
                source TEXT NOT NULL DEFAULT '',
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_memories_created
                ON memories(created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_memories_agent
                ON memories(agent_id);

            CREATE TABLE IF NOT EXISTS memory_decay (
                memory_id TEXT PRIMARY KEY,
                decay_score REAL NOT NULL DEFAULT 1.0,
                access_count INTEGER NOT NULL DEFAULT 0,
                is_archived INTEGER NOT NULL DEFAULT 0,
                archive_reason TEXT,
                last_accessed REAL,
                updated_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_decay_score
                ON memory_decay(is_archived, decay_score);

            CREATE TABLE IF NOT EXISTS crystals (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                crystal_type TEXT NOT NULL,
                crystal_class TEXT NOT NULL DEFAULT 'unknown',
                star_rating INTEGER NOT NULL DEFAULT 1,
                xp INTEGER NOT NULL DEFAULT 0,
                level INTEGER NOT NULL DEFAULT 1,
                is_fused INTEGER NOT NULL DEFAULT 0,
                is_legendary INTEGER NOT NULL DEFAULT 0,
                agent_id TEXT NOT NULL DEFAULT '',
                memory_id TEXT,
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_crystals_unfused
                ON crystals(is_fused, star_rating DESC);

            CREATE TABLE IF NOT EXISTS reforged_crystals (
                id TEXT PRIMARY KEY,
                source_memory_ids TEXT NOT NULL,
                result_crystal_id TEXT,
                compression_ratio REAL NOT NULL,
                source_count INTEGER NOT NULL,
                reforged_by TEXT NOT NULL,
                legendary_name TEXT NOT NULL,
                summary TEXT NOT NULL,
                keywords TEXT NOT NULL DEFAULT '[]',
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS manifestations (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                category TEXT NOT NULL,
                confidence REAL NOT NULL,
                priority INTEGER NOT NULL,
                proposed_action TEXT NOT NULL DEFAULT '{}',
                source_memories TEXT NOT NULL DEFAULT '[]',
                source_insights TEXT NOT NULL DEFAULT '[]',
                status TEXT NOT NULL DEFAULT 'proposed',
                dream_session_id TEXT,
                approved_by TEXT,
                approved_at REAL,
                executed_at REAL,
                execution_result TEXT NOT NULL DEFAULT '{}',
                created_at REAL NOT NULL,
                updated_at REAL
            );
            CREATE INDEX IF NOT EXISTS idx_manifestations_session
                ON manifestations(dream_session_id, status);
            CREATE INDEX IF NOT EXISTS idx_manifestations_status
                ON manifestations(status, created_at);

            CREATE TABLE IF NOT EXISTS dream_sessions (
                id TEXT PRIMARY KEY,
                trigger_type TEXT NOT NULL,
                fleet_idle_hours REAL,
                status TEXT NOT NULL,
                memories_scanned INTEGER NOT NULL DEFAULT 0,
                clusters_found INTEGER NOT NULL DEFAULT 0,
                insights_generated INTEGER NOT NULL DEFAULT 0,
                proposals_created INTEGER NOT NULL DEFAULT 0,
                auto_executed INTEGER NOT NULL DEFAULT 0,
                started_at REAL NOT NULL,
                ended_at REAL
            );

            CREATE TABLE IF NOT EXISTS dream_insights (
                id TEXT PRIMARY KEY,
                insight TEXT NOT NULL,
                category TEXT NOT NULL,
                confidence REAL NOT NULL,
                source_memories TEXT NOT NULL DEFAULT '[]',
                generated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS memory_associations (
                memory_id TEXT NOT NULL,
                related_memory_id TEXT NOT NULL,
                association_type TEXT NOT NULL DEFAULT 'related',
                strength REAL NOT NULL,
                created_at REAL NOT NULL,
                PRIMARY KEY (memory_id, related_memory_id)
            );

            CREATE TABLE IF NOT EXISTS association_modifications (
                id TEXT PRIMARY KEY,
                manifestation_id TEXT NOT NULL,
                memory_id TEXT NOT NULL,
                related_memory_id TEXT NOT NULL,
                modification_type TEXT NOT NULL,
                old_strength REAL,
                new_strength REAL,
                reason TEXT NOT NULL DEFAULT '',
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS usage_analytics (
                id TEXT PRIMARY KEY,
                endpoint TEXT NOT NULL,
                price_variant TEXT NOT NULL DEFAULT '',
                revenue REAL NOT NULL DEFAULT 0,
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS traces (
                id TEXT PRIMARY KEY,
                operation TEXT NOT NULL,
                input_text TEXT NOT NULL DEFAULT '',
                output_text TEXT NOT NULL DEFAULT '',
                source TEXT NOT NULL DEFAULT '',
                duration_ms REAL,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_traces_operation
                ON traces(operation);
        """)
        self.conn.commit()

    # ── Low level ──────────────────────────────────────────────────────

    def _execute(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                cursor = self.conn.execute(sql, tuple(params))
                self.conn.commit()
                return cursor
            except sqlite3.Error as exc:
                with suppress(sqlite3.Error):
                    self.conn.rollback()
                raise StoreError(str(exc)) from exc

    def _executemany(self, sql: str, rows: list[tuple]) -> None:
        with self._lock:
            try:
                self.conn.executemany(sql, rows)
                self.conn.commit()
            except sqlite3.Error as exc:
                with suppress(sqlite3.Error):
                    self.conn.rollback()
                raise StoreError(str(exc)) from exc

    def _fetchall(self, sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    def _fetchone(self, sql: str, params: Iterable = ()) -> sqlite3.Row | None:
        with self._lock:
            try:
                return self.conn.execute(sql, tuple(params)).fetchone()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    @staticmethod
    def _placeholders(values: list) -> str:
        return ", ".join("?" for _ in values)

    # ── Memories ───────────────────────────────────────────────────────

    def save_memory(self, mem: Memory) -> None:
        self._execute(
            """INSERT OR REPLACE INTO memories
               (id, agent_id, kind, content, source, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (mem.id, mem.agent_id, kind_value(mem.kind), mem.content,
             mem.source, mem.created_at),
        )

    def load_memory(self, memory_id: str) -> Memory | None:
        row = self._fetchone("SELECT * FROM memories WHERE id = ?", (memory_id,))
        if row is None:
            return None
        return self._row_to_memory(row)

    def recent_memories(self, limit: int = 2000) -> list[Memory]:
        rows = self._fetchall(
            "SELECT * FROM memories ORDER BY created_at DESC LIMIT ?", (limit,),
        )
        return [self._row_to_memory(r) for r in rows]

    def memories_by_ids(self, memory_ids: list[str]) -> list[Memory]:
        """Memories with the given ids, oldest first. Unknown ids are skipped."""
        if not memory_ids:
            return []
        rows = self._fetchall(
            f"""SELECT * FROM memories WHERE id IN ({self._placeholders(memory_ids)})
                ORDER BY created_at ASC""",
            memory_ids,
        )
        return [self._row_to_memory(r) for r in rows]

    def memories_since(self, cutoff: float,
                       include_archived: bool = False) -> list[Memory]:
        query = "SELECT m.* FROM memories m"
        if not include_archived:
            query += (" LEFT JOIN memory_decay d ON d.memory_id = m.id"
                      " WHERE m.created_at >= ? AND COALESCE(d.is_archived, 0) = 0")
        else:
            query += " WHERE m.created_at >= ?"
        query += " ORDER BY m.created_at ASC"
        rows = self._fetchall(query, (cutoff,))
        return [self._row_to_memory(r) for r in rows]

    def memories_for_agents(self, agent_ids: list[str], exclude_id: str = "",
                            limit: int = 30) -> list[Memory]:
        rows = self._fetchall(
            f"""SELECT * FROM memories
                WHERE agent_id IN ({self._placeholders(agent_ids)}) AND id != ?
                ORDER BY created_at DESC LIMIT ?""",
            [*agent_ids, exclude_id, limit],
        )
        return [self._row_to_memory(r) for r in rows]

    def count(self) -> int:
        return self._fetchone("SELECT COUNT(*) FROM memories")[0]

    # ── Decay ──────────────────────────────────────────────────────────

    def decay_entries(self) -> dict[str, DecayEntry]:
        rows = self._fetchall("SELECT * FROM memory_decay")
        return {r["memory_id"]: self._row_to_decay(r) for r in rows}

    def load_decay(self, memory_id: str) -> DecayEntry | None:
        row = self._fetchone(
            "SELECT * FROM memory_decay WHERE memory_id = ?", (memory_id,),
        )
        if row is None:
            return None
        return self._row_to_decay(row)

    def upsert_decay(self, entries: list[DecayEntry]) -> None:
        """Upsert keyed by memory_id.

        Archival and access counts only move forward: a stale writer can
        neither un-archive an entry nor lose an access increment.
        """
        self._executemany(
            """INSERT INTO memory_decay
               (memory_id, decay_score, access_count, is_archived,
                archive_reason, last_accessed, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(memory_id) DO UPDATE SET
                 decay_score = excluded.decay_score,
                 access_count = MAX(memory_decay.access_count, excluded.access_count),
                 is_archived = MAX(memory_decay.is_archived, excluded.is_archived),
                 archive_reason = COALESCE(excluded.archive_reason,
                                           memory_decay.archive_reason),
                 last_accessed = COALESCE(excluded.last_accessed,
                                          memory_decay.last_accessed),
                 updated_at = excluded.updated_at""",
            [
                (e.memory_id, e.decay_score, e.access_count, int(e.is_archived),
                 e.archive_reason, e.last_accessed, e.updated_at)
                for e in entries
            ],
        )

    def increment_access(self, memory_id: str, now: float) -> None:
        self._execute(
            """INSERT INTO memory_decay
               (memory_id, decay_score, access_count, is_archived,
                last_accessed, updated_at)
               VALUES (?, 1.0, 1, 0, ?, ?)
               ON CONFLICT(memory_id) DO UPDATE SET
                 access_count = memory_decay.access_count + 1,
                 last_accessed = excluded.last_accessed,
                 updated_at = excluded.updated_at""",
            (memory_id, now, now),
        )

    def decay_candidates(self, min_score: float, max_score: float,
                         limit: int) -> list[DecayEntry]:
        """Unarchived entries with min_score <= score < max_score, stalest first."""
        rows = self._fetchall(
            """SELECT * FROM memory_decay
               WHERE is_archived = 0 AND decay_score >= ? AND decay_score < ?
               ORDER BY decay_score ASC LIMIT ?""",
            (min_score, max_score, limit),
        )
        return [self._row_to_decay(r) for r in rows]

    # ── Crystals ───────────────────────────────────────────────────────

    def save_crystal(self, crystal: Crystal) -> None:
        self._execute(
            """INSERT OR REPLACE INTO crystals
               (id, name, description, crystal_type, crystal_class, star_rating,
                xp, level, is_fused, is_legendary, agent_id, memory_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (crystal.id, crystal.name, crystal.description, crystal.crystal_type,
             crystal.crystal_class, crystal.star_rating, crystal.xp, crystal.level,
             int(crystal.is_fused), int(crystal.is_legendary), crystal.agent_id,
             crystal.memory_id, crystal.created_at),
        )

    def load_crystal(self, crystal_id: str) -> Crystal | None:
        row = self._fetchone("SELECT * FROM crystals WHERE id = ?", (crystal_id,))
        if row is None:
            return None
        return self._row_to_crystal(row)

    def unfused_crystals(self, limit: int = 50) -> list[Crystal]:
        rows = self._fetchall(
            """SELECT * FROM crystals WHERE is_fused = 0
               ORDER BY star_rating DESC, created_at DESC LIMIT ?""",
            (limit,),
        )
        return [self._row_to_crystal(r) for r in rows]

    def save_reforged(self, reforged: ReforgedCrystal) -> None:
        self._execute(
            """INSERT INTO reforged_crystals
               (id, source_memory_ids, result_crystal_id, compression_ratio,
                source_count, reforged_by, legendary_name, summary, keywords,
                created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (reforged.id, json.dumps(reforged.source_memory_ids),
             reforged.result_crystal_id, reforged.compression_ratio,
             reforged.source_count, reforged.reforged_by, reforged.legendary_name,
             reforged.summary, json.dumps(reforged.keywords), reforged.created_at),
        )

    def recent_reforged(self, limit: int | None = None) -> list[ReforgedCrystal]:
        query = "SELECT * FROM reforged_crystals ORDER BY created_at DESC"
        params: list = []
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = self._fetchall(query, params)
        return [self._row_to_reforged(r) for r in rows]

    # ── Manifestations ─────────────────────────────────────────────────

    def save_manifestations(self, manifestations: list[Manifestation]) -> None:
        self._executemany(
            """INSERT OR REPLACE INTO manifestations
               (id, title, description, category, confidence, priority,
                proposed_action, source_memories, source_insights, status,
                dream_session_id, approved_by, approved_at, executed_at,
                execution_result, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (m.id, m.title, m.description, m.category.value, m.confidence,
                 m.priority, json.dumps(m.proposed_action),
                 json.dumps(m.source_memories), json.dumps(m.source_insights),
                 m.status.value, m.dream_session_id, m.approved_by, m.approved_at,
                 m.executed_at, json.dumps(m.execution_result), m.created_at,
                 m.updated_at)
                for m in manifestations
            ],
        )

    def load_manifestation(self, manifest_id: str) -> Manifestation | None:
        row = self._fetchone(
            "SELECT * FROM manifestations WHERE id = ?", (manifest_id,),
        )
        if row is None:
            return None
        return self._row_to_manifestation(row)

    def manifestations(self, session_id: str | None = None,
                       status: ManifestationStatus | None = None,
                       limit: int | None = None) -> list[Manifestation]:
        """Query manifestations, highest priority and confidence first."""
        query = "SELECT * FROM manifestations WHERE 1=1"
        params: list = []
        if session_id is not None:
            query += " AND dream_session_id = ?"
            params.append(session_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY priority DESC, confidence DESC, created_at ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = self._fetchall(query, params)
        return [self._row_to_manifestation(r) for r in rows]

    def transition_manifestation(self, manifest_id: str,
                                 from_statuses: list[ManifestationStatus],
                                 to_status: ManifestationStatus,
                                 now: float, **fields) -> bool:
        """Move a manifestation to ``to_status`` only if it is in ``from_statuses``.

        Extra keyword fields (approved_by, approved_at, executed_at,
        execution_result) are written in the same statement. Returns False if
        the guard did not match.
        """
        assignments = ["status = ?", "updated_at = ?"]
        params: list = [to_status.value, now]
        for name, value in fields.items():
            if name not in ("approved_by", "approved_at", "executed_at",
                            "execution_result"):
                raise ValueError(f"Unknown manifestation field: {name}")
            assignments.append(f"{name} = ?")
            params.append(json.dumps(value) if name == "execution_result" else value)
        statuses = [s.value for s in from_statuses]
        params.append(manifest_id)
        params.extend(statuses)
        cursor = self._execute(
            f"""UPDATE manifestations SET {', '.join(assignments)}
                WHERE id = ? AND status IN ({self._placeholders(statuses)})""",
            params,
        )
        return cursor.rowcount > 0

    def expire_manifestations(self, cutoff: float, now: float) -> int:
        cursor = self._execute(
            """UPDATE manifestations SET status = ?, updated_at = ?
               WHERE status = ? AND created_at < ?""",
            (ManifestationStatus.EXPIRED.value, now,
             ManifestationStatus.PROPOSED.value, cutoff),
        )
        return cursor.rowcount

    def manifestation_counts(self) -> list[tuple[str, str, int]]:
        rows = self._fetchall(
            """SELECT status, category, COUNT(*) FROM manifestations
               GROUP BY status, category""",
        )
        return [(r[0], r[1], r[2]) for r in rows]

    # ── Dream sessions & insights ──────────────────────────────────────

    def save_session(self, session: DreamSession) -> None:
        self._execute(
            """INSERT OR REPLACE INTO dream_sessions
               (id, trigger_type, fleet_idle_hours, status, memories_scanned,
                clusters_found, insights_generated, proposals_created,
                auto_executed, started_at, ended_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (session.id, session.trigger_type.value, session.fleet_idle_hours,
             session.status.value, session.memories_scanned,
             session.clusters_found, session.insights_generated,
             session.proposals_created, session.auto_executed,
             session.started_at, session.ended_at),
        )

    def load_session(self, session_id: str) -> DreamSession | None:
        row = self._fetchone(
            "SELECT * FROM dream_sessions WHERE id = ?", (session_id,),
        )
        if row is None:
            return None
        return self._row_to_session(row)

    def recent_sessions(self, limit: int = 5) -> list[DreamSession]:
        rows = self._fetchall(
            "SELECT * FROM dream_sessions ORDER BY started_at DESC LIMIT ?",
            (limit,),
        )
        return [self._row_to_session(r) for r in rows]

    def save_insights(self, insights: list[DreamInsight]) -> None:
        self._executemany(
            """INSERT OR REPLACE INTO dream_insights
               (id, insight, category, confidence, source_memories, generated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            [
                (i.id, i.insight, i.category.value, i.confidence,
                 json.dumps(i.source_memories), i.generated_at)
                for i in insights
            ],
        )

    def recent_insights(self, min_confidence: float = 0.0,
                        limit: int = 20) -> list[DreamInsight]:
        rows = self._fetchall(
            """SELECT * FROM dream_insights WHERE confidence >= ?
               ORDER BY generated_at DESC LIMIT ?""",
            (min_confidence, limit),
        )
        return [self._row_to_insight(r) for r in rows]

    # ── Associations ───────────────────────────────────────────────────

    def upsert_associations(self, associations: list[Association]) -> None:
        self._executemany(
            """INSERT INTO memory_associations
               (memory_id, related_memory_id, association_type, strength,
                created_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(memory_id, related_memory_id) DO UPDATE SET
                 association_type = excluded.association_type,
                 strength = excluded.strength""",
            [
                (a.memory_id, a.related_memory_id, a.association_type,
                 a.strength, a.created_at)
                for a in associations
            ],
        )

    def load_association(self, memory_id: str,
                         related_memory_id: str) -> Association | None:
        row = self._fetchone(
            """SELECT * FROM memory_associations
               WHERE memory_id = ? AND related_memory_id = ?""",
            (memory_id, related_memory_id),
        )
        if row is None:
            return None
        return self._row_to_association(row)

    def associations_among(self, memory_ids: list[str]) -> list[Association]:
        """Associations whose both endpoints are in ``memory_ids``."""
        if not memory_ids:
            return []
        marks = self._placeholders(memory_ids)
        rows = self._fetchall(
            f"""SELECT * FROM memory_associations
                WHERE memory_id IN ({marks}) AND related_memory_id IN ({marks})""",
            [*memory_ids, *memory_ids],
        )
        return [self._row_to_association(r) for r in rows]

    def update_association_strength(self, memory_id: str,
                                    related_memory_id: str,
                                    strength: float) -> bool:
        cursor = self._execute(
            """UPDATE memory_associations SET strength = ?
               WHERE memory_id = ? AND related_memory_id = ?""",
            (strength, memory_id, related_memory_id),
        )
        return cursor.rowcount > 0

    def delete_weak_associations(self, min_strength: float) -> int:
        cursor = self._execute(
            "DELETE FROM memory_associations WHERE strength < ?", (min_strength,),
        )
        return cursor.rowcount

    def save_modification(self, mod: AssociationModification) -> None:
        self._execute(
            """INSERT INTO association_modifications
               (id, manifestation_id, memory_id, related_memory_id,
                modification_type, old_strength, new_strength, reason, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (mod.id, mod.manifestation_id, mod.memory_id, mod.related_memory_id,
             mod.modification_type, mod.old_strength, mod.new_strength,
             mod.reason, mod.created_at),
        )

    def modifications(self, manifestation_id: str | None = None) -> list[AssociationModification]:
        query = "SELECT * FROM association_modifications"
        params: list = []
        if manifestation_id is not None:
            query += " WHERE manifestation_id = ?"
            params.append(manifestation_id)
        query += " ORDER BY created_at ASC"
        rows = self._fetchall(query, params)
        return [self._row_to_modification(r) for r in rows]

    # ── Usage analytics ────────────────────────────────────────────────

    def save_usage(self, record: UsageRecord) -> None:
        self._execute(
            """INSERT INTO usage_analytics
               (id, endpoint, price_variant, revenue, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (record.id, record.endpoint, record.price_variant, record.revenue,
             record.created_at),
        )

    def recent_usage(self, limit: int = 100) -> list[UsageRecord]:
        rows = self._fetchall(
            "SELECT * FROM usage_analytics ORDER BY created_at DESC LIMIT ?",
            (limit,),
        )
        return [
            UsageRecord(id=r["id"], endpoint=r["endpoint"],
                        price_variant=r["price_variant"], revenue=r["revenue"],
                        created_at=r["created_at"])
            for r in rows
        ]

    # ── Traces ─────────────────────────────────────────────────────────

    def save_trace(self, trace: Trace) -> None:
        self._execute(
            """INSERT INTO traces
               (id, operation, input_text, output_text, source,
                duration_ms, metadata, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (trace.id, trace.operation, trace.input_text, trace.output_text,
             trace.source, trace.duration_ms, json.dumps(trace.metadata),
             trace.created_at),
        )

    def load_traces(self, operation: str | None = None,
                    limit: int = 100) -> list[Trace]:
        query = "SELECT * FROM traces WHERE 1=1"
        params: list = []
        if operation is not None:
            query += " AND operation = ?"
            params.append(operation)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        rows = self._fetchall(query, params)
        return [
            Trace(id=r["id"], operation=r["operation"], input_text=r["input_text"],
                  output_text=r["output_text"], source=r["source"],
                  duration_ms=r["duration_ms"], metadata=json.loads(r["metadata"]),
                  created_at=r["created_at"])
            for r in rows
        ]

    # ── Close ──────────────────────────────────────────────────────────

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    # ── Row mappers ────────────────────────────────────────────────────

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        return Memory(
            id=row["id"],
            agent_id=row["agent_id"],
            kind=parse_kind(row["kind"]),
            content=row["content"],
            source=row["source"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_decay(row: sqlite3.Row) -> DecayEntry:
        return DecayEntry(
            memory_id=row["memory_id"],
            decay_score=row["decay_score"],
            access_count=row["access_count"],
            is_archived=bool(row["is_archived"]),
            archive_reason=row["archive_reason"],
            last_accessed=row["last_accessed"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_crystal(row: sqlite3.Row) -> Crystal:
        return Crystal(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            crystal_type=row["crystal_type"],
            crystal_class=row["crystal_class"],
            star_rating=row["star_rating"],
            xp=row["xp"],
            level=row["level"],
            is_fused=bool(row["is_fused"]),
            is_legendary=bool(row["is_legendary"]),
            agent_id=row["agent_id"],
            memory_id=row["memory_id"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_reforged(row: sqlite3.Row) -> ReforgedCrystal:
        return ReforgedCrystal(
            id=row["id"],
            source_memory_ids=json.loads(row["source_memory_ids"]),
            result_crystal_id=row["result_crystal_id"],
            compression_ratio=row["compression_ratio"],
            source_count=row["source_count"],
            reforged_by=row["reforged_by"],
            legendary_name=row["legendary_name"],
            summary=row["summary"],
            keywords=json.loads(row["keywords"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_manifestation(row: sqlite3.Row) -> Manifestation:
        return Manifestation(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            category=ManifestationCategory(row["category"]),
            confidence=row["confidence"],
            priority=row["priority"],
            proposed_action=json.loads(row["proposed_action"]),
            source_memories=json.loads(row["source_memories"]),
            source_insights=json.loads(row["source_insights"]),
            status=ManifestationStatus(row["status"]),
            dream_session_id=row["dream_session_id"],
            approved_by=row["approved_by"],
            approved_at=row["approved_at"],
            executed_at=row["executed_at"],
            execution_result=json.loads(row["execution_result"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> DreamSession:
        return DreamSession(
            id=row["id"],
            trigger_type=TriggerType(row["trigger_type"]),
            fleet_idle_hours=row["fleet_idle_hours"],
            status=SessionStatus(row["status"]),
            memories_scanned=row["memories_scanned"],
            clusters_found=row["clusters_found"],
            insights_generated=row["insights_generated"],
            proposals_created=row["proposals_created"],
            auto_executed=row["auto_executed"],
            started_at=row["started_at"],
            ended_at=row["ended_at"],
        )

    @staticmethod
    def _row_to_insight(row: sqlite3.Row) -> DreamInsight:
        return DreamInsight(
            id=row["id"],
            insight=row["insight"],
            category=InsightCategory(row["category"]),
            confidence=row["confidence"],
            source_memories=json.loads(row["source_memories"]),
            generated_at=row["generated_at"],
        )

    @staticmethod
    def _row_to_association(row: sqlite3.Row) -> Association:
        return Association(
            memory_id=row["memory_id"],
            related_memory_id=row["related_memory_id"],
            association_type=row["association_type"],
            strength=row["strength"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_modification(row: sqlite3.Row) -> AssociationModification:
        return AssociationModification(
            id=row["id"],
            manifestation_id=row["manifestation_id"],
            memory_id=row["memory_id"],
            related_memory_id=row["related_memory_id"],
            modification_type=row["modification_type"],
            old_strength=row["old_strength"],
            new_strength=row["new_strength"],
            reason=row["reason"],
            created_at=row["created_at"],
        )
