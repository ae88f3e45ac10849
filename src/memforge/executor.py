"""Proposal execution and lifecycle.

    proposed -> approved -> executed
    proposed -> rejected | expired
    proposed -> auto_executed        (high confidence, safe categories only)

An approved proposal whose execution fails stays approved for a manual retry.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from memforge.models import (
    Association,
    AssociationModification,
    Manifestation,
    ManifestationCategory,
    ManifestationStatus,
)
from memforge.storage import Storage, StoreError

logger = logging.getLogger(__name__)

AUTO_EXEC_CATEGORIES = frozenset({
    ManifestationCategory.ASSOCIATION,
    ManifestationCategory.PATTERN,
})
AUTO_EXEC_THRESHOLD = 0.8
AUTO_APPROVER = "auto"
NEW_ASSOCIATION_STRENGTH = 0.5
PROPOSAL_TTL_HOURS = 72.0

_Status = ManifestationStatus


@dataclass
class ApprovalResult:
    success: bool
    error: str | None = None


def is_auto_executable(manifest: Manifestation) -> bool:
    return (manifest.category in AUTO_EXEC_CATEGORIES
            and manifest.confidence >= AUTO_EXEC_THRESHOLD
            and manifest.status == _Status.PROPOSED)


# ── Actions ────────────────────────────────────────────────────────────


def _audit(storage: Storage, mod: AssociationModification) -> None:
    """Audit entries are best effort; a failed insert never undoes the change."""
    try:
        storage.save_modification(mod)
    except StoreError as exc:
        logger.warning("audit of %s %s -> %s for %s not saved: %s",
                       mod.modification_type, mod.memory_id,
                       mod.related_memory_id, mod.manifestation_id, exc)


def _create_associations(storage: Storage, manifest: Manifestation,
                         now: float) -> bool:
    for memory_id, related_id in manifest.proposed_action.get("memory_pairs", []):
        storage.upsert_associations([Association(
            memory_id=memory_id,
            related_memory_id=related_id,
            strength=NEW_ASSOCIATION_STRENGTH,
            created_at=now,
        )])
        _audit(storage, AssociationModification(
            manifestation_id=manifest.id,
            memory_id=memory_id,
            related_memory_id=related_id,
            modification_type="create",
            new_strength=NEW_ASSOCIATION_STRENGTH,
            created_at=now,
        ))
    return True


def _reinforce_associations(storage: Storage, manifest: Manifestation,
                            now: float) -> bool:
    for assoc in manifest.proposed_action.get("associations", []):
        current = assoc["current_strength"]
        new_strength = min(1.0, current + assoc["proposed_boost"])
        storage.update_association_strength(
            assoc["memory_id"], assoc["related_memory_id"], new_strength,
        )
        _audit(storage, AssociationModification(
            manifestation_id=manifest.id,
            memory_id=assoc["memory_id"],
            related_memory_id=assoc["related_memory_id"],
            modification_type="reinforce",
            old_strength=current,
            new_strength=new_strength,
            created_at=now,
        ))
    return True


def execute_manifest(storage: Storage, manifest: Manifestation,
                     now: float | None = None) -> bool:
    """Apply a proposal's action. False means it needs manual execution."""
    if now is None:
        now = time.time()
    action_type = manifest.action_type
    try:
        if action_type == "create_associations":
            return _create_associations(storage, manifest, now)
        if action_type == "reinforce_associations":
            return _reinforce_associations(storage, manifest, now)
        if action_type == "highlight_pattern":
            # Recording the pattern is the action.
            return True
    except (StoreError, KeyError, TypeError, ValueError) as exc:
        logger.warning("execution of %s (%s) failed: %s",
                       manifest.id, action_type, exc)
        return False

    logger.info("%s (%s) requires manual execution", manifest.id, action_type)
    return False


# ── Auto execution ─────────────────────────────────────────────────────


def auto_execute(storage: Storage, session_id: str,
                 now: float | None = None) -> int:
    """Execute the safe, high-confidence proposals of a session.

    Failures stay ``proposed`` and are not retried in this pass.
    """
    if now is None:
        now = time.time()
    try:
        pending = storage.manifestations(session_id=session_id,
                                         status=_Status.PROPOSED)
    except StoreError as exc:
        logger.warning("auto execution for session %s: proposals unavailable: %s",
                       session_id, exc)
        return 0

    count = 0
    for manifest in pending:
        if not is_auto_executable(manifest):
            continue
        if not execute_manifest(storage, manifest, now):
            logger.warning("auto execution of %s (%s) failed, left proposed",
                           manifest.id, manifest.action_type)
            continue
        try:
            moved = storage.transition_manifestation(
                manifest.id, [_Status.PROPOSED], _Status.AUTO_EXECUTED, now,
                approved_by=AUTO_APPROVER,
                approved_at=now,
                executed_at=now,
                execution_result={"auto": True, "success": True},
            )
        except StoreError as exc:
            logger.warning("auto execution of %s: status update failed: %s",
                           manifest.id, exc)
            continue
        if moved:
            count += 1
        else:
            logger.info("%s was settled by another pass", manifest.id)

    return count


# ── Manual transitions ─────────────────────────────────────────────────


def approve_manifest(storage: Storage, manifest_id: str,
                     approved_by: str = "user",
                     now: float | None = None) -> ApprovalResult:
    """Approve a proposed manifestation and execute it right away."""
    if now is None:
        now = time.time()
    try:
        manifest = storage.load_manifestation(manifest_id)
        if manifest is None:
            return ApprovalResult(False, "Manifest not found")
        if manifest.status != _Status.PROPOSED:
            return ApprovalResult(
                False, f"Manifest is {manifest.status.value}, not proposed",
            )
        if not storage.transition_manifestation(
                manifest_id, [_Status.PROPOSED], _Status.APPROVED, now,
                approved_by=approved_by, approved_at=now):
            return ApprovalResult(False, "Manifest is no longer proposed")
    except StoreError as exc:
        logger.warning("approve %s failed: %s", manifest_id, exc)
        return ApprovalResult(False, str(exc))

    # Status writes after execution are best effort; the result reflects the action.
    success = execute_manifest(storage, manifest, now)
    try:
        if success:
            storage.transition_manifestation(
                manifest_id, [_Status.APPROVED], _Status.EXECUTED, now,
                executed_at=now,
                execution_result={"success": True, "executed_by": approved_by},
            )
        else:
            storage.transition_manifestation(
                manifest_id, [_Status.APPROVED], _Status.APPROVED, now,
                execution_result={"success": False, "executed_by": approved_by},
            )
    except StoreError as exc:
        logger.warning("approve %s: status update after execution failed: %s",
                       manifest_id, exc)

    if success:
        return ApprovalResult(True)
    return ApprovalResult(False, "Execution failed; manual follow-up needed")


def reject_manifest(storage: Storage, manifest_id: str,
                    reason: str | None = None,
                    now: float | None = None) -> bool:
    """Reject a pending manifestation. Rejecting twice is a no-op success."""
    if now is None:
        now = time.time()
    try:
        manifest = storage.load_manifestation(manifest_id)
        if manifest is None:
            return False
        if manifest.status == _Status.REJECTED:
            return True
        moved = storage.transition_manifestation(
            manifest_id, [_Status.PROPOSED, _Status.APPROVED], _Status.REJECTED, now,
            execution_result={"rejected": True, "reason": reason or "User rejected"},
        )
    except StoreError as exc:
        logger.warning("reject %s failed: %s", manifest_id, exc)
        return False
    if not moved:
        logger.info("cannot reject %s: already %s", manifest_id,
                    manifest.status.value)
    return moved


def expire_old_proposals(storage: Storage, now: float | None = None,
                         max_age_hours: float = PROPOSAL_TTL_HOURS) -> int:
    if now is None:
        now = time.time()
    try:
        expired = storage.expire_manifestations(now - max_age_hours * 3600, now)
    except StoreError as exc:
        logger.warning("proposal expiry failed: %s", exc)
        return 0
    if expired:
        logger.info("expired %d stale proposals", expired)
    return expired


# ── Queries ────────────────────────────────────────────────────────────


def active_proposals(storage: Storage, limit: int = 20) -> list[Manifestation]:
    try:
        return storage.manifestations(status=_Status.PROPOSED, limit=limit)
    except StoreError as exc:
        logger.warning("active proposals unavailable: %s", exc)
        return []


def manifestation_stats(storage: Storage) -> dict:
    stats: dict = {"total": 0, "by_category": {}}
    stats.update({s.value: 0 for s in _Status})
    try:
        rows = storage.manifestation_counts()
    except StoreError as exc:
        logger.warning("manifestation stats unavailable: %s", exc)
        return stats
    for status, category, count in rows:
        stats["total"] += count
        stats[status] = stats.get(status, 0) + count
        stats["by_category"][category] = stats["by_category"].get(category, 0) + count
    return stats
