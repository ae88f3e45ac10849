#!/usr/bin/env python3
"""
memforge demo: a fleet's memories decay, get reforged, and dream up proposals.

No services needed. Simulated clock, seeded names. Just run it.
"""

import logging
import os
import random
import tempfile
import time

from memforge import Engine, MemoryKind

HOUR = 3600.0


def header(text):
    print(f"\n{'='*64}")
    print(f"  {text}")
    print(f"{'='*64}\n")


def show_decay(engine, label=""):
    entries = sorted(engine.storage.decay_entries().values(),
                     key=lambda e: e.decay_score, reverse=True)
    if label:
        print(f"  [{label}] {len(entries)} scored memories:")
    for e in entries:
        mem = engine.storage.load_memory(e.memory_id)
        n = int(e.decay_score * 20)
        bar = "█" * n + "░" * (20 - n)
        status = " ← archived" if e.is_archived else ""
        print(f"    {bar} {e.decay_score:.2f} | {mem.content[:48]}{status}")
    print()


def main():
    logging.basicConfig(level=logging.WARNING)
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    engine = Engine(db_path, rng=random.Random(7), enable_traces=True)
    now = time.time()

    # ── Old incidents ──────────────────────────────────────────────────

    header("A WEEK AGO: the payment webhook keeps failing")

    for i, age in enumerate(range(100, 155, 9)):
        engine.remember(
            f"Payment webhook signature mismatch on retry {i}",
            agent_id="billing", kind=MemoryKind.ERROR, now=now - age * HOUR,
        )
    engine.remember("Quarterly goal: zero failed payouts", agent_id="billing",
                    kind=MemoryKind.GOAL, source="anchor", now=now - 400 * HOUR)
    engine.remember("Old cron note nobody reads", kind=MemoryKind.NOTE,
                    now=now - 400 * HOUR)

    # ── Recent activity ────────────────────────────────────────────────

    header("TODAY: two agents ship the same canary release")

    for i in range(4):
        engine.remember(
            f"Deploy pipeline canary release succeeded on shard {i}",
            agent_id=("atlas", "hermes")[i % 2], kind=MemoryKind.OUTCOME,
            now=now - (i + 1) * HOUR,
        )
    print(f"  {engine.count} memories stored.\n")

    # ── Decay ──────────────────────────────────────────────────────────

    header("DECAY PASS")

    result = engine.decay_pass(now=now)
    print(f"  scored={result.scored} archived={result.archived} "
          f"reforge candidates={len(result.candidates)}\n")
    show_decay(engine, "after decay")

    # ── Reforge ────────────────────────────────────────────────────────

    header("REFORGE")

    for target in engine.reforge_targets():
        print(f"  target: {target.count} memories, avg decay {target.avg_decay:.2f}, "
              f"keywords {', '.join(target.keywords[:4])}")
        crystal = engine.reforge(target.memory_ids, now=now)
        if crystal:
            print(f"  ⚒ {crystal.legendary_name} "
                  f"(ratio {crystal.compression_ratio:.2f})\n")
            for line in crystal.summary.splitlines():
                print(f"    {line}")
    print()

    # ── Dream ──────────────────────────────────────────────────────────

    header("DREAM")

    session = engine.dream(fleet_idle_hours=3, now=now)
    print(f"  session {session.id}: {session.memories_scanned} memories, "
          f"{session.clusters_found} clusters, {session.insights_generated} insights, "
          f"{session.proposals_created} proposals, "
          f"{session.auto_executed} auto-executed\n")

    for p in engine.storage.manifestations(session_id=session.id):
        print(f"    [{p.status.value:>13}] {p.category.value:<11} "
              f"{p.confidence:.2f} | {p.title}")
    print()

    # ── Review ─────────────────────────────────────────────────────────

    header("REVIEW")

    for p in engine.active_proposals():
        if p.action_type == "trigger_meeting":
            outcome = engine.approve(p.id, approved_by="lead", now=now)
            print(f"  approve '{p.title}': success={outcome.success} "
                  f"({outcome.error or 'done'})")
            print(f"  reject  '{p.title}': {engine.reject(p.id, 'met on call', now=now)}")
    expired = engine.expire(now=now + 73 * HOUR)
    print(f"  three days later, {expired} untouched proposals expired.\n")

    # ── Stats ──────────────────────────────────────────────────────────

    header("STATS")

    stats = engine.stats()
    for key, value in stats["memory"].items():
        print(f"    {key:<18} {value}")
    print(f"    proposals          {stats['proposals']['total']}")
    print(f"    traces             {len(engine.traces())}")

    engine.close()
    os.unlink(db_path)


if __name__ == "__main__":
    main()
