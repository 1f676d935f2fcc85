"""
Unit tests for SnapshotStore
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import itertools
import json

from goal_planner.core.snapshot_store import SnapshotStore, compute_checksum


def ticking_clock(start=1_700_000_000.0, step=1.0):
    counter = itertools.count()
    return lambda: start + next(counter) * step


def make_store(**kwargs):
    kwargs.setdefault("clock", ticking_clock())
    return SnapshotStore("session-test", **kwargs)


def ai_state(scores, data=None):
    return {
        "current_phase": "goal_creation",
        "completed_sections": sorted((data or {}).keys()),
        "confidence_scores": scores,
        "inferred_data": data or {},
    }


PROGRESSIVE = {"disclosure_context": {}, "visible_fields": ["title"], "expertise_level": "intermediate"}


def test_create_returns_generated_id():
    store = make_store()

    snapshot_id = store.create_snapshot({"title": "Car"}, ai_state({"title": 0.9}), PROGRESSIVE)

    assert snapshot_id == "snapshot_1700000000000"
    assert len(store) == 1
    print("✓ Snapshot created with generated id")


def test_same_millisecond_ids_do_not_collide():
    store = make_store(clock=lambda: 1_700_000_000.0)

    first = store.create_snapshot({}, ai_state({}), PROGRESSIVE)
    second = store.create_snapshot({}, ai_state({}), PROGRESSIVE)

    assert first != second
    assert second == f"{first}_1"


def test_deep_copy_on_create():
    store = make_store()
    data = {"title": "Car", "expenseBreakdown": [{"amount": 100}]}

    snapshot_id = store.create_snapshot(data, ai_state({"title": 0.9}, data), PROGRESSIVE)
    data["title"] = "Boat"
    data["expenseBreakdown"][0]["amount"] = 999

    view = store.rollback_to_snapshot(snapshot_id)
    assert view.form_data == {"title": "Car", "expenseBreakdown": [{"amount": 100}]}
    assert view.ai_state["inferred_data"]["title"] == "Car"
    print("✓ Later mutation of inputs does not reach the snapshot")


def test_rollback_returns_independent_copies():
    store = make_store()
    snapshot_id = store.create_snapshot({"title": "Car"}, ai_state({"title": 0.9}), PROGRESSIVE)

    view = store.rollback_to_snapshot(snapshot_id)
    view.form_data["title"] = "Changed"

    again = store.rollback_to_snapshot(snapshot_id)
    assert again is not None
    assert again.form_data["title"] == "Car"


def test_missing_snapshot_returns_none():
    store = make_store()
    assert store.rollback_to_snapshot("nope") is None


def test_checksum_is_stable_and_sensitive():
    form = {"title": "Car", "targetAmount": 5000}
    ai = ai_state({"title": 0.9})

    assert compute_checksum(form, ai, PROGRESSIVE) == compute_checksum(dict(form), dict(ai), dict(PROGRESSIVE))

    reordered = {"targetAmount": 5000, "title": "Car"}
    assert compute_checksum(form, ai, PROGRESSIVE) == compute_checksum(reordered, ai, PROGRESSIVE)

    changed = {"title": "Car", "targetAmount": 5001}
    assert compute_checksum(form, ai, PROGRESSIVE) != compute_checksum(changed, ai, PROGRESSIVE)


def test_checksum_survives_json_round_trip():
    store = make_store()
    snapshot_id = store.create_snapshot(
        {"tags": ("a", "b")}, ai_state({"title": 0.9}), {"visible_fields": ("title",)}
    )
    summary = store.get_snapshots()[0]
    view = store.rollback_to_snapshot(snapshot_id)

    round_tripped = json.loads(json.dumps(view.to_json()))
    assert compute_checksum(
        round_tripped["form_data"], round_tripped["ai_state"], round_tripped["progressive_state"]
    ) == summary["checksum"]


def test_corrupted_snapshot_blocks_rollback_and_reports_once():
    reported = []
    store = make_store(on_corruption=reported.append)
    snapshot_id = store.create_snapshot({"title": "Car"}, ai_state({"title": 0.9}), PROGRESSIVE)

    store._snapshots[snapshot_id]["form_data"]["title"] = "Tampered"

    assert store.rollback_to_snapshot(snapshot_id) is None
    assert store.rollback_to_snapshot(snapshot_id) is None
    assert reported == [snapshot_id]
    print("✓ Corruption detected and reported once")


def test_fifo_eviction_beyond_capacity():
    store = make_store()

    ids = [store.create_snapshot({"n": n}, ai_state({}), PROGRESSIVE) for n in range(12)]

    listed = [s["id"] for s in store.get_snapshots()]
    assert len(listed) == SnapshotStore.MAX_SNAPSHOTS
    assert listed == ids[2:]
    assert store.rollback_to_snapshot(ids[0]) is None


def test_duplicate_label_replaces_and_becomes_newest():
    store = make_store()
    store.create_snapshot({"v": 1}, ai_state({}), PROGRESSIVE, label="checkpoint")
    other = store.create_snapshot({"v": 2}, ai_state({}), PROGRESSIVE)
    store.create_snapshot({"v": 3}, ai_state({}), PROGRESSIVE, label="checkpoint")

    listed = [s["id"] for s in store.get_snapshots()]
    assert listed == [other, "checkpoint"]
    assert store.rollback_to_snapshot("checkpoint").form_data == {"v": 3}


def test_last_good_state_picks_highest_confidence():
    store = make_store()
    store.create_snapshot({"v": "A"}, ai_state({"title": 0.6, "targetAmount": 0.7}), PROGRESSIVE, label="A")
    store.create_snapshot({"v": "B"}, ai_state({"title": 0.84, "targetAmount": 0.8}), PROGRESSIVE, label="B")

    view = store.rollback_to_last_good_state()

    assert view is not None
    assert view.snapshot_id == "B"
    assert view.form_data == {"v": "B"}
    print("✓ Rollback chose snapshot B (0.82) over A (0.65)")


def test_last_good_state_floor_is_strict():
    store = make_store()
    store.create_snapshot({"v": 1}, ai_state({"title": 0.7}), PROGRESSIVE)
    store.create_snapshot({"v": 2}, ai_state({"title": 0.5}), PROGRESSIVE)
    store.create_snapshot({"v": 3}, ai_state({}), PROGRESSIVE)

    assert store.rollback_to_last_good_state() is None


def test_last_good_state_skips_corrupted():
    reported = []
    store = make_store(on_corruption=reported.append)
    store.create_snapshot({"v": "good"}, ai_state({"title": 0.8}), PROGRESSIVE, label="good")
    store.create_snapshot({"v": "best"}, ai_state({"title": 0.95}), PROGRESSIVE, label="best")

    store._snapshots["best"]["ai_state"]["confidence_scores"]["title"] = 0.99

    view = store.rollback_to_last_good_state()

    assert view.snapshot_id == "good"
    assert reported == ["best"]


def test_equal_confidence_prefers_newer():
    store = make_store()
    store.create_snapshot({"v": "old"}, ai_state({"title": 0.9}), PROGRESSIVE, label="old")
    store.create_snapshot({"v": "new"}, ai_state({"title": 0.9}), PROGRESSIVE, label="new")

    assert store.rollback_to_last_good_state().snapshot_id == "new"


def test_clear_snapshots():
    store = make_store()
    store.create_snapshot({}, ai_state({}), PROGRESSIVE)

    store.clear_snapshots()

    assert store.get_snapshots() == []
    assert store.rollback_to_last_good_state() is None


def test_summaries_have_id_timestamp_checksum():
    store = make_store()
    store.create_snapshot({"title": "Car"}, ai_state({}), PROGRESSIVE)

    summary = store.get_snapshots()[0]

    assert set(summary) == {"id", "timestamp", "checksum"}
    assert len(summary["checksum"]) == 64
    assert summary["timestamp"].startswith("2023-11-14T22:13:20")
