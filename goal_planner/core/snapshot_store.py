"""
Snapshot Store - Checksummed form-state captures for rollback

Responsibilities:
- Capture form data, AI state and progressive-disclosure state
- Verify captures on every read (checksum over the three sub-structures)
- Hand back deep copies for rollback
- Find the most recent trustworthy state

Design principles:
- One store per form session (never a module-level singleton)
- Captures are deep copied in and out; callers never share references
- FIFO eviction beyond MAX_SNAPSHOTS
- Missing or corrupted snapshots return None, never raise
"""

import hashlib
import json
import logging
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from goal_planner.results import SnapshotView

logger = logging.getLogger(__name__)


def _normalize(obj: Any) -> Any:
    """
    Deep copy into plain JSON shapes.

    Sets become sorted lists and tuples become lists so a capture
    checksums the same before and after a JSON round trip.
    """
    if isinstance(obj, dict):
        return {k: _normalize(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_normalize(item) for item in obj]
    elif isinstance(obj, (set, frozenset)):
        return sorted(_normalize(item) for item in obj)
    elif hasattr(obj, "to_json"):
        return _normalize(obj.to_json())
    else:
        return obj


def compute_checksum(form_data: Dict[str, Any], ai_state: Dict[str, Any],
                     progressive_state: Dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON of the three captured structures."""
    payload = json.dumps(
        {
            "form_data": form_data,
            "ai_state": ai_state,
            "progressive_state": progressive_state,
        },
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def mean_confidence(ai_state: Dict[str, Any]) -> float:
    """Mean of ai_state['confidence_scores']; 0.0 when there are none."""
    scores = [
        s for s in (ai_state.get("confidence_scores") or {}).values()
        if isinstance(s, (int, float)) and not isinstance(s, bool)
    ]
    if not scores:
        return 0.0
    return sum(scores) / len(scores)


class SnapshotStore:
    """Per-session snapshot store with integrity checks"""

    MAX_SNAPSHOTS = 10

    # Rollback target must be strictly above this mean confidence
    GOOD_STATE_THRESHOLD = 0.7

    def __init__(
        self,
        session_id: str,
        max_snapshots: Optional[int] = None,
        on_corruption: Optional[Callable[[str], None]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            session_id: Owning form session
            max_snapshots: Capacity override (defaults to MAX_SNAPSHOTS)
            on_corruption: Called once per snapshot id found corrupted
            clock: Returns epoch seconds (defaults to time.time)
        """
        self.session_id = session_id
        self.max_snapshots = max_snapshots or self.MAX_SNAPSHOTS
        self.on_corruption = on_corruption
        self._clock = clock or time.time

        # Insertion order is age order: first entry is oldest
        self._snapshots: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._reported_corrupt: set = set()

    # ========================
    # Capture
    # ========================

    def create_snapshot(
        self,
        form_data: Dict[str, Any],
        ai_state: Dict[str, Any],
        progressive_state: Dict[str, Any],
        label: Optional[str] = None,
    ) -> str:
        """
        Capture a snapshot.

        Args:
            form_data: Current field values
            ai_state: {current_phase, completed_sections, confidence_scores, inferred_data}
            progressive_state: {disclosure_context, visible_fields, expertise_level}
            label: Optional id; reusing a label replaces that snapshot

        Returns:
            str: Snapshot id
        """
        now = self._clock()
        snapshot_id = label or f"snapshot_{int(now * 1000)}"

        if label is None:
            base, n = snapshot_id, 1
            while snapshot_id in self._snapshots:
                snapshot_id = f"{base}_{n}"
                n += 1
        elif snapshot_id in self._snapshots:
            # Replaced snapshot becomes the newest
            del self._snapshots[snapshot_id]
            self._reported_corrupt.discard(snapshot_id)

        captured_form = _normalize(form_data)
        captured_ai = _normalize(ai_state)
        captured_progressive = _normalize(progressive_state)

        self._snapshots[snapshot_id] = {
            "id": snapshot_id,
            "timestamp": datetime.fromtimestamp(now, timezone.utc).isoformat(),
            "session_id": self.session_id,
            "form_data": captured_form,
            "ai_state": captured_ai,
            "progressive_state": captured_progressive,
            "checksum": compute_checksum(captured_form, captured_ai, captured_progressive),
        }

        while len(self._snapshots) > self.max_snapshots:
            evicted_id, _ = self._snapshots.popitem(last=False)
            self._reported_corrupt.discard(evicted_id)
            logger.debug(f"Evicted snapshot {evicted_id} (capacity {self.max_snapshots})")

        logger.info(f"Created snapshot {snapshot_id} for session {self.session_id}")
        return snapshot_id

    # ========================
    # Rollback
    # ========================

    def rollback_to_snapshot(self, snapshot_id: str) -> Optional[SnapshotView]:
        """
        Return a verified deep copy of a snapshot.

        Returns:
            SnapshotView, or None if the id is unknown or the checksum
            no longer matches
        """
        snapshot = self._snapshots.get(snapshot_id)
        if snapshot is None:
            logger.warning(f"Snapshot {snapshot_id} not found")
            return None

        if not self._verify(snapshot):
            logger.error(f"Snapshot {snapshot_id} failed integrity check, rollback blocked")
            return None

        logger.info(f"Rolling back to snapshot {snapshot_id}")
        return self._to_view(snapshot)

    def rollback_to_last_good_state(self) -> Optional[SnapshotView]:
        """
        Roll back to the most confident intact snapshot.

        Picks the highest mean confidence strictly above
        GOOD_STATE_THRESHOLD; on ties the newer snapshot wins. Corrupted
        snapshots are skipped.
        """
        best = None
        best_confidence = self.GOOD_STATE_THRESHOLD

        for snapshot in reversed(list(self._snapshots.values())):
            if not self._verify(snapshot):
                continue
            confidence = mean_confidence(snapshot["ai_state"])
            if confidence > best_confidence:
                best, best_confidence = snapshot, confidence

        if best is None:
            logger.warning(f"No good state available for session {self.session_id}")
            return None

        logger.info(f"Rolling back to last good state {best['id']} (confidence {best_confidence:.2f})")
        return self._to_view(best)

    # ========================
    # Listing
    # ========================

    def get_snapshots(self) -> List[Dict[str, str]]:
        """Snapshot summaries, oldest first: [{id, timestamp, checksum}]."""
        return [
            {"id": s["id"], "timestamp": s["timestamp"], "checksum": s["checksum"]}
            for s in self._snapshots.values()
        ]

    def clear_snapshots(self) -> None:
        self._snapshots.clear()
        self._reported_corrupt.clear()
        logger.info(f"Cleared snapshots for session {self.session_id}")

    def __len__(self) -> int:
        return len(self._snapshots)

    # ========================
    # Private Helpers
    # ========================

    def _verify(self, snapshot: Dict[str, Any]) -> bool:
        expected = compute_checksum(
            snapshot["form_data"], snapshot["ai_state"], snapshot["progressive_state"]
        )
        if expected == snapshot["checksum"]:
            return True

        if snapshot["id"] not in self._reported_corrupt:
            self._reported_corrupt.add(snapshot["id"])
            logger.error(f"Checksum mismatch on snapshot {snapshot['id']}")
            if self.on_corruption is not None:
                self.on_corruption(snapshot["id"])
        return False

    @staticmethod
    def _to_view(snapshot: Dict[str, Any]) -> SnapshotView:
        return SnapshotView(
            snapshot_id=snapshot["id"],
            timestamp=snapshot["timestamp"],
            session_id=snapshot["session_id"],
            form_data=_normalize(snapshot["form_data"]),
            ai_state=_normalize(snapshot["ai_state"]),
            progressive_state=_normalize(snapshot["progressive_state"]),
            checksum=snapshot["checksum"],
        )
