"""
Result types returned by FormSession.handle()

Together with AIFormContext (and a bare snapshot id for
CreateManualSnapshot) these are the ONLY return types from the command
handler.
"""

from dataclasses import dataclass
from typing import Any, Dict, Tuple

from goal_planner.contracts import DataConflict, UncertaintyFlag, ValidationResults


@dataclass(frozen=True)
class ValidationReport:
    """
    Full-form validation outcome.

    Returned by: ValidateForm

    Attributes:
        results: Errors, warnings, suggestions, overall confidence
        conflicts: Unresolved conflicts after dismissals
        needs_manual_intervention: Hand-off signal for the UI
        uncertainty_flags: Flags, filtered to the requested fields
        degraded: True when the validation service failed and this is
                  the fallback report
    """
    results: ValidationResults
    conflicts: Tuple[DataConflict, ...]
    needs_manual_intervention: bool
    uncertainty_flags: Tuple[UncertaintyFlag, ...]
    degraded: bool = False

    def to_json(self) -> dict:
        data = self.results.to_json()
        data.update({
            "conflicts": [c.to_json() for c in self.conflicts],
            "needs_manual_intervention": self.needs_manual_intervention,
            "uncertainty_flags": [f.to_json() for f in self.uncertainty_flags],
            "degraded": self.degraded,
        })
        return data


@dataclass(frozen=True)
class SnapshotView:
    """
    Historical state handed back by a successful rollback.

    Returned by: RollbackToSnapshot, RollbackToLastGoodState

    The caller applies form_data / ai_state / progressive_state; the
    session has already restored its own context from it.
    """
    snapshot_id: str
    timestamp: str
    session_id: str
    form_data: Dict[str, Any]
    ai_state: Dict[str, Any]
    progressive_state: Dict[str, Any]
    checksum: str

    def to_json(self) -> dict:
        return {
            "snapshot_id": self.snapshot_id,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "form_data": self.form_data,
            "ai_state": self.ai_state,
            "progressive_state": self.progressive_state,
            "checksum": self.checksum,
        }


@dataclass(frozen=True)
class IllegalCommand:
    """
    Command rejected by the session.

    Examples:
    - ProcessFieldUpdate while the session is in emergency mode
    - ResolveConflict for a conflict id that is not currently detected
    - RollbackToSnapshot for a missing or corrupted snapshot

    Attributes:
        reason: Human-readable explanation
        command_type: Name of rejected command type
        code: 'emergency' | 'not_found' | 'corrupted' | 'no_good_state' |
              'unresolvable' | 'illegal'
    """
    reason: str
    command_type: str
    code: str = "illegal"

    def to_json(self) -> Dict[str, Any]:
        return {"reason": self.reason, "command_type": self.command_type, "code": self.code}

