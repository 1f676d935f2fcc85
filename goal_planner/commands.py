"""
Command types and the form-context envelope for FormSession control flow.

Commands are the public interface the web layer uses to drive a
FormSession. Each command is an immutable request; the session answers
with an AIFormContext or one of the result types in goal_planner.results.
"""

import copy
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from goal_planner.contracts import (
    DataConflict,
    ExpertiseLevel,
    FieldRecommendation,
    FieldUpdate,
    UncertaintyFlag,
    ValidationResults,
    utc_now_iso,
)


DEFAULT_PHASE = "goal_creation"


@dataclass(frozen=True)
class AIFormContext:
    """
    Complete AI/disclosure state for one user's form session.

    Rules:
    - Immutable after creation; use evolve() to derive a new context
    - inferred_data and confidence_scores are deep copied on evolve()
      and on to_json()/from_json()
    - Serializable to/from JSON for save_form_context/load_form_context

    Attributes:
        user_id: Owner of the session
        session_id: Form session identifier
        current_phase: Free-form phase label (e.g. 'goal_creation')
        completed_sections: Fields whose values currently exist
        visible_fields: Fields shown to the user, canonical order
        inferred_data: Field values (user input plus inferences)
        confidence_scores: field_id -> 0..1
        uncertainty_flags: Fields needing clarification
        recommended_fields: Next fields to show, best first
        validation_results: Latest run_validation() output
        detected_conflicts: Unresolved cross-field conflicts
        dismissed_conflicts: Conflict ids the user chose to ignore
        needs_manual_intervention: Hand-off signal for the UI
        expertise_level: beginner | intermediate | advanced
        updated_at: ISO timestamp of last change
    """
    user_id: Any
    session_id: str
    current_phase: str = DEFAULT_PHASE
    completed_sections: Tuple[str, ...] = ()
    visible_fields: Tuple[str, ...] = ()
    inferred_data: Dict[str, Any] = field(default_factory=dict)
    confidence_scores: Dict[str, float] = field(default_factory=dict)
    uncertainty_flags: Tuple[UncertaintyFlag, ...] = ()
    recommended_fields: Tuple[FieldRecommendation, ...] = ()
    validation_results: ValidationResults = field(default_factory=ValidationResults)
    detected_conflicts: Tuple[DataConflict, ...] = ()
    dismissed_conflicts: Tuple[str, ...] = ()
    needs_manual_intervention: bool = False
    expertise_level: str = ExpertiseLevel.INTERMEDIATE.value
    updated_at: str = field(default_factory=utc_now_iso)

    def evolve(self, **changes) -> "AIFormContext":
        """
        Derive a new context with changes applied.

        Mutable members are deep copied so neither context can
        observe later edits to the other.
        """
        for name in ("inferred_data", "confidence_scores"):
            changes[name] = copy.deepcopy(changes.get(name, getattr(self, name)))
        changes.setdefault("updated_at", utc_now_iso())
        return replace(self, **changes)

    def to_json(self) -> dict:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "current_phase": self.current_phase,
            "completed_sections": list(self.completed_sections),
            "visible_fields": list(self.visible_fields),
            "inferred_data": copy.deepcopy(self.inferred_data),
            "confidence_scores": dict(self.confidence_scores),
            "uncertainty_flags": [flag.to_json() for flag in self.uncertainty_flags],
            "recommended_fields": [rec.to_json() for rec in self.recommended_fields],
            "validation_results": self.validation_results.to_json(),
            "detected_conflicts": [c.to_json() for c in self.detected_conflicts],
            "dismissed_conflicts": list(self.dismissed_conflicts),
            "needs_manual_intervention": self.needs_manual_intervention,
            "expertise_level": self.expertise_level,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_json(data: dict) -> "AIFormContext":
        return AIFormContext(
            user_id=data.get("user_id"),
            session_id=data["session_id"],
            current_phase=data.get("current_phase", DEFAULT_PHASE),
            completed_sections=tuple(data.get("completed_sections", [])),
            visible_fields=tuple(data.get("visible_fields", [])),
            inferred_data=copy.deepcopy(data.get("inferred_data", {})),
            confidence_scores=dict(data.get("confidence_scores", {})),
            uncertainty_flags=tuple(
                UncertaintyFlag.from_json(f) for f in data.get("uncertainty_flags", [])
            ),
            recommended_fields=tuple(
                FieldRecommendation.from_json(r) for r in data.get("recommended_fields", [])
            ),
            validation_results=ValidationResults.from_json(data.get("validation_results")),
            detected_conflicts=tuple(
                DataConflict.from_json(c) for c in data.get("detected_conflicts", [])
            ),
            dismissed_conflicts=tuple(data.get("dismissed_conflicts", [])),
            needs_manual_intervention=bool(data.get("needs_manual_intervention", False)),
            expertise_level=data.get("expertise_level", ExpertiseLevel.INTERMEDIATE.value),
            updated_at=data.get("updated_at") or utc_now_iso(),
        )


# Command types

@dataclass(frozen=True)
class ProcessFieldUpdate:
    """
    Apply one field edit.

    Returns: AIFormContext (possibly degraded), or IllegalCommand in
    emergency mode.
    """
    update: FieldUpdate


@dataclass(frozen=True)
class ValidateForm:
    """
    Validate the whole form without applying an edit.

    form_data entries are merged over the stored data first.
    specific_fields restricts the returned uncertainty flags.
    Returns: ValidationReport
    """
    form_data: Dict[str, Any] = field(default_factory=dict)
    specific_fields: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class ResolveConflict:
    """
    Resolve a detected conflict.

    resolution: 'accept' | 'dismiss' | {'updates': {field_id: value}}
    Returns: AIFormContext, or IllegalCommand for unknown conflicts.
    """
    conflict_id: str
    resolution: Any


@dataclass(frozen=True)
class CreateManualSnapshot:
    """Returns: snapshot id (str)."""
    label: Optional[str] = None


@dataclass(frozen=True)
class RollbackToSnapshot:
    """Returns: SnapshotView, or IllegalCommand if missing/corrupted."""
    snapshot_id: str


@dataclass(frozen=True)
class RollbackToLastGoodState:
    """Returns: SnapshotView, or IllegalCommand if no good state exists."""
    pass


# Command union type for type hints
Command = (
    ProcessFieldUpdate
    | ValidateForm
    | ResolveConflict
    | CreateManualSnapshot
    | RollbackToSnapshot
    | RollbackToLastGoodState
)
