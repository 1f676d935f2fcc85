"""
Semantic contracts for the goal planner form engine.

This module defines immutable data structures that serve as contracts
between modules. Apart from the request parsers on FieldUpdate they are
NOT validators - they define shape and semantics.

Design principles:
- Frozen dataclasses (immutable after creation)
- String-based enums for JSON serialization
- No dependencies on other goal_planner modules
- Every record round-trips through plain JSON (to_json / from_json)

Contents:
- DisclosureCondition / DisclosureRule: rule set entries
- FieldDisclosureState / FieldRecommendation: evaluator outputs
- FieldUpdate: one user edit entering the pipeline
- ValidationIssue / ValidationResults / DataConflict / UncertaintyFlag:
  validation payloads
- SafetyTrigger / SafetyMetrics: safety monitor configuration and counters

Usage:
    from goal_planner.contracts import FieldUpdate, DisclosureRule
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ExpertiseLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class UpdateSource(str, Enum):
    """Where a field value came from."""
    USER_INPUT = "user_input"
    AI_INFERENCE = "ai_inference"
    TEMPLATE = "template"
    CALCULATION = "calculation"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ConditionType(str, Enum):
    FIELD_VALUE = "field_value"
    COMPLETION_RATE = "completion_rate"
    CONFIDENCE_LEVEL = "confidence_level"
    USER_EXPERTISE = "user_expertise"
    DEPENDENCY_CHAIN = "dependency_chain"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class TriggerType(str, Enum):
    TECHNICAL = "technical"
    DATA_INTEGRITY = "data_integrity"
    USER_SAFETY = "user_safety"
    AI_RELIABILITY = "ai_reliability"


class TriggerAction(str, Enum):
    ROLLBACK = "rollback"
    DISABLE_AI = "disable_ai"
    DISABLE_PROGRESSIVE = "disable_progressive"
    FULL_EMERGENCY = "full_emergency"


# Single source of truth for valid strings
VALID_EXPERTISE_LEVELS = {level.value for level in ExpertiseLevel}
VALID_SOURCES = {source.value for source in UpdateSource}
VALID_CONDITION_TYPES = {ctype.value for ctype in ConditionType}
VALID_OPERATORS = {op.value for op in ConditionOperator}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Disclosure rules
# =============================================================================

@dataclass(frozen=True)
class DisclosureCondition:
    """
    Visibility condition carried by a DisclosureRule.

    Exactly one condition type is active per rule. The type decides which
    operands are meaningful:

        field_value / dependency_chain: target_field, target_value
        completion_rate / confidence_level: threshold
        user_expertise: target_value (an expertise level string)

    type and operator are kept as plain strings so that a rule file with an
    unknown type still loads; the evaluator treats unknown types as "hide".
    """
    type: str
    operator: str
    target_field: Optional[str] = None
    target_value: Any = None
    threshold: Optional[float] = None

    @staticmethod
    def from_json(data: dict) -> "DisclosureCondition":
        return DisclosureCondition(
            type=data.get("type"),
            operator=data.get("operator"),
            target_field=data.get("target_field"),
            target_value=data.get("target_value"),
            threshold=data.get("threshold"),
        )


@dataclass(frozen=True)
class DisclosureRule:
    """
    Declarative rule mapping a field to a visibility condition.

    Attributes:
        id: Unique rule identifier (e.g. 'show_deadline_after_amount')
        field_id: Target field, the wildcard 'all', or a glob such as 'funding*'
        condition: DisclosureCondition evaluated against a DisclosureContext
        priority: Lower is evaluated first (file order is the tie-break)
        confidence: Vote weight in 0..1
        reason: Human-readable explanation surfaced to the UI
    """
    id: str
    field_id: str
    condition: DisclosureCondition
    priority: int
    confidence: float
    reason: str

    @staticmethod
    def from_json(data: dict) -> "DisclosureRule":
        return DisclosureRule(
            id=data["id"],
            field_id=data["field_id"],
            condition=DisclosureCondition.from_json(data["condition"]),
            priority=int(data.get("priority", 99)),
            confidence=float(data.get("confidence", 0.5)),
            reason=data.get("reason", ""),
        )


@dataclass(frozen=True)
class DisclosureContext:
    """
    Sole input to rule evaluation. Rebuilt (never mutated) per update.

    Attributes:
        form_data: field_id -> value
        completed_fields: Fields considered complete
        confidence_scores: field_id -> 0..1
        user_expertise_level: beginner | intermediate | advanced
        current_phase: Free-form phase label
        validation_results: Latest validation output (may be None)
        uncertainty_flags: Flags raised against individual fields
    """
    form_data: Dict[str, Any] = field(default_factory=dict)
    completed_fields: frozenset = frozenset()
    confidence_scores: Dict[str, float] = field(default_factory=dict)
    user_expertise_level: str = ExpertiseLevel.INTERMEDIATE.value
    current_phase: str = "goal_creation"
    validation_results: Optional["ValidationResults"] = None
    uncertainty_flags: Tuple["UncertaintyFlag", ...] = ()

    def to_json(self) -> dict:
        return {
            "form_data": dict(self.form_data),
            "completed_fields": sorted(self.completed_fields),
            "confidence_scores": dict(self.confidence_scores),
            "user_expertise_level": self.user_expertise_level,
            "current_phase": self.current_phase,
            "uncertainty_flags": [flag.to_json() for flag in self.uncertainty_flags],
        }


@dataclass(frozen=True)
class FieldDisclosureState:
    """Derived visibility decision for one field. Never cached."""
    is_visible: bool
    is_required: bool
    is_highlighted: bool
    show_help_text: bool
    reason: str
    confidence: float
    suggested_order: int

    def to_json(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class FieldRecommendation:
    field_id: str
    reason: str
    confidence: float
    suggested_order: int

    def to_json(self) -> dict:
        return asdict(self)

    @staticmethod
    def from_json(data: dict) -> "FieldRecommendation":
        return FieldRecommendation(
            field_id=data["field_id"],
            reason=data.get("reason", ""),
            confidence=float(data.get("confidence", 0.5)),
            suggested_order=int(data.get("suggested_order", 99)),
        )


# =============================================================================
# Field updates
# =============================================================================

@dataclass(frozen=True)
class FieldUpdate:
    """
    One edit entering the orchestrator (keystroke, blur, template fill).

    Attributes:
        field_id: Field being changed (e.g. 'targetAmount')
        value: New value; must be JSON-serializable
        timestamp: ISO-8601 time the edit was made
        source: One of UpdateSource values
    """
    field_id: str
    value: Any
    timestamp: str
    source: str = UpdateSource.USER_INPUT.value

    def to_json(self) -> dict:
        return asdict(self)

    @staticmethod
    def from_request(data: Any) -> "FieldUpdate":
        """
        Build a FieldUpdate from a request body, rejecting malformed shapes.

        Args:
            data: Parsed JSON body

        Returns:
            FieldUpdate

        Raises:
            ValueError: Listing every problem found in the body
        """
        if not isinstance(data, dict):
            raise ValueError("Request body must be a JSON object")

        errors = []

        field_id = data.get("field_id")
        if not isinstance(field_id, str) or not field_id.strip():
            errors.append("'field_id' is required and must be a non-empty string")

        if "value" not in data:
            errors.append("'value' is required")
        else:
            try:
                json.dumps(data["value"])
            except (TypeError, ValueError):
                errors.append("'value' must be JSON-serializable")

        source = data.get("source", UpdateSource.USER_INPUT.value)
        if not isinstance(source, str) or source not in VALID_SOURCES:
            errors.append(f"'source' must be one of {sorted(VALID_SOURCES)}")

        timestamp = data.get("timestamp")
        if timestamp is None:
            timestamp = utc_now_iso()
        elif not isinstance(timestamp, str):
            errors.append("'timestamp' must be an ISO-8601 string")
        else:
            try:
                datetime.fromisoformat(timestamp.replace('Z', '+00:00'))
            except ValueError:
                errors.append(f"'timestamp' is not ISO-8601: {timestamp!r}")

        if errors:
            raise ValueError("Invalid field update:\n  - " + "\n  - ".join(errors))

        return FieldUpdate(
            field_id=field_id.strip(),
            value=data["value"],
            timestamp=timestamp,
            source=source,
        )


# =============================================================================
# Validation payloads
# =============================================================================

@dataclass(frozen=True)
class ValidationIssue:
    rule_id: str
    field_id: str
    message: str
    severity: str
    confidence: float
    ai_resolution: Optional[str] = None

    def to_json(self) -> dict:
        return asdict(self)

    @staticmethod
    def from_json(data: dict) -> "ValidationIssue":
        return ValidationIssue(
            rule_id=data["rule_id"],
            field_id=data.get("field_id", "unknown"),
            message=data.get("message", ""),
            severity=data.get("severity", Severity.INFO.value),
            confidence=float(data.get("confidence", 0.5)),
            ai_resolution=data.get("ai_resolution"),
        )


@dataclass(frozen=True)
class ValidationResults:
    """
    Output of run_validation().

    overall_confidence starts at 1.0 and is multiplied down by every
    error and warning found.
    """
    errors: Tuple[ValidationIssue, ...] = ()
    warnings: Tuple[ValidationIssue, ...] = ()
    suggestions: Tuple[ValidationIssue, ...] = ()
    overall_confidence: float = 1.0
    cost_estimate: Optional[Dict[str, float]] = None

    def fields_with(self, severity: str) -> set:
        """Field ids carrying at least one issue of the given severity."""
        issues = {
            Severity.ERROR.value: self.errors,
            Severity.WARNING.value: self.warnings,
            Severity.INFO.value: self.suggestions,
        }.get(severity, ())
        return {issue.field_id for issue in issues}

    def to_json(self) -> dict:
        return {
            "errors": [issue.to_json() for issue in self.errors],
            "warnings": [issue.to_json() for issue in self.warnings],
            "suggestions": [issue.to_json() for issue in self.suggestions],
            "overall_confidence": self.overall_confidence,
            "cost_estimate": dict(self.cost_estimate) if self.cost_estimate else None,
        }

    @staticmethod
    def from_json(data: Optional[dict]) -> "ValidationResults":
        if not data:
            return ValidationResults()
        return ValidationResults(
            errors=tuple(ValidationIssue.from_json(i) for i in data.get("errors", [])),
            warnings=tuple(ValidationIssue.from_json(i) for i in data.get("warnings", [])),
            suggestions=tuple(ValidationIssue.from_json(i) for i in data.get("suggestions", [])),
            overall_confidence=float(data.get("overall_confidence", 1.0)),
            cost_estimate=data.get("cost_estimate"),
        )


@dataclass(frozen=True)
class DataConflict:
    """
    Cross-field inconsistency found by detect_conflicts().

    Attributes:
        conflict_id: Stable identifier (e.g. 'international_instate_conflict')
        description: Human-readable explanation
        conflicting_fields: Fields involved
        suggested_resolution: Text shown to the user
        confidence: How sure the detector is (0..1)
    """
    conflict_id: str
    description: str
    conflicting_fields: Tuple[str, ...]
    suggested_resolution: str
    confidence: float

    def to_json(self) -> dict:
        data = asdict(self)
        data["conflicting_fields"] = list(self.conflicting_fields)
        return data

    @staticmethod
    def from_json(data: dict) -> "DataConflict":
        return DataConflict(
            conflict_id=data["conflict_id"],
            description=data.get("description", ""),
            conflicting_fields=tuple(data.get("conflicting_fields", [])),
            suggested_resolution=data.get("suggested_resolution", ""),
            confidence=float(data.get("confidence", 0.5)),
        )


@dataclass(frozen=True)
class UncertaintyFlag:
    field_id: str
    reason: str
    suggested_clarification: str
    confidence: float

    def to_json(self) -> dict:
        return asdict(self)

    @staticmethod
    def from_json(data: dict) -> "UncertaintyFlag":
        return UncertaintyFlag(
            field_id=data["field_id"],
            reason=data.get("reason", ""),
            suggested_clarification=data.get("suggested_clarification", ""),
            confidence=float(data.get("confidence", 0.5)),
        )


# =============================================================================
# Safety
# =============================================================================

@dataclass(frozen=True)
class SafetyTrigger:
    """
    Threshold rule evaluated by the SafetyMonitor after every operation.

    condition is symbolic and matched against the monitor's fixed
    evaluator table (e.g. 'error_rate > threshold').
    """
    id: str
    type: TriggerType
    condition: str
    threshold: float
    action: TriggerAction
    priority: str


@dataclass
class SafetyMetrics:
    """
    Mutable per-session counters. Only SafetyMonitor writes these;
    callers receive copies via SafetyMonitor.get_metrics().
    """
    error_count: int = 0
    total_operations: int = 0
    consecutive_failures: int = 0
    last_successful_operation: str = field(default_factory=utc_now_iso)
    confidence_drift: float = 0.0
    data_corruption_count: int = 0

    @property
    def error_rate(self) -> float:
        if self.total_operations == 0:
            return 0.0
        return self.error_count / self.total_operations

    def to_json(self) -> dict:
        data = asdict(self)
        data["error_rate"] = self.error_rate
        return data
