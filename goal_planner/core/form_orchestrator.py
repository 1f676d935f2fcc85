"""
Form Orchestrator - Field-update pipeline (Functional Core)

Responsibilities:
- Merge a field update into the form data
- Run validation and conflict detection through the task runner
- Recompute visible fields and recommendations
- Score per-field confidence and raise uncertainty flags
- Record every outcome with the session's SafetyMonitor
- Degrade gracefully when a collaborator fails or times out

Design principles:
- Context in, new context out; the input context is never mutated
- Thin orchestration layer (rules live in the engines)
- Collaborator failures never propagate to the caller
- Feature gating follows the monitor's FormSafetyStatus
"""

import copy
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from goal_planner.commands import AIFormContext
from goal_planner.contracts import (
    DataConflict,
    DisclosureContext,
    FieldUpdate,
    Severity,
    UncertaintyFlag,
    ValidationIssue,
    ValidationResults,
)
from goal_planner.core.disclosure_engine import value_exists
from goal_planner.results import IllegalCommand, ValidationReport
from goal_planner.utils.safety_status import FormSafetyStatus, ai_allowed, progressive_allowed
from goal_planner.utils.task_runner import InlineTaskRunner, TaskRunner

logger = logging.getLogger(__name__)

TASK_VALIDATE = "validate"
TASK_DETECT_CONFLICTS = "detect_conflicts"


def register_validation_tasks(runner: TaskRunner, validator) -> TaskRunner:
    """Wire a validator's run_validation / detect_conflicts into a runner."""
    runner.register(
        TASK_VALIDATE,
        lambda payload: validator.run_validation(payload["form_data"], payload.get("context")),
    )
    runner.register(
        TASK_DETECT_CONFLICTS,
        lambda payload: validator.detect_conflicts(payload["form_data"], payload.get("validation")),
    )
    return runner


def score_field_confidence(value: Any) -> float:
    """Confidence that a raw value is a usable answer (0..1)."""
    if isinstance(value, bool):
        return 0.8
    if isinstance(value, (int, float)):
        return 0.9 if value > 0 else 0.4
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.3
        return min(0.9, 0.6 + len(text) / 100)
    if isinstance(value, (list, dict)):
        return 0.75 if value else 0.3
    return 0.3


class FormOrchestrator:
    """
    Coordinates the field-update pipeline for one form session.

    Functional core design:
    - Collaborators cached, form state external (AIFormContext)
    - process_field_update() transforms context deterministically
      given collaborator results
    """

    ERROR_CONFIDENCE_FACTOR = 0.5
    WARNING_CONFIDENCE_FACTOR = 0.8

    # Fields below this confidence get an uncertainty flag
    UNCERTAINTY_THRESHOLD = 0.6

    # Below this overall validation confidence the UI hands off to a human
    MANUAL_INTERVENTION_FLOOR = 0.5

    DEGRADED_CONFIDENCE = 0.5
    RECOMMENDATION_LIMIT = 3

    AI_FALLBACK_FLAG = UncertaintyFlag(
        field_id='ai_processing',
        reason='AI processing temporarily unavailable',
        suggested_clarification='Please continue filling the form manually',
        confidence=0.5,
    )
    AI_DISABLED_FLAG = UncertaintyFlag(
        field_id='ai_processing',
        reason='AI assistance disabled',
        suggested_clarification='Please continue filling the form manually',
        confidence=0.5,
    )

    def __init__(self, disclosure_engine, validator, safety_monitor,
                 task_runner: Optional[TaskRunner] = None,
                 task_timeout: Optional[float] = None):
        """
        Args:
            disclosure_engine: DisclosureEngine instance (stateless, safe to share)
            validator: Object with run_validation() and detect_conflicts()
            safety_monitor: The session's SafetyMonitor
            task_runner: Runner with 'validate' and 'detect_conflicts'
                         handlers (defaults to an inline runner over validator)
            task_timeout: Per-task timeout override

        Raises:
            TypeError: If any collaborator is missing a required method
        """
        self._validate_modules(disclosure_engine, validator, safety_monitor)

        self.engine = disclosure_engine
        self.validator = validator
        self.monitor = safety_monitor
        self.task_timeout = task_timeout

        if task_runner is None:
            task_runner = register_validation_tasks(InlineTaskRunner(), validator)
        self.runner = task_runner

        logger.info(f"Form orchestrator initialized (runner={type(task_runner).__name__})")

    def _validate_modules(self, disclosure_engine, validator, safety_monitor):
        """Validate collaborator interfaces"""
        for name in ('evaluate_field', 'recommend_next_fields', 'visible_fields'):
            if not callable(getattr(disclosure_engine, name, None)):
                raise TypeError(f"disclosure_engine must have callable {name}() method")

        for name in ('run_validation', 'detect_conflicts'):
            if not callable(getattr(validator, name, None)):
                raise TypeError(f"validator must have callable {name}() method")

        if not callable(getattr(safety_monitor, 'record_operation', None)):
            raise TypeError("safety_monitor must have callable record_operation() method")

    # =========================================================================
    # Field updates
    # =========================================================================

    def process_field_update(self, update: FieldUpdate, context: AIFormContext) -> AIFormContext:
        """
        Apply one field edit.

        Args:
            update: Validated FieldUpdate
            context: Current context (not mutated)

        Returns:
            AIFormContext: Updated context, degraded if a collaborator failed
        """
        merged = copy.deepcopy(context.inferred_data)
        merged[update.field_id] = copy.deepcopy(update.value)

        status = self.monitor.status
        if not ai_allowed(status):
            logger.info(f"AI disabled ({status.value}), merging {update.field_id} without analysis")
            self.monitor.record_operation('form_update', True, metadata={'field_id': update.field_id})
            return self._merge_only(merged, context)

        return self._run_pipeline(merged, context, status, metadata={'field_id': update.field_id})

    def _run_pipeline(self, merged: Dict[str, Any], context: AIFormContext,
                      status: FormSafetyStatus, metadata: Dict[str, Any],
                      dismissed: Optional[Tuple[str, ...]] = None) -> AIFormContext:
        dismissed = context.dismissed_conflicts if dismissed is None else dismissed

        try:
            validation, conflicts = self._analyze(merged, context, dismissed)

            completed = self.completed_fields(merged)
            disclosure_context = self.build_disclosure_context(context, merged, completed)
            visible, recommended = self._disclosure(disclosure_context, status)

            confidence = self.score_confidence(merged, validation)

        except Exception as e:
            logger.error(f"Form update pipeline failed: {type(e).__name__} - {e}")
            self.monitor.record_operation(
                'ai_inference', False, metadata=dict(metadata, error=f"{type(e).__name__}: {e}")
            )
            return self._degraded(merged, context, dismissed)

        needs_manual = (
            validation.overall_confidence < self.MANUAL_INTERVENTION_FLOOR or bool(conflicts)
        )

        self.monitor.record_operation('form_update', True, validation.overall_confidence, metadata)

        return context.evolve(
            completed_sections=completed,
            visible_fields=tuple(visible),
            inferred_data=merged,
            confidence_scores=confidence,
            uncertainty_flags=self.uncertainty_flags(confidence),
            recommended_fields=tuple(recommended),
            validation_results=validation,
            detected_conflicts=tuple(conflicts),
            dismissed_conflicts=tuple(dismissed),
            needs_manual_intervention=needs_manual,
        )

    def _analyze(self, form_data, context, dismissed) -> Tuple[ValidationResults, List[DataConflict]]:
        validation = self.runner.run_heavy_task(
            TASK_VALIDATE, {"form_data": form_data, "context": context}, timeout=self.task_timeout
        )
        conflicts = self.runner.run_heavy_task(
            TASK_DETECT_CONFLICTS, {"form_data": form_data, "validation": validation}, timeout=self.task_timeout
        )
        return validation, [c for c in conflicts if c.conflict_id not in dismissed]

    def _disclosure(self, disclosure_context: DisclosureContext, status: FormSafetyStatus):
        recommended = self.engine.recommend_next_fields(disclosure_context, limit=self.RECOMMENDATION_LIMIT)
        if progressive_allowed(status):
            visible = self.engine.visible_fields(disclosure_context)
        else:
            visible = list(self.engine.all_fields)
        return visible, recommended

    def _fallback_visible(self, context: AIFormContext) -> Tuple[str, ...]:
        if self.monitor.progressive_disabled:
            return tuple(self.engine.all_fields)
        return context.visible_fields

    def _degraded(self, merged, context: AIFormContext, dismissed) -> AIFormContext:
        """Keep the edit, previous visibility and a flag telling the user to continue manually."""
        fallback_warning = ValidationIssue(
            rule_id='ai_fallback',
            field_id='system',
            message='AI validation unavailable, please review your input manually.',
            severity=Severity.WARNING.value,
            confidence=self.DEGRADED_CONFIDENCE,
        )

        return context.evolve(
            completed_sections=self.completed_fields(merged),
            visible_fields=self._fallback_visible(context),
            inferred_data=merged,
            confidence_scores={field_id: self.DEGRADED_CONFIDENCE for field_id in merged},
            uncertainty_flags=(self.AI_FALLBACK_FLAG,),
            validation_results=ValidationResults(
                warnings=(fallback_warning,),
                overall_confidence=self.DEGRADED_CONFIDENCE,
            ),
            dismissed_conflicts=tuple(dismissed),
            needs_manual_intervention=True,
        )

    def _merge_only(self, merged, context: AIFormContext) -> AIFormContext:
        """Store the edit unanalysed; findings computed for older data are dropped."""
        scores = dict(context.confidence_scores)
        for field_id in merged:
            scores.setdefault(field_id, self.DEGRADED_CONFIDENCE)

        return context.evolve(
            completed_sections=self.completed_fields(merged),
            visible_fields=self._fallback_visible(context),
            inferred_data=merged,
            confidence_scores=scores,
            uncertainty_flags=(self.AI_DISABLED_FLAG,),
            recommended_fields=(),
            validation_results=ValidationResults(),
            detected_conflicts=(),
            needs_manual_intervention=True,
        )

    # =========================================================================
    # Full-form validation
    # =========================================================================

    def validate_form(self, form_data: Dict[str, Any], context: AIFormContext,
                      specific_fields: Optional[Iterable[str]] = None) -> ValidationReport:
        """
        Validate the whole form without applying an edit.

        Args:
            form_data: Values merged over the stored data first
            context: Current context (not mutated)
            specific_fields: Restrict returned uncertainty flags to these

        Returns:
            ValidationReport (degraded on collaborator failure)
        """
        merged = copy.deepcopy(context.inferred_data)
        merged.update(copy.deepcopy(form_data or {}))

        try:
            validation, conflicts = self._analyze(merged, context, context.dismissed_conflicts)
            flags = self.uncertainty_flags(self.score_confidence(merged, validation))
        except Exception as e:
            logger.error(f"Form validation failed: {type(e).__name__} - {e}")
            self.monitor.record_operation('validation', False, metadata={'error': str(e)})
            return self._degraded_report()

        if specific_fields is not None:
            wanted = set(specific_fields)
            flags = [flag for flag in flags if flag.field_id in wanted]

        self.monitor.record_operation('validation', True, validation.overall_confidence)

        return ValidationReport(
            results=validation,
            conflicts=tuple(conflicts),
            needs_manual_intervention=(
                validation.overall_confidence < self.MANUAL_INTERVENTION_FLOOR or bool(conflicts)
            ),
            uncertainty_flags=tuple(flags),
        )

    @staticmethod
    def _degraded_report() -> ValidationReport:
        return ValidationReport(
            results=ValidationResults(
                warnings=(ValidationIssue(
                    rule_id='validation_service_error',
                    field_id='system',
                    message='Validation service temporarily unavailable. Please review your data manually.',
                    severity=Severity.WARNING.value,
                    confidence=0.5,
                ),),
                suggestions=(ValidationIssue(
                    rule_id='manual_review',
                    field_id='form',
                    message='Consider saving your progress and trying again later.',
                    severity=Severity.INFO.value,
                    confidence=0.5,
                ),),
                overall_confidence=0.5,
            ),
            conflicts=(),
            needs_manual_intervention=True,
            uncertainty_flags=(),
            degraded=True,
        )

    # =========================================================================
    # Conflicts
    # =========================================================================

    def resolve_conflict(self, conflict_id: str, resolution: Any,
                         context: AIFormContext) -> Union[AIFormContext, IllegalCommand]:
        """
        Resolve a detected conflict and re-run the pipeline.

        Args:
            conflict_id: Id of a conflict in context.detected_conflicts
            resolution: 'accept' | 'dismiss' | {'updates': {field_id: value}}
            context: Current context (not mutated)

        Returns:
            AIFormContext, or IllegalCommand for unknown or unresolvable
            conflicts

        Raises:
            ValueError: If resolution has an unknown shape
        """
        conflict = next((c for c in context.detected_conflicts if c.conflict_id == conflict_id), None)
        if conflict is None:
            return IllegalCommand(
                reason=f"Conflict '{conflict_id}' is not currently detected",
                command_type="ResolveConflict",
                code="not_found",
            )

        merged = copy.deepcopy(context.inferred_data)
        dismissed = context.dismissed_conflicts

        if resolution == 'dismiss':
            if conflict_id not in dismissed:
                dismissed = dismissed + (conflict_id,)
            logger.info(f"Conflict {conflict_id} dismissed by user")

        elif resolution == 'accept':
            suggest = getattr(self.validator, 'suggest_resolution', None)
            resolved, updates, explanation = (
                suggest(conflict, merged) if callable(suggest)
                else (False, {}, 'No automatic resolution available')
            )
            if not resolved:
                return IllegalCommand(reason=explanation, command_type="ResolveConflict", code="unresolvable")
            merged.update(updates)
            logger.info(f"Conflict {conflict_id} auto-resolved: {explanation}")

        elif isinstance(resolution, dict) and isinstance(resolution.get('updates'), dict):
            merged.update(copy.deepcopy(resolution['updates']))
            logger.info(f"Conflict {conflict_id} resolved with user values for {sorted(resolution['updates'])}")

        else:
            raise ValueError(f"Unknown conflict resolution: {resolution!r}")

        status = self.monitor.status
        if not ai_allowed(status):
            self.monitor.record_operation('form_update', True, metadata={'conflict_id': conflict_id})
            return self._merge_only(merged, context).evolve(dismissed_conflicts=tuple(dismissed))

        return self._run_pipeline(merged, context, status, metadata={'conflict_id': conflict_id},
                                  dismissed=tuple(dismissed))

    # =========================================================================
    # Helpers
    # =========================================================================

    def recommend(self, context: AIFormContext, limit: Optional[int] = None):
        """Fresh recommendations for a stored context."""
        disclosure_context = self.build_disclosure_context(context)
        return self.engine.recommend_next_fields(disclosure_context, limit=limit or self.RECOMMENDATION_LIMIT)

    @staticmethod
    def completed_fields(form_data: Dict[str, Any]) -> Tuple[str, ...]:
        return tuple(field_id for field_id, value in form_data.items() if value_exists(value))

    @staticmethod
    def build_disclosure_context(context: AIFormContext, form_data: Optional[Dict[str, Any]] = None,
                                 completed: Optional[Iterable[str]] = None) -> DisclosureContext:
        """
        Disclosure input for a context.

        Confidence scores and uncertainty flags come from the context;
        they are recomputed after disclosure in the pipeline.
        """
        data = context.inferred_data if form_data is None else form_data
        if completed is None:
            completed = FormOrchestrator.completed_fields(data)
        return DisclosureContext(
            form_data=copy.deepcopy(data),
            completed_fields=frozenset(completed),
            confidence_scores=dict(context.confidence_scores),
            user_expertise_level=context.expertise_level,
            current_phase=context.current_phase,
            validation_results=context.validation_results,
            uncertainty_flags=context.uncertainty_flags,
        )

    def score_confidence(self, form_data: Dict[str, Any], validation: ValidationResults) -> Dict[str, float]:
        """Per-field confidence: value heuristic, penalised by validation findings."""
        error_fields = validation.fields_with(Severity.ERROR.value)
        warning_fields = validation.fields_with(Severity.WARNING.value)

        scores = {}
        for field_id, value in form_data.items():
            score = score_field_confidence(value)
            if field_id in error_fields:
                score *= self.ERROR_CONFIDENCE_FACTOR
            if field_id in warning_fields:
                score *= self.WARNING_CONFIDENCE_FACTOR
            scores[field_id] = round(score, 4)
        return scores

    def uncertainty_flags(self, confidence_scores: Dict[str, float]) -> Tuple[UncertaintyFlag, ...]:
        flags = []
        for field_id, score in confidence_scores.items():
            if score >= self.UNCERTAINTY_THRESHOLD:
                continue
            label = self.engine.field_label(field_id) if hasattr(self.engine, 'field_label') else field_id
            flags.append(UncertaintyFlag(
                field_id=field_id,
                reason=f"Low confidence in {label} value",
                suggested_clarification=f"Please confirm or add more detail to {label}",
                confidence=score,
            ))
        return tuple(flags)
