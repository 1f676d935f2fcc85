"""
Form Session - Per-session owner of form state and safety components

Responsibilities:
- Own one SnapshotStore, SafetyMonitor, FormOrchestrator and the
  current AIFormContext for a (user_id, session_id) pair
- Load the context on creation and save after each applied change
- Serialize updates; drop values superseded by a newer edit of the
  same field
- Take automatic snapshots of confident states
- Apply rollbacks requested by the monitor or the user
- Dispatch commands (handle)

Design principles:
- No module-level singletons; SessionRegistry hands out instances
- One re-entrant lock per session guards the context and sequencing
- reset() bumps a generation so late completions become no-ops
"""

import itertools
import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple, Union

from goal_planner.commands import (
    AIFormContext,
    CreateManualSnapshot,
    ProcessFieldUpdate,
    ResolveConflict,
    RollbackToLastGoodState,
    RollbackToSnapshot,
    ValidateForm,
)
from goal_planner.contracts import ExpertiseLevel, FieldUpdate, SafetyMetrics, ValidationResults
from goal_planner.core.form_orchestrator import FormOrchestrator
from goal_planner.core.safety_monitor import SafetyMonitor
from goal_planner.core.snapshot_store import SnapshotStore, mean_confidence
from goal_planner.results import IllegalCommand, SnapshotView, ValidationReport
from goal_planner.utils import safety_signals
from goal_planner.utils.helpers import generate_snapshot_label
from goal_planner.utils.safety_status import ai_allowed

logger = logging.getLogger(__name__)


class FormSession:
    """
    One user's form session.

    All public methods are safe to call from multiple threads.
    """

    # Automatic snapshot when mean confidence is above this
    AUTO_SNAPSHOT_CONFIDENCE = 0.7

    def __init__(
        self,
        user_id,
        session_id: str,
        disclosure_engine,
        validator,
        task_runner=None,
        context_store=None,
        task_timeout: Optional[float] = None,
        expertise_level: str = ExpertiseLevel.INTERMEDIATE.value,
    ):
        """
        Args:
            user_id: Owner of the session
            session_id: Form session identifier
            disclosure_engine: Shared DisclosureEngine
            validator: Shared validation collaborator
            task_runner: Shared TaskRunner (inline runner when None)
            context_store: Object with load_form_context / save_form_context
                           (no persistence when None)
            task_timeout: Per-task timeout override
            expertise_level: Used when no saved context exists
        """
        self.user_id = user_id
        self.session_id = session_id
        self.context_store = context_store

        self._lock = threading.RLock()
        # Guards sequencing, pending futures and the worker; never held while processing
        self._queue_lock = threading.RLock()
        self._generation = 0
        self._sequence = itertools.count(1)
        self._applied: Dict[str, int] = {}
        self._pending: Dict[str, Future] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        self._rollbacks_applied = 0

        self.snapshots = SnapshotStore(session_id)
        self.monitor = SafetyMonitor(
            session_id,
            snapshot_store=self.snapshots,
            confidence_provider=self._average_confidence,
            invalid_state_detector=self._state_invalid,
        )
        self.snapshots.on_corruption = self.monitor.record_corruption

        self.orchestrator = FormOrchestrator(
            disclosure_engine, validator, self.monitor,
            task_runner=task_runner, task_timeout=task_timeout,
        )

        # Monitor-initiated rollbacks are applied to this session only
        safety_signals.rollback.connect(self._on_safety_rollback, sender=self.monitor)

        loaded = context_store.load_form_context(user_id, session_id) if context_store else None
        self.context: AIFormContext = loaded or self._initial_context(expertise_level)

        logger.info(f"Form session {session_id} ready for user {user_id} (restored={loaded is not None})")

    def _initial_context(self, expertise_level: str) -> AIFormContext:
        context = AIFormContext(
            user_id=self.user_id,
            session_id=self.session_id,
            expertise_level=expertise_level,
        )
        disclosure_context = self.orchestrator.build_disclosure_context(context)
        engine = self.orchestrator.engine
        return context.evolve(
            visible_fields=tuple(engine.visible_fields(disclosure_context)),
            recommended_fields=tuple(engine.recommend_next_fields(disclosure_context)),
        )

    # =========================================================================
    # Field updates
    # =========================================================================

    def process_field_update(self, update: FieldUpdate) -> Union[AIFormContext, IllegalCommand]:
        """Apply an update on the caller's thread."""
        with self._queue_lock:
            sequence = next(self._sequence)
            generation = self._generation
        return self._apply_update(update, sequence, generation)

    def submit_field_update(self, update: FieldUpdate) -> Future:
        """
        Queue an update on the session's worker (FIFO).

        A still-pending earlier submission for the same field is
        cancelled; waiting on its future raises CancelledError.
        """
        with self._queue_lock:
            sequence = next(self._sequence)
            generation = self._generation

            previous = self._pending.get(update.field_id)
            if previous is not None and previous.cancel():
                logger.debug(f"Cancelled superseded update for {update.field_id}")

            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"form-{self.session_id}")

            future = self._executor.submit(self._apply_update, update, sequence, generation)
            self._pending[update.field_id] = future
            future.add_done_callback(lambda f, field_id=update.field_id: self._forget(field_id, f))
            return future

    def _forget(self, field_id: str, future: Future) -> None:
        with self._queue_lock:
            if self._pending.get(field_id) is future:
                del self._pending[field_id]

    def _apply_update(self, update: FieldUpdate, sequence: int,
                      generation: int) -> Union[AIFormContext, IllegalCommand]:
        with self._lock:
            if generation != self._generation:
                logger.info(f"Ignoring update for {update.field_id} from a previous session generation")
                return self.context

            if sequence < self._applied.get(update.field_id, 0):
                logger.info(f"Dropping superseded update for {update.field_id} (seq {sequence})")
                return self.context

            if self.monitor.emergency_mode:
                return self._emergency("ProcessFieldUpdate")

            rollbacks_before = self._rollbacks_applied
            updated = self.orchestrator.process_field_update(update, self.context)
            self._applied[update.field_id] = sequence

            if self._rollbacks_applied != rollbacks_before:
                logger.warning(f"Rollback applied while processing {update.field_id}, update discarded")
                return self.context

            self._commit(updated)
            self._maybe_auto_snapshot()
            return self.context

    # =========================================================================
    # Other operations
    # =========================================================================

    def validate_form(self, form_data: Optional[Dict[str, Any]] = None,
                      specific_fields=None) -> Union[ValidationReport, IllegalCommand]:
        with self._lock:
            if self.monitor.emergency_mode:
                return self._emergency("ValidateForm")
            return self.orchestrator.validate_form(form_data or {}, self.context, specific_fields)

    def resolve_conflict(self, conflict_id: str, resolution: Any) -> Union[AIFormContext, IllegalCommand]:
        with self._lock:
            if self.monitor.emergency_mode:
                return self._emergency("ResolveConflict")

            rollbacks_before = self._rollbacks_applied
            result = self.orchestrator.resolve_conflict(conflict_id, resolution, self.context)
            if isinstance(result, IllegalCommand) or self._rollbacks_applied != rollbacks_before:
                return result if isinstance(result, IllegalCommand) else self.context

            self._commit(result)
            return self.context

    def create_manual_snapshot(self, label: Optional[str] = None) -> Union[str, IllegalCommand]:
        with self._lock:
            if self.monitor.emergency_mode:
                return self._emergency("CreateManualSnapshot")
            return self._snapshot(label or generate_snapshot_label())

    def rollback_to_snapshot(self, snapshot_id: str) -> Union[SnapshotView, IllegalCommand]:
        with self._lock:
            if self.monitor.emergency_mode:
                return self._emergency("RollbackToSnapshot")

            known = any(s["id"] == snapshot_id for s in self.snapshots.get_snapshots())
            view = self.snapshots.rollback_to_snapshot(snapshot_id)
            if view is None:
                return IllegalCommand(
                    reason=(f"Snapshot '{snapshot_id}' failed its integrity check" if known
                            else f"Snapshot '{snapshot_id}' not found"),
                    command_type="RollbackToSnapshot",
                    code="corrupted" if known else "not_found",
                )

            self._apply_snapshot(view)
            self.monitor.record_operation('form_update', True, metadata={'rollback': snapshot_id})
            return view

    def rollback_to_last_good_state(self) -> Union[SnapshotView, IllegalCommand]:
        with self._lock:
            if self.monitor.emergency_mode:
                return self._emergency("RollbackToLastGoodState")

            view = self.snapshots.rollback_to_last_good_state()
            if view is None:
                return IllegalCommand(
                    reason="No snapshot with confidence above the rollback threshold",
                    command_type="RollbackToLastGoodState",
                    code="no_good_state",
                )

            self._apply_snapshot(view)
            self.monitor.record_operation('form_update', True, metadata={'rollback': view.snapshot_id})
            return view

    def get_safety_metrics(self) -> SafetyMetrics:
        return self.monitor.get_metrics()

    def get_snapshots(self) -> List[Dict[str, str]]:
        with self._lock:
            return self.snapshots.get_snapshots()

    def recommendations(self, limit: Optional[int] = None):
        with self._lock:
            if self.monitor.emergency_mode:
                return self._emergency("Recommendations")
            return self.orchestrator.recommend(self.context, limit)

    def reset(self) -> None:
        """
        Clear snapshots, metrics and safety flags and drop pending work.

        The form context itself is kept.
        """
        with self._queue_lock:
            self._generation += 1
            for future in list(self._pending.values()):
                future.cancel()
            self._pending.clear()

        with self._lock:
            self._applied.clear()
            self.snapshots.clear_snapshots()
            self.monitor.reset()
            logger.info(f"Form session {self.session_id} reset (generation {self._generation})")

    def close(self) -> None:
        with self._queue_lock:
            self._generation += 1
            if self._executor is not None:
                self._executor.shutdown(wait=False, cancel_futures=True)
                self._executor = None
            self._pending.clear()
        safety_signals.rollback.disconnect(self._on_safety_rollback, sender=self.monitor)

    # =========================================================================
    # Command dispatch
    # =========================================================================

    def handle(self, command):
        """
        Single entry point for commands.

        Returns:
            AIFormContext, ValidationReport, SnapshotView, snapshot id
            (str) or IllegalCommand, depending on the command

        Raises:
            TypeError: If command is not a known command type
        """
        if isinstance(command, ProcessFieldUpdate):
            return self.process_field_update(command.update)
        if isinstance(command, ValidateForm):
            return self.validate_form(command.form_data, command.specific_fields)
        if isinstance(command, ResolveConflict):
            return self.resolve_conflict(command.conflict_id, command.resolution)
        if isinstance(command, CreateManualSnapshot):
            return self.create_manual_snapshot(command.label)
        if isinstance(command, RollbackToSnapshot):
            return self.rollback_to_snapshot(command.snapshot_id)
        if isinstance(command, RollbackToLastGoodState):
            return self.rollback_to_last_good_state()
        raise TypeError(f"Unknown command type: {type(command).__name__}")

    # =========================================================================
    # Internals
    # =========================================================================

    def _emergency(self, command_type: str) -> IllegalCommand:
        return IllegalCommand(
            reason="Session is in emergency mode; reset required",
            command_type=command_type,
            code="emergency",
        )

    def _commit(self, context: AIFormContext) -> None:
        self.context = context
        if self.context_store is not None:
            self.context_store.save_form_context(context)

    def _snapshot(self, label: Optional[str] = None) -> str:
        context = self.context
        ai_state = {
            "current_phase": context.current_phase,
            "completed_sections": list(context.completed_sections),
            "confidence_scores": dict(context.confidence_scores),
            "inferred_data": context.inferred_data,
        }
        progressive_state = {
            "disclosure_context": self.orchestrator.build_disclosure_context(context).to_json(),
            "visible_fields": list(context.visible_fields),
            "expertise_level": context.expertise_level,
        }
        return self.snapshots.create_snapshot(context.inferred_data, ai_state, progressive_state, label=label)

    def _maybe_auto_snapshot(self) -> None:
        if not ai_allowed(self.monitor.status):
            return
        if mean_confidence({"confidence_scores": self.context.confidence_scores}) > self.AUTO_SNAPSHOT_CONFIDENCE:
            self._snapshot()

    def _apply_snapshot(self, view: SnapshotView) -> None:
        ai_state = view.ai_state
        progressive = view.progressive_state

        restored = self.context.evolve(
            current_phase=ai_state.get("current_phase", self.context.current_phase),
            completed_sections=tuple(ai_state.get("completed_sections", ())),
            inferred_data=view.form_data,
            confidence_scores=ai_state.get("confidence_scores", {}),
            visible_fields=tuple(progressive.get("visible_fields", ())),
            expertise_level=progressive.get("expertise_level", self.context.expertise_level),
            uncertainty_flags=(),
            validation_results=ValidationResults(),
            detected_conflicts=(),
            needs_manual_intervention=False,
        )
        restored = restored.evolve(recommended_fields=tuple(self.orchestrator.recommend(restored)))

        self._rollbacks_applied += 1
        self._commit(restored)
        logger.warning(f"Session {self.session_id} restored from snapshot {view.snapshot_id}")

    def _on_safety_rollback(self, sender, trigger_id=None, snapshot=None, **kwargs) -> None:
        if snapshot is None:
            return
        with self._lock:
            self._apply_snapshot(snapshot)

    def _average_confidence(self) -> float:
        scores = list(self.context.confidence_scores.values())
        if not scores:
            return SafetyMonitor.EXPECTED_CONFIDENCE
        return sum(scores) / len(scores)

    def _state_invalid(self) -> bool:
        return any(
            not isinstance(score, (int, float)) or isinstance(score, bool) or not 0.0 <= score <= 1.0
            for score in self.context.confidence_scores.values()
        )


class SessionRegistry:
    """
    Hands out FormSession instances keyed by (user_id, session_id).

    Shared collaborators (engine, validator, task runner, context store)
    are injected once; every session gets its own store, monitor and
    orchestrator. At most max_sessions stay live; the least recently
    used one is closed when the cap is exceeded (its saved context is
    restored on the next get()).
    """

    DEFAULT_MAX_SESSIONS = 1000

    def __init__(self, disclosure_engine, validator, task_runner=None,
                 context_store=None, task_timeout: Optional[float] = None,
                 max_sessions: Optional[int] = None):
        self.disclosure_engine = disclosure_engine
        self.validator = validator
        self.task_runner = task_runner
        self.context_store = context_store
        self.task_timeout = task_timeout
        self.max_sessions = max_sessions or self.DEFAULT_MAX_SESSIONS

        self._sessions: "OrderedDict[Tuple[Any, str], FormSession]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, user_id, session_id: str) -> FormSession:
        key = (user_id, session_id)
        evicted = []
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                session = FormSession(
                    user_id,
                    session_id,
                    self.disclosure_engine,
                    self.validator,
                    task_runner=self.task_runner,
                    context_store=self.context_store,
                    task_timeout=self.task_timeout,
                )
                self._sessions[key] = session
                while len(self._sessions) > self.max_sessions:
                    evicted.append(self._sessions.popitem(last=False)[1])
            else:
                self._sessions.move_to_end(key)

        for old in evicted:
            old.close()
            logger.info(f"Evicted idle form session {old.session_id} for user {old.user_id}")
        return session

    def end(self, user_id, session_id: str) -> bool:
        """Close and forget a session. Returns False if it was not live."""
        with self._lock:
            session = self._sessions.pop((user_id, session_id), None)
        if session is None:
            return False
        session.close()
        logger.info(f"Ended form session {session_id} for user {user_id}")
        return True

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key) -> bool:
        return key in self._sessions

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
