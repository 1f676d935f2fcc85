"""
Safety Monitor - Rolling operation metrics and threshold triggers

Responsibilities:
- Count operations, failures and corruption events for one session
- Evaluate the fixed trigger table after every recorded operation
- Execute trigger actions (rollback, disable AI, disable progressive
  disclosure, full emergency) and announce them as blinker signals
- Keep a bounded audit log of fired triggers

Design principles:
- One monitor per form session
- Record-and-check is atomic (guarded by a re-entrant lock)
- Feature flags are sticky until reset()
- Trigger checks are never re-entered from inside an action
"""

import copy
import logging
import threading
from collections import deque
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from goal_planner.contracts import (
    SafetyMetrics,
    SafetyTrigger,
    TriggerAction,
    TriggerType,
    utc_now_iso,
)
from goal_planner.utils import safety_signals
from goal_planner.utils.safety_status import FormSafetyStatus, assess_form_safety

logger = logging.getLogger(__name__)


SAFETY_TRIGGERS = (
    SafetyTrigger(
        id='high_error_rate',
        type=TriggerType.TECHNICAL,
        condition='error_rate > threshold',
        threshold=0.15,
        action=TriggerAction.DISABLE_AI,
        priority='high',
    ),
    SafetyTrigger(
        id='confidence_collapse',
        type=TriggerType.AI_RELIABILITY,
        condition='avg_confidence < threshold',
        threshold=0.3,
        action=TriggerAction.DISABLE_AI,
        priority='high',
    ),
    SafetyTrigger(
        id='data_corruption',
        type=TriggerType.DATA_INTEGRITY,
        condition='corruption_events > threshold',
        threshold=3,
        action=TriggerAction.ROLLBACK,
        priority='critical',
    ),
    SafetyTrigger(
        id='consecutive_failures',
        type=TriggerType.TECHNICAL,
        condition='consecutive_failures > threshold',
        threshold=5,
        action=TriggerAction.FULL_EMERGENCY,
        priority='critical',
    ),
    SafetyTrigger(
        id='ai_inference_drift',
        type=TriggerType.AI_RELIABILITY,
        condition='inference_drift > threshold',
        threshold=0.8,
        action=TriggerAction.DISABLE_AI,
        priority='medium',
    ),
    SafetyTrigger(
        id='form_state_invalid',
        type=TriggerType.DATA_INTEGRITY,
        condition='invalid_state_detected',
        threshold=1,
        action=TriggerAction.ROLLBACK,
        priority='high',
    ),
)

VALID_OPERATION_TYPES = {'ai_inference', 'form_update', 'validation', 'disclosure_update'}


class SafetyMonitor:
    """Per-session safety metrics and trigger evaluation"""

    # Baseline used for confidence drift and when no provider is wired
    EXPECTED_CONFIDENCE = 0.8

    MAX_EVENTS = 100

    def __init__(
        self,
        session_id: str,
        snapshot_store=None,
        confidence_provider: Optional[Callable[[], float]] = None,
        invalid_state_detector: Optional[Callable[[], bool]] = None,
        triggers=SAFETY_TRIGGERS,
        max_events: Optional[int] = None,
    ):
        """
        Args:
            session_id: Owning form session
            snapshot_store: SnapshotStore used by rollback actions
            confidence_provider: Returns current average confidence
            invalid_state_detector: Returns True when form state is invalid
            triggers: Trigger table (defaults to SAFETY_TRIGGERS)
            max_events: Audit log capacity
        """
        self.session_id = session_id
        self.snapshot_store = snapshot_store
        self.confidence_provider = confidence_provider
        self.invalid_state_detector = invalid_state_detector
        self.triggers = tuple(triggers)

        self._metrics = SafetyMetrics()
        self._events = deque(maxlen=max_events or self.MAX_EVENTS)
        self._lock = threading.RLock()
        self._checking = False
        # Corruption count already answered by a rollback
        self._corruption_handled = 0

        self.ai_disabled = False
        self.progressive_disabled = False
        self.emergency_mode = False

        self._evaluators: Dict[str, Callable[[SafetyTrigger], bool]] = {
            'error_rate > threshold': lambda t: self._metrics.error_rate > t.threshold,
            'avg_confidence < threshold': lambda t: self._current_confidence() < t.threshold,
            'corruption_events > threshold': self._corruption_unhandled,
            'consecutive_failures > threshold': lambda t: self._metrics.consecutive_failures > t.threshold,
            'inference_drift > threshold': lambda t: self._metrics.confidence_drift > t.threshold,
            'invalid_state_detected': lambda t: self._invalid_state(),
        }

    # ========================
    # Recording
    # ========================

    def record_operation(
        self,
        operation_type: str,
        success: bool,
        confidence: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        """
        Record one operation outcome and evaluate triggers.

        Args:
            operation_type: ai_inference | form_update | validation | disclosure_update
            success: Whether the operation completed without fatal error
            confidence: Optional confidence of the result (updates drift)
            metadata: Free-form context for the log line

        Returns:
            list[str]: Ids of triggers that fired
        """
        if operation_type not in VALID_OPERATION_TYPES:
            logger.warning(f"Unrecognised operation type recorded: {operation_type}")

        with self._lock:
            self._metrics.total_operations += 1

            if success:
                self._metrics.consecutive_failures = 0
                self._metrics.last_successful_operation = utc_now_iso()
            else:
                self._metrics.error_count += 1
                self._metrics.consecutive_failures += 1

            if confidence is not None:
                self._metrics.confidence_drift = abs(confidence - self.EXPECTED_CONFIDENCE)

            logger.debug(
                f"Operation recorded: {operation_type}, success={success}, "
                f"error_rate={self._metrics.error_rate:.2f}, "
                f"consecutive_failures={self._metrics.consecutive_failures}, "
                f"confidence={confidence}, metadata={metadata}"
            )

            return self.check_triggers()

    def record_corruption(self, snapshot_id: str) -> None:
        """
        Count a corrupted snapshot.

        Called from SnapshotStore.on_corruption. Triggers are evaluated
        unless a check is already running.
        """
        with self._lock:
            self._metrics.data_corruption_count += 1
            logger.error(
                f"Data corruption recorded for snapshot {snapshot_id} "
                f"(count={self._metrics.data_corruption_count})"
            )
            if not self._checking:
                self.check_triggers()

    # ========================
    # Trigger Evaluation
    # ========================

    def check_triggers(self) -> List[str]:
        """
        Evaluate every trigger in table order and execute those that fire.

        Returns:
            list[str]: Ids of triggers that fired
        """
        with self._lock:
            if self._checking:
                return []

            self._checking = True
            fired = []
            try:
                for trigger in self.triggers:
                    evaluator = self._evaluators.get(trigger.condition)
                    if evaluator is None:
                        logger.warning(f"Unknown trigger condition: {trigger.condition}")
                        continue

                    if evaluator(trigger):
                        logger.warning(f"Safety trigger activated: {trigger.id} ({trigger.priority})")
                        self._execute_action(trigger)
                        fired.append(trigger.id)
            finally:
                self._checking = False

            return fired

    def _execute_action(self, trigger: SafetyTrigger) -> None:
        action = trigger.action
        timestamp = utc_now_iso()

        if action == TriggerAction.ROLLBACK:
            snapshot = None
            if self.snapshot_store is not None:
                snapshot = self.snapshot_store.rollback_to_last_good_state()

            if trigger.condition == 'corruption_events > threshold':
                # Includes corruption found while searching for a good state
                self._corruption_handled = self._metrics.data_corruption_count

            self._log_event(trigger, timestamp, snapshot_id=snapshot.snapshot_id if snapshot else None)
            safety_signals.rollback.send(self, trigger_id=trigger.id, snapshot=snapshot, timestamp=timestamp)

            if snapshot is None and trigger.priority == 'critical':
                logger.error(f"Rollback for {trigger.id} found no good state, escalating to full emergency")
                self._enter_emergency(trigger, timestamp)
            return

        if action == TriggerAction.DISABLE_AI:
            self._log_event(trigger, timestamp)
            if not self.ai_disabled:
                self.ai_disabled = True
                safety_signals.disable_ai.send(
                    self, trigger_id=trigger.id, reason='safety_trigger', timestamp=timestamp
                )
            return

        if action == TriggerAction.DISABLE_PROGRESSIVE:
            self._log_event(trigger, timestamp)
            if not self.progressive_disabled:
                self.progressive_disabled = True
                safety_signals.disable_progressive.send(
                    self, trigger_id=trigger.id, reason='safety_trigger', timestamp=timestamp
                )
            return

        if action == TriggerAction.FULL_EMERGENCY:
            self._log_event(trigger, timestamp)
            self._enter_emergency(trigger, timestamp)
            return

        logger.warning(f"Unknown safety action: {action}")

    def _enter_emergency(self, trigger: SafetyTrigger, timestamp: str) -> None:
        if self.emergency_mode:
            return
        self.emergency_mode = True
        logger.error(f"FULL EMERGENCY MODE ACTIVATED for session {self.session_id} by {trigger.id}")
        safety_signals.emergency_mode.send(
            self,
            trigger_id=trigger.id,
            reason='critical_safety_trigger',
            timestamp=timestamp,
            metrics=self._metrics.to_json(),
        )

    # ========================
    # Inputs
    # ========================

    def _current_confidence(self) -> float:
        if self.confidence_provider is None:
            return self.EXPECTED_CONFIDENCE
        try:
            return float(self.confidence_provider())
        except Exception as e:
            logger.error(f"Confidence provider failed: {e}")
            return self.EXPECTED_CONFIDENCE

    def _corruption_unhandled(self, trigger: SafetyTrigger) -> bool:
        """Corruption is over threshold and has grown since the last rollback."""
        count = self._metrics.data_corruption_count
        return count > trigger.threshold and count > self._corruption_handled

    def _invalid_state(self) -> bool:
        if self.invalid_state_detector is None:
            return False
        try:
            return bool(self.invalid_state_detector())
        except Exception as e:
            # A detector that cannot inspect the state counts as invalid
            logger.error(f"Invalid-state detector failed: {e}")
            return True

    # ========================
    # Read API
    # ========================

    def get_metrics(self) -> SafetyMetrics:
        """Copy of current metrics; mutating it does not affect the monitor."""
        with self._lock:
            return replace(self._metrics)

    def get_events(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(event) for event in self._events]

    @property
    def status(self) -> FormSafetyStatus:
        return assess_form_safety(self.ai_disabled, self.progressive_disabled, self.emergency_mode)

    def reset(self) -> None:
        """Clear metrics, flags and the audit log."""
        with self._lock:
            self._metrics = SafetyMetrics()
            self._events.clear()
            self._corruption_handled = 0
            self.ai_disabled = False
            self.progressive_disabled = False
            self.emergency_mode = False
            logger.info(f"Safety monitor reset for session {self.session_id}")

    # ========================
    # Audit
    # ========================

    def _log_event(self, trigger: SafetyTrigger, timestamp: str, **extra) -> None:
        event = {
            'trigger_id': trigger.id,
            'trigger_type': trigger.type.value,
            'action': trigger.action.value,
            'priority': trigger.priority,
            'metrics': self._metrics.to_json(),
            'timestamp': timestamp,
            'session_id': self.session_id,
        }
        event.update(extra)
        self._events.append(event)

        log = logger.error if trigger.priority == 'critical' else logger.warning
        log(f"Safety event: {trigger.id} -> {trigger.action.value} at {timestamp}, metrics={event['metrics']}")
