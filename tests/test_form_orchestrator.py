"""
Test Suite for FormOrchestrator

Tests the field-update pipeline with mock collaborators: merge,
disclosure, confidence scoring, degradation and conflict resolution.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import copy
import threading
import unittest
from datetime import date

from goal_planner.commands import AIFormContext
from goal_planner.contracts import FieldUpdate, ValidationResults, utc_now_iso
from goal_planner.core.disclosure_engine import DisclosureEngine
from goal_planner.core.form_orchestrator import (
    FormOrchestrator,
    register_validation_tasks,
    score_field_confidence,
)
from goal_planner.core.safety_monitor import SafetyMonitor
from goal_planner.core.validation_engine import ValidationEngine
from goal_planner.results import IllegalCommand, ValidationReport
from goal_planner.utils.task_runner import ThreadedTaskRunner


class MockValidator:
    """Wraps the local engine and counts calls"""

    def __init__(self):
        self.engine = ValidationEngine(today=lambda: date(2026, 1, 15))
        self.calls = 0

    def run_validation(self, form_data, context=None):
        self.calls += 1
        return self.engine.run_validation(form_data, context)

    def detect_conflicts(self, form_data, validation=None):
        return self.engine.detect_conflicts(form_data, validation)

    def suggest_resolution(self, conflict, form_data):
        return self.engine.suggest_resolution(conflict, form_data)


class FailingValidator(MockValidator):
    def run_validation(self, form_data, context=None):
        raise RuntimeError("model unavailable")


class SlowValidator(MockValidator):
    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def run_validation(self, form_data, context=None):
        self.release.wait(2.0)
        return super().run_validation(form_data, context)


def update(field_id, value):
    return FieldUpdate(field_id=field_id, value=value, timestamp=utc_now_iso())


def empty_context():
    return AIFormContext(user_id=1, session_id="session-test", visible_fields=("title",))


class OrchestratorTestCase(unittest.TestCase):

    validator_class = MockValidator

    def setUp(self):
        self.engine = DisclosureEngine()
        self.validator = self.validator_class()
        self.monitor = SafetyMonitor("session-test")
        self.orchestrator = FormOrchestrator(self.engine, self.validator, self.monitor)

    def apply(self, context, *pairs):
        for field_id, value in pairs:
            context = self.orchestrator.process_field_update(update(field_id, value), context)
        return context


# =============================================================================
# PART 1: Construction and scoring
# =============================================================================

class TestConstruction(unittest.TestCase):

    def test_rejects_validator_without_methods(self):
        with self.assertRaises(TypeError):
            FormOrchestrator(DisclosureEngine(), object(), SafetyMonitor("s"))

    def test_rejects_monitor_without_record_operation(self):
        with self.assertRaises(TypeError):
            FormOrchestrator(DisclosureEngine(), MockValidator(), object())

    def test_score_field_confidence(self):
        self.assertEqual(score_field_confidence(True), 0.8)
        self.assertEqual(score_field_confidence(5000), 0.9)
        self.assertEqual(score_field_confidence(0), 0.4)
        self.assertEqual(score_field_confidence("   "), 0.3)
        self.assertAlmostEqual(score_field_confidence("Emergency Fund"), 0.74)
        self.assertEqual(score_field_confidence("x" * 200), 0.9)
        self.assertEqual(score_field_confidence([{"amount": 1}]), 0.75)
        self.assertEqual(score_field_confidence({}), 0.3)
        self.assertEqual(score_field_confidence(None), 0.3)


# =============================================================================
# PART 2: Field update pipeline
# =============================================================================

class TestProcessFieldUpdate(OrchestratorTestCase):

    def test_merge_and_disclose(self):
        context = empty_context()

        result = self.apply(context, ("title", "Emergency Fund"))

        self.assertEqual(result.inferred_data, {"title": "Emergency Fund"})
        self.assertEqual(result.completed_sections, ("title",))
        self.assertIn("targetAmount", result.visible_fields)
        self.assertTrue(result.recommended_fields)
        self.assertEqual(result.confidence_scores, {"title": 0.74})
        self.assertEqual(self.monitor.get_metrics().total_operations, 1)
        print("✓ Title update disclosed target amount")

    def test_input_context_not_mutated(self):
        context = self.apply(empty_context(), ("title", "Car"))
        snapshot = context.to_json()

        self.apply(context, ("targetAmount", 5000), ("title", "Boat"))

        self.assertEqual(context.to_json(), snapshot)

    def test_update_value_copied(self):
        breakdown = [{"amount": 100}]
        result = self.apply(empty_context(), ("expenseBreakdown", breakdown))

        breakdown[0]["amount"] = 999

        self.assertEqual(result.inferred_data["expenseBreakdown"], [{"amount": 100}])

    def test_empty_value_not_completed(self):
        result = self.apply(empty_context(), ("title", "Car"), ("title", ""))

        self.assertEqual(result.completed_sections, ())
        self.assertEqual(result.inferred_data, {"title": ""})

    def test_low_confidence_flagged(self):
        result = self.apply(empty_context(), ("title", ""))

        flags = {flag.field_id: flag for flag in result.uncertainty_flags}
        self.assertIn("title", flags)
        self.assertEqual(flags["title"].reason, "Low confidence in Goal title value")
        # 0.3 heuristic halved by the title_required error
        self.assertAlmostEqual(result.confidence_scores["title"], 0.15)

    def test_validation_findings_lower_confidence(self):
        result = self.apply(empty_context(), ("title", "Car"), ("targetAmount", 5000), ("currentAmount", 6000))

        # 0.9 for a positive number, times 0.8 for the current_exceeds_target warning
        self.assertAlmostEqual(result.confidence_scores["currentAmount"], 0.72)
        self.assertAlmostEqual(result.confidence_scores["targetAmount"], 0.9)

    def test_low_overall_confidence_needs_manual(self):
        result = self.apply(empty_context(), ("description", "x"))
        # Missing title and target: 0.7 * 0.7
        self.assertAlmostEqual(result.validation_results.overall_confidence, 0.49)
        self.assertTrue(result.needs_manual_intervention)

    def test_conflict_needs_manual(self):
        result = self.apply(
            empty_context(),
            ("title", "Study abroad"), ("targetAmount", 20000),
            ("country", "Canada"), ("residencyStatus", "in_state"),
        )

        self.assertEqual([c.conflict_id for c in result.detected_conflicts], ["international_instate_conflict"])
        self.assertTrue(result.needs_manual_intervention)

    def test_progressive_disabled_shows_all_fields(self):
        self.monitor.progressive_disabled = True

        result = self.apply(empty_context(), ("title", "Car"))

        self.assertEqual(list(result.visible_fields), self.engine.all_fields)
        self.assertEqual(self.validator.calls, 1)


# =============================================================================
# PART 3: Degradation and gating
# =============================================================================

class TestDegradedPipeline(OrchestratorTestCase):

    validator_class = FailingValidator

    def test_failure_degrades_update(self):
        context = empty_context()

        result = self.apply(context, ("title", "Car"))

        self.assertEqual(result.inferred_data, {"title": "Car"})
        self.assertEqual(result.visible_fields, context.visible_fields)
        self.assertEqual(result.uncertainty_flags, (FormOrchestrator.AI_FALLBACK_FLAG,))
        self.assertEqual(result.confidence_scores, {"title": 0.5})
        self.assertEqual(result.validation_results.overall_confidence, 0.5)
        self.assertEqual(result.validation_results.warnings[0].rule_id, "ai_fallback")
        self.assertTrue(result.needs_manual_intervention)

    def test_failure_recorded_with_monitor(self):
        self.apply(empty_context(), ("title", "Car"))

        metrics = self.monitor.get_metrics()
        self.assertEqual(metrics.error_count, 1)
        self.assertEqual(metrics.consecutive_failures, 1)

    def test_validate_form_degraded_report(self):
        report = self.orchestrator.validate_form({"title": "Car"}, empty_context())

        self.assertIsInstance(report, ValidationReport)
        self.assertTrue(report.degraded)
        self.assertTrue(report.needs_manual_intervention)
        self.assertEqual(report.results.warnings[0].rule_id, "validation_service_error")
        self.assertEqual(report.results.suggestions[0].rule_id, "manual_review")


class TestTimeout(unittest.TestCase):

    def test_timeout_degrades_update(self):
        validator = SlowValidator()
        runner = register_validation_tasks(ThreadedTaskRunner(timeout=0.05, max_workers=1), validator)
        monitor = SafetyMonitor("session-test")
        orchestrator = FormOrchestrator(DisclosureEngine(), validator, monitor, task_runner=runner)

        try:
            result = orchestrator.process_field_update(update("title", "Car"), empty_context())
        finally:
            validator.release.set()
            runner.shutdown()

        self.assertEqual(result.uncertainty_flags, (FormOrchestrator.AI_FALLBACK_FLAG,))
        self.assertEqual(result.inferred_data, {"title": "Car"})
        self.assertEqual(monitor.get_metrics().error_count, 1)


class TestGating(OrchestratorTestCase):

    def test_ai_disabled_merges_without_analysis(self):
        context = self.apply(empty_context(), ("title", "Car"))
        calls = self.validator.calls
        self.monitor.ai_disabled = True

        result = self.apply(context, ("targetAmount", 5000))

        self.assertEqual(self.validator.calls, calls)
        self.assertEqual(result.inferred_data, {"title": "Car", "targetAmount": 5000})
        self.assertEqual(result.confidence_scores["targetAmount"], 0.5)
        self.assertEqual(result.confidence_scores["title"], context.confidence_scores["title"])
        self.assertEqual(result.uncertainty_flags, (FormOrchestrator.AI_DISABLED_FLAG,))
        self.assertEqual(result.visible_fields, context.visible_fields)

    def test_ai_disabled_drops_stale_findings(self):
        context = self.apply(empty_context(), ("age", 30), ("fafsaDependencyStatus", "dependent"))
        self.assertTrue(context.detected_conflicts)
        self.monitor.ai_disabled = True

        result = self.apply(context, ("age", 19))

        self.assertEqual(result.detected_conflicts, ())
        self.assertEqual(result.validation_results, ValidationResults())
        self.assertEqual(result.recommended_fields, ())
        self.assertTrue(result.needs_manual_intervention)

    def test_emergency_merges_without_analysis(self):
        self.monitor.emergency_mode = True

        result = self.apply(empty_context(), ("title", "Car"))

        self.assertEqual(self.validator.calls, 0)
        self.assertEqual(result.uncertainty_flags, (FormOrchestrator.AI_DISABLED_FLAG,))


# =============================================================================
# PART 4: Full-form validation
# =============================================================================

class TestValidateForm(OrchestratorTestCase):

    def test_merges_over_stored_data(self):
        context = self.apply(empty_context(), ("title", "Car"))

        report = self.orchestrator.validate_form({"targetAmount": 5000}, context)

        self.assertFalse(report.degraded)
        self.assertEqual(report.results.errors, ())
        self.assertFalse(report.needs_manual_intervention)
        self.assertEqual(context.inferred_data, {"title": "Car"})

    def test_specific_fields_filter_flags(self):
        report = self.orchestrator.validate_form(
            {"title": "", "description": ""}, empty_context(), specific_fields=["description"]
        )
        self.assertEqual([f.field_id for f in report.uncertainty_flags], ["description"])

    def test_dismissed_conflicts_excluded(self):
        context = empty_context().evolve(dismissed_conflicts=("international_instate_conflict",))

        report = self.orchestrator.validate_form({"country": "Canada", "residencyStatus": "in_state"}, context)

        self.assertEqual(report.conflicts, ())


# =============================================================================
# PART 5: Conflict resolution
# =============================================================================

class TestResolveConflict(OrchestratorTestCase):

    def conflicted(self, *pairs):
        return self.apply(empty_context(), ("title", "Study abroad"), ("targetAmount", 20000), *pairs)

    def test_accept_applies_suggested_update(self):
        context = self.conflicted(("country", "Canada"), ("residencyStatus", "in_state"))

        result = self.orchestrator.resolve_conflict("international_instate_conflict", "accept", context)

        self.assertEqual(result.inferred_data["residencyStatus"], "international")
        self.assertEqual(result.detected_conflicts, ())

    def test_dismiss_hides_conflict(self):
        context = self.conflicted(("age", 30), ("fafsaDependencyStatus", "dependent"))

        result = self.orchestrator.resolve_conflict("age_dependency_mismatch", "dismiss", context)

        self.assertEqual(result.dismissed_conflicts, ("age_dependency_mismatch",))
        self.assertEqual(result.detected_conflicts, ())
        self.assertEqual(result.inferred_data["fafsaDependencyStatus"], "dependent")

        # Stays dismissed through later updates
        later = self.apply(result, ("description", "Semester in Toronto"))
        self.assertEqual(later.detected_conflicts, ())

    def test_user_values(self):
        context = self.conflicted(("age", 30), ("fafsaDependencyStatus", "dependent"))

        result = self.orchestrator.resolve_conflict(
            "age_dependency_mismatch", {"updates": {"fafsaDependencyStatus": "independent"}}, context
        )

        self.assertEqual(result.inferred_data["fafsaDependencyStatus"], "independent")
        self.assertEqual(result.detected_conflicts, ())

    def test_unknown_conflict(self):
        result = self.orchestrator.resolve_conflict("nope", "accept", empty_context())

        self.assertIsInstance(result, IllegalCommand)
        self.assertEqual(result.code, "not_found")

    def test_unresolvable_accept(self):
        context = self.conflicted(("age", 30), ("fafsaDependencyStatus", "dependent"))
        before = copy.deepcopy(context.inferred_data)

        result = self.orchestrator.resolve_conflict("age_dependency_mismatch", "accept", context)

        self.assertIsInstance(result, IllegalCommand)
        self.assertEqual(result.code, "unresolvable")
        self.assertEqual(context.inferred_data, before)

    def test_unknown_resolution_shape(self):
        context = self.conflicted(("country", "Canada"), ("residencyStatus", "in_state"))

        with self.assertRaises(ValueError):
            self.orchestrator.resolve_conflict("international_instate_conflict", "maybe", context)


if __name__ == '__main__':
    unittest.main()
