"""
Contract tests for request parsing, context evolution and serialization
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import unittest

from goal_planner.commands import AIFormContext
from goal_planner.contracts import (
    FieldUpdate,
    SafetyMetrics,
    ValidationIssue,
    ValidationResults,
)
from goal_planner.utils.safety_status import (
    FormSafetyStatus,
    ai_allowed,
    assess_form_safety,
    progressive_allowed,
)


class TestFieldUpdateFromRequest(unittest.TestCase):

    def test_minimal_body(self):
        update = FieldUpdate.from_request({"field_id": " title ", "value": "Car"})

        self.assertEqual(update.field_id, "title")
        self.assertEqual(update.value, "Car")
        self.assertEqual(update.source, "user_input")
        self.assertTrue(update.timestamp)

    def test_accepts_zulu_timestamp(self):
        update = FieldUpdate.from_request({
            "field_id": "targetAmount",
            "value": 5000,
            "timestamp": "2026-01-15T10:00:00Z",
            "source": "template",
        })
        self.assertEqual(update.timestamp, "2026-01-15T10:00:00Z")
        self.assertEqual(update.source, "template")

    def test_null_value_allowed(self):
        update = FieldUpdate.from_request({"field_id": "deadline", "value": None})
        self.assertIsNone(update.value)

    def test_collects_every_problem(self):
        with self.assertRaises(ValueError) as ctx:
            FieldUpdate.from_request({"field_id": "", "source": "guess", "timestamp": "yesterday"})

        message = str(ctx.exception)
        self.assertIn("'field_id' is required", message)
        self.assertIn("'value' is required", message)
        self.assertIn("'source' must be one of", message)
        self.assertIn("not ISO-8601", message)

    def test_source_must_be_string(self):
        for source in (["template"], {"kind": "template"}, 3):
            with self.assertRaises(ValueError) as ctx:
                FieldUpdate.from_request({"field_id": "title", "value": "Car", "source": source})
            self.assertIn("'source' must be one of", str(ctx.exception))

    def test_non_serializable_value(self):
        with self.assertRaises(ValueError):
            FieldUpdate.from_request({"field_id": "title", "value": object()})

    def test_body_must_be_object(self):
        with self.assertRaises(ValueError):
            FieldUpdate.from_request(["title", "Car"])


class TestAIFormContext(unittest.TestCase):

    def test_evolve_copies_mutable_members(self):
        data = {"expenseBreakdown": [{"amount": 1}]}
        context = AIFormContext(user_id=1, session_id="s", inferred_data=data)

        evolved = context.evolve(visible_fields=("title",))
        evolved.inferred_data["expenseBreakdown"][0]["amount"] = 3

        self.assertEqual(context.inferred_data["expenseBreakdown"][0]["amount"], 1)
        self.assertEqual(evolved.visible_fields, ("title",))
        self.assertEqual(context.visible_fields, ())

    def test_json_round_trip(self):
        context = AIFormContext(
            user_id="u1",
            session_id="s",
            completed_sections=("title",),
            inferred_data={"title": "Car"},
            confidence_scores={"title": 0.63},
            validation_results=ValidationResults(
                suggestions=(ValidationIssue("short_description", "description", "m", "info", 0.6),),
                cost_estimate={"total": 100.0, "estimated": 80.0, "contingency": 20.0},
            ),
        )

        self.assertEqual(AIFormContext.from_json(context.to_json()), context)

    def test_from_json_defaults(self):
        context = AIFormContext.from_json({"session_id": "s"})

        self.assertEqual(context.current_phase, "goal_creation")
        self.assertEqual(context.expertise_level, "intermediate")
        self.assertEqual(context.validation_results, ValidationResults())


class TestValidationResults(unittest.TestCase):

    def test_fields_with(self):
        results = ValidationResults(
            errors=(ValidationIssue("a", "title", "m", "error", 1.0),),
            warnings=(ValidationIssue("b", "deadline", "m", "warning", 0.8),),
        )
        self.assertEqual(results.fields_with("error"), {"title"})
        self.assertEqual(results.fields_with("warning"), {"deadline"})
        self.assertEqual(results.fields_with("info"), set())


class TestSafetyMetrics(unittest.TestCase):

    def test_error_rate(self):
        self.assertEqual(SafetyMetrics().error_rate, 0.0)
        self.assertEqual(SafetyMetrics(error_count=1, total_operations=4).error_rate, 0.25)

    def test_to_json_includes_error_rate(self):
        data = SafetyMetrics(error_count=1, total_operations=2).to_json()
        self.assertEqual(data["error_rate"], 0.5)
        self.assertIn("last_successful_operation", data)


class TestFormSafetyStatus(unittest.TestCase):

    def test_precedence(self):
        self.assertEqual(assess_form_safety(False, False, False), FormSafetyStatus.NORMAL)
        self.assertEqual(assess_form_safety(False, True, False), FormSafetyStatus.PROGRESSIVE_DISABLED)
        self.assertEqual(assess_form_safety(True, True, False), FormSafetyStatus.AI_DISABLED)
        self.assertEqual(assess_form_safety(True, True, True), FormSafetyStatus.EMERGENCY)

    def test_feature_gates(self):
        self.assertTrue(ai_allowed(FormSafetyStatus.PROGRESSIVE_DISABLED))
        self.assertFalse(ai_allowed(FormSafetyStatus.AI_DISABLED))
        self.assertFalse(progressive_allowed(FormSafetyStatus.PROGRESSIVE_DISABLED))
        self.assertFalse(progressive_allowed(FormSafetyStatus.EMERGENCY))
        self.assertTrue(progressive_allowed(FormSafetyStatus.NORMAL))


if __name__ == '__main__':
    unittest.main()
