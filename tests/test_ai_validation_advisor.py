"""
Unit tests for AIValidationAdvisor

Uses a mock HF client so no model is loaded.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json
import unittest
from datetime import date

from goal_planner.core.ai_validation_advisor import AIValidationAdvisor
from goal_planner.core.validation_engine import ValidationEngine


class MockHFClient:
    """Mock HuggingFace client returning canned output"""

    def __init__(self, output='{"suggestions": []}', error=None):
        self.output = output
        self.error = error
        self.prompts = []

    def generate_json(self, prompt, max_tokens=256):
        self.prompts.append((prompt, max_tokens))
        if self.error is not None:
            raise self.error
        return self.output


VALID_FORM = {"title": "Laptop for school", "targetAmount": 1500}


class TestAIValidationAdvisor(unittest.TestCase):

    def setUp(self):
        self.engine = ValidationEngine(today=lambda: date(2026, 1, 15))

    def make_advisor(self, **client_kwargs):
        client = MockHFClient(**client_kwargs)
        return AIValidationAdvisor(client, engine=self.engine, max_tokens=128), client

    def test_requires_generate_json(self):
        with self.assertRaises(TypeError):
            AIValidationAdvisor(object())

    def test_no_suggestions_returns_local_results(self):
        advisor, client = self.make_advisor()

        results = advisor.run_validation(VALID_FORM)

        self.assertEqual(results, self.engine.run_validation(VALID_FORM))
        self.assertEqual(client.prompts[0][1], 128)

    def test_model_suggestions_appended_as_info(self):
        output = json.dumps({"suggestions": [
            {"field_id": "targetAmount", "message": "Include accessories and warranty.", "confidence": 0.9},
            {"message": "Check student discounts."},
        ]})
        advisor, _ = self.make_advisor(output=output)

        results = advisor.run_validation(VALID_FORM)

        self.assertEqual(len(results.suggestions), 2)
        first, second = results.suggestions
        self.assertEqual(first.rule_id, "ai_suggestion_1")
        self.assertEqual(first.field_id, "targetAmount")
        self.assertEqual(first.severity, "info")
        self.assertEqual(first.confidence, 0.6)  # capped below local rules
        self.assertEqual(second.field_id, "form")
        self.assertEqual(second.confidence, 0.5)
        self.assertEqual(results.overall_confidence, 1.0)

    def test_suggestions_capped_and_malformed_skipped(self):
        output = json.dumps({"suggestions": [
            {"message": "one"},
            "not an object",
            {"message": "three"},
            {"message": "four"},
        ]})
        advisor, _ = self.make_advisor(output=output)

        results = advisor.run_validation(VALID_FORM)

        self.assertEqual([s.rule_id for s in results.suggestions], ["ai_suggestion_1", "ai_suggestion_3"])

    def test_invalid_json_is_ignored(self):
        advisor, _ = self.make_advisor(output="Sure! Here are some ideas")

        with self.assertLogs('goal_planner.core.ai_validation_advisor', level='WARNING'):
            results = advisor.run_validation(VALID_FORM)

        self.assertEqual(results.suggestions, ())

    def test_generation_error_propagates(self):
        advisor, _ = self.make_advisor(error=RuntimeError("CUDA out of memory"))

        with self.assertRaises(RuntimeError):
            advisor.run_validation(VALID_FORM)

    def test_prompt_lists_known_problems(self):
        advisor, client = self.make_advisor()

        advisor.run_validation({"title": "Car"})

        prompt = client.prompts[0][0]
        self.assertIn("Target amount must be a number greater than zero.", prompt)
        self.assertIn('"title": "Car"', prompt)

    def test_conflicts_delegate_to_engine(self):
        advisor, client = self.make_advisor()
        form = {"country": "Canada", "residencyStatus": "in_state"}

        conflicts = advisor.detect_conflicts(form)
        resolved, updates, _ = advisor.suggest_resolution(conflicts[0], form)

        self.assertEqual([c.conflict_id for c in conflicts], ["international_instate_conflict"])
        self.assertTrue(resolved)
        self.assertEqual(updates, {"residencyStatus": "international"})
        self.assertEqual(client.prompts, [])


if __name__ == '__main__':
    unittest.main()
