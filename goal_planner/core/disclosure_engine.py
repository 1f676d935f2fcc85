"""
Disclosure Engine - Stateless progressive disclosure for goal forms

Responsibilities:
- Load and validate the disclosure rule set
- Evaluate rule conditions against a DisclosureContext
- Aggregate rule votes into one FieldDisclosureState per field
- Recommend the next fields to show

Design principles:
- Stateless: All state comes from the DisclosureContext parameter
- Deterministic: Same context always produces the same decision
- Pure functions: No side effects, nothing cached across contexts
- Fail fast: Structural rule-set errors raise on initialization
- Total: Evaluation never raises; every path resolves to a boolean
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from goal_planner.contracts import (
    VALID_CONDITION_TYPES,
    VALID_OPERATORS,
    ConditionOperator,
    ConditionType,
    DisclosureCondition,
    DisclosureContext,
    DisclosureRule,
    ExpertiseLevel,
    FieldDisclosureState,
    FieldRecommendation,
)

logger = logging.getLogger(__name__)

DEFAULT_RULESET_PATH = Path(__file__).resolve().parents[2] / "data" / "disclosure_ruleset.json"

WILDCARD_FIELD = "all"


def value_exists(value: Any) -> bool:
    """Defined, non-null and not the empty string."""
    return value is not None and value != ""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class DisclosureEngine:
    """
    Stateless progressive disclosure engine.

    Decides field visibility from a confidence-weighted vote over the
    applicable rules. Does not track any state internally.
    """

    # Highlight fields whose recorded confidence is below this
    HIGHLIGHT_THRESHOLD = 0.6

    # Used by completion_rate / confidence_level 'equals'
    EQUALS_TOLERANCE = 0.1

    DEFAULT_ORDER = 99
    DEFAULT_REASON = "Default visibility rule"
    FALLBACK_REASON = "Standard form progression"
    FALLBACK_CONFIDENCE = 0.5

    def __init__(self, ruleset_path: Optional[str] = None):
        """
        Initialize engine with rule set.

        Args:
            ruleset_path: Path to disclosure_ruleset.json (defaults to the
                          bundled data/disclosure_ruleset.json)

        Raises:
            FileNotFoundError: If rule set doesn't exist
            ValueError: If rule set is structurally invalid
        """
        self.ruleset_path = Path(ruleset_path) if ruleset_path else DEFAULT_RULESET_PATH

        if not self.ruleset_path.exists():
            raise FileNotFoundError(f"Rule set not found: {self.ruleset_path}")

        with open(self.ruleset_path, 'r') as f:
            self.ruleset = json.load(f)

        self._validate_ruleset()

        self.field_order: List[str] = list(self.ruleset["field_order"])
        self.all_fields: List[str] = list(self.ruleset["all_fields"])
        self.basic_fields: List[str] = list(self.ruleset["basic_fields"])
        self.required_fields = set(self.ruleset["required_fields"])
        self.field_labels: Dict[str, str] = dict(self.ruleset.get("field_labels", {}))

        # Stable sort keeps file order within a priority
        self.rules: List[DisclosureRule] = sorted(
            (DisclosureRule.from_json(r) for r in self.ruleset["rules"]),
            key=lambda rule: rule.priority,
        )

        logger.info(
            f"Disclosure engine initialized with {len(self.rules)} rules "
            f"over {len(self.all_fields)} fields"
        )

    # =========================================================================
    # Public API
    # =========================================================================

    def evaluate_field(self, field_id: str, context: DisclosureContext) -> FieldDisclosureState:
        """
        Decide how a field should be presented for the given context.

        Args:
            field_id: Field to evaluate (e.g. 'targetAmount')
            context: Current disclosure context

        Returns:
            FieldDisclosureState computed fresh from context
        """
        applicable = self._get_applicable_rules(field_id)

        if not applicable:
            return self._default_state(field_id, context)

        votes = [(rule, self._evaluate_condition(rule.condition, context)) for rule in applicable]

        weighted_sum = sum(rule.confidence if show else -rule.confidence for rule, show in votes)

        # max() returns the first maximal element, so ties keep rule order
        show_votes = [rule for rule, show in votes if show]
        best = max(show_votes, key=lambda rule: rule.confidence) if show_votes else None

        return FieldDisclosureState(
            is_visible=weighted_sum > 0,
            is_required=field_id in self.required_fields,
            is_highlighted=self._should_highlight(field_id, context),
            show_help_text=self._should_show_help(field_id, context),
            reason=best.reason if best else self.FALLBACK_REASON,
            confidence=best.confidence if best else self.FALLBACK_CONFIDENCE,
            suggested_order=self._suggested_order(field_id),
        )

    def recommend_next_fields(self, context: DisclosureContext, limit: int = 3) -> List[FieldRecommendation]:
        """
        Recommend the next fields to reveal.

        Walks all known fields, skips completed ones, keeps visible ones,
        and returns them sorted by suggested order.

        Args:
            context: Current disclosure context
            limit: Maximum number of recommendations

        Returns:
            list[FieldRecommendation], best first
        """
        recommendations = []

        for field_id in self.all_fields:
            if field_id in context.completed_fields:
                continue

            state = self.evaluate_field(field_id, context)
            if not state.is_visible:
                continue

            recommendations.append(FieldRecommendation(
                field_id=field_id,
                reason=state.reason,
                confidence=state.confidence,
                suggested_order=state.suggested_order,
            ))

        recommendations.sort(key=lambda rec: rec.suggested_order)
        return recommendations[:limit]

    def visible_fields(self, context: DisclosureContext) -> List[str]:
        """
        All fields currently visible, in canonical order.

        Fields outside the canonical order follow in all_fields order.
        """
        visible = [f for f in self.all_fields if self.evaluate_field(f, context).is_visible]
        return sorted(visible, key=lambda f: (self._suggested_order(f), self.all_fields.index(f)))

    def field_label(self, field_id: str) -> str:
        return self.field_labels.get(field_id, field_id)

    # =========================================================================
    # Rule Selection
    # =========================================================================

    def _get_applicable_rules(self, field_id: str) -> List[DisclosureRule]:
        return [
            rule for rule in self.rules
            if rule.field_id == field_id
            or rule.field_id == WILDCARD_FIELD
            or self._field_matches_pattern(field_id, rule.field_id)
        ]

    @staticmethod
    def _field_matches_pattern(field_id: str, pattern: str) -> bool:
        """
        Glob match where '*' is an any-length wildcard.

        Patterns match the whole field id; other characters are literal.
        """
        if '*' not in pattern:
            return field_id == pattern
        regex = ".*".join(re.escape(part) for part in pattern.split('*'))
        return re.fullmatch(regex, field_id) is not None

    # =========================================================================
    # Condition Evaluation
    # =========================================================================

    def _evaluate_condition(self, condition: DisclosureCondition, context: DisclosureContext) -> bool:
        """
        Evaluate one rule condition.

        Returns:
            bool: True if the rule votes to show the field

        Note:
            Unknown condition types evaluate to False (hide vote)
        """
        ctype = condition.type

        if ctype == ConditionType.FIELD_VALUE.value:
            return self._evaluate_field_value(condition, context)

        if ctype == ConditionType.COMPLETION_RATE.value:
            total = max(1, len(context.form_data))
            rate = len(context.completed_fields) / total
            return self._compare_threshold(rate, condition)

        if ctype == ConditionType.CONFIDENCE_LEVEL.value:
            return self._compare_threshold(self.average_confidence(context.confidence_scores), condition)

        if ctype == ConditionType.USER_EXPERTISE.value:
            return (
                condition.operator == ConditionOperator.EQUALS.value
                and context.user_expertise_level == condition.target_value
            )

        if ctype == ConditionType.DEPENDENCY_CHAIN.value:
            # Same semantics as field_value on the dependency target
            return self._evaluate_field_value(condition, context)

        logger.warning(f"Unknown condition type: {ctype}")
        return False

    def _evaluate_field_value(self, condition: DisclosureCondition, context: DisclosureContext) -> bool:
        if not condition.target_field:
            return False

        value = context.form_data.get(condition.target_field)
        op = condition.operator

        if op == ConditionOperator.EXISTS.value:
            return value_exists(value)

        if op == ConditionOperator.NOT_EXISTS.value:
            return not value_exists(value)

        if op == ConditionOperator.EQUALS.value:
            return value == condition.target_value

        if op in (ConditionOperator.GREATER_THAN.value, ConditionOperator.LESS_THAN.value):
            if not _is_number(value):
                return False
            target = condition.target_value if _is_number(condition.target_value) else 0
            if op == ConditionOperator.GREATER_THAN.value:
                return value > target
            return value < target

        if op == ConditionOperator.CONTAINS.value:
            if not isinstance(value, str):
                return False
            return str(condition.target_value).lower() in value.lower()

        logger.warning(f"Unknown condition operator: {op}")
        return False

    def _compare_threshold(self, measured: float, condition: DisclosureCondition) -> bool:
        threshold = condition.threshold or 0.0
        op = condition.operator

        if op == ConditionOperator.GREATER_THAN.value:
            return measured > threshold
        if op == ConditionOperator.LESS_THAN.value:
            return measured < threshold
        if op == ConditionOperator.EQUALS.value:
            return abs(measured - threshold) < self.EQUALS_TOLERANCE
        return False

    @staticmethod
    def average_confidence(confidence_scores: Dict[str, float]) -> float:
        """Mean of all scores; 1.0 when there are none."""
        scores = list(confidence_scores.values())
        if not scores:
            return 1.0
        return sum(scores) / len(scores)

    # =========================================================================
    # Presentation Helpers
    # =========================================================================

    def _default_state(self, field_id: str, context: DisclosureContext) -> FieldDisclosureState:
        """State for fields no rule applies to: basic fields only."""
        is_basic = field_id in self.basic_fields

        return FieldDisclosureState(
            is_visible=is_basic,
            is_required=is_basic,
            is_highlighted=False,
            show_help_text=context.user_expertise_level == ExpertiseLevel.BEGINNER.value,
            reason=self.DEFAULT_REASON,
            confidence=self.FALLBACK_CONFIDENCE,
            suggested_order=self.basic_fields.index(field_id) + 1 if is_basic else self.DEFAULT_ORDER,
        )

    def _should_highlight(self, field_id: str, context: DisclosureContext) -> bool:
        return context.confidence_scores.get(field_id, 1.0) < self.HIGHLIGHT_THRESHOLD

    def _should_show_help(self, field_id: str, context: DisclosureContext) -> bool:
        has_uncertainty = any(flag.field_id == field_id for flag in context.uncertainty_flags)
        return has_uncertainty or context.user_expertise_level == ExpertiseLevel.BEGINNER.value

    def _suggested_order(self, field_id: str) -> int:
        if field_id in self.field_order:
            return self.field_order.index(field_id) + 1
        return self.DEFAULT_ORDER

    # =========================================================================
    # Validation
    # =========================================================================

    def _validate_ruleset(self):
        """
        Validate rule set structure on initialization.

        Checks:
        - Required top-level keys exist and are lists
        - Every rule has id, field_id, condition
        - No duplicate rule ids
        - Confidence within 0..1, priority is an integer
        - basic/required fields are known fields

        Unknown condition types and operators are only logged; they
        evaluate to False at runtime.

        Raises:
            ValueError: If validation fails
        """
        errors = []

        for key in ("rules", "field_order", "all_fields", "basic_fields", "required_fields"):
            if not isinstance(self.ruleset.get(key), list):
                errors.append(f"Missing or non-list '{key}' in rule set")

        if errors:
            raise ValueError("Rule set validation failed:\n  - " + "\n  - ".join(errors))

        known_fields = set(self.ruleset["all_fields"])
        rule_ids = set()

        for i, rule in enumerate(self.ruleset["rules"]):
            missing = [k for k in ("id", "field_id", "condition") if k not in rule]
            if missing:
                errors.append(f"Rule at index {i} missing {missing}")
                continue

            rule_id = rule["id"]
            if rule_id in rule_ids:
                errors.append(f"Duplicate rule id '{rule_id}'")
            rule_ids.add(rule_id)

            confidence = rule.get("confidence", 0.5)
            if not _is_number(confidence) or not 0.0 <= confidence <= 1.0:
                errors.append(f"Rule '{rule_id}' confidence must be a number in 0..1, got {confidence!r}")

            priority = rule.get("priority", 99)
            if not isinstance(priority, int) or isinstance(priority, bool):
                errors.append(f"Rule '{rule_id}' priority must be an integer, got {priority!r}")

            condition = rule["condition"]
            if not isinstance(condition, dict):
                errors.append(f"Rule '{rule_id}' condition must be an object")
                continue

            if condition.get("type") not in VALID_CONDITION_TYPES:
                logger.warning(f"Rule '{rule_id}' has unknown condition type {condition.get('type')!r}")
            if condition.get("operator") not in VALID_OPERATORS:
                logger.warning(f"Rule '{rule_id}' has unknown operator {condition.get('operator')!r}")

        for key in ("field_order", "basic_fields", "required_fields"):
            for field_id in self.ruleset[key]:
                if field_id not in known_fields:
                    errors.append(f"'{key}' references unknown field '{field_id}'")

        if errors:
            raise ValueError("Rule set validation failed:\n  - " + "\n  - ".join(errors))

        logger.info("Rule set validation passed")
