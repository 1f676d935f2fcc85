"""
Validation Engine - Local form validation and conflict detection

Responsibilities:
- run_validation(form_data, context): errors, warnings, suggestions,
  overall confidence and a cost estimate
- detect_conflicts(form_data, validation): cross-field inconsistencies
- suggest_resolution(conflict, form_data): automatic fixes for
  high-confidence, low-risk conflicts

Design principles:
- Deterministic given form data and the injected clock
- Never mutates its inputs
- Confidence starts at 1.0 and is multiplied down per finding
"""

import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from goal_planner.contracts import (
    DataConflict,
    Severity,
    ValidationIssue,
    ValidationResults,
)

logger = logging.getLogger(__name__)


def parse_date(value: Any) -> Optional[date]:
    """ISO date / datetime string (or date object) to a date, else None."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def as_number(value: Any) -> Optional[float]:
    """Numbers and numeric strings to float; everything else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(',', '').strip())
        except ValueError:
            return None
    return None


def months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


class ValidationEngine:
    """Default local implementation of run_validation / detect_conflicts"""

    ERROR_PENALTY = 0.7
    WARNING_PENALTY = 0.9

    LARGE_GOAL_AMOUNT = 10000
    SHORT_DESCRIPTION_LENGTH = 20

    # Independence age for FAFSA dependency status
    INDEPENDENT_AGE = 24

    # Auto-resolution only for conflicts at or above this confidence
    AUTO_RESOLVE_CONFIDENCE = 0.8

    DOMESTIC_COUNTRY = 'United States'

    def __init__(self, today: Optional[Callable[[], date]] = None):
        """
        Args:
            today: Returns the current date (defaults to date.today)
        """
        self._today = today or date.today

    # ========================
    # Validation
    # ========================

    def run_validation(self, form_data: Dict[str, Any], context=None) -> ValidationResults:
        """
        Validate form data.

        Args:
            form_data: field_id -> value
            context: AIFormContext (unused by the local rules)

        Returns:
            ValidationResults
        """
        issues: List[ValidationIssue] = []
        issues.extend(self._check_required(form_data))
        issues.extend(self._check_amounts(form_data))
        issues.extend(self._check_deadline(form_data))
        issues.extend(self._check_contribution_capacity(form_data))
        issues.extend(self._check_suggestions(form_data))

        errors = tuple(i for i in issues if i.severity == Severity.ERROR.value)
        warnings = tuple(i for i in issues if i.severity == Severity.WARNING.value)
        suggestions = tuple(i for i in issues if i.severity == Severity.INFO.value)

        overall = 1.0
        overall *= self.ERROR_PENALTY ** len(errors)
        overall *= self.WARNING_PENALTY ** len(warnings)

        return ValidationResults(
            errors=errors,
            warnings=warnings,
            suggestions=suggestions,
            overall_confidence=overall,
            cost_estimate=self.estimate_cost(form_data),
        )

    def _check_required(self, form_data):
        title = form_data.get('title')
        if not isinstance(title, str) or not title.strip():
            yield ValidationIssue(
                rule_id='title_required',
                field_id='title',
                message='A goal title is required.',
                severity=Severity.ERROR.value,
                confidence=1.0,
            )

        target = as_number(form_data.get('targetAmount'))
        if target is None or target <= 0:
            yield ValidationIssue(
                rule_id='target_amount_positive',
                field_id='targetAmount',
                message='Target amount must be a number greater than zero.',
                severity=Severity.ERROR.value,
                confidence=0.95,
                ai_resolution='Estimate the total cost from tuition, fees and living expenses.',
            )

    def _check_amounts(self, form_data):
        current = as_number(form_data.get('currentAmount'))
        target = as_number(form_data.get('targetAmount'))

        if current is not None and current < 0:
            yield ValidationIssue(
                rule_id='current_amount_non_negative',
                field_id='currentAmount',
                message='Current savings cannot be negative.',
                severity=Severity.ERROR.value,
                confidence=0.95,
            )
        elif current is not None and target is not None and target > 0 and current > target:
            yield ValidationIssue(
                rule_id='current_exceeds_target',
                field_id='currentAmount',
                message='Current savings already exceed the target amount.',
                severity=Severity.WARNING.value,
                confidence=0.85,
                ai_resolution='Raise the target amount or mark the goal as complete.',
            )

    def _check_deadline(self, form_data):
        raw = form_data.get('deadline')
        if raw is None or raw == '':
            return

        deadline = parse_date(raw)
        if deadline is None:
            yield ValidationIssue(
                rule_id='deadline_unparseable',
                field_id='deadline',
                message='Deadline is not a recognisable date (use YYYY-MM-DD).',
                severity=Severity.WARNING.value,
                confidence=0.8,
            )
        elif deadline < self._today():
            yield ValidationIssue(
                rule_id='deadline_in_past',
                field_id='deadline',
                message='Deadline must be in the future.',
                severity=Severity.ERROR.value,
                confidence=0.95,
            )

    def _check_contribution_capacity(self, form_data):
        monthly = as_number(form_data.get('monthlyContribution'))
        target = as_number(form_data.get('targetAmount'))
        deadline = parse_date(form_data.get('deadline'))

        if monthly is None or target is None or deadline is None or target <= 0:
            return

        today = self._today()
        if deadline < today:
            return

        months = max(1, months_between(today, deadline))
        current = as_number(form_data.get('currentAmount')) or 0.0
        projected = current + monthly * months

        if projected < target:
            shortfall = target - projected
            yield ValidationIssue(
                rule_id='contribution_shortfall',
                field_id='monthlyContribution',
                message=(
                    f'At this monthly contribution the goal falls short by '
                    f'{shortfall:,.2f} at the deadline.'
                ),
                severity=Severity.WARNING.value,
                confidence=0.8,
                ai_resolution=f'Contribute about {(target - current) / months:,.2f} per month.',
            )

    def _check_suggestions(self, form_data):
        target = as_number(form_data.get('targetAmount'))
        breakdown = form_data.get('expenseBreakdown')
        if target is not None and target > self.LARGE_GOAL_AMOUNT and not breakdown:
            yield ValidationIssue(
                rule_id='large_goal_breakdown',
                field_id='expenseBreakdown',
                message='Large goals are easier to plan with an expense breakdown.',
                severity=Severity.INFO.value,
                confidence=0.7,
            )

        description = form_data.get('description')
        if isinstance(description, str) and 0 < len(description.strip()) < self.SHORT_DESCRIPTION_LENGTH:
            yield ValidationIssue(
                rule_id='short_description',
                field_id='description',
                message='A longer description helps match funding sources.',
                severity=Severity.INFO.value,
                confidence=0.6,
            )

    # ========================
    # Cost Estimate
    # ========================

    def estimate_cost(self, form_data: Dict[str, Any]) -> Optional[Dict[str, float]]:
        """
        Total the expense breakdown.

        Accepts a list of {'amount': n} items or a mapping of
        category -> amount. Returns None when there is nothing to total.
        """
        total = sum(self._breakdown_amounts(form_data.get('expenseBreakdown')))
        if total <= 0:
            return None
        return {
            'total': total,
            'estimated': round(total * 0.8, 2),
            'contingency': round(total * 0.2, 2),
        }

    @staticmethod
    def _breakdown_amounts(breakdown: Any) -> Iterable[float]:
        if isinstance(breakdown, dict):
            items = breakdown.values()
        elif isinstance(breakdown, list):
            items = [item.get('amount') if isinstance(item, dict) else item for item in breakdown]
        else:
            return []
        return [n for n in (as_number(item) for item in items) if n is not None and n > 0]

    # ========================
    # Conflicts
    # ========================

    def detect_conflicts(self, form_data: Dict[str, Any],
                         validation: Optional[ValidationResults] = None) -> List[DataConflict]:
        """
        Detect cross-field conflicts.

        Args:
            form_data: field_id -> value
            validation: Results of run_validation (unused by local rules)

        Returns:
            list[DataConflict]
        """
        conflicts = []

        age = as_number(form_data.get('age'))
        if age is not None and age >= self.INDEPENDENT_AGE and form_data.get('fafsaDependencyStatus') == 'dependent':
            conflicts.append(DataConflict(
                conflict_id='age_dependency_mismatch',
                description='Students 24+ are typically considered independent for FAFSA',
                conflicting_fields=('age', 'fafsaDependencyStatus'),
                suggested_resolution='Update dependency status to independent or verify special circumstances',
                confidence=0.9,
            ))

        country = form_data.get('country')
        if country and country != self.DOMESTIC_COUNTRY and form_data.get('residencyStatus') == 'in_state':
            conflicts.append(DataConflict(
                conflict_id='international_instate_conflict',
                description='International students cannot have in-state residency for tuition purposes',
                conflicting_fields=('country', 'residencyStatus'),
                suggested_resolution='Update residency status to international',
                confidence=0.95,
            ))

        expected_year = self.expected_graduation_year(form_data)
        graduation_year = as_number(form_data.get('graduationYear'))
        if expected_year is not None and graduation_year is not None and abs(graduation_year - expected_year) > 1:
            conflicts.append(DataConflict(
                conflict_id='graduation_timeline_mismatch',
                description="Graduation year doesn't align with program duration",
                conflicting_fields=('graduationYear', 'plannedStartDate', 'programDurationYears'),
                suggested_resolution=f'Update graduation year to {expected_year} or adjust program duration',
                confidence=0.8,
            ))

        return conflicts

    @staticmethod
    def expected_graduation_year(form_data: Dict[str, Any]) -> Optional[int]:
        start = parse_date(form_data.get('plannedStartDate'))
        duration = as_number(form_data.get('programDurationYears'))
        if start is None or duration is None:
            return None
        return int(start.year + duration)

    def suggest_resolution(self, conflict: DataConflict,
                           form_data: Dict[str, Any]) -> Tuple[bool, Dict[str, Any], str]:
        """
        Propose field updates that resolve a conflict.

        Returns:
            (resolved, updates, explanation): updates holds only the
            changed fields and is empty when resolved is False
        """
        if conflict.confidence < self.AUTO_RESOLVE_CONFIDENCE:
            return False, {}, 'Confidence too low for automatic resolution'

        if conflict.conflict_id == 'international_instate_conflict':
            return (
                True,
                {'residencyStatus': 'international'},
                'Updated residency status to international based on country',
            )

        if conflict.conflict_id == 'graduation_timeline_mismatch':
            expected_year = self.expected_graduation_year(form_data)
            if expected_year is not None:
                return (
                    True,
                    {'graduationYear': expected_year},
                    f'Updated graduation year to {expected_year}',
                )

        if conflict.conflict_id == 'age_dependency_mismatch':
            return False, {}, 'Requires user confirmation for dependency status change'

        return False, {}, 'No automatic resolution available'
