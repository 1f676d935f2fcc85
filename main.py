"""
Console Test Harness for FormSession

Simple console loop to drive the field-update pipeline before adding
Flask complexity.

Input:
    field=value          Apply a field update (value parsed as JSON when possible)
    validate             Validate the whole form
    snapshot [label]     Create a manual snapshot
    rollback [id]        Roll back to a snapshot, or to the last good state
    metrics              Show safety metrics
    quit | exit | stop   End the session
"""

import json
import logging
import sys

from goal_planner.commands import (
    CreateManualSnapshot,
    ProcessFieldUpdate,
    RollbackToLastGoodState,
    RollbackToSnapshot,
    ValidateForm,
)
from goal_planner.contracts import FieldUpdate, utc_now_iso
from goal_planner.core.disclosure_engine import DisclosureEngine
from goal_planner.core.form_session import FormSession
from goal_planner.core.validation_engine import ValidationEngine
from goal_planner.results import IllegalCommand
from goal_planner.utils.helpers import generate_session_id

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXIT_COMMANDS = {"quit", "exit", "stop"}


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def parse_value(text):
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def print_context(context):
    print(f"\nVisible fields: {', '.join(context.visible_fields)}")
    if context.recommended_fields:
        print("Recommended next:")
        for rec in context.recommended_fields:
            print(f"  {rec.suggested_order}. {rec.field_id} - {rec.reason} ({rec.confidence:.2f})")
    for flag in context.uncertainty_flags:
        print(f"  ? {flag.field_id}: {flag.suggested_clarification}")
    for issue in context.validation_results.errors + context.validation_results.warnings:
        print(f"  ! [{issue.severity}] {issue.field_id}: {issue.message}")
    for conflict in context.detected_conflicts:
        print(f"  x {conflict.conflict_id}: {conflict.suggested_resolution}")
    if context.needs_manual_intervention:
        print("  Manual review recommended")
    print()


def run_command(session, line):
    """Translate one console line into a command; returns the result"""
    word, _, rest = line.partition(" ")
    rest = rest.strip()

    if word == "validate":
        return session.handle(ValidateForm())
    if word == "snapshot":
        return session.handle(CreateManualSnapshot(rest or None))
    if word == "rollback":
        return session.handle(RollbackToSnapshot(rest) if rest else RollbackToLastGoodState())
    if word == "metrics":
        return session.get_safety_metrics()

    field_id, sep, raw_value = line.partition("=")
    if not sep or not field_id.strip():
        raise ValueError("Expected field=value or a command")

    update = FieldUpdate(field_id=field_id.strip(), value=parse_value(raw_value.strip()), timestamp=utc_now_iso())
    return session.handle(ProcessFieldUpdate(update))


def main():
    """Run console test"""
    print_separator()
    print("GOAL PLANNER FORM SESSION - CONSOLE TEST")
    print_separator()

    try:
        session = FormSession(
            user_id="console",
            session_id=generate_session_id(),
            disclosure_engine=DisclosureEngine(),
            validator=ValidationEngine(),
        )
        print("\nModules initialized successfully!")

    except Exception as e:
        print(f"\nFailed to initialize: {e}")
        import traceback
        traceback.print_exc()
        return 1

    print_context(session.context)

    while True:
        try:
            line = input("> ").strip()
            if not line:
                continue
            if line.lower() in EXIT_COMMANDS:
                break

            result = run_command(session, line)

            if isinstance(result, IllegalCommand):
                print(f"\nRejected ({result.code}): {result.reason}\n")
            elif hasattr(result, "visible_fields"):
                print_context(result)
            else:
                print(json.dumps(result.to_json() if hasattr(result, "to_json") else result, indent=2))

        except KeyboardInterrupt:
            print("\n\nSession interrupted by user (Ctrl+C)")
            break

        except ValueError as e:
            print(f"\n{e}\n")

    session.close()
    print_separator()
    print("Console test complete")
    print_separator()
    return 0


if __name__ == '__main__':
    sys.exit(main())
