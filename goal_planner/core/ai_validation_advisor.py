"""
AI Validation Advisor - LLM-assisted suggestions on top of local validation

Responsibilities:
- Run the local ValidationEngine rules
- Ask the model for additional planning suggestions
- Parse and filter the model's suggestions into ValidationIssues
- Delegate conflict detection and resolution to the local engine

Design principles:
- Local findings are authoritative; the model only adds INFO suggestions
- Generation errors propagate (the orchestrator degrades the update)
- Malformed model output is logged and ignored
"""

import json
import logging
from typing import Any, Dict, List, Optional

from goal_planner.contracts import Severity, ValidationIssue, ValidationResults
from goal_planner.core.validation_engine import ValidationEngine

logger = logging.getLogger(__name__)

# Model suggestions never outrank local rules
MAX_MODEL_CONFIDENCE = 0.6
MAX_MODEL_SUGGESTIONS = 3


class AIValidationAdvisor:
    """Validation collaborator backed by a local engine plus an LLM pass"""

    def __init__(self, hf_client, engine: Optional[ValidationEngine] = None, max_tokens: int = 256) -> None:
        """
        Args:
            hf_client: Object with generate_json(prompt, max_tokens) -> str
            engine: Local validation engine (defaults to ValidationEngine())
            max_tokens: Max tokens to generate

        Raises:
            TypeError: If hf_client lacks a callable generate_json()
        """
        if not hasattr(hf_client, 'generate_json') or not callable(hf_client.generate_json):
            raise TypeError("hf_client must have callable generate_json() method")

        self.hf_client = hf_client
        self.engine = engine or ValidationEngine()
        self.max_tokens = max_tokens

        logger.info(f"AI validation advisor initialized (max_tokens={max_tokens})")

    def run_validation(self, form_data: Dict[str, Any], context=None) -> ValidationResults:
        local = self.engine.run_validation(form_data, context)

        llm_output = self.hf_client.generate_json(
            prompt=self._build_prompt(form_data, local),
            max_tokens=self.max_tokens,
        )

        extra = self._parse_suggestions(llm_output)
        if not extra:
            return local

        logger.info(f"Model added {len(extra)} suggestion(s)")
        return ValidationResults(
            errors=local.errors,
            warnings=local.warnings,
            suggestions=local.suggestions + tuple(extra),
            overall_confidence=local.overall_confidence,
            cost_estimate=local.cost_estimate,
        )

    def detect_conflicts(self, form_data, validation=None):
        return self.engine.detect_conflicts(form_data, validation)

    def suggest_resolution(self, conflict, form_data):
        return self.engine.suggest_resolution(conflict, form_data)

    def _parse_suggestions(self, llm_output: str) -> List[ValidationIssue]:
        try:
            parsed = json.loads(llm_output)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON from model, ignoring suggestions: {e}")
            return []

        items = parsed.get('suggestions') if isinstance(parsed, dict) else None
        if not isinstance(items, list):
            return []

        suggestions = []
        for i, item in enumerate(items[:MAX_MODEL_SUGGESTIONS]):
            if not isinstance(item, dict) or not isinstance(item.get('message'), str):
                logger.debug(f"Skipping malformed model suggestion at index {i}")
                continue

            confidence = item.get('confidence', 0.5)
            if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
                confidence = 0.5

            suggestions.append(ValidationIssue(
                rule_id=f"ai_suggestion_{i + 1}",
                field_id=str(item.get('field_id') or 'form'),
                message=item['message'].strip(),
                severity=Severity.INFO.value,
                confidence=max(0.0, min(float(confidence), MAX_MODEL_CONFIDENCE)),
            ))

        return suggestions

    def _build_prompt(self, form_data: Dict[str, Any], local: ValidationResults) -> str:
        """Plain text prompt; chat formatting is applied by the HF client."""
        known_issues = [issue.message for issue in local.errors + local.warnings]

        prompt = f"""You review savings goals for students planning college costs.

Goal form data:
{json.dumps(form_data, indent=2, sort_keys=True, default=str)}
"""
        if known_issues:
            prompt += "\nAlready reported problems:\n"
            for message in known_issues:
                prompt += f"  - {message}\n"

        prompt += f"""
Suggest at most {MAX_MODEL_SUGGESTIONS} practical improvements to this plan that are NOT already reported.
Return ONLY valid JSON in this format:
{{"suggestions": [{{"field_id": "fieldName", "message": "text", "confidence": 0.5}}]}}

Rules:
- Use field ids exactly as they appear in the form data, or "form" for the whole goal
- If there is nothing useful to add, return: {{"suggestions": []}}
"""
        return prompt
