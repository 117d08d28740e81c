"""
Red-flag evaluator over a static declarative rule table.

Each rule is matched against the canonical fact record and lands in
exactly one of three buckets:

- triggered: the rule's criteria matched
- not_triggered: at least one referenced fact exists but the rule did not fire
- not_assessed: none of the rule's facts were ever collected

The not_triggered / not_assessed split lets the handoff distinguish
"ruled out" from "never asked".
"""

import json
from pathlib import Path

from triage_backend.config.logging_config import get_logger
from triage_backend.models.triage_models import (
    Criterion,
    FactRecord,
    FactValue,
    RedFlagEvaluation,
    RedFlagRule,
    TriggeredRedFlag,
)

logger = get_logger(__name__)

RULES_PATH = Path(__file__).parent.parent / "data" / "red_flag_rules.json"


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _matches(criterion: Criterion, facts: dict[str, FactValue]) -> bool:
    """Evaluate one predicate. Missing facts and type mismatches are simply false."""
    if criterion.fact not in facts:
        return False
    actual = facts[criterion.fact]
    expected = criterion.value

    if criterion.op == "eq":
        if isinstance(actual, bool) or isinstance(expected, bool):
            return isinstance(actual, bool) and isinstance(expected, bool) and actual == expected
        if _is_number(actual) and _is_number(expected):
            return actual == expected
        if isinstance(actual, str) and isinstance(expected, str):
            return actual.strip().lower() == expected.strip().lower()
        return False

    if not (_is_number(actual) and _is_number(expected)):
        return False
    if criterion.op == "gte":
        return actual >= expected
    return actual <= expected


def load_rules(path: Path = RULES_PATH) -> list[RedFlagRule]:
    """Load and validate the rule table."""
    with open(path, "r", encoding="utf-8") as f:
        raw_rules = json.load(f)
    rules = [RedFlagRule.model_validate(r) for r in raw_rules]

    codes = [r.code for r in rules]
    if len(codes) != len(set(codes)):
        raise ValueError(f"Duplicate red flag rule codes in {path}")

    logger.info("Red flag rules loaded", rule_count=len(rules), path=str(path))
    return rules


class RedFlagEvaluator:
    """
    Evaluate a fact record against the red-flag rule table.

    The rule list is loaded once and never mutated.
    """

    def __init__(self, rules: list[RedFlagRule] | None = None):
        self._rules: tuple[RedFlagRule, ...] = tuple(rules if rules is not None else load_rules())

    @property
    def rules(self) -> tuple[RedFlagRule, ...]:
        return self._rules

    def rule_fires(self, rule: RedFlagRule, facts: dict[str, FactValue]) -> bool:
        if rule.criteria_all and all(_matches(c, facts) for c in rule.criteria_all):
            return True
        if rule.criteria_any and any(_matches(c, facts) for c in rule.criteria_any):
            return True
        return False

    def evaluate(self, record: FactRecord) -> RedFlagEvaluation:
        facts = record.values()
        result = RedFlagEvaluation()

        for rule in self._rules:
            if self.rule_fires(rule, facts):
                result.triggered.append(
                    TriggeredRedFlag(code=rule.code, label=rule.label, evidence=rule.evidence_prompt)
                )
            elif any(key in facts for key in rule.fact_keys):
                result.not_triggered.append(rule.label)
            else:
                result.not_assessed.append(rule.label)

        logger.info(
            "Red flags evaluated",
            triggered=[t.code for t in result.triggered],
            not_triggered_count=len(result.not_triggered),
            not_assessed_count=len(result.not_assessed),
        )
        return result


# Singleton instance
_evaluator_instance: RedFlagEvaluator | None = None


def get_red_flag_evaluator() -> RedFlagEvaluator:
    """Get the singleton evaluator with the packaged rule table."""
    global _evaluator_instance
    if _evaluator_instance is None:
        _evaluator_instance = RedFlagEvaluator()
    return _evaluator_instance
