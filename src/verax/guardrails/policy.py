"""Guardrails policy documents.

A policy is an ordered set of declarative contradiction rules. It is loaded
once at run start into an immutable GuardrailsPolicy and passed explicitly
to the engine; there is no module-level cache.

Policy file format::

    {
      "version": 1,
      "rules": [
        {
          "id": "GUARD_SHALLOW_ROUTING",
          "category": "navigation",
          "appliesTo": ["navigation", "route"],
          "evaluation": {"type": "shallow_routing"},
          "action": "DOWNGRADE",
          "confidenceDelta": -0.2
        }
      ]
    }
"""

from __future__ import annotations

import json
from enum import StrEnum
from pathlib import Path

from pydantic import ConfigDict, Field, ValidationError, field_validator

from verax.core.errors import PolicyError
from verax.core.models import VeraxModel


class EvaluationType(StrEnum):
    """Closed set of evaluators a rule can name."""

    NETWORK_SUCCESS_NO_UI = "network_success_no_ui"
    ANALYTICS_ONLY = "analytics_only"
    SHALLOW_ROUTING = "shallow_routing"
    UI_FEEDBACK_PRESENT = "ui_feedback_present"
    INTERACTION_BLOCKED = "interaction_blocked"
    VALIDATION_PRESENT = "validation_present"
    CONTRADICT_EVIDENCE = "contradict_evidence"
    VIEW_SWITCH_MINOR_CHANGE = "view_switch_minor_change"
    VIEW_SWITCH_ANALYTICS_ONLY = "view_switch_analytics_only"
    VIEW_SWITCH_AMBIGUOUS = "view_switch_ambiguous"


class RuleAction(StrEnum):
    BLOCK = "BLOCK"
    DOWNGRADE = "DOWNGRADE"
    INFO = "INFO"


class Evaluation(VeraxModel):
    model_config = ConfigDict(frozen=True)

    type: EvaluationType


class GuardrailsRule(VeraxModel):
    """One contradiction rule.

    Attributes:
        id: Unique rule id; rules run in ascending id order.
        category: Free-form grouping shown in reports.
        applies_to: Capability substrings matched against the finding type,
            or ``["*"]`` for every finding.
        evaluation: Which evaluator decides whether the rule applies.
        action: BLOCK, DOWNGRADE or INFO.
        confidence_delta: Added to the confidence score when the rule applies.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    category: str
    applies_to: tuple[str, ...] = ("*",)
    evaluation: Evaluation
    action: RuleAction
    confidence_delta: float = Field(0.0, ge=-1.0, le=1.0)

    def applies_to_type(self, finding_type: str) -> bool:
        return any(cap == "*" or cap in finding_type for cap in self.applies_to)


class GuardrailsPolicy(VeraxModel):
    """Immutable rule set for a run."""

    model_config = ConfigDict(frozen=True)

    version: int = 1
    source: str = "default"
    rules: tuple[GuardrailsRule, ...] = ()

    @field_validator("version")
    @classmethod
    def _supported_version(cls, v: int) -> int:
        if v != 1:
            raise ValueError(f"unsupported policy version {v}, expected 1")
        return v

    @field_validator("rules")
    @classmethod
    def _unique_ids(cls, rules: tuple[GuardrailsRule, ...]) -> tuple[GuardrailsRule, ...]:
        seen: set[str] = set()
        for rule in rules:
            if rule.id in seen:
                raise ValueError(f"duplicate rule id {rule.id}")
            seen.add(rule.id)
        return rules

    def ordered_rules(self) -> list[GuardrailsRule]:
        """Rules in ascending id order, the only order the engine uses."""
        return sorted(self.rules, key=lambda r: r.id)


def _rule(
    rule_id: str,
    category: str,
    applies_to: tuple[str, ...],
    evaluation: EvaluationType,
    action: RuleAction,
    delta: float,
) -> GuardrailsRule:
    return GuardrailsRule(
        id=rule_id,
        category=category,
        applies_to=applies_to,
        evaluation=Evaluation(type=evaluation),
        action=action,
        confidence_delta=delta,
    )


DEFAULT_POLICY = GuardrailsPolicy(
    version=1,
    source="default",
    rules=(
        _rule(
            "GUARD_NET_SUCCESS_NO_UI",
            "network",
            ("silent_failure", "network"),
            EvaluationType.NETWORK_SUCCESS_NO_UI,
            RuleAction.DOWNGRADE,
            -0.2,
        ),
        _rule(
            "GUARD_ANALYTICS_ONLY",
            "network",
            ("network", "silent_failure"),
            EvaluationType.ANALYTICS_ONLY,
            RuleAction.INFO,
            -0.3,
        ),
        _rule(
            "GUARD_SHALLOW_ROUTING",
            "navigation",
            ("navigation", "route"),
            EvaluationType.SHALLOW_ROUTING,
            RuleAction.DOWNGRADE,
            -0.2,
        ),
        _rule(
            "GUARD_UI_FEEDBACK_PRESENT",
            "feedback",
            ("silent_failure", "feedback_missing"),
            EvaluationType.UI_FEEDBACK_PRESENT,
            RuleAction.DOWNGRADE,
            -0.2,
        ),
        _rule(
            "GUARD_INTERACTION_BLOCKED",
            "interaction",
            ("silent_failure",),
            EvaluationType.INTERACTION_BLOCKED,
            RuleAction.INFO,
            -0.4,
        ),
        _rule(
            "GUARD_VALIDATION_PRESENT",
            "validation",
            ("validation", "form"),
            EvaluationType.VALIDATION_PRESENT,
            RuleAction.DOWNGRADE,
            -0.2,
        ),
        _rule(
            "GUARD_CONTRADICT_EVIDENCE",
            "evidence",
            ("*",),
            EvaluationType.CONTRADICT_EVIDENCE,
            RuleAction.BLOCK,
            -0.3,
        ),
        _rule(
            "GUARD_VIEW_SWITCH_MINOR_CHANGE",
            "state",
            ("view_switch",),
            EvaluationType.VIEW_SWITCH_MINOR_CHANGE,
            RuleAction.DOWNGRADE,
            -0.15,
        ),
        _rule(
            "GUARD_VIEW_SWITCH_ANALYTICS_ONLY",
            "state",
            ("view_switch",),
            EvaluationType.VIEW_SWITCH_ANALYTICS_ONLY,
            RuleAction.INFO,
            -0.3,
        ),
        _rule(
            "GUARD_VIEW_SWITCH_AMBIGUOUS",
            "state",
            ("view_switch",),
            EvaluationType.VIEW_SWITCH_AMBIGUOUS,
            RuleAction.DOWNGRADE,
            -0.1,
        ),
    ),
)


def _describe(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def load_policy(path: Path | None = None) -> GuardrailsPolicy:
    """Load a guardrails policy.

    Args:
        path: Policy JSON file. None returns the built-in default policy.

    Returns:
        The validated, immutable policy. Its ``source`` is the file path.

    Raises:
        PolicyError: If the file is missing, unreadable, or does not
            validate (unknown evaluation type, bad action, duplicate id, ...).
    """
    if path is None:
        return DEFAULT_POLICY
    if not path.exists():
        raise PolicyError(f"Policy file not found: {path}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise PolicyError(f"Failed to read policy {path}: {e}") from None
    if not isinstance(raw, dict):
        raise PolicyError(f"Policy {path} must contain a JSON object")
    raw["source"] = str(path)
    try:
        return GuardrailsPolicy.model_validate(raw)
    except ValidationError as e:
        raise PolicyError(f"Invalid policy {path}: {_describe(e)}") from None
