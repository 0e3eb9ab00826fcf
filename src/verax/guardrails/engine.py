"""Apply a guardrails policy to one finding."""

from __future__ import annotations

import logging

from verax.core.models import (
    STATUS_RANK,
    AppliedRule,
    ConfidenceAdjustment,
    Contradiction,
    EvidencePackage,
    Finding,
    GuardrailsReport,
    PackageSignals,
    PolicyReport,
)
from verax.guardrails.evaluators import evaluate_rule
from verax.guardrails.policy import GuardrailsPolicy, RuleAction

logger = logging.getLogger(__name__)

SEVERITY_BY_ACTION: dict[str, str] = {
    RuleAction.BLOCK: "BLOCK_CONFIRMED",
    RuleAction.DOWNGRADE: "DOWNGRADE",
    RuleAction.INFO: "INFORMATIONAL",
}


def severity_for_action(action: str) -> str:
    return SEVERITY_BY_ACTION.get(action, "WARNING")


def apply_guardrails(
    finding: Finding,
    evidence_package: EvidencePackage | None,
    policy: GuardrailsPolicy,
    initial_confidence: float = 0.0,
) -> GuardrailsReport:
    """Run every applicable rule of ``policy`` against ``finding``.

    Rules run in ascending id order. Applied rules, contradictions and
    confidence adjustments accumulate; the last rule that recommends a status
    decides the final status.

    Args:
        finding: Finding under review. Its ``status`` is the claimed status.
        evidence_package: The finding's evidence package, if built.
        policy: The run's guardrails policy.
        initial_confidence: Confidence before adjustment, in [0, 1].

    Returns:
        The guardrails report for the finding.
    """
    signals = evidence_package.signals if evidence_package is not None else PackageSignals()
    applied: list[AppliedRule] = []
    contradictions: list[Contradiction] = []
    adjustments: list[ConfidenceAdjustment] = []
    final_decision = finding.status
    delta = 0.0

    for rule in policy.ordered_rules():
        if not rule.applies_to_type(finding.type):
            continue
        result = evaluate_rule(rule, finding, signals, evidence_package)
        if not result.applies:
            continue
        logger.debug("Rule %s applied to %s: %s", rule.id, finding.id, result.message)
        applied.append(
            AppliedRule(
                code=rule.id,
                severity=severity_for_action(rule.action),
                message=result.message,
                rule_id=rule.id,
                category=rule.category,
            )
        )
        if result.contradiction:
            contradictions.append(Contradiction(code=rule.id, message=result.message))
        if result.recommended_status is not None:
            final_decision = result.recommended_status
        if rule.confidence_delta:
            delta += rule.confidence_delta
            adjustments.append(
                ConfidenceAdjustment(
                    reason=rule.id, delta=rule.confidence_delta, message=result.message
                )
            )

    delta = round(delta, 4)
    return GuardrailsReport(
        applied_rules=applied,
        contradictions=contradictions,
        recommended_status=final_decision,
        confidence_adjustments=adjustments,
        confidence_delta=delta,
        final_confidence=max(0.0, min(1.0, initial_confidence + delta)),
        final_decision=final_decision,
        downgraded=STATUS_RANK[final_decision] < STATUS_RANK[finding.status],
        policy_report=PolicyReport(
            version=policy.version,
            source=policy.source,
            applied_rule_ids=[r.rule_id for r in applied],
        ),
    )
