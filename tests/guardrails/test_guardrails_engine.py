"""Tests for applying a guardrails policy to a finding."""

from __future__ import annotations

from verax.core.models import (
    EvidencePackage,
    Finding,
    NetworkSummary,
    PackageSignals,
    StateCapture,
    Trigger,
    TruthStatus,
)
from verax.guardrails.engine import apply_guardrails, severity_for_action
from verax.guardrails.policy import (
    DEFAULT_POLICY,
    Evaluation,
    EvaluationType,
    GuardrailsPolicy,
    GuardrailsRule,
    RuleAction,
)


def _rule(
    rule_id: str,
    evaluation: EvaluationType,
    action: RuleAction,
    delta: float,
    applies_to: tuple[str, ...] = ("*",),
) -> GuardrailsRule:
    return GuardrailsRule(
        id=rule_id,
        category="test",
        applies_to=applies_to,
        evaluation=Evaluation(type=evaluation),
        action=action,
        confidence_delta=delta,
    )


def _finding(status: TruthStatus = TruthStatus.CONFIRMED) -> Finding:
    return Finding(
        id="finding-1",
        type="navigation_silent_failure",
        status=status,
        expectation_id="exp-nav",
        exp_num=1,
    )


def _hash_package() -> EvidencePackage:
    return EvidencePackage(
        trigger=Trigger(expectation_id="exp-nav"),
        before=StateCapture(url="https://shop.test/", screenshot="b.png"),
        after=StateCapture(url="https://shop.test/#faq", screenshot="a.png"),
        signals=PackageSignals(
            network=NetworkSummary(
                total_requests=1,
                successful_requests=1,
                observed_request_urls=["https://cdn.test/analytics/collect"],
            )
        ),
        is_complete=True,
    )


SHALLOW = EvaluationType.SHALLOW_ROUTING
ANALYTICS = EvaluationType.ANALYTICS_ONLY


class TestApplyGuardrails:
    def test_default_policy_shallow_routing(self) -> None:
        report = apply_guardrails(_finding(), _hash_package(), DEFAULT_POLICY, 0.73)
        ids = report.policy_report.applied_rule_ids
        assert "GUARD_SHALLOW_ROUTING" in ids
        assert ids == sorted(ids)
        assert report.downgraded is True
        assert report.policy_report.source == "default"

    def test_last_rule_by_id_decides(self) -> None:
        policy = GuardrailsPolicy(
            rules=(
                _rule("Z_ANALYTICS", ANALYTICS, RuleAction.INFO, -0.3),
                _rule("A_SHALLOW", SHALLOW, RuleAction.DOWNGRADE, -0.2),
            )
        )
        report = apply_guardrails(_finding(), _hash_package(), policy, 0.73)
        assert report.policy_report.applied_rule_ids == ["A_SHALLOW", "Z_ANALYTICS"]
        assert report.final_decision is TruthStatus.INFORMATIONAL
        assert report.recommended_status is TruthStatus.INFORMATIONAL

        swapped = GuardrailsPolicy(
            rules=(
                _rule("A_ANALYTICS", ANALYTICS, RuleAction.INFO, -0.3),
                _rule("Z_SHALLOW", SHALLOW, RuleAction.DOWNGRADE, -0.2),
            )
        )
        report = apply_guardrails(_finding(), _hash_package(), swapped, 0.73)
        assert report.final_decision is TruthStatus.SUSPECTED

    def test_deltas_accumulate(self) -> None:
        policy = GuardrailsPolicy(
            rules=(
                _rule("A_SHALLOW", SHALLOW, RuleAction.DOWNGRADE, -0.2),
                _rule("B_ANALYTICS", ANALYTICS, RuleAction.INFO, -0.3),
            )
        )
        report = apply_guardrails(_finding(), _hash_package(), policy, 0.73)
        assert report.confidence_delta == -0.5
        assert [a.reason for a in report.confidence_adjustments] == ["A_SHALLOW", "B_ANALYTICS"]
        assert abs(report.final_confidence - 0.23) < 1e-9
        assert [c.code for c in report.contradictions] == ["A_SHALLOW", "B_ANALYTICS"]

    def test_final_confidence_clamped(self) -> None:
        policy = GuardrailsPolicy(rules=(_rule("A", SHALLOW, RuleAction.BLOCK, -1.0),))
        report = apply_guardrails(_finding(), _hash_package(), policy, 0.5)
        assert report.final_confidence == 0.0
        assert report.applied_rules[0].severity == "BLOCK_CONFIRMED"

    def test_applies_to_filters_rules(self) -> None:
        policy = GuardrailsPolicy(
            rules=(_rule("A", SHALLOW, RuleAction.DOWNGRADE, -0.2, applies_to=("validation",)),)
        )
        report = apply_guardrails(_finding(), _hash_package(), policy, 0.73)
        assert report.applied_rules == []
        assert report.final_decision is TruthStatus.CONFIRMED
        assert report.downgraded is False

    def test_non_confirmed_untouched(self) -> None:
        report = apply_guardrails(
            _finding(TruthStatus.SUSPECTED), _hash_package(), DEFAULT_POLICY, 0.5
        )
        assert report.applied_rules == []
        assert report.confidence_delta == 0.0
        assert report.final_confidence == 0.5
        assert report.final_decision is TruthStatus.SUSPECTED

    def test_missing_package(self) -> None:
        report = apply_guardrails(_finding(), None, DEFAULT_POLICY)
        assert report.policy_report.applied_rule_ids == ["GUARD_CONTRADICT_EVIDENCE"]
        assert report.final_decision is TruthStatus.SUSPECTED


class TestSeverity:
    def test_mapping(self) -> None:
        assert severity_for_action(RuleAction.DOWNGRADE) == "DOWNGRADE"
        assert severity_for_action(RuleAction.INFO) == "INFORMATIONAL"
        assert severity_for_action("UNKNOWN") == "WARNING"
