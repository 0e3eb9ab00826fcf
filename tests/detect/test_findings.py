"""Tests for finding construction."""

from __future__ import annotations

import pytest
from factories import BASE_URL, make_expectation, make_observation, make_summary

from verax.core.errors import EvidenceBuildError
from verax.core.models import (
    AttemptSignals,
    CaptureFailure,
    CauseCode,
    Finding,
    ImpactSeverity,
    TruthStatus,
)
from verax.detect.findings import (
    build_finding,
    candidate_status,
    correlation_signals,
    detect_findings,
    finding_id,
    finding_type_for,
)
from verax.evidence.package import build_and_enforce_evidence_package


class TestFindingType:
    @pytest.mark.parametrize(
        "category,kwargs,expected",
        [
            ("navigation", {}, "navigation_silent_failure"),
            ("validation", {}, "validation_silent_failure"),
            ("form", {}, "form_silent_failure"),
            ("button", {"outcome": "feedback"}, "missing_feedback_failure"),
            ("state", {"kind": "view_switch"}, "view_switch_silent_failure"),
            ("state", {"kind": "set_state"}, "missing_state_action"),
            ("button", {}, "no_effect_silent_failure"),
            ("network", {}, "missing_network_action"),
        ],
    )
    def test_mapping(self, category: str, kwargs: dict, expected: str) -> None:
        exp = make_expectation(category, **kwargs)
        assert finding_type_for(exp, make_observation(exp)) == expected

    def test_network_with_activity(self) -> None:
        exp = make_expectation("network")
        obs = make_observation(exp, signals=AttemptSignals(network_activity=True))
        assert finding_type_for(exp, obs) == "network_silent_failure"


class TestCandidates:
    def test_success_is_not_a_finding(self) -> None:
        exp = make_expectation()
        assert build_finding(exp, make_observation(exp, cause=None)) is None

    def test_not_found_is_not_a_finding(self) -> None:
        exp = make_expectation()
        obs = make_observation(exp, cause=CauseCode.NOT_FOUND, attempted=False)
        assert build_finding(exp, obs) is None

    def test_error_is_not_a_finding(self) -> None:
        exp = make_expectation()
        assert build_finding(exp, make_observation(exp, cause=CauseCode.ERROR)) is None

    def test_candidate_needs_screenshots_and_diff(self) -> None:
        exp = make_expectation()
        assert candidate_status(make_observation(exp)) is TruthStatus.CONFIRMED
        no_diff = make_summary(files=["exp_1_before.png", "exp_1_after.png"])
        assert candidate_status(make_observation(exp, evidence=no_diff)) is TruthStatus.SUSPECTED

    def test_finding_id_is_stable(self) -> None:
        first = finding_id("exp-save", 1, "no_effect_silent_failure")
        assert first == finding_id("exp-save", 1, "no_effect_silent_failure")
        assert first != finding_id("exp-save", 2, "no_effect_silent_failure")
        assert first.startswith("finding-")

    def test_correlation_signals(self) -> None:
        signals = AttemptSignals(feedback_seen=True, correlated_network_activity=True)
        assert correlation_signals(signals) == ["feedback", "correlatedNetwork"]


class TestBuildFinding:
    def test_confirmed_with_complete_evidence(self) -> None:
        exp = make_expectation()
        finding = build_finding(exp, make_observation(exp))

        assert finding is not None
        assert finding.type == "no_effect_silent_failure"
        assert finding.status is TruthStatus.CONFIRMED
        assert finding.severity is ImpactSeverity.LOW
        assert finding.confidence.score == 0.76
        assert finding.evidence_package.is_complete is True
        assert finding.evidence_completeness.downgraded is False
        assert finding.guardrails.applied_rules == []
        assert finding.evidence_package.justification.confidence_score == 0.76

    def test_missing_screenshot_stays_suspected(self) -> None:
        exp = make_expectation()
        obs = make_observation(exp, evidence=make_summary(after_screenshot=None))
        finding = build_finding(exp, obs)

        assert finding.status is TruthStatus.SUSPECTED
        completeness = finding.evidence_completeness
        assert completeness.is_complete is False
        assert completeness.missing_fields == ["after.screenshot"]
        assert completeness.downgraded is False
        assert completeness.downgrade_reason.startswith(
            "Evidence Law Violation: Missing required evidence fields: after.screenshot"
        )

    def test_missing_source_downgrades_claim(self) -> None:
        exp = make_expectation(source_file=None)
        finding = build_finding(exp, make_observation(exp))

        assert finding.status is TruthStatus.SUSPECTED
        assert finding.guardrails.policy_report.applied_rule_ids == ["GUARD_CONTRADICT_EVIDENCE"]
        assert finding.guardrails.downgraded is True
        assert finding.evidence_completeness.downgraded is True
        assert finding.evidence_completeness.missing_fields == ["trigger.source"]

    def test_shallow_routing_downgraded(self) -> None:
        exp = make_expectation(
            "navigation",
            exp_id="exp-nav",
            kind="navigate",
            value="#section",
            selector=None,
            outcome="navigation",
        )
        obs = make_observation(exp, evidence=make_summary(after_url=BASE_URL + "#section"))
        finding = build_finding(exp, obs)

        assert finding.status is TruthStatus.SUSPECTED
        assert finding.guardrails.policy_report.applied_rule_ids == ["GUARD_SHALLOW_ROUTING"]
        assert finding.guardrails.confidence_delta == -0.2
        assert finding.confidence.score == 0.53
        assert finding.evidence_package.signals.navigation.shallow_routing is True
        assert "GUARDRAILS_DOWNGRADE" in finding.confidence.reason_codes

    def test_capture_failures_carried(self) -> None:
        exp = make_expectation()
        failure = CaptureFailure(stage="after.dom", reason_code="DOM_CAPTURE_FAILED", message="x")
        obs = make_observation(exp, evidence=make_summary(capture_failures=[failure]))
        finding = build_finding(exp, obs)

        assert finding.evidence_completeness.capture_failures == [failure]
        assert finding.evidence_package.capture_failures == [failure]
        assert "EVIDENCE_INTENT_FAILURES" in finding.confidence.reason_codes

    def test_detect_findings_pairs_by_position(self) -> None:
        ok = make_expectation(exp_id="ok")
        bad = make_expectation(exp_id="bad")
        findings = detect_findings(
            [ok, bad],
            [make_observation(ok, cause=None), make_observation(bad, exp_num=2)],
        )
        assert [f.expectation_id for f in findings] == ["bad"]
        assert findings[0].exp_num == 2

    def test_detect_findings_length_mismatch(self) -> None:
        exp = make_expectation()
        with pytest.raises(ValueError):
            detect_findings([exp, exp], [make_observation(exp)])


class TestHardLock:
    def test_confirmed_incomplete_raises(self) -> None:
        exp = make_expectation()
        obs = make_observation(exp, evidence=make_summary(before_screenshot=None))
        finding = Finding(
            id="finding-x",
            type="no_effect_silent_failure",
            status=TruthStatus.CONFIRMED,
            expectation_id=exp.id,
            exp_num=1,
        )
        with pytest.raises(EvidenceBuildError) as excinfo:
            build_and_enforce_evidence_package(finding, exp, obs)
        assert excinfo.value.missing_fields == ["before.screenshot"]
        assert excinfo.value.code == "EVIDENCE_BUILD_FAILED"
