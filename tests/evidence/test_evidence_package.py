"""Tests for evidence package construction and the Evidence Law hard lock."""

from __future__ import annotations

import pytest
from factories import BASE_URL, make_expectation, make_observation, make_summary

from verax.core.errors import EvidenceBuildError
from verax.core.models import (
    AttemptSignals,
    CaptureFailure,
    DomDiffSummary,
    Finding,
    TruthStatus,
    UiSnapshot,
)
from verax.evidence.package import (
    REQUIRED_FIELDS,
    build_and_enforce_evidence_package,
    build_evidence_package,
    build_signals,
    check_missing_evidence,
    validate_evidence_package,
    validate_evidence_package_strict,
)


def _finding(status: TruthStatus) -> Finding:
    return Finding(
        id="finding-1",
        type="no_effect_silent_failure",
        status=status,
        expectation_id="exp-save",
        exp_num=1,
    )


class TestBuildEvidencePackage:
    def test_complete(self) -> None:
        exp = make_expectation()
        package = build_evidence_package(exp, make_observation(exp))
        assert package.is_complete is True
        assert package.missing_evidence == []
        assert package.trigger.source.file == "src/components/Cart.jsx"
        assert package.action.interaction.type == "click"
        assert package.before.screenshot == "exp_1_before.png"

    def test_missing_fields_in_fixed_order(self) -> None:
        exp = make_expectation(source_file=None)
        obs = make_observation(exp, action=None, evidence=make_summary(after_url=None))
        package = build_evidence_package(exp, obs)
        assert package.is_complete is False
        assert package.missing_evidence == ["trigger.source", "after.url", "action.interaction"]

    def test_no_evidence_at_all(self) -> None:
        exp = make_expectation()
        obs = make_observation(exp)
        obs = obs.model_copy(update={"evidence": None})
        package = build_evidence_package(exp, obs)
        kept = ("trigger.source", "action.interaction")
        assert package.missing_evidence == [f for f in REQUIRED_FIELDS if f not in kept]

    def test_justification(self) -> None:
        exp = make_expectation(outcome="feedback")
        signals = AttemptSignals(dom_changed=True, network_activity=True)
        package = build_evidence_package(exp, make_observation(exp, signals=signals))
        assert package.justification.observed_signals == ["domChanged", "networkActivity"]
        assert package.justification.expected_outcome == "feedback"
        assert package.justification.summary == "expected-outcome-not-observed"

    def test_camel_case_json(self) -> None:
        exp = make_expectation()
        data = build_evidence_package(exp, make_observation(exp)).to_json_dict()
        assert data["isComplete"] is True
        assert data["missingEvidence"] == []
        assert "uiSignals" in data["signals"]


class TestBuildSignals:
    def test_shallow_routing(self) -> None:
        exp = make_expectation("navigation")
        obs = make_observation(exp, evidence=make_summary(after_url=BASE_URL + "#top"))
        navigation = build_signals(obs).navigation
        assert navigation.shallow_routing is True
        assert navigation.url_changed is False

    def test_feedback_scores(self) -> None:
        exp = make_expectation()
        seen = build_signals(make_observation(exp, signals=AttemptSignals(feedback_seen=True)))
        dom = build_signals(
            make_observation(exp, signals=AttemptSignals(meaningful_dom_change=True))
        )
        none = build_signals(make_observation(exp))
        assert seen.ui_feedback.overall_ui_feedback_score == 1.0
        assert dom.ui_feedback.overall_ui_feedback_score == 0.5
        assert none.ui_feedback.overall_ui_feedback_score == 0.0

    def test_validation_happened_only_when_new(self) -> None:
        exp = make_expectation("validation")
        shown = UiSnapshot(has_validation_message=True)
        fresh = make_summary(ui_after=shown)
        stale = make_summary(ui_before=shown, ui_after=shown)
        assert build_signals(make_observation(exp, evidence=fresh)).ui_feedback.validation_happened
        stale_signals = build_signals(make_observation(exp, evidence=stale))
        assert stale_signals.ui_feedback.validation_happened is False

    def test_ui_signals_from_diff(self) -> None:
        exp = make_expectation()
        diff = DomDiffSummary(
            changed=True, attributes_changed=["aria-invalid"], content_changed=["h1:title"]
        )
        ui = build_signals(make_observation(exp, evidence=make_summary(dom_diff=diff))).ui_signals
        assert ui.dom_changed is True
        assert ui.aria_changed is True
        assert ui.text_changed is True
        assert ui.changed is False

    def test_without_evidence_all_sections_absent(self) -> None:
        exp = make_expectation()
        obs = make_observation(exp).model_copy(update={"evidence": None})
        signals = build_signals(obs)
        assert all(v is None for v in signals.model_dump().values())


class TestValidation:
    def test_soft_downgrade_only_for_confirmed(self) -> None:
        exp = make_expectation(source_file=None)
        package = build_evidence_package(exp, make_observation(exp))
        confirmed = validate_evidence_package(package, TruthStatus.CONFIRMED)
        suspected = validate_evidence_package(package, TruthStatus.SUSPECTED)
        assert confirmed.downgraded is True
        assert confirmed.downgrade_reason == (
            "Evidence Law Violation: Missing required evidence fields: trigger.source"
        )
        assert suspected.downgraded is False
        assert suspected.missing_fields == ["trigger.source"]

    def test_strict_missing_package(self) -> None:
        with pytest.raises(EvidenceBuildError, match="evidencePackage is missing or invalid"):
            validate_evidence_package_strict(None, TruthStatus.SUSPECTED)

    def test_strict_confirmed_incomplete(self) -> None:
        exp = make_expectation(source_file=None)
        package = build_evidence_package(exp, make_observation(exp))
        with pytest.raises(EvidenceBuildError) as excinfo:
            validate_evidence_package_strict(package, TruthStatus.CONFIRMED)
        assert "CONFIRMED finding requires complete evidencePackage" in str(excinfo.value)
        assert excinfo.value.evidence_package is package

    def test_strict_suspected_incomplete_passes(self) -> None:
        exp = make_expectation(source_file=None)
        package = build_evidence_package(exp, make_observation(exp))
        result = validate_evidence_package_strict(package, TruthStatus.SUSPECTED)
        assert result.is_complete is False

    def test_check_missing_matches_flag(self) -> None:
        exp = make_expectation()
        package = build_evidence_package(exp, make_observation(exp))
        assert check_missing_evidence(package) == []


class TestBuildAndEnforce:
    def test_confirmed_complete_passes(self) -> None:
        exp = make_expectation()
        finding = build_and_enforce_evidence_package(
            _finding(TruthStatus.CONFIRMED), exp, make_observation(exp)
        )
        assert finding.status is TruthStatus.CONFIRMED
        assert finding.evidence_package.is_complete is True
        assert finding.evidence_completeness.is_complete is True

    def test_confirmed_incomplete_raises(self) -> None:
        exp = make_expectation()
        obs = make_observation(exp, evidence=make_summary(after_screenshot=None))
        with pytest.raises(EvidenceBuildError):
            build_and_enforce_evidence_package(_finding(TruthStatus.CONFIRMED), exp, obs)

    def test_soft_path_annotates_reason(self) -> None:
        exp = make_expectation()
        failure = CaptureFailure(
            stage="after.screenshot", reason_code="SCREENSHOT_FAILED", message="closed"
        )
        obs = make_observation(exp, evidence=make_summary(after_screenshot=None))
        finding = build_and_enforce_evidence_package(
            _finding(TruthStatus.SUSPECTED),
            exp,
            obs,
            capture_failures=[failure],
            claimed_status=TruthStatus.CONFIRMED,
        )
        completeness = finding.evidence_completeness
        assert finding.status is TruthStatus.SUSPECTED
        assert completeness.downgraded is True
        assert completeness.capture_failures == [failure]
        assert completeness.downgrade_reason == (
            "Evidence Law Violation: Missing required evidence fields: after.screenshot"
            " [Evidence Intent: Capture failures: SCREENSHOT_FAILED]"
            " [Missing fields: after.screenshot]"
        )

    def test_soft_path_never_claimed_confirmed(self) -> None:
        exp = make_expectation()
        obs = make_observation(exp, evidence=make_summary(after_screenshot=None))
        finding = build_and_enforce_evidence_package(_finding(TruthStatus.SUSPECTED), exp, obs)
        assert finding.evidence_completeness.downgraded is False
        assert finding.evidence_completeness.downgrade_reason is not None
