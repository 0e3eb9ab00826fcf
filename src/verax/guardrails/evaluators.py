"""Guardrails evaluators.

One function per EvaluationType. Each inspects a finding, its signals and
its evidence package and says whether the rule applies, why, and which
status it recommends. Every evaluator only fires on CONFIRMED findings:
guardrails exist to stop false CONFIRMED verdicts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import assert_never

from verax.core.models import EvidencePackage, Finding, PackageSignals, TruthStatus
from verax.guardrails.policy import EvaluationType, GuardrailsRule

ANALYTICS_MARKERS = (
    "/analytics",
    "/beacon",
    "/tracking",
    "/pixel",
    "google-analytics",
    "segment.io",
    "mixpanel",
)

VIEW_SWITCH_PROMISE = "view_switch"


@dataclass(frozen=True)
class RuleEvaluation:
    """Verdict of one evaluator.

    Args:
        applies: Whether the rule fired.
        message: Human-readable explanation, empty when not applied.
        contradiction: Whether the signals contradict the finding's claim.
        recommended_status: Status the rule recommends, if any.
    """

    applies: bool
    message: str = ""
    contradiction: bool = False
    recommended_status: TruthStatus | None = None


NOT_APPLICABLE = RuleEvaluation(applies=False)


def is_analytics_url(url: str) -> bool:
    lower = url.lower()
    return any(marker in lower for marker in ANALYTICS_MARKERS)


def _request_urls(signals: PackageSignals) -> list[str]:
    if signals.network is None:
        return []
    return list(signals.network.top_failed_urls or signals.network.observed_request_urls)


def _is_view_switch(finding: Finding) -> bool:
    return VIEW_SWITCH_PROMISE in finding.type or _has_view_switch_promise(finding)


def _has_view_switch_promise(finding: Finding) -> bool:
    expectation = finding.expectation
    return expectation is not None and expectation.promise.kind == VIEW_SWITCH_PROMISE


def evaluate_rule(
    rule: GuardrailsRule,
    finding: Finding,
    signals: PackageSignals,
    evidence_package: EvidencePackage | None,
) -> RuleEvaluation:
    """Dispatch ``rule`` to its evaluator.

    Args:
        rule: The rule to evaluate.
        finding: Finding under review (its status is the claimed status).
        signals: Sensor signals from the evidence package.
        evidence_package: The finding's evidence package, if built.

    Returns:
        The evaluator's verdict.
    """
    confirmed = finding.status is TruthStatus.CONFIRMED
    if not confirmed:
        return NOT_APPLICABLE
    match rule.evaluation.type:
        case EvaluationType.NETWORK_SUCCESS_NO_UI:
            return _network_success_no_ui(finding, signals)
        case EvaluationType.ANALYTICS_ONLY:
            return _analytics_only(finding, signals)
        case EvaluationType.SHALLOW_ROUTING:
            return _shallow_routing(finding, signals, evidence_package)
        case EvaluationType.UI_FEEDBACK_PRESENT:
            return _ui_feedback_present(finding, signals)
        case EvaluationType.INTERACTION_BLOCKED:
            return _interaction_blocked(finding, evidence_package)
        case EvaluationType.VALIDATION_PRESENT:
            return _validation_present(finding, signals)
        case EvaluationType.CONTRADICT_EVIDENCE:
            return _contradict_evidence(evidence_package)
        case EvaluationType.VIEW_SWITCH_MINOR_CHANGE:
            return _view_switch_minor_change(finding, signals, evidence_package)
        case EvaluationType.VIEW_SWITCH_ANALYTICS_ONLY:
            return _view_switch_analytics_only(finding, signals)
        case EvaluationType.VIEW_SWITCH_AMBIGUOUS:
            return _view_switch_ambiguous(finding)
        case unreachable:
            assert_never(unreachable)


def _network_success_no_ui(finding: Finding, signals: PackageSignals) -> RuleEvaluation:
    network = signals.network
    if network is None:
        return NOT_APPLICABLE
    ui_changed = signals.ui_signals is not None and signals.ui_signals.changed
    feedback_score = signals.ui_feedback.overall_ui_feedback_score if signals.ui_feedback else 0.0
    no_errors = network.failed_requests == 0 and (
        signals.console is None or signals.console.errors == 0
    )
    if (
        network.successful_requests > 0
        and network.failed_requests == 0
        and not ui_changed
        and feedback_score < 0.3
        and no_errors
        and ("silent_failure" in finding.type or "network" in finding.type)
    ):
        return RuleEvaluation(
            applies=True,
            message=(
                "Network request succeeded but no UI change observed. "
                "This is not a silent failure."
            ),
            contradiction=True,
            recommended_status=TruthStatus.SUSPECTED,
        )
    return NOT_APPLICABLE


def _analytics_only(finding: Finding, signals: PackageSignals) -> RuleEvaluation:
    urls = _request_urls(signals)
    network_finding = "network" in finding.type or "silent_failure" in finding.type
    if len(urls) == 1 and is_analytics_url(urls[0]) and network_finding:
        return RuleEvaluation(
            applies=True,
            message="Only analytics/beacon requests detected. These are not user promises.",
            contradiction=True,
            recommended_status=TruthStatus.INFORMATIONAL,
        )
    return NOT_APPLICABLE


def _shallow_routing(
    finding: Finding, signals: PackageSignals, evidence_package: EvidencePackage | None
) -> RuleEvaluation:
    before_url = (evidence_package.before.url if evidence_package else None) or ""
    after_url = (evidence_package.after.url if evidence_package else None) or ""
    hash_only = bool(
        before_url
        and after_url
        and before_url.split("#")[0] == after_url.split("#")[0]
        and ("#" in before_url or "#" in after_url)
    )
    navigation = signals.navigation
    shallow = navigation is not None and navigation.shallow_routing and not navigation.url_changed
    navigation_finding = "navigation" in finding.type or "route" in finding.type
    if (hash_only or shallow) and navigation_finding:
        return RuleEvaluation(
            applies=True,
            message=(
                "Hash-only or shallow routing detected. Cannot confirm navigation "
                "without route intelligence verification."
            ),
            contradiction=True,
            recommended_status=TruthStatus.SUSPECTED,
        )
    return NOT_APPLICABLE


def _ui_feedback_present(finding: Finding, signals: PackageSignals) -> RuleEvaluation:
    ui = signals.ui_signals
    feedback_score = signals.ui_feedback.overall_ui_feedback_score if signals.ui_feedback else 0.0
    has_feedback = feedback_score > 0.5 or (
        ui is not None
        and (ui.has_loading_indicator or ui.has_dialog or ui.has_error_signal or ui.changed)
    )
    silent = "silent_failure" in finding.type or "feedback_missing" in finding.type
    if has_feedback and silent:
        return RuleEvaluation(
            applies=True,
            message="UI feedback is present. This contradicts a silent failure claim.",
            contradiction=True,
            recommended_status=TruthStatus.SUSPECTED,
        )
    return NOT_APPLICABLE


def _interaction_blocked(
    finding: Finding, evidence_package: EvidencePackage | None
) -> RuleEvaluation:
    disabled = finding.interaction is not None and finding.interaction.disabled
    if evidence_package is not None and evidence_package.action.interaction is not None:
        disabled = disabled or evidence_package.action.interaction.disabled
    if disabled and "silent_failure" in finding.type:
        return RuleEvaluation(
            applies=True,
            message=(
                "Interaction was disabled/blocked. "
                "This is expected behavior, not a silent failure."
            ),
            recommended_status=TruthStatus.INFORMATIONAL,
        )
    return NOT_APPLICABLE


def _validation_present(finding: Finding, signals: PackageSignals) -> RuleEvaluation:
    ui = signals.ui_signals
    feedback = signals.ui_feedback
    validation_happened = feedback is not None and feedback.validation_happened
    has_validation = validation_happened or (
        ui is not None and (ui.has_error_signal or ui.has_validation_message)
    )
    if has_validation and ("validation" in finding.type or "form" in finding.type):
        return RuleEvaluation(
            applies=True,
            message=(
                "Validation feedback is present. "
                "This contradicts a validation silent failure claim."
            ),
            contradiction=True,
            recommended_status=TruthStatus.SUSPECTED,
        )
    return NOT_APPLICABLE


def _contradict_evidence(evidence_package: EvidencePackage | None) -> RuleEvaluation:
    if evidence_package is None:
        missing = ["evidencePackage"]
    elif not evidence_package.is_complete:
        missing = evidence_package.missing_evidence
    else:
        return NOT_APPLICABLE
    return RuleEvaluation(
        applies=True,
        message=f"Evidence package is incomplete. Missing: {', '.join(missing)}",
        contradiction=True,
        recommended_status=TruthStatus.SUSPECTED,
    )


def _view_switch_minor_change(
    finding: Finding, signals: PackageSignals, evidence_package: EvidencePackage | None
) -> RuleEvaluation:
    if not _is_view_switch(finding):
        return NOT_APPLICABLE
    before_url = (evidence_package.before.url if evidence_package else None) or ""
    after_url = (evidence_package.after.url if evidence_package else None) or ""
    ui = signals.ui_signals
    feedback_score = signals.ui_feedback.overall_ui_feedback_score if signals.ui_feedback else 0.0
    minor = (
        ui is not None
        and ui.text_changed
        and not ui.dom_changed
        and not ui.visible_changed
        and not ui.aria_changed
        and feedback_score < 0.2
    )
    if before_url == after_url and minor:
        return RuleEvaluation(
            applies=True,
            message=(
                "URL unchanged and change is minor (e.g. button text only). "
                "Cannot confirm view switch."
            ),
            contradiction=True,
            recommended_status=TruthStatus.SUSPECTED,
        )
    return NOT_APPLICABLE


def _view_switch_analytics_only(finding: Finding, signals: PackageSignals) -> RuleEvaluation:
    if not _is_view_switch(finding):
        return NOT_APPLICABLE
    urls = _request_urls(signals)
    analytics_only = bool(urls) and all(is_analytics_url(u) for u in urls)
    ui = signals.ui_signals
    no_ui_change = ui is None or not (ui.changed or ui.dom_changed or ui.visible_changed)
    if analytics_only and no_ui_change:
        return RuleEvaluation(
            applies=True,
            message="Only analytics fired, no UI change. Cannot confirm view switch.",
            contradiction=True,
            recommended_status=TruthStatus.INFORMATIONAL,
        )
    return NOT_APPLICABLE


def _view_switch_ambiguous(finding: Finding) -> RuleEvaluation:
    if not (_is_view_switch(finding) and _has_view_switch_promise(finding)):
        return NOT_APPLICABLE
    if len(finding.correlation.signals) == 1:
        return RuleEvaluation(
            applies=True,
            message=(
                "State change promise exists but UI outcome ambiguous (one signal only). "
                "Downgrading to SUSPECTED."
            ),
            recommended_status=TruthStatus.SUSPECTED,
        )
    return NOT_APPLICABLE
