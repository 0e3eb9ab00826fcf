"""Evidence package builder and hard lock.

``build_evidence_package`` never fails on missing data; it records what is
missing. ``validate_evidence_package_strict`` is the hard lock: a CONFIRMED
finding whose package is incomplete raises EvidenceBuildError, and nothing in
this package catches it.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from verax.core.errors import EvidenceBuildError
from verax.core.models import (
    ActionSection,
    CaptureFailure,
    ConfidenceResult,
    EvidenceCompleteness,
    EvidencePackage,
    EvidenceSummary,
    Expectation,
    Finding,
    InteractionInfo,
    Justification,
    NavigationSignals,
    Observation,
    PackageSignals,
    StateCapture,
    Trigger,
    TruthStatus,
    UiFeedback,
    UiSignals,
)
from verax.observe.bundle import strip_fragment

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    "trigger.source",
    "before.screenshot",
    "after.screenshot",
    "before.url",
    "after.url",
    "action.interaction",
    "signals.network",
    "signals.uiSignals",
)


def _ui_signals(observation: Observation, summary: EvidenceSummary) -> UiSignals:
    after = summary.ui_after
    diff = summary.dom_diff
    return UiSignals(
        changed=observation.signals.meaningful_dom_change or observation.signals.feedback_seen,
        has_loading_indicator=after is not None and after.has_loading_indicator,
        has_dialog=after is not None and after.has_dialog,
        has_error_signal=after is not None and after.has_error_signal,
        has_validation_message=after is not None and after.has_validation_message,
        text_changed=bool(diff.content_changed),
        dom_changed=diff.changed,
        visible_changed=summary.visible_change,
        aria_changed=any(a.startswith("aria-") for a in diff.attributes_changed),
    )


def _ui_feedback(observation: Observation, summary: EvidenceSummary) -> UiFeedback:
    if observation.signals.feedback_seen:
        score = 1.0
    elif observation.signals.meaningful_dom_change:
        score = 0.5
    else:
        score = 0.0
    after = summary.ui_after
    before = summary.ui_before
    validation = (
        after is not None
        and after.has_validation_message
        and not (before is not None and before.has_validation_message)
    )
    return UiFeedback(overall_ui_feedback_score=score, validation_happened=validation)


def _navigation(summary: EvidenceSummary, url_changed: bool) -> NavigationSignals:
    before = summary.before_url or ""
    after = summary.after_url or ""
    hash_only = bool(
        before and after and before != after and strip_fragment(before) == strip_fragment(after)
    )
    return NavigationSignals(url_changed=url_changed, shallow_routing=hash_only)


def build_signals(observation: Observation) -> PackageSignals:
    """Translate an observation's evidence into the package signal sections.

    Sections whose sensor produced nothing stay None.
    """
    summary = observation.evidence
    if summary is None:
        return PackageSignals()
    return PackageSignals(
        network=summary.network,
        console=summary.console,
        ui_signals=_ui_signals(observation, summary),
        ui_feedback=_ui_feedback(observation, summary),
        navigation=_navigation(summary, observation.signals.navigation_changed),
    )


def check_missing_evidence(package: EvidencePackage) -> list[str]:
    """Return the required fields ``package`` lacks, in REQUIRED_FIELDS order."""
    present = {
        "trigger.source": package.trigger.source is not None
        and bool(package.trigger.source.file),
        "before.screenshot": bool(package.before.screenshot),
        "after.screenshot": bool(package.after.screenshot),
        "before.url": bool(package.before.url),
        "after.url": bool(package.after.url),
        "action.interaction": package.action.interaction is not None
        and bool(package.action.interaction.type),
        "signals.network": package.signals.network is not None,
        "signals.uiSignals": package.signals.ui_signals is not None,
    }
    return [name for name in REQUIRED_FIELDS if not present[name]]


def build_evidence_package(
    expectation: Expectation,
    observation: Observation,
    confidence: ConfidenceResult | None = None,
    capture_failures: Sequence[CaptureFailure] = (),
) -> EvidencePackage:
    """Assemble the canonical evidence package for one finding.

    Args:
        expectation: The originating expectation (trigger section).
        observation: The sealed observation (before, action, after, signals).
        confidence: Confidence result for the justification, if computed.
        capture_failures: Evidence capture steps that failed.

    Returns:
        A package whose ``missing_evidence`` lists every absent required
        field and whose ``is_complete`` is true exactly when none is absent.
    """
    summary = observation.evidence
    interaction = None
    if observation.action is not None:
        interaction = InteractionInfo(
            type=observation.action,
            selector=observation.selector,
            disabled=observation.interaction_disabled,
        )

    justification = Justification(
        summary=observation.reason or "",
        expected_outcome=expectation.expected_outcome,
        observed_signals=[
            name for name, fired in observation.signals.model_dump(by_alias=True).items() if fired
        ],
    )
    if confidence is not None:
        justification = justification.model_copy(
            update={
                "confidence_score": confidence.score,
                "confidence_level": confidence.level,
                "reason_codes": list(confidence.reason_codes),
            }
        )

    draft = EvidencePackage(
        trigger=Trigger(
            expectation_id=expectation.id,
            source=expectation.source,
            promise=expectation.promise,
        ),
        before=StateCapture(
            url=summary.before_url if summary else None,
            screenshot=summary.before_screenshot if summary else None,
        ),
        action=ActionSection(
            interaction=interaction,
            attempted=observation.attempted,
            success=observation.action_success,
            reason=observation.reason,
            cause=observation.cause,
            timing=summary.timing if summary else ActionSection().timing,
        ),
        after=StateCapture(
            url=summary.after_url if summary else None,
            screenshot=summary.after_screenshot if summary else None,
        ),
        signals=build_signals(observation),
        justification=justification,
        missing_evidence=list(REQUIRED_FIELDS),
        is_complete=False,
        capture_failures=list(capture_failures),
    )
    missing = check_missing_evidence(draft)
    return draft.model_copy(update={"missing_evidence": missing, "is_complete": not missing})


def validate_evidence_package(
    package: EvidencePackage, status: TruthStatus
) -> EvidenceCompleteness:
    """Soft validation: report completeness and whether a downgrade is due.

    A downgrade is due only for a CONFIRMED claim with missing fields.
    """
    missing = check_missing_evidence(package)
    should_downgrade = status is TruthStatus.CONFIRMED and bool(missing)
    return EvidenceCompleteness(
        is_complete=not missing,
        missing_fields=missing,
        downgraded=should_downgrade,
        downgrade_reason=(
            f"Evidence Law Violation: Missing required evidence fields: {', '.join(missing)}"
            if should_downgrade
            else None
        ),
    )


def validate_evidence_package_strict(
    package: EvidencePackage | None, status: TruthStatus
) -> EvidenceCompleteness:
    """Hard lock for CONFIRMED findings.

    Args:
        package: The package to check.
        status: Status the finding is about to be persisted with.

    Returns:
        The completeness record when the package passes.

    Raises:
        EvidenceBuildError: If the package is missing, or the status is
            CONFIRMED and the package is incomplete.
    """
    if package is None:
        raise EvidenceBuildError(
            "Evidence Law Violation: evidencePackage is missing or invalid",
            missing_fields=list(REQUIRED_FIELDS),
        )
    missing = check_missing_evidence(package)
    if status is TruthStatus.CONFIRMED:
        if missing:
            raise EvidenceBuildError(
                "Evidence Law Violation: CONFIRMED finding requires complete evidencePackage. "
                f"Missing fields: {', '.join(missing)}",
                missing_fields=missing,
                evidence_package=package,
            )
        if not package.is_complete:
            raise EvidenceBuildError(
                "Evidence Law Violation: CONFIRMED finding has evidencePackage.isComplete != true",
                missing_fields=list(REQUIRED_FIELDS),
                evidence_package=package,
            )
    return EvidenceCompleteness(is_complete=not missing, missing_fields=missing)


def _soft_downgrade_reason(missing: list[str], capture_failures: Sequence[CaptureFailure]) -> str:
    reason = f"Evidence Law Violation: Missing required evidence fields: {', '.join(missing)}"
    if capture_failures:
        codes = ", ".join(f.reason_code or "UNKNOWN" for f in capture_failures)
        reason += f" [Evidence Intent: Capture failures: {codes}]"
    reason += f" [Missing fields: {', '.join(missing)}]"
    return reason


def build_and_enforce_evidence_package(
    finding: Finding,
    expectation: Expectation,
    observation: Observation,
    confidence: ConfidenceResult | None = None,
    capture_failures: Sequence[CaptureFailure] = (),
    claimed_status: TruthStatus | None = None,
) -> Finding:
    """Build the package for ``finding`` and enforce Evidence Law on it.

    CONFIRMED findings go through the hard lock and an incomplete package
    raises. Any other finding with an incomplete package is annotated with a
    downgrade reason naming the capture failures and missing fields.

    Args:
        finding: Finding with its final status set.
        expectation: The originating expectation.
        observation: The sealed observation.
        confidence: Final confidence result, for the justification.
        capture_failures: Evidence capture steps that failed.
        claimed_status: Status the finding was first claimed with. When it
            was CONFIRMED and the finding no longer is, the completeness
            record is marked downgraded.

    Returns:
        A copy of ``finding`` carrying the package and its completeness record.

    Raises:
        EvidenceBuildError: If a CONFIRMED finding's package is incomplete.
    """
    package = build_evidence_package(expectation, observation, confidence, capture_failures)

    if finding.status is TruthStatus.CONFIRMED:
        completeness = validate_evidence_package_strict(package, finding.status)
    else:
        completeness = validate_evidence_package(package, finding.status)
        if completeness.missing_fields:
            downgraded = claimed_status is TruthStatus.CONFIRMED
            completeness = completeness.model_copy(
                update={
                    "downgraded": downgraded,
                    "downgrade_reason": _soft_downgrade_reason(
                        completeness.missing_fields, capture_failures
                    ),
                }
            )
            logger.debug(
                "Finding %s kept at %s with incomplete evidence: %s",
                finding.id,
                finding.status,
                ", ".join(completeness.missing_fields),
            )

    completeness = completeness.model_copy(update={"capture_failures": list(capture_failures)})
    return finding.model_copy(
        update={"evidence_package": package, "evidence_completeness": completeness}
    )
