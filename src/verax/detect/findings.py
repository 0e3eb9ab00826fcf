"""Finding construction.

Turns sealed observations into findings. For each candidate the order is
fixed: evidence package, raw confidence, guardrails, final confidence (which
enforces Evidence Law), then the evidence hard lock.
"""

from __future__ import annotations

import hashlib
import logging

from verax.core.models import (
    AttemptSignals,
    CauseCode,
    Correlation,
    Expectation,
    ExpectationCategory,
    ExpectedOutcome,
    Finding,
    ImpactSeverity,
    InteractionInfo,
    Observation,
    TruthStatus,
)
from verax.detect.confidence import (
    VERIFIED,
    VERIFIED_WITH_ERRORS,
    comparisons_from_evidence,
    compute_confidence,
    sensors_from_evidence,
)
from verax.evidence.package import build_and_enforce_evidence_package, build_evidence_package
from verax.guardrails.engine import apply_guardrails
from verax.guardrails.policy import DEFAULT_POLICY, GuardrailsPolicy

logger = logging.getLogger(__name__)

# Causes that describe an interaction which ran but did not deliver.
FAILURE_CAUSES = frozenset(
    {CauseCode.NO_CHANGE, CauseCode.PREVENTED_SUBMIT, CauseCode.TIMEOUT, CauseCode.BLOCKED}
)

SEVERITY_BY_TYPE: dict[str, ImpactSeverity] = {
    "navigation_silent_failure": ImpactSeverity.HIGH,
    "network_silent_failure": ImpactSeverity.HIGH,
    "form_silent_failure": ImpactSeverity.HIGH,
    "validation_silent_failure": ImpactSeverity.MEDIUM,
    "missing_network_action": ImpactSeverity.MEDIUM,
    "missing_feedback_failure": ImpactSeverity.MEDIUM,
    "missing_state_action": ImpactSeverity.MEDIUM,
    "view_switch_silent_failure": ImpactSeverity.MEDIUM,
    "no_effect_silent_failure": ImpactSeverity.LOW,
}

_CORRELATION_SIGNALS = (
    ("navigation", "navigation_changed"),
    ("meaningfulDom", "meaningful_dom_change"),
    ("feedback", "feedback_seen"),
    ("correlatedNetwork", "correlated_network_activity"),
)


def finding_type_for(expectation: Expectation, observation: Observation) -> str:
    """Map an expectation and its attempt to a failure-class taxonomy entry."""
    match expectation.category:
        case ExpectationCategory.NAVIGATION:
            return "navigation_silent_failure"
        case ExpectationCategory.NETWORK:
            if observation.signals.network_activity:
                return "network_silent_failure"
            return "missing_network_action"
        case ExpectationCategory.VALIDATION:
            return "validation_silent_failure"
        case ExpectationCategory.FORM:
            return "form_silent_failure"
    if expectation.expected_outcome is ExpectedOutcome.FEEDBACK:
        return "missing_feedback_failure"
    if expectation.category is ExpectationCategory.STATE:
        if expectation.promise.kind == "view_switch":
            return "view_switch_silent_failure"
        return "missing_state_action"
    return "no_effect_silent_failure"


def is_candidate(observation: Observation) -> bool:
    """Only attempted interactions that ran but did not deliver become findings."""
    return observation.attempted and observation.cause in FAILURE_CAUSES


def candidate_status(observation: Observation) -> TruthStatus:
    """CONFIRMED is claimed only when both screenshots and the DOM diff exist.

    The claim is provisional: guardrails and Evidence Law may lower it.
    """
    summary = observation.evidence
    if summary is None:
        return TruthStatus.SUSPECTED
    has_diff = f"exp_{observation.exp_num}_dom_diff.json" in summary.files
    if summary.before_screenshot and summary.after_screenshot and has_diff:
        return TruthStatus.CONFIRMED
    return TruthStatus.SUSPECTED


def finding_id(expectation_id: str, exp_num: int, finding_type: str) -> str:
    digest = hashlib.sha256(f"{expectation_id}|{exp_num}|{finding_type}".encode()).hexdigest()
    return f"finding-{digest[:12]}"


def correlation_signals(signals: AttemptSignals) -> list[str]:
    return [name for name, attr in _CORRELATION_SIGNALS if getattr(signals, attr)]


def verification_status_for(observations: list[Observation]) -> str:
    """A run whose attempts hit execution errors is only VERIFIED_WITH_ERRORS."""
    if any(o.cause is CauseCode.ERROR for o in observations):
        return VERIFIED_WITH_ERRORS
    return VERIFIED


def build_finding(
    expectation: Expectation,
    observation: Observation,
    policy: GuardrailsPolicy = DEFAULT_POLICY,
    verification_status: str | None = None,
) -> Finding | None:
    """Build the finding for one observation, if it warrants one.

    Args:
        expectation: The originating expectation.
        observation: Its sealed observation.
        policy: Guardrails policy for the run.
        verification_status: Run verification status, forwarded to the
            confidence caps.

    Returns:
        The finding, or None when the attempt was skipped, succeeded, or
        failed for a reason that is not a silent failure (not-found, error).

    Raises:
        EvidenceBuildError: If a CONFIRMED finding ends up with an
            incomplete evidence package.
    """
    if not is_candidate(observation):
        return None

    finding_type = finding_type_for(expectation, observation)
    claimed = candidate_status(observation)
    summary = observation.evidence
    capture_failures = list(summary.capture_failures) if summary else []

    interaction = None
    if observation.action is not None:
        interaction = InteractionInfo(
            type=observation.action,
            selector=observation.selector,
            disabled=observation.interaction_disabled,
        )
    candidate = Finding(
        id=finding_id(expectation.id, observation.exp_num, finding_type),
        type=finding_type,
        status=claimed,
        severity=SEVERITY_BY_TYPE.get(finding_type, ImpactSeverity.MEDIUM),
        expectation_id=expectation.id,
        exp_num=observation.exp_num,
        cause=observation.cause,
        reason=observation.reason,
        interaction=interaction,
        correlation=Correlation(signals=correlation_signals(observation.signals)),
        expectation=expectation,
    )

    package = build_evidence_package(expectation, observation, capture_failures=capture_failures)
    sensors = sensors_from_evidence(package, summary)
    comparisons = comparisons_from_evidence(summary, observation.signals.navigation_changed)

    raw = compute_confidence(
        finding_type,
        expectation,
        sensors,
        comparisons,
        truth_status=claimed,
        evidence_package=package,
        capture_failures=capture_failures,
        verification_status=verification_status,
    )
    report = apply_guardrails(candidate, package, policy, raw.score)
    confidence = compute_confidence(
        finding_type,
        expectation,
        sensors,
        comparisons,
        truth_status=claimed,
        evidence_package=package,
        capture_failures=capture_failures,
        guardrails=report,
        verification_status=verification_status,
    )
    if confidence.truth_status is not claimed:
        logger.info(
            "%s (%s) lowered from %s to %s",
            candidate.id,
            finding_type,
            claimed,
            confidence.truth_status,
        )

    finding = candidate.model_copy(
        update={"status": confidence.truth_status, "confidence": confidence, "guardrails": report}
    )
    return build_and_enforce_evidence_package(
        finding,
        expectation,
        observation,
        confidence=confidence,
        capture_failures=capture_failures,
        claimed_status=claimed,
    )


def detect_findings(
    expectations: list[Expectation],
    observations: list[Observation],
    policy: GuardrailsPolicy = DEFAULT_POLICY,
    verification_status: str | None = None,
) -> list[Finding]:
    """Build findings for every observation, paired with its expectation by position."""
    findings = []
    for expectation, observation in zip(expectations, observations, strict=True):
        finding = build_finding(expectation, observation, policy, verification_status)
        if finding is not None:
            findings.append(finding)
    return findings
