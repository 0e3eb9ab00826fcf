"""Confidence engine.

Two stages. ``score_raw`` turns a finding type, its expectation and the
sensor data into a 0-100 score with human-readable explanations.
``compute_confidence`` maps that to the final 0-1 score, applies the
guardrails adjustment, enforces Evidence Law and the per-status confidence
ranges, and derives level, reason codes and metadata.

Both are pure: identical inputs always produce identical output.

Score rubric (raw):
    Base score per finding type, overridden by expectation strength
    (PROVEN 70, OBSERVED 55, WEAK 50). Type-specific boosts and penalties
    follow; -15 when any sensor lacks data; -10 when the expectation is not
    PROVEN. HIGH needs a PROVEN expectation and data from every sensor,
    otherwise the score is capped at 79. OBSERVED expectations that were
    not repeated are capped at 49/LOW.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from verax.core.models import (
    STATUS_RANK,
    CaptureFailure,
    ConfidenceLevel,
    ConfidenceMeta,
    ConfidenceResult,
    ConsoleSummary,
    DecisionUsefulness,
    EvidencePackage,
    EvidenceSummary,
    Expectation,
    ExpectationProof,
    ExpectationStrength,
    GuardrailsReport,
    NetworkSummary,
    TruthStatus,
    UiSignals,
    UiSnapshot,
)
from verax.detect.reason_codes import (
    console_has_data,
    generate_reason_codes,
    network_has_data,
    ui_has_data,
)

BASE_SCORES = {
    "network_silent_failure": 70,
    "validation_silent_failure": 60,
    "missing_feedback_failure": 55,
    "no_effect_silent_failure": 50,
    "missing_network_action": 65,
    "missing_state_action": 60,
    "navigation_silent_failure": 75,
    "partial_navigation_failure": 65,
    "flow_silent_failure": 70,
}
DEFAULT_BASE_SCORE = 50

STRENGTH_BASE_SCORES = {
    ExpectationStrength.PROVEN: 70,
    ExpectationStrength.OBSERVED: 55,
    ExpectationStrength.WEAK: 50,
}

MISSING_SENSOR_PENALTY = 15
UNPROVEN_PENALTY = 10
MAX_EXPLANATIONS = 8

CONFIDENCE_RANGES: dict[TruthStatus, tuple[float, float]] = {
    TruthStatus.CONFIRMED: (0.70, 1.00),
    TruthStatus.SUSPECTED: (0.30, 0.69),
    TruthStatus.INFORMATIONAL: (0.01, 0.29),
    TruthStatus.IGNORED: (0.0, 0.0),
}
UNPROVEN_EXPECTATION_CAP = 0.39
VERIFIED_WITH_ERRORS_CAP = 0.49
VERIFIED = "VERIFIED"
VERIFIED_WITH_ERRORS = "VERIFIED_WITH_ERRORS"
CAPTURE_FAILURE_PENALTY = 0.1

EVIDENCE_LAW_INVARIANT = "EVIDENCE_LAW_CONFIRMED_REQUIRES_COMPLETENESS"


@dataclass(frozen=True)
class Comparisons:
    """Before/after comparisons feeding the score."""

    url_changed: bool = False
    dom_changed: bool = False
    visible_changed: bool = False


@dataclass(frozen=True)
class Sensors:
    """Sensor data for one finding. A None section means no data at all."""

    network: NetworkSummary | None = None
    console: ConsoleSummary | None = None
    ui_signals: UiSignals | None = None
    ui_before: UiSnapshot | None = None
    ui_after: UiSnapshot | None = None


def sensors_from_evidence(package: EvidencePackage, summary: EvidenceSummary | None) -> Sensors:
    """Collect the sensor sections of a package plus the raw UI snapshots."""
    return Sensors(
        network=package.signals.network,
        console=package.signals.console,
        ui_signals=package.signals.ui_signals,
        ui_before=summary.ui_before if summary else None,
        ui_after=summary.ui_after if summary else None,
    )


def comparisons_from_evidence(summary: EvidenceSummary | None, url_changed: bool) -> Comparisons:
    if summary is None:
        return Comparisons(url_changed=url_changed)
    return Comparisons(
        url_changed=url_changed,
        dom_changed=summary.dom_diff.changed,
        visible_changed=summary.visible_change,
    )


@dataclass(frozen=True)
class SensorPresence:
    network: bool
    console: bool
    ui: bool

    @property
    def all_present(self) -> bool:
        return self.network and self.console and self.ui

    def missing(self) -> list[str]:
        present = {"network": self.network, "console": self.console, "ui": self.ui}
        return [name for name, ok in present.items() if not ok]


@dataclass(frozen=True)
class EvidenceSignals:
    url_changed: bool
    dom_changed: bool
    screenshot_changed: bool
    network_failed: bool
    console_errors: bool
    ui_feedback_detected: bool
    slow_requests: bool
    no_requests: bool


@dataclass
class RawConfidence:
    """Result of the raw (0-100) scoring stage.

    Attributes:
        score: Integer score in [0, 100].
        level: HIGH, MEDIUM or LOW.
        explain: Up to eight explanations, penalties first.
        expectation_strength: Strength the score was based on.
        sensors_present: Which sensors carried non-trivial data.
    """

    score: int
    level: ConfidenceLevel
    explain: list[str] = field(default_factory=list)
    expectation_strength: ExpectationStrength = ExpectationStrength.UNKNOWN
    sensors_present: SensorPresence | None = None


def determine_expectation_strength(expectation: Expectation | None) -> ExpectationStrength:
    """Classify how strongly an expectation is backed.

    OBSERVED when explicitly marked, PROVEN when it carries the PROVEN marker
    or a source file reference, WEAK for anything else, UNKNOWN without an
    expectation.
    """
    if expectation is None:
        return ExpectationStrength.UNKNOWN
    if expectation.strength is ExpectationStrength.OBSERVED:
        return ExpectationStrength.OBSERVED
    if expectation.proof is ExpectationProof.PROVEN:
        return ExpectationStrength.PROVEN
    if expectation.source is not None and expectation.source.file:
        return ExpectationStrength.PROVEN
    return ExpectationStrength.WEAK


def _has_any_feedback(before: UiSnapshot | None, after: UiSnapshot | None) -> bool:
    for snap in (before, after):
        if snap is None:
            continue
        if (
            snap.has_error_signal
            or snap.has_loading_indicator
            or snap.has_status_signal
            or snap.has_live_region
            or snap.has_dialog
            or snap.disabled_elements > 0
        ):
            return True
    return False


def _evidence_signals(sensors: Sensors, comparisons: Comparisons) -> EvidenceSignals:
    network = sensors.network or NetworkSummary()
    console = sensors.console or ConsoleSummary()
    return EvidenceSignals(
        url_changed=comparisons.url_changed,
        dom_changed=comparisons.dom_changed,
        screenshot_changed=comparisons.visible_changed,
        network_failed=network.failed_requests > 0,
        console_errors=console.has_errors,
        ui_feedback_detected=_has_any_feedback(sensors.ui_before, sensors.ui_after),
        slow_requests=network.slow_requests > 0,
        no_requests=network.total_requests == 0,
    )


# Type-specific scorers: (signals, strength, boosts, penalties) -> (boost, penalty)
_Scorer = Callable[[EvidenceSignals, ExpectationStrength, list[str], list[str]], tuple[int, int]]


def _network_silent_failure(
    ev: EvidenceSignals, strength: ExpectationStrength, boosts: list[str], penalties: list[str]
) -> tuple[int, int]:
    boost = penalty = 0
    if ev.network_failed:
        boost += 10
        boosts.append("Network request failed")
    if ev.console_errors:
        boost += 8
        boosts.append("Console errors present")
    if ev.network_failed and not ev.ui_feedback_detected:
        boost += 6
        boosts.append("Silent failure: no user feedback on network error")
    if ev.ui_feedback_detected:
        penalty += 10
        penalties.append("UI feedback detected (suggests not silent)")
    return boost, penalty


def _validation_silent_failure(
    ev: EvidenceSignals, strength: ExpectationStrength, boosts: list[str], penalties: list[str]
) -> tuple[int, int]:
    boost = penalty = 0
    if ev.console_errors:
        boost += 10
        boosts.append("Validation errors in console")
    if ev.console_errors and not ev.ui_feedback_detected:
        boost += 8
        boosts.append("Silent validation: errors logged but no visible feedback")
    if ev.ui_feedback_detected:
        penalty += 10
        penalties.append("Error feedback visible (not silent)")
    return boost, penalty


def _missing_feedback_failure(
    ev: EvidenceSignals, strength: ExpectationStrength, boosts: list[str], penalties: list[str]
) -> tuple[int, int]:
    boost = penalty = 0
    if ev.slow_requests:
        boost += 10
        boosts.append("Slow requests detected")
    if ev.network_failed and not ev.ui_feedback_detected:
        boost += 8
        boosts.append("Network activity without user feedback")
    if ev.ui_feedback_detected:
        penalty += 10
        penalties.append("Loading indicator detected")
    return boost, penalty


def _no_effect_silent_failure(
    ev: EvidenceSignals, strength: ExpectationStrength, boosts: list[str], penalties: list[str]
) -> tuple[int, int]:
    boost = penalty = 0
    if not ev.url_changed:
        boost += 10
        boosts.append("Expected URL change did not occur")
    if not ev.dom_changed:
        boost += 6
        boosts.append("DOM state unchanged")
    if not ev.screenshot_changed:
        boost += 5
        boosts.append("No visible changes")
    if ev.network_failed:
        penalty += 10
        penalties.append("Network activity detected (potential effect)")
    if ev.ui_feedback_detected:
        penalty += 8
        penalties.append("UI feedback changed (potential effect)")
    return boost, penalty


def _missing_network_action(
    ev: EvidenceSignals, strength: ExpectationStrength, boosts: list[str], penalties: list[str]
) -> tuple[int, int]:
    boost = penalty = 0
    if strength is ExpectationStrength.PROVEN:
        boost += 10
        boosts.append("Code promise verified via AST analysis")
    if not ev.network_failed and ev.no_requests:
        boost += 8
        boosts.append("Zero network activity despite code promise")
    if ev.console_errors:
        boost += 6
        boosts.append("Console errors may have prevented action")
    if ev.network_failed:
        penalty += 15
        penalties.append("Other network requests occurred")
    return boost, penalty


def _missing_state_action(
    ev: EvidenceSignals, strength: ExpectationStrength, boosts: list[str], penalties: list[str]
) -> tuple[int, int]:
    boost = penalty = 0
    if strength is ExpectationStrength.PROVEN:
        boost += 10
        boosts.append("State mutation proven via cross-file analysis")
    if not ev.dom_changed:
        boost += 8
        boosts.append("DOM unchanged (no state mutation visible)")
    if ev.network_failed:
        penalty += 10
        penalties.append("Network activity (deferred state update possible)")
    if ev.ui_feedback_detected:
        penalty += 8
        penalties.append("UI feedback suggests state managed differently")
    return boost, penalty


def _navigation_silent_failure(
    ev: EvidenceSignals, strength: ExpectationStrength, boosts: list[str], penalties: list[str]
) -> tuple[int, int]:
    boost = penalty = 0
    if not ev.url_changed:
        boost += 10
        boosts.append("Expected URL change did not occur")
    if not ev.ui_feedback_detected:
        boost += 8
        boosts.append("No user-visible feedback on navigation failure")
    if ev.console_errors:
        boost += 6
        boosts.append("Navigation errors in console")
    if ev.ui_feedback_detected:
        penalty += 10
        penalties.append("UI feedback detected (suggests navigation feedback provided)")
    if ev.url_changed:
        penalty += 5
        penalties.append("URL changed (navigation may have succeeded)")
    return boost, penalty


def _partial_navigation_failure(
    ev: EvidenceSignals, strength: ExpectationStrength, boosts: list[str], penalties: list[str]
) -> tuple[int, int]:
    boost = penalty = 0
    if ev.url_changed and not ev.ui_feedback_detected:
        boost += 10
        boosts.append("Navigation started but target not reached")
    if not ev.ui_feedback_detected:
        boost += 8
        boosts.append("No user-visible feedback on partial navigation")
    if ev.ui_feedback_detected:
        penalty += 10
        penalties.append("UI feedback detected (suggests navigation feedback provided)")
    return boost, penalty


_TYPE_SCORERS: dict[str, _Scorer] = {
    "network_silent_failure": _network_silent_failure,
    "validation_silent_failure": _validation_silent_failure,
    "missing_feedback_failure": _missing_feedback_failure,
    "no_effect_silent_failure": _no_effect_silent_failure,
    "missing_network_action": _missing_network_action,
    "missing_state_action": _missing_state_action,
    "navigation_silent_failure": _navigation_silent_failure,
    "partial_navigation_failure": _partial_navigation_failure,
}


def _explanations(
    boosts: list[str], penalties: list[str], strength: ExpectationStrength
) -> list[str]:
    explain = [*penalties, *boosts]
    if strength is not ExpectationStrength.PROVEN:
        explain.append(f"Expectation: {strength}")
    return list(dict.fromkeys(explain))[:MAX_EXPLANATIONS]


def score_raw(
    finding_type: str,
    expectation: Expectation | None,
    sensors: Sensors,
    comparisons: Comparisons,
) -> RawConfidence:
    """Compute the raw 0-100 confidence for a candidate finding.

    Args:
        finding_type: Failure-class taxonomy entry.
        expectation: The originating expectation.
        sensors: Network, console and UI sensor data.
        comparisons: Before/after URL, DOM and screenshot comparisons.

    Returns:
        A RawConfidence with score, level and explanations.
    """
    strength = determine_expectation_strength(expectation)
    base = STRENGTH_BASE_SCORES.get(strength, BASE_SCORES.get(finding_type, DEFAULT_BASE_SCORE))

    presence = SensorPresence(
        network=network_has_data(sensors.network),
        console=console_has_data(sensors.console),
        ui=ui_has_data(sensors.ui_signals),
    )
    ev = _evidence_signals(sensors, comparisons)

    boosts: list[str] = []
    penalties: list[str] = []
    boost_total = penalty_total = 0
    scorer = _TYPE_SCORERS.get(finding_type)
    if scorer is not None:
        boost_total, penalty_total = scorer(ev, strength, boosts, penalties)

    if not presence.all_present:
        penalty_total += MISSING_SENSOR_PENALTY
        penalties.append(f"Missing sensor data: {', '.join(presence.missing())}")
    if strength is not ExpectationStrength.PROVEN:
        penalty_total += UNPROVEN_PENALTY
        penalties.append(f"Expectation strength is {strength}, not PROVEN")

    score = max(0, min(100, base + boost_total - penalty_total))
    if score >= 80:
        if strength is ExpectationStrength.PROVEN and presence.all_present:
            level = ConfidenceLevel.HIGH
        else:
            level = ConfidenceLevel.MEDIUM
            score = min(score, 79)
    elif score >= 55:
        level = ConfidenceLevel.MEDIUM
    else:
        level = ConfidenceLevel.LOW

    if strength is ExpectationStrength.OBSERVED:
        repeated = expectation is not None and expectation.repeated
        if not repeated:
            level = ConfidenceLevel.LOW
            score = min(score, 49)
        elif level is ConfidenceLevel.HIGH:
            level = ConfidenceLevel.MEDIUM
            score = min(score, 79)

    return RawConfidence(
        score=score,
        level=level,
        explain=_explanations(boosts, penalties, strength),
        expectation_strength=strength,
        sensors_present=presence,
    )


def level_for_score(score: float) -> ConfidenceLevel:
    if score >= 0.80:
        return ConfidenceLevel.HIGH
    if score >= 0.50:
        return ConfidenceLevel.MEDIUM
    if score >= 0.20:
        return ConfidenceLevel.LOW
    return ConfidenceLevel.UNKNOWN


def has_substantive_evidence(
    comparisons: Comparisons, evidence_package: EvidencePackage | None
) -> bool:
    """True if a URL change, a DOM change or a before/after screenshot pair exists."""
    if comparisons.url_changed or comparisons.dom_changed:
        return True
    if evidence_package is None:
        return False
    return bool(evidence_package.before.screenshot and evidence_package.after.screenshot)


def has_observed_signals(sensors: Sensors, comparisons: Comparisons) -> bool:
    """True if the URL, DOM, network or UI sensors saw anything happen."""
    if comparisons.url_changed or comparisons.dom_changed:
        return True
    network = sensors.network
    if network is not None and (network.has_network_activity or network.total_requests > 0):
        return True
    if sensors.ui_signals is not None and any(sensors.ui_signals.model_dump().values()):
        return True
    return _has_any_feedback(sensors.ui_before, sensors.ui_after)


def enforce_status_range(
    score: float,
    status: TruthStatus,
    expectation_proof: ExpectationProof | None = None,
    verification_status: str | None = None,
) -> tuple[float, list[str]]:
    """Clamp ``score`` into the range its status allows, then apply caps.

    Returns:
        The corrected score and the invariant violation codes that fired.
    """
    violations: list[str] = []
    low, high = CONFIDENCE_RANGES[status]
    if status is TruthStatus.IGNORED:
        if score != 0:
            violations.append("INV_IGNORED_NON_ZERO")
            score = 0.0
    elif score < low:
        violations.append(f"INV_{status}_BELOW_MIN")
        score = low
    elif score > high:
        # CONFIRMED tops out at 1.0, which the clamp already guarantees.
        violations.append(f"INV_{status}_ABOVE_MAX")
        score = high

    if expectation_proof is ExpectationProof.UNPROVEN and score > UNPROVEN_EXPECTATION_CAP:
        violations.append("INV_UNPROVEN_EXPECTATION_ABOVE_MAX")
        score = UNPROVEN_EXPECTATION_CAP
    if verification_status == VERIFIED_WITH_ERRORS and score > VERIFIED_WITH_ERRORS_CAP:
        violations.append("INV_VERIFIED_WITH_ERRORS_ABOVE_MAX")
        score = VERIFIED_WITH_ERRORS_CAP
    return score, violations


def compute_confidence(
    finding_type: str,
    expectation: Expectation | None,
    sensors: Sensors,
    comparisons: Comparisons,
    *,
    truth_status: TruthStatus,
    evidence_package: EvidencePackage | None = None,
    capture_failures: Sequence[CaptureFailure] = (),
    guardrails: GuardrailsReport | None = None,
    verification_status: str | None = None,
) -> ConfidenceResult:
    """Compute the final confidence for a finding.

    Evidence Law is enforced here unconditionally: a CONFIRMED claim without
    a complete evidence package, or without any substantive evidence, comes
    back as SUSPECTED no matter what the caller passed in.

    Args:
        finding_type: Failure-class taxonomy entry.
        expectation: The originating expectation.
        sensors: Sensor data.
        comparisons: Before/after comparisons.
        truth_status: Status the caller claims for the finding.
        evidence_package: The finding's evidence package.
        capture_failures: Best-effort capture steps that failed.
        guardrails: Guardrails report; its final decision and confidence
            delta are applied.
        verification_status: Run verification status; VERIFIED_WITH_ERRORS
            caps the score.

    Returns:
        The confidence result, including the effective truth status.
    """
    raw = score_raw(finding_type, expectation, sensors, comparisons)
    applied_invariants: list[str] = []

    status = truth_status
    if guardrails is not None and STATUS_RANK[guardrails.final_decision] < STATUS_RANK[status]:
        status = guardrails.final_decision

    substantive = has_substantive_evidence(comparisons, evidence_package)
    evidence_complete = evidence_package.is_complete if evidence_package is not None else None
    evidence_law_applied = False
    if status is TruthStatus.CONFIRMED and (not evidence_complete or not substantive):
        status = TruthStatus.SUSPECTED
        evidence_law_applied = True
        applied_invariants.append(EVIDENCE_LAW_INVARIANT)

    score = raw.score / 100
    if capture_failures:
        score -= CAPTURE_FAILURE_PENALTY
    if guardrails is not None:
        score += guardrails.confidence_delta
    score = max(0.0, min(1.0, score))

    proof = expectation.proof if expectation is not None else None
    score, violations = enforce_status_range(score, status, proof, verification_status)
    applied_invariants.extend(violations)
    score = round(score, 2)

    reason_codes = generate_reason_codes(
        expectation_proof=proof,
        network=sensors.network,
        console=sensors.console,
        ui_signals=sensors.ui_signals,
        evidence_complete=evidence_complete,
        evidence_signals_present=_package_has_signals(evidence_package),
        capture_failure_count=len(capture_failures),
        guardrails=guardrails,
        applied_invariants=applied_invariants,
    )

    if status is TruthStatus.CONFIRMED and substantive:
        usefulness = DecisionUsefulness.FIX
    elif status is TruthStatus.SUSPECTED and has_observed_signals(sensors, comparisons):
        usefulness = DecisionUsefulness.FIX
    else:
        usefulness = DecisionUsefulness.IGNORE

    return ConfidenceResult(
        score=score,
        level=level_for_score(score),
        reason_codes=reason_codes,
        truth_status=status,
        explain=raw.explain,
        applied_invariants=applied_invariants,
        meta=ConfidenceMeta(
            decision_usefulness=usefulness,
            raw_score=raw.score,
            evidence_law_applied=evidence_law_applied,
        ),
    )


def _package_has_signals(package: EvidencePackage | None) -> bool:
    if package is None:
        return False
    return any(section is not None for section in package.signals.model_dump().values())
