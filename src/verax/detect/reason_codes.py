"""Reason codes attached to a confidence result.

Codes are deduplicated and always returned in ascending priority order, so
the same inputs yield the same list.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import StrEnum

from verax.core.models import (
    ConsoleSummary,
    ExpectationProof,
    GuardrailsReport,
    NetworkSummary,
    UiSignals,
)


class ReasonCode(StrEnum):
    # Critical
    CONTRADICTION_DETECTED = "CONTRADICTION_DETECTED"
    UNPROVEN_EXPECTATION = "UNPROVEN_EXPECTATION"
    # Truth lock
    TRUTH_LOCK_APPLIED = "TRUTH_LOCK_APPLIED"
    EVIDENCE_COMPLETENESS_REQUIRED = "EVIDENCE_COMPLETENESS_REQUIRED"
    # Evidence
    INCOMPLETE_EVIDENCE = "INCOMPLETE_EVIDENCE"
    EVIDENCE_INTENT_FAILURES = "EVIDENCE_INTENT_FAILURES"
    EVIDENCE_SIGNALS_PRESENT = "EVIDENCE_SIGNALS_PRESENT"
    # Guardrails
    GUARDRAILS_DOWNGRADE = "GUARDRAILS_DOWNGRADE"
    GUARDRAILS_ADJUSTMENT = "GUARDRAILS_ADJUSTMENT"
    GUARDRAILS_CONFIDENCE_DELTA = "GUARDRAILS_CONFIDENCE_DELTA"
    # Sensors
    NETWORK_DATA_PRESENT = "NETWORK_DATA_PRESENT"
    NETWORK_DATA_ABSENT = "NETWORK_DATA_ABSENT"
    CONSOLE_DATA_PRESENT = "CONSOLE_DATA_PRESENT"
    CONSOLE_DATA_ABSENT = "CONSOLE_DATA_ABSENT"
    UI_SIGNALS_PRESENT = "UI_SIGNALS_PRESENT"
    UI_SIGNALS_ABSENT = "UI_SIGNALS_ABSENT"
    # Expectation
    EXPECTATION_PROVEN = "EXPECTATION_PROVEN"
    EXPECTATION_OBSERVED = "EXPECTATION_OBSERVED"
    EXPECTATION_WEAK = "EXPECTATION_WEAK"


PRIORITY: dict[ReasonCode, int] = {
    ReasonCode.CONTRADICTION_DETECTED: 1,
    ReasonCode.UNPROVEN_EXPECTATION: 2,
    ReasonCode.TRUTH_LOCK_APPLIED: 10,
    ReasonCode.EVIDENCE_COMPLETENESS_REQUIRED: 12,
    ReasonCode.INCOMPLETE_EVIDENCE: 20,
    ReasonCode.EVIDENCE_INTENT_FAILURES: 21,
    ReasonCode.EVIDENCE_SIGNALS_PRESENT: 22,
    ReasonCode.GUARDRAILS_DOWNGRADE: 30,
    ReasonCode.GUARDRAILS_ADJUSTMENT: 31,
    ReasonCode.GUARDRAILS_CONFIDENCE_DELTA: 32,
    ReasonCode.NETWORK_DATA_PRESENT: 40,
    ReasonCode.NETWORK_DATA_ABSENT: 41,
    ReasonCode.CONSOLE_DATA_PRESENT: 42,
    ReasonCode.CONSOLE_DATA_ABSENT: 43,
    ReasonCode.UI_SIGNALS_PRESENT: 44,
    ReasonCode.UI_SIGNALS_ABSENT: 45,
    ReasonCode.EXPECTATION_PROVEN: 50,
    ReasonCode.EXPECTATION_OBSERVED: 51,
    ReasonCode.EXPECTATION_WEAK: 52,
}


def network_has_data(network: NetworkSummary | None) -> bool:
    if network is None:
        return False
    return network.total_requests + network.failed_requests + network.slow_requests > 0


def console_has_data(console: ConsoleSummary | None) -> bool:
    if console is None:
        return False
    return console.errors + console.warnings > 0


def ui_has_data(ui_signals: UiSignals | None) -> bool:
    if ui_signals is None:
        return False
    return any(ui_signals.model_dump().values())


def generate_reason_codes(
    *,
    expectation_proof: ExpectationProof | None = None,
    network: NetworkSummary | None = None,
    console: ConsoleSummary | None = None,
    ui_signals: UiSignals | None = None,
    evidence_complete: bool | None = None,
    evidence_signals_present: bool = False,
    capture_failure_count: int = 0,
    guardrails: GuardrailsReport | None = None,
    applied_invariants: Sequence[str] = (),
) -> list[str]:
    """Build the ordered reason-code list for one confidence result.

    Args:
        expectation_proof: Proof marker of the originating expectation.
        network: Network sensor section, None when the sensor produced nothing.
        console: Console sensor section, None when the sensor produced nothing.
        ui_signals: UI sensor section, None when the sensor produced nothing.
        evidence_complete: Completeness of the evidence package, if one exists.
        evidence_signals_present: True if the package carries any signal section.
        capture_failure_count: Number of best-effort capture steps that failed.
        guardrails: Guardrails report, if guardrails ran.
        applied_invariants: Invariant codes applied while finalizing the score.

    Returns:
        Reason codes as strings, unique, ascending by priority.
    """
    codes: set[ReasonCode] = set()

    if expectation_proof is ExpectationProof.UNPROVEN:
        codes.add(ReasonCode.UNPROVEN_EXPECTATION)
        if guardrails is not None and guardrails.downgraded:
            codes.add(ReasonCode.CONTRADICTION_DETECTED)

    if applied_invariants:
        codes.add(ReasonCode.TRUTH_LOCK_APPLIED)
        if any("CONFIRMED" in c or "COMPLETENESS" in c for c in applied_invariants):
            codes.add(ReasonCode.EVIDENCE_COMPLETENESS_REQUIRED)

    if evidence_complete is False:
        codes.add(ReasonCode.INCOMPLETE_EVIDENCE)
    if capture_failure_count > 0:
        codes.add(ReasonCode.EVIDENCE_INTENT_FAILURES)
    if evidence_signals_present:
        codes.add(ReasonCode.EVIDENCE_SIGNALS_PRESENT)

    if guardrails is not None:
        if guardrails.downgraded:
            codes.add(ReasonCode.GUARDRAILS_DOWNGRADE)
        if guardrails.confidence_delta:
            codes.add(ReasonCode.GUARDRAILS_CONFIDENCE_DELTA)
            codes.add(ReasonCode.GUARDRAILS_ADJUSTMENT)

    if network_has_data(network):
        codes.add(ReasonCode.NETWORK_DATA_PRESENT)
    elif network is not None:
        codes.add(ReasonCode.NETWORK_DATA_ABSENT)
    if console_has_data(console):
        codes.add(ReasonCode.CONSOLE_DATA_PRESENT)
    elif console is not None:
        codes.add(ReasonCode.CONSOLE_DATA_ABSENT)
    if ui_has_data(ui_signals):
        codes.add(ReasonCode.UI_SIGNALS_PRESENT)
    elif ui_signals is not None:
        codes.add(ReasonCode.UI_SIGNALS_ABSENT)

    match expectation_proof:
        case ExpectationProof.PROVEN:
            codes.add(ReasonCode.EXPECTATION_PROVEN)
        case ExpectationProof.OBSERVED:
            codes.add(ReasonCode.EXPECTATION_OBSERVED)
        case ExpectationProof.WEAK:
            codes.add(ReasonCode.EXPECTATION_WEAK)

    return [str(c) for c in sorted(codes, key=PRIORITY.__getitem__)]
