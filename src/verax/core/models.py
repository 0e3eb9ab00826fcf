"""Shared data models for the observation-to-verdict pipeline.

Expectations come in from static extraction, Observations come out of the
browser, and Findings carry the verdict together with the evidence package,
the confidence breakdown and the guardrails report. All models serialize to
camelCase JSON (the on-disk artifact format) while exposing snake_case
attributes to Python code.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class VeraxModel(BaseModel):
    """Base model: snake_case attributes, camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Dump to a JSON-compatible dict using camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ExpectationCategory(StrEnum):
    """What kind of element or behaviour an expectation targets."""

    BUTTON = "button"
    FORM = "form"
    VALIDATION = "validation"
    NAVIGATION = "navigation"
    STATE = "state"
    NETWORK = "network"


class ExpectedOutcome(StrEnum):
    """Outcome class an interaction promises.

    Attributes:
        NAVIGATION: The URL should change.
        FEEDBACK: Visible feedback (alert, status, toast, dialog) should appear.
        NETWORK: A request should be issued.
        UI_CHANGE: Any meaningful effect counts (default).
    """

    NAVIGATION = "navigation"
    FEEDBACK = "feedback"
    NETWORK = "network"
    UI_CHANGE = "ui-change"


class ExpectationProof(StrEnum):
    PROVEN = "PROVEN_EXPECTATION"
    OBSERVED = "OBSERVED_EXPECTATION"
    WEAK = "WEAK_EXPECTATION"
    UNPROVEN = "UNPROVEN_EXPECTATION"


class ExpectationStrength(StrEnum):
    PROVEN = "PROVEN"
    OBSERVED = "OBSERVED"
    WEAK = "WEAK"
    UNKNOWN = "UNKNOWN"


class CauseCode(StrEnum):
    """Why an attempt did not deliver its promised outcome."""

    NOT_FOUND = "not-found"
    BLOCKED = "blocked"
    PREVENTED_SUBMIT = "prevented-submit"
    TIMEOUT = "timeout"
    NO_CHANGE = "no-change"
    ERROR = "error"


class TruthStatus(StrEnum):
    CONFIRMED = "CONFIRMED"
    SUSPECTED = "SUSPECTED"
    INFORMATIONAL = "INFORMATIONAL"
    IGNORED = "IGNORED"


STATUS_RANK: dict[TruthStatus, int] = {
    TruthStatus.IGNORED: 0,
    TruthStatus.INFORMATIONAL: 1,
    TruthStatus.SUSPECTED: 2,
    TruthStatus.CONFIRMED: 3,
}
"""Ordering used to decide whether a status change is a downgrade."""


class ConfidenceLevel(StrEnum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    UNKNOWN = "UNKNOWN"


class DecisionUsefulness(StrEnum):
    FIX = "FIX"
    IGNORE = "IGNORE"


class ImpactSeverity(StrEnum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


# ---------------------------------------------------------------------------
# Expectations (input)
# ---------------------------------------------------------------------------


class SourceRef(VeraxModel):
    """Source location an expectation was extracted from."""

    file: str | None = None
    line: int | None = None
    column: int | None = None


class Promise(VeraxModel):
    """The claim itself, e.g. ``{"kind": "navigate", "value": "/pricing"}``."""

    kind: str
    value: str | None = None


class Expectation(VeraxModel):
    """A claim that an interaction should produce an outcome.

    Created by the external extractor and read-only to the core.

    Attributes:
        id: Stable expectation identifier.
        category: Target category (button, form, ...).
        promise: Promise kind and value (label text, href, endpoint, ...).
        selector: Selector hint from static analysis.
        selector_path: Selector discovered at runtime (navigation only).
        expected_outcome: Outcome class the interaction promises.
        source: Source location, when known.
        proof: Proof marker assigned by the extractor.
        strength: Explicit strength override (OBSERVED for runtime-only promises).
        repeated: Whether the behaviour was observed more than once.
    """

    id: str
    category: ExpectationCategory
    promise: Promise
    selector: str | None = None
    selector_path: str | None = None
    expected_outcome: ExpectedOutcome = ExpectedOutcome.UI_CHANGE
    source: SourceRef | None = None
    proof: ExpectationProof | None = None
    strength: ExpectationStrength | None = None
    repeated: bool = False


# ---------------------------------------------------------------------------
# Observation (per-attempt evidence)
# ---------------------------------------------------------------------------


class AttemptSignals(VeraxModel):
    """Boolean effect signals derived from one attempt's evidence."""

    navigation_changed: bool = False
    dom_changed: bool = False
    feedback_seen: bool = False
    network_activity: bool = False
    console_errors: bool = False
    meaningful_dom_change: bool = False
    correlated_network_activity: bool = False

    def any_observed(self) -> bool:
        return any(self.model_dump().values())


class NetworkSummary(VeraxModel):
    total_requests: int = 0
    failed_requests: int = 0
    successful_requests: int = 0
    slow_requests: int = 0
    blocked_requests: int = 0
    correlated_requests: int = 0
    top_failed_urls: list[str] = Field(default_factory=list)
    observed_request_urls: list[str] = Field(default_factory=list)
    has_network_activity: bool = False


class ConsoleSummary(VeraxModel):
    errors: int = 0
    warnings: int = 0
    has_errors: bool = False


class UiSnapshot(VeraxModel):
    """Feedback-related flags read from one DOM snapshot."""

    has_error_signal: bool = False
    has_loading_indicator: bool = False
    has_dialog: bool = False
    has_status_signal: bool = False
    has_live_region: bool = False
    has_validation_message: bool = False
    disabled_elements: int = 0


class DomDiffSummary(VeraxModel):
    changed: bool = False
    is_meaningful: bool = False
    scope_classification: str = "no-change"
    elements_added: list[str] = Field(default_factory=list)
    elements_removed: list[str] = Field(default_factory=list)
    attributes_changed: list[str] = Field(default_factory=list)
    content_changed: list[str] = Field(default_factory=list)


class CaptureFailure(VeraxModel):
    """A best-effort evidence step that did not complete.

    Attributes:
        stage: Which capture failed (e.g. "before.screenshot", "persist.network").
        reason_code: Machine-readable code (e.g. "SCREENSHOT_FAILED").
        message: Underlying error text.
    """

    stage: str
    reason_code: str
    message: str


class Timing(VeraxModel):
    started_at: datetime | None = None
    action_started_at: datetime | None = None
    ended_at: datetime | None = None


class EvidenceSummary(VeraxModel):
    """Summary of an attempt's evidence bundle, as persisted in observations."""

    before_url: str | None = None
    after_url: str | None = None
    before_screenshot: str | None = None
    after_screenshot: str | None = None
    visible_change: bool = False
    dom_diff: DomDiffSummary = Field(default_factory=DomDiffSummary)
    network: NetworkSummary | None = None
    console: ConsoleSummary | None = None
    ui_before: UiSnapshot | None = None
    ui_after: UiSnapshot | None = None
    files: list[str] = Field(default_factory=list)
    timing: Timing = Field(default_factory=Timing)
    capture_failures: list[CaptureFailure] = Field(default_factory=list)


class Observation(VeraxModel):
    """One sealed interaction attempt.

    Built exactly once, after the evidence bundle is finalized, and frozen.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    exp_num: int
    category: ExpectationCategory
    attempted: bool = False
    observed: bool = False
    action: str | None = None
    selector: str | None = None
    action_success: bool = False
    interaction_disabled: bool = False
    reason: str | None = None
    cause: CauseCode | None = None
    signals: AttemptSignals = Field(default_factory=AttemptSignals)
    evidence: EvidenceSummary | None = None


class BlockedWrite(VeraxModel):
    url: str
    method: str
    reason: str = "write-blocked-read-only-mode"
    timestamp: datetime


class ObservationStats(VeraxModel):
    total: int = 0
    attempted: int = 0
    observed: int = 0
    skipped_reasons: dict[str, int] = Field(default_factory=dict)
    blocked_writes: int = 0
    coverage_ratio: float = 0.0


class ObservationReport(VeraxModel):
    url: str
    observations: list[Observation] = Field(default_factory=list)
    stats: ObservationStats = Field(default_factory=ObservationStats)
    blocked_writes: list[BlockedWrite] = Field(default_factory=list)
    started_at: datetime | None = None
    ended_at: datetime | None = None


# ---------------------------------------------------------------------------
# Evidence package
# ---------------------------------------------------------------------------


class Trigger(VeraxModel):
    expectation_id: str
    source: SourceRef | None = None
    promise: Promise | None = None


class StateCapture(VeraxModel):
    url: str | None = None
    screenshot: str | None = None


class InteractionInfo(VeraxModel):
    type: str
    selector: str | None = None
    disabled: bool = False


class ActionSection(VeraxModel):
    interaction: InteractionInfo | None = None
    attempted: bool = False
    success: bool = False
    reason: str | None = None
    cause: CauseCode | None = None
    timing: Timing = Field(default_factory=Timing)


class UiSignals(VeraxModel):
    changed: bool = False
    has_loading_indicator: bool = False
    has_dialog: bool = False
    has_error_signal: bool = False
    has_validation_message: bool = False
    text_changed: bool = False
    dom_changed: bool = False
    visible_changed: bool = False
    aria_changed: bool = False


class UiFeedback(VeraxModel):
    overall_ui_feedback_score: float = 0.0
    validation_happened: bool = False


class NavigationSignals(VeraxModel):
    url_changed: bool = False
    shallow_routing: bool = False


class PackageSignals(VeraxModel):
    """Sensor data carried by an evidence package.

    A section is None when its sensor produced nothing at all, which is
    different from a section full of zeros.
    """

    network: NetworkSummary | None = None
    console: ConsoleSummary | None = None
    ui_signals: UiSignals | None = None
    ui_feedback: UiFeedback | None = None
    navigation: NavigationSignals | None = None


class Justification(VeraxModel):
    summary: str = ""
    expected_outcome: ExpectedOutcome | None = None
    observed_signals: list[str] = Field(default_factory=list)
    confidence_score: float | None = None
    confidence_level: ConfidenceLevel | None = None
    reason_codes: list[str] = Field(default_factory=list)


class EvidencePackage(VeraxModel):
    """Canonical, schema-complete evidence snapshot for one finding.

    ``is_complete`` is true exactly when ``missing_evidence`` is empty; the
    model refuses to be constructed otherwise.
    """

    trigger: Trigger
    before: StateCapture = Field(default_factory=StateCapture)
    action: ActionSection = Field(default_factory=ActionSection)
    after: StateCapture = Field(default_factory=StateCapture)
    signals: PackageSignals = Field(default_factory=PackageSignals)
    justification: Justification = Field(default_factory=Justification)
    missing_evidence: list[str] = Field(default_factory=list)
    is_complete: bool = False
    capture_failures: list[CaptureFailure] = Field(default_factory=list)

    @model_validator(mode="after")
    def _completeness_matches_missing(self) -> "EvidencePackage":
        if self.is_complete != (len(self.missing_evidence) == 0):
            raise ValueError(
                "is_complete must be true exactly when missing_evidence is empty "
                f"(is_complete={self.is_complete}, missing={self.missing_evidence})"
            )
        return self


class EvidenceCompleteness(VeraxModel):
    is_complete: bool
    missing_fields: list[str] = Field(default_factory=list)
    downgraded: bool = False
    downgrade_reason: str | None = None
    capture_failures: list[CaptureFailure] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Confidence and guardrails
# ---------------------------------------------------------------------------


class ConfidenceMeta(VeraxModel):
    """Derived metadata. Never feeds back into score or level."""

    decision_usefulness: DecisionUsefulness
    raw_score: int
    evidence_law_applied: bool = False


class ConfidenceResult(VeraxModel):
    score: float
    level: ConfidenceLevel
    reason_codes: list[str] = Field(default_factory=list)
    truth_status: TruthStatus
    explain: list[str] = Field(default_factory=list)
    applied_invariants: list[str] = Field(default_factory=list)
    meta: ConfidenceMeta


class AppliedRule(VeraxModel):
    code: str
    severity: str
    message: str
    rule_id: str
    category: str


class Contradiction(VeraxModel):
    code: str
    message: str


class ConfidenceAdjustment(VeraxModel):
    reason: str
    delta: float
    message: str


class PolicyReport(VeraxModel):
    version: int
    source: str
    applied_rule_ids: list[str] = Field(default_factory=list)


class GuardrailsReport(VeraxModel):
    applied_rules: list[AppliedRule] = Field(default_factory=list)
    contradictions: list[Contradiction] = Field(default_factory=list)
    recommended_status: TruthStatus
    confidence_adjustments: list[ConfidenceAdjustment] = Field(default_factory=list)
    confidence_delta: float = 0.0
    final_confidence: float = 0.0
    final_decision: TruthStatus
    downgraded: bool = False
    policy_report: PolicyReport


# ---------------------------------------------------------------------------
# Findings (output)
# ---------------------------------------------------------------------------


class Correlation(VeraxModel):
    signals: list[str] = Field(default_factory=list)


class Finding(VeraxModel):
    """A candidate defect, as persisted in findings.json.

    Attributes:
        id: Deterministic finding identifier.
        type: Failure-class taxonomy entry (e.g. "navigation_silent_failure").
        status: Truth status after guardrails and Evidence Law.
        severity: Impact severity of the failure class.
        expectation_id: Expectation this finding was derived from.
        exp_num: 1-based attempt number.
        cause: Cause code from outcome classification.
        reason: Free-form reason recorded by the executor.
        interaction: What was interacted with.
        correlation: Names of the effect signals that did fire.
        expectation: The originating expectation.
        confidence: Confidence breakdown.
        evidence_package: Canonical evidence package.
        evidence_completeness: Completeness and downgrade annotations.
        guardrails: Guardrails report.
    """

    id: str
    type: str
    status: TruthStatus
    severity: ImpactSeverity = ImpactSeverity.MEDIUM
    expectation_id: str
    exp_num: int
    cause: CauseCode | None = None
    reason: str | None = None
    interaction: InteractionInfo | None = None
    correlation: Correlation = Field(default_factory=Correlation)
    expectation: Expectation | None = None
    confidence: ConfidenceResult | None = None
    evidence_package: EvidencePackage | None = None
    evidence_completeness: EvidenceCompleteness | None = None
    guardrails: GuardrailsReport | None = None
