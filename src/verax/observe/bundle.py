"""Evidence bundle: the capture context of one interaction attempt.

The bundle is an explicit state machine::

    OPENED -> CAPTURED_BEFORE -> ACTED -> CAPTURED_AFTER -> FINALIZED

Any non-finalized state may jump straight to FINALIZED (an attempt that was
skipped or failed early still produces a sealed summary). Every other
transition raises IllegalTransitionError. A bundle belongs to exactly one
attempt and is never reused.

Capture steps are best effort: a failed screenshot or a failed evidence file
write is recorded as a CaptureFailure on the summary and logged, never
raised.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from playwright.async_api import Error as PlaywrightError

from verax.core.errors import IllegalTransitionError
from verax.core.models import AttemptSignals, CaptureFailure, EvidenceSummary, Timing
from verax.observe.dom_diff import DomDiff, compute_dom_diff, feedback_appeared, ui_snapshot
from verax.observe.network import (
    ConsoleEvent,
    NetworkEvent,
    PageRecorder,
    correlate_network_events,
    now_ms,
    summarize_console,
    summarize_network,
)

logger = logging.getLogger(__name__)


class BundleState(StrEnum):
    OPENED = "OPENED"
    CAPTURED_BEFORE = "CAPTURED_BEFORE"
    ACTED = "ACTED"
    CAPTURED_AFTER = "CAPTURED_AFTER"
    FINALIZED = "FINALIZED"


_TRANSITIONS: dict[BundleState, frozenset[BundleState]] = {
    BundleState.OPENED: frozenset({BundleState.CAPTURED_BEFORE, BundleState.FINALIZED}),
    BundleState.CAPTURED_BEFORE: frozenset({BundleState.ACTED, BundleState.FINALIZED}),
    BundleState.ACTED: frozenset({BundleState.CAPTURED_AFTER, BundleState.FINALIZED}),
    BundleState.CAPTURED_AFTER: frozenset({BundleState.FINALIZED}),
    BundleState.FINALIZED: frozenset(),
}


def strip_fragment(url: str) -> str:
    return url.split("#", 1)[0]


def _sha256(path: Path) -> str | None:
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return None


class EvidenceBundle:
    """Mutable capture context for one attempt.

    Args:
        exp_num: 1-based attempt number, used in evidence file names.
        evidence_dir: Directory evidence files are written to.
        recorder: The page's event recorder. The bundle only reads events
            appended after it was opened.
    """

    def __init__(self, exp_num: int, evidence_dir: Path, recorder: PageRecorder) -> None:
        self.exp_num = exp_num
        self.evidence_dir = evidence_dir
        self.recorder = recorder
        self.state = BundleState.OPENED

        self.started_at = datetime.now(UTC)
        self.action_started_at: datetime | None = None
        self.action_started_ms: float | None = None
        self.ended_at: datetime | None = None

        self.before_url: str | None = None
        self.after_url: str | None = None
        self.before_html: str | None = None
        self.after_html: str | None = None
        self.before_screenshot: str | None = None
        self.after_screenshot: str | None = None

        self.capture_failures: list[CaptureFailure] = []
        self.files: list[str] = []
        self.signals = AttemptSignals()
        self.dom_diff: DomDiff | None = None

        self._network_start = len(recorder.network_events)
        self._console_start = len(recorder.console_events)

    def _transition(self, target: BundleState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise IllegalTransitionError("EvidenceBundle", self.state, target)
        self.state = target

    @property
    def finalized(self) -> bool:
        return self.state is BundleState.FINALIZED

    def record_failure(self, stage: str, reason_code: str, error: Exception) -> None:
        """Log a best-effort step that failed and keep it as a structured capture failure."""
        logger.warning("exp %d: %s failed: %s", self.exp_num, stage, error)
        self.capture_failures.append(
            CaptureFailure(stage=stage, reason_code=reason_code, message=str(error))
        )

    async def _capture(self, page: Any, phase: str) -> tuple[str | None, str | None, str | None]:
        url: str | None = page.url
        html: str | None = None
        screenshot: str | None = None
        name = f"exp_{self.exp_num}_{phase}.png"
        try:
            self.evidence_dir.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(self.evidence_dir / name), full_page=True)
            screenshot = name
            self.files.append(name)
        except (PlaywrightError, OSError) as e:
            self.record_failure(f"{phase}.screenshot", "SCREENSHOT_FAILED", e)
        try:
            html = await page.content()
        except PlaywrightError as e:
            self.record_failure(f"{phase}.dom", "DOM_CAPTURE_FAILED", e)
        return url, html, screenshot

    async def capture_before(self, page: Any) -> None:
        """Record URL, DOM and screenshot immediately before the action."""
        self._transition(BundleState.CAPTURED_BEFORE)
        self.before_url, self.before_html, self.before_screenshot = await self._capture(
            page, "before"
        )

    def mark_acted(self) -> None:
        """Stamp the action start; the correlation window opens here."""
        self._transition(BundleState.ACTED)
        self.action_started_at = datetime.now(UTC)
        self.action_started_ms = now_ms()

    async def capture_after(self, page: Any) -> None:
        """Record URL, DOM and screenshot after the settle delay."""
        self._transition(BundleState.CAPTURED_AFTER)
        self.after_url, self.after_html, self.after_screenshot = await self._capture(
            page, "after"
        )

    def attempt_events(self) -> list[NetworkEvent]:
        return self.recorder.network_events[self._network_start :]

    def attempt_console(self) -> list[ConsoleEvent]:
        return self.recorder.console_events[self._console_start :]

    def finalize(self, correlation_window_ms: float, slow_request_ms: float) -> EvidenceSummary:
        """Derive signals, persist evidence files once and seal the bundle.

        Args:
            correlation_window_ms: Width of the closed correlation window.
            slow_request_ms: Threshold for counting a request as slow.

        Returns:
            The evidence summary for the attempt's Observation.

        Raises:
            IllegalTransitionError: If the bundle was already finalized.
        """
        self._transition(BundleState.FINALIZED)
        self.ended_at = datetime.now(UTC)

        before_html = self.before_html or ""
        after_html = self.after_html if self.after_html is not None else before_html
        self.dom_diff = compute_dom_diff(before_html, after_html)

        events = self.attempt_events()
        console = self.attempt_console()
        if self.action_started_ms is not None:
            after_action = [e for e in events if e.started_at_ms >= self.action_started_ms]
            correlated = correlate_network_events(
                events, self.action_started_ms, correlation_window_ms
            )
            console_after = [c for c in console if c.timestamp_ms >= self.action_started_ms]
        else:
            after_action, correlated, console_after = [], [], []

        navigation_changed = bool(
            self.before_url
            and self.after_url
            and strip_fragment(self.before_url) != strip_fragment(self.after_url)
        )
        self.signals = AttemptSignals(
            navigation_changed=navigation_changed,
            dom_changed=self.dom_diff.changed,
            feedback_seen=feedback_appeared(before_html, after_html),
            network_activity=bool(after_action),
            console_errors=any(c.type == "error" for c in console_after),
            meaningful_dom_change=self.dom_diff.is_meaningful,
            correlated_network_activity=bool(correlated),
        )

        network_summary = summarize_network(events, correlated, slow_request_ms)
        console_summary = summarize_console(console)
        self._persist("dom_diff", self.dom_diff.to_dict())
        self._persist(
            "network",
            {
                "events": [e.to_dict() for e in events],
                "correlated": [e.to_dict() for e in correlated],
                "actionStartedAtMs": self.action_started_ms,
                "correlationWindowMs": correlation_window_ms,
            },
        )
        self._persist("console_errors", [c.to_dict() for c in console if c.type == "error"])

        return EvidenceSummary(
            before_url=self.before_url,
            after_url=self.after_url,
            before_screenshot=self.before_screenshot,
            after_screenshot=self.after_screenshot,
            visible_change=self._visible_change(),
            dom_diff=self.dom_diff.summary(),
            network=network_summary,
            console=console_summary,
            ui_before=ui_snapshot(self.before_html) if self.before_html is not None else None,
            ui_after=ui_snapshot(self.after_html) if self.after_html is not None else None,
            files=list(self.files),
            timing=Timing(
                started_at=self.started_at,
                action_started_at=self.action_started_at,
                ended_at=self.ended_at,
            ),
            capture_failures=list(self.capture_failures),
        )

    def _persist(self, kind: str, payload: Any) -> None:
        name = f"exp_{self.exp_num}_{kind}.json"
        try:
            self.evidence_dir.mkdir(parents=True, exist_ok=True)
            (self.evidence_dir / name).write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as e:
            self.record_failure(f"persist.{kind}", "EVIDENCE_WRITE_FAILED", e)
            return
        self.files.append(name)

    def _visible_change(self) -> bool:
        if not (self.before_screenshot and self.after_screenshot):
            return False
        before = _sha256(self.evidence_dir / self.before_screenshot)
        after = _sha256(self.evidence_dir / self.after_screenshot)
        return before is not None and after is not None and before != after
