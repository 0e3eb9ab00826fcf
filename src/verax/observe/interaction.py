"""Execute one expectation against the page and seal the result.

Each attempt follows the same path: resolve the selector, capture the
before-state, act, let the page settle, capture the after-state, finalize
the evidence bundle and classify the outcome. Expected misses (not-found,
blocked, prevented-submit, timeout) come back as action results; any other
exception is caught here, and only here, and recorded as cause ``error``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from verax.core.config import RunConfig
from verax.core.models import CauseCode, Expectation, ExpectationCategory, Observation
from verax.detect.classify import classify_outcome
from verax.observe.bundle import BundleState, EvidenceBundle
from verax.observe.network import PageRecorder
from verax.observe.selectors import (
    SelectorResolution,
    find_submit_button,
    is_element_interactable,
    resolve_selector,
)

logger = logging.getLogger(__name__)

POLL_INTERVAL_MS = 100

VALIDATION_UI_SELECTOR = '[aria-invalid="true"], [role="alert"], .error, .validation-error'

# Sample values for required form fields, keyed by input type.
FILL_VALUES = {
    "email": "test@example.com",
    "number": "123",
    "date": "2025-01-14",
}
DEFAULT_FILL_VALUE = "test-data"


@dataclass
class ActionResult:
    """What the executor did and whether it completed.

    Args:
        success: True when the action ran and the page acknowledged it.
        action: Action kind (click, submit, validate, observe).
        reason: Machine-readable reason when the action did not complete.
        cause: Cause code when the action itself already explains the miss.
        disabled: True when the target existed but could not be interacted with.
    """

    success: bool
    action: str | None = None
    reason: str | None = None
    cause: CauseCode | None = None
    disabled: bool = False


class InteractionExecutor:
    """Runs attempts sequentially against a single page.

    Args:
        page: Playwright page, already loaded and attached to ``recorder``.
        recorder: Event recorder attached to ``page``.
        config: Run configuration.
        evidence_dir: Directory for per-attempt evidence files.
        started_at: ``time.monotonic()`` value the global budget counts from.
    """

    def __init__(
        self,
        page: Any,
        recorder: PageRecorder,
        config: RunConfig,
        evidence_dir: Path,
        started_at: float | None = None,
    ) -> None:
        self.page = page
        self.recorder = recorder
        self.config = config
        self.evidence_dir = evidence_dir
        self.started_at = time.monotonic() if started_at is None else started_at

    def budget_exceeded(self) -> bool:
        elapsed_ms = (time.monotonic() - self.started_at) * 1000
        return elapsed_ms > self.config.global_budget_ms

    async def execute(self, expectation: Expectation, exp_num: int) -> Observation:
        """Run one attempt and return its sealed Observation."""
        if self.budget_exceeded():
            logger.info("exp %d: global budget exhausted, skipping %s", exp_num, expectation.id)
            return Observation(
                id=expectation.id,
                exp_num=exp_num,
                category=expectation.category,
                attempted=False,
                reason="global-timeout-exceeded",
                cause=CauseCode.TIMEOUT,
            )

        bundle = EvidenceBundle(exp_num, self.evidence_dir, self.recorder)
        resolution: SelectorResolution | None = None
        attempted = False
        try:
            resolution = await resolve_selector(self.page, expectation)
            if not resolution.found and resolution.reason != "no-selector":
                result = ActionResult(
                    success=False,
                    reason=_not_found_reason(expectation, resolution),
                    cause=CauseCode.NOT_FOUND,
                )
            else:
                attempted = True
                await bundle.capture_before(self.page)
                bundle.mark_acted()
                result = await self._dispatch(expectation, resolution, bundle)
                if self.config.settle_delay_ms:
                    await self.page.wait_for_timeout(self.config.settle_delay_ms)
                await bundle.capture_after(self.page)
        except Exception as e:
            logger.exception("exp %d: interaction with %s failed", exp_num, expectation.id)
            attempted = True
            result = ActionResult(success=False, reason=f"error:{e}", cause=CauseCode.ERROR)
            try:
                await self._recover_after_state(bundle)
            except Exception as recapture_error:
                bundle.record_failure("after.recover", "RECOVERY_CAPTURE_FAILED", recapture_error)

        summary = bundle.finalize(self.config.correlation_window_ms, self.config.slow_request_ms)
        signals = bundle.signals
        cause = classify_outcome(expectation.expected_outcome, signals, result.cause)
        reason = result.reason
        if reason is None and cause is CauseCode.NO_CHANGE:
            reason = "expected-outcome-not-observed"

        logger.debug(
            "exp %d: %s action=%s cause=%s signals=%s",
            exp_num,
            expectation.id,
            result.action,
            cause,
            signals.model_dump(),
        )
        return Observation(
            id=expectation.id,
            exp_num=exp_num,
            category=expectation.category,
            attempted=attempted,
            observed=signals.any_observed(),
            action=result.action,
            selector=resolution.selector if resolution else None,
            action_success=result.success,
            interaction_disabled=result.disabled,
            reason=reason,
            cause=cause,
            signals=signals,
            evidence=summary,
        )

    async def _recover_after_state(self, bundle: EvidenceBundle) -> None:
        # Best effort: only the after-state is retried, and only once the
        # before-state exists.
        if bundle.state is BundleState.CAPTURED_BEFORE:
            bundle.mark_acted()
        if bundle.state is BundleState.ACTED:
            await bundle.capture_after(self.page)

    async def _dispatch(
        self, expectation: Expectation, resolution: SelectorResolution, bundle: EvidenceBundle
    ) -> ActionResult:
        selector = resolution.selector
        match expectation.category:
            case ExpectationCategory.BUTTON:
                return await self._click(selector, bundle)
            case ExpectationCategory.NAVIGATION:
                return await self._click(selector, bundle, no_wait_after=True)
            case ExpectationCategory.FORM:
                return await self._submit_form(selector, bundle)
            case ExpectationCategory.VALIDATION:
                return await self._trigger_validation()
            case ExpectationCategory.STATE:
                if resolution.found:
                    return await self._click(selector, bundle)
                await self.page.wait_for_timeout(self.config.state_observe_ms)
                return ActionResult(success=True, action="observe")
            case ExpectationCategory.NETWORK:
                if resolution.found:
                    return await self._click(selector, bundle)
                await self.page.wait_for_timeout(self.config.network_observe_ms)
                return ActionResult(success=True, action="observe")

    async def _click(
        self, selector: str, bundle: EvidenceBundle, no_wait_after: bool = False
    ) -> ActionResult:
        if not await is_element_interactable(self.page, selector):
            return ActionResult(
                success=False,
                action="click",
                reason="element-not-interactable",
                cause=CauseCode.BLOCKED,
                disabled=True,
            )
        network_start = len(self.recorder.network_events)
        try:
            await self.page.locator(selector).first.click(
                timeout=self.config.click_timeout_ms, no_wait_after=no_wait_after
            )
        except PlaywrightTimeoutError:
            return ActionResult(
                success=False, action="click", reason="click-timeout", cause=CauseCode.TIMEOUT
            )
        if not await self._wait_for_outcome(bundle, network_start):
            return ActionResult(
                success=False, action="click", reason="outcome-timeout", cause=CauseCode.TIMEOUT
            )
        return ActionResult(success=True, action="click")

    async def _submit_form(self, form: str, bundle: EvidenceBundle) -> ActionResult:
        await self._fill_required_inputs(form)
        network_start = len(self.recorder.network_events)

        submit = await find_submit_button(self.page, form)
        if submit is not None:
            try:
                await self.page.locator(submit).first.click(timeout=self.config.click_timeout_ms)
            except PlaywrightError:
                return ActionResult(
                    success=False,
                    action="submit",
                    reason="submit-button-click-failed",
                    cause=CauseCode.BLOCKED,
                )
        else:
            inputs = self.page.locator(f"{form} input")
            if await inputs.count() == 0:
                return ActionResult(
                    success=False,
                    action="submit",
                    reason="no-submit-mechanism",
                    cause=CauseCode.BLOCKED,
                )
            try:
                await inputs.first.press("Enter")
            except PlaywrightError:
                return ActionResult(
                    success=False,
                    action="submit",
                    reason="form-submit-failed",
                    cause=CauseCode.BLOCKED,
                )

        if not await self._wait_for_outcome(bundle, network_start):
            return ActionResult(
                success=False,
                action="submit",
                reason="form-submit-prevented",
                cause=CauseCode.PREVENTED_SUBMIT,
            )
        return ActionResult(success=True, action="submit")

    async def _fill_required_inputs(self, form: str) -> None:
        for field in await self.page.locator(f"{form} input[required]").all():
            input_type = (await field.get_attribute("type") or "").lower()
            try:
                if input_type == "checkbox":
                    if not await field.is_checked():
                        await field.check()
                    continue
                await field.fill(FILL_VALUES.get(input_type, DEFAULT_FILL_VALUE))
            except PlaywrightError as e:
                logger.debug("Could not fill required %s input: %s", input_type or "text", e)

    async def _trigger_validation(self) -> ActionResult:
        # Submit without filling anything so required-field validation fires.
        submit = await find_submit_button(self.page, "form")
        if submit is None:
            return ActionResult(
                success=False,
                action="validate",
                reason="no-submit-mechanism",
                cause=CauseCode.BLOCKED,
            )
        try:
            await self.page.locator(submit).first.click(timeout=self.config.click_timeout_ms)
        except PlaywrightError as e:
            logger.debug("Validation submit click failed: %s", e)
        await self.page.wait_for_timeout(self.config.validation_wait_ms)
        shown = await self.page.locator(VALIDATION_UI_SELECTOR).count() > 0
        if not shown:
            return ActionResult(
                success=False, action="validate", reason="validation-feedback-missing"
            )
        return ActionResult(success=True, action="validate")

    async def _wait_for_outcome(self, bundle: EvidenceBundle, network_start: int) -> bool:
        """Poll for any acknowledgment of the action.

        A URL change, a DOM change or a new request all count. Returns False
        when ``effect_timeout_ms`` elapses without one.
        """
        deadline = time.monotonic() + self.config.effect_timeout_ms / 1000
        while True:
            if bundle.before_url is not None and self.page.url != bundle.before_url:
                return True
            if len(self.recorder.network_events) > network_start:
                return True
            if bundle.before_html is not None:
                try:
                    if await self.page.content() != bundle.before_html:
                        return True
                except PlaywrightError:
                    # Content is unavailable mid-navigation, which is itself an effect.
                    return True
            if time.monotonic() >= deadline:
                return False
            await self.page.wait_for_timeout(POLL_INTERVAL_MS)


def _not_found_reason(expectation: Expectation, resolution: SelectorResolution) -> str:
    if resolution.reason == "ambiguous-selector":
        return "ambiguous-selector"
    if expectation.category is ExpectationCategory.FORM:
        return "form-not-found"
    return "selector-not-found"
