"""Tests for the interaction executor."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

from fake_browser import FakeElement, FakePage

from verax.core.config import RunConfig
from verax.core.models import CauseCode, Expectation, Observation
from verax.observe.interaction import InteractionExecutor
from verax.observe.network import PageRecorder

HOME = "<html><body><main>Home</main></body></html>"

FAST = RunConfig(effect_timeout_ms=40, settle_delay_ms=0, validation_wait_ms=1)


def _page(elements: dict[str, FakeElement] | None = None) -> FakePage:
    page = FakePage(elements=elements)
    page.html = HOME
    return page


def _button(selector: str = "#save", outcome: str = "ui-change") -> Expectation:
    return Expectation(
        id="exp-save",
        category="button",
        promise={"kind": "click", "value": "Save"},
        selector=selector,
        expected_outcome=outcome,
    )


def _execute(
    page: FakePage,
    expectation: Expectation,
    tmp_path: Path,
    config: RunConfig = FAST,
    started_at: float | None = None,
) -> tuple[Observation, PageRecorder]:
    async def scenario() -> tuple[Observation, PageRecorder]:
        recorder = PageRecorder()
        await recorder.attach(page)
        executor = InteractionExecutor(page, recorder, config, tmp_path, started_at=started_at)
        return await executor.execute(expectation, 1), recorder

    return asyncio.run(scenario())


class TestClick:
    def test_feedback_matches(self, tmp_path: Path) -> None:
        def show(page: FakePage) -> None:
            page.html = HOME.replace("</body>", '<div role="status">Saved</div></body>')

        page = _page({"#save": FakeElement(on_click=show)})
        obs, _ = _execute(page, _button(outcome="feedback"), tmp_path)
        assert obs.attempted is True
        assert obs.cause is None
        assert obs.observed is True
        assert obs.action == "click"
        assert page.clicks == ["#save"]

    def test_no_acknowledgment_is_timeout(self, tmp_path: Path) -> None:
        page = _page({"#save": FakeElement()})
        obs, _ = _execute(page, _button(), tmp_path)
        assert obs.cause is CauseCode.TIMEOUT
        assert obs.reason == "outcome-timeout"
        assert obs.evidence is not None
        assert obs.evidence.before_screenshot == "exp_1_before.png"

    def test_acknowledged_but_wrong_outcome_is_no_change(self, tmp_path: Path) -> None:
        def rerender(page: FakePage) -> None:
            page.html = HOME.replace("Home", "Home ")

        page = _page({"#save": FakeElement(on_click=rerender)})
        obs, _ = _execute(page, _button(outcome="feedback"), tmp_path)
        assert obs.cause is CauseCode.NO_CHANGE
        assert obs.reason == "expected-outcome-not-observed"

    def test_not_found_is_not_attempted(self, tmp_path: Path) -> None:
        obs, _ = _execute(_page(), _button("#missing"), tmp_path)
        assert obs.attempted is False
        assert obs.cause is CauseCode.NOT_FOUND
        assert obs.reason == "selector-not-found"

    def test_disabled_is_blocked(self, tmp_path: Path) -> None:
        page = _page({"#save": FakeElement(enabled=False)})
        obs, _ = _execute(page, _button(), tmp_path)
        assert obs.cause is CauseCode.BLOCKED
        assert obs.interaction_disabled is True
        assert page.clicks == []

    def test_click_timeout(self, tmp_path: Path) -> None:
        page = _page({"#save": FakeElement(click_timeout=True)})
        obs, _ = _execute(page, _button(), tmp_path)
        assert obs.cause is CauseCode.TIMEOUT
        assert obs.reason == "click-timeout"

    def test_unexpected_exception_becomes_error(self, tmp_path: Path) -> None:
        def explode(page: FakePage) -> None:
            raise RuntimeError("handler crashed")

        page = _page({"#save": FakeElement(on_click=explode)})
        obs, _ = _execute(page, _button(), tmp_path)
        assert obs.attempted is True
        assert obs.cause is CauseCode.ERROR
        assert obs.reason == "error:handler crashed"
        assert obs.evidence.after_screenshot == "exp_1_after.png"

    def test_failed_recapture_still_records_error(self, tmp_path: Path) -> None:
        class CrashingRendererPage(FakePage):
            async def screenshot(self, path: str | None = None, full_page: bool = False) -> bytes:
                raise RuntimeError("renderer crashed")

        page = CrashingRendererPage(elements={"#save": FakeElement()})
        page.html = HOME
        obs, _ = _execute(page, _button(), tmp_path)
        assert obs.attempted is True
        assert obs.cause is CauseCode.ERROR
        assert obs.reason == "error:renderer crashed"
        assert page.clicks == []
        failures = obs.evidence.capture_failures
        assert [f.reason_code for f in failures] == ["RECOVERY_CAPTURE_FAILED"]
        assert failures[0].stage == "after.recover"
        assert failures[0].message == "renderer crashed"

    def test_blocked_post_acknowledges_click(self, tmp_path: Path) -> None:
        async def post(page: FakePage) -> None:
            await page.fire_request("https://api.test/orders", "POST")

        page = _page({"#save": FakeElement(on_click=post)})
        obs, recorder = _execute(page, _button(outcome="network"), tmp_path)
        assert len(recorder.blocked_writes) == 1
        assert obs.signals.network_activity is True
        assert obs.evidence.network.total_requests == 0
        assert obs.evidence.network.blocked_requests == 1


class TestFormAndBudget:
    def test_form_prevented_submit(self, tmp_path: Path) -> None:
        page = _page(
            {
                "form": FakeElement(),
                "form input[required]": FakeElement(attributes={"type": "email"}),
                'form button[type="submit"]': FakeElement(),
            }
        )
        exp = Expectation(id="exp-form", category="form", promise={"kind": "submit"})
        obs, _ = _execute(page, exp, tmp_path)
        assert page.fills == [("form input[required]", "test@example.com")]
        assert page.clicks == ['form button[type="submit"]']
        assert obs.cause is CauseCode.PREVENTED_SUBMIT
        assert obs.reason == "form-submit-prevented"

    def test_form_without_button_presses_enter(self, tmp_path: Path) -> None:
        def submit(page: FakePage) -> None:
            page.url = "https://shop.test/thanks"

        page = _page({"form": FakeElement(), "form input": FakeElement(on_press=submit)})
        exp = Expectation(
            id="exp-form",
            category="form",
            promise={"kind": "submit"},
            expected_outcome="navigation",
        )
        obs, _ = _execute(page, exp, tmp_path)
        assert page.presses == [("form input", "Enter")]
        assert obs.cause is None
        assert obs.signals.navigation_changed is True

    def test_budget_exhausted_skips(self, tmp_path: Path) -> None:
        config = RunConfig(global_budget_ms=1)
        page = _page({"#save": FakeElement()})
        obs, _ = _execute(page, _button(), tmp_path, config, started_at=time.monotonic() - 5)
        assert obs.attempted is False
        assert obs.reason == "global-timeout-exceeded"
        assert page.clicks == []
