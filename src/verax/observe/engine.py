"""Observation engine: load the page once and run every expectation on it.

Attempts run strictly one after another against the same page so each
before/after pair stays causally ordered. After an attempt that navigated
away, the page is returned to the entry URL before the next one.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from verax.core.config import RunConfig
from verax.core.errors import ObservationError
from verax.core.models import Expectation, Observation, ObservationReport, ObservationStats
from verax.observe.interaction import InteractionExecutor
from verax.observe.network import PageRecorder

logger = logging.getLogger(__name__)


def compute_stats(observations: list[Observation], blocked_writes: int) -> ObservationStats:
    """Summarize a run's attempts.

    Args:
        observations: Every sealed observation of the run.
        blocked_writes: Number of mutating requests the guard aborted.

    Returns:
        Run statistics. ``coverage_ratio`` is attempted / total, 0.0 for an
        empty run.
    """
    total = len(observations)
    attempted = sum(1 for o in observations if o.attempted)
    skipped = Counter(o.reason or "unknown" for o in observations if not o.attempted)
    return ObservationStats(
        total=total,
        attempted=attempted,
        observed=sum(1 for o in observations if o.observed),
        skipped_reasons=dict(sorted(skipped.items())),
        blocked_writes=blocked_writes,
        coverage_ratio=round(attempted / total, 4) if total else 0.0,
    )


async def _load(page: Any, url: str, config: RunConfig) -> None:
    await page.goto(url, wait_until="domcontentloaded", timeout=config.navigation_timeout_ms)
    try:
        await page.wait_for_load_state("networkidle", timeout=config.network_idle_timeout_ms)
    except PlaywrightError:
        logger.debug("Network never went idle on %s; continuing", url)


async def observe_page(
    page: Any,
    url: str,
    expectations: list[Expectation],
    config: RunConfig,
    evidence_dir: Path,
    started_at: float | None = None,
) -> ObservationReport:
    """Run every expectation against an already-open page.

    Args:
        page: Playwright page (or an object with the same async surface).
        url: Entry URL of the site under test.
        expectations: Expectations in the order they should be attempted.
        config: Run configuration.
        evidence_dir: Where per-attempt evidence files go.
        started_at: ``time.monotonic()`` value the global budget counts
            from; defaults to now, before the entry page loads.

    Returns:
        The observation report with one Observation per expectation.

    Raises:
        ObservationError: If the entry URL cannot be loaded.
    """
    if started_at is None:
        started_at = time.monotonic()
    report_started_at = datetime.now(UTC)
    recorder = PageRecorder()
    await recorder.attach(page)

    try:
        await _load(page, url, config)
    except PlaywrightError as e:
        raise ObservationError(f"Could not load {url}: {e}") from e
    entry_url = page.url
    logger.info("Loaded %s; running %d expectation(s)", entry_url, len(expectations))

    executor = InteractionExecutor(page, recorder, config, evidence_dir, started_at=started_at)
    observations: list[Observation] = []
    for index, expectation in enumerate(expectations):
        observation = await executor.execute(expectation, index + 1)
        observations.append(observation)
        if page.url != entry_url:
            try:
                await _load(page, entry_url, config)
            except PlaywrightError as e:
                logger.warning("Could not return to %s after exp %d: %s", entry_url, index + 1, e)

    stats = compute_stats(observations, len(recorder.blocked_writes))
    logger.info(
        "Attempted %d/%d expectation(s), %d with observable effects, %d write(s) blocked",
        stats.attempted,
        stats.total,
        stats.observed,
        stats.blocked_writes,
    )
    return ObservationReport(
        url=url,
        observations=observations,
        stats=stats,
        blocked_writes=list(recorder.blocked_writes),
        started_at=report_started_at,
        ended_at=datetime.now(UTC),
    )


async def run_observation(
    url: str,
    expectations: list[Expectation],
    config: RunConfig,
    evidence_dir: Path,
    *,
    started_at: float | None = None,
) -> ObservationReport:
    """Launch Chromium, observe ``url`` and always tear the browser down."""
    if started_at is None:
        started_at = time.monotonic()
    pw_instance = await async_playwright().start()
    browser = None
    try:
        browser = await pw_instance.chromium.launch(headless=config.headless)
        page = await browser.new_page(viewport={"width": 1280, "height": 720})
        return await observe_page(
            page, url, expectations, config, evidence_dir, started_at=started_at
        )
    finally:
        if browser is not None:
            await browser.close()
        await pw_instance.stop()
