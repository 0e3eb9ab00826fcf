"""Resolve expectations to a single, unambiguous page element.

Resolution never falls back to a generic selector: a button expectation that
matches nothing by selector or label text is ``not-found``, and a selector
that matches several elements is ``ambiguous-selector``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

from playwright.async_api import Error as PlaywrightError

from verax.core.models import Expectation, ExpectationCategory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectorResolution:
    """Outcome of resolving one expectation.

    Args:
        found: True when exactly one element matched.
        selector: The selector that matched, or the last one tried.
        reason: None on success, otherwise ``not-found``,
            ``ambiguous-selector`` or ``no-selector``.
    """

    found: bool
    selector: str | None
    reason: str | None = None


def selector_variants(selector: str) -> list[str]:
    """Return the selector followed by its syntax variants, without duplicates."""
    variants = [selector]
    if ":contains(" in selector:
        variants.append(selector.replace(":contains(", ":has-text("))
    if '"' in selector:
        variants.append(selector.replace('"', "'"))
    seen: list[str] = []
    for v in variants:
        if v not in seen:
            seen.append(v)
    return seen


async def try_selector_variants(page: Any, selector: str) -> SelectorResolution:
    """Try ``selector`` and its variants until one matches exactly one element."""
    ambiguous = False
    for variant in selector_variants(selector):
        try:
            count = await page.locator(variant).count()
        except PlaywrightError as e:
            logger.debug("Selector %r rejected by the browser: %s", variant, e)
            continue
        if count == 1:
            return SelectorResolution(found=True, selector=variant)
        if count > 1:
            ambiguous = True
    reason = "ambiguous-selector" if ambiguous else "not-found"
    return SelectorResolution(found=False, selector=selector, reason=reason)


async def _first_unique(page: Any, candidates: list[str]) -> SelectorResolution | None:
    last: SelectorResolution | None = None
    for candidate in candidates:
        result = await try_selector_variants(page, candidate)
        if result.found:
            return result
        if last is None or result.reason == "ambiguous-selector":
            last = result
    return last


def _label(expectation: Expectation) -> str | None:
    value = expectation.promise.value
    return value.strip() if value and value.strip() else None


async def resolve_selector(page: Any, expectation: Expectation) -> SelectorResolution:
    """Resolve an expectation to a concrete selector on ``page``.

    Args:
        page: Playwright page.
        expectation: Expectation to resolve.

    Returns:
        A SelectorResolution. State and network expectations without a
        selector resolve to ``no-selector``, which switches the executor to
        passive observation.
    """
    match expectation.category:
        case ExpectationCategory.BUTTON:
            return await _resolve_button(page, expectation)
        case ExpectationCategory.FORM:
            return await _resolve_form(page, expectation)
        case ExpectationCategory.VALIDATION:
            return await _resolve_validation(page, expectation)
        case ExpectationCategory.NAVIGATION:
            return await _resolve_navigation(page, expectation)
        case ExpectationCategory.STATE | ExpectationCategory.NETWORK:
            if not expectation.selector:
                return SelectorResolution(found=False, selector=None, reason="no-selector")
            return await try_selector_variants(page, expectation.selector)


async def _resolve_button(page: Any, expectation: Expectation) -> SelectorResolution:
    candidates = []
    if expectation.selector:
        candidates.append(expectation.selector)
    label = _label(expectation)
    if label:
        candidates.append(f'button:has-text("{label}")')
        candidates.append(f'[role="button"]:has-text("{label}")')
    if not candidates:
        return SelectorResolution(found=False, selector=None, reason="not-found")
    return await _first_unique(page, candidates)


async def _resolve_form(page: Any, expectation: Expectation) -> SelectorResolution:
    candidates = [expectation.selector] if expectation.selector else []
    candidates.append("form")
    return await _first_unique(page, candidates)


async def _resolve_validation(page: Any, expectation: Expectation) -> SelectorResolution:
    if expectation.selector:
        result = await try_selector_variants(page, expectation.selector)
        if result.found:
            return result
    # Any required field is enough; the executor submits its enclosing form.
    required = "input[required], textarea[required], select[required]"
    try:
        count = await page.locator(required).count()
    except PlaywrightError:
        count = 0
    if count >= 1:
        return SelectorResolution(found=True, selector=required)
    return SelectorResolution(found=False, selector=expectation.selector, reason="not-found")


async def _resolve_navigation(page: Any, expectation: Expectation) -> SelectorResolution:
    candidates = [s for s in (expectation.selector_path, expectation.selector) if s]
    href = _label(expectation)
    if href:
        hrefs = [href]
        path = urlparse(href).path
        if path and path != href:
            hrefs.append(path)
        for h in hrefs:
            candidates.append(f'a[href="{h}"]')
            candidates.append(f'a[href*="{h}"]')
    if not candidates:
        return SelectorResolution(found=False, selector=None, reason="not-found")
    return await _first_unique(page, candidates)


async def find_submit_button(page: Any, form_selector: str) -> str | None:
    """Return a selector for the form's submit control, or None."""
    for candidate in (
        f'{form_selector} button[type="submit"]',
        f"{form_selector} button",
        f'{form_selector} input[type="submit"]',
    ):
        try:
            if await page.locator(candidate).count() >= 1:
                return candidate
        except PlaywrightError:
            continue
    return None


async def is_element_interactable(page: Any, selector: str) -> bool:
    """Return True when the first match is visible and enabled."""
    try:
        element = page.locator(selector).first
        return await element.is_visible() and await element.is_enabled()
    except PlaywrightError:
        return False
