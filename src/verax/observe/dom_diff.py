"""DOM diff heuristics.

Compares two serialized HTML documents and decides whether the change is
meaningful (feedback appeared, tracked attributes moved, form state or
stable-element text changed) or just noise (timestamps, random ids,
tracking parameters). Works on raw HTML strings so it needs no parser and
gives the same answer every time for the same input.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from verax.core.models import DomDiffSummary, UiSnapshot

FEEDBACK_PATTERNS = (
    'role="alert"',
    'role="status"',
    "aria-live",
    'class="toast"',
    'class="error"',
    'class="success"',
    'class="modal"',
    'class="dialog"',
    "[data-error]",
    "[data-success]",
)
"""Markup whose appearance or disappearance is always meaningful."""

FEEDBACK_SEEN_PATTERNS = (
    'role="alert"',
    'role="status"',
    'aria-live="polite"',
    'aria-live="assertive"',
    'class="toast"',
    'class="modal"',
    'class="dialog"',
)
"""Markup that counts as user-visible feedback when newly present."""

VALIDATION_PATTERNS = (
    'aria-invalid="true"',
    'class="error"',
    'class="invalid"',
)

_TRACKED_VALUE_ATTRS = ("aria-invalid", "aria-disabled", "data-loading")

_NOISE_PATTERNS = (
    (re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}[^\"']*"), "[TIMESTAMP]"),
    (
        re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE),
        "[UUID]",
    ),
    (re.compile(r"[a-f0-9]{32,}"), "[HASH]"),
    (re.compile(r"[?&](ga[a-z_]*|fbclid|utm_[a-z]*|gclid|msclkid)=[^&\"']*"), "[TRACKING]"),
    (re.compile(r'data-testid="[^"]*"'), ""),
)

_INPUT_VALUE = re.compile(r'<input[^>]*name="([^"]*)"[^>]*value="([^"]*)"')

# (pattern, group holding the identifier or None, group holding the text)
_STABLE_ELEMENTS = (
    (re.compile(r'<(\w+)\s+[^>]*id="([^"]+)"[^>]*>([^<]*)<'), 2, 3),
    (re.compile(r'<(\w+)\s+[^>]*aria-live="[^"]+"[^>]*>([^<]*)<'), None, 2),
    (re.compile(r'<(\w+)\s+[^>]*role="(status|alert)"[^>]*>([^<]*)<'), 2, 3),
)

_ERROR_SIGNAL = re.compile(
    r'role="alert"|aria-invalid="true"|class="[^"]*\berror\b[^"]*"', re.IGNORECASE
)
_LOADING_SIGNAL = re.compile(
    r'aria-busy="true"|data-loading="true"|class="[^"]*\b(spinner|loading|loader)\b[^"]*"',
    re.IGNORECASE,
)
_DIALOG_SIGNAL = re.compile(r'role="dialog"|aria-modal="true"|<dialog[^>]*\sopen', re.IGNORECASE)
_VALIDATION_MESSAGE = re.compile(
    r'aria-invalid="true"|class="[^"]*\b(invalid|validation-error|field-error)\b[^"]*"',
    re.IGNORECASE,
)
_DISABLED = re.compile(r"\sdisabled(?=[\s>=/])")


@dataclass
class DomDiff:
    """Structured difference between two HTML snapshots."""

    html_length_before: int
    html_length_after: int
    changed: bool
    is_meaningful: bool = False
    scope_classification: str = "unknown"
    elements_added: list[str] = field(default_factory=list)
    elements_removed: list[str] = field(default_factory=list)
    attributes_changed: list[dict] = field(default_factory=list)
    content_changed: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "htmlLengthBefore": self.html_length_before,
            "htmlLengthAfter": self.html_length_after,
            "changed": self.changed,
            "isMeaningful": self.is_meaningful,
            "scopeClassification": self.scope_classification,
            "elementsAdded": self.elements_added,
            "elementsRemoved": self.elements_removed,
            "attributesChanged": self.attributes_changed,
            "contentChanged": self.content_changed,
        }

    def summary(self) -> DomDiffSummary:
        return DomDiffSummary(
            changed=self.changed,
            is_meaningful=self.is_meaningful,
            scope_classification=self.scope_classification,
            elements_added=list(self.elements_added),
            elements_removed=list(self.elements_removed),
            attributes_changed=[a["attribute"] for a in self.attributes_changed],
            content_changed=[c["element"] for c in self.content_changed],
        )


def compute_dom_diff(html_before: str, html_after: str) -> DomDiff:
    """Compute a summary diff between two HTML documents.

    Args:
        html_before: Serialized DOM before the action.
        html_after: Serialized DOM after the action.

    Returns:
        A DomDiff. ``scope_classification`` is ``no-change`` for identical
        input, ``noise-only`` when only volatile tokens differ, otherwise
        ``in-scope``.
    """
    diff = DomDiff(
        html_length_before=len(html_before),
        html_length_after=len(html_after),
        changed=html_before != html_after,
    )
    if not diff.changed:
        diff.scope_classification = "no-change"
        return diff

    if _is_noise_only(html_before, html_after):
        diff.scope_classification = "noise-only"
        return diff

    for pattern in FEEDBACK_PATTERNS:
        in_before = pattern in html_before
        in_after = pattern in html_after
        if in_after and not in_before:
            diff.elements_added.append(pattern)
        elif in_before and not in_after:
            diff.elements_removed.append(pattern)

    before_disabled = len(_DISABLED.findall(html_before))
    after_disabled = len(_DISABLED.findall(html_after))
    if before_disabled != after_disabled:
        diff.attributes_changed.append(
            {"attribute": "disabled", "before": before_disabled, "after": after_disabled}
        )
    for attr in _TRACKED_VALUE_ATTRS:
        before_values = _attribute_values(html_before, attr)
        after_values = _attribute_values(html_after, attr)
        if before_values != after_values:
            diff.attributes_changed.append(
                {
                    "attribute": attr,
                    "before": ", ".join(before_values) or "none",
                    "after": ", ".join(after_values) or "none",
                }
            )

    form_changed = _input_values(html_before) != _input_values(html_after)
    diff.content_changed = _text_content_changes(html_before, html_after)

    diff.is_meaningful = bool(
        diff.elements_added
        or diff.elements_removed
        or diff.attributes_changed
        or form_changed
        or diff.content_changed
    )
    diff.scope_classification = "in-scope"
    return diff


def feedback_appeared(html_before: str, html_after: str) -> bool:
    """Return True if any feedback marker is present after but not before."""
    return any(p in html_after and p not in html_before for p in FEEDBACK_SEEN_PATTERNS)


def validation_appeared(html_before: str, html_after: str) -> bool:
    return any(p in html_after and p not in html_before for p in VALIDATION_PATTERNS)


def ui_snapshot(html: str) -> UiSnapshot:
    """Read feedback-related flags from one DOM snapshot."""
    return UiSnapshot(
        has_error_signal=bool(_ERROR_SIGNAL.search(html)),
        has_loading_indicator=bool(_LOADING_SIGNAL.search(html)),
        has_dialog=bool(_DIALOG_SIGNAL.search(html)),
        has_status_signal='role="status"' in html,
        has_live_region="aria-live" in html,
        has_validation_message=bool(_VALIDATION_MESSAGE.search(html)),
        disabled_elements=len(_DISABLED.findall(html)),
    )


def _is_noise_only(html_before: str, html_after: str) -> bool:
    before, after = html_before, html_after
    for pattern, replacement in _NOISE_PATTERNS:
        before = pattern.sub(replacement, before)
        after = pattern.sub(replacement, after)
    return before == after


def _attribute_values(html: str, attr: str) -> list[str]:
    return re.findall(rf'{re.escape(attr)}="([^"]*)"', html)


def _input_values(html: str) -> dict[str, str]:
    return {name: value for name, value in _INPUT_VALUE.findall(html)}


def _normalize_ws(text: str) -> str:
    return " ".join(text.split())


def _stable_texts(html: str, pattern: re.Pattern[str], id_group: int | None, text_group: int):
    found: dict[str, str] = {}
    for match in pattern.finditer(html):
        identifier = match.group(id_group) if id_group else "aria-live"
        found[f"{match.group(1)}:{identifier}"] = _normalize_ws(match.group(text_group) or "")
    return found


def _text_content_changes(html_before: str, html_after: str) -> list[dict]:
    changes: list[dict] = []
    for pattern, id_group, text_group in _STABLE_ELEMENTS:
        before = _stable_texts(html_before, pattern, id_group, text_group)
        after = _stable_texts(html_after, pattern, id_group, text_group)
        for key, before_text in before.items():
            after_text = after.get(key, "")
            if before_text != after_text:
                changes.append({"element": key, "before": before_text, "after": after_text})
        for key, after_text in after.items():
            if key not in before and after_text:
                changes.append({"element": key, "before": "", "after": after_text})
    return changes
