"""Tests for the DOM diff heuristics."""

from __future__ import annotations

from verax.observe.dom_diff import compute_dom_diff, feedback_appeared, ui_snapshot

BASE = '<html><body><h1 id="title">Shop</h1><button id="buy">Buy</button></body></html>'


class TestComputeDomDiff:
    def test_identical(self) -> None:
        diff = compute_dom_diff(BASE, BASE)
        assert diff.changed is False
        assert diff.is_meaningful is False
        assert diff.scope_classification == "no-change"

    def test_noise_only(self) -> None:
        before = BASE.replace("</body>", '<span data-ts="2026-01-01T10:00:00Z"></span></body>')
        after = BASE.replace("</body>", '<span data-ts="2026-01-01T10:00:05Z"></span></body>')
        diff = compute_dom_diff(before, after)
        assert diff.changed is True
        assert diff.is_meaningful is False
        assert diff.scope_classification == "noise-only"

    def test_feedback_is_meaningful(self) -> None:
        after = BASE.replace("</body>", '<div role="alert">Saved</div></body>')
        diff = compute_dom_diff(BASE, after)
        assert diff.is_meaningful is True
        assert diff.scope_classification == "in-scope"

    def test_stable_text_change_is_meaningful(self) -> None:
        after = BASE.replace(">Shop<", ">Checkout<")
        diff = compute_dom_diff(BASE, after)
        assert diff.is_meaningful is True
        assert diff.summary().content_changed

    def test_disabled_count_change_tracked(self) -> None:
        after = BASE.replace('<button id="buy">', '<button id="buy" disabled>')
        diff = compute_dom_diff(BASE, after)
        assert "disabled" in diff.summary().attributes_changed


class TestFeedback:
    def test_feedback_appeared(self) -> None:
        after = BASE.replace("</body>", '<div role="status">Working</div></body>')
        assert feedback_appeared(BASE, after) is True

    def test_feedback_already_present_does_not_count(self) -> None:
        html = BASE.replace("</body>", '<div role="status">Working</div></body>')
        assert feedback_appeared(html, html) is False

    def test_ui_snapshot_flags(self) -> None:
        html = '<div role="dialog"><input aria-invalid="true"><span class="spinner"></span></div>'
        snap = ui_snapshot(html)
        assert snap.has_dialog is True
        assert snap.has_error_signal is True
        assert snap.has_loading_indicator is True
        assert snap.has_validation_message is True
