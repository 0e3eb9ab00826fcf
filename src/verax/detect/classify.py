"""Outcome classification.

Maps an attempt's action result and observed signals to a cause code. The
action result wins when it already carries a cause (not-found, blocked,
prevented-submit, timeout, error); otherwise the signals decide between a
matched outcome (no cause) and ``no-change``.
"""

from verax.core.models import AttemptSignals, CauseCode, ExpectedOutcome


def outcome_matched(expected: ExpectedOutcome | None, signals: AttemptSignals) -> bool:
    """Return True if the signals satisfy the expected outcome.

    An unannotated expectation (``ui-change``) is satisfied by any meaningful
    signal, so a missing annotation never manufactures a failure.
    """
    match expected:
        case ExpectedOutcome.NAVIGATION:
            return signals.navigation_changed
        case ExpectedOutcome.FEEDBACK:
            return signals.feedback_seen
        case ExpectedOutcome.NETWORK:
            return signals.correlated_network_activity or signals.network_activity
        case _:
            return (
                signals.navigation_changed
                or signals.meaningful_dom_change
                or signals.feedback_seen
                or signals.correlated_network_activity
            )


def classify_outcome(
    expected: ExpectedOutcome | None,
    signals: AttemptSignals,
    action_cause: CauseCode | None = None,
) -> CauseCode | None:
    """Derive the cause code for one attempt.

    Args:
        expected: The expectation's expected outcome.
        signals: Signals derived from the finalized evidence bundle.
        action_cause: Cause reported by the executor, if the action itself
            did not complete.

    Returns:
        The cause code, or None when the expected outcome was observed.
    """
    if action_cause is not None:
        return action_cause
    if outcome_matched(expected, signals):
        return None
    return CauseCode.NO_CHANGE
