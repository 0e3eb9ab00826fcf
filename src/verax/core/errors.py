"""Exception hierarchy for Verax.

Expected interaction misses (not-found, blocked, timeout, ...) are recorded as
attempt metadata and never raised. Everything below is raised.
"""

from __future__ import annotations

from typing import Any


class VeraxError(Exception):
    """Base class for all Verax errors."""


class ConfigError(VeraxError):
    """Invalid run configuration, rejected before any side effect."""


class PolicyError(ConfigError):
    """Malformed or unreadable guardrails policy document."""


class IllegalTransitionError(VeraxError):
    """A state machine was driven through a transition it does not allow.

    Args:
        machine: Name of the state machine (e.g. "EvidenceBundle").
        current: State the machine was in.
        target: State that was requested.
    """

    def __init__(self, machine: str, current: str, target: str) -> None:
        super().__init__(f"{machine}: illegal transition {current} -> {target}")
        self.machine = machine
        self.current = current
        self.target = target


class ObservationError(VeraxError):
    """The page under test could not be loaded, so no attempt can run."""


class IntegrityError(VeraxError):
    """Artifact staging, checksum or commit failure."""


class EvidenceBuildError(VeraxError):
    """Evidence Law violation on a CONFIRMED finding.

    Raised by the hard lock in ``verax.evidence.package``. Nothing inside the
    package catches it: it aborts finding construction and the run's artifact
    transaction rolls back.

    Args:
        message: Human-readable description.
        missing_fields: Required evidence fields that were absent.
        evidence_package: The offending package, if one was built.
    """

    code = "EVIDENCE_BUILD_FAILED"

    def __init__(
        self,
        message: str,
        missing_fields: list[str] | None = None,
        evidence_package: Any = None,
    ) -> None:
        super().__init__(message)
        self.missing_fields = list(missing_fields or [])
        self.evidence_package = evidence_package
