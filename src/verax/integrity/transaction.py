"""Atomic commit of a run's artifacts.

A run directory moves through ``INIT -> STAGING -> COMMITTED | ROLLED_BACK``.
Artifacts are written only into ``<run>/.staging/``. On commit every staged
file is hashed into an integrity manifest and re-verified; only when all
verify are they moved into place, one ``os.replace`` per file. The poison
marker written at ``begin`` is removed last, so its presence means the run
never finished. A rollback records the error in ``ledger.json``, deletes the
staged files and keeps the marker. Its ``metadata`` names what was staged
and any file stranded in the run directory by a failed move.

Typical usage:
    >>> with artifact_transaction(run_dir) as txn:
    ...     txn.write_json("findings.json", findings)
    ...     txn.write_json("summary.json", summary)
"""

from __future__ import annotations

import json
import logging
import os
import traceback
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from verax.core.errors import IllegalTransitionError, IntegrityError
from verax.integrity.checksums import (
    MANIFEST_NAME,
    IntegrityManifest,
    VerificationResult,
    compute_checksums,
    load_manifest,
    verify_all_artifacts,
)

logger = logging.getLogger(__name__)

STAGING_DIR = ".staging"
POISON_MARKER = ".poison-marker.json"
LEDGER_NAME = "ledger.json"
MARKER_VERSION = "1.0"

ARTIFACT_WHITELIST = frozenset(
    {
        "summary.json",
        "findings.json",
        "ledger.json",
        "observations.json",
        "report.html",
        "learn.json",
        "manifest.json",
        "observations-legacy.json",
        "observations-legacy-formatted.json",
    }
)
"""Only these filenames may be staged."""


class TransactionState(StrEnum):
    INIT = "INIT"
    STAGING = "STAGING"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"


_TRANSITIONS: dict[TransactionState, frozenset[TransactionState]] = {
    TransactionState.INIT: frozenset({TransactionState.STAGING, TransactionState.ROLLED_BACK}),
    TransactionState.STAGING: frozenset(
        {TransactionState.COMMITTED, TransactionState.ROLLED_BACK}
    ),
    TransactionState.COMMITTED: frozenset(),
    TransactionState.ROLLED_BACK: frozenset(),
}


def _now() -> str:
    return datetime.now(UTC).isoformat()


class ArtifactTransaction:
    """Staged, verified, all-or-nothing persistence for one run directory.

    Args:
        run_dir: The run's artifact directory. Created on ``begin``.
    """

    def __init__(self, run_dir: Path) -> None:
        self.run_dir = run_dir
        self.staging_dir = run_dir / STAGING_DIR
        self.poison_marker = run_dir / POISON_MARKER
        self.state = TransactionState.INIT
        self.manifest: IntegrityManifest | None = None
        self.stranded: list[str] = []

    def _transition(self, target: TransactionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise IllegalTransitionError("ArtifactTransaction", self.state, target)
        self.state = target

    def begin(self) -> None:
        """Create the staging directory and write the poison marker."""
        self._transition(TransactionState.STAGING)
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        marker = {"timestamp": _now(), "version": MARKER_VERSION, "status": "in-progress"}
        self.poison_marker.write_text(json.dumps(marker, indent=2), encoding="utf-8")
        logger.debug("Staging artifacts in %s", self.staging_dir)

    def staging_path(self, name: str) -> Path:
        """Return where ``name`` is staged.

        Raises:
            IntegrityError: If the transaction is not staging or ``name`` is
                not a whitelisted artifact.
        """
        if self.state is not TransactionState.STAGING:
            raise IntegrityError(f"Cannot stage {name}: transaction is {self.state}")
        if name not in ARTIFACT_WHITELIST:
            raise IntegrityError(f"Artifact {name!r} is not in the artifact whitelist")
        return self.staging_dir / name

    def write_text(self, name: str, content: str) -> Path:
        path = self.staging_path(name)
        path.write_text(content, encoding="utf-8")
        return path

    def write_json(self, name: str, payload: Any) -> Path:
        return self.write_text(name, json.dumps(payload, indent=2) + "\n")

    def staged_artifacts(self) -> list[str]:
        if not self.staging_dir.is_dir():
            return []
        return sorted(
            p.name for p in self.staging_dir.iterdir() if p.is_file() and p.name != MANIFEST_NAME
        )

    def commit(self) -> IntegrityManifest:
        """Hash, verify and move every staged artifact into the run directory.

        Returns:
            The integrity manifest that was committed alongside the artifacts.

        Raises:
            IntegrityError: If nothing was staged, an artifact cannot be
                hashed, any checksum fails to verify, or a move fails. Files
                already moved are returned to staging first; any that cannot
                be are listed in ``stranded``.
        """
        if self.state is not TransactionState.STAGING:
            raise IllegalTransitionError(
                "ArtifactTransaction", self.state, TransactionState.COMMITTED
            )
        artifacts = self.staged_artifacts()
        if not artifacts:
            raise IntegrityError(f"No artifacts staged in {self.staging_dir}")

        manifest = compute_checksums(self.staging_dir, artifacts)
        if manifest.errors:
            errors = "; ".join(manifest.errors)
            raise IntegrityError(f"Failed to build integrity manifest: {errors}")
        manifest.write(self.staging_dir)

        verification = verify_all_artifacts(self.staging_dir, manifest)
        if not verification.ok:
            names = ", ".join(f"{f['name']} ({f['reason']})" for f in verification.failed)
            raise IntegrityError(f"Artifact verification failed: {names}")

        moved: list[str] = []
        try:
            for name in [*artifacts, MANIFEST_NAME]:
                os.replace(self.staging_dir / name, self.run_dir / name)
                moved.append(name)
        except OSError as e:
            self._move_back(moved)
            raise IntegrityError(f"Failed to move artifacts into {self.run_dir}: {e}") from e
        self.staging_dir.rmdir()
        self.poison_marker.unlink()

        self._transition(TransactionState.COMMITTED)
        self.manifest = manifest
        logger.info("Committed %d artifact(s) to %s", len(artifacts), self.run_dir)
        return manifest

    def _move_back(self, moved: list[str]) -> None:
        """Return already-moved files to staging so the rollback discards them."""
        for name in moved:
            try:
                os.replace(self.run_dir / name, self.staging_dir / name)
            except OSError as e:
                logger.error("Could not move %s back to staging: %s", name, e)
                self.stranded.append(name)

    def rollback(
        self, error: BaseException, metadata: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Record ``error`` in the ledger and discard staged files.

        The poison marker is left in place.

        Args:
            error: The exception that aborted the run.
            metadata: Caller context for the ledger entry, such as the run id.

        Returns:
            The ledger entry that was appended.
        """
        self._transition(TransactionState.ROLLED_BACK)
        entry = {
            "timestamp": _now(),
            "status": "error",
            "error": str(error),
            "errorType": type(error).__name__,
            "stack": "".join(traceback.format_exception(error)),
            "metadata": {
                **(metadata or {}),
                "stagedArtifacts": self.staged_artifacts(),
                "strandedArtifacts": list(self.stranded),
            },
        }
        ledger = read_ledger(self.run_dir)
        ledger.append(entry)
        self.run_dir.mkdir(parents=True, exist_ok=True)
        (self.run_dir / LEDGER_NAME).write_text(json.dumps(ledger, indent=2), encoding="utf-8")

        if self.staging_dir.is_dir():
            for path in self.staging_dir.iterdir():
                if path.is_file():
                    try:
                        path.unlink()
                    except OSError as e:
                        logger.warning("Could not remove staged file %s: %s", path, e)
        logger.warning("Rolled back run %s: %s", self.run_dir, error)
        return entry


@contextmanager
def artifact_transaction(
    run_dir: Path, metadata: dict[str, Any] | None = None
) -> Generator[ArtifactTransaction, None, None]:
    """Stage artifacts for ``run_dir`` with automatic commit or rollback.

    Commits when the block exits cleanly. On any exception, including one
    raised by the commit itself, rolls back and re-raises.

    Args:
        run_dir: The run's artifact directory.
        metadata: Context recorded in the ledger entry on rollback.

    Yields:
        ArtifactTransaction: The open transaction, already staging.
    """
    txn = ArtifactTransaction(run_dir)
    txn.begin()
    try:
        yield txn
        txn.commit()
    except Exception as e:
        txn.rollback(e, metadata)
        raise


def read_ledger(run_dir: Path) -> list[dict[str, Any]]:
    """Return the run's ledger entries; a missing or corrupt ledger reads as empty."""
    path = run_dir / LEDGER_NAME
    if not path.is_file():
        return []
    try:
        ledger = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.warning("Ledger %s is unreadable; starting a new one", path)
        return []
    return ledger if isinstance(ledger, list) else []


@dataclass
class PoisonCheck:
    """Whether a run directory still carries its poison marker.

    Args:
        has_poison_marker: True if the marker exists.
        entry: The marker's JSON content, None if absent or unreadable.
    """

    has_poison_marker: bool
    entry: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"hasPoisonMarker": self.has_poison_marker, "entry": self.entry}


def check_poison_marker(run_dir: Path) -> PoisonCheck:
    """Check ``run_dir`` for an unfinished or rolled-back run."""
    path = run_dir / POISON_MARKER
    if not path.is_file():
        return PoisonCheck(has_poison_marker=False)
    try:
        entry = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return PoisonCheck(has_poison_marker=True)
    return PoisonCheck(has_poison_marker=True, entry=entry if isinstance(entry, dict) else None)


def verify_run(run_dir: Path) -> VerificationResult:
    """Re-verify a committed run's artifacts against its integrity manifest.

    Raises:
        IntegrityError: If the run is poisoned or has no readable manifest.
    """
    poison = check_poison_marker(run_dir)
    if poison.has_poison_marker:
        raise IntegrityError(f"Run {run_dir} is poisoned (incomplete or rolled back)")
    return verify_all_artifacts(run_dir, load_manifest(run_dir))
