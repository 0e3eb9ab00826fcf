"""Run orchestration: observe, detect, and commit artifacts atomically.

Typical usage:
    >>> expectations = load_expectations(Path("expectations.json"))
    >>> result = run("http://localhost:3000", expectations, Path(".verax/runs"))
    >>> result.run_dir
    PosixPath('.verax/runs/20261017T101500Z-3fa2c1')

Run directory layout::

    <out>/<run-id>/
        evidence/                 per-attempt screenshots and JSON evidence
        observations.json         every sealed observation plus run stats
        findings.json             findings with evidence, confidence, guardrails
        summary.json              counts by status, policy, timing
        integrity.manifest.json   SHA-256 of the three artifacts above

A run that fails at any point leaves ``.poison-marker.json`` and a
``ledger.json`` entry behind instead of the artifacts.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections import Counter
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from verax.core.config import RunConfig
from verax.core.errors import ConfigError
from verax.core.models import Expectation, Finding, ObservationReport, TruthStatus
from verax.detect.findings import detect_findings, verification_status_for
from verax.guardrails.policy import DEFAULT_POLICY, GuardrailsPolicy
from verax.integrity.checksums import IntegrityManifest
from verax.integrity.transaction import artifact_transaction
from verax.observe.engine import run_observation

logger = logging.getLogger(__name__)

ARTIFACT_FORMAT_VERSION = 1
EVIDENCE_DIR = "evidence"


class Observer(Protocol):
    """The observation step; ``run_observation`` drives a real browser."""

    def __call__(
        self,
        url: str,
        expectations: list[Expectation],
        config: RunConfig,
        evidence_dir: Path,
        *,
        started_at: float | None = None,
    ) -> Awaitable[ObservationReport]: ...


def load_expectations(path: Path) -> list[Expectation]:
    """Read expectations from a JSON file.

    The file holds either a list of expectations or an object with an
    ``expectations`` list.

    Raises:
        ConfigError: If the file is missing, unreadable or malformed.
    """
    if not path.exists():
        raise ConfigError(f"Expectations file not found: {path}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read expectations {path}: {e}") from None
    if isinstance(raw, dict):
        raw = raw.get("expectations")
    if not isinstance(raw, list):
        raise ConfigError(f"{path} must contain a list of expectations")
    try:
        expectations = [Expectation.model_validate(item) for item in raw]
    except ValidationError as e:
        raise ConfigError(f"Invalid expectation in {path}: {e.errors()[0]['msg']}") from None
    ids = [e.id for e in expectations]
    duplicates = sorted(i for i, n in Counter(ids).items() if n > 1)
    if duplicates:
        raise ConfigError(f"Duplicate expectation ids in {path}: {', '.join(duplicates)}")
    return expectations


def new_run_id() -> str:
    return f"{datetime.now(UTC).strftime('%Y%m%dT%H%M%SZ')}-{uuid.uuid4().hex[:6]}"


@dataclass
class RunResult:
    """Outcome of a committed run.

    Args:
        run_id: Identifier of the run (also its directory name).
        run_dir: Directory holding the committed artifacts.
        report: The observation report.
        findings: Findings in attempt order.
        manifest: Integrity manifest committed with the artifacts.
    """

    run_id: str
    run_dir: Path
    report: ObservationReport
    findings: list[Finding] = field(default_factory=list)
    manifest: IntegrityManifest | None = None

    def counts_by_status(self) -> dict[str, int]:
        counts = Counter(str(f.status) for f in self.findings)
        return {str(s): counts.get(str(s), 0) for s in TruthStatus}


def build_summary(
    run_id: str,
    report: ObservationReport,
    findings: list[Finding],
    policy: GuardrailsPolicy,
    verification_status: str | None = None,
) -> dict[str, Any]:
    counts = Counter(str(f.status) for f in findings)
    return {
        "version": ARTIFACT_FORMAT_VERSION,
        "runId": run_id,
        "url": report.url,
        "startedAt": report.started_at.isoformat() if report.started_at else None,
        "endedAt": report.ended_at.isoformat() if report.ended_at else None,
        "stats": report.stats.to_json_dict(),
        "verificationStatus": verification_status,
        "findingCounts": {str(s): counts.get(str(s), 0) for s in TruthStatus},
        "policy": {"version": policy.version, "source": policy.source},
    }


async def execute_run(
    url: str,
    expectations: list[Expectation],
    out_dir: Path,
    config: RunConfig | None = None,
    policy: GuardrailsPolicy = DEFAULT_POLICY,
    run_id: str | None = None,
    observer: Observer = run_observation,
) -> RunResult:
    """Observe ``url``, build findings and commit the run's artifacts.

    Args:
        url: Entry URL of the site under test.
        expectations: Expectations to attempt, in order.
        out_dir: Parent directory for run directories.
        config: Run configuration; defaults apply when None.
        policy: Guardrails policy, loaded once for the whole run.
        run_id: Run identifier; generated when None.
        observer: The observation step. It receives the run's
            ``time.monotonic()`` start so the global budget covers page load.

    Returns:
        The committed run.

    Raises:
        ObservationError: If the entry URL cannot be loaded.
        EvidenceBuildError: If a CONFIRMED finding lacks complete evidence.
        IntegrityError: If the artifacts cannot be committed.
        Any of these leaves the run directory poisoned and rolled back.
    """
    started_at = time.monotonic()
    config = config or RunConfig()
    run_id = run_id or new_run_id()
    run_dir = out_dir / run_id
    logger.info("Run %s: %d expectation(s) against %s", run_id, len(expectations), url)

    metadata = {"runId": run_id, "url": url, "expectations": len(expectations)}
    with artifact_transaction(run_dir, metadata) as txn:
        report = await observer(
            url, expectations, config, run_dir / EVIDENCE_DIR, started_at=started_at
        )
        verification_status = verification_status_for(report.observations)
        findings = detect_findings(expectations, report.observations, policy, verification_status)
        txn.write_json("observations.json", report.to_json_dict())
        txn.write_json(
            "findings.json",
            {
                "version": ARTIFACT_FORMAT_VERSION,
                "url": url,
                "findings": [f.to_json_dict() for f in findings],
            },
        )
        summary = build_summary(run_id, report, findings, policy, verification_status)
        txn.write_json("summary.json", summary)

    return RunResult(
        run_id=run_id,
        run_dir=run_dir,
        report=report,
        findings=findings,
        manifest=txn.manifest,
    )


def run(
    url: str,
    expectations: list[Expectation],
    out_dir: Path,
    config: RunConfig | None = None,
    policy: GuardrailsPolicy = DEFAULT_POLICY,
) -> RunResult:
    """Synchronous entry point around ``execute_run``."""
    return asyncio.run(execute_run(url, expectations, out_dir, config, policy))
