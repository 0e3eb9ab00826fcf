"""Tests for the atomic artifact transaction."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from verax.core.errors import IllegalTransitionError, IntegrityError
from verax.integrity import transaction
from verax.integrity.checksums import MANIFEST_NAME, VerificationResult
from verax.integrity.transaction import (
    LEDGER_NAME,
    POISON_MARKER,
    STAGING_DIR,
    ArtifactTransaction,
    TransactionState,
    artifact_transaction,
    check_poison_marker,
    read_ledger,
    verify_run,
)


class TestCommit:
    def test_commit_moves_artifacts(self, tmp_path: Path) -> None:
        run_dir = tmp_path / "run"
        with artifact_transaction(run_dir) as txn:
            assert (run_dir / POISON_MARKER).is_file()
            txn.write_json("findings.json", {"findings": []})
            txn.write_json("summary.json", {"runId": "run"})

        assert txn.state is TransactionState.COMMITTED
        assert sorted(p.name for p in run_dir.iterdir()) == [
            "findings.json",
            MANIFEST_NAME,
            "summary.json",
        ]
        assert sorted(txn.manifest.checksums) == ["findings.json", "summary.json"]
        assert not check_poison_marker(run_dir).has_poison_marker
        assert verify_run(run_dir).ok

    def test_poison_marker_content(self, tmp_path: Path) -> None:
        txn = ArtifactTransaction(tmp_path)
        txn.begin()
        marker = json.loads((tmp_path / POISON_MARKER).read_text())
        assert marker["version"] == "1.0"
        assert marker["status"] == "in-progress"
        assert check_poison_marker(tmp_path).to_dict()["hasPoisonMarker"] is True

    def test_nothing_staged(self, tmp_path: Path) -> None:
        with pytest.raises(IntegrityError, match="No artifacts staged"):
            with artifact_transaction(tmp_path):
                pass
        assert (tmp_path / POISON_MARKER).is_file()
        assert read_ledger(tmp_path)[0]["errorType"] == "IntegrityError"

    def test_verification_failure_moves_nothing(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def fail(directory, manifest):
            return VerificationResult(
                failed=[{"name": "findings.json", "reason": "Checksum mismatch"}]
            )

        monkeypatch.setattr(transaction, "verify_all_artifacts", fail)
        with pytest.raises(IntegrityError, match="verification failed"):
            with artifact_transaction(tmp_path) as txn:
                txn.write_json("findings.json", {"findings": []})

        assert not (tmp_path / "findings.json").exists()
        assert not (tmp_path / MANIFEST_NAME).exists()
        assert (tmp_path / POISON_MARKER).is_file()
        assert txn.state is TransactionState.ROLLED_BACK

    def test_failed_move_returns_moved_files(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        real_replace = transaction.os.replace
        calls = []

        def flaky_replace(src, dst):
            calls.append(Path(src).name)
            if len(calls) == 2:
                raise OSError("disk full")
            real_replace(src, dst)

        monkeypatch.setattr(transaction.os, "replace", flaky_replace)
        with pytest.raises(IntegrityError, match="Failed to move artifacts"):
            with artifact_transaction(tmp_path) as txn:
                txn.write_json("findings.json", {"findings": []})
                txn.write_json("summary.json", {"runId": "run"})

        assert calls[:2] == ["findings.json", "summary.json"]
        assert not (tmp_path / "findings.json").exists()
        assert not (tmp_path / "summary.json").exists()
        assert not (tmp_path / MANIFEST_NAME).exists()
        assert list((tmp_path / STAGING_DIR).iterdir()) == []
        assert check_poison_marker(tmp_path).has_poison_marker
        metadata = read_ledger(tmp_path)[0]["metadata"]
        assert metadata["stagedArtifacts"] == ["findings.json", "summary.json"]
        assert metadata["strandedArtifacts"] == []


class TestRollback:
    def test_exception_rolls_back_and_reraises(self, tmp_path: Path) -> None:
        with pytest.raises(RuntimeError, match="observer crashed"):
            with artifact_transaction(tmp_path, {"runId": "run-1"}) as txn:
                txn.write_json("findings.json", {"findings": []})
                raise RuntimeError("observer crashed")

        assert txn.state is TransactionState.ROLLED_BACK
        assert not (tmp_path / "findings.json").exists()
        assert list((tmp_path / STAGING_DIR).iterdir()) == []
        assert check_poison_marker(tmp_path).has_poison_marker

        ledger = read_ledger(tmp_path)
        assert len(ledger) == 1
        entry = ledger[0]
        assert entry["status"] == "error"
        assert entry["error"] == "observer crashed"
        assert entry["errorType"] == "RuntimeError"
        assert "RuntimeError: observer crashed" in entry["stack"]
        assert entry["metadata"] == {
            "runId": "run-1",
            "stagedArtifacts": ["findings.json"],
            "strandedArtifacts": [],
        }

    def test_ledger_appends(self, tmp_path: Path) -> None:
        for attempt in range(2):
            txn = ArtifactTransaction(tmp_path)
            txn.begin()
            txn.rollback(ValueError(f"attempt {attempt}"))
        assert [e["error"] for e in read_ledger(tmp_path)] == ["attempt 0", "attempt 1"]

    def test_ledger_entry_always_has_metadata(self, tmp_path: Path) -> None:
        txn = ArtifactTransaction(tmp_path)
        txn.begin()
        entry = txn.rollback(ValueError("boom"))
        assert entry["metadata"] == {"stagedArtifacts": [], "strandedArtifacts": []}
        assert read_ledger(tmp_path)[0]["metadata"] == entry["metadata"]

    def test_corrupt_ledger_reads_empty(self, tmp_path: Path) -> None:
        (tmp_path / LEDGER_NAME).write_text("[{broken")
        assert read_ledger(tmp_path) == []

    def test_poisoned_run_fails_verification(self, tmp_path: Path) -> None:
        txn = ArtifactTransaction(tmp_path)
        txn.begin()
        with pytest.raises(IntegrityError, match="poisoned"):
            verify_run(tmp_path)


class TestStaging:
    def test_whitelist(self, tmp_path: Path) -> None:
        txn = ArtifactTransaction(tmp_path)
        txn.begin()
        with pytest.raises(IntegrityError, match="whitelist"):
            txn.write_text("exploit.sh", "#!/bin/sh")

    def test_stage_before_begin(self, tmp_path: Path) -> None:
        with pytest.raises(IntegrityError, match="transaction is INIT"):
            ArtifactTransaction(tmp_path).staging_path("findings.json")

    def test_no_double_commit(self, tmp_path: Path) -> None:
        with artifact_transaction(tmp_path) as txn:
            txn.write_json("summary.json", {})
        with pytest.raises(IllegalTransitionError):
            txn.commit()

    def test_no_begin_twice(self, tmp_path: Path) -> None:
        txn = ArtifactTransaction(tmp_path)
        txn.begin()
        with pytest.raises(IllegalTransitionError):
            txn.begin()
