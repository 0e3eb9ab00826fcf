"""SHA-256 checksums and integrity manifests for run artifacts."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from verax.core.errors import IntegrityError

MANIFEST_NAME = "integrity.manifest.json"
CHUNK_SIZE = 64 * 1024


def hash_file(path: Path) -> str:
    """Return the hex SHA-256 digest of ``path``'s bytes."""
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass
class IntegrityManifest:
    """Checksums of a set of artifacts.

    Args:
        checksums: Artifact filename to hex SHA-256 digest.
        generated_at: When the manifest was computed.
        errors: Artifacts that could not be hashed, with the reason.
    """

    checksums: dict[str, str] = field(default_factory=dict)
    generated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checksums": dict(sorted(self.checksums.items())),
            "generatedAt": self.generated_at.isoformat(),
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IntegrityManifest:
        return cls(
            checksums=dict(data.get("checksums", {})),
            generated_at=datetime.fromisoformat(data["generatedAt"]),
            errors=list(data.get("errors", [])),
        )

    def write(self, directory: Path) -> Path:
        path = directory / MANIFEST_NAME
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        return path


def compute_checksums(directory: Path, artifacts: Iterable[str]) -> IntegrityManifest:
    """Hash every named artifact under ``directory``.

    Missing or unreadable files are recorded in ``errors`` rather than raised.
    """
    manifest = IntegrityManifest()
    for name in artifacts:
        path = directory / name
        if not path.is_file():
            manifest.errors.append(f"Artifact not found: {name}")
            continue
        try:
            manifest.checksums[name] = hash_file(path)
        except OSError as e:
            manifest.errors.append(f"Failed to hash {name}: {e}")
    return manifest


@dataclass
class VerificationResult:
    """Outcome of checking artifacts against a manifest.

    Args:
        verified: Artifacts whose digest matched.
        failed: One dict per failure with ``name`` and ``reason``, plus
            ``expected``/``actual`` digests on a mismatch.
    """

    verified: list[str] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def verify_all_artifacts(directory: Path, manifest: IntegrityManifest) -> VerificationResult:
    """Re-hash each artifact in ``manifest`` and compare with its recorded digest."""
    result = VerificationResult()
    for name, expected in sorted(manifest.checksums.items()):
        path = directory / name
        if not path.is_file():
            result.failed.append({"name": name, "reason": "File not found"})
            continue
        try:
            actual = hash_file(path)
        except OSError as e:
            result.failed.append({"name": name, "reason": f"Verification failed: {e}"})
            continue
        if actual == expected:
            result.verified.append(name)
        else:
            result.failed.append(
                {
                    "name": name,
                    "reason": "Checksum mismatch",
                    "expected": expected,
                    "actual": actual,
                }
            )
    return result


def load_manifest(directory: Path) -> IntegrityManifest:
    """Read the integrity manifest stored in ``directory``.

    Raises:
        IntegrityError: If the manifest is missing or malformed.
    """
    path = directory / MANIFEST_NAME
    if not path.is_file():
        raise IntegrityError(f"No integrity manifest in {directory}")
    try:
        return IntegrityManifest.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise IntegrityError(f"Malformed integrity manifest {path}: {e}") from None
