"""
SHA-256 checksum sidecars for backup artifacts.

Every finalized artifact ``name`` gets a sibling ``name.sha256`` in standard
sha256sum format. The record must always describe the bytes currently on
disk under that name; whenever an artifact is replaced (encryption produces a
new file) the sidecar is written again for the new name.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from snapvault.backup.models import CHECKSUM_SUFFIX, ChecksumRecord
from snapvault.backup.tools import ToolRunner
from snapvault.errors import IntegrityError

logger = logging.getLogger(__name__)


def sidecar_path(artifact: Path) -> Path:
    """Path of the checksum sidecar for an artifact."""
    artifact = Path(artifact)
    return artifact.with_name(artifact.name + CHECKSUM_SUFFIX)


class IntegritySigner:
    """Computes, writes and checks checksum sidecars."""

    def __init__(self, tools: ToolRunner) -> None:
        self.tools = tools

    def sign(self, artifact: Path) -> ChecksumRecord:
        """
        Compute the artifact's digest and write its sidecar.

        The sidecar is written to a temporary name and renamed into place so
        a reader never sees a half-written record.
        """
        artifact = Path(artifact)
        record = ChecksumRecord(digest=self.tools.checksum(artifact), subject=artifact.name)

        target = sidecar_path(artifact)
        partial = target.with_name(f".{target.name}.partial")
        try:
            partial.write_text(record.to_line())
            os.replace(partial, target)
        finally:
            partial.unlink(missing_ok=True)

        logger.info(f"Checksum written: {target.name} ({record.digest})")
        return record

    def read(self, artifact: Path) -> ChecksumRecord | None:
        """
        Read the sidecar for an artifact.

        Returns:
            The record, or None if no sidecar exists.

        Raises:
            IntegrityError: If the sidecar exists but is malformed.
        """
        target = sidecar_path(artifact)
        if not target.exists():
            return None
        try:
            lines = [line for line in target.read_text().splitlines() if line.strip()]
        except (OSError, UnicodeDecodeError) as e:
            raise IntegrityError(f"Cannot read checksum file {target}: {e}") from e
        if len(lines) != 1:
            raise IntegrityError(
                f"Checksum file {target.name} must contain exactly one record"
            )
        try:
            return ChecksumRecord.from_line(lines[0])
        except ValueError as e:
            raise IntegrityError(f"Malformed checksum file {target.name}: {e}") from e

    def check(self, artifact: Path, record: ChecksumRecord) -> None:
        """
        Re-derive the artifact digest and compare it with a record.

        Raises:
            IntegrityError: On a stale record (different subject) or a
                digest mismatch.
        """
        artifact = Path(artifact)
        if record.subject != artifact.name:
            raise IntegrityError(
                f"Checksum file describes {record.subject}, not {artifact.name}"
            )
        actual = self.tools.checksum(artifact)
        if actual != record.digest:
            raise IntegrityError(
                f"Checksum mismatch for {artifact.name}: "
                f"expected {record.digest[:16]}..., got {actual[:16]}..."
            )

    def remove(self, artifact: Path) -> None:
        """Delete an artifact's sidecar if present."""
        sidecar_path(artifact).unlink(missing_ok=True)
