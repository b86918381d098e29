"""
Standalone backup verification.

Checks the checksum sidecar (when present) and probes the archive structure
by decompressing and listing it without extracting anything. The subject
archive is only ever read.
"""

from __future__ import annotations

import logging
import tempfile
from datetime import datetime
from pathlib import Path

from snapvault.backup.encryption import EncryptionWrapper, Encryptor
from snapvault.backup.integrity import IntegritySigner
from snapvault.backup.models import (
    CompressionFormat,
    VerificationReport,
    VerificationStatus,
    encryption_scheme_for,
)
from snapvault.backup.tools import ToolRunner
from snapvault.errors import ArchiveNotFoundError, IntegrityError

logger = logging.getLogger(__name__)


class Verifier:
    """Reports VALID, NO_CHECKSUM or CORRUPTED for an archive."""

    def __init__(self, tools: ToolRunner, signer: IntegritySigner) -> None:
        self.tools = tools
        self.signer = signer

    def verify(self, path: Path, encryptor: Encryptor | None = None) -> VerificationReport:
        """
        Verify an archive.

        Args:
            path: Archive to check.
            encryptor: Used to probe the structure of an encrypted archive
                (decrypted into a private temp dir). Without it only the
                checksum of the ciphertext is checked, and an encrypted
                archive with no checksum file is reported CORRUPTED.

        Raises:
            ArchiveNotFoundError: If the archive does not exist.
            DecryptionError: If an encryptor was given but cannot decrypt.
        """
        path = Path(path)
        if not path.is_file():
            raise ArchiveNotFoundError(f"Backup file not found: {path}")

        stat = path.stat()
        report = VerificationReport(
            status=VerificationStatus.CORRUPTED,
            archive_path=path,
            size_bytes=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime),
        )

        logger.info(f"Verifying backup: {path}")

        try:
            record = self.signer.read(path)
            if record is not None:
                report.checksum = record.digest
                self.signer.check(path, record)
                report.checksum_verified = True
                logger.info("Checksum: VALID")
            else:
                report.notes.append("No checksum file found, skipping checksum verification")
                logger.info("No checksum file found, skipping checksum verification")
        except IntegrityError as e:
            report.errors.append(str(e))
            logger.error(f"Checksum: INVALID ({e})")
            return report

        fmt = CompressionFormat.detect(path)
        if encryption_scheme_for(path) is not None:
            if encryptor is None and report.checksum_verified:
                report.notes.append("Archive is encrypted; structural check skipped")
            elif encryptor is None:
                # Neither the bytes nor the structure would be checked
                report.errors.append(
                    "Archive is encrypted and has no checksum file; nothing could be "
                    "verified (re-run with --decrypt to check its structure)"
                )
                logger.error("Encrypted archive without checksum cannot be verified")
            else:
                with tempfile.TemporaryDirectory(prefix="snapvault-verify-") as temp_dir:
                    plaintext = EncryptionWrapper(self.signer).decrypt(
                        path, encryptor, Path(temp_dir)
                    )
                    self._probe(plaintext, fmt, report)
        else:
            self._probe(path, fmt, report)

        if report.errors:
            report.status = VerificationStatus.CORRUPTED
        elif report.checksum_verified:
            report.status = VerificationStatus.VALID
        else:
            report.status = VerificationStatus.NO_CHECKSUM

        logger.info(f"Verification result: {report.status.value.upper()}")
        return report

    def _probe(
        self, path: Path, fmt: CompressionFormat | None, report: VerificationReport
    ) -> None:
        """List the archive, trying every format when the name gives none."""
        candidates = [fmt] if fmt is not None else list(CompressionFormat)
        last_error: IntegrityError | None = None
        for candidate in candidates:
            try:
                members = self.tools.list_members(path, candidate)
            except IntegrityError as e:
                last_error = e
                continue
            report.member_count = len(members)
            report.structure_verified = True
            logger.info(f"Archive: VALID ({len(members)} members, {candidate.value})")
            return

        report.errors.append(f"Archive is corrupted: {last_error}")
        logger.error(f"Archive: CORRUPTED ({last_error})")
