"""
Archive builder.

Copies the manifest's source paths into a private staging directory named
after the archive, writes a BACKUP_INFO.txt listing, and compresses the
staging directory into ``<prefix>-<YYYYMMDD-HHMMSS>.<ext>``. The archive is
written under a hidden partial name and renamed into place, so the output
directory never holds a half-written archive under a final name.
"""

from __future__ import annotations

import getpass
import logging
import os
import shutil
import socket
import tempfile
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from snapvault.backup.models import (
    ENCRYPTION_SUFFIXES,
    TIMESTAMP_FORMAT,
    Archive,
    BackupManifest,
    CompressionFormat,
    IssueKind,
    ValidationResult,
)
from snapvault.backup.snapshots import SNAPSHOT_PREFIX
from snapvault.backup.tools import ToolRunner
from snapvault.config.settings import ManifestEntry
from snapvault.errors import BackupError, ConfigurationError

logger = logging.getLogger(__name__)

INFO_FILENAME = "BACKUP_INFO.txt"
PARTIAL_SUFFIX = ".partial"


class ArchiveBuilder:
    """
    Builds a single compressed archive from a BackupManifest.

    Missing optional entries and optional entries that fail to copy are
    recorded as warnings; missing required entries abort before anything is
    written.
    """

    def __init__(
        self,
        project_root: Path,
        tools: ToolRunner,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self.tools = tools
        self.now = now

    def build(
        self,
        manifest: BackupManifest,
        compression: CompressionFormat,
        output_dir: Path,
        prefix: str,
    ) -> tuple[Archive, ValidationResult]:
        """
        Build an archive.

        Args:
            manifest: Source paths relative to the project root.
            compression: Compression format.
            output_dir: Existing, writable directory for the archive.
            prefix: Archive name prefix.

        Returns:
            The finalized (unsigned) archive and the warnings collected.

        Raises:
            ConfigurationError: Invalid output directory or missing required
                manifest entry.
            BackupError: Writing the archive failed.
        """
        result = ValidationResult()
        output_dir = Path(output_dir).resolve()

        self._validate_output_dir(output_dir)
        self._check_required(manifest)

        timestamp = self.now().strftime(TIMESTAMP_FORMAT)
        archive_path = self._unique_path(output_dir, prefix, timestamp, compression)
        stem = archive_path.name[: -len("." + compression.extension)]

        with tempfile.TemporaryDirectory(prefix="snapvault-stage-") as temp_dir:
            staging = Path(temp_dir) / stem
            staging.mkdir()

            skip = {output_dir, Path(temp_dir).resolve()}
            staged = 0
            for entry in manifest:
                staged += self._stage_entry(entry, staging, skip, result)

            if staged == 0:
                result.warn(
                    IssueKind.MISSING_OPTIONAL,
                    f"None of the manifest paths exist under {self.project_root}",
                )
                logger.warning(
                    f"None of the manifest paths exist under {self.project_root}; "
                    "the archive will only contain backup information"
                )

            self._write_info(staging, timestamp)

            partial = output_dir / f".{archive_path.name}{PARTIAL_SUFFIX}"
            logger.info(f"Compressing backup ({compression.value})...")
            try:
                self.tools.compress(staging, partial, compression)
                os.replace(partial, archive_path)
            except OSError as e:
                raise BackupError(f"Failed to write archive {archive_path}: {e}") from e
            finally:
                partial.unlink(missing_ok=True)

        archive = Archive(
            path=archive_path,
            timestamp=timestamp,
            compression=compression,
            size_bytes=archive_path.stat().st_size,
        )
        logger.info(f"Archive created: {archive_path} ({archive.size_bytes:,} bytes)")
        return archive, result

    def _validate_output_dir(self, output_dir: Path) -> None:
        if not output_dir.exists():
            raise ConfigurationError(
                f"Output directory does not exist: {output_dir}. "
                f"Create it first: mkdir -p {output_dir}"
            )
        if not output_dir.is_dir():
            raise ConfigurationError(f"Output path is not a directory: {output_dir}")
        if not os.access(output_dir, os.W_OK):
            raise ConfigurationError(
                f"Output directory is not writable: {output_dir}. "
                f"Check permissions: ls -ld {output_dir}"
            )

    def _check_required(self, manifest: BackupManifest) -> None:
        missing = [
            entry.path
            for entry in manifest
            if entry.required and not self._source(entry).exists()
        ]
        if missing:
            raise ConfigurationError(
                f"Required backup path(s) missing: {', '.join(missing)}"
            )

    def _unique_path(
        self, output_dir: Path, prefix: str, timestamp: str, compression: CompressionFormat
    ) -> Path:
        stem = f"{prefix}-{timestamp}"
        counter = 0
        while True:
            name = f"{stem}.{compression.extension}"
            candidates = [name] + [name + suffix for suffix in ENCRYPTION_SUFFIXES]
            if not any((output_dir / candidate).exists() for candidate in candidates):
                return output_dir / name
            counter += 1
            stem = f"{prefix}-{timestamp}-{counter}"

    def _source(self, entry: ManifestEntry) -> Path:
        return self.project_root / entry.path

    def _stage_entry(
        self,
        entry: ManifestEntry,
        staging: Path,
        skip: set[Path],
        result: ValidationResult,
    ) -> int:
        """Copy one manifest entry into the staging tree. Returns 1 if staged."""
        source = self._source(entry)
        if not source.exists():
            result.warn(
                IssueKind.MISSING_OPTIONAL, f"{entry.path} not found, skipping", entry.path
            )
            logger.warning(f"{entry.path} not found, skipping")
            return 0

        resolved = source.resolve()
        if any(resolved == s or s in resolved.parents for s in skip):
            result.warn(
                IssueKind.MISSING_OPTIONAL,
                f"{entry.path} is inside the backup output directory, skipping",
                entry.path,
            )
            logger.warning(f"{entry.path} is inside the backup output directory, skipping")
            return 0

        dest = staging / entry.path
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            if source.is_dir():
                if entry.include:
                    self._copy_selected(source, dest, entry.include, skip)
                else:
                    shutil.copytree(
                        source, dest, symlinks=True, ignore=self._ignore_for(skip)
                    )
            else:
                shutil.copy2(source, dest, follow_symlinks=False)
        except (OSError, shutil.Error) as e:
            if entry.required:
                raise BackupError(f"Failed to copy required path {entry.path}: {e}") from e
            result.warn(
                IssueKind.PARTIAL_TOOL_FAILURE,
                f"Failed to copy {entry.path}: {e}",
                entry.path,
            )
            logger.warning(f"Failed to copy {entry.path}: {e}")
            return 0

        logger.info(f"Backed up: {entry.path}")
        return 1

    def _copy_selected(
        self, source: Path, dest: Path, names: list[str], skip: set[Path]
    ) -> None:
        dest.mkdir(parents=True, exist_ok=True)
        ignore = self._ignore_for(skip)
        excluded = ignore(str(source), names)
        for name in names:
            child = source / name
            if name in excluded:
                logger.debug(f"{child} is excluded from backups, skipping")
            elif child.is_dir() and not child.is_symlink():
                shutil.copytree(child, dest / name, symlinks=True, ignore=ignore)
            elif child.exists() or child.is_symlink():
                shutil.copy2(child, dest / name, follow_symlinks=False)
            else:
                logger.debug(f"{child} not found, skipping")

    def _ignore_for(self, skip: set[Path]) -> Callable[[str, list[str]], set[str]]:
        """copytree ignore hook excluding output and snapshot directories."""

        def ignore(directory: str, names: list[str]) -> set[str]:
            ignored = set()
            base = Path(directory)
            for name in names:
                if name.startswith(SNAPSHOT_PREFIX):
                    ignored.add(name)
                    continue
                if (base / name).resolve() in skip:
                    ignored.add(name)
            return ignored

        return ignore

    def _write_info(self, staging: Path, timestamp: str) -> None:
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = "unknown"

        contents = sorted(
            str(p.relative_to(staging)) + ("/" if p.is_dir() else "")
            for p in staging.rglob("*")
        )
        lines = [
            "snapvault backup",
            "================",
            "",
            f"Backup Date: {self.now().isoformat(timespec='seconds')}",
            f"Timestamp: {timestamp}",
            f"Hostname: {socket.gethostname()}",
            f"User: {user}",
            f"Project Root: {self.project_root}",
            "",
            "Backup Contents:",
            "----------------",
            *contents,
            "",
        ]
        (staging / INFO_FILENAME).write_text("\n".join(lines))
