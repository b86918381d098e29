"""
Restore orchestration.

A restore runs through an explicit sequence of states:

    VALIDATING -> VERIFYING -> DECRYPTING (encrypted archives only)
      -> STOPPING_SERVICES (optional) -> EXTRACTING -> INSTALLING
      -> STARTING_SERVICES (only if services were stopped) -> DONE

Any state can end in FAILED. Each state is a separate method so it can be
exercised on its own. Temporary artifacts (decrypted plaintext, extraction
staging directory) belong to a RestoreSession and are removed on every exit
path; stopped services are restarted by the ServiceLifecycle scope even when
a later state fails or the process is interrupted. Live state is only
touched in INSTALLING, and only after a safety snapshot has been written.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath

from snapvault.backup.builder import INFO_FILENAME
from snapvault.backup.encryption import EncryptionWrapper, Encryptor
from snapvault.backup.integrity import IntegritySigner, sidecar_path
from snapvault.backup.models import (
    BackupManifest,
    CompressionFormat,
    Issue,
    IssueKind,
    RestoreState,
    SafetySnapshot,
    VerificationReport,
    encryption_scheme_for,
    is_recognized_archive,
)
from snapvault.backup.services import ServiceController, ServiceLifecycle
from snapvault.backup.snapshots import create_snapshot
from snapvault.backup.tools import ToolRunner
from snapvault.backup.verifier import Verifier
from snapvault.config.settings import ManifestEntry
from snapvault.errors import (
    ArchiveNotFoundError,
    ConfigurationError,
    IntegrityError,
    SnapvaultError,
    StructuralError,
)

logger = logging.getLogger(__name__)

# Remediation shown to the operator when a state fails
STATE_HINTS: dict[RestoreState, str] = {
    RestoreState.VALIDATING: "Check the backup file path and try again",
    RestoreState.VERIFYING: (
        "The backup file may be corrupted. Re-run with --skip-verify only if "
        "you trust the source"
    ),
    RestoreState.DECRYPTING: (
        "Check that the decryption key or passphrase is available "
        "(gpg --list-secret-keys, SNAPVAULT_PASSPHRASE)"
    ),
    RestoreState.STOPPING_SERVICES: (
        "Check the service manager (docker compose ps) or re-run with --no-stop"
    ),
    RestoreState.EXTRACTING: (
        "The archive is damaged or is not a snapvault backup; inspect it with: tar -tf <archive>"
    ),
    RestoreState.INSTALLING: (
        "Live data may be partially restored; roll back from the safety snapshot"
    ),
    RestoreState.STARTING_SERVICES: (
        "Files were restored; start services manually: docker compose up -d"
    ),
}


@dataclass
class RestoreResult:
    """Result of a restore operation."""

    success: bool
    state: RestoreState = RestoreState.VALIDATING
    failed_state: RestoreState | None = None
    files_restored: int = 0
    safety_snapshot: SafetySnapshot | None = None
    verification: VerificationReport | None = None
    cancelled: bool = False
    services_stopped: bool = False
    services_restarted: bool = False
    warnings: list[Issue] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None
    hint: str | None = None


class RestoreSession:
    """
    Transient state owned by one restore invocation.

    The private working directory is created on first use and removed,
    together with everything in it, when the session exits.
    """

    def __init__(self, archive_path: Path, temp_parent: Path | None = None) -> None:
        self.archive_path = Path(archive_path)
        self.working_file = self.archive_path
        self.decrypted = False
        self.services_stopped = False
        self.temp_parent = temp_parent
        self.work_dir: Path | None = None

    def __enter__(self) -> RestoreSession:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.cleanup()
        return False

    def ensure_work_dir(self) -> Path:
        if self.work_dir is None:
            self.work_dir = Path(
                tempfile.mkdtemp(prefix="snapvault-restore-", dir=self.temp_parent)
            )
        return self.work_dir

    def cleanup(self) -> None:
        if self.work_dir is None:
            return
        logger.debug(f"Removing temporary restore files in {self.work_dir}")
        try:
            shutil.rmtree(self.work_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove temporary directory {self.work_dir}: {e}")
            return
        self.work_dir = None


class RestoreOrchestrator:
    """Runs the restore state machine against a project root."""

    def __init__(
        self,
        project_root: Path,
        manifest: BackupManifest,
        tools: ToolRunner,
        signer: IntegritySigner,
        verifier: Verifier,
        services: ServiceController,
        snapshot_root: Path,
        encryptor_factory: Callable[[str], Encryptor] | None = None,
        confirm: Callable[[str], bool] | None = None,
        on_state: Callable[[RestoreState], None] | None = None,
        temp_parent: Path | None = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self.manifest = manifest
        self.tools = tools
        self.signer = signer
        self.verifier = verifier
        self.services = services
        self.snapshot_root = Path(snapshot_root)
        self.encryptor_factory = encryptor_factory
        self.confirm = confirm
        self.on_state = on_state
        self.temp_parent = temp_parent
        self.now = now

    def restore(
        self,
        archive_path: Path,
        skip_verify: bool = False,
        stop_services: bool = True,
        start_services: bool = True,
    ) -> RestoreResult:
        """
        Restore an archive over the project root.

        Args:
            archive_path: Archive to restore (plain or encrypted).
            skip_verify: Skip checksum verification.
            stop_services: Stop services before extracting.
            start_services: Start services after a successful restore.
                Services stopped by this restore are always restarted if
                the restore fails.

        Returns:
            RestoreResult describing the outcome. Failures are reported in
            the result; only KeyboardInterrupt propagates (after cleanup).
        """
        result = RestoreResult(success=False)
        session = RestoreSession(archive_path, self.temp_parent)
        lifecycle = ServiceLifecycle(self.services, restart_on_success=start_services)

        try:
            with session, lifecycle:
                self._enter(result, RestoreState.VALIDATING)
                if not self.validate(session, result):
                    result.cancelled = True
                    logger.info("Restore cancelled by user")
                    return result

                self._enter(result, RestoreState.VERIFYING)
                self.verify(session, result, skip_verify)

                if encryption_scheme_for(session.archive_path) is not None:
                    self._enter(result, RestoreState.DECRYPTING)
                    self.decrypt(session)
                else:
                    logger.info("Backup is not encrypted, skipping decryption")

                if stop_services:
                    self._enter(result, RestoreState.STOPPING_SERVICES)
                    self.stop_services(session, lifecycle)
                    result.services_stopped = session.services_stopped
                else:
                    logger.warning("Skipping service stop (--no-stop)")

                self._enter(result, RestoreState.EXTRACTING)
                backup_root = self.extract(session)

                self._enter(result, RestoreState.INSTALLING)
                result.safety_snapshot = self.snapshot(backup_root)
                result.files_restored = self.install(backup_root)

                if lifecycle.services_stopped and start_services:
                    self._enter(result, RestoreState.STARTING_SERVICES)
                    result.services_restarted = self.start_services(session, lifecycle)
                elif lifecycle.services_stopped:
                    logger.warning("Skipping service start (--no-start)")

                self._enter(result, RestoreState.DONE)
                result.success = True
        except KeyboardInterrupt:
            self._fail(result, "Restore interrupted")
            raise
        except (SnapvaultError, OSError) as e:
            self._fail(result, str(e), type(e).__name__)

        if not result.success and session.services_stopped and not lifecycle.services_stopped:
            result.services_restarted = True

        if result.success:
            logger.info(f"Restore completed successfully: {result.files_restored} files")
        return result

    # States

    def validate(self, session: RestoreSession, result: RestoreResult) -> bool:
        """
        Check the archive exists and has a recognized extension.

        Returns:
            False if the operator declined to continue with an unrecognized
            extension.
        """
        path = session.archive_path
        if ".." in path.parts:
            raise ConfigurationError(
                f"Backup file path contains '..' (potential path traversal): {path}"
            )
        if not path.is_file():
            raise ArchiveNotFoundError(f"Backup file not found: {path}")

        if not is_recognized_archive(path):
            message = (
                f"Unexpected backup file extension: {path.name}. "
                "Expected .tar.gz, .tar.bz2 or .tar.xz, optionally with .gpg or .enc"
            )
            logger.warning(message)
            result.warnings.append(Issue(IssueKind.UNRECOGNIZED_EXTENSION, message, str(path)))
            if self.confirm is None or not self.confirm("Continue anyway?"):
                return False

        logger.info("Backup file found")
        return True

    def verify(self, session: RestoreSession, result: RestoreResult, skip_verify: bool) -> None:
        """Validate the checksum sidecar when one exists."""
        if skip_verify:
            message = "Skipping integrity verification (--skip-verify)"
            logger.warning(message)
            result.warnings.append(Issue(IssueKind.VERIFICATION_SKIPPED, message))
            return

        if not sidecar_path(session.archive_path).exists():
            message = "No checksum file found, skipping verification"
            logger.warning(message)
            result.warnings.append(Issue(IssueKind.NO_CHECKSUM, message))
            return

        report = self.verifier.verify(session.archive_path)
        result.verification = report
        if not report.ok:
            raise IntegrityError(
                "Backup integrity verification failed: " + "; ".join(report.errors)
            )
        logger.info("Backup integrity verified")

    def decrypt(self, session: RestoreSession) -> None:
        """Decrypt the archive into the session's private working directory."""
        scheme = encryption_scheme_for(session.archive_path)
        if self.encryptor_factory is None or scheme is None:
            raise ConfigurationError(f"No decryption configured for {session.archive_path.name}")

        encryptor = self.encryptor_factory(scheme)
        plaintext = EncryptionWrapper(self.signer).decrypt(
            session.archive_path, encryptor, session.ensure_work_dir()
        )
        session.working_file = plaintext
        session.decrypted = True
        logger.info("Backup decrypted successfully")

    def stop_services(self, session: RestoreSession, lifecycle: ServiceLifecycle) -> None:
        lifecycle.stop()
        session.services_stopped = lifecycle.services_stopped

    def extract(self, session: RestoreSession) -> Path:
        """
        Extract into a staging directory and locate the backup root.

        Raises:
            StructuralError: Zero or several top-level directories, or stray
                top-level files.
        """
        staging = session.ensure_work_dir() / "staging"
        staging.mkdir()
        fmt = CompressionFormat.detect(session.working_file)
        self.tools.decompress(session.working_file, staging, fmt)
        backup_root = find_backup_root(staging)
        logger.info("Backup extracted to temporary location")
        return backup_root

    def snapshot(self, backup_root: Path | None = None) -> SafetySnapshot | None:
        """
        Snapshot the live copies of the manifest paths and of every other
        path the staged tree would overwrite.
        """
        entries = list(self.manifest)
        if backup_root is not None:
            covered = [entry.path for entry in entries]
            entries.extend(
                ManifestEntry(path=rel) for rel in overwritten_paths(backup_root, covered)
            )
        return create_snapshot(self.project_root, entries, self.snapshot_root, self.now)

    def install(self, backup_root: Path) -> int:
        """
        Copy the staged tree over the project root.

        Returns:
            Number of files restored.
        """
        restored = 0
        for item in sorted(backup_root.iterdir()):
            if item.name == INFO_FILENAME:
                continue
            restored += install_path(item, self.project_root / item.name)
        logger.info(f"Files restored: {restored}")
        return restored

    def start_services(self, session: RestoreSession, lifecycle: ServiceLifecycle) -> bool:
        started = lifecycle.start()
        session.services_stopped = lifecycle.services_stopped
        return started

    # Bookkeeping

    def _enter(self, result: RestoreResult, state: RestoreState) -> None:
        result.state = state
        logger.debug(f"Restore state: {state.label}")
        if self.on_state is not None:
            self.on_state(state)

    def _fail(self, result: RestoreResult, message: str, kind: str | None = None) -> None:
        result.failed_state = result.state
        result.state = RestoreState.FAILED
        result.error = message
        result.error_kind = kind
        result.hint = STATE_HINTS.get(result.failed_state)
        logger.error(f"Restore failed during {result.failed_state.label}: {message}")
        if result.safety_snapshot is not None:
            logger.warning(f"A safety snapshot was created at: {result.safety_snapshot.path}")
            logger.warning("To manually roll back, copy files from there")


def find_backup_root(staging: Path) -> Path:
    """
    Return the single top-level directory of an extracted archive.

    Raises:
        StructuralError: If the layout is not exactly one directory.
    """
    entries = sorted(staging.iterdir())
    dirs = [e for e in entries if e.is_dir() and not e.is_symlink()]
    others = [e for e in entries if e not in dirs]

    if not dirs:
        raise StructuralError("No backup directory found in archive")
    if len(dirs) > 1:
        names = ", ".join(d.name for d in dirs)
        raise StructuralError(
            f"Archive has {len(dirs)} top-level directories ({names}); expected exactly one"
        )
    if others:
        names = ", ".join(o.name for o in others)
        raise StructuralError(f"Unexpected top-level files in archive: {names}")
    return dirs[0]


def install_path(source: Path, dest: Path) -> int:
    """
    Copy a staged file, symlink or directory over its live counterpart.

    Directories are merged; files and symlinks replace whatever is at
    ``dest``. Returns the number of non-directory entries written.
    """
    if source.is_dir() and not source.is_symlink():
        if dest.is_symlink() or (dest.exists() and not dest.is_dir()):
            dest.unlink()
        dest.mkdir(exist_ok=True)
        restored = sum(
            install_path(child, dest / child.name) for child in sorted(source.iterdir())
        )
        shutil.copystat(source, dest)
        return restored

    if dest.is_symlink():
        dest.unlink()
    elif dest.is_dir():
        shutil.rmtree(dest)
    elif dest.exists():
        dest.unlink()
    shutil.copy2(source, dest, follow_symlinks=False)
    return 1

def overwritten_paths(backup_root: Path, covered: list[str]) -> list[str]:
    """
    Paths under ``backup_root`` that installing it would write and that no
    path in ``covered`` already contains.

    Directories are descended only as far as needed to separate covered from
    uncovered content, so the result is as coarse as possible.
    """
    covered_parts = [PurePosixPath(p).parts for p in covered]
    found: list[str] = []

    def walk(directory: Path, prefix: tuple[str, ...]) -> None:
        for item in sorted(directory.iterdir()):
            if not prefix and item.name == INFO_FILENAME:
                continue
            parts = prefix + (item.name,)
            if any(parts[: len(c)] == c for c in covered_parts):
                continue
            below = any(len(c) > len(parts) and c[: len(parts)] == parts for c in covered_parts)
            if below and item.is_dir() and not item.is_symlink():
                walk(item, parts)
            else:
                found.append("/".join(parts))

    walk(backup_root, ())
    return found
