"""
Backup and restore manager for snapvault.

Wires the archive builder, integrity signer, encryption wrapper, service
lifecycle, verifier and restore orchestrator together from Settings, and
reports outcomes as result objects.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path

from snapvault.backup.builder import ArchiveBuilder
from snapvault.backup.encryption import (
    EncryptionWrapper,
    Encryptor,
    FernetEncryptor,
    GpgEncryptor,
)
from snapvault.backup.integrity import IntegritySigner, sidecar_path
from snapvault.backup.models import (
    CHECKSUM_SUFFIX,
    Archive,
    BackupManifest,
    CompressionFormat,
    Issue,
    RestoreState,
    VerificationReport,
    encryption_scheme_for,
    is_recognized_archive,
)
from snapvault.backup.restore import RestoreOrchestrator, RestoreResult
from snapvault.backup.services import (
    DockerComposeController,
    NullServiceController,
    ServiceController,
    ServiceLifecycle,
)
from snapvault.backup.tools import TarToolRunner, ToolRunner
from snapvault.backup.verifier import Verifier
from snapvault.config.settings import Settings, is_valid_recipient
from snapvault.errors import (
    ConfigurationError,
    EncryptionError,
    SnapvaultError,
    ToolUnavailableError,
)

logger = logging.getLogger(__name__)


@dataclass
class BackupResult:
    """Result of a backup operation."""

    success: bool
    archive: Archive | None = None
    warnings: list[Issue] = field(default_factory=list)
    services_stopped: bool = False
    unencrypted_path: Path | None = None
    error: str | None = None
    error_kind: str | None = None

    @property
    def path(self) -> Path | None:
        return self.archive.path if self.archive else None

    @property
    def size_bytes(self) -> int:
        return self.archive.size_bytes if self.archive else 0


@dataclass
class BackupListing:
    """An archive found in a backup directory."""

    path: Path
    size_bytes: int
    modified_at: datetime
    encrypted: bool
    has_checksum: bool
    orphan: bool = False


class BackupManager:
    """
    Manages backup, restore and verification for one deployment.

    Usage:
        manager = BackupManager(load_config())
        result = manager.create_backup(compression="xz", encrypt=True)
        report = manager.verify_backup(result.path)
        restored = manager.restore_backup(result.path)
    """

    def __init__(
        self,
        settings: Settings,
        tools: ToolRunner | None = None,
        services: ServiceController | None = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        """
        Initialize backup manager.

        Args:
            settings: Loaded configuration.
            tools: Archive/checksum tooling (default: tarfile + hashlib).
            services: Service controller used for both backup and restore.
                Defaults to docker compose in the project root, or a no-op
                controller when services are disabled in the config.
        """
        self.settings = settings
        self.project_root = settings.resolved_project_root()
        self.tools = tools or TarToolRunner()
        self.signer = IntegritySigner(self.tools)
        self.verifier = Verifier(self.tools, self.signer)
        self.encryption = EncryptionWrapper(self.signer)
        self._services = services
        self.now = now

    @property
    def manifest(self) -> BackupManifest:
        return BackupManifest(list(self.settings.manifest))

    def backup_services(self) -> ServiceController:
        if self._services is not None:
            return self._services
        if not self.settings.services.enabled:
            return NullServiceController()
        return DockerComposeController(self.project_root, self.settings.services.compose_command)

    def restore_services(self) -> ServiceController:
        if self._services is not None:
            return self._services
        if not self.settings.services.enabled:
            return NullServiceController()
        return DockerComposeController.for_restore(
            self.project_root, self.settings.services.compose_command
        )

    def resolve_passphrase(self, passphrase: str | None = None) -> str | None:
        """Explicit passphrase, else the configured environment variable."""
        if passphrase:
            return passphrase
        return os.environ.get(self.settings.encryption.passphrase_env) or None

    def build_encryptor(
        self,
        scheme: str | None = None,
        recipient: str | None = None,
        passphrase: str | None = None,
        decrypt: bool = False,
    ) -> Encryptor:
        """
        Create the encryptor for a scheme from arguments and settings.

        Raises:
            ConfigurationError: Unknown scheme, missing recipient/passphrase
                or malformed recipient.
        """
        scheme = (scheme or self.settings.encryption.scheme).lower()
        passphrase = self.resolve_passphrase(passphrase)

        if scheme == "gpg":
            if decrypt:
                return GpgEncryptor(
                    passphrase=passphrase, binary=self.settings.encryption.gpg_binary
                )
            recipient = recipient or self.settings.encryption.recipient or None
            if recipient is None and passphrase is None:
                raise ConfigurationError(
                    "GPG encryption enabled but no recipient specified. "
                    "Set BACKUP_GPG_RECIPIENT or use --recipient"
                )
            if recipient is not None and not is_valid_recipient(recipient):
                raise ConfigurationError(
                    f"Invalid GPG recipient: {recipient}. Provide an email address or a key id"
                )
            return GpgEncryptor(
                recipient=recipient,
                passphrase=None if recipient else passphrase,
                binary=self.settings.encryption.gpg_binary,
            )

        if scheme == "fernet":
            if not passphrase:
                raise ConfigurationError(
                    "Passphrase encryption requires a passphrase. "
                    f"Set {self.settings.encryption.passphrase_env}"
                )
            return FernetEncryptor(passphrase)

        raise ConfigurationError(f"Unknown encryption scheme: {scheme}")

    def create_backup(
        self,
        output_dir: Path | None = None,
        prefix: str | None = None,
        compression: str | None = None,
        encrypt: bool | None = None,
        recipient: str | None = None,
        passphrase: str | None = None,
        scheme: str | None = None,
        stop_services: bool | None = None,
    ) -> BackupResult:
        """
        Create a backup archive.

        Arguments left as None fall back to the settings.

        Returns:
            BackupResult with success status and archive details. When
            encryption fails, ``unencrypted_path`` points at the preserved
            plaintext archive.
        """
        result = BackupResult(success=False)
        try:
            fmt = CompressionFormat.from_string(compression or self.settings.backup.compression)
            output_dir = Path(output_dir) if output_dir else self.settings.resolved_output_dir()
            prefix = prefix or self.settings.backup.name_prefix
            if "/" in prefix or not prefix.strip():
                raise ConfigurationError(f"Invalid backup name prefix: {prefix!r}")
            if encrypt is None:
                encrypt = self.settings.encryption.enabled
            if stop_services is None:
                stop_services = self.settings.services.stop_for_backup

            encryptor = self.build_encryptor(scheme, recipient, passphrase) if encrypt else None
            if encryptor is None:
                logger.warning(
                    "Backup encryption disabled - backup will contain sensitive data in plain text"
                )

            builder = ArchiveBuilder(self.project_root, self.tools, self.now)
            with ServiceLifecycle(self.backup_services()) as lifecycle:
                if stop_services:
                    lifecycle.stop()
                    result.services_stopped = lifecycle.services_stopped
                else:
                    logger.warning("Services will NOT be stopped during backup")
                archive, validation = builder.build(self.manifest, fmt, output_dir, prefix)
            result.warnings.extend(validation.warnings)

            record = self.signer.sign(archive.path)
            archive = replace(archive, checksum=record.digest)
            result.archive = archive

            if encryptor is not None:
                try:
                    result.archive = self.encryption.encrypt(archive, encryptor)
                except (ToolUnavailableError, EncryptionError, ConfigurationError) as e:
                    result.unencrypted_path = archive.path
                    result.error = str(e)
                    result.error_kind = type(e).__name__
                    logger.error(f"Encryption failed: {e}")
                    return result

            result.success = True
            logger.info(f"Backup completed: {result.archive.path}")

        except (SnapvaultError, OSError) as e:
            logger.error(f"Backup failed: {e}")
            result.error = str(e)
            result.error_kind = type(e).__name__

        return result

    def restore_backup(
        self,
        backup_path: Path,
        skip_verify: bool = False,
        stop_services: bool = True,
        start_services: bool = True,
        passphrase: str | None = None,
        confirm: Callable[[str], bool] | None = None,
        on_state: Callable[[RestoreState], None] | None = None,
    ) -> RestoreResult:
        """Restore from a backup archive over the project root."""
        orchestrator = RestoreOrchestrator(
            project_root=self.project_root,
            manifest=self.manifest,
            tools=self.tools,
            signer=self.signer,
            verifier=self.verifier,
            services=self.restore_services(),
            snapshot_root=self.settings.resolved_snapshot_dir(),
            encryptor_factory=lambda scheme: self.build_encryptor(
                scheme, passphrase=passphrase, decrypt=True
            ),
            confirm=confirm,
            on_state=on_state,
            now=self.now,
        )
        return orchestrator.restore(
            Path(backup_path),
            skip_verify=skip_verify,
            stop_services=stop_services,
            start_services=start_services,
        )

    def verify_backup(
        self, backup_path: Path, passphrase: str | None = None, decrypt: bool = False
    ) -> VerificationReport:
        """
        Verify an archive's checksum and structure.

        Args:
            backup_path: Archive to verify.
            passphrase: Passphrase for probing encrypted archives.
            decrypt: Decrypt encrypted archives to probe their structure.
        """
        backup_path = Path(backup_path)
        encryptor = None
        scheme = encryption_scheme_for(backup_path)
        if decrypt and scheme is not None:
            encryptor = self.build_encryptor(scheme, passphrase=passphrase, decrypt=True)
        return self.verifier.verify(backup_path, encryptor)

    def list_backups(self, output_dir: Path | None = None) -> list[BackupListing]:
        """
        List archives in the backup directory, newest first.

        Checksum files whose archive is missing are listed too, flagged as
        orphans.
        """
        output_dir = Path(output_dir) if output_dir else self.settings.resolved_output_dir()
        if not output_dir.is_dir():
            return []

        listings = []
        for path in output_dir.iterdir():
            if not path.is_file() or path.name.startswith("."):
                continue
            if path.suffix == CHECKSUM_SUFFIX:
                archive = path.with_name(path.name[: -len(CHECKSUM_SUFFIX)])
                if not archive.exists():
                    # A checksum without its archive means the archive was lost
                    logger.warning(f"Checksum file without archive: {path}")
                    stat = path.stat()
                    listings.append(
                        BackupListing(
                            path=path,
                            size_bytes=stat.st_size,
                            modified_at=datetime.fromtimestamp(stat.st_mtime),
                            encrypted=encryption_scheme_for(archive) is not None,
                            has_checksum=True,
                            orphan=True,
                        )
                    )
                continue
            if not is_recognized_archive(path):
                continue
            stat = path.stat()
            listings.append(
                BackupListing(
                    path=path,
                    size_bytes=stat.st_size,
                    modified_at=datetime.fromtimestamp(stat.st_mtime),
                    encrypted=encryption_scheme_for(path) is not None,
                    has_checksum=sidecar_path(path).exists(),
                )
            )
        listings.sort(key=lambda item: (item.modified_at, item.path.name), reverse=True)
        return listings
