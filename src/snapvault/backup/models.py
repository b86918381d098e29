"""
Data model for the backup lifecycle.

Archives, checksum records, safety snapshots, validation issues and the
restore state machine states.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from snapvault.config.settings import ManifestEntry
from snapvault.errors import ConfigurationError

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
CHECKSUM_SUFFIX = ".sha256"
CHECKSUM_ALGORITHM = "sha256"


class CompressionFormat(Enum):
    """Supported archive compression formats."""

    GZIP = "gzip"
    BZIP2 = "bzip2"
    XZ = "xz"

    @property
    def extension(self) -> str:
        """File extension without the leading dot."""
        return {
            CompressionFormat.GZIP: "tar.gz",
            CompressionFormat.BZIP2: "tar.bz2",
            CompressionFormat.XZ: "tar.xz",
        }[self]

    @property
    def tar_mode(self) -> str:
        """tarfile compression suffix (gz, bz2, xz)."""
        return self.extension.split(".", 1)[1]

    @classmethod
    def from_string(cls, value: str) -> CompressionFormat:
        """Parse a compression format name."""
        try:
            return cls(value.lower())
        except ValueError as e:
            valid = ", ".join(f.value for f in cls)
            raise ConfigurationError(
                f"Invalid compression format: {value}. Valid options: {valid}"
            ) from e

    @classmethod
    def detect(cls, path: Path | str) -> CompressionFormat | None:
        """Infer the format from a (possibly encrypted) archive filename."""
        name = Path(path).name
        for suffix in ENCRYPTION_SUFFIXES:
            if name.endswith(suffix):
                name = name[: -len(suffix)]
                break
        for fmt in cls:
            if name.endswith("." + fmt.extension):
                return fmt
        if name.endswith(".tgz"):
            return cls.GZIP
        return None


# Suffix appended by each encryption scheme
ENCRYPTION_SUFFIXES: dict[str, str] = {
    ".gpg": "gpg",
    ".enc": "fernet",
}


def encryption_scheme_for(path: Path | str) -> str | None:
    """Return the encryption scheme indicated by a filename, if any."""
    name = Path(path).name
    for suffix, scheme in ENCRYPTION_SUFFIXES.items():
        if name.endswith(suffix):
            return scheme
    return None


def is_recognized_archive(path: Path | str) -> bool:
    """True when the filename carries a known archive extension."""
    return CompressionFormat.detect(path) is not None


@dataclass
class BackupManifest:
    """Ordered set of source paths included in a backup."""

    entries: list[ManifestEntry] = field(default_factory=list)

    @property
    def paths(self) -> list[str]:
        return [entry.path for entry in self.entries]

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class ChecksumRecord:
    """Digest of an artifact, stored as a sibling <name>.sha256 file."""

    digest: str
    subject: str
    algorithm: str = CHECKSUM_ALGORITHM

    def to_line(self) -> str:
        """Serialize in standard sha256sum format."""
        return f"{self.digest}  {self.subject}\n"

    @classmethod
    def from_line(cls, line: str) -> ChecksumRecord:
        """
        Parse a sha256sum output line.

        Accepts both text ("<digest>  <name>") and binary ("<digest> *<name>")
        markers.

        Raises:
            ValueError: If the line is not in checksum-tool format.
        """
        line = line.strip()
        parts = line.split(None, 1)
        if len(parts) != 2:
            raise ValueError(f"Malformed checksum line: {line!r}")
        digest, subject = parts
        subject = subject.lstrip("*").strip()
        if len(digest) != 64 or any(c not in "0123456789abcdefABCDEF" for c in digest):
            raise ValueError(f"Malformed SHA-256 digest: {digest!r}")
        return cls(digest=digest.lower(), subject=Path(subject).name)


@dataclass(frozen=True)
class Archive:
    """
    An immutable backup artifact on disk.

    The checksum always describes the bytes currently stored at ``path``.
    Encryption produces a new Archive rather than mutating this one.
    """

    path: Path
    timestamp: str
    compression: CompressionFormat
    size_bytes: int
    checksum: str | None = None
    encrypted: bool = False
    encryption_scheme: str | None = None

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def checksum_path(self) -> Path:
        return self.path.with_name(self.path.name + CHECKSUM_SUFFIX)


@dataclass
class SafetySnapshot:
    """Copy of live state taken before a destructive restore."""

    path: Path
    created_at: datetime
    entries: list[str] = field(default_factory=list)

    @property
    def size_bytes(self) -> int:
        return sum(p.stat().st_size for p in self.path.rglob("*") if p.is_file())


class IssueKind(Enum):
    """Category of a validation issue."""

    MISSING_OPTIONAL = "missing_optional"
    MISSING_REQUIRED = "missing_required"
    PARTIAL_TOOL_FAILURE = "partial_tool_failure"
    NO_CHECKSUM = "no_checksum"
    VERIFICATION_SKIPPED = "verification_skipped"
    UNRECOGNIZED_EXTENSION = "unrecognized_extension"
    SERVICES = "services"
    ENCRYPTION = "encryption"


@dataclass(frozen=True)
class Issue:
    """A single warning or error collected during an operation."""

    kind: IssueKind
    message: str
    path: str | None = None

    def __str__(self) -> str:
        return self.message


@dataclass
class ValidationResult:
    """Errors and warnings collected while running an operation."""

    errors: list[Issue] = field(default_factory=list)
    warnings: list[Issue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def error(self, kind: IssueKind, message: str, path: str | None = None) -> None:
        self.errors.append(Issue(kind, message, path))

    def warn(self, kind: IssueKind, message: str, path: str | None = None) -> None:
        self.warnings.append(Issue(kind, message, path))

    def merge(self, other: ValidationResult) -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)


class VerificationStatus(Enum):
    """Outcome of a standalone archive verification."""

    VALID = "valid"
    NO_CHECKSUM = "no_checksum"
    CORRUPTED = "corrupted"

    @property
    def is_ok(self) -> bool:
        return self is not VerificationStatus.CORRUPTED


@dataclass
class VerificationReport:
    """Result of verifying an archive."""

    status: VerificationStatus
    archive_path: Path
    checksum: str | None = None
    checksum_verified: bool = False
    structure_verified: bool = False
    member_count: int = 0
    size_bytes: int = 0
    modified_at: datetime | None = None
    errors: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status.is_ok


class RestoreState(Enum):
    """States of the restore state machine."""

    VALIDATING = "validating"
    VERIFYING = "verifying"
    DECRYPTING = "decrypting"
    STOPPING_SERVICES = "stopping_services"
    EXTRACTING = "extracting"
    INSTALLING = "installing"
    STARTING_SERVICES = "starting_services"
    DONE = "done"
    FAILED = "failed"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")
