"""
Archive and checksum tooling behind a replaceable interface.

The pipeline never touches tar streams or hashes directly; it goes through a
ToolRunner so tests can substitute fakes and so the production implementation
can be swapped (for example for one that shells out to GNU tar).
"""

from __future__ import annotations

import bz2
import gzip
import hashlib
import logging
import lzma
import tarfile
import zlib
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath

from snapvault.backup.models import CompressionFormat
from snapvault.errors import BackupError, IntegrityError, RestoreError, StructuralError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192

_OPENERS = {
    CompressionFormat.GZIP: gzip.open,
    CompressionFormat.BZIP2: bz2.open,
    CompressionFormat.XZ: lzma.open,
}

# Errors the compression modules raise on damaged input
_STREAM_ERRORS = (OSError, EOFError, zlib.error, lzma.LZMAError, tarfile.TarError, ValueError)


class ToolRunner(ABC):
    """Operations the backup pipeline needs from archive and checksum tools."""

    @abstractmethod
    def compress(self, source_dir: Path, archive_path: Path, fmt: CompressionFormat) -> None:
        """Write ``source_dir`` as the single top-level directory of a new archive."""

    @abstractmethod
    def decompress(
        self, archive_path: Path, dest_dir: Path, fmt: CompressionFormat | None = None
    ) -> None:
        """Extract an archive into ``dest_dir``."""

    @abstractmethod
    def list_members(
        self, archive_path: Path, fmt: CompressionFormat | None = None
    ) -> list[str]:
        """List archive members without extracting, validating the stream."""

    @abstractmethod
    def checksum(self, path: Path) -> str:
        """Hex SHA-256 digest of a file."""


class TarToolRunner(ToolRunner):
    """ToolRunner backed by the tarfile, compression and hashlib modules."""

    def compress(self, source_dir: Path, archive_path: Path, fmt: CompressionFormat) -> None:
        source_dir = Path(source_dir)
        try:
            with tarfile.open(archive_path, f"w:{fmt.tar_mode}") as tar:
                tar.add(source_dir, arcname=source_dir.name)
        except (OSError, tarfile.TarError) as e:
            raise BackupError(f"Failed to write archive {archive_path}: {e}") from e

        logger.debug(f"Compressed {source_dir} -> {archive_path} ({fmt.value})")

    def decompress(
        self, archive_path: Path, dest_dir: Path, fmt: CompressionFormat | None = None
    ) -> None:
        mode = f"r:{fmt.tar_mode}" if fmt else "r:*"
        try:
            with tarfile.open(archive_path, mode) as tar:
                _check_member_names(tar.getmembers())
                # Link targets are kept as archived; member paths are confined to dest_dir
                tar.extractall(dest_dir, filter="tar")
        except tarfile.FilterError as e:
            raise StructuralError(f"Archive contains an unsafe member: {e}") from e
        except _STREAM_ERRORS as e:
            raise RestoreError(f"Failed to extract {archive_path}: {e}") from e

    def list_members(
        self, archive_path: Path, fmt: CompressionFormat | None = None
    ) -> list[str]:
        archive_path = Path(archive_path)
        if fmt is not None:
            self._drain_stream(archive_path, fmt)
        mode = f"r:{fmt.tar_mode}" if fmt else "r:*"
        try:
            with tarfile.open(archive_path, mode) as tar:
                return tar.getnames()
        except _STREAM_ERRORS as e:
            raise IntegrityError(f"Archive is not readable: {e}") from e

    def checksum(self, path: Path) -> str:
        hasher = hashlib.sha256()
        with open(path, "rb") as f:
            while chunk := f.read(CHUNK_SIZE):
                hasher.update(chunk)
        return hasher.hexdigest()

    def _drain_stream(self, archive_path: Path, fmt: CompressionFormat) -> None:
        """Decompress the whole stream so trailer CRCs are checked."""
        opener = _OPENERS[fmt]
        try:
            with opener(archive_path, "rb") as stream:
                while stream.read(CHUNK_SIZE * 8):
                    pass
        except _STREAM_ERRORS as e:
            raise IntegrityError(f"{fmt.value} stream is corrupted: {e}") from e


def _check_member_names(members: list[tarfile.TarInfo]) -> None:
    """Reject members whose own path would land outside the extraction directory."""
    for member in members:
        name = PurePosixPath(member.name)
        if name.is_absolute() or ".." in name.parts:
            raise StructuralError(f"Archive contains an unsafe member: {member.name!r}")
        if member.islnk() and ".." in PurePosixPath(member.linkname).parts:
            raise StructuralError(
                f"Archive contains an unsafe hard link: {member.name!r} -> {member.linkname!r}"
            )
