"""
Optional encryption layered on top of finalized, checksummed archives.

Two schemes are supported:

    gpg     GnuPG, either for a recipient key (asymmetric) or with a
            passphrase (symmetric AES256). Produces ``<archive>.gpg``.
    fernet  Built-in passphrase encryption (PBKDF2-HMAC-SHA256 key
            derivation, Fernet token). Needs no external tool. Produces
            ``<archive>.enc``.

Encryption never mutates an archive: it writes a new artifact, re-signs it,
and only then deletes the plaintext predecessor. If anything fails the
plaintext and its checksum stay on disk for manual recovery.
"""

from __future__ import annotations

import base64
import logging
import os
import secrets
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import replace
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from snapvault.backup.integrity import IntegritySigner
from snapvault.backup.models import ENCRYPTION_SUFFIXES, Archive
from snapvault.config.settings import is_valid_recipient
from snapvault.errors import (
    ConfigurationError,
    DecryptionError,
    EncryptionError,
    ToolUnavailableError,
)

logger = logging.getLogger(__name__)

# OWASP 2023 recommends 600,000 iterations for PBKDF2-SHA256
PBKDF2_ITERATIONS = 600_000
SALT_LENGTH = 16
MIN_PASSPHRASE_LENGTH = 12
FERNET_MAGIC = b"SNAPVAULT-ENC1\n"
GPG_TIMEOUT_SECONDS = 3600


class Encryptor(ABC):
    """An encryption scheme that turns one file into another."""

    scheme: str = ""
    suffix: str = ""

    @abstractmethod
    def check_available(self, decrypt: bool = False) -> None:
        """
        Fail fast if this scheme cannot run.

        Raises:
            ToolUnavailableError: If a tool or key is missing.
            ConfigurationError: If the scheme is misconfigured.
        """

    @abstractmethod
    def encrypt(self, source: Path, dest: Path) -> None:
        """Encrypt ``source`` into a new file ``dest``."""

    @abstractmethod
    def decrypt(self, source: Path, dest: Path) -> None:
        """Decrypt ``source`` into a new file ``dest``."""

    def describe(self) -> str:
        return self.scheme


class GpgEncryptor(Encryptor):
    """GnuPG encryption for a recipient key or with a symmetric passphrase."""

    scheme = "gpg"
    suffix = ".gpg"

    def __init__(
        self,
        recipient: str | None = None,
        passphrase: str | None = None,
        binary: str = "gpg",
    ) -> None:
        self.recipient = recipient or None
        self.passphrase = passphrase or None
        self.binary = binary

    def describe(self) -> str:
        if self.recipient:
            return f"gpg (recipient {self.recipient})"
        return "gpg (symmetric AES256)"

    def check_available(self, decrypt: bool = False) -> None:
        if shutil.which(self.binary) is None:
            raise ToolUnavailableError(
                f"GPG {'decryption' if decrypt else 'encryption'} requested "
                f"but {self.binary} command not found. Install GPG: "
                "sudo apt install gnupg (Debian/Ubuntu) or brew install gnupg (macOS)"
            )
        if decrypt:
            return

        if self.recipient is None and self.passphrase is None:
            raise ConfigurationError(
                "GPG encryption enabled but no recipient specified. "
                "Set BACKUP_GPG_RECIPIENT or use --recipient"
            )
        if self.recipient is not None:
            if not is_valid_recipient(self.recipient):
                raise ConfigurationError(
                    f"Invalid GPG recipient: {self.recipient}. "
                    "Provide an email address or a key id"
                )
            result = self._run(["--batch", "--list-keys", self.recipient])
            if result.returncode != 0:
                raise ToolUnavailableError(
                    f"No GPG key found for recipient {self.recipient}. "
                    "List keys with: gpg --list-keys; "
                    "generate one with: gpg --full-generate-key"
                )

    def encrypt(self, source: Path, dest: Path) -> None:
        if self.recipient is not None:
            args = [
                "--batch", "--yes",
                "--encrypt",
                "--recipient", self.recipient,
                "--trust-model", "always",
                "--output", str(dest),
                str(source),
            ]
            result = self._run(args)
        else:
            args = [
                "--batch", "--yes",
                "--symmetric",
                "--cipher-algo", "AES256",
                "--no-symkey-cache",
                "--pinentry-mode", "loopback",
                "--passphrase-fd", "0",
                "--output", str(dest),
                str(source),
            ]
            result = self._run(args, stdin=self.passphrase)

        if result.returncode != 0:
            raise EncryptionError(f"GPG encryption failed: {result.stderr.strip()}")

    def decrypt(self, source: Path, dest: Path) -> None:
        args = ["--batch", "--yes"]
        if self.passphrase is not None:
            args += ["--pinentry-mode", "loopback", "--passphrase-fd", "0"]
        args += ["--decrypt", "--output", str(dest), str(source)]

        result = self._run(args, stdin=self.passphrase)
        if result.returncode != 0:
            raise DecryptionError(f"GPG decryption failed: {result.stderr.strip()}")

    def _run(self, args: list[str], stdin: str | None = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.binary, *args],
                input=stdin,
                capture_output=True,
                text=True,
                timeout=GPG_TIMEOUT_SECONDS,
            )
        except FileNotFoundError as e:
            raise ToolUnavailableError(f"{self.binary} command not found") from e
        except subprocess.TimeoutExpired as e:
            raise EncryptionError(f"{self.binary} timed out") from e


class FernetEncryptor(Encryptor):
    """
    Passphrase encryption without external tools.

    File layout: ``FERNET_MAGIC`` + 16-byte salt + Fernet token. The key is
    derived from the passphrase with PBKDF2-HMAC-SHA256. The whole archive
    is held in memory while it is encrypted or decrypted.
    """

    scheme = "fernet"
    suffix = ".enc"

    def __init__(self, passphrase: str | None) -> None:
        self.passphrase = passphrase or ""

    def describe(self) -> str:
        return "fernet (passphrase)"

    def check_available(self, decrypt: bool = False) -> None:
        if not self.passphrase:
            raise ConfigurationError(
                "Passphrase encryption requires a passphrase. "
                "Set SNAPVAULT_PASSPHRASE or enter it when prompted"
            )
        if not decrypt and len(self.passphrase) < MIN_PASSPHRASE_LENGTH:
            raise ConfigurationError(
                f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters"
            )

    def encrypt(self, source: Path, dest: Path) -> None:
        salt = secrets.token_bytes(SALT_LENGTH)
        fernet = self._derive_key(salt)
        try:
            token = fernet.encrypt(Path(source).read_bytes())
            _write_private(Path(dest), FERNET_MAGIC + salt + token)
        except OSError as e:
            raise EncryptionError(f"Encryption failed: {e}") from e

    def decrypt(self, source: Path, dest: Path) -> None:
        try:
            data = Path(source).read_bytes()
        except OSError as e:
            raise DecryptionError(f"Cannot read {source}: {e}") from e

        if not data.startswith(FERNET_MAGIC):
            raise DecryptionError(f"{Path(source).name} is not a snapvault encrypted archive")
        header = len(FERNET_MAGIC)
        salt = data[header : header + SALT_LENGTH]
        token = data[header + SALT_LENGTH :]

        try:
            plaintext = self._derive_key(salt).decrypt(token)
        except InvalidToken as e:
            raise DecryptionError(
                "Decryption failed: wrong passphrase or damaged archive"
            ) from e

        try:
            _write_private(Path(dest), plaintext)
        except OSError as e:
            raise DecryptionError(f"Cannot write decrypted archive: {e}") from e

    def _derive_key(self, salt: bytes) -> Fernet:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        key = base64.urlsafe_b64encode(kdf.derive(self.passphrase.encode("utf-8")))
        return Fernet(key)


def _write_private(path: Path, data: bytes) -> None:
    """Write a file readable by the owner only."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


def strip_encryption_suffix(name: str) -> str:
    """Filename of the plaintext an encrypted artifact decrypts to."""
    for suffix in ENCRYPTION_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


class EncryptionWrapper:
    """Encrypts sealed archives and decrypts them into private working dirs."""

    def __init__(self, signer: IntegritySigner) -> None:
        self.signer = signer

    def encrypt(self, archive: Archive, encryptor: Encryptor) -> Archive:
        """
        Encrypt an archive, replacing it with a new, re-signed artifact.

        Raises:
            ToolUnavailableError: If the scheme cannot run. Nothing is touched.
            EncryptionError: If the tool fails. The plaintext archive and its
                checksum are preserved.
        """
        encryptor.check_available()

        dest = archive.path.with_name(archive.name + encryptor.suffix)
        partial = dest.with_name(f".{dest.name}.partial")

        logger.info(f"Encrypting {archive.name} with {encryptor.describe()}")
        try:
            encryptor.encrypt(archive.path, partial)
            if not partial.exists() or partial.stat().st_size == 0:
                raise EncryptionError(f"Encryption produced no output for {archive.name}")
            os.replace(partial, dest)
        except BaseException:
            partial.unlink(missing_ok=True)
            logger.warning(f"Keeping unencrypted backup at: {archive.path}")
            raise

        record = self.signer.sign(dest)

        archive.path.unlink()
        self.signer.remove(archive.path)

        logger.info(f"Backup encrypted: {dest.name}")
        return replace(
            archive,
            path=dest,
            size_bytes=dest.stat().st_size,
            checksum=record.digest,
            encrypted=True,
            encryption_scheme=encryptor.scheme,
        )

    def decrypt(self, path: Path, encryptor: Encryptor, work_dir: Path) -> Path:
        """
        Decrypt an artifact into ``work_dir``.

        The plaintext only ever lives inside the caller's private working
        directory; it is never written next to the ciphertext.

        Raises:
            DecryptionError: If decryption fails. No partial output is left.
        """
        encryptor.check_available(decrypt=True)

        dest = Path(work_dir) / strip_encryption_suffix(Path(path).name)
        logger.info(f"Decrypting {Path(path).name} with {encryptor.describe()}")
        try:
            encryptor.decrypt(Path(path), dest)
        except BaseException:
            dest.unlink(missing_ok=True)
            raise

        if not dest.exists():
            raise DecryptionError(f"Decryption produced no output for {Path(path).name}")
        return dest
