"""
Exception hierarchy for snapvault.

Lower layers (builder, signer, encryption, restore states) raise these;
the BackupManager facade turns them into result objects and the CLI maps
them to exit codes.
"""


class SnapvaultError(Exception):
    """Base exception for all snapvault errors."""

    pass


class ConfigurationError(SnapvaultError):
    """Raised when configuration or arguments are invalid.

    Always raised before any destructive action is taken.
    """

    pass


class ArchiveNotFoundError(ConfigurationError):
    """Raised when the named archive file does not exist."""

    pass


class BackupError(SnapvaultError):
    """Error while building a backup archive."""

    pass


class IntegrityError(SnapvaultError):
    """Raised on checksum mismatch, stale checksum or corrupted archive."""

    pass


class ToolUnavailableError(SnapvaultError):
    """Raised when a required external tool or key is not available."""

    pass


class StructuralError(SnapvaultError):
    """Raised when an archive does not have the expected layout."""

    pass


class EncryptionError(SnapvaultError):
    """Raised when the encryption tool fails."""

    pass


class DecryptionError(EncryptionError):
    """Raised when an archive cannot be decrypted (wrong key or passphrase)."""

    pass


class RestoreError(SnapvaultError):
    """Error during extraction or installation of a restore."""

    pass


class ServiceError(SnapvaultError):
    """Raised when the service manager fails to stop or start services."""

    pass
