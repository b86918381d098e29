"""
Configuration settings management for snapvault.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.snapvault/config.yaml by default, with the
path overridable via the SNAPVAULT_CONFIG environment variable.
"""

import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values

from snapvault.errors import ConfigurationError

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".snapvault"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
PROJECT_ENV_FILE = ".env"

VALID_COMPRESSION_FORMATS = ("gzip", "bzip2", "xz")
VALID_ENCRYPTION_SCHEMES = ("gpg", "fernet")

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
KEY_ID_PATTERN = re.compile(r"^(0x)?[0-9A-Fa-f]{8,40}$")


@dataclass
class ManifestEntry:
    """
    A single source path included in every backup.

    Attributes:
        path: Path relative to the project root (file or directory).
        required: If True, a missing path aborts the backup.
        include: For directories, restrict the copy to these child names.
    """

    path: str
    required: bool = False
    include: list[str] | None = None


def default_manifest() -> list[ManifestEntry]:
    """Stateful paths of a Compose-managed web application deployment."""
    return [
        ManifestEntry("volumes/data"),
        ManifestEntry("volumes/cache"),
        ManifestEntry("volumes/chroma"),
        ManifestEntry(".env"),
        ManifestEntry("config"),
        ManifestEntry("certs", include=["server.crt", "server.key", "ca.crt"]),
        ManifestEntry("docker-compose.yml"),
    ]


@dataclass
class BackupConfig:
    """Archive creation settings."""

    output_dir: str = ""
    name_prefix: str = "snapvault-backup"
    compression: str = "gzip"


@dataclass
class EncryptionConfig:
    """Archive encryption settings."""

    enabled: bool = False
    scheme: str = "gpg"
    recipient: str = ""
    passphrase_env: str = "SNAPVAULT_PASSPHRASE"
    gpg_binary: str = "gpg"


@dataclass
class ServicesConfig:
    """Service manager settings."""

    enabled: bool = True
    compose_command: list[str] = field(default_factory=lambda: ["docker", "compose"])
    stop_for_backup: bool = False


@dataclass
class RestoreConfig:
    """Restore settings."""

    snapshot_dir: str = ""


@dataclass
class Settings:
    """
    Complete snapvault configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with SNAPVAULT_.

    Attributes:
        project_root: Root of the deployment being backed up.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        backup: Archive creation settings.
        encryption: Encryption settings.
        services: Service manager settings.
        restore: Restore settings.
        manifest: Paths included in every backup.
    """

    project_root: str = "."
    log_level: str = "INFO"

    backup: BackupConfig = field(default_factory=BackupConfig)
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)
    restore: RestoreConfig = field(default_factory=RestoreConfig)
    manifest: list[ManifestEntry] = field(default_factory=default_manifest)

    def resolved_project_root(self) -> Path:
        """Absolute project root."""
        return Path(self.project_root).expanduser().resolve()

    def resolved_output_dir(self) -> Path:
        """Backup output directory, defaulting to <project_root>/backups."""
        if self.backup.output_dir:
            return Path(self.backup.output_dir).expanduser().resolve()
        return self.resolved_project_root() / "backups"

    def resolved_snapshot_dir(self) -> Path:
        """Directory holding pre-restore safety snapshots."""
        if self.restore.snapshot_dir:
            return Path(self.restore.snapshot_dir).expanduser().resolve()
        return self.resolved_project_root()


def is_valid_recipient(recipient: str) -> bool:
    """Check that a recipient looks like an email address or a key id."""
    return bool(EMAIL_PATTERN.match(recipient) or KEY_ID_PATTERN.match(recipient))


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from SNAPVAULT_CONFIG environment variable if set,
    otherwise returns the default path (~/.snapvault/config.yaml).
    """
    env_path = os.environ.get("SNAPVAULT_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses SNAPVAULT_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)
    settings = apply_project_env(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    snapvault_data = data.get("snapvault", {})

    if "project_root" in snapvault_data:
        settings.project_root = str(snapvault_data["project_root"])
    if "log_level" in snapvault_data:
        settings.log_level = str(snapvault_data["log_level"]).upper()

    backup = data.get("backup", {})
    if "output_dir" in backup:
        settings.backup.output_dir = str(backup["output_dir"])
    if "name_prefix" in backup:
        settings.backup.name_prefix = str(backup["name_prefix"])
    if "compression" in backup:
        settings.backup.compression = str(backup["compression"]).lower()

    encryption = data.get("encryption", {})
    if "enabled" in encryption:
        settings.encryption.enabled = bool(encryption["enabled"])
    if "scheme" in encryption:
        settings.encryption.scheme = str(encryption["scheme"]).lower()
    if "recipient" in encryption:
        settings.encryption.recipient = str(encryption["recipient"] or "")
    if "passphrase_env" in encryption:
        settings.encryption.passphrase_env = str(encryption["passphrase_env"])
    if "gpg_binary" in encryption:
        settings.encryption.gpg_binary = str(encryption["gpg_binary"])

    services = data.get("services", {})
    if "enabled" in services:
        settings.services.enabled = bool(services["enabled"])
    if "compose_command" in services:
        command = services["compose_command"]
        if isinstance(command, str):
            command = command.split()
        settings.services.compose_command = [str(part) for part in command]
    if "stop_for_backup" in services:
        settings.services.stop_for_backup = bool(services["stop_for_backup"])

    restore = data.get("restore", {})
    if "snapshot_dir" in restore:
        settings.restore.snapshot_dir = str(restore["snapshot_dir"])

    if "manifest" in data:
        settings.manifest = [_parse_manifest_entry(item) for item in data["manifest"] or []]

    return settings


def _parse_manifest_entry(item: Any) -> ManifestEntry:
    """Parse a manifest entry given either as a bare path or a mapping."""
    if isinstance(item, str):
        return ManifestEntry(path=item)
    if isinstance(item, dict) and "path" in item:
        include = item.get("include")
        return ManifestEntry(
            path=str(item["path"]),
            required=bool(item.get("required", False)),
            include=[str(name) for name in include] if include else None,
        )
    raise ConfigurationError(f"Invalid manifest entry: {item!r}")


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "SNAPVAULT_PROJECT_ROOT": ("project_root", str),
        "SNAPVAULT_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "SNAPVAULT_OUTPUT_DIR": ("backup.output_dir", str),
        "SNAPVAULT_BACKUP_NAME": ("backup.name_prefix", str),
        "SNAPVAULT_COMPRESS": ("backup.compression", lambda x: x.lower()),
        "SNAPVAULT_ENCRYPTION_SCHEME": ("encryption.scheme", lambda x: x.lower()),
        "SNAPVAULT_GPG_RECIPIENT": ("encryption.recipient", str),
    }

    # Recipient variable understood by the deployment's .env files
    if not settings.encryption.recipient and os.environ.get("BACKUP_GPG_RECIPIENT"):
        settings.encryption.recipient = os.environ["BACKUP_GPG_RECIPIENT"]

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested_attr(settings, attr_path, converter(value))

    return settings


def apply_project_env(settings: Settings) -> Settings:
    """
    Fill the GPG recipient from BACKUP_GPG_RECIPIENT in the project's .env.

    The config file and the process environment take precedence.

    Raises:
        ConfigurationError: If the .env file exists but cannot be read.
    """
    if settings.encryption.recipient:
        return settings

    env_file = settings.resolved_project_root() / PROJECT_ENV_FILE
    if not env_file.is_file():
        return settings

    try:
        values = dotenv_values(env_file)
    except OSError as e:
        raise ConfigurationError(f"Cannot read {env_file}: {e}") from e

    recipient = values.get("BACKUP_GPG_RECIPIENT")
    if recipient:
        settings.encryption.recipient = recipient
    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.backup.compression not in VALID_COMPRESSION_FORMATS:
        raise ConfigurationError(
            f"Invalid compression format: {settings.backup.compression}. "
            f"Valid options: {', '.join(VALID_COMPRESSION_FORMATS)}"
        )

    if not settings.backup.name_prefix or "/" in settings.backup.name_prefix:
        raise ConfigurationError(
            f"Invalid backup name prefix: {settings.backup.name_prefix!r}"
        )

    if settings.encryption.scheme not in VALID_ENCRYPTION_SCHEMES:
        raise ConfigurationError(
            f"Invalid encryption scheme: {settings.encryption.scheme}. "
            f"Valid options: {', '.join(VALID_ENCRYPTION_SCHEMES)}"
        )

    recipient = settings.encryption.recipient
    if recipient and not is_valid_recipient(recipient):
        raise ConfigurationError(
            f"Invalid GPG recipient: {recipient}. "
            "Provide an email address or a key id"
        )

    if not settings.services.compose_command:
        raise ConfigurationError("services.compose_command must not be empty")

    seen: set[str] = set()
    for entry in settings.manifest:
        entry_path = Path(entry.path)
        if entry_path.is_absolute() or ".." in entry_path.parts or not entry.path.strip():
            raise ConfigurationError(
                f"Manifest paths must be relative to the project root: {entry.path}"
            )
        if entry.path in seen:
            raise ConfigurationError(f"Duplicate manifest entry: {entry.path}")
        seen.add(entry.path)


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    manifest: list[dict[str, Any]] = []
    for entry in settings.manifest:
        item: dict[str, Any] = {"path": entry.path, "required": entry.required}
        if entry.include:
            item["include"] = list(entry.include)
        manifest.append(item)

    return {
        "snapvault": {
            "project_root": settings.project_root,
            "log_level": settings.log_level,
        },
        "backup": {
            "output_dir": settings.backup.output_dir,
            "name_prefix": settings.backup.name_prefix,
            "compression": settings.backup.compression,
        },
        "encryption": {
            "enabled": settings.encryption.enabled,
            "scheme": settings.encryption.scheme,
            "recipient": settings.encryption.recipient,
            "passphrase_env": settings.encryption.passphrase_env,
            "gpg_binary": settings.encryption.gpg_binary,
        },
        "services": {
            "enabled": settings.services.enabled,
            "compose_command": list(settings.services.compose_command),
            "stop_for_backup": settings.services.stop_for_backup,
        },
        "restore": {
            "snapshot_dir": settings.restore.snapshot_dir,
        },
        "manifest": manifest,
    }
