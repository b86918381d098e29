"""
Command-line interface for snapvault.

Provides commands to create, verify, list and restore backups, and to
manage pre-restore safety snapshots.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, NoReturn

from snapvault import __version__
from snapvault.config.settings import (
    DEFAULT_CONFIG_FILE,
    VALID_COMPRESSION_FORMATS,
    VALID_ENCRYPTION_SCHEMES,
    Settings,
    apply_project_env,
    get_config_path,
    load_config,
    save_config,
)
from snapvault.errors import (
    ArchiveNotFoundError,
    ConfigurationError,
    SnapvaultError,
    ToolUnavailableError,
)

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0

# Error kinds that map to exit code 2 rather than 1
_SETUP_ERROR_KINDS = {
    ConfigurationError.__name__,
    ArchiveNotFoundError.__name__,
    ToolUnavailableError.__name__,
}

RULE = "━" * 70


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_verbose(message: str, level: int = 1) -> None:
    """Print a verbose message only if verbosity is high enough."""
    if _verbose_level >= level and not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def human_readable_size(size: int) -> str:
    """Format a byte count with binary units."""
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if value < 1024 or unit == "TiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for snapvault CLI."""
    parser = argparse.ArgumentParser(
        prog="snapvault",
        description="Backup, verify and restore a Docker Compose deployment",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"snapvault {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help=f"Override config file location (default: {DEFAULT_CONFIG_FILE})",
    )

    parser.add_argument(
        "--project-root",
        metavar="DIR",
        help="Deployment directory to back up or restore into",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Write a default configuration file",
        description="Create the config file with default settings and manifest.",
    )
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )
    init_parser.set_defaults(func=cmd_init)

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show effective configuration",
        description="Display project root, output directory, manifest and encryption settings.",
    )
    info_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    info_parser.set_defaults(func=cmd_info)

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Create a backup archive",
        description=(
            "Archive data volumes, configuration, certificates and compose files "
            "into a single compressed, checksummed and optionally encrypted file."
        ),
    )
    backup_parser.add_argument(
        "--output",
        metavar="DIR",
        help="Backup output directory (default: <project-root>/backups)",
    )
    backup_parser.add_argument(
        "--name",
        metavar="PREFIX",
        help="Backup name prefix",
    )
    backup_parser.add_argument(
        "--compress",
        choices=list(VALID_COMPRESSION_FORMATS),
        help="Compression format (default: gzip)",
    )
    backup_parser.add_argument(
        "--encrypt",
        action="store_true",
        default=None,
        help="Encrypt the backup (recommended for production)",
    )
    backup_parser.add_argument(
        "--recipient", "--gpg-recipient",
        dest="recipient",
        metavar="ID",
        help="GPG recipient email or key id (default: BACKUP_GPG_RECIPIENT)",
    )
    backup_parser.add_argument(
        "--scheme",
        choices=list(VALID_ENCRYPTION_SCHEMES),
        help="Encryption scheme (default: gpg)",
    )
    backup_parser.add_argument(
        "--stop-services",
        action="store_true",
        default=None,
        help="Stop services during the backup for data consistency",
    )
    backup_parser.set_defaults(func=cmd_backup)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore from a backup archive",
        description=(
            "Verify, decrypt and extract a backup, snapshot the current data, "
            "then install the backup over the project root."
        ),
    )
    restore_parser.add_argument(
        "backup_file",
        metavar="ARCHIVE",
        help="Path to the backup archive",
    )
    restore_parser.add_argument(
        "--skip-verify",
        action="store_true",
        help="Skip checksum verification (not recommended)",
    )
    restore_parser.add_argument(
        "--no-stop",
        action="store_true",
        help="Don't stop services before restore",
    )
    restore_parser.add_argument(
        "--no-start",
        action="store_true",
        help="Don't start services after restore",
    )
    restore_parser.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Answer yes to confirmation prompts",
    )
    restore_parser.set_defaults(func=cmd_restore)

    # verify-backup command
    verify_parser = subparsers.add_parser(
        "verify-backup",
        help="Verify a backup's checksum and archive integrity",
        description="Check the checksum sidecar and list the archive without extracting it.",
    )
    verify_parser.add_argument(
        "backup_file",
        metavar="ARCHIVE",
        help="Path to the backup archive",
    )
    verify_parser.add_argument(
        "--decrypt",
        action="store_true",
        help="Decrypt encrypted archives to a temp dir to check their structure",
    )
    verify_parser.set_defaults(func=cmd_verify_backup)

    # list command
    list_parser = subparsers.add_parser(
        "list",
        help="List backups in the output directory",
        description="Show archives, sizes and checksum status, newest first.",
    )
    list_parser.add_argument(
        "--output",
        metavar="DIR",
        help="Backup directory (default: <project-root>/backups)",
    )
    list_parser.add_argument(
        "--verify",
        action="store_true",
        help="Verify each archive",
    )
    list_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    list_parser.set_defaults(func=cmd_list)

    # snapshots command
    snapshots_parser = subparsers.add_parser(
        "snapshots",
        help="List or remove pre-restore safety snapshots",
        description="Safety snapshots are never removed automatically.",
    )
    snapshots_parser.add_argument(
        "action",
        choices=["list", "remove"],
        help="Action to perform",
    )
    snapshots_parser.add_argument(
        "path",
        nargs="?",
        metavar="PATH",
        help="Snapshot directory to remove",
    )
    snapshots_parser.set_defaults(func=cmd_snapshots)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def load_settings(args: argparse.Namespace) -> Settings:
    """Load configuration and apply command-line overrides."""
    config_path = Path(args.config) if args.config else None
    settings = load_config(config_path)
    if getattr(args, "project_root", None):
        settings.project_root = args.project_root
        apply_project_env(settings)
    # -v/-q on the command line win over the configured level
    if not args.verbose and not args.quiet:
        logging.getLogger("snapvault").setLevel(settings.log_level)
    return settings


def _exit_code_for(error_kind: str | None) -> int:
    return 2 if error_kind in _SETUP_ERROR_KINDS else 1


def _confirm(prompt: str) -> bool:
    response = input(f"{prompt} (y/N): ").strip().lower()
    return response in ("y", "yes")


def _prompt_passphrase(confirm: bool) -> str:
    passphrase = getpass.getpass("Backup passphrase: ")
    if confirm and getpass.getpass("Confirm passphrase: ") != passphrase:
        raise ConfigurationError("Passphrases do not match")
    return passphrase


def _build_manager(settings: Settings):
    from snapvault.backup import BackupManager

    return BackupManager(settings)


def cmd_init(args: argparse.Namespace) -> int:
    """Write a default configuration file."""
    config_path = Path(args.config) if args.config else get_config_path()
    if config_path.exists() and not args.force:
        output_error(f"Config file already exists: {config_path} (use --force to overwrite)")
        return 1

    settings = Settings()
    if args.project_root:
        settings.project_root = str(Path(args.project_root).resolve())
    save_config(settings, config_path)
    output(f"Configuration written to {config_path}")
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    """Show effective configuration."""
    settings = load_settings(args)

    info: dict[str, Any] = {
        "version": __version__,
        "config_file": str(Path(args.config) if args.config else get_config_path()),
        "project_root": str(settings.resolved_project_root()),
        "output_dir": str(settings.resolved_output_dir()),
        "snapshot_dir": str(settings.resolved_snapshot_dir()),
        "name_prefix": settings.backup.name_prefix,
        "compression": settings.backup.compression,
        "encryption": {
            "enabled": settings.encryption.enabled,
            "scheme": settings.encryption.scheme,
            "recipient": settings.encryption.recipient or None,
        },
        "services": {
            "enabled": settings.services.enabled,
            "command": " ".join(settings.services.compose_command),
        },
        "manifest": [
            {"path": e.path, "required": e.required, "include": e.include}
            for e in settings.manifest
        ],
    }

    if args.json:
        output(json.dumps(info, indent=2), force=True)
        return 0

    output("snapvault configuration")
    output("=" * 50)
    output()
    output(f"Version: {info['version']}")
    output(f"Config file: {info['config_file']}")
    output(f"Project root: {info['project_root']}")
    output(f"Output directory: {info['output_dir']}")
    output(f"Snapshot directory: {info['snapshot_dir']}")
    output(f"Backup name prefix: {info['name_prefix']}")
    output(f"Compression: {info['compression']}")
    enc = info["encryption"]
    output(f"Encryption: {'enabled' if enc['enabled'] else 'disabled'} ({enc['scheme']})")
    if enc["recipient"]:
        output(f"  Recipient: {enc['recipient']}")
    services = info["services"]
    output(f"Services: {services['command'] if services['enabled'] else 'disabled'}")
    output()
    output("Manifest:")
    for entry in settings.manifest:
        flags = "required" if entry.required else "optional"
        if entry.include:
            flags += f", only {', '.join(entry.include)}"
        output(f"  - {entry.path} ({flags})")
    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    """Create a backup archive."""
    settings = load_settings(args)
    manager = _build_manager(settings)

    encrypt = args.encrypt if args.encrypt is not None else settings.encryption.enabled
    scheme = args.scheme or settings.encryption.scheme
    recipient = args.recipient or settings.encryption.recipient or None

    passphrase = None
    if encrypt and (scheme == "fernet" or recipient is None):
        passphrase = manager.resolve_passphrase()
        if passphrase is None and sys.stdin.isatty():
            passphrase = _prompt_passphrase(confirm=True)

    output("snapvault Backup")
    output("=" * 50)
    output()
    output(f"Project root: {manager.project_root}")
    output(f"Output directory: {args.output or settings.resolved_output_dir()}")
    output()

    result = manager.create_backup(
        output_dir=Path(args.output) if args.output else None,
        prefix=args.name,
        compression=args.compress,
        encrypt=encrypt,
        recipient=recipient,
        passphrase=passphrase,
        scheme=scheme,
        stop_services=args.stop_services,
    )

    for warning in result.warnings:
        output_verbose(f"  warning: {warning}")

    if not result.success:
        output()
        output_error(f"Backup failed: {result.error}")
        if result.unencrypted_path:
            output_error(f"Keeping unencrypted backup at: {result.unencrypted_path}")
            output_error("To list available keys: gpg --list-keys")
        return _exit_code_for(result.error_kind)

    archive = result.archive
    output(RULE)
    output()
    output("Backup completed successfully!")
    output()
    output("Backup Details:")
    output(f"   File:      {archive.path}", force=True)
    output(f"   Size:      {human_readable_size(archive.size_bytes)} ({archive.size_bytes:,} bytes)")
    output(f"   Format:    {archive.compression.extension}")
    if archive.encrypted:
        output(f"   Encrypted: Yes ({archive.encryption_scheme})")
    else:
        output("   Encrypted: No")
    output(f"   Checksum:  {archive.checksum}")
    if result.warnings:
        output(f"   Warnings:  {len(result.warnings)} (use -v to show)")
    output()
    output("To verify this backup, run:")
    output(f"  snapvault verify-backup {archive.path}")
    output("To restore from this backup, run:")
    output(f"  snapvault restore {archive.path}")
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore from a backup archive."""
    from snapvault.backup.models import RestoreState

    settings = load_settings(args)
    manager = _build_manager(settings)
    backup_path = Path(args.backup_file)

    passphrase = manager.resolve_passphrase()
    # Symmetric archives: every .enc, and .gpg made without a recipient key
    symmetric = backup_path.name.endswith(".enc") or (
        backup_path.name.endswith(".gpg") and not settings.encryption.recipient
    )
    if passphrase is None and symmetric and sys.stdin.isatty():
        passphrase = _prompt_passphrase(confirm=False)

    output(RULE)
    output()
    output("snapvault Restore")
    output()
    output(RULE)
    output()
    output(f"Backup file: {backup_path}")
    output(f"Project root: {manager.project_root}")
    output()

    steps = {
        RestoreState.VALIDATING: "Step 1: Validating backup file...",
        RestoreState.VERIFYING: "Step 2: Verifying backup integrity...",
        RestoreState.DECRYPTING: "Step 3: Decrypting backup...",
        RestoreState.STOPPING_SERVICES: "Step 4: Stopping services...",
        RestoreState.EXTRACTING: "Step 5: Extracting backup...",
        RestoreState.INSTALLING: "Step 6: Restoring files...",
        RestoreState.STARTING_SERVICES: "Step 7: Starting services...",
    }

    def on_state(state: RestoreState) -> None:
        if state in steps:
            output(steps[state])

    confirm = (lambda prompt: True) if args.yes else _confirm

    result = manager.restore_backup(
        backup_path,
        skip_verify=args.skip_verify,
        stop_services=not args.no_stop,
        start_services=not args.no_start,
        passphrase=passphrase,
        confirm=confirm,
        on_state=on_state,
    )

    if result.cancelled:
        output("Restore cancelled by user")
        return 0

    if not result.success:
        output()
        stage = result.failed_state.label if result.failed_state else "restore"
        output_error(f"Restore failed during {stage}: {result.error}")
        if result.hint:
            output_error(f"Hint: {result.hint}")
        if result.safety_snapshot is not None:
            output_error(f"A safety snapshot was created at: {result.safety_snapshot.path}")
            output_error("To manually roll back, copy files from there")
        if result.services_restarted:
            output_error("Services were restarted")
        return _exit_code_for(result.error_kind)

    output()
    output(RULE)
    output()
    output("Restore completed successfully!")
    output()
    output(f"  Files restored: {result.files_restored}")
    if result.safety_snapshot is not None:
        output(f"  Safety snapshot: {result.safety_snapshot.path}")
    for warning in result.warnings:
        output(f"  Warning: {warning}")
    output()
    output("Next steps:")
    output("  docker compose ps")
    output("  docker compose logs -f")
    return 0


def cmd_verify_backup(args: argparse.Namespace) -> int:
    """Verify a backup archive."""
    from snapvault.backup.models import encryption_scheme_for

    settings = load_settings(args)
    manager = _build_manager(settings)

    try:
        report = manager.verify_backup(Path(args.backup_file), decrypt=args.decrypt)
    except ArchiveNotFoundError as e:
        output_error(f"Error: {e}")
        return 1

    output(f"Verifying backup: {report.archive_path}")
    encrypted = encryption_scheme_for(report.archive_path) is not None
    if report.checksum_verified:
        output("  Checksum: VALID")
    elif report.checksum is not None:
        output("  Checksum: INVALID")
    else:
        output("  Checksum: not available")

    if report.structure_verified:
        output(f"  Archive:  VALID ({report.member_count} members)")
    elif report.errors and report.checksum is None and encrypted and not args.decrypt:
        output("  Archive:  UNVERIFIED")
    elif report.errors:
        output("  Archive:  CORRUPTED")
    else:
        output("  Archive:  not checked")

    for note in report.notes:
        output(f"  Note: {note}")
    for error in report.errors:
        output_error(f"  - {error}")

    output()
    output("Backup information:")
    output(f"  Size: {human_readable_size(report.size_bytes)}")
    if report.modified_at is not None:
        output(f"  Modified: {report.modified_at.isoformat(timespec='seconds')}")
    output()
    output(f"Result: {report.status.value.upper()}", force=True)

    return 0 if report.ok else 1


def cmd_list(args: argparse.Namespace) -> int:
    """List backups in the output directory."""
    from snapvault.backup.models import VerificationStatus

    settings = load_settings(args)
    manager = _build_manager(settings)
    output_dir = Path(args.output) if args.output else settings.resolved_output_dir()

    listings = manager.list_backups(output_dir)
    rows = []
    for item in listings:
        row: dict[str, Any] = {
            "file": item.path.name,
            "size_bytes": item.size_bytes,
            "modified": item.modified_at.isoformat(timespec="seconds"),
            "encrypted": item.encrypted,
            "checksum": item.has_checksum,
            "orphan": item.orphan,
        }
        if item.orphan:
            row["status"] = VerificationStatus.CORRUPTED.value
        elif args.verify:
            row["status"] = manager.verify_backup(item.path).status.value
        rows.append(row)

    failed = any(row.get("status") == VerificationStatus.CORRUPTED.value for row in rows)
    exit_code = 1 if args.verify and failed else 0

    if args.json:
        output(json.dumps(rows, indent=2), force=True)
        return exit_code

    if not rows:
        output(f"No backups found in {output_dir}")
        return 0

    output(f"Backups in {output_dir}:")
    output()
    for row in rows:
        flags = []
        if row["encrypted"]:
            flags.append("encrypted")
        if row["orphan"]:
            flags.append("checksum without archive")
        elif not row["checksum"]:
            flags.append("no checksum")
        if "status" in row:
            flags.append(row["status"].upper())
        suffix = f"  [{', '.join(flags)}]" if flags else ""
        output(
            f"  {row['file']}  {human_readable_size(row['size_bytes']):>10}  "
            f"{row['modified']}{suffix}"
        )
    return exit_code


def cmd_snapshots(args: argparse.Namespace) -> int:
    """List or remove safety snapshots."""
    from snapvault.backup.snapshots import list_snapshots, remove_snapshot

    settings = load_settings(args)
    snapshot_dir = settings.resolved_snapshot_dir()

    if args.action == "list":
        snapshots = list_snapshots(snapshot_dir)
        if not snapshots:
            output(f"No safety snapshots in {snapshot_dir}")
            return 0
        for snapshot in snapshots:
            output(
                f"  {snapshot.path}  {snapshot.created_at.isoformat(timespec='seconds')}  "
                f"{human_readable_size(snapshot.size_bytes)}  ({', '.join(snapshot.entries)})"
            )
        return 0

    if not args.path:
        output_error("Error: snapshots remove requires a PATH")
        return 1
    remove_snapshot(Path(args.path))
    output(f"Removed {args.path}")
    return 0


def _handle_sigterm(signum: int, frame: Any) -> None:
    # Unwind through the cleanup scopes exactly like Ctrl-C
    raise KeyboardInterrupt


def main() -> NoReturn:
    """Main entry point for snapvault CLI."""
    parser = create_parser()
    args = parser.parse_args()

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    signal.signal(signal.SIGTERM, _handle_sigterm)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except (ConfigurationError, ToolUnavailableError) as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except SnapvaultError as e:
        output_error(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
