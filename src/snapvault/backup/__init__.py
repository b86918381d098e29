"""
Backup and restore functionality for snapvault.

This module snapshots a deployment's stateful paths into a single
verifiable, optionally encrypted archive and restores such archives with
integrity checks and a pre-restore safety snapshot.

Usage:
    from snapvault.backup import BackupManager

    # Create a backup
    manager = BackupManager(settings)
    result = manager.create_backup(compression="gzip")

    # Verify backup integrity
    report = manager.verify_backup(result.path)

    # Restore from backup
    restored = manager.restore_backup(result.path)
"""

from snapvault.backup.manager import BackupListing, BackupManager, BackupResult
from snapvault.backup.models import (
    Archive,
    BackupManifest,
    ChecksumRecord,
    CompressionFormat,
    RestoreState,
    SafetySnapshot,
    ValidationResult,
    VerificationReport,
    VerificationStatus,
)
from snapvault.backup.restore import RestoreOrchestrator, RestoreResult, RestoreSession

__all__ = [
    "BackupManager",
    "BackupResult",
    "BackupListing",
    "RestoreOrchestrator",
    "RestoreResult",
    "RestoreSession",
    "Archive",
    "BackupManifest",
    "ChecksumRecord",
    "CompressionFormat",
    "RestoreState",
    "SafetySnapshot",
    "ValidationResult",
    "VerificationReport",
    "VerificationStatus",
]
