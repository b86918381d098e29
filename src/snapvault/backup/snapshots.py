"""
Pre-restore safety snapshots.

Before a restore overwrites live state, the live copies of the manifest
paths and of any other path the restore will overwrite are copied to
``.restore-backup-<YYYYMMDD-HHMMSS>``. Snapshots are never deleted
automatically; operators list and remove them explicitly.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path

from snapvault.backup.models import TIMESTAMP_FORMAT, SafetySnapshot
from snapvault.config.settings import ManifestEntry
from snapvault.errors import ConfigurationError, RestoreError

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = ".restore-backup-"


def create_snapshot(
    project_root: Path,
    entries: Iterable[ManifestEntry],
    snapshot_root: Path,
    now: Callable[[], datetime] = datetime.now,
) -> SafetySnapshot | None:
    """
    Copy the live manifest paths into a new snapshot directory.

    Returns:
        The snapshot, or None if none of the paths exist (nothing to lose).

    Raises:
        RestoreError: If the snapshot cannot be written. Callers must not
            touch live state in that case.
    """
    project_root = Path(project_root)
    live = [
        entry.path
        for entry in entries
        if (project_root / entry.path).exists() or (project_root / entry.path).is_symlink()
    ]
    if not live:
        logger.info("No existing data found, skipping safety snapshot")
        return None

    created_at = now()
    snapshot_root = Path(snapshot_root)
    target = snapshot_root / f"{SNAPSHOT_PREFIX}{created_at.strftime(TIMESTAMP_FORMAT)}"
    counter = 0
    while target.exists():
        counter += 1
        target = snapshot_root / (
            f"{SNAPSHOT_PREFIX}{created_at.strftime(TIMESTAMP_FORMAT)}-{counter}"
        )

    logger.info("Creating safety snapshot of current data...")
    try:
        target.mkdir(parents=True)
        for rel in live:
            source = project_root / rel
            dest = target / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            if source.is_dir() and not source.is_symlink():
                shutil.copytree(
                    source, dest, symlinks=True, ignore=_ignore_snapshots(target)
                )
            else:
                shutil.copy2(source, dest, follow_symlinks=False)
    except (OSError, shutil.Error) as e:
        raise RestoreError(f"Failed to create safety snapshot at {target}: {e}") from e

    logger.info(f"Safety snapshot created in {target}")
    return SafetySnapshot(path=target, created_at=created_at, entries=live)


def _ignore_snapshots(target: Path) -> Callable[[str, list[str]], set[str]]:
    resolved_target = target.resolve()

    def ignore(directory: str, names: list[str]) -> set[str]:
        return {
            name
            for name in names
            if name.startswith(SNAPSHOT_PREFIX)
            or (Path(directory) / name).resolve() == resolved_target
        }

    return ignore


def list_snapshots(snapshot_root: Path) -> list[SafetySnapshot]:
    """List safety snapshots under a directory, oldest first."""
    snapshot_root = Path(snapshot_root)
    if not snapshot_root.is_dir():
        return []

    snapshots = []
    for path in sorted(snapshot_root.glob(f"{SNAPSHOT_PREFIX}*")):
        if not path.is_dir():
            continue
        stamp = path.name[len(SNAPSHOT_PREFIX) :][: len("YYYYmmdd-HHMMSS")]
        try:
            created_at = datetime.strptime(stamp, TIMESTAMP_FORMAT)
        except ValueError:
            created_at = datetime.fromtimestamp(path.stat().st_mtime)
        entries = sorted(str(p.relative_to(path)) for p in path.iterdir())
        snapshots.append(SafetySnapshot(path=path, created_at=created_at, entries=entries))
    return snapshots


def remove_snapshot(path: Path) -> None:
    """
    Delete a safety snapshot.

    Raises:
        ConfigurationError: If the path is not a snapshot directory.
    """
    path = Path(path)
    if not path.name.startswith(SNAPSHOT_PREFIX) or not path.is_dir():
        raise ConfigurationError(f"Not a safety snapshot directory: {path}")
    shutil.rmtree(path)
    logger.info(f"Removed safety snapshot {path}")
