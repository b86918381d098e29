"""
Tests for the restore state machine.

Tests cover:
- Plain and encrypted round trips
- Structural validation of extracted archives
- Failure handling in each state (temp cleanup, service restart, snapshots)
- Interrupts and the unrecognized-extension confirmation
"""

import io
import os
import shutil
import tarfile
import tempfile
import unittest
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

from snapvault.backup import BackupManager, BackupManifest, RestoreOrchestrator, RestoreState
from snapvault.backup.encryption import FernetEncryptor
from snapvault.backup.integrity import IntegritySigner
from snapvault.backup.restore import RestoreSession, find_backup_root, overwritten_paths
from snapvault.backup.services import NullServiceController, ServiceController
from snapvault.backup.snapshots import SNAPSHOT_PREFIX
from snapvault.backup.tools import TarToolRunner
from snapvault.backup.verifier import Verifier
from snapvault.config.settings import ManifestEntry, Settings
from snapvault.errors import RestoreError, StructuralError

BACKUP_TIME = datetime(2024, 1, 15, 10, 30, 0)
RESTORE_TIME = datetime(2024, 1, 15, 11, 0, 0)
LINK_BACKUP_TIME = datetime(2024, 1, 15, 10, 45, 0)
PASSPHRASE = "correct horse battery staple"


class FakeServices(ServiceController):
    """Records stop/start calls instead of running docker compose."""

    def __init__(self, running: bool = True) -> None:
        self.running = running
        self.calls: list[str] = []

    def is_running(self) -> bool:
        return self.running

    def stop(self) -> None:
        self.calls.append("stop")
        self.running = False

    def start(self) -> None:
        self.calls.append("start")
        self.running = True


def write_tar(path: Path, files: dict[str, bytes]) -> Path:
    """Write a gzip tar containing exactly the given members."""
    with tarfile.open(path, "w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


class RestoreTestCase(unittest.TestCase):
    """Project with a.txt and b/c.txt, a sealed backup of it and a fake service manager."""

    encrypt = False

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir)
        self.project = self.root / "project"
        (self.project / "b").mkdir(parents=True)
        (self.project / "backups").mkdir()
        (self.project / "a.txt").write_text("alpha")
        (self.project / "b" / "c.txt").write_text("charlie")
        self.temp_parent = self.root / "tmp"
        self.temp_parent.mkdir()

        self.settings = Settings(project_root=str(self.project))
        self.settings.manifest = [ManifestEntry("a.txt"), ManifestEntry("b")]
        manager = BackupManager(
            self.settings, services=NullServiceController(), now=lambda: BACKUP_TIME
        )
        if self.encrypt:
            result = manager.create_backup(encrypt=True, scheme="fernet", passphrase=PASSPHRASE)
        else:
            result = manager.create_backup()
        self.assertTrue(result.success, result.error)
        self.archive = result.path

        self.services = FakeServices()
        self.states: list[RestoreState] = []

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_orchestrator(self, **overrides) -> RestoreOrchestrator:
        tools = TarToolRunner()
        signer = IntegritySigner(tools)
        options = dict(
            project_root=self.project,
            manifest=BackupManifest(list(self.settings.manifest)),
            tools=tools,
            signer=signer,
            verifier=Verifier(tools, signer),
            services=self.services,
            snapshot_root=self.project,
            encryptor_factory=lambda scheme: FernetEncryptor(PASSPHRASE),
            confirm=lambda prompt: False,
            on_state=self.states.append,
            temp_parent=self.temp_parent,
            now=lambda: RESTORE_TIME,
        )
        options.update(overrides)
        return RestoreOrchestrator(**options)

    def mutate_live_state(self) -> None:
        (self.project / "a.txt").write_text("changed")
        (self.project / "b" / "c.txt").unlink()

    def snapshots(self) -> list[Path]:
        return sorted(self.project.glob(f"{SNAPSHOT_PREFIX}*"))

    def assert_no_temp_left(self) -> None:
        self.assertEqual(list(self.temp_parent.iterdir()), [])


class TestRestoreRoundTrip(RestoreTestCase):
    """Successful restores of a plaintext archive."""

    def test_round_trip(self) -> None:
        self.mutate_live_state()

        result = self.make_orchestrator().restore(self.archive)

        self.assertTrue(result.success, result.error)
        self.assertEqual(result.state, RestoreState.DONE)
        self.assertEqual((self.project / "a.txt").read_text(), "alpha")
        self.assertEqual((self.project / "b" / "c.txt").read_text(), "charlie")
        self.assertEqual(result.files_restored, 2)
        self.assertFalse((self.project / "BACKUP_INFO.txt").exists())
        self.assert_no_temp_left()

    def test_state_sequence(self) -> None:
        self.make_orchestrator().restore(self.archive)

        self.assertEqual(
            self.states,
            [
                RestoreState.VALIDATING,
                RestoreState.VERIFYING,
                RestoreState.STOPPING_SERVICES,
                RestoreState.EXTRACTING,
                RestoreState.INSTALLING,
                RestoreState.STARTING_SERVICES,
                RestoreState.DONE,
            ],
        )

    def test_safety_snapshot_holds_previous_state(self) -> None:
        self.mutate_live_state()

        result = self.make_orchestrator().restore(self.archive)

        snapshot = result.safety_snapshot
        self.assertIsNotNone(snapshot)
        self.assertEqual(snapshot.path.name, f"{SNAPSHOT_PREFIX}20240115-110000")
        self.assertEqual((snapshot.path / "a.txt").read_text(), "changed")
        self.assertFalse((snapshot.path / "b" / "c.txt").exists())

    def test_no_snapshot_when_nothing_live(self) -> None:
        (self.project / "a.txt").unlink()
        shutil.rmtree(self.project / "b")

        result = self.make_orchestrator().restore(self.archive)

        self.assertTrue(result.success)
        self.assertIsNone(result.safety_snapshot)
        self.assertEqual(self.snapshots(), [])

    def test_services_stopped_and_restarted(self) -> None:
        result = self.make_orchestrator().restore(self.archive)

        self.assertEqual(self.services.calls, ["stop", "start"])
        self.assertTrue(result.services_stopped)
        self.assertTrue(result.services_restarted)

    def test_no_stop(self) -> None:
        result = self.make_orchestrator().restore(self.archive, stop_services=False)

        self.assertTrue(result.success)
        self.assertEqual(self.services.calls, [])
        self.assertNotIn(RestoreState.STOPPING_SERVICES, self.states)

    def test_no_start_leaves_services_stopped(self) -> None:
        result = self.make_orchestrator().restore(self.archive, start_services=False)

        self.assertTrue(result.success)
        self.assertEqual(self.services.calls, ["stop"])
        self.assertFalse(result.services_restarted)

    def test_services_not_running_are_not_started(self) -> None:
        self.services.running = False

        result = self.make_orchestrator().restore(self.archive)

        self.assertTrue(result.success)
        self.assertEqual(self.services.calls, [])

    def test_missing_checksum_warns_and_proceeds(self) -> None:
        self.archive.with_name(self.archive.name + ".sha256").unlink()

        result = self.make_orchestrator().restore(self.archive)

        self.assertTrue(result.success)
        self.assertTrue(any("checksum" in str(w).lower() for w in result.warnings))

    def test_round_trip_keeps_links_pointing_outside_the_tree(self) -> None:
        """Absolute and escaping symlinks come back exactly as they were archived."""
        (self.project / "b" / "hostname").symlink_to("/etc/hostname")
        (self.project / "b" / "sibling").symlink_to("../../elsewhere/file")
        result = BackupManager(
            self.settings, services=NullServiceController(), now=lambda: LINK_BACKUP_TIME
        ).create_backup()
        self.assertTrue(result.success, result.error)
        (self.project / "b" / "sibling").unlink()
        (self.project / "a.txt").write_text("changed")

        restored = self.make_orchestrator().restore(result.path)

        self.assertTrue(restored.success, restored.error)
        self.assertEqual(os.readlink(self.project / "b" / "hostname"), "/etc/hostname")
        self.assertEqual(os.readlink(self.project / "b" / "sibling"), "../../elsewhere/file")
        self.assertEqual((self.project / "a.txt").read_text(), "alpha")
        self.assert_no_temp_left()

    def test_snapshot_covers_archived_paths_outside_manifest(self) -> None:
        """Paths the archive overwrites are snapshotted even if the manifest changed."""
        (self.project / "b" / "c.txt").write_text("live-newer")
        orchestrator = self.make_orchestrator(manifest=BackupManifest([ManifestEntry(".env")]))

        result = orchestrator.restore(self.archive)

        self.assertTrue(result.success, result.error)
        snapshot = result.safety_snapshot
        self.assertIsNotNone(snapshot)
        self.assertEqual(sorted(snapshot.entries), ["a.txt", "b"])
        self.assertEqual((snapshot.path / "b" / "c.txt").read_text(), "live-newer")
        self.assertEqual((self.project / "b" / "c.txt").read_text(), "charlie")


class TestEncryptedRestore(RestoreTestCase):
    """Restores of a passphrase-encrypted archive."""

    encrypt = True

    def test_round_trip(self) -> None:
        self.mutate_live_state()

        result = self.make_orchestrator().restore(self.archive)

        self.assertTrue(result.success, result.error)
        self.assertIn(RestoreState.DECRYPTING, self.states)
        self.assertEqual((self.project / "a.txt").read_text(), "alpha")
        self.assert_no_temp_left()
        # Plaintext never lands next to the ciphertext
        self.assertEqual(
            sorted(p.name for p in self.archive.parent.iterdir()),
            sorted([self.archive.name, self.archive.name + ".sha256"]),
        )

    def test_wrong_passphrase_fails_in_decrypting(self) -> None:
        orchestrator = self.make_orchestrator(
            encryptor_factory=lambda scheme: FernetEncryptor("wrong passphrase!")
        )

        result = orchestrator.restore(self.archive)

        self.assertFalse(result.success)
        self.assertEqual(result.failed_state, RestoreState.DECRYPTING)
        self.assertEqual(result.error_kind, "DecryptionError")
        self.assertIsNotNone(result.hint)
        self.assertEqual((self.project / "a.txt").read_text(), "alpha")
        self.assertEqual(self.services.calls, [])
        self.assert_no_temp_left()


class TestRestoreFailures(RestoreTestCase):
    """Failures in each state leave live data and services consistent."""

    def test_missing_archive(self) -> None:
        result = self.make_orchestrator().restore(self.root / "missing.tar.gz")

        self.assertFalse(result.success)
        self.assertEqual(result.failed_state, RestoreState.VALIDATING)
        self.assertEqual(result.error_kind, "ArchiveNotFoundError")

    def test_path_traversal_rejected(self) -> None:
        sneaky = self.project / ".." / "project" / "backups" / self.archive.name

        result = self.make_orchestrator().restore(sneaky)

        self.assertFalse(result.success)
        self.assertEqual(result.failed_state, RestoreState.VALIDATING)
        self.assertEqual(result.error_kind, "ConfigurationError")

    def test_checksum_mismatch_fails_in_verifying(self) -> None:
        data = bytearray(self.archive.read_bytes())
        data[len(data) // 2] ^= 0xFF
        self.archive.write_bytes(bytes(data))

        result = self.make_orchestrator().restore(self.archive)

        self.assertFalse(result.success)
        self.assertEqual(result.failed_state, RestoreState.VERIFYING)
        self.assertEqual(result.error_kind, "IntegrityError")
        self.assertEqual(self.services.calls, [])
        self.assertEqual(self.snapshots(), [])

    def test_ambiguous_archive_rejected_before_installing(self) -> None:
        archive = write_tar(
            self.root / "ambiguous.tar.gz",
            {"one/a.txt": b"evil", "two/a.txt": b"evil"},
        )

        result = self.make_orchestrator().restore(archive)

        self.assertFalse(result.success)
        self.assertEqual(result.failed_state, RestoreState.EXTRACTING)
        self.assertEqual(result.error_kind, "StructuralError")
        self.assertNotIn(RestoreState.INSTALLING, self.states)
        self.assertEqual((self.project / "a.txt").read_text(), "alpha")
        self.assertEqual(self.snapshots(), [])
        self.assertEqual(self.services.calls, ["stop", "start"])
        self.assertTrue(result.services_restarted)
        self.assert_no_temp_left()

    def test_archive_without_directory_rejected(self) -> None:
        archive = write_tar(self.root / "flat.tar.gz", {"a.txt": b"evil"})

        result = self.make_orchestrator().restore(archive)

        self.assertFalse(result.success)
        self.assertEqual(result.failed_state, RestoreState.EXTRACTING)
        self.assertEqual((self.project / "a.txt").read_text(), "alpha")
        self.assert_no_temp_left()

    def test_unsafe_member_rejected(self) -> None:
        archive = write_tar(
            self.root / "escape.tar.gz",
            {"backup/a.txt": b"ok", "backup/../../escaped.txt": b"evil"},
        )

        result = self.make_orchestrator().restore(archive)

        self.assertFalse(result.success)
        self.assertEqual(result.failed_state, RestoreState.EXTRACTING)
        self.assertFalse((self.root / "escaped.txt").exists())
        self.assertFalse((self.temp_parent.parent / "escaped.txt").exists())
        self.assert_no_temp_left()

    def test_install_failure_keeps_snapshot_and_restarts_services(self) -> None:
        self.mutate_live_state()
        with patch.object(
            RestoreOrchestrator, "install", side_effect=RestoreError("disk full")
        ):
            result = self.make_orchestrator().restore(self.archive)

        self.assertFalse(result.success)
        self.assertEqual(result.failed_state, RestoreState.INSTALLING)
        self.assertIsNotNone(result.safety_snapshot)
        self.assertEqual((result.safety_snapshot.path / "a.txt").read_text(), "changed")
        self.assertEqual(self.services.calls, ["stop", "start"])
        self.assert_no_temp_left()

    def test_snapshot_failure_aborts_before_install(self) -> None:
        with patch.object(
            RestoreOrchestrator, "snapshot", side_effect=RestoreError("read-only")
        ), patch.object(RestoreOrchestrator, "install") as install:
            result = self.make_orchestrator().restore(self.archive)

        self.assertFalse(result.success)
        install.assert_not_called()
        self.assertEqual(self.services.calls, ["stop", "start"])

    def test_failure_with_no_start_still_restarts(self) -> None:
        archive = write_tar(self.root / "flat.tar.gz", {"a.txt": b"evil"})

        result = self.make_orchestrator().restore(archive, start_services=False)

        self.assertFalse(result.success)
        self.assertEqual(self.services.calls, ["stop", "start"])

    def test_interrupt_cleans_up_and_propagates(self) -> None:
        with patch.object(
            RestoreOrchestrator, "extract", side_effect=KeyboardInterrupt
        ):
            with self.assertRaises(KeyboardInterrupt):
                self.make_orchestrator().restore(self.archive)

        self.assertEqual(self.services.calls, ["stop", "start"])
        self.assertEqual((self.project / "a.txt").read_text(), "alpha")
        self.assert_no_temp_left()


class TestUnrecognizedExtension(RestoreTestCase):
    """Archives without a known extension require confirmation."""

    def setUp(self) -> None:
        super().setUp()
        self.odd = self.archive.with_name("backup.bin")
        shutil.copy(self.archive, self.odd)

    def test_declined(self) -> None:
        result = self.make_orchestrator(confirm=lambda prompt: False).restore(self.odd)

        self.assertFalse(result.success)
        self.assertTrue(result.cancelled)
        self.assertIsNone(result.failed_state)
        self.assertEqual(self.services.calls, [])

    def test_confirmed(self) -> None:
        self.mutate_live_state()

        result = self.make_orchestrator(confirm=lambda prompt: True).restore(self.odd)

        self.assertTrue(result.success, result.error)
        self.assertEqual((self.project / "a.txt").read_text(), "alpha")


class TestFindBackupRoot(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.staging = Path(self.temp_dir)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_single_directory(self) -> None:
        (self.staging / "backup").mkdir()
        self.assertEqual(find_backup_root(self.staging), self.staging / "backup")

    def test_stray_file(self) -> None:
        (self.staging / "backup").mkdir()
        (self.staging / "stray.txt").write_text("x")
        with self.assertRaises(StructuralError):
            find_backup_root(self.staging)

    def test_empty(self) -> None:
        with self.assertRaises(StructuralError):
            find_backup_root(self.staging)


class TestOverwrittenPaths(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.backup_root = Path(self.temp_dir) / "backup"
        (self.backup_root / "volumes" / "data").mkdir(parents=True)
        (self.backup_root / "volumes" / "logs").mkdir()
        (self.backup_root / "volumes" / "data" / "db").write_text("db")
        (self.backup_root / "volumes" / "logs" / "app.log").write_text("log")
        (self.backup_root / ".env").write_text("A=1")
        (self.backup_root / "BACKUP_INFO.txt").write_text("info")

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_descends_only_as_far_as_needed(self) -> None:
        self.assertEqual(
            overwritten_paths(self.backup_root, ["volumes/data"]), [".env", "volumes/logs"]
        )

    def test_fully_covered(self) -> None:
        self.assertEqual(overwritten_paths(self.backup_root, [".env", "volumes"]), [])

    def test_nothing_covered(self) -> None:
        self.assertEqual(overwritten_paths(self.backup_root, []), [".env", "volumes"])


class TestRestoreSession(unittest.TestCase):
    def test_cleanup_on_exception(self) -> None:
        with self.assertRaises(ValueError):
            with RestoreSession(Path("x.tar.gz")) as session:
                work_dir = session.ensure_work_dir()
                (work_dir / "plain.tar.gz").write_bytes(b"secret")
                raise ValueError("boom")

        self.assertFalse(work_dir.exists())


if __name__ == "__main__":
    unittest.main()
