"""
Tests for the CLI commands.

Uses Python's unittest module.
Tests argument parsing, exit codes and command output.
"""

from __future__ import annotations

import io
import os
import shutil
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import patch

import yaml

from snapvault.cli import create_parser, human_readable_size, main


class TestArgumentParser(unittest.TestCase):
    """Tests for CLI argument parsing."""

    def setUp(self) -> None:
        """Set up parser for tests."""
        self.parser = create_parser()

    def test_version_argument(self) -> None:
        with self.assertRaises(SystemExit) as cm:
            self.parser.parse_args(["--version"])

        self.assertEqual(cm.exception.code, 0)

    def test_no_command_defaults(self) -> None:
        args = self.parser.parse_args([])

        self.assertIsNone(args.command)
        self.assertEqual(args.verbose, 0)
        self.assertFalse(args.quiet)

    def test_verbose_flag(self) -> None:
        args = self.parser.parse_args(["-vv"])
        self.assertEqual(args.verbose, 2)

    def test_backup_defaults(self) -> None:
        args = self.parser.parse_args(["backup"])

        self.assertEqual(args.command, "backup")
        self.assertIsNone(args.output)
        self.assertIsNone(args.compress)
        self.assertIsNone(args.encrypt)
        self.assertIsNone(args.stop_services)

    def test_backup_options(self) -> None:
        args = self.parser.parse_args(
            [
                "backup",
                "--output", "/var/backups",
                "--name", "nightly",
                "--compress", "xz",
                "--encrypt",
                "--gpg-recipient", "ops@example.com",
                "--stop-services",
            ]
        )

        self.assertEqual(args.output, "/var/backups")
        self.assertEqual(args.name, "nightly")
        self.assertEqual(args.compress, "xz")
        self.assertTrue(args.encrypt)
        self.assertEqual(args.recipient, "ops@example.com")
        self.assertTrue(args.stop_services)

    def test_backup_invalid_compression(self) -> None:
        with self.assertRaises(SystemExit):
            with redirect_stderr(io.StringIO()):
                self.parser.parse_args(["backup", "--compress", "zip"])

    def test_restore_options(self) -> None:
        args = self.parser.parse_args(
            ["restore", "backup.tar.gz", "--skip-verify", "--no-stop", "--no-start", "-y"]
        )

        self.assertEqual(args.backup_file, "backup.tar.gz")
        self.assertTrue(args.skip_verify)
        self.assertTrue(args.no_stop)
        self.assertTrue(args.no_start)
        self.assertTrue(args.yes)

    def test_restore_requires_archive(self) -> None:
        with self.assertRaises(SystemExit):
            with redirect_stderr(io.StringIO()):
                self.parser.parse_args(["restore"])

    def test_verify_backup(self) -> None:
        args = self.parser.parse_args(["verify-backup", "backup.tar.gz"])

        self.assertEqual(args.command, "verify-backup")
        self.assertFalse(args.decrypt)

    def test_snapshots(self) -> None:
        args = self.parser.parse_args(["snapshots", "remove", ".restore-backup-20240115-110000"])

        self.assertEqual(args.action, "remove")
        self.assertEqual(args.path, ".restore-backup-20240115-110000")


class TestHumanReadableSize(unittest.TestCase):
    def test_sizes(self) -> None:
        self.assertEqual(human_readable_size(512), "512 B")
        self.assertEqual(human_readable_size(2048), "2.0 KiB")
        self.assertEqual(human_readable_size(5 * 1024 * 1024), "5.0 MiB")


class TestCommands(unittest.TestCase):
    """End-to-end command runs against a temporary project."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        root = Path(self.temp_dir)
        self.project = root / "project"
        (self.project / "b").mkdir(parents=True)
        (self.project / "backups").mkdir()
        (self.project / "a.txt").write_text("alpha")
        (self.project / "b" / "c.txt").write_text("charlie")
        self.config = root / "config.yaml"
        self.config.write_text(
            yaml.safe_dump(
                {
                    "snapvault": {"project_root": str(self.project)},
                    "services": {"enabled": False},
                    "manifest": ["a.txt", "b"],
                }
            )
        )

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        stdout, stderr = io.StringIO(), io.StringIO()
        with patch("sys.argv", ["snapvault", "--config", str(self.config), *argv]), \
                patch("snapvault.cli.signal.signal"), \
                redirect_stdout(stdout), redirect_stderr(stderr):
            with self.assertRaises(SystemExit) as cm:
                main()
        return cm.exception.code, stdout.getvalue(), stderr.getvalue()

    def archives(self) -> list[Path]:
        backups = self.project / "backups"
        return sorted(p for p in backups.iterdir() if not p.name.endswith(".sha256"))

    def test_backup_verify_restore(self) -> None:
        code, out, _ = self.run_cli("backup")
        self.assertEqual(code, 0)
        self.assertIn("Backup completed successfully!", out)
        archive = self.archives()[0]

        code, out, _ = self.run_cli("verify-backup", str(archive))
        self.assertEqual(code, 0)
        self.assertIn("Checksum: VALID", out)

        (self.project / "a.txt").write_text("changed")
        code, out, _ = self.run_cli("restore", str(archive), "--yes")
        self.assertEqual(code, 0)
        self.assertIn("Restore completed successfully!", out)
        self.assertEqual((self.project / "a.txt").read_text(), "alpha")

    def test_verify_corrupted_exit_code(self) -> None:
        self.run_cli("backup")
        archive = self.archives()[0]
        data = bytearray(archive.read_bytes())
        data[len(data) // 2] ^= 0xFF
        archive.write_bytes(bytes(data))

        code, out, _ = self.run_cli("verify-backup", str(archive))

        self.assertEqual(code, 1)
        self.assertIn("CORRUPTED", out)

    def test_verify_missing_archive(self) -> None:
        code, _, err = self.run_cli("verify-backup", str(self.project / "missing.tar.gz"))

        self.assertEqual(code, 1)
        self.assertIn("not found", err)

    def test_verify_encrypted_without_checksum_fails(self) -> None:
        archive = self.project / "backups" / "x-20240101-000000.tar.gz.gpg"
        archive.write_bytes(b"not an archive at all")

        code, out, err = self.run_cli("verify-backup", str(archive))

        self.assertEqual(code, 1)
        self.assertIn("UNVERIFIED", out)
        self.assertIn("--decrypt", err)

    def test_backup_missing_output_dir(self) -> None:
        code, _, err = self.run_cli("backup", "--output", str(self.project / "nope"))

        self.assertEqual(code, 2)
        self.assertIn("does not exist", err)

    def test_restore_cancelled_exit_code(self) -> None:
        self.run_cli("backup")
        odd = self.project / "backup.bin"
        shutil.copy(self.archives()[0], odd)

        with patch("builtins.input", return_value="n"):
            code, out, _ = self.run_cli("restore", str(odd))

        self.assertEqual(code, 0)
        self.assertIn("cancelled", out)

    def test_restore_failure_exit_code(self) -> None:
        code, _, err = self.run_cli("restore", str(self.project / "missing.tar.gz"), "--yes")

        self.assertEqual(code, 2)
        self.assertIn("validating", err)

    def test_list(self) -> None:
        self.run_cli("backup")

        code, out, _ = self.run_cli("list")

        self.assertEqual(code, 0)
        self.assertIn("snapvault-backup-", out)

    def test_list_verify_fails_on_checksum_without_archive(self) -> None:
        self.run_cli("backup")
        self.archives()[0].unlink()

        code, out, _ = self.run_cli("list", "--verify")

        self.assertEqual(code, 1)
        self.assertIn("checksum without archive", out)
        self.assertIn("CORRUPTED", out)

    def test_restore_prompts_for_symmetric_gpg_passphrase(self) -> None:
        """Without a recipient, a .gpg archive is symmetric and needs a passphrase."""
        archive = self.project / "backups" / "snapvault-backup-20240115-103000.tar.gz.gpg"
        archive.write_bytes(b"ciphertext")

        with patch.dict(os.environ), \
                patch("snapvault.cli.sys.stdin") as stdin, \
                patch("snapvault.cli._prompt_passphrase", return_value="pass phrase") as prompt:
            os.environ.pop("SNAPVAULT_PASSPHRASE", None)
            os.environ.pop("BACKUP_GPG_RECIPIENT", None)
            stdin.isatty.return_value = True
            code, _, _ = self.run_cli("restore", str(archive), "--yes")

        prompt.assert_called_once_with(confirm=False)
        self.assertNotEqual(code, 0)

    def test_interrupt_exit_code(self) -> None:
        with patch("snapvault.cli.cmd_backup", side_effect=KeyboardInterrupt):
            code, _, _ = self.run_cli("backup")

        self.assertEqual(code, 130)


if __name__ == "__main__":
    unittest.main()
