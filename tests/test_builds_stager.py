"""Tests for builds/stager.py module."""

import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from rootfs_imagegen.builds.backends import ArchBackend
from rootfs_imagegen.builds.stager import (
    SYSROOT_MOUNTPOINT,
    finalize_readonly,
    recreate_mountpoints,
    relocate_to_var,
    remove_credential_backups,
    remove_nested_subvolumes,
    scrub_identity,
    split_credentials,
    split_entries,
    stage_root,
)
from rootfs_imagegen.errors import StagingIOError

from conftest import ARCH_KERNEL, populate_arch


def mode_of(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


@pytest.fixture
def root(tmp_path: Path) -> Path:
    """A working root as left behind by pacstrap."""
    path = tmp_path / "rootfs"
    (path / "etc").mkdir(parents=True)
    (path / "var").mkdir()
    populate_arch(path)
    return path


class TestRelocateToVar:
    """Tests for relocate_to_var function."""

    def test_symlinks_into_var(self, root: Path):
        """usr/local, opt, srv and mnt should become symlinks into /var."""
        relocate_to_var(root)

        assert os.readlink(root / "usr/local") == "../var/usrlocal"
        assert os.readlink(root / "opt") == "var/opt"
        assert os.readlink(root / "srv") == "var/srv"
        assert os.readlink(root / "mnt") == "var/mnt"
        for rel in ("usr/local", "opt", "srv", "mnt"):
            assert (root / rel).resolve().parent == (root / "var").resolve()

    def test_content_moves(self, root: Path):
        """Existing content should move with the directory."""
        relocate_to_var(root)

        assert (root / "var/usrlocal/bin/tool").read_text() == "#!/bin/sh\n"
        assert (root / "var/opt/vendor/app").read_text() == "binary"
        assert (root / "usr/local/bin/tool").exists()

    def test_missing_source_yields_empty_dir(self, root: Path):
        """A missing directory should become an empty directory under /var."""
        relocate_to_var(root)
        assert (root / "var/srv").is_dir()
        assert list((root / "var/srv").iterdir()) == []

    def test_merges_into_existing_target(self, root: Path):
        """Content should merge into a target that already exists."""
        (root / "var/opt").mkdir()
        (root / "var/opt/existing").write_text("kept")

        relocate_to_var(root)

        assert (root / "var/opt/existing").read_text() == "kept"
        assert (root / "var/opt/vendor/app").exists()

    def test_conflict_raises(self, root: Path):
        """Moving onto an existing entry should fail."""
        (root / "var/opt/vendor").mkdir(parents=True)
        with pytest.raises(StagingIOError):
            relocate_to_var(root)

    def test_idempotent_over_symlinks(self, root: Path):
        """Running twice should leave the same symlinks."""
        relocate_to_var(root)
        relocate_to_var(root)
        assert os.readlink(root / "opt") == "var/opt"
        assert (root / "var/opt/vendor/app").exists()


class TestRecreateMountpoints:
    """Tests for recreate_mountpoints function."""

    def test_empty_directories(self, root: Path):
        """Mountpoints should be empty directories with the right modes."""
        (root / SYSROOT_MOUNTPOINT).write_text("not a dir")

        recreate_mountpoints(root)

        assert list((root / "root").iterdir()) == []
        assert mode_of(root / "root") == 0o700
        assert (root / SYSROOT_MOUNTPOINT).is_dir()
        assert mode_of(root / SYSROOT_MOUNTPOINT) == 0o755
        assert (root / "var/lib/flatpak").is_dir()


class TestScrubIdentity:
    """Tests for scrub_identity function."""

    def test_removes_keys_and_machine_id(self, root: Path):
        """SSH host keys and machine-id should be removed."""
        removed = scrub_identity(root)

        assert not list((root / "etc/ssh").glob("ssh_host_*"))
        assert not (root / "etc/machine-id").exists()
        assert (root / "etc/ssh/sshd_config").exists()
        assert len(removed) == 3

    def test_nothing_to_remove(self, tmp_path: Path):
        """A root without identity files should be left alone."""
        assert scrub_identity(tmp_path) == []


class TestSplitEntries:
    """Tests for split_entries function."""

    def test_split(self):
        """Only the exact root user should be kept apart."""
        text = (
            "root:x:0:0::/root:/bin/sh\n"
            "rootless:x:5:5::/:/bin/sh\n"
            "\n"
            "bin:x:1:1::/:/bin/false\n"
        )
        root_entries, others = split_entries(text)
        assert root_entries == ["root:x:0:0::/root:/bin/sh"]
        assert others == ["rootless:x:5:5::/:/bin/sh", "bin:x:1:1::/:/bin/false"]


class TestSplitCredentials:
    """Tests for split_credentials function."""

    def test_shadow_root_only(self, root: Path):
        """Live shadow should hold only root, with mode 0600."""
        split_credentials(root)

        shadow = root / "etc/shadow"
        assert shadow.read_text() == "root:!*:19700::::::\n"
        assert mode_of(shadow) == 0o600

    def test_templates_hold_non_root_entries(self, root: Path):
        """usr/lib copies should hold every non-root entry."""
        split_credentials(root)

        template = (root / "usr/lib/shadow").read_text().splitlines()
        assert [line.split(":")[0] for line in template] == ["bin", "alice"]
        assert mode_of(root / "usr/lib/shadow") == 0o600
        assert mode_of(root / "usr/lib/passwd") == 0o644
        assert "alice" in (root / "usr/lib/group").read_text()
        assert (root / "etc/group").read_text() == "root:x:0:root\n"

    def test_missing_database_skipped(self, tmp_path: Path):
        """A missing database should be skipped."""
        (tmp_path / "etc").mkdir()
        (tmp_path / "etc/passwd").write_text("root:x:0:0::/root:/bin/sh\n")
        assert split_credentials(tmp_path) == [tmp_path / "etc/passwd"]


class TestRemoveCredentialBackups:
    """Tests for remove_credential_backups function."""

    def test_removes_backups(self, root: Path):
        """Backup and lock files should be removed."""
        remove_credential_backups(root)
        assert not (root / "etc/passwd-").exists()
        assert not (root / "etc/shadow-").exists()
        assert not (root / "etc/.pwd.lock").exists()
        assert (root / "etc/passwd").exists()


class TestRemoveNestedSubvolumes:
    """Tests for remove_nested_subvolumes function."""

    def test_plain_directories_kept(self, root: Path, fake_tools):
        """Directories that are not subvolumes should not be deleted."""
        (root / "var/lib/machines").mkdir(parents=True)
        with patch("rootfs_imagegen.builds.stager.is_subvolume", return_value=False):
            assert remove_nested_subvolumes(root) == []
        assert fake_tools.calls == []

    def test_subvolumes_deleted(self, root: Path, fake_tools):
        """Subvolumes should be deleted with btrfs."""
        (root / "var/lib/portables").mkdir(parents=True)
        (root / "var/lib/machines").mkdir(parents=True)
        with patch("rootfs_imagegen.builds.stager.is_subvolume", return_value=True):
            removed = remove_nested_subvolumes(root)

        assert removed == [root / "var/lib/portables", root / "var/lib/machines"]
        assert fake_tools.commands("btrfs")[0][:3] == ["btrfs", "subvolume", "delete"]
        assert not (root / "var/lib/machines").exists()


class TestStageRoot:
    """Tests for stage_root function."""

    def test_full_staging(self, root: Path, fake_tools):
        """All steps should run, including backend relocation."""
        stage_root(root, ArchBackend())

        assert (root / "opt").is_symlink()
        assert not (root / "etc/machine-id").exists()
        assert (root / "usr/lib/passwd").exists()
        assert not (root / "etc/passwd-").exists()
        assert (root / f"usr/lib/modules/{ARCH_KERNEL}/intel-ucode.img").exists()
        assert not (root / "boot/intel-ucode.img").exists()


class TestFinalizeReadonly:
    """Tests for finalize_readonly function."""

    def test_innermost_first(self, tmp_path: Path, fake_tools):
        """Nested subvolumes should be marked before the root."""
        root = tmp_path / "rootfs"
        subvolumes = [root, root / "etc", root / "var"]

        finalize_readonly(subvolumes)

        assert fake_tools.readonly == list(reversed(subvolumes))
        assert fake_tools.calls[0] == [
            "btrfs",
            "property",
            "set",
            "-ts",
            str(tmp_path / "rootfs/var"),
            "ro",
            "true",
        ]
