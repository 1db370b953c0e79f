"""Tests for builds/storage.py module."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from rootfs_imagegen.builds.storage import (
    GIB,
    ScratchDisk,
    check_free_space,
    check_storage,
    free_bytes,
)
from rootfs_imagegen.errors import (
    InsufficientStorageError,
    ResourceError,
    ToolInvocationError,
)


class TestFreeSpace:
    """Tests for free_bytes and check_free_space."""

    def test_nonexistent_path_uses_parent(self, tmp_path: Path):
        """A path that does not exist yet is measured at its nearest parent."""
        with patch("rootfs_imagegen.builds.storage.shutil.disk_usage") as mock_usage:
            mock_usage.return_value = MagicMock(free=3 * GIB)
            assert free_bytes(tmp_path / "a" / "b") == 3 * GIB
        mock_usage.assert_called_once_with(tmp_path)

    def test_enough_space(self, tmp_path: Path):
        """Enough space should return the free byte count."""
        with patch("rootfs_imagegen.builds.storage.shutil.disk_usage") as mock_usage:
            mock_usage.return_value = MagicMock(free=12 * GIB)
            assert check_free_space(tmp_path, 10) == 12 * GIB

    def test_not_enough_space(self, tmp_path: Path):
        """Too little space should raise InsufficientStorageError."""
        with patch("rootfs_imagegen.builds.storage.shutil.disk_usage") as mock_usage:
            mock_usage.return_value = MagicMock(free=1 * GIB)
            with pytest.raises(InsufficientStorageError) as exc_info:
                check_free_space(tmp_path, 10)

        error = exc_info.value
        assert isinstance(error, ResourceError)
        assert error.code == "insufficient_storage"
        assert error.free_bytes == GIB
        assert error.required_bytes == 10 * GIB


class TestCheckStorage:
    """Tests for check_storage function."""

    def test_scratch_too_small(self, tmp_path: Path):
        """Root may be fine while the scratch area is too full."""
        scratch = tmp_path / "scratch"

        def usage(path):
            free = 100 * GIB if Path(path) == Path("/") else GIB
            return MagicMock(free=free)

        with patch(
            "rootfs_imagegen.builds.storage.shutil.disk_usage", side_effect=usage
        ):
            with pytest.raises(InsufficientStorageError) as exc_info:
                check_storage(scratch, min_root_free_gib=2, min_scratch_free_gib=10)

        assert exc_info.value.path == scratch
        assert not scratch.exists()


class TestScratchDisk:
    """Tests for ScratchDisk class."""

    def test_provision(self, tmp_path: Path, fake_tools):
        """Provisioning should create, format, mount and add subvolumes."""
        disk = ScratchDisk(tmp_path / "scratch", "20G")

        root = disk.provision()

        image = tmp_path / "scratch" / "scratch.img"
        mountpoint = tmp_path / "scratch" / "mount"
        assert root == mountpoint / "rootfs"
        assert image.exists()
        assert fake_tools.calls[:3] == [
            ["truncate", "-s", "20G", str(image)],
            ["mkfs.btrfs", "-f", str(image)],
            ["mount", "-o", "loop,compress=zstd", str(image), str(mountpoint)],
        ]
        created = [argv[3] for argv in fake_tools.commands("btrfs")]
        assert created == [str(root), str(root / "etc"), str(root / "var")]
        assert disk.mounts == [mountpoint]

    def test_cleanup_removes_everything(self, tmp_path: Path, fake_tools):
        """Cleanup should unmount, delete the image and the mountpoint."""
        disk = ScratchDisk(tmp_path / "scratch", "20G")
        disk.provision()

        disk.cleanup()

        assert not disk.image_path.exists()
        assert not disk.mountpoint.exists()
        assert disk.mounts == []
        assert fake_tools.commands("umount") == [
            ["umount", "-l", "-R", str(disk.mountpoint)]
        ]

    def test_cleanup_idempotent(self, tmp_path: Path, fake_tools):
        """Cleanup should be safe to call twice and before provisioning."""
        disk = ScratchDisk(tmp_path / "scratch", "20G")
        disk.cleanup()
        disk.provision()
        disk.cleanup()
        disk.cleanup()
        assert not disk.image_path.exists()

    def test_cleanup_after_partial_setup(self, tmp_path: Path, fake_tools):
        """A failed mkfs should still leave no image behind."""
        fake_tools.fail("mkfs.btrfs", stderr="bad image")
        with pytest.raises(ToolInvocationError):
            with ScratchDisk(tmp_path / "scratch", "20G") as disk:
                disk.provision()

        assert not disk.image_path.exists()
        assert fake_tools.commands("umount") == []

    def test_bind_mount_unmounted(self, tmp_path: Path, fake_tools):
        """Bind mounts should be undone when the block exits."""
        disk = ScratchDisk(tmp_path / "scratch", "20G")
        root = disk.provision()
        cache = tmp_path / "cache"
        cache.mkdir()
        target = root / "var/cache/pacman/pkg"

        with disk.bind_mount(cache, target):
            assert target in disk.mounts
            assert ["mount", "--bind", str(cache), str(target)] in fake_tools.calls

        assert target not in disk.mounts
        assert ["umount", "-l", "-R", str(target)] in fake_tools.calls

    def test_unmount_reverse_order(self, tmp_path: Path, fake_tools):
        """Nested mounts should be unmounted before their parents."""
        disk = ScratchDisk(tmp_path / "scratch", "20G")
        root = disk.provision()
        disk.mount(tmp_path, root / "proc", bind=True)

        disk.cleanup()

        targets = [argv[-1] for argv in fake_tools.commands("umount")]
        assert targets == [str(root / "proc"), str(disk.mountpoint)]

    def test_keep_leaves_state(self, tmp_path: Path, fake_tools):
        """keep=True should leave image and mounts for debugging."""
        with ScratchDisk(tmp_path / "scratch", "20G", keep=True) as disk:
            disk.provision()

        assert disk.image_path.exists()
        assert disk.working_root.is_dir()
        assert fake_tools.commands("umount") == []
