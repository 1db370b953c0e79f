"""Scratch storage for builds.

This module handles:
- Pre-flight free space checks before anything is written
- Provisioning the sparse btrfs scratch image and its subvolumes
- Tracking mounts so cleanup can undo them in reverse order

Layout inside the mounted scratch image:

    <mountpoint>/rootfs        root subvolume (the working root)
    <mountpoint>/rootfs/etc    nested subvolume
    <mountpoint>/rootfs/var    nested subvolume

Only one build may use a scratch directory at a time; there is no lock.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import TracebackType

from rootfs_imagegen.builds.runner import check_tool, run_tool
from rootfs_imagegen.errors import InsufficientStorageError, StagingIOError

logger = logging.getLogger(__name__)

GIB = 1024**3

SCRATCH_IMAGE_NAME = "scratch.img"
MOUNTPOINT_NAME = "mount"
ROOT_SUBVOLUME = "rootfs"
NESTED_SUBVOLUMES = ("etc", "var")
MOUNT_OPTIONS = "loop,compress=zstd"


def _existing_ancestor(path: Path) -> Path:
    """Return path or its nearest existing parent."""
    path = path.absolute()
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path("/")


def free_bytes(path: Path) -> int:
    """Free bytes on the filesystem holding path (or its nearest parent)."""
    return shutil.disk_usage(_existing_ancestor(path)).free


def check_free_space(path: Path, required_gib: int) -> int:
    """Require a minimum of free space on the filesystem holding path.

    Args:
        path: Path to check (need not exist yet).
        required_gib: Minimum free space in GiB.

    Returns:
        Free bytes found.

    Raises:
        InsufficientStorageError: If less space is available.
    """
    available = free_bytes(path)
    required = required_gib * GIB
    logger.info(
        "Free space on %s: %.1f GiB (need %d GiB)", path, available / GIB, required_gib
    )
    if available < required:
        raise InsufficientStorageError(path, available, required)
    return available


def check_storage(
    scratch_dir: Path,
    min_root_free_gib: int,
    min_scratch_free_gib: int,
    root: Path = Path("/"),
) -> None:
    """Pre-flight storage guard for disk-image builds.

    Raises:
        InsufficientStorageError: If / or the scratch area is too full.
    """
    check_free_space(root, min_root_free_gib)
    check_free_space(scratch_dir, min_scratch_free_gib)


class ScratchDisk:
    """Sparse btrfs image mounted as the build's working area.

    Use as a context manager; leaving the block always runs cleanup unless
    ``keep`` is set, in which case everything is left for inspection.
    """

    def __init__(self, scratch_dir: Path, size: str, keep: bool = False) -> None:
        self.scratch_dir = scratch_dir
        self.image_path = scratch_dir / SCRATCH_IMAGE_NAME
        self.mountpoint = scratch_dir / MOUNTPOINT_NAME
        self.size = size
        self.keep = keep
        self.mounts: list[Path] = []

    @property
    def working_root(self) -> Path:
        return self.mountpoint / ROOT_SUBVOLUME

    @property
    def subvolumes(self) -> list[Path]:
        """Root subvolume followed by the nested ones."""
        root = self.working_root
        return [root, *(root / name for name in NESTED_SUBVOLUMES)]

    def provision(self) -> Path:
        """Create, format and mount the image, then create subvolumes.

        Returns:
            The working root path.

        Raises:
            ToolInvocationError: If any command fails.
        """
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Creating %s scratch image %s", self.size, self.image_path)
        check_tool(["truncate", "-s", self.size, self.image_path])
        check_tool(["mkfs.btrfs", "-f", self.image_path], capture=True)

        self.mountpoint.mkdir(parents=True, exist_ok=True)
        self.mount(self.image_path, self.mountpoint, options=MOUNT_OPTIONS)

        for subvolume in self.subvolumes:
            check_tool(["btrfs", "subvolume", "create", subvolume])
        return self.working_root

    def mount(
        self,
        source: Path,
        target: Path,
        options: str | None = None,
        bind: bool = False,
    ) -> Path:
        """Mount source on target and remember it for cleanup."""
        target.mkdir(parents=True, exist_ok=True)
        cmd: list[str | Path] = ["mount"]
        if bind:
            cmd.append("--bind")
        if options:
            cmd.extend(["-o", options])
        cmd.extend([source, target])
        check_tool(cmd)
        self.mounts.append(target)
        return target

    def unmount(self, target: Path) -> None:
        """Unmount a tracked mount (lazy, recursive)."""
        run_tool(["umount", "-l", "-R", target])
        if target in self.mounts:
            self.mounts.remove(target)

    @contextmanager
    def bind_mount(self, source: Path, target: Path) -> Iterator[Path]:
        """Bind-mount source on target for the duration of the block."""
        self.mount(source, target, bind=True)
        try:
            yield target
        finally:
            self.unmount(target)

    def cleanup(self) -> None:
        """Unmount everything in reverse order and delete scratch state.

        Safe to call after partial setup and more than once.

        Raises:
            StagingIOError: If the image cannot be removed or the mountpoint
                is still busy after unmounting.
        """
        for target in reversed(list(self.mounts)):
            self.unmount(target)

        if self.image_path.exists():
            logger.info("Removing scratch image %s", self.image_path)
            try:
                self.image_path.unlink()
            except OSError as e:
                raise StagingIOError(
                    f"Failed to remove scratch image {self.image_path}: {e}",
                    path=self.image_path,
                ) from e

        if self.mountpoint.is_dir():
            try:
                self.mountpoint.rmdir()
            except OSError as e:
                raise StagingIOError(
                    f"Mountpoint {self.mountpoint} is not empty after unmount: {e}",
                    path=self.mountpoint,
                ) from e

    def __enter__(self) -> ScratchDisk:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self.keep:
            logger.warning(
                "Cleanup disabled: leaving %s mounted on %s",
                self.image_path,
                self.mountpoint,
            )
            return
        if exc is None:
            self.cleanup()
            return
        # Do not mask the original failure with a cleanup error.
        try:
            self.cleanup()
        except Exception:
            logger.exception("Cleanup after failed build did not complete")


__all__ = [
    "GIB",
    "MOUNTPOINT_NAME",
    "MOUNT_OPTIONS",
    "NESTED_SUBVOLUMES",
    "ROOT_SUBVOLUME",
    "SCRATCH_IMAGE_NAME",
    "ScratchDisk",
    "check_free_space",
    "check_storage",
    "free_bytes",
]
