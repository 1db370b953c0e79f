"""Bootstrap backends.

A backend knows how to:
- populate an empty working root from a bootstrap package list
- install secondary packages inside the root (chroot)
- report the installed package set for the manifest
- move kernel/firmware files where the atomic-update layout expects them

Two backends exist: ``arch`` (pacstrap/pacman) and ``debian``
(debootstrap/apt).
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import ClassVar

from rootfs_imagegen.builds.runner import check_tool
from rootfs_imagegen.errors import MissingListError, StagingIOError
from rootfs_imagegen.types import BuildType
from rootfs_imagegen.variants.lists import BOOTSTRAP_LIST

logger = logging.getLogger(__name__)

MODULES_DIR = Path("usr/lib/modules")


def kernel_module_dirs(root: Path) -> list[Path]:
    """Per-version module directories in the root, sorted."""
    modules = root / MODULES_DIR
    if not modules.is_dir():
        return []
    return sorted(p for p in modules.iterdir() if p.is_dir())


class Backend:
    """Base class for bootstrap backends."""

    build_type: ClassVar[BuildType]
    package_cache: ClassVar[Path]
    requires_bootstrap_list: ClassVar[bool] = False

    def bootstrap(self, root: Path, packages: list[str], variant: str) -> None:
        raise NotImplementedError

    def install(self, root: Path, packages: list[str]) -> None:
        raise NotImplementedError

    def list_packages(self, root: Path) -> list[str]:
        raise NotImplementedError

    def relocate_boot_files(self, root: Path) -> list[Path]:
        """Move kernel/firmware files; returns the new paths."""
        return []


class ArchBackend(Backend):
    """pacstrap/pacman backend."""

    build_type = BuildType.ARCH
    package_cache = Path("/var/cache/pacman/pkg")
    requires_bootstrap_list = True

    def bootstrap(self, root: Path, packages: list[str], variant: str) -> None:
        if not packages:
            raise MissingListError(BOOTSTRAP_LIST, variant)
        check_tool(["pacstrap", "-c", "-G", "-M", root, *packages])

    def install(self, root: Path, packages: list[str]) -> None:
        check_tool(
            ["arch-chroot", root, "pacman", "-S", "--noconfirm", "--needed", *packages]
        )

    def list_packages(self, root: Path) -> list[str]:
        result = check_tool(["pacman", "-Q", "--root", root], capture=True)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def relocate_boot_files(self, root: Path) -> list[Path]:
        """Copy CPU microcode images next to every installed kernel.

        ``boot/*-ucode.img`` ends up in ``usr/lib/modules/<version>/`` and is
        removed from ``boot``.
        """
        boot = root / "boot"
        ucode_images = sorted(boot.glob("*-ucode.img")) if boot.is_dir() else []
        module_dirs = kernel_module_dirs(root)
        moved: list[Path] = []
        if not ucode_images or not module_dirs:
            return moved
        try:
            for image in ucode_images:
                for module_dir in module_dirs:
                    dest = module_dir / image.name
                    shutil.copy2(image, dest)
                    moved.append(dest)
                image.unlink()
        except OSError as e:
            raise StagingIOError(f"Failed to relocate microcode: {e}", path=boot) from e
        logger.info("Relocated %d microcode image(s)", len(ucode_images))
        return moved


class DebianBackend(Backend):
    """debootstrap/apt backend."""

    build_type = BuildType.DEBIAN
    package_cache = Path("/var/cache/apt/archives")

    # boot file prefix -> name inside usr/lib/modules/<version>/
    BOOT_FILES: ClassVar[dict[str, str]] = {
        "vmlinuz-": "vmlinuz",
        "initrd.img-": "initrd.img",
        "config-": "config",
        "System.map-": "System.map",
    }
    KERNEL_LINKS: ClassVar[tuple[str, ...]] = (
        "vmlinuz",
        "vmlinuz.old",
        "initrd.img",
        "initrd.img.old",
    )

    def __init__(
        self,
        suite: str = "stable",
        mirror: str = "http://deb.debian.org/debian",
    ) -> None:
        self.suite = suite
        self.mirror = mirror

    def bootstrap(self, root: Path, packages: list[str], variant: str) -> None:
        cmd: list[str | Path] = ["debootstrap", "--variant=minbase"]
        if packages:
            cmd.append(f"--include={','.join(packages)}")
        cmd.extend([self.suite, root, self.mirror])
        check_tool(cmd)

    def install(self, root: Path, packages: list[str]) -> None:
        env = {"DEBIAN_FRONTEND": "noninteractive"}
        check_tool(["chroot", root, "apt-get", "update"], env_override=env)
        check_tool(
            ["chroot", root, "apt-get", "install", "-y", *packages],
            env_override=env,
        )

    def list_packages(self, root: Path) -> list[str]:
        result = check_tool(
            [
                "dpkg-query",
                "--admindir",
                root / "var/lib/dpkg",
                "-W",
                "-f",
                "${Package} ${Version}\\n",
            ],
            capture=True,
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def relocate_boot_files(self, root: Path) -> list[Path]:
        """Move versioned kernel files from boot into usr/lib/modules/<version>/."""
        boot = root / "boot"
        moved: list[Path] = []
        try:
            if boot.is_dir():
                for path in sorted(boot.iterdir()):
                    if path.is_symlink() or not path.is_file():
                        continue
                    for prefix, target_name in self.BOOT_FILES.items():
                        if not path.name.startswith(prefix):
                            continue
                        version = path.name[len(prefix) :]
                        dest_dir = root / MODULES_DIR / version
                        dest_dir.mkdir(parents=True, exist_ok=True)
                        dest = dest_dir / target_name
                        shutil.move(str(path), dest)
                        moved.append(dest)
                        break

            for base in (root, boot):
                for name in self.KERNEL_LINKS:
                    link = base / name
                    if link.is_symlink():
                        link.unlink()
        except OSError as e:
            raise StagingIOError(
                f"Failed to relocate kernel files: {e}", path=boot
            ) from e

        if moved:
            logger.info("Relocated %d kernel file(s)", len(moved))
        return moved


def get_backend(
    build_type: BuildType,
    debian_suite: str = "stable",
    debian_mirror: str = "http://deb.debian.org/debian",
) -> Backend:
    """Return the backend for a disk-image build type.

    Raises:
        ValueError: For build types without a bootstrap backend.
    """
    if build_type is BuildType.ARCH:
        return ArchBackend()
    if build_type is BuildType.DEBIAN:
        return DebianBackend(suite=debian_suite, mirror=debian_mirror)
    raise ValueError(f"No bootstrap backend for build type '{build_type.value}'")


__all__ = [
    "ArchBackend",
    "Backend",
    "DebianBackend",
    "MODULES_DIR",
    "get_backend",
    "kernel_module_dirs",
]
