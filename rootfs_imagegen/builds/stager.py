"""Filesystem staging for the atomic-update layout.

This module turns a freshly populated root tree into the layout the
updater consumes. Steps run in order and each raises on failure:

1. Delete nested portables/machines subvolumes
2. Move /usr/local, /opt, /srv, /mnt into /var and leave symlinks
3. Recreate empty bind-mount targets (/root, /sysroot, /var/lib/flatpak)
4. Remove SSH host keys and the machine-id
5. Split passwd/group/shadow into usr/lib templates and root-only /etc copies
6. Remove credential backup files
7. Backend-specific kernel/firmware relocation

Read-only marking of the subvolumes is a separate call
(``finalize_readonly``) so that post-build hooks can still write.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

from rootfs_imagegen.builds.runner import check_tool
from rootfs_imagegen.errors import StagingIOError

if TYPE_CHECKING:
    from rootfs_imagegen.builds.backends import Backend

logger = logging.getLogger(__name__)

# btrfs subvolume roots always have this inode number
BTRFS_SUBVOLUME_INODE = 256

NESTED_SUBVOLUMES = ("var/lib/portables", "var/lib/machines")

# (path in root, name under /var, symlink target)
VAR_RELOCATIONS = (
    ("usr/local", "usrlocal", "../var/usrlocal"),
    ("opt", "opt", "var/opt"),
    ("srv", "srv", "var/srv"),
    ("mnt", "mnt", "var/mnt"),
)

# The booted system mounts the whole image subvolume here.
SYSROOT_MOUNTPOINT = "sysroot"

# (path in root, mode)
MOUNTPOINTS = (
    ("root", 0o700),
    (SYSROOT_MOUNTPOINT, 0o755),
    ("var/lib/flatpak", 0o755),
)

SSH_HOST_KEY_GLOB = "etc/ssh/ssh_host_*"
MACHINE_ID = "etc/machine-id"

# credential database -> mode of both copies
CREDENTIAL_FILES = {
    "passwd": 0o644,
    "group": 0o644,
    "shadow": 0o600,
}
CREDENTIAL_TEMPLATE_DIR = "usr/lib"
ROOT_ENTRY = "root"

CREDENTIAL_BACKUPS = (
    "etc/passwd-",
    "etc/group-",
    "etc/shadow-",
    "etc/gshadow-",
    "etc/.pwd.lock",
)


def is_subvolume(path: Path) -> bool:
    """Check whether a directory is a btrfs subvolume root."""
    return (
        path.is_dir()
        and not path.is_symlink()
        and path.stat().st_ino == BTRFS_SUBVOLUME_INODE
    )


def remove_nested_subvolumes(root: Path) -> list[Path]:
    """Delete subvolumes systemd creates for portables and machines.

    Returns:
        Subvolumes that were deleted.
    """
    removed: list[Path] = []
    for rel in NESTED_SUBVOLUMES:
        path = root / rel
        if is_subvolume(path):
            check_tool(["btrfs", "subvolume", "delete", path])
            removed.append(path)
    return removed


def _move_contents(source: Path, dest: Path) -> None:
    for child in sorted(source.iterdir()):
        target = dest / child.name
        if target.exists() or target.is_symlink():
            raise StagingIOError(
                f"Cannot relocate {child}: {target} already exists", path=target
            )
        shutil.move(str(child), target)


def relocate_to_var(root: Path) -> list[Path]:
    """Move host-local mutable directories into /var.

    Each original path becomes a relative symlink into /var. An existing
    directory's content moves with it; a missing one yields an empty
    directory under /var.

    Returns:
        The symlinks created.

    Raises:
        StagingIOError: If a move fails or would overwrite existing content.
    """
    links: list[Path] = []
    try:
        for rel, var_name, target in VAR_RELOCATIONS:
            source = root / rel
            dest = root / "var" / var_name

            if source.is_symlink():
                source.unlink()
            elif source.is_dir():
                if dest.is_dir():
                    _move_contents(source, dest)
                    source.rmdir()
                else:
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    shutil.move(str(source), dest)
            elif source.exists():
                raise StagingIOError(
                    f"Cannot relocate {source}: not a directory", path=source
                )

            dest.mkdir(parents=True, exist_ok=True)
            source.parent.mkdir(parents=True, exist_ok=True)
            source.symlink_to(target)
            links.append(source)
            logger.debug("Relocated /%s -> %s", rel, target)
    except OSError as e:
        raise StagingIOError(f"Failed to relocate directories into /var: {e}") from e
    return links


def recreate_mountpoints(root: Path) -> list[Path]:
    """Replace bind-mount targets with empty directories."""
    created: list[Path] = []
    try:
        for rel, mode in MOUNTPOINTS:
            path = root / rel
            if path.is_symlink() or path.is_file():
                path.unlink()
            elif path.is_dir():
                shutil.rmtree(path)
            path.mkdir(parents=True)
            path.chmod(mode)
            created.append(path)
    except OSError as e:
        raise StagingIOError(f"Failed to recreate mountpoints: {e}") from e
    return created


def scrub_identity(root: Path) -> list[Path]:
    """Remove SSH host keys and machine-id so each deployment gets its own."""
    removed: list[Path] = []
    try:
        for key in sorted(root.glob(SSH_HOST_KEY_GLOB)):
            key.unlink()
            removed.append(key)
        machine_id = root / MACHINE_ID
        if machine_id.exists() or machine_id.is_symlink():
            machine_id.unlink()
            removed.append(machine_id)
    except OSError as e:
        raise StagingIOError(f"Failed to scrub machine identity: {e}") from e
    return removed


def split_entries(text: str) -> tuple[list[str], list[str]]:
    """Split a colon-separated credential database.

    Returns:
        Tuple of (root entries, all other non-empty entries).
    """
    root_entries: list[str] = []
    others: list[str] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        if line.split(":", 1)[0] == ROOT_ENTRY:
            root_entries.append(line)
        else:
            others.append(line)
    return root_entries, others


def _write_entries(path: Path, entries: list[str], mode: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f"{entry}\n" for entry in entries), encoding="utf-8")
    path.chmod(mode)


def split_credentials(root: Path) -> list[Path]:
    """Split passwd, group and shadow.

    Non-root entries go to usr/lib/<name> (merged with user accounts at
    deploy time); etc/<name> keeps only the root entry.

    Returns:
        Databases that were split.
    """
    split: list[Path] = []
    try:
        for name, mode in CREDENTIAL_FILES.items():
            live = root / "etc" / name
            if not live.is_file():
                logger.warning("Credential database missing: %s", live)
                continue
            root_entries, others = split_entries(live.read_text(encoding="utf-8"))
            _write_entries(root / CREDENTIAL_TEMPLATE_DIR / name, others, mode)
            _write_entries(live, root_entries, mode)
            split.append(live)
    except OSError as e:
        raise StagingIOError(f"Failed to split credential databases: {e}") from e
    return split


def remove_credential_backups(root: Path) -> list[Path]:
    """Remove backup files left behind by user/group edits."""
    removed: list[Path] = []
    try:
        for rel in CREDENTIAL_BACKUPS:
            path = root / rel
            if path.exists() or path.is_symlink():
                path.unlink()
                removed.append(path)
    except OSError as e:
        raise StagingIOError(f"Failed to remove credential backups: {e}") from e
    return removed


def stage_root(root: Path, backend: Backend | None = None) -> None:
    """Run staging steps 1-7 on a populated root.

    Args:
        root: Working root.
        backend: Backend providing kernel/firmware relocation.

    Raises:
        ToolInvocationError: If deleting a subvolume fails.
        StagingIOError: If a filesystem step fails.
    """
    logger.info("Staging root filesystem %s", root)
    remove_nested_subvolumes(root)
    relocate_to_var(root)
    recreate_mountpoints(root)
    scrub_identity(root)
    split_credentials(root)
    remove_credential_backups(root)
    if backend is not None:
        backend.relocate_boot_files(root)


def finalize_readonly(subvolumes: Iterable[Path]) -> None:
    """Mark subvolumes read-only, innermost first.

    Args:
        subvolumes: Root subvolume followed by nested ones.
    """
    for subvolume in reversed(list(subvolumes)):
        check_tool(["btrfs", "property", "set", "-ts", subvolume, "ro", "true"])
        logger.info("Marked %s read-only", subvolume)


__all__ = [
    "CREDENTIAL_BACKUPS",
    "CREDENTIAL_FILES",
    "MOUNTPOINTS",
    "NESTED_SUBVOLUMES",
    "SYSROOT_MOUNTPOINT",
    "VAR_RELOCATIONS",
    "finalize_readonly",
    "is_subvolume",
    "recreate_mountpoints",
    "relocate_to_var",
    "remove_credential_backups",
    "remove_nested_subvolumes",
    "scrub_identity",
    "split_credentials",
    "split_entries",
    "stage_root",
]
