"""Overlay composition onto the working root.

This module handles:
- Copying each contributor's overlay/<stage>/ tree over the working root
- Preserving relative paths, file modes and symlinks
- Last-wins layering: later contributors overwrite earlier files

Contributors are applied in resolution order, so the requested variant
(applied last) overrides anything its dependencies placed.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

from rootfs_imagegen.errors import StagingIOError

if TYPE_CHECKING:
    from rootfs_imagegen.types import Stage
    from rootfs_imagegen.variants.schema import Variant

logger = logging.getLogger(__name__)


def _remove_existing(path: Path) -> None:
    """Remove a non-directory entry (file or symlink) at path, if any."""
    if path.is_symlink() or path.is_file():
        path.unlink()


def copy_symlink(source: Path, dest: Path) -> None:
    """Recreate a symlink at dest with the same target as source."""
    _remove_existing(dest)
    dest.symlink_to(os.readlink(source))


def resolve_in_root(link: Path, root: Path) -> Path | None:
    """Resolve a symlink as if root were the filesystem root.

    Absolute targets are taken relative to root, so ``bin -> /usr/bin``
    inside a working root points at ``<root>/usr/bin`` and never at the
    host's directory.

    Returns:
        The resolved directory, or None if the link does not end at a
        directory inside root.
    """
    root = root.resolve()
    target = Path(os.readlink(link))
    if target.is_absolute():
        candidate = root / target.relative_to("/")
    else:
        candidate = link.parent / target
    resolved = candidate.resolve()
    if resolved != root and root not in resolved.parents:
        return None
    return resolved if resolved.is_dir() else None


def copy_tree(source_dir: Path, dest_dir: Path) -> int:
    """Copy a directory tree on top of an existing tree.

    Files and symlinks at the same relative path are replaced. Source
    symlinks are recreated, never followed. A destination symlink that
    points at a directory inside dest_dir is followed when the source has
    a directory there, the way ``cp -r`` merges into it, so merged-usr
    links such as ``lib -> usr/lib`` survive. Directory modes are copied
    from the source.

    Args:
        source_dir: Tree to copy.
        dest_dir: Destination root (created if missing).

    Returns:
        Number of files and symlinks copied.

    Raises:
        StagingIOError: If any copy fails, or a destination symlink sits
            where the source has a directory but does not lead to a
            directory inside dest_dir.
    """
    copied = 0
    # Source-relative directory -> real destination directory.
    targets: dict[Path, Path] = {Path("."): dest_dir}
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
        for current, dirnames, filenames in os.walk(source_dir):
            current_path = Path(current)
            rel_dir = current_path.relative_to(source_dir)
            target_dir = targets[rel_dir]

            for name in sorted(dirnames):
                item = current_path / name
                dest = target_dir / name
                if item.is_symlink():
                    copy_symlink(item, dest)
                    copied += 1
                    continue
                if dest.is_symlink():
                    followed = resolve_in_root(dest, dest_dir)
                    if followed is None:
                        raise StagingIOError(
                            f"Overlay directory {item} would replace symlink {dest}, "
                            "which does not lead to a directory inside the root",
                            path=dest,
                        )
                    logger.debug("Following %s -> %s", dest, followed)
                    targets[rel_dir / name] = followed
                    continue
                dest.mkdir(exist_ok=True)
                shutil.copystat(item, dest)
                targets[rel_dir / name] = dest

            for name in sorted(filenames):
                item = current_path / name
                dest = target_dir / name
                if item.is_symlink():
                    copy_symlink(item, dest)
                else:
                    _remove_existing(dest)
                    shutil.copy2(item, dest)
                copied += 1

            # Symlinked directories were recreated above; do not descend.
            dirnames[:] = [d for d in dirnames if not (current_path / d).is_symlink()]

    except OSError as e:
        raise StagingIOError(
            f"Failed to copy overlay {source_dir} -> {dest_dir}: {e}",
            path=source_dir,
        ) from e

    return copied


def apply_overlay(
    working_root: Path,
    contributors: Iterable[Variant],
    stage: Stage,
) -> list[Path]:
    """Apply every contributor's overlay for a pipeline stage.

    Args:
        working_root: Root tree under construction.
        contributors: Variants in application order.
        stage: Pipeline stage selecting overlay/<stage>/.

    Returns:
        Overlay directories that were applied, in order.

    Raises:
        StagingIOError: If copying an existing overlay fails.
    """
    applied: list[Path] = []
    for variant in contributors:
        overlay_dir = variant.overlay_dir(stage)
        if not overlay_dir.is_dir():
            logger.debug("No %s overlay for %s", stage.value, variant.name)
            continue

        count = copy_tree(overlay_dir, working_root)
        logger.info(
            "Applied %s overlay from %s (%d entries)", stage.value, variant.name, count
        )
        applied.append(overlay_dir)
    return applied


__all__ = [
    "apply_overlay",
    "copy_symlink",
    "copy_tree",
    "resolve_in_root",
]
