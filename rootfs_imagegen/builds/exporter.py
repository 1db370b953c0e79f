"""Export of finished builds.

This module handles:
- Serializing the root, etc and var subvolumes with ``btrfs send``
- Writing the installed package manifest
- Copying the variant's update script
- Archiving the output directory into a .tar.zst
- Describing produced files (size, SHA-256) for reporting

Output layout:

    <output_root>/<name>/<name>-rootfs.img
    <output_root>/<name>/<name>-etc.img
    <output_root>/<name>/<name>-var.img
    <output_root>/<name>/<name>.pkgs
    <output_root>/<name>/<name>-update.sh      (optional)
    <output_root>/<name>.tar.zst               (unless archiving is skipped)
"""

from __future__ import annotations

import hashlib
import logging
import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from rootfs_imagegen.builds.runner import check_tool
from rootfs_imagegen.errors import StagingIOError
from rootfs_imagegen.types import ArtifactInfo

if TYPE_CHECKING:
    from rootfs_imagegen.builds.context import BuildContext
    from rootfs_imagegen.variants.schema import Variant

logger = logging.getLogger(__name__)

IMAGE_SUFFIX = ".img"
MANIFEST_SUFFIX = ".pkgs"
UPDATE_SUFFIX = "-update.sh"

HASH_CHUNK_SIZE = 64 * 1024  # 64KB


@dataclass
class ExportResult:
    """Files produced by an export.

    Attributes:
        output_dir: Directory holding the artifact set.
        artifacts: Descriptions of the files in output_dir.
        archive_path: The .tar.zst archive, if one was created.
    """

    output_dir: Path
    artifacts: list[ArtifactInfo] = field(default_factory=list)
    archive_path: Path | None = None


def image_filename(image_name: str, label: str) -> str:
    return f"{image_name}-{label}{IMAGE_SUFFIX}"


def classify_artifact(filename: str) -> str:
    """Classify an output file by its name.

    Returns:
        Artifact kind (subvolume, manifest, update-script, migration, other).
    """
    if filename.endswith(IMAGE_SUFFIX):
        return "subvolume"
    if filename.endswith(MANIFEST_SUFFIX):
        return "manifest"
    if filename.endswith(UPDATE_SUFFIX):
        return "update-script"
    if filename.startswith("migration"):
        return "migration"
    return "other"


def compute_file_hash(file_path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute SHA-256 hash of a file."""
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def describe_artifacts(output_dir: Path, artifacts_root: Path) -> list[ArtifactInfo]:
    """Describe every regular file under an output directory.

    Args:
        output_dir: Directory to scan.
        artifacts_root: Root for computing relative paths.

    Returns:
        ArtifactInfo list in sorted path order.
    """
    artifacts: list[ArtifactInfo] = []
    for path in sorted(output_dir.rglob("*")):
        if not path.is_file() or path.is_symlink():
            continue
        artifacts.append(
            ArtifactInfo(
                filename=path.name,
                relative_path=path.relative_to(artifacts_root).as_posix(),
                size_bytes=path.stat().st_size,
                sha256=compute_file_hash(path),
                kind=classify_artifact(path.name),
            )
        )
    logger.info("Described %d artifacts in %s", len(artifacts), output_dir)
    return artifacts


def send_subvolume(subvolume: Path, dest: Path) -> Path:
    """Serialize a read-only subvolume to a file with ``btrfs send``."""
    check_tool(["btrfs", "send", "-f", dest, subvolume])
    return dest


def write_package_manifest(path: Path, packages: Iterable[str]) -> Path:
    """Write the installed package set, one package per line."""
    try:
        path.write_text("".join(f"{pkg}\n" for pkg in packages), encoding="utf-8")
    except OSError as e:
        raise StagingIOError(f"Failed to write manifest {path}: {e}", path=path) from e
    logger.info("Wrote package manifest to %s", path)
    return path


def find_update_script(contributors: Iterable[Variant]) -> Path | None:
    """Return the update script of the last contributor that ships one."""
    script: Path | None = None
    for variant in contributors:
        if variant.update_script.is_file():
            script = variant.update_script
    return script


def copy_file(source: Path, dest: Path) -> Path:
    try:
        shutil.copy2(source, dest)
    except OSError as e:
        raise StagingIOError(
            f"Failed to copy {source} -> {dest}: {e}", path=source
        ) from e
    return dest


def archive_output(output_root: Path, image_name: str, archive_path: Path) -> Path:
    """Compress <output_root>/<image_name> into a .tar.zst archive."""
    check_tool(
        ["tar", "--zstd", "-cf", archive_path, "-C", output_root, image_name]
    )
    logger.info("Created archive %s", archive_path)
    return archive_path


def export(ctx: BuildContext, packages: Iterable[str]) -> ExportResult:
    """Export a staged, read-only build.

    Args:
        ctx: Build context.
        packages: Installed package set for the manifest.

    Returns:
        ExportResult describing the artifact set.

    Raises:
        ToolInvocationError: If ``btrfs send`` or ``tar`` fails.
        StagingIOError: If writing output files fails.
    """
    output_dir = ctx.output_dir
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StagingIOError(
            f"Failed to create output directory {output_dir}: {e}", path=output_dir
        ) from e

    for label, subvolume in ctx.subvolumes.items():
        send_subvolume(subvolume, output_dir / image_filename(ctx.image_name, label))

    write_package_manifest(output_dir / f"{ctx.image_name}{MANIFEST_SUFFIX}", packages)

    update_script = find_update_script(ctx.contributors)
    if update_script is not None:
        copy_file(update_script, output_dir / f"{ctx.image_name}{UPDATE_SUFFIX}")

    result = ExportResult(
        output_dir=output_dir,
        artifacts=describe_artifacts(output_dir, ctx.output_root),
    )
    if not ctx.skip_archive:
        result.archive_path = archive_output(
            ctx.output_root, ctx.image_name, ctx.archive_path
        )
    return result


__all__ = [
    "ExportResult",
    "HASH_CHUNK_SIZE",
    "IMAGE_SUFFIX",
    "MANIFEST_SUFFIX",
    "UPDATE_SUFFIX",
    "archive_output",
    "classify_artifact",
    "compute_file_hash",
    "copy_file",
    "describe_artifacts",
    "export",
    "find_update_script",
    "image_filename",
    "send_subvolume",
    "write_package_manifest",
]
