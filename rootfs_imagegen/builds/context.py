"""Immutable per-build context.

A BuildContext is created once at the start of a build and passed to every
component instead of sharing mutable state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from rootfs_imagegen.builds.storage import (
    MOUNTPOINT_NAME,
    NESTED_SUBVOLUMES,
    ROOT_SUBVOLUME,
    SCRATCH_IMAGE_NAME,
)
from rootfs_imagegen.types import BuildType
from rootfs_imagegen.variants.schema import Variant

NAME_TIME_FORMAT = "%Y%m%d.%H%M%S"
ARCHIVE_SUFFIX = ".tar.zst"


def generate_image_name(variant: str, now: datetime | None = None) -> str:
    """Generate an image name from the variant and the current UTC time."""
    if now is None:
        now = datetime.now(timezone.utc)
    return f"{variant}-{now.strftime(NAME_TIME_FORMAT)}"


@dataclass(frozen=True)
class BuildContext:
    """Everything a build needs to know, fixed for its duration.

    Attributes:
        variant: Requested variant.
        contributors: Resolved contributors, requested variant last.
        build_type: Declared build type of the requested variant.
        image_name: Name of the artifact set.
        output_root: Directory receiving the artifact set and archive.
        scratch_dir: Directory holding the scratch image and mountpoint.
        scratch_image_size: Size of the sparse scratch image.
        min_root_free_gib: Free space required on / (GiB).
        min_scratch_free_gib: Free space required in scratch_dir (GiB).
        no_cleanup: Leave scratch state in place.
        skip_archive: Do not create the .tar.zst archive.
        hooks_fatal: Abort on nonzero hook exit.
    """

    variant: Variant
    contributors: tuple[Variant, ...]
    build_type: BuildType
    image_name: str
    output_root: Path
    scratch_dir: Path
    scratch_image_size: str = "20G"
    min_root_free_gib: int = 2
    min_scratch_free_gib: int = 10
    no_cleanup: bool = False
    skip_archive: bool = False
    hooks_fatal: bool = True

    @property
    def output_dir(self) -> Path:
        return self.output_root / self.image_name

    @property
    def archive_path(self) -> Path:
        return self.output_root / f"{self.image_name}{ARCHIVE_SUFFIX}"

    @property
    def scratch_image(self) -> Path:
        return self.scratch_dir / SCRATCH_IMAGE_NAME

    @property
    def mountpoint(self) -> Path:
        return self.scratch_dir / MOUNTPOINT_NAME

    @property
    def working_root(self) -> Path:
        return self.mountpoint / ROOT_SUBVOLUME

    @property
    def subvolumes(self) -> dict[str, Path]:
        """Subvolume paths keyed by artifact label (rootfs, etc, var)."""
        root = self.working_root
        result = {ROOT_SUBVOLUME: root}
        for name in NESTED_SUBVOLUMES:
            result[name] = root / name
        return result


__all__ = [
    "ARCHIVE_SUFFIX",
    "BuildContext",
    "NAME_TIME_FORMAT",
    "generate_image_name",
]
