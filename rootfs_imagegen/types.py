"""Shared type definitions for rootfs_imagegen.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class BuildType(str, Enum):
    """Build backend declared by a variant's build-type marker."""

    ARCH = "arch"
    DEBIAN = "debian"
    MIGRATION = "migration"


class BuildState(str, Enum):
    """State of the build pipeline."""

    INIT = "init"
    STORAGE_CHECK = "storage_check"
    DISK_PROVISIONED = "disk_provisioned"
    BOOTSTRAPPED = "bootstrapped"
    SECONDARY_INSTALLED = "secondary_installed"
    STAGED = "staged"
    EXPORTED = "exported"
    DONE = "done"
    ABORTED = "aborted"


class Stage(str, Enum):
    """Pipeline points that carry an overlay tree."""

    POST_BOOTSTRAP = "post-bootstrap"
    POST_INSTALL = "post-install"


class Hook(str, Enum):
    """Lifecycle points at which variant extension scripts run."""

    PRE_BUILD = "pre-build"
    POST_BOOTSTRAP = "post-bootstrap"
    POST_INSTALL = "post-install"
    POST_BUILD = "post-build"


@dataclass
class ArtifactInfo:
    """Information about a produced output file."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str
    kind: str | None = None


__all__ = [
    "ArtifactInfo",
    "BuildState",
    "BuildType",
    "Hook",
    "Stage",
]
