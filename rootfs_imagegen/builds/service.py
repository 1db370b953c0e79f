"""Build service module.

This module provides the high-level build API:
- build_variant(): main entry point - validate, check privileges, run
- describe_variant(): resolved contributors and merged lists without building

Pre-flight order: the variant and its dependencies are validated first,
then root privileges are checked, then the pipeline runs. Nothing on the
host is modified before all three succeed.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from rootfs_imagegen.builds.pipeline import BuildOutcome, BuildPipeline, prepare_context
from rootfs_imagegen.config import Settings, get_settings
from rootfs_imagegen.errors import PrivilegeError
from rootfs_imagegen.types import BuildType
from rootfs_imagegen.variants.lists import BOOTSTRAP_LIST, PACKAGE_LIST, merge
from rootfs_imagegen.variants.resolver import load_variant, resolve_contributors

logger = logging.getLogger(__name__)


@dataclass
class VariantPlan:
    """What a build of a variant would use.

    Attributes:
        name: Requested variant.
        build_type: Declared build type (None if unrecognized).
        contributors: Contributor names, requested variant last.
        bootstrap_packages: Merged bootstrap.list.
        packages: Merged package.list.
    """

    name: str
    build_type: BuildType | None
    contributors: list[str] = field(default_factory=list)
    bootstrap_packages: list[str] = field(default_factory=list)
    packages: list[str] = field(default_factory=list)


def ensure_root() -> None:
    """Require root privileges.

    Raises:
        PrivilegeError: If the effective user is not root.
    """
    if os.geteuid() != 0:
        raise PrivilegeError()


def describe_variant(settings: Settings, variant_name: str) -> VariantPlan:
    """Resolve a variant and merge its lists without touching the host."""
    config_dir = settings.config_dir.absolute()
    variant = load_variant(config_dir, variant_name)
    contributors = resolve_contributors(
        config_dir, variant.name, transitive=settings.transitive_dependencies
    )
    return VariantPlan(
        name=variant.name,
        build_type=variant.build_type,
        contributors=[v.name for v in contributors],
        bootstrap_packages=merge(contributors, BOOTSTRAP_LIST),
        packages=merge(contributors, PACKAGE_LIST),
    )


def build_variant(
    variant_name: str,
    settings: Settings | None = None,
    require_root: bool = True,
) -> BuildOutcome:
    """Build a variant.

    Args:
        variant_name: Name of the variant directory under settings.config_dir.
        settings: Settings (loaded from the environment if omitted).
        require_root: Check for root privileges before running.

    Returns:
        BuildOutcome describing the artifact set.

    Raises:
        ConfigurationError: For invalid variants or missing privileges.
        ResourceError: For insufficient storage.
        ToolInvocationError: When an external command fails.
        StagingIOError: When a filesystem step fails.
    """
    if settings is None:
        settings = get_settings()

    ctx = prepare_context(settings, variant_name)
    if require_root:
        ensure_root()

    pipeline = BuildPipeline.from_settings(ctx, settings)
    outcome = pipeline.run()
    logger.info("Built %s into %s", outcome.image_name, outcome.output_dir)
    return outcome


__all__ = [
    "VariantPlan",
    "build_variant",
    "describe_variant",
    "ensure_root",
]
