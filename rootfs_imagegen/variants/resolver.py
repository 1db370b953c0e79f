"""Variant loading and dependency resolution.

This module handles:
- Loading a variant directory into a Variant model
- Reading the build-type marker
- Resolving depends.list into an ordered contributor sequence

Resolution is one level deep: a variant's dependencies are applied before
the variant itself, but their own dependencies are not expanded. The
separate ``resolve_transitive`` walk expands the full graph and detects
cycles; callers opt into it explicitly.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from rootfs_imagegen.errors import (
    DependencyCycleError,
    InvalidVariantNameError,
    MissingDependencyError,
    VariantNotFoundError,
)
from rootfs_imagegen.types import BuildType
from rootfs_imagegen.variants.lists import DEPENDS_LIST, dedupe, read_list_file
from rootfs_imagegen.variants.schema import BUILD_TYPE_MARKER, Variant

logger = logging.getLogger(__name__)


def read_build_type(variant_dir: Path) -> tuple[BuildType | None, str | None]:
    """Read the build-type marker of a variant directory.

    Args:
        variant_dir: Variant directory.

    Returns:
        Tuple of (parsed build type or None, raw marker value or None).
    """
    entries = read_list_file(variant_dir / BUILD_TYPE_MARKER)
    if not entries:
        return None, None
    value = entries[0]
    try:
        return BuildType(value.lower()), value
    except ValueError:
        logger.warning("Unrecognized build type '%s' in %s", value, variant_dir)
        return None, value


def load_variant_dir(variant_dir: Path) -> Variant:
    """Load a variant from its directory.

    Args:
        variant_dir: Path to the variant directory.

    Returns:
        Variant model.

    Raises:
        VariantNotFoundError: If the directory does not exist.
        InvalidVariantNameError: If the directory name is not a valid
            variant name.
    """
    variant_dir = variant_dir.absolute()
    if not variant_dir.is_dir():
        raise VariantNotFoundError(variant_dir.name, variant_dir)

    build_type, raw = read_build_type(variant_dir)
    try:
        return Variant(
            name=variant_dir.name,
            path=variant_dir,
            build_type=build_type,
            build_type_value=raw,
            dependencies=tuple(read_list_file(variant_dir / DEPENDS_LIST)),
        )
    except ValidationError as e:
        raise InvalidVariantNameError(variant_dir.name, variant_dir) from e


def load_variant(config_dir: Path, name: str) -> Variant:
    """Load a variant by name from the configuration root."""
    return load_variant_dir(config_dir / name)


def list_variants(config_dir: Path) -> list[Variant]:
    """List all variants in the configuration root, sorted by name.

    Args:
        config_dir: Configuration root.

    Returns:
        Variant models (empty if the root does not exist).
    """
    if not config_dir.is_dir():
        logger.warning("Configuration directory does not exist: %s", config_dir)
        return []
    variants: list[Variant] = []
    for path in sorted(config_dir.iterdir()):
        if not path.is_dir() or path.name.startswith("."):
            continue
        try:
            variants.append(load_variant_dir(path))
        except InvalidVariantNameError as e:
            logger.warning("Skipping %s: %s", path, e.message)
    return variants


def _check_dependencies(variant: Variant, config_dir: Path) -> list[str]:
    """Validate a variant's direct dependencies in one pass.

    Returns:
        Dependency names, duplicates collapsed.

    Raises:
        DependencyCycleError: If the variant names itself.
        MissingDependencyError: With every missing name, not just the first.
    """
    names = dedupe(variant.dependencies)
    if variant.name in names:
        raise DependencyCycleError([variant.name, variant.name])

    missing = [name for name in names if not (config_dir / name).is_dir()]
    if missing:
        raise MissingDependencyError(variant.name, missing, config_dir)
    return names


def resolve(variant_dir: Path) -> tuple[Variant, ...]:
    """Resolve the contributors of a variant, one level deep.

    Args:
        variant_dir: Directory of the requested variant. Its parent is the
            shared configuration root in which dependencies are looked up.

    Returns:
        Dependencies in declaration order followed by the variant itself.

    Raises:
        VariantNotFoundError: If the variant does not exist.
        MissingDependencyError: If any dependency does not exist.
        DependencyCycleError: If the variant depends on itself.
    """
    variant = load_variant_dir(variant_dir)
    config_dir = variant.path.parent
    names = _check_dependencies(variant, config_dir)

    contributors = [load_variant(config_dir, name) for name in names]
    contributors.append(variant)
    logger.info(
        "Resolved %s: %s", variant.name, " -> ".join(v.name for v in contributors)
    )
    return tuple(contributors)


def resolve_transitive(variant_dir: Path) -> tuple[Variant, ...]:
    """Resolve the full dependency graph of a variant.

    Dependencies are visited depth-first in declaration order and emitted
    after their own dependencies, so every variant appears after everything
    it layers on. Each variant appears once.

    Raises:
        VariantNotFoundError: If the variant does not exist.
        MissingDependencyError: If any dependency does not exist.
        DependencyCycleError: If the graph contains a cycle.
    """
    root = load_variant_dir(variant_dir)
    config_dir = root.path.parent

    ordered: list[Variant] = []
    done: set[str] = set()
    stack: list[str] = []

    def visit(variant: Variant) -> None:
        if variant.name in stack:
            cycle = stack[stack.index(variant.name) :] + [variant.name]
            raise DependencyCycleError(cycle)
        if variant.name in done:
            return
        stack.append(variant.name)
        for name in _check_dependencies(variant, config_dir):
            visit(load_variant(config_dir, name))
        stack.pop()
        done.add(variant.name)
        ordered.append(variant)

    visit(root)
    logger.info(
        "Resolved %s transitively: %s",
        root.name,
        " -> ".join(v.name for v in ordered),
    )
    return tuple(ordered)


def resolve_contributors(
    config_dir: Path,
    name: str,
    transitive: bool = False,
) -> tuple[Variant, ...]:
    """Resolve contributors of a named variant.

    Args:
        config_dir: Configuration root.
        name: Requested variant name.
        transitive: Expand the whole graph instead of one level.

    Returns:
        Ordered contributors, requested variant last.
    """
    variant_dir = config_dir / name
    if transitive:
        return resolve_transitive(variant_dir)
    return resolve(variant_dir)


__all__ = [
    "list_variants",
    "load_variant",
    "load_variant_dir",
    "read_build_type",
    "resolve",
    "resolve_contributors",
    "resolve_transitive",
]
