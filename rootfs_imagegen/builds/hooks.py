"""Extension hook execution.

Variants may ship lifecycle scripts as extensions/<hook>.sh. A missing
script is a no-op. A present script runs with bash from inside the working
root, with the build described through ROOTFS_IMG_* environment variables.

A nonzero exit aborts the build unless hooks are configured non-fatal, in
which case the failure is logged and the build continues.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

from rootfs_imagegen.builds.runner import ToolResult, run_tool
from rootfs_imagegen.errors import HookFailedError

if TYPE_CHECKING:
    from rootfs_imagegen.types import Hook
    from rootfs_imagegen.variants.schema import Variant

logger = logging.getLogger(__name__)


def hook_environment(
    variant: Variant,
    hook: Hook,
    working_root: Path,
    image_name: str,
) -> dict[str, str]:
    """Compose the environment passed to a hook script."""
    return {
        "ROOTFS_IMG_ROOT": str(working_root),
        "ROOTFS_IMG_VARIANT": variant.name,
        "ROOTFS_IMG_VARIANT_DIR": str(variant.path),
        "ROOTFS_IMG_HOOK": hook.value,
        "ROOTFS_IMG_IMAGE_NAME": image_name,
    }


def run_hook(
    variant: Variant,
    hook: Hook,
    working_root: Path,
    image_name: str = "",
    fatal: bool = True,
) -> ToolResult | None:
    """Run one variant's hook script if it exists.

    Args:
        variant: Variant providing the script.
        hook: Lifecycle point.
        working_root: Root tree under construction (used as cwd).
        image_name: Name of the image being built.
        fatal: Raise on nonzero exit instead of logging a warning.

    Returns:
        ToolResult, or None if the variant has no script for this hook.

    Raises:
        HookFailedError: If the script exits nonzero and fatal is set.
    """
    script = variant.hook_path(hook)
    if not script.is_file():
        logger.debug("No %s hook for %s", hook.value, variant.name)
        return None

    logger.info("Running %s hook from %s", hook.value, variant.name)
    result = run_tool(
        ["bash", script],
        cwd=working_root,
        env_override=hook_environment(variant, hook, working_root, image_name),
    )
    if not result.success:
        if fatal:
            raise HookFailedError(script, result.exit_code, result.stderr or None)
        logger.warning(
            "Hook %s exited with code %d, continuing", script, result.exit_code
        )
    return result


def run_hooks(
    contributors: Iterable[Variant],
    hook: Hook,
    working_root: Path,
    image_name: str = "",
    fatal: bool = True,
) -> list[ToolResult]:
    """Run a hook for every contributor that provides it, in order.

    Returns:
        Results of the scripts that ran.
    """
    results: list[ToolResult] = []
    for variant in contributors:
        result = run_hook(variant, hook, working_root, image_name, fatal=fatal)
        if result is not None:
            results.append(result)
    return results


__all__ = ["hook_environment", "run_hook", "run_hooks"]
