"""Error taxonomy for rootfs_imagegen.

Every error carries a stable ``code`` for programmatic handling and the
process ``exit_code`` the CLI should return. Four families exist:

- ConfigurationError: variant, dependency, list or build-type problems
- ResourceError: host preconditions such as free storage
- ToolInvocationError: an external command failed
- StagingIOError: a file copy/move failed while shaping the root tree

Configuration and resource errors are raised during pre-flight, before
any host state is touched.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

EXIT_FAILURE = 1
EXIT_UNKNOWN_BUILD_TYPE = 2


class ImageGenError(Exception):
    """Base error for all rootfs_imagegen failures."""

    exit_code = EXIT_FAILURE

    def __init__(self, message: str, code: str = "imagegen_error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class ConfigurationError(ImageGenError):
    """Variant configuration is missing or invalid."""

    def __init__(self, message: str, code: str = "configuration_error") -> None:
        super().__init__(message, code=code)


class VariantNotFoundError(ConfigurationError):
    """Requested variant directory does not exist."""

    def __init__(self, name: str, path: Path) -> None:
        super().__init__(
            f"Variant not found: {name} (expected directory {path})",
            code="variant_not_found",
        )
        self.name = name
        self.path = path


class MissingDependencyError(ConfigurationError):
    """One or more declared dependencies do not exist."""

    def __init__(self, variant: str, missing: Sequence[str], config_dir: Path) -> None:
        names = ", ".join(missing)
        super().__init__(
            f"Variant {variant} depends on missing variant(s): {names} "
            f"(looked in {config_dir})",
            code="missing_dependency",
        )
        self.variant = variant
        self.missing = list(missing)
        self.config_dir = config_dir


class InvalidVariantNameError(ConfigurationError):
    """Variant directory name is not usable as a variant name."""

    def __init__(self, name: str, path: Path) -> None:
        super().__init__(
            f"Invalid variant name: {name!r} (directory {path}); names may only "
            "contain letters, digits, '_', '.' and '-'",
            code="invalid_variant_name",
        )
        self.name = name
        self.path = path


class DependencyCycleError(ConfigurationError):
    """Dependency lists form a cycle (or a variant depends on itself)."""

    def __init__(self, cycle: Sequence[str]) -> None:
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            code="dependency_cycle",
        )
        self.cycle = list(cycle)


class MissingListError(ConfigurationError):
    """A list file required by the build type is absent or empty."""

    def __init__(self, list_name: str, variant: str) -> None:
        super().__init__(
            f"No entries found in {list_name} for variant {variant} "
            "or any of its dependencies",
            code="missing_list",
        )
        self.list_name = list_name
        self.variant = variant


class UnknownBuildTypeError(ConfigurationError):
    """Variant does not declare a recognized build type."""

    exit_code = EXIT_UNKNOWN_BUILD_TYPE

    def __init__(self, variant: str, marker: Path, value: str | None = None) -> None:
        detail = f"'{value}'" if value else "unset"
        super().__init__(
            f"No recognized build type for variant {variant} ({marker}: {detail})",
            code="unknown_build_type",
        )
        self.variant = variant
        self.marker = marker
        self.value = value


class PrivilegeError(ConfigurationError):
    """The build must run as root."""

    def __init__(self) -> None:
        super().__init__(
            "Building images requires root privileges "
            "(mount, subvolume and chroot operations)",
            code="permission_error",
        )


class ResourceError(ImageGenError):
    """A host resource precondition is not met."""

    def __init__(self, message: str, code: str = "resource_error") -> None:
        super().__init__(message, code=code)


class InsufficientStorageError(ResourceError):
    """Not enough free space for a build."""

    def __init__(self, path: Path, free_bytes: int, required_bytes: int) -> None:
        gib = 1024**3
        super().__init__(
            f"Insufficient free space on {path}: "
            f"{free_bytes / gib:.1f} GiB free, {required_bytes / gib:.1f} GiB required",
            code="insufficient_storage",
        )
        self.path = path
        self.free_bytes = free_bytes
        self.required_bytes = required_bytes


class ToolInvocationError(ImageGenError):
    """An external command exited nonzero or could not be started."""

    def __init__(
        self,
        message: str,
        command: str | None = None,
        exit_code: int | None = None,
        stderr: str | None = None,
        code: str = "tool_failed",
    ) -> None:
        super().__init__(message, code=code)
        self.command = command
        self.tool_exit_code = exit_code
        self.stderr = stderr


class HookFailedError(ToolInvocationError):
    """A variant extension hook exited nonzero."""

    def __init__(self, hook: Path, exit_code: int, stderr: str | None = None) -> None:
        super().__init__(
            f"Extension hook {hook} failed with exit code {exit_code}",
            command=str(hook),
            exit_code=exit_code,
            stderr=stderr,
            code="hook_failed",
        )
        self.hook = hook


class StagingIOError(ImageGenError):
    """A filesystem operation on the working root failed."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        super().__init__(message, code="staging_io_error")
        self.path = path


__all__ = [
    "EXIT_FAILURE",
    "EXIT_UNKNOWN_BUILD_TYPE",
    "ConfigurationError",
    "DependencyCycleError",
    "HookFailedError",
    "ImageGenError",
    "InsufficientStorageError",
    "InvalidVariantNameError",
    "MissingDependencyError",
    "MissingListError",
    "PrivilegeError",
    "ResourceError",
    "StagingIOError",
    "ToolInvocationError",
    "UnknownBuildTypeError",
    "VariantNotFoundError",
]
