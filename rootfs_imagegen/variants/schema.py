"""Pydantic model for variant configuration.

A variant is a directory under the configuration root:

    <config_dir>/<name>/
        build-type          backend tag (arch, debian, migration)
        depends.list        variants this one layers on top of
        bootstrap.list      packages for the bootstrap tool
        package.list        packages installed after bootstrap
        overlay/<stage>/    trees copied over the working root
        extensions/<hook>.sh
        update.sh
        migration.sh, migration/   (migration type only)

The model is a read-only view of that directory.
"""

import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rootfs_imagegen.types import BuildType, Hook, Stage

VARIANT_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")

BUILD_TYPE_MARKER = "build-type"
OVERLAY_DIR = "overlay"
EXTENSIONS_DIR = "extensions"
UPDATE_SCRIPT = "update.sh"
MIGRATION_SCRIPT = "migration.sh"
MIGRATION_ASSETS = "migration"


class Variant(BaseModel):
    """A named configuration bundle.

    Attributes:
        name: Directory name, unique within the configuration root.
        path: Absolute path to the variant directory.
        build_type: Declared backend, or None if unset/unrecognized.
        build_type_value: Raw marker value as written on disk.
        dependencies: Variant names from depends.list, in declaration order.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(description="Variant directory name")
    path: Path = Field(description="Variant directory")
    build_type: BuildType | None = Field(default=None)
    build_type_value: str | None = Field(default=None)
    dependencies: tuple[str, ...] = Field(default=())

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name is a plain directory name."""
        if not VARIANT_NAME_PATTERN.match(v):
            raise ValueError(
                f"variant name must match {VARIANT_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @property
    def marker_path(self) -> Path:
        return self.path / BUILD_TYPE_MARKER

    def list_path(self, list_name: str) -> Path:
        return self.path / list_name

    def overlay_dir(self, stage: Stage) -> Path:
        return self.path / OVERLAY_DIR / stage.value

    def hook_path(self, hook: Hook) -> Path:
        return self.path / EXTENSIONS_DIR / f"{hook.value}.sh"

    @property
    def update_script(self) -> Path:
        return self.path / UPDATE_SCRIPT

    @property
    def migration_script(self) -> Path:
        return self.path / MIGRATION_SCRIPT

    @property
    def migration_assets(self) -> Path:
        return self.path / MIGRATION_ASSETS


__all__ = [
    "BUILD_TYPE_MARKER",
    "EXTENSIONS_DIR",
    "MIGRATION_ASSETS",
    "MIGRATION_SCRIPT",
    "OVERLAY_DIR",
    "UPDATE_SCRIPT",
    "VARIANT_NAME_PATTERN",
    "Variant",
]
