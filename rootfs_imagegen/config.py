"""Configuration settings for rootfs_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import logging
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the ROOTFS_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="ROOTFS_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    config_dir: Path = Field(
        default=Path("variants"),
        description="Configuration root containing one directory per variant",
    )
    output_dir: Path = Field(
        default=Path("output"),
        description="Root directory for build artifact sets",
    )
    scratch_dir: Path = Field(
        default=Path("/var/tmp/rootfs-imagegen"),
        description="Directory holding the scratch disk image and its mountpoint",
    )

    # Naming
    name: str | None = Field(
        default=None,
        description="Deterministic image name (generated from variant if unset)",
    )

    # Operational modes
    no_cleanup: bool = Field(
        default=False,
        description="Leave scratch image and mounts in place for debugging",
    )
    skip_archive: bool = Field(
        default=False,
        description="Do not compress the output directory into a .tar.zst archive",
    )
    hooks_fatal: bool = Field(
        default=True,
        description="Abort the build when an extension hook exits nonzero",
    )
    transitive_dependencies: bool = Field(
        default=False,
        description="Resolve dependencies of dependencies (with cycle detection)",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Scratch disk
    scratch_image_size: str = Field(
        default="20G",
        description="Size of the sparse scratch disk image (truncate syntax)",
    )
    min_root_free_gib: int = Field(
        default=2,
        ge=0,
        description="Minimum free space on / before building (GiB)",
    )
    min_scratch_free_gib: int = Field(
        default=10,
        ge=0,
        description="Minimum free space in the scratch directory before building (GiB)",
    )

    # Debian backend
    debian_suite: str = Field(
        default="stable",
        description="Suite passed to debootstrap",
    )
    debian_mirror: str = Field(
        default="http://deb.debian.org/debian",
        description="Mirror passed to debootstrap",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


def setup_logging(level: str = "INFO") -> None:
    """Set up logging configuration."""
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT)


__all__ = [
    "LOG_FORMAT",
    "Settings",
    "get_settings",
    "print_settings_json",
    "setup_logging",
]
