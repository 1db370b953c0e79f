"""Build pipeline controller.

This module sequences a build:

    init -> storage_check -> disk_provisioned -> bootstrapped
         -> secondary_installed -> staged -> exported -> done

Any failure moves the pipeline to ``aborted``; the scratch disk is
unmounted and deleted (unless cleanup is disabled) and the error is
re-raised to the caller. A scratch cleanup failure after export is only
logged; the finished artifact set is kept. Overlays and hooks interleave as follows:

- pre-build hook         after the scratch disk is provisioned
- post-bootstrap overlay, then hook, after bootstrap
- post-install overlay, then hook, after secondary install
- post-build hook        after staging, before read-only finalization

Migration builds skip the disk entirely: the migration script (and its
asset directory) is copied to the output directory and archived.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from rootfs_imagegen.builds.backends import Backend, get_backend
from rootfs_imagegen.builds.context import BuildContext, generate_image_name
from rootfs_imagegen.builds.exporter import (
    ExportResult,
    archive_output,
    copy_file,
    describe_artifacts,
    export,
)
from rootfs_imagegen.builds.hooks import run_hooks
from rootfs_imagegen.builds.overlay import apply_overlay
from rootfs_imagegen.builds.stager import finalize_readonly, stage_root
from rootfs_imagegen.builds.storage import ScratchDisk, check_storage
from rootfs_imagegen.config import Settings
from rootfs_imagegen.errors import (
    ConfigurationError,
    MissingListError,
    StagingIOError,
    UnknownBuildTypeError,
)
from rootfs_imagegen.types import ArtifactInfo, BuildState, BuildType, Hook, Stage
from rootfs_imagegen.variants.lists import BOOTSTRAP_LIST, PACKAGE_LIST, merge
from rootfs_imagegen.variants.resolver import load_variant, resolve_contributors
from rootfs_imagegen.variants.schema import MIGRATION_ASSETS, MIGRATION_SCRIPT

logger = logging.getLogger(__name__)


@dataclass
class BuildOutcome:
    """Result of a successful build.

    Attributes:
        image_name: Name of the artifact set.
        build_type: Build type that ran.
        output_dir: Directory holding the artifact set.
        archive_path: Archive path, if archiving was enabled.
        artifacts: Files in the artifact set.
        states: States the pipeline passed through.
    """

    image_name: str
    build_type: BuildType
    output_dir: Path
    archive_path: Path | None = None
    artifacts: list[ArtifactInfo] = field(default_factory=list)
    states: list[BuildState] = field(default_factory=list)


def prepare_context(
    settings: Settings,
    variant_name: str,
) -> BuildContext:
    """Validate a variant and compute the build context (init state).

    Nothing on the host is modified.

    Raises:
        VariantNotFoundError: If the variant does not exist.
        UnknownBuildTypeError: If no recognized build type is configured.
        MissingDependencyError: If any dependency is missing.
        ConfigurationError: If the output directory already exists.
    """
    config_dir = settings.config_dir.absolute()
    variant = load_variant(config_dir, variant_name)
    if variant.build_type is None:
        raise UnknownBuildTypeError(
            variant.name, variant.marker_path, variant.build_type_value
        )

    contributors = resolve_contributors(
        config_dir, variant.name, transitive=settings.transitive_dependencies
    )
    image_name = settings.name or generate_image_name(variant.name)

    ctx = BuildContext(
        variant=variant,
        contributors=contributors,
        build_type=variant.build_type,
        image_name=image_name,
        output_root=settings.output_dir.absolute(),
        scratch_dir=settings.scratch_dir.absolute(),
        scratch_image_size=settings.scratch_image_size,
        min_root_free_gib=settings.min_root_free_gib,
        min_scratch_free_gib=settings.min_scratch_free_gib,
        no_cleanup=settings.no_cleanup,
        skip_archive=settings.skip_archive,
        hooks_fatal=settings.hooks_fatal,
    )
    if ctx.output_dir.exists() or ctx.archive_path.exists():
        raise ConfigurationError(
            f"Output for {image_name} already exists in {ctx.output_root}",
            code="output_exists",
        )
    logger.info(
        "Prepared %s build %s of %s", ctx.build_type.value, image_name, variant.name
    )
    return ctx


class BuildPipeline:
    """Runs one build described by a BuildContext."""

    def __init__(self, ctx: BuildContext, backend: Backend | None = None) -> None:
        self.ctx = ctx
        self.backend = backend
        self.state = BuildState.INIT
        self.states: list[BuildState] = [BuildState.INIT]
        self.bootstrap_packages = merge(ctx.contributors, BOOTSTRAP_LIST)
        self.packages = merge(ctx.contributors, PACKAGE_LIST)
        self._output_existed = ctx.output_dir.exists() or ctx.archive_path.exists()

    @classmethod
    def from_settings(cls, ctx: BuildContext, settings: Settings) -> BuildPipeline:
        """Create a pipeline with the backend matching the build type."""
        backend = None
        if ctx.build_type is not BuildType.MIGRATION:
            backend = get_backend(
                ctx.build_type,
                debian_suite=settings.debian_suite,
                debian_mirror=settings.debian_mirror,
            )
        return cls(ctx, backend)

    def _advance(self, state: BuildState) -> None:
        logger.info(
            "Build %s: %s -> %s", self.ctx.image_name, self.state.value, state.value
        )
        self.state = state
        self.states.append(state)

    def validate(self) -> None:
        """Pre-flight configuration checks that need no host access.

        Raises:
            ConfigurationError: If the variant cannot be built as configured.
        """
        ctx = self.ctx
        if ctx.build_type is BuildType.MIGRATION:
            if not ctx.variant.migration_script.is_file():
                raise ConfigurationError(
                    f"Migration variant {ctx.variant.name} has no "
                    f"{MIGRATION_SCRIPT} ({ctx.variant.migration_script})",
                    code="missing_migration_script",
                )
            return
        if self.backend is None:
            raise ConfigurationError(
                f"No backend configured for {ctx.build_type.value} build",
                code="missing_backend",
            )
        if self.backend.requires_bootstrap_list and not self.bootstrap_packages:
            raise MissingListError(BOOTSTRAP_LIST, ctx.variant.name)

    def run(self) -> BuildOutcome:
        """Run the build to completion.

        Returns:
            BuildOutcome for the finished artifact set.

        Raises:
            ImageGenError: On any failure, after cleanup.
        """
        try:
            self.validate()
            if self.ctx.build_type is BuildType.MIGRATION:
                outcome = self._run_migration()
            else:
                outcome = self._run_disk_build()
        except Exception:
            failed_in = self.state
            self._advance(BuildState.ABORTED)
            logger.error(
                "Build %s aborted during %s", self.ctx.image_name, failed_in.value
            )
            self._discard_output()
            raise

        self._advance(BuildState.DONE)
        outcome.states = list(self.states)
        return outcome

    def _discard_output(self) -> None:
        """Remove a partially written artifact set."""
        if self.ctx.no_cleanup or self._output_existed:
            return
        for path in (self.ctx.archive_path, self.ctx.output_dir):
            if path.is_dir():
                shutil.rmtree(path, ignore_errors=True)
            elif path.exists():
                path.unlink(missing_ok=True)

    def _run_disk_build(self) -> BuildOutcome:
        ctx = self.ctx
        self._advance(BuildState.STORAGE_CHECK)
        check_storage(ctx.scratch_dir, ctx.min_root_free_gib, ctx.min_scratch_free_gib)

        disk = ScratchDisk(ctx.scratch_dir, ctx.scratch_image_size, keep=ctx.no_cleanup)
        try:
            result = self._build_on_disk(disk)
        except StagingIOError as e:
            # Only scratch cleanup can fail once the artifact set is complete.
            if self.state is not BuildState.EXPORTED:
                raise
            logger.error(
                "Scratch cleanup failed after export, keeping %s: %s",
                ctx.output_dir,
                e.message,
            )

        return BuildOutcome(
            image_name=ctx.image_name,
            build_type=ctx.build_type,
            output_dir=result.output_dir,
            archive_path=result.archive_path,
            artifacts=result.artifacts,
        )

    def _build_on_disk(self, disk: ScratchDisk) -> ExportResult:
        ctx = self.ctx
        backend = self.backend
        assert backend is not None

        with disk:
            root = disk.provision()
            self._advance(BuildState.DISK_PROVISIONED)
            self._hooks(Hook.PRE_BUILD, root)

            backend.bootstrap(root, self.bootstrap_packages, ctx.variant.name)
            self._advance(BuildState.BOOTSTRAPPED)
            apply_overlay(root, ctx.contributors, Stage.POST_BOOTSTRAP)
            self._hooks(Hook.POST_BOOTSTRAP, root)

            if self.packages:
                self._install(disk, backend, root)
            self._advance(BuildState.SECONDARY_INSTALLED)
            apply_overlay(root, ctx.contributors, Stage.POST_INSTALL)
            self._hooks(Hook.POST_INSTALL, root)

            stage_root(root, backend)
            installed = backend.list_packages(root)
            self._hooks(Hook.POST_BUILD, root)
            finalize_readonly(disk.subvolumes)
            self._advance(BuildState.STAGED)

            result = export(ctx, installed)
            self._advance(BuildState.EXPORTED)
        return result

    def _install(self, disk: ScratchDisk, backend: Backend, root: Path) -> None:
        """Install the secondary package list with the host cache bind-mounted."""
        cache = backend.package_cache
        if not cache.is_dir():
            logger.info("Host package cache %s not found, skipping bind mount", cache)
            backend.install(root, self.packages)
            return
        with disk.bind_mount(cache, root / cache.relative_to("/")):
            backend.install(root, self.packages)

    def _hooks(self, hook: Hook, root: Path) -> None:
        run_hooks(
            self.ctx.contributors,
            hook,
            root,
            image_name=self.ctx.image_name,
            fatal=self.ctx.hooks_fatal,
        )

    def _run_migration(self) -> BuildOutcome:
        ctx = self.ctx
        variant = ctx.variant
        output_dir = ctx.output_dir
        try:
            output_dir.mkdir(parents=True)
            copy_file(variant.migration_script, output_dir / MIGRATION_SCRIPT)
            if variant.migration_assets.is_dir():
                shutil.copytree(
                    variant.migration_assets,
                    output_dir / MIGRATION_ASSETS,
                    symlinks=True,
                )
        except OSError as e:
            raise StagingIOError(
                f"Failed to assemble migration output {output_dir}: {e}",
                path=output_dir,
            ) from e
        self._advance(BuildState.EXPORTED)

        outcome = BuildOutcome(
            image_name=ctx.image_name,
            build_type=ctx.build_type,
            output_dir=output_dir,
            artifacts=describe_artifacts(output_dir, ctx.output_root),
        )
        if not ctx.skip_archive:
            outcome.archive_path = archive_output(
                ctx.output_root, ctx.image_name, ctx.archive_path
            )
        return outcome


__all__ = ["BuildOutcome", "BuildPipeline", "prepare_context"]
