"""Build orchestration module.

This module handles:
- Scratch disk provisioning and cleanup
- Bootstrap backends
- Overlay composition and extension hooks
- Filesystem staging for the atomic-update layout
- Export of subvolume images, manifest and archive
"""

from rootfs_imagegen.builds.context import BuildContext

__all__ = ["BuildContext"]

# Submodules are imported directly, e.g. rootfs_imagegen.builds.pipeline
