"""Root filesystem image generator for atomic-update Linux variants.

This package composes layered variant configuration into btrfs
root, /etc and /var snapshot images plus a package manifest.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
