"""Variant configuration module.

This module handles:
- Loading variant directories
- Resolving dependency lists into ordered contributors
- Parsing and merging list files
"""

from rootfs_imagegen.variants.lists import merge, parse_list_lines, read_list_file
from rootfs_imagegen.variants.resolver import (
    list_variants,
    load_variant,
    resolve,
    resolve_contributors,
    resolve_transitive,
)
from rootfs_imagegen.variants.schema import Variant

__all__ = [
    "Variant",
    "list_variants",
    "load_variant",
    "merge",
    "parse_list_lines",
    "read_list_file",
    "resolve",
    "resolve_contributors",
    "resolve_transitive",
]
