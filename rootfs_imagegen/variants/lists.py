"""List file parsing and merging.

List files (depends.list, bootstrap.list, package.list) hold one entry
per line. Rules:

- ``#`` starts a comment that runs to end of line
- lines that are empty or whitespace-only after comment removal are dropped
- surrounding whitespace is trimmed from each entry

Merging concatenates the lists of all contributors in order and keeps the
first occurrence of each entry.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rootfs_imagegen.variants.schema import Variant

logger = logging.getLogger(__name__)

COMMENT_MARKER = "#"

DEPENDS_LIST = "depends.list"
BOOTSTRAP_LIST = "bootstrap.list"
PACKAGE_LIST = "package.list"


def parse_list_lines(text: str) -> list[str]:
    """Parse list file content into entries.

    Args:
        text: Raw file content.

    Returns:
        Entries in file order, comments and blank lines removed.
    """
    entries: list[str] = []
    for line in text.splitlines():
        entry = line.split(COMMENT_MARKER, 1)[0].strip()
        if entry:
            entries.append(entry)
    return entries


def read_list_file(path: Path) -> list[str]:
    """Read and parse a list file.

    A missing file is not an error; it contributes nothing.

    Args:
        path: Path to the list file.

    Returns:
        Parsed entries (empty if the file does not exist).
    """
    if not path.is_file():
        logger.debug("List file not present: %s", path)
        return []
    return parse_list_lines(path.read_text(encoding="utf-8"))


def dedupe(entries: Iterable[str]) -> list[str]:
    """Remove duplicates, keeping the first occurrence of each entry."""
    seen: set[str] = set()
    result: list[str] = []
    for entry in entries:
        if entry not in seen:
            seen.add(entry)
            result.append(entry)
    return result


def merge(contributors: Iterable[Variant], list_name: str) -> list[str]:
    """Merge a named list file across contributors.

    Args:
        contributors: Variants in application order (dependencies first).
        list_name: List file name, e.g. ``bootstrap.list``.

    Returns:
        Concatenated, de-duplicated entries.
    """
    merged: list[str] = []
    for variant in contributors:
        entries = read_list_file(variant.path / list_name)
        if entries:
            logger.debug(
                "%s contributes %d entries to %s", variant.name, len(entries), list_name
            )
        merged.extend(entries)
    return dedupe(merged)


__all__ = [
    "BOOTSTRAP_LIST",
    "COMMENT_MARKER",
    "DEPENDS_LIST",
    "PACKAGE_LIST",
    "dedupe",
    "merge",
    "parse_list_lines",
    "read_list_file",
]
