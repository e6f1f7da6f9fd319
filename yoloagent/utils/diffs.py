"""Utilities for summarizing sandbox diffs."""

from dataclasses import dataclass

from unidiff import PatchSet
from unidiff.errors import UnidiffParseError


@dataclass
class FileChange:
    """One file touched by a sandbox branch."""

    status: str
    path: str
    added: int = 0
    removed: int = 0


def parse_name_status(output: str) -> list[FileChange]:
    """Parse ``git diff --name-status`` output.

    Args:
        output: Raw command output (``<status>\\t<path>`` per line)

    Returns:
        List of FileChange entries, in git's order
    """
    changes = []
    for line in output.splitlines():
        if not line.strip():
            continue
        status, _, path = line.partition("\t")
        path = path.strip()
        if path:
            changes.append(FileChange(status=status.strip(), path=path))
    return changes


def count_line_changes(patch_text: str) -> dict[str, tuple[int, int]]:
    """Count added/removed lines per file in a unified diff.

    Args:
        patch_text: Output of ``git diff``

    Returns:
        Mapping of target path to (added, removed); empty if unparseable
    """
    if not patch_text.strip():
        return {}

    try:
        patchset = PatchSet(patch_text)
    except UnidiffParseError:
        return {}

    counts = {}
    for patched_file in patchset:
        path = patched_file.path
        counts[path] = (patched_file.added, patched_file.removed)
    return counts


def merge_line_counts(
    changes: list[FileChange], counts: dict[str, tuple[int, int]]
) -> list[FileChange]:
    """Attach line counts from count_line_changes to name-status entries."""
    for change in changes:
        # Renames report "old\tnew"; counts are keyed by the new path
        key = change.path.split("\t")[-1]
        added, removed = counts.get(key, (0, 0))
        change.added = added
        change.removed = removed
    return changes
