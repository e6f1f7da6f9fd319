"""File ignore rules handling using pathspec."""

import logging
from pathlib import Path

import pathspec

from yoloagent.constants import BUILTIN_IGNORES

logger = logging.getLogger(__name__)

IGNORE_FILES = (".gitignore", ".yoloignore")


class IgnoreRules:
    """Combined ignore rules from built-ins, .gitignore and .yoloignore."""

    def __init__(self, root: Path):
        """Initialize ignore rules.

        Args:
            root: Directory whose ignore files are loaded; paths are matched
                relative to it
        """
        self.root = Path(root)
        self.spec = self._build_spec()

    def _build_spec(self) -> pathspec.PathSpec:
        patterns = list(BUILTIN_IGNORES)

        # .yoloignore is read last so its negations win
        for name in IGNORE_FILES:
            ignore_path = self.root / name
            if ignore_path.exists():
                try:
                    with open(ignore_path) as f:
                        patterns.extend(f.read().splitlines())
                except OSError as e:
                    logger.warning("Cannot read %s: %s", ignore_path, e)

        patterns = [p.strip() for p in patterns if p.strip() and not p.strip().startswith("#")]
        return pathspec.PathSpec.from_lines("gitwildmatch", patterns)

    def should_ignore(self, path: Path) -> bool:
        """Check if a path should be ignored.

        Args:
            path: Absolute path, or path relative to the root

        Returns:
            True if ignored; paths outside the root are always ignored
        """
        path = Path(path)
        if path.is_absolute():
            try:
                path = path.relative_to(self.root)
            except ValueError:
                return True
        return self.spec.match_file(path.as_posix())

    def get_patterns(self) -> list:
        return self.spec.patterns
