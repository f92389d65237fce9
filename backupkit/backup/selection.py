"""
File selection for backup operations.

Resolves include roots into the individual files that should be archived,
honouring excluded roots and glob patterns. Exclusion always wins over
inclusion.
"""

import os
import logging
from pathlib import Path
from fnmatch import fnmatch
from typing import Iterable, Iterator, List, Optional, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


def normalize_path(path: PathLike) -> str:
    """Absolute, normalized form of a path (symlinks are not resolved)."""
    return os.path.normpath(os.path.abspath(os.path.expanduser(str(path))))


def is_within(path: str, root: str) -> bool:
    """
    Check if path equals root or lies below it.

    Comparison is per path component, so `/data/backup` never contains
    `/data/backups`.
    """
    if path == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return path.startswith(prefix)


class FileSelection:
    """
    Include roots plus exclude roots and exclude glob patterns.

    Exclude roots are compared on absolute, normalized paths. Patterns are
    matched against the full path and against the file or directory name.
    """

    def __init__(
        self,
        include_files_and_directories: Optional[Iterable[PathLike]] = None,
        exclude_patterns: Optional[Iterable[str]] = None,
        follow_links: bool = False,
        exclude_dot_files: bool = False
    ):
        """
        Initialize file selection.

        Args:
            include_files_and_directories: Files/directories to back up
            exclude_patterns: Glob patterns to exclude (e.g., *.pyc, __pycache__, .venv)
            follow_links: Descend into symlinked directories
            exclude_dot_files: Skip files and directories whose name starts with a dot
        """
        self.include_paths = [normalize_path(p) for p in (include_files_and_directories or [])]
        self.exclude_paths: List[str] = []
        self.exclude_patterns = list(exclude_patterns or [])
        self.follow_links = follow_links
        self.exclude_dot_files = exclude_dot_files

    @classmethod
    def create(cls, include_files_and_directories: Optional[Iterable[PathLike]] = None) -> 'FileSelection':
        return cls(include_files_and_directories)

    def exclude_files_from(self, paths: Union[PathLike, Iterable[PathLike]]) -> 'FileSelection':
        """
        Exclude one path or a list of paths (files or directories).

        Returns:
            self, for chaining
        """
        if isinstance(paths, (str, os.PathLike)):
            paths = [paths]

        for path in paths:
            normalized = normalize_path(path)
            if normalized not in self.exclude_paths:
                self.exclude_paths.append(normalized)

        return self

    def excluding(self, paths: Iterable[PathLike]) -> 'FileSelection':
        """Copy of this selection with extra excluded paths; self is left untouched."""
        selection = FileSelection(
            self.include_paths,
            self.exclude_patterns,
            follow_links=self.follow_links,
            exclude_dot_files=self.exclude_dot_files
        )
        selection.exclude_files_from(self.exclude_paths)
        return selection.exclude_files_from(list(paths))

    def exclude_pattern(self, pattern: str) -> 'FileSelection':
        if pattern not in self.exclude_patterns:
            self.exclude_patterns.append(pattern)
        return self

    def _should_exclude(self, path: Path) -> bool:
        """
        Check if a path should be excluded.

        Args:
            path: Absolute, normalized path to check

        Returns:
            True if path is inside an excluded root or matches any exclude pattern
        """
        path_str = str(path)
        path_name = path.name

        for excluded in self.exclude_paths:
            if is_within(path_str, excluded):
                return True

        if self.exclude_dot_files and path_name.startswith('.'):
            return True

        for pattern in self.exclude_patterns:
            # Match against full path or just the name
            if fnmatch(path_str, pattern) or fnmatch(path_name, pattern):
                return True
            # Also match against relative path patterns
            if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
                return True

        return False

    def selected_files(self) -> Iterator[str]:
        """
        Yield absolute paths of every selected file.

        Missing include roots are skipped with a warning; unreadable
        directories are skipped without aborting the walk.
        """
        for include in self.include_paths:
            root = Path(include)

            if self._should_exclude(root):
                continue

            if not os.path.lexists(include):
                logger.warning(f"Path does not exist, skipping: {include}")
                continue

            if root.is_file():
                yield include
                continue

            if root.is_dir():
                yield from self._walk(include)
            else:
                logger.warning(f"Unsupported path type, skipping: {include}")

    def _walk(self, directory: str) -> Iterator[str]:
        def on_error(error: OSError):
            logger.warning(f"Cannot read {error.filename}: {error.strerror}")

        for current, dirnames, filenames in os.walk(directory, followlinks=self.follow_links, onerror=on_error):
            # Prune excluded directories in place so os.walk never descends into them
            dirnames[:] = sorted(
                name for name in dirnames
                if not self._should_exclude(Path(current) / name)
            )

            for name in sorted(filenames):
                file_path = Path(current) / name
                if self._should_exclude(file_path):
                    continue
                if file_path.is_symlink() and not self.follow_links:
                    continue
                yield str(file_path)
