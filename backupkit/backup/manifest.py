"""
Backup manifest: the ordered, deduplicated list of paths that go into one
archive, persisted one path per line as it is built.
"""

import os
from typing import Iterable, Iterator, Set, Tuple, Union

from .selection import normalize_path


class Manifest:
    """
    Ordered set of absolute paths backed by a plain-text file.

    Paths are normalized before the duplicate check, so the same file
    reached from two sources is listed once.
    """

    def __init__(self, manifest_path: str):
        self.manifest_path = manifest_path
        self._paths = []
        self._seen: Set[str] = set()

        # Start from an empty file
        with open(self.manifest_path, 'w', encoding='utf-8'):
            pass

    @classmethod
    def create(cls, manifest_path: str) -> 'Manifest':
        return cls(manifest_path)

    def add_files(self, paths: Union[str, Iterable[str]]) -> 'Manifest':
        """
        Append paths that are not yet listed.

        Returns:
            self, for chaining
        """
        if isinstance(paths, (str, os.PathLike)):
            paths = [paths]

        with open(self.manifest_path, 'a', encoding='utf-8') as manifest_file:
            for path in paths:
                normalized = normalize_path(path)
                if normalized in self._seen:
                    continue
                self._seen.add(normalized)
                self._paths.append(normalized)
                manifest_file.write(normalized + '\n')

        return self

    def files(self) -> Iterator[str]:
        """Read the persisted paths back, in insertion order."""
        with open(self.manifest_path, 'r', encoding='utf-8') as manifest_file:
            for line in manifest_file:
                line = line.rstrip('\n')
                if line:
                    yield line

    def view(self) -> Tuple[str, ...]:
        """Immutable snapshot of the listed paths."""
        return tuple(self._paths)

    def count(self) -> int:
        return len(self._paths)

    def __len__(self):
        return len(self._paths)

    def __iter__(self):
        return iter(self.view())

    def __contains__(self, path):
        return normalize_path(path) in self._seen
