"""Per-run scratch directory for dumps, the manifest and the archive."""

import os
import shutil
import logging

logger = logging.getLogger(__name__)


class TemporaryWorkspace:
    """
    Directory exclusively owned by one backup run.

    create() makes the directory and empties anything a crashed run left
    behind; delete() removes it and may be called any number of times.
    """

    def __init__(self, base_directory: str, name: str = 'temp'):
        self.root = os.path.abspath(os.path.join(base_directory, name))

    def create(self) -> 'TemporaryWorkspace':
        os.makedirs(self.root, exist_ok=True)
        return self.empty()

    def empty(self) -> 'TemporaryWorkspace':
        for entry in os.scandir(self.root):
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(entry.path)
            else:
                os.remove(entry.path)
        return self

    def path(self, *parts: str) -> str:
        return os.path.join(self.root, *parts)

    def exists(self) -> bool:
        return os.path.isdir(self.root)

    def delete(self):
        if self.exists():
            try:
                shutil.rmtree(self.root)
                logger.debug(f"Removed temporary workspace {self.root}")
            except OSError as e:
                logger.warning(f"Failed to cleanup temporary workspace {self.root}: {e}")
