"""Resolution and publication of the ``latest`` pointer.

The ``latest`` symlink at the destination root names the snapshot written by
the last fully successful run. Its target is validated before use: a link
that tries to leave the destination root is fatal, and a link whose target
has disappeared is ignored with a warning.
"""

from typing import Optional
import logging
import posixpath

from tmbackup.destination import LATEST_LINK
from tmbackup.store import SnapshotStore


logger = logging.getLogger(__name__)


class SymlinkIntegrityError(Exception):
    """Raised when the latest pointer tries to escape the destination root."""
    pass


def _is_unsafe_target(text: str) -> bool:
    if text.startswith("/"):
        return True
    parts = text.split("/")
    return parts[0] in (".", "..") or ".." in parts


class LatestPointerResolver:
    """Reads, validates and rewrites the ``latest`` link of one destination."""

    def __init__(self, store: SnapshotStore, root: str):
        self.store = store
        self.root = root
        self.link_path = posixpath.join(root, LATEST_LINK)

    def exists(self) -> bool:
        return self.store.is_link(self.link_path) or self.store.exists(self.link_path)

    def resolve(self) -> Optional[str]:
        """
        Return the validated target of the latest pointer.

        Returns:
            Path of the snapshot the pointer names, or None if there is no
            pointer or it names a directory that does not exist

        Raises:
            SymlinkIntegrityError: If the stored text is absolute, begins
                                   with ``.`` or contains a ``..`` component
        """
        if not self.exists():
            return None

        text = self.store.read_link(self.link_path)
        if _is_unsafe_target(text):
            raise SymlinkIntegrityError(
                f"{self.store.describe(self.link_path)} points to {text!r}, "
                f"which is outside of {self.store.describe(self.root)}"
            )

        target = posixpath.join(self.root, text)
        if self.store.is_dir(target):
            logger.info(
                f"{self.store.describe(self.link_path)} exists and targets "
                f"existing directory {self.store.describe(target)}."
            )
            return target

        logger.warning(
            f"{self.store.describe(self.link_path)} points to non existing "
            f"directory {self.store.describe(target)}. Ignoring sym link."
        )
        return None

    def publish(self, dest: str) -> None:
        """Point ``latest`` at dest, replacing any previous pointer."""
        self.store.remove(self.link_path)
        self.store.create_link(posixpath.basename(dest), self.link_path)
        logger.debug(f"{self.link_path} now points to {posixpath.basename(dest)}")
