"""Snapshot catalog for tmbackup.

A SnapshotCatalog is an immutable, newest-first listing of the snapshot
directories present at a destination at one moment. It is never cached:
every decision that mutates the destination loads a fresh one.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional, Tuple
import logging
import posixpath
import re

from tmbackup.store import SnapshotStore, StoreError


logger = logging.getLogger(__name__)


# Timestamp format for snapshot directories
TIMESTAMP_FORMAT = "%Y-%m-%d-%H%M%S"

# Names must match this in full to be considered snapshots
TIMESTAMP_PATTERN = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}-[0-9]{6}")

# Glob handed to the store; narrowed further by TIMESTAMP_PATTERN
SNAPSHOT_GLOB = "????-??-??-??????"


def is_snapshot_name(name: str) -> bool:
    """Return True if name has the YYYY-MM-DD-HHMMSS shape."""
    return TIMESTAMP_PATTERN.fullmatch(name) is not None


def parse_timestamp(name: str) -> datetime:
    """
    Parse a YYYY-MM-DD-HHMMSS snapshot name.

    Raises:
        ValueError: If name is not a valid timestamp
    """
    if not is_snapshot_name(name):
        raise ValueError(f"Not a snapshot name: {name!r}")
    return datetime.strptime(name, TIMESTAMP_FORMAT)


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as a snapshot name."""
    return moment.strftime(TIMESTAMP_FORMAT)


def generate_timestamp() -> str:
    """Return the snapshot name for the current local time."""
    return format_timestamp(datetime.now())


@dataclass(frozen=True)
class SnapshotCatalog:
    """Snapshot names at a destination root, newest first."""
    root: str
    names: Tuple[str, ...] = ()

    @classmethod
    def from_names(cls, root: str, names) -> "SnapshotCatalog":
        """Build a catalog from arbitrary names, dropping non-snapshots."""
        valid = sorted((n for n in names if is_snapshot_name(n)), reverse=True)
        return cls(root=root, names=tuple(valid))

    @classmethod
    def load(cls, store: SnapshotStore, root: str) -> "SnapshotCatalog":
        """
        List the snapshots currently present under root.

        A destination that cannot be listed yields an empty catalog.
        """
        try:
            names = store.list(root, SNAPSHOT_GLOB)
        except StoreError as e:
            logger.debug(f"Could not list snapshots in {root}: {e}")
            names = []
        return cls.from_names(root, names)

    def __len__(self) -> int:
        return len(self.names)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def __contains__(self, name: object) -> bool:
        return name in self.names

    def path_of(self, name: str) -> str:
        """Return the full path of a snapshot in this catalog's root."""
        return posixpath.join(self.root, name)

    def paths(self) -> Tuple[str, ...]:
        return tuple(self.path_of(n) for n in self.names)

    @property
    def most_recent(self) -> Optional[str]:
        return self.names[0] if self.names else None

    @property
    def second_most_recent(self) -> Optional[str]:
        return self.names[1] if len(self.names) > 1 else None

    @property
    def oldest(self) -> Optional[str]:
        return self.names[-1] if self.names else None
