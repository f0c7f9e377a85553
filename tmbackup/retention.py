"""Retention for tmbackup.

This module provides the RetentionPruner class that expires snapshots
according to the fixed three-tier policy, and expire_oldest, which frees
space when rsync reports that the destination is full.

Retention policy, relative to now:
- Snapshots up to one day old are all kept
- Snapshots up to six months old are kept once per calendar day
- Older snapshots are kept once per calendar month
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
import logging
import posixpath

from tmbackup.catalog import SnapshotCatalog, parse_timestamp
from tmbackup.destination import SafetyCheckFailure, has_backup_marker
from tmbackup.store import SnapshotStore


logger = logging.getLogger(__name__)


KEEP_ALL_SECONDS = 86400  # 1 day
KEEP_DAILIES_SECONDS = 15768000  # ~6 months

# Sorts before any real timestamp, so the newest snapshot is never expired
PREV_SEED = "0000-00-00-000000"


class OutOfSpaceError(Exception):
    """Raised when the destination is full and no snapshot can be expired."""
    pass


@dataclass
class RetentionResult:
    """Result of applying retention policy."""
    kept_snapshots: List[str] = field(default_factory=list)
    deleted_snapshots: List[str] = field(default_factory=list)
    skipped_snapshots: List[str] = field(default_factory=list)


def expire_snapshot(store: SnapshotStore, path: str) -> None:
    """
    Delete a snapshot after re-checking that its parent is a backup destination.

    Raises:
        SafetyCheckFailure: If the parent has no backup marker
        StoreError: If deletion fails
    """
    parent = posixpath.dirname(path)
    if not has_backup_marker(store, parent):
        raise SafetyCheckFailure(
            f"{store.describe(path)} is not on a backup destination - aborting."
        )
    logger.info(f"Expiring {store.describe(path)}")
    store.remove(path)


def expire_oldest(store: SnapshotStore, root: str) -> str:
    """
    Expire the single oldest snapshot to make room for a retried transfer.

    Returns:
        Path of the expired snapshot

    Raises:
        OutOfSpaceError: If fewer than two snapshots remain
    """
    catalog = SnapshotCatalog.load(store, root)
    if len(catalog) < 2:
        raise OutOfSpaceError("No space left on device, and no old backup to delete.")
    oldest = catalog.path_of(catalog.oldest)
    expire_snapshot(store, oldest)
    return oldest


class RetentionPruner:
    """
    Expires snapshots that fall outside the retention policy.

    Snapshots are walked newest to oldest. Each one is compared with the
    snapshot evaluated just before it (``prev``), which advances on every
    step whether or not the previous snapshot was deleted.
    """

    def __init__(self, store: SnapshotStore, root: str):
        self.store = store
        self.root = root

    def classify(self, name: str, prev: str, now: datetime) -> bool:
        """
        Return True if the snapshot ``name`` should be expired.

        Raises:
            ValueError: If name is not a valid timestamp
        """
        timestamp = parse_timestamp(name)
        if timestamp >= now - timedelta(seconds=KEEP_ALL_SECONDS):
            return False
        if timestamp >= now - timedelta(seconds=KEEP_DAILIES_SECONDS):
            # Keep the most recent of each day
            return name[:10] == prev[:10]
        # Keep the most recent of each month
        return name[:7] == prev[:7]

    def prune(
        self,
        now: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> RetentionResult:
        """
        Apply the retention policy to a freshly listed catalog.

        Args:
            now: Reference time, defaults to the current local time
            dry_run: Report what would be expired without deleting anything

        Returns:
            RetentionResult listing kept and deleted snapshot paths
        """
        if now is None:
            now = datetime.now()

        catalog = SnapshotCatalog.load(self.store, self.root)
        result = RetentionResult()

        prev = PREV_SEED
        for name in catalog:
            path = catalog.path_of(name)
            try:
                expired = self.classify(name, prev, now)
            except ValueError:
                logger.warning(f"Could not parse date: {self.store.describe(path)}")
                result.skipped_snapshots.append(path)
                continue

            if expired:
                if not dry_run:
                    expire_snapshot(self.store, path)
                result.deleted_snapshots.append(path)
            else:
                result.kept_snapshots.append(path)

            prev = name

        return result
