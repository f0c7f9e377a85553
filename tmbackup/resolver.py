"""Directory resolution for tmbackup.

This module provides the DirectoryResolver class that decides, once per run,
where the new snapshot is written and which earlier snapshot rsync should
hard-link against. It also resumes a snapshot left behind by an interrupted
run by renaming it to the new timestamp.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging
import posixpath

from tmbackup.catalog import SnapshotCatalog
from tmbackup.destination import IN_PROGRESS_MARKER
from tmbackup.latest import LatestPointerResolver
from tmbackup.store import SnapshotStore


logger = logging.getLogger(__name__)


class ResolutionCase(Enum):
    """How the destination state was reconciled."""
    FIRST_BACKUP = "first_backup"
    INCREMENTAL = "incremental"
    RESUMED = "resumed"


@dataclass(frozen=True)
class ResolutionResult:
    """Where the next transfer writes and what it hard-links against."""
    dest: str
    link_base: Optional[str]
    case: ResolutionCase
    resumed_from: Optional[str] = None


class DirectoryResolver:
    """
    Reconciles the latest pointer, the newest snapshot and the in-progress
    marker into a single ResolutionResult.

    Cases, decided in order:
    1. No snapshots: nothing to link against.
    2. No in-progress marker: link against the latest pointer's target, or
       the newest snapshot when the pointer is missing or stale.
    3. Marker present but no snapshots: same as case 1.
    4. Marker present with snapshots: the newest snapshot is the one the
       interrupted run was writing. It is renamed to the new timestamp and
       the link base is recomputed without it.
    """

    def __init__(self, store: SnapshotStore, root: str):
        self.store = store
        self.root = root
        self.latest = LatestPointerResolver(store, root)

    @property
    def in_progress_path(self) -> str:
        return posixpath.join(self.root, IN_PROGRESS_MARKER)

    def in_progress(self) -> bool:
        """Return True if a previous run left its in-progress marker behind."""
        return self.store.exists(self.in_progress_path)

    def resolve(self, now: str, in_progress: Optional[bool] = None) -> ResolutionResult:
        """
        Compute the destination and link base for a run named ``now``.

        Args:
            now: Timestamp name of the new snapshot
            in_progress: Whether the in-progress marker is present. Read
                         from the store when None.

        Raises:
            SymlinkIntegrityError: If the latest pointer is malformed. Raised
                                   before anything is renamed.
            StoreError: If resuming the interrupted snapshot fails
        """
        catalog = SnapshotCatalog.load(self.store, self.root)
        latest_target = self.latest.resolve()
        if in_progress is None:
            in_progress = self.in_progress()

        dest = posixpath.join(self.root, now)

        if not catalog:
            logger.info("No previous backup - creating new one.")
            return ResolutionResult(
                dest=dest,
                link_base=None,
                case=ResolutionCase.FIRST_BACKUP,
            )

        most_recent = catalog.path_of(catalog.most_recent)
        link_base = latest_target or most_recent

        if not in_progress:
            return ResolutionResult(
                dest=dest,
                link_base=link_base,
                case=ResolutionCase.INCREMENTAL,
            )

        return self._resume(catalog, latest_target, link_base, dest)

    def _resume(
        self,
        catalog: SnapshotCatalog,
        latest_target: Optional[str],
        link_base: str,
        dest: str,
    ) -> ResolutionResult:
        most_recent = catalog.path_of(catalog.most_recent)
        logger.info(
            f"{self.store.describe(self.in_progress_path)} already exists - the "
            f"previous backup failed or was interrupted. Backup will resume from there."
        )

        if most_recent != dest:
            self.store.rename(most_recent, dest)
            logger.debug(f"Renamed {most_recent} to {dest}")
            relocated = not self.store.exists(link_base)
        else:
            # The interrupted run used the same timestamp; it is the
            # destination and can never be its own link base.
            relocated = link_base == most_recent

        if relocated:
            if latest_target is not None and latest_target != most_recent \
                    and self.store.is_dir(latest_target):
                link_base = latest_target
            elif catalog.second_most_recent is not None:
                link_base = catalog.path_of(catalog.second_most_recent)
            else:
                link_base = None

        return ResolutionResult(
            dest=dest,
            link_base=link_base,
            case=ResolutionCase.RESUMED,
            resumed_from=most_recent,
        )
