"""Main backup orchestration for tmbackup.

This module provides the main backup function that orchestrates all components:
- Load configuration
- Validate source, destination and exclusion file
- Acquire lock
- Check the destination's backup marker
- Resolve the new snapshot and its link base (resuming an interrupted run)
- Per attempt: apply retention, run rsync, expire the oldest snapshot and
  retry when the destination is full
- Publish ``latest`` and remove the in-progress marker
- Release lock

The lock is always released and signal handlers are always unregistered,
whatever the outcome.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple
import logging
import time

from tmbackup.config import (
    Configuration,
    ConfigurationError,
    ValidationError,
    parse_config,
)
from tmbackup.catalog import format_timestamp
from tmbackup.destination import (
    DestinationSpec,
    SafetyCheckFailure,
    check_backup_marker,
    open_store,
    parse_destination,
    parse_source,
    validate_argument,
)
from tmbackup.latest import LatestPointerResolver, SymlinkIntegrityError
from tmbackup.lock import LockError, LockManager
from tmbackup.logger import (
    LoggingError,
    get_logger,
    log_backup_completion,
    log_backup_error,
    log_backup_start,
    setup_logging,
)
from tmbackup.resolver import DirectoryResolver, ResolutionResult
from tmbackup.retention import (
    OutOfSpaceError,
    RetentionPruner,
    RetentionResult,
    expire_oldest,
)
from tmbackup.signal_handler import SignalHandler
from tmbackup.store import SnapshotStore, StoreError
from tmbackup.transfer import (
    RsyncTransfer,
    TransferError,
    TransferReport,
    TransferStatus,
)


# Exit codes
EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_LOCK_ERROR = 2
EXIT_SAFETY_ERROR = 3
EXIT_STORE_ERROR = 4
EXIT_SPACE_ERROR = 5
EXIT_TRANSFER_WARNING = 6  # Snapshot published, rsync reported warnings
EXIT_TRANSFER_ERROR = 7  # Snapshot not published


@dataclass
class BackupResult:
    """Result of a backup operation."""
    success: bool
    exit_code: int
    snapshot_path: Optional[str] = None
    resolution: Optional[ResolutionResult] = None
    transfer_report: Optional[TransferReport] = None
    retention_results: List[RetentionResult] = field(default_factory=list)
    expired_for_space: List[str] = field(default_factory=list)
    published: bool = False
    error_message: Optional[str] = None


def _validate_arguments(config: Configuration) -> Tuple[str, DestinationSpec]:
    """
    Check source, destination and exclusion file before touching anything.

    Raises:
        ValidationError: If any of them is invalid
    """
    source = parse_source(config.source)
    spec = parse_destination(config.destination, default_port=config.ssh.port)
    if config.exclusion_file is not None:
        validate_argument(str(config.exclusion_file), "exclusion_file")
        if not config.exclusion_file.is_file():
            raise ValidationError(
                f"Exclusion file not found: {config.exclusion_file}"
            )
    return source, spec


def _transfer_loop(
    store: SnapshotStore,
    root: str,
    source: str,
    resolution: ResolutionResult,
    config: Configuration,
    transfer: RsyncTransfer,
    signal_handler: SignalHandler,
    now: datetime,
    result: BackupResult,
) -> TransferReport:
    """
    Run transfer attempts until rsync finishes without running out of space.

    Raises:
        OutOfSpaceError: If the destination is full and nothing can be expired
    """
    logger = get_logger()
    resolver = DirectoryResolver(store, root)
    pruner = RetentionPruner(store, root)
    dest = resolution.dest
    link_base = resolution.link_base

    while True:
        if not store.is_dir(dest):
            logger.info(f"Creating destination {store.describe(dest)}")
            store.mkdir(dest)

        result.retention_results.append(pruner.prune(now=now))

        # Retention or an out-of-space expiry may have removed the link base
        if link_base is not None and not store.is_dir(link_base):
            logger.warning(
                f"{store.describe(link_base)} no longer exists - "
                f"backing up without hard links."
            )
            link_base = None
        link_dest = store.resolve_absolute(link_base) if link_base else None

        store.touch(resolver.in_progress_path)
        report = transfer.run(
            source,
            dest,
            link_base=link_dest,
            exclusion_file=config.exclusion_file,
            signal_handler=signal_handler,
        )

        if report.status is not TransferStatus.OUT_OF_SPACE:
            return report

        if not config.transfer.auto_expire:
            raise OutOfSpaceError(
                "No space left on device, and automatic expiry is disabled."
            )
        logger.warning("No space left on device - removing oldest backup and resuming.")
        result.expired_for_space.append(expire_oldest(store, root))


def _finalize(
    store: SnapshotStore,
    root: str,
    dest: str,
    report: TransferReport,
    owner_and_group: Optional[str],
) -> bool:
    """
    Publish ``latest`` if the transfer allows it and clear the in-progress marker.

    Returns:
        True if ``latest`` now points at dest
    """
    logger = get_logger()

    if report.status is TransferStatus.WARNING:
        logger.warning(
            f"Rsync reported a warning, please check '{report.log_file}' for more details."
        )
    elif report.status is TransferStatus.ERROR:
        logger.error(
            f"Rsync reported an error, please check '{report.log_file}' for more details."
        )

    published = False
    if report.publishable:
        latest = LatestPointerResolver(store, root)
        if owner_and_group:
            store.chown(owner_and_group, dest, recursive=True)
        latest.publish(dest)
        if owner_and_group:
            store.chown(owner_and_group, latest.link_path, link=True)
        published = True

    store.remove(DirectoryResolver(store, root).in_progress_path)

    if report.status is TransferStatus.CLEAN:
        try:
            report.log_file.unlink(missing_ok=True)
        except OSError as e:
            logger.debug(f"Could not delete {report.log_file}: {e}")

    return published


def run_backup(
    config_path: Optional[Path] = None,
    config: Optional[Configuration] = None,
    store: Optional[SnapshotStore] = None,
    transfer: Optional[RsyncTransfer] = None,
    now: Optional[datetime] = None,
    verbose: bool = False,
) -> BackupResult:
    """
    Run a complete backup operation.

    This function orchestrates the entire backup process:
    1. Load configuration (if not provided)
    2. Set up logging
    3. Validate source, destination and exclusion file
    4. Acquire the profile lock and register signal handlers
    5. Check that the destination carries backup.marker
    6. Resolve the new snapshot's path and link base, resuming an
       interrupted snapshot if the in-progress marker is present
    7. Apply retention and run rsync; on out-of-space expire the oldest
       snapshot and retry
    8. Publish ``latest`` unless rsync reported an error
    9. Unregister signal handlers and release the lock

    Args:
        config_path: Path to configuration file. If None, uses default path.
        config: Pre-loaded Configuration object. If provided, config_path is ignored.
        store: SnapshotStore to use instead of the one matching the destination.
        transfer: Transfer to use instead of an RsyncTransfer built from config.
        now: Time of the run; names the new snapshot. Defaults to now.
        verbose: Log DEBUG messages to the console.

    Returns:
        BackupResult with success status, exit code, and operation details.
    """
    logger: Optional[logging.Logger] = None
    signal_handler: Optional[SignalHandler] = None
    start_time = time.time()

    # Step 1: Load configuration
    if config is None:
        try:
            config = parse_config(config_path)
        except (ConfigurationError, ValidationError) as e:
            return BackupResult(
                success=False,
                exit_code=EXIT_CONFIG_ERROR,
                error_message=str(e),
            )

    # Step 2: Set up logging
    try:
        logger = setup_logging(config.logging, verbose=verbose)
    except LoggingError as e:
        # If logging setup fails, continue with basic logging
        logger = get_logger()
        logger.warning(f"Failed to set up logging: {e}")

    # Step 3: Validate arguments
    try:
        source, spec = _validate_arguments(config)
    except ValidationError as e:
        log_backup_error(logger, e, "argument validation")
        return BackupResult(
            success=False,
            exit_code=EXIT_CONFIG_ERROR,
            error_message=str(e),
        )

    if now is None:
        now = datetime.now()
    if store is None:
        identity = str(config.ssh.identity_file) if config.ssh.identity_file else None
        store = open_store(spec, identity_file=identity)
    if transfer is None:
        transfer = RsyncTransfer(
            destination=spec,
            log_dir=config.profile.folder,
            rsync_flags=config.transfer.rsync_flags,
            append_flags=config.transfer.append_flags,
            ssh_identity_file=str(config.ssh.identity_file) if config.ssh.identity_file else None,
        )

    root = spec.path
    log_backup_start(logger, source, str(spec))
    result = BackupResult(success=False, exit_code=EXIT_SUCCESS)

    try:
        # Step 4: Acquire exclusive lock; released on every exit path
        with LockManager(config.profile.lock_path) as lock_manager:
            signal_handler = SignalHandler()
            signal_handler.register(lock_manager=lock_manager)

            # Step 5: Safety check
            check_backup_marker(store, root)

            # Step 6: Resolve destination and link base, once per run
            resolution = DirectoryResolver(store, root).resolve(format_timestamp(now))
            result.resolution = resolution
            result.snapshot_path = resolution.dest

            # Step 7: Retention and transfer
            report = _transfer_loop(
                store, root, source, resolution, config, transfer,
                signal_handler, now, result,
            )
            result.transfer_report = report

            # Step 8: Publish
            result.published = _finalize(
                store, root, resolution.dest, report, config.owner_and_group
            )

    except LockError as e:
        log_backup_error(logger, e, "lock acquisition")
        result.exit_code = EXIT_LOCK_ERROR
        result.error_message = str(e)
        return result
    except SafetyCheckFailure as e:
        log_backup_error(logger, e, "safety check")
        for line in e.remediation:
            logger.info(line)
        result.exit_code = EXIT_SAFETY_ERROR
        result.error_message = str(e)
        return result
    except (SymlinkIntegrityError, StoreError) as e:
        log_backup_error(logger, e, "destination access")
        result.exit_code = EXIT_STORE_ERROR
        result.error_message = str(e)
        return result
    except OutOfSpaceError as e:
        log_backup_error(logger, e, "transfer")
        result.exit_code = EXIT_SPACE_ERROR
        result.error_message = str(e)
        return result
    except TransferError as e:
        log_backup_error(logger, e, "transfer")
        result.exit_code = EXIT_TRANSFER_ERROR
        result.error_message = str(e)
        return result
    finally:
        # Step 9: Unregister signal handlers
        if signal_handler is not None:
            signal_handler.unregister()

    duration = time.time() - start_time
    if report.status is TransferStatus.CLEAN:
        result.exit_code = EXIT_SUCCESS
    elif report.status is TransferStatus.WARNING:
        result.exit_code = EXIT_TRANSFER_WARNING
    else:
        result.exit_code = EXIT_TRANSFER_ERROR
        result.error_message = f"rsync reported an error, see {report.log_file}"

    result.success = result.published
    log_backup_completion(
        logger,
        duration_seconds=duration,
        snapshot_path=store.describe(resolution.dest) if result.published else None,
        warnings=report.status is not TransferStatus.CLEAN,
    )
    return result
