"""tmbackup - Time Machine style snapshot backups with rsync."""

__version__ = "0.1.0"

from tmbackup.config import (
    Configuration,
    ConfigurationError,
    ValidationError,
    parse_config,
    format_config,
    create_default_config,
)
from tmbackup.store import (
    SnapshotStore,
    LocalStore,
    RemoteStore,
    SSHTransport,
    StoreError,
)
from tmbackup.catalog import (
    SnapshotCatalog,
    parse_timestamp,
    format_timestamp,
)
from tmbackup.destination import (
    DestinationSpec,
    SafetyCheckFailure,
    parse_destination,
    check_backup_marker,
    create_backup_marker,
)
from tmbackup.latest import LatestPointerResolver, SymlinkIntegrityError
from tmbackup.resolver import (
    DirectoryResolver,
    ResolutionCase,
    ResolutionResult,
)
from tmbackup.retention import (
    RetentionPruner,
    RetentionResult,
    OutOfSpaceError,
    expire_oldest,
)
from tmbackup.lock import LockManager, LockError
from tmbackup.logger import (
    LoggingError,
    setup_logging,
    get_logger,
    log_backup_start,
    log_backup_completion,
    log_backup_error,
)
from tmbackup.transfer import (
    RsyncTransfer,
    TransferError,
    TransferReport,
    TransferStatus,
)
from tmbackup.backup import (
    BackupResult,
    run_backup,
    EXIT_SUCCESS,
    EXIT_CONFIG_ERROR,
    EXIT_LOCK_ERROR,
    EXIT_SAFETY_ERROR,
    EXIT_STORE_ERROR,
    EXIT_SPACE_ERROR,
    EXIT_TRANSFER_WARNING,
    EXIT_TRANSFER_ERROR,
)

__all__ = [
    "Configuration",
    "ConfigurationError",
    "ValidationError",
    "parse_config",
    "format_config",
    "create_default_config",
    "SnapshotStore",
    "LocalStore",
    "RemoteStore",
    "SSHTransport",
    "StoreError",
    "SnapshotCatalog",
    "parse_timestamp",
    "format_timestamp",
    "DestinationSpec",
    "SafetyCheckFailure",
    "parse_destination",
    "check_backup_marker",
    "create_backup_marker",
    "LatestPointerResolver",
    "SymlinkIntegrityError",
    "DirectoryResolver",
    "ResolutionCase",
    "ResolutionResult",
    "RetentionPruner",
    "RetentionResult",
    "OutOfSpaceError",
    "expire_oldest",
    "LockManager",
    "LockError",
    "LoggingError",
    "setup_logging",
    "get_logger",
    "log_backup_start",
    "log_backup_completion",
    "log_backup_error",
    "RsyncTransfer",
    "TransferError",
    "TransferReport",
    "TransferStatus",
    "BackupResult",
    "run_backup",
    "EXIT_SUCCESS",
    "EXIT_CONFIG_ERROR",
    "EXIT_LOCK_ERROR",
    "EXIT_SAFETY_ERROR",
    "EXIT_STORE_ERROR",
    "EXIT_SPACE_ERROR",
    "EXIT_TRANSFER_WARNING",
    "EXIT_TRANSFER_ERROR",
]
