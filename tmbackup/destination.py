"""Destination handling for tmbackup.

This module parses destination specifications (local path, user@host:path
or user@host:port:path), opens the matching SnapshotStore, and performs the
backup-marker safety check that must pass before anything at a destination
is renamed or deleted.
"""

from dataclasses import dataclass
from typing import List, Optional
import logging
import posixpath
import re

from tmbackup.config import ValidationError
from tmbackup.store import LocalStore, RemoteStore, SnapshotStore, SSHTransport


logger = logging.getLogger(__name__)


# Marker files and links at the destination root
BACKUP_MARKER = "backup.marker"
IN_PROGRESS_MARKER = "backup.inprogress"
LATEST_LINK = "latest"

DEFAULT_SSH_PORT = 22

_REMOTE_WITH_PORT = re.compile(
    r"^([A-Za-z0-9._%+\-]+)@([A-Za-z0-9.\-]+):([0-9]+):(.+)$"
)
_REMOTE = re.compile(r"^([A-Za-z0-9._%+\-]+)@([A-Za-z0-9.\-]+):(.+)$")


class SafetyCheckFailure(Exception):
    """Raised when a destination does not carry the backup marker file."""

    def __init__(self, message: str, remediation: Optional[List[str]] = None):
        super().__init__(message)
        self.remediation = remediation or []


@dataclass
class DestinationSpec:
    """Parsed destination specification."""
    path: str
    user: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None

    @property
    def is_remote(self) -> bool:
        return self.host is not None

    @property
    def prefix(self) -> str:
        """Return the ``user@host:`` prefix rsync expects, or an empty string."""
        if not self.is_remote:
            return ""
        return f"{self.user}@{self.host}:"

    def __str__(self) -> str:
        return f"{self.prefix}{self.path}"


def is_remote_spec(value: str) -> bool:
    """Return True if value has the user@host:path form."""
    return _REMOTE.match(value) is not None


def _strip_trailing_slash(path: str) -> str:
    stripped = path.rstrip("/")
    return stripped or "/"


def validate_argument(value: Optional[str], name: str) -> None:
    """
    Reject paths that contain a single quote.

    Raises:
        ValidationError: If value contains a single quote
    """
    if value and "'" in value:
        raise ValidationError(
            f"Argument '{name}' may not contain single quote characters: {value}"
        )


def parse_destination(value: str, default_port: int = DEFAULT_SSH_PORT) -> DestinationSpec:
    """
    Parse a destination string.

    Accepted forms:
    - /local/path
    - user@host:/remote/path
    - user@host:port:/remote/path

    Raises:
        ValidationError: If value is empty or contains disallowed characters
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Destination must be a non-empty string")
    validate_argument(value, "destination")

    match = _REMOTE_WITH_PORT.match(value)
    if match:
        user, host, port, path = match.groups()
        return DestinationSpec(
            path=_strip_trailing_slash(path),
            user=user,
            host=host,
            port=int(port),
        )

    match = _REMOTE.match(value)
    if match:
        user, host, path = match.groups()
        return DestinationSpec(
            path=_strip_trailing_slash(path),
            user=user,
            host=host,
            port=default_port,
        )

    return DestinationSpec(path=_strip_trailing_slash(value))


def parse_source(value: str) -> str:
    """
    Validate a source path. Sources must be local.

    Raises:
        ValidationError: If value is remote, empty or contains a single quote
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Source must be a non-empty string")
    if is_remote_spec(value):
        raise ValidationError("Source folder can't be remote")
    validate_argument(value, "source")
    return _strip_trailing_slash(value)


def open_store(
    spec: DestinationSpec,
    identity_file: Optional[str] = None,
) -> SnapshotStore:
    """Return the SnapshotStore that serves the given destination."""
    if spec.is_remote:
        transport = SSHTransport(
            user=spec.user,
            host=spec.host,
            port=spec.port or DEFAULT_SSH_PORT,
            identity_file=identity_file,
        )
        return RemoteStore(transport)
    return LocalStore()


def backup_marker_path(folder: str) -> str:
    """Return the path of the backup marker inside folder."""
    return posixpath.join(folder, BACKUP_MARKER)


def has_backup_marker(store: SnapshotStore, folder: str) -> bool:
    """Return True if folder carries the backup marker."""
    return store.exists(backup_marker_path(folder))


def remediation_command(store: SnapshotStore, folder: str) -> str:
    """Return the command a user can run to mark folder as a backup destination."""
    command = f'mkdir -p -- "{folder}" ; touch "{backup_marker_path(folder)}"'
    transport = getattr(store, "transport", None)
    if transport is not None:
        return transport.describe_command(command)
    return command


def check_backup_marker(store: SnapshotStore, folder: str) -> None:
    """
    Verify that folder is a backup destination.

    Raises:
        SafetyCheckFailure: If the marker file is missing; the exception
                            carries the remediation instructions
    """
    if has_backup_marker(store, folder):
        return
    raise SafetyCheckFailure(
        "Safety check failed - the destination does not appear to be a "
        "backup folder or drive (marker file not found).",
        remediation=[
            "If it is indeed a backup folder, you may add the marker file by "
            "running the following command:",
            "",
            remediation_command(store, folder),
            "",
        ],
    )


def create_backup_marker(store: SnapshotStore, folder: str) -> str:
    """Create folder if needed and place the backup marker in it."""
    store.mkdir(folder)
    marker = backup_marker_path(folder)
    store.touch(marker)
    logger.info(f"Created backup marker {store.describe(marker)}")
    return marker
