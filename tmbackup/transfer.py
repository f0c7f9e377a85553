"""rsync transfer for tmbackup.

This module provides the RsyncTransfer class that copies a source folder
into a snapshot directory with rsync, hard-linking unchanged files against
an earlier snapshot, and classifies the outcome from rsync's log file.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional
import logging
import re
import shlex
import subprocess

from tmbackup.catalog import TIMESTAMP_FORMAT
from tmbackup.config import DEFAULT_RSYNC_FLAGS
from tmbackup.destination import DestinationSpec


logger = logging.getLogger(__name__)


# Lines of rsync's itemized output worth echoing: deletions and non-directories
_ECHO_LINE = re.compile(r"^deleting|[^/]$")

_OUT_OF_SPACE_MARKERS = ("No space left on device (28)", "Result too large (34)")


class TransferError(Exception):
    """Raised when rsync cannot be started."""
    pass


class TransferStatus(Enum):
    """Outcome of a transfer, as reported by rsync."""
    CLEAN = "clean"
    WARNING = "warning"
    ERROR = "error"
    OUT_OF_SPACE = "out_of_space"


@dataclass
class TransferReport:
    """Result of one rsync run."""
    status: TransferStatus
    returncode: int
    log_file: Path
    command: List[str]

    @property
    def publishable(self) -> bool:
        """True if the snapshot may become the new ``latest``."""
        return self.status in (TransferStatus.CLEAN, TransferStatus.WARNING)


def classify_log(log_text: str, returncode: int = 0) -> TransferStatus:
    """Classify an rsync run from the contents of its --log-file."""
    if any(marker in log_text for marker in _OUT_OF_SPACE_MARKERS):
        return TransferStatus.OUT_OF_SPACE
    if "rsync error:" in log_text:
        return TransferStatus.ERROR
    if "rsync:" in log_text:
        return TransferStatus.WARNING
    if returncode != 0:
        return TransferStatus.ERROR
    return TransferStatus.CLEAN


class RsyncTransfer:
    """
    Runs rsync for one destination.

    The log of every run is written to the profile folder so that the
    outcome can be classified after the process exits.
    """

    def __init__(
        self,
        destination: DestinationSpec,
        log_dir: Path,
        rsync_flags: Optional[List[str]] = None,
        append_flags: Optional[List[str]] = None,
        ssh_identity_file: Optional[str] = None,
        rsync_binary: str = "rsync",
    ):
        self.destination = destination
        self.log_dir = Path(log_dir)
        self.rsync_flags = list(rsync_flags if rsync_flags is not None else DEFAULT_RSYNC_FLAGS)
        self.append_flags = list(append_flags or [])
        self.ssh_identity_file = ssh_identity_file
        self.rsync_binary = rsync_binary

    def _new_log_file(self) -> Path:
        # rsync appends to an existing log, which would carry a previous
        # attempt's out-of-space line into this one
        stem = datetime.now().strftime(TIMESTAMP_FORMAT)
        log_file = self.log_dir / f"{stem}.log"
        seq = 1
        while log_file.exists():
            log_file = self.log_dir / f"{stem}-{seq:02d}.log"
            seq += 1
        return log_file

    def _ssh_shell(self) -> str:
        argv = ["ssh", "-p", str(self.destination.port)]
        if self.ssh_identity_file:
            argv.extend(["-i", self.ssh_identity_file])
        argv.extend([
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
        ])
        return shlex.join(argv)

    def build_command(
        self,
        source: str,
        dest: str,
        link_base: Optional[str],
        log_file: Path,
        exclusion_file: Optional[Path] = None,
    ) -> List[str]:
        """
        Build the rsync argv.

        Args:
            source: Local folder whose contents are copied
            dest: Snapshot directory on the destination store
            link_base: Absolute path of the snapshot to hard-link against
            log_file: Path passed to --log-file
            exclusion_file: Optional --exclude-from file
        """
        cmd = [self.rsync_binary]
        if self.destination.is_remote:
            cmd.extend(["-e", self._ssh_shell()])
        cmd.extend(self.rsync_flags)
        cmd.extend(self.append_flags)
        cmd.append(f"--log-file={log_file}")
        if exclusion_file is not None:
            cmd.append(f"--exclude-from={exclusion_file}")
        if link_base is not None:
            cmd.append(f"--link-dest={link_base}")
        cmd.append("--")
        # Trailing slashes: copy the contents of source into dest
        cmd.append(source.rstrip("/") + "/")
        cmd.append(f"{self.destination.prefix}{dest.rstrip('/')}/")
        return cmd

    def run(
        self,
        source: str,
        dest: str,
        link_base: Optional[str] = None,
        exclusion_file: Optional[Path] = None,
        signal_handler: Optional[Any] = None,
    ) -> TransferReport:
        """
        Run rsync and classify its outcome.

        Raises:
            TransferError: If the rsync process cannot be started
        """
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_file = self._new_log_file()
        cmd = self.build_command(source, dest, link_base, log_file, exclusion_file)

        logger.info("Running command:")
        logger.info(shlex.join(cmd))

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as e:
            raise TransferError(f"Cannot start rsync: {e}")

        if signal_handler is not None:
            signal_handler.set_rsync_process(process)
        try:
            for line_bytes in process.stdout:
                # Decode with error handling for special characters
                line = line_bytes.decode("utf-8", errors="replace").rstrip("\n")
                if _ECHO_LINE.search(line):
                    logger.info(line)
            returncode = process.wait()
        finally:
            if process.stdout is not None:
                process.stdout.close()
            if signal_handler is not None:
                signal_handler.set_rsync_process(None)

        try:
            log_text = log_file.read_text(errors="replace")
        except OSError:
            log_text = ""

        status = classify_log(log_text, returncode)
        logger.debug(f"rsync exited with code {returncode}, status {status.value}")
        return TransferReport(
            status=status,
            returncode=returncode,
            log_file=log_file,
            command=cmd,
        )
