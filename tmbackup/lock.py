"""Lock management for tmbackup.

This module provides the LockManager class that keeps two backup runs from
working on the same profile at once. The lock is a PID file held with
fcntl.flock; a PID file left behind by a dead process is taken over.
"""

import fcntl
import logging
import os
import time
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)


class LockError(Exception):
    """Raised when lock cannot be acquired."""
    pass


class LockManager:
    """
    Exclusive lock for one backup profile.

    Use as a context manager so the lock is released on every exit path:

        with LockManager(profile.lock_path):
            ...
    """

    DEFAULT_LOCK_PATH = Path.home() / ".tmbackup/tmbackup.pid"

    def __init__(self, lock_path: Optional[Path] = None, timeout: float = 0):
        """
        Args:
            lock_path: Path to the PID file. Defaults to ~/.tmbackup/tmbackup.pid
            timeout: Seconds to wait for a running backup to finish. 0 fails
                     immediately.
        """
        self.lock_path = Path(lock_path) if lock_path is not None else self.DEFAULT_LOCK_PATH
        self.timeout = timeout
        self._lock_fd: Optional[int] = None

    @property
    def acquired(self) -> bool:
        return self._lock_fd is not None

    def acquire(self) -> None:
        """
        Take the lock and write our PID into the lock file.

        Raises:
            LockError: If another live process holds the lock
        """
        if self._lock_fd is not None:
            return

        if not self.lock_path.parent.exists():
            logger.info(f"Creating profile folder in '{self.lock_path.parent}'...")
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise LockError(f"Cannot open lock file {self.lock_path}: {e}")

        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    holder = self.get_lock_holder_pid()
                    raise LockError(
                        "Previous backup task is still active - aborting."
                        + (f" (PID {holder})" if holder else "")
                    )
                time.sleep(0.1)

        # The flock is ours; a PID left in the file belongs to a dead process
        stale_pid = _read_pid(fd)
        if stale_pid is not None and stale_pid != os.getpid():
            logger.debug(f"Taking over stale lock from PID {stale_pid}")

        try:
            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, str(os.getpid()).encode())
        except OSError as e:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            raise LockError(f"Cannot write lock file {self.lock_path}: {e}")

        self._lock_fd = fd
        logger.debug(f"Created {self.lock_path}")

    def release(self) -> None:
        """Release the lock and delete the PID file. Safe to call twice."""
        if self._lock_fd is None:
            return
        logger.debug(f"Deleting {self.lock_path}")
        try:
            self.lock_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not delete lock file {self.lock_path}: {e}")
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        except OSError:
            pass  # Closing the descriptor drops the lock anyway
        os.close(self._lock_fd)
        self._lock_fd = None

    def is_locked(self) -> bool:
        """Return True if some process currently holds the lock."""
        if self._lock_fd is not None:
            return True
        try:
            fd = os.open(str(self.lock_path), os.O_RDONLY)
        except OSError:
            return False
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        else:
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
        finally:
            os.close(fd)

    def get_lock_holder_pid(self) -> Optional[int]:
        """Return PID recorded in the lock file, or None."""
        try:
            content = self.lock_path.read_text().strip()
            return int(content) if content else None
        except (OSError, ValueError):
            return None

    def __enter__(self) -> "LockManager":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False


def _read_pid(fd: int) -> Optional[int]:
    try:
        os.lseek(fd, 0, os.SEEK_SET)
        content = os.read(fd, 32).decode().strip()
        return int(content) if content else None
    except (OSError, ValueError):
        return None
