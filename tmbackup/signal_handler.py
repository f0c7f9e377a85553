"""Signal handling for tmbackup.

This module provides the SignalHandler class that stops a running backup on
SIGINT or SIGTERM. It terminates rsync and releases the lock. The
in-progress marker and the partially written snapshot are left in place on
purpose: the next run finds them and resumes the snapshot.
"""

import logging
import signal
import subprocess
import sys
import threading
from typing import Any, Dict, Optional


class SignalHandler:
    """
    Handles OS signals for a running backup.

    Usage:
        handler = SignalHandler()
        handler.register(lock_manager=lock)
        handler.set_rsync_process(process)
        # ... run backup ...
        handler.unregister()
    """

    SIGNALS = (signal.SIGTERM, signal.SIGINT)

    def __init__(self):
        self._lock_manager: Optional[Any] = None  # LockManager
        self._rsync_process: Optional[subprocess.Popen] = None
        self._original_handlers: Dict[int, Any] = {}
        self._registered = False
        self._logger = logging.getLogger(__name__)

    def register(self, lock_manager: Optional[Any] = None) -> None:
        """
        Install handlers for SIGTERM and SIGINT.

        Signal handlers can only be installed from the main thread; from any
        other thread the lock manager is still tracked but no handler is set.
        """
        self._lock_manager = lock_manager
        self._registered = True

        if threading.current_thread() is not threading.main_thread():
            self._logger.debug("Signal handlers not registered: not running in main thread")
            return

        for sig in self.SIGNALS:
            self._original_handlers[sig] = signal.signal(sig, self._handle_signal)
        self._logger.debug("Signal handlers registered")

    def set_rsync_process(self, process: Optional[subprocess.Popen]) -> None:
        """Track the rsync subprocess so it can be stopped on a signal."""
        self._rsync_process = process

    def unregister(self) -> None:
        """Restore the handlers that were installed before register()."""
        if not self._registered:
            return

        if self._original_handlers and threading.current_thread() is threading.main_thread():
            for sig, handler in self._original_handlers.items():
                signal.signal(sig, handler)

        self._original_handlers.clear()
        self._lock_manager = None
        self._rsync_process = None
        self._registered = False
        self._logger.debug("Signal handlers unregistered")

    @property
    def is_registered(self) -> bool:
        return self._registered

    def _terminate_rsync(self) -> None:
        if self._rsync_process is None:
            return
        try:
            self._rsync_process.terminate()
            try:
                self._rsync_process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._rsync_process.kill()
                self._rsync_process.wait()
        except OSError as e:
            self._logger.warning(f"Error terminating rsync process: {e}")
        self._rsync_process = None

    def _handle_signal(self, signum: int, frame: Any) -> None:
        sig_name = signal.Signals(signum).name
        lock_path = getattr(self._lock_manager, "lock_path", None)
        if lock_path is not None:
            self._logger.info(f"{sig_name} caught, deleting {lock_path} and exiting.")
        else:
            self._logger.info(f"{sig_name} caught, exiting.")

        self._terminate_rsync()

        if self._lock_manager is not None:
            self._lock_manager.release()

        # Unix convention for a signal exit
        sys.exit(128 + signum)
