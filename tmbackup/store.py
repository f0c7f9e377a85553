"""Destination filesystem access for tmbackup.

This module provides the SnapshotStore interface and its two variants:
LocalStore, which works on a local directory tree, and RemoteStore, which
sends every operation through a Transport (normally SSH) to a remote host.

Each operation is a narrow, typed call. Remote commands are built as argv
lists and shell-quoted with shlex, never assembled from free-form strings.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional
import fnmatch
import logging
import os
import posixpath
import shlex
import shutil
import subprocess


logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a store operation fails on the filesystem or transport."""
    pass


class SnapshotStore(ABC):
    """
    Abstract destination filesystem.

    Paths are POSIX strings. All methods raise StoreError on failure.
    """

    @abstractmethod
    def list(self, directory: str, pattern: str) -> List[str]:
        """Return names of directories in ``directory`` matching the glob ``pattern``."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Return True if anything exists at path (broken symlinks count)."""

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        """Return True if path is a directory (following symlinks)."""

    @abstractmethod
    def is_link(self, path: str) -> bool:
        """Return True if path is a symbolic link."""

    @abstractmethod
    def read_link(self, path: str) -> str:
        """Return the raw text stored in the symbolic link at path."""

    @abstractmethod
    def rename(self, src: str, dst: str) -> None:
        """Atomically rename src to dst. dst must not exist."""

    @abstractmethod
    def remove(self, path: str) -> None:
        """Remove a file, link or directory tree. Missing paths are ignored."""

    @abstractmethod
    def create_link(self, target_name: str, link_path: str) -> None:
        """Create a symbolic link at link_path whose text is target_name."""

    @abstractmethod
    def resolve_absolute(self, path: str) -> str:
        """Return the absolute path of an existing directory."""

    @abstractmethod
    def mkdir(self, path: str) -> None:
        """Create a directory and any missing parents."""

    @abstractmethod
    def touch(self, path: str) -> None:
        """Create an empty file, or update its mtime if it exists."""

    @abstractmethod
    def chown(
        self,
        owner: str,
        path: str,
        recursive: bool = False,
        link: bool = False,
    ) -> None:
        """Change ownership of path to ``owner`` (``user:group``) using sudo."""

    def describe(self, path: str) -> str:
        """Return path as shown to users (with host prefix for remote stores)."""
        return path


class LocalStore(SnapshotStore):
    """SnapshotStore backed by the local filesystem."""

    def list(self, directory: str, pattern: str) -> List[str]:
        try:
            entries = os.listdir(directory)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StoreError(f"Cannot list {directory}: {e}")

        names = []
        for name in entries:
            if not fnmatch.fnmatchcase(name, pattern):
                continue
            path = os.path.join(directory, name)
            if os.path.isdir(path) and not os.path.islink(path):
                names.append(name)
        return names

    def exists(self, path: str) -> bool:
        return os.path.lexists(path)

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)

    def is_link(self, path: str) -> bool:
        return os.path.islink(path)

    def read_link(self, path: str) -> str:
        try:
            return os.readlink(path)
        except OSError as e:
            raise StoreError(f"Cannot read link {path}: {e}")

    def rename(self, src: str, dst: str) -> None:
        # os.rename silently replaces an empty directory on POSIX
        if os.path.lexists(dst):
            raise StoreError(f"Cannot rename {src} to {dst}: destination exists")
        try:
            os.rename(src, dst)
        except OSError as e:
            raise StoreError(f"Cannot rename {src} to {dst}: {e}")

    def remove(self, path: str) -> None:
        try:
            if os.path.islink(path) or os.path.isfile(path):
                os.unlink(path)
            elif os.path.isdir(path):
                shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StoreError(f"Cannot remove {path}: {e}")

    def create_link(self, target_name: str, link_path: str) -> None:
        try:
            os.symlink(target_name, link_path)
        except OSError as e:
            raise StoreError(f"Cannot create link {link_path} -> {target_name}: {e}")

    def resolve_absolute(self, path: str) -> str:
        if not os.path.isdir(path):
            raise StoreError(f"Cannot resolve {path}: not a directory")
        return os.path.abspath(path)

    def mkdir(self, path: str) -> None:
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create directory {path}: {e}")

    def touch(self, path: str) -> None:
        try:
            with open(path, "a"):
                pass
            os.utime(path, None)
        except OSError as e:
            raise StoreError(f"Cannot touch {path}: {e}")

    def chown(
        self,
        owner: str,
        path: str,
        recursive: bool = False,
        link: bool = False,
    ) -> None:
        argv = _chown_argv(owner, path, recursive, link)
        logger.debug(f"Running: {shlex.join(argv)}")
        try:
            completed = subprocess.run(argv, capture_output=True, text=True)
        except OSError as e:
            raise StoreError(f"Cannot change owner of {path}: {e}")
        if completed.returncode != 0:
            raise StoreError(
                f"Cannot change owner of {path}: {completed.stderr.strip()}"
            )


def _chown_argv(owner: str, path: str, recursive: bool, link: bool) -> List[str]:
    argv = ["sudo", "chown"]
    if recursive:
        argv.append("-R")
    if link:
        argv.append("-h")
    argv.extend(["--", owner, path])
    return argv


@dataclass
class CommandResult:
    """Output of a command executed through a Transport."""
    returncode: int
    stdout: str
    stderr: str


class Transport(ABC):
    """Channel that executes a single command against a remote filesystem."""

    @abstractmethod
    def run(self, argv: List[str]) -> CommandResult:
        """Execute argv remotely and return its result. Raises StoreError if
        the channel itself cannot be opened."""

    @property
    def prefix(self) -> str:
        """Prefix used when showing remote paths (``user@host:``)."""
        return ""

    def describe_command(self, command: str) -> str:
        """Return command as a user would type it to run it remotely."""
        return command


class SSHTransport(Transport):
    """Transport that runs commands with the ``ssh`` client."""

    def __init__(
        self,
        user: str,
        host: str,
        port: int = 22,
        identity_file: Optional[str] = None,
    ):
        self.user = user
        self.host = host
        self.port = port
        self.identity_file = identity_file

    def ssh_argv(self) -> List[str]:
        """Return the ssh client invocation without the remote command."""
        argv = ["ssh", "-p", str(self.port)]
        if self.identity_file:
            argv.extend(["-i", self.identity_file])
        argv.append(f"{self.user}@{self.host}")
        return argv

    @property
    def prefix(self) -> str:
        return f"{self.user}@{self.host}:"

    def describe_command(self, command: str) -> str:
        return f"{shlex.join(self.ssh_argv())} {shlex.quote(command)}"

    def run(self, argv: List[str]) -> CommandResult:
        # ssh joins its trailing arguments with spaces and hands them to the
        # remote shell, so the command is sent as one pre-quoted string.
        command = shlex.join(argv)
        logger.debug(f"Running remote command: {command}")
        try:
            completed = subprocess.run(
                self.ssh_argv() + [command],
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise StoreError(f"Cannot run ssh to {self.host}: {e}")
        # 255 is reserved by ssh for connection failures
        if completed.returncode == 255:
            raise StoreError(
                f"SSH connection to {self.host} failed: {completed.stderr.strip()}"
            )
        return CommandResult(
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )


class RemoteStore(SnapshotStore):
    """SnapshotStore whose operations run on a remote host through a Transport."""

    def __init__(self, transport: Transport):
        self.transport = transport

    def _check(self, argv: List[str], action: str) -> CommandResult:
        result = self.transport.run(argv)
        if result.returncode != 0:
            raise StoreError(f"{action} failed: {result.stderr.strip()}")
        return result

    def _test(self, flag: str, path: str) -> bool:
        return self.transport.run(["test", flag, path]).returncode == 0

    def list(self, directory: str, pattern: str) -> List[str]:
        if not self._test("-d", directory):
            return []
        result = self._check(
            [
                "find", directory,
                "-mindepth", "1", "-maxdepth", "1",
                "-type", "d", "-name", pattern,
            ],
            f"Listing {self.describe(directory)}",
        )
        return [posixpath.basename(line.rstrip("/"))
                for line in result.stdout.splitlines() if line.strip()]

    def exists(self, path: str) -> bool:
        return self._test("-e", path) or self._test("-L", path)

    def is_dir(self, path: str) -> bool:
        return self._test("-d", path)

    def is_link(self, path: str) -> bool:
        return self._test("-L", path)

    def read_link(self, path: str) -> str:
        result = self._check(["readlink", "--", path], f"Reading link {self.describe(path)}")
        return result.stdout.rstrip("\n")

    def rename(self, src: str, dst: str) -> None:
        if self.exists(dst):
            raise StoreError(
                f"Cannot rename {self.describe(src)} to {self.describe(dst)}: destination exists"
            )
        self._check(["mv", "--", src, dst], f"Renaming {self.describe(src)}")

    def remove(self, path: str) -> None:
        self._check(["rm", "-rf", "--", path], f"Removing {self.describe(path)}")

    def create_link(self, target_name: str, link_path: str) -> None:
        self._check(
            ["ln", "-s", "--", target_name, link_path],
            f"Creating link {self.describe(link_path)}",
        )

    def resolve_absolute(self, path: str) -> str:
        result = self._check(
            ["sh", "-c", 'cd -- "$1" && pwd', "sh", path],
            f"Resolving {self.describe(path)}",
        )
        return result.stdout.strip()

    def mkdir(self, path: str) -> None:
        self._check(["mkdir", "-p", "--", path], f"Creating {self.describe(path)}")

    def touch(self, path: str) -> None:
        self._check(["touch", "--", path], f"Touching {self.describe(path)}")

    def chown(
        self,
        owner: str,
        path: str,
        recursive: bool = False,
        link: bool = False,
    ) -> None:
        self._check(
            _chown_argv(owner, path, recursive, link),
            f"Changing owner of {self.describe(path)}",
        )

    def describe(self, path: str) -> str:
        return f"{self.transport.prefix}{path}"
