"""Configuration management for tmbackup.

This module provides dataclasses for configuration and functions for
parsing/formatting TOML configuration files.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import tomllib


class ConfigurationError(Exception):
    """Raised when configuration file is missing or malformed."""
    pass


class ValidationError(Exception):
    """Raised when configuration values or arguments are invalid."""
    pass


# Flags passed to rsync for every run. --archive is spelled out without
# --owner and --group so that runs do not require root.
DEFAULT_RSYNC_FLAGS: List[str] = [
    "--compress",
    "--numeric-ids",
    "--safe-links",
    "--hard-links",
    "--one-file-system",
    "--recursive",
    "--links",
    "--perms",
    "--times",
    "--devices",
    "--specials",
    "--itemize-changes",
    "--verbose",
    "--human-readable",
]


@dataclass
class SSHConfig:
    """Configuration for remote destinations."""
    port: int = 22
    identity_file: Optional[Path] = None


@dataclass
class TransferConfig:
    """Configuration for the rsync transfer."""
    rsync_flags: List[str] = field(
        default_factory=lambda: DEFAULT_RSYNC_FLAGS.copy()
    )
    append_flags: List[str] = field(default_factory=list)
    auto_expire: bool = True  # Expire the oldest snapshot when out of space


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"  # "DEBUG", "INFO", "WARNING", "ERROR"
    log_file: Path = field(
        default_factory=lambda: Path.home() / ".local/log/tmbackup.log"
    )
    error_log_file: Path = field(
        default_factory=lambda: Path.home() / ".local/log/tmbackup.err"
    )
    log_max_size_mb: int = 10  # Maximum log file size in MB before rotation
    log_backup_count: int = 5  # Number of rotated log files to keep

    @property
    def log_max_bytes(self) -> int:
        """Return max size in bytes for use with RotatingFileHandler."""
        return self.log_max_size_mb * 1024 * 1024


@dataclass
class ProfileConfig:
    """Per-user state folder holding the PID lock file and rsync run logs."""
    folder: Path = field(default_factory=lambda: Path.home() / ".tmbackup")

    @property
    def lock_path(self) -> Path:
        return self.folder / "tmbackup.pid"


@dataclass
class Configuration:
    """Main configuration for tmbackup."""
    source: str
    destination: str
    exclusion_file: Optional[Path] = None
    owner_and_group: Optional[str] = None
    ssh: SSHConfig = field(default_factory=SSHConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    profile: ProfileConfig = field(default_factory=ProfileConfig)


# Default config file path
DEFAULT_CONFIG_PATH = Path.home() / ".config/tmbackup/config.toml"

# Required keys in configuration
REQUIRED_KEYS = ["source", "destination"]


def _validate_type(value: Any, expected_type: type, key: str) -> None:
    """Validate that a value has the expected type."""
    # bool is a subclass of int; keep them apart
    if expected_type is int and isinstance(value, bool):
        raise ValidationError(
            f"Key '{key}' has invalid type: expected int, got bool"
        )
    if not isinstance(value, expected_type):
        raise ValidationError(
            f"Key '{key}' has invalid type: expected {expected_type.__name__}, "
            f"got {type(value).__name__}"
        )


def _validate_str_list(value: Any, key: str) -> List[str]:
    _validate_type(value, list, key)
    for i, item in enumerate(value):
        _validate_type(item, str, f"{key}[{i}]")
    return list(value)


def _expand(path: str) -> Path:
    return Path(path).expanduser()


def _parse_ssh_config(data: Dict[str, Any]) -> SSHConfig:
    """Parse ssh configuration from dict."""
    ssh_data = data.get("ssh", {})

    port = ssh_data.get("port", 22)
    _validate_type(port, int, "ssh.port")
    if not 0 < port < 65536:
        raise ValidationError(f"Key 'ssh.port' out of range: {port}")

    identity_file = ssh_data.get("identity_file", "")
    _validate_type(identity_file, str, "ssh.identity_file")

    return SSHConfig(
        port=port,
        identity_file=_expand(identity_file) if identity_file else None,
    )


def _parse_transfer_config(data: Dict[str, Any]) -> TransferConfig:
    """Parse transfer configuration from dict."""
    transfer_data = data.get("transfer", {})

    rsync_flags = _validate_str_list(
        transfer_data.get("rsync_flags", DEFAULT_RSYNC_FLAGS.copy()),
        "transfer.rsync_flags",
    )
    append_flags = _validate_str_list(
        transfer_data.get("append_flags", []),
        "transfer.append_flags",
    )

    auto_expire = transfer_data.get("auto_expire", True)
    _validate_type(auto_expire, bool, "transfer.auto_expire")

    return TransferConfig(
        rsync_flags=rsync_flags,
        append_flags=append_flags,
        auto_expire=auto_expire,
    )


def _parse_logging_config(data: Dict[str, Any]) -> LoggingConfig:
    """Parse logging configuration from dict."""
    logging_data = data.get("logging", {})

    level = logging_data.get("level", "INFO")
    _validate_type(level, str, "logging.level")

    log_file = logging_data.get(
        "log_file",
        str(Path.home() / ".local/log/tmbackup.log")
    )
    _validate_type(log_file, str, "logging.log_file")

    error_log_file = logging_data.get(
        "error_log_file",
        str(Path.home() / ".local/log/tmbackup.err")
    )
    _validate_type(error_log_file, str, "logging.error_log_file")

    log_max_size_mb = logging_data.get("log_max_size_mb", 10)
    _validate_type(log_max_size_mb, int, "logging.log_max_size_mb")

    log_backup_count = logging_data.get("log_backup_count", 5)
    _validate_type(log_backup_count, int, "logging.log_backup_count")

    return LoggingConfig(
        level=level,
        log_file=_expand(log_file),
        error_log_file=_expand(error_log_file),
        log_max_size_mb=log_max_size_mb,
        log_backup_count=log_backup_count,
    )


def _parse_profile_config(data: Dict[str, Any]) -> ProfileConfig:
    """Parse profile configuration from dict."""
    profile_data = data.get("profile", {})

    folder = profile_data.get("folder", str(Path.home() / ".tmbackup"))
    _validate_type(folder, str, "profile.folder")

    return ProfileConfig(folder=_expand(folder))


def parse_config_string(toml_content: str) -> Configuration:
    """
    Parse TOML string into Configuration object.

    Args:
        toml_content: TOML formatted string

    Returns:
        Configuration object

    Raises:
        ConfigurationError: If required key is missing
        ValidationError: If value has wrong type
    """
    try:
        data = tomllib.loads(toml_content)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML format: {e}")

    # Get main section (may be nested under [main] or at root)
    main_data = data.get("main", data)

    for key in REQUIRED_KEYS:
        if key not in main_data:
            raise ConfigurationError(f"Missing required configuration key: '{key}'")

    source = main_data["source"]
    _validate_type(source, str, "source")

    destination = main_data["destination"]
    _validate_type(destination, str, "destination")

    exclusion_file = main_data.get("exclusion_file", "")
    _validate_type(exclusion_file, str, "exclusion_file")

    owner_and_group = main_data.get("owner_and_group", "")
    _validate_type(owner_and_group, str, "owner_and_group")

    return Configuration(
        source=source,
        destination=destination,
        exclusion_file=_expand(exclusion_file) if exclusion_file else None,
        owner_and_group=owner_and_group or None,
        ssh=_parse_ssh_config(data),
        transfer=_parse_transfer_config(data),
        logging=_parse_logging_config(data),
        profile=_parse_profile_config(data),
    )


def parse_config(config_path: Optional[Path] = None) -> Configuration:
    """
    Parse TOML configuration file into Configuration object.

    Args:
        config_path: Path to config file. Defaults to ~/.config/tmbackup/config.toml

    Returns:
        Configuration object

    Raises:
        ConfigurationError: If file doesn't exist or required key missing
        ValidationError: If value has wrong type
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}"
        )

    try:
        content = config_path.read_text()
    except PermissionError:
        raise ConfigurationError(
            f"Permission denied reading configuration file: {config_path}"
        )
    except OSError as e:
        raise ConfigurationError(
            f"Error reading configuration file {config_path}: {e}"
        )

    return parse_config_string(content)


def _escape_toml_string(s: str) -> str:
    """Escape a string for TOML basic string format."""
    # Must escape backslashes first, then quotes
    return s.replace("\\", "\\\\").replace('"', '\\"')


def _format_str_list(key: str, values: List[str]) -> List[str]:
    if not values:
        return [f"{key} = []"]
    lines = [f"{key} = ["]
    for value in values:
        lines.append(f'    "{_escape_toml_string(value)}",')
    lines.append("]")
    return lines


def format_config(config: Configuration) -> str:
    """
    Format Configuration object back to TOML string.

    Used for round-trip testing and config generation.
    """
    lines = []

    lines.append("[main]")
    lines.append(f'source = "{_escape_toml_string(config.source)}"')
    lines.append(f'destination = "{_escape_toml_string(config.destination)}"')
    if config.exclusion_file is not None:
        lines.append(
            f'exclusion_file = "{_escape_toml_string(str(config.exclusion_file))}"'
        )
    if config.owner_and_group:
        lines.append(
            f'owner_and_group = "{_escape_toml_string(config.owner_and_group)}"'
        )
    lines.append("")

    lines.append("[ssh]")
    lines.append(f"port = {config.ssh.port}")
    if config.ssh.identity_file is not None:
        lines.append(
            f'identity_file = "{_escape_toml_string(str(config.ssh.identity_file))}"'
        )
    lines.append("")

    lines.append("[transfer]")
    lines.extend(_format_str_list("rsync_flags", config.transfer.rsync_flags))
    lines.extend(_format_str_list("append_flags", config.transfer.append_flags))
    lines.append(f"auto_expire = {'true' if config.transfer.auto_expire else 'false'}")
    lines.append("")

    lines.append("[logging]")
    lines.append(f'level = "{_escape_toml_string(config.logging.level)}"')
    lines.append(f'log_file = "{_escape_toml_string(str(config.logging.log_file))}"')
    lines.append(f'error_log_file = "{_escape_toml_string(str(config.logging.error_log_file))}"')
    lines.append(f"log_max_size_mb = {config.logging.log_max_size_mb}")
    lines.append(f"log_backup_count = {config.logging.log_backup_count}")
    lines.append("")

    lines.append("[profile]")
    lines.append(f'folder = "{_escape_toml_string(str(config.profile.folder))}"')

    return "\n".join(lines)


def create_default_config() -> str:
    """
    Generate default configuration TOML for `tmbackup init`.

    Returns:
        TOML formatted string with default configuration
    """
    template = '''# tmbackup configuration file

[main]
# Local folder to back up
source = "~/Documents"

# Backup destination: a local path, user@host:/path or user@host:port:/path.
# The destination must contain a "backup.marker" file (see `tmbackup mark`).
destination = "/media/backup/tmbackup"

# Optional rsync exclude file
# exclusion_file = "~/.config/tmbackup/excludes.txt"

# Optional "user:group" applied with sudo chown to each finished snapshot
# owner_and_group = "me:me"

[ssh]
port = 22
# identity_file = "~/.ssh/id_ed25519"

[transfer]
# Flags passed to rsync
rsync_flags = [
'''

    for flag in DEFAULT_RSYNC_FLAGS:
        template += f'    "{flag}",\n'

    template += ''']
# Extra flags appended to rsync_flags
append_flags = []
# Delete the oldest snapshot and retry when the destination runs out of space
auto_expire = true

[logging]
# Log level: DEBUG, INFO, WARNING, ERROR
level = "INFO"
log_file = "~/.local/log/tmbackup.log"
error_log_file = "~/.local/log/tmbackup.err"
log_max_size_mb = 10
log_backup_count = 5

[profile]
# Holds the PID lock file and rsync logs of failed runs
folder = "~/.tmbackup"
'''

    return template
