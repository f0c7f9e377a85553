"""Command-line interface for tmbackup.

This module provides the CLI for tmbackup, supporting commands for:
- run: Back up now (source and destination from the config file or the
  command line)
- list: List snapshots at the destination
- prune: Apply the retention policy without backing up
- status: Show destination state without changing it
- mark: Create the backup.marker file at the destination
- init: Create default config
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Optional, Tuple

from tmbackup import __version__
from tmbackup.backup import (
    EXIT_CONFIG_ERROR,
    EXIT_LOCK_ERROR,
    EXIT_SAFETY_ERROR,
    EXIT_STORE_ERROR,
    EXIT_SUCCESS,
    run_backup,
)
from tmbackup.catalog import SnapshotCatalog, parse_timestamp
from tmbackup.config import (
    Configuration,
    ConfigurationError,
    ValidationError,
    parse_config,
    create_default_config,
    DEFAULT_CONFIG_PATH,
)
from tmbackup.destination import (
    SafetyCheckFailure,
    check_backup_marker,
    create_backup_marker,
    open_store,
    parse_destination,
)
from tmbackup.latest import LatestPointerResolver, SymlinkIntegrityError
from tmbackup.lock import LockError, LockManager
from tmbackup.logger import LoggingError, setup_logging
from tmbackup.resolver import DirectoryResolver
from tmbackup.retention import RetentionPruner
from tmbackup.store import SnapshotStore, StoreError


EXIT_GENERAL_ERROR = 1


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog='tmbackup',
        description='Time Machine style backups with rsync'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Path to config file (default: ~/.config/tmbackup/config.toml)',
        metavar='PATH'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose output'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    run_parser = subparsers.add_parser(
        'run',
        help='Run backup now'
    )
    run_parser.add_argument(
        'source',
        nargs='?',
        help='Source folder (overrides the config file)'
    )
    run_parser.add_argument(
        'destination',
        nargs='?',
        help='Destination: /path, user@host:/path or user@host:port:/path'
    )
    run_parser.add_argument(
        'exclusion_file',
        nargs='?',
        help='rsync exclude file'
    )

    list_parser = subparsers.add_parser(
        'list',
        help='List snapshots'
    )
    list_parser.add_argument(
        '--json',
        action='store_true',
        help='Output as JSON'
    )

    prune_parser = subparsers.add_parser(
        'prune',
        help='Expire snapshots according to the retention policy'
    )
    prune_parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show what would be expired without deleting anything'
    )

    subparsers.add_parser(
        'status',
        help='Show destination status'
    )

    subparsers.add_parser(
        'mark',
        help='Mark the destination as a backup folder'
    )

    init_parser = subparsers.add_parser(
        'init',
        help='Create default config file'
    )
    init_parser.add_argument(
        '--force',
        action='store_true',
        help='Overwrite existing config file'
    )

    return parser


def load_config(config_path: Optional[Path], verbose: bool = False) -> Optional[Configuration]:
    """
    Load configuration from file.

    Returns None and prints error on failure.
    """
    try:
        config = parse_config(config_path)
        if verbose:
            print(f"Loaded config from: {config_path or DEFAULT_CONFIG_PATH}")
        return config
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return None
    except ValidationError as e:
        print(f"Validation error: {e}", file=sys.stderr)
        return None


def _run_config(args: argparse.Namespace) -> Optional[Configuration]:
    """Build the configuration for 'run', letting positional arguments win."""
    if args.source is None:
        return load_config(args.config, args.verbose)

    if args.destination is None:
        print("Usage: tmbackup run SOURCE DESTINATION [EXCLUSION_FILE]", file=sys.stderr)
        return None

    config_path = args.config or DEFAULT_CONFIG_PATH
    if config_path.exists():
        config = load_config(args.config, args.verbose)
        if config is None:
            return None
        config.source = args.source
        config.destination = args.destination
    else:
        config = Configuration(source=args.source, destination=args.destination)

    if args.exclusion_file:
        config.exclusion_file = Path(args.exclusion_file).expanduser()
    return config


def _open_destination(config: Configuration) -> Tuple[SnapshotStore, str]:
    """
    Return the store and root path of the configured destination.

    Raises:
        ValidationError: If the destination is malformed
    """
    spec = parse_destination(config.destination, default_port=config.ssh.port)
    identity = str(config.ssh.identity_file) if config.ssh.identity_file else None
    return open_store(spec, identity_file=identity), spec.path


def cmd_run(args: argparse.Namespace) -> int:
    """Execute the 'run' command - back up now."""
    config = _run_config(args)
    if config is None:
        return EXIT_CONFIG_ERROR

    result = run_backup(config=config, verbose=args.verbose)

    if not result.success:
        print(f"Backup failed: {result.error_message}", file=sys.stderr)
    elif args.verbose and result.snapshot_path:
        print(f"Snapshot: {result.snapshot_path}")
    return result.exit_code


def cmd_list(args: argparse.Namespace) -> int:
    """Execute the 'list' command - list snapshots."""
    config = load_config(args.config, args.verbose)
    if config is None:
        return EXIT_CONFIG_ERROR

    try:
        store, root = _open_destination(config)
    except ValidationError as e:
        print(f"Validation error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    catalog = SnapshotCatalog.load(store, root)

    if args.json:
        output = []
        for name in catalog:
            try:
                timestamp = parse_timestamp(name).isoformat()
            except ValueError:
                timestamp = None
            output.append({
                "name": name,
                "timestamp": timestamp,
                "path": store.describe(catalog.path_of(name)),
            })
        print(json.dumps(output, indent=2))
        return EXIT_SUCCESS

    if not catalog:
        print("No snapshots found.")
        return EXIT_SUCCESS

    for path in catalog.paths():
        print(store.describe(path))
    print(f"Total: {len(catalog)} snapshot(s)")
    return EXIT_SUCCESS


def cmd_prune(args: argparse.Namespace) -> int:
    """Execute the 'prune' command - apply the retention policy."""
    config = load_config(args.config, args.verbose)
    if config is None:
        return EXIT_CONFIG_ERROR

    try:
        setup_logging(config.logging, verbose=args.verbose)
    except LoggingError as e:
        print(f"Warning: failed to set up logging: {e}", file=sys.stderr)

    try:
        store, root = _open_destination(config)
        with LockManager(config.profile.lock_path):
            check_backup_marker(store, root)
            result = RetentionPruner(store, root).prune(dry_run=args.dry_run)
    except ValidationError as e:
        print(f"Validation error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except LockError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_LOCK_ERROR
    except SafetyCheckFailure as e:
        print(f"Error: {e}", file=sys.stderr)
        for line in e.remediation:
            print(line, file=sys.stderr)
        return EXIT_SAFETY_ERROR
    except StoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_STORE_ERROR

    verb = "Would expire" if args.dry_run else "Expired"
    for path in result.deleted_snapshots:
        print(f"{verb}: {store.describe(path)}")
    print(
        f"{verb} {len(result.deleted_snapshots)} snapshot(s), "
        f"kept {len(result.kept_snapshots)}"
    )
    return EXIT_SUCCESS


def cmd_status(args: argparse.Namespace) -> int:
    """Execute the 'status' command - show destination state."""
    config = load_config(args.config, args.verbose)
    if config is None:
        return EXIT_CONFIG_ERROR

    try:
        store, root = _open_destination(config)
    except ValidationError as e:
        print(f"Validation error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    lock_manager = LockManager(config.profile.lock_path)
    is_running = lock_manager.is_locked()
    catalog = SnapshotCatalog.load(store, root)

    print("tmbackup Status")
    print("=" * 40)
    print(f"Destination: {store.describe(root)}")

    try:
        latest_target = LatestPointerResolver(store, root).resolve()
        in_progress = DirectoryResolver(store, root).in_progress()
    except (SymlinkIntegrityError, StoreError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_STORE_ERROR

    if catalog:
        print(f"Last backup: {catalog.most_recent}")
    else:
        print("Last backup: Never")
    print(f"Latest: {store.describe(latest_target) if latest_target else 'none'}")
    print(f"Total snapshots: {len(catalog)}")

    print()
    if is_running:
        print(f"Status: Backup in progress (PID: {lock_manager.get_lock_holder_pid()})")
    elif in_progress:
        print("Status: Previous backup was interrupted; the next run resumes it")
    else:
        print("Status: Idle")

    return EXIT_SUCCESS


def cmd_mark(args: argparse.Namespace) -> int:
    """Execute the 'mark' command - create backup.marker at the destination."""
    config = load_config(args.config, args.verbose)
    if config is None:
        return EXIT_CONFIG_ERROR

    try:
        store, root = _open_destination(config)
        marker = create_backup_marker(store, root)
    except ValidationError as e:
        print(f"Validation error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except StoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_STORE_ERROR

    print(f"Created {store.describe(marker)}")
    return EXIT_SUCCESS


def cmd_init(args: argparse.Namespace) -> int:
    """Execute the 'init' command - create default config."""
    config_path = args.config or DEFAULT_CONFIG_PATH

    if config_path.exists() and not args.force:
        print(f"Config file already exists: {config_path}", file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        return EXIT_GENERAL_ERROR

    # Create parent directories
    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_path.write_text(create_default_config())

    print(f"Created default config: {config_path}")
    print("Edit this file to configure your backup settings.")

    return EXIT_SUCCESS


def main(argv: list = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    # If no command specified, show help
    if args.command is None:
        parser.print_help()
        return EXIT_SUCCESS

    try:
        if args.command == 'run':
            return cmd_run(args)
        elif args.command == 'list':
            return cmd_list(args)
        elif args.command == 'prune':
            return cmd_prune(args)
        elif args.command == 'status':
            return cmd_status(args)
        elif args.command == 'mark':
            return cmd_mark(args)
        elif args.command == 'init':
            return cmd_init(args)
        else:
            print(f"Unknown command: {args.command}", file=sys.stderr)
            return EXIT_GENERAL_ERROR
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130  # Standard exit code for SIGINT


if __name__ == "__main__":
    sys.exit(main())
