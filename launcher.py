#!/usr/bin/env python3
"""
BioSync Application Launcher
Provides simple entry points for the server, the tray and one-shot maintenance
commands.
"""

import os
import sys
from pathlib import Path

# Add the project root to Python path for clean imports
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

USAGE = """BioSync Application Launcher

Usage:
  python launcher.py server              # Run server (tray with console fallback)
  python launcher.py tray                # Same as 'server'
  python launcher.py console-server      # Run server in console mode only
  python launcher.py sync-once           # Run a single sync cycle and exit
  python launcher.py sync-all-logs       # Fetch every stored device log and exit
  python launcher.py cleanup             # Deduplicate devices and prune old backups
  python launcher.py restore             # Restore the store from its latest backup

Add --debug to any command for verbose logging.
Note: All server modes use Waitress WSGI server"""


def _print_result(result):
    status = 'OK  ' if result.success else 'FAIL'
    detail = result.message if result.success else result.error
    print(f"  [{status}] {result.api}: {detail or ''}")


def sync_once() -> int:
    from client import create_sync_service

    service = create_sync_service()
    response = service.run_once()
    print("Sync cycle results:")
    for result in response.data or []:
        _print_result(result)
    if response.error:
        print(f"  {response.error}")
    return 0 if response.success else 1


def sync_all_logs() -> int:
    from client import create_sync_service

    response = create_sync_service().sync_all_logs()
    if not response.success:
        print(f"Failed to fetch device logs: {response.error}")
        return 1
    print(f"Fetched {response.raw_data['count']} device log(s)")
    return 0


def cleanup() -> int:
    from shared.backup_utils import prune_backups
    from shared.store import JsonStore

    store = JsonStore.open_default()
    summary = store.run_maintenance()
    removed = prune_backups(store.path)

    print(f"Devices: {summary['original_count']} record(s) -> {summary['merged_count']} unique")
    if summary['token_backfilled']:
        print("Backfilled missing token timestamp")
    if summary['backup']:
        print(f"Backup written to {summary['backup']}")
    print(f"Removed {removed} old backup(s)")
    return 0


def restore() -> int:
    from shared.backup_utils import get_latest_backup, restore_from_backup
    from shared.store import STORE_FILE_NAME
    from shared.utils import get_data_path

    store_path = get_data_path(STORE_FILE_NAME)
    backup = get_latest_backup(store_path)
    if backup is None:
        print("No backup found")
        return 1

    try:
        restore_from_backup(backup, store_path)
    except (FileNotFoundError, IOError) as e:
        print(f"Restore failed: {e}")
        return 1
    print(f"Restored {store_path.name} from {backup.name}")
    return 0


def main():
    """Main launcher with command-line arguments"""
    args = [arg for arg in sys.argv[1:] if arg != '--debug']

    if '--debug' in sys.argv[1:]:
        # Loggers created after this point pick the level up from the environment
        os.environ['BIOSYNC_LOG_LEVEL'] = 'DEBUG'
        from shared.logging_config import enable_debug_logging
        enable_debug_logging()

    if not args:
        print(USAGE)
        sys.exit(1)

    command = args[0].lower()

    if command in ('server', 'tray', 'server-tray'):
        from server import run_server_tray
        run_server_tray()

    elif command == 'console-server':
        from server import run_console_server
        run_console_server()

    elif command == 'sync-once':
        sys.exit(sync_once())

    elif command == 'sync-all-logs':
        sys.exit(sync_all_logs())

    elif command == 'cleanup':
        sys.exit(cleanup())

    elif command == 'restore':
        sys.exit(restore())

    else:
        print(f"Unknown command: {command}")
        print("Use 'server', 'tray', 'console-server', 'sync-once', 'sync-all-logs', 'cleanup' or 'restore'")
        sys.exit(1)


if __name__ == '__main__':
    main()
