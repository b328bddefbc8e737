"""
Store backup and restore utilities for BioSync.
Backups are timestamped copies of the JSON store kept in a ``backups``
directory next to it.
"""

import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional

BACKUP_DIR_NAME = "backups"


def get_backup_dir(store_path: Path) -> Path:
    """Get the backups directory for a store file, creating it if necessary."""
    backup_dir = Path(store_path).parent / BACKUP_DIR_NAME
    backup_dir.mkdir(exist_ok=True, parents=True)
    return backup_dir


def create_backup(store_path: Path, label: str = "backup") -> Path:
    """Create a timestamped backup of the store document.

    Args:
        store_path: Path of the JSON store file
        label: Tag included in the backup name (e.g. 'backup', 'corrupt', 'cleanup')

    Returns:
        Path to the created backup file

    Raises:
        FileNotFoundError: If the store file doesn't exist
        IOError: If backup file cannot be written
    """
    source = Path(store_path)

    if not source.exists():
        raise FileNotFoundError(f"Store file not found: {source}")

    stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    backup_path = get_backup_dir(source) / f"{source.stem}.{label}.{stamp}{source.suffix}"

    try:
        shutil.copy2(source, backup_path)
    except OSError as e:
        raise IOError(f"Failed to create backup: {e}")
    return backup_path


def list_backups(store_path: Path, limit: Optional[int] = None) -> List[Path]:
    """List backups of a store file, most recent first."""
    source = Path(store_path)
    backup_dir = source.parent / BACKUP_DIR_NAME
    if not backup_dir.exists():
        return []

    # copy2 keeps the source mtime, so order by the stamp in the name
    backup_files = sorted(backup_dir.glob(f"{source.stem}.*{source.suffix}"),
                          key=lambda p: p.stem.rsplit(".", 1)[-1], reverse=True)
    if limit:
        backup_files = backup_files[:limit]
    return backup_files


def get_latest_backup(store_path: Path) -> Optional[Path]:
    """Get the most recent backup of a store file, or None."""
    backups = list_backups(store_path, limit=1)
    return backups[0] if backups else None


def restore_from_backup(backup_path: Path, store_path: Path) -> Path:
    """Restore the store document from a backup file.

    The current document is backed up first so a restore can be undone.

    Raises:
        FileNotFoundError: If the backup file doesn't exist
        IOError: If restore cannot be completed
    """
    backup_path = Path(backup_path)
    store_path = Path(store_path)
    if not backup_path.exists():
        raise FileNotFoundError(f"Backup file not found: {backup_path}")

    try:
        if store_path.exists():
            create_backup(store_path, label="pre-restore")
        shutil.copy2(backup_path, store_path)
    except OSError as e:
        raise IOError(f"Failed to restore from backup: {e}")
    return store_path


def prune_backups(store_path: Path, keep: int = 10) -> int:
    """Delete all but the ``keep`` most recent backups. Returns the number removed."""
    removed = 0
    for old in list_backups(store_path)[keep:]:
        old.unlink(missing_ok=True)
        removed += 1
    return removed
