"""
SparkyFit Backup Manager

Point-in-time snapshots of the live installation, taken before an update
touches the filesystem and restored when the update fails.

A snapshot is a directory under the backup root:

    <backup_dir>/<backup_id>/
        tree/            copy of the application root (excluded paths skipped)
        database.db      copy of the sqlite database, if it exists
        backup.json      metadata (paths, created_at, label)

The orchestrator only sees BackupHandle objects and the BackupManager protocol.
"""

import json
import logging
import os
import shutil
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Protocol

from .update_errors import BackupError
from .update_models import BackupHandle

logger = logging.getLogger(__name__)

METADATA_FILE = "backup.json"
TREE_DIR = "tree"
DATABASE_COPY = "database.db"


# =============================================================================
# Capability Interface
# =============================================================================

class BackupManager(Protocol):
    """What the orchestrator needs from a backup manager."""

    def create_backup(self) -> BackupHandle:
        ...

    def restore_backup(self, handle: BackupHandle) -> bool:
        ...

    def discard_backup(self, handle: BackupHandle, retention: int) -> None:
        ...


# =============================================================================
# Directory Backup Manager
# =============================================================================

class DirectoryBackupManager:
    """Snapshots the app root (and database) by copying into backup_dir."""

    def __init__(
        self,
        app_root: Path,
        backup_dir: Path,
        database_path: Optional[Path] = None,
        exclude: Iterable[str] = (),
        exclude_paths: Iterable[Path] = (),
    ):
        self.app_root = Path(app_root)
        self.backup_dir = Path(backup_dir)
        self.database_path = Path(database_path) if database_path else None
        self.exclude = set(exclude)
        self.exclude_paths = {Path(p).resolve() for p in exclude_paths}
        self.exclude_paths.add(self.backup_dir.resolve())

    def _ignore(self, directory: str, names: List[str]) -> List[str]:
        """shutil.copytree ignore hook: skip excluded names and excluded paths (backup dir, data dir)."""
        ignored = []
        for name in names:
            if name in self.exclude or Path(directory, name).resolve() in self.exclude_paths:
                ignored.append(name)
        return ignored

    # =========================================================================
    # Create
    # =========================================================================

    def create_backup(self, label: Optional[str] = None) -> BackupHandle:
        """Copy the live tree and database. Raises BackupError on failure."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_id = f"{timestamp}_{uuid.uuid4().hex[:6]}"
        target = self.backup_dir / backup_id

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            target.mkdir()

            if self.app_root.exists():
                shutil.copytree(
                    self.app_root,
                    target / TREE_DIR,
                    symlinks=True,
                    ignore=self._ignore,
                )
            else:
                (target / TREE_DIR).mkdir()

            has_database = False
            if self.database_path and self.database_path.exists():
                self._copy_database(self.database_path, target / DATABASE_COPY)
                has_database = True

            handle = BackupHandle(backup_id=backup_id)
            metadata = {
                "backup_id": backup_id,
                "created_at": handle.created_at,
                "app_root": str(self.app_root),
                "database_path": str(self.database_path) if self.database_path else None,
                "has_database": has_database,
                "label": label,
            }
            (target / METADATA_FILE).write_text(json.dumps(metadata, indent=2))

        except (OSError, shutil.Error, sqlite3.Error) as e:
            logger.error(f"Backup failed: {e}")
            shutil.rmtree(target, ignore_errors=True)
            raise BackupError(f"Failed to create backup: {e}") from e

        logger.info(f"Backup created: {backup_id}")
        return handle

    @staticmethod
    def _copy_database(source: Path, dest: Path):
        """Consistent copy of a live sqlite database using the backup API."""
        src = sqlite3.connect(source)
        try:
            dst = sqlite3.connect(dest)
            try:
                src.backup(dst)
            finally:
                dst.close()
        finally:
            src.close()

    # =========================================================================
    # Restore
    # =========================================================================

    def restore_backup(self, handle: BackupHandle) -> bool:
        """Put the live tree and database back exactly as snapshotted."""
        source = self.backup_dir / handle.backup_id
        metadata_path = source / METADATA_FILE
        if not metadata_path.exists():
            logger.error(f"Backup not found: {handle.backup_id}")
            return False

        try:
            metadata = json.loads(metadata_path.read_text())
            self._restore_tree(source / TREE_DIR, self.app_root)

            if self.database_path is not None:
                if metadata.get("has_database"):
                    self._restore_file(source / DATABASE_COPY, self.database_path)
                elif self.database_path.exists():
                    # Database did not exist before the update
                    self.database_path.unlink()

        except (OSError, shutil.Error, ValueError) as e:
            logger.error(f"Restore of backup {handle.backup_id} failed: {e}")
            return False

        logger.info(f"Backup restored: {handle.backup_id}")
        return True

    def _restore_tree(self, snapshot: Path, live: Path):
        """
        Make live identical to snapshot.

        Files created after the snapshot are removed (except excluded names and the
        backup dir); everything in the snapshot is copied back.
        """
        live.mkdir(parents=True, exist_ok=True)

        for dirpath, dirnames, filenames in os.walk(live, topdown=True):
            current = Path(dirpath)
            relative = current.relative_to(live)
            skipped = set(self._ignore(dirpath, dirnames + filenames))
            dirnames[:] = [d for d in dirnames if d not in skipped]

            for name in filenames:
                if name in skipped:
                    continue
                if not (snapshot / relative / name).exists():
                    (current / name).unlink()
            for name in list(dirnames):
                snap_dir = snapshot / relative / name
                if not snap_dir.exists():
                    shutil.rmtree(current / name)
                    dirnames.remove(name)

        shutil.copytree(snapshot, live, symlinks=True, dirs_exist_ok=True)

    @staticmethod
    def _restore_file(source: Path, dest: Path):
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + ".restore-tmp")
        shutil.copy2(source, tmp)
        os.replace(tmp, dest)

    # =========================================================================
    # Retention
    # =========================================================================

    def list_backups(self) -> List[str]:
        """Backup ids, newest first."""
        if not self.backup_dir.exists():
            return []
        ids = [p.name for p in self.backup_dir.iterdir() if (p / METADATA_FILE).exists()]
        return sorted(ids, reverse=True)

    def discard_backup(self, handle: BackupHandle, retention: int) -> None:
        """
        Apply the retention policy after a successful update.

        retention == 0 deletes this cycle's backup; otherwise the newest
        `retention` backups are kept and older ones are pruned.
        """
        if retention <= 0:
            self._delete(handle.backup_id)
            return

        for old_id in self.list_backups()[retention:]:
            self._delete(old_id)

    def _delete(self, backup_id: str):
        try:
            shutil.rmtree(self.backup_dir / backup_id)
            logger.info(f"Removed backup: {backup_id}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove backup {backup_id}: {e}")
