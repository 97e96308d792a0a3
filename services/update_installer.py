"""
SparkyFit Package Installer

Turns a verified package archive into changes on the live installation:
- extract(): unpack into a private staging directory (zip-slip safe)
- validate_manifest(): update.json must describe exactly what files/ contains
- apply(): copy manifest files over the live tree, one atomic rename per file
- run_pending_migrations(): bundled migration scripts, in order, tracked in the database
- clear_derived_caches(): drop derived caches (best effort)

Package layout:

    update.json         {"version": "2.1.0", "files": [...], "description": "..."}
    files/              mirrors the application root
    migrations/         optional, *.sql and *.py scripts

The installer never decides about rollback; it raises and the orchestrator
restores the backup.
"""

import json
import logging
import os
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Iterable, List, Optional

from pydantic import ValidationError

from database.migrations import MigrationScriptError, run_migration_scripts

from .update_errors import ApplyError, ArchiveError, ManifestError, MigrationError
from .update_models import PackageManifest, compare_versions

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

MANIFEST_FILE = "update.json"
FILES_DIR = "files"
MIGRATIONS_DIR = "migrations"
CACHE_KEY_PATTERN = "sparkyfit:cache:*"


class PackageInstaller:
    """Extracts, validates and applies update packages."""

    def __init__(
        self,
        scratch_dir: Path,
        database_path: Optional[Path] = None,
        cache_dirs: Iterable[Path] = (),
        redis_client=None,
        cache_key_pattern: str = CACHE_KEY_PATTERN,
    ):
        self.scratch_dir = Path(scratch_dir)
        self.database_path = Path(database_path) if database_path else None
        self.cache_dirs = [Path(d) for d in cache_dirs]
        self.redis_client = redis_client
        self.cache_key_pattern = cache_key_pattern

    # =========================================================================
    # Extract
    # =========================================================================

    def extract(self, archive_path: Path) -> Path:
        """Unpack the archive into a fresh staging directory and return it."""
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix="staging_", dir=self.scratch_dir))

        try:
            with zipfile.ZipFile(archive_path) as zf:
                root = staging.resolve()
                for member in zf.infolist():
                    target = (staging / member.filename).resolve()
                    if target != root and root not in target.parents:
                        raise ArchiveError(f"Archive entry escapes staging dir: {member.filename!r}")
                zf.extractall(staging)
        except zipfile.BadZipFile as e:
            self.cleanup(staging)
            raise ArchiveError(f"Failed to extract update: {e}") from e
        except OSError as e:
            self.cleanup(staging)
            raise ArchiveError(f"Failed to extract update: {e}") from e
        except ArchiveError:
            self.cleanup(staging)
            raise

        logger.info(f"Package extracted to {staging}")
        return staging

    # =========================================================================
    # Manifest
    # =========================================================================

    def validate_manifest(self, staging: Path, expected_version: str) -> PackageManifest:
        """
        Load update.json and check it against the staged payload.

        The manifest version must be the version that was checked, and its file
        list must match the regular files under files/ exactly.
        """
        manifest_path = staging / MANIFEST_FILE
        if not manifest_path.is_file():
            raise ManifestError("Invalid update package: update.json not found")

        try:
            data = json.loads(manifest_path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            raise ManifestError(f"Invalid update manifest: {e}") from e

        try:
            manifest = PackageManifest.model_validate(data)
        except ValidationError as e:
            raise ManifestError(f"Invalid update manifest: {e.errors()[0]['msg']}") from e

        if compare_versions(manifest.version, expected_version) != 0:
            raise ManifestError(
                f"Manifest version {manifest.version} does not match expected {expected_version}"
            )

        files_root = staging / FILES_DIR
        if not files_root.is_dir():
            raise ManifestError("Invalid update package: files directory not found")

        staged = set()
        for path in files_root.rglob('*'):
            if path.is_symlink():
                raise ManifestError(f"Symbolic link in package: {path.relative_to(files_root)}")
            if path.is_file():
                staged.add(path.relative_to(files_root).as_posix())

        listed = {entry.replace('\\', '/') for entry in manifest.files}
        missing = sorted(listed - staged)
        extra = sorted(staged - listed)
        if missing:
            raise ManifestError(f"Manifest lists files missing from package: {', '.join(missing[:5])}")
        if extra:
            raise ManifestError(f"Package contains files not in manifest: {', '.join(extra[:5])}")

        logger.info(f"Manifest valid: version {manifest.version}, {len(listed)} file(s)")
        return manifest

    # =========================================================================
    # Apply
    # =========================================================================

    def apply(self, staging: Path, manifest: PackageManifest, live_root: Path) -> int:
        """
        Copy every manifest file into live_root.

        Existing files are overwritten, nothing is deleted. Each file is written
        to a temp name in its destination directory and renamed into place.
        """
        files_root = staging / FILES_DIR
        live_root = Path(live_root)
        applied = 0

        for entry in manifest.files:
            relative = entry.replace('\\', '/')
            source = files_root / relative
            dest = live_root / relative
            tmp = dest.with_name(f".{dest.name}.sparkyfit-tmp")
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, tmp)
                os.replace(tmp, dest)
            except OSError as e:
                try:
                    tmp.unlink()
                except OSError:
                    pass
                raise ApplyError(f"Failed to apply {relative}: {e}") from e
            applied += 1

        logger.info(f"Applied {applied} file(s) to {live_root}")
        return applied

    # =========================================================================
    # Migrations
    # =========================================================================

    def run_pending_migrations(self, staging: Path) -> List[str]:
        """Run the package's migration scripts. Returns the names applied."""
        scripts_dir = staging / MIGRATIONS_DIR
        if not scripts_dir.is_dir():
            return []
        if self.database_path is None:
            raise MigrationError("Package contains migrations but no database is configured")

        try:
            return run_migration_scripts(self.database_path, scripts_dir)
        except MigrationScriptError as e:
            raise MigrationError(str(e)) from e

    # =========================================================================
    # Caches
    # =========================================================================

    def clear_derived_caches(self) -> bool:
        """Empty the cache directories and purge cache keys. Never raises."""
        ok = True

        for cache_dir in self.cache_dirs:
            if not cache_dir.is_dir():
                continue
            for child in cache_dir.iterdir():
                try:
                    if child.is_dir() and not child.is_symlink():
                        shutil.rmtree(child)
                    else:
                        child.unlink()
                except OSError as e:
                    ok = False
                    logger.warning(f"Failed to clear cache entry {child}: {e}")

        if self.redis_client is not None:
            try:
                keys = list(self.redis_client.scan_iter(match=self.cache_key_pattern))
                if keys:
                    self.redis_client.delete(*keys)
                logger.info(f"Cleared {len(keys)} cached key(s)")
            except Exception as e:
                ok = False
                logger.warning(f"Failed to clear redis cache: {e}")

        logger.info("Caches cleared" if ok else "Caches partially cleared")
        return ok

    @staticmethod
    def cleanup(staging: Optional[Path]):
        if staging is not None:
            shutil.rmtree(staging, ignore_errors=True)
