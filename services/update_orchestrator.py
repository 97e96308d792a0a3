"""
SparkyFit Update Orchestrator

Drives one update cycle at a time through:

    check -> download (+ verify) -> backup -> install -> migrate -> finalize

Implements:
- Explicit cycle state with compare-and-swap transitions (one active cycle)
- Cross-process install lock (fcntl) on the live tree
- Automatic rollback from the backup for any failure after BackingUp
- Unconditional release of the downloaded artifact and staging directory
- Cancellation of check/download before any filesystem mutation; an install
  cancelled after it started is rolled back before the cancel takes effect
- Version record written only on Completed

Collaborators are injected (fetcher, installer, security verifier, backup
manager, progress reporter, version store) so each can be replaced by a
test double.
"""

import asyncio
import fcntl
import logging
import threading
from pathlib import Path
from typing import Optional, Dict, Any, Set

from .update_backup import BackupManager
from .update_errors import (
    BackupError,
    CancelledUpdateError,
    ConcurrentOperationError,
    InvalidStateError,
    NetworkError,
    RollbackError,
    SecurityError,
    UpdateError,
)
from .update_fetcher import PackageFetcher
from .update_installer import PackageInstaller
from .update_models import (
    BackupHandle,
    CycleState,
    DownloadedArtifact,
    InstallResult,
    UpdatePackageInfo,
    UpdateProgress,
    UpdateStage,
)
from .update_progress import ProgressReporter
from .update_security import SecurityVerifier
from .update_version import VersionStore

logger = logging.getLogger(__name__)

# States in which nothing is in flight
RESTING_STATES = frozenset({CycleState.IDLE, CycleState.AVAILABLE, CycleState.DOWNLOADED})

# States from which cancel() only needs to clean temp files
CANCELLABLE_STATES = frozenset({CycleState.CHECKING, CycleState.DOWNLOADING})

_STATE_TO_STAGE = {
    CycleState.BACKING_UP: UpdateStage.BACKING_UP,
    CycleState.INSTALLING: UpdateStage.INSTALLING,
    CycleState.MIGRATING: UpdateStage.MIGRATING,
}


# =============================================================================
# Install Lock
# =============================================================================

class InstallLock:
    """Exclusive, non-blocking file lock held while the live tree is mutated."""

    def __init__(self, lock_file: Path):
        self.lock_file = Path(lock_file)
        self._fd = None

    def acquire(self):
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        fd = open(self.lock_file, 'w')
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            fd.close()
            raise ConcurrentOperationError("Another process is installing an update") from e
        self._fd = fd

    def release(self):
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            self._fd.close()
            self._fd = None


# =============================================================================
# Orchestrator
# =============================================================================

class UpdateOrchestrator:
    """State machine for the self-update cycle."""

    def __init__(
        self,
        fetcher: PackageFetcher,
        installer: PackageInstaller,
        security: SecurityVerifier,
        backup_manager: BackupManager,
        progress: ProgressReporter,
        version_store: VersionStore,
        app_root: Path,
        lock_file: Optional[Path] = None,
        backup_enabled: bool = True,
        rollback_enabled: bool = True,
        backup_retention: int = 2,
        check_timeout: float = 30,
        download_timeout: float = 300,
        backup_timeout: float = 600,
    ):
        self.fetcher = fetcher
        self.installer = installer
        self.security = security
        self.backup_manager = backup_manager
        self.progress = progress
        self.version_store = version_store
        self.app_root = Path(app_root)
        self.install_lock = InstallLock(lock_file) if lock_file else None

        self.backup_enabled = backup_enabled
        self.rollback_enabled = rollback_enabled
        self.backup_retention = backup_retention
        self.check_timeout = check_timeout
        self.download_timeout = download_timeout
        self.backup_timeout = backup_timeout

        self._state = CycleState.IDLE
        self._state_lock = threading.Lock()
        self._available: Optional[UpdatePackageInfo] = None
        self._artifact: Optional[DownloadedArtifact] = None
        self._task: Optional[asyncio.Future] = None
        self._cancel_requested = False
        self._install_interrupted = False
        self.last_result: Optional[InstallResult] = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def available_update(self) -> Optional[UpdatePackageInfo]:
        return self._available

    @property
    def artifact(self) -> Optional[DownloadedArtifact]:
        return self._artifact

    def _begin(self, allowed: Set[CycleState], target: CycleState, operation: str) -> CycleState:
        """Atomically move from a resting state to target. Returns the previous state."""
        with self._state_lock:
            current = self._state
            if current.is_busy:
                raise ConcurrentOperationError(
                    f"Cannot {operation}: update operation in progress ({current.value})"
                )
            if current not in allowed:
                raise InvalidStateError(f"Cannot {operation} in state {current.value}")
            self._state = target
            self._cancel_requested = False
            return current

    def _set_state(self, state: CycleState):
        with self._state_lock:
            self._state = state

    def _release_artifact(self):
        if self._artifact is not None:
            self._artifact.release()
            self._artifact = None

    async def _run_cancellable(self, coro):
        """Run coro as a task that cancel() can interrupt."""
        if self._cancel_requested:
            coro.close()
            raise CancelledUpdateError("Update cancelled")
        self._task = asyncio.ensure_future(coro)
        try:
            return await self._task
        except asyncio.CancelledError:
            if self._cancel_requested:
                raise CancelledUpdateError("Update cancelled") from None
            raise
        finally:
            self._task = None

    # =========================================================================
    # Check
    # =========================================================================

    async def check_for_updates(self) -> Optional[UpdatePackageInfo]:
        """
        Query the update service.

        Returns the available update (signature verified, newer than the
        installed version) or None. Repeated calls never touch the version record.
        """
        self._begin(RESTING_STATES, CycleState.CHECKING, "check for updates")
        self.progress.reset()
        self.progress.report(UpdateStage.CHECKING, 0, "Checking for updates...")

        # A new check supersedes whatever the previous one found
        self._release_artifact()
        self._available = None

        try:
            current_version = self.version_store.current_version()
            info = await self._run_cancellable(
                self._with_timeout(
                    self.fetcher.check_for_update(current_version),
                    self.check_timeout,
                    NetworkError("Update check timed out", UpdateStage.CHECKING),
                )
            )
        except CancelledUpdateError:
            self._set_state(CycleState.IDLE)
            self.progress.report(UpdateStage.IDLE, 0, "Update check cancelled")
            raise
        except UpdateError as e:
            logger.error(f"Update check failed: {e.message}")
            self._set_state(CycleState.IDLE)
            self.progress.report(UpdateStage.FAILED, 100, f"Update check failed: {e.message}", type(e).__name__)
            raise
        except Exception as e:
            logger.error(f"Update check failed: {e}", exc_info=True)
            self._set_state(CycleState.IDLE)
            self.progress.report(UpdateStage.FAILED, 100, f"Update check failed: {e}", type(e).__name__)
            raise
        except BaseException:
            self._set_state(CycleState.IDLE)
            self.progress.report(UpdateStage.IDLE, 0, "Update check cancelled")
            raise

        if info is None:
            self._set_state(CycleState.IDLE)
            self.progress.report(UpdateStage.IDLE, 100, "No updates available")
            return None

        self._available = info
        self._set_state(CycleState.AVAILABLE)
        self.progress.report(UpdateStage.IDLE, 100, f"Update available: {info.version}")
        logger.info(f"Update available: {info.version} (security={info.is_security_update})")
        return info

    # =========================================================================
    # Download
    # =========================================================================

    async def download_update(self) -> DownloadedArtifact:
        """Download and verify the update found by the last check."""
        with self._state_lock:
            if not self._state.is_busy and self._available is None:
                raise InvalidStateError("No update available. Check for updates first.")
        self._begin({CycleState.AVAILABLE}, CycleState.DOWNLOADING, "download update")

        info = self._available
        self.progress.reset()
        self.progress.report(UpdateStage.DOWNLOADING, 0, f"Downloading version {info.version}...")

        def on_progress(done: int, total: int):
            if total:
                percent = done * 100 // total
                self.progress.report(UpdateStage.DOWNLOADING, percent, f"Downloading... {percent}%")

        def on_verifying():
            self.progress.report(UpdateStage.VERIFYING, 0, "Verifying update...")

        try:
            artifact = await self._run_cancellable(
                self._with_timeout(
                    self.fetcher.download(info, on_progress=on_progress, on_verifying=on_verifying),
                    self.download_timeout,
                    NetworkError("Update download timed out", UpdateStage.DOWNLOADING),
                )
            )
        except CancelledUpdateError:
            self._available = None
            self._set_state(CycleState.IDLE)
            self.progress.report(UpdateStage.IDLE, 0, "Download cancelled")
            raise
        except UpdateError as e:
            logger.error(f"Download failed: {e.message}")
            self._set_state(CycleState.AVAILABLE)
            self.progress.report(UpdateStage.FAILED, 100, f"Download failed: {e.message}", type(e).__name__)
            raise
        except Exception as e:
            logger.error(f"Download failed: {e}", exc_info=True)
            self._set_state(CycleState.AVAILABLE)
            self.progress.report(UpdateStage.FAILED, 100, f"Download failed: {e}", type(e).__name__)
            raise
        except BaseException:
            self._set_state(CycleState.AVAILABLE)
            self.progress.report(UpdateStage.IDLE, 0, "Download cancelled")
            raise

        if not artifact.is_verified:
            artifact.release()
            self._set_state(CycleState.AVAILABLE)
            message = f"Downloaded package not fully verified ({artifact.verification_state.value})"
            self.progress.report(UpdateStage.FAILED, 100, message, "SecurityError")
            raise SecurityError(message, UpdateStage.VERIFYING)

        self._artifact = artifact
        self._set_state(CycleState.DOWNLOADED)
        self.progress.report(UpdateStage.IDLE, 100, f"Update {info.version} downloaded and verified")
        return artifact

    @staticmethod
    async def _with_timeout(coro, timeout: float, error: UpdateError):
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            raise error from None

    # =========================================================================
    # Install
    # =========================================================================

    async def install_update(self) -> InstallResult:
        """
        Back up, apply, migrate and finalize the downloaded update.

        On failure after the backup the installation is restored: the original
        error is re-raised with rolled_back=True, or RollbackError if the
        restore failed as well.
        """
        with self._state_lock:
            if not self._state.is_busy and self._artifact is None:
                raise InvalidStateError("No update downloaded. Download the update first.")
        self._begin({CycleState.DOWNLOADED}, CycleState.BACKING_UP, "install update")

        artifact = self._artifact
        self._install_interrupted = False

        try:
            await self._check_artifact_before_install(artifact)
            if self.install_lock is not None:
                self.install_lock.acquire()
        except ConcurrentOperationError:
            self._set_state(CycleState.DOWNLOADED)
            raise
        except BaseException as e:
            # Nothing was mutated yet; the artifact is not trusted any more
            self._release_artifact()
            self._available = None
            self._set_state(CycleState.IDLE)
            if isinstance(e, asyncio.CancelledError):
                self.progress.report(UpdateStage.IDLE, 0, "Install cancelled")
            else:
                message = e.message if isinstance(e, UpdateError) else f"Pre-install check failed: {e}"
                logger.error(message)
                self.progress.report(UpdateStage.FAILED, 100, message, type(e).__name__)
            raise

        # From here on the live tree may change: a caller cancelling us must
        # not cut the cycle short, so the body runs to success or rollback
        body = asyncio.ensure_future(self._install_from_backup(artifact))
        try:
            return await asyncio.shield(body)
        except asyncio.CancelledError:
            if body.done():
                raise
            self._install_interrupted = True
            logger.warning("Install cancelled after it started; rolling back before stopping")
            while not body.done():
                try:
                    await asyncio.shield(body)
                except asyncio.CancelledError:
                    continue
                except Exception:
                    break
            raise

    async def _check_artifact_before_install(self, artifact: DownloadedArtifact):
        if not artifact.is_verified:
            raise SecurityError(
                f"Refusing to install unverified package ({artifact.verification_state.value})",
                UpdateStage.VERIFYING,
            )
        if self.security is not None:
            # The artifact sat on disk since download; scan it again before use
            if not await asyncio.to_thread(self.security.scan_artifact, artifact.path):
                raise SecurityError("Downloaded package failed the pre-install scan", UpdateStage.VERIFYING)

    def _checkpoint(self, stage: UpdateStage):
        if self._install_interrupted:
            raise CancelledUpdateError("Update cancelled during installation", stage)

    async def _install_from_backup(self, artifact: DownloadedArtifact) -> InstallResult:
        info = artifact.info
        backup_handle: Optional[BackupHandle] = None
        staging: Optional[Path] = None
        previous_version = self.version_store.current_version()
        self.progress.reset()

        try:
            try:
                backup_handle = await self._create_backup()
                self._checkpoint(UpdateStage.BACKING_UP)

                self._set_state(CycleState.INSTALLING)
                self.progress.report(UpdateStage.INSTALLING, 30, "Extracting update...")
                staging = await asyncio.to_thread(self.installer.extract, artifact.path)

                self.progress.report(UpdateStage.INSTALLING, 50, "Validating package...")
                manifest = self.installer.validate_manifest(staging, info.version)
                self._checkpoint(UpdateStage.INSTALLING)

                self.progress.report(UpdateStage.INSTALLING, 70, "Installing files...")
                files_applied = await asyncio.to_thread(
                    self.installer.apply, staging, manifest, self.app_root
                )
                self._checkpoint(UpdateStage.INSTALLING)

                self._set_state(CycleState.MIGRATING)
                self.progress.report(UpdateStage.MIGRATING, 85, "Running migrations...")
                migrations = await asyncio.to_thread(self.installer.run_pending_migrations, staging)
                self._checkpoint(UpdateStage.MIGRATING)

                self.progress.report(UpdateStage.MIGRATING, 95, "Clearing caches...")
                self.installer.clear_derived_caches()

                self.version_store.save(info.version, previous_version)

            except BackupError as e:
                # Nothing was mutated yet
                logger.error(f"Backup failed, update aborted: {e.message}")
                self.progress.report(UpdateStage.FAILED, 100, f"Update failed: {e.message}", "BackupError")
                raise
            except Exception as e:
                await self._recover(e, backup_handle)

            self.progress.report(UpdateStage.COMPLETED, 100, f"Update to version {info.version} completed")
            logger.info(f"Update completed: {previous_version} -> {info.version}")

            if backup_handle is not None:
                self.backup_manager.discard_backup(backup_handle, self.backup_retention)

            result = InstallResult(
                success=True,
                stage=UpdateStage.COMPLETED,
                version=info.version,
                previous_version=previous_version,
                backup_id=backup_handle.backup_id if backup_handle else None,
                migrations_applied=migrations,
                files_applied=files_applied,
                message=f"Updated to version {info.version}",
            )
            self.last_result = result
            return result

        finally:
            self.installer.cleanup(staging)
            self._release_artifact()
            self._available = None
            self._set_state(CycleState.IDLE)
            if self.install_lock is not None:
                self.install_lock.release()

    async def _create_backup(self) -> Optional[BackupHandle]:
        if not self.backup_enabled:
            logger.warning("Backups disabled; installing without a restore point")
            self.progress.report(UpdateStage.BACKING_UP, 10, "Backups disabled, skipping")
            return None

        self.progress.report(UpdateStage.BACKING_UP, 10, "Creating backup...")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.backup_manager.create_backup),
                timeout=self.backup_timeout,
            )
        except asyncio.TimeoutError:
            raise BackupError("Backup timed out") from None

    async def _recover(self, error: Exception, backup_handle: Optional[BackupHandle]):
        """Restore the backup if possible, publish the terminal stage and raise."""
        if not isinstance(error, UpdateError):
            stage = _STATE_TO_STAGE.get(self._state, UpdateStage.INSTALLING)
            wrapped = UpdateError(f"Unexpected error during update: {error}", stage)
            wrapped.__cause__ = error
            error = wrapped

        logger.error(f"Update failed at {error.stage.value if error.stage else 'unknown'}: {error.message}")
        detail = type(error).__name__

        if backup_handle is None or not self.rollback_enabled:
            if backup_handle is not None:
                logger.warning(f"Rollback disabled; backup {backup_handle.backup_id} left for manual restore")
            self.progress.report(UpdateStage.FAILED, 100, f"Update failed: {error.message}", detail)
            raise error

        # Stay in the failing step's stage until the restore outcome is known
        failing_stage = _STATE_TO_STAGE.get(self._state, UpdateStage.INSTALLING)
        self._set_state(CycleState.ROLLING_BACK)
        self.progress.report(failing_stage, 0, f"Update failed, restoring backup: {error.message}", detail)

        restore_error: Optional[BaseException] = None
        try:
            restored = await asyncio.to_thread(self.backup_manager.restore_backup, backup_handle)
        except Exception as e:
            restored = False
            restore_error = e

        if restored:
            error.rolled_back = True
            logger.info(f"Rolled back to backup {backup_handle.backup_id}")
            self.progress.report(
                UpdateStage.ROLLED_BACK, 100, f"Update failed and was rolled back: {error.message}", detail
            )
            raise error

        logger.critical(
            f"Rollback from backup {backup_handle.backup_id} failed; manual intervention required"
        )
        self.progress.report(
            UpdateStage.FAILED,
            100,
            "Update failed and rollback failed; manual intervention required",
            f"{detail}: {error.message}; restore: {restore_error or 'restore_backup returned False'}",
        )
        raise RollbackError(
            f"Rollback failed after: {error.message}",
            original_error=error,
            restore_error=restore_error,
            backup_id=backup_handle.backup_id,
        ) from error

    # =========================================================================
    # Cancel / Observe
    # =========================================================================

    def cancel(self) -> bool:
        """
        Cancel before any filesystem mutation.

        An in-flight check/download is interrupted; a pending update or
        downloaded artifact is discarded. Refused from BackingUp onward.
        """
        with self._state_lock:
            state = self._state
            if state in CANCELLABLE_STATES:
                self._cancel_requested = True
                task = self._task
            elif state in RESTING_STATES:
                task = None
            else:
                raise InvalidStateError(f"Cannot cancel once installation has started ({state.value})")

        if state in CANCELLABLE_STATES:
            logger.info(f"Cancelling update operation ({state.value})")
            if task is not None:
                task.cancel()
            return True

        if state == CycleState.IDLE and self._available is None:
            return False

        self._release_artifact()
        self._available = None
        self._set_state(CycleState.IDLE)
        self.progress.report(UpdateStage.IDLE, 0, "Update cancelled")
        logger.info("Pending update discarded")
        return True

    def get_progress(self) -> UpdateProgress:
        return self.progress.get()

    def status(self) -> Dict[str, Any]:
        """Snapshot for the status endpoint."""
        record = self.version_store.load()
        return {
            "state": self._state.value,
            "current_version": record.version,
            "updated_at": record.updated_at,
            "available_update": self._available.to_dict() if self._available else None,
            "artifact": self._artifact.to_dict() if self._artifact else None,
            "backup_enabled": self.backup_enabled,
            "rollback_enabled": self.rollback_enabled,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "progress": self.progress.get().to_dict(),
        }
