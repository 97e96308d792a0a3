"""
Update Orchestrator Tests

State machine, rollback and concurrency behaviour of the self-update cycle.

Usage:
    python -m pytest tests/test_update_orchestrator.py -v
"""

import asyncio
import fcntl
import json
import sqlite3
import threading
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeFetcher, make_package, package_info, tree_hash
from services.update_backup import DirectoryBackupManager
from services.update_errors import (
    ApplyError,
    BackupError,
    CancelledUpdateError,
    ChecksumError,
    ConcurrentOperationError,
    InvalidStateError,
    ManifestError,
    MigrationError,
    NetworkError,
    RollbackError,
    SecurityError,
)
from services.update_installer import PackageInstaller
from services.update_models import CycleState, UpdateStage, VerificationState
from services.update_orchestrator import InstallLock
from services.update_progress import MemoryProgressReporter


def run(coro):
    return asyncio.run(coro)


def assert_monotonic(progress: MemoryProgressReporter):
    """Percent never decreases between consecutive reports of the same stage."""
    history = list(progress.history)
    for before, after in zip(history, history[1:]):
        if before.stage == after.stage:
            assert after.percent >= before.percent, f"{before.stage}: {before.percent} -> {after.percent}"


# =============================================================================
# Check
# =============================================================================

def test_check_returns_newer_release(tmp_path, build_orchestrator, release):
    """2.0.0 installed, service offers 2.1.0 -> info returned."""
    package, info = release
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package))

    found = run(orchestrator.check_for_updates())

    assert found is not None
    assert found.version == "2.1.0"
    assert orchestrator.state == CycleState.AVAILABLE
    assert orchestrator.get_progress().stage == UpdateStage.IDLE


def test_check_without_update_is_idempotent(tmp_path, build_orchestrator):
    fetcher = FakeFetcher(tmp_path / "scratch")
    orchestrator = build_orchestrator(fetcher)
    version_file = tmp_path / "data" / "version.json"

    for _ in range(3):
        assert run(orchestrator.check_for_updates()) is None
        assert orchestrator.state == CycleState.IDLE

    assert fetcher.check_calls == 3
    assert not version_file.exists(), "check must never write the version record"
    assert orchestrator.version_store.current_version() == "2.0.0"


def test_check_failure_reports_failed_and_returns_to_idle(tmp_path, build_orchestrator):
    fetcher = FakeFetcher(tmp_path / "scratch")
    fetcher.check_error = SecurityError("Update response signature verification failed")
    orchestrator = build_orchestrator(fetcher)

    with pytest.raises(SecurityError):
        run(orchestrator.check_for_updates())

    progress = orchestrator.get_progress()
    assert progress.stage == UpdateStage.FAILED
    assert progress.error_detail == "SecurityError"
    assert orchestrator.state == CycleState.IDLE
    assert orchestrator.available_update is None


def test_check_timeout_is_network_error(tmp_path, build_orchestrator):
    class SlowFetcher(FakeFetcher):
        async def check_for_update(self, current_version):
            await asyncio.sleep(5)

    orchestrator = build_orchestrator(SlowFetcher(tmp_path / "scratch"), check_timeout=0.05)

    with pytest.raises(NetworkError):
        run(orchestrator.check_for_updates())
    assert orchestrator.state == CycleState.IDLE


# =============================================================================
# Download
# =============================================================================

def test_download_requires_prior_check(tmp_path, build_orchestrator, release):
    package, info = release
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package))

    with pytest.raises(InvalidStateError):
        run(orchestrator.download_update())


def test_download_checksum_failure(tmp_path, build_orchestrator, release):
    """Checksum mismatch -> ChecksumError, stage Failed, pending update kept for retry."""
    package, info = release
    fetcher = FakeFetcher(tmp_path / "scratch", info, package)
    fetcher.download_error = ChecksumError("Update file checksum verification failed")
    orchestrator = build_orchestrator(fetcher)

    run(orchestrator.check_for_updates())
    with pytest.raises(ChecksumError):
        run(orchestrator.download_update())

    assert orchestrator.get_progress().stage == UpdateStage.FAILED
    assert orchestrator.state == CycleState.AVAILABLE
    assert orchestrator.artifact is None


def test_download_rejects_partially_verified_artifact(tmp_path, build_orchestrator, release):
    package, info = release
    fetcher = FakeFetcher(
        tmp_path / "scratch", info, package,
        verifications={VerificationState.CHECKSUM_OK, VerificationState.SIGNATURE_OK},
    )
    orchestrator = build_orchestrator(fetcher)

    run(orchestrator.check_for_updates())
    with pytest.raises(SecurityError):
        run(orchestrator.download_update())

    assert orchestrator.artifact is None
    assert not list((tmp_path / "scratch").glob("update_*.zip")), "unverified file must be deleted"


def test_second_download_while_downloading_is_rejected(tmp_path, build_orchestrator, release):
    package, info = release
    fetcher = FakeFetcher(tmp_path / "scratch", info, package)
    orchestrator = build_orchestrator(fetcher)

    async def scenario():
        await orchestrator.check_for_updates()
        fetcher.gate = asyncio.Event()
        first = asyncio.create_task(orchestrator.download_update())
        await asyncio.sleep(0)
        assert orchestrator.state == CycleState.DOWNLOADING

        with pytest.raises(ConcurrentOperationError):
            await orchestrator.download_update()
        with pytest.raises(ConcurrentOperationError):
            await orchestrator.check_for_updates()

        fetcher.gate.set()
        return await first

    artifact = run(scenario())
    assert fetcher.download_calls == 1
    assert artifact.is_verified
    assert orchestrator.state == CycleState.DOWNLOADED


def test_cancel_during_download(tmp_path, build_orchestrator, release):
    package, info = release
    fetcher = FakeFetcher(tmp_path / "scratch", info, package)
    orchestrator = build_orchestrator(fetcher)

    async def scenario():
        await orchestrator.check_for_updates()
        fetcher.gate = asyncio.Event()
        task = asyncio.create_task(orchestrator.download_update())
        await asyncio.sleep(0)
        assert orchestrator.cancel() is True
        with pytest.raises(CancelledUpdateError):
            await task

    run(scenario())
    assert orchestrator.state == CycleState.IDLE
    assert orchestrator.available_update is None
    assert "cancelled" in orchestrator.get_progress().message.lower()


def test_cancel_discards_downloaded_artifact(tmp_path, build_orchestrator, release):
    package, info = release
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package))

    run(orchestrator.check_for_updates())
    artifact = run(orchestrator.download_update())
    assert artifact.path.exists()

    assert orchestrator.cancel() is True
    assert not artifact.path.exists()
    assert orchestrator.state == CycleState.IDLE
    assert orchestrator.cancel() is False


# =============================================================================
# Install: success
# =============================================================================

def test_full_cycle_completes(tmp_path, app_root, build_orchestrator):
    package = make_package(
        tmp_path / "release" / "sparkyfit-2.1.0.zip",
        "2.1.0",
        {"src/app.py": b"VERSION = '2.1.0'\n", "src/new/feature.py": b"X = 1\n"},
        migrations={
            "001_create_workouts.sql": "CREATE TABLE workouts (id INTEGER PRIMARY KEY, name TEXT);",
            "002_seed_workouts.sql": "INSERT INTO workouts (name) VALUES ('squat');",
        },
    )
    info = package_info(package, "2.1.0")
    progress = MemoryProgressReporter()
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package), progress=progress)

    run(orchestrator.check_for_updates())
    artifact = run(orchestrator.download_update())
    result = run(orchestrator.install_update())

    assert result.success
    assert result.stage == UpdateStage.COMPLETED
    assert result.version == "2.1.0"
    assert result.previous_version == "2.0.0"
    assert result.files_applied == 2
    assert result.migrations_applied == ["001_create_workouts.sql", "002_seed_workouts.sql"]

    # Files applied, untouched files kept (additive only)
    assert (app_root / "src" / "app.py").read_text() == "VERSION = '2.1.0'\n"
    assert (app_root / "src" / "new" / "feature.py").exists()
    assert (app_root / "src" / "util.py").exists()
    assert (app_root / "config.ini").exists()

    # Caches cleared
    assert list((app_root / "var" / "cache").iterdir()) == []

    # Migrations ran
    conn = sqlite3.connect(tmp_path / "data" / "sparkyfit.db")
    assert conn.execute("SELECT name FROM workouts").fetchall() == [("squat",)]
    conn.close()

    # Version record
    record = json.loads((tmp_path / "data" / "version.json").read_text())
    assert record["version"] == "2.1.0"
    assert record["previous_version"] == "2.0.0"

    # Temp files purged
    assert not artifact.path.exists()
    assert not list((tmp_path / "scratch").glob("staging_*"))

    assert orchestrator.state == CycleState.IDLE
    assert orchestrator.get_progress().stage == UpdateStage.COMPLETED
    assert progress.stages()[-4:] == [
        UpdateStage.BACKING_UP, UpdateStage.INSTALLING, UpdateStage.MIGRATING, UpdateStage.COMPLETED
    ]
    assert_monotonic(progress)

    # Next check sees 2.1.0 installed and nothing newer
    assert run(orchestrator.check_for_updates()) is None


def test_install_requires_download(tmp_path, build_orchestrator, release):
    package, info = release
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package))
    run(orchestrator.check_for_updates())

    with pytest.raises(InvalidStateError):
        run(orchestrator.install_update())
    assert orchestrator.state == CycleState.AVAILABLE


def test_backup_retention_zero_discards_cycle_backup(tmp_path, build_orchestrator, release):
    package, info = release
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package), backup_retention=0)

    run(orchestrator.check_for_updates())
    run(orchestrator.download_update())
    result = run(orchestrator.install_update())

    assert result.backup_id is not None
    assert not (tmp_path / "data" / "backups" / result.backup_id).exists()


# =============================================================================
# Install: verification gate and backup ordering
# =============================================================================

def test_install_never_proceeds_with_unverified_artifact(tmp_path, build_orchestrator, release):
    package, info = release
    progress = MemoryProgressReporter()
    backup_manager = MagicMock()
    orchestrator = build_orchestrator(
        FakeFetcher(tmp_path / "scratch", info, package),
        progress=progress,
        backup_manager=backup_manager,
    )
    run(orchestrator.check_for_updates())
    artifact = run(orchestrator.download_update())

    # Tamper with the recorded verification state after download
    artifact.verifications.discard(VerificationState.SCAN_OK)

    with pytest.raises(SecurityError):
        run(orchestrator.install_update())

    backup_manager.create_backup.assert_not_called()
    assert UpdateStage.INSTALLING not in progress.stages()
    assert not artifact.path.exists()
    assert orchestrator.state == CycleState.IDLE


def test_artifact_rescanned_before_install(tmp_path, app_root, build_orchestrator, release):
    package, info = release
    security = MagicMock()
    security.scan_artifact.return_value = False
    backup_manager = MagicMock()
    before = tree_hash(app_root)
    orchestrator = build_orchestrator(
        FakeFetcher(tmp_path / "scratch", info, package),
        security=security,
        backup_manager=backup_manager,
    )
    run(orchestrator.check_for_updates())
    artifact = run(orchestrator.download_update())

    with pytest.raises(SecurityError):
        run(orchestrator.install_update())

    security.scan_artifact.assert_called_once_with(artifact.path)
    backup_manager.create_backup.assert_not_called()
    assert not artifact.path.exists()
    assert tree_hash(app_root) == before


def test_backup_taken_before_any_mutation(tmp_path, app_root, build_orchestrator, release):
    package, info = release
    before = tree_hash(app_root)
    seen = {}

    real = DirectoryBackupManager(app_root, tmp_path / "data" / "backups")

    def create_backup():
        seen["hash_at_backup"] = tree_hash(app_root)
        return real.create_backup()

    backup_manager = MagicMock(wraps=real)
    backup_manager.create_backup.side_effect = create_backup
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package),
                                      backup_manager=backup_manager)

    run(orchestrator.check_for_updates())
    run(orchestrator.download_update())
    run(orchestrator.install_update())

    assert seen["hash_at_backup"] == before
    assert tree_hash(app_root) != before


def test_backup_failure_aborts_without_mutation(tmp_path, app_root, build_orchestrator, release):
    package, info = release
    before = tree_hash(app_root)
    backup_manager = MagicMock()
    backup_manager.create_backup.side_effect = BackupError("disk full")
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package),
                                      backup_manager=backup_manager)

    run(orchestrator.check_for_updates())
    run(orchestrator.download_update())
    with pytest.raises(BackupError):
        run(orchestrator.install_update())

    backup_manager.restore_backup.assert_not_called()
    assert tree_hash(app_root) == before
    assert orchestrator.get_progress().stage == UpdateStage.FAILED
    assert orchestrator.state == CycleState.IDLE


def test_install_blocked_by_other_process_lock(tmp_path, build_orchestrator, release):
    package, info = release
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package))
    run(orchestrator.check_for_updates())
    run(orchestrator.download_update())

    lock_path = tmp_path / "data" / "update.lock"
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, 'w') as holder:
        fcntl.flock(holder, fcntl.LOCK_EX | fcntl.LOCK_NB)
        with pytest.raises(ConcurrentOperationError):
            run(orchestrator.install_update())
        fcntl.flock(holder, fcntl.LOCK_UN)

    # Nothing lost: the downloaded update can still be installed
    assert orchestrator.state == CycleState.DOWNLOADED
    assert run(orchestrator.install_update()).success


def test_cancel_refused_once_backing_up(tmp_path, app_root, build_orchestrator, release):
    package, info = release
    real = DirectoryBackupManager(app_root, tmp_path / "data" / "backups")
    holder = {}

    def create_backup():
        with pytest.raises(InvalidStateError):
            holder["orchestrator"].cancel()
        return real.create_backup()

    backup_manager = MagicMock(wraps=real)
    backup_manager.create_backup.side_effect = create_backup
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package),
                                      backup_manager=backup_manager)
    holder["orchestrator"] = orchestrator

    run(orchestrator.check_for_updates())
    run(orchestrator.download_update())
    assert run(orchestrator.install_update()).success
    backup_manager.create_backup.assert_called_once()


# =============================================================================
# Install: failures and rollback
# =============================================================================

def test_migration_failure_rolls_back(tmp_path, app_root, build_orchestrator):
    """Apply succeeds, migration fails, backup present -> RolledBack, tree unchanged."""
    package = make_package(
        tmp_path / "release" / "sparkyfit-2.1.0.zip",
        "2.1.0",
        {"src/app.py": b"VERSION = '2.1.0'\n", "src/extra.py": b"pass\n"},
        migrations={"001_broken.sql": "CREATE TABLE broken (id INTEGER PRIMARY KEY;"},
    )
    info = package_info(package, "2.1.0")
    progress = MemoryProgressReporter()
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package), progress=progress)
    before = tree_hash(app_root)

    run(orchestrator.check_for_updates())
    artifact = run(orchestrator.download_update())
    with pytest.raises(MigrationError) as exc_info:
        run(orchestrator.install_update())

    assert exc_info.value.rolled_back is True
    assert tree_hash(app_root) == before
    assert orchestrator.get_progress().stage == UpdateStage.ROLLED_BACK
    assert orchestrator.version_store.current_version() == "2.0.0"
    assert not (tmp_path / "data" / "version.json").exists()
    assert not artifact.path.exists()
    assert orchestrator.state == CycleState.IDLE
    assert_monotonic(progress)

    # The restore is announced under the failing step, not as a failure
    assert UpdateStage.FAILED not in progress.stages()
    restoring = [p for p in progress.history if "restoring backup" in p.message]
    assert [p.stage for p in restoring] == [UpdateStage.MIGRATING]


def test_apply_failure_without_backup_fails_directly(tmp_path, app_root, build_orchestrator):
    """Backups disabled, apply fails -> Failed, no restore, ApplyError surfaced."""
    # var/cache is a directory in the live tree; a file cannot replace it
    package = make_package(tmp_path / "release" / "bad.zip", "2.1.0", {"var/cache": b"not a dir"})
    info = package_info(package, "2.1.0")
    backup_manager = MagicMock()
    orchestrator = build_orchestrator(
        FakeFetcher(tmp_path / "scratch", info, package),
        backup_manager=backup_manager,
        backup_enabled=False,
    )

    run(orchestrator.check_for_updates())
    run(orchestrator.download_update())
    with pytest.raises(ApplyError) as exc_info:
        run(orchestrator.install_update())

    assert exc_info.value.rolled_back is False
    backup_manager.create_backup.assert_not_called()
    backup_manager.restore_backup.assert_not_called()
    progress = orchestrator.get_progress()
    assert progress.stage == UpdateStage.FAILED
    assert progress.error_detail == "ApplyError"


@pytest.mark.parametrize("failure_point", [
    "extract", "validate_manifest", "apply", "run_pending_migrations", "version_record",
])
def test_failure_anywhere_after_backup_restores_tree(tmp_path, app_root, build_orchestrator, release, failure_point):
    package, info = release
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package))
    installer = orchestrator.installer
    before = tree_hash(app_root)

    real_apply = installer.apply

    def apply_then_fail(staging, manifest, live_root):
        real_apply(staging, manifest, live_root)
        raise ApplyError("disk went away")

    failures = {
        "extract": patch.object(installer, "extract", side_effect=OSError("scratch unreadable")),
        "validate_manifest": patch.object(installer, "validate_manifest",
                                          side_effect=ManifestError("bad manifest")),
        "apply": patch.object(installer, "apply", side_effect=apply_then_fail),
        "run_pending_migrations": patch.object(installer, "run_pending_migrations",
                                               side_effect=MigrationError("boom")),
        "version_record": patch.object(orchestrator.version_store, "save",
                                       side_effect=OSError("read-only filesystem")),
    }

    run(orchestrator.check_for_updates())
    run(orchestrator.download_update())
    with failures[failure_point]:
        with pytest.raises(Exception) as exc_info:
            run(orchestrator.install_update())

    assert getattr(exc_info.value, "rolled_back", False) is True
    assert tree_hash(app_root) == before
    assert orchestrator.get_progress().stage == UpdateStage.ROLLED_BACK
    assert orchestrator.version_store.current_version() == "2.0.0"


def test_failed_restore_ends_in_failed_with_both_errors(tmp_path, app_root, build_orchestrator):
    package = make_package(
        tmp_path / "release" / "sparkyfit-2.1.0.zip",
        "2.1.0",
        {"src/app.py": b"VERSION = '2.1.0'\n"},
        migrations={"001_broken.sql": "THIS IS NOT SQL;"},
    )
    info = package_info(package, "2.1.0")
    real = DirectoryBackupManager(app_root, tmp_path / "data" / "backups")
    backup_manager = MagicMock(wraps=real)
    backup_manager.restore_backup.side_effect = OSError("backup volume offline")
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package),
                                      backup_manager=backup_manager)

    run(orchestrator.check_for_updates())
    run(orchestrator.download_update())
    with pytest.raises(RollbackError) as exc_info:
        run(orchestrator.install_update())

    error = exc_info.value
    assert isinstance(error.original_error, MigrationError)
    assert isinstance(error.restore_error, OSError)
    assert error.backup_id is not None
    assert (tmp_path / "data" / "backups" / error.backup_id).exists(), "backup kept for manual restore"

    progress = orchestrator.get_progress()
    assert progress.stage == UpdateStage.FAILED
    assert "manual intervention" in progress.message
    assert orchestrator.state == CycleState.IDLE


def test_rollback_disabled_keeps_backup_and_fails(tmp_path, app_root, build_orchestrator):
    package = make_package(
        tmp_path / "release" / "sparkyfit-2.1.0.zip",
        "2.1.0",
        {"src/app.py": b"VERSION = '2.1.0'\n"},
        manifest={"version": "2.2.0", "files": ["src/app.py"]},
    )
    info = package_info(package, "2.1.0")
    backup_manager = MagicMock(wraps=DirectoryBackupManager(app_root, tmp_path / "data" / "backups"))
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package),
                                      backup_manager=backup_manager,
                                      rollback_enabled=False)

    run(orchestrator.check_for_updates())
    run(orchestrator.download_update())
    with pytest.raises(ManifestError):
        run(orchestrator.install_update())

    backup_manager.create_backup.assert_called_once()
    backup_manager.restore_backup.assert_not_called()
    assert orchestrator.get_progress().stage == UpdateStage.FAILED


def test_status_snapshot(tmp_path, build_orchestrator, release):
    package, info = release
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package))
    run(orchestrator.check_for_updates())

    status = orchestrator.status()
    assert status["state"] == "available"
    assert status["current_version"] == "2.0.0"
    assert status["available_update"]["version"] == "2.1.0"
    assert status["artifact"] is None


# =============================================================================
# Unexpected errors and interruption
# =============================================================================

def test_unexpected_check_error_reports_failed(tmp_path, build_orchestrator):
    fetcher = FakeFetcher(tmp_path / "scratch")
    fetcher.check_error = RuntimeError("boom")
    orchestrator = build_orchestrator(fetcher)

    with pytest.raises(RuntimeError):
        run(orchestrator.check_for_updates())

    progress = orchestrator.get_progress()
    assert progress.stage == UpdateStage.FAILED
    assert progress.error_detail == "RuntimeError"
    assert orchestrator.state == CycleState.IDLE


def test_unexpected_download_error_keeps_update_available(tmp_path, build_orchestrator, release):
    package, info = release
    fetcher = FakeFetcher(tmp_path / "scratch", info, package)
    orchestrator = build_orchestrator(fetcher)
    run(orchestrator.check_for_updates())

    fetcher.download_error = RuntimeError("disk went away")
    with pytest.raises(RuntimeError):
        run(orchestrator.download_update())

    assert orchestrator.get_progress().stage == UpdateStage.FAILED
    assert orchestrator.get_progress().error_detail == "RuntimeError"
    assert orchestrator.state == CycleState.AVAILABLE

    # The update can still be fetched
    fetcher.download_error = None
    assert run(orchestrator.download_update()).is_verified


def test_pre_install_scan_crash_leaves_cycle_usable(tmp_path, app_root, build_orchestrator, release):
    package, info = release
    security = MagicMock()
    security.scan_artifact.side_effect = OSError("scanner unavailable")
    backup_manager = MagicMock()
    before = tree_hash(app_root)
    orchestrator = build_orchestrator(
        FakeFetcher(tmp_path / "scratch", info, package),
        security=security,
        backup_manager=backup_manager,
    )
    run(orchestrator.check_for_updates())
    artifact = run(orchestrator.download_update())

    with pytest.raises(OSError):
        run(orchestrator.install_update())

    backup_manager.create_backup.assert_not_called()
    assert not artifact.path.exists()
    assert tree_hash(app_root) == before
    assert orchestrator.get_progress().stage == UpdateStage.FAILED
    assert orchestrator.get_progress().error_detail == "OSError"
    assert orchestrator.state == CycleState.IDLE

    # Not stuck in BackingUp: the next cycle starts normally
    assert run(orchestrator.check_for_updates()) == info
    assert orchestrator.state == CycleState.AVAILABLE


def test_lock_error_before_install_returns_to_idle(tmp_path, build_orchestrator, release):
    package, info = release
    orchestrator = build_orchestrator(FakeFetcher(tmp_path / "scratch", info, package))
    run(orchestrator.check_for_updates())
    artifact = run(orchestrator.download_update())

    with patch.object(InstallLock, "acquire", side_effect=PermissionError("lock dir read-only")):
        with pytest.raises(PermissionError):
            run(orchestrator.install_update())

    assert not artifact.path.exists()
    assert orchestrator.get_progress().stage == UpdateStage.FAILED
    assert orchestrator.state == CycleState.IDLE


class PausingInstaller(PackageInstaller):
    """Applies files, then holds the worker thread until told to go on."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.applied = threading.Event()
        self.proceed = threading.Event()

    def apply(self, staging, manifest, live_root):
        count = super().apply(staging, manifest, live_root)
        self.applied.set()
        self.proceed.wait(5)
        return count


def test_cancelled_install_is_rolled_back(tmp_path, app_root, build_orchestrator, release):
    package, info = release
    installer = PausingInstaller(
        scratch_dir=tmp_path / "scratch",
        database_path=tmp_path / "data" / "sparkyfit.db",
        cache_dirs=[app_root / "var" / "cache"],
    )
    progress = MemoryProgressReporter()
    orchestrator = build_orchestrator(
        FakeFetcher(tmp_path / "scratch", info, package),
        installer=installer,
        progress=progress,
    )
    before = tree_hash(app_root)
    run(orchestrator.check_for_updates())
    artifact = run(orchestrator.download_update())

    async def scenario():
        task = asyncio.ensure_future(orchestrator.install_update())
        assert await asyncio.to_thread(installer.applied.wait, 5)

        task.cancel()
        await asyncio.sleep(0.05)
        # The worker is still writing; the cycle must not look finished yet
        assert not task.done()
        assert orchestrator.state == CycleState.INSTALLING

        installer.proceed.set()
        with pytest.raises(asyncio.CancelledError):
            await task

    run(scenario())

    assert tree_hash(app_root) == before
    assert orchestrator.get_progress().stage == UpdateStage.ROLLED_BACK
    assert orchestrator.get_progress().error_detail == "CancelledUpdateError"
    assert orchestrator.version_store.current_version() == "2.0.0"
    assert orchestrator.state == CycleState.IDLE
    assert not artifact.path.exists()
    assert UpdateStage.MIGRATING not in progress.stages()

    # The install lock was released after the rollback
    lock = InstallLock(tmp_path / "data" / "update.lock")
    lock.acquire()
    lock.release()
