"""
Shared fixtures for the self-update test suite.
"""

import hashlib
import json
import shutil
import sys
import zipfile
from pathlib import Path
from typing import Dict, Optional

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from services.update_backup import DirectoryBackupManager
from services.update_installer import PackageInstaller
from services.update_models import (
    DownloadedArtifact,
    REQUIRED_VERIFICATIONS,
    UpdatePackageInfo,
    compare_versions,
)
from services.update_orchestrator import UpdateOrchestrator
from services.update_progress import MemoryProgressReporter
from services.update_security import calculate_checksum, generate_keypair
from services.update_version import VersionStore


# =============================================================================
# Helpers
# =============================================================================

def make_package(
    path: Path,
    version: str,
    files: Dict[str, bytes],
    migrations: Optional[Dict[str, str]] = None,
    manifest: Optional[dict] = None,
) -> Path:
    """Write an update package zip. `manifest` overrides the generated update.json."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if manifest is None:
        manifest = {"version": version, "files": sorted(files), "description": "test build"}

    with zipfile.ZipFile(path, 'w', zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("update.json", json.dumps(manifest))
        for name, content in files.items():
            zf.writestr(f"files/{name}", content)
        for name, content in (migrations or {}).items():
            zf.writestr(f"migrations/{name}", content)
    return path


def make_encrypted_package(path: Path, version: str) -> Path:
    """A package whose members carry the zip 'encrypted' flag, so zipfile cannot read them."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, 'w', zipfile.ZIP_STORED) as zf:
        zf.writestr("update.json", json.dumps({"version": version, "files": []}))

    data = bytearray(path.read_bytes())
    data[6] |= 0x01  # local file header flag bits
    central = data.find(b"PK\x01\x02")
    data[central + 8] |= 0x01  # central directory flag bits
    path.write_bytes(bytes(data))
    return path


def tree_hash(root: Path) -> str:
    """Content hash of every file (path + bytes) under root."""
    digest = hashlib.sha256()
    for path in sorted(p for p in Path(root).rglob('*') if p.is_file()):
        digest.update(path.relative_to(root).as_posix().encode())
        digest.update(b'\0')
        digest.update(path.read_bytes())
        digest.update(b'\0')
    return digest.hexdigest()


def package_info(package: Path, version: str, url: str = "http://updates.test/pkg.zip") -> UpdatePackageInfo:
    return UpdatePackageInfo(
        version=version,
        download_url=url,
        checksum=calculate_checksum(package),
        size_bytes=package.stat().st_size,
        signature_verified=True,
    )


class FakeFetcher:
    """Stands in for PackageFetcher: serves one local package, no network."""

    def __init__(self, scratch_dir: Path, info=None, package=None, verifications=REQUIRED_VERIFICATIONS):
        self.scratch_dir = Path(scratch_dir)
        self.info = info
        self.package = package
        self.verifications = set(verifications)
        self.check_error = None
        self.download_error = None
        self.gate = None  # asyncio.Event that download() waits on
        self.check_calls = 0
        self.download_calls = 0

    async def check_for_update(self, current_version):
        self.check_calls += 1
        if self.check_error is not None:
            raise self.check_error
        if self.info is None or compare_versions(self.info.version, current_version) <= 0:
            return None
        return self.info

    async def download(self, info, on_progress=None, on_verifying=None):
        self.download_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.download_error is not None:
            raise self.download_error

        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        target = self.scratch_dir / f"update_{info.version}_{self.download_calls}.zip"
        shutil.copy2(self.package, target)
        size = target.stat().st_size
        if on_progress:
            on_progress(size, size)
        if on_verifying:
            on_verifying()

        artifact = DownloadedArtifact(path=target, info=info)
        for state in self.verifications:
            artifact.mark(state)
        return artifact


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def keypair():
    """(private_b64, public_b64) Ed25519 pair."""
    return generate_keypair()


@pytest.fixture
def app_root(tmp_path):
    """A small live installation tree at version 2.0.0."""
    root = tmp_path / "app"
    (root / "src").mkdir(parents=True)
    (root / "src" / "app.py").write_text("VERSION = '2.0.0'\n")
    (root / "src" / "util.py").write_text("def helper():\n    return 1\n")
    (root / "config.ini").write_text("[app]\nname = sparkyfit\n")
    (root / "var" / "cache").mkdir(parents=True)
    (root / "var" / "cache" / "routes.cache").write_text("cached")
    return root


@pytest.fixture
def build_orchestrator(tmp_path, app_root):
    """Factory for an orchestrator with real installer/backup/version store."""

    def _build(fetcher, **kwargs) -> UpdateOrchestrator:
        data_dir = tmp_path / "data"
        scratch_dir = tmp_path / "scratch"
        database_path = kwargs.pop('database_path', data_dir / "sparkyfit.db")

        installer = kwargs.pop('installer', None) or PackageInstaller(
            scratch_dir=scratch_dir,
            database_path=database_path,
            cache_dirs=[app_root / "var" / "cache"],
        )
        backup_manager = kwargs.pop('backup_manager', None) or DirectoryBackupManager(
            app_root=app_root,
            backup_dir=data_dir / "backups",
            database_path=database_path,
        )
        version_store = VersionStore(data_dir / "version.json", default_version="2.0.0")

        return UpdateOrchestrator(
            fetcher=fetcher,
            installer=installer,
            security=kwargs.pop('security', None),
            backup_manager=backup_manager,
            progress=kwargs.pop('progress', None) or MemoryProgressReporter(),
            version_store=version_store,
            app_root=app_root,
            lock_file=data_dir / "update.lock",
            **kwargs,
        )

    return _build


@pytest.fixture
def release(tmp_path):
    """A valid 2.1.0 package plus its UpdatePackageInfo."""
    package = make_package(
        tmp_path / "release" / "sparkyfit-2.1.0.zip",
        "2.1.0",
        {
            "src/app.py": b"VERSION = '2.1.0'\n",
            "src/feature.py": b"def new_feature():\n    return 2\n",
        },
    )
    return package, package_info(package, "2.1.0")
