"""
SparkyFit Update Settings

All settings come from environment variables (SPARKYFIT_*), with defaults that
let a development checkout run without any configuration.
"""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Mapping


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if not value:
        return default
    return int(value)


@dataclass
class UpdateSettings:
    """Configuration for the self-update subsystem."""
    current_version_default: str = "1.0.0"
    enabled: bool = False
    check_url: str = ""
    platform: str = "sparkyfit-backend"
    license_key: str = ""
    verify_ssl: bool = True

    backup_enabled: bool = True
    rollback_enabled: bool = True
    backup_retention: int = 2

    check_interval: int = 3600  # 1 hour
    auto_download: bool = False
    auto_install: bool = False

    check_timeout: float = 30
    download_timeout: float = 300  # 5 minutes
    backup_timeout: float = 600

    public_key: str = ""
    scan_command: str = ""

    app_root: Path = field(default_factory=Path.cwd)
    data_dir: Path = field(default_factory=lambda: Path('data'))
    scratch_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / 'sparkyfit_updates')
    database_path: Optional[Path] = None
    cache_dirs: List[str] = field(default_factory=lambda: ['var/cache', 'storage/cache'])

    redis_url: str = ""
    progress_ttl: int = 3600
    instance_id: str = ""

    def __post_init__(self):
        self.app_root = Path(self.app_root)
        self.data_dir = Path(self.data_dir)
        self.scratch_dir = Path(self.scratch_dir)
        if self.database_path is None:
            self.database_path = self.data_dir / 'sparkyfit.db'
        self.database_path = Path(self.database_path)

    # =========================================================================
    # Derived paths
    # =========================================================================

    @property
    def backup_dir(self) -> Path:
        return self.data_dir / 'backups'

    @property
    def version_file(self) -> Path:
        return self.data_dir / 'version.json'

    @property
    def instance_id_file(self) -> Path:
        return self.data_dir / 'instance_id'

    @property
    def lock_file(self) -> Path:
        return self.data_dir / 'update.lock'

    def resolved_cache_dirs(self) -> List[Path]:
        """Cache directories; relative entries are resolved against app_root."""
        resolved = []
        for entry in self.cache_dirs:
            path = Path(entry)
            resolved.append(path if path.is_absolute() else self.app_root / path)
        return resolved

    # =========================================================================
    # Loading
    # =========================================================================

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'UpdateSettings':
        """Build settings from environment variables."""
        env = os.environ if env is None else env

        data_dir = Path(env.get('SPARKYFIT_DATA_DIR', 'data'))
        cache_dirs = env.get('SPARKYFIT_CACHE_DIRS', 'var/cache,storage/cache')

        return cls(
            current_version_default=env.get('SPARKYFIT_VERSION', '1.0.0'),
            enabled=_env_bool(env, 'SPARKYFIT_UPDATE_ENABLED', False),
            check_url=env.get('SPARKYFIT_UPDATE_CHECK_URL', ''),
            platform=env.get('SPARKYFIT_UPDATE_PLATFORM', 'sparkyfit-backend'),
            license_key=env.get('SPARKYFIT_LICENSE_KEY', ''),
            verify_ssl=_env_bool(env, 'SPARKYFIT_UPDATE_VERIFY_SSL', True),
            backup_enabled=_env_bool(env, 'SPARKYFIT_UPDATE_BACKUP_ENABLED', True),
            rollback_enabled=_env_bool(env, 'SPARKYFIT_UPDATE_ROLLBACK_ENABLED', True),
            backup_retention=_env_int(env, 'SPARKYFIT_UPDATE_BACKUP_RETENTION', 2),
            check_interval=_env_int(env, 'SPARKYFIT_UPDATE_CHECK_INTERVAL', 3600),
            auto_download=_env_bool(env, 'SPARKYFIT_UPDATE_AUTO_DOWNLOAD', False),
            auto_install=_env_bool(env, 'SPARKYFIT_UPDATE_AUTO_INSTALL', False),
            check_timeout=float(env.get('SPARKYFIT_UPDATE_CHECK_TIMEOUT') or 30),
            download_timeout=float(env.get('SPARKYFIT_UPDATE_DOWNLOAD_TIMEOUT') or 300),
            backup_timeout=float(env.get('SPARKYFIT_UPDATE_BACKUP_TIMEOUT') or 600),
            public_key=env.get('SPARKYFIT_UPDATE_PUBLIC_KEY', ''),
            scan_command=env.get('SPARKYFIT_UPDATE_SCAN_COMMAND', ''),
            app_root=Path(env.get('SPARKYFIT_APP_ROOT') or Path.cwd()),
            data_dir=data_dir,
            scratch_dir=Path(
                env.get('SPARKYFIT_UPDATE_SCRATCH_DIR')
                or Path(tempfile.gettempdir()) / 'sparkyfit_updates'
            ),
            database_path=Path(env['SPARKYFIT_DB_PATH']) if env.get('SPARKYFIT_DB_PATH') else None,
            cache_dirs=[c.strip() for c in cache_dirs.split(',') if c.strip()],
            redis_url=env.get('SPARKYFIT_REDIS_URL', ''),
            progress_ttl=_env_int(env, 'SPARKYFIT_UPDATE_PROGRESS_TTL', 3600),
            instance_id=env.get('SPARKYFIT_INSTANCE_ID', ''),
        )
