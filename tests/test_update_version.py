"""
Version Record and Settings Tests

Usage:
    python -m pytest tests/test_update_version.py -v
"""

import json
from pathlib import Path

import pytest

from config.settings import UpdateSettings
from services.update_models import UpdatePackageInfo, compare_versions, parse_version
from services.update_version import VersionStore, load_instance_id


# =============================================================================
# Version comparison
# =============================================================================

@pytest.mark.parametrize("v1, v2, expected", [
    ("2.1.0", "2.0.0", 1),
    ("2.0.0", "2.1.0", -1),
    ("2.0", "2.0.0", 0),
    ("v2.10.0", "2.9.9", 1),
    ("2.1.0-beta", "2.1.0", 0),
])
def test_compare_versions(v1, v2, expected):
    assert compare_versions(v1, v2) == expected


def test_parse_version_rejects_garbage():
    with pytest.raises(ValueError):
        parse_version("latest")


def test_package_info_rejects_bad_checksum():
    with pytest.raises(ValueError):
        UpdatePackageInfo.from_response(
            {"version": "2.1.0", "download_url": "http://x/pkg.zip", "checksum": "abc"},
            signature_verified=True,
        )


# =============================================================================
# Version store
# =============================================================================

def test_default_version_when_no_record(tmp_path):
    store = VersionStore(tmp_path / "version.json", default_version="1.4.0")
    record = store.load()
    assert record.version == "1.4.0"
    assert record.updated_at is None


def test_save_and_load(tmp_path):
    store = VersionStore(tmp_path / "data" / "version.json")
    store.save("2.1.0", previous_version="2.0.0")

    record = store.load()
    assert record.version == "2.1.0"
    assert record.previous_version == "2.0.0"
    assert record.updated_at is not None
    assert json.loads((tmp_path / "data" / "version.json").read_text())["version"] == "2.1.0"
    assert not (tmp_path / "data" / "version.json.tmp").exists()


def test_corrupt_record_falls_back_to_default(tmp_path):
    path = tmp_path / "version.json"
    path.write_text("{ half written")
    assert VersionStore(path, default_version="2.0.0").current_version() == "2.0.0"


# =============================================================================
# Instance id
# =============================================================================

def test_instance_id_configured_wins(tmp_path):
    assert load_instance_id(tmp_path / "instance_id", configured="site-7") == "site-7"
    assert not (tmp_path / "instance_id").exists()


def test_instance_id_generated_once(tmp_path):
    first = load_instance_id(tmp_path / "instance_id")
    second = load_instance_id(tmp_path / "instance_id")
    assert first == second
    assert len(first) == 36


# =============================================================================
# Settings
# =============================================================================

def test_settings_from_env():
    settings = UpdateSettings.from_env({
        'SPARKYFIT_UPDATE_ENABLED': 'true',
        'SPARKYFIT_UPDATE_CHECK_URL': 'https://updates.example.com/api/check',
        'SPARKYFIT_UPDATE_BACKUP_ENABLED': 'no',
        'SPARKYFIT_UPDATE_CHECK_INTERVAL': '600',
        'SPARKYFIT_DATA_DIR': '/srv/sparkyfit/data',
        'SPARKYFIT_APP_ROOT': '/srv/sparkyfit/app',
        'SPARKYFIT_CACHE_DIRS': 'var/cache, /tmp/views ,',
    })

    assert settings.enabled is True
    assert settings.check_url == 'https://updates.example.com/api/check'
    assert settings.backup_enabled is False
    assert settings.rollback_enabled is True
    assert settings.check_interval == 600
    assert settings.database_path == Path('/srv/sparkyfit/data/sparkyfit.db')
    assert settings.version_file == Path('/srv/sparkyfit/data/version.json')
    assert settings.lock_file == Path('/srv/sparkyfit/data/update.lock')
    assert settings.resolved_cache_dirs() == [Path('/srv/sparkyfit/app/var/cache'), Path('/tmp/views')]


def test_settings_defaults():
    settings = UpdateSettings.from_env({})
    assert settings.enabled is False
    assert settings.verify_ssl is True
    assert settings.backup_retention == 2
    assert settings.progress_ttl == 3600
    assert settings.check_timeout == 30
    assert settings.download_timeout == 300
