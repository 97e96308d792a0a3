"""
SparkyFit Version Record

The installed version lives in <data_dir>/version.json and is the only durable
record the update subsystem owns. It is rewritten once per successful cycle.

Also provides the per-installation instance id sent with every update check.
"""

import json
import logging
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

from .update_models import VersionRecord, parse_version

logger = logging.getLogger(__name__)


class VersionStore:
    """Reads and atomically rewrites version.json."""

    def __init__(self, version_file: Path, default_version: str = "1.0.0"):
        self.version_file = Path(version_file)
        self.default_version = default_version

    def load(self) -> VersionRecord:
        """Current record, or the build default when none was written yet."""
        if self.version_file.exists():
            try:
                with open(self.version_file, 'r') as f:
                    data = json.load(f)
                version = str(data['version'])
                parse_version(version)
                return VersionRecord(
                    version=version,
                    updated_at=data.get('updated_at'),
                    previous_version=data.get('previous_version'),
                )
            except (OSError, KeyError, ValueError, TypeError) as e:
                logger.warning(f"Failed to read version file: {e}")

        return VersionRecord(version=self.default_version)

    def current_version(self) -> str:
        return self.load().version

    def save(self, version: str, previous_version: Optional[str] = None) -> VersionRecord:
        """Write a new record (temp file + rename, so readers never see half a file)."""
        record = VersionRecord(
            version=version,
            updated_at=datetime.now().isoformat(),
            previous_version=previous_version,
        )
        self.version_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.version_file.with_name(self.version_file.name + '.tmp')
        with open(tmp, 'w') as f:
            json.dump({
                'version': record.version,
                'updated_at': record.updated_at,
                'previous_version': record.previous_version,
            }, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.version_file)

        logger.info(f"Version record updated: {previous_version} -> {version}")
        return record


def load_instance_id(instance_id_file: Path, configured: str = "") -> str:
    """
    Stable identifier of this installation.

    A configured id wins; otherwise one is generated on first use and
    persisted next to the version record.
    """
    if configured:
        return configured

    path = Path(instance_id_file)
    if path.exists():
        try:
            existing = path.read_text().strip()
            if existing:
                return existing
        except OSError as e:
            logger.warning(f"Failed to read instance id: {e}")

    instance_id = str(uuid.uuid4())
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(instance_id)
        logger.info(f"Generated instance id {instance_id}")
    except OSError as e:
        logger.warning(f"Failed to persist instance id: {e}")
    return instance_id
