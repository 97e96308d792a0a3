"""
SparkyFit Self-Update Data Models

Implements:
- Update stages (progress vocabulary) and orchestrator cycle states
- UpdatePackageInfo parsed from the remote check response
- DownloadedArtifact with its verification state
- PackageManifest (update.json inside a package)
- Version record and install result
"""

import re
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any, Set

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class UpdateStage(Enum):
    """Stage published through the progress reporter."""
    IDLE = "idle"
    CHECKING = "checking"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    BACKING_UP = "backing_up"
    INSTALLING = "installing"
    MIGRATING = "migrating"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in (UpdateStage.COMPLETED, UpdateStage.FAILED, UpdateStage.ROLLED_BACK)


class CycleState(Enum):
    """Orchestrator state machine states."""
    IDLE = "idle"
    CHECKING = "checking"
    AVAILABLE = "available"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    BACKING_UP = "backing_up"
    INSTALLING = "installing"
    MIGRATING = "migrating"
    ROLLING_BACK = "rolling_back"

    @property
    def is_busy(self) -> bool:
        """True while an operation is in flight."""
        return self in BUSY_STATES


BUSY_STATES = frozenset({
    CycleState.CHECKING,
    CycleState.DOWNLOADING,
    CycleState.BACKING_UP,
    CycleState.INSTALLING,
    CycleState.MIGRATING,
    CycleState.ROLLING_BACK,
})


class VerificationState(Enum):
    """Verification checkpoints a downloaded artifact must pass."""
    UNVERIFIED = "unverified"
    CHECKSUM_OK = "checksum_ok"
    SIGNATURE_OK = "signature_ok"
    SCAN_OK = "scan_ok"


REQUIRED_VERIFICATIONS = frozenset({
    VerificationState.CHECKSUM_OK,
    VerificationState.SIGNATURE_OK,
    VerificationState.SCAN_OK,
})


# =============================================================================
# Version helpers
# =============================================================================

_VERSION_RE = re.compile(r'^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:[-+].*)?$')


def parse_version(version: str) -> tuple:
    """Parse '2.1.0' / 'v2.1' into a comparable (major, minor, patch) tuple."""
    match = _VERSION_RE.match(version.strip()) if version else None
    if not match:
        raise ValueError(f"Invalid version string: {version!r}")
    return tuple(int(part) if part else 0 for part in match.groups())


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two version strings.
    Returns: -1 if v1 < v2, 0 if equal, 1 if v1 > v2
    """
    p1, p2 = parse_version(v1), parse_version(v2)
    if p1 < p2:
        return -1
    if p1 > p2:
        return 1
    return 0


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class UpdatePackageInfo:
    """Available update, as announced by the remote check endpoint."""
    version: str
    download_url: str
    checksum: str
    size_bytes: int = 0
    is_security_update: bool = False
    is_critical: bool = False
    release_date: Optional[str] = None
    description: str = ""
    change_notes: List[str] = field(default_factory=list)
    signature_verified: bool = False

    @classmethod
    def from_response(cls, data: Dict[str, Any], signature_verified: bool) -> 'UpdatePackageInfo':
        """Build from a check response. Raises KeyError/ValueError/TypeError on bad shape."""
        version = str(data['version'])
        parse_version(version)

        checksum = str(data['checksum']).strip().lower()
        if not re.fullmatch(r'[0-9a-f]{64}', checksum):
            raise ValueError("checksum must be a hex-encoded SHA-256 digest")

        download_url = str(data['download_url'])
        if not download_url:
            raise ValueError("download_url is empty")

        notes = data.get('release_notes') or []
        if isinstance(notes, str):
            notes = [notes]

        return cls(
            version=version,
            download_url=download_url,
            checksum=checksum,
            size_bytes=int(data.get('size') or 0),
            is_security_update=bool(data.get('is_security_update', False)),
            is_critical=bool(data.get('is_critical', False)),
            release_date=data.get('release_date'),
            description=str(data.get('description') or ''),
            change_notes=[str(n) for n in notes],
            signature_verified=signature_verified,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UpdateProgress:
    """Progress of the in-flight cycle. Overwritten in place, never appended."""
    stage: UpdateStage = UpdateStage.IDLE
    percent: int = 0
    message: str = ""
    timestamp: float = field(default_factory=time.time)
    error_detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "percent": self.percent,
            "message": self.message,
            "timestamp": self.timestamp,
            "error_detail": self.error_detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UpdateProgress':
        return cls(
            stage=UpdateStage(data.get("stage", "idle")),
            percent=int(data.get("percent", 0)),
            message=str(data.get("message", "")),
            timestamp=float(data.get("timestamp") or time.time()),
            error_detail=data.get("error_detail"),
        )


@dataclass
class DownloadedArtifact:
    """A downloaded package on local disk plus the checks it has passed."""
    path: Path
    info: UpdatePackageInfo
    verifications: Set[VerificationState] = field(default_factory=set)
    released: bool = False

    @property
    def verification_state(self) -> VerificationState:
        """Most advanced checkpoint reached, in pipeline order."""
        for state in (VerificationState.SCAN_OK,
                      VerificationState.SIGNATURE_OK,
                      VerificationState.CHECKSUM_OK):
            if state in self.verifications:
                return state
        return VerificationState.UNVERIFIED

    @property
    def is_verified(self) -> bool:
        return REQUIRED_VERIFICATIONS.issubset(self.verifications)

    def mark(self, state: VerificationState):
        self.verifications.add(state)

    def release(self):
        """Delete the file. Safe to call more than once."""
        self.released = True
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "version": self.info.version,
            "verification_state": self.verification_state.value,
            "verified": self.is_verified,
            "released": self.released,
        }


@dataclass
class BackupHandle:
    """Opaque snapshot identifier owned by the backup manager."""
    backup_id: str
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class VersionRecord:
    """The single durable record this subsystem owns."""
    version: str
    updated_at: Optional[str] = None
    previous_version: Optional[str] = None


@dataclass
class InstallResult:
    """Outcome of a completed install."""
    success: bool
    stage: UpdateStage
    version: str
    previous_version: Optional[str] = None
    backup_id: Optional[str] = None
    migrations_applied: List[str] = field(default_factory=list)
    files_applied: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["stage"] = self.stage.value
        return data


# =============================================================================
# Package Manifest (update.json)
# =============================================================================

class PackageManifest(BaseModel):
    """Manifest shipped at the root of every update package."""
    version: str = Field(..., description="Target version of the package")
    files: List[str] = Field(..., description="Files under files/, relative paths")
    description: str = Field(default="", description="Free-form release summary")

    @field_validator('version')
    @classmethod
    def validate_version(cls, v: str) -> str:
        parse_version(v)
        return v

    @field_validator('files')
    @classmethod
    def validate_files(cls, v: List[str]) -> List[str]:
        """Paths must be relative, normalized and free of parent references."""
        seen = set()
        for entry in v:
            if not entry or entry.startswith(('/', '\\')) or re.match(r'^[A-Za-z]:', entry):
                raise ValueError(f"File path must be relative: {entry!r}")
            parts = entry.replace('\\', '/').split('/')
            if any(part in ('', '.', '..') for part in parts):
                raise ValueError(f"File path is not normalized: {entry!r}")
            if entry in seen:
                raise ValueError(f"Duplicate file entry: {entry!r}")
            seen.add(entry)
        return v
