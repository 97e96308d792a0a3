"""
SparkyFit Self-Update Errors

Every failure of an update cycle is raised as an UpdateError subclass.
`stage` records where in the pipeline it happened; `rolled_back` is set when
the live installation was restored from a backup after the failure.
"""

from typing import Optional

from .update_models import UpdateStage


class UpdateError(Exception):
    """Base exception for update failures."""
    default_stage: Optional[UpdateStage] = None

    def __init__(self, message: str, stage: Optional[UpdateStage] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage or self.default_stage
        self.rolled_back = False


class NetworkError(UpdateError):
    """Transport failure talking to the update service."""
    pass


class ProtocolError(UpdateError):
    """Update service response could not be understood."""
    pass


class SecurityError(UpdateError):
    """Signature validation or malware scan rejected the update."""
    pass


class ChecksumError(UpdateError):
    """Downloaded archive does not match the announced SHA-256."""
    default_stage = UpdateStage.VERIFYING


class ArchiveError(UpdateError):
    """Package archive is corrupt or not a supported format."""
    default_stage = UpdateStage.INSTALLING


class ManifestError(UpdateError):
    """update.json is missing or does not describe the package."""
    default_stage = UpdateStage.INSTALLING


class ApplyError(UpdateError):
    """Copying package files into the live tree failed."""
    default_stage = UpdateStage.INSTALLING


class MigrationError(UpdateError):
    """A bundled migration script failed."""
    default_stage = UpdateStage.MIGRATING


class BackupError(UpdateError):
    """Pre-install snapshot could not be created."""
    default_stage = UpdateStage.BACKING_UP


class ConcurrentOperationError(UpdateError):
    """Another update operation is already in progress."""
    pass


class InvalidStateError(UpdateError):
    """Operation called without its precondition (no update checked, nothing downloaded)."""
    pass


class CancelledUpdateError(UpdateError):
    """Operation was cancelled. After the backup this triggers a rollback."""
    pass


class RollbackError(UpdateError):
    """Install failed and restoring the backup failed too. Needs an operator."""
    default_stage = UpdateStage.FAILED

    def __init__(
        self,
        message: str,
        original_error: BaseException,
        restore_error: Optional[BaseException] = None,
        backup_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.original_error = original_error
        self.restore_error = restore_error
        self.backup_id = backup_id
