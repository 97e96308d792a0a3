"""
SparkyFit Self-Update API Routes

Provides REST endpoints for the update orchestrator:

    GET  /api/system/updates/check       check the update service
    POST /api/system/updates/download    download + verify the available update
    POST /api/system/updates/install     backup, apply, migrate (rollback on failure)
    POST /api/system/updates/cancel      cancel before installation starts
    GET  /api/system/updates/progress    current stage / percent / message
    GET  /api/system/updates/version     installed version record
    GET  /api/system/updates/status      orchestrator + scheduler status
"""

import logging
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from services.update_errors import (
    CancelledUpdateError,
    ChecksumError,
    ConcurrentOperationError,
    InvalidStateError,
    NetworkError,
    ProtocolError,
    RollbackError,
    SecurityError,
    UpdateError,
)
from services.update_orchestrator import UpdateOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/system/updates", tags=["system-updates"])


# =============================================================================
# Request/Response Models
# =============================================================================

class UpdateCheckResponse(BaseModel):
    """Response for update check."""
    available: bool
    current_version: str
    latest_version: Optional[str] = None
    is_security_update: bool = False
    is_critical: bool = False
    release_date: Optional[str] = None
    description: Optional[str] = None
    release_notes: List[str] = []
    size_bytes: Optional[int] = None


class DownloadResponse(BaseModel):
    """Response for a completed download."""
    success: bool
    version: str
    verification_state: str
    message: str


class InstallResponse(BaseModel):
    """Response for a completed install."""
    success: bool
    stage: str
    version: str
    previous_version: Optional[str] = None
    backup_id: Optional[str] = None
    migrations_applied: List[str] = []
    files_applied: int = 0
    message: str


class ProgressResponse(BaseModel):
    """Current update progress."""
    stage: str
    percent: int
    message: str
    timestamp: float
    error_detail: Optional[str] = None


class VersionResponse(BaseModel):
    """Installed version record."""
    version: str
    updated_at: Optional[str] = None
    previous_version: Optional[str] = None


# =============================================================================
# Dependencies and Error Mapping
# =============================================================================

def get_orchestrator(request: Request) -> UpdateOrchestrator:
    orchestrator = getattr(request.app.state, 'update_orchestrator', None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Update service not available")
    return orchestrator


def _status_code(error: UpdateError) -> int:
    if isinstance(error, (ConcurrentOperationError, InvalidStateError, CancelledUpdateError)):
        return 409
    if isinstance(error, (SecurityError, ChecksumError)):
        return 422
    if isinstance(error, (NetworkError, ProtocolError)):
        return 502
    return 500


def _raise_http(error: UpdateError):
    detail: Dict[str, Any] = {
        "error": type(error).__name__,
        "message": error.message,
        "stage": error.stage.value if error.stage else None,
        "rolled_back": error.rolled_back,
    }
    if isinstance(error, RollbackError):
        detail["original_error"] = type(error.original_error).__name__
        detail["backup_id"] = error.backup_id
    raise HTTPException(status_code=_status_code(error), detail=detail)


# =============================================================================
# API Endpoints
# =============================================================================

@router.get("/check", response_model=UpdateCheckResponse)
async def check_updates(orchestrator: UpdateOrchestrator = Depends(get_orchestrator)):
    """
    Check for available updates.

    GET /api/system/updates/check
    """
    try:
        info = await orchestrator.check_for_updates()
    except UpdateError as e:
        _raise_http(e)

    current = orchestrator.version_store.current_version()
    if info is None:
        return UpdateCheckResponse(available=False, current_version=current)

    return UpdateCheckResponse(
        available=True,
        current_version=current,
        latest_version=info.version,
        is_security_update=info.is_security_update,
        is_critical=info.is_critical,
        release_date=info.release_date,
        description=info.description,
        release_notes=info.change_notes,
        size_bytes=info.size_bytes,
    )


@router.post("/download", response_model=DownloadResponse)
async def download_update(orchestrator: UpdateOrchestrator = Depends(get_orchestrator)):
    """
    Download and verify the update found by the last check.

    POST /api/system/updates/download
    """
    try:
        artifact = await orchestrator.download_update()
    except UpdateError as e:
        _raise_http(e)

    return DownloadResponse(
        success=True,
        version=artifact.info.version,
        verification_state=artifact.verification_state.value,
        message="Update downloaded and verified",
    )


@router.post("/install", response_model=InstallResponse)
async def install_update(orchestrator: UpdateOrchestrator = Depends(get_orchestrator)):
    """
    Install the downloaded update.

    POST /api/system/updates/install

    A failed install is restored from the backup when possible; the error
    body says whether it was rolled back.
    """
    try:
        result = await orchestrator.install_update()
    except UpdateError as e:
        _raise_http(e)

    return InstallResponse(**result.to_dict())


@router.post("/cancel")
async def cancel_update(orchestrator: UpdateOrchestrator = Depends(get_orchestrator)):
    """
    Cancel the current cycle before installation starts.

    POST /api/system/updates/cancel
    """
    try:
        cancelled = orchestrator.cancel()
    except UpdateError as e:
        _raise_http(e)

    return {
        "success": cancelled,
        "message": "Update cancelled" if cancelled else "Nothing to cancel",
    }


@router.get("/progress", response_model=ProgressResponse)
async def get_progress(orchestrator: UpdateOrchestrator = Depends(get_orchestrator)):
    """
    Get current update progress.

    GET /api/system/updates/progress
    """
    return ProgressResponse(**orchestrator.get_progress().to_dict())


@router.get("/version", response_model=VersionResponse)
async def get_version(orchestrator: UpdateOrchestrator = Depends(get_orchestrator)):
    """
    Get the installed version record.

    GET /api/system/updates/version
    """
    record = orchestrator.version_store.load()
    return VersionResponse(
        version=record.version,
        updated_at=record.updated_at,
        previous_version=record.previous_version,
    )


@router.get("/status")
async def get_status(request: Request, orchestrator: UpdateOrchestrator = Depends(get_orchestrator)):
    """
    Get orchestrator and scheduler status.

    GET /api/system/updates/status
    """
    status = orchestrator.status()
    scheduler = getattr(request.app.state, 'update_scheduler', None)
    status["scheduler"] = scheduler.get_status() if scheduler is not None else None
    return status
