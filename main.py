#!/usr/bin/env python3
"""
SparkyFit Backend - Self-Update Service
Exposes the update orchestrator under /api/system/updates and runs the
background update scheduler.
"""

import logging
import os
import sys
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import redis
import uvicorn

from config.settings import UpdateSettings
from routes.updates import router as updates_router
from services.update_backup import DirectoryBackupManager
from services.update_fetcher import PackageFetcher
from services.update_installer import PackageInstaller
from services.update_orchestrator import UpdateOrchestrator
from services.update_progress import create_progress_reporter
from services.update_scheduler import UpdateScheduler
from services.update_security import Ed25519SecurityVerifier
from services.update_version import VersionStore, load_instance_id


# ============================================================================
# Logging
# ============================================================================

def setup_logging(log_file: Optional[str] = None):
    """Configure root logging: stdout plus an optional log file."""
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
        except OSError:
            pass  # Skip file logging if not writable

    logging.basicConfig(
        level=os.environ.get('SPARKYFIT_LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    return logging.getLogger(__name__)

logger = setup_logging(os.environ.get('SPARKYFIT_LOG_FILE'))


# ============================================================================
# Wiring
# ============================================================================

def build_orchestrator(settings: UpdateSettings) -> UpdateOrchestrator:
    """Assemble the orchestrator and its collaborators from settings."""
    settings.data_dir.mkdir(parents=True, exist_ok=True)

    redis_client = None
    if settings.redis_url:
        redis_client = redis.Redis.from_url(settings.redis_url, socket_timeout=2, decode_responses=True)

    security = Ed25519SecurityVerifier(settings.public_key, settings.scan_command)
    fetcher = PackageFetcher(
        check_url=settings.check_url,
        security=security,
        scratch_dir=settings.scratch_dir,
        instance_id=load_instance_id(settings.instance_id_file, settings.instance_id),
        platform=settings.platform,
        license_key=settings.license_key,
        verify_ssl=settings.verify_ssl,
        check_timeout=settings.check_timeout,
        download_timeout=settings.download_timeout,
    )
    installer = PackageInstaller(
        scratch_dir=settings.scratch_dir,
        database_path=settings.database_path,
        cache_dirs=settings.resolved_cache_dirs(),
        redis_client=redis_client,
    )
    backup_manager = DirectoryBackupManager(
        app_root=settings.app_root,
        backup_dir=settings.backup_dir,
        database_path=settings.database_path,
        exclude=('.git', '__pycache__'),
        exclude_paths=(settings.data_dir, settings.scratch_dir),
    )

    return UpdateOrchestrator(
        fetcher=fetcher,
        installer=installer,
        security=security,
        backup_manager=backup_manager,
        progress=create_progress_reporter(settings.redis_url, settings.progress_ttl),
        version_store=VersionStore(settings.version_file, settings.current_version_default),
        app_root=settings.app_root,
        lock_file=settings.lock_file,
        backup_enabled=settings.backup_enabled,
        rollback_enabled=settings.rollback_enabled,
        backup_retention=settings.backup_retention,
        check_timeout=settings.check_timeout,
        download_timeout=settings.download_timeout,
        backup_timeout=settings.backup_timeout,
    )


# ============================================================================
# FastAPI Application
# ============================================================================

settings = UpdateSettings.from_env()

app = FastAPI(
    title="SparkyFit Update API",
    version=settings.current_version_default,
    description="Self-update orchestrator for the SparkyFit backend"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(updates_router)


@app.on_event("startup")
async def startup_event():
    """Build the orchestrator and start the scheduler if enabled."""
    orchestrator = build_orchestrator(settings)
    app.state.update_orchestrator = orchestrator
    app.state.update_scheduler = None

    logger.info(f"SparkyFit version {orchestrator.version_store.current_version()}")

    if settings.enabled:
        scheduler = UpdateScheduler(
            orchestrator,
            check_interval=settings.check_interval,
            auto_download=settings.auto_download,
            auto_install=settings.auto_install,
        )
        await scheduler.start()
        app.state.update_scheduler = scheduler
    else:
        logger.info("Automatic update checks disabled")


@app.on_event("shutdown")
async def shutdown_event():
    scheduler = getattr(app.state, 'update_scheduler', None)
    if scheduler is not None:
        await scheduler.stop()


@app.get("/api/health")
async def health():
    orchestrator = getattr(app.state, 'update_orchestrator', None)
    return {
        "status": "ok",
        "version": orchestrator.version_store.current_version() if orchestrator else None,
        "update_state": orchestrator.state.value if orchestrator else None,
    }


# ============================================================================
# Entry Point
# ============================================================================

if __name__ == "__main__":
    port = int(os.environ.get('SPARKYFIT_PORT', '8090'))
    logger.info(f"Starting SparkyFit update service on 0.0.0.0:{port}")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info",
        access_log=True
    )
