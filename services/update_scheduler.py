"""
SparkyFit Auto-Update Scheduler

Background timer that drives the orchestrator:
- Periodically checks for updates (default: every hour, with jitter)
- Optionally downloads and installs what it finds (auto_download / auto_install)
- Skips a cycle when an operator-started one is already running
- Stops auto-installing a version after repeated failures
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional, Dict, Any, List

from .update_errors import ConcurrentOperationError, UpdateError
from .update_orchestrator import UpdateOrchestrator

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

MAX_RETRIES_PER_VERSION = 3
JITTER_MAX_SECONDS = 1800  # 30 minutes random jitter
INTERVAL_JITTER_SECONDS = 300


@dataclass
class SchedulerState:
    """In-memory scheduler bookkeeping."""
    last_check: Optional[str] = None
    last_error: Optional[str] = None
    last_update: Optional[str] = None
    last_update_version: Optional[str] = None
    pending_version: Optional[str] = None
    retry_count: Dict[str, int] = field(default_factory=dict)
    failed_versions: List[str] = field(default_factory=list)


class UpdateScheduler:
    """
    Background update scheduler.

    Features:
    - Periodic check (check_interval seconds plus jitter)
    - Initial random delay to prevent a thundering herd on the update service
    - auto_download / auto_install switches
    - Failed versions are skipped after MAX_RETRIES_PER_VERSION attempts
    """

    def __init__(
        self,
        orchestrator: UpdateOrchestrator,
        check_interval: int = 3600,
        auto_download: bool = False,
        auto_install: bool = False,
        initial_delay_max: int = JITTER_MAX_SECONDS,
        interval_jitter: int = INTERVAL_JITTER_SECONDS,
    ):
        self.orchestrator = orchestrator
        self.check_interval = check_interval
        self.auto_download = auto_download
        self.auto_install = auto_install
        self.initial_delay_max = initial_delay_max
        self.interval_jitter = interval_jitter

        self.is_running = False
        self._task: Optional[asyncio.Task] = None
        self._state = SchedulerState()

    # =========================================================================
    # Scheduler Control
    # =========================================================================

    async def start(self):
        """Start the background scheduler."""
        if self.is_running:
            logger.warning("Update scheduler already running")
            return

        self.is_running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Update scheduler started "
            f"(interval: {self.check_interval}s, "
            f"auto_download: {self.auto_download}, "
            f"auto_install: {self.auto_install})"
        )

    async def stop(self):
        """Stop the scheduler."""
        self.is_running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Update scheduler stopped")

    def get_status(self) -> Dict[str, Any]:
        """Get current scheduler status."""
        status = asdict(self._state)
        status.update({
            "running": self.is_running,
            "check_interval_seconds": self.check_interval,
            "auto_download": self.auto_download,
            "auto_install": self.auto_install,
        })
        return status

    # =========================================================================
    # Main Loop
    # =========================================================================

    async def _run_loop(self):
        """Main scheduler loop."""
        initial_delay = random.randint(0, self.initial_delay_max) if self.initial_delay_max > 0 else 0
        logger.info(f"Update scheduler: initial delay {initial_delay}s (jitter)")
        await asyncio.sleep(initial_delay)

        while self.is_running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Scheduled update run failed: {e}", exc_info=True)

            jitter = random.randint(0, self.interval_jitter) if self.interval_jitter > 0 else 0
            await asyncio.sleep(self.check_interval + jitter)

    async def run_once(self) -> Optional[str]:
        """
        One scheduled pass: check, then download/install if enabled.

        Returns the version that was installed, if any.
        """
        self._state.last_check = datetime.now().isoformat()

        try:
            info = await self.orchestrator.check_for_updates()
        except ConcurrentOperationError:
            logger.info("Update operation already in progress, skipping scheduled check")
            return None
        except UpdateError as e:
            self._state.last_error = e.message
            logger.error(f"Scheduled update check failed: {e.message}")
            return None

        if info is None:
            self._state.pending_version = None
            return None

        self._state.pending_version = info.version

        if info.version in self._state.failed_versions:
            logger.warning(f"Skipping version {info.version} (previously failed)")
            return None

        if not self.auto_download:
            logger.info(f"Update {info.version} available; auto-download disabled")
            return None

        try:
            await self.orchestrator.download_update()
        except ConcurrentOperationError:
            logger.info("Update operation already in progress, skipping scheduled download")
            return None
        except UpdateError as e:
            self._state.last_error = e.message
            logger.error(f"Scheduled download of {info.version} failed: {e.message}")
            return None

        if not self.auto_install:
            logger.info(f"Update {info.version} downloaded; auto-install disabled")
            return None

        try:
            await self.orchestrator.install_update()
        except ConcurrentOperationError:
            logger.info("Update operation already in progress, skipping scheduled install")
            return None
        except UpdateError as e:
            self._state.last_error = e.message
            self._record_failure(info.version)
            logger.error(f"Scheduled install of {info.version} failed: {e.message}")
            return None

        self._state.last_update = datetime.now().isoformat()
        self._state.last_update_version = info.version
        self._state.pending_version = None
        self._state.last_error = None
        self._state.retry_count.pop(info.version, None)
        return info.version

    def _record_failure(self, version: str):
        count = self._state.retry_count.get(version, 0) + 1
        self._state.retry_count[version] = count
        if count >= MAX_RETRIES_PER_VERSION and version not in self._state.failed_versions:
            logger.warning(f"Max retries reached for {version}; no more automatic attempts")
            self._state.failed_versions.append(version)
