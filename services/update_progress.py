"""
SparkyFit Update Progress Reporter

Publishes the stage/percent/message of the running update cycle so that
pollers (UI, health checks) can observe it without touching the orchestrator.

Two stores:
- MemoryProgressReporter: in-process, used by tests and single-worker deployments
- RedisProgressReporter: shared across processes, key expires after the TTL

Both enforce the same contract: progress is overwritten in place, percent never
goes backwards within a stage, and a record older than the TTL reads as Idle.
"""

from collections import deque
import json
import logging
import threading
import time
from typing import Optional, Callable

import redis

from .update_models import UpdateProgress, UpdateStage

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

DEFAULT_PROGRESS_TTL = 3600  # 1 hour
HISTORY_LIMIT = 256  # reports kept by MemoryProgressReporter
PROGRESS_KEY = "sparkyfit:update_progress"


# =============================================================================
# Base Reporter
# =============================================================================

class ProgressReporter:
    """
    Base progress reporter.

    Subclasses implement _write/_read against their store; the monotonic
    percent rule lives here so every store behaves the same.
    """

    def __init__(self, ttl: int = DEFAULT_PROGRESS_TTL, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._last: Optional[UpdateProgress] = None
        self._lock = threading.Lock()

    def report(
        self,
        stage: UpdateStage,
        percent: float,
        message: str,
        error_detail: Optional[str] = None,
    ) -> UpdateProgress:
        """Overwrite the current progress. Returns what was published."""
        pct = max(0, min(100, int(percent)))

        with self._lock:
            last = self._last
            if last is not None and last.stage == stage and pct < last.percent:
                pct = last.percent

            progress = UpdateProgress(
                stage=stage,
                percent=pct,
                message=message,
                timestamp=self._clock(),
                error_detail=error_detail,
            )
            self._last = progress

        try:
            self._write(progress)
        except Exception as e:
            # Progress is advisory; a store outage must not fail the cycle
            logger.warning(f"Failed to publish update progress: {e}")
        return progress

    def get(self) -> UpdateProgress:
        """Current progress, or Idle when nothing (fresh) is stored."""
        try:
            progress = self._read()
        except Exception as e:
            logger.warning(f"Failed to read update progress: {e}")
            progress = None

        if progress is None:
            return UpdateProgress(stage=UpdateStage.IDLE, percent=0, message="", timestamp=self._clock())
        return progress

    def reset(self):
        """Forget the current cycle (next report starts a fresh stage)."""
        with self._lock:
            self._last = None
        try:
            self._clear()
        except Exception as e:
            logger.warning(f"Failed to clear update progress: {e}")

    # Store hooks
    def _write(self, progress: UpdateProgress):
        raise NotImplementedError

    def _read(self) -> Optional[UpdateProgress]:
        raise NotImplementedError

    def _clear(self):
        raise NotImplementedError


# =============================================================================
# In-Memory Reporter
# =============================================================================

class MemoryProgressReporter(ProgressReporter):
    """Keeps progress in process memory, honouring the TTL on read."""

    def __init__(self, ttl: int = DEFAULT_PROGRESS_TTL, clock: Callable[[], float] = time.time):
        super().__init__(ttl=ttl, clock=clock)
        self._stored: Optional[UpdateProgress] = None
        self.history = deque(maxlen=HISTORY_LIMIT)

    def _write(self, progress: UpdateProgress):
        self._stored = progress
        self.history.append(progress)

    def _read(self) -> Optional[UpdateProgress]:
        stored = self._stored
        if stored is None:
            return None
        if self._clock() - stored.timestamp > self.ttl:
            self._stored = None
            return None
        return stored

    def _clear(self):
        self._stored = None

    def stages(self):
        """Distinct stages in the order they were first published."""
        seen = []
        for progress in self.history:
            if not seen or seen[-1] != progress.stage:
                seen.append(progress.stage)
        return seen


# =============================================================================
# Redis Reporter
# =============================================================================

class RedisProgressReporter(ProgressReporter):
    """Stores progress under a single Redis key with SETEX."""

    def __init__(
        self,
        client,
        ttl: int = DEFAULT_PROGRESS_TTL,
        key: str = PROGRESS_KEY,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(ttl=ttl, clock=clock)
        self.client = client
        self.key = key

    @classmethod
    def from_url(cls, url: str, ttl: int = DEFAULT_PROGRESS_TTL) -> 'RedisProgressReporter':
        client = redis.Redis.from_url(url, socket_timeout=2, decode_responses=True)
        return cls(client, ttl=ttl)

    def _write(self, progress: UpdateProgress):
        self.client.setex(self.key, self.ttl, json.dumps(progress.to_dict()))

    def _read(self) -> Optional[UpdateProgress]:
        raw = self.client.get(self.key)
        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        try:
            return UpdateProgress.from_dict(json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning(f"Corrupt update progress in redis: {e}")
            return None

    def _clear(self):
        self.client.delete(self.key)


def create_progress_reporter(redis_url: str = "", ttl: int = DEFAULT_PROGRESS_TTL) -> ProgressReporter:
    """Redis when configured, otherwise in-memory."""
    if redis_url:
        logger.info("Update progress stored in redis")
        return RedisProgressReporter.from_url(redis_url, ttl=ttl)
    return MemoryProgressReporter(ttl=ttl)
