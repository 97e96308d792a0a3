"""
SparkyFit Package Fetcher

Talks to the remote update service:
- check_for_update(): signed "is there a newer release" query
- download(): streams the package archive to the scratch directory, verifies
  the SHA-256 checksum in constant time and hands the file to the security scan

Transport errors surface as NetworkError, unreadable responses as ProtocolError,
signature or scan rejections as SecurityError and digest mismatches as
ChecksumError. "No update available" is a normal None result.
"""

import asyncio
import hashlib
import json
import logging
import time
import uuid
from pathlib import Path
from typing import Optional, Callable, Dict, Any

import aiohttp

from .update_errors import ChecksumError, NetworkError, ProtocolError, SecurityError
from .update_models import (
    DownloadedArtifact,
    UpdatePackageInfo,
    UpdateStage,
    VerificationState,
    compare_versions,
)
from .update_security import SecurityVerifier, checksums_match

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

USER_AGENT = "SparkyFit-Updater/1.0"
CHUNK_SIZE = 64 * 1024
PROGRESS_MIN_INTERVAL = 0.5  # seconds between progress callbacks
PROGRESS_MIN_STEP = 0.01     # or at least 1% of the total

ProgressCallback = Callable[[int, int], None]


class PackageFetcher:
    """Remote check and download for update packages."""

    def __init__(
        self,
        check_url: str,
        security: SecurityVerifier,
        scratch_dir: Path,
        instance_id: str,
        platform: str = "sparkyfit-backend",
        license_key: str = "",
        verify_ssl: bool = True,
        check_timeout: float = 30,
        download_timeout: float = 300,
    ):
        self.check_url = check_url
        self.security = security
        self.scratch_dir = Path(scratch_dir)
        self.instance_id = instance_id
        self.platform = platform
        self.license_key = license_key
        self.verify_ssl = verify_ssl
        self.check_timeout = check_timeout
        self.download_timeout = download_timeout

    def _session(self, total_timeout: float) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=total_timeout),
            headers={'User-Agent': USER_AGENT},
        )

    # =========================================================================
    # Update Check
    # =========================================================================

    async def check_for_update(self, current_version: str) -> Optional[UpdatePackageInfo]:
        """
        Ask the update service whether a release newer than current_version exists.

        Raises:
            NetworkError: transport failure or timeout
            ProtocolError: response is not a JSON object / has missing fields
            SecurityError: response signature rejected
        """
        if not self.check_url:
            raise ProtocolError("Update check URL not configured", UpdateStage.CHECKING)

        params = {
            'version': current_version,
            'platform': self.platform,
            'instance_id': self.instance_id,
        }
        if self.license_key:
            params['license_key'] = self.license_key

        logger.info(f"Checking for updates (current version {current_version})")
        try:
            async with self._session(self.check_timeout) as session:
                async with session.get(self.check_url, params=params, ssl=self._ssl()) as resp:
                    if resp.status != 200:
                        raise NetworkError(
                            f"Update service returned HTTP {resp.status}", UpdateStage.CHECKING
                        )
                    body = await resp.read()
        except asyncio.TimeoutError as e:
            raise NetworkError("Update check timed out", UpdateStage.CHECKING) from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Update check failed: {e}", UpdateStage.CHECKING) from e

        payload = self._parse_json(body)

        if not self.security.verify_signature(payload):
            raise SecurityError("Update response signature verification failed", UpdateStage.CHECKING)

        if not payload.get('available'):
            logger.info("No updates available")
            return None

        try:
            info = UpdatePackageInfo.from_response(payload, signature_verified=True)
        except (KeyError, ValueError, TypeError) as e:
            raise ProtocolError(f"Malformed update response: {e}", UpdateStage.CHECKING) from e

        if compare_versions(info.version, current_version) <= 0:
            logger.info(f"Ignoring offered version {info.version} (current {current_version})")
            return None

        logger.info(f"Update available: {current_version} -> {info.version}")
        return info

    @staticmethod
    def _parse_json(body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise ProtocolError("Invalid JSON response from update server", UpdateStage.CHECKING) from e
        if not isinstance(payload, dict):
            raise ProtocolError("Update response is not a JSON object", UpdateStage.CHECKING)
        return payload

    def _ssl(self):
        # None keeps aiohttp's default verification; False disables it
        return None if self.verify_ssl else False

    # =========================================================================
    # Download
    # =========================================================================

    async def download(
        self,
        info: UpdatePackageInfo,
        on_progress: Optional[ProgressCallback] = None,
        on_verifying: Optional[Callable[[], None]] = None,
    ) -> DownloadedArtifact:
        """
        Stream the package to the scratch directory and verify it.

        The file is deleted on any failure. A checksum mismatch is never resumed:
        a retry downloads from scratch into a fresh file.
        """
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        target = self.scratch_dir / f"update_{info.version}_{uuid.uuid4().hex[:8]}.zip"
        artifact = DownloadedArtifact(path=target, info=info)
        if info.signature_verified:
            artifact.mark(VerificationState.SIGNATURE_OK)

        try:
            digest = await self._stream_to_file(info, target, on_progress)

            if on_verifying is not None:
                on_verifying()

            if not checksums_match(info.checksum, digest):
                logger.error(f"Checksum mismatch for {info.version}: expected {info.checksum}, got {digest}")
                raise ChecksumError("Update file checksum verification failed", UpdateStage.VERIFYING)
            artifact.mark(VerificationState.CHECKSUM_OK)

            try:
                scan_ok = await asyncio.to_thread(self.security.scan_artifact, target)
            except Exception as e:
                raise SecurityError(f"Security scan failed: {e}", UpdateStage.VERIFYING) from e
            if not scan_ok:
                raise SecurityError("Update file failed security scan", UpdateStage.VERIFYING)
            artifact.mark(VerificationState.SCAN_OK)

        except BaseException:
            artifact.release()
            raise

        logger.info(f"Update downloaded successfully: {target}")
        return artifact

    async def _stream_to_file(
        self,
        info: UpdatePackageInfo,
        target: Path,
        on_progress: Optional[ProgressCallback],
    ) -> str:
        """Download to target, hashing as we go. Returns the hex SHA-256."""
        hasher = hashlib.sha256()
        throttle = _ProgressThrottle(on_progress)

        logger.info(f"Downloading update {info.version} from {info.download_url}")
        try:
            async with self._session(self.download_timeout) as session:
                async with session.get(info.download_url, ssl=self._ssl()) as resp:
                    if resp.status != 200:
                        raise NetworkError(
                            f"Download returned HTTP {resp.status}", UpdateStage.DOWNLOADING
                        )
                    total = resp.content_length or info.size_bytes or 0
                    done = 0
                    with open(target, 'wb') as f:
                        async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                            f.write(chunk)
                            hasher.update(chunk)
                            done += len(chunk)
                            throttle.update(done, total)
                    throttle.finish(done, total)
        except asyncio.TimeoutError as e:
            raise NetworkError("Update download timed out", UpdateStage.DOWNLOADING) from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Failed to download update: {e}", UpdateStage.DOWNLOADING) from e

        return hasher.hexdigest()


class _ProgressThrottle:
    """Limits progress callbacks to a bounded rate."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self.callback = callback
        self._last_time = 0.0
        self._last_bytes = 0

    def update(self, done: int, total: int):
        if self.callback is None:
            return
        now = time.monotonic()
        step = max(1, int(total * PROGRESS_MIN_STEP)) if total else CHUNK_SIZE * 16
        if now - self._last_time >= PROGRESS_MIN_INTERVAL or done - self._last_bytes >= step:
            self._emit(done, total, now)

    def finish(self, done: int, total: int):
        if self.callback is not None and done != self._last_bytes:
            self._emit(done, total, time.monotonic())

    def _emit(self, done: int, total: int, now: float):
        self._last_time = now
        self._last_bytes = done
        try:
            self.callback(done, total)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")
