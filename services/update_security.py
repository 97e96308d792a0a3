"""
SparkyFit Update Security Module

Implements the security verifier used by the update orchestrator:
- Ed25519 signature verification of update service responses
- Content scan of downloaded packages (structure checks + optional external scanner)
- Checksum helpers (SHA-256, constant-time comparison)

The orchestrator only depends on the SecurityVerifier protocol; any object with
verify_signature/scan_artifact can be injected instead.
"""

import base64
import hashlib
import hmac
import json
import logging
import shlex
import subprocess
import zipfile
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple, Union

from nacl.encoding import Base64Encoder
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

SIGNATURE_FIELD = "signature"

# Scan limits
MAX_ARCHIVE_ENTRIES = 20000
MAX_UNCOMPRESSED_BYTES = 2 * 1024 * 1024 * 1024  # 2 GiB
MAX_COMPRESSION_RATIO = 200
SCAN_TIMEOUT = 300

# Executable payloads that never belong in an application package
BLOCKED_EXTENSIONS = {'.exe', '.dll', '.bat', '.cmd', '.scr', '.com', '.msi', '.vbs', '.ps1'}


# =============================================================================
# Capability Interface
# =============================================================================

class SecurityVerifier(Protocol):
    """What the orchestrator needs from a security verifier."""

    def verify_signature(self, response_payload: Dict[str, Any]) -> bool:
        ...

    def scan_artifact(self, file_path: Path) -> bool:
        ...


# =============================================================================
# Canonical Form and Signing
# =============================================================================

def canonical_bytes(payload: Dict[str, Any]) -> bytes:
    """Deterministic serialization of everything except the signature itself."""
    unsigned = {k: v for k, v in payload.items() if k != SIGNATURE_FIELD}
    return json.dumps(unsigned, sort_keys=True, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def sign_payload(payload: Dict[str, Any], signing_key: Union[SigningKey, str]) -> Dict[str, Any]:
    """Return a copy of payload with an Ed25519 signature attached."""
    if isinstance(signing_key, str):
        signing_key = SigningKey(signing_key, encoder=Base64Encoder)

    signed = signing_key.sign(canonical_bytes(payload))
    result = dict(payload)
    result[SIGNATURE_FIELD] = base64.b64encode(signed.signature).decode('ascii')
    return result


def generate_keypair() -> Tuple[str, str]:
    """Generate (private_key_b64, public_key_b64) for release signing."""
    signing_key = SigningKey.generate()
    private_b64 = signing_key.encode(encoder=Base64Encoder).decode()
    public_b64 = signing_key.verify_key.encode(encoder=Base64Encoder).decode()
    return private_b64, public_b64


# =============================================================================
# Checksum Verification
# =============================================================================

def calculate_checksum(file_path: Union[str, Path], algorithm: str = "sha256") -> str:
    """Calculate file checksum."""
    hash_func = hashlib.new(algorithm)

    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            hash_func.update(chunk)

    return hash_func.hexdigest()


def checksums_match(expected: str, actual: str) -> bool:
    """Constant-time comparison of two hex digests."""
    return hmac.compare_digest(expected.strip().lower().encode(), actual.strip().lower().encode())


# =============================================================================
# Default Verifier
# =============================================================================

class Ed25519SecurityVerifier:
    """
    Security verifier backed by an Ed25519 public key.

    Signature: the update service signs the canonical JSON of its check response.
    Scan: the package must be a well-formed zip without path traversal, links,
    blocked executables or decompression bombs; if scan_command is configured,
    it runs last and must exit 0.
    """

    def __init__(self, public_key: str, scan_command: str = ""):
        self.verify_key: Optional[VerifyKey] = None
        if public_key:
            self.verify_key = VerifyKey(public_key, encoder=Base64Encoder)
        else:
            logger.warning("No update signing key configured; all update responses will be rejected")
        self.scan_command = scan_command

    # =========================================================================
    # Signature
    # =========================================================================

    def verify_signature(self, response_payload: Dict[str, Any]) -> bool:
        """Verify the response signature. Never raises."""
        if self.verify_key is None:
            return False

        signature_b64 = response_payload.get(SIGNATURE_FIELD)
        if not isinstance(signature_b64, str) or not signature_b64:
            logger.error("Update response is not signed")
            return False

        try:
            signature = base64.b64decode(signature_b64, validate=True)
            self.verify_key.verify(canonical_bytes(response_payload), signature)
            return True
        except BadSignatureError:
            logger.error("Update response signature is invalid")
            return False
        except (CryptoError, ValueError, TypeError) as e:
            logger.error(f"Update response signature could not be checked: {e}")
            return False

    # =========================================================================
    # Artifact Scan
    # =========================================================================

    def scan_artifact(self, file_path: Path) -> bool:
        """Scan a downloaded package. Returns False if anything looks wrong."""
        ok, reason = self.inspect_archive(Path(file_path))
        if not ok:
            logger.error(f"Package scan rejected {file_path}: {reason}")
            return False

        if self.scan_command:
            return self._run_external_scanner(Path(file_path))

        return True

    def inspect_archive(self, file_path: Path) -> Tuple[bool, str]:
        """Structural checks on the zip. Returns (ok, reason)."""
        try:
            with zipfile.ZipFile(file_path) as zf:
                infos = zf.infolist()
                if len(infos) > MAX_ARCHIVE_ENTRIES:
                    return False, f"too many entries ({len(infos)})"

                total_size = 0
                for info in infos:
                    name = info.filename.replace('\\', '/')
                    if name.startswith('/') or '..' in name.split('/'):
                        return False, f"unsafe path {info.filename!r}"

                    # Symlinks are stored with S_IFLNK in the upper attribute bits
                    if (info.external_attr >> 16) & 0o170000 == 0o120000:
                        return False, f"symbolic link {info.filename!r}"

                    if Path(name).suffix.lower() in BLOCKED_EXTENSIONS:
                        return False, f"blocked file type {info.filename!r}"

                    total_size += info.file_size
                    if info.compress_size and info.file_size / info.compress_size > MAX_COMPRESSION_RATIO:
                        return False, f"suspicious compression ratio for {info.filename!r}"

                if total_size > MAX_UNCOMPRESSED_BYTES:
                    return False, f"uncompressed size too large ({total_size} bytes)"

                bad_member = zf.testzip()
                if bad_member is not None:
                    return False, f"corrupt member {bad_member!r}"

        except zipfile.BadZipFile as e:
            return False, f"not a zip archive: {e}"
        except OSError as e:
            return False, f"cannot read archive: {e}"
        except (RuntimeError, NotImplementedError) as e:
            # Encrypted members or compression methods zipfile cannot read
            return False, f"unreadable member: {e}"

        return True, "ok"

    def _run_external_scanner(self, file_path: Path) -> bool:
        """Run the configured scanner (e.g. clamscan). Exit code 0 means clean."""
        args = shlex.split(self.scan_command) + [str(file_path)]
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=SCAN_TIMEOUT
            )
        except subprocess.TimeoutExpired:
            logger.error("External package scan timed out")
            return False
        except FileNotFoundError:
            logger.error(f"External scanner not found: {args[0]}")
            return False

        if result.returncode != 0:
            logger.error(f"External scanner flagged package: {result.stdout.strip() or result.stderr.strip()}")
            return False

        logger.info(f"External scanner passed for {file_path.name}")
        return True
