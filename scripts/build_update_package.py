#!/usr/bin/env python3
"""
SparkyFit Update Package Builder
Release tooling for the self-update service.

Usage:
    python scripts/build_update_package.py keygen
    python scripts/build_update_package.py build --source build/ --version 2.1.0 \
        --migrations db/migrations --output dist/
    python scripts/build_update_package.py sign --package dist/sparkyfit-2.1.0.zip \
        --version 2.1.0 --url https://updates.example.com/sparkyfit-2.1.0.zip \
        --private-key "$SPARKYFIT_UPDATE_PRIVATE_KEY"
"""

import argparse
import json
import os
import sys
import zipfile
from pathlib import Path
from typing import Optional, List, Dict, Any

sys.path.insert(0, str(Path(__file__).parent.parent))

from services.update_models import parse_version
from services.update_security import calculate_checksum, generate_keypair, sign_payload


def collect_files(source: Path) -> List[str]:
    """Relative paths of every regular file under source, sorted."""
    return sorted(
        p.relative_to(source).as_posix()
        for p in source.rglob('*')
        if p.is_file() and not p.is_symlink()
    )


def build_package(
    source: Path,
    version: str,
    output_dir: Path,
    migrations: Optional[Path] = None,
    description: str = "",
) -> Path:
    """
    Zip source/ into an update package with its manifest.

    Returns:
        Path to the package archive
    """
    parse_version(version)
    source = Path(source)
    if not source.is_dir():
        raise FileNotFoundError(f"Source directory not found: {source}")

    files = collect_files(source)
    manifest = {"version": version, "files": files, "description": description}

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    package_path = output_dir / f"sparkyfit-{version}.zip"

    with zipfile.ZipFile(package_path, 'w', zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("update.json", json.dumps(manifest, indent=2))
        for relative in files:
            zf.write(source / relative, f"files/{relative}")
        if migrations is not None:
            for script in sorted(Path(migrations).iterdir()):
                if script.is_file() and script.suffix in ('.sql', '.py'):
                    zf.write(script, f"migrations/{script.name}")

    return package_path


def build_check_response(
    package_path: Path,
    version: str,
    download_url: str,
    private_key: str,
    description: str = "",
    release_notes: Optional[List[str]] = None,
    is_security_update: bool = False,
    is_critical: bool = False,
    release_date: Optional[str] = None,
) -> Dict[str, Any]:
    """Signed check-endpoint document announcing package_path."""
    payload = {
        "available": True,
        "version": version,
        "download_url": download_url,
        "checksum": calculate_checksum(package_path),
        "size": Path(package_path).stat().st_size,
        "is_security_update": is_security_update,
        "is_critical": is_critical,
        "release_date": release_date,
        "description": description,
        "release_notes": release_notes or [],
    }
    return sign_payload(payload, private_key)


def main():
    parser = argparse.ArgumentParser(description="Build and sign SparkyFit update packages")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("keygen", help="Generate an Ed25519 signing keypair")

    build = sub.add_parser("build", help="Build a package zip from a directory")
    build.add_argument("--source", "-s", required=True, help="Directory mirroring the app root")
    build.add_argument("--version", "-v", required=True, help="Version string (e.g., 2.1.0)")
    build.add_argument("--output", "-o", default="dist", help="Output directory")
    build.add_argument("--migrations", "-m", help="Directory of .sql/.py migration scripts")
    build.add_argument("--description", "-d", default="", help="Release summary")

    sign = sub.add_parser("sign", help="Emit the signed check response for a package")
    sign.add_argument("--package", "-p", required=True, help="Package zip")
    sign.add_argument("--version", "-v", required=True, help="Version string")
    sign.add_argument("--url", "-u", required=True, help="Public download URL of the package")
    sign.add_argument("--private-key", "-k", default=os.environ.get('SPARKYFIT_UPDATE_PRIVATE_KEY'),
                      help="Base64 Ed25519 private key (default: $SPARKYFIT_UPDATE_PRIVATE_KEY)")
    sign.add_argument("--notes", "-n", action="append", default=[], help="Release note line (repeatable)")
    sign.add_argument("--security", action="store_true", help="Mark as a security update")
    sign.add_argument("--critical", action="store_true", help="Mark as critical")
    sign.add_argument("--output", "-o", help="Write JSON here instead of stdout")

    args = parser.parse_args()

    if args.command == "keygen":
        private_b64, public_b64 = generate_keypair()
        print(f"Private key (keep secret): {private_b64}")
        print(f"Public key (SPARKYFIT_UPDATE_PUBLIC_KEY): {public_b64}")
        return 0

    if args.command == "build":
        try:
            package = build_package(
                Path(args.source),
                args.version,
                Path(args.output),
                migrations=Path(args.migrations) if args.migrations else None,
                description=args.description,
            )
        except (OSError, ValueError) as e:
            print(f"Build failed: {e}", file=sys.stderr)
            return 1
        print(f"Package created: {package}")
        print(f"   Size: {package.stat().st_size:,} bytes")
        print(f"   SHA-256: {calculate_checksum(package)}")
        return 0

    if not args.private_key:
        print("No private key given (--private-key or SPARKYFIT_UPDATE_PRIVATE_KEY)", file=sys.stderr)
        return 1

    response = build_check_response(
        Path(args.package),
        args.version,
        args.url,
        args.private_key,
        release_notes=args.notes,
        is_security_update=args.security,
        is_critical=args.critical,
    )
    document = json.dumps(response, indent=2)
    if args.output:
        Path(args.output).write_text(document)
        print(f"Check response written: {args.output}")
    else:
        print(document)
    return 0


if __name__ == "__main__":
    sys.exit(main())
