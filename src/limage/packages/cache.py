"""On-disk cache layout.

The cache lives under the user-local cache root (see limage.paths) and
persists across invocations:

    <cache_root>/
    ├── firmware/
    │   └── x86_64/
    │       ├── ovmf-code-x86_64.fd
    │       └── ovmf-code-x86_64.fd.json   # manifest: url, sha256, size
    └── bootloader/
        └── limine-v8.x-binary/            # clone at the pinned revision

Entries are created lazily on first need. The cache is not locked; running
two invocations against the same cache at once is unsupported.
"""

import hashlib
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

MANIFEST_SUFFIX = ".json"
_CHUNK_SIZE = 1024 * 1024


class Cache:
    """Computes cache locations for firmware files and bootloader clones."""

    def __init__(self, cache_root: Path):
        self.cache_root = cache_root

    @property
    def firmware_root(self) -> Path:
        return self.cache_root / "firmware"

    @property
    def bootloader_root(self) -> Path:
        return self.cache_root / "bootloader"

    def get_firmware_path(self, architecture: str, filename: str) -> Path:
        return self.firmware_root / architecture / filename

    def get_bootloader_path(self, revision: str) -> Path:
        # Revisions may contain "/" (e.g. "refs/tags/v8.0.0")
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", revision)
        return self.bootloader_root / f"limine-{safe}"

    @staticmethod
    def hash_file(path: Path) -> str:
        """SHA256 of a file's contents."""
        sha256 = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                sha256.update(chunk)
        return sha256.hexdigest()


def manifest_path_for(artifact: Path) -> Path:
    return artifact.with_name(artifact.name + MANIFEST_SUFFIX)


def write_manifest(artifact: Path, url: str, sha256: str) -> Path:
    """Record where a cached artifact came from and its content hash.

    Returns:
        Path of the manifest file
    """
    manifest = manifest_path_for(artifact)
    data = {
        "name": artifact.name,
        "url": url,
        "sha256": sha256,
        "size": artifact.stat().st_size,
        "install_date": datetime.now(timezone.utc).isoformat(timespec="seconds"),
    }
    tmp = manifest.with_name(manifest.name + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    tmp.replace(manifest)
    return manifest


def read_manifest(artifact: Path) -> Optional[dict[str, Any]]:
    """Read an artifact's manifest, or None if it is missing or unreadable."""
    manifest = manifest_path_for(artifact)
    try:
        with open(manifest, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None
