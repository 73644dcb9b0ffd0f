"""OVMF firmware download and caching.

QEMU needs UEFI firmware (OVMF) to boot the ISO's EFI loader. The firmware is
downloaded once per architecture from the edk2-ovmf-nightly releases and kept
in the user cache:

    ovmf-code-<arch>.fd   read-only firmware code
    ovmf-vars-<arch>.fd   NVRAM variable store template

A cached file is trusted without touching the network as long as its content
hash matches the manifest recorded when it was downloaded. A hash mismatch
means the file was truncated or corrupted, and it is downloaded again.
"""

import hashlib
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Optional

import requests
from tqdm import tqdm

from ..errors import FetchError
from ..output import log_artifact, log_warning
from .cache import Cache, read_manifest, write_manifest

logger = logging.getLogger(__name__)

OVMF_BASE_URL = "https://github.com/osdev0/edk2-ovmf-nightly/releases/latest/download"

_DOWNLOAD_TIMEOUT = 30  # seconds, per request (connect/read)
_CHUNK_SIZE = 8192


class FirmwareKind(Enum):
    """OVMF artifact kinds."""

    CODE = "code"
    VARS = "vars"

    def __str__(self) -> str:
        return self.value


def firmware_filename(architecture: str, kind: FirmwareKind) -> str:
    """File name of an OVMF artifact, e.g. ``ovmf-code-x86_64.fd``."""
    return f"ovmf-{kind.value}-{architecture}.fd"


def firmware_url(architecture: str, kind: FirmwareKind) -> str:
    return f"{OVMF_BASE_URL}/{firmware_filename(architecture, kind)}"


class FirmwareFetcher:
    """Idempotently obtains OVMF firmware files, caching them on disk.

    Fetches are sequential; a build needs at most one file per kind.
    """

    def __init__(self, cache: Cache, show_progress: bool = True, timeout: float = _DOWNLOAD_TIMEOUT):
        """Initialize firmware fetcher.

        Args:
            cache: Cache layout
            show_progress: Whether to show a download progress bar
            timeout: Network timeout in seconds
        """
        self.cache = cache
        self.show_progress = show_progress
        self.timeout = timeout

    def get_path(self, architecture: str, kind: FirmwareKind) -> Path:
        return self.cache.get_firmware_path(architecture, firmware_filename(architecture, kind))

    def fetch(self, architecture: str, kind: FirmwareKind) -> Path:
        """Return the local path of a firmware file, downloading it if needed.

        Args:
            architecture: Architecture name (e.g. "x86_64")
            kind: Which OVMF artifact

        Returns:
            Path to the cached file

        Raises:
            FetchError: If the download or writing the cache fails
        """
        path = self.get_path(architecture, kind)
        url = firmware_url(architecture, kind)

        if path.exists():
            if self._is_valid(path, url):
                log_artifact(path.name, cached=True)
                return path
            log_warning(f"Cached {path.name} is corrupt, downloading again")
            try:
                path.unlink()
            except OSError as e:
                raise FetchError(f"Failed to remove corrupt {path}: {e}") from e

        self._download(url, path)
        log_artifact(path.name, cached=False)
        return path

    def ensure_all(self, architecture: str) -> dict[FirmwareKind, Path]:
        """Fetch every firmware kind for an architecture, one after another."""
        return {kind: self.fetch(architecture, kind) for kind in FirmwareKind}

    def _is_valid(self, path: Path, url: str) -> bool:
        manifest = read_manifest(path)
        try:
            actual = Cache.hash_file(path)
            if manifest is None:
                # Placed by hand or by an older limage: adopt it as-is
                logger.debug("Adopting unmanifested cache entry %s", path)
                write_manifest(path, url, actual)
                return True
        except OSError as e:
            raise FetchError(f"Failed to read cached firmware {path}: {e}") from e
        return manifest.get("sha256") == actual

    def _download(self, url: str, path: Path) -> None:
        """Stream ``url`` into ``path``.

        The response is written to ``<path>.download`` and renamed only after
        the transfer completes, so an interrupted download never looks cached.
        """
        temp_file = path.with_name(path.name + ".download")
        logger.debug("Downloading %s -> %s", url, path)
        sha256 = hashlib.sha256()

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with requests.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                total = _content_length(response)
                with open(temp_file, "wb") as f, tqdm(
                    total=total,
                    desc=path.name,
                    unit="B",
                    unit_scale=True,
                    leave=False,
                    disable=not self.show_progress,
                ) as pbar:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                            sha256.update(chunk)
                            pbar.update(len(chunk))
            os.replace(temp_file, path)
            write_manifest(path, url, sha256.hexdigest())
        except requests.RequestException as e:
            _cleanup_temp_file(temp_file)
            raise FetchError(f"Failed to download {url}: {e}") from e
        except OSError as e:
            _cleanup_temp_file(temp_file)
            raise FetchError(f"Failed to cache {path.name}: {e}") from e


def _content_length(response: requests.Response) -> Optional[int]:
    try:
        return int(response.headers.get("content-length", 0)) or None
    except ValueError:
        return None


def _cleanup_temp_file(temp_file: Path) -> None:
    try:
        temp_file.unlink(missing_ok=True)
    except OSError:
        logger.debug("Could not remove %s", temp_file)
