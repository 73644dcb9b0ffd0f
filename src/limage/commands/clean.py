"""Clean command implementation.

Removes what limage produced in the project (staging tree, ISO, filesystem
image) and, with ``--cache``, the user-wide firmware and bootloader cache.
"""

import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from ..config import LimageConfig
from ..output import log, log_error, log_success, log_warning
from ..packages.cache import Cache
from ..paths import BuildPaths


@dataclass
class CleanTarget:
    """A file or directory scheduled for removal."""

    label: str
    path: Path
    size_bytes: int


def format_size(size_bytes: int) -> str:
    """Format bytes as KB/MB/GB.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string (e.g., "95.1 MB")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"


def path_size(path: Path) -> int:
    """Total size in bytes of a file or directory tree."""
    if path.is_file():
        return path.stat().st_size
    total_size = 0
    for dirpath, _, filenames in os.walk(path):
        for filename in filenames:
            try:
                total_size += (Path(dirpath) / filename).stat().st_size
            except OSError:
                # removed while walking
                continue
    return total_size


def build_outputs(config: LimageConfig, paths: BuildPaths) -> list[Path]:
    outputs = [paths.staging_dir, paths.image_path]
    if config.filesystem is not None:
        outputs.append(paths.resolve(config.filesystem.image))
    return outputs


def cache_entries(cache: Cache) -> list[Path]:
    """Firmware architecture directories and bootloader clones, sorted."""
    entries: list[Path] = []
    for root in (cache.firmware_root, cache.bootloader_root):
        if root.is_dir():
            entries.extend(sorted(p for p in root.iterdir()))
    return entries


def collect_targets(config: LimageConfig, paths: BuildPaths, include_cache: bool) -> list[CleanTarget]:
    candidates = build_outputs(config, paths)
    if include_cache:
        candidates += cache_entries(Cache(paths.cache_dir))

    targets = []
    for path in candidates:
        if path.exists():
            label = path.relative_to(paths.project_dir).as_posix() if path.is_relative_to(paths.project_dir) else str(path)
            targets.append(CleanTarget(label=label, path=path, size_bytes=path_size(path)))
    return targets


def remove_targets(targets: list[CleanTarget], dry_run: bool) -> tuple[int, int]:
    """Delete targets, continuing past individual failures.

    Returns:
        Tuple of (deleted_count, failed_count)
    """
    deleted_count = 0
    failed_count = 0

    for target in targets:
        size = format_size(target.size_bytes)
        if dry_run:
            log(f"Would delete: {target.label} ({size})")
            continue
        try:
            if target.path.is_dir():
                shutil.rmtree(target.path)
            elif target.path.exists():
                target.path.unlink()
            else:
                log_warning(f"Already deleted: {target.label}")
                continue
            log_success(f"Deleted: {target.label} ({size})")
            deleted_count += 1
        except OSError as e:
            log_error(f"Failed to delete {target.label}: {e}")
            failed_count += 1

    return deleted_count, failed_count


def clean(config: LimageConfig, paths: BuildPaths, include_cache: bool = False, dry_run: bool = False) -> bool:
    """Main entry point for the clean command.

    Args:
        config: Resolved project configuration
        paths: Directory conventions
        include_cache: Also purge the user cache
        dry_run: Show what would be deleted without deleting

    Returns:
        True if everything was removed
    """
    targets = collect_targets(config, paths, include_cache)
    if not targets:
        log("Nothing to clean")
        return True

    if dry_run:
        log("Dry run: showing what would be deleted")

    deleted_count, failed_count = remove_targets(targets, dry_run)
    total_size = format_size(sum(t.size_bytes for t in targets))

    if dry_run:
        log(f"Total: {len(targets)} entries, {total_size} would be freed")
    elif deleted_count > 0:
        log_success(f"Removed {deleted_count} entries, freed {total_size}")
    if failed_count > 0:
        log_error(f"Failed to delete {failed_count} entries")

    return failed_count == 0
