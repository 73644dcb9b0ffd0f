"""
Directory conventions for limage.

All locations the pipeline reads or writes are collected in a single
``BuildPaths`` record created once by the CLI and handed to every component.
Components never derive paths from the environment or the working directory.

Cache modes:
- LIMAGE_CACHE_DIR set: that directory
- Development (LIMAGE_DEV_MODE=1): ~/.limage/cache_dev/ (isolated from prod)
- Production (default): ~/.limage/cache/

Project layout (relative to the crate root):
- target/iso_root/   staging tree, rebuilt on every invocation
- target/kernel.iso  default image path
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_IMAGE_PATH = Path("target") / "kernel.iso"
STAGING_DIR_NAME = "iso_root"


def is_dev_mode() -> bool:
    """Check if development mode is enabled."""
    return os.environ.get("LIMAGE_DEV_MODE") == "1"


def get_cache_root() -> Path:
    """Get the user-local cache root.

    Priority: LIMAGE_CACHE_DIR > LIMAGE_DEV_MODE > default.
    """
    cache_env = os.environ.get("LIMAGE_CACHE_DIR")
    if cache_env:
        return Path(cache_env).resolve()
    if is_dev_mode():
        return Path.home() / ".limage" / "cache_dev"
    return Path.home() / ".limage" / "cache"


@dataclass(frozen=True)
class BuildPaths:
    """Explicit directory record passed into every pipeline component.

    Attributes:
        project_dir: Crate root containing Cargo.toml
        target_dir: Build output directory (project_dir/target)
        staging_dir: Staging tree mirrored into the ISO
        image_path: Output ISO path
        cache_dir: User-local cache root (firmware, bootloader clones)
    """

    project_dir: Path
    target_dir: Path
    staging_dir: Path
    image_path: Path
    cache_dir: Path

    @classmethod
    def for_project(
        cls,
        project_dir: Path,
        cache_dir: Path,
        image_path: Optional[Path] = None,
    ) -> "BuildPaths":
        """Derive the standard layout for a crate.

        Args:
            project_dir: Crate root
            cache_dir: Cache root (usually get_cache_root())
            image_path: Image path, relative paths resolved against project_dir
        """
        project_dir = project_dir.resolve()
        target_dir = project_dir / "target"
        image = image_path if image_path is not None else DEFAULT_IMAGE_PATH
        if not image.is_absolute():
            image = project_dir / image
        return cls(
            project_dir=project_dir,
            target_dir=target_dir,
            staging_dir=target_dir / STAGING_DIR_NAME,
            image_path=image,
            cache_dir=cache_dir,
        )

    def resolve(self, path: Path) -> Path:
        """Resolve a manifest-relative path against the project directory."""
        return path if path.is_absolute() else self.project_dir / path
