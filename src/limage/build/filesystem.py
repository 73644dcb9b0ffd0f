"""Raw filesystem image attached to the VM as a second drive.

Kernels with a storage driver can be tested against a disk image populated
from a directory in the project (``filesystem-source-dir``). FAT images are
filled with mtools, ext4 images with ``mkfs.ext4 -d`` so no loop mount and no
root privileges are needed.
"""

import logging
from pathlib import Path
from typing import Optional, Sequence

from ..config import FilesystemConfig
from ..errors import PackagingError
from ..output import log_detail
from ..paths import BuildPaths
from ..subprocess_utils import CommandArg, ProcessRunner

logger = logging.getLogger(__name__)

IMAGE_SIZE = 64 * 1024 * 1024


class FilesystemImageBuilder:
    """Creates and populates the filesystem image."""

    def __init__(self, fs: FilesystemConfig, paths: BuildPaths, runner: ProcessRunner):
        self.fs = fs
        self.paths = paths
        self.runner = runner

    @property
    def image_path(self) -> Path:
        return self.paths.resolve(self.fs.image)

    def build(self) -> Path:
        """Build the image and return its path.

        Raises:
            PackagingError: If any step fails or the source directory is missing
        """
        if self.fs.builder:
            log_detail(f"Running filesystem builder: {' '.join(self.fs.builder)}")
            self._run(self.fs.builder, "filesystem builder", cwd=self.paths.project_dir)

        source = self.paths.resolve(self.fs.source_dir)
        if not source.is_dir():
            raise PackagingError(f"Filesystem source directory not found: {source}")

        image = self.image_path
        self._create_empty_image(image)

        if self.fs.kind.startswith("FAT"):
            self._populate_fat(image, source)
        else:
            self._run(["mkfs.ext4", "-q", "-F", "-d", source, image], "mkfs.ext4")

        log_detail(f"Filesystem image ({self.fs.kind}): {image}")
        return image

    def _create_empty_image(self, image: Path) -> None:
        try:
            image.parent.mkdir(parents=True, exist_ok=True)
            with open(image, "wb") as f:
                f.truncate(IMAGE_SIZE)
        except OSError as e:
            raise PackagingError(f"Failed to create filesystem image {image}: {e}") from e

    def _populate_fat(self, image: Path, source: Path) -> None:
        fat_bits = self.fs.kind.removeprefix("FAT")
        self._run(["mkfs.fat", "-F", fat_bits, image], "mkfs.fat")

        target = self.fs.target_dir.rstrip("/")
        if target:
            self._run(["mmd", "-i", image, f"::{target}"], "mmd")

        entries = sorted(source.iterdir())
        if entries:
            self._run(["mcopy", "-s", "-i", image, *entries, f"::{target}/"], "mcopy")

    def _run(self, cmd: Sequence[CommandArg], tool: str, cwd: Optional[Path] = None) -> None:
        try:
            result = self.runner.run(cmd, cwd=cwd, capture=True)
        except OSError as e:
            raise PackagingError(f"Failed to run {tool}: {e}") from e
        if not result.ok:
            raise PackagingError(f"{tool} failed with exit code {result.returncode}", output=result.output)
