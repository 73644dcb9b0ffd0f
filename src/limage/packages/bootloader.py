"""Limine bootloader clone, build and staging.

Limine publishes prebuilt boot files on its ``vX.x-binary`` branches; the only
thing left to compile is the ``limine`` host utility that installs the BIOS
boot sector into the ISO. The clone is cached per revision and reused without
any staleness check:

    <cache_root>/bootloader/limine-v8.x-binary/
    ├── BOOTX64.EFI, BOOTIA32.EFI
    ├── limine-bios.sys, limine-bios-cd.bin, limine-uefi-cd.bin
    ├── limine.c, Makefile
    └── limine                  # built by `make`
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from ..errors import BuildError, FetchError, PackagingError
from ..output import log_artifact, log_detail
from ..subprocess_utils import ProcessRunner
from .cache import Cache

if TYPE_CHECKING:
    from ..build.staging import StagingTree

logger = logging.getLogger(__name__)

LIMINE_REPO_URL = "https://github.com/limine-bootloader/limine.git"
INSTALLER_NAME = "limine"

# Staging path -> file name in the Limine binary release. Fixed by Limine.
BOOTLOADER_LAYOUT: dict[str, str] = {
    "boot/limine/limine-bios.sys": "limine-bios.sys",
    "boot/limine/limine-bios-cd.bin": "limine-bios-cd.bin",
    "boot/limine/limine-uefi-cd.bin": "limine-uefi-cd.bin",
    "EFI/BOOT/BOOTX64.EFI": "BOOTX64.EFI",
    "EFI/BOOT/BOOTIA32.EFI": "BOOTIA32.EFI",
}
BIOS_CD_IMAGE = "boot/limine/limine-bios-cd.bin"
UEFI_CD_IMAGE = "boot/limine/limine-uefi-cd.bin"
LIMINE_CONFIG = "boot/limine/limine.conf"

# Placeholder replaced with the kernel's boot path when the config is rendered
KERNEL_PLACEHOLDER = "{kernel}"

DEFAULT_CONFIG_TEMPLATE = """\
timeout: 0

/limage kernel
    protocol: limine
    path: {kernel}
"""


class BootloaderStager:
    """Obtains Limine at a pinned revision and stages its files.

    Args:
        cache: Cache layout
        runner: Process seam used for git and make
        repo_url: Repository to clone from
    """

    def __init__(self, cache: Cache, runner: ProcessRunner, repo_url: str = LIMINE_REPO_URL):
        self.cache = cache
        self.runner = runner
        self.repo_url = repo_url

    def ensure_bootloader(self, revision: str) -> Path:
        """Return a built Limine tree for ``revision``.

        An existing clone is reused as-is. Otherwise it is cloned into a
        temporary directory next to its final location and renamed into place
        once the clone succeeds.

        Raises:
            FetchError: If git is missing or the clone fails
            BuildError: If building the host utility fails
        """
        dest = self.cache.get_bootloader_path(revision)
        if dest.is_dir():
            log_artifact(f"limine {revision}", cached=True)
        else:
            self._clone(revision, dest)
            log_artifact(f"limine {revision}", cached=False)
        self._build(dest)
        return dest

    def installer_path(self, bootloader_dir: Path) -> Path:
        return bootloader_dir / INSTALLER_NAME

    def stage(self, bootloader_dir: Path, tree: "StagingTree", template: Optional[Path] = None) -> None:
        """Copy Limine's boot files and the config template into the tree.

        Args:
            bootloader_dir: Directory returned by ensure_bootloader()
            tree: Staging tree to populate
            template: Project config template; the built-in default is used
                when it is None or does not exist

        Raises:
            PackagingError: If a file Limine requires is missing from the clone
        """
        for rel, filename in BOOTLOADER_LAYOUT.items():
            source = bootloader_dir / filename
            if not source.is_file():
                raise PackagingError(f"Limine file {filename} not found in {bootloader_dir}")
            tree.copy_in(rel, source)

        if template is not None and template.is_file():
            log_detail(f"Config template: {template}", verbose_only=True)
            tree.copy_in(LIMINE_CONFIG, template)
        else:
            log_detail("Config template: built-in default", verbose_only=True)
            tree.write_text(LIMINE_CONFIG, DEFAULT_CONFIG_TEMPLATE)

    def _clone(self, revision: str, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        temp_dir = Path(tempfile.mkdtemp(prefix=f".{dest.name}-", dir=dest.parent))
        cmd = ["git", "clone", f"--branch={revision}", "--depth=1", self.repo_url, str(temp_dir)]

        try:
            result = self.runner.run(cmd, capture=True)
        except OSError as e:
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise FetchError(f"Failed to run git: {e}") from e

        if not result.ok:
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise FetchError(
                f"Failed to clone Limine {revision} from {self.repo_url} (exit {result.returncode})",
                output=result.output,
            )
        temp_dir.rename(dest)
        logger.debug("Cloned Limine %s into %s", revision, dest)

    def _build(self, bootloader_dir: Path) -> None:
        if self.installer_path(bootloader_dir).exists():
            return
        try:
            result = self.runner.run(["make"], cwd=bootloader_dir, capture=True)
        except OSError as e:
            raise BuildError(f"Failed to run make: {e}") from e
        if not result.ok:
            raise BuildError(
                f"Failed to build the Limine utility (exit {result.returncode})",
                output=result.output,
            )


def render_config(template: str, kernel_boot_path: str) -> str:
    """Substitute the kernel path into a Limine config template."""
    return template.replace(KERNEL_PLACEHOLDER, kernel_boot_path)
