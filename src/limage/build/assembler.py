"""
Bootable image assembly.

Pipeline (each phase needs what the previous one produced):
    1. Build the kernel (skipped when the runner hook hands us a binary)
    2. Fetch OVMF firmware
    3. Ensure the Limine bootloader
    4. Populate the staging tree from scratch
    5. Package the tree with xorriso and install the BIOS boot sector

A configured filesystem image is built after the ISO.
"""

import logging
from pathlib import Path
from typing import Optional

from ..config import DEFAULT_LIMINE_CONFIG, Architecture, LimageConfig
from ..errors import ConfigError, PackagingError
from ..output import TimedLogger, log_detail, log_image_path
from ..packages.bootloader import (
    BIOS_CD_IMAGE,
    LIMINE_CONFIG,
    UEFI_CD_IMAGE,
    BootloaderStager,
    render_config,
)
from ..packages.firmware import FirmwareFetcher
from ..paths import BuildPaths
from ..subprocess_utils import CommandArg, ProcessRunner
from .build_profiles import format_profile_banner
from .filesystem import FilesystemImageBuilder
from .kernel import KernelBuilder
from .staging import KERNEL, KERNEL_BOOT_PATH, StagingTree, firmware_entry

logger = logging.getLogger(__name__)

TOTAL_PHASES = 5


def xorriso_command(staging_dir: Path, image_path: Path) -> list[CommandArg]:
    """Hybrid BIOS/UEFI ISO creation command for a staged Limine tree."""
    return [
        "xorriso", "-as", "mkisofs",
        "-b", BIOS_CD_IMAGE,
        "-no-emul-boot",
        "-boot-load-size", "4",
        "-boot-info-table",
        "--efi-boot", UEFI_CD_IMAGE,
        "-efi-boot-part",
        "--efi-boot-image",
        "--protective-msdos-label",
        staging_dir,
        "-o", image_path,
    ]


class ImageAssembler:
    """Turns a kernel binary into a bootable ISO.

    Args:
        config: Resolved project configuration
        paths: Directory conventions for this invocation
        fetcher: Firmware fetcher
        stager: Bootloader stager
        runner: Process seam for cargo, xorriso and the Limine installer
    """

    def __init__(
        self,
        config: LimageConfig,
        paths: BuildPaths,
        fetcher: FirmwareFetcher,
        stager: BootloaderStager,
        runner: ProcessRunner,
    ):
        self.config = config
        self.paths = paths
        self.fetcher = fetcher
        self.stager = stager
        self.runner = runner
        self.tree = StagingTree.for_architecture(paths.staging_dir, str(config.architecture))

    def build(self, kernel: Optional[Path] = None) -> Path:
        """Assemble the image and return its path.

        Args:
            kernel: Prebuilt kernel binary (runner hook). When None the kernel
                is built with cargo first.

        Raises:
            ConfigError: If the architecture is unsupported or a configured
                Limine config template does not exist
            BuildError: If the kernel or bootloader build fails
            FetchError: If an artifact cannot be obtained
            PackagingError: If staging or packaging fails
        """
        if not isinstance(self.config.architecture, Architecture):
            raise ConfigError(f"unsupported architecture {self.config.architecture!r}")
        arch = str(self.config.architecture)
        template = self._config_template()
        log_detail(format_profile_banner(self.config.profile, arch), verbose_only=True)

        with TimedLogger("Building kernel", phase=(1, TOTAL_PHASES)) as step:
            if kernel is None:
                kernel = KernelBuilder(self.config, self.paths, self.runner).build()
            else:
                step.detail(f"Using {kernel}")
                if not kernel.is_file():
                    raise PackagingError(f"Kernel binary not found: {kernel}")

        with TimedLogger("Fetching OVMF firmware", phase=(2, TOTAL_PHASES)):
            firmware = self.fetcher.ensure_all(arch)

        with TimedLogger("Preparing Limine", phase=(3, TOTAL_PHASES)):
            bootloader_dir = self.stager.ensure_bootloader(self.config.bootloader_revision)

        with TimedLogger("Staging image tree", phase=(4, TOTAL_PHASES)):
            self.tree.reset()
            self.stager.stage(bootloader_dir, self.tree, template)
            self.tree.copy_in(KERNEL, kernel)
            template = self.tree.read_text(LIMINE_CONFIG)
            self.tree.write_text(LIMINE_CONFIG, render_config(template, KERNEL_BOOT_PATH))
            for kind, source in firmware.items():
                self.tree.copy_in(firmware_entry(arch, kind), source)
            self.tree.verify_complete()

        image = self.paths.image_path
        with TimedLogger("Packaging ISO", phase=(5, TOTAL_PHASES)):
            try:
                image.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise PackagingError(f"Failed to create {image.parent}: {e}") from e
            self._package(xorriso_command(self.tree.root, image), "xorriso")
            installer = self.stager.installer_path(bootloader_dir)
            self._package([installer, "bios-install", image], "limine bios-install")

        if self.config.filesystem is not None:
            with TimedLogger("Building filesystem image"):
                FilesystemImageBuilder(self.config.filesystem, self.paths, self.runner).build()

        log_image_path(image)
        return image

    def _config_template(self) -> Path:
        if self.config.limine_config is None:
            # stage() falls back to the built-in template when this is absent
            return self.paths.resolve(DEFAULT_LIMINE_CONFIG)
        template = self.paths.resolve(self.config.limine_config)
        if not template.is_file():
            raise ConfigError(f"Limine config template not found: {template}")
        return template

    def _package(self, cmd: list[CommandArg], tool: str) -> None:
        try:
            result = self.runner.run(cmd, cwd=self.paths.project_dir, capture=True)
        except OSError as e:
            raise PackagingError(f"Failed to run {tool}: {e}") from e
        if not result.ok:
            raise PackagingError(f"{tool} failed with exit code {result.returncode}", output=result.output)
