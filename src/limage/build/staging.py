"""Staging tree for ISO packaging.

The staging tree (``target/iso_root``) mirrors the file layout of the bootable
image. Limine dictates where its own files must live; limage adds the kernel,
the rendered bootloader configuration and the firmware:

    iso_root/
    ├── boot/
    │   ├── firmware/ovmf-{code,vars}-<arch>.fd
    │   ├── kernel/kernel
    │   └── limine/
    │       ├── limine.conf
    │       ├── limine-bios.sys
    │       ├── limine-bios-cd.bin
    │       └── limine-uefi-cd.bin
    └── EFI/BOOT/
        ├── BOOTX64.EFI
        └── BOOTIA32.EFI

The tree is wiped and rebuilt on every invocation so a stale file can never be
packaged, and packaging refuses to run while any required path is missing.
"""

import shutil
from pathlib import Path
from typing import Iterable

from ..errors import PackagingError
from ..packages.bootloader import BOOTLOADER_LAYOUT, LIMINE_CONFIG
from ..packages.firmware import FirmwareKind, firmware_filename

KERNEL = "boot/kernel/kernel"

# Path of the kernel as seen by Limine at boot
KERNEL_BOOT_PATH = f"boot():/{KERNEL}"


def firmware_entry(architecture: str, kind: FirmwareKind) -> str:
    return f"boot/firmware/{firmware_filename(architecture, kind)}"


def required_paths(architecture: str) -> tuple[str, ...]:
    """Every path that must be populated before the tree is packaged."""
    return (
        *BOOTLOADER_LAYOUT,
        LIMINE_CONFIG,
        KERNEL,
        *(firmware_entry(architecture, kind) for kind in FirmwareKind),
    )


class StagingTree:
    """A directory mirroring the bootable image's file layout.

    Attributes:
        root: Staging directory
        required: Relative paths that must exist before packaging
    """

    def __init__(self, root: Path, required: Iterable[str]):
        self.root = root
        self.required = tuple(required)

    @classmethod
    def for_architecture(cls, root: Path, architecture: str) -> "StagingTree":
        return cls(root, required_paths(architecture))

    def path(self, rel: str) -> Path:
        return self.root / rel

    def reset(self) -> None:
        """Delete everything staged by a previous run and start empty.

        Raises:
            PackagingError: If the old tree cannot be removed
        """
        try:
            if self.root.exists():
                shutil.rmtree(self.root)
            self.root.mkdir(parents=True)
        except OSError as e:
            raise PackagingError(f"Failed to reset staging tree {self.root}: {e}") from e

    def copy_in(self, rel: str, source: Path) -> Path:
        """Copy ``source`` to ``rel`` inside the tree.

        Raises:
            PackagingError: If the source cannot be copied
        """
        dest = self.path(rel)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, dest)
        except OSError as e:
            raise PackagingError(f"Failed to stage {rel} from {source}: {e}") from e
        return dest

    def write_text(self, rel: str, text: str) -> Path:
        dest = self.path(rel)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_text(text, encoding="utf-8")
        except OSError as e:
            raise PackagingError(f"Failed to write {rel}: {e}") from e
        return dest

    def read_text(self, rel: str) -> str:
        try:
            return self.path(rel).read_text(encoding="utf-8")
        except OSError as e:
            raise PackagingError(f"Failed to read staged {rel}: {e}") from e

    def populated(self) -> set[str]:
        """Relative POSIX paths of every file currently in the tree."""
        if not self.root.exists():
            return set()
        return {p.relative_to(self.root).as_posix() for p in self.root.rglob("*") if p.is_file()}

    def missing(self) -> list[str]:
        return [rel for rel in self.required if not self.path(rel).is_file()]

    def verify_complete(self) -> None:
        """Refuse to continue on a partially populated tree.

        Raises:
            PackagingError: Listing every required path that is missing
        """
        missing = self.missing()
        if missing:
            raise PackagingError(
                f"Staging tree {self.root} is incomplete, missing: {', '.join(missing)}"
            )
