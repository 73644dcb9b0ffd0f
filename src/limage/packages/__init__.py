"""External artifacts for limage.

This package downloads and caches what the image needs but the project does
not ship: OVMF firmware and the Limine bootloader.
"""

from .bootloader import BootloaderStager
from .cache import Cache
from .firmware import FirmwareFetcher, FirmwareKind

__all__ = [
    "BootloaderStager",
    "Cache",
    "FirmwareFetcher",
    "FirmwareKind",
]
