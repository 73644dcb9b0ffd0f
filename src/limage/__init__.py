"""limage - build bootable Limine images for freestanding kernels and run them in QEMU."""

__version__ = "0.3.0"

__all__ = ["__version__"]
