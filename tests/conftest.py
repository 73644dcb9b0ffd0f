"""Pytest configuration and fixtures for limage tests.

Besides the stdio restoration needed on Python 3.13 (see
https://github.com/pytest-dev/pytest/issues/11439), this provides the shared
fixtures for the image pipeline: a recording fake process runner, a sample
kernel crate and a prepopulated artifact cache. No test starts a real child
process or touches the network.
"""

import sys
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import pytest

from limage.output import set_verbose
from limage.packages.bootloader import BOOTLOADER_LAYOUT, INSTALLER_NAME
from limage.packages.cache import Cache
from limage.subprocess_utils import ProcessResult

# Suppress ResourceWarnings from file cleanup in Python 3.13
if sys.version_info >= (3, 13):
    warnings.filterwarnings("ignore", category=ResourceWarning)


SAMPLE_MANIFEST = """\
[package]
name = "kernel"
version = "0.1.0"
edition = "2021"

[package.metadata.limage]
test-success-exit-code = 33
test-args = ["-device", "isa-debug-exit,iobase=0xf4,iosize=0x04", "-serial", "stdio", "-display", "none"]
"""

KERNEL_REL = Path("target") / "x86_64-unknown-none" / "debug" / "kernel"


@dataclass
class RecordedCall:
    """One invocation seen by FakeRunner."""

    argv: list[str]
    cwd: Optional[Path]
    timeout: Optional[float]
    capture: bool

    @property
    def program(self) -> str:
        return Path(self.argv[0]).name


Handler = Callable[[list[str]], ProcessResult]


class FakeRunner:
    """ProcessRunner that records commands and returns scripted results.

    Programs without a handler succeed with exit code 0.
    """

    def __init__(self) -> None:
        self.calls: list[RecordedCall] = []
        self._handlers: dict[str, Handler] = {}

    def on(self, program: str, result: Optional[ProcessResult] = None, handler: Optional[Handler] = None) -> None:
        if handler is None:
            fixed = result if result is not None else ProcessResult(returncode=0)
            handler = lambda argv: fixed  # noqa: E731
        self._handlers[program] = handler

    def run(self, cmd, cwd=None, timeout=None, capture=False) -> ProcessResult:
        argv = [str(c) for c in cmd]
        call = RecordedCall(argv=argv, cwd=cwd, timeout=timeout, capture=capture)
        self.calls.append(call)
        handler = self._handlers.get(call.program)
        if handler is None:
            return ProcessResult(returncode=0)
        return handler(argv)

    def programs(self) -> list[str]:
        return [call.program for call in self.calls]

    def calls_to(self, program: str) -> list[RecordedCall]:
        return [call for call in self.calls if call.program == program]


def fake_xorriso(argv: list[str]) -> ProcessResult:
    """Write a placeholder image where xorriso would have."""
    image = Path(argv[argv.index("-o") + 1])
    image.write_bytes(b"ISO")
    return ProcessResult(returncode=0)


@pytest.fixture
def fake_runner() -> FakeRunner:
    runner = FakeRunner()
    runner.on("xorriso", handler=fake_xorriso)
    return runner


@pytest.fixture
def sample_project(tmp_path: Path) -> Path:
    """A kernel crate with limage metadata and an already built kernel binary."""
    project = tmp_path / "kernel"
    project.mkdir()
    (project / "Cargo.toml").write_text(SAMPLE_MANIFEST, encoding="utf-8")
    kernel = project / KERNEL_REL
    kernel.parent.mkdir(parents=True)
    kernel.write_bytes(b"\x7fELF stub kernel")
    return project


@pytest.fixture
def populated_cache(tmp_path: Path) -> Cache:
    """Cache holding x86_64 OVMF files and a built Limine v8.x-binary clone."""
    cache = Cache(tmp_path / "cache")

    for kind in ("code", "vars"):
        path = cache.get_firmware_path("x86_64", f"ovmf-{kind}-x86_64.fd")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(f"OVMF {kind}".encode())

    bootloader_dir = cache.get_bootloader_path("v8.x-binary")
    bootloader_dir.mkdir(parents=True)
    for filename in BOOTLOADER_LAYOUT.values():
        (bootloader_dir / filename).write_bytes(filename.encode())
    (bootloader_dir / INSTALLER_NAME).write_bytes(b"limine utility")
    return cache


@pytest.fixture(autouse=True)
def _reset_verbose():
    yield
    set_verbose(False)


@pytest.fixture(autouse=True)
def _restore_stdio():  # noqa: PT004
    """Ensure stdout/stderr are always restored after each test.

    This prevents "I/O operation on closed file" errors in Python 3.13
    when tests raise exceptions that close stdout/stderr.
    """
    yield

    # Restore if they were closed during the test
    if sys.stdout.closed:
        sys.stdout = sys.__stdout__
    if sys.stderr.closed:
        sys.stderr = sys.__stderr__
