"""
Timestamped console output for limage.

Every line is prefixed with the time elapsed since launch (MM:SS.cc) so a slow
step in the image pipeline is easy to spot:

    00:00.02 limage v0.3.0
    00:00.02 [1/5] Building kernel...
    00:03.41       Done (3.39s)
    00:03.41 [2/5] Fetching OVMF firmware...
    00:03.42       ovmf-code-x86_64.fd (cached)

Child tools (cargo, make, xorriso, qemu) write straight to the terminal; only
limage's own progress goes through this module.

Usage:
    from limage.output import log, log_phase, log_detail

    log_phase(1, 5, "Building kernel...")
    log_detail("Profile: test")
"""

import sys
import time
from pathlib import Path
from types import TracebackType
from typing import Optional, TextIO

_start_time: Optional[float] = None
_output_stream: Optional[TextIO] = None  # None means the current sys.stdout
_verbose: bool = False


def init_timer(output_stream: Optional[TextIO] = None) -> None:
    """
    Initialize the program timer.

    Args:
        output_stream: Optional output stream (defaults to sys.stdout)
    """
    global _start_time, _output_stream
    _start_time = time.time()
    if output_stream is not None:
        _output_stream = output_stream


def set_verbose(verbose: bool) -> None:
    """Enable or disable messages logged with ``verbose_only=True``."""
    global _verbose
    _verbose = verbose


def get_elapsed() -> float:
    """Seconds since the timer was initialized."""
    if _start_time is None:
        init_timer()
    return time.time() - _start_time  # type: ignore


def format_timestamp() -> str:
    """
    Format the current elapsed time as MM:SS.cc.

    Returns:
        Formatted timestamp string
    """
    elapsed = get_elapsed()
    minutes = int(elapsed // 60)
    seconds = elapsed % 60
    return f"{minutes:02d}:{seconds:05.2f}"


def _print(message: str) -> None:
    stream = _output_stream if _output_stream is not None else sys.stdout
    stream.write(f"{format_timestamp()} {message}\n")
    stream.flush()


def log(message: str, verbose_only: bool = False) -> None:
    """
    Log a message with timestamp.

    Args:
        message: Message to log
        verbose_only: If True, only print if verbose mode is enabled
    """
    if verbose_only and not _verbose:
        return
    _print(message)


def log_phase(phase: int, total: int, message: str, verbose_only: bool = False) -> None:
    """
    Log a pipeline phase message.

    Format: [N/M] message
    """
    if verbose_only and not _verbose:
        return
    _print(f"[{phase}/{total}] {message}")


def log_detail(message: str, indent: int = 6, verbose_only: bool = False) -> None:
    """Log an indented detail line under the current phase."""
    if verbose_only and not _verbose:
        return
    _print(f"{' ' * indent}{message}")


def log_artifact(name: str, cached: bool) -> None:
    """Log a fetched artifact, marking cache hits."""
    suffix = " (cached)" if cached else ""
    log_detail(f"{name}{suffix}")


def log_command(cmd: list[str]) -> None:
    """Log a child command line (verbose mode only)."""
    log_detail(f"$ {' '.join(str(c) for c in cmd)}", verbose_only=True)


def log_header(title: str, version: str) -> None:
    _print(f"{title} v{version}")


def log_image_path(path: Path) -> None:
    log_detail(f"Image: {path}")


def log_error(message: str) -> None:
    _print(f"ERROR: {message}")


def log_warning(message: str) -> None:
    _print(f"WARNING: {message}")


def log_success(message: str) -> None:
    _print(message)


class TimedLogger:
    """
    Context manager that logs an operation and how long it took.

    Usage:
        with TimedLogger("Packaging ISO", phase=(4, 5)) as step:
            step.detail("xorriso")
        # logs "Done (1.23s)" on success
    """

    def __init__(self, operation: str, phase: Optional[tuple[int, int]] = None, verbose_only: bool = False):
        self.operation = operation
        self.phase = phase
        self.verbose_only = verbose_only
        self.start_time = 0.0

    def __enter__(self) -> "TimedLogger":
        self.start_time = time.time()
        if self.phase:
            log_phase(self.phase[0], self.phase[1], f"{self.operation}...", self.verbose_only)
        else:
            log(f"{self.operation}...", self.verbose_only)
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        del exc_val, exc_tb  # Unused
        elapsed = time.time() - self.start_time
        if exc_type is None:
            log_detail(f"Done ({elapsed:.2f}s)", verbose_only=self.verbose_only)
        return None

    def detail(self, message: str) -> None:
        """Log a detail message within this operation."""
        log_detail(message, verbose_only=self.verbose_only)
