"""Subprocess utilities and the process-execution seam.

Every external tool limage drives (git, make, cargo, xorriso, the limine
installer, qemu) is started through a ``ProcessRunner``. The parent blocks on
the child and treats its exit status as the only success/failure signal.
Tests substitute a fake runner so no real process, file or network is touched.
"""

import logging
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence, Union

import psutil

from .output import log_command

logger = logging.getLogger(__name__)

CommandArg = Union[str, Path]


def get_subprocess_creation_flags() -> int:
    """Get platform-specific subprocess creation flags.

    Returns:
        - Windows: subprocess.CREATE_NO_WINDOW (prevents console window)
        - Other platforms: 0 (no special flags)
    """
    if sys.platform == "win32":
        return subprocess.CREATE_NO_WINDOW
    return 0


def _apply_platform_defaults(kwargs: dict[str, Any]) -> dict[str, Any]:
    default_flags = get_subprocess_creation_flags()

    if "creationflags" in kwargs:
        kwargs["creationflags"] = kwargs["creationflags"] | default_flags
    elif default_flags:
        kwargs["creationflags"] = default_flags

    # Child processes must not read from the parent's console unless asked to
    if "stdin" not in kwargs:
        kwargs["stdin"] = subprocess.DEVNULL
    return kwargs


def safe_popen(cmd: list[str], **kwargs: Any) -> subprocess.Popen:
    """Execute subprocess.Popen with platform-specific flags.

    Applies CREATE_NO_WINDOW on Windows and redirects stdin to DEVNULL unless
    the caller passes ``stdin`` explicitly. Custom ``creationflags`` are OR'd
    with the platform defaults.
    """
    return subprocess.Popen(cmd, **_apply_platform_defaults(kwargs))


def kill_process_tree(pid: int, grace_period: float = 3.0) -> int:
    """Terminate a process and all of its descendants, children first.

    Processes still alive after ``grace_period`` seconds are killed.

    Returns:
        Number of processes signalled
    """
    try:
        root = psutil.Process(pid)
        procs = root.children(recursive=True)
        procs.reverse()
        procs.append(root)
    except psutil.NoSuchProcess:
        return 0

    signalled = 0
    for proc in procs:
        try:
            proc.terminate()
            signalled += 1
        except psutil.NoSuchProcess:
            pass

    _gone, alive = psutil.wait_procs(procs, timeout=grace_period)
    for proc in alive:
        logger.warning("Force killing process %d", proc.pid)
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    return signalled


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of a child process.

    Attributes:
        returncode: Raw exit status (negative on POSIX when killed by a signal)
        output: Combined stdout/stderr when captured, empty otherwise
        timed_out: True if the process was killed because the timeout expired
    """

    returncode: int
    output: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def signal(self) -> Optional[int]:
        """Signal number that terminated the process, if any."""
        if self.returncode < 0:
            return -self.returncode
        return None


class ProcessRunner(Protocol):
    """Run a command with arguments in a working directory and return its exit status."""

    def run(
        self,
        cmd: Sequence[CommandArg],
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        capture: bool = False,
    ) -> ProcessResult: ...


class SubprocessRunner:
    """ProcessRunner backed by real child processes.

    Output is passed through to the terminal unfiltered unless ``capture`` is
    set, in which case stdout and stderr are merged and returned. Raises
    OSError (e.g. FileNotFoundError) if the executable cannot be started.
    """

    def run(
        self,
        cmd: Sequence[CommandArg],
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        capture: bool = False,
    ) -> ProcessResult:
        argv = [str(c) for c in cmd]
        log_command(argv)

        kwargs: dict[str, Any] = {"cwd": str(cwd) if cwd else None}
        if capture:
            kwargs.update(
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        else:
            # Inherit the terminal so interactive emulator sessions keep working
            kwargs["stdin"] = None

        proc = safe_popen(argv, **kwargs)
        try:
            out, _ = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.debug("%s exceeded %ss, killing process tree", argv[0], timeout)
            kill_process_tree(proc.pid)
            out, _ = proc.communicate()
            return ProcessResult(returncode=proc.returncode, output=out or "", timed_out=True)
        except KeyboardInterrupt:
            kill_process_tree(proc.pid)
            raise

        logger.debug("%s exited with %d", argv[0], proc.returncode)
        return ProcessResult(returncode=proc.returncode, output=out or "")
