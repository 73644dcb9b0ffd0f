"""
QEMU launch and test verdict evaluation.

In test mode the kernel ends the run by writing to QEMU's ``isa-debug-exit``
device. That device can only carry a byte, and QEMU exits with
``(value << 1) | 1``, so the guest's status survives the trip shifted left by
one with the low bit forced to 1:

    guest writes 0x10  ->  QEMU exits 33  ->  status 0x10

A low bit of 0 means QEMU exited some other way (for example a triple fault
with -no-reboot, or the window being closed) and there is no status to
decode. Such runs are reported as unevaluable rather than guessed at.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .build.staging import StagingTree, firmware_entry
from .config import LimageConfig, RunMode, require_test_success_exit_code
from .errors import ConfigError, RunnerError, TestTimeoutError, VerdictFailure
from .output import log, log_detail
from .packages.firmware import FirmwareKind
from .paths import BuildPaths
from .subprocess_utils import ProcessResult, ProcessRunner

logger = logging.getLogger(__name__)

IMAGE_PLACEHOLDER = "{}"
OVMF_CODE_PLACEHOLDER = "{ovmf-code}"
OVMF_VARS_PLACEHOLDER = "{ovmf-vars}"

SIGNAL_EXIT_BASE = 128


class RunnerState(Enum):
    """Lifecycle of a single emulator run."""

    IDLE = "idle"
    LAUNCHING = "launching"
    RUNNING = "running"
    COMPLETED = "completed"
    CRASHED = "crashed"
    TIMED_OUT = "timed_out"


class Verdict(Enum):
    """Outcome of a test-mode run."""

    SUCCESS = "success"
    FAILURE = "failure"
    CRASHED = "crashed"
    TIMED_OUT = "timed_out"
    UNEVALUABLE = "unevaluable"


def decode_exit_status(raw: int) -> Optional[int]:
    """Recover the guest's status from QEMU's exit code.

    Returns None when the low bit is clear, i.e. the guest never signalled.
    """
    if raw < 0 or raw & 1 == 0:
        return None
    return raw >> 1


def evaluate_test_status(raw: int, expected: Optional[int]) -> Verdict:
    """Compare a raw QEMU exit code against the expected guest status.

    Raises:
        ConfigError: If no expected status is configured
    """
    if expected is None:
        raise ConfigError("`test-success-exit-code` is not set; a test verdict cannot be evaluated without it")
    if raw < 0:
        return Verdict.CRASHED
    status = decode_exit_status(raw)
    if status is None:
        return Verdict.UNEVALUABLE
    return Verdict.SUCCESS if status == expected else Verdict.FAILURE


@dataclass(frozen=True)
class RunResult:
    """What a run produced and what this program should exit with.

    Attributes:
        mode: Interactive or test
        returncode: Raw emulator exit status
        verdict: Test verdict; None in interactive mode
        status: Decoded guest status, if any
        expected: Expected guest status in test mode
        exit_code: Exit code for this program
    """

    mode: RunMode
    returncode: int
    verdict: Optional[Verdict] = None
    status: Optional[int] = None
    expected: Optional[int] = None
    exit_code: int = 0

    def raise_for_verdict(self) -> None:
        """Turn a non-successful test verdict into the matching error.

        Interactive runs and successful tests return normally.
        """
        if self.verdict is None or self.verdict is Verdict.SUCCESS:
            return
        if self.verdict is Verdict.FAILURE:
            assert self.status is not None and self.expected is not None
            raise VerdictFailure(self.status, self.expected)
        if self.verdict is Verdict.TIMED_OUT:
            raise TestTimeoutError("QEMU did not exit before the test timeout")
        if self.verdict is Verdict.CRASHED:
            raise RunnerError(f"QEMU was terminated by signal {-self.returncode}")
        raise RunnerError(
            f"QEMU exited with {self.returncode}, which carries no test status "
            "(the guest did not write to the debug-exit device)"
        )


class Runner:
    """Launches the emulator on a built image.

    Args:
        config: Resolved project configuration
        paths: Directory conventions for this invocation
        runner: Process seam used to start QEMU
    """

    def __init__(self, config: LimageConfig, paths: BuildPaths, runner: ProcessRunner):
        self.config = config
        self.paths = paths
        self.runner = runner
        self.state = RunnerState.IDLE

    def build_command(self, image: Path, mode: RunMode) -> list[str]:
        """Compose the emulator command line for ``image``."""
        arch = str(self.config.architecture)
        tree = StagingTree.for_architecture(self.paths.staging_dir, arch)
        substitutions = {
            IMAGE_PLACEHOLDER: str(image),
            OVMF_CODE_PLACEHOLDER: str(tree.path(firmware_entry(arch, FirmwareKind.CODE))),
            OVMF_VARS_PLACEHOLDER: str(tree.path(firmware_entry(arch, FirmwareKind.VARS))),
        }

        cmd = []
        for arg in self.config.run_command:
            for placeholder, value in substitutions.items():
                arg = arg.replace(placeholder, value)
            cmd.append(arg)

        fs = self.config.filesystem
        if fs is not None:
            cmd += ["-drive", f"file={self.paths.resolve(fs.image)},format=raw"]

        if mode is RunMode.TEST:
            if self.config.test_no_reboot:
                cmd.append("-no-reboot")
            cmd += self.config.test_args
        else:
            cmd += self.config.run_args
        return cmd

    def run(self, image: Path, mode: RunMode) -> RunResult:
        """Run ``image`` in QEMU and evaluate the outcome.

        Raises:
            ConfigError: If test mode is requested without an expected status
            RunnerError: If QEMU cannot be started
        """
        expected = require_test_success_exit_code(self.config) if mode is RunMode.TEST else None
        timeout = self.config.test_timeout if mode is RunMode.TEST else None

        self.state = RunnerState.LAUNCHING
        cmd = self.build_command(image, mode)
        log(f"Running {image.name} in QEMU ({mode})")
        try:
            self.state = RunnerState.RUNNING
            result = self.runner.run(cmd, cwd=self.paths.project_dir, timeout=timeout)
        except OSError as e:
            self.state = RunnerState.IDLE
            raise RunnerError(f"Failed to launch {cmd[0]}: {e}") from e

        self.state = self._final_state(result)
        logger.debug("QEMU finished: state=%s returncode=%d", self.state.value, result.returncode)

        if mode is RunMode.INTERACTIVE:
            return RunResult(mode=mode, returncode=result.returncode, exit_code=_interactive_exit_code(result))
        return self._test_result(result, expected)

    def _final_state(self, result: ProcessResult) -> RunnerState:
        if result.timed_out:
            return RunnerState.TIMED_OUT
        if result.signal is not None:
            return RunnerState.CRASHED
        return RunnerState.COMPLETED

    def _test_result(self, result: ProcessResult, expected: int) -> RunResult:
        if result.timed_out:
            verdict = Verdict.TIMED_OUT
        else:
            verdict = evaluate_test_status(result.returncode, expected)

        status = decode_exit_status(result.returncode) if not result.timed_out else None
        if status is not None:
            log_detail(f"Guest status: {status} (0x{status:x}), expected {expected} (0x{expected:x})")

        exit_code = {
            Verdict.SUCCESS: 0,
            Verdict.TIMED_OUT: TestTimeoutError.exit_code,
        }.get(verdict, 1)
        return RunResult(
            mode=RunMode.TEST,
            returncode=result.returncode,
            verdict=verdict,
            status=status,
            expected=expected,
            exit_code=exit_code,
        )


def _interactive_exit_code(result: ProcessResult) -> int:
    if result.signal is not None:
        return SIGNAL_EXIT_BASE + result.signal
    return result.returncode
