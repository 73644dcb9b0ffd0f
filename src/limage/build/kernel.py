"""Kernel build through cargo.

The normal profile runs the configured build command and picks up the binary
at the configured ``kernel-binary`` path. The test profile asks cargo for JSON
artifact messages and takes the test harness path from them, since cargo
names test binaries with a hash suffix.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

from ..config import LimageConfig
from ..errors import BuildError, ConfigError
from ..output import log_detail
from ..paths import BuildPaths
from ..subprocess_utils import ProcessRunner
from .build_profiles import get_profile

logger = logging.getLogger(__name__)


def find_test_executable(cargo_output: str) -> Optional[Path]:
    """Return the last test harness executable reported by cargo.

    Args:
        cargo_output: Output of cargo run with --message-format=json*

    Returns:
        Path to the executable, or None if cargo reported none
    """
    executable: Optional[Path] = None
    for line in cargo_output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            continue
        if message.get("reason") != "compiler-artifact":
            continue
        if message.get("profile", {}).get("test") and message.get("executable"):
            executable = Path(message["executable"])
    return executable


def _echo_diagnostics(cargo_output: str) -> None:
    # JSON lines are for us; everything else is cargo talking to the user
    for line in cargo_output.splitlines():
        if not line.lstrip().startswith("{"):
            sys.stdout.write(line + "\n")
    sys.stdout.flush()


class KernelBuilder:
    """Invokes the kernel's own build tool for the configured profile."""

    def __init__(self, config: LimageConfig, paths: BuildPaths, runner: ProcessRunner):
        self.config = config
        self.paths = paths
        self.runner = runner

    def command(self) -> list[str]:
        profile = get_profile(self.config.profile)
        return ["cargo", *self.config.build_command, *profile.cargo_args]

    def build(self) -> Path:
        """Build the kernel and return the path of the resulting binary.

        Raises:
            ConfigError: If the configured linker script does not exist
            BuildError: If cargo fails or the binary cannot be found
        """
        if self.config.linker_script is not None:
            linker_script = self.paths.resolve(self.config.linker_script)
            if not linker_script.is_file():
                raise ConfigError(f"linker script not found: {linker_script}")

        profile = get_profile(self.config.profile)
        cmd = self.command()
        try:
            result = self.runner.run(cmd, cwd=self.paths.project_dir, capture=profile.reports_executable)
        except OSError as e:
            raise BuildError(f"Failed to run cargo: {e}") from e

        if profile.reports_executable:
            _echo_diagnostics(result.output)
        if not result.ok:
            # cargo diagnostics already reached the terminal
            raise BuildError(f"Kernel build failed: `{' '.join(cmd)}` exited with {result.returncode}")

        if profile.reports_executable:
            binary = find_test_executable(result.output)
            if binary is None:
                raise BuildError("cargo did not report a test executable for the kernel")
        else:
            binary = self.paths.resolve(self.config.kernel_binary)

        if not binary.is_file():
            raise BuildError(f"Kernel binary not found: {binary}")
        log_detail(f"Kernel: {binary}", verbose_only=True)
        return binary
