"""Build Profile Configuration.

A profile decides how the kernel is compiled before it is packaged:

- normal: the kernel binary itself (``cargo build``), booted by ``limage run``
- test: the kernel's test harness (``cargo build --tests``), whose location is
  reported by cargo in its JSON artifact messages

Profiles only declare the extra cargo arguments they need; the base cargo
subcommand comes from the ``build-command`` manifest key.
"""

from dataclasses import dataclass
from enum import Enum


class BuildProfile(Enum):
    """Build profile enum for type-safe profile selection."""

    NORMAL = "normal"
    TEST = "test"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ProfileArgs:
    """Cargo arguments contributed by a build profile.

    Attributes:
        name: Profile identifier (matches BuildProfile enum value)
        description: Human-readable profile description
        cargo_args: Arguments appended after the configured build command
        reports_executable: Whether the built binary must be read from cargo's
            JSON messages instead of the configured kernel-binary path
    """

    name: str
    description: str
    cargo_args: tuple[str, ...]
    reports_executable: bool


PROFILES: dict[BuildProfile, ProfileArgs] = {
    BuildProfile.NORMAL: ProfileArgs(
        name="normal",
        description="Kernel binary for interactive runs (default)",
        cargo_args=(),
        reports_executable=False,
    ),
    BuildProfile.TEST: ProfileArgs(
        name="test",
        description="Kernel test harness",
        cargo_args=("--tests", "--message-format=json-render-diagnostics"),
        reports_executable=True,
    ),
}


def get_profile(profile: BuildProfile) -> ProfileArgs:
    return PROFILES[profile]


def parse_profile(value: str) -> BuildProfile:
    """Parse a profile name, raising ValueError for unknown names."""
    try:
        return BuildProfile(value.lower())
    except ValueError:
        choices = ", ".join(p.value for p in BuildProfile)
        raise ValueError(f"unknown build profile {value!r} (expected one of: {choices})") from None


def format_profile_banner(profile: BuildProfile, architecture: str) -> str:
    return f"PROFILE={profile.value} ARCH={architecture}"
