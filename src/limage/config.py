"""
Project configuration for limage.

Configuration lives in the kernel crate's Cargo.toml under
``[package.metadata.limage]``:

    [package.metadata.limage]
    architecture = "x86_64"
    test-success-exit-code = 33
    test-args = ["-device", "isa-debug-exit,iobase=0xf4,iosize=0x04",
                 "-serial", "stdio", "-display", "none"]

Every key is optional except ``test-success-exit-code``, which is required as
soon as a test verdict has to be evaluated. The manifest is parsed once per
invocation into an immutable ``LimageConfig``.
"""

import shlex
import tomllib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from .build.build_profiles import BuildProfile
from .errors import ConfigError
from .paths import DEFAULT_IMAGE_PATH

METADATA_TABLE = "package.metadata.limage"

# "{}" is replaced with the image path, "{ovmf-code}"/"{ovmf-vars}" with the
# staged firmware files.
DEFAULT_RUN_COMMAND: tuple[str, ...] = (
    "qemu-system-x86_64",
    "-M", "q35",
    "-m", "2G",
    "-cdrom", "{}",
    "-drive", "if=pflash,unit=0,format=raw,file={ovmf-code},readonly=on",
    "-drive", "if=pflash,unit=1,format=raw,file={ovmf-vars}",
)
DEFAULT_BUILD_COMMAND: tuple[str, ...] = ("build",)
DEFAULT_TEST_TIMEOUT = 5 * 60
DEFAULT_BOOTLOADER_REVISION = "v8.x-binary"
DEFAULT_KERNEL_BINARY = Path("target") / "x86_64-unknown-none" / "debug" / "kernel"
DEFAULT_LIMINE_CONFIG = Path("limine.conf")
MAX_TEST_STATUS = 127

FILESYSTEM_KINDS = ("FAT12", "FAT16", "FAT32", "EXT4")


class Architecture(Enum):
    """Target architectures. One architecture per invocation."""

    X86_64 = "x86_64"

    def __str__(self) -> str:
        return self.value


class RunMode(Enum):
    """How the runner hook launches the emulator."""

    INTERACTIVE = "interactive"
    TEST = "test"

    def __str__(self) -> str:
        return self.value


def parse_architecture(value: str) -> Architecture:
    """Parse an architecture name, raising ConfigError for unsupported ones."""
    try:
        return Architecture(value)
    except ValueError:
        supported = ", ".join(a.value for a in Architecture)
        raise ConfigError(f"unsupported architecture {value!r} (supported: {supported})") from None


@dataclass(frozen=True)
class FilesystemConfig:
    """Optional raw disk image attached to the VM next to the ISO.

    Attributes:
        kind: FAT12, FAT16, FAT32 or EXT4
        builder: Command run before the image is created (e.g. a script that
            generates the files to copy), or None
        image: Output image path
        source_dir: Directory whose contents are copied into the image
        target_dir: Directory inside the image receiving the files
    """

    kind: str
    builder: Optional[tuple[str, ...]] = None
    image: Path = Path("target") / "fs.img"
    source_dir: Path = Path("tests") / "storage"
    target_dir: str = "/test"


@dataclass(frozen=True)
class LimageConfig:
    """Immutable configuration for a single invocation.

    Attributes:
        architecture: Target architecture
        profile: Kernel build profile
        test_success_exit_code: Status the guest reports on success, decoded
            from QEMU's exit code; None if not configured
        test_args: Extra emulator arguments used in test mode only
        run_args: Extra emulator arguments used in interactive mode only
        run_command: Emulator base command
        build_command: Cargo subcommand and arguments for the kernel build
        test_timeout: Seconds before a test run is killed
        test_no_reboot: Pass -no-reboot in test mode so a triple fault ends the run
        image_path: Output image path (relative to the crate root)
        bootloader_revision: Pinned Limine branch or tag
        kernel_binary: Kernel binary produced by a normal build
        linker_script: Kernel linker script, checked for existence if set
        limine_config: Bootloader configuration template; None means the
            project's limine.conf if present, else the built-in default
        filesystem: Optional filesystem image configuration
    """

    architecture: Architecture = Architecture.X86_64
    profile: BuildProfile = BuildProfile.NORMAL
    test_success_exit_code: Optional[int] = None
    test_args: tuple[str, ...] = ()
    run_args: tuple[str, ...] = ()
    run_command: tuple[str, ...] = DEFAULT_RUN_COMMAND
    build_command: tuple[str, ...] = DEFAULT_BUILD_COMMAND
    test_timeout: int = DEFAULT_TEST_TIMEOUT
    test_no_reboot: bool = True
    image_path: Path = DEFAULT_IMAGE_PATH
    bootloader_revision: str = DEFAULT_BOOTLOADER_REVISION
    kernel_binary: Path = DEFAULT_KERNEL_BINARY
    linker_script: Optional[Path] = None
    limine_config: Optional[Path] = None
    filesystem: Optional[FilesystemConfig] = None


def _string(key: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"`{key}` must be a string, got {value!r}")
    return value


def _string_list(key: str, value: Any) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"`{key}` must be a list of strings")
    return tuple(value)


def _unsigned(key: str, value: Any) -> int:
    # bool is an int subclass in Python but never a valid number here
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"`{key}` must be an integer, got {value!r}")
    if value < 0:
        raise ConfigError(f"`{key}` must not be negative")
    return value


def _test_status(key: str, value: Any) -> int:
    # isa-debug-exit reports (status << 1) | 1 in an 8-bit exit code
    status = _unsigned(key, value)
    if status > MAX_TEST_STATUS:
        raise ConfigError(f"`{key}` must be at most {MAX_TEST_STATUS}, got {status}")
    return status


def _boolean(key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"`{key}` must be a boolean, got {value!r}")
    return value


def _path(key: str, value: Any) -> Path:
    return Path(_string(key, value))


# manifest key -> (LimageConfig field, parser)
_FIELDS: dict[str, tuple[str, Callable[[str, Any], Any]]] = {
    "architecture": ("architecture", lambda k, v: parse_architecture(_string(k, v))),
    "image-path": ("image_path", _path),
    "build-command": ("build_command", _string_list),
    "run-command": ("run_command", _string_list),
    "run-args": ("run_args", _string_list),
    "test-args": ("test_args", _string_list),
    "test-timeout": ("test_timeout", _unsigned),
    "test-success-exit-code": ("test_success_exit_code", _test_status),
    "test-no-reboot": ("test_no_reboot", _boolean),
    "bootloader-revision": ("bootloader_revision", _string),
    "kernel-binary": ("kernel_binary", _path),
    "linker-script": ("linker_script", _path),
    "limine-config": ("limine_config", _path),
}

_FILESYSTEM_FIELDS: dict[str, tuple[str, Callable[[str, Any], Any]]] = {
    "filesystem-builder": ("builder", lambda k, v: tuple(shlex.split(_string(k, v)))),
    "filesystem-image": ("image", _path),
    "filesystem-source-dir": ("source_dir", _path),
    "filesystem-target-dir": ("target_dir", _string),
}


def _load_manifest(manifest_path: Path) -> dict[str, Any]:
    try:
        with open(manifest_path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"manifest not found: {manifest_path}") from None
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"failed to parse {manifest_path}: {e}") from e


def _metadata_table(manifest: dict[str, Any]) -> dict[str, Any]:
    table: Any = manifest
    for part in METADATA_TABLE.split("."):
        if not isinstance(table, dict) or part not in table:
            return {}
        table = table[part]
    if not isinstance(table, dict):
        raise ConfigError(f"`{METADATA_TABLE}` must be a table, got {table!r}")
    return table


def config_from_metadata(metadata: dict[str, Any], profile: BuildProfile = BuildProfile.NORMAL) -> LimageConfig:
    """Build a LimageConfig from the ``[package.metadata.limage]`` table.

    Raises:
        ConfigError: On unknown keys, wrong value types or unsupported values
    """
    values: dict[str, Any] = {"profile": profile}
    fs_values: dict[str, Any] = {}
    fs_kind: Optional[str] = None

    for key, value in metadata.items():
        if key in _FIELDS:
            name, parse = _FIELDS[key]
            values[name] = parse(key, value)
        elif key in _FILESYSTEM_FIELDS:
            name, parse = _FILESYSTEM_FIELDS[key]
            fs_values[name] = parse(key, value)
        elif key == "filesystem":
            fs_kind = _string(key, value).upper()
            if fs_kind not in FILESYSTEM_KINDS:
                raise ConfigError(f"unsupported filesystem {value!r} (supported: {', '.join(FILESYSTEM_KINDS)})")
        else:
            raise ConfigError(f"unexpected `{METADATA_TABLE}` key `{key}` with value `{value}`")

    if fs_kind is not None:
        values["filesystem"] = FilesystemConfig(kind=fs_kind, **fs_values)
    elif fs_values:
        raise ConfigError("filesystem options given without `filesystem`")

    if not values.get("run_command", DEFAULT_RUN_COMMAND):
        raise ConfigError("`run-command` must not be empty")

    return LimageConfig(**values)


def resolve_config(manifest_path: Path, profile: BuildProfile = BuildProfile.NORMAL) -> LimageConfig:
    """Read limage configuration from a Cargo manifest.

    Args:
        manifest_path: Path to Cargo.toml
        profile: Kernel build profile for this invocation

    Returns:
        Parsed configuration (defaults when the metadata table is absent)

    Raises:
        ConfigError: If the manifest cannot be read or holds invalid settings
    """
    manifest = _load_manifest(manifest_path)
    return config_from_metadata(_metadata_table(manifest), profile=profile)


def require_test_success_exit_code(config: LimageConfig) -> int:
    """Return the expected test status, refusing to guess a default."""
    if config.test_success_exit_code is None:
        raise ConfigError(
            "`test-success-exit-code` is not set in "
            f"[{METADATA_TABLE}]; a test verdict cannot be evaluated without it"
        )
    return config.test_success_exit_code


def is_test_executable(path: Path) -> bool:
    """Whether cargo handed us a test harness rather than the kernel binary.

    Cargo places test harnesses in ``target/<triple>/<profile>/deps`` and
    doctests in ``rustdoctest*`` temp directories.
    """
    dirname = path.parent.name
    return dirname == "deps" or dirname.startswith("rustdoctest")
