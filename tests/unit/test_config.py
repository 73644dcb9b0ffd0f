"""Tests for reading [package.metadata.limage] from Cargo.toml."""

from pathlib import Path

import pytest

from limage.build.build_profiles import BuildProfile
from limage.config import (
    DEFAULT_RUN_COMMAND,
    Architecture,
    LimageConfig,
    config_from_metadata,
    is_test_executable,
    require_test_success_exit_code,
    resolve_config,
)
from limage.errors import ConfigError


def write_manifest(tmp_path: Path, metadata: str) -> Path:
    manifest = tmp_path / "Cargo.toml"
    manifest.write_text(f'[package]\nname = "kernel"\n\n[package.metadata.limage]\n{metadata}', encoding="utf-8")
    return manifest


class TestResolveConfig:
    def test_sample_project(self, sample_project: Path):
        config = resolve_config(sample_project / "Cargo.toml")

        assert config.architecture is Architecture.X86_64
        assert config.test_success_exit_code == 33
        assert config.test_args[:2] == ("-device", "isa-debug-exit,iobase=0xf4,iosize=0x04")
        assert config.run_command == DEFAULT_RUN_COMMAND
        assert config.test_timeout == 300
        assert config.test_no_reboot is True
        assert config.filesystem is None

    def test_missing_table_uses_defaults(self, tmp_path: Path):
        manifest = tmp_path / "Cargo.toml"
        manifest.write_text('[package]\nname = "kernel"\n', encoding="utf-8")

        config = resolve_config(manifest)

        assert config == LimageConfig()

    def test_profile_is_carried(self, sample_project: Path):
        config = resolve_config(sample_project / "Cargo.toml", profile=BuildProfile.TEST)
        assert config.profile is BuildProfile.TEST

    def test_missing_manifest(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="manifest not found"):
            resolve_config(tmp_path / "Cargo.toml")

    def test_invalid_toml(self, tmp_path: Path):
        manifest = tmp_path / "Cargo.toml"
        manifest.write_text("[package\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="failed to parse"):
            resolve_config(manifest)

    def test_unsupported_architecture_fails(self, tmp_path: Path):
        manifest = write_manifest(tmp_path, 'architecture = "aarch64"\n')
        with pytest.raises(ConfigError, match="unsupported architecture 'aarch64'"):
            resolve_config(manifest)

    def test_all_keys(self, tmp_path: Path):
        manifest = write_manifest(
            tmp_path,
            "\n".join(
                [
                    'image-path = "out/os.iso"',
                    'build-command = ["build", "--release"]',
                    'run-command = ["qemu-system-x86_64", "-cdrom", "{}"]',
                    'run-args = ["-m", "512M"]',
                    "test-timeout = 60",
                    "test-success-exit-code = 0",
                    "test-no-reboot = false",
                    'bootloader-revision = "v8.4.0-binary"',
                    'kernel-binary = "target/x86_64-unknown-none/release/kernel"',
                    'linker-script = "linker.ld"',
                    'limine-config = "boot/limine.conf"',
                    'filesystem = "fat32"',
                    'filesystem-builder = "python3 gen.py --out tests/storage"',
                    'filesystem-target-dir = "/data"',
                ]
            ),
        )

        config = resolve_config(manifest)

        assert config.image_path == Path("out/os.iso")
        assert config.build_command == ("build", "--release")
        assert config.run_command == ("qemu-system-x86_64", "-cdrom", "{}")
        assert config.run_args == ("-m", "512M")
        assert config.test_timeout == 60
        assert config.test_success_exit_code == 0
        assert config.test_no_reboot is False
        assert config.bootloader_revision == "v8.4.0-binary"
        assert config.kernel_binary == Path("target/x86_64-unknown-none/release/kernel")
        assert config.linker_script == Path("linker.ld")
        assert config.limine_config == Path("boot/limine.conf")
        assert config.filesystem is not None
        assert config.filesystem.kind == "FAT32"
        assert config.filesystem.builder == ("python3", "gen.py", "--out", "tests/storage")
        assert config.filesystem.target_dir == "/data"
        assert config.filesystem.source_dir == Path("tests/storage")


class TestConfigFromMetadata:
    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="key `test-succes-exit-code`"):
            config_from_metadata({"test-succes-exit-code": 33})

    @pytest.mark.parametrize(
        "key, value",
        [
            ("test-success-exit-code", -1),
            ("test-success-exit-code", "33"),
            ("test-success-exit-code", True),
            ("test-success-exit-code", 128),
            ("test-success-exit-code", 200),
            ("test-timeout", -5),
            ("test-timeout", 1.5),
            ("test-no-reboot", "yes"),
            ("test-args", "-serial stdio"),
            ("test-args", ["-m", 2]),
            ("kernel-binary", 7),
        ],
    )
    def test_invalid_values(self, key, value):
        with pytest.raises(ConfigError, match=f"`{key}`"):
            config_from_metadata({key: value})

    def test_largest_test_status(self):
        assert config_from_metadata({"test-success-exit-code": 127}).test_success_exit_code == 127

    def test_unknown_filesystem(self):
        with pytest.raises(ConfigError, match="unsupported filesystem 'ntfs'"):
            config_from_metadata({"filesystem": "ntfs"})

    def test_filesystem_options_without_filesystem(self):
        with pytest.raises(ConfigError, match="without `filesystem`"):
            config_from_metadata({"filesystem-image": "target/disk.img"})

    def test_empty_run_command(self):
        with pytest.raises(ConfigError, match="`run-command` must not be empty"):
            config_from_metadata({"run-command": []})

    def test_config_is_immutable(self):
        config = config_from_metadata({})
        with pytest.raises(AttributeError):
            config.test_timeout = 1  # type: ignore[misc]


class TestRequireTestSuccessExitCode:
    def test_returns_configured_value(self):
        assert require_test_success_exit_code(LimageConfig(test_success_exit_code=33)) == 33

    def test_zero_is_a_valid_value(self):
        assert require_test_success_exit_code(LimageConfig(test_success_exit_code=0)) == 0

    def test_missing_value_is_never_defaulted(self):
        with pytest.raises(ConfigError, match="test-success-exit-code"):
            require_test_success_exit_code(LimageConfig())


@pytest.mark.parametrize(
    "path, expected",
    [
        ("target/x86_64-unknown-none/debug/deps/kernel-1a2b3c4d", True),
        ("/tmp/rustdoctestXYZ/rust_out", True),
        ("target/x86_64-unknown-none/debug/kernel", False),
        ("kernel", False),
    ],
)
def test_is_test_executable(path, expected):
    assert is_test_executable(Path(path)) is expected
