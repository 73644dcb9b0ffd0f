"""
Command-line interface for limage.

This module provides the `limage` CLI. Cargo invokes it as the target runner
(``runner = "limage run"`` in ``.cargo/config.toml``) for both ``cargo run``
and ``cargo test``; it can also be used directly to build or clean the image.
"""

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, Optional, Sequence

from rich.console import Console
from rich.markup import escape

from . import __version__
from .build.assembler import ImageAssembler
from .build.build_profiles import BuildProfile, parse_profile
from .commands.clean import clean
from .config import LimageConfig, RunMode, is_test_executable, require_test_success_exit_code, resolve_config
from .errors import LimageError
from .output import init_timer, log_header, set_verbose
from .packages import BootloaderStager, Cache, FirmwareFetcher
from .paths import BuildPaths, get_cache_root
from .runner import Runner
from .subprocess_utils import ProcessRunner, SubprocessRunner

console = Console(highlight=False)


@dataclass
class BuildArgs:
    """Arguments for the build command."""

    manifest_path: Path
    profile: BuildProfile = BuildProfile.NORMAL
    verbose: bool = False


@dataclass
class RunArgs:
    """Arguments for the run command (cargo runner hook)."""

    manifest_path: Path
    kernel: Optional[Path] = None
    mode: Optional[RunMode] = None
    verbose: bool = False


@dataclass
class CleanArgs:
    """Arguments for the clean command."""

    manifest_path: Path
    cache: bool = False
    dry_run: bool = False
    verbose: bool = False


def locate_manifest(explicit: Optional[Path]) -> Path:
    """Find the kernel crate's Cargo.toml.

    ``--manifest-path`` wins, then ``CARGO_MANIFEST_DIR`` (set by cargo for
    runners), then the current directory.
    """
    if explicit is not None:
        return explicit
    manifest_dir = os.environ.get("CARGO_MANIFEST_DIR")
    if manifest_dir:
        return Path(manifest_dir) / "Cargo.toml"
    return Path.cwd() / "Cargo.toml"


def _setup(manifest_path: Path, profile: BuildProfile, verbose: bool) -> tuple[LimageConfig, BuildPaths]:
    set_verbose(verbose)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    init_timer()
    log_header("limage", __version__)

    config = resolve_config(manifest_path, profile=profile)
    paths = BuildPaths.for_project(manifest_path.parent, get_cache_root(), image_path=config.image_path)
    return config, paths


def _assembler(config: LimageConfig, paths: BuildPaths, runner: ProcessRunner) -> ImageAssembler:
    cache = Cache(paths.cache_dir)
    return ImageAssembler(
        config,
        paths,
        FirmwareFetcher(cache, show_progress=sys.stderr.isatty()),
        BootloaderStager(cache, runner),
        runner,
    )


def build_command(args: BuildArgs, runner: ProcessRunner) -> int:
    """Build the bootable image.

    Examples:
        limage                          # Build target/kernel.iso
        limage build --profile test     # Build the kernel test harness image
        limage --manifest-path k/Cargo.toml build
    """
    config, paths = _setup(args.manifest_path, args.profile, args.verbose)
    image = _assembler(config, paths, runner).build()
    console.print(f"[bold green]✓ Image ready:[/bold green] {image}")
    return 0


def run_command(args: RunArgs, runner: ProcessRunner) -> int:
    """Build the image around a kernel binary and boot it in QEMU.

    Without ``--test``/``--interactive`` the mode follows the binary's
    location: cargo test harnesses run in test mode, anything else
    interactively.
    """
    mode = args.mode
    if mode is None:
        mode = RunMode.TEST if args.kernel is not None and is_test_executable(args.kernel) else RunMode.INTERACTIVE
    profile = BuildProfile.TEST if mode is RunMode.TEST else BuildProfile.NORMAL

    config, paths = _setup(args.manifest_path, profile, args.verbose)
    if mode is RunMode.TEST:
        require_test_success_exit_code(config)
    image = _assembler(config, paths, runner).build(kernel=args.kernel)
    result = Runner(config, paths, runner).run(image, mode)
    result.raise_for_verdict()

    if mode is RunMode.TEST:
        console.print(f"[bold green]✓ Test passed[/bold green] (status {result.status})")
    return result.exit_code


def clean_command(args: CleanArgs) -> int:
    """Remove build outputs, and the download cache with ``--cache``."""
    config, paths = _setup(args.manifest_path, BuildProfile.NORMAL, args.verbose)
    return 0 if clean(config, paths, include_cache=args.cache, dry_run=args.dry_run) else 1


def _report_error(exc: LimageError) -> None:
    console.print()
    console.print(f"[bold red]✗ {exc.kind}:[/bold red] {escape(str(exc))}")
    if exc.output:
        console.print()
        console.out(exc.output.rstrip(), highlight=False)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="limage",
        description="Build bootable Limine images for freestanding kernels and run them in QEMU",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"limage {__version__}",
    )
    parser.add_argument(
        "--manifest-path",
        type=Path,
        default=None,
        help="Path to the kernel's Cargo.toml (default: $CARGO_MANIFEST_DIR or current directory)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show commands and debug output",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run (default: build)")

    build_parser = subparsers.add_parser(
        "build",
        help="Build the bootable image",
    )
    build_parser.add_argument(
        "--profile",
        type=parse_profile,
        default=BuildProfile.NORMAL,
        help="Kernel build profile: normal or test (default: normal)",
    )

    run_parser = subparsers.add_parser(
        "run",
        help="Build the image around a kernel binary and run it in QEMU (cargo runner)",
    )
    run_parser.add_argument(
        "kernel",
        nargs="?",
        type=Path,
        default=None,
        help="Kernel binary passed by cargo (default: build the kernel)",
    )
    mode_group = run_parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--test",
        dest="mode",
        action="store_const",
        const=RunMode.TEST,
        help="Evaluate the guest's exit status as a test verdict",
    )
    mode_group.add_argument(
        "--interactive",
        dest="mode",
        action="store_const",
        const=RunMode.INTERACTIVE,
        help="Pass QEMU's exit code through unchanged",
    )

    clean_parser = subparsers.add_parser(
        "clean",
        help="Remove the staging tree and built images",
    )
    clean_parser.add_argument(
        "--cache",
        action="store_true",
        help="Also purge downloaded firmware and bootloader clones",
    )
    clean_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be deleted without deleting",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None, runner: Optional[ProcessRunner] = None) -> NoReturn:
    """limage - bootable kernel images for cargo run and cargo test."""
    parsed_args = create_parser().parse_args(argv)
    manifest_path = locate_manifest(parsed_args.manifest_path)
    runner = runner if runner is not None else SubprocessRunner()

    try:
        if parsed_args.command == "run":
            args = RunArgs(
                manifest_path=manifest_path,
                kernel=parsed_args.kernel.resolve() if parsed_args.kernel else None,
                mode=parsed_args.mode,
                verbose=parsed_args.verbose,
            )
            exit_code = run_command(args, runner)
        elif parsed_args.command == "clean":
            args = CleanArgs(
                manifest_path=manifest_path,
                cache=parsed_args.cache,
                dry_run=parsed_args.dry_run,
                verbose=parsed_args.verbose,
            )
            exit_code = clean_command(args)
        else:
            args = BuildArgs(
                manifest_path=manifest_path,
                profile=getattr(parsed_args, "profile", BuildProfile.NORMAL),
                verbose=parsed_args.verbose,
            )
            exit_code = build_command(args, runner)

    except LimageError as e:
        _report_error(e)
        sys.exit(e.exit_code)

    except KeyboardInterrupt:
        console.print()
        console.print("[bold yellow]✗ Interrupted[/bold yellow]")
        sys.exit(130)  # Standard exit code for SIGINT

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
