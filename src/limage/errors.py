"""Error types for the limage build-and-run pipeline.

Every error aborts the current invocation. Errors raised because a delegated
tool failed carry that tool's console output verbatim in ``output`` so the CLI
can surface it unchanged.
"""

from typing import Optional


class LimageError(Exception):
    """Base class for all limage errors.

    Attributes:
        output: Captured output of the child tool that failed, if any
        exit_code: Exit code this program terminates with for this error
    """

    exit_code: int = 1
    kind: str = "Error"

    def __init__(self, message: str, output: Optional[str] = None):
        super().__init__(message)
        self.output = output


class ConfigError(LimageError):
    """Raised when a manifest field is missing or invalid."""

    kind = "Configuration error"


class FetchError(LimageError):
    """Raised when an artifact cannot be downloaded or cached."""

    kind = "Fetch error"


class BuildError(LimageError):
    """Raised when the bootloader or kernel build subprocess fails."""

    kind = "Build error"


class PackagingError(LimageError):
    """Raised when image creation or bootloader installation fails."""

    kind = "Packaging error"


class RunnerError(LimageError):
    """Raised when the emulator cannot be launched or a verdict cannot be evaluated."""

    kind = "Runner error"


class TestTimeoutError(RunnerError):
    """Raised when a test run exceeds the configured timeout."""

    __test__ = False  # not a pytest test class

    exit_code = 2
    kind = "Test timed out"


class VerdictFailure(LimageError):
    """The guest reported a well-formed status that does not match the expected one.

    This is a legitimate test outcome rather than a tooling defect.
    """

    kind = "Test failed"

    def __init__(self, status: int, expected: int):
        super().__init__(f"guest reported status {status} (0x{status:x}), expected {expected} (0x{expected:x})")
        self.status = status
        self.expected = expected
