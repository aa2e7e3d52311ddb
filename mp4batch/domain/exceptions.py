"""
Defines custom exception types for mp4batch.

The hierarchy mirrors how far an error is allowed to travel:
- `ParseError` stops the whole invocation before anything is spawned.
- `BuildError` fails a single plan; sibling plans still run.
- `StageFailure` fails a single pipeline and is folded into its JobResult.
- `EncodeInterruptedError` aborts everything and triggers full cleanup.

All custom exceptions inherit from the base `Mp4BatchException`.
"""
from typing import Optional


class Mp4BatchException(Exception):
    """Base class for all custom exceptions in mp4batch."""

    pass


# --- Encode Spec Parsing ---
class ParseError(Mp4BatchException):
    """
    Raised when the `-f` encode spec cannot be turned into plans.

    Carries the offending field, its raw token, the zero-based plan (segment)
    index and the character offset of the token inside the full spec string.
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        token: Optional[str] = None,
        segment: int = 0,
        position: int = 0,
    ):
        self.message = message
        self.field = field
        self.token = token
        self.segment = segment
        self.position = position
        super().__init__(str(self))

    def __str__(self) -> str:
        where = f"plan {self.segment + 1}, position {self.position}"
        if self.token is not None:
            return f"{self.message}: '{self.token}' ({where})"
        return f"{self.message} ({where})"


# --- Pipeline Building ---
class BuildError(Mp4BatchException):
    """Base class for errors raised while turning a plan into process stages."""

    pass


class ToolNotFoundError(BuildError):
    """
    Raised when an external executable cannot be resolved.

    The lookup order is the per-tool override in `config.user.yaml`, then
    `paths.tools_dir`, then the system PATH.
    """

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"{tool} not installed or not in PATH")


class UnsupportedCombinationError(BuildError):
    """
    Raised when plan fields have no valid stage mapping.

    For example HDR propagation requested for x264, for a stream copy, for an
    8-bit filter override, or for an mp4 container.
    """

    pass


class SourceNotFoundError(BuildError):
    """Raised when no source media can be located for audio, copy or HDR stages."""

    pass


class MediaInfoError(BuildError):
    """
    Raised when ffprobe or `vspipe -i` cannot describe a file.

    At build time this fails the plan that needed the information. Raised from
    a post-processing hook it fails the stage the hook belongs to.
    """

    pass


# --- Execution ---
class StageFailure(Mp4BatchException):
    """
    Raised when a spawned stage exits with a non-success status.

    It never escapes a pipeline run; the executor turns it into a failed JobResult.
    """

    def __init__(self, stage: str, exit_code: Optional[int], diagnostics: str = ""):
        self.stage = stage
        self.exit_code = exit_code
        self.diagnostics = diagnostics
        super().__init__(f"stage '{stage}' failed with exit code {exit_code}")


class FrameCountMismatch(Mp4BatchException):
    """
    Raised when an encoded file holds fewer or more frames than the script yields.

    A difference of up to `expected // 200` frames is tolerated, since some
    sources report a frame count that differs from what actually decodes.
    """

    def __init__(self, path, expected: int, actual: int):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(f"{path.name} holds {actual} frames, expected {expected}")


class EncodeInterruptedError(Mp4BatchException):
    """Raised once an interruption has been requested; aborts the whole invocation."""

    pass
