"""
Process pipeline model: stages, pipelines and per-plan results.
"""
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .plan import EncodePlan


class StreamMode(str, Enum):
    """How a stage's stdin or stdout is wired."""

    NONE = "none"  # stdin only: read from /dev/null
    INHERIT = "inherit"
    PIPE = "pipe"  # connected to the neighbouring stage
    FILE = "file"


class PipelineRole(str, Enum):
    STANDALONE = "standalone"  # decodes the script straight into its encoder
    PRODUCER = "producer"  # writes the shared lossless intermediate, then encodes from it
    CONSUMER = "consumer"  # encodes from a lossless intermediate written by someone else


@dataclass
class PipelineStage:
    """One external process and how it connects to its neighbours."""

    name: str
    executable: str
    args: List[str]
    stdin: StreamMode = StreamMode.NONE
    stdout: StreamMode = StreamMode.INHERIT
    stdin_path: Optional[Path] = None
    stdout_path: Optional[Path] = None
    # Files this stage writes; removed if the run does not finish.
    outputs: List[Path] = field(default_factory=list)
    # Exit statuses treated as success (mkvmerge exits 1 on warnings).
    success_codes: Tuple[int, ...] = (0,)
    # Runs in the supervising process after a clean exit.
    on_success: Optional[Callable[[], None]] = None
    # Runs in the supervising process before the stage is spawned.
    before_start: Optional[Callable[[], None]] = None

    @property
    def argv(self) -> List[str]:
        return [self.executable, *self.args]

    def display(self) -> str:
        cmd = shlex.join(self.argv)
        if self.stdin is StreamMode.FILE and self.stdin_path:
            cmd += f" < {shlex.quote(str(self.stdin_path))}"
        if self.stdout is StreamMode.FILE and self.stdout_path:
            cmd += f" > {shlex.quote(str(self.stdout_path))}"
        return cmd


@dataclass
class Pipeline:
    """All stages needed to turn one script into one plan's destination file."""

    plan_index: int
    plan: EncodePlan
    stages: List[PipelineStage]
    destination: Path
    role: PipelineRole = PipelineRole.STANDALONE
    lossless_path: Optional[Path] = None
    # Temporary files owned by this pipeline alone, deleted once it finishes.
    intermediates: List[Path] = field(default_factory=list)

    @property
    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    def display(self) -> str:
        lines = []
        previous: Optional[PipelineStage] = None
        for stage in self.stages:
            if previous is not None and previous.stdout is StreamMode.PIPE:
                lines[-1] += " \\\n  | " + stage.display()
            else:
                lines.append(stage.display())
            previous = stage
        return "\n".join(lines)


@dataclass
class JobResult:
    """Outcome of one plan: a destination path, or the stage that broke it."""

    plan_index: int
    plan: EncodePlan
    success: bool
    destination: Optional[Path] = None
    stage: Optional[str] = None
    exit_code: Optional[int] = None
    diagnostics: str = ""

    @classmethod
    def succeeded(cls, plan_index: int, plan: EncodePlan, destination: Path) -> "JobResult":
        return cls(plan_index, plan, True, destination=destination)

    @classmethod
    def failed(
        cls,
        plan_index: int,
        plan: EncodePlan,
        stage: str,
        exit_code: Optional[int] = None,
        diagnostics: str = "",
    ) -> "JobResult":
        return cls(plan_index, plan, False, stage=stage, exit_code=exit_code, diagnostics=diagnostics)

    def summary(self) -> str:
        label = f"plan {self.plan_index + 1} [{self.plan.to_spec()}]"
        if self.success:
            return f"{label}: done -> {self.destination}"
        code = "n/a" if self.exit_code is None else str(self.exit_code)
        return f"{label}: failed at stage '{self.stage}' (exit code {code})"
