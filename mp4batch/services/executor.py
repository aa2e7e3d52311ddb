"""
Runs a Pipeline's stages as real child processes.

Stages whose stdout is PIPE are chained to the following stage and started
together as one step; every other stage boundary is sequential, because the
next stage reads a file the previous one wrote. All OS pipes of a step are
created before its first process is spawned, and the supervisor closes its
own copies right after spawning, so a dying consumer delivers SIGPIPE to its
producer instead of leaving it blocked on a full pipe.
"""
import os
import re
import subprocess
import threading
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Tuple

from loguru import logger

from ..config.common import DIAGNOSTIC_TAIL_LINES
from ..domain.exceptions import EncodeInterruptedError, StageFailure
from ..domain.stage import JobResult, Pipeline, PipelineStage, StreamMode
from ..utils.format_utils import format_elapsed
from .interrupt import InterruptCoordinator, stop_process

# Exit statuses of a producer killed by SIGPIPE: -13 from Popen, 141 from a shell.
SIGPIPE_CODES = (-13, 141)

_LINE_SPLIT_RE = re.compile(rb"[\r\n]+")

StageCallback = Callable[[PipelineStage], None]


def split_steps(stages: List[PipelineStage]) -> List[List[PipelineStage]]:
    """Groups stages into steps of pipe-connected neighbours."""
    steps: List[List[PipelineStage]] = []
    for stage in stages:
        if steps and steps[-1][-1].stdout is StreamMode.PIPE:
            steps[-1].append(stage)
        else:
            steps.append([stage])
    return steps


class _StderrReader(threading.Thread):
    """Forwards a child's stderr to the debug log and keeps its last lines."""

    def __init__(self, stage: PipelineStage, stream, tail_lines: int):
        super().__init__(name=f"stderr-{stage.name}", daemon=True)
        self.stage = stage
        self.stream = stream
        self.tail: Deque[str] = deque(maxlen=tail_lines)

    def _emit(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if line:
            self.tail.append(line)
            logger.debug(f"[{self.stage.name}] {line}")

    def run(self) -> None:
        buffer = b""
        # Progress output is \r-separated, so lines are split by hand.
        for chunk in iter(lambda: self.stream.read1(4096), b""):
            parts = _LINE_SPLIT_RE.split(buffer + chunk)
            buffer = parts.pop()
            for part in parts:
                self._emit(part)
        if buffer:
            self._emit(buffer)
        self.stream.close()

    @property
    def diagnostics(self) -> str:
        return "\n".join(self.tail)


class PipelineExecutor:
    """
    Spawns, supervises and reaps the processes of one pipeline at a time.

    Several pipelines may run concurrently on different threads with the
    same executor; all shared state lives in the InterruptCoordinator.
    """

    def __init__(self, coordinator: InterruptCoordinator, tail_lines: int = DIAGNOSTIC_TAIL_LINES):
        self.coordinator = coordinator
        self.tail_lines = tail_lines

    def run(self, pipeline: Pipeline, on_stage_done: Optional[StageCallback] = None) -> JobResult:
        """
        Executes every stage of `pipeline`.

        Args:
            pipeline: The pipeline to execute.
            on_stage_done: Called after each stage exits cleanly and its
                post-processing hook has run. A stage's `before_start` hook runs
                before its step is spawned; if it raises, the stage fails
                without being started.

        Returns:
            A succeeded JobResult naming the destination, or a failed one naming
            the first stage that broke, its exit code and its stderr tail.

        Raises:
            EncodeInterruptedError: If an interruption occurs while running.
        """
        label = f"plan {pipeline.plan_index + 1}"
        start = time.monotonic()
        for step in split_steps(pipeline.stages):
            logger.info(f"[{label}] Running {' | '.join(stage.name for stage in step)}")
            for stage in step:
                logger.debug(f"[{label}] {stage.display()}")
                if stage.before_start is not None:
                    try:
                        stage.before_start()
                    except Exception as e:
                        logger.error(f"[{label}] Preparing stage '{stage.name}' failed: {e}")
                        return JobResult.failed(pipeline.plan_index, pipeline.plan, stage.name, diagnostics=str(e))

            failure = self._run_step(step)
            if failure is not None:
                logger.error(f"[{label}] {failure}")
                return JobResult.failed(
                    pipeline.plan_index,
                    pipeline.plan,
                    failure.stage,
                    exit_code=failure.exit_code,
                    diagnostics=failure.diagnostics,
                )

            for stage in step:
                if stage.on_success is not None:
                    try:
                        stage.on_success()
                    except Exception as e:
                        logger.error(f"[{label}] Post-processing of stage '{stage.name}' failed: {e}")
                        return JobResult.failed(pipeline.plan_index, pipeline.plan, stage.name, diagnostics=str(e))
                if on_stage_done is not None:
                    on_stage_done(stage)

        logger.info(f"[{label}] Finished in {format_elapsed(time.monotonic() - start)}")
        return JobResult.succeeded(pipeline.plan_index, pipeline.plan, pipeline.destination)

    def _run_step(self, step: List[PipelineStage]) -> Optional[StageFailure]:
        running: List[Tuple[PipelineStage, subprocess.Popen, _StderrReader]] = []
        spawn_failure: Optional[StageFailure] = None
        pipes = [os.pipe() for _ in range(len(step) - 1)]
        parent_ends = [fd for pair in pipes for fd in pair]
        opened_files = []

        try:
            with self.coordinator.spawn_guard():
                for position, stage in enumerate(step):
                    if position > 0:
                        stdin = pipes[position - 1][0]
                    elif stage.stdin is StreamMode.FILE:
                        stdin = open(stage.stdin_path, "rb")
                        opened_files.append(stdin)
                    elif stage.stdin is StreamMode.INHERIT:
                        stdin = None
                    else:
                        stdin = subprocess.DEVNULL

                    if position < len(step) - 1:
                        stdout = pipes[position][1]
                    elif stage.stdout is StreamMode.FILE:
                        stdout = open(stage.stdout_path, "wb")
                        opened_files.append(stdout)
                    else:
                        stdout = None

                    for output in stage.outputs:
                        self.coordinator.track_output(output)
                    try:
                        process = subprocess.Popen(
                            stage.argv,
                            stdin=stdin,
                            stdout=stdout,
                            stderr=subprocess.PIPE,
                            start_new_session=True,
                        )
                    except OSError as e:
                        spawn_failure = StageFailure(stage.name, None, f"Failed to start {stage.executable}: {e}")
                        break
                    self.coordinator.register(process)
                    reader = _StderrReader(stage, process.stderr, self.tail_lines)
                    reader.start()
                    running.append((stage, process, reader))
        finally:
            for fd in parent_ends:
                os.close(fd)
            for f in opened_files:
                f.close()

        if spawn_failure is not None:
            for _, process, _ in running:
                stop_process(process)

        exit_codes = []
        for stage, process, reader in running:
            exit_codes.append(process.wait())
            reader.join()
            self.coordinator.deregister(process)

        if self.coordinator.interrupted:
            raise EncodeInterruptedError("Encoding was interrupted")
        if spawn_failure is not None:
            return spawn_failure
        return self._select_failure(running, exit_codes)

    @staticmethod
    def _select_failure(running, exit_codes) -> Optional[StageFailure]:
        """The first failed stage, skipping producers that merely lost their reader."""
        failed = [
            (stage, code, reader)
            for (stage, _, reader), code in zip(running, exit_codes)
            if code not in stage.success_codes
        ]
        if not failed:
            return None
        primary = [entry for entry in failed if entry[1] not in SIGPIPE_CODES] or failed
        stage, code, reader = primary[0]
        return StageFailure(stage.name, code, reader.diagnostics)
