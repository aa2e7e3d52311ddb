import concurrent.futures
import threading
import traceback
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger

from ..config.common import (
    DEFAULT_GRACE_PERIOD,
    DEFAULT_MAX_WORKERS,
    DEFAULT_OUTPUT_DIR,
    EXIT_INTERNAL_ERROR,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_PLAN_FAILURE,
    EXIT_USAGE_ERROR,
    WAIT_POLL_INTERVAL,
)
from ..domain.exceptions import BuildError, EncodeInterruptedError, ParseError
from ..domain.plan import EncodePlan
from ..domain.stage import JobResult, Pipeline, PipelineRole, PipelineStage
from ..services import spec_parser
from ..services.cache_key import CacheKey, group
from ..services.executor import PipelineExecutor
from ..services.file_discovery import discover_scripts
from ..services.interrupt import InterruptCoordinator
from ..services.logging_service import ErrorLog, SuccessLog
from ..services.media_info import MediaInfo
from ..services.pipeline_builder import CacheState, PipelineBuilder
from ..utils.format_utils import format_elapsed, output_size
from ..utils.tools import Toolbox


class LosslessArtifact:
    """
    One shared lossless intermediate and the pipelines that use it.

    The producer marks it ready (or failed); consumers block on `wait_ready`.
    Every user calls `release` exactly once when it finishes, and the last one
    deletes the file unless it is kept.
    """

    def __init__(self, path: Path, users: int, keep: bool = False, preexisting: bool = False):
        self.path = path
        self.keep = keep
        self.preexisting = preexisting
        self.ready = threading.Event()
        self.failed = False
        self._users = users
        self._lock = threading.Lock()
        if preexisting:
            self.ready.set()

    def mark_ready(self) -> None:
        logger.info(f"Lossless intermediate ready: {self.path.name}")
        self.ready.set()

    def mark_failed(self) -> None:
        self.failed = True
        self.ready.set()

    def wait_ready(self, coordinator: InterruptCoordinator) -> bool:
        """
        Blocks until the producer finished writing the file.

        Returns:
            False if the producer failed before the file was complete.

        Raises:
            EncodeInterruptedError: If the run is interrupted while waiting.
        """
        while not self.ready.wait(WAIT_POLL_INTERVAL):
            coordinator.check()
        return not self.failed

    def release(self) -> None:
        with self._lock:
            self._users -= 1
            last = self._users <= 0
        if last:
            self._dispose()

    def abandon(self) -> None:
        """Disposes of the file regardless of remaining users (interrupted runs)."""
        with self._lock:
            self._users = 0
        self._dispose()

    def _dispose(self) -> None:
        if not self.failed and self.ready.is_set() and (self.keep or self.preexisting):
            logger.info(f"Keeping lossless intermediate: {self.path}")
            return
        if self.path.exists():
            self.path.unlink()
            logger.debug(f"Deleted lossless intermediate: {self.path.name}")


class EncodeBatch:
    """
    Runs every plan of the encode spec against one script.

    Plans are grouped by cache key; each shared group gets one producer and a
    LosslessArtifact. Pipelines are submitted to a thread pool in plan order,
    so a producer is always picked up before its consumers.
    """

    def __init__(
        self,
        script: Path,
        plans: Sequence[EncodePlan],
        builder: PipelineBuilder,
        coordinator: InterruptCoordinator,
        executor: PipelineExecutor,
        max_workers: int = DEFAULT_MAX_WORKERS,
        keep_lossless: bool = False,
        lossless_only: bool = False,
        dry_run: bool = False,
        skip_lossless: bool = False,
    ):
        self.script = script
        self.plans = list(plans)
        self.builder = builder
        self.coordinator = coordinator
        self.executor = executor
        self.max_workers = max(1, max_workers)
        self.keep_lossless = keep_lossless
        self.lossless_only = lossless_only
        self.dry_run = dry_run
        self.skip_lossless = skip_lossless
        self.artifacts: List[LosslessArtifact] = []

    # --- Building ---

    def _build_failure(self, index: int, error: BuildError) -> JobResult:
        logger.error(f"{self.script.name}: plan {index + 1} [{self.plans[index].to_spec()}] cannot be built: {error}")
        return JobResult.failed(index, self.plans[index], "build", diagnostics=str(error))

    def _build_standalone(
        self, indices: List[int], results: Dict[int, JobResult]
    ) -> List[Tuple[Pipeline, Optional[LosslessArtifact]]]:
        jobs = []
        for index in indices:
            try:
                jobs.append((self.builder.build(self.script, self.plans[index], CacheState(), index), None))
            except BuildError as e:
                results[index] = self._build_failure(index, e)
        return jobs

    def _reusable(self, lossless_path: Path) -> bool:
        """Whether a lossless file left by an earlier run holds the whole script."""
        if not lossless_path.is_file():
            return False
        if self.builder.lossless_is_complete(self.script, lossless_path):
            return True
        if not self.dry_run:
            logger.info(f"Removing incomplete lossless intermediate: {lossless_path}")
            self._remove(lossless_path)
        return False

    def _build_group(
        self, key: CacheKey, indices: List[int], results: Dict[int, JobResult]
    ) -> List[Tuple[Pipeline, Optional[LosslessArtifact]]]:
        if not key.shareable or len(indices) == 1 or self.skip_lossless:
            return self._build_standalone(indices, results)

        lossless_path = self.builder.lossless_path_for(self.script, key)
        preexisting = self._reusable(lossless_path)
        if preexisting:
            logger.info(f"Reusing existing lossless intermediate: {lossless_path}")

        built: List[Pipeline] = []
        for index in indices:
            # The first plan that builds becomes the producer.
            state = CacheState(
                group_size=len(indices),
                position=len(built),
                lossless_path=lossless_path,
                lossless_ready=preexisting,
            )
            try:
                built.append(self.builder.build(self.script, self.plans[index], state, index))
            except BuildError as e:
                results[index] = self._build_failure(index, e)
        if not built:
            return []
        if len(built) == 1:
            # Nothing left to share the file with.
            survivor = built[0].plan_index
            logger.info(
                f"{self.script.name}: plan {survivor + 1} is the only buildable plan of its group; "
                f"encoding it without a lossless intermediate."
            )
            return self._build_standalone([survivor], results)

        artifact = LosslessArtifact(lossless_path, len(built), keep=self.keep_lossless, preexisting=preexisting)
        self.artifacts.append(artifact)
        return [(pipeline, artifact) for pipeline in built]

    def _build_lossless_only(self, results: Dict[int, JobResult]) -> List[Tuple[Pipeline, Optional[LosslessArtifact]]]:
        jobs = []
        for key, indices in group(self.script, self.plans).items():
            index = indices[0]
            if not key.shareable:
                logger.info(f"{self.script.name}: plan {index + 1} copies the video stream; nothing to dump.")
                continue
            try:
                pipeline = self.builder.build_lossless(self.script, self.plans[index], index)
            except BuildError as e:
                results[index] = self._build_failure(index, e)
                continue
            if self._reusable(pipeline.destination):
                logger.info(f"Lossless intermediate already exists: {pipeline.destination}")
                results[index] = JobResult.succeeded(index, self.plans[index], pipeline.destination)
                continue
            jobs.append((pipeline, None))
        return jobs

    def build(self, results: Dict[int, JobResult]) -> List[Tuple[Pipeline, Optional[LosslessArtifact]]]:
        """Builds every pipeline, recording BuildErrors in `results`."""
        if self.lossless_only:
            return self._build_lossless_only(results)
        jobs = []
        for key, indices in group(self.script, self.plans).items():
            jobs.extend(self._build_group(key, indices, results))
        jobs.sort(key=lambda job: job[0].plan_index)
        return jobs

    # --- Running ---

    def _remove(self, path: Path) -> None:
        self.coordinator.release_output(path)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")

    def _finish(self, pipeline: Pipeline, result: JobResult) -> None:
        for path in pipeline.intermediates:
            self._remove(path)
        if result.success:
            self.coordinator.release_output(pipeline.destination)
        else:
            self._remove(pipeline.destination)

    def _run_job(self, pipeline: Pipeline, artifact: Optional[LosslessArtifact]) -> JobResult:
        try:
            if artifact is not None and pipeline.role is PipelineRole.CONSUMER:
                if not artifact.wait_ready(self.coordinator):
                    result = JobResult.failed(
                        pipeline.plan_index,
                        pipeline.plan,
                        "lossless",
                        diagnostics=f"Lossless intermediate {artifact.path.name} was not produced",
                    )
                    self._finish(pipeline, result)
                    return result

            def on_stage_done(stage: PipelineStage) -> None:
                if artifact is not None and stage.name == "lossless":
                    self.coordinator.release_output(artifact.path)
                    artifact.mark_ready()

            result = self.executor.run(pipeline, on_stage_done)
            self._finish(pipeline, result)
            return result
        finally:
            if artifact is not None:
                if pipeline.role is PipelineRole.PRODUCER and not artifact.ready.is_set():
                    artifact.mark_failed()
                artifact.release()
                if pipeline.role is PipelineRole.PRODUCER:
                    # The artifact owns the file from here on, whatever the outcome.
                    self.coordinator.release_output(artifact.path)

    def _execute(self, jobs: List[Tuple[Pipeline, Optional[LosslessArtifact]]]) -> Dict[int, JobResult]:
        results: Dict[int, JobResult] = {}
        logger.info(f"{self.script.name}: running {len(jobs)} pipeline(s) with {self.max_workers} worker(s).")
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="plan"
        ) as pool:
            futures = {pool.submit(self._run_job, pipeline, artifact): pipeline for pipeline, artifact in jobs}
            pending = set(futures)
            try:
                while pending:
                    # Short timeouts keep the main thread responsive to signals.
                    done, pending = concurrent.futures.wait(
                        pending, timeout=WAIT_POLL_INTERVAL, return_when=concurrent.futures.FIRST_COMPLETED
                    )
                    for future in done:
                        pipeline = futures[future]
                        try:
                            results[pipeline.plan_index] = future.result()
                        except EncodeInterruptedError:
                            raise
                        except Exception as exc:
                            tb_str = traceback.format_exception(exc)
                            logger.error(
                                f"Error running plan {pipeline.plan_index + 1} for {self.script.name}:\n"
                                f"Exception type: {type(exc).__name__}\n"
                                f"Exception message: {exc}\n"
                                f"Traceback: {''.join(tb_str)}"
                            )
                            results[pipeline.plan_index] = JobResult.failed(
                                pipeline.plan_index, pipeline.plan, "internal", diagnostics=str(exc)
                            )
                    self.coordinator.check()
            except (EncodeInterruptedError, KeyboardInterrupt):
                self.coordinator.interrupt("batch aborted")
                pool.shutdown(wait=False, cancel_futures=True)
                raise
        return results

    def run(self) -> List[JobResult]:
        """
        Builds and runs every plan for the script.

        Returns:
            One JobResult per plan, in plan order.

        Raises:
            EncodeInterruptedError: After the batch has been torn down. Shared
                lossless files are disposed of before this propagates.
        """
        results: Dict[int, JobResult] = {}
        jobs = self.build(results)

        if self.dry_run:
            for pipeline, _ in jobs:
                logger.info(
                    f"[dry-run] {self.script.name} plan {pipeline.plan_index + 1} "
                    f"({pipeline.role.value}):\n{pipeline.display()}"
                )
                results[pipeline.plan_index] = JobResult.succeeded(
                    pipeline.plan_index, pipeline.plan, pipeline.destination
                )
            return [results[i] for i in sorted(results)]

        try:
            results.update(self._execute(jobs))
        except (EncodeInterruptedError, KeyboardInterrupt):
            for artifact in self.artifacts:
                artifact.abandon()
            raise
        return [results[i] for i in sorted(results)]


class BatchEncodePipeline:
    """
    Top-level run: parse the encode spec once, then encode every discovered script.

    Args:
        input_path: A .vpy script or a directory of scripts.
        args: Parsed command-line arguments (see `mp4batch.cli`).
        toolbox: Tool lookup shared by all builds.
        media_info: Colorimetry and frame-count reader shared by all builds.
    """

    def __init__(
        self,
        input_path: Path,
        args,
        toolbox: Optional[Toolbox] = None,
        media_info: Optional[MediaInfo] = None,
    ):
        self.input_path = Path(input_path)
        self.args = args
        self.toolbox = toolbox or Toolbox()
        self.media_info = media_info or MediaInfo(self.toolbox)
        self.results: List[JobResult] = []


    def _report(self, script: Path, results: List[JobResult], output_dir: Path, elapsed: timedelta) -> None:
        if not results:
            return
        error_log = None
        success_log = None
        for result in results:
            if result.success:
                if self.args.dry_run:
                    continue
                size = output_size(result.destination)
                logger.success(f"{script.name}: {result.summary()} ({size})")
                success_log = success_log or SuccessLog(output_dir)
                success_log.write(
                    {
                        "script": str(script),
                        "plan": result.plan.to_spec(),
                        "output_file": str(result.destination),
                        "output_size": size,
                        "ended_datetime": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
                    }
                )
            else:
                logger.error(f"{script.name}: {result.summary()}")
                if result.diagnostics:
                    logger.error(f"Last output of stage '{result.stage}':\n{result.diagnostics}")
                error_log = error_log or ErrorLog(output_dir)
                error_log.write(
                    f"{datetime.now():%Y-%m-%d %H:%M:%S} {script}",
                    result.summary(),
                    result.diagnostics,
                )
        failed = sum(1 for r in results if not r.success)
        logger.info(
            f"{script.name}: {len(results) - failed}/{len(results)} plan(s) succeeded "
            f"in {format_elapsed(elapsed.total_seconds())}."
        )

    def run(self) -> int:
        """
        Returns:
            The process exit code.
        """
        try:
            plans = spec_parser.parse_or_default(self.args.formats)
        except ParseError as e:
            logger.error(f"Invalid encode spec: {e}")
            return EXIT_USAGE_ERROR
        logger.debug(f"Parsed {len(plans)} plan(s): {'; '.join(plan.to_spec() for plan in plans)}")

        try:
            scripts = discover_scripts(self.input_path)
        except (FileNotFoundError, ValueError) as e:
            logger.error(str(e))
            return EXIT_USAGE_ERROR
        if not scripts:
            logger.warning(f"No scripts to encode under {self.input_path}")
            return EXIT_USAGE_ERROR
        logger.info(f"Found {len(scripts)} script(s) to encode.")

        output_dir = self.args.output_dir or DEFAULT_OUTPUT_DIR
        builder = PipelineBuilder(
            output_dir=output_dir,
            work_dir=self.args.temp_work_dir,
            toolbox=self.toolbox,
            media_info=self.media_info,
            verify_frames=not self.args.no_verify_frames,
            force_keyframes=self.args.force_keyframes,
            copy_audio_to_lossless=self.args.copy_audio_to_lossless,
        )
        grace_period = getattr(self.args, "grace_period", DEFAULT_GRACE_PERIOD)

        with InterruptCoordinator(grace_period=grace_period) as coordinator:
            executor = PipelineExecutor(coordinator)
            try:
                for script in scripts:
                    coordinator.check()
                    started = datetime.now()
                    script_output_dir = builder.output_dir_for(script)
                    if not self.args.dry_run:
                        script_output_dir.mkdir(parents=True, exist_ok=True)
                        builder.work_dir_for(script).mkdir(parents=True, exist_ok=True)
                    batch = EncodeBatch(
                        script,
                        plans,
                        builder,
                        coordinator,
                        executor,
                        max_workers=self.args.processes,
                        keep_lossless=self.args.keep_lossless,
                        lossless_only=self.args.lossless_only,
                        dry_run=self.args.dry_run,
                        skip_lossless=self.args.skip_lossless,
                    )
                    results = batch.run()
                    self._report(script, results, script_output_dir, datetime.now() - started)
                    self.results.extend(results)
            except (EncodeInterruptedError, KeyboardInterrupt):
                coordinator.interrupt("interrupted by user")
                coordinator.cleanup_partial_outputs()
                logger.warning("Encoding interrupted; child processes stopped and partial outputs removed.")
                return EXIT_INTERRUPTED
            except Exception as exc:
                tb_str = traceback.format_exception(exc)
                logger.critical(
                    f"Batch aborted by an unexpected error:\n"
                    f"Exception type: {type(exc).__name__}\n"
                    f"Exception message: {exc}\n"
                    f"Traceback: {''.join(tb_str)}"
                )
                coordinator.interrupt("internal error")
                coordinator.cleanup_partial_outputs()
                return EXIT_INTERNAL_ERROR

        if all(result.success for result in self.results):
            return EXIT_OK
        return EXIT_PLAN_FAILURE
