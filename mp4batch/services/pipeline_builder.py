"""
Builds the chain of external processes that turns one script into one plan's output.

Typical pipelines (stage names in brackets):

    group of one, av1an encoder:
        [video] av1an -i clip.vpy ...            -> clip.<sig>.video.mkv
        [audio] ffmpeg -i clip.mkv -map 0:a:0    -> clip.<sig>.audio.mka
        [hdr]   ffprobe ... clip.mkv             > clip.<sig>.hdr.txt   (hdr=1 only)
        [mux]   mkvmerge -o clip.<sig>.mkv ...

    first plan of a shared group (producer):
        [vspipe] vspipe -c y4m clip.vpy - | [lossless] ffmpeg ... -qp 0 clip.lossless-<key>.mkv
        [video]  <encoder reading clip.lossless-<key>.mkv>
        ...

    later plans of the group (consumers) start at [video], reading the lossless file.

Every tool is resolved, and every unsupported field combination rejected,
before a single stage object is created, so a BuildError never leaves a
half-built pipeline behind. The source's colorimetry is read at build time as
well, because the encoders and the lossless dump need it on their command
lines; the lossless and video stages then verify their output's frame count.
"""
import functools
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import ffmpeg
from loguru import logger

from ..config.audio import (
    AUDIO_CODECS,
    AUDIO_INTERMEDIATE_SUFFIX,
    LOUDNORM_OPTIONS,
    MP4_SUBTITLE_CODEC,
    SUBTITLE_INTERMEDIATE_SUFFIX,
)
from ..config.video import (
    AV1_ENCODERS,
    AV1AN_ENCODER_NAMES,
    AV1AN_SCENE_METHOD,
    AV1AN_THREADED_WORKER_DIVISOR,
    ENCODER_TOOLS,
    HDR_ENCODERS,
    LOSSLESS_AUDIO_TRACK,
    LOSSLESS_CODEC,
    LOSSLESS_PRESET,
    LOSSLESS_TAG,
    PIXEL_FORMATS,
)
from ..domain.exceptions import (
    BuildError,
    FrameCountMismatch,
    MediaInfoError,
    SourceNotFoundError,
    UnsupportedCombinationError,
)
from ..domain.plan import EncodePlan, Track, VideoSettings
from ..domain.stage import Pipeline, PipelineRole, PipelineStage, StreamMode
from ..utils.tools import Toolbox
from .cache_key import CacheKey, key_of
from .colorimetry import Colorimetry
from .encoder_args import av1an_video_params, qpfile_lines, x264_args
from .file_discovery import find_source_media
from .hdr import ffprobe_hdr_args, write_mkvmerge_options
from .media_info import MediaInfo

FFMPEG_QUIET_ARGS = ("-hide_banner", "-loglevel", "level+error", "-stats")

# mkvmerge exits with 1 when it only emitted warnings.
MKVMERGE_SUCCESS_CODES = (0, 1)


@dataclass(frozen=True)
class CacheState:
    """Where a plan sits in its cache group."""

    group_size: int = 1
    position: int = 0
    lossless_path: Optional[Path] = None
    # The lossless file is already on disk (a previous run kept it).
    lossless_ready: bool = False

    @property
    def role(self) -> PipelineRole:
        if self.lossless_path is None:
            return PipelineRole.STANDALONE
        if self.lossless_ready or self.position > 0:
            return PipelineRole.CONSUMER
        return PipelineRole.PRODUCER


def _dispositions(tracks, kind: str) -> dict:
    """`-disposition:<kind>:<n>` options, only when at least one track carries flags."""
    if not any(t.enabled or t.forced for t in tracks):
        return {}
    options = {}
    for output_index, track in enumerate(tracks):
        flags = [name for name, on in (("default", track.enabled), ("forced", track.forced)) if on]
        options[f"disposition:{kind}:{output_index}"] = "+".join(flags) if flags else "0"
    return options


def _write_text(path: Path, text: str) -> None:
    path.write_text(text, encoding="utf-8")


class PipelineBuilder:
    """
    Turns (script, plan, cache state) into a Pipeline of PipelineStages.

    Args:
        output_dir: Where finished files go. Defaults to the script's directory.
        work_dir: Where intermediates go. Defaults to the output directory.
        toolbox: Tool lookup; inject one with a fake resolver in tests.
        source_finder: Locates the media file a script decodes.
        av1an_workers: Fixed av1an worker count; derived from the CPU count if None.
        media_info: Reads colorimetry and frame counts; built on `toolbox` if None.
        verify_frames: Check the frame count of lossless and encoded video files.
        force_keyframes: Frame numbers that must start a new GOP in every encode.
        copy_audio_to_lossless: Also store the source's first audio track in
            the lossless file.
    """

    def __init__(
        self,
        output_dir: Optional[Path] = None,
        work_dir: Optional[Path] = None,
        toolbox: Optional[Toolbox] = None,
        source_finder: Callable[[Path], Optional[Path]] = find_source_media,
        av1an_workers: Optional[int] = None,
        media_info: Optional[MediaInfo] = None,
        verify_frames: bool = True,
        force_keyframes: Sequence[int] = (),
        copy_audio_to_lossless: bool = False,
    ):
        self.output_dir = output_dir
        self.work_dir = work_dir
        self.toolbox = toolbox or Toolbox()
        self._find_source = source_finder
        self._av1an_workers = av1an_workers
        self.media_info = media_info or MediaInfo(self.toolbox)
        self.verify_frames = verify_frames
        self.force_keyframes = tuple(force_keyframes)
        self.copy_audio_to_lossless = copy_audio_to_lossless

    # --- Paths ---

    def output_dir_for(self, script: Path) -> Path:
        return Path(self.output_dir) if self.output_dir else script.parent

    def work_dir_for(self, script: Path) -> Path:
        return Path(self.work_dir) if self.work_dir else self.output_dir_for(script)

    def destination_for(self, script: Path, plan: EncodePlan) -> Path:
        return self.output_dir_for(script) / f"{script.stem}.{plan.signature()}.{plan.extension}"

    def lossless_path_for(self, script: Path, key: Optional[CacheKey] = None) -> Path:
        key = key or CacheKey(Path(os.path.abspath(script)))
        return self.work_dir_for(script) / f"{script.stem}.{LOSSLESS_TAG}-{key.digest()}.mkv"

    def _intermediate(self, script: Path, plan: EncodePlan, suffix: str) -> Path:
        return self.work_dir_for(script) / f"{script.stem}.{plan.signature()}{suffix}"

    @staticmethod
    def track_path(script: Path, track: Track) -> Path:
        """The sibling file an external track is read from."""
        return script.with_suffix(f".{track.external}")

    # --- Validation ---

    @staticmethod
    def check_combination(plan: EncodePlan, cache_state: CacheState) -> None:
        video = plan.video
        if plan.hdr:
            if video.encoder not in HDR_ENCODERS:
                raise UnsupportedCombinationError(f"hdr=1 cannot be carried by enc={video.encoder}")
            if video.bit_depth == 8:
                raise UnsupportedCombinationError("hdr=1 requires 10-bit output, but bd=8 was requested")
            if plan.extension == "mp4":
                raise UnsupportedCombinationError("hdr=1 metadata is only muxed into mkv, but ext=mp4 was requested")
        if video.is_copy and cache_state.lossless_path is not None:
            raise UnsupportedCombinationError("enc=copy cannot read from a lossless intermediate")

    def _required_tools(self, plan: EncodePlan, role: PipelineRole) -> List[str]:
        encoder = plan.video.encoder
        tools: List[str] = []
        if role is PipelineRole.PRODUCER:
            tools += ["vspipe", "ffmpeg"]
        if plan.video.is_copy:
            tools.append("ffmpeg")
        else:
            if encoder == "x264":
                tools += ["vspipe" if role is PipelineRole.STANDALONE else "ffmpeg", "x264"]
            else:
                tools += ["av1an", ENCODER_TOOLS[encoder]]
            # Colorimetry, and frame counts for verification.
            tools.append("ffprobe")
            if self.verify_frames:
                tools.append("vspipe")
        tools.append("ffmpeg")  # audio
        if plan.hdr:
            tools.append("ffprobe")
        # av1an concatenates x265 chunks with mkvmerge.
        if plan.extension == "mkv" or encoder == "x265":
            tools.append("mkvmerge")
        else:
            tools.append("ffmpeg")
        return list(dict.fromkeys(tools))

    def _check_track_files(self, script: Path, plan: EncodePlan) -> None:
        for key, tracks in (("at", plan.audio.tracks), ("st", plan.subtitle_tracks)):
            for track in tracks:
                if track.external and not self.track_path(script, track).is_file():
                    raise SourceNotFoundError(
                        f"{key}={track.render()} needs {self.track_path(script, track).name}, which does not exist"
                    )

    def colorimetry_for(self, plan: EncodePlan, source: Path) -> Optional[Colorimetry]:
        """
        The colour description passed to the plan's encoder.

        Raises:
            MediaInfoError: An hdr=1 plan whose source cannot be read. Other
                plans fall back to the encoders' own defaults.
            UnsupportedCombinationError: hdr=1 on a source that is not PQ or HLG.
        """
        if plan.video.is_copy:
            return None
        try:
            colour = self.media_info.colorimetry(source)
        except MediaInfoError as e:
            if plan.hdr:
                raise
            logger.warning(f"Encoding without colour tags: {e}")
            return None
        if plan.hdr and not colour.is_hdr:
            raise UnsupportedCombinationError(
                f"hdr=1 was requested, but {source.name} is not HDR (transfer characteristics {colour.transfer})"
            )
        return colour

    def lossless_is_complete(self, script: Path, lossless_path: Path) -> bool:
        """Whether an existing lossless file holds every frame of the script."""
        if not self.verify_frames:
            return True
        try:
            self.media_info.verify_frame_count(script, lossless_path)
        except (FrameCountMismatch, BuildError) as e:
            logger.warning(f"Existing lossless intermediate {lossless_path.name} cannot be reused: {e}")
            return False
        return True

    def _verifier(self, script: Path, path: Path) -> Optional[Callable[[], None]]:
        if not self.verify_frames:
            return None
        return functools.partial(self.media_info.verify_frame_count, script, path)

    # --- Stage factories ---

    def _ffmpeg_stage(self, name: str, stream, **stage_kwargs) -> PipelineStage:
        argv = stream.global_args(*FFMPEG_QUIET_ARGS).overwrite_output().compile(
            cmd=self.toolbox.require("ffmpeg")
        )
        return PipelineStage(name=name, executable=argv[0], args=list(argv[1:]), **stage_kwargs)

    def _vspipe_stage(self, script: Path) -> PipelineStage:
        return PipelineStage(
            name="vspipe",
            executable=self.toolbox.require("vspipe"),
            args=["-c", "y4m", str(script), "-"],
            stdout=StreamMode.PIPE,
        )

    def _lossless_stages(
        self,
        script: Path,
        video: VideoSettings,
        lossless_path: Path,
        source: Optional[Path],
        colour: Optional[Colorimetry],
    ) -> List[PipelineStage]:
        frames = ffmpeg.input("pipe:", format="yuv4mpegpipe").video
        if video.resolution:
            frames = frames.filter("scale", video.resolution[0], video.resolution[1])
        streams = [frames]
        output_kwargs = {"vcodec": LOSSLESS_CODEC, "preset": LOSSLESS_PRESET, "qp": 0}
        if video.bit_depth:
            output_kwargs["pix_fmt"] = PIXEL_FORMATS[video.bit_depth]
        if colour is not None:
            output_kwargs["x264-params"] = colour.x264_params()
        if self.copy_audio_to_lossless:
            streams.append(ffmpeg.input(str(source))[f"a:{LOSSLESS_AUDIO_TRACK}"])
            output_kwargs["acodec"] = "copy"
        dump = self._ffmpeg_stage(
            "lossless",
            ffmpeg.output(*streams, str(lossless_path), **output_kwargs),
            stdin=StreamMode.PIPE,
            outputs=[lossless_path],
            on_success=self._verifier(script, lossless_path),
        )
        return [self._vspipe_stage(script), dump]

    def _workers_for(self, encoder: str) -> int:
        if self._av1an_workers:
            return self._av1an_workers
        cores = os.cpu_count() or 1
        if encoder in AV1_ENCODERS:
            return max(cores, 1)
        return max(cores // AV1AN_THREADED_WORKER_DIVISOR, 1)

    def _av1an_stage(
        self,
        script: Path,
        plan: EncodePlan,
        frames: Path,
        video_out: Path,
        standalone: bool,
        colour: Optional[Colorimetry],
    ) -> PipelineStage:
        video = plan.video
        args = [
            "-i", str(frames),
            "-e", AV1AN_ENCODER_NAMES[video.encoder],
            "-v", av1an_video_params(video, plan.hdr, colour),
            "--sc-method", AV1AN_SCENE_METHOD,
            "-w", str(self._workers_for(video.encoder)),
        ]
        # Consumers read frames that were already filtered into the lossless file.
        if standalone and video.bit_depth:
            args += ["--pix-format", PIXEL_FORMATS[video.bit_depth]]
        if standalone and video.resolution:
            args += ["-f", f"-vf scale={video.resolution[0]}:{video.resolution[1]}"]
        if video.grain > 0:
            args += ["--photon-noise", str(video.grain), "--chroma-noise"]
        if self.force_keyframes:
            args += ["--force-keyframes", ",".join(map(str, self.force_keyframes))]
        if video.encoder == "x265":
            args += ["--concat", "mkvmerge"]
        args += ["-y", "-o", str(video_out)]
        return PipelineStage(
            name="video",
            executable=self.toolbox.require("av1an"),
            args=args,
            outputs=[video_out],
            on_success=self._verifier(script, video_out),
        )

    def _x264_stages(
        self,
        script: Path,
        plan: EncodePlan,
        role: PipelineRole,
        lossless_path: Optional[Path],
        video_out: Path,
        colour: Optional[Colorimetry],
        qpfile: Optional[Path],
    ) -> List[PipelineStage]:
        video = plan.video
        args = ["--demuxer", "y4m", *x264_args(video, colour, str(qpfile) if qpfile else None)]
        if role is PipelineRole.STANDALONE:
            source_stage = self._vspipe_stage(script)
            if video.resolution:
                args += ["--vf", f"resize:width={video.resolution[0]},height={video.resolution[1]}"]
        else:
            decode = ffmpeg.input(str(lossless_path)).video.output("pipe:", format="yuv4mpegpipe", strict=-1)
            source_stage = self._ffmpeg_stage("decode", decode, stdout=StreamMode.PIPE)
        args += ["-o", str(video_out), "-"]
        encode = PipelineStage(
            name="video",
            executable=self.toolbox.require("x264"),
            args=args,
            stdin=StreamMode.PIPE,
            outputs=[video_out, qpfile] if qpfile else [video_out],
            on_success=self._verifier(script, video_out),
        )
        if qpfile:
            encode.before_start = functools.partial(_write_text, qpfile, qpfile_lines(self.force_keyframes))
        return [source_stage, encode]

    def _copy_stage(self, source: Path, video_out: Path) -> PipelineStage:
        stream = ffmpeg.input(str(source))["v:0"].output(str(video_out), vcodec="copy", map_chapters=-1)
        return self._ffmpeg_stage("video", stream, outputs=[video_out])

    def _track_streams(self, script: Path, source: Path, tracks: Sequence[Track], kind: str) -> list:
        inputs: Dict[Path, object] = {}

        def opened(path: Path):
            if path not in inputs:
                inputs[path] = ffmpeg.input(str(path))
            return inputs[path]

        streams = []
        for track in tracks:
            if track.external:
                streams.append(opened(self.track_path(script, track))[f"{kind}:0"])
            else:
                streams.append(opened(source)[f"{kind}:{track.index}"])
        return streams

    def _audio_stage(self, script: Path, source: Path, plan: EncodePlan, audio_out: Path) -> PipelineStage:
        audio = plan.audio
        streams = self._track_streams(script, source, audio.tracks, "a")
        if audio.normalize:
            streams = [stream.filter("loudnorm", **LOUDNORM_OPTIONS) for stream in streams]
        output_kwargs = {"c:a": AUDIO_CODECS[audio.encoder], "map_chapters": -1}
        if audio.bitrate:
            output_kwargs["b:a"] = f"{audio.bitrate}k"
        output_kwargs.update(_dispositions(audio.tracks, "a"))
        stream = ffmpeg.output(*streams, str(audio_out), **output_kwargs)
        return self._ffmpeg_stage("audio", stream, outputs=[audio_out])

    def _subtitle_stage(self, script: Path, source: Path, tracks: Sequence[Track], subs_out: Path) -> PipelineStage:
        streams = self._track_streams(script, source, tracks, "s")
        output_kwargs = {"c:s": "copy"}
        output_kwargs.update(_dispositions(tracks, "s"))
        stream = ffmpeg.output(*streams, str(subs_out), **output_kwargs)
        return self._ffmpeg_stage("subtitles", stream, outputs=[subs_out])

    def _hdr_stage(self, source: Path, side_data_out: Path, options_out: Path) -> PipelineStage:
        return PipelineStage(
            name="hdr",
            executable=self.toolbox.require("ffprobe"),
            args=ffprobe_hdr_args(source),
            stdout=StreamMode.FILE,
            stdout_path=side_data_out,
            outputs=[side_data_out, options_out],
            on_success=functools.partial(write_mkvmerge_options, side_data_out, options_out),
        )

    def _mux_stage(
        self,
        plan: EncodePlan,
        destination: Path,
        video_out: Path,
        audio_out: Path,
        subs_out: Optional[Path],
        hdr_options: Optional[Path],
        colour: Optional[Colorimetry],
    ) -> PipelineStage:
        if plan.extension == "mkv":
            args = ["-o", str(destination)]
            if hdr_options:
                args.append(f"@{hdr_options}")
                if colour is not None:
                    args += colour.mkvmerge_options()
            args += [str(video_out), str(audio_out)]
            if subs_out:
                args.append(str(subs_out))
            return PipelineStage(
                name="mux",
                executable=self.toolbox.require("mkvmerge"),
                args=args,
                outputs=[destination],
                success_codes=MKVMERGE_SUCCESS_CODES,
            )

        streams = [ffmpeg.input(str(video_out))["v:0"], ffmpeg.input(str(audio_out))["a"]]
        output_kwargs = {"c": "copy", "map_chapters": -1, "movflags": "+faststart"}
        if subs_out:
            streams.append(ffmpeg.input(str(subs_out))["s"])
            output_kwargs["c:s"] = MP4_SUBTITLE_CODEC
        stream = ffmpeg.output(*streams, str(destination), **output_kwargs)
        return self._ffmpeg_stage("mux", stream, outputs=[destination])

    # --- Public API ---

    def build(
        self,
        input_path: Path,
        plan: EncodePlan,
        cache_state: CacheState = CacheState(),
        plan_index: int = 0,
    ) -> Pipeline:
        """
        Builds the pipeline for one plan.

        Args:
            input_path: The .vpy script.
            plan: The plan to build.
            cache_state: The plan's position in its cache group. With no
                lossless path the script feeds the encoder directly; the first
                member of a shared group also produces the lossless file; later
                members (or all of them, when the file already exists) read it.
            plan_index: Index of the plan in the parsed spec, kept on the result.

        Raises:
            ToolNotFoundError: A required executable is not resolvable.
            UnsupportedCombinationError: The plan has no valid stage mapping,
                or asks for HDR from a source that is not HDR.
            SourceNotFoundError: No media file for audio, copy or HDR, or a
                missing sibling file for an external track.
            MediaInfoError: The source of an hdr=1 plan cannot be read.
        """
        script = Path(input_path)
        role = cache_state.role
        self.check_combination(plan, cache_state)
        for tool in self._required_tools(plan, role):
            self.toolbox.require(tool)
        source = self._find_source(script)
        if source is None:
            raise SourceNotFoundError(f"No source media found for {script.name} (audio is read from it)")
        self._check_track_files(script, plan)
        colour = self.colorimetry_for(plan, source)

        destination = self.destination_for(script, plan)
        video_out = self._intermediate(script, plan, ".video.mkv")
        audio_out = self._intermediate(script, plan, AUDIO_INTERMEDIATE_SUFFIX)
        subs_out = self._intermediate(script, plan, SUBTITLE_INTERMEDIATE_SUFFIX) if plan.subtitle_tracks else None
        hdr_side_data = self._intermediate(script, plan, ".hdr.txt") if plan.hdr else None
        hdr_options = self._intermediate(script, plan, ".hdr.json") if plan.hdr else None
        qpfile = None
        if self.force_keyframes and plan.video.encoder == "x264":
            qpfile = self._intermediate(script, plan, ".qpfile.txt")

        stages: List[PipelineStage] = []
        if role is PipelineRole.PRODUCER:
            stages += self._lossless_stages(script, plan.video, cache_state.lossless_path, source, colour)
        frames = script if role is PipelineRole.STANDALONE else cache_state.lossless_path

        if plan.video.is_copy:
            stages.append(self._copy_stage(source, video_out))
        elif plan.video.encoder == "x264":
            stages += self._x264_stages(script, plan, role, cache_state.lossless_path, video_out, colour, qpfile)
        else:
            stages.append(
                self._av1an_stage(script, plan, frames, video_out, role is PipelineRole.STANDALONE, colour)
            )

        stages.append(self._audio_stage(script, source, plan, audio_out))
        if subs_out:
            stages.append(self._subtitle_stage(script, source, plan.subtitle_tracks, subs_out))
        if plan.hdr:
            stages.append(self._hdr_stage(source, hdr_side_data, hdr_options))
        stages.append(self._mux_stage(plan, destination, video_out, audio_out, subs_out, hdr_options, colour))

        intermediates = [p for p in (video_out, audio_out, subs_out, hdr_side_data, hdr_options, qpfile) if p]
        pipeline = Pipeline(
            plan_index=plan_index,
            plan=plan,
            stages=stages,
            destination=destination,
            role=role,
            lossless_path=cache_state.lossless_path,
            intermediates=intermediates,
        )
        logger.debug(
            f"Built {role.value} pipeline for plan {plan_index + 1} ({plan.to_spec()}): "
            f"{' -> '.join(pipeline.stage_names)}"
        )
        return pipeline

    def build_lossless(self, input_path: Path, plan: EncodePlan, plan_index: int = 0) -> Pipeline:
        """Builds only the lossless dump for the plan's cache group."""
        script = Path(input_path)
        key = key_of(script, plan)
        if not key.shareable:
            raise UnsupportedCombinationError("enc=copy has no lossless intermediate")
        tools = ["vspipe", "ffmpeg", "ffprobe"]
        for tool in tools:
            self.toolbox.require(tool)
        source = self._find_source(script)
        if source is None and self.copy_audio_to_lossless:
            raise SourceNotFoundError(f"No source media found for {script.name} (audio is copied from it)")
        colour = self.colorimetry_for(plan, source) if source is not None else None
        lossless_path = self.lossless_path_for(script, key)
        return Pipeline(
            plan_index=plan_index,
            plan=plan,
            stages=self._lossless_stages(script, plan.video, lossless_path, source, colour),
            destination=lossless_path,
            role=PipelineRole.PRODUCER,
            lossless_path=lossless_path,
        )
