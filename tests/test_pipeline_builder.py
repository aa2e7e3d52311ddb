"""Tests for the process pipeline builder."""

from pathlib import Path

import pytest

from mp4batch.domain.exceptions import (
    FrameCountMismatch,
    MediaInfoError,
    SourceNotFoundError,
    ToolNotFoundError,
    UnsupportedCombinationError,
)
from mp4batch.domain.stage import PipelineRole, StreamMode
from mp4batch.services.cache_key import key_of
from mp4batch.services.pipeline_builder import CacheState, PipelineBuilder
from mp4batch.services.spec_parser import parse
from mp4batch.utils.tools import Toolbox

from conftest import SCRIPT_FRAMES, SDR_COLOUR, FakeMediaInfo, fake_resolver


def _shared_states(builder: PipelineBuilder, script: Path, plans):
    lossless = builder.lossless_path_for(script, key_of(script, plans[0]))
    return lossless, [
        CacheState(group_size=len(plans), position=i, lossless_path=lossless) for i in range(len(plans))
    ]


class TestCacheState:
    """Tests for CacheState.role."""

    def test_roles(self, tmp_path: Path) -> None:
        lossless = tmp_path / "clip.lossless.mkv"

        assert CacheState().role is PipelineRole.STANDALONE
        assert CacheState(2, 0, lossless).role is PipelineRole.PRODUCER
        assert CacheState(2, 1, lossless).role is PipelineRole.CONSUMER
        assert CacheState(2, 0, lossless, lossless_ready=True).role is PipelineRole.CONSUMER


class TestStandalonePipelines:
    """Tests for plans that do not share a lossless intermediate."""

    def test_av1_hdr_plan_has_four_stages(self, builder: PipelineBuilder, script: Path) -> None:
        """A single AV1 plan with HDR runs video, audio, HDR side data and mux."""
        (plan,) = parse("enc=aom,q=20,s=4,g=8,hdr=1,aenc=opus")

        pipeline = builder.build(script, plan)

        assert pipeline.role is PipelineRole.STANDALONE
        assert pipeline.stage_names == ["video", "audio", "hdr", "mux"]
        video, audio, hdr, mux = pipeline.stages
        assert video.executable == "/usr/bin/av1an"
        assert video.args[video.args.index("-i") + 1] == str(script)
        assert video.args[video.args.index("-e") + 1] == "aom"
        assert "--cq-level=20" in video.args[video.args.index("-v") + 1]
        assert video.args[video.args.index("--photon-noise") + 1] == "8"
        assert audio.executable == "/usr/bin/ffmpeg"
        assert audio.args[audio.args.index("-c:a") + 1] == "libopus"
        assert audio.args[audio.args.index("-b:a") + 1] == "128k"
        assert hdr.executable == "/usr/bin/ffprobe"
        assert hdr.stdout is StreamMode.FILE
        assert hdr.on_success is not None
        assert mux.executable == "/usr/bin/mkvmerge"
        assert any(arg.startswith("@") for arg in mux.args)
        assert mux.success_codes == (0, 1)

    def test_destination_uses_plan_signature(self, builder: PipelineBuilder, script: Path, tmp_path: Path) -> None:
        (plan,) = parse("enc=aom,q=20,s=4,g=8,hdr=1,aenc=opus")

        pipeline = builder.build(script, plan)

        assert pipeline.destination == tmp_path / "out" / "clip.aom-q20-s4-pfilm-g8-hdr.opus-ab128.mkv"
        assert pipeline.destination in pipeline.stages[-1].outputs

    def test_x264_reads_from_vspipe(self, builder: PipelineBuilder, script: Path) -> None:
        (plan,) = parse("enc=x264,q=16,res=1280x720")

        pipeline = builder.build(script, plan)

        assert pipeline.stage_names == ["vspipe", "video", "audio", "mux"]
        vspipe, x264 = pipeline.stages[:2]
        assert vspipe.stdout is StreamMode.PIPE
        assert vspipe.args == ["-c", "y4m", str(script), "-"]
        assert x264.stdin is StreamMode.PIPE
        assert x264.args[-1] == "-"
        assert "resize:width=1280,height=720" in x264.args

    def test_copy_plan_reads_the_source_media(self, builder: PipelineBuilder, script: Path) -> None:
        (plan,) = parse("enc=copy")

        pipeline = builder.build(script, plan)

        assert pipeline.stage_names == ["video", "audio", "mux"]
        assert str(script.with_suffix(".mkv")) in pipeline.stages[0].args

    def test_mp4_is_muxed_with_ffmpeg(self, builder: PipelineBuilder, script: Path) -> None:
        (plan,) = parse("enc=x264,ext=mp4,aenc=aac,st=0")

        pipeline = builder.build(script, plan)

        assert pipeline.stage_names == ["vspipe", "video", "audio", "subtitles", "mux"]
        mux = pipeline.stages[-1]
        assert mux.executable == "/usr/bin/ffmpeg"
        assert mux.args[mux.args.index("-c:s") + 1] == "mov_text"
        assert pipeline.destination.suffix == ".mp4"

    def test_intermediates_are_listed(self, builder: PipelineBuilder, script: Path) -> None:
        (plan,) = parse("enc=aom,hdr=1")

        pipeline = builder.build(script, plan)

        suffixes = sorted(p.name.rsplit(".", 2)[-2] + "." + p.suffix[1:] for p in pipeline.intermediates)
        assert suffixes == ["audio.mka", "hdr.json", "hdr.txt", "video.mkv"]

    def test_normalized_audio_tracks(self, builder: PipelineBuilder, script: Path) -> None:
        (plan,) = parse("aenc=opus,an=1,at=0-d|1")

        audio = builder.build(script, plan).stages[2]

        assert any("loudnorm" in arg for arg in audio.args)
        assert audio.args[audio.args.index("-disposition:a:0") + 1] == "default"
        assert audio.args[audio.args.index("-disposition:a:1") + 1] == "0"


class TestSharedPipelines:
    """Tests for groups of plans sharing one lossless intermediate."""

    def test_producer_and_consumer(self, builder: PipelineBuilder, script: Path) -> None:
        """The first plan writes the lossless file; the second reads it."""
        plans = parse("enc=aom,q=20,s=4;enc=x264,q=16")
        lossless, states = _shared_states(builder, script, plans)

        producer = builder.build(script, plans[0], states[0], 0)
        consumer = builder.build(script, plans[1], states[1], 1)

        assert producer.role is PipelineRole.PRODUCER
        assert producer.stage_names == ["vspipe", "lossless", "video", "audio", "mux"]
        dump = producer.stages[1]
        assert dump.stdin is StreamMode.PIPE
        assert dump.args[dump.args.index("-qp") + 1] == "0"
        assert lossless in dump.outputs
        av1an = producer.stages[2]
        assert av1an.args[av1an.args.index("-i") + 1] == str(lossless)

        assert consumer.role is PipelineRole.CONSUMER
        assert consumer.stage_names == ["decode", "video", "audio", "mux"]
        assert str(lossless) in consumer.stages[0].args
        assert consumer.stages[0].stdout is StreamMode.PIPE

        for pipeline in (producer, consumer):
            audio = pipeline.stages[pipeline.stage_names.index("audio")]
            assert audio.args[audio.args.index("-c:a") + 1] == "copy"

    def test_lossless_file_lives_in_work_dir(self, toolbox: Toolbox, script: Path, tmp_path: Path) -> None:
        builder = PipelineBuilder(output_dir=tmp_path / "out", work_dir=tmp_path / "work", toolbox=toolbox)
        (plan,) = parse("enc=aom")

        path = builder.lossless_path_for(script, key_of(script, plan))

        assert path.parent == tmp_path / "work"
        assert path.name.startswith("clip.lossless-")

    def test_existing_lossless_file_makes_everyone_a_consumer(self, builder: PipelineBuilder, script: Path) -> None:
        plans = parse("enc=aom;enc=svt")
        lossless = builder.lossless_path_for(script, key_of(script, plans[0]))
        state = CacheState(2, 0, lossless, lossless_ready=True)

        pipeline = builder.build(script, plans[0], state)

        assert "lossless" not in pipeline.stage_names

    def test_build_lossless_only(self, builder: PipelineBuilder, script: Path) -> None:
        (plan,) = parse("enc=aom,bd=10")

        pipeline = builder.build_lossless(script, plan)

        assert pipeline.stage_names == ["vspipe", "lossless"]
        assert pipeline.destination == pipeline.lossless_path
        dump = pipeline.stages[1]
        assert dump.args[dump.args.index("-pix_fmt") + 1] == "yuv420p10le"


class TestBuildErrors:
    """Tests for plans that cannot be built."""

    def test_missing_tool(self, script: Path, tmp_path: Path) -> None:
        toolbox = Toolbox(lambda name: None if name == "av1an" else fake_resolver(name))
        builder = PipelineBuilder(output_dir=tmp_path, toolbox=toolbox)

        with pytest.raises(ToolNotFoundError) as exc_info:
            builder.build(script, parse("enc=aom")[0])

        assert exc_info.value.tool == "av1an"
        assert str(exc_info.value) == "av1an not installed or not in PATH"

    @pytest.mark.parametrize(
        "spec",
        ["enc=x264,hdr=1", "enc=copy,hdr=1", "enc=aom,bd=8,hdr=1", "enc=aom,hdr=1,ext=mp4"],
    )
    def test_unsupported_hdr_combinations(self, builder: PipelineBuilder, script: Path, spec: str) -> None:
        with pytest.raises(UnsupportedCombinationError):
            builder.build(script, parse(spec)[0])

    def test_hdr_with_resolution_is_allowed(self, builder: PipelineBuilder, script: Path) -> None:
        pipeline = builder.build(script, parse("enc=aom,hdr=1,res=1920x1080")[0])

        assert "hdr" in pipeline.stage_names

    def test_missing_source_media(self, builder: PipelineBuilder, tmp_path: Path) -> None:
        lonely = tmp_path / "lonely.vpy"
        lonely.write_text("core = None\n", encoding="utf-8")

        with pytest.raises(SourceNotFoundError):
            builder.build(lonely, parse("enc=aom")[0])


def _video_params(pipeline) -> str:
    video = pipeline.stages[pipeline.stage_names.index("video")]
    return video.args[video.args.index("-v") + 1]


class TestColourTags:
    """Tests for the source colorimetry reaching encoders, the lossless dump and mkvmerge."""

    def test_hdr_aom_plan_is_tagged(self, builder: PipelineBuilder, script: Path) -> None:
        pipeline = builder.build(script, parse("enc=aom,q=20,s=4,hdr=1")[0])

        params = _video_params(pipeline).split()
        assert "--color-primaries=bt2020" in params
        assert "--transfer-characteristics=smpte2084" in params
        assert "--matrix-coefficients=bt2020ncl" in params
        assert "--chroma-sample-position=vertical" in params
        mux = pipeline.stages[-1]
        assert mux.args[mux.args.index("--colour-transfer-characteristics") + 1] == "0:16"
        assert mux.args[mux.args.index("--colour-primaries") + 1] == "0:9"
        assert mux.args[mux.args.index("--colour-range") + 1] == "0:1"
        # Track options apply to the next input file, which is the video.
        options_at = max(i for i, arg in enumerate(mux.args) if arg.startswith("--colour-"))
        assert mux.args[options_at + 2].endswith(".video.mkv")

    def test_hdr_x265_plan_carries_mastering_display(self, builder: PipelineBuilder, script: Path) -> None:
        params = _video_params(builder.build(script, parse("enc=x265,q=18,hdr=1")[0]))

        assert "--master-display G(13250,34500)B(7500,3000)R(34000,16000)WP(15635,16450)L(10000000,50)" in params
        assert "--max-cll 1000,400" in params
        assert "--transfer smpte2084" in params
        assert params.endswith("--hdr10-opt")

    def test_hdr_svt_plan_carries_mastering_display(self, builder: PipelineBuilder, script: Path) -> None:
        params = _video_params(builder.build(script, parse("enc=svt,hdr=1")[0]))

        assert "--transfer-characteristics 16" in params
        assert "--mastering-display G(0.2650,0.6900)B(0.1500,0.0600)R(0.6800,0.3200)WP(0.3127,0.3290)" in params
        assert "--content-light 1000,400" in params

    def test_sdr_plan_is_tagged_without_mastering(self, toolbox: Toolbox, script: Path, tmp_path: Path) -> None:
        builder = PipelineBuilder(output_dir=tmp_path, toolbox=toolbox, media_info=FakeMediaInfo(SDR_COLOUR))

        pipeline = builder.build(script, parse("enc=x264,q=16")[0])

        x264 = pipeline.stages[1]
        assert x264.args[x264.args.index("--colorprim") + 1] == "bt709"
        assert x264.args[x264.args.index("--input-range") + 1] == "tv"
        assert not any(arg.startswith("--colour-") for arg in pipeline.stages[-1].args)

    def test_lossless_dump_is_tagged(self, builder: PipelineBuilder, script: Path) -> None:
        plans = parse("enc=aom,hdr=1;enc=svt,hdr=1")
        _, states = _shared_states(builder, script, plans)

        dump = builder.build(script, plans[0], states[0], 0).stages[1]

        assert dump.args[dump.args.index("-x264-params") + 1] == (
            "colorprim=bt2020:transfer=smpte2084:colormatrix=bt2020nc:input-range=tv:range=tv"
        )

    def test_hdr_from_sdr_source_is_rejected(self, toolbox: Toolbox, script: Path, tmp_path: Path) -> None:
        builder = PipelineBuilder(output_dir=tmp_path, toolbox=toolbox, media_info=FakeMediaInfo(SDR_COLOUR))

        with pytest.raises(UnsupportedCombinationError, match="not HDR"):
            builder.build(script, parse("enc=aom,hdr=1")[0])

    def test_unreadable_source(self, toolbox: Toolbox, script: Path, tmp_path: Path) -> None:
        """HDR plans need the source's colorimetry; other plans encode untagged."""
        builder = PipelineBuilder(output_dir=tmp_path, toolbox=toolbox, media_info=FakeMediaInfo(colour=None))

        with pytest.raises(MediaInfoError):
            builder.build(script, parse("enc=aom,hdr=1")[0])
        params = _video_params(builder.build(script, parse("enc=aom")[0]))
        assert "--color-primaries" not in params
        assert builder.build(script, parse("enc=copy")[0]).stage_names == ["video", "audio", "mux"]


class TestFrameVerification:
    """Tests for the frame-count checks attached to lossless and video stages."""

    def test_video_stage_checks_its_output(
        self, builder: PipelineBuilder, media_info: FakeMediaInfo, script: Path
    ) -> None:
        pipeline = builder.build(script, parse("enc=aom")[0])
        video = pipeline.stages[0]
        (video_out,) = video.outputs

        media_info.frames[video_out] = SCRIPT_FRAMES - SCRIPT_FRAMES // 200
        video.on_success()
        media_info.frames[video_out] = SCRIPT_FRAMES // 2
        with pytest.raises(FrameCountMismatch) as exc_info:
            video.on_success()

        assert exc_info.value.expected == SCRIPT_FRAMES
        assert exc_info.value.actual == SCRIPT_FRAMES // 2

    def test_lossless_dump_checks_its_output(
        self, builder: PipelineBuilder, media_info: FakeMediaInfo, script: Path
    ) -> None:
        pipeline = builder.build_lossless(script, parse("enc=aom")[0])
        media_info.frames[pipeline.lossless_path] = 10

        with pytest.raises(FrameCountMismatch):
            pipeline.stages[1].on_success()

    def test_verification_can_be_disabled(self, toolbox: Toolbox, script: Path, tmp_path: Path) -> None:
        builder = PipelineBuilder(output_dir=tmp_path, toolbox=toolbox, media_info=FakeMediaInfo(), verify_frames=False)

        pipeline = builder.build(script, parse("enc=x264")[0])

        assert pipeline.stages[1].on_success is None

    def test_copy_is_not_checked(self, builder: PipelineBuilder, script: Path) -> None:
        assert builder.build(script, parse("enc=copy")[0]).stages[0].on_success is None

    def test_lossless_is_complete(self, builder: PipelineBuilder, media_info: FakeMediaInfo, script: Path) -> None:
        lossless = builder.lossless_path_for(script)

        assert builder.lossless_is_complete(script, lossless)
        media_info.frames[lossless] = SCRIPT_FRAMES - 100
        assert not builder.lossless_is_complete(script, lossless)
        builder.verify_frames = False
        assert builder.lossless_is_complete(script, lossless)


class TestForcedKeyframes:
    """Tests for frames forced to start a new GOP."""

    def test_av1an_flag(self, builder: PipelineBuilder, script: Path) -> None:
        builder.force_keyframes = (0, 1200, 3456)

        video = builder.build(script, parse("enc=svt")[0]).stages[0]

        assert video.args[video.args.index("--force-keyframes") + 1] == "0,1200,3456"

    def test_x264_qpfile(self, builder: PipelineBuilder, script: Path, tmp_path: Path) -> None:
        builder.force_keyframes = (0, 1200)
        (tmp_path / "out").mkdir()

        pipeline = builder.build(script, parse("enc=x264")[0])

        x264 = pipeline.stages[1]
        qpfile = Path(x264.args[x264.args.index("--qpfile") + 1])
        assert qpfile in pipeline.intermediates
        assert qpfile in x264.outputs
        assert not qpfile.exists()
        x264.before_start()
        assert qpfile.read_text(encoding="utf-8") == "0 I -1\n1200 I -1\n"

    def test_no_keyframes_by_default(self, builder: PipelineBuilder, script: Path) -> None:
        x264 = builder.build(script, parse("enc=x264")[0]).stages[1]

        assert "--qpfile" not in x264.args
        assert x264.before_start is None


class TestSiblingTracks:
    """Tests for audio and subtitle tracks read from files next to the script."""

    def test_external_audio_and_subtitles(self, builder: PipelineBuilder, script: Path) -> None:
        ac3 = script.with_suffix(".ac3")
        ac3.write_bytes(b"\x0b\x77")
        srt = script.with_suffix(".srt")
        srt.write_text("1\n00:00:00,000 --> 00:00:01,000\nhi\n", encoding="utf-8")

        pipeline = builder.build(script, parse("aenc=opus,at=0|ac3-d,st=srt")[0])

        audio = pipeline.stages[pipeline.stage_names.index("audio")]
        assert str(ac3) in audio.args
        assert str(script.with_suffix(".mkv")) in audio.args
        assert audio.args.count("-map") == 2
        assert audio.args[audio.args.index("-disposition:a:1") + 1] == "default"
        subtitles = pipeline.stages[pipeline.stage_names.index("subtitles")]
        assert str(srt) in subtitles.args
        assert str(script.with_suffix(".mkv")) not in subtitles.args

    def test_missing_sibling_file(self, builder: PipelineBuilder, script: Path) -> None:
        with pytest.raises(SourceNotFoundError, match="clip.dts"):
            builder.build(script, parse("at=dts")[0])


class TestLosslessAudio:
    """Tests for copying the source's audio into the lossless intermediate."""

    def test_audio_is_copied(self, builder: PipelineBuilder, script: Path) -> None:
        builder.copy_audio_to_lossless = True

        dump = builder.build_lossless(script, parse("enc=aom")[0]).stages[1]

        assert str(script.with_suffix(".mkv")) in dump.args
        assert dump.args[dump.args.index("-acodec") + 1] == "copy"
        assert dump.args.count("-map") == 2

    def test_video_only_by_default(self, builder: PipelineBuilder, script: Path) -> None:
        dump = builder.build_lossless(script, parse("enc=aom")[0]).stages[1]

        assert "-acodec" not in dump.args
