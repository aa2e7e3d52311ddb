"""Shared test fixtures for mp4batch."""

from pathlib import Path
from typing import Dict, Optional

import pytest

from mp4batch.domain.exceptions import MediaInfoError
from mp4batch.services.colorimetry import Colorimetry
from mp4batch.services.hdr import HdrMetadata
from mp4batch.services.media_info import MediaInfo
from mp4batch.services.pipeline_builder import PipelineBuilder
from mp4batch.utils.tools import Toolbox

SCRIPT_FRAMES = 1000

HDR10_MASTERING = HdrMetadata(
    red=(0.68, 0.32),
    green=(0.265, 0.69),
    blue=(0.15, 0.06),
    white=(0.3127, 0.329),
    has_coordinates=True,
    max_luma=1000.0,
    min_luma=0.005,
    max_content_light=1000,
    max_frame_light=400,
)
# BT.2020 / PQ / BT.2020 NCL, limited range, left chroma siting.
HDR10_COLOUR = Colorimetry(9, 16, 9, chroma_location="left", mastering=HDR10_MASTERING)
SDR_COLOUR = Colorimetry(1, 1, 1)


def fake_resolver(name: str) -> str:
    """Pretends every tool is installed under /usr/bin."""
    return f"/usr/bin/{name}"


class FakeMediaInfo(MediaInfo):
    """Answers from fixed values instead of running ffprobe and vspipe."""

    def __init__(self, colour: Optional[Colorimetry] = HDR10_COLOUR, script_frames: int = SCRIPT_FRAMES):
        super().__init__(Toolbox(fake_resolver))
        self.colour = colour
        self.script_frames = script_frames
        # Frame counts of individual files; anything else matches the script.
        self.frames: Dict[Path, int] = {}

    def colorimetry(self, source: Path) -> Colorimetry:
        if self.colour is None:
            raise MediaInfoError(f"ffprobe could not read {Path(source).name}")
        return self.colour

    def frame_count(self, path: Path) -> int:
        return self.frames.get(Path(path), self.script_frames)

    def script_frame_count(self, script: Path) -> int:
        return self.script_frames


@pytest.fixture
def toolbox() -> Toolbox:
    return Toolbox(fake_resolver)


@pytest.fixture
def media_info() -> FakeMediaInfo:
    return FakeMediaInfo()


@pytest.fixture
def script(tmp_path: Path) -> Path:
    """A .vpy script with a sibling source media file."""
    path = tmp_path / "clip.vpy"
    path.write_text("import vapoursynth as vs\ncore = vs.core\n", encoding="utf-8")
    (tmp_path / "clip.mkv").write_bytes(b"\x1a\x45\xdf\xa3")
    return path


@pytest.fixture
def builder(toolbox: Toolbox, media_info: FakeMediaInfo, tmp_path: Path) -> PipelineBuilder:
    return PipelineBuilder(output_dir=tmp_path / "out", toolbox=toolbox, av1an_workers=2, media_info=media_info)
