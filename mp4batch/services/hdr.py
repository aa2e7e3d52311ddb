"""
HDR10 metadata extraction.

The HDR stage runs

    ffprobe -v quiet -select_streams v:0 -show_frames -read_intervals %+#1 <source>

and stores its key=value output in a sidecar file. Once that stage exits
cleanly, `write_mkvmerge_options` turns the mastering-display and content-light
side data into an mkvmerge option file (a JSON array, passed as `@file`), which
the mux stage applies to the video track.

The same side data is also read at build time from ffprobe's JSON output
(`hdr_from_side_data`), because x265, svt-av1 and rav1e take it as encoder
options.
"""
import json
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger

MASTERING_DISPLAY_TYPE = "Mastering display metadata"
CONTENT_LIGHT_TYPE = "Content light level metadata"
MASTERING_DISPLAY_MARKER = f"side_data_type={MASTERING_DISPLAY_TYPE}"
CONTENT_LIGHT_MARKER = f"side_data_type={CONTENT_LIGHT_TYPE}"

_COORDINATE_KEYS = {
    "red_x": ("red", 0),
    "red_y": ("red", 1),
    "green_x": ("green", 0),
    "green_y": ("green", 1),
    "blue_x": ("blue", 0),
    "blue_y": ("blue", 1),
    "white_point_x": ("white", 0),
    "white_point_y": ("white", 1),
}

# x265 --master-display units: chromaticity in 0.00002, luminance in 0.0001 cd/m2.
X265_CHROMATICITY_SCALE = 50000
X265_LUMINANCE_SCALE = 10000


def ffprobe_hdr_args(source: Path) -> List[str]:
    return [
        "-v", "quiet",
        "-select_streams", "v:0",
        "-show_frames",
        "-read_intervals", "%+#1",
        str(source),
    ]


@dataclass
class HdrMetadata:
    red: Tuple[float, float] = (0.0, 0.0)
    green: Tuple[float, float] = (0.0, 0.0)
    blue: Tuple[float, float] = (0.0, 0.0)
    white: Tuple[float, float] = (0.0, 0.0)
    has_coordinates: bool = False
    max_luma: float = 0.0
    min_luma: float = 0.0
    max_content_light: int = 0
    max_frame_light: int = 0

    def mkvmerge_options(self, track_id: int = 0) -> List[str]:
        """mkvmerge options applying this metadata to `track_id` of the next input file."""
        options: List[str] = []
        if self.max_content_light > 0:
            options += ["--max-content-light", f"{track_id}:{self.max_content_light}"]
        if self.max_frame_light > 0:
            options += ["--max-frame-light", f"{track_id}:{self.max_frame_light}"]
        options += [
            "--max-luminance", f"{track_id}:{self.max_luma:g}",
            "--min-luminance", f"{track_id}:{self.min_luma:.4f}",
        ]
        if self.has_coordinates:
            coordinates = ",".join(
                f"{value:.5f}" for value in (*self.red, *self.green, *self.blue)
            )
            options += [
                "--chromaticity-coordinates", f"{track_id}:{coordinates}",
                "--white-colour-coordinates", f"{track_id}:{self.white[0]:.5f},{self.white[1]:.5f}",
            ]
        return options

    def x265_master_display(self) -> str:
        """`G(x,y)B(x,y)R(x,y)WP(x,y)L(max,min)` in x265's integer units."""

        def point(xy: Tuple[float, float]) -> str:
            return f"({round(xy[0] * X265_CHROMATICITY_SCALE)},{round(xy[1] * X265_CHROMATICITY_SCALE)})"

        return (
            f"G{point(self.green)}B{point(self.blue)}R{point(self.red)}WP{point(self.white)}"
            f"L({round(self.max_luma * X265_LUMINANCE_SCALE)},{round(self.min_luma * X265_LUMINANCE_SCALE)})"
        )

    def mastering_display(self) -> str:
        """The same layout with plain ratios and cd/m2, as svt-av1 and rav1e take it."""

        def point(xy: Tuple[float, float]) -> str:
            return f"({xy[0]:.4f},{xy[1]:.4f})"

        return (
            f"G{point(self.green)}B{point(self.blue)}R{point(self.red)}WP{point(self.white)}"
            f"L({self.max_luma:.4f},{self.min_luma:.4f})"
        )

    def content_light(self) -> str:
        return f"{self.max_content_light},{self.max_frame_light}"


def _ratio(value) -> float:
    return float(Fraction(str(value).strip()))


class _MetadataReader:
    """Collects side-data fields one key at a time."""

    def __init__(self):
        self.hdr = HdrMetadata()
        self.coordinates: Dict[str, List[float]] = {
            "red": [0.0, 0.0], "green": [0.0, 0.0], "blue": [0.0, 0.0], "white": [0.0, 0.0]
        }

    def read(self, key: str, value) -> None:
        try:
            if key in _COORDINATE_KEYS:
                colour, axis = _COORDINATE_KEYS[key]
                self.coordinates[colour][axis] = _ratio(value)
                self.hdr.has_coordinates = True
            elif key == "max_luminance":
                self.hdr.max_luma = _ratio(value)
            elif key == "min_luminance":
                self.hdr.min_luma = _ratio(value)
            elif key == "max_content":
                self.hdr.max_content_light = int(value)
            elif key == "max_average":
                self.hdr.max_frame_light = int(value)
        except (ValueError, ZeroDivisionError) as e:
            logger.warning(f"Ignoring unreadable HDR field '{key}={value}': {e}")

    def result(self) -> HdrMetadata:
        self.hdr.red = tuple(self.coordinates["red"])
        self.hdr.green = tuple(self.coordinates["green"])
        self.hdr.blue = tuple(self.coordinates["blue"])
        self.hdr.white = tuple(self.coordinates["white"])
        return self.hdr


def parse_ffprobe_frames(output: str) -> Optional[HdrMetadata]:
    """
    Reads mastering-display and content-light side data from `ffprobe -show_frames`.

    Returns:
        The metadata, or None when the first frame carries neither block.
    """
    if MASTERING_DISPLAY_MARKER not in output and CONTENT_LIGHT_MARKER not in output:
        return None

    reader = _MetadataReader()
    for line in output.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep:
            reader.read(key, value)
    return reader.result()


def hdr_from_side_data(side_data: Iterable[dict]) -> Optional[HdrMetadata]:
    """Like `parse_ffprobe_frames`, for a frame's `side_data_list` from ffprobe's JSON output."""
    blocks = [
        entry for entry in side_data
        if entry.get("side_data_type") in (MASTERING_DISPLAY_TYPE, CONTENT_LIGHT_TYPE)
    ]
    if not blocks:
        return None
    reader = _MetadataReader()
    for block in blocks:
        for key, value in block.items():
            reader.read(key, value)
    return reader.result()


def write_mkvmerge_options(side_data_file: Path, options_file: Path) -> Optional[HdrMetadata]:
    """
    Converts a saved ffprobe dump into an mkvmerge `@options` JSON file.

    An empty option list is written when the source carries no HDR side data,
    so the mux stage always finds the file it references.
    """
    text = side_data_file.read_text(encoding="utf-8", errors="replace")
    metadata = parse_ffprobe_frames(text)
    if metadata is None:
        logger.warning(f"No HDR side data found in first frame ({side_data_file.name}); muxing without it.")
        options: List[str] = []
    else:
        options = metadata.mkvmerge_options()
        logger.info(f"HDR metadata: {' '.join(options)}")

    with options_file.open("w", encoding="utf-8") as f:
        json.dump(options, f, indent=2)
    return metadata
