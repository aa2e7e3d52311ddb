"""
Stream information read from media files and scripts.

ffprobe (through ffmpeg-python) supplies a source's colorimetry, its first-frame
HDR side data and the number of video packets in an encoded file; `vspipe -i`
supplies the number of frames a script yields. Colorimetry and script frame
counts are cached per path, since every plan of a script asks for them.
"""
import re
import subprocess
import threading
from pathlib import Path
from typing import Dict, Optional

import ffmpeg
from loguru import logger

from ..config.common import FRAME_COUNT_TOLERANCE_DIVISOR
from ..domain.exceptions import FrameCountMismatch, MediaInfoError
from ..utils.tools import Toolbox
from .colorimetry import Colorimetry
from .hdr import hdr_from_side_data

_FRAMES_RE = re.compile(r"^Frames:\s*(\d+)", re.MULTILINE)


def within_tolerance(expected: int, actual: int) -> bool:
    return abs(actual - expected) <= expected // FRAME_COUNT_TOLERANCE_DIVISOR


class MediaInfo:
    def __init__(self, toolbox: Optional[Toolbox] = None):
        self.toolbox = toolbox or Toolbox()
        self._colorimetry: Dict[Path, Colorimetry] = {}
        self._script_frames: Dict[Path, int] = {}
        self._lock = threading.Lock()

    def _ffprobe(self, path: Path, **kwargs) -> dict:
        try:
            return ffmpeg.probe(str(path), cmd=self.toolbox.require("ffprobe"), **kwargs)
        except ffmpeg.Error as e:
            stderr = e.stderr.decode("utf-8", errors="replace") if e.stderr else ""
            logger.error(f"ffmpeg.probe failed for {path}: {stderr}")
            raise MediaInfoError(f"ffprobe could not read {path.name}") from e
        except OSError as e:
            raise MediaInfoError(f"ffprobe could not be started for {path.name}: {e}") from e

    @staticmethod
    def _video_stream(info: dict, path: Path) -> dict:
        streams = info.get("streams") or []
        if not streams:
            raise MediaInfoError(f"{path.name} has no video stream")
        return streams[0]

    def colorimetry(self, source: Path) -> Colorimetry:
        """Colour description and HDR side data of the source's first video stream."""
        source = Path(source)
        with self._lock:
            cached = self._colorimetry.get(source)
        if cached is not None:
            return cached

        info = self._ffprobe(source, select_streams="v:0", show_frames=None, read_intervals="%+#1")
        stream = self._video_stream(info, source)
        frames = info.get("frames") or []
        mastering = hdr_from_side_data(frames[0].get("side_data_list") or []) if frames else None
        colour = Colorimetry.from_stream(stream, mastering)
        logger.debug(
            f"{source.name}: primaries={colour.primaries} transfer={colour.transfer} "
            f"matrix={colour.matrix} full_range={colour.full_range} hdr_side_data={mastering is not None}"
        )
        with self._lock:
            self._colorimetry[source] = colour
        return colour

    def frame_count(self, path: Path) -> int:
        """Number of video packets in an encoded file (one per frame)."""
        path = Path(path)
        stream = self._video_stream(self._ffprobe(path, select_streams="v:0", count_packets=None), path)
        try:
            return int(stream["nb_read_packets"])
        except (KeyError, ValueError) as e:
            raise MediaInfoError(f"ffprobe reported no packet count for {path.name}") from e

    def script_frame_count(self, script: Path) -> int:
        """Number of frames the script yields, from `vspipe -i`."""
        script = Path(script)
        with self._lock:
            cached = self._script_frames.get(script)
        if cached is not None:
            return cached

        cmd = [self.toolbox.require("vspipe"), "-i", str(script), "-"]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, encoding="utf-8", shell=False)
        except OSError as e:
            raise MediaInfoError(f"vspipe could not be started for {script.name}: {e}") from e
        if result.returncode != 0:
            logger.debug(f"vspipe -i stderr:\n{result.stderr}")
            raise MediaInfoError(f"vspipe -i failed for {script.name} (exit code {result.returncode})")
        match = _FRAMES_RE.search(result.stdout)
        if not match:
            raise MediaInfoError(f"vspipe -i printed no frame count for {script.name}")

        frames = int(match.group(1))
        with self._lock:
            self._script_frames[script] = frames
        return frames

    def verify_frame_count(self, script: Path, path: Path) -> int:
        """
        Checks that `path` holds as many frames as the script yields.

        Returns:
            The frame count found in `path`.

        Raises:
            FrameCountMismatch: If the counts differ by more than the tolerance.
            MediaInfoError: If either count cannot be read.
        """
        expected = self.script_frame_count(script)
        actual = self.frame_count(path)
        if not within_tolerance(expected, actual):
            raise FrameCountMismatch(Path(path), expected, actual)
        logger.debug(f"{Path(path).name}: {actual} frames (script yields {expected})")
        return actual
