"""
Input discovery: which scripts to encode, and which media file each one reads.
"""
import re
from pathlib import Path
from typing import List, Optional

from loguru import logger

from ..config.common import (
    PROCESSED_STEM_MARKERS,
    PROCESSED_STEM_SUFFIXES,
    SCRIPT_EXTENSION,
    SOURCE_MEDIA_EXTENSIONS,
)

_SOURCE_ARG_RE = re.compile(r"""source\s*=\s*r?(["'])(?P<path>.+?)\1""")
_DIGITS_RE = re.compile(r"(\d+)")


def _natural_key(path: Path):
    return [int(part) if part.isdigit() else part.lower() for part in _DIGITS_RE.split(str(path))]


def is_script(path: Path) -> bool:
    return path.suffix == SCRIPT_EXTENSION


def is_processed(path: Path) -> bool:
    """True for files whose stem carries one of mp4batch's own output markers."""
    stem = path.stem
    return any(marker in stem for marker in PROCESSED_STEM_MARKERS) or stem.endswith(PROCESSED_STEM_SUFFIXES)


def discover_scripts(input_path: Path) -> List[Path]:
    """
    Collects the scripts to encode.

    A file is returned as-is (it must be a .vpy script). A directory is walked
    recursively; processed-looking scripts are skipped and the rest are
    returned in natural order (ep2 before ep10).

    Raises:
        FileNotFoundError: If the path does not exist.
        ValueError: If a single file is given that is not a script.
    """
    if input_path.is_file():
        if not is_script(input_path):
            raise ValueError(f"Input file must be a {SCRIPT_EXTENSION} script: {input_path}")
        return [input_path]
    if not input_path.is_dir():
        raise FileNotFoundError(f"Input path is neither a file nor a directory: {input_path}")

    scripts = []
    for candidate in input_path.rglob(f"*{SCRIPT_EXTENSION}"):
        if not candidate.is_file():
            continue
        if is_processed(candidate):
            logger.debug(f"Skipping already processed script: {candidate.name}")
            continue
        scripts.append(candidate)
    return sorted(scripts, key=_natural_key)


def find_source_media(script: Path) -> Optional[Path]:
    """
    Locates the media file a script decodes, for audio, subtitles, copy and HDR.

    The script's `source="..."` argument wins when it points at an existing file
    (relative paths are taken from the script's directory). Otherwise siblings
    sharing the script's stem are tried in SOURCE_MEDIA_EXTENSIONS order.
    """
    try:
        text = script.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning(f"Could not read script {script}: {e}")
        text = ""

    match = _SOURCE_ARG_RE.search(text)
    if match:
        source = Path(match.group("path"))
        if not source.is_absolute():
            source = script.parent / source
        if source.is_file():
            return source
        logger.debug(f"Script source '{source}' does not exist; trying sibling files.")

    for extension in SOURCE_MEDIA_EXTENSIONS:
        candidate = script.with_suffix(f".{extension}")
        if candidate.is_file():
            return candidate
    return None
