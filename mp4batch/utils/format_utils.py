"""
Wording for run summaries: how long a pipeline took and how big its output is.
"""
from pathlib import Path

_SIZE_UNITS = ("KiB", "MiB", "GiB", "TiB")


def format_elapsed(seconds: float) -> str:
    """`3725.4` -> `1:02:05`. Negative durations read as zero."""
    minutes, secs = divmod(max(int(seconds), 0), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}:{minutes:02}:{secs:02}"


def format_size(size: int) -> str:
    """Binary units with one decimal: `1536` -> `1.5 KiB`."""
    if size < 1024:
        return f"{max(size, 0)} B"
    value = float(size)
    for unit in _SIZE_UNITS:
        value /= 1024
        if value < 1024 or unit == _SIZE_UNITS[-1]:
            return f"{value:.1f} {unit}"


def output_size(path: Path) -> str:
    """Size of a finished output file, or `missing` when it is not on disk."""
    if not path.is_file():
        return "missing"
    return format_size(path.stat().st_size)
