"""
Command-Line Interface (CLI) setup for mp4batch.

This module uses Python's `argparse` to define and parse the command-line
arguments that control a batch run.
"""
import argparse
from pathlib import Path
from typing import List, Optional, Tuple

from .config.common import DEFAULT_GRACE_PERIOD, DEFAULT_MAX_WORKERS

FORMATS_HELP = """\
Encode spec: one or more plans separated by ';', each a comma-separated list of
key=value fields, e.g. "enc=aom,q=20,s=4,g=8,hdr=1,aenc=opus;enc=x264,q=16".
Keys: enc (aom|rav1e|svt|x264|x265|copy), q, s, p, g, compat, hdr, ext (mkv|mp4),
bd (8|10), res (WxH), aenc (copy|opus|aac|flac), ab, an, at, st.
Defaults to a single x264 plan."""


def _parse_keyframes(parser: argparse.ArgumentParser, value: Optional[str]) -> Tuple[int, ...]:
    """`"0,1200, 3456"` -> `(0, 1200, 3456)`, sorted and without repeats."""
    if not value:
        return ()
    try:
        frames = {int(part) for part in value.split(",") if part.strip()}
    except ValueError:
        parser.error(f"--force-keyframes expects comma-separated frame numbers, got '{value}'")
    if any(frame < 0 for frame in frames):
        parser.error("--force-keyframes frame numbers must not be negative")
    return tuple(sorted(frames))


def get_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parses command-line arguments for mp4batch.

    Args:
        argv: Arguments to parse instead of `sys.argv[1:]`.

    Returns:
        argparse.Namespace: The parsed arguments. `input`, `output_dir` and
                            `temp_work_dir` are resolved Paths (or None).
    """
    parser = argparse.ArgumentParser(
        prog="mp4batch",
        description="Batch encoder for VapourSynth scripts.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("input", type=str, help="A .vpy script, or a directory searched recursively for scripts.")
    parser.add_argument("-f", "--formats", type=str, default=None, help=FORMATS_HELP)
    parser.add_argument(
        "-o", "--output-dir", type=str, default=None,
        help="Directory for encoded files. Defaults to each script's directory."
    )
    parser.add_argument(
        "--processes", type=int, default=DEFAULT_MAX_WORKERS,
        help="Number of plans encoded at the same time for one script."
    )
    parser.add_argument(
        "--temp-work-dir", type=str, default=None,
        help="Directory for lossless and other intermediate files. Useful for pointing to a fast scratch disk."
    )
    parser.add_argument(
        "--keep-lossless", action="store_true",
        help="Keep lossless intermediates after all plans that use them have finished."
    )
    parser.add_argument(
        "--lossless-only", action="store_true",
        help="Only write the lossless intermediate for each group of plans, then stop."
    )
    parser.add_argument(
        "--skip-lossless", action="store_true",
        help="Never share a lossless intermediate; every plan decodes the script itself."
    )
    parser.add_argument(
        "--copy-audio-to-lossless", action="store_true",
        help="Also copy the source's first audio track into lossless intermediates."
    )
    parser.add_argument(
        "--force-keyframes", type=str, default=None,
        help="Comma-separated frame numbers that must start a new GOP, e.g. \"0,1200,3456\"."
    )
    parser.add_argument(
        "--no-verify-frames", action="store_true",
        help="Skip the frame-count check of lossless and encoded video files."
    )
    parser.add_argument(
        "--grace-period", type=float, default=DEFAULT_GRACE_PERIOD,
        help="Seconds child processes get to exit after SIGTERM before they are killed."
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Print the commands of every pipeline without running them."
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO", choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
        help="Set the logging level. DEBUG shows the output of every child process."
    )

    args = parser.parse_args(argv)

    if args.processes < 1:
        parser.error("--processes must be at least 1")
    if args.grace_period < 0:
        parser.error("--grace-period must not be negative")
    if args.skip_lossless and args.lossless_only:
        parser.error("--skip-lossless and --lossless-only cannot be combined")
    args.force_keyframes = _parse_keyframes(parser, args.force_keyframes)

    args.input = Path(args.input).expanduser().resolve()
    if args.output_dir:
        args.output_dir = Path(args.output_dir).expanduser().resolve()

    # Validate temp_work_dir if provided. If it doesn't exist, try to create it.
    if args.temp_work_dir:
        temp_dir_path = Path(args.temp_work_dir).expanduser()
        if not temp_dir_path.is_dir():
            try:
                temp_dir_path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                parser.error(
                    f"The specified temporary working directory '{args.temp_work_dir}' "
                    f"is not a valid directory and could not be created: {e}"
                )
        args.temp_work_dir = temp_dir_path.resolve()

    return args
