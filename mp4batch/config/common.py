"""
Common configuration settings used throughout mp4batch.

This module centralizes logging, run-log naming, exit codes and the timing
parameters of the interrupt coordinator. It also loads user-specific settings
from an optional `config.user.yaml` at the project root, which is where
external tool locations are overridden without modifying the source code.
"""
from pathlib import Path
from typing import Dict

import yaml
from loguru import logger

# --- User-Defined Path Configuration ---
# 'config.user.yaml' may contain:
#
#   paths:
#     tools_dir: /opt/encoders/bin       # searched before PATH
#     tools:                             # per-tool overrides
#       av1an: /usr/local/bin/av1an
#       ffmpeg: /opt/ffmpeg/ffmpeg
#     output_dir: /mnt/media/encoded     # default for -o
#
# Anything not configured falls back to a PATH lookup.

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
USER_CONFIG_PATH = PROJECT_ROOT / "config.user.yaml"

# Directory searched for every external tool before the system PATH.
TOOLS_DIR: Path | None = None

# Explicit executable paths keyed by tool name (e.g. "ffmpeg", "av1an").
TOOL_OVERRIDES: Dict[str, Path] = {}

# Default output directory when -o is not given. None means "next to the script".
DEFAULT_OUTPUT_DIR: Path | None = None

if USER_CONFIG_PATH.is_file():
    try:
        with USER_CONFIG_PATH.open("r", encoding="utf-8") as f:
            user_config = yaml.safe_load(f)
        if user_config and "paths" in user_config:
            paths_config = user_config.get("paths") or {}
            tools_dir_str = paths_config.get("tools_dir")
            output_dir_str = paths_config.get("output_dir")

            if tools_dir_str:
                TOOLS_DIR = Path(tools_dir_str)
            if output_dir_str:
                DEFAULT_OUTPUT_DIR = Path(output_dir_str)
            for tool_name, tool_path in (paths_config.get("tools") or {}).items():
                if tool_path:
                    TOOL_OVERRIDES[str(tool_name)] = Path(tool_path)
    except Exception as e:
        logger.warning(f"Could not load or parse '{USER_CONFIG_PATH}': {e}")
else:
    logger.debug(f"User config '{USER_CONFIG_PATH}' not found. Relying on system PATH for executables.")


# --- Logging Configuration ---

LOGGER_FORMAT = (
    "<green>{time:MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "{thread.name} - <level>{message}</level>"
)

# Length of the random suffix of per-run success logs, so that concurrent
# invocations writing into the same output directory never share a file.
SUCCESS_LOG_RANDOM_LENGTH = 10

# Plain-text log of failed plans, appended to on every run.
ERROR_LOG_FILENAME = "mp4batch_errors.txt"

# Number of trailing stderr lines kept per stage and attached to a failed JobResult.
DIAGNOSTIC_TAIL_LINES = 20


# --- Exit Codes ---

EXIT_OK = 0
EXIT_INTERNAL_ERROR = 1  # unexpected error outside any single plan; partial outputs were removed
EXIT_USAGE_ERROR = 2  # bad encode spec or nothing to encode; nothing was spawned
EXIT_PLAN_FAILURE = 3  # at least one plan failed to build or run
EXIT_INTERRUPTED = 130


# --- Concurrency and Interruption ---

# Plans executed at the same time for one script.
DEFAULT_MAX_WORKERS = 2

# Seconds a child process gets between SIGTERM and SIGKILL.
DEFAULT_GRACE_PERIOD = 10.0

# How often waiting threads wake up to check for an interruption.
WAIT_POLL_INTERVAL = 0.25


# --- Output Verification ---

# An encoded file may differ from the script by up to `expected // this` frames.
FRAME_COUNT_TOLERANCE_DIVISOR = 200


# --- Input Discovery ---

SCRIPT_EXTENSION = ".vpy"

# Stem fragments of files that mp4batch itself produced; scripts matching them
# are skipped when a directory is scanned.
PROCESSED_STEM_MARKERS = (".aom-q", ".rav1e-q", ".svt-q", ".x264-q", ".x265-q")
PROCESSED_STEM_SUFFIXES = (".copy",)

# Sibling extensions tried, in order, when a script has no readable `source=`.
SOURCE_MEDIA_EXTENSIONS = ("flac", "wav", "aac", "ac3", "dts", "mkv", "avi", "mp4", "flv")
