"""
Configuration settings related to video encoding.

The video encoder table is kept here as data: which encoders exist, the tool
each one needs, valid quantizer ranges, defaults, and which plan keys apply to
which encoder. The spec parser and the pipeline builder both read from it.
"""

# --- Encoder Identification ---
VIDEO_ENCODERS = ("aom", "rav1e", "svt", "x264", "x265", "copy")
DEFAULT_VIDEO_ENCODER = "x264"
COPY_ENCODER = "copy"

# Every encoder that actually re-encodes frames.
ENCODING_ENCODERS = frozenset(e for e in VIDEO_ENCODERS if e != COPY_ENCODER)
AV1_ENCODERS = frozenset({"aom", "rav1e", "svt"})

# Encoder binary checked before a pipeline is built. `copy` needs none.
ENCODER_TOOLS = {
    "aom": "aomenc",
    "rav1e": "rav1e",
    "svt": "SvtAv1EncApp",
    "x264": "x264",
    "x265": "x265",
}

# Encoders driven through av1an, with the name av1an knows them by.
# x264 is piped directly from vspipe instead.
AV1AN_ENCODER_NAMES = {
    "aom": "aom",
    "rav1e": "rav1e",
    "svt": "svt-av1",
    "x265": "x265",
}

# --- Quality and Speed ---
QUANTIZER_RANGES = {
    "x264": (-12, 51),
    "x265": (0, 51),
    "aom": (0, 63),
    "svt": (0, 63),
    "rav1e": (0, 255),
}
DEFAULT_QUANTIZERS = {
    "x264": 18,
    "x265": 18,
    "aom": 16,
    "svt": 16,
    "rav1e": 40,
}

# Numeric speed applies to the AV1 encoders; x264 and x265 take a preset name.
SPEED_RANGE = (0, 10)
DEFAULT_SPEEDS = {
    "aom": 4,
    "svt": 4,
    "rav1e": 5,
}
X264_PRESETS = (
    "ultrafast", "superfast", "veryfast", "faster", "fast",
    "medium", "slow", "slower", "veryslow", "placebo",
)
PRESET_ENCODERS = frozenset({"x264", "x265"})

# --- Tuning Profiles ---
PROFILES = ("film", "grain", "anime", "animedetailed", "animegrain", "fast")
DEFAULT_PROFILE = "film"
ANIME_PROFILES = frozenset({"anime", "animedetailed", "animegrain"})

# --- Film Grain Synthesis ---
GRAIN_RANGE = (0, 64)
GRAIN_ENCODERS = AV1_ENCODERS

# --- Device Compatibility ---
COMPAT_ENCODERS = frozenset({"x264", "x265", "aom"})

# Encoders able to carry HDR10 metadata through to the output.
HDR_ENCODERS = frozenset({"aom", "rav1e", "svt", "x265"})

# --- Filters (shape the lossless intermediate) ---
BIT_DEPTHS = (8, 10)
MIN_RESOLUTION = 64
PIXEL_FORMATS = {
    8: "yuv420p",
    10: "yuv420p10le",
}

# --- Output Containers ---
OUTPUT_EXTENSIONS = ("mkv", "mp4")
DEFAULT_EXTENSION = "mkv"

# --- Lossless Intermediate ---
LOSSLESS_CODEC = "libx264"
LOSSLESS_PRESET = "ultrafast"
# Audio track copied into the lossless file with --copy-audio-to-lossless.
LOSSLESS_AUDIO_TRACK = 0
LOSSLESS_TAG = "lossless"

# --- Scene Detection / Workers ---
AV1AN_SCENE_METHOD = "standard"

# Non-AV1 encoders are internally threaded, so av1an runs fewer of them at once.
AV1AN_THREADED_WORKER_DIVISOR = 4
