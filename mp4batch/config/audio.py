"""
Configuration settings related to audio and subtitle handling.

Audio is always taken from the original source media, never from the lossless
intermediate, and lands in a Matroska audio file before muxing.
"""

# ======================================================================================
# Audio Encoders
# ======================================================================================

AUDIO_ENCODERS = ("copy", "opus", "aac", "flac")

# Passthrough unless a plan asks otherwise.
DEFAULT_AUDIO_ENCODER = "copy"

# ffmpeg codec name for each `aenc=` value.
AUDIO_CODECS = {
    "copy": "copy",
    "opus": "libopus",
    "aac": "aac",
    "flac": "flac",
}

# Encoders that accept `ab=`, with their default bitrate in kbps per track.
DEFAULT_AUDIO_BITRATES = {
    "opus": 128,
    "aac": 192,
}

# Audio track taken when `at=` is absent.
DEFAULT_AUDIO_TRACK = 0

# EBU R128 loudness target applied when `an=1`.
LOUDNORM_OPTIONS = {"I": -16, "TP": -1.5, "LRA": 11}


# ======================================================================================
# Intermediate Files
# ======================================================================================

AUDIO_INTERMEDIATE_SUFFIX = ".audio.mka"
SUBTITLE_INTERMEDIATE_SUFFIX = ".subs.mks"

# Subtitle codec used when muxing into mp4, which cannot hold ASS/PGS.
MP4_SUBTITLE_CODEC = "mov_text"
