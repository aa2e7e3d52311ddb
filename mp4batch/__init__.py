"""
mp4batch: batch-encodes VapourSynth scripts into muxed output files.

Each `-f` encode spec is parsed into one or more encode plans. Plans that share
a decode/filter pass are grouped around a single lossless intermediate, and every
plan is executed as a chain of external processes (vspipe, av1an/x264, ffmpeg,
mkvmerge) supervised by a process-wide interrupt coordinator.
"""

__version__ = "0.1.0"
