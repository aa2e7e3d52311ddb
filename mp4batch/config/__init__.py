"""
Configuration package for mp4batch.

Static settings live here as module-level constants so they can be tuned
without touching the pipeline code:
- common.py: logging format, user config (tool paths), exit codes, timing.
- video.py: the video encoder table, quantizer/speed ranges and defaults.
- audio.py: the audio codec table and default bitrates.
"""
