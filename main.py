"""
Main entry point for running mp4batch from a source checkout.

    python main.py clip.vpy -f "enc=aom,q=20,s=4;enc=x264,q=16"
"""

import sys

from loguru import logger

from mp4batch.app import main
from mp4batch.config.common import LOGGER_FORMAT

# Configure the logger for initial setup.
# The level is overridden once the command-line arguments are parsed.
logger.remove()
logger.add(sys.stderr, level="INFO", format=LOGGER_FORMAT)


if __name__ == "__main__":
    main()
