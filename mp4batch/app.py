"""
Application entry point: configures logging, parses arguments and runs the batch.
"""
import sys
from typing import List, Optional

from loguru import logger

from .cli import get_args
from .config.common import LOGGER_FORMAT
from .pipeline.batch_pipeline import BatchEncodePipeline


def configure_logger(level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOGGER_FORMAT)


def run(argv: Optional[List[str]] = None) -> int:
    """
    Runs mp4batch with the given command line and returns its exit code.

    Exit codes:
        0: every plan succeeded.
        1: an unexpected error stopped the batch; partial outputs were removed.
        2: the encode spec is invalid or there is nothing to encode.
        3: at least one plan failed to build or to run.
        130: the run was interrupted.
    """
    args = get_args(argv)
    configure_logger(args.log_level)
    logger.debug(f"Parsed arguments: {args}")

    pipeline = BatchEncodePipeline(args.input, args)
    exit_code = pipeline.run()
    if exit_code == 0:
        logger.success("mp4batch finished.")
    return exit_code


def main() -> None:
    sys.exit(run())
