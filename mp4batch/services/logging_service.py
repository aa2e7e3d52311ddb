"""
This module provides classes for writing per-run logs next to the encoded files.

ErrorLog appends human-readable failure reports (stage, exit code, stderr tail)
to a text file. SuccessLog records every finished plan as an entry of a YAML
list, which keeps the record machine-readable for later reporting. Each run
writes its successes to its own dated file with a random suffix, so concurrent
invocations sharing an output directory never write to the same file.
"""

import random
import string
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Union

import yaml
from loguru import logger

from ..config.common import ERROR_LOG_FILENAME, SUCCESS_LOG_RANDOM_LENGTH


class Log:
    """
    A base class for the run logs.

    It resolves the log directory from a base path and makes sure it exists.
    """

    # A separator line used in text-based logs between entries.
    linesep_marker: str = "=" * 50

    def __init__(self, log_base_path: Path):
        """
        Args:
            log_base_path: A directory to write into, or a file whose parent
                           directory is used.
        """
        self.log_file_path: Path
        if log_base_path.is_dir():
            self.log_dir: Path = log_base_path.resolve()
        else:
            self.log_dir: Path = log_base_path.parent.resolve()
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def write(self, log_content: Union[dict, list, str]):
        raise NotImplementedError("Subclasses must implement the write() method.")

    @staticmethod
    def generate_random_string(length: int = SUCCESS_LOG_RANDOM_LENGTH) -> str:
        return "".join(random.choices(string.ascii_uppercase + string.digits, k=length))


class ErrorLog(Log):
    """
    Appends error reports to a plain text file.

    Each call to `write` becomes one block followed by a separator line, so the
    file reads as a chronological record of failed plans.
    """

    def __init__(self, error_log_dir: Path, filename: str = ERROR_LOG_FILENAME):
        super().__init__(error_log_dir)
        self.log_file_path = self.log_dir / filename

    def write(self, *error_messages: str):
        """
        Writes one or more lines as a single error block.

        Args:
            *error_messages: The lines of the report.
        """
        if not error_messages:
            return

        content_to_write = "\n".join(error_messages) + "\n" + self.linesep_marker + "\n"

        try:
            with self.log_file_path.open("a", encoding="utf-8") as f:
                f.write(content_to_write)
        except OSError as e:
            # Keep the report visible on the console when the file is unwritable.
            logger.error(f"Failed to write to error log {self.log_file_path}: {e}")
            for msg in error_messages:
                logger.error(f"  - {msg}")


class SuccessLog(Log):
    """
    Records finished plans as a YAML list.

    The file is named `log_YYYYMMDD_<RANDOM>.yaml`. Every entry gets an `index`
    one higher than the largest already present.
    """

    def __init__(self, success_log_dir: Path):
        super().__init__(success_log_dir)
        date_str = datetime.now().strftime("%Y%m%d")
        random_str = self.generate_random_string()
        self.log_file_path = self.log_dir / f"log_{date_str}_{random_str}.yaml"
        self.log_entries: List[Dict] = []

    def _load_existing(self) -> List[Dict]:
        if not self.log_file_path.is_file():
            return []
        try:
            with self.log_file_path.open("r", encoding="utf-8") as f:
                loaded_entries = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error reading/parsing success log {self.log_file_path}: {e}. Starting a new log.")
            return []
        if loaded_entries is None:
            return []
        if not isinstance(loaded_entries, list):
            logger.warning(f"Success log {self.log_file_path} contained unexpected data. Starting a new log.")
            return []
        return loaded_entries

    def write(self, new_log_entry: dict):
        """
        Appends `new_log_entry` and rewrites the whole file, so it is always a
        valid YAML list.
        """
        if not isinstance(new_log_entry, dict):
            logger.error("SuccessLog.write expects a dictionary as a log entry.")
            return

        self.log_entries = self._load_existing()
        current_max_index = max(
            (entry.get("index", 0) for entry in self.log_entries if isinstance(entry, dict)),
            default=0,
        )
        new_log_entry["index"] = current_max_index + 1
        self.log_entries.append(new_log_entry)

        try:
            with self.log_file_path.open("w", encoding="utf-8") as f:
                yaml.dump(
                    self.log_entries,
                    f,
                    default_flow_style=False,
                    sort_keys=False,
                    allow_unicode=True,
                    indent=4,
                    width=220,
                )
        except OSError as e:
            logger.error(f"Failed to write to success log {self.log_file_path}: {e}")
