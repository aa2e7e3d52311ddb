"""Tests for the run logs and formatting helpers."""

from pathlib import Path

import yaml

from mp4batch.services.logging_service import ErrorLog, SuccessLog
from mp4batch.utils.format_utils import format_elapsed, format_size, output_size


class TestSuccessLog:
    """Tests for SuccessLog."""

    def test_entries_are_appended_with_index(self, tmp_path: Path) -> None:
        log = SuccessLog(tmp_path)

        log.write({"plan": "enc=aom"})
        log.write({"plan": "enc=x264"})

        entries = yaml.safe_load(log.log_file_path.read_text(encoding="utf-8"))
        assert entries == [{"plan": "enc=aom", "index": 1}, {"plan": "enc=x264", "index": 2}]

    def test_filename_is_dated_and_random(self, tmp_path: Path) -> None:
        first, second = SuccessLog(tmp_path), SuccessLog(tmp_path)

        assert first.log_file_path.name.startswith("log_")
        assert first.log_file_path.suffix == ".yaml"
        assert first.log_file_path != second.log_file_path


class TestErrorLog:
    """Tests for ErrorLog."""

    def test_blocks_are_separated(self, tmp_path: Path) -> None:
        log = ErrorLog(tmp_path)

        log.write("first failure")
        log.write("second failure", "details")

        text = log.log_file_path.read_text(encoding="utf-8")
        assert text.count("=" * 50) == 2
        assert "second failure\ndetails\n" in text


class TestFormatting:
    """Tests for the summary wording in format_utils."""

    def test_format_elapsed(self) -> None:
        assert format_elapsed(3725.4) == "1:02:05"
        assert format_elapsed(59) == "0:00:59"
        assert format_elapsed(-3) == "0:00:00"

    def test_format_size(self) -> None:
        assert format_size(0) == "0 B"
        assert format_size(1023) == "1023 B"
        assert format_size(1536) == "1.5 KiB"
        assert format_size(3 * 1024**3) == "3.0 GiB"
        assert format_size(2048 * 1024**4) == "2048.0 TiB"

    def test_output_size(self, tmp_path: Path) -> None:
        out = tmp_path / "clip.mkv"

        assert output_size(out) == "missing"
        out.write_bytes(b"x" * 2048)
        assert output_size(out) == "2.0 KiB"
