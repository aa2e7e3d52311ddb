"""Tests for command-line parsing."""

from pathlib import Path

import pytest

from mp4batch.cli import get_args
from mp4batch.config.common import DEFAULT_GRACE_PERIOD, DEFAULT_MAX_WORKERS


class TestGetArgs:
    """Tests for get_args."""

    def test_defaults(self, tmp_path: Path) -> None:
        args = get_args([str(tmp_path / "clip.vpy")])

        assert args.input == (tmp_path / "clip.vpy").resolve()
        assert args.formats is None
        assert args.output_dir is None
        assert args.processes == DEFAULT_MAX_WORKERS
        assert args.grace_period == DEFAULT_GRACE_PERIOD
        assert not args.keep_lossless
        assert not args.lossless_only
        assert not args.dry_run
        assert not args.skip_lossless
        assert not args.copy_audio_to_lossless
        assert not args.no_verify_frames
        assert args.force_keyframes == ()

    def test_all_options(self, tmp_path: Path) -> None:
        args = get_args(
            [
                str(tmp_path),
                "-f", "enc=aom;enc=x264",
                "-o", str(tmp_path / "out"),
                "--processes", "3",
                "--temp-work-dir", str(tmp_path / "scratch"),
                "--keep-lossless",
                "--copy-audio-to-lossless",
                "--force-keyframes", "1200, 0,1200",
                "--no-verify-frames",
                "--grace-period", "2.5",
                "--dry-run",
                "--log-level", "DEBUG",
            ]
        )

        assert args.formats == "enc=aom;enc=x264"
        assert args.output_dir == (tmp_path / "out").resolve()
        assert args.processes == 3
        assert args.temp_work_dir == (tmp_path / "scratch").resolve()
        assert (tmp_path / "scratch").is_dir()
        assert args.keep_lossless and args.dry_run
        assert args.grace_period == 2.5
        assert args.copy_audio_to_lossless and args.no_verify_frames
        assert args.force_keyframes == (0, 1200)

    def test_invalid_process_count(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit):
            get_args([str(tmp_path), "--processes", "0"])

    @pytest.mark.parametrize("value", ["0,ten", "-5", "1.5"])
    def test_invalid_keyframes(self, tmp_path: Path, value: str) -> None:
        with pytest.raises(SystemExit):
            get_args([str(tmp_path), "--force-keyframes", value])

    def test_skip_lossless_conflicts_with_lossless_only(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit):
            get_args([str(tmp_path), "--skip-lossless", "--lossless-only"])
