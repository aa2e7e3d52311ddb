"""Tests for script discovery and source media lookup."""

from pathlib import Path

import pytest

from mp4batch.services.file_discovery import discover_scripts, find_source_media, is_processed


class TestDiscoverScripts:
    """Tests for discover_scripts."""

    def test_single_script(self, tmp_path: Path) -> None:
        script = tmp_path / "clip.vpy"
        script.touch()

        assert discover_scripts(script) == [script]

    def test_non_script_file_is_rejected(self, tmp_path: Path) -> None:
        video = tmp_path / "clip.mkv"
        video.touch()

        with pytest.raises(ValueError):
            discover_scripts(video)

    def test_missing_path(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            discover_scripts(tmp_path / "nowhere")

    def test_directory_is_walked_in_natural_order(self, tmp_path: Path) -> None:
        season = tmp_path / "season1"
        season.mkdir()
        for name in ("ep10.vpy", "ep2.vpy", "ep1.vpy", "notes.txt"):
            (season / name).touch()

        assert [p.name for p in discover_scripts(tmp_path)] == ["ep1.vpy", "ep2.vpy", "ep10.vpy"]

    def test_processed_scripts_are_skipped(self, tmp_path: Path) -> None:
        for name in ("clip.vpy", "clip.aom-q20.vpy", "clip.copy.vpy"):
            (tmp_path / name).touch()

        assert [p.name for p in discover_scripts(tmp_path)] == ["clip.vpy"]


class TestIsProcessed:
    """Tests for is_processed."""

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("clip.vpy", False),
            ("clip.x264-q16.vpy", True),
            ("clip.svt-q30-s4.vpy", True),
            ("clip.copy.vpy", True),
            ("copycat.vpy", False),
        ],
    )
    def test_markers(self, name: str, expected: bool) -> None:
        assert is_processed(Path(name)) is expected


class TestFindSourceMedia:
    """Tests for find_source_media."""

    def test_source_argument_wins(self, tmp_path: Path) -> None:
        media = tmp_path / "raw" / "episode.m2ts"
        media.parent.mkdir()
        media.touch()
        (tmp_path / "clip.mkv").touch()
        script = tmp_path / "clip.vpy"
        script.write_text('clip = core.lsmas.LWLibavSource(source="raw/episode.m2ts")\n', encoding="utf-8")

        assert find_source_media(script) == media

    def test_sibling_extensions_in_order(self, tmp_path: Path) -> None:
        script = tmp_path / "clip.vpy"
        script.write_text("clip = core.std.BlankClip()\n", encoding="utf-8")
        (tmp_path / "clip.mkv").touch()
        (tmp_path / "clip.flac").touch()

        assert find_source_media(script) == tmp_path / "clip.flac"

    def test_missing_source_argument_falls_back_to_siblings(self, tmp_path: Path) -> None:
        script = tmp_path / "clip.vpy"
        script.write_text("src = core.ffms2.Source(source=r'gone.mkv')\n", encoding="utf-8")
        (tmp_path / "clip.mp4").touch()

        assert find_source_media(script) == tmp_path / "clip.mp4"

    def test_nothing_found(self, tmp_path: Path) -> None:
        script = tmp_path / "clip.vpy"
        script.write_text("", encoding="utf-8")

        assert find_source_media(script) is None
