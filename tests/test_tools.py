"""Tests for external tool resolution."""

from pathlib import Path
from unittest.mock import patch

import pytest

from mp4batch.domain.exceptions import ToolNotFoundError
from mp4batch.utils import tools
from mp4batch.utils.tools import Toolbox, resolve_tool


class TestResolveTool:
    """Tests for resolve_tool lookup order."""

    def test_override_wins(self, tmp_path: Path) -> None:
        custom = tmp_path / "my-ffmpeg"
        custom.touch()

        with patch.dict(tools.TOOL_OVERRIDES, {"ffmpeg": custom}, clear=True):
            assert resolve_tool("ffmpeg") == str(custom)

    def test_tools_dir_before_path(self, tmp_path: Path, monkeypatch) -> None:
        (tmp_path / "av1an").touch()
        monkeypatch.setattr(tools, "TOOLS_DIR", tmp_path)

        with patch.dict(tools.TOOL_OVERRIDES, {}, clear=True):
            assert resolve_tool("av1an") == str(tmp_path / "av1an")

    def test_falls_back_to_path(self, monkeypatch) -> None:
        monkeypatch.setattr(tools, "TOOLS_DIR", None)

        with (
            patch.dict(tools.TOOL_OVERRIDES, {}, clear=True),
            patch("mp4batch.utils.tools.shutil.which", return_value="/opt/bin/x264") as which,
        ):
            assert resolve_tool("x264") == "/opt/bin/x264"
        which.assert_called_once_with("x264")


class TestToolbox:
    """Tests for Toolbox caching and errors."""

    def test_lookups_are_cached(self) -> None:
        calls = []

        def resolver(name: str) -> str:
            calls.append(name)
            return f"/bin/{name}"

        toolbox = Toolbox(resolver)
        toolbox.require("vspipe")
        toolbox.require("vspipe")

        assert calls == ["vspipe"]

    def test_require_raises_for_missing_tool(self) -> None:
        toolbox = Toolbox(lambda name: None)

        with pytest.raises(ToolNotFoundError, match="mkvmerge not installed or not in PATH"):
            toolbox.require("mkvmerge")
