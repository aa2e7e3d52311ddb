"""
Resolution of external executables (vspipe, av1an, encoders, ffmpeg, mkvtoolnix).

Tools are looked up by name in this order:
1. `paths.tools.<name>` in config.user.yaml,
2. `paths.tools_dir` in config.user.yaml,
3. the system PATH.
"""
import shutil
import sys
from typing import Callable, Dict, Optional

from loguru import logger

from ..config.common import TOOL_OVERRIDES, TOOLS_DIR
from ..domain.exceptions import ToolNotFoundError

# Signature of a tool lookup: name in, absolute path (or None) out.
ToolResolver = Callable[[str], Optional[str]]


def _executable_name(name: str) -> str:
    if sys.platform == "win32" and not name.lower().endswith(".exe"):
        return f"{name}.exe"
    return name


def resolve_tool(name: str) -> Optional[str]:
    """
    Determines the executable path for `name`.

    Returns:
        The path as a string, or None when the tool cannot be found anywhere.
    """
    override = TOOL_OVERRIDES.get(name)
    if override:
        if override.is_file():
            return str(override)
        logger.warning(f"Configured path for '{name}' does not exist: '{override}'. Falling back to lookup.")

    if TOOLS_DIR and TOOLS_DIR.is_dir():
        candidate = TOOLS_DIR / _executable_name(name)
        if candidate.is_file():
            return str(candidate)

    return shutil.which(name)


class Toolbox:
    """
    Caches tool lookups for the lifetime of one run.

    The resolver is injectable so tests can pretend tools exist (or don't)
    without touching the filesystem.
    """

    def __init__(self, resolver: ToolResolver = resolve_tool):
        self._resolver = resolver
        self._cache: Dict[str, Optional[str]] = {}

    def find(self, name: str) -> Optional[str]:
        if name not in self._cache:
            self._cache[name] = self._resolver(name)
            if self._cache[name]:
                logger.trace(f"Resolved tool '{name}' -> {self._cache[name]}")
        return self._cache[name]

    def require(self, name: str) -> str:
        path = self.find(name)
        if not path:
            raise ToolNotFoundError(name)
        return path
