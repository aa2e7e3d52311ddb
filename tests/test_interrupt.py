"""Tests for InterruptCoordinator."""

import signal
import subprocess
import sys
import time
from pathlib import Path

import pytest

from mp4batch.domain.exceptions import EncodeInterruptedError
from mp4batch.services.interrupt import InterruptCoordinator

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="relies on POSIX signals")


def spawn(code: str, **kwargs) -> subprocess.Popen:
    return subprocess.Popen([sys.executable, "-c", code], start_new_session=True, **kwargs)


class TestTermination:
    """Tests for interrupt and terminate_all."""

    def test_interrupt_terminates_registered_children(self) -> None:
        coordinator = InterruptCoordinator(grace_period=5.0, install_signals=False)
        process = spawn("import time; time.sleep(60)")
        coordinator.register(process)

        started = time.monotonic()
        coordinator.interrupt("test")

        assert process.poll() is not None
        assert time.monotonic() - started < 5.0
        assert coordinator.interrupted

    @posix_only
    def test_stubborn_child_is_killed_after_grace_period(self) -> None:
        coordinator = InterruptCoordinator(grace_period=0.5, install_signals=False)
        process = spawn(
            "import signal, sys, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(60)\n",
            stdout=subprocess.PIPE,
        )
        assert process.stdout.readline().strip() == b"ready"
        coordinator.register(process)

        coordinator.terminate_all()

        assert process.returncode == -signal.SIGKILL
        process.stdout.close()

    def test_partial_outputs_are_removed(self, tmp_path: Path) -> None:
        coordinator = InterruptCoordinator(install_signals=False)
        partial = tmp_path / "clip.video.mkv"
        finished = tmp_path / "clip.mkv"
        for path in (partial, finished):
            path.write_bytes(b"data")
            coordinator.track_output(path)
        coordinator.release_output(finished)

        coordinator.interrupt("test")
        coordinator.cleanup_partial_outputs()

        assert not partial.exists()
        assert finished.exists()

    def test_untracked_missing_outputs_are_ignored(self, tmp_path: Path) -> None:
        coordinator = InterruptCoordinator(install_signals=False)
        coordinator.track_output(tmp_path / "never-written.mkv")

        coordinator.cleanup_partial_outputs()


class TestSpawnGuard:
    """Tests for spawn_guard and the interrupt flag."""

    def test_guard_allows_spawning_before_interrupt(self) -> None:
        coordinator = InterruptCoordinator(install_signals=False)

        with coordinator.spawn_guard():
            pass

    def test_guard_raises_after_interrupt(self) -> None:
        coordinator = InterruptCoordinator(install_signals=False)
        coordinator.interrupt("test")

        with pytest.raises(EncodeInterruptedError):
            with coordinator.spawn_guard():
                pass

    def test_wait_returns_once_interrupted(self) -> None:
        coordinator = InterruptCoordinator(install_signals=False)

        assert coordinator.wait(0.01) is False
        coordinator.interrupt("test")
        assert coordinator.wait(0.01) is True


class TestSignalHandlers:
    """Tests for signal handler installation."""

    def test_handlers_are_installed_and_restored(self) -> None:
        previous = signal.getsignal(signal.SIGTERM)

        with InterruptCoordinator() as coordinator:
            assert signal.getsignal(signal.SIGTERM) == coordinator._on_signal
            assert signal.getsignal(signal.SIGINT) == coordinator._on_signal

        assert signal.getsignal(signal.SIGTERM) == previous

    def test_disabled_installation_leaves_handlers_alone(self) -> None:
        previous = signal.getsignal(signal.SIGINT)

        with InterruptCoordinator(install_signals=False):
            assert signal.getsignal(signal.SIGINT) == previous

    def test_signal_stops_children(self) -> None:
        coordinator = InterruptCoordinator(grace_period=5.0, install_signals=False)
        process = spawn("import time; time.sleep(60)")
        coordinator.register(process)

        with coordinator:
            coordinator._on_signal(signal.SIGTERM, None)

        assert coordinator.interrupted
        assert process.poll() is not None
