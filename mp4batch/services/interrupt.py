"""
Interrupt and cleanup coordination.

One InterruptCoordinator exists per invocation. It owns the set of live child
processes and the set of partial output files, and is the only place that
reacts to SIGINT/SIGTERM. Spawning a process and registering it happen under
the same lock as the interrupt flag, so a child either sees the interruption
before it starts or is registered in time to be terminated by it.
"""
import contextlib
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import List, Optional, Set

from loguru import logger

from ..config.common import DEFAULT_GRACE_PERIOD
from ..domain.exceptions import EncodeInterruptedError

_HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def stop_process(process: subprocess.Popen, force: bool = False) -> None:
    """Signals a child's whole process group (children run in their own session)."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
        elif force:
            process.kill()
        else:
            process.terminate()
    except (ProcessLookupError, PermissionError):
        pass


class InterruptCoordinator:
    """
    Args:
        grace_period: Seconds between SIGTERM and SIGKILL for every child.
        install_signals: Install SIGINT/SIGTERM handlers while used as a
            context manager. Only possible from the main thread.
    """

    def __init__(self, grace_period: float = DEFAULT_GRACE_PERIOD, install_signals: bool = True):
        self.grace_period = grace_period
        self.install_signals = install_signals
        self._lock = threading.RLock()
        self._processes: Set[subprocess.Popen] = set()
        self._outputs: Set[Path] = set()
        self._interrupted = threading.Event()
        self._previous_handlers = {}
        self._terminator: Optional[threading.Thread] = None

    # --- Signal handling ---

    def __enter__(self) -> "InterruptCoordinator":
        if self.install_signals and threading.current_thread() is threading.main_thread():
            for signum in _HANDLED_SIGNALS:
                self._previous_handlers[signum] = signal.getsignal(signum)
                signal.signal(signum, self._on_signal)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()
        if self._terminator is not None:
            self._terminator.join()

    def _on_signal(self, signum, frame) -> None:
        name = signal.Signals(signum).name
        if self._terminator is not None:
            logger.warning(f"Received {name} again; killing all child processes now.")
            self.kill_all()
            return
        # Handlers run on the main thread, which must stay free to notice the flag.
        self._terminator = threading.Thread(
            target=self.interrupt, args=(f"received {name}",), name="interrupt", daemon=True
        )
        self._terminator.start()

    # --- State ---

    @property
    def interrupted(self) -> bool:
        return self._interrupted.is_set()

    def check(self) -> None:
        """Raises EncodeInterruptedError once an interruption was requested."""
        if self._interrupted.is_set():
            raise EncodeInterruptedError("Encoding was interrupted")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Blocks until interrupted or until `timeout` elapses; returns the flag."""
        return self._interrupted.wait(timeout)

    # --- Process registry ---

    @contextlib.contextmanager
    def spawn_guard(self):
        """
        Holds the registry lock while child processes are started.

        Raises:
            EncodeInterruptedError: If an interruption was already requested.
        """
        with self._lock:
            self.check()
            yield

    def register(self, process: subprocess.Popen) -> None:
        with self._lock:
            self._processes.add(process)

    def deregister(self, process: subprocess.Popen) -> None:
        with self._lock:
            self._processes.discard(process)

    @property
    def live_processes(self) -> int:
        with self._lock:
            return len(self._processes)

    # --- Partial outputs ---

    def track_output(self, path: Path) -> None:
        with self._lock:
            self._outputs.add(Path(path))

    def release_output(self, path: Path) -> None:
        """Marks a file as complete; it will no longer be removed on interruption."""
        with self._lock:
            self._outputs.discard(Path(path))

    @property
    def tracked_outputs(self) -> List[Path]:
        with self._lock:
            return sorted(self._outputs)

    def cleanup_partial_outputs(self) -> None:
        with self._lock:
            outputs = sorted(self._outputs)
            self._outputs.clear()
        for path in outputs:
            try:
                if path.exists():
                    path.unlink()
                    logger.info(f"Removed partial output: {path}")
            except OSError as e:
                logger.error(f"Could not remove partial output {path}: {e}")

    # --- Termination ---

    def interrupt(self, reason: str = "interrupted") -> None:
        """Sets the interrupt flag and terminates every registered child."""
        with self._lock:
            first = not self._interrupted.is_set()
            self._interrupted.set()
        if first:
            logger.warning(f"Interrupt requested ({reason}); stopping {self.live_processes} child process(es).")
        self.terminate_all()

    def terminate_all(self, grace: Optional[float] = None) -> None:
        """
        Sends SIGTERM to every registered child's process group, waits up to
        the grace period, then SIGKILLs whatever is still running.
        """
        grace = self.grace_period if grace is None else grace
        with self._lock:
            processes = [p for p in self._processes if p.poll() is None]
        if not processes:
            return

        for process in processes:
            logger.debug(f"Sending SIGTERM to pid {process.pid}")
            stop_process(process)

        deadline = time.monotonic() + grace
        for process in processes:
            remaining = deadline - time.monotonic()
            try:
                process.wait(timeout=max(remaining, 0))
            except subprocess.TimeoutExpired:
                logger.warning(f"pid {process.pid} did not exit within {grace:g}s; sending SIGKILL.")
                stop_process(process, force=True)
                process.wait()

    def kill_all(self) -> None:
        with self._lock:
            processes = [p for p in self._processes if p.poll() is None]
        for process in processes:
            stop_process(process, force=True)
