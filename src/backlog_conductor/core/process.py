"""Agent subprocesses: launching, liveness, termination and the idle watchdog."""

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

EXIT_FILE_NAME = "exit_code"

# "$0" "$@" is the agent command; its status is written atomically next to
# the log so a later process can learn how a detached agent ended.
_WRAPPER = '"$0" "$@"; code=$?; echo "$code" > "$BC_EXIT_FILE.tmp" && mv "$BC_EXIT_FILE.tmp" "$BC_EXIT_FILE"; exit "$code"'


def is_pid_alive(pid: int | None) -> bool:
    """Check if a process is still running."""
    if not pid:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


def read_exit_code(exit_file: str | Path | None) -> int | None:
    if not exit_file:
        return None
    try:
        return int(Path(exit_file).read_text().strip())
    except (FileNotFoundError, ValueError):
        return None


@dataclass
class AgentProcess:
    pid: int
    log_file: Path
    exit_file: Path
    popen: subprocess.Popen | None = None

    def exited(self) -> bool:
        if self.popen is not None:
            return self.popen.poll() is not None
        return not is_pid_alive(self.pid)

    def exit_code(self) -> int | None:
        """Exit status once finished. Negative for a signal, None if unknown."""
        code = read_exit_code(self.exit_file)
        if code is not None:
            return code
        if self.popen is not None:
            return self.popen.poll()
        return None


def _signal_group(pid: int, sig: int) -> bool:
    try:
        os.killpg(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return False
        return True


def _group_alive(pid: int, popen: subprocess.Popen | None) -> bool:
    # Reap our own child first; a zombie leader still counts as a group member.
    if popen is not None:
        popen.poll()
    try:
        os.killpg(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return is_pid_alive(pid)


def terminate(pid: int | None, grace: float = 5.0, popen: subprocess.Popen | None = None) -> bool:
    """SIGTERM the agent's process group, SIGKILL it after ``grace`` seconds.

    Waits for the whole group, not just the leader, so children that ignore
    SIGTERM are still killed. Returns False when the process was already gone.
    """
    if not pid or (popen is not None and popen.poll() is not None) or not is_pid_alive(pid):
        return False
    if not _signal_group(pid, signal.SIGTERM):
        return False

    deadline = time.monotonic() + grace
    while time.monotonic() < deadline:
        if not _group_alive(pid, popen):
            return True
        time.sleep(0.1)

    logger.warning("PID %s ignored SIGTERM for %.1fs; sending SIGKILL", pid, grace)
    _signal_group(pid, signal.SIGKILL)
    if popen is not None:
        try:
            popen.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.error("PID %s survived SIGKILL", pid)
    return True


class ProcessSpawner:
    """Launches agent commands in their own session, output captured to a log."""

    def spawn(
        self,
        command: str | list[str],
        cwd: str | Path,
        log_file: str | Path,
        stdin_file: str | Path | None = None,
        env: dict[str, str] | None = None,
    ) -> AgentProcess:
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not argv:
            raise ValueError("Empty agent command")

        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        exit_file = log_path.parent / EXIT_FILE_NAME
        exit_file.unlink(missing_ok=True)

        proc_env = dict(os.environ)
        proc_env.update(env or {})
        proc_env["BC_EXIT_FILE"] = str(exit_file)

        stdin = open(stdin_file) if stdin_file else subprocess.DEVNULL
        try:
            with open(log_path, "ab") as out:
                proc = subprocess.Popen(
                    ["/bin/sh", "-c", _WRAPPER, *argv],
                    cwd=str(cwd),
                    stdin=stdin,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    env=proc_env,
                    start_new_session=True,
                )
        finally:
            if stdin is not subprocess.DEVNULL:
                stdin.close()

        logger.info("Spawned PID %s: %s (cwd=%s)", proc.pid, argv[0], cwd)
        return AgentProcess(pid=proc.pid, log_file=log_path, exit_file=exit_file, popen=proc)


def _log_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return 0


class Watchdog:
    """Background thread supervising one agent process.

    Kills the process when its log stops growing for ``idle_timeout``
    seconds or when it outlives ``wall_timeout``. Zero disables either
    limit. ``on_exit(kill_reason, exit_code)`` is called exactly once:
    with ``"watchdog"`` or ``"timeout"`` after a kill, with ``None`` and the
    exit status after a natural exit.
    """

    def __init__(
        self,
        process: AgentProcess,
        on_exit: Callable[[str | None, int | None], None],
        idle_timeout: float = 0,
        wall_timeout: float = 0,
        kill_grace: float = 5.0,
        poll_interval: float = 1.0,
        started: float | None = None,
    ):
        self.process = process
        self.on_exit = on_exit
        self.idle_timeout = idle_timeout
        self.wall_timeout = wall_timeout
        self.kill_grace = kill_grace
        self.poll_interval = poll_interval
        self.started = started if started is not None else time.monotonic()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"watchdog-{self.process.pid}", daemon=True
        )
        self._thread.start()

    def stop(self, wait: bool = True):
        self._stop_event.set()
        if wait and self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=10)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the supervised process to finish. True if it did."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        try:
            reason, code = self._supervise()
        except Exception:
            logger.exception("Watchdog for PID %s failed", self.process.pid)
            return
        if self._stop_event.is_set() and reason is None and not self.process.exited():
            return
        try:
            self.on_exit(reason, code)
        except Exception:
            logger.exception("Exit handler for PID %s failed", self.process.pid)

    def _supervise(self) -> tuple[str | None, int | None]:
        last_size = _log_size(self.process.log_file)
        last_change = time.monotonic()

        while not self._stop_event.is_set():
            if self.process.exited():
                return None, self.process.exit_code()

            now = time.monotonic()
            size = _log_size(self.process.log_file)
            if size != last_size:
                last_size, last_change = size, now

            if self.wall_timeout and now - self.started > self.wall_timeout:
                logger.warning("PID %s exceeded %ss timeout; killing", self.process.pid, self.wall_timeout)
                terminate(self.process.pid, self.kill_grace, self.process.popen)
                return "timeout", None
            if self.idle_timeout and now - last_change > self.idle_timeout:
                logger.warning("PID %s silent for %ss; killing", self.process.pid, self.idle_timeout)
                terminate(self.process.pid, self.kill_grace, self.process.popen)
                return "watchdog", None

            self._stop_event.wait(self.poll_interval)

        return None, None
