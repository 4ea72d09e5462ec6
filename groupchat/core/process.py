"""Agent process management.

ProcessManager is the seam between orchestration and the OS: the router and
session registry only ever call spawn/write/kill, so tests substitute a fake
and the CLI host uses SubprocessManager.

Spawn modes in SubprocessManager:
- Batch (prompt given): prompt is passed as the final argument, stdin is
  closed, and the process is expected to answer and exit.
- Interactive (no prompt): write() feeds stdin. With close_stdin_after_write
  stdin is closed after the first write, for CLIs that answer at EOF.
"""

import atexit
import codecs
import logging
import os
import signal
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from groupchat.core.models import SpawnConfig, SpawnResult

logger = logging.getLogger(__name__)

DataCallback = Callable[[str, str], None]
ExitCallback = Callable[[str, int], None]

_READ_CHUNK_SIZE = 4096
_KILL_GRACE_SECONDS = 5.0
_MAX_STDERR_CHARS = 64 * 1024


class ProcessManager(Protocol):
    """Spawns, feeds and terminates agent processes by session id."""

    def spawn(self, config: SpawnConfig) -> SpawnResult: ...

    def write(self, session_id: str, data: str) -> bool: ...

    def kill(self, session_id: str) -> bool: ...


@dataclass
class _ManagedProcess:
    session_id: str
    agent_type: str
    process: subprocess.Popen
    reader: threading.Thread | None = None
    stderr_reader: threading.Thread | None = None
    timer: threading.Timer | None = None
    stderr_chunks: list[str] = field(default_factory=list)
    stderr_length: int = 0
    close_stdin_after_write: bool = False
    timed_out: bool = False


class SubprocessManager:
    """Run agent CLIs as local subprocesses.

    Output is delivered incrementally through on_data(session_id, text) from a
    reader thread per process; on_exit(session_id, returncode) fires once the
    output stream is drained and the process has exited.

    Uses an RLock so a callback running on a reader thread may call back into
    the manager (e.g. spawn a follow-up process) without deadlocking.
    """

    def __init__(
        self,
        on_data: DataCallback | None = None,
        on_exit: ExitCallback | None = None,
        timeout: float | None = None,
    ):
        self.on_data = on_data
        self.on_exit = on_exit
        self.timeout = timeout
        self._processes: dict[str, _ManagedProcess] = {}
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._starting: set[str] = set()
        self._finishing = 0  # Exit callbacks still running
        atexit.register(self.shutdown)

    # --- ProcessManager protocol ---

    def spawn(self, config: SpawnConfig) -> SpawnResult:
        """Start a process for config.session_id.

        Failure to launch (missing binary, bad cwd, session already running)
        is reported as success=False, never raised.
        """
        with self._lock:
            if config.session_id in self._processes or config.session_id in self._starting:
                logger.error(f"Session {config.session_id} is already running")
                return SpawnResult(pid=-1, success=False)
            # Reserved until the process is registered below
            self._starting.add(config.session_id)

        command = [config.command, *config.args]
        batch = config.prompt is not None
        if batch:
            command.append(config.prompt)

        env = os.environ.copy()
        if config.env:
            env.update(config.env)

        try:
            process = subprocess.Popen(
                command,
                cwd=config.cwd,
                env=env,
                stdin=subprocess.DEVNULL if batch else subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to spawn {config.command} for session {config.session_id}: {e}")
            with self._lock:
                self._starting.discard(config.session_id)
            return SpawnResult(pid=-1, success=False)

        managed = _ManagedProcess(
            session_id=config.session_id,
            agent_type=config.agent_type,
            process=process,
            close_stdin_after_write=config.close_stdin_after_write and not batch,
        )
        with self._lock:
            self._starting.discard(config.session_id)
            self._processes[config.session_id] = managed

        managed.stderr_reader = threading.Thread(
            target=self._read_stderr,
            args=(managed,),
            name=f"stderr-{config.session_id}",
            daemon=True,
        )
        managed.reader = threading.Thread(
            target=self._read_stdout,
            args=(managed,),
            name=f"stdout-{config.session_id}",
            daemon=True,
        )
        managed.stderr_reader.start()
        managed.reader.start()

        if self.timeout:
            managed.timer = threading.Timer(self.timeout, self._on_timeout, args=(managed,))
            managed.timer.daemon = True
            managed.timer.start()

        logger.debug(
            f"Spawned {config.agent_type} session {config.session_id} "
            f"(pid={process.pid}, batch={batch}, read_only={config.read_only_mode})"
        )
        return SpawnResult(pid=process.pid, success=True)

    def write(self, session_id: str, data: str) -> bool:
        """Write to a running interactive process's stdin.

        Sessions spawned with close_stdin_after_write get EOF right after the
        data, and later writes return False.
        """
        with self._lock:
            managed = self._processes.get(session_id)
        if managed is None:
            return False
        stdin = managed.process.stdin
        if stdin is None or stdin.closed or managed.process.poll() is not None:
            return False
        try:
            stdin.write(data.encode("utf-8"))
            stdin.flush()
            if managed.close_stdin_after_write:
                stdin.close()
        except (BrokenPipeError, OSError) as e:
            logger.warning(f"Write to session {session_id} failed: {e}")
            return False
        return True

    def kill(self, session_id: str) -> bool:
        """Terminate a process (SIGTERM, then SIGKILL after a grace period)."""
        with self._lock:
            managed = self._processes.get(session_id)
        if managed is None:
            return False
        self._terminate(managed)
        return True

    # --- Host helpers ---

    def is_running(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._processes

    def active_sessions(self) -> list[str]:
        with self._lock:
            return list(self._processes)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no processes are running. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(
                lambda: not self._processes and self._finishing == 0, timeout=timeout
            )

    def wait_for_session(self, session_id: str, timeout: float | None = None) -> bool:
        """Block until a session has exited and its exit callback finished."""
        with self._idle:
            return self._idle.wait_for(
                lambda: session_id not in self._processes and self._finishing == 0,
                timeout=timeout,
            )

    def shutdown(self) -> None:
        """Kill every running process. Registered with atexit until called."""
        atexit.unregister(self.shutdown)
        with self._lock:
            processes = list(self._processes.values())
        for managed in processes:
            self._terminate(managed)

    # --- Internals ---

    def _terminate(self, managed: _ManagedProcess) -> None:
        process = managed.process
        if process.poll() is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            process.terminate()
        try:
            process.wait(timeout=_KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                process.kill()

    def _on_timeout(self, managed: _ManagedProcess) -> None:
        if managed.process.poll() is None:
            managed.timed_out = True
            logger.warning(
                f"Session {managed.session_id} exceeded {self.timeout}s timeout; killing"
            )
            self._terminate(managed)

    def _read_stdout(self, managed: _ManagedProcess) -> None:
        stream = managed.process.stdout
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            if stream is not None:
                while True:
                    chunk = stream.read1(_READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    text = decoder.decode(chunk)
                    if text:
                        self._deliver(self.on_data, managed.session_id, text)
                tail = decoder.decode(b"", final=True)
                if tail:
                    self._deliver(self.on_data, managed.session_id, tail)
        finally:
            returncode = managed.process.wait()
            if managed.stderr_reader is not None:
                managed.stderr_reader.join(timeout=_KILL_GRACE_SECONDS)
            self._finish(managed, returncode)

    def _read_stderr(self, managed: _ManagedProcess) -> None:
        stream = managed.process.stderr
        if stream is None:
            return
        for raw in iter(lambda: stream.read1(_READ_CHUNK_SIZE), b""):
            # Keep only a bounded prefix for diagnostics
            if managed.stderr_length < _MAX_STDERR_CHARS:
                text = raw.decode("utf-8", errors="replace")
                managed.stderr_chunks.append(text)
                managed.stderr_length += len(text)

    def _finish(self, managed: _ManagedProcess, returncode: int) -> None:
        if managed.timer is not None:
            managed.timer.cancel()
        if managed.process.stdin is not None:
            try:
                managed.process.stdin.close()
            except OSError:
                pass

        if returncode != 0:
            stderr = "".join(managed.stderr_chunks).strip()
            reason = " after timeout" if managed.timed_out else ""
            logger.warning(
                f"Session {managed.session_id} exited with code {returncode}{reason}"
                + (f": {stderr[:500]}" if stderr else "")
            )

        # Drop the session before notifying so on_exit may reuse the id
        with self._idle:
            self._processes.pop(managed.session_id, None)
            self._finishing += 1
        try:
            self._deliver(self.on_exit, managed.session_id, returncode)
        finally:
            with self._idle:
                self._finishing -= 1
                self._idle.notify_all()

    @staticmethod
    def _deliver(callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Process callback failed for session {args[0]}: {e}")
