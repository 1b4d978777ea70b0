"""Supervision of llama.cpp child processes.

Each ProcessSession owns one child process and one reader thread. The
reader consumes the combined stdout/stderr line by line, feeds each line to
a classifier and drives the lifecycle state machine:

    STOPPED -> STARTING -> LOADING -> RUNNING
    any state -> ERROR (spawn or read failure)

A session is used once. Restarting means creating a new session, which
ProcessSupervisor does while guaranteeing one live session per role.
"""

import logging
import os
import signal
import subprocess
import threading
from collections import deque
from datetime import datetime
from typing import Callable

import httpx

from .classifier import Classifier, EventKind, LogEvent, classify_server_line, classify_worker_line
from .interface import ExitRecord, LaunchSpec, Role, ServerState, ServerStatus
from .launch import remove_links
from .state import StateCell
from .wakelock import WakeLock, get_wake_lock

logger = logging.getLogger(__name__)

DEFAULT_CLASSIFIERS: dict[Role, Classifier] = {
    Role.SERVER: classify_server_line,
    Role.WORKER: classify_worker_line,
}

PROCESS_NAMES = {
    Role.SERVER: "llama-server",
    Role.WORKER: "rpc-server",
}


class ProcessSession:
    """One supervised llama-server or rpc-server process."""

    def __init__(
        self,
        spec: LaunchSpec,
        classifier: Classifier | None = None,
        log_capacity: int = 0,
        stop_timeout: float = 5.0,
        wake_lock: WakeLock | None = None,
        on_event: Callable[[LogEvent], None] | None = None,
        on_exit: Callable[[ExitRecord], None] | None = None,
    ):
        self.spec = spec
        self.role = spec.role
        self.name = PROCESS_NAMES[spec.role]
        self._classifier = classifier or DEFAULT_CLASSIFIERS[spec.role]
        self._stop_timeout = stop_timeout
        self._wake_lock = wake_lock or get_wake_lock()
        self._on_event = on_event
        self._on_exit = on_exit

        self.state_cell: StateCell[ServerState] = StateCell(f"{self.name}.state", ServerState.stopped())
        self.connections: StateCell[int] = StateCell(f"{self.name}.connections", 0)
        self.logs: StateCell[tuple] = StateCell(f"{self.name}.logs", ())
        self._log_buffer: deque[str] | None = deque(maxlen=log_capacity) if log_capacity > 0 else None

        self._process: subprocess.Popen | None = None
        self._reader: threading.Thread | None = None
        self._started = False
        self._ready_seen = False
        # Must be set before the process is signalled so the reader can tell
        # a requested stop from a crash
        self._stop_requested = threading.Event()
        self._done = threading.Event()
        self._cleanup_lock = threading.Lock()
        self._holding_wake_lock = False
        self._links_removed = False
        self.exit: ExitRecord | None = None

    # ─────────────────────────────────────────────────────────────────
    # Observable state
    # ─────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ServerState:
        return self.state_cell.value

    @property
    def connection_count(self) -> int:
        return self.connections.value

    @property
    def log_lines(self) -> tuple[str, ...]:
        return self.logs.value

    def is_running(self) -> bool:
        """True from a successful spawn until the process has been reaped."""
        return self._process is not None and not self._done.is_set()

    def _set_state(self, state: ServerState):
        old = self.state_cell.value
        if self.state_cell.set(state):
            logger.debug(f"{self.name}: {old.status.value} -> {state.status.value}")

    # ─────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────

    def start(self) -> bool:
        """Spawn the process and its reader thread.

        Returns False if spawning failed; the state is then ERROR with the
        underlying message.
        """
        if self._started:
            raise RuntimeError(f"{self.name} session was already started; create a new session")
        self._started = True
        self._set_state(ServerState.starting())

        full_env = os.environ.copy()
        full_env.update(self.spec.env)

        try:
            self._wake_lock.acquire(self.name)
            self._holding_wake_lock = True
            logger.info(f"Starting {self.name}: {' '.join(self.spec.cmd)}")
            self._process = subprocess.Popen(
                self.spec.cmd,
                cwd=self.spec.cwd,
                env=full_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                bufsize=1,
                start_new_session=True,  # Own process group, killed as a whole
            )
        except Exception as e:
            logger.exception(f"Failed to start {self.name}")
            self.fail(str(e))
            return False

        logger.info(f"Started {self.name} with PID {self._process.pid}")
        if self._log_buffer is not None:
            self._append_log("=== RPC Server Started ===")
            self._append_log(f"Command: {' '.join(self.spec.cmd)}")

        self._reader = threading.Thread(
            target=self._read_output,
            name=f"{self.name}-reader",
            daemon=True,
        )
        self._reader.start()
        return True

    def fail(self, message: str):
        """End a session that never got a running process."""
        self._started = True
        self._set_state(ServerState.error(message))
        self._cleanup()
        self.exit = ExitRecord(self.role, None, intentional=False)
        self._done.set()

    def stop(self):
        """Kill the process and wait for the reader to finish.

        Safe to call at any time and any number of times. Never blocks longer
        than the stop timeout after the kill signal.
        """
        self._stop_requested.set()
        proc = self._process
        if proc is not None and proc.poll() is None:
            logger.info(f"Stopping {self.name} (PID {proc.pid})")
            self._kill(proc)
            try:
                proc.wait(timeout=self._stop_timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"{self.name} (PID {proc.pid}) did not exit after kill")

        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=self._stop_timeout)
            if reader.is_alive():
                logger.warning(f"{self.name} reader did not finish within {self._stop_timeout}s")

        self._cleanup()
        self._set_state(ServerState.stopped())

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for the process to end. Returns True if it has."""
        if not self._started:
            return True
        return self._done.wait(timeout)

    def _kill(self, proc: subprocess.Popen):
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass  # Already gone
        except OSError as e:
            logger.warning(f"Failed to kill process group of {self.name}: {e}")
            proc.kill()

    def _cleanup(self):
        """Release the wake lock and remove library links, exactly once."""
        with self._cleanup_lock:
            if self._holding_wake_lock:
                self._holding_wake_lock = False
                try:
                    self._wake_lock.release(self.name)
                except Exception as e:
                    logger.warning(f"Failed to release wake lock for {self.name}: {e}")
            if not self._links_removed:
                self._links_removed = True
                remove_links(self.spec.links)

    # ─────────────────────────────────────────────────────────────────
    # Output handling
    # ─────────────────────────────────────────────────────────────────

    def _read_output(self):
        proc = self._process
        exit_code: int | None = None
        try:
            for raw in proc.stdout:
                self.handle_line(raw.rstrip("\r\n"))
            exit_code = proc.wait()
        except Exception as e:
            if not self._stop_requested.is_set():
                logger.exception(f"Error reading {self.name} output")
                self._set_state(ServerState.error(str(e)))
                self._kill(proc)
            exit_code = proc.poll()
        finally:
            proc.stdout.close()
            self._finish(exit_code)

    def _finish(self, exit_code: int | None):
        self._cleanup()
        intentional = self._stop_requested.is_set()
        record = ExitRecord(self.role, exit_code, intentional)
        self.exit = record

        if intentional:
            logger.info(f"{self.name} stopped (exit code {exit_code})")
        else:
            logger.warning(f"{self.name} terminated unexpectedly (exit code {exit_code})")

        if self.state.status != ServerStatus.ERROR:
            self._set_state(ServerState.stopped())
        self.connections.set(0)
        self._done.set()

        if self._on_exit:
            try:
                self._on_exit(record)
            except Exception as e:
                logger.warning(f"{self.name} exit callback error: {e}")

    def _append_log(self, line: str):
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        self._log_buffer.append(f"[{timestamp}] {line}")
        self.logs.set(tuple(self._log_buffer))

    def handle_line(self, line: str):
        """Process one line of output, in the order the process wrote it."""
        logger.debug(f"{self.name}: {line}")
        if self._log_buffer is not None:
            self._append_log(line)

        event = self._classifier(line)
        if event is None:
            return
        self._apply(event)

        if self._on_event:
            try:
                self._on_event(event)
            except Exception as e:
                logger.warning(f"{self.name} event callback error: {e}")

    def _apply(self, event: LogEvent):
        kind = event.kind

        if kind == EventKind.CLIENT_CONNECTED:
            count = self.connections.update(lambda n: n + 1)
            logger.info(f"{self.name}: connection count {count}")
            return
        if kind == EventKind.CLIENT_DISCONNECTED:
            count = self.connections.update(lambda n: max(0, n - 1))
            logger.info(f"{self.name}: connection count {count}")
            return

        # Lifecycle transitions stop once a stop was requested or an error hit
        if self._stop_requested.is_set() or self.state.status == ServerStatus.ERROR:
            return

        if kind == EventKind.READY:
            self._ready_seen = True
            self._set_state(ServerState.running(self.spec.port))
            if self.role == Role.SERVER:
                logger.info(f"{self.name} is ready and listening on port {self.spec.port}")
        elif kind == EventKind.LOADING_TENSORS:
            if not self._ready_seen:
                self._set_state(ServerState.loading(event.message))
        elif kind in (EventKind.LOADING, EventKind.WARMING_UP):
            self._set_state(ServerState.loading(event.message))


class ProcessSupervisor:
    """Keeps at most one live session per role."""

    def __init__(
        self,
        log_capacity: int = 1000,
        stop_timeout: float = 5.0,
        wake_lock: WakeLock | None = None,
    ):
        self.log_capacity = log_capacity
        self.stop_timeout = stop_timeout
        self._wake_lock = wake_lock
        self._sessions: dict[Role, ProcessSession] = {}
        self._lock = threading.RLock()

    def start(
        self,
        spec: LaunchSpec,
        classifier: Classifier | None = None,
        on_event: Callable[[LogEvent], None] | None = None,
        on_exit: Callable[[ExitRecord], None] | None = None,
        on_created: Callable[[ProcessSession], None] | None = None,
    ) -> ProcessSession:
        """Stop any session of the same role, then start a new one.

        ``on_created`` runs before the process is spawned, so observers can
        subscribe to the session without missing early transitions.
        """
        session = self._replace(spec, classifier, on_event, on_exit)
        if on_created:
            on_created(session)
        session.start()
        return session

    def record_failure(
        self,
        role: Role,
        port: int,
        message: str,
        on_created: Callable[[ProcessSession], None] | None = None,
    ) -> ProcessSession:
        """Replace the session of ``role`` with one that failed to launch."""
        session = self._replace(LaunchSpec(role=role, cmd=[], port=port), None, None, None)
        if on_created:
            on_created(session)
        session.fail(message)
        return session

    def _replace(self, spec, classifier, on_event, on_exit) -> ProcessSession:
        # The old session is stopped outside the lock: its reader may call
        # back into get() while finishing
        self.stop(spec.role)
        session = ProcessSession(
            spec,
            classifier=classifier,
            log_capacity=self.log_capacity if spec.role == Role.WORKER else 0,
            stop_timeout=self.stop_timeout,
            wake_lock=self._wake_lock,
            on_event=on_event,
            on_exit=on_exit,
        )
        with self._lock:
            self._sessions[spec.role] = session
        return session

    def stop(self, role: Role) -> bool:
        """Stop the session of ``role``. Returns False if there was none."""
        with self._lock:
            session = self._sessions.pop(role, None)
        if session is None:
            return False
        session.stop()
        return True

    def stop_all(self):
        for role in list(self._sessions):
            self.stop(role)

    def get(self, role: Role) -> ProcessSession | None:
        with self._lock:
            return self._sessions.get(role)

    def is_running(self, role: Role) -> bool:
        session = self.get(role)
        return session is not None and session.is_running()

    def sessions(self) -> list[ProcessSession]:
        with self._lock:
            return list(self._sessions.values())


def check_health_sync(url: str, timeout: float = 2.0) -> bool:
    """Synchronous health check."""
    try:
        resp = httpx.get(url, timeout=timeout)
        return resp.status_code < 500
    except httpx.RequestError:
        return False
