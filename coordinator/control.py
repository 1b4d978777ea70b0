"""Master/worker mode control.

The Coordinator ties the registry, the planner, the launch builder and the
process supervisor together and publishes everything observers need on the
cells of a CoordinatorState. A device can be a worker for one peer and a
master for another at the same time; each role has its own session.
"""

import logging
import threading
from typing import Callable, Iterable

from .classifier import EventKind, LogEvent
from .config import CoordinatorSettings, get_settings
from .interface import (
    ExitRecord,
    Mode,
    ModelInfo,
    Role,
    ServerSettings,
    ServerState,
    WorkerDescriptor,
)
from .launch import LaunchError, server_launch_spec, worker_launch_spec
from .planner import DistributionPlan, plan_distribution
from .process import ProcessSession, ProcessSupervisor, check_health_sync
from .registry import WorkerRegistry
from .state import CoordinatorState
from .system import detect_local_ip
from .wakelock import WakeLock, get_wake_lock

logger = logging.getLogger(__name__)

ROLE_MODES = {
    Role.SERVER: Mode.MASTER,
    Role.WORKER: Mode.WORKER,
}


class Coordinator:
    """Entry point for running this device as a master or a worker."""

    def __init__(
        self,
        registry: WorkerRegistry | None = None,
        settings: CoordinatorSettings | None = None,
        state: CoordinatorState | None = None,
        wake_lock: WakeLock | None = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry if registry is not None else WorkerRegistry()
        self.cells = state or CoordinatorState()
        self.wake_lock = wake_lock or get_wake_lock()
        self._supervisor = ProcessSupervisor(
            log_capacity=self.settings.rpc_log_capacity,
            stop_timeout=self.settings.stop_timeout,
            wake_lock=self.wake_lock,
        )
        # Serializes enter/stop calls; never held by reader threads
        self._lock = threading.RLock()
        # Roles with a live session, most recently entered last
        self._roles_lock = threading.Lock()
        self._active: list[Role] = []
        self._forwarders: dict[Role, list[Callable[[], None]]] = {}

        self.cells.master_ram_mb.set(self.settings.master_ram_mb)
        self.cells.worker_ram_mb.set(self.settings.worker_ram_mb)
        self.cells.worker_port.set(self.settings.rpc_port)
        self.cells.workers.set(self.registry.list_workers())
        self.registry.subscribe(self.cells.workers.set)
        self.refresh_local_ip()

    # ─────────────────────────────────────────────────────────────────
    # Read-only accessors
    # ─────────────────────────────────────────────────────────────────

    @property
    def mode(self) -> Mode:
        return self.cells.mode.value

    @property
    def workers(self) -> tuple[WorkerDescriptor, ...]:
        return self.registry.list_workers()

    def is_running(self, role: Role | None = None) -> bool:
        if role is None:
            return any(self._supervisor.is_running(r) for r in Role)
        return self._supervisor.is_running(role)

    def state(self, role: Role) -> ServerState:
        return self._state_cell(role).value

    def session(self, role: Role) -> ProcessSession | None:
        return self._supervisor.get(role)

    def worker_addresses(self) -> list[str]:
        return self.registry.addresses()

    def refresh_local_ip(self) -> str | None:
        ip = detect_local_ip()
        self.cells.local_ip.set(ip)
        return ip

    def set_master_ram(self, ram_mb: int):
        if ram_mb < 0:
            raise ValueError(f"Master RAM must not be negative: {ram_mb}")
        self.cells.master_ram_mb.set(ram_mb)

    def preview_plan(
        self,
        model: ModelInfo,
        workers: Iterable[WorkerDescriptor] | None = None,
    ) -> DistributionPlan | None:
        """Plan without launching anything.

        Uses the registry's participants unless ``workers`` is given; either
        way only enabled, connected workers take part.
        """
        candidates = self.registry.participants() if workers is None else tuple(workers)
        return plan_distribution(
            model.total_layers,
            model.size_mb,
            self.cells.master_ram_mb.value,
            [w for w in candidates if w.enabled and w.connected],
            default_layers=self.settings.default_layer_count,
        )

    def is_server_healthy(self) -> bool:
        """Probe llama-server's /health endpoint."""
        session = self._supervisor.get(Role.SERVER)
        if session is None or not session.is_running():
            return False
        url = f"http://127.0.0.1:{session.spec.port}/health"
        return check_health_sync(url, timeout=self.settings.health_timeout)

    # ─────────────────────────────────────────────────────────────────
    # Mode changes
    # ─────────────────────────────────────────────────────────────────

    def enter_master_mode(
        self,
        model: ModelInfo,
        workers: Iterable[WorkerDescriptor] | None = None,
        settings: ServerSettings | None = None,
    ) -> ProcessSession:
        """Start llama-server, offloading layers to the participating workers.

        ``workers``, when given, is this launch's participant set: those
        entries are added to (or overwrite their entry in) the registry, and
        every other registered worker is kept but left out of the launch.
        Without it the registry's participants are used. A running server is
        stopped first. If the launch cannot even be prepared, the returned
        session is already in the ERROR state.
        """
        with self._lock:
            if workers is not None:
                workers = self.registry.upsert(workers)
            settings = settings or ServerSettings(host=self.settings.host, port=self.settings.port)

            plan = self.preview_plan(model, workers)
            self._publish_plan(model, plan)

            logger.info(
                f"Entering master mode with {model.path} "
                f"({len(plan.worker_addresses) if plan else 0} worker(s))"
            )
            try:
                spec = server_launch_spec(self.settings, model, settings, plan)
            except LaunchError as e:
                logger.error(f"Cannot start llama-server: {e}")
                return self._launch_failed(Role.SERVER, settings.port, str(e))

            session = self._supervisor.start(
                spec,
                on_event=self._on_server_event,
                on_exit=self._on_exit,
                on_created=self._attach,
            )
            self._after_start(session)
            return session

    def enter_worker_mode(
        self,
        port: int | None = None,
        ram_mb: int | None = None,
        threads: int = 4,
        cache_enabled: bool = False,
    ) -> ProcessSession:
        """Start rpc-server so a master can use this device's memory and compute."""
        with self._lock:
            port = port or self.settings.rpc_port
            if ram_mb is not None:
                if ram_mb < 0:
                    raise ValueError(f"Worker RAM must not be negative: {ram_mb}")
                self.cells.worker_ram_mb.set(ram_mb)
            self.cells.worker_port.set(port)
            ip = self.refresh_local_ip()

            logger.info(f"Entering worker mode on {ip or 'localhost'}:{port}")
            try:
                spec = worker_launch_spec(self.settings, port, threads, cache_enabled)
            except LaunchError as e:
                logger.error(f"Cannot start rpc-server: {e}")
                return self._launch_failed(Role.WORKER, port, str(e))

            session = self._supervisor.start(
                spec,
                on_exit=self._on_exit,
                on_created=self._attach,
            )
            self._after_start(session)
            return session

    def stop(self, role: Role) -> bool:
        """Stop the session of ``role``. Safe to call when nothing runs."""
        with self._lock:
            stopped = self._supervisor.stop(role)
            self._detach(role)
            self._leave(role)
            self._state_cell(role).set(ServerState.stopped())
            if role == Role.WORKER:
                self.cells.connection_count.set(0)
            if stopped:
                logger.info(f"Stopped {role.value} role")
            return stopped

    def stop_all(self):
        for role in Role:
            self.stop(role)

    # ─────────────────────────────────────────────────────────────────
    # Session wiring
    # ─────────────────────────────────────────────────────────────────

    def _state_cell(self, role: Role):
        return self.cells.server_state if role == Role.SERVER else self.cells.worker_state

    def _attach(self, session: ProcessSession):
        """Forward a new session's cells to the published ones."""
        self._detach(session.role)
        target = self._state_cell(session.role)
        target.set(session.state)
        unsubs = [session.state_cell.subscribe(target.set)]
        if session.role == Role.WORKER:
            self.cells.connection_count.set(session.connection_count)
            self.cells.rpc_logs.set(session.log_lines)
            unsubs.append(session.connections.subscribe(self.cells.connection_count.set))
            unsubs.append(session.logs.subscribe(self.cells.rpc_logs.set))
        self._forwarders[session.role] = unsubs

    def _detach(self, role: Role):
        for unsubscribe in self._forwarders.pop(role, []):
            unsubscribe()

    def _after_start(self, session: ProcessSession):
        if session.is_running():
            self._enter(session.role)
            # The process may have exited before the role was recorded
            if not session.is_running() and session.exit and session.exit.unexpected:
                self._leave(session.role)
        else:
            self._leave(session.role)

    def _launch_failed(self, role: Role, port: int, message: str) -> ProcessSession:
        session = self._supervisor.record_failure(role, port, message, on_created=self._attach)
        self._leave(role)
        return session

    def _enter(self, role: Role):
        with self._roles_lock:
            if role in self._active:
                self._active.remove(role)
            self._active.append(role)
            mode = ROLE_MODES[self._active[-1]]
        self.cells.mode.set(mode)
        self.cells.running.set(True)

    def _leave(self, role: Role):
        with self._roles_lock:
            if role in self._active:
                self._active.remove(role)
            mode = ROLE_MODES[self._active[-1]] if self._active else Mode.NONE
            running = bool(self._active)
        self.cells.mode.set(mode)
        self.cells.running.set(running)

    def _publish_plan(self, model: ModelInfo, plan: DistributionPlan | None):
        if plan:
            self.cells.model_layer_count.set(plan.total_layers)
            self.cells.remote_layer_count.set(plan.remote_layers)
            self.cells.last_plan.set({"model_path": model.path, "split": plan.to_memory()})
        else:
            self.cells.model_layer_count.set(model.total_layers or 0)
            self.cells.remote_layer_count.set(0)
            self.cells.last_plan.set(None)
        self.cells.model_size_mb.set(model.size_mb)

    # Callbacks below run on session reader threads and must not take self._lock

    def _on_server_event(self, event: LogEvent):
        if event.kind == EventKind.WORKER_UNREACHABLE and event.address:
            if self.registry.update_connection_state(event.address, False):
                logger.warning(f"Worker {event.address} is unreachable, marked disconnected")

    def _on_exit(self, record: ExitRecord):
        self.cells.last_exit.set(record)
        current = self._supervisor.get(record.role)
        # Stale sessions and requested stops are handled by stop()
        if current is None or current.exit is not record or record.intentional:
            return
        logger.warning(
            f"{record.role.value} process exited unexpectedly (exit code {record.exit_code})"
        )
        self._leave(record.role)


# Global coordinator instance
_coordinator: Coordinator | None = None


def get_coordinator() -> Coordinator:
    """Get the process-wide coordinator."""
    global _coordinator
    if _coordinator is None:
        _coordinator = Coordinator()
    return _coordinator
