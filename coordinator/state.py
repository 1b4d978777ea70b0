"""In-memory observable state published by the coordinator.

Every value the outside world can watch lives in a StateCell. Cells are
read-only for observers; only the coordinator calls ``set``.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

from .interface import DEFAULT_RPC_PORT, DEFAULT_WORKER_RAM_MB, ExitRecord, Mode, ServerState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StateCell(Generic[T]):
    """Thread-safe value holder with change callbacks.

    Subscribers are called with the new value, outside the lock, only when
    the value actually changes. A failing callback is logged and does not
    affect other subscribers.
    """

    def __init__(self, name: str, initial: T):
        self.name = name
        self._value = initial
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        with self._lock:
            return self._value

    def set(self, value: T) -> bool:
        """Set a new value. Returns True if observers were notified."""
        with self._lock:
            if self._value == value:
                return False
            self._value = value
            callbacks = list(self._callbacks)
        self._notify(callbacks, value)
        return True

    def update(self, func: Callable[[T], T]) -> T:
        """Atomically replace the value with ``func(old)``."""
        with self._lock:
            old = self._value
            new = func(old)
            changed = new != old
            self._value = new
            callbacks = list(self._callbacks) if changed else []
        if changed:
            self._notify(callbacks, new)
        return new

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register a change callback. Returns a function that unsubscribes it."""
        with self._lock:
            self._callbacks.append(callback)
        logger.debug(f"Subscribed to {self.name}, total={len(self._callbacks)}")

        def unsubscribe():
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def _notify(self, callbacks: list[Callable[[T], None]], value: T):
        for cb in callbacks:
            try:
                cb(value)
            except Exception as e:
                logger.warning(f"State callback error on {self.name}: {e}")

    def __repr__(self) -> str:
        return f"StateCell({self.name}={self.value!r})"


@dataclass
class CoordinatorState:
    """All observable cells of one coordinator."""
    mode: StateCell[Mode] = field(default_factory=lambda: StateCell("mode", Mode.NONE))
    running: StateCell[bool] = field(default_factory=lambda: StateCell("running", False))
    workers: StateCell[tuple] = field(default_factory=lambda: StateCell("workers", ()))
    server_state: StateCell[ServerState] = field(
        default_factory=lambda: StateCell("server_state", ServerState.stopped())
    )
    worker_state: StateCell[ServerState] = field(
        default_factory=lambda: StateCell("worker_state", ServerState.stopped())
    )
    connection_count: StateCell[int] = field(
        default_factory=lambda: StateCell("connection_count", 0)
    )
    rpc_logs: StateCell[tuple] = field(default_factory=lambda: StateCell("rpc_logs", ()))

    # Network visualization
    model_layer_count: StateCell[int] = field(
        default_factory=lambda: StateCell("model_layer_count", 0)
    )
    remote_layer_count: StateCell[int] = field(
        default_factory=lambda: StateCell("remote_layer_count", 0)
    )
    model_size_mb: StateCell[int] = field(default_factory=lambda: StateCell("model_size_mb", 0))

    master_ram_mb: StateCell[int] = field(
        default_factory=lambda: StateCell("master_ram_mb", DEFAULT_WORKER_RAM_MB)
    )
    worker_port: StateCell[int] = field(
        default_factory=lambda: StateCell("worker_port", DEFAULT_RPC_PORT)
    )
    worker_ram_mb: StateCell[int] = field(
        default_factory=lambda: StateCell("worker_ram_mb", DEFAULT_WORKER_RAM_MB)
    )
    local_ip: StateCell[str | None] = field(default_factory=lambda: StateCell("local_ip", None))

    # Last computed plan, as {"model_path": ..., "split": {"host:port": fraction}}
    last_plan: StateCell[dict | None] = field(
        default_factory=lambda: StateCell("last_plan", None)
    )
    # Set when a process ends; ``unexpected`` tells a crash from a requested stop
    last_exit: StateCell[ExitRecord | None] = field(
        default_factory=lambda: StateCell("last_exit", None)
    )

    def cells(self) -> dict[str, StateCell[Any]]:
        """All cells keyed by name."""
        return {
            name: value for name, value in vars(self).items()
            if isinstance(value, StateCell)
        }

    def snapshot(self) -> dict[str, Any]:
        """Current value of every cell."""
        return {name: cell.value for name, cell in self.cells().items()}
