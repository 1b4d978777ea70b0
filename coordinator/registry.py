"""Worker registry - single source of truth for known RPC workers.

All mutation goes through one lock. Readers always receive immutable
snapshots so planning never sees a half-updated list.
"""

import logging
import threading
from dataclasses import replace
from typing import Callable, Iterable, Iterator

from .interface import SavedWorker, WorkerDescriptor

logger = logging.getLogger(__name__)


def parse_proportion(text: str | float | None) -> float | None:
    """Parse a user-entered load proportion.

    Accepts a fraction (``0.75``) or a percentage (``75``). Blank or invalid
    input means "auto" and returns None. Values are clamped to [0, 1].
    """
    if text is None:
        return None
    try:
        value = float(text)
    except (TypeError, ValueError):
        return None
    if value != value or value < 0:  # NaN or negative
        return None
    if value > 1:
        value = value / 100
    return min(value, 1.0)


class WorkerRegistry:
    """In-memory catalogue of RPC workers keyed by ``host:port``."""

    def __init__(self, workers: Iterable[WorkerDescriptor] = ()):
        self._workers: dict[str, WorkerDescriptor] = {}
        self._lock = threading.Lock()
        self._listeners: list[Callable[[tuple[WorkerDescriptor, ...]], None]] = []
        for worker in workers:
            self._workers.setdefault(worker.address, worker)

    # ─────────────────────────────────────────────────────────────────
    # Mutation (single synchronized entry point)
    # ─────────────────────────────────────────────────────────────────

    def _mutate(self, func: Callable[[dict[str, WorkerDescriptor]], bool]) -> bool:
        """Apply ``func`` to the map under the lock; notify listeners if it changed."""
        with self._lock:
            changed = func(self._workers)
            snapshot = tuple(self._workers.values()) if changed else None
            listeners = list(self._listeners) if changed else []
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Registry listener error: {e}")
        return changed

    def add(self, worker: WorkerDescriptor) -> bool:
        """Add a worker. Returns False (and changes nothing) if the address is known."""
        def op(workers):
            if worker.address in workers:
                return False
            workers[worker.address] = worker
            return True

        added = self._mutate(op)
        if added:
            proportion = f"{int(worker.proportion * 100)}%" if worker.proportion is not None else "auto"
            logger.info(
                f"Added worker: {worker.name} at {worker.address} "
                f"with {worker.ram_mb}MB RAM, proportion={proportion}"
            )
        else:
            logger.debug(f"Worker {worker.address} already registered")
        return added

    def remove(self, address: str) -> bool:
        """Remove a worker by address. Returns True if it was present."""
        removed = self._mutate(lambda workers: workers.pop(address, None) is not None)
        if removed:
            logger.info(f"Removed worker at {address}")
        return removed

    def set_enabled(self, address: str, enabled: bool) -> bool:
        return self.update(address, enabled=enabled)

    def update_connection_state(self, address: str, connected: bool) -> bool:
        changed = self.update(address, connected=connected)
        if changed:
            logger.info(f"Worker {address} {'connected' if connected else 'disconnected'}")
        return changed

    def update(self, address: str, **changes) -> bool:
        """Edit fields of a worker (name, ram_mb, proportion, ...).

        The address itself cannot be changed; remove and re-add instead.
        Returns True if anything changed.
        """
        if "host" in changes or "port" in changes:
            raise ValueError("Cannot change a worker's address; remove and add it instead")

        def op(workers):
            current = workers.get(address)
            if current is None:
                return False
            updated = replace(current, **changes)
            if updated == current:
                return False
            workers[address] = updated
            return True

        return self._mutate(op)

    def clear(self):
        """Remove all workers."""
        def op(workers):
            had_any = bool(workers)
            workers.clear()
            return had_any

        if self._mutate(op):
            logger.info("Cleared all workers")

    def replace_all(self, workers: Iterable[WorkerDescriptor]):
        """Atomically replace the catalogue (first occurrence of an address wins)."""
        new: dict[str, WorkerDescriptor] = {}
        for worker in workers:
            new.setdefault(worker.address, worker)

        def op(current):
            if list(current.values()) == list(new.values()):
                return False
            current.clear()
            current.update(new)
            return True

        self._mutate(op)
        logger.debug(f"Registry now holds {len(new)} workers")

    def upsert(self, workers: Iterable[WorkerDescriptor]) -> tuple[WorkerDescriptor, ...]:
        """Add or overwrite the given workers, leaving every other entry alone.

        Returns the given workers deduplicated by address (first one wins).
        """
        given: dict[str, WorkerDescriptor] = {}
        for worker in workers:
            given.setdefault(worker.address, worker)

        def op(current):
            changed = False
            for address, worker in given.items():
                if current.get(address) != worker:
                    current[address] = worker
                    changed = True
            return changed

        self._mutate(op)
        return tuple(given.values())

    def sync_saved(self, records: Iterable[SavedWorker]):
        """Load the enabled workers of a persisted worker table."""
        enabled = [r.to_descriptor() for r in records if r.is_enabled]
        self.replace_all(enabled)
        logger.info(f"Synced {len(enabled)} enabled saved workers")

    # ─────────────────────────────────────────────────────────────────
    # Snapshots
    # ─────────────────────────────────────────────────────────────────

    def list_workers(self, enabled_only: bool = False) -> tuple[WorkerDescriptor, ...]:
        with self._lock:
            workers = tuple(self._workers.values())
        if enabled_only:
            return tuple(w for w in workers if w.enabled)
        return workers

    def get(self, address: str) -> WorkerDescriptor | None:
        with self._lock:
            return self._workers.get(address)

    def participants(self) -> tuple[WorkerDescriptor, ...]:
        """Enabled and connected workers - the planner's input."""
        return tuple(w for w in self.list_workers() if w.enabled and w.connected)

    def addresses(self, connected_only: bool = True) -> list[str]:
        """``host:port`` of enabled workers, for the --rpc flag."""
        return [
            w.address for w in self.list_workers(enabled_only=True)
            if w.connected or not connected_only
        ]

    def subscribe(self, listener: Callable[[tuple[WorkerDescriptor, ...]], None]) -> Callable[[], None]:
        """Call ``listener`` with a fresh snapshot after every change."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def __iter__(self) -> Iterator[WorkerDescriptor]:
        return iter(self.list_workers())

    def __len__(self) -> int:
        with self._lock:
            return len(self._workers)

    def __contains__(self, address: str) -> bool:
        with self._lock:
            return address in self._workers
