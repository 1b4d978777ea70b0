"""Async bridge for consuming the sync coordinator from async contexts.

Starting and stopping processes blocks (stop waits for the child to be
reaped), so the async HTTP surface runs those calls in a small thread pool
instead of on the event loop.
"""

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, ParamSpec, TypeVar

from .control import Coordinator
from .interface import ModelInfo, Role, ServerSettings, WorkerDescriptor
from .process import ProcessSession

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Shared executor: one slot per role plus room for health checks.
# Created on first use and again after shutdown(), so a new app can start.
_executor: ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="bridge-")
        return _executor


async def run_sync(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a synchronous function in the thread pool.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        The return value of func
    """
    logger.debug(f"Bridge: run_sync({func.__name__}) called")
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(
        _get_executor(),
        lambda: func(*args, **kwargs)
    )
    logger.debug(f"Bridge: run_sync({func.__name__}) completed")
    return result


# ─────────────────────────────────────────────────────────────────
# Mode changes
# ─────────────────────────────────────────────────────────────────

async def async_enter_master_mode(
    coordinator: Coordinator,
    model: ModelInfo,
    workers: Iterable[WorkerDescriptor] | None = None,
    settings: ServerSettings | None = None,
) -> ProcessSession:
    """Start llama-server (async wrapper)."""
    logger.info(f"Bridge: Entering master mode with {model.path}")
    return await run_sync(coordinator.enter_master_mode, model, workers=workers, settings=settings)


async def async_enter_worker_mode(
    coordinator: Coordinator,
    port: int | None = None,
    ram_mb: int | None = None,
    threads: int = 4,
    cache_enabled: bool = False,
) -> ProcessSession:
    """Start rpc-server (async wrapper)."""
    logger.info(f"Bridge: Entering worker mode on port {port or 'default'}")
    return await run_sync(
        coordinator.enter_worker_mode,
        port=port,
        ram_mb=ram_mb,
        threads=threads,
        cache_enabled=cache_enabled,
    )


async def async_stop(coordinator: Coordinator, role: Role) -> bool:
    """Stop one role (async wrapper).

    Returns:
        True if a session was stopped
    """
    logger.info(f"Bridge: Stopping {role.value}")
    return await run_sync(coordinator.stop, role)


async def async_is_server_healthy(coordinator: Coordinator) -> bool:
    logger.debug("Bridge: Checking llama-server health")
    return await run_sync(coordinator.is_server_healthy)


def shutdown(coordinator: Coordinator | None = None):
    """Stop all processes, drop the wake lock and shut down the bridge executor.

    Call this when the application is shutting down. A later run_sync()
    starts a fresh executor.
    """
    global _executor
    logger.info("Bridge: Shutting down")

    if coordinator is not None:
        try:
            logger.debug("Bridge: Stopping all roles")
            coordinator.stop_all()
        except Exception as e:
            logger.warning(f"Bridge: Error stopping processes: {e}")
        coordinator.wake_lock.force_release()

    with _executor_lock:
        executor, _executor = _executor, None
    if executor is not None:
        logger.debug("Bridge: Shutting down executor")
        executor.shutdown(wait=False, cancel_futures=True)

    logger.info("Bridge: Shutdown complete")
