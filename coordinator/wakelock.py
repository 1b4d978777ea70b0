"""Keep the host awake while a supervised process runs.

A single reference-counted hold is shared by all sessions: the first
acquire starts a platform sleep inhibitor, the last release stops it.
Failing to inhibit sleep is logged and otherwise ignored.
"""

import logging
import os
import shutil
import subprocess
import threading

from .system import get_platform

logger = logging.getLogger(__name__)


def _inhibitor_command() -> list[str] | None:
    """Command that blocks system sleep for as long as it runs."""
    plat = get_platform()
    if plat == "linux" and shutil.which("systemd-inhibit"):
        return [
            "systemd-inhibit",
            "--what=sleep:idle",
            "--who=llama-mesh",
            "--why=Serving distributed inference",
            "--mode=block",
            "sleep", "infinity",
        ]
    if plat == "darwin" and shutil.which("caffeinate"):
        # -w: exit on its own if we die without releasing
        return ["caffeinate", "-i", "-w", str(os.getpid())]
    return None


class WakeLock:
    """Reference-counted sleep inhibitor."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._lock = threading.Lock()
        self._ref_count = 0
        self._process: subprocess.Popen | None = None

    @property
    def ref_count(self) -> int:
        with self._lock:
            return self._ref_count

    @property
    def held(self) -> bool:
        with self._lock:
            return self._ref_count > 0

    def acquire(self, tag: str = "unknown"):
        with self._lock:
            self._ref_count += 1
            if self._ref_count > 1:
                logger.debug(f"WakeLock: ref increased by {tag} (refCount={self._ref_count})")
                return
            logger.info(f"WakeLock: acquired by {tag}")
            if self.enabled:
                self._start_inhibitor()

    def release(self, tag: str = "unknown"):
        with self._lock:
            if self._ref_count == 0:
                return
            self._ref_count -= 1
            logger.debug(f"WakeLock: released by {tag} (refCount={self._ref_count})")
            if self._ref_count == 0:
                self._stop_inhibitor()
                logger.info("WakeLock: no more holders, released")

    def force_release(self):
        """Drop every reference, e.g. on application shutdown."""
        with self._lock:
            self._ref_count = 0
            self._stop_inhibitor()

    def _start_inhibitor(self):
        cmd = _inhibitor_command()
        if cmd is None:
            logger.debug("WakeLock: no sleep inhibitor available on this platform")
            return
        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            logger.debug(f"WakeLock: inhibitor started (PID {self._process.pid})")
        except OSError as e:
            logger.warning(f"WakeLock: failed to start sleep inhibitor: {e}")
            self._process = None

    def _stop_inhibitor(self):
        proc = self._process
        self._process = None
        if proc is None or proc.poll() is not None:
            return
        try:
            proc.terminate()
            proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            logger.warning("WakeLock: inhibitor did not exit, killing")
            proc.kill()
        except OSError as e:
            logger.warning(f"WakeLock: failed to stop sleep inhibitor: {e}")


# Global wake lock instance
_wake_lock: WakeLock | None = None


def get_wake_lock() -> WakeLock:
    """Get the process-wide wake lock."""
    global _wake_lock
    if _wake_lock is None:
        from .config import get_settings
        _wake_lock = WakeLock(enabled=get_settings().inhibit_sleep)
    return _wake_lock
