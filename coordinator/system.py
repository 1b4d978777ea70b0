"""Host probing: platform, network address and memory."""

import logging
import platform
import socket
import subprocess

logger = logging.getLogger(__name__)


def _detect_platform() -> str:
    """Detect current platform: 'darwin', 'linux', 'windows'."""
    return platform.system().lower()


PLATFORM = _detect_platform()


def get_platform() -> str:
    return PLATFORM


def detect_local_ip() -> str | None:
    """IPv4 address other devices on the LAN can reach this host at.

    Connecting a UDP socket sends nothing; it only makes the OS pick the
    outgoing interface.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("10.255.255.255", 1))
        address = sock.getsockname()[0]
    except OSError as e:
        logger.debug(f"Could not determine local IP: {e}")
        return None
    finally:
        sock.close()
    if address.startswith("127."):
        return None
    return address


def available_memory_mb() -> int | None:
    """Memory currently available to new processes, in MB."""
    try:
        if PLATFORM == "linux":
            with open("/proc/meminfo") as f:
                for line in f:
                    if line.startswith("MemAvailable:"):
                        return int(line.split()[1]) // 1024
        elif PLATFORM == "darwin":
            result = subprocess.run(
                ["sysctl", "-n", "hw.memsize"],
                capture_output=True, text=True, timeout=5
            )
            if result.returncode == 0:
                return int(result.stdout.strip()) // (1024 * 1024)
    except (OSError, ValueError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Failed to read available memory: {e}")
    return None
