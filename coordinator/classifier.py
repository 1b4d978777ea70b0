"""Classification of llama.cpp process output.

Neither llama-server nor rpc-server offers structured status, so lifecycle
is inferred from their log lines. The matching tables live here, apart from
the state machine in process.py, so they can be swapped or tested alone.
A classifier is any ``Callable[[str], LogEvent | None]``.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable


class EventKind(str, Enum):
    LOADING = "loading"
    LOADING_TENSORS = "loading_tensors"
    WARMING_UP = "warming_up"
    READY = "ready"
    CLIENT_CONNECTED = "client_connected"
    CLIENT_DISCONNECTED = "client_disconnected"
    WORKER_UNREACHABLE = "worker_unreachable"


@dataclass(frozen=True)
class LogEvent:
    kind: EventKind
    message: str = ""
    address: str | None = None  # WORKER_UNREACHABLE only


Classifier = Callable[[str], LogEvent | None]


# Checked in order; the first match wins
SERVER_READY_PATTERNS = ("listening on", "HTTP server", "server listening")
SERVER_LOADING_PATTERNS = (
    ("warming up", EventKind.WARMING_UP, "Warming up model..."),
    ("llm_load_tensors", EventKind.LOADING_TENSORS, "Loading tensors..."),
    ("loading model", EventKind.LOADING, "Loading model..."),
)
RPC_CONNECT_FAILED = re.compile(r"[Ff]ailed to connect to (\S+?:\d+)")

WORKER_CONNECTED_PATTERNS = ("accepted client connection", "accepted connection")
WORKER_CLOSED_PATTERNS = ("client connection closed", "connection closed")
WORKER_READY_PATTERNS = ("starting rpc server", "listening on")


def classify_server_line(line: str) -> LogEvent | None:
    """Classify one line of llama-server output (case-sensitive)."""
    if any(p in line for p in SERVER_READY_PATTERNS):
        return LogEvent(EventKind.READY)

    match = RPC_CONNECT_FAILED.search(line)
    if match:
        return LogEvent(EventKind.WORKER_UNREACHABLE, line.strip(), address=match.group(1))

    for pattern, kind, message in SERVER_LOADING_PATTERNS:
        if pattern in line:
            return LogEvent(kind, message)
    return None


def classify_worker_line(line: str) -> LogEvent | None:
    """Classify one line of rpc-server output (case-insensitive)."""
    lowered = line.lower()
    if any(p in lowered for p in WORKER_CONNECTED_PATTERNS):
        return LogEvent(EventKind.CLIENT_CONNECTED)
    if any(p in lowered for p in WORKER_CLOSED_PATTERNS):
        return LogEvent(EventKind.CLIENT_DISCONNECTED)
    if any(p in lowered for p in WORKER_READY_PATTERNS):
        return LogEvent(EventKind.READY)
    return None
