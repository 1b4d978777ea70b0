"""Shared types for the distributed inference coordinator."""

from dataclasses import dataclass, field
from enum import Enum


DEFAULT_RPC_PORT = 50052
DEFAULT_WORKER_RAM_MB = 4096


class Mode(str, Enum):
    """Distributed inference mode of this device."""
    NONE = "none"
    MASTER = "master"  # Hosting the model and coordinating workers
    WORKER = "worker"  # Providing compute to a master


class Role(str, Enum):
    """Kind of supervised process."""
    SERVER = "server"  # llama-server (local inference)
    WORKER = "worker"  # rpc-server (remote compute)


class ServerStatus(str, Enum):
    """Process lifecycle status."""
    STOPPED = "stopped"
    STARTING = "starting"
    LOADING = "loading"
    RUNNING = "running"
    ERROR = "error"


@dataclass(frozen=True)
class ServerState:
    """Lifecycle state of a supervised process.

    Use the constructors below rather than building instances by hand:
    ``progress`` only means something while LOADING (``None`` is
    indeterminate), ``port`` only while RUNNING and ``message`` carries the
    loading status text or the error text.
    """
    status: ServerStatus = ServerStatus.STOPPED
    progress: float | None = None
    message: str = ""
    port: int | None = None

    @classmethod
    def stopped(cls) -> "ServerState":
        return cls(ServerStatus.STOPPED)

    @classmethod
    def starting(cls) -> "ServerState":
        return cls(ServerStatus.STARTING)

    @classmethod
    def loading(cls, message: str, progress: float | None = None) -> "ServerState":
        return cls(ServerStatus.LOADING, progress=progress, message=message)

    @classmethod
    def running(cls, port: int) -> "ServerState":
        return cls(ServerStatus.RUNNING, port=port)

    @classmethod
    def error(cls, message: str) -> "ServerState":
        return cls(ServerStatus.ERROR, message=message)


@dataclass(frozen=True)
class WorkerDescriptor:
    """A remote rpc-server contributing memory and compute.

    ``host:port`` is the identity key. ``proportion`` is a user override of
    the share of layers sent to this worker (0.0-1.0); ``None`` means the
    split is derived from ``ram_mb``.
    """
    host: str
    port: int = DEFAULT_RPC_PORT
    name: str = "Manual"
    ram_mb: int = DEFAULT_WORKER_RAM_MB
    assigned_layers: range | None = None
    connected: bool = True
    enabled: bool = True
    saved_id: int | None = None
    proportion: float | None = None

    def __post_init__(self):
        if not self.host:
            raise ValueError("Worker host must not be empty")
        if not 0 < self.port < 65536:
            raise ValueError(f"Invalid worker port: {self.port}")
        if self.ram_mb < 0:
            raise ValueError(f"Worker RAM must not be negative: {self.ram_mb}")
        if self.proportion is not None and not 0.0 <= self.proportion <= 1.0:
            raise ValueError(f"Worker proportion must be within [0, 1]: {self.proportion}")

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class SavedWorker:
    """A worker record as stored by the persistence layer."""
    id: int
    ip: str
    port: int = DEFAULT_RPC_PORT
    device_name: str = "Worker"
    ram_mb: int = DEFAULT_WORKER_RAM_MB
    is_enabled: bool = True
    assigned_proportion: float | None = None

    def to_descriptor(self) -> WorkerDescriptor:
        return WorkerDescriptor(
            host=self.ip,
            port=self.port,
            name=self.device_name,
            ram_mb=self.ram_mb,
            enabled=self.is_enabled,
            saved_id=self.id,
            proportion=self.assigned_proportion,
        )


@dataclass(frozen=True)
class ModelInfo:
    """Model file plus the metadata the planner needs.

    ``total_layers`` comes from the GGUF block count (plus the output layer)
    and may be unknown.
    """
    path: str
    total_layers: int | None = None
    size_bytes: int = 0

    @property
    def size_mb(self) -> int:
        return self.size_bytes // (1024 * 1024)


@dataclass
class ServerSettings:
    """User settings for a llama-server launch."""
    threads: int = 4
    context_size: int = 8192
    temperature: float = 0.8
    host: str = "0.0.0.0"
    port: int = 8080
    embedding: bool = False
    mmproj_path: str | None = None  # Vision model projector
    # KV cache quantization
    kv_cache_enabled: bool = False
    kv_cache_type_k: str = "f16"  # f16, q8_0, q4_0
    kv_cache_type_v: str = "f16"
    kv_cache_reuse: int = 0  # 0 = disabled, >0 = tokens to reuse


@dataclass(frozen=True)
class ExitRecord:
    """How a session's process ended."""
    role: Role
    exit_code: int | None
    intentional: bool

    @property
    def unexpected(self) -> bool:
        return not self.intentional


@dataclass(frozen=True)
class LaunchSpec:
    """Fully resolved command line and environment for one process."""
    role: Role
    cmd: list[str]
    port: int
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    links: tuple[str, ...] = ()  # Temporary library links to remove on exit
