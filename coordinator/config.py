"""Configuration management with environment variable overrides."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoordinatorSettings(BaseSettings):
    """
    Configuration for the distributed inference coordinator.

    All settings can be overridden via environment variables with LLAMA_ prefix.
    Example: LLAMA_RPC_PORT=50060 to change the default worker port.
    """
    model_config = SettingsConfigDict(
        env_prefix="LLAMA_",
        env_file=".env",
        extra="ignore",
    )

    # Binaries (absolute path, or a name looked up in PATH)
    server_binary: str = Field(default="llama-server", description="llama-server executable")
    rpc_binary: str = Field(default="rpc-server", description="rpc-server executable")

    # llama-server defaults
    host: str = Field(default="0.0.0.0", description="Host llama-server binds to")
    port: int = Field(default=8080, description="Port for llama-server")

    # rpc-server defaults (worker mode)
    rpc_host: str = Field(default="0.0.0.0", description="Bind address for rpc-server")
    rpc_port: int = Field(default=50052, description="Port for rpc-server")

    # HTTP control surface
    api_host: str = Field(default="0.0.0.0", description="Bind address for the control API")
    api_port: int = Field(default=8090, description="Port for the control API")

    # Application-owned directories handed to child processes
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".local/share/llama-mesh",
        description="HOME/PWD/XDG data+config directory for child processes",
    )
    cache_dir: Path = Field(
        default_factory=lambda: Path.home() / ".cache/llama-mesh",
        description="TMPDIR/XDG_CACHE_HOME for child processes (rpc-server tensor cache)",
    )

    # Declared memory (MB) used by the planner
    master_ram_mb: int = Field(default=4096, description="RAM the master contributes")
    worker_ram_mb: int = Field(default=4096, description="RAM this device offers in worker mode")

    # Planning
    default_layer_count: int = Field(
        default=40,
        description="Layer count assumed when model metadata is unavailable",
    )

    # Supervision
    rpc_log_capacity: int = Field(default=1000, description="Lines kept in the rpc-server log")
    stop_timeout: float = Field(
        default=5.0,
        description="Seconds to wait for a killed process to be reaped (seconds)",
    )
    health_timeout: float = Field(default=2.0, description="llama-server /health probe timeout")
    inhibit_sleep: bool = Field(
        default=True,
        description="Keep the host awake while a process is supervised",
    )


# Singleton instance (created on first access)
_settings: CoordinatorSettings | None = None


def get_settings() -> CoordinatorSettings:
    """Get coordinator settings."""
    global _settings
    if _settings is None:
        _settings = CoordinatorSettings()
    return _settings
