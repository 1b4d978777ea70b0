"""Command lines and environments for llama-server and rpc-server.

The flag names and the two-decimal tensor split format are what the
llama.cpp binaries expect; keep them byte-for-byte.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Sequence

from .config import CoordinatorSettings
from .interface import LaunchSpec, ModelInfo, Role, ServerSettings
from .planner import DistributionPlan

logger = logging.getLogger(__name__)

# Versioned sonames the binaries link against -> unversioned files shipped in
# a self-contained llama.cpp build
VERSIONED_LIBRARIES = (
    ("libmtmd.so", "libmtmd.so.0"),
    ("libllama.so", "libllama.so.0"),
    ("libggml.so", "libggml.so.0"),
    ("libggml-cpu.so", "libggml-cpu.so.0"),
    ("libggml-base.so", "libggml-base.so.0"),
)


class LaunchError(Exception):
    """The process cannot be launched (missing binary, unusable directories)."""


def resolve_binary(binary: str) -> str | None:
    """Absolute path of an executable given as a path or a PATH name."""
    if os.sep in binary:
        path = Path(binary).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return str(path.resolve())
        return None
    return shutil.which(binary)


# ─────────────────────────────────────────────────────────────────
# Arguments
# ─────────────────────────────────────────────────────────────────


def build_server_args(
    binary: str,
    model_path: str,
    settings: ServerSettings,
    plan: DistributionPlan | None = None,
    rpc_workers: Sequence[str] | None = None,
) -> list[str]:
    """Argument list for llama-server.

    ``rpc_workers`` defaults to the plan's worker addresses. Without workers
    the result is a plain single-node launch.
    """
    args = [
        binary,
        "-m", model_path,
        "-c", str(settings.context_size),
        "-t", str(settings.threads),
        "--port", str(settings.port),
        "--host", settings.host,
    ]

    if settings.mmproj_path:
        args += ["--mmproj", settings.mmproj_path]

    if settings.embedding:
        args.append("--embedding")
    else:
        args += ["--temp", str(settings.temperature)]

    if settings.kv_cache_enabled:
        args += [
            "--cache-type-k", settings.kv_cache_type_k,
            "--cache-type-v", settings.kv_cache_type_v,
        ]
        if settings.kv_cache_reuse > 0:
            args += ["--cache-reuse", str(settings.kv_cache_reuse)]

    workers = list(rpc_workers) if rpc_workers is not None else (
        list(plan.worker_addresses) if plan else []
    )
    if workers:
        # Automatic memory fitting crashes with RPC buffers, so it is always off
        args += ["--rpc", ",".join(workers), "--fit", "off"]
        if plan and plan.remote_layers > 0:
            args += ["-ngl", str(plan.remote_layers)]
        if plan and plan.tensor_split and len(workers) > 1:
            args += ["-ts", plan.tensor_split]

    return args


def build_worker_args(
    binary: str,
    port: int,
    threads: int,
    host: str = "0.0.0.0",
    cache_enabled: bool = False,
) -> list[str]:
    """Argument list for rpc-server."""
    args = [
        binary,
        "-H", host,
        "-p", str(port),
        "-t", str(threads),
    ]
    if cache_enabled:
        args.append("-c")
    return args


# ─────────────────────────────────────────────────────────────────
# Environment
# ─────────────────────────────────────────────────────────────────


def link_versioned_libraries(source_dir: Path, target_dir: Path) -> list[str]:
    """Expose ``libfoo.so`` as ``libfoo.so.0`` in ``target_dir``.

    Falls back to copying when a symlink cannot be created. Returns the paths
    created so they can be removed when the process exits.
    """
    created: list[str] = []
    for source_name, link_name in VERSIONED_LIBRARIES:
        source = source_dir / source_name
        if not source.exists():
            continue
        link = target_dir / link_name
        try:
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(source)
            logger.debug(f"Created symlink {link.name} -> {source.name}")
        except OSError as e:
            logger.debug(f"Symlink failed ({e}), copying {source_name} to {link_name}")
            try:
                shutil.copy2(source, link)
            except OSError as copy_error:
                logger.warning(f"Could not provide {link_name}: {copy_error}")
                continue
        created.append(str(link))
    return created


def remove_links(paths: Sequence[str]):
    """Remove temporary library links. Errors are logged, never raised."""
    for path in paths:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove {path}: {e}")


def child_environment(
    role: Role,
    binary_path: str,
    data_dir: Path,
    cache_dir: Path,
    lib_dir: Path | None = None,
) -> dict[str, str]:
    """Environment overrides pointing the child at application-owned paths."""
    binary_dir = str(Path(binary_path).parent)
    library_path = [str(lib_dir)] if lib_dir else []
    library_path.append(binary_dir)
    inherited = os.environ.get("LD_LIBRARY_PATH")
    if inherited:
        library_path.append(inherited)

    env = {
        "LD_LIBRARY_PATH": os.pathsep.join(library_path),
        "HOME": str(data_dir),
        "PWD": str(data_dir),
        "TMPDIR": str(cache_dir),
        "XDG_CACHE_HOME": str(cache_dir),  # rpc-server tensor cache (-c)
        "XDG_DATA_HOME": str(data_dir),
        "XDG_CONFIG_HOME": str(data_dir),
    }
    if role == Role.WORKER:
        env["GGML_RPC_DEBUG"] = "1"  # Connection events come from debug output
    return env


def _prepare(role: Role, binary: str, config: CoordinatorSettings) -> tuple[str, dict[str, str], tuple[str, ...]]:
    path = resolve_binary(binary)
    if path is None:
        raise LaunchError(f"Binary not found: {binary}")

    try:
        lib_dir = config.data_dir / "lib"
        lib_dir.mkdir(parents=True, exist_ok=True)
        config.cache_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise LaunchError(f"Cannot prepare working directories: {e}") from e

    links = link_versioned_libraries(Path(path).parent, lib_dir)
    env = child_environment(role, path, config.data_dir, config.cache_dir, lib_dir)
    return path, env, tuple(links)


def server_launch_spec(
    config: CoordinatorSettings,
    model: ModelInfo,
    settings: ServerSettings,
    plan: DistributionPlan | None = None,
) -> LaunchSpec:
    """Resolve everything needed to start llama-server."""
    path, env, links = _prepare(Role.SERVER, config.server_binary, config)
    cmd = build_server_args(path, model.path, settings, plan)
    return LaunchSpec(
        role=Role.SERVER,
        cmd=cmd,
        port=settings.port,
        env=env,
        cwd=str(config.data_dir),
        links=links,
    )


def worker_launch_spec(
    config: CoordinatorSettings,
    port: int,
    threads: int,
    cache_enabled: bool = False,
) -> LaunchSpec:
    """Resolve everything needed to start rpc-server."""
    path, env, links = _prepare(Role.WORKER, config.rpc_binary, config)
    cmd = build_worker_args(path, port, threads, host=config.rpc_host, cache_enabled=cache_enabled)
    return LaunchSpec(
        role=Role.WORKER,
        cmd=cmd,
        port=port,
        env=env,
        cwd=str(config.data_dir),
        links=links,
    )
