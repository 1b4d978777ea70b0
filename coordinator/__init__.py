"""Distributed llama.cpp coordinator - master/worker layer offloading over RPC."""

from .interface import (
    Mode,
    Role,
    ServerStatus,
    ServerState,
    WorkerDescriptor,
    SavedWorker,
    ModelInfo,
    ServerSettings,
    ExitRecord,
    LaunchSpec,
)
from .config import CoordinatorSettings, get_settings
from .registry import WorkerRegistry, parse_proportion
from .planner import DistributionPlan, plan_distribution, load_breakdown, capacity_check
from .classifier import EventKind, LogEvent, classify_server_line, classify_worker_line
from .launch import LaunchError, build_server_args, build_worker_args
from .process import ProcessSession, ProcessSupervisor
from .state import CoordinatorState, StateCell
from .control import Coordinator, get_coordinator

__all__ = [
    # Interface
    "Mode",
    "Role",
    "ServerStatus",
    "ServerState",
    "WorkerDescriptor",
    "SavedWorker",
    "ModelInfo",
    "ServerSettings",
    "ExitRecord",
    "LaunchSpec",
    # Config
    "CoordinatorSettings",
    "get_settings",
    # Registry
    "WorkerRegistry",
    "parse_proportion",
    # Planning
    "DistributionPlan",
    "plan_distribution",
    "load_breakdown",
    "capacity_check",
    # Supervision
    "EventKind",
    "LogEvent",
    "classify_server_line",
    "classify_worker_line",
    "LaunchError",
    "build_server_args",
    "build_worker_args",
    "ProcessSession",
    "ProcessSupervisor",
    # State
    "CoordinatorState",
    "StateCell",
    # Control
    "Coordinator",
    "get_coordinator",
]
