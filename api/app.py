"""FastAPI control surface for the coordinator.

Exposes worker management, plan previews, mode changes and a Server-Sent
Events stream of every observable cell. Blocking coordinator calls go
through coordinator/bridge.py.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import fields, is_dataclass
from enum import Enum
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sse_starlette.sse import EventSourceResponse

from coordinator import (
    Coordinator,
    ModelInfo,
    Role,
    ServerSettings,
    WorkerDescriptor,
    capacity_check,
    get_coordinator,
    load_breakdown,
    parse_proportion,
)
from coordinator.bridge import (
    async_enter_master_mode,
    async_enter_worker_mode,
    async_is_server_healthy,
    async_stop,
    shutdown as bridge_shutdown,
)
from coordinator.interface import DEFAULT_RPC_PORT, DEFAULT_WORKER_RAM_MB, ServerStatus
from coordinator.system import available_memory_mb, get_platform

logger = logging.getLogger("api.app")


def to_jsonable(value: Any) -> Any:
    """Convert cell values (dataclasses, enums, ranges, tuples) to JSON types."""
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, range):
        return [value.start, value.stop]
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    return value


def cell_event(name: str, value: Any) -> dict:
    """SSE message for one cell change.

    The rolling worker log is sent one line at a time instead of resending
    the whole buffer on every change.
    """
    if name == "rpc_logs":
        return {"event": "log", "data": value[-1] if value else ""}
    return {"event": "change", "data": json.dumps({"cell": name, "value": to_jsonable(value)})}


# ─────────────────────────────────────────────────────────────────
# Request/Response Models
# ─────────────────────────────────────────────────────────────────

def _normalize_proportion(value):
    if value is None or value == "":
        return None
    parsed = parse_proportion(value)
    if parsed is None:
        raise ValueError(f"Invalid proportion: {value!r}")
    return parsed


class ActionResponse(BaseModel):
    success: bool
    message: str


class WorkerRequest(BaseModel):
    host: str = Field(min_length=1)
    port: int = Field(default=DEFAULT_RPC_PORT, ge=1, le=65535)
    name: str = "Manual"
    ram_mb: int = Field(default=DEFAULT_WORKER_RAM_MB, ge=0)
    enabled: bool = True
    # Fraction (0.75) or percentage (75); omitted or blank means automatic
    proportion: float | None = None

    @field_validator("proportion", mode="before")
    @classmethod
    def normalize_proportion(cls, value):
        return _normalize_proportion(value)

    def to_descriptor(self) -> WorkerDescriptor:
        return WorkerDescriptor(
            host=self.host,
            port=self.port,
            name=self.name,
            ram_mb=self.ram_mb,
            enabled=self.enabled,
            proportion=self.proportion,
        )


class WorkerUpdate(BaseModel):
    name: str | None = None
    ram_mb: int | None = Field(default=None, ge=0)
    proportion: float | None = None
    auto_proportion: bool = False  # Reset to RAM-based split

    @field_validator("proportion", mode="before")
    @classmethod
    def normalize_proportion(cls, value):
        return _normalize_proportion(value)


class EnabledRequest(BaseModel):
    enabled: bool


class ModelRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_path: str = Field(min_length=1)
    total_layers: int | None = Field(default=None, ge=0)
    size_bytes: int = Field(default=0, ge=0)

    def to_model(self) -> ModelInfo:
        return ModelInfo(path=self.model_path, total_layers=self.total_layers, size_bytes=self.size_bytes)


class MasterRequest(ModelRequest):
    workers: list[WorkerRequest] | None = None
    master_ram_mb: int | None = Field(default=None, ge=0)
    threads: int = Field(default=4, ge=1)
    context_size: int = Field(default=8192, ge=1)
    temperature: float = 0.8
    port: int | None = Field(default=None, ge=1, le=65535)
    embedding: bool = False
    mmproj_path: str | None = None
    kv_cache_enabled: bool = False
    kv_cache_type_k: str = "f16"
    kv_cache_type_v: str = "f16"
    kv_cache_reuse: int = Field(default=0, ge=0)

    def to_settings(self, host: str, default_port: int) -> ServerSettings:
        return ServerSettings(
            threads=self.threads,
            context_size=self.context_size,
            temperature=self.temperature,
            host=host,
            port=self.port or default_port,
            embedding=self.embedding,
            mmproj_path=self.mmproj_path,
            kv_cache_enabled=self.kv_cache_enabled,
            kv_cache_type_k=self.kv_cache_type_k,
            kv_cache_type_v=self.kv_cache_type_v,
            kv_cache_reuse=self.kv_cache_reuse,
        )


class WorkerModeRequest(BaseModel):
    port: int | None = Field(default=None, ge=1, le=65535)
    ram_mb: int | None = Field(default=None, ge=0)
    threads: int = Field(default=4, ge=1)
    cache_enabled: bool = False


# ─────────────────────────────────────────────────────────────────
# Endpoints
# ─────────────────────────────────────────────────────────────────

router = APIRouter()


def get_app_coordinator(request: Request) -> Coordinator:
    return request.app.state.coordinator


def _address(host: str, port: int) -> str:
    return f"{host}:{port}"


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/api/status")
async def api_status(coordinator: Coordinator = Depends(get_app_coordinator)):
    """Snapshot of every observable cell."""
    logger.debug("API: GET /api/status")
    status = to_jsonable(coordinator.cells.snapshot())
    # The log buffer has its own endpoint
    status.pop("rpc_logs", None)
    status["server_healthy"] = await async_is_server_healthy(coordinator)
    return status


@router.get("/api/system")
def api_system(coordinator: Coordinator = Depends(get_app_coordinator)):
    return {
        "platform": get_platform(),
        "local_ip": coordinator.refresh_local_ip(),
        "available_memory_mb": available_memory_mb(),
    }


@router.get("/api/workers")
def api_list_workers(coordinator: Coordinator = Depends(get_app_coordinator)):
    """Workers plus each device's share of the load."""
    master_ram = coordinator.cells.master_ram_mb.value
    enabled = coordinator.registry.list_workers(enabled_only=True)
    return {
        "workers": to_jsonable(coordinator.workers),
        "load": to_jsonable(load_breakdown(master_ram, enabled)),
    }


@router.post("/api/workers")
def api_add_worker(
    req: WorkerRequest,
    coordinator: Coordinator = Depends(get_app_coordinator),
) -> ActionResponse:
    logger.info(f"API: POST /api/workers {req.host}:{req.port}")
    try:
        worker = req.to_descriptor()
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if not coordinator.registry.add(worker):
        return ActionResponse(success=False, message=f"Worker {worker.address} already exists")
    return ActionResponse(success=True, message=f"Added worker {worker.address}")


@router.delete("/api/workers")
def api_clear_workers(coordinator: Coordinator = Depends(get_app_coordinator)) -> ActionResponse:
    logger.info("API: DELETE /api/workers")
    coordinator.registry.clear()
    return ActionResponse(success=True, message="Removed all workers")


@router.delete("/api/workers/{host}/{port}")
def api_remove_worker(
    host: str,
    port: int,
    coordinator: Coordinator = Depends(get_app_coordinator),
) -> ActionResponse:
    address = _address(host, port)
    logger.info(f"API: DELETE /api/workers/{address}")
    if not coordinator.registry.remove(address):
        raise HTTPException(status_code=404, detail=f"Unknown worker: {address}")
    return ActionResponse(success=True, message=f"Removed worker {address}")


@router.patch("/api/workers/{host}/{port}")
def api_update_worker(
    host: str,
    port: int,
    req: WorkerUpdate,
    coordinator: Coordinator = Depends(get_app_coordinator),
) -> ActionResponse:
    address = _address(host, port)
    if address not in coordinator.registry:
        raise HTTPException(status_code=404, detail=f"Unknown worker: {address}")

    changes = req.model_dump(exclude_none=True, exclude={"auto_proportion"})
    if req.auto_proportion:
        changes["proportion"] = None
    try:
        changed = coordinator.registry.update(address, **changes)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return ActionResponse(success=True, message=f"Updated worker {address}" if changed else "No changes")


@router.post("/api/workers/{host}/{port}/enabled")
def api_set_worker_enabled(
    host: str,
    port: int,
    req: EnabledRequest,
    coordinator: Coordinator = Depends(get_app_coordinator),
) -> ActionResponse:
    address = _address(host, port)
    if address not in coordinator.registry:
        raise HTTPException(status_code=404, detail=f"Unknown worker: {address}")
    coordinator.registry.set_enabled(address, req.enabled)
    return ActionResponse(
        success=True,
        message=f"Worker {address} {'enabled' if req.enabled else 'disabled'}",
    )


@router.post("/api/plan")
def api_plan(req: ModelRequest, coordinator: Coordinator = Depends(get_app_coordinator)):
    """Preview the layer distribution for a model without launching."""
    model = req.to_model()
    plan = coordinator.preview_plan(model)
    master_ram = coordinator.cells.master_ram_mb.value
    enabled = coordinator.registry.list_workers(enabled_only=True)
    capacity = capacity_check(master_ram, enabled, model.size_mb)
    return {
        "plan": None if plan is None else {
            **to_jsonable(plan),
            "master_layers": plan.master_layers,
            "tensor_split": plan.tensor_split,
        },
        "load": to_jsonable(load_breakdown(master_ram, enabled)),
        "capacity": {
            "total_ram_mb": capacity.total_ram_mb,
            "model_size_mb": capacity.model_size_mb,
            "sufficient": capacity.sufficient,
        },
    }


@router.post("/api/master")
async def api_enter_master(
    req: MasterRequest,
    coordinator: Coordinator = Depends(get_app_coordinator),
) -> ActionResponse:
    logger.info(f"API: POST /api/master model={req.model_path}")
    try:
        workers = [w.to_descriptor() for w in req.workers] if req.workers is not None else None
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if req.master_ram_mb is not None:
        coordinator.set_master_ram(req.master_ram_mb)

    settings = req.to_settings(coordinator.settings.host, coordinator.settings.port)
    session = await async_enter_master_mode(coordinator, req.to_model(), workers, settings)
    if session.state.status == ServerStatus.ERROR:
        return ActionResponse(success=False, message=session.state.message)
    return ActionResponse(success=True, message=f"Starting llama-server on port {settings.port}...")


@router.post("/api/worker")
async def api_enter_worker(
    req: WorkerModeRequest,
    coordinator: Coordinator = Depends(get_app_coordinator),
) -> ActionResponse:
    logger.info(f"API: POST /api/worker port={req.port}")
    session = await async_enter_worker_mode(
        coordinator,
        port=req.port,
        ram_mb=req.ram_mb,
        threads=req.threads,
        cache_enabled=req.cache_enabled,
    )
    if session.state.status == ServerStatus.ERROR:
        return ActionResponse(success=False, message=session.state.message)
    return ActionResponse(success=True, message=f"Starting rpc-server on port {session.spec.port}...")


@router.post("/api/stop/{role}")
async def api_stop(role: Role, coordinator: Coordinator = Depends(get_app_coordinator)) -> ActionResponse:
    logger.info(f"API: POST /api/stop/{role.value}")
    stopped = await async_stop(coordinator, role)
    return ActionResponse(
        success=True,
        message=f"Stopped {role.value}" if stopped else f"{role.value} was not running",
    )


@router.get("/api/worker/logs")
def api_worker_logs(coordinator: Coordinator = Depends(get_app_coordinator)):
    return {"lines": list(coordinator.cells.rpc_logs.value)}


@router.get("/api/events")
async def api_events(request: Request, coordinator: Coordinator = Depends(get_app_coordinator)):
    """Server-Sent Events stream of cell changes.

    Sends one "state" event with the full snapshot, then a "change" event
    per cell update and a "log" event per rpc-server output line.
    """
    logger.debug("API: SSE client connected to /api/events")
    shutdown_event: asyncio.Event = request.app.state.shutdown_event
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def forward(name: str):
        # Cells notify from reader threads
        def callback(value):
            loop.call_soon_threadsafe(queue.put_nowait, (name, value))
        return callback

    unsubscribers = [cell.subscribe(forward(name)) for name, cell in coordinator.cells.cells().items()]

    async def event_generator():
        try:
            snapshot = to_jsonable(coordinator.cells.snapshot())
            snapshot.pop("rpc_logs", None)
            yield {"event": "state", "data": json.dumps(snapshot)}

            while not shutdown_event.is_set():
                if await request.is_disconnected():
                    logger.debug("SSE: Client disconnected")
                    break
                try:
                    name, value = await asyncio.wait_for(queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                yield cell_event(name, value)
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
            logger.debug("SSE: Generator exiting")

    return EventSourceResponse(event_generator())


# ─────────────────────────────────────────────────────────────────
# Application
# ─────────────────────────────────────────────────────────────────

def create_app(coordinator: Coordinator | None = None) -> FastAPI:
    """Build the application around ``coordinator`` (the global one by default)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("API starting up")
        try:
            yield  # Application runs here
        except asyncio.CancelledError:
            logger.debug("Lifespan cancelled (shutdown signal)")
        finally:
            # Signal all SSE generators to stop
            app.state.shutdown_event.set()
            await asyncio.sleep(0.1)
            logger.info("API shutting down")
            bridge_shutdown(app.state.coordinator)
            logger.info("API shutdown complete")

    app = FastAPI(title="llama-mesh", lifespan=lifespan)
    app.state.coordinator = coordinator or get_coordinator()
    app.state.shutdown_event = asyncio.Event()
    app.include_router(router)
    return app
