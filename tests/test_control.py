import json

import pytest
from conftest import FAKE_CRASH, posix_only, wait_until

from coordinator.control import Coordinator
from coordinator.interface import Mode, ModelInfo, Role, ServerSettings, ServerStatus, WorkerDescriptor
from coordinator.registry import WorkerRegistry

pytestmark = posix_only

MODEL = ModelInfo("/models/llama.gguf", total_layers=32, size_bytes=4096 * 1024 * 1024)


@pytest.fixture
def coordinator(settings, wake_lock):
    coordinator = Coordinator(settings=settings, wake_lock=wake_lock)
    yield coordinator
    coordinator.stop_all()


def read_launch(settings):
    return json.loads((settings.data_dir / "launch.json").read_text())


def running(coordinator, role):
    return lambda: coordinator.state(role).status == ServerStatus.RUNNING


def test_master_mode_distributes_layers(coordinator, settings):
    worker = WorkerDescriptor("10.0.0.1", ram_mb=4096)
    session = coordinator.enter_master_mode(MODEL, workers=[worker], settings=ServerSettings(port=8181))

    assert wait_until(running(coordinator, Role.SERVER))
    assert coordinator.state(Role.SERVER).port == 8181
    assert coordinator.mode == Mode.MASTER
    assert coordinator.cells.running.value
    assert coordinator.is_running(Role.SERVER)
    assert coordinator.session(Role.SERVER) is session

    cells = coordinator.cells
    assert cells.model_layer_count.value == 32
    assert cells.remote_layer_count.value == 16
    assert cells.model_size_mb.value == 4096
    assert cells.last_plan.value == {"model_path": "/models/llama.gguf", "split": {"10.0.0.1:50052": 1.0}}

    argv = read_launch(settings)["argv"]
    assert argv[:2] == ["-m", "/models/llama.gguf"]
    assert argv[-6:] == ["--rpc", "10.0.0.1:50052", "--fit", "off", "-ngl", "16"]


def test_master_workers_argument_keeps_registry(coordinator, settings):
    coordinator.registry.add(WorkerDescriptor("10.0.0.1", ram_mb=1024))
    coordinator.registry.add(WorkerDescriptor("10.0.0.2", enabled=False))
    coordinator.registry.add(WorkerDescriptor("10.0.0.3"))

    coordinator.enter_master_mode(MODEL, workers=[WorkerDescriptor("10.0.0.1", ram_mb=4096)])
    assert wait_until(running(coordinator, Role.SERVER))

    registry = coordinator.registry
    assert [w.address for w in registry] == ["10.0.0.1:50052", "10.0.0.2:50052", "10.0.0.3:50052"]
    assert not registry.get("10.0.0.2:50052").enabled
    assert registry.get("10.0.0.1:50052").ram_mb == 4096

    argv = read_launch(settings)["argv"]
    assert argv[argv.index("--rpc") + 1] == "10.0.0.1:50052"
    assert coordinator.cells.last_plan.value["split"] == {"10.0.0.1:50052": 1.0}


def test_master_workers_argument_skips_disabled(coordinator, settings):
    coordinator.enter_master_mode(MODEL, workers=[WorkerDescriptor("10.0.0.2", enabled=False)])
    assert wait_until(running(coordinator, Role.SERVER))

    assert "--rpc" not in read_launch(settings)["argv"]
    assert "10.0.0.2:50052" in coordinator.registry


def test_stop_master(coordinator):
    coordinator.enter_master_mode(MODEL)
    assert wait_until(running(coordinator, Role.SERVER))

    assert coordinator.stop(Role.SERVER)
    assert coordinator.state(Role.SERVER).status == ServerStatus.STOPPED
    assert coordinator.mode == Mode.NONE
    assert not coordinator.cells.running.value
    assert not coordinator.is_running()
    assert coordinator.cells.last_exit.value.intentional


def test_master_without_workers_runs_locally(coordinator, settings):
    coordinator.enter_master_mode(MODEL)
    assert wait_until(running(coordinator, Role.SERVER))
    assert "--rpc" not in read_launch(settings)["argv"]
    assert coordinator.cells.last_plan.value is None
    assert coordinator.cells.remote_layer_count.value == 0


def test_worker_mode(coordinator, settings):
    coordinator.enter_worker_mode(port=50099, ram_mb=2048, threads=2)

    assert wait_until(running(coordinator, Role.WORKER))
    assert wait_until(lambda: coordinator.cells.connection_count.value == 1)
    assert coordinator.mode == Mode.WORKER
    assert coordinator.cells.worker_port.value == 50099
    assert coordinator.cells.worker_ram_mb.value == 2048
    assert any("Accepted client connection" in line for line in coordinator.cells.rpc_logs.value)

    launch = read_launch(settings)
    assert launch["argv"] == ["-H", "0.0.0.0", "-p", "50099", "-t", "2"]
    assert launch["env"]["GGML_RPC_DEBUG"] == "1"
    assert launch["env"]["HOME"] == str(settings.data_dir)

    coordinator.stop(Role.WORKER)
    assert coordinator.cells.connection_count.value == 0
    assert coordinator.mode == Mode.NONE


def test_both_roles(coordinator):
    coordinator.enter_worker_mode()
    coordinator.enter_master_mode(MODEL)
    assert coordinator.mode == Mode.MASTER

    coordinator.stop(Role.SERVER)
    assert coordinator.mode == Mode.WORKER
    assert coordinator.cells.running.value

    coordinator.stop(Role.WORKER)
    assert coordinator.mode == Mode.NONE
    assert not coordinator.cells.running.value


def test_reentering_replaces_session(coordinator):
    first = coordinator.enter_master_mode(MODEL)
    second = coordinator.enter_master_mode(MODEL)

    assert first is not second
    assert not first.is_running()
    assert first.exit.intentional
    assert second.is_running()
    assert coordinator.mode == Mode.MASTER


def test_missing_binary(settings, wake_lock, tmp_path):
    config = settings.model_copy(update={"rpc_binary": str(tmp_path / "missing" / "rpc-server")})
    coordinator = Coordinator(settings=config, wake_lock=wake_lock)

    session = coordinator.enter_worker_mode()
    assert session.state.status == ServerStatus.ERROR
    assert "Binary not found" in coordinator.state(Role.WORKER).message
    assert coordinator.mode == Mode.NONE
    assert not coordinator.is_running()

    coordinator.stop(Role.WORKER)
    assert coordinator.state(Role.WORKER).status == ServerStatus.STOPPED


def test_unexpected_exit(settings, wake_lock, make_binary):
    config = settings.model_copy(update={"server_binary": make_binary("crashing-server", FAKE_CRASH)})
    coordinator = Coordinator(settings=config, wake_lock=wake_lock)

    coordinator.enter_master_mode(MODEL)
    assert wait_until(lambda: coordinator.cells.last_exit.value is not None)
    record = coordinator.cells.last_exit.value
    assert record.unexpected
    assert record.exit_code == 3
    assert record.role == Role.SERVER
    assert wait_until(lambda: coordinator.mode == Mode.NONE)
    assert coordinator.state(Role.SERVER).status == ServerStatus.STOPPED
    assert not coordinator.cells.running.value
    assert wake_lock.ref_count == 0


def test_stop_when_idle(coordinator):
    assert not coordinator.stop(Role.SERVER)
    assert not coordinator.stop(Role.WORKER)
    coordinator.stop_all()
    assert coordinator.mode == Mode.NONE


def test_unreachable_worker_marked_disconnected(coordinator):
    coordinator.enter_master_mode(MODEL, workers=[WorkerDescriptor("10.0.0.1")])
    session = coordinator.session(Role.SERVER)
    session.handle_line("Failed to connect to 10.0.0.1:50052")
    assert not coordinator.registry.get("10.0.0.1:50052").connected
    assert coordinator.worker_addresses() == []


def test_workers_cell_follows_registry(settings, wake_lock):
    registry = WorkerRegistry([WorkerDescriptor("10.0.0.1")])
    coordinator = Coordinator(registry=registry, settings=settings, wake_lock=wake_lock)
    assert [w.host for w in coordinator.cells.workers.value] == ["10.0.0.1"]

    registry.add(WorkerDescriptor("10.0.0.2"))
    assert [w.host for w in coordinator.workers] == ["10.0.0.1", "10.0.0.2"]
    assert len(coordinator.cells.workers.value) == 2


def test_preview_plan_uses_master_ram(coordinator):
    coordinator.registry.add(WorkerDescriptor("10.0.0.1", ram_mb=1024))
    coordinator.set_master_ram(3072)
    plan = coordinator.preview_plan(MODEL)
    assert plan.remote_layers == 8
    assert not coordinator.is_running()

    with pytest.raises(ValueError):
        coordinator.set_master_ram(-1)


def test_health_probe_without_server(coordinator):
    assert not coordinator.is_server_healthy()
