import threading

from coordinator.interface import Mode
from coordinator.state import CoordinatorState, StateCell


def test_notifies_only_on_change():
    cell = StateCell("count", 0)
    seen = []
    cell.subscribe(seen.append)
    assert cell.set(1)
    assert not cell.set(1)
    cell.set(2)
    assert seen == [1, 2]


def test_multiple_subscribers_and_unsubscribe():
    cell = StateCell("name", "a")
    first, second = [], []
    unsubscribe = cell.subscribe(first.append)
    cell.subscribe(second.append)
    cell.set("b")
    unsubscribe()
    unsubscribe()
    cell.set("c")
    assert first == ["b"]
    assert second == ["b", "c"]


def test_failing_subscriber_is_isolated():
    cell = StateCell("x", 0)
    seen = []
    cell.subscribe(lambda value: 1 / 0)
    cell.subscribe(seen.append)
    cell.set(5)
    assert seen == [5]
    assert cell.value == 5


def test_update_is_atomic():
    cell = StateCell("counter", 0)

    def bump():
        for _ in range(1000):
            cell.update(lambda n: n + 1)

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert cell.value == 4000


def test_coordinator_state_cells():
    state = CoordinatorState()
    names = set(state.cells())
    assert {
        "mode", "running", "workers", "server_state", "worker_state", "connection_count",
        "rpc_logs", "model_layer_count", "remote_layer_count", "model_size_mb",
        "master_ram_mb", "worker_port", "worker_ram_mb", "local_ip", "last_plan", "last_exit",
    } == names
    snapshot = state.snapshot()
    assert snapshot["mode"] == Mode.NONE
    assert snapshot["worker_port"] == 50052
    assert snapshot["running"] is False


def test_states_are_independent():
    a, b = CoordinatorState(), CoordinatorState()
    a.mode.set(Mode.MASTER)
    assert b.mode.value == Mode.NONE
