import threading

import pytest

from coordinator.interface import SavedWorker, WorkerDescriptor
from coordinator.registry import WorkerRegistry, parse_proportion


def worker(host="192.168.1.10", port=50052, **kwargs):
    return WorkerDescriptor(host=host, port=port, **kwargs)


class TestWorkerDescriptor:
    def test_defaults(self):
        w = worker()
        assert w.name == "Manual"
        assert w.ram_mb == 4096
        assert w.connected and w.enabled
        assert w.proportion is None
        assert w.address == "192.168.1.10:50052"

    @pytest.mark.parametrize("proportion", [-0.1, 1.5])
    def test_proportion_out_of_range(self, proportion):
        with pytest.raises(ValueError):
            worker(proportion=proportion)

    def test_boundary_proportions_allowed(self):
        assert worker(proportion=0.0).proportion == 0.0
        assert worker(proportion=1.0).proportion == 1.0

    def test_invalid_address(self):
        with pytest.raises(ValueError):
            worker(host="")
        with pytest.raises(ValueError):
            worker(port=0)

    def test_saved_worker_conversion(self):
        saved = SavedWorker(id=7, ip="10.0.0.5", port=50060, device_name="Pixel", ram_mb=6000,
                            assigned_proportion=0.4)
        w = saved.to_descriptor()
        assert w.address == "10.0.0.5:50060"
        assert w.name == "Pixel"
        assert w.saved_id == 7
        assert w.proportion == 0.4


class TestParseProportion:
    @pytest.mark.parametrize("text,expected", [
        ("0.75", 0.75),
        ("75", 0.75),
        (75, 0.75),
        ("100", 1.0),
        ("1", 1.0),
        ("0", 0.0),
    ])
    def test_valid(self, text, expected):
        assert parse_proportion(text) == pytest.approx(expected)

    @pytest.mark.parametrize("text", [None, "", "auto", "nan", "-5"])
    def test_blank_or_invalid_means_auto(self, text):
        assert parse_proportion(text) is None

    def test_capped_at_one(self):
        assert parse_proportion("250") == 1.0


class TestWorkerRegistry:
    def test_add_is_noop_on_duplicate_address(self):
        registry = WorkerRegistry()
        assert registry.add(worker(ram_mb=1000))
        assert not registry.add(worker(ram_mb=9999, name="Other"))
        assert len(registry) == 1
        assert registry.get("192.168.1.10:50052").ram_mb == 1000

    def test_remove(self):
        registry = WorkerRegistry([worker()])
        assert registry.remove("192.168.1.10:50052")
        assert not registry.remove("192.168.1.10:50052")
        assert len(registry) == 0

    def test_disabled_worker_stays_but_is_not_a_participant(self):
        registry = WorkerRegistry([worker(), worker(host="192.168.1.11")])
        registry.set_enabled("192.168.1.11:50052", False)
        assert len(registry) == 2
        assert [w.host for w in registry.list_workers(enabled_only=True)] == ["192.168.1.10"]
        assert [w.host for w in registry.participants()] == ["192.168.1.10"]

    def test_disconnected_worker_is_not_a_participant(self):
        registry = WorkerRegistry([worker(), worker(host="192.168.1.11")])
        registry.update_connection_state("192.168.1.10:50052", False)
        assert [w.host for w in registry.participants()] == ["192.168.1.11"]
        assert registry.addresses() == ["192.168.1.11:50052"]
        assert registry.addresses(connected_only=False) == ["192.168.1.10:50052", "192.168.1.11:50052"]

    def test_update_fields(self):
        registry = WorkerRegistry([worker()])
        assert registry.update("192.168.1.10:50052", ram_mb=8192, proportion=0.5)
        updated = registry.get("192.168.1.10:50052")
        assert updated.ram_mb == 8192
        assert updated.proportion == 0.5
        assert not registry.update("192.168.1.10:50052", ram_mb=8192)

    def test_update_validates(self):
        registry = WorkerRegistry([worker()])
        with pytest.raises(ValueError):
            registry.update("192.168.1.10:50052", proportion=2.0)
        with pytest.raises(ValueError):
            registry.update("192.168.1.10:50052", host="other")

    def test_update_unknown_address(self):
        assert not WorkerRegistry().update("1.2.3.4:5", ram_mb=1)

    def test_snapshots_are_immutable(self):
        registry = WorkerRegistry([worker()])
        snapshot = registry.list_workers()
        registry.add(worker(host="192.168.1.11"))
        assert len(snapshot) == 1
        assert isinstance(snapshot, tuple)

    def test_listeners_receive_snapshots(self):
        registry = WorkerRegistry()
        seen = []
        unsubscribe = registry.subscribe(seen.append)
        registry.add(worker())
        registry.add(worker())  # duplicate, no notification
        registry.set_enabled("192.168.1.10:50052", False)
        unsubscribe()
        registry.clear()
        assert len(seen) == 2
        assert seen[0][0].enabled
        assert not seen[1][0].enabled

    def test_failing_listener_does_not_block_mutation(self):
        registry = WorkerRegistry()
        registry.subscribe(lambda snapshot: 1 / 0)
        assert registry.add(worker())
        assert "192.168.1.10:50052" in registry

    def test_sync_saved_keeps_enabled_records_only(self):
        registry = WorkerRegistry([worker(host="10.9.9.9")])
        registry.sync_saved([
            SavedWorker(id=1, ip="10.0.0.1", assigned_proportion=0.3),
            SavedWorker(id=2, ip="10.0.0.2", is_enabled=False),
        ])
        assert [w.address for w in registry] == ["10.0.0.1:50052"]
        assert registry.get("10.0.0.1:50052").saved_id == 1
        assert registry.get("10.0.0.1:50052").proportion == 0.3

    def test_upsert_keeps_other_entries(self):
        registry = WorkerRegistry([worker(host="10.0.0.1"), worker(host="10.0.0.2", enabled=False)])
        given = registry.upsert([
            worker(host="10.0.0.1", ram_mb=1024),
            worker(host="10.0.0.3"),
            worker(host="10.0.0.3", ram_mb=1),
        ])
        assert [w.address for w in given] == ["10.0.0.1:50052", "10.0.0.3:50052"]
        assert [w.address for w in registry] == ["10.0.0.1:50052", "10.0.0.2:50052", "10.0.0.3:50052"]
        assert registry.get("10.0.0.1:50052").ram_mb == 1024
        assert registry.get("10.0.0.3:50052").ram_mb == 4096
        assert not registry.get("10.0.0.2:50052").enabled

    def test_concurrent_adds(self):
        registry = WorkerRegistry()

        def add_range(start):
            for i in range(start, start + 50):
                registry.add(worker(host=f"10.0.{i // 250}.{i % 250}"))

        threads = [threading.Thread(target=add_range, args=(n * 50,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(registry) == 200
