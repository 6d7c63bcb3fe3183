"""Tests for the service/node registry."""
import threading
import pytest
from core.registry import MdnsRegistry, NodeRecord, ServiceRecord, DEFAULT_TTL


def _service(id="svc1.local", service_type="_http._tcp.local", port=8080, ttl=None, origin="host1.local"):
    return ServiceRecord(id=id, service_type=service_type, port=port, ttl=ttl, origin=origin)


def test_service_defaults():
    svc = _service()
    assert svc.priority == 0
    assert svc.weight == 0
    assert svc.ttl is None
    assert svc.effective_ttl == DEFAULT_TTL == 120


def test_service_explicit_ttl():
    assert _service(ttl=30).effective_ttl == 30
    assert _service(ttl=0).effective_ttl == 0


def test_service_validation_bad_names():
    with pytest.raises(ValueError):
        _service(id="")
    with pytest.raises(ValueError):
        _service(service_type="a" * 64 + ".local")
    with pytest.raises(ValueError):
        _service(origin="bad..local")


def test_service_validation_bad_numbers():
    with pytest.raises(ValueError):
        _service(port=70000)
    with pytest.raises(ValueError):
        _service(port=-1)
    with pytest.raises(ValueError):
        _service(ttl=1 << 32)
    with pytest.raises(ValueError):
        ServiceRecord(id="s.local", service_type="_t._tcp.local", port=1, ttl=None,
                      origin="h.local", priority=1 << 16)


def test_last_write_wins():
    reg = MdnsRegistry()
    reg.add_service(_service(port=8080))
    second = _service(port=9090, origin="host9.local")
    reg.add_service(second)
    services = reg.list_services()
    assert services == [second]


def test_distinct_ids_kept_in_registration_order():
    reg = MdnsRegistry()
    reg.add_service(_service(id="a.local"))
    reg.add_service(_service(id="b.local"))
    reg.add_service(_service(id="a.local", port=1))
    assert [s.id for s in reg.list_services()] == ["a.local", "b.local"]
    assert reg.list_services()[0].port == 1


def test_node_overwrite():
    reg = MdnsRegistry()
    reg.add_node(NodeRecord("host2.local", "10.0.0.9", 120))
    reg.add_node(NodeRecord("host2.local", "10.0.0.10", 60))
    assert reg.list_nodes() == [NodeRecord("host2.local", "10.0.0.10", 60)]


def test_list_is_a_snapshot():
    reg = MdnsRegistry()
    reg.add_service(_service(id="a.local"))
    snap = reg.list_services()
    reg.add_service(_service(id="b.local"))
    assert len(snap) == 1
    snap.clear()
    assert len(reg.list_services()) == 2


def test_rejects_wrong_types():
    reg = MdnsRegistry()
    with pytest.raises(TypeError):
        reg.add_service({"id": "x"})
    with pytest.raises(TypeError):
        reg.add_node(("host", "1.2.3.4"))


def test_snapshot_dict():
    reg = MdnsRegistry()
    reg.add_service(_service())
    reg.add_node(NodeRecord("host2.local", "10.0.0.9", 120))
    snap = reg.snapshot()
    assert snap["services"][0]["id"] == "svc1.local"
    assert snap["services"][0]["ttl"] is None
    assert snap["nodes"] == [{"id": "host2.local", "ip_address": "10.0.0.9", "ttl": 120}]


def test_concurrent_writers_and_readers():
    reg = MdnsRegistry()
    errors = []

    def writer(prefix):
        for i in range(200):
            reg.add_node(NodeRecord(f"{prefix}-{i}.local", f"10.0.{prefix}.{i % 250}", 120))
            reg.add_service(_service(id=f"svc-{prefix}-{i % 10}.local", port=i))

    def reader():
        for _ in range(200):
            try:
                nodes = reg.list_nodes()
                ids = [n.id for n in nodes]
                assert len(ids) == len(set(ids))
                reg.snapshot()
            except Exception as e:  # surfaced to the main thread below
                errors.append(e)

    threads = [threading.Thread(target=writer, args=(p,)) for p in range(4)]
    threads += [threading.Thread(target=reader) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(reg.list_nodes()) == 800
    assert len(reg.list_services()) == 40
