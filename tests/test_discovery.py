import json
import logging
import queue
import socket
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from gitsync.discovery import (
    DiscoveryService,
    DiscoveryStatistics,
    NodeConfig,
    PeerStatistics,
    calculate_zone,
)
from gitsync.store import PeerInfo


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@contextmanager
def serve(handler):
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen()
    server.settimeout(0.1)
    stop = threading.Event()

    def loop():
        while not stop.is_set():
            try:
                conn, _ = server.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            conn.settimeout(5)
            with conn:
                handler(conn)

    thread = threading.Thread(target=loop, daemon=True)
    thread.start()
    try:
        yield f"127.0.0.1:{server.getsockname()[1]}"
    finally:
        stop.set()
        thread.join(2)
        server.close()


@pytest.fixture
def closed_address():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"127.0.0.1:{port}"


@pytest.fixture
def persistent_config(tmp_path):
    return NodeConfig(
        listen_address=":9090",
        repository_dir=str(tmp_path),
        persistence_enabled=True,
        storage_dir=str(tmp_path / "peer-cache"),
        peer_cache_time=3600,
        max_stored_peers=100,
    )


def make_service(config=None, **kwargs):
    kwargs.setdefault("background", False)
    return DiscoveryService(config or NodeConfig(listen_address="127.0.0.1:0"), **kwargs)


def test_discover_with_unreachable_bootstrap(closed_address):
    ds = make_service(NodeConfig(listen_address="127.0.0.1:0", bootstrap_peers=[closed_address]))
    assert ds.discover_peers() == []
    assert ds.routing_table == {}


def test_routing_table_zones():
    ds = make_service()
    for peer in [
        PeerInfo(id="peer1", addresses=["192.168.1.1:8080"]),
        PeerInfo(id="peer2", addresses=["192.168.1.2:8080"]),
        PeerInfo(id="peer3", addresses=["192.168.2.1:8080"]),
    ]:
        ds.update_routing_table(peer)
    table = ds.routing_table
    assert len(table["192.168.1"]) == 2
    assert len(table["192.168.2"]) == 1


def test_routing_table_rejects_peer_without_addresses():
    ds = make_service()
    with pytest.raises(ValueError):
        ds.update_routing_table(PeerInfo(id="empty"))


@pytest.mark.parametrize(
    "addr, zone",
    [("192.168.1.1:8080", "192.168.1"), ("10.0.0.7:1", "10.0.0"), ("[a.b.c]:80", "a.b")],
)
def test_calculate_zone(addr, zone):
    assert calculate_zone(addr) == zone


@pytest.mark.parametrize("addr", ["localhost:80", ":9090", "no-port", "::1:80"])
def test_calculate_zone_invalid(addr):
    with pytest.raises(ValueError):
        calculate_zone(addr)


def test_peer_state_cleanup():
    clock = FakeClock()
    ds = make_service(clock=clock)
    ds.add_or_update_peer(PeerInfo(id="stale-peer", addresses=["127.0.0.1:8002"]))
    clock.advance(minutes=15)
    ds.add_or_update_peer(PeerInfo(id="active-peer", addresses=["127.0.0.1:8001"]))

    ds.cleanup_stale_hosts()

    assert ds.peer_info("active-peer") is not None
    assert ds.peer_info("stale-peer") is None


def test_heartbeat_is_sent():
    received = queue.Queue()

    def handler(conn):
        with conn.makefile("rb") as stream:
            received.put(json.loads(stream.readline()))

    with serve(handler) as addr:
        ds = make_service()
        ds.add_or_update_peer(PeerInfo(id="test-peer", addresses=[addr]))
        ds.send_heartbeat(addr)
        message = received.get(timeout=2)

    assert message["type"] == "HEARTBEAT"
    assert message["payload"]["peer_id"] == ds.self_info.id
    assert message["payload"]["status"] == "ACTIVE"


def test_heartbeat_to_closed_port_raises(closed_address):
    ds = make_service()
    with pytest.raises(OSError):
        ds.send_heartbeat(closed_address)


def test_peer_persistence(persistent_config):
    ds = make_service(persistent_config)
    peers = [
        PeerInfo(id="peer1", addresses=["192.168.1.1:8080"]),
        PeerInfo(id="peer2", addresses=["192.168.1.2:8080"]),
    ]
    for peer in peers:
        ds.add_or_update_peer(peer)
    ds.save_peer_cache()

    ds2 = make_service(persistent_config)
    for expected in peers:
        loaded = ds2.peer_info(expected.id)
        assert loaded is not None
        assert loaded.addresses[0] == expected.addresses[0]


def test_routing_table_persistence(persistent_config):
    ds = make_service(persistent_config)
    for peer in [
        PeerInfo(id="peer1", addresses=["192.168.1.1:8080"]),
        PeerInfo(id="peer2", addresses=["192.168.1.2:8080"]),
        PeerInfo(id="peer3", addresses=["192.168.2.1:8080"]),
    ]:
        ds.add_or_update_peer(peer)
        ds.update_routing_table(peer)
    ds.save_peer_cache()

    table = make_service(persistent_config).routing_table
    assert len(table["192.168.1"]) == 2
    assert len(table["192.168.2"]) == 1


def test_peer_cache_expiration(persistent_config):
    persistent_config.peer_cache_time = 0.05
    clock = FakeClock()
    ds = make_service(persistent_config, clock=clock)
    ds.add_or_update_peer(PeerInfo(id="test-peer", addresses=["192.168.1.1:8080"]))
    ds.save_peer_cache()

    clock.advance(seconds=0.1)
    ds2 = make_service(persistent_config, clock=clock)
    assert ds2.peer_info("test-peer") is None


def test_cache_file_and_statistics(persistent_config, tmp_path):
    ds = make_service(persistent_config)
    ds.add_or_update_peer(PeerInfo(id="peer1", addresses=["192.168.1.1:8080"]))
    ds.add_or_update_peer(PeerInfo(id="peer2", addresses=["192.168.1.2:8080"]))
    ds.save_peer_cache()

    stats = ds.discovery_statistics
    assert stats.active_peers_count == 2
    assert stats.zone_distribution == {"192.168.1": 2}

    data = json.loads((tmp_path / "peer-cache" / "peer_cache.json").read_text())
    assert set(data["peers"]) == {"peer1", "peer2"}
    assert data["statistics"]["active_peers_count"] == 2


def test_statistics_without_persistence(tmp_path):
    ds = make_service(NodeConfig(listen_address="127.0.0.1:0", repository_dir=str(tmp_path)))
    ds.add_or_update_peer(PeerInfo(id="peer1", addresses=["192.168.1.1:8080"]))
    ds.save_peer_cache()
    assert ds.discovery_statistics == DiscoveryStatistics()
    assert list(tmp_path.iterdir()) == []


def test_stop_saves_cache(persistent_config, tmp_path):
    ds = DiscoveryService(persistent_config)
    ds.add_or_update_peer(PeerInfo(id="peer1", addresses=["192.168.1.1:8080"]))
    ds.stop()

    stats = ds.discovery_statistics
    assert stats.active_peers_count == 1
    assert stats.zone_distribution == {"192.168.1": 1}

    data = json.loads((tmp_path / "peer-cache" / "peer_cache.json").read_text())
    assert "peer1" in data["peers"]


def test_peer_statistics(persistent_config):
    ds = make_service(persistent_config)
    ds.add_or_update_peer(PeerInfo(id="test-peer", addresses=["192.168.1.1:8080"]))

    ds.update_peer_statistics("test-peer", True, 0.100)
    assert ds.peer_statistics("test-peer").average_latency == 100
    ds.update_peer_statistics("test-peer", True, 0.150)
    ds.update_peer_statistics("test-peer", False, 0.200)

    stats = ds.peer_statistics("test-peer")
    assert stats.successful_syncs == 2
    assert stats.failed_syncs == 1
    assert 0.0 <= stats.reliability_score <= 1.0
    assert stats.up_time == 1.0


def test_failures_lower_reliability():
    ds = make_service()
    ds.add_or_update_peer(PeerInfo(id="good", addresses=["10.0.0.1:1"]))
    ds.add_or_update_peer(PeerInfo(id="flaky", addresses=["10.0.0.2:1"]))
    for _ in range(2):
        ds.update_peer_statistics("good", True, 0.05)
    ds.update_peer_statistics("flaky", True, 0.05)
    ds.update_peer_statistics("flaky", False, 0.05)
    assert (
        ds.peer_statistics("flaky").reliability_score
        < ds.peer_statistics("good").reliability_score
    )


def test_unknown_peer_statistics():
    ds = make_service()
    ds.update_peer_statistics("ghost", True, 0.1)
    with pytest.raises(KeyError):
        ds.peer_statistics("ghost")


def test_peer_score_defaults():
    assert PeerStatistics().peer_score() == 0.5
    assert PeerStatistics(successful_syncs=1, up_time=1.0).peer_score() == pytest.approx(1.0)


def test_announce_self_logs_bootstrap_peers(caplog):
    caplog.set_level(logging.INFO, logger="gitsync.discovery")
    ds = make_service(NodeConfig(bootstrap_peers=["10.0.0.1:9000"]))
    ds.announce_self()
    assert any("10.0.0.1:9000" in record.getMessage() for record in caplog.records)