"""Peer discovery, liveness tracking and peer-cache persistence."""

from __future__ import annotations

import dataclasses
import json
import logging
import socket
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from gitsync.store import PeerInfo

log = logging.getLogger(__name__)

DIAL_TIMEOUT = 5.0
DISCOVERY_INTERVAL = 60.0
HEARTBEAT_INTERVAL = 30.0
CLEANUP_INTERVAL = 300.0
PERSIST_INTERVAL = 60.0
STALE_AFTER = timedelta(minutes=10)
CACHE_FILE = "peer_cache.json"

_LATENCY_ALPHA = 0.2
_STOP_JOIN_TIMEOUT = 10.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime | None) -> str | None:
    return moment.isoformat() if moment is not None else None


def _parse_time(value: Any) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _generate_peer_id() -> str:
    return str(uuid.uuid4())


def _encode(message: dict[str, Any]) -> bytes:
    return (json.dumps(message) + "\n").encode("utf-8")


@dataclass
class NodeConfig:
    """Settings for a node and its discovery service; durations in seconds."""

    listen_address: str = "0.0.0.0:9090"
    repository_dir: str = "."
    bootstrap_peers: list[str] = field(default_factory=list)
    bandwidth_limit: int = 0
    persistence_enabled: bool = False
    storage_dir: str = ""
    peer_cache_time: float = 3600.0
    max_stored_peers: int = 100


@dataclass
class PeerStatistics:
    """Reliability metrics for a peer; latency in milliseconds."""

    successful_syncs: int = 0
    failed_syncs: int = 0
    average_latency: float = 0.0
    last_sync_time: datetime | None = None
    reliability_score: float = 0.0
    shared_repos: list[str] = field(default_factory=list)
    up_time: float = 0.0
    bandwidth_score: float = 0.0
    downtime: float = 0.0

    def peer_score(self) -> float:
        """Weighted score used to rank peers; 0.5 for a peer with no history."""
        total = self.successful_syncs + self.failed_syncs
        if total == 0:
            return 0.5
        sync_rate = self.successful_syncs / total
        latency_score = 1.0 - min(1.0, self.average_latency / 1000.0)
        recency_score = 1.0
        if self.last_sync_time is not None:
            hours = (_utcnow() - self.last_sync_time).total_seconds() / 3600.0
            recency_score = max(0.0, 1.0 - hours / 24.0)
        return (
            sync_rate * 0.4
            + latency_score * 0.3
            + recency_score * 0.2
            + self.up_time * 0.1
        )

    def _to_dict(self) -> dict[str, Any]:
        return {
            "successful_syncs": self.successful_syncs,
            "failed_syncs": self.failed_syncs,
            "average_latency": self.average_latency,
            "last_sync_time": _iso(self.last_sync_time),
            "reliability_score": self.reliability_score,
            "shared_repos": list(self.shared_repos),
            "up_time": self.up_time,
            "bandwidth_score": self.bandwidth_score,
            "downtime": self.downtime,
        }

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> PeerStatistics:
        return cls(
            successful_syncs=int(data.get("successful_syncs", 0)),
            failed_syncs=int(data.get("failed_syncs", 0)),
            average_latency=float(data.get("average_latency", 0.0)),
            last_sync_time=_parse_time(data.get("last_sync_time")),
            reliability_score=float(data.get("reliability_score", 0.0)),
            shared_repos=list(data.get("shared_repos") or []),
            up_time=float(data.get("up_time", 0.0)),
            bandwidth_score=float(data.get("bandwidth_score", 0.0)),
            downtime=float(data.get("downtime", 0.0)),
        )


@dataclass
class PeerState:
    """What the discovery service knows about one peer."""

    info: PeerInfo
    last_seen: datetime
    repositories: list[str] = field(default_factory=list)
    active_channels: int = 0
    first_seen: datetime | None = None
    statistics: PeerStatistics = field(default_factory=PeerStatistics)

    def _to_dict(self) -> dict[str, Any]:
        return {
            "info": self.info.to_dict(),
            "last_seen": _iso(self.last_seen),
            "repositories": list(self.repositories),
            "active_channels": self.active_channels,
            "first_seen": _iso(self.first_seen),
            "statistics": self.statistics._to_dict(),
        }

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> PeerState:
        last_seen = _parse_time(data.get("last_seen"))
        if last_seen is None:
            raise ValueError("peer state without last_seen")
        return cls(
            info=PeerInfo.from_dict(data["info"]),
            last_seen=last_seen,
            repositories=list(data.get("repositories") or []),
            active_channels=int(data.get("active_channels", 0)),
            first_seen=_parse_time(data.get("first_seen")),
            statistics=PeerStatistics._from_dict(data.get("statistics") or {}),
        )


@dataclass
class DiscoveryStatistics:
    """Aggregate figures recorded with the peer cache."""

    total_peers_found: int = 0
    last_discovery_time: datetime | None = None
    active_peers_count: int = 0
    zone_distribution: dict[str, int] = field(default_factory=dict)

    def _to_dict(self) -> dict[str, Any]:
        return {
            "total_peers_found": self.total_peers_found,
            "last_discovery_time": _iso(self.last_discovery_time),
            "active_peers_count": self.active_peers_count,
            "zone_distribution": dict(self.zone_distribution),
        }

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> DiscoveryStatistics:
        return cls(
            total_peers_found=int(data.get("total_peers_found", 0)),
            last_discovery_time=_parse_time(data.get("last_discovery_time")),
            active_peers_count=int(data.get("active_peers_count", 0)),
            zone_distribution={
                str(k): int(v) for k, v in (data.get("zone_distribution") or {}).items()
            },
        )


def _split_host_port(addr: str) -> tuple[str, str]:
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0 or addr[end + 1 : end + 2] != ":":
            raise ValueError(f"invalid address {addr!r}")
        return addr[1:end], addr[end + 2 :]
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    if ":" in host:
        raise ValueError(f"too many colons in address {addr!r}")
    return host, port


def calculate_zone(addr: str) -> str:
    """Zone of a `host:port` address: the host up to its last dot."""
    host, _ = _split_host_port(addr)
    cut = host.rfind(".")
    if cut < 0:
        raise ValueError(f"cannot derive a zone from address {addr!r}")
    return host[:cut]


def _dial(addr: str) -> socket.socket:
    try:
        host, port = _split_host_port(addr)
        port_number = int(port)
    except ValueError as exc:
        raise OSError(str(exc)) from exc
    return socket.create_connection((host or "localhost", port_number), timeout=DIAL_TIMEOUT)


class DiscoveryService:
    """Finds peers through bootstrap nodes, tracks their liveness and caches them."""

    def __init__(
        self,
        config: NodeConfig,
        *,
        clock: Callable[[], datetime] = _utcnow,
        background: bool = True,
    ) -> None:
        self.config = config
        self._clock = clock
        self._lock = threading.RLock()
        self._peers: dict[str, PeerState] = {}
        self._routing_lock = threading.Lock()
        self._routing: dict[str, list[str]] = {}
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self.self_info = PeerInfo(id=_generate_peer_id(), addresses=[config.listen_address])
        self.storage_dir: Path | None = None
        self._cache_stats: DiscoveryStatistics | None = None
        self._cache_updated: datetime | None = None

        if config.persistence_enabled:
            self.storage_dir = (
                Path(config.storage_dir)
                if config.storage_dir
                else Path(config.repository_dir) / ".gitsync" / "peers"
            )
            try:
                self.storage_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise OSError(
                    f"failed to initialize storage: failed to create storage directory: {exc}"
                ) from exc

        try:
            self._load_peer_cache()
        except (OSError, ValueError) as exc:
            log.warning("Failed to load peer cache: %s", exc)

        if background:
            self._start_background()

    def __enter__(self) -> DiscoveryService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    @property
    def _cache_path(self) -> Path | None:
        return self.storage_dir / CACHE_FILE if self.storage_dir is not None else None

    def _load_peer_cache(self) -> None:
        path = self._cache_path
        if not self.config.persistence_enabled or path is None:
            return
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self._cache_stats = DiscoveryStatistics()
            self._cache_updated = self._clock()
            return

        self._cache_stats = DiscoveryStatistics()
        try:
            data = json.loads(text)
            if not isinstance(data, dict):
                raise ValueError("not an object")
            peers = {
                str(peer_id): PeerState._from_dict(state)
                for peer_id, state in (data.get("peers") or {}).items()
            }
            routing = {
                str(zone): [str(peer_id) for peer_id in ids]
                for zone, ids in (data.get("routing_info") or {}).items()
            }
            stats = DiscoveryStatistics._from_dict(data.get("statistics") or {})
            updated = _parse_time(data.get("last_updated"))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"failed to unmarshal peer cache: {exc}") from exc

        self._cache_stats = stats
        self._cache_updated = updated
        now = self._clock()
        keep_for = timedelta(seconds=self.config.peer_cache_time)
        with self._lock:
            for peer_id, state in peers.items():
                if now - state.last_seen <= keep_for:
                    self._peers[peer_id] = state
        with self._routing_lock:
            self._routing = routing

    def save_peer_cache(self) -> None:
        """Write known peers, routing table and statistics to the cache file."""
        path = self._cache_path
        if not self.config.persistence_enabled or path is None:
            return
        now = self._clock()
        zones: dict[str, int] = {}
        with self._lock:
            peers = {peer_id: state._to_dict() for peer_id, state in self._peers.items()}
            for state in self._peers.values():
                if state.info.addresses:
                    try:
                        zone = calculate_zone(state.info.addresses[0])
                    except ValueError:
                        continue
                    zones[zone] = zones.get(zone, 0) + 1
        with self._routing_lock:
            routing = {zone: list(ids) for zone, ids in self._routing.items()}

        previous = self._cache_stats or DiscoveryStatistics()
        stats = DiscoveryStatistics(
            total_peers_found=previous.total_peers_found,
            last_discovery_time=now,
            active_peers_count=len(peers),
            zone_distribution=zones,
        )
        self._cache_stats = stats
        self._cache_updated = now

        payload = {
            "last_updated": _iso(now),
            "peers": peers,
            "routing_info": routing,
            "statistics": stats._to_dict(),
        }
        try:
            path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            raise OSError(f"failed to write peer cache: {exc}") from exc

    def _start_background(self) -> None:
        tasks: list[tuple[float, Callable[[], object]]] = [
            (DISCOVERY_INTERVAL, self.discover_peers),
            (HEARTBEAT_INTERVAL, self._send_heartbeats),
            (CLEANUP_INTERVAL, self.cleanup_stale_hosts),
        ]
        for interval, task in tasks:
            self._threads.append(
                threading.Thread(target=self._run_periodic, args=(interval, task), daemon=True)
            )
        if self.config.persistence_enabled:
            self._threads.append(threading.Thread(target=self._run_persistence, daemon=True))
        for thread in self._threads:
            thread.start()

    def _run_periodic(self, interval: float, task: Callable[[], object]) -> None:
        while not self._stop_event.wait(interval):
            try:
                task()
            except (OSError, ValueError) as exc:
                log.error("Background discovery task failed: %s", exc)

    def _run_persistence(self) -> None:
        while not self._stop_event.wait(PERSIST_INTERVAL):
            try:
                self.save_peer_cache()
            except OSError as exc:
                log.error("Error saving peer cache: %s", exc)
        try:
            self.save_peer_cache()
        except OSError as exc:
            log.error("Error saving peer cache: %s", exc)

    def stop(self) -> None:
        """Stop background work; a persisted cache is saved one last time."""
        self._stop_event.set()
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(_STOP_JOIN_TIMEOUT)
        self._threads = []
        log.info("Discovery Service stopped")

    def discover_peers(self) -> list[PeerInfo]:
        """Query bootstrap peers and return what was found plus all known peers."""
        bootstrap = list(self.config.bootstrap_peers)
        discovered: list[PeerInfo] = []
        found: list[PeerInfo] = []
        if bootstrap:
            with ThreadPoolExecutor(max_workers=len(bootstrap)) as pool:
                results = list(pool.map(self._query_peer, bootstrap))
            for address, peer in zip(bootstrap, results):
                if peer is None:
                    continue
                bootstrap_peer = PeerInfo(id=_generate_peer_id(), addresses=[address])
                self.add_or_update_peer(bootstrap_peer)
                discovered.append(bootstrap_peer)
                found.append(peer)

        for peer in found:
            self.add_or_update_peer(peer)
            discovered.append(peer)
            self.update_routing_table(peer)

        with self._lock:
            discovered.extend(state.info for state in self._peers.values())
        return discovered

    def _query_peer(self, addr: str) -> PeerInfo | None:
        try:
            with _dial(addr) as sock:
                sock.sendall(_encode({"type": "PEER_LIST_REQUEST", "payload": {}}))
                with sock.makefile("rb") as stream:
                    line = stream.readline()
            response = json.loads(line)
            if response.get("type") != "PEER_LIST_RESPONSE":
                return None
            peers = (response.get("payload") or {}).get("peers") or []
            if not peers:
                return None
            peer = PeerInfo.from_dict(peers[0])
        except (OSError, ValueError, TypeError, AttributeError):
            return None
        self.add_or_update_peer(peer)
        return peer

    def add_or_update_peer(self, peer: PeerInfo) -> None:
        """Record a peer as seen now."""
        now = self._clock()
        with self._lock:
            state = self._peers.get(peer.id)
            if state is None:
                self._peers[peer.id] = PeerState(info=peer, last_seen=now)
            else:
                state.info = peer
                state.last_seen = now

    def update_routing_table(self, peer: PeerInfo) -> None:
        """File the peer under the zone of its first address."""
        if not peer.addresses:
            raise ValueError(f"peer {peer.id} has no addresses")
        zone = calculate_zone(peer.addresses[0])
        with self._routing_lock:
            self._routing.setdefault(zone, []).append(peer.id)

    @property
    def routing_table(self) -> dict[str, list[str]]:
        """Snapshot of zone -> peer ids."""
        with self._routing_lock:
            return {zone: list(ids) for zone, ids in self._routing.items()}

    def cleanup_stale_hosts(self) -> None:
        """Forget peers not seen for ten minutes."""
        threshold = self._clock() - STALE_AFTER
        with self._lock:
            stale = [pid for pid, state in self._peers.items() if state.last_seen < threshold]
            for peer_id in stale:
                del self._peers[peer_id]

    def _send_heartbeats(self) -> None:
        with self._lock:
            peers = list(self._peers.values())
        for state in peers:
            for addr in state.info.addresses:
                try:
                    self.send_heartbeat(addr)
                except OSError:
                    continue
                break

    def send_heartbeat(self, addr: str) -> None:
        """Send one heartbeat message to `addr`; raise OSError on failure."""
        message = {
            "type": "HEARTBEAT",
            "payload": {
                "peer_id": self.self_info.id,
                "timestamp": _iso(self._clock()),
                "status": "ACTIVE",
            },
        }
        with _dial(addr) as sock:
            sock.sendall(_encode(message))

    def announce_self(self) -> None:
        """Announce this node to every bootstrap peer."""
        for peer_addr in self.config.bootstrap_peers:
            log.info("Announcing presence to bootstrap peer: %s", peer_addr)

    def peer_info(self, peer_id: str) -> PeerInfo | None:
        """Known information about a peer, or None."""
        with self._lock:
            state = self._peers.get(peer_id)
            return state.info if state is not None else None

    def update_peer_statistics(self, peer_id: str, sync_success: bool, latency: float) -> None:
        """Record a sync outcome and its latency (seconds) for a known peer."""
        with self._lock:
            state = self._peers.get(peer_id)
            if state is None:
                return
            stats = state.statistics
            if sync_success:
                stats.successful_syncs += 1
            else:
                stats.failed_syncs += 1

            millis = float(int(round(latency * 1e6)) // 1000)
            if stats.average_latency == 0:
                stats.average_latency = millis
            else:
                stats.average_latency = (
                    _LATENCY_ALPHA * millis + (1 - _LATENCY_ALPHA) * stats.average_latency
                )

            stats.last_sync_time = self._clock()
            stats.reliability_score = stats.peer_score()
            stats.up_time = self._peer_uptime(state)
            stats.bandwidth_score = 1.0

    def _peer_uptime(self, state: PeerState) -> float:
        if state.first_seen is None:
            return 1.0
        total = (self._clock() - state.first_seen).total_seconds()
        if total <= 0:
            return 1.0
        return (total - state.statistics.downtime) / total

    def peer_statistics(self, peer_id: str) -> PeerStatistics:
        """A copy of a peer's statistics; KeyError if the peer is unknown."""
        with self._lock:
            state = self._peers.get(peer_id)
            if state is None:
                raise KeyError(f"peer not found: {peer_id}")
            return dataclasses.replace(
                state.statistics, shared_repos=list(state.statistics.shared_repos)
            )

    @property
    def discovery_statistics(self) -> DiscoveryStatistics:
        """Statistics recorded with the peer cache, empty without persistence."""
        if self._cache_stats is not None:
            return self._cache_stats
        return DiscoveryStatistics()