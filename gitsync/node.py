"""The peer-to-peer node: listener, discovery loop and link-quality tracking."""

from __future__ import annotations

import logging
import socket
import statistics
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from gitsync.discovery import DiscoveryService, NodeConfig
from gitsync.protocol import ProtocolError, ProtocolHandler
from gitsync.store import PeerInfo

log = logging.getLogger(__name__)

DISCOVERY_INTERVAL = 30.0
QUALITY_INTERVAL = 30.0
QUALITY_STALE_AFTER = timedelta(minutes=5)
PING_ATTEMPTS = 5
PING_TIMEOUT = 2.0
CONNECT_TIMEOUT = 5.0
PLACEHOLDER_BANDWIDTH = 1_000_000.0

_ACCEPT_POLL = 0.2


class NodeError(Exception):
    """Raised when the node cannot reach a peer or start up."""


@dataclass
class LinkQuality:
    """Measured quality of the link to a peer; times in seconds, bandwidth in bytes/s."""

    latency: float
    packet_loss: float
    bandwidth: float
    rtt_variation: float
    last_measured: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _split_address(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


def _dial(addr: str, timeout: float | None) -> socket.socket:
    try:
        host, port = _split_address(addr)
    except ValueError as exc:
        raise OSError(str(exc)) from exc
    return socket.create_connection((host or "localhost", port), timeout=timeout)


class Node:
    """A listening peer that discovers others and talks the sync protocol."""

    def __init__(
        self,
        config: NodeConfig,
        protocol_handler: ProtocolHandler,
        *,
        clock: Callable[[], datetime] = _utcnow,
        background: bool = True,
    ) -> None:
        self.config = config
        self._protocol = protocol_handler
        self._clock = clock
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._conn_lock = threading.Lock()
        self._connections: set[socket.socket] = set()
        self._quality_lock = threading.RLock()
        self._qualities: dict[str, LinkQuality] = {}

        try:
            host, port = _split_address(config.listen_address)
            self._listener = socket.create_server((host, port))
        except (OSError, ValueError) as exc:
            raise NodeError(f"failed to listen: {exc}") from exc
        self._listener.settimeout(_ACCEPT_POLL)
        bound_host, bound_port = self._listener.getsockname()[:2]
        self._address = f"{bound_host}:{bound_port}"
        log.info("Listening on: %s", self._address)

        try:
            self._discovery = DiscoveryService(config, background=background)
        except OSError as exc:
            self._listener.close()
            raise NodeError(f"failed to initialize discovery service: {exc}") from exc

        targets: list[Callable[[], None]] = [self._run_listener]
        if background:
            targets += [self._run_discovery, self._run_quality_monitor]
        for target in targets:
            thread = threading.Thread(target=target, daemon=True)
            self._threads.append(thread)
            thread.start()

    def __enter__(self) -> Node:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Stop accepting connections, stop discovery and wait for background work."""
        self._stop.set()
        self._listener.close()
        self._discovery.stop()
        with self._conn_lock:
            connections = list(self._connections)
        for conn in connections:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join()
        self._threads = []
        log.info("P2P Node closed.")

    @property
    def address(self) -> str:
        """The `host:port` the node listens on."""
        return self._address

    @property
    def peer_discovery(self) -> DiscoveryService:
        return self._discovery

    @property
    def protocol_handler(self) -> ProtocolHandler:
        return self._protocol

    def _run_discovery(self) -> None:
        log.info("Starting Peer Discovery...")
        while not self._stop.is_set():
            try:
                peers = self._discovery.discover_peers()
                log.info("Discovered peers: %s", peers)
            except (OSError, ValueError) as exc:
                log.error("Peer discovery failed: %s", exc)
            if self._stop.wait(DISCOVERY_INTERVAL):
                return

    def _run_listener(self) -> None:
        log.info("Listening for incoming connections...")
        while not self._stop.is_set():
            try:
                conn, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._stop.is_set():
                    return
                log.error("Error accepting connection: %s", exc)
                continue
            conn.settimeout(None)
            with self._conn_lock:
                self._connections.add(conn)
            threading.Thread(target=self._handle_connection, args=(conn,), daemon=True).start()

    def _handle_connection(self, conn: socket.socket) -> None:
        try:
            with conn:
                self._protocol.handle_message(conn)
        except (ProtocolError, OSError) as exc:
            if not self._stop.is_set():
                log.error("Error handling message: %s", exc)
        finally:
            with self._conn_lock:
                self._connections.discard(conn)

    def _run_quality_monitor(self) -> None:
        while not self._stop.wait(QUALITY_INTERVAL):
            self.update_connection_qualities()

    def send_sync_request(self, peer: PeerInfo, repo_name: str) -> None:
        """Send a sync request for `repo_name` to the first reachable address of `peer`."""
        for addr in peer.addresses:
            try:
                conn = _dial(addr, None)
            except OSError as exc:
                log.warning("Failed to connect to peer at %s: %s", addr, exc)
                continue
            with conn:
                try:
                    self._protocol.send_sync_request(conn, repo_name)
                except (OSError, ProtocolError) as exc:
                    log.warning("Failed to send sync request to peer at %s: %s", addr, exc)
                    continue
            return
        raise NodeError(f"failed to connect to peer {peer.id} at any address")

    def connection_quality(self, peer_id: str) -> LinkQuality | None:
        """Last recorded link quality for a peer, or None."""
        with self._quality_lock:
            return self._qualities.get(peer_id)

    def measure_connection_quality(self, peer_id: str) -> LinkQuality:
        """Ping a known peer several times and record the resulting link quality."""
        peer = self._discovery.peer_info(peer_id)
        if peer is None:
            raise NodeError("peer not found")

        samples: list[float] = []
        sent = 0
        for _ in range(PING_ATTEMPTS):
            start = time.perf_counter()
            sent += 1
            try:
                self.send_ping(peer)
            except NodeError:
                continue
            samples.append(time.perf_counter() - start)

        if not samples:
            raise NodeError("no response from peer")

        latency = sum(samples) / len(samples)
        quality = LinkQuality(
            latency=latency,
            packet_loss=1 - len(samples) / sent,
            bandwidth=0.0,
            rtt_variation=statistics.stdev(samples) if len(samples) > 1 else 0.0,
            last_measured=self._clock(),
        )
        try:
            quality.bandwidth = self.measure_bandwidth(peer)
        except NodeError as exc:
            log.warning("Failed to measure bandwidth for peer %s: %s", peer_id, exc)

        with self._quality_lock:
            self._qualities[peer_id] = quality
        return quality

    def update_connection_qualities(self) -> None:
        """Re-measure stale entries; forget peers that no longer answer."""
        now = self._clock()
        with self._quality_lock:
            stale = [
                peer_id
                for peer_id, quality in self._qualities.items()
                if now - quality.last_measured > QUALITY_STALE_AFTER
            ]
        for peer_id in stale:
            try:
                self.measure_connection_quality(peer_id)
            except NodeError:
                with self._quality_lock:
                    self._qualities.pop(peer_id, None)

    def measure_bandwidth(self, peer: PeerInfo) -> float:
        """Available bandwidth to `peer` in bytes per second (a fixed estimate)."""
        return PLACEHOLDER_BANDWIDTH

    def send_ping(self, peer: PeerInfo) -> None:
        """Send a ping heartbeat to the first address of `peer` that accepts it."""
        for addr in peer.addresses:
            try:
                conn = _dial(addr, PING_TIMEOUT)
            except OSError:
                continue
            with conn:
                try:
                    self._protocol.send_heartbeat(conn, "ping")
                except (OSError, ProtocolError):
                    continue
            return
        raise NodeError("failed to ping peer at any address")

    def connect_to_peer(self, peer: PeerInfo) -> socket.socket:
        """Open a connection to the first reachable address of `peer`."""
        for addr in peer.addresses:
            try:
                return _dial(addr, CONNECT_TIMEOUT)
            except OSError:
                continue
        raise NodeError(f"failed to connect to peer {peer.id} at any address")

    def send_file(self, peer_id: str, file_path: str | Path) -> None:
        """Transfer a file to a known peer."""
        peer = self._discovery.peer_info(peer_id)
        if peer is None:
            raise NodeError(f"peer {peer_id} not found")
        try:
            conn = self.connect_to_peer(peer)
        except NodeError as exc:
            raise NodeError(f"failed to connect to peer: {exc}") from exc
        with conn:
            self._protocol.send_file(conn, file_path)