# gitsync

The networking core of a peer-to-peer repository synchroniser. It finds peers,
exchanges JSON messages with them, sends files in verified chunks, and keeps
traffic inside congestion and bandwidth limits.

The package uses only the Python standard library. Durations are given in
seconds, as floats, throughout.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `gitsync.congestion`: `CongestionController`, a TCP-style congestion window
  (`window` property, in bytes) with slow start, congestion avoidance
  (`CongestionState`), RTT estimation (`update_rtt`, `rtt`), a transmission
  quota and an RFC 6298-style backoff bounded to 1–60 seconds
  (`calculate_backoff`).
- `gitsync.window`: `WindowController` and `RTTStats`. The window controller
  paces sends (`can_send` refuses sends less than 10 ms apart or beyond the
  window) and scales its window by the ratio of minimum to smoothed RTT.
- `gitsync.ratelimit`: `TokenBucket` (non-blocking), `Limiter` (blocking,
  with a burst size and a deadline per `wait`), and the `BandwidthError` and
  `CongestionLimitError` exceptions.
- `gitsync.bandwidth`: `BandwidthManager`, which gives each peer a `Limiter`
  and a `WindowController`, and records a `ConnectionQuality` for each peer
  after `on_transfer_complete`. `BandwidthManager.unlimited()` builds one with
  no effective limit; `reliability_score` weighs bandwidth, latency and loss.
- `gitsync.store`: `StoreManager`, which keeps `PeerInfo` and
  `RepositoryMetadata` records as one JSON file each (`peer_<id>.json`,
  `repo_<name>.json`) and raises `StoreError` on failure.
- `gitsync.state`: `SyncStateManager`, which records the last synchronised
  commit for each repository and peer in `<base_dir>/.gitsync/sync_state.json`.
- `gitsync.discovery`: `DiscoveryService`, configured by `NodeConfig`. It
  queries bootstrap peers, sends heartbeats, forgets peers unseen for ten
  minutes, files peers by zone (`calculate_zone`: the host up to its last dot),
  keeps `PeerStatistics` per peer, and can persist peers, routing table and
  `DiscoveryStatistics` to `peer_cache.json`.
- `gitsync.protocol`: `ProtocolHandler`, which reads and writes
  newline-delimited JSON `Message`s (`{"type": ..., "payload": {...}}`) over a
  socket or a binary stream, dispatches them to registered callbacks, sends
  files as SHA-256-checked 64 KiB `FileChunk`s, and gzips messages with
  `compress_message`. Errors are raised as `ProtocolError`.
- `gitsync.node`: `Node`, a TCP listener that joins discovery, the protocol
  handler and link-quality tracking (`LinkQuality`) together. Errors reaching
  peers are raised as `NodeError`.

## Example

```python
from gitsync.bandwidth import BandwidthManager
from gitsync.congestion import CongestionController

cc = CongestionController()
cc.on_ack(1024)
cc.update_rtt(0.1)
print(cc.window, cc.calculate_backoff())

manager = BandwidthManager(1_000_000)   # bytes per second
manager.acquire_bandwidth("peer-a", 2048)
manager.on_transfer_complete("peer-a", 2048, 0.1, True)
print(manager.connection_quality("peer-a"))
```

Running a node:

```python
from gitsync.bandwidth import BandwidthManager
from gitsync.discovery import NodeConfig
from gitsync.node import Node
from gitsync.protocol import ProtocolHandler

config = NodeConfig(listen_address="127.0.0.1:0")
with ProtocolHandler(BandwidthManager(1024 * 1024)) as handler:
    with Node(config, handler) as node:
        print("listening on", node.address)
```

## What it does not do

- There is no command-line program; the package is a library.
- It does not run Git: sync requests, consensus messages and sync points are
  exchanged and stored, but no repository is fetched, merged or pushed.
- There is no HTTP API, user accounts, tokens or TLS peer authentication.
- `Node.measure_bandwidth` returns a fixed estimate of 1,000,000 bytes per
  second rather than measuring throughput.