"""Wire protocol for peer messages, file transfers and consensus rounds.

Messages are JSON objects of the form ``{"type": ..., "payload": {...}}``,
one per line. A connection is either a socket (``sendall``/``recv``) or a
binary stream (``write``/``readline``).
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import gzip
import hashlib
import json
import logging
import os
import re
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from gitsync.bandwidth import BandwidthManager
from gitsync.ratelimit import BandwidthError
from gitsync.store import PeerInfo

log = logging.getLogger(__name__)

CHUNK_SIZE = 1 << 16
CHUNK_TIMEOUT = 10.0
SESSION_TIMEOUT = 30.0
MONITOR_INTERVAL = 1.0

_FRACTION = re.compile(r"(\.\d{6})\d+")


class ProtocolError(Exception):
    """Raised when a message cannot be read, parsed or handled."""


class MessageType(str, Enum):
    """Kinds of protocol messages."""

    SYNC_REQUEST = "SYNC_REQUEST"
    SYNC_RESPONSE = "SYNC_RESPONSE"
    SYNC_BATCH = "SYNC_BATCH"
    SYNC_PROGRESS = "SYNC_PROGRESS"

    PEER_ANNOUNCE = "PEER_ANNOUNCE"
    PEER_INFO = "PEER_INFO"
    PEER_LIST_REQUEST = "PEER_LIST_REQUEST"
    PEER_LIST_RESPONSE = "PEER_LIST_RESPONSE"
    HEARTBEAT = "HEARTBEAT"

    CONSENSUS_PROPOSE = "CONSENSUS_PROPOSE"
    CONSENSUS_VOTE = "CONSENSUS_VOTE"
    CONSENSUS_COMMIT = "CONSENSUS_COMMIT"
    CONSENSUS_ABORT = "CONSENSUS_ABORT"

    FILE_CHUNK_REQUEST = "FILE_CHUNK_REQUEST"
    FILE_CHUNK_RESPONSE = "FILE_CHUNK_RESPONSE"
    TRANSFER_COMPLETE = "TRANSFER_COMPLETE"

    CONFLICT_RESOLUTION_PROPOSE = "CONFLICT_RESOLUTION_PROPOSE"
    CONFLICT_RESOLUTION_VOTE = "CONFLICT_RESOLUTION_VOTE"


@dataclass
class Message:
    """A protocol message; an unrecognised type is kept as a plain string."""

    type: MessageType | str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class FileChunk:
    """One piece of a file in transfer, with the SHA-256 of its data."""

    session_id: str
    offset: int
    data: bytes
    hash: str
    total: int
    index: int
    count: int


@dataclass
class TransferStats:
    """Counters for a transfer session; times come from the handler's clock."""

    start_time: float
    bytes_total: int
    bytes_sent: int = 0
    bytes_received: int = 0
    retransmits: int = 0
    rtt_samples: list[float] = field(default_factory=list)


@dataclass
class TransferSession:
    """State of an active file transfer."""

    id: str
    file_path: str
    file_size: int
    chunk_size: int
    stats: TransferStats
    last_activity: float
    received_chunks: dict[int, bytes] = field(default_factory=dict)
    verified_chunks: set[int] = field(default_factory=set)
    outstanding_chunks: dict[int, float] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


@dataclass
class ConflictProposal:
    """A proposed resolution for a conflicted file."""

    conflict_id: str
    repo_path: str
    file_path: str
    timestamp: datetime
    strategy: str
    changes: list[dict[str, Any]] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (bytes, bytearray)):
        return base64.b64encode(bytes(obj)).decode("ascii")
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return list(obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
    raise TypeError(f"cannot encode {type(obj).__name__}")


def _to_payload(payload: Any) -> dict[str, Any]:
    if payload is None:
        return {}
    try:
        data = json.loads(json.dumps(payload, default=_jsonable))
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"cannot encode payload: {exc}") from exc
    if not isinstance(data, dict):
        raise ProtocolError("payload must encode to a JSON object")
    return data


def _message_dict(msg: Message) -> dict[str, Any]:
    msg_type = msg.type.value if isinstance(msg.type, MessageType) else msg.type
    return {"type": msg_type, "payload": msg.payload}


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ProtocolError(f"invalid timestamp: {value!r}")
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    text = _FRACTION.sub(r"\1", text)
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise ProtocolError(f"invalid timestamp: {value!r}") from exc


def _string_field(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ProtocolError(f"field {key!r} must be a string")
    return value


def _int_field(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolError(f"field {key!r} must be an integer")
    return value


def _chunk_from_payload(payload: dict[str, Any]) -> FileChunk:
    encoded = _string_field(payload, "data")
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ProtocolError(f"invalid chunk data: {exc}") from exc
    return FileChunk(
        session_id=_string_field(payload, "session_id"),
        offset=_int_field(payload, "offset"),
        data=data,
        hash=_string_field(payload, "hash"),
        total=_int_field(payload, "total"),
        index=_int_field(payload, "index"),
        count=_int_field(payload, "count"),
    )


def _write(conn: Any, data: bytes) -> None:
    sendall = getattr(conn, "sendall", None)
    if callable(sendall):
        sendall(data)
        return
    conn.write(data)
    flush = getattr(conn, "flush", None)
    if callable(flush):
        flush()


def _read_line(conn: Any) -> bytes:
    readline = getattr(conn, "readline", None)
    if callable(readline):
        return readline()
    buf = bytearray()
    while True:
        byte = conn.recv(1)
        if not byte:
            return bytes(buf)
        buf += byte
        if byte == b"\n":
            return bytes(buf)


class ProtocolHandler:
    """Reads, writes and dispatches protocol messages and tracks file transfers."""

    def __init__(
        self,
        bandwidth_manager: BandwidthManager | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        monitor: bool = True,
    ) -> None:
        self.bandwidth_manager = bandwidth_manager
        self._clock = clock
        self._transfers_lock = threading.RLock()
        self.active_transfers: dict[str, TransferSession] = {}

        self.on_peer_announce: Callable[[PeerInfo], None] | None = None
        self.on_peer_list_request: Callable[[], list[PeerInfo]] | None = None
        self.on_heartbeat: Callable[[str, datetime | None], None] | None = None
        self.on_sync_progress: Callable[[dict[str, Any]], None] | None = None
        self.on_metadata_update: Callable[[str, Any], None] | None = None
        self.on_consensus_propose: Callable[[dict[str, Any]], Any] | None = None
        self.on_consensus_vote: Callable[[dict[str, Any]], None] | None = None
        self.on_consensus_commit: Callable[[dict[str, Any]], None] | None = None

        self._dispatch: dict[MessageType, Callable[[Any, Message], None]] = {
            MessageType.SYNC_REQUEST: self._handle_sync_request,
            MessageType.FILE_CHUNK_RESPONSE: self._handle_file_chunk,
            MessageType.HEARTBEAT: self._handle_heartbeat,
            MessageType.PEER_ANNOUNCE: self._handle_peer_announce,
            MessageType.PEER_LIST_REQUEST: self._handle_peer_list_request,
            MessageType.CONSENSUS_PROPOSE: self._handle_consensus_propose,
            MessageType.CONSENSUS_VOTE: self._handle_consensus_vote,
            MessageType.CONSENSUS_COMMIT: self._handle_consensus_commit,
        }

        self._stop = threading.Event()
        self._monitor: threading.Thread | None = None
        if monitor:
            self._monitor = threading.Thread(target=self._run_monitor, daemon=True)
            self._monitor.start()

    def __enter__(self) -> ProtocolHandler:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Stop the transfer monitor."""
        self._stop.set()
        if self._monitor is not None and self._monitor is not threading.current_thread():
            self._monitor.join()
        self._monitor = None

    def _run_monitor(self) -> None:
        while not self._stop.wait(MONITOR_INTERVAL):
            self.check_transfers()

    def check_transfers(self) -> None:
        """Count overdue chunks as retransmits and drop idle sessions."""
        now = self._clock()
        with self._transfers_lock:
            for session_id, session in list(self.active_transfers.items()):
                with session.lock:
                    if session.outstanding_chunks:
                        oldest = min(session.outstanding_chunks.values())
                        if now - oldest > CHUNK_TIMEOUT:
                            session.stats.retransmits += 1
                    if now - session.last_activity > SESSION_TIMEOUT:
                        del self.active_transfers[session_id]

    def read_message(self, conn: Any) -> Message:
        """Read one message from the connection."""
        line = _read_line(conn)
        if not line.strip():
            raise ProtocolError("EOF")
        try:
            data = json.loads(line)
        except (ValueError, UnicodeDecodeError) as exc:
            raise ProtocolError(f"invalid message: {exc}") from exc
        if not isinstance(data, dict):
            raise ProtocolError("message is not a JSON object")
        raw_type = data.get("type") or ""
        if not isinstance(raw_type, str):
            raise ProtocolError("message type must be a string")
        payload = data.get("payload")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ProtocolError("message payload must be a JSON object")
        try:
            msg_type: MessageType | str = MessageType(raw_type)
        except ValueError:
            msg_type = raw_type
        return Message(type=msg_type, payload=payload)

    def send_message(self, conn: Any, msg_type: MessageType | str, payload: Any = None) -> None:
        """Encode `payload` as a JSON object and write it as a message of `msg_type`."""
        msg = Message(type=msg_type, payload=_to_payload(payload))
        _write(conn, (json.dumps(_message_dict(msg)) + "\n").encode("utf-8"))

    def handle_message(self, conn: Any) -> None:
        """Read one message and act on it, replying on `conn` where the protocol does."""
        try:
            msg = self.read_message(conn)
        except ProtocolError as exc:
            raise ProtocolError(f"failed to read message: {exc}") from exc
        handler = self._dispatch.get(msg.type) if isinstance(msg.type, MessageType) else None
        if handler is None:
            raise ProtocolError(f"unknown message type: {msg.type}")
        handler(conn, msg)

    def _handle_sync_request(self, conn: Any, msg: Message) -> None:
        try:
            repository = _string_field(msg.payload, "repository")
            timestamp = _parse_time(msg.payload.get("timestamp"))
        except ProtocolError as exc:
            raise ProtocolError(f"failed to parse sync request: {exc}") from exc
        if self.on_sync_progress is not None:
            self.on_sync_progress(
                {"repository_id": repository, "start_time": timestamp, "status": "running"}
            )
        self.send_message(
            conn, MessageType.SYNC_RESPONSE, {"status": "acknowledged", "timestamp": _now()}
        )

    def _handle_heartbeat(self, conn: Any, msg: Message) -> None:
        try:
            peer_id = _string_field(msg.payload, "peer_id")
            timestamp = _parse_time(msg.payload.get("timestamp"))
            _string_field(msg.payload, "status")
        except ProtocolError as exc:
            raise ProtocolError(f"failed to parse heartbeat: {exc}") from exc
        if self.on_heartbeat is not None:
            self.on_heartbeat(peer_id, timestamp)

    def _handle_peer_announce(self, conn: Any, msg: Message) -> None:
        try:
            peer = PeerInfo.from_dict(msg.payload)
        except (ValueError, TypeError) as exc:
            raise ProtocolError(f"invalid peer info: {exc}") from exc
        if self.on_peer_announce is not None:
            self.on_peer_announce(peer)

    def _handle_peer_list_request(self, conn: Any, msg: Message) -> None:
        if self.on_peer_list_request is not None:
            peers = self.on_peer_list_request()
            self.send_message(conn, MessageType.PEER_LIST_RESPONSE, {"peers": list(peers)})

    def _handle_consensus_propose(self, conn: Any, msg: Message) -> None:
        if self.on_consensus_propose is not None:
            vote = self.on_consensus_propose(msg.payload)
            self.send_message(conn, MessageType.CONSENSUS_VOTE, vote)

    def _handle_consensus_vote(self, conn: Any, msg: Message) -> None:
        if self.on_consensus_vote is not None:
            self.on_consensus_vote(msg.payload)

    def _handle_consensus_commit(self, conn: Any, msg: Message) -> None:
        if self.on_consensus_commit is not None:
            self.on_consensus_commit(msg.payload)

    def _handle_file_chunk(self, conn: Any, msg: Message) -> None:
        self._receive_chunk(_chunk_from_payload(msg.payload))

    def _receive_chunk(self, chunk: FileChunk) -> None:
        with self._transfers_lock:
            session = self.active_transfers.get(chunk.session_id)
        if session is None:
            raise ProtocolError(f"unknown transfer session: {chunk.session_id}")
        with session.lock:
            if hashlib.sha256(chunk.data).hexdigest() != chunk.hash:
                raise ProtocolError("chunk hash mismatch")
            session.received_chunks[chunk.index] = chunk.data
            session.verified_chunks.add(chunk.index)
            session.outstanding_chunks.pop(chunk.offset, None)
            session.stats.bytes_received += len(chunk.data)
            session.last_activity = self._clock()
            if len(session.verified_chunks) == chunk.count:
                self._assemble_file(session)

    def _assemble_file(self, session: TransferSession) -> None:
        target = Path(session.file_path)
        try:
            fd, tmp_name = tempfile.mkstemp(prefix="gitsync-transfer-", dir=target.parent)
        except OSError as exc:
            raise ProtocolError(f"failed to create temp file: {exc}") from exc
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as out:
                for index in range(len(session.received_chunks)):
                    data = session.received_chunks.get(index)
                    if data is None:
                        raise ProtocolError(f"missing chunk {index}")
                    out.write(data)
            os.replace(tmp, target)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise ProtocolError(f"failed to assemble file: {exc}") from exc
        except ProtocolError:
            tmp.unlink(missing_ok=True)
            raise

    def send_file_chunk(self, conn: Any, chunk: FileChunk) -> None:
        """Send one file chunk."""
        self.send_message(conn, MessageType.FILE_CHUNK_RESPONSE, chunk)

    def compress_message(self, msg: Message) -> tuple[bytes, int]:
        """Gzip the JSON form of `msg`; return the compressed bytes and the original size."""
        data = json.dumps(_message_dict(msg), default=_jsonable).encode("utf-8")
        return gzip.compress(data), len(data)

    def send_batch_with_compression(self, conn: Any, msg: Message) -> int:
        """Send `msg` gzip-compressed inside a message of the same type; return its raw size."""
        compressed, size = self.compress_message(msg)
        self.send_message(conn, msg.type, {"encoding": "gzip", "data": compressed})
        return size

    def propose_sync(self, conn: Any, proposal: Any) -> None:
        """Send a consensus proposal."""
        self.send_message(conn, MessageType.CONSENSUS_PROPOSE, proposal)

    def propose_conflict_resolution(self, conn: Any, proposal: ConflictProposal) -> None:
        """Send a conflict resolution proposal."""
        self.send_message(conn, MessageType.CONFLICT_RESOLUTION_PROPOSE, proposal)

    def send_sync_request(self, conn: Any, repo_name: str) -> None:
        """Ask a peer to synchronise `repo_name`."""
        self.send_message(
            conn, MessageType.SYNC_REQUEST, {"repository": repo_name, "timestamp": _now()}
        )

    def send_heartbeat(self, conn: Any, message_type: str) -> None:
        """Send a heartbeat carrying `message_type`."""
        self.send_message(
            conn, MessageType.HEARTBEAT, {"type": message_type, "timestamp": _now()}
        )

    def send_file(self, conn: Any, file_path: str | os.PathLike[str]) -> None:
        """Send a file in 64 KiB chunks, then a transfer-complete message."""
        try:
            source = open(file_path, "rb")
        except OSError as exc:
            raise ProtocolError(f"failed to open file: {exc}") from exc
        path_text = os.fspath(file_path)
        with source:
            try:
                size = os.fstat(source.fileno()).st_size
            except OSError as exc:
                raise ProtocolError(f"failed to stat file: {exc}") from exc

            session_id = hashlib.sha256(f"{path_text}-{time.time_ns()}".encode()).hexdigest()
            now = self._clock()
            session = TransferSession(
                id=session_id,
                file_path=path_text,
                file_size=size,
                chunk_size=CHUNK_SIZE,
                stats=TransferStats(start_time=now, bytes_total=size),
                last_activity=now,
            )
            with self._transfers_lock:
                self.active_transfers[session_id] = session

            count = -(-size // CHUNK_SIZE)
            for index in range(count):
                try:
                    data = source.read(CHUNK_SIZE)
                except OSError as exc:
                    raise ProtocolError(f"failed to read file chunk: {exc}") from exc
                if not data:
                    raise ProtocolError("failed to read file chunk: EOF")
                chunk = FileChunk(
                    session_id=session_id,
                    offset=index * CHUNK_SIZE,
                    data=data,
                    hash=hashlib.sha256(data).hexdigest(),
                    total=size,
                    index=index,
                    count=count,
                )
                try:
                    self.send_file_chunk(conn, chunk)
                except OSError as exc:
                    raise ProtocolError(f"failed to send file chunk: {exc}") from exc

                with session.lock:
                    session.stats.bytes_sent += len(data)
                    session.outstanding_chunks[chunk.offset] = self._clock()

                if self.bandwidth_manager is not None:
                    try:
                        self.bandwidth_manager.acquire_bandwidth(session_id, len(data))
                    except BandwidthError as exc:
                        raise ProtocolError(f"bandwidth limit exceeded: {exc}") from exc

        self.send_message(
            conn,
            MessageType.TRANSFER_COMPLETE,
            {"session_id": session_id, "file_path": path_text, "size": size, "chunks": count},
        )

    def set_peer_announce_handler(self, handler: Callable[[PeerInfo], None]) -> None:
        self.on_peer_announce = handler

    def set_peer_list_request_handler(self, handler: Callable[[], list[PeerInfo]]) -> None:
        self.on_peer_list_request = handler

    def set_metadata_update_handler(self, handler: Callable[[str, Any], None]) -> None:
        self.on_metadata_update = handler

    def set_consensus_handlers(
        self,
        propose_handler: Callable[[dict[str, Any]], Any],
        vote_handler: Callable[[dict[str, Any]], None],
        commit_handler: Callable[[dict[str, Any]], None],
    ) -> None:
        self.on_consensus_propose = propose_handler
        self.on_consensus_vote = vote_handler
        self.on_consensus_commit = commit_handler