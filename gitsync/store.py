"""File-backed persistence of peer information and repository metadata."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


class StoreError(Exception):
    """Raised when the store cannot save or load a record."""


@dataclass
class PeerInfo:
    """A peer's identity and the addresses it can be reached at."""

    id: str
    addresses: list[str] = field(default_factory=list)
    last_seen: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "addresses": list(self.addresses),
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PeerInfo:
        last_seen = data.get("last_seen")
        return cls(
            id=data.get("id", ""),
            addresses=list(data.get("addresses") or []),
            last_seen=datetime.fromisoformat(last_seen) if last_seen else None,
        )


@dataclass
class RepositoryMetadata:
    """Metadata about a synchronised repository, keyed by its name."""

    name: str
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {**self.extra, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RepositoryMetadata:
        extra = {key: value for key, value in data.items() if key != "name"}
        return cls(name=data.get("name", ""), extra=extra)


class StoreManager:
    """Keeps one JSON file per peer and per repository in a data directory."""

    def __init__(self, data_dir: str | Path) -> None:
        if not str(data_dir):
            raise StoreError("data directory cannot be empty")
        self.data_dir = Path(data_dir)
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(f"failed to create data directory: {exc}") from exc

    def _path(self, filename: str) -> Path:
        return self.data_dir / filename

    def _write(self, filename: str, payload: dict[str, Any], what: str) -> None:
        data = json.dumps(payload, separators=(",", ":"))
        try:
            self._path(filename).write_text(data, encoding="utf-8")
        except OSError as exc:
            raise StoreError(f"failed to write {what} file: {exc}") from exc

    def _read(self, filename: str, what: str, missing: str) -> dict[str, Any]:
        try:
            text = self._path(filename).read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise StoreError(missing) from exc
        except OSError as exc:
            raise StoreError(f"failed to read {what} file: {exc}") from exc
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StoreError(f"failed to unmarshal {what}: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreError(f"failed to unmarshal {what}: not an object")
        return data

    def save_peer_info(self, peer: PeerInfo | None) -> None:
        """Write a peer's record; the peer must have an id."""
        if peer is None or not peer.id:
            raise StoreError("invalid peer info")
        self._write(f"peer_{peer.id}.json", peer.to_dict(), "peer info")

    def get_peer_info(self, peer_id: str) -> PeerInfo:
        """Load a peer's record, raising StoreError if it is absent."""
        if not peer_id:
            raise StoreError("peer ID cannot be empty")
        data = self._read(
            f"peer_{peer_id}.json",
            "peer info",
            f"peer info not found for ID: {peer_id}",
        )
        return PeerInfo.from_dict(data)

    def save_repository_metadata(self, metadata: RepositoryMetadata | None) -> None:
        """Write a repository's metadata; it must have a name."""
        if metadata is None or not metadata.name:
            raise StoreError("invalid repository metadata")
        self._write(
            f"repo_{metadata.name}.json", metadata.to_dict(), "repository metadata"
        )

    def get_repository_metadata(self, repo_name: str) -> RepositoryMetadata:
        """Load a repository's metadata, raising StoreError if it is absent."""
        if not repo_name:
            raise StoreError("repository name cannot be empty")
        data = self._read(
            f"repo_{repo_name}.json",
            "repository metadata",
            f"repository metadata not found for: {repo_name}",
        )
        return RepositoryMetadata.from_dict(data)