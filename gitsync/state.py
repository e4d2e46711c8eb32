"""Persistence of the last synchronised commit per repository and peer."""

from __future__ import annotations

import json
import threading
from pathlib import Path


class SyncStateManager:
    """Tracks sync points in `<base_dir>/.gitsync/sync_state.json`."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)
        self._lock = threading.RLock()
        self._state: dict[str, dict[str, str]] = {}
        self._load()

    @property
    def state_path(self) -> Path:
        return self.base_dir / ".gitsync" / "sync_state.json"

    def last_sync_point(self, repo_path: str, peer_id: str) -> str:
        """Last successfully synced commit, or an empty string if none."""
        with self._lock:
            return self._state.get(repo_path, {}).get(peer_id, "")

    def update_sync_point(
        self, repo_path: str, peer_id: str, commit_hash: str, success: bool
    ) -> None:
        """Record a sync attempt; only successful ones move the sync point."""
        with self._lock:
            peers = self._state.setdefault(repo_path, {})
            if success:
                peers[peer_id] = commit_hash
            self._save()

    def _load(self) -> None:
        try:
            text = self.state_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except OSError as exc:
            raise OSError(f"failed to load state: failed to read state file: {exc}") from exc
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"failed to load state: {exc}") from exc
        if data is None:
            return
        if not isinstance(data, dict) or not all(
            isinstance(peers, dict) and all(isinstance(v, str) for v in peers.values())
            for peers in data.values()
        ):
            raise ValueError("failed to load state: unexpected state file layout")
        self._state = {repo: dict(peers) for repo, peers in data.items()}

    def _save(self) -> None:
        path = self.state_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self._state, indent=2, sort_keys=True), encoding="utf-8")