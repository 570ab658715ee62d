"""Sync history — an append-only audit log of SyncResults.

Every completed apply, check, or delete is recorded. The log is for
operators; the reconciler never reads it back to decide anything.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path

from appset.models.application import SyncResult


class SyncHistory:
    """Stores and retrieves SyncResults under a state directory."""

    HISTORY_FILE = "history.jsonl"

    def __init__(self, state_dir: str | Path):
        self.store_dir = Path(state_dir)
        self.store_file = self.store_dir / self.HISTORY_FILE
        self._lock = threading.Lock()

    def record(self, result: SyncResult) -> None:
        """Append a result."""
        line = json.dumps(result.to_dict(), sort_keys=True)
        with self._lock:
            self.store_dir.mkdir(parents=True, exist_ok=True)
            with open(self.store_file, "a") as f:
                f.write(line + "\n")

    def get_history(self, name: str | None = None, limit: int | None = None) -> list[SyncResult]:
        """Results in the order they were recorded, optionally for one application.

        With ``limit`` only the most recent ``limit`` results are returned.
        """
        if not self.store_file.exists():
            return []

        results = []
        with self._lock, open(self.store_file) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                if name and data.get("name") != name:
                    continue
                results.append(SyncResult.from_dict(data))
        if limit is not None:
            results = results[-limit:] if limit > 0 else []
        return results

    def get_latest(self, name: str) -> SyncResult | None:
        """The most recent result for an application."""
        history = self.get_history(name)
        return history[-1] if history else None

    def latest_per_app(self) -> dict[str, SyncResult]:
        latest: dict[str, SyncResult] = {}
        for result in self.get_history():
            latest[result.name] = result
        return latest
