"""
Persistence boundary of the trading engine.

The engine only talks to the ``EngineStore`` protocol. ``JsonEngineStore``
keeps one JSON document per user, written atomically. Every write is an
upsert keyed by a stable id, so repeating a write is harmless.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Optional, Protocol

from ..config import DATA_DIR

logger = logging.getLogger(__name__)

# Trades kept per user
MAX_TRADES = 1000


class EngineStore(Protocol):
    """Storage operations the engine depends on."""

    def load_config(self, user_id: str) -> Optional[dict[str, Any]]: ...

    def save_config(self, user_id: str, config: dict[str, Any]) -> None: ...

    def load_positions(self, user_id: str) -> list[dict[str, Any]]: ...

    def save_positions(self, user_id: str, positions: list[dict[str, Any]]) -> None: ...

    def upsert_trade(self, user_id: str, trade: dict[str, Any]) -> None: ...

    def load_trades(self, user_id: str, limit: int = 100) -> list[dict[str, Any]]: ...

    def load_stats(self, user_id: str) -> Optional[dict[str, Any]]: ...

    def save_stats(self, user_id: str, stats: dict[str, Any]) -> None: ...


class JsonEngineStore:
    """
    JSON-file implementation of EngineStore.

    Layout: ``<root>/<user_id>.json`` with ``config``, ``positions``
    (keyed by token id), ``trades`` (keyed by trade id) and ``stats``.

    Example:
        store = JsonEngineStore(DATA_DIR / "engine")
        store.upsert_trade("alice", result.to_dict())
    """

    def __init__(self, root: Path = DATA_DIR / "engine"):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, user_id: str) -> Path:
        safe = "".join(c for c in user_id if c.isalnum() or c in "-_.") or "default"
        return self.root / f"{safe}.json"

    def _read(self, user_id: str) -> dict[str, Any]:
        path = self._path(user_id)
        if not path.exists():
            return {"config": None, "positions": {}, "trades": {}, "stats": None}
        with open(path) as f:
            return json.load(f)

    def _write(self, user_id: str, document: dict[str, Any]) -> None:
        path = self._path(user_id)
        fd, tmp = tempfile.mkstemp(dir=self.root, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(document, f, indent=2, default=str)
            os.replace(tmp, path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _update(self, user_id: str, key: str, value: Any) -> None:
        with self._lock:
            document = self._read(user_id)
            document[key] = value
            self._write(user_id, document)

    def load_config(self, user_id: str) -> Optional[dict[str, Any]]:
        return self._read(user_id).get("config")

    def save_config(self, user_id: str, config: dict[str, Any]) -> None:
        self._update(user_id, "config", config)

    def load_positions(self, user_id: str) -> list[dict[str, Any]]:
        return list(self._read(user_id).get("positions", {}).values())

    def save_positions(self, user_id: str, positions: list[dict[str, Any]]) -> None:
        """Replace the stored positions with the current set."""
        self._update(user_id, "positions", {p["token_id"]: p for p in positions})

    def upsert_trade(self, user_id: str, trade: dict[str, Any]) -> None:
        with self._lock:
            document = self._read(user_id)
            trades = document.setdefault("trades", {})
            trades[trade["trade_id"]] = trade
            if len(trades) > MAX_TRADES:
                ordered = sorted(trades.values(), key=lambda t: t.get("timestamp", ""))
                document["trades"] = {t["trade_id"]: t for t in ordered[-MAX_TRADES:]}
            self._write(user_id, document)

    def load_trades(self, user_id: str, limit: int = 100) -> list[dict[str, Any]]:
        trades = list(self._read(user_id).get("trades", {}).values())
        trades.sort(key=lambda t: t.get("timestamp", ""), reverse=True)
        return trades[:limit]

    def load_stats(self, user_id: str) -> Optional[dict[str, Any]]:
        return self._read(user_id).get("stats")

    def save_stats(self, user_id: str, stats: dict[str, Any]) -> None:
        self._update(user_id, "stats", stats)
