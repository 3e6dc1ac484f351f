"""DuckDB-backed key-value store."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Optional

import duckdb

from marks_vault.automation.store.interface import ChangeListener
from marks_vault.automation.store.memory import _notify


class DuckDBKeyValueStore:
    def __init__(self, db_path: Optional[Path] = None) -> None:
        if db_path is None:
            base = Path(__file__).resolve().parents[2] / "data"
            base.mkdir(parents=True, exist_ok=True)
            db_path = base / "marks_vault.duckdb"
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.con = duckdb.connect(str(self.db_path))
        self._listeners: List[ChangeListener] = []
        self._init_schema()

    def _init_schema(self) -> None:
        self.con.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT
            )
            """
        )

    # ---- helpers ----
    @staticmethod
    def _json_dump(data: Any) -> str:
        return json.dumps(data, ensure_ascii=False)

    @staticmethod
    def _json_load(text: Optional[str]) -> Optional[Any]:
        return json.loads(text) if text else None

    # ---- KV ----
    async def get(self, key: str) -> Optional[Any]:
        row = self.con.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return self._json_load(row[0]) if row else None

    async def set(self, key: str, value: Any) -> None:
        old = await self.get(key)
        text = self._json_dump(value)
        self.con.execute(
            """
            INSERT INTO kv (key, value) VALUES (?, ?)
            ON CONFLICT (key) DO UPDATE SET value = excluded.value
            """,
            (key, text),
        )
        await _notify(self._listeners, key, old, self._json_load(text))

    async def remove(self, key: str) -> None:
        old = await self.get(key)
        if old is None:
            return
        self.con.execute("DELETE FROM kv WHERE key = ?", (key,))
        await _notify(self._listeners, key, old, None)

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def keys(self) -> List[str]:
        return [row[0] for row in self.con.execute("SELECT key FROM kv ORDER BY key").fetchall()]

    def close(self) -> None:
        self.con.close()


__all__ = ["DuckDBKeyValueStore"]
