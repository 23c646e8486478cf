"""SQLite-backed JokeStore.

The sqlite3 driver is blocking, so every query runs in the default
executor.  A single connection is shared and guarded by a lock; SQLite
serialises writes anyway and the traffic is a handful of rows per call.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from .base import DEFAULT_RATING, Joke, JokeStore

log = logging.getLogger("jokeline.store.sqlite")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jokes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content TEXT NOT NULL,
    elo_rating REAL NOT NULL DEFAULT 1500,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_elo_rating ON jokes(elo_rating DESC);
CREATE INDEX IF NOT EXISTS idx_created_at ON jokes(created_at DESC);
"""


def _row_to_joke(row: sqlite3.Row) -> Joke:
    return Joke(
        id=row["id"],
        content=row["content"],
        elo_rating=row["elo_rating"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class SqliteJokeStore(JokeStore):
    """JokeStore over a local SQLite file (or ``:memory:``)."""

    def __init__(self, path: str | Path, initial_rating: float = DEFAULT_RATING) -> None:
        self._path = str(path)
        self._initial_rating = initial_rating

        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        self._lock = threading.Lock()
        log.info("Joke store opened at %s", self._path)

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()

        def locked() -> Any:
            with self._lock:
                return fn(*args)

        return await loop.run_in_executor(None, locked)

    # ── JokeStore interface ──────────────────────────────────────

    async def create(self, content: str) -> Joke:
        def insert() -> int:
            cur = self._conn.execute(
                "INSERT INTO jokes (content, elo_rating, created_at) VALUES (?, ?, ?)",
                (content, self._initial_rating, datetime.now(timezone.utc).isoformat()),
            )
            self._conn.commit()
            return cur.lastrowid

        joke_id = await self._run(insert)
        joke = await self.find_by_id(joke_id)
        log.info("Joke %d stored at rating %.1f", joke_id, self._initial_rating)
        return joke

    async def find_by_id(self, joke_id: int) -> Optional[Joke]:
        def select() -> Optional[sqlite3.Row]:
            return self._conn.execute(
                "SELECT * FROM jokes WHERE id = ?", (joke_id,)
            ).fetchone()

        row = await self._run(select)
        return _row_to_joke(row) if row else None

    async def update_rating(self, joke_id: int, rating: float) -> None:
        def update() -> None:
            self._conn.execute(
                "UPDATE jokes SET elo_rating = ? WHERE id = ?", (rating, joke_id)
            )
            self._conn.commit()

        await self._run(update)

    async def sample_for_comparison(
        self, n: int, exclude_id: Optional[int] = None,
    ) -> list[Joke]:
        if n <= 0:
            return []

        def select() -> list[sqlite3.Row]:
            if exclude_id is None:
                return self._conn.execute(
                    "SELECT * FROM jokes ORDER BY elo_rating DESC, id ASC LIMIT ?", (n,)
                ).fetchall()
            return self._conn.execute(
                "SELECT * FROM jokes WHERE id != ? ORDER BY elo_rating DESC, id ASC LIMIT ?",
                (exclude_id, n),
            ).fetchall()

        return [_row_to_joke(r) for r in await self._run(select)]

    async def best(self) -> Optional[Joke]:
        top = await self.top(1)
        return top[0] if top else None

    async def top(self, limit: int = 10) -> list[Joke]:
        def select() -> list[sqlite3.Row]:
            return self._conn.execute(
                "SELECT * FROM jokes ORDER BY elo_rating DESC, id ASC LIMIT ?", (limit,)
            ).fetchall()

        return [_row_to_joke(r) for r in await self._run(select)]

    def close(self) -> None:
        """Close the underlying connection. Safe to call multiple times."""
        try:
            self._conn.close()
        except sqlite3.Error:
            log.warning("Error closing joke store", exc_info=True)
