"""
Netatmo Crawler - State store
SQLite key/value store holding the last published value per state key.
"""

import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, Optional
from contextlib import contextmanager

from config import CrawlerConfig
from core.models import PreviousStates, PublishedState, StateWrite


# ============================================================================
# DATABASE SCHEMA
# ============================================================================

SCHEMA = """
CREATE TABLE IF NOT EXISTS states (
    key TEXT PRIMARY KEY,             -- stationName.measurementName
    station_id TEXT,                  -- raw provider id (empty for info.*)
    name TEXT NOT NULL,               -- measurement / state name
    value TEXT,                       -- JSON encoded
    ack INTEGER NOT NULL DEFAULT 1,
    ts DATETIME,                      -- observation timestamp (UTC ISO)
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_states_station
ON states(station_id, name);
"""


def _encode_ts(timestamp: Optional[datetime]) -> Optional[str]:
    return timestamp.isoformat() if timestamp is not None else None


def _decode_ts(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


class StateStore:
    """Durable state store backed by SQLite."""

    def __init__(self, path: str):
        self.path = path

    @classmethod
    def from_config(cls, config: CrawlerConfig) -> "StateStore":
        store = cls(config.database_path)
        store.init()
        return store

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init(self) -> None:
        with self.get_connection() as conn:
            conn.executescript(SCHEMA)

    def _row_to_state(self, row: sqlite3.Row) -> PublishedState:
        return PublishedState(
            station_id=row["station_id"] or "",
            name=row["name"],
            value=json.loads(row["value"]) if row["value"] is not None else None,
            ack=bool(row["ack"]),
            timestamp=_decode_ts(row["ts"]),
        )

    def read(self, key: str) -> Optional[PublishedState]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM states WHERE key = ?", (key,)).fetchone()
        return self._row_to_state(row) if row else None

    def write(self, key: str, value: Any, ack: bool = True, timestamp: Optional[datetime] = None,
              station_id: str = "", name: Optional[str] = None) -> None:
        with self.get_connection() as conn:
            self._upsert(conn, key, value, ack, timestamp, station_id, name)

    def write_many(self, writes: Iterable[StateWrite]) -> int:
        count = 0
        with self.get_connection() as conn:
            for w in writes:
                self._upsert(conn, w.key, w.value, w.ack, w.timestamp, w.station_id, w.name)
                count += 1
        return count

    def _upsert(self, conn, key, value, ack, timestamp, station_id, name) -> None:
        conn.execute(
            """
            INSERT INTO states (key, station_id, name, value, ack, ts, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET
                station_id = excluded.station_id,
                name = excluded.name,
                value = excluded.value,
                ack = excluded.ack,
                ts = excluded.ts,
                updated_at = CURRENT_TIMESTAMP
            """,
            (key, station_id, name or key.rsplit(".", 1)[-1], json.dumps(value), int(bool(ack)), _encode_ts(timestamp)),
        )

    def snapshot(self, keys: Optional[Iterable[str]] = None) -> PreviousStates:
        """Last published values keyed `stationName.measurementName`."""
        with self.get_connection() as conn:
            if keys is None:
                rows = conn.execute("SELECT * FROM states WHERE station_id != ''").fetchall()
            else:
                wanted = list(keys)
                if not wanted:
                    return {}
                placeholders = ",".join("?" for _ in wanted)
                rows = conn.execute(
                    f"SELECT * FROM states WHERE key IN ({placeholders})", wanted
                ).fetchall()
        return {row["key"]: self._row_to_state(row) for row in rows}


class MemoryStateStore:
    """In-process store with the StateStore interface (tests, --dry-run)."""

    def __init__(self):
        self.states: Dict[str, PublishedState] = {}
        self.history: list = []

    def read(self, key: str) -> Optional[PublishedState]:
        return self.states.get(key)

    def write(self, key: str, value: Any, ack: bool = True, timestamp: Optional[datetime] = None,
              station_id: str = "", name: Optional[str] = None) -> None:
        state = PublishedState(
            station_id=station_id,
            name=name or key.rsplit(".", 1)[-1],
            value=value,
            ack=ack,
            timestamp=timestamp,
        )
        self.states[key] = state
        self.history.append((key, state))

    def write_many(self, writes: Iterable[StateWrite]) -> int:
        count = 0
        for w in writes:
            self.write(w.key, w.value, w.ack, w.timestamp, w.station_id, w.name)
            count += 1
        return count

    def snapshot(self, keys: Optional[Iterable[str]] = None) -> PreviousStates:
        if keys is None:
            return {key: s for key, s in self.states.items() if s.station_id}
        return {key: self.states[key] for key in keys if key in self.states}
