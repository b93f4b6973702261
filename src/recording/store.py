"""SQLite store for legs, objects and features, with WAL mode for concurrent reads."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Iterable

from src.recording.models import Feature, Leg, TrackedObject

logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS records (
    kind TEXT NOT NULL,
    record_id INTEGER NOT NULL,
    settings TEXT NOT NULL,
    PRIMARY KEY (kind, record_id)
);
"""

UPSERT_SQL = """
INSERT OR REPLACE INTO records (kind, record_id, settings) VALUES (?, ?, ?);
"""

SELECT_KIND_SQL = """
SELECT settings FROM records WHERE kind = ? ORDER BY record_id
"""

KIND_FEATURE = "feature"
KIND_OBJECT = "object"
KIND_LEG = "leg"


class RunStore:
    """Persists each record as its ordered settings list."""

    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(CREATE_TABLE_SQL)
        self._conn.commit()
        logger.info("Run store initialized: %s", self._db_path)

    def _save(self, kind: str, rows: Iterable[tuple[int, list]]) -> int:
        payload = [(kind, record_id, json.dumps(settings)) for record_id, settings in rows]
        self._conn.executemany(UPSERT_SQL, payload)
        self._conn.commit()
        return len(payload)

    def _load(self, kind: str) -> list[list[str]]:
        cursor = self._conn.execute(SELECT_KIND_SQL, (kind,))
        return [[str(v) for v in json.loads(row[0])] for row in cursor.fetchall()]

    def save_features(self, features: Iterable[Feature]) -> int:
        return self._save(KIND_FEATURE, ((f.feature_id, f.get_settings()) for f in features))

    def save_objects(self, objects: Iterable[TrackedObject]) -> int:
        return self._save(KIND_OBJECT, ((o.object_id, o.get_settings()) for o in objects))

    def save_legs(self, legs: Iterable[Leg]) -> int:
        return self._save(KIND_LEG, ((leg.leg_id, leg.get_settings()) for leg in legs))

    def load_features(self) -> list[Feature]:
        return [Feature.load_settings(row) for row in self._load(KIND_FEATURE)]

    def load_objects(self) -> list[TrackedObject]:
        return [TrackedObject.load_settings(row) for row in self._load(KIND_OBJECT)]

    def load_legs(self) -> list[Leg]:
        return [Leg.load_settings(row) for row in self._load(KIND_LEG)]

    def get_stats(self) -> dict:
        """Record counts per kind."""
        cursor = self._conn.execute("SELECT kind, COUNT(*) FROM records GROUP BY kind")
        return {kind: count for kind, count in cursor.fetchall()}

    def clear_all(self) -> int:
        cursor = self._conn.execute("DELETE FROM records")
        self._conn.commit()
        logger.info("Cleared %d records", cursor.rowcount)
        return cursor.rowcount

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
