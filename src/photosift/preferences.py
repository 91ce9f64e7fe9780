"""Key/value preference store kept alongside the library index."""

from __future__ import annotations

from photosift.config import DEFAULT_EXCLUDE_PATTERNS
from photosift.db import LibraryDB
from photosift.db import now

import json
import logging


logger = logging.getLogger(__name__)

ROOT_DIRECTORY = "root_directory"
LAST_ACCESSED = "last_accessed"
WATCH_ENABLED = "watch_enabled"
SCAN_DEPTH = "scan_depth"
EXCLUDE_PATTERNS = "exclude_patterns"
LAST_SCAN_STATS = "last_scan_stats"

DEFAULTS: dict[str, object] = {
    ROOT_DIRECTORY: None,
    WATCH_ENABLED: True,
    SCAN_DEPTH: 10,
    EXCLUDE_PATTERNS: list(DEFAULT_EXCLUDE_PATTERNS),
}


class Preferences:
    """JSON-typed preferences stored in the ``preferences`` table."""

    def __init__(self, db: LibraryDB, defaults: dict[str, object] | None = None) -> None:
        self._db = db
        self._defaults = dict(DEFAULTS)
        if defaults:
            self._defaults.update({k: v for k, v in defaults.items() if v is not None})

    def get(self, key: str, default: object = None) -> object:
        """Return the stored value, else *default*, else the built-in default."""
        row = self._db.conn.execute(
            "SELECT value FROM preferences WHERE key = ?", (key,)
        ).fetchone()
        if row is not None:
            try:
                return json.loads(row["value"])
            except json.JSONDecodeError:
                logger.warning(f"Discarding corrupt preference {key!r}")
        if default is not None:
            return default
        value = self._defaults.get(key)
        # hand out copies so callers cannot mutate the defaults
        return list(value) if isinstance(value, list) else value

    def set(self, key: str, value: object) -> None:
        self._db.conn.execute(
            "INSERT INTO preferences (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (key, json.dumps(value), now()),
        )
        logger.debug(f"preference {key} = {value!r}")

    def delete(self, key: str) -> bool:
        cursor = self._db.conn.execute("DELETE FROM preferences WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def all(self) -> dict[str, object]:
        """Return defaults overlaid with every stored preference."""
        result = {k: self.get(k) for k in self._defaults}
        for row in self._db.conn.execute("SELECT key FROM preferences").fetchall():
            result[row["key"]] = self.get(row["key"])
        return result
