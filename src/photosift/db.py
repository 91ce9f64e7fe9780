"""SQLite library index: image records, duplicate groups and preferences."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from photosift.config import config_dir

import contextlib
import datetime
import logging
import pathlib
import sqlite3


logger = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS images (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT UNIQUE NOT NULL,
    filename TEXT NOT NULL,
    directory TEXT NOT NULL,
    hash TEXT NOT NULL,
    perceptual_hash TEXT,
    size INTEGER NOT NULL,
    width INTEGER,
    height INTEGER,
    format TEXT,
    thumbnail_path TEXT,
    modified_at REAL,
    created_at TEXT NOT NULL,
    last_scanned_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_images_hash ON images(hash);
CREATE INDEX IF NOT EXISTS idx_images_perceptual_hash ON images(perceptual_hash);
CREATE TABLE IF NOT EXISTS duplicate_groups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    hash TEXT UNIQUE NOT NULL,
    count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS duplicate_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL REFERENCES duplicate_groups(id) ON DELETE CASCADE,
    image_id INTEGER NOT NULL UNIQUE REFERENCES images(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    UNIQUE (group_id, image_id)
);
CREATE INDEX IF NOT EXISTS idx_duplicate_items_group_id ON duplicate_items(group_id);
CREATE TABLE IF NOT EXISTS preferences (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def _default_db_path() -> pathlib.Path:
    """Return the default central database path."""
    return config_dir() / "photosift.db"


def now() -> str:
    return datetime.datetime.now().isoformat()


@dataclass(frozen=True)
class ImageRecord:
    """A persisted, hashed file."""

    id: int
    path: str
    filename: str
    directory: str
    hash: str
    size: int
    modified_at: float | None = None
    perceptual_hash: str | None = None
    width: int | None = None
    height: int | None = None
    format: str | None = None
    thumbnail_path: str | None = None
    created_at: str | None = None
    last_scanned_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ImageRecord:
        return cls(**{key: row[key] for key in row.keys()})


class LibraryDB:
    """SQLite-backed library index.

    The connection runs in autocommit mode; multi-statement mutations are
    grouped with :meth:`transaction`, which nests so that a repository
    method can be called on its own or as part of a larger operation.
    """

    def __init__(self, db_path: pathlib.Path | None = None) -> None:
        self.db_path = db_path if db_path is not None else _default_db_path()
        self._conn = sqlite3.connect(self.db_path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(_SCHEMA)
        self._depth = 0

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements atomically.

        Only the outermost block commits or rolls back.
        """
        if self._depth:
            self._depth += 1
            try:
                yield self._conn
            finally:
                self._depth -= 1
            return

        self._conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self._conn
        except BaseException:
            self._depth = 0
            self._conn.execute("ROLLBACK")
            raise
        self._depth = 0
        self._conn.execute("COMMIT")

    def upsert_image(
        self,
        *,
        path: str,
        hash: str,
        size: int,
        modified_at: float | None = None,
        perceptual_hash: str | None = None,
        width: int | None = None,
        height: int | None = None,
        format: str | None = None,
        thumbnail_path: str | None = None,
    ) -> ImageRecord:
        """Insert an image record, or refresh the one already stored at *path*."""
        p = pathlib.Path(path)
        stamp = now()
        self._conn.execute(
            "INSERT INTO images (path, filename, directory, hash, perceptual_hash, size, "
            "width, height, format, thumbnail_path, modified_at, created_at, last_scanned_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(path) DO UPDATE SET "
            "hash = excluded.hash, perceptual_hash = excluded.perceptual_hash, "
            "size = excluded.size, width = excluded.width, height = excluded.height, "
            "format = excluded.format, thumbnail_path = excluded.thumbnail_path, "
            "modified_at = excluded.modified_at, last_scanned_at = excluded.last_scanned_at",
            (
                str(p), p.name, str(p.parent), hash, perceptual_hash, size,
                width, height, format, thumbnail_path, modified_at, stamp, stamp,
            ),
        )
        logger.debug(f"upserted image {p} ({hash[:12]}..)")
        row = self._conn.execute("SELECT * FROM images WHERE path = ?", (str(p),)).fetchone()
        return ImageRecord.from_row(row)

    def get_image(self, image_id: int) -> ImageRecord | None:
        row = self._conn.execute("SELECT * FROM images WHERE id = ?", (image_id,)).fetchone()
        return ImageRecord.from_row(row) if row else None

    def get_image_by_path(self, path: str) -> ImageRecord | None:
        row = self._conn.execute("SELECT * FROM images WHERE path = ?", (path,)).fetchone()
        return ImageRecord.from_row(row) if row else None

    def get_images_by_hash(self, hash: str) -> list[ImageRecord]:
        """Get all records for a given hash, oldest first."""
        cursor = self._conn.execute("SELECT * FROM images WHERE hash = ? ORDER BY id", (hash,))
        return [ImageRecord.from_row(row) for row in cursor.fetchall()]

    def list_images(self, limit: int = 100, offset: int = 0) -> list[ImageRecord]:
        cursor = self._conn.execute(
            "SELECT * FROM images ORDER BY path LIMIT ? OFFSET ?", (limit, offset)
        )
        return [ImageRecord.from_row(row) for row in cursor.fetchall()]

    def images_under(self, directory: str) -> list[ImageRecord]:
        """Records stored at or below *directory*."""
        prefix = directory.rstrip("/\\") + "/"
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        cursor = self._conn.execute(
            "SELECT * FROM images WHERE directory = ? OR path LIKE ? ESCAPE '\\' ORDER BY path",
            (directory.rstrip("/\\"), escaped + "%"),
        )
        return [ImageRecord.from_row(row) for row in cursor.fetchall()]

    def count_images(self) -> int:
        """Return the total number of image records."""
        return self._conn.execute("SELECT COUNT(*) FROM images").fetchone()[0]

    def duplicate_hashes(self) -> list[dict[str, object]]:
        """Find hashes that appear at more than one path."""
        cursor = self._conn.execute(
            "SELECT hash, COUNT(*) AS count FROM images GROUP BY hash HAVING count > 1 ORDER BY hash"
        )
        return [dict(row) for row in cursor.fetchall()]

    def delete_image(self, image_id: int) -> bool:
        """Delete an image row.

        Callers that care about duplicate groups go through
        ``DuplicateGrouper.detach_image`` first; the foreign key cascade
        only drops the membership row and would leave the group count stale.
        """
        cursor = self._conn.execute("DELETE FROM images WHERE id = ?", (image_id,))
        return cursor.rowcount > 0

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
