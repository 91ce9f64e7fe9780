"""Persisted duplicate groups derived from shared full hashes.

A group exists exactly while at least two image records share its hash.
Every mutation recounts the group inside the same transaction, and a group
that drops to a single member is deleted rather than kept around.
"""

from __future__ import annotations

from dataclasses import dataclass
from photosift.db import ImageRecord
from photosift.db import LibraryDB
from photosift.db import now
from photosift.hasher import find_duplicates

import logging
import sqlite3


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupRecord:
    """A persisted duplicate group."""

    id: int
    hash: str
    count: int
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> GroupRecord:
        return cls(
            id=row["id"],
            hash=row["hash"],
            count=row["count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class DuplicateItem:
    """Membership of one image in one group."""

    id: int
    group_id: int
    image_id: int
    created_at: str


@dataclass
class GroupWithImages:
    group: GroupRecord
    images: list[ImageRecord]


@dataclass(frozen=True)
class DuplicateStats:
    """Aggregate figures over all persisted groups."""

    total_groups: int
    total_duplicate_files: int
    largest_group_size: int
    potential_space_saved: int


class DuplicateGrouper:
    """Maintains the ``duplicate_groups`` and ``duplicate_items`` tables."""

    # In-memory grouping of fresh hash results; same contract as the
    # persisted groups, ordered most duplicated first.
    find_duplicates = staticmethod(find_duplicates)

    def __init__(self, db: LibraryDB) -> None:
        self._db = db

    @property
    def _conn(self) -> sqlite3.Connection:
        return self._db.conn

    # --- queries ---

    def get_group(self, group_id: int) -> GroupRecord | None:
        row = self._conn.execute(
            "SELECT * FROM duplicate_groups WHERE id = ?", (group_id,)
        ).fetchone()
        return GroupRecord.from_row(row) if row else None

    def get_group_by_hash(self, hash: str) -> GroupRecord | None:
        row = self._conn.execute(
            "SELECT * FROM duplicate_groups WHERE hash = ?", (hash,)
        ).fetchone()
        return GroupRecord.from_row(row) if row else None

    def get_group_for_image(self, image_id: int) -> GroupRecord | None:
        """Return the group *image_id* belongs to, if any."""
        row = self._conn.execute(
            "SELECT dg.* FROM duplicate_groups dg "
            "JOIN duplicate_items di ON di.group_id = dg.id WHERE di.image_id = ?",
            (image_id,),
        ).fetchone()
        return GroupRecord.from_row(row) if row else None

    def get_items(self, group_id: int) -> list[DuplicateItem]:
        cursor = self._conn.execute(
            "SELECT * FROM duplicate_items WHERE group_id = ? ORDER BY image_id", (group_id,)
        )
        return [
            DuplicateItem(id=r["id"], group_id=r["group_id"], image_id=r["image_id"], created_at=r["created_at"])
            for r in cursor.fetchall()
        ]

    def get_group_images(self, group_id: int) -> list[ImageRecord]:
        """Member image records of a group, in insertion order."""
        cursor = self._conn.execute(
            "SELECT i.* FROM images i JOIN duplicate_items di ON di.image_id = i.id "
            "WHERE di.group_id = ? ORDER BY i.id",
            (group_id,),
        )
        return [ImageRecord.from_row(row) for row in cursor.fetchall()]

    def list_groups(self, limit: int = 100, offset: int = 0) -> list[GroupRecord]:
        """Groups ordered by member count, then most recently updated."""
        cursor = self._conn.execute(
            "SELECT * FROM duplicate_groups WHERE count > 1 "
            "ORDER BY count DESC, updated_at DESC, id LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [GroupRecord.from_row(row) for row in cursor.fetchall()]

    def groups_with_images(self, limit: int = 50, offset: int = 0) -> list[GroupWithImages]:
        return [
            GroupWithImages(group=g, images=self.get_group_images(g.id))
            for g in self.list_groups(limit, offset)
        ]

    def inconsistent_groups(self) -> list[int]:
        """Ids of groups whose stored count disagrees with their rows or is below two."""
        cursor = self._conn.execute(
            "SELECT dg.id FROM duplicate_groups dg "
            "LEFT JOIN duplicate_items di ON di.group_id = dg.id "
            "GROUP BY dg.id HAVING dg.count != COUNT(di.id) OR COUNT(di.id) < 2 "
            "ORDER BY dg.id"
        )
        return [row["id"] for row in cursor.fetchall()]

    def get_stats(self) -> DuplicateStats:
        row = self._conn.execute(
            "SELECT COUNT(*) AS groups, COALESCE(SUM(count - 1), 0) AS redundant, "
            "COALESCE(MAX(count), 0) AS largest FROM duplicate_groups WHERE count > 1"
        ).fetchone()
        saved = self._conn.execute(
            "SELECT COALESCE(SUM(g.size * (g.count - 1)), 0) FROM ("
            "  SELECT dg.count AS count, MAX(i.size) AS size FROM duplicate_groups dg "
            "  JOIN duplicate_items di ON di.group_id = dg.id "
            "  JOIN images i ON i.id = di.image_id "
            "  WHERE dg.count > 1 GROUP BY dg.id"
            ") g"
        ).fetchone()[0]
        return DuplicateStats(
            total_groups=row["groups"],
            total_duplicate_files=row["redundant"],
            largest_group_size=row["largest"],
            potential_space_saved=saved,
        )

    # --- mutations ---

    def rebuild_all(self) -> tuple[int, int]:
        """Drop every group and derive them again from the images table.

        Returns (groups_created, items_created). Not meant to run while
        incremental updates are in flight.
        """
        groups_created = 0
        items_created = 0
        with self._db.transaction():
            self._conn.execute("DELETE FROM duplicate_items")
            self._conn.execute("DELETE FROM duplicate_groups")
            for dup in self._db.duplicate_hashes():
                group_id = self._create_group(dup["hash"])
                groups_created += 1
                for image in self._db.get_images_by_hash(dup["hash"]):
                    self._insert_item(group_id, image.id)
                    items_created += 1
                self._recount(group_id)
        logger.info(f"rebuilt {groups_created} duplicate group(s) with {items_created} item(s)")
        return groups_created, items_created

    def upsert_group(self, hash: str, image_id: int) -> GroupRecord | None:
        """Make *image_id* a member of the group for *hash*.

        An image that currently sits in the group of another hash is moved.
        A missing group is seeded from every image record carrying *hash*;
        if that yields fewer than two members no group is stored and None
        is returned.
        """
        with self._db.transaction():
            current = self.get_group_for_image(image_id)
            if current is not None and current.hash == hash:
                return current
            if current is not None:
                self._remove(current.id, image_id)

            group = self.get_group_by_hash(hash)
            if group is None:
                member_ids = {img.id for img in self._db.get_images_by_hash(hash)}
                member_ids.add(image_id)
                if len(member_ids) < 2:
                    return None
                group_id = self._create_group(hash)
                for member_id in sorted(member_ids):
                    other = self.get_group_for_image(member_id)
                    if other is not None:
                        self._remove(other.id, member_id)
                    self._insert_item(group_id, member_id)
            else:
                group_id = group.id
                self._insert_item(group_id, image_id)

            self._recount(group_id)
            logger.debug(f"image {image_id} joined group {group_id} ({hash[:12]}..)")
            return self.get_group(group_id)

    def remove_image_from_group(self, group_id: int, image_id: int) -> bool:
        """Remove one membership; a group left with one member is deleted."""
        with self._db.transaction():
            return self._remove(group_id, image_id)

    def detach_image(self, image_id: int) -> bool:
        """Remove *image_id* from whatever group holds it."""
        with self._db.transaction():
            group = self.get_group_for_image(image_id)
            if group is None:
                return False
            return self._remove(group.id, image_id)

    def delete_group(self, group_id: int) -> bool:
        with self._db.transaction():
            self._conn.execute("DELETE FROM duplicate_items WHERE group_id = ?", (group_id,))
            cursor = self._conn.execute("DELETE FROM duplicate_groups WHERE id = ?", (group_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.debug(f"deleted duplicate group {group_id}")
        return deleted

    def _create_group(self, hash: str) -> int:
        stamp = now()
        cursor = self._conn.execute(
            "INSERT INTO duplicate_groups (hash, count, created_at, updated_at) VALUES (?, 0, ?, ?)",
            (hash, stamp, stamp),
        )
        return cursor.lastrowid

    def _insert_item(self, group_id: int, image_id: int) -> None:
        self._conn.execute(
            "INSERT OR IGNORE INTO duplicate_items (group_id, image_id, created_at) VALUES (?, ?, ?)",
            (group_id, image_id, now()),
        )

    def _recount(self, group_id: int) -> int:
        self._conn.execute(
            "UPDATE duplicate_groups SET count = "
            "(SELECT COUNT(*) FROM duplicate_items WHERE group_id = ?), updated_at = ? WHERE id = ?",
            (group_id, now(), group_id),
        )
        row = self._conn.execute(
            "SELECT count FROM duplicate_groups WHERE id = ?", (group_id,)
        ).fetchone()
        return row["count"] if row else 0

    def _remove(self, group_id: int, image_id: int) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM duplicate_items WHERE group_id = ? AND image_id = ?",
            (group_id, image_id),
        )
        if cursor.rowcount == 0:
            return False
        if self._recount(group_id) <= 1:
            self.delete_group(group_id)
        return True
