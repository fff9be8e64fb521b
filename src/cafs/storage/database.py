"""SQLite-backed metadata store for CAFS."""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable
from pathlib import Path
from typing import Any

import aiosqlite

from cafs.models import CASEntry, isoformat_now


MIGRATIONS_DIR = Path(__file__).parent / "migrations"


class SQLiteMetadataStore:
    """Async SQLite metadata store.

    Reference counts live in their own column so increment() is a single
    UPDATE ... RETURNING statement, atomic across processes sharing the
    database file. Document changes go through update(), which holds a
    write transaction between read and write and never touches the count.

    Writes on the shared connection are serialized by an asyncio.Lock so
    one caller's transaction is never committed by another.
    """

    def __init__(self, db_path: Path, collection: str = "cafs_metadata"):
        self.db_path = db_path
        self.collection = collection
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open database connection and run migrations."""
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._run_migrations()

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _run_migrations(self) -> None:
        """Run pending migrations."""
        assert self._connection is not None

        try:
            async with self._connection.execute(
                "SELECT MAX(version) FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
                current_version = row[0] if row and row[0] else 0
        except sqlite3.OperationalError:
            current_version = 0

        for migration_file in sorted(MIGRATIONS_DIR.glob("*.sql")):
            version = int(migration_file.stem.split("_")[0])
            if version > current_version:
                await self._connection.executescript(migration_file.read_text())
                await self._connection.commit()

    @property
    def conn(self) -> aiosqlite.Connection:
        """Get active connection or raise."""
        if self._connection is None:
            raise RuntimeError("Metadata database not connected")
        return self._connection

    async def get(self, key: str) -> CASEntry | None:
        async with self.conn.execute(
            "SELECT document, reference_count FROM cas_entries "
            "WHERE collection = ? AND key = ?",
            (self.collection, key),
        ) as cursor:
            row = await cursor.fetchone()
            if not row:
                return None
            return self._row_to_entry(row)

    async def insert(self, key: str, entry: CASEntry) -> bool:
        """Create the entry unless one exists; False if it already did."""
        async with self._write_lock:
            cursor = await self.conn.execute(
                """
                INSERT INTO cas_entries (collection, key, content_hash, storage_path,
                                         reference_count, document, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (collection, key) DO NOTHING
                """,
                (
                    self.collection,
                    key,
                    entry.content_hash,
                    entry.storage_path,
                    entry.metadata.reference_count,
                    entry.to_document(),
                    isoformat_now(),
                ),
            )
            await self.conn.commit()
            return cursor.rowcount > 0

    async def update(self, key: str, mutate: Callable[[CASEntry], Any]) -> CASEntry | None:
        """Apply mutate to the stored entry inside one write transaction.

        The reference_count column is left alone; only increment() moves it.
        """
        async with self._write_lock:
            await self.conn.execute("BEGIN IMMEDIATE")
            try:
                async with self.conn.execute(
                    "SELECT document, reference_count FROM cas_entries "
                    "WHERE collection = ? AND key = ?",
                    (self.collection, key),
                ) as cursor:
                    row = await cursor.fetchone()
                if not row:
                    await self.conn.rollback()
                    return None

                entry = self._row_to_entry(row)
                mutate(entry)
                entry.metadata.reference_count = row["reference_count"]
                await self.conn.execute(
                    "UPDATE cas_entries SET document = ?, updated_at = ? "
                    "WHERE collection = ? AND key = ?",
                    (entry.to_document(), isoformat_now(), self.collection, key),
                )
                await self.conn.commit()
            except BaseException:
                await self.conn.rollback()
                raise
            return entry

    async def delete(self, key: str) -> bool:
        async with self._write_lock:
            cursor = await self.conn.execute(
                "DELETE FROM cas_entries WHERE collection = ? AND key = ?",
                (self.collection, key),
            )
            await self.conn.commit()
            return cursor.rowcount > 0

    async def increment(self, key: str, delta: int) -> int | None:
        """Adjust reference count atomically, return new value."""
        async with self._write_lock:
            async with self.conn.execute(
                "UPDATE cas_entries SET reference_count = MAX(0, reference_count + ?), "
                "updated_at = ? WHERE collection = ? AND key = ? RETURNING reference_count",
                (delta, isoformat_now(), self.collection, key),
            ) as cursor:
                row = await cursor.fetchone()
            await self.conn.commit()
            return row[0] if row else None

    async def count(self) -> int:
        """Number of entries in this collection."""
        async with self.conn.execute(
            "SELECT COUNT(*) FROM cas_entries WHERE collection = ?",
            (self.collection,),
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    def _row_to_entry(self, row: aiosqlite.Row) -> CASEntry:
        """Convert database row to CASEntry model."""
        entry = CASEntry.from_document(row["document"])
        entry.metadata.reference_count = row["reference_count"]
        return entry
