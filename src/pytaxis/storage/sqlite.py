"""SQLite-backed storage implementation for pytaxis.

Design Pattern: Adapter Pattern
SqliteStateStore adapts a SQLite database to the StateStore interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- Execution and Flow records stored as pickled BLOBs next to the indexed
  columns the queries filter on
- optimistic concurrency: `UPDATE ... WHERE version = ?`
- leases and dedup claims as conditional upserts, so one statement decides
  ownership atomically
"""

from __future__ import annotations

import asyncio
import pickle
import time
from pathlib import Path
from typing import Any

import aiosqlite

from pytaxis.errors import StaleWriteError
from pytaxis.models import Execution, ExecutionState, Flow
from pytaxis.storage.base import StateStore, StorageError, check_flow_revision


def _now_ms() -> int:
    return int(time.time() * 1000)


class SqliteStateStore(StateStore):
    """SQLite-backed durable storage.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        store = SqliteStateStore("pytaxis.db")
        await store.connect()
        try:
            await store.save_execution(execution)
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

    @classmethod
    async def in_memory(cls) -> SqliteStateStore:
        """
        Create an in-memory SQLite storage for testing.

        Example:
            store = await SqliteStateStore.in_memory()
            # Ready to use immediately
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteStateStore(in-memory)"
        return f"SqliteStateStore({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema."""
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit mode for better concurrency
        )

        # In-memory databases return "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")
        await self._create_schema()
        await self._connection.commit()

    async def _create_schema(self) -> None:
        """Create database tables and indexes.

        Timestamps are INTEGER milliseconds since the epoch.
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                namespace TEXT NOT NULL,
                flow_id TEXT NOT NULL,
                state TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                data BLOB NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_flow_state
            ON executions(namespace, flow_id, state, created_at)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS flows (
                namespace TEXT NOT NULL,
                flow_id TEXT NOT NULL,
                revision INTEGER NOT NULL,
                data BLOB NOT NULL,
                PRIMARY KEY (namespace, flow_id, revision)
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS trigger_state (
                trigger_key TEXT PRIMARY KEY,
                watermark BLOB
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS dedup_keys (
                dedup_key TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                expires_at INTEGER NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS leases (
                name TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                expires_at INTEGER NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS members (
                group_name TEXT NOT NULL,
                member TEXT NOT NULL,
                expires_at INTEGER NOT NULL,
                PRIMARY KEY (group_name, member)
            )
        """)

    def _check_connected(self) -> None:
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    # ========================================================================
    # Execution Repository
    # ========================================================================

    async def save_execution(self, execution: Execution) -> Execution:
        """Persist an Execution.

        Design Pattern: Optimistic Concurrency Control
        The UPDATE only matches the row written at the version the caller
        read; a zero row count means another writer got there first.
        """
        self._check_connected()

        expected = execution.version
        execution.version = expected + 1
        data = pickle.dumps(execution)

        async with self._lock:
            try:
                if expected == 0:
                    cursor = await self._connection.execute(
                        """
                        INSERT INTO executions (id, namespace, flow_id, state, version, created_at, data)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(id) DO NOTHING
                    """,
                        (
                            execution.id,
                            execution.namespace,
                            execution.flow_id,
                            execution.state.value,
                            execution.version,
                            int(execution.created_at.timestamp() * 1000),
                            data,
                        ),
                    )
                else:
                    cursor = await self._connection.execute(
                        """
                        UPDATE executions
                        SET state = ?, version = ?, data = ?
                        WHERE id = ? AND version = ?
                    """,
                        (execution.state.value, execution.version, data, execution.id, expected),
                    )
                updated = cursor.rowcount
                await cursor.close()
                await self._connection.commit()
            except Exception as e:
                execution.version = expected
                raise StorageError(f"Failed to save execution {execution.id}: {e}") from e

        if updated == 0:
            execution.version = expected
            raise StaleWriteError(
                f"Execution {execution.id} saved at version {expected} but the store moved on"
            )
        return execution

    async def find_execution(self, execution_id: str) -> Execution | None:
        self._check_connected()
        async with self._connection.execute(
            "SELECT data FROM executions WHERE id = ?", (execution_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return pickle.loads(row[0]) if row else None

    async def find_executions(
        self,
        state: ExecutionState | None = None,
        namespace: str | None = None,
        flow_id: str | None = None,
    ) -> list[Execution]:
        self._check_connected()
        clauses: list[str] = []
        params: list[Any] = []
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        if namespace is not None:
            clauses.append("namespace = ?")
            params.append(namespace)
        if flow_id is not None:
            clauses.append("flow_id = ?")
            params.append(flow_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self._connection.execute(
            f"SELECT data FROM executions {where} ORDER BY created_at ASC", params
        ) as cursor:
            rows = await cursor.fetchall()
        return [pickle.loads(row[0]) for row in rows]

    async def count_active(self, namespace: str, flow_id: str) -> int:
        self._check_connected()
        async with self._connection.execute(
            """
            SELECT COUNT(*) FROM executions
            WHERE namespace = ? AND flow_id = ? AND state IN (?, ?, ?)
        """,
            (
                namespace,
                flow_id,
                ExecutionState.RUNNING.value,
                ExecutionState.PAUSED.value,
                ExecutionState.KILLING.value,
            ),
        ) as cursor:
            row = await cursor.fetchone()
        return row[0]

    # ========================================================================
    # Flow Repository
    # ========================================================================

    async def save_flow(self, flow: Flow) -> None:
        self._check_connected()
        async with self._lock:
            existing = await self._get_flow(flow.namespace, flow.id, flow.revision)
            check_flow_revision(existing, flow)
            if existing is not None:
                return
            await self._connection.execute(
                "INSERT INTO flows (namespace, flow_id, revision, data) VALUES (?, ?, ?, ?)",
                (flow.namespace, flow.id, flow.revision, pickle.dumps(flow)),
            )
            await self._connection.commit()

    async def _get_flow(self, namespace: str, flow_id: str, revision: int | None) -> Flow | None:
        if revision is None:
            query = """
                SELECT data FROM flows WHERE namespace = ? AND flow_id = ?
                ORDER BY revision DESC LIMIT 1
            """
            params: tuple = (namespace, flow_id)
        else:
            query = "SELECT data FROM flows WHERE namespace = ? AND flow_id = ? AND revision = ?"
            params = (namespace, flow_id, revision)
        async with self._connection.execute(query, params) as cursor:
            row = await cursor.fetchone()
        return pickle.loads(row[0]) if row else None

    async def get_flow(self, namespace: str, flow_id: str, revision: int | None = None) -> Flow | None:
        self._check_connected()
        return await self._get_flow(namespace, flow_id, revision)

    async def list_flows(self) -> list[Flow]:
        self._check_connected()
        async with self._connection.execute("""
            SELECT f.data FROM flows f
            JOIN (
                SELECT namespace, flow_id, MAX(revision) AS revision
                FROM flows GROUP BY namespace, flow_id
            ) latest
            ON f.namespace = latest.namespace
               AND f.flow_id = latest.flow_id
               AND f.revision = latest.revision
            ORDER BY f.namespace, f.flow_id
        """) as cursor:
            rows = await cursor.fetchall()
        return [pickle.loads(row[0]) for row in rows]

    # ========================================================================
    # Trigger State
    # ========================================================================

    async def get_watermark(self, trigger_key: str) -> Any:
        self._check_connected()
        async with self._connection.execute(
            "SELECT watermark FROM trigger_state WHERE trigger_key = ?", (trigger_key,)
        ) as cursor:
            row = await cursor.fetchone()
        return pickle.loads(row[0]) if row and row[0] is not None else None

    async def set_watermark(self, trigger_key: str, watermark: Any) -> None:
        self._check_connected()
        async with self._lock:
            await self._connection.execute(
                """
                INSERT INTO trigger_state (trigger_key, watermark) VALUES (?, ?)
                ON CONFLICT(trigger_key) DO UPDATE SET watermark = excluded.watermark
            """,
                (trigger_key, pickle.dumps(watermark)),
            )
            await self._connection.commit()

    async def claim_dedup(self, dedup_key: str, execution_id: str, window: float) -> str | None:
        self._check_connected()
        now = _now_ms()
        async with self._lock:
            cursor = await self._connection.execute(
                """
                INSERT INTO dedup_keys (dedup_key, execution_id, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(dedup_key) DO UPDATE
                SET execution_id = excluded.execution_id, expires_at = excluded.expires_at
                WHERE dedup_keys.expires_at <= ?
            """,
                (dedup_key, execution_id, now + int(window * 1000), now),
            )
            claimed = cursor.rowcount > 0
            await cursor.close()
            await self._connection.commit()
            if claimed:
                return None
            async with self._connection.execute(
                "SELECT execution_id FROM dedup_keys WHERE dedup_key = ?", (dedup_key,)
            ) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else None

    # ========================================================================
    # Coordination
    # ========================================================================

    async def acquire_lease(self, name: str, owner: str, ttl: float) -> bool:
        self._check_connected()
        now = _now_ms()
        async with self._lock:
            cursor = await self._connection.execute(
                """
                INSERT INTO leases (name, owner, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE
                SET owner = excluded.owner, expires_at = excluded.expires_at
                WHERE leases.owner = excluded.owner OR leases.expires_at <= ?
            """,
                (name, owner, now + int(ttl * 1000), now),
            )
            acquired = cursor.rowcount > 0
            await cursor.close()
            await self._connection.commit()
        return acquired

    async def release_lease(self, name: str, owner: str) -> bool:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "DELETE FROM leases WHERE name = ? AND owner = ?", (name, owner)
            )
            released = cursor.rowcount > 0
            await cursor.close()
            await self._connection.commit()
        return released

    async def lease_owner(self, name: str) -> str | None:
        self._check_connected()
        async with self._connection.execute(
            "SELECT owner FROM leases WHERE name = ? AND expires_at > ?", (name, _now_ms())
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    async def register_member(self, group: str, member: str, ttl: float) -> None:
        self._check_connected()
        async with self._lock:
            await self._connection.execute(
                """
                INSERT INTO members (group_name, member, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(group_name, member) DO UPDATE SET expires_at = excluded.expires_at
            """,
                (group, member, _now_ms() + int(ttl * 1000)),
            )
            await self._connection.commit()

    async def remove_member(self, group: str, member: str) -> None:
        self._check_connected()
        async with self._lock:
            await self._connection.execute(
                "DELETE FROM members WHERE group_name = ? AND member = ?", (group, member)
            )
            await self._connection.commit()

    async def live_members(self, group: str) -> list[str]:
        self._check_connected()
        async with self._connection.execute(
            """
            SELECT member FROM members
            WHERE group_name = ? AND expires_at > ?
            ORDER BY member
        """,
            (group, _now_ms()),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    # ========================================================================
    # Utility Operations
    # ========================================================================

    async def reset(self) -> None:
        """Clear all data (for testing/demos).

        After reset, storage is empty but functional.
        """
        self._check_connected()
        async with self._lock:
            for table in ("executions", "flows", "trigger_state", "dedup_keys", "leases", "members"):
                await self._connection.execute(f"DELETE FROM {table}")
            await self._connection.commit()

    async def close(self) -> None:
        """Close storage connections.

        Explicit resource cleanup, not relying on GC.
        """
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
