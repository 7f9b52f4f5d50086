"""SQLite backed delivery log of the messages sent by the gateway."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import aiosqlite


class DeliveryLog:
    """Helper class responsible for recording delivery outcomes."""

    def __init__(self, db_path: str = "/data/message_gateway.db"):
        """Persist data to the given database path (``:memory:`` allowed)."""
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS deliveries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    source TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error TEXT,
                    created_ts INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_deliveries_tenant ON deliveries(tenant_id, created_ts)"
            )
            await db.commit()

    async def log_delivery(
        self,
        tenant_id: str,
        recipient: str,
        *,
        source: str,
        status: str,
        error: Optional[str] = None,
        ts: Optional[int] = None,
    ) -> None:
        """Record one delivery attempt."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO deliveries (tenant_id, recipient, source, status, error, created_ts)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (tenant_id, recipient, source, status, error, int(ts if ts is not None else time.time())),
            )
            await db.commit()

    async def list_deliveries(self, tenant_id: Optional[str] = None, *, limit: int = 100) -> List[Dict[str, Any]]:
        """Return the most recent deliveries, newest first."""
        query = "SELECT id, tenant_id, recipient, source, status, error, created_ts FROM deliveries"
        params: List[Any] = []
        if tenant_id is not None:
            query += " WHERE tenant_id=?"
            params.append(tenant_id)
        query += " ORDER BY created_ts DESC, id DESC LIMIT ?"
        params.append(int(limit))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def count_since(self, tenant_id: str, since_ts: int, *, status: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) FROM deliveries WHERE tenant_id=? AND created_ts>=?"
        params: List[Any] = [tenant_id, since_ts]
        if status is not None:
            query += " AND status=?"
            params.append(status)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def remove_before(self, threshold_ts: int) -> int:
        """Delete entries older than ``threshold_ts``; return how many were removed."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM deliveries WHERE created_ts < ?", (threshold_ts,))
            await db.commit()
            return cursor.rowcount or 0
