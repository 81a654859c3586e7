"""
Record storage for settlement tables.

The engine only needs save / find_one / find / update against named tables
of JSON-compatible documents. ``update`` applies its patch only to rows
matching every criterion and reports how many rows changed, which is what
FeeLedger uses as a compare-and-set.

Criteria values may be a scalar (equality) or a list/tuple (membership).
"""
from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


@runtime_checkable
class RecordStore(Protocol):
    """Persistence port used by the ledger, orchestrator and split payments."""

    async def save(self, table: str, record: Document) -> Document: ...

    async def find_one(self, table: str, criteria: Document) -> Optional[Document]: ...

    async def find(
        self,
        table: str,
        criteria: Optional[Document] = None,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        newest_first: bool = False,
    ) -> List[Document]: ...

    async def update(self, table: str, criteria: Document, patch: Document) -> int: ...


def _matches(doc: Document, criteria: Document) -> bool:
    for key, expected in criteria.items():
        actual = doc.get(key)
        if isinstance(expected, (list, tuple, set)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class InMemoryRecordStore:
    """Process-local store; documents are copied in and out."""

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, Document]] = {}

    async def save(self, table: str, record: Document) -> Document:
        if "id" not in record:
            raise ValueError(f"Record for {table} has no id")
        doc = copy.deepcopy(record)
        self._tables.setdefault(table, {})[str(doc["id"])] = doc
        return copy.deepcopy(doc)

    async def find_one(self, table: str, criteria: Document) -> Optional[Document]:
        for doc in self._tables.get(table, {}).values():
            if _matches(doc, criteria):
                return copy.deepcopy(doc)
        return None

    async def find(
        self,
        table: str,
        criteria: Optional[Document] = None,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        newest_first: bool = False,
    ) -> List[Document]:
        rows = [
            doc for doc in self._tables.get(table, {}).values()
            if _matches(doc, criteria or {})
        ]
        if newest_first:
            rows.sort(key=lambda d: str(d.get("created_at") or ""), reverse=True)
        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(d) for d in rows]

    async def update(self, table: str, criteria: Document, patch: Document) -> int:
        count = 0
        for doc in self._tables.get(table, {}).values():
            if _matches(doc, criteria):
                doc.update(copy.deepcopy(patch))
                count += 1
        return count

    async def close(self) -> None:
        return None


class PostgresRecordStore:
    """PostgreSQL store keeping each table's documents in one JSONB column.

    Schema (created on first use):
        velo_records(table_name text, id text, doc jsonb,
                     created_at timestamptz, PRIMARY KEY (table_name, id))
    """

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS velo_records (
            table_name TEXT NOT NULL,
            id TEXT NOT NULL,
            doc JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (table_name, id)
        );
        CREATE INDEX IF NOT EXISTS velo_records_doc_idx
            ON velo_records USING GIN (doc jsonb_path_ops);
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._pool = None

    async def _get_pool(self):
        if self._pool is None:
            import asyncpg
            dsn = self._dsn
            if dsn.startswith("postgres://"):
                dsn = dsn.replace("postgres://", "postgresql://", 1)
            self._pool = await asyncpg.create_pool(dsn, min_size=1, max_size=5)
            async with self._pool.acquire() as conn:
                await conn.execute(self._SCHEMA)
        return self._pool

    @staticmethod
    def _where(table: str, criteria: Document) -> tuple[str, list[Any]]:
        """Build a WHERE clause; equality via @>, membership via ANY."""
        clauses = ["table_name = $1"]
        params: list[Any] = [table]
        equal = {k: v for k, v in criteria.items() if not isinstance(v, (list, tuple, set))}
        if equal:
            params.append(json.dumps(equal))
            clauses.append(f"doc @> ${len(params)}::jsonb")
        for key, values in criteria.items():
            if key in equal:
                continue
            params.append(key)
            key_idx = len(params)
            params.append([str(v) for v in values])
            clauses.append(f"doc->>${key_idx} = ANY(${len(params)}::text[])")
        return " AND ".join(clauses), params

    async def save(self, table: str, record: Document) -> Document:
        if "id" not in record:
            raise ValueError(f"Record for {table} has no id")
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO velo_records (table_name, id, doc)
                VALUES ($1, $2, $3::jsonb)
                ON CONFLICT (table_name, id) DO UPDATE SET doc = EXCLUDED.doc
                """,
                table,
                str(record["id"]),
                json.dumps(record),
            )
        return dict(record)

    async def find_one(self, table: str, criteria: Document) -> Optional[Document]:
        rows = await self.find(table, criteria, limit=1)
        return rows[0] if rows else None

    async def find(
        self,
        table: str,
        criteria: Optional[Document] = None,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        newest_first: bool = False,
    ) -> List[Document]:
        where, params = self._where(table, criteria or {})
        order = "DESC" if newest_first else "ASC"
        query = f"SELECT doc FROM velo_records WHERE {where} ORDER BY created_at {order}"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        if offset:
            params.append(offset)
            query += f" OFFSET ${len(params)}"
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [json.loads(r["doc"]) if isinstance(r["doc"], str) else dict(r["doc"]) for r in rows]

    async def update(self, table: str, criteria: Document, patch: Document) -> int:
        where, params = self._where(table, criteria)
        params.append(json.dumps(patch))
        query = f"UPDATE velo_records SET doc = doc || ${len(params)}::jsonb WHERE {where}"
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(query, *params)
        # asyncpg returns e.g. "UPDATE 1"
        try:
            return int(status.split()[-1])
        except (ValueError, IndexError):
            logger.warning(f"Unexpected UPDATE status from Postgres: {status!r}")
            return 0

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


def create_record_store(database_url: str) -> RecordStore:
    if database_url.startswith(("postgres://", "postgresql://")):
        return PostgresRecordStore(database_url)
    return InMemoryRecordStore()
