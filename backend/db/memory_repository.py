"""
Memory persistence on top of the vector store.

Responsibilities:
- bootstrap the `memories` table on first use
- add columns introduced after the first release (usefulness, access stats)
- build the full-text index on `content` before the first hybrid query
- convert rows to `Memory` objects and back

Both setup steps are single-flight per repository instance: concurrent first
callers share one task, and a failed step is retried by the next caller.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from models import (
    DELETED,
    Memory,
    datetime_to_millis,
    millis_to_datetime,
    supersession_from_column,
    supersession_to_column,
    utc_now,
)

from .single_flight import SingleFlight
from .vector_store import (
    FTS_INDEX,
    ColumnSpec,
    RRFReranker,
    VectorStore,
    VectorTable,
)

logger = logging.getLogger(__name__)

TABLE_NAME = "memories"
FTS_COLUMN = "content"

MEMORY_SCHEMA = [
    ColumnSpec("id", "TEXT PRIMARY KEY"),
    ColumnSpec("vector", "TEXT NOT NULL"),
    ColumnSpec("content", "TEXT NOT NULL"),
    ColumnSpec("metadata", "TEXT NOT NULL DEFAULT '{}'"),
    ColumnSpec("created_at", "INTEGER NOT NULL"),
    ColumnSpec("updated_at", "INTEGER NOT NULL"),
    ColumnSpec("superseded_by", "TEXT"),
    ColumnSpec("usefulness", "REAL NOT NULL DEFAULT 0"),
    ColumnSpec("access_count", "INTEGER NOT NULL DEFAULT 0"),
    ColumnSpec("last_accessed", "INTEGER"),
]

# Columns added after the first schema; tables created earlier lack them.
MIGRATION_COLUMNS = {
    "usefulness": "REAL NOT NULL DEFAULT 0",
    "access_count": "INTEGER NOT NULL DEFAULT 0",
    "last_accessed": "INTEGER",
}


class SchemaMigrationError(RuntimeError):
    """Adding the missing columns to an existing table failed."""


@dataclass
class HybridRow:
    memory: Memory
    rrf_score: float


def _decode_metadata(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def row_to_memory(row: Dict[str, Any]) -> Memory:
    created_at = millis_to_datetime(row.get("created_at")) or utc_now()
    return Memory(
        id=str(row["id"]),
        content=str(row.get("content") or ""),
        embedding=list(row.get("vector") or []),
        metadata=_decode_metadata(row.get("metadata")),
        created_at=created_at,
        updated_at=millis_to_datetime(row.get("updated_at")) or created_at,
        supersession=supersession_from_column(row.get("superseded_by")),
        usefulness=float(row.get("usefulness") or 0.0),
        access_count=int(row.get("access_count") or 0),
        last_accessed=millis_to_datetime(row.get("last_accessed")),
    )


def memory_to_row(memory: Memory) -> Dict[str, Any]:
    return {
        "id": memory.id,
        "vector": list(memory.embedding),
        "content": memory.content,
        "metadata": json.dumps(memory.metadata, ensure_ascii=False),
        "created_at": datetime_to_millis(memory.created_at),
        "updated_at": datetime_to_millis(memory.updated_at),
        "superseded_by": supersession_to_column(memory.supersession),
        "usefulness": float(memory.usefulness),
        "access_count": int(memory.access_count),
        "last_accessed": (
            datetime_to_millis(memory.last_accessed)
            if memory.last_accessed is not None
            else None
        ),
    }


class MemoryRepository:
    def __init__(
        self,
        store: VectorStore,
        vector_dim: int,
        rrf_k: int = 60,
        index_wait_timeout: float = 30.0,
    ) -> None:
        self.store = store
        self.vector_dim = int(vector_dim)
        self.rrf_k = int(rrf_k)
        self.index_wait_timeout = float(index_wait_timeout)
        self._table: Optional[VectorTable] = None
        self._migration = SingleFlight("memories-schema-migration")
        self._fts_index = SingleFlight("memories-fts-index")

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def _get_table(self) -> VectorTable:
        if self._table is None:
            if TABLE_NAME in await self.store.table_names():
                table = await self.store.open_table(TABLE_NAME, self.vector_dim)
            else:
                table = await self.store.create_table(
                    TABLE_NAME, MEMORY_SCHEMA, self.vector_dim
                )
            if self._table is None:
                self._table = table
        await self._migration.run(self._migrate_schema)
        return self._table

    async def _migrate_schema(self) -> None:
        table = self._table
        assert table is not None
        try:
            existing = set(await table.schema())
            missing = {
                name: ddl for name, ddl in MIGRATION_COLUMNS.items() if name not in existing
            }
            if not missing:
                return
            logger.info("Migrating %s: adding %s", TABLE_NAME, ", ".join(missing))
            await table.add_columns(missing)
        except (SQLAlchemyError, RuntimeError) as exc:
            raise SchemaMigrationError(f"Failed to migrate table '{TABLE_NAME}': {exc}") from exc

    async def _ensure_fts_index(self) -> None:
        await self._fts_index.run(self._create_fts_index)

    async def _create_fts_index(self) -> None:
        table = await self._get_table()
        for index in await table.list_indices():
            if index.index_type == FTS_INDEX and FTS_COLUMN in index.columns:
                return
        config = await table.create_index(FTS_COLUMN, FTS_INDEX)
        await table.wait_for_index([config.name], timeout=self.index_wait_timeout)
        logger.info("Full-text index %s ready", config.name)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _check_dimension(self, memory: Memory) -> None:
        if len(memory.embedding) != self.vector_dim:
            raise ValueError(
                f"embedding has dimension {len(memory.embedding)}, "
                f"store expects {self.vector_dim}"
            )

    async def insert(self, memory: Memory) -> None:
        self._check_dimension(memory)
        table = await self._get_table()
        await table.add([memory_to_row(memory)])

    async def upsert(self, memory: Memory) -> None:
        self._check_dimension(memory)
        table = await self._get_table()
        row = memory_to_row(memory)
        values = {key: value for key, value in row.items() if key != "id"}
        updated = await table.update({"id": memory.id}, values)
        if updated == 0:
            await table.add([row])

    async def mark_deleted(self, memory_id: str) -> bool:
        table = await self._get_table()
        existing = await table.query({"id": memory_id}, limit=1)
        if not existing or row_to_memory(existing[0]).is_deleted:
            return False
        await table.update(
            {"id": memory_id},
            {
                "superseded_by": supersession_to_column(DELETED),
                "updated_at": datetime_to_millis(utc_now()),
            },
        )
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_by_id(self, memory_id: str) -> Optional[Memory]:
        table = await self._get_table()
        rows = await table.query({"id": memory_id}, limit=1)
        if not rows:
            return None
        return row_to_memory(rows[0])

    async def find_by_ids(self, memory_ids: Iterable[str]) -> List[Memory]:
        found: List[Memory] = []
        seen = set()
        for memory_id in memory_ids:
            if memory_id in seen:
                continue
            seen.add(memory_id)
            memory = await self.find_by_id(memory_id)
            if memory is not None:
                found.append(memory)
        return found

    async def find_hybrid(
        self, embedding: List[float], query_text: str, limit: int
    ) -> List[HybridRow]:
        """Vector + full-text candidates fused by RRF, best first."""
        if len(embedding) != self.vector_dim:
            raise ValueError(
                f"query embedding has dimension {len(embedding)}, "
                f"store expects {self.vector_dim}"
            )
        await self._ensure_fts_index()
        table = await self._get_table()
        rows = await table.hybrid_search(
            embedding, query_text, limit, reranker=RRFReranker(self.rrf_k)
        )
        return [
            HybridRow(memory=row_to_memory(row), rrf_score=float(row.get("_relevance_score") or 0.0))
            for row in rows
        ]

    async def count(self) -> int:
        table = await self._get_table()
        return await table.count()

    async def close(self) -> None:
        self._table = None
        await self.store.close()
