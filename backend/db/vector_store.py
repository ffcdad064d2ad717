"""
Vector + full-text table store on SQLite.

This module is the storage collaborator for the memory repository. It knows
nothing about memories; it offers tables of rows keyed by a unique `id`, with:

- a fixed-width vector column (JSON text, scored by cosine similarity)
- an FTS5 full-text index over one text column, kept in sync by triggers
- a combined nearest + full-text query fused by a reranker (RRF)
- predicate (equality) updates and queries
- index listing, creation, and a bounded "wait until ready"
- additive column migration

All I/O goes through a SQLAlchemy async engine (aiosqlite). One-time DDL
(index creation, column additions) also takes a cross-process file lock.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import unquote

from filelock import FileLock, Timeout
from sqlalchemy import inspect, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

_SQLITE_FILE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_FTS_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)

FTS_INDEX = "FTS"


class IndexNotReadyError(RuntimeError):
    """A requested index is missing or did not finish building in time."""


@dataclass(frozen=True)
class ColumnSpec:
    """Column name plus its SQLite DDL fragment, e.g. ("usefulness", "REAL NOT NULL DEFAULT 0")."""

    name: str
    ddl: str


@dataclass(frozen=True)
class IndexConfig:
    name: str
    columns: List[str]
    index_type: str


def _extract_sqlite_file_path(database_url: str) -> Optional[Path]:
    for prefix in _SQLITE_FILE_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = database_url[len(prefix) :]
        raw_path = raw_path.split("?", 1)[0].split("#", 1)[0]
        raw_path = unquote(raw_path)
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    raise ValueError(
        "Unsupported database URL for vector store. "
        "Expected sqlite+aiosqlite:///... or sqlite:///..."
    )


def _check_identifier(name: str) -> str:
    if not isinstance(name, str) or not _IDENTIFIER_PATTERN.match(name):
        raise ValueError(f"invalid identifier: {name!r}")
    return name


def build_fts_query(query_text: str) -> str:
    """Turn free text into an FTS5 MATCH expression: quoted tokens joined by OR."""
    tokens = _FTS_TOKEN_PATTERN.findall((query_text or "").lower())
    unique_tokens = list(dict.fromkeys(tokens))
    return " OR ".join(f'"{token}"' for token in unique_tokens)


def cosine_similarity(v1: Sequence[float], v2: Sequence[float]) -> float:
    if not v1 or not v2:
        return 0.0
    dot = 0.0
    norm1 = 0.0
    norm2 = 0.0
    for a, b in zip(v1, v2):
        dot += a * b
        norm1 += a * a
        norm2 += b * b
    if norm1 <= 0.0 or norm2 <= 0.0:
        return 0.0
    return dot / (math.sqrt(norm1) * math.sqrt(norm2))


class RRFReranker:
    """
    Reciprocal Rank Fusion over a vector result list and a full-text list.

    score(item) = sum over lists of 1 / (k + rank), rank starting at 1;
    an item absent from a list contributes nothing for that list.
    """

    def __init__(self, k: int = 60) -> None:
        if k <= 0:
            raise ValueError("RRF k must be positive")
        self.k = k

    def rerank(
        self,
        vector_rows: Sequence[Dict[str, Any]],
        fts_rows: Sequence[Dict[str, Any]],
        key: str = "id",
    ) -> List[Dict[str, Any]]:
        scores: Dict[Any, float] = {}
        merged: Dict[Any, Dict[str, Any]] = {}
        for rows in (vector_rows, fts_rows):
            for rank, row in enumerate(rows, start=1):
                row_key = row[key]
                scores[row_key] = scores.get(row_key, 0.0) + 1.0 / (self.k + rank)
                merged.setdefault(row_key, row)

        fused: List[Dict[str, Any]] = []
        for row_key, row in merged.items():
            item = {k: v for k, v in row.items() if k not in {"_distance", "_score"}}
            item["_relevance_score"] = scores[row_key]
            fused.append(item)
        # sort is stable: ties keep first-seen order (vector list first)
        fused.sort(key=lambda item: item["_relevance_score"], reverse=True)
        return fused


class VectorStore:
    """Connection-level handle: owns the async engine and the setup lock."""

    def __init__(self, database_url: str, lock_timeout_seconds: float = 10.0) -> None:
        self.database_url = database_url
        self.database_file = _extract_sqlite_file_path(database_url)
        if self.database_file is not None:
            self.database_file.parent.mkdir(parents=True, exist_ok=True)
            self.lock_file_path: Optional[Path] = Path(f"{self.database_file}.setup.lock")
        else:
            self.lock_file_path = None
        self.lock_timeout_seconds = max(0.0, float(lock_timeout_seconds))
        self.engine: AsyncEngine = create_async_engine(database_url, echo=False)
        # (table, index name) -> background build task
        self._index_builds: Dict[Tuple[str, str], asyncio.Task] = {}

    @asynccontextmanager
    async def setup_lock(self):
        """Cross-process lock around one-time DDL. No-op for in-memory databases."""
        if self.lock_file_path is None:
            yield
            return
        lock = FileLock(
            str(self.lock_file_path),
            timeout=self.lock_timeout_seconds,
            thread_local=False,
        )
        try:
            await asyncio.to_thread(lock.acquire)
        except Timeout as exc:
            raise RuntimeError(
                "Timed out waiting for setup lock: "
                f"{self.lock_file_path} ({self.lock_timeout_seconds}s)"
            ) from exc
        try:
            yield
        finally:
            lock.release()

    async def table_names(self) -> List[str]:
        async with self.engine.connect() as conn:
            return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

    async def create_table(
        self,
        name: str,
        schema: Sequence[ColumnSpec],
        vector_dim: int,
        vector_column: str = "vector",
    ) -> "VectorTable":
        _check_identifier(name)
        if not schema:
            raise ValueError("schema must declare at least one column")
        column_sql = ", ".join(
            f"{_check_identifier(column.name)} {column.ddl}" for column in schema
        )
        async with self.engine.begin() as conn:
            await conn.execute(text(f"CREATE TABLE IF NOT EXISTS {name} ({column_sql})"))
        logger.info("Created table %s", name)
        return VectorTable(self, name, vector_dim=vector_dim, vector_column=vector_column)

    async def open_table(
        self, name: str, vector_dim: int, vector_column: str = "vector"
    ) -> "VectorTable":
        _check_identifier(name)
        if name not in await self.table_names():
            raise LookupError(f"table '{name}' does not exist")
        return VectorTable(self, name, vector_dim=vector_dim, vector_column=vector_column)

    async def close(self) -> None:
        builds = list(self._index_builds.values())
        self._index_builds.clear()
        for task in builds:
            if not task.done():
                task.cancel()
        for task in builds:
            try:
                await task
            except asyncio.CancelledError:
                logger.debug("Index build cancelled on close")
            except Exception as exc:
                logger.warning("Index build failed before close: %s", exc)
        await self.engine.dispose()


class VectorTable:
    """A table of rows keyed by `id` with one vector column and optional FTS indexes."""

    def __init__(
        self,
        store: VectorStore,
        name: str,
        vector_dim: int,
        vector_column: str = "vector",
    ) -> None:
        self.store = store
        self.name = _check_identifier(name)
        self.vector_column = _check_identifier(vector_column)
        self.vector_dim = int(vector_dim)

    # ------------------------------------------------------------------
    # Row codec
    # ------------------------------------------------------------------

    def _encode_vector(self, vector: Any) -> str:
        values = [float(v) for v in vector]
        if len(values) != self.vector_dim:
            raise ValueError(
                f"vector width {len(values)} does not match column width {self.vector_dim}"
            )
        return json.dumps(values, separators=(",", ":"))

    def _encode_row(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        encoded: Dict[str, Any] = {}
        for key, value in row.items():
            _check_identifier(key)
            if key == self.vector_column:
                encoded[key] = self._encode_vector(value)
            else:
                encoded[key] = value
        return encoded

    def _decode_row(self, raw: Mapping[str, Any]) -> Dict[str, Any]:
        row = dict(raw)
        payload = row.get(self.vector_column)
        if isinstance(payload, str):
            try:
                row[self.vector_column] = [float(v) for v in json.loads(payload)]
            except (TypeError, ValueError):
                row[self.vector_column] = []
        return row

    @staticmethod
    def _where_sql(where: Optional[Mapping[str, Any]]) -> Tuple[str, Dict[str, Any]]:
        if not where:
            return "", {}
        parts: List[str] = []
        params: Dict[str, Any] = {}
        for key, value in where.items():
            _check_identifier(key)
            if value is None:
                parts.append(f"{key} IS NULL")
            else:
                parts.append(f"{key} = :w_{key}")
                params[f"w_{key}"] = value
        return " WHERE " + " AND ".join(parts), params

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def schema(self) -> List[str]:
        async with self.store.engine.connect() as conn:
            columns = await conn.run_sync(
                lambda sync_conn: inspect(sync_conn).get_columns(self.name)
            )
        return [column["name"] for column in columns]

    async def add_columns(self, columns: Mapping[str, str]) -> List[str]:
        """Add columns (name -> DDL). Columns another process added first are skipped."""
        added: List[str] = []
        async with self.store.setup_lock():
            for name, ddl in columns.items():
                _check_identifier(name)
                try:
                    async with self.store.engine.begin() as conn:
                        await conn.execute(
                            text(f"ALTER TABLE {self.name} ADD COLUMN {name} {ddl}")
                        )
                except OperationalError as exc:
                    if "duplicate column name" in str(exc).lower():
                        continue
                    raise
                added.append(name)
        if added:
            logger.info("Added columns %s to %s", ", ".join(added), self.name)
        return added

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, rows: Iterable[Mapping[str, Any]]) -> int:
        encoded_rows = [self._encode_row(row) for row in rows]
        if not encoded_rows:
            return 0
        async with self.store.engine.begin() as conn:
            for row in encoded_rows:
                columns = list(row.keys())
                await conn.execute(
                    text(
                        f"INSERT INTO {self.name} ({', '.join(columns)}) "
                        f"VALUES ({', '.join(':' + c for c in columns)})"
                    ),
                    row,
                )
        return len(encoded_rows)

    async def update(self, where: Mapping[str, Any], values: Mapping[str, Any]) -> int:
        if not where:
            raise ValueError("update requires a predicate")
        encoded = self._encode_row(values)
        if not encoded:
            return 0
        set_sql = ", ".join(f"{key} = :v_{key}" for key in encoded)
        params = {f"v_{key}": value for key, value in encoded.items()}
        where_sql, where_params = self._where_sql(where)
        params.update(where_params)
        async with self.store.engine.begin() as conn:
            result = await conn.execute(
                text(f"UPDATE {self.name} SET {set_sql}{where_sql}"), params
            )
        return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query(
        self, where: Optional[Mapping[str, Any]] = None, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        where_sql, params = self._where_sql(where)
        sql = f"SELECT * FROM {self.name}{where_sql}"
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = max(0, int(limit))
        async with self.store.engine.connect() as conn:
            result = await conn.execute(text(sql), params)
            return [self._decode_row(row) for row in result.mappings().all()]

    async def count(self) -> int:
        async with self.store.engine.connect() as conn:
            result = await conn.execute(text(f"SELECT COUNT(*) FROM {self.name}"))
            return int(result.scalar() or 0)

    async def nearest_to(self, vector: Sequence[float], limit: int) -> List[Dict[str, Any]]:
        """Brute-force cosine nearest neighbours; adds `_distance` (1 - cosine)."""
        query_vector = [float(v) for v in vector]
        if len(query_vector) != self.vector_dim:
            raise ValueError(
                f"query vector width {len(query_vector)} does not match column width {self.vector_dim}"
            )
        rows = await self.query()
        scored: List[Tuple[float, Dict[str, Any]]] = []
        for row in rows:
            similarity = cosine_similarity(query_vector, row.get(self.vector_column) or [])
            row["_distance"] = 1.0 - similarity
            scored.append((similarity, row))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [row for _, row in scored[: max(0, int(limit))]]

    async def full_text_search(
        self, query_text: str, limit: int, column: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """FTS5 bm25 match over an indexed column; adds `_score` (higher is better)."""
        fts_column = column or await self._default_fts_column()
        fts_table = self._fts_table_name(fts_column)
        match_expr = build_fts_query(query_text)
        if not match_expr:
            return []
        async with self.store.engine.connect() as conn:
            result = await conn.execute(
                text(
                    f"SELECT t.*, bm25({fts_table}) AS _bm25 "
                    f"FROM {fts_table} JOIN {self.name} AS t ON t.rowid = {fts_table}.rowid "
                    f"WHERE {fts_table} MATCH :match_expr "
                    "ORDER BY _bm25 ASC "
                    "LIMIT :limit"
                ),
                {"match_expr": match_expr, "limit": max(0, int(limit))},
            )
            rows = [self._decode_row(row) for row in result.mappings().all()]
        for row in rows:
            row["_score"] = -float(row.pop("_bm25") or 0.0)
        return rows

    async def hybrid_search(
        self,
        vector: Sequence[float],
        query_text: str,
        limit: int,
        reranker: Optional[RRFReranker] = None,
    ) -> List[Dict[str, Any]]:
        """Nearest + full-text in one call, fused by the reranker; adds `_relevance_score`."""
        fuser = reranker or RRFReranker()
        vector_rows = await self.nearest_to(vector, limit)
        fts_rows = await self.full_text_search(query_text, limit)
        return fuser.rerank(vector_rows, fts_rows)[: max(0, int(limit))]

    # ------------------------------------------------------------------
    # Indexes
    # ------------------------------------------------------------------

    def _fts_table_name(self, column: str) -> str:
        return f"{self.name}_{_check_identifier(column)}_fts"

    @staticmethod
    def _index_name(column: str) -> str:
        return f"{column}_idx"

    async def _default_fts_column(self) -> str:
        for index in await self.list_indices():
            if index.index_type == FTS_INDEX:
                return index.columns[0]
        raise IndexNotReadyError(f"table '{self.name}' has no full-text index")

    async def list_indices(self) -> List[IndexConfig]:
        prefix = f"{self.name}_"
        async with self.store.engine.connect() as conn:
            result = await conn.execute(
                text(
                    "SELECT name FROM sqlite_master "
                    "WHERE type = 'table' AND sql LIKE 'CREATE VIRTUAL TABLE%'"
                )
            )
            names = [str(row[0]) for row in result.all()]
        indices: List[IndexConfig] = []
        for name in names:
            if not (name.startswith(prefix) and name.endswith("_fts")):
                continue
            column = name[len(prefix) : -len("_fts")]
            if not column:
                continue
            indices.append(
                IndexConfig(name=self._index_name(column), columns=[column], index_type=FTS_INDEX)
            )
        return indices

    async def create_index(self, column: str, index_type: str = FTS_INDEX) -> IndexConfig:
        """
        Create an FTS5 index over `column` and start backfilling it.

        The triggers keep the index in sync with later writes; the backfill
        for existing rows runs as a background task (see `wait_for_index`).
        """
        if index_type != FTS_INDEX:
            raise ValueError(f"unsupported index type: {index_type}")
        fts = self._fts_table_name(column)
        index_name = self._index_name(column)
        async with self.store.setup_lock():
            async with self.store.engine.begin() as conn:
                await conn.execute(
                    text(
                        f"CREATE VIRTUAL TABLE IF NOT EXISTS {fts} "
                        f"USING fts5({column}, content='{self.name}', content_rowid='rowid')"
                    )
                )
                await conn.execute(
                    text(
                        f"CREATE TRIGGER IF NOT EXISTS {fts}_ai AFTER INSERT ON {self.name} BEGIN "
                        f"INSERT INTO {fts}(rowid, {column}) VALUES (new.rowid, new.{column}); "
                        "END"
                    )
                )
                await conn.execute(
                    text(
                        f"CREATE TRIGGER IF NOT EXISTS {fts}_ad AFTER DELETE ON {self.name} BEGIN "
                        f"INSERT INTO {fts}({fts}, rowid, {column}) "
                        f"VALUES ('delete', old.rowid, old.{column}); "
                        "END"
                    )
                )
                await conn.execute(
                    text(
                        f"CREATE TRIGGER IF NOT EXISTS {fts}_au AFTER UPDATE OF {column} ON {self.name} BEGIN "
                        f"INSERT INTO {fts}({fts}, rowid, {column}) "
                        f"VALUES ('delete', old.rowid, old.{column}); "
                        f"INSERT INTO {fts}(rowid, {column}) VALUES (new.rowid, new.{column}); "
                        "END"
                    )
                )
        build_key = (self.name, index_name)
        self.store._index_builds[build_key] = asyncio.ensure_future(self._rebuild_fts(fts))
        logger.info("Creating full-text index %s on %s.%s", index_name, self.name, column)
        return IndexConfig(name=index_name, columns=[column], index_type=FTS_INDEX)

    async def _rebuild_fts(self, fts: str) -> None:
        async with self.store.engine.begin() as conn:
            await conn.execute(text(f"INSERT INTO {fts}({fts}) VALUES ('rebuild')"))

    async def wait_for_index(self, names: Sequence[str], timeout: float) -> None:
        known = {index.name for index in await self.list_indices()}
        missing = [name for name in names if name not in known]
        if missing:
            raise IndexNotReadyError(f"index not found: {', '.join(missing)}")
        pending = [
            self.store._index_builds[(self.name, name)]
            for name in names
            if (self.name, name) in self.store._index_builds
        ]
        if not pending:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*(asyncio.shield(task) for task in pending)),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise IndexNotReadyError(
                f"index {', '.join(names)} not ready after {timeout}s"
            ) from exc
        for name in names:
            self.store._index_builds.pop((self.name, name), None)
