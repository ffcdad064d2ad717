"""
Memory service: the operations both transports expose.

Writes go through the repository; search goes repository (hybrid candidates)
-> ranking engine (intent scoring + supersession resolution). Search is
read-only. Access statistics change only on explicit access: `get`,
`vote`, `track_access`, and `store_handoff` (for the ids it references).
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from db.memory_repository import MemoryRepository
from models import (
    HANDOFF_ID,
    LIVE,
    Memory,
    SupersededBy,
    ensure_json_metadata,
    utc_now,
)

from .embeddings import EmbeddingService
from .ranking import RankedMemory, RankingEngine, SearchIntent

logger = logging.getLogger(__name__)


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{field_name}' must be a non-empty string")
    return value


def _optional_text(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    return _require_text(value, field_name)


def _bullet_list(items: Optional[Sequence[str]]) -> str:
    if not items:
        return "- (none)"
    return "\n".join(f"- {item}" for item in items)


def render_handoff(
    project: str,
    summary: str,
    now: datetime,
    branch: Optional[str] = None,
    completed: Optional[Sequence[str]] = None,
    in_progress_blocked: Optional[Sequence[str]] = None,
    key_decisions: Optional[Sequence[str]] = None,
    next_steps: Optional[Sequence[str]] = None,
    memory_ids: Optional[Sequence[str]] = None,
) -> str:
    return (
        f"# Handoff - {project}\n"
        f"**Date:** {now.strftime('%Y-%m-%d %H:%M')} | **Branch:** {branch or 'unknown'}\n"
        "\n"
        "## Summary\n"
        f"{summary}\n"
        "\n"
        "## Completed\n"
        f"{_bullet_list(completed)}\n"
        "\n"
        "## In Progress / Blocked\n"
        f"{_bullet_list(in_progress_blocked)}\n"
        "\n"
        "## Key Decisions\n"
        f"{_bullet_list(key_decisions)}\n"
        "\n"
        "## Next Steps\n"
        f"{_bullet_list(next_steps)}\n"
        "\n"
        "## Memory IDs\n"
        f"{_bullet_list(memory_ids)}"
    )


class MemoryService:
    def __init__(
        self,
        repository: MemoryRepository,
        embeddings: EmbeddingService,
        ranking: Optional[RankingEngine] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if repository.vector_dim != embeddings.dimension:
            raise ValueError(
                f"embedding dimension {embeddings.dimension} does not match "
                f"store width {repository.vector_dim}"
            )
        self.repository = repository
        self.embeddings = embeddings
        self.ranking = ranking or RankingEngine()
        self._clock = clock

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def _new_memory(
        self, content: str, embedding: List[float], metadata: Dict[str, Any]
    ) -> Memory:
        now = self._clock()
        return Memory(
            id=str(uuid.uuid4()),
            content=content,
            embedding=embedding,
            metadata=metadata,
            created_at=now,
            updated_at=now,
            supersession=LIVE,
            usefulness=0.0,
            access_count=0,
            last_accessed=now,
        )

    async def store(
        self,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        embedding_text: Optional[str] = None,
    ) -> Memory:
        content = _require_text(content, "content")
        embedding_text = _optional_text(embedding_text, "embedding_text")
        clean_metadata = ensure_json_metadata(metadata)
        embedding = await self.embeddings.embed(embedding_text or content)
        memory = self._new_memory(content, embedding, clean_metadata)
        await self.repository.insert(memory)
        return memory

    async def store_many(self, items: Sequence[Mapping[str, Any]]) -> List[Memory]:
        """Store several memories with one batched embedding call."""
        prepared: List[Tuple[str, Dict[str, Any], str]] = []
        for item in items:
            content = _require_text(item.get("content"), "content")
            embedding_text = _optional_text(item.get("embedding_text"), "embedding_text")
            prepared.append(
                (content, ensure_json_metadata(item.get("metadata")), embedding_text or content)
            )
        if not prepared:
            return []

        embeddings = await self.embeddings.embed_batch([text for _, _, text in prepared])
        stored: List[Memory] = []
        for (content, metadata, _), embedding in zip(prepared, embeddings):
            memory = self._new_memory(content, embedding, metadata)
            await self.repository.insert(memory)
            stored.append(memory)
        return stored

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def _bump_access(self, memory: Memory) -> Memory:
        bumped = replace(
            memory,
            access_count=memory.access_count + 1,
            last_accessed=self._clock(),
        )
        await self.repository.upsert(bumped)
        return bumped

    async def get(self, memory_id: str) -> Optional[Memory]:
        memory = await self.repository.find_by_id(memory_id)
        if memory is None:
            return None
        if not memory.is_live:
            return memory
        return await self._bump_access(memory)

    async def get_many(self, memory_ids: Iterable[str]) -> List[Tuple[str, Optional[Memory]]]:
        return [(memory_id, await self.get(memory_id)) for memory_id in memory_ids]

    # ------------------------------------------------------------------
    # Update / delete / vote
    # ------------------------------------------------------------------

    async def update(
        self,
        memory_id: str,
        content: Optional[str] = None,
        embedding_text: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Memory]:
        content = _optional_text(content, "content")
        embedding_text = _optional_text(embedding_text, "embedding_text")
        new_metadata = ensure_json_metadata(metadata) if metadata is not None else None

        existing = await self.repository.find_by_id(memory_id)
        if existing is None:
            return None

        new_content = content if content is not None else existing.content
        embedding = existing.embedding
        if content is not None or embedding_text is not None:
            embedding = await self.embeddings.embed(embedding_text or new_content)

        updated = replace(
            existing,
            content=new_content,
            embedding=embedding,
            metadata=new_metadata if new_metadata is not None else existing.metadata,
            updated_at=self._clock(),
        )
        await self.repository.upsert(updated)
        return updated

    async def update_many(
        self, updates: Sequence[Mapping[str, Any]]
    ) -> List[Tuple[str, Optional[Memory]]]:
        results: List[Tuple[str, Optional[Memory]]] = []
        for item in updates:
            memory_id = _require_text(item.get("id"), "id")
            memory = await self.update(
                memory_id,
                content=item.get("content"),
                embedding_text=item.get("embedding_text"),
                metadata=item.get("metadata"),
            )
            results.append((memory_id, memory))
        return results

    async def delete(self, memory_id: str) -> bool:
        return await self.repository.mark_deleted(memory_id)

    async def delete_many(self, memory_ids: Iterable[str]) -> List[Tuple[str, bool]]:
        return [(memory_id, await self.delete(memory_id)) for memory_id in memory_ids]

    async def vote(self, memory_id: str, delta: float) -> Optional[Memory]:
        if isinstance(delta, bool) or not isinstance(delta, (int, float)) or not math.isfinite(delta):
            raise ValueError("vote delta must be a finite number")
        existing = await self.repository.find_by_id(memory_id)
        if existing is None:
            return None
        now = self._clock()
        voted = replace(
            existing,
            usefulness=existing.usefulness + float(delta),
            access_count=existing.access_count + 1,
            last_accessed=now,
            updated_at=now,
        )
        await self.repository.upsert(voted)
        return voted

    async def supersede(self, old_id: str, new_id: str) -> bool:
        """Point a live memory at its live replacement."""
        if old_id == new_id:
            return False
        old = await self.repository.find_by_id(old_id)
        new = await self.repository.find_by_id(new_id)
        if old is None or new is None or not old.is_live or not new.is_live:
            return False
        await self.repository.upsert(
            replace(old, supersession=SupersededBy(new_id), updated_at=self._clock())
        )
        return True

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search_ranked(
        self,
        query: str,
        intent: Any,
        limit: int = 10,
        include_deleted: bool = False,
    ) -> List[RankedMemory]:
        query = _require_text(query, "query")
        search_intent = SearchIntent.parse(intent)
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValueError("'limit' must be an integer >= 1")

        embedding = await self.embeddings.embed(query)
        fetch_limit = limit * self.ranking.config.overfetch_factor
        rows = await self.repository.find_hybrid(embedding, query, fetch_limit)
        return await self.ranking.rank(
            rows,
            search_intent,
            limit,
            lookup=self.repository.find_by_id,
            include_deleted=include_deleted,
            now=self._clock(),
        )

    async def search(
        self,
        query: str,
        intent: Any,
        limit: int = 10,
        include_deleted: bool = False,
    ) -> List[Memory]:
        ranked = await self.search_ranked(query, intent, limit, include_deleted)
        return [item.memory for item in ranked]

    # ------------------------------------------------------------------
    # Access tracking
    # ------------------------------------------------------------------

    async def track_access(self, memory_ids: Iterable[str]) -> int:
        """Bump access stats of every live id; returns how many were touched."""
        ids = [str(memory_id) for memory_id in memory_ids if memory_id]
        if not ids:
            return 0
        memories = await self.repository.find_by_ids(ids)
        touched = 0
        for memory in memories:
            if not memory.is_live:
                continue
            await self._bump_access(memory)
            touched += 1
        return touched

    # ------------------------------------------------------------------
    # Handoff
    # ------------------------------------------------------------------

    async def store_handoff(
        self,
        project: str,
        summary: str,
        branch: Optional[str] = None,
        completed: Optional[Sequence[str]] = None,
        in_progress_blocked: Optional[Sequence[str]] = None,
        key_decisions: Optional[Sequence[str]] = None,
        next_steps: Optional[Sequence[str]] = None,
        memory_ids: Optional[Sequence[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Memory:
        project = _require_text(project, "project")
        summary = _require_text(summary, "summary")
        now = self._clock()
        ids = [str(memory_id) for memory_id in (memory_ids or [])]

        content = render_handoff(
            project,
            summary,
            now,
            branch=branch,
            completed=completed,
            in_progress_blocked=in_progress_blocked,
            key_decisions=key_decisions,
            next_steps=next_steps,
            memory_ids=ids,
        )
        handoff_metadata = ensure_json_metadata(metadata)
        handoff_metadata.update(
            {
                "type": "handoff",
                "project": project,
                "date": now.strftime("%Y-%m-%d"),
                "branch": branch or "unknown",
                "memory_ids": ids,
            }
        )

        handoff = Memory(
            id=HANDOFF_ID,
            content=content,
            embedding=await self.embeddings.embed(summary),
            metadata=handoff_metadata,
            created_at=now,
            updated_at=now,
            supersession=LIVE,
            usefulness=0.0,
            access_count=0,
            last_accessed=now,
        )
        await self.repository.upsert(handoff)
        if ids:
            touched = await self.track_access(ids)
            logger.debug("Handoff touched %d of %d referenced memories", touched, len(ids))
        return handoff

    async def get_latest_handoff(self) -> Optional[Memory]:
        return await self.get(HANDOFF_ID)

    async def get_handoff_with_references(self) -> Optional[Tuple[Memory, List[Memory]]]:
        """The handoff plus its referenced memories that are still live."""
        handoff = await self.get_latest_handoff()
        if handoff is None:
            return None
        referenced: List[Memory] = []
        for memory_id in handoff.metadata.get("memory_ids") or []:
            memory = await self.get(str(memory_id))
            if memory is not None and memory.is_live:
                referenced.append(memory)
        return handoff, referenced

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def health(self) -> Dict[str, Any]:
        return {
            "memories": await self.repository.count(),
            "embeddingBackend": self.embeddings.backend,
            "embeddingModel": self.embeddings.model_name,
            "embeddingDimension": self.embeddings.dimension,
        }

    async def close(self) -> None:
        await self.repository.close()
