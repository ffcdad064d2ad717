import random
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from db.memory_repository import MemoryRepository
from db.vector_store import VectorStore
from models import HANDOFF_ID
from services.embeddings import EmbeddingService
from services.memory_service import MemoryService
from services.ranking import RankingEngine

_DIM = 64


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _service(db_path: Path, seed: int = 0, clock=None) -> MemoryService:
    repository = MemoryRepository(VectorStore(_sqlite_url(db_path)), vector_dim=_DIM)
    embeddings = EmbeddingService(backend="hash", dimension=_DIM)
    kwargs = {"clock": clock} if clock is not None else {}
    return MemoryService(
        repository,
        embeddings,
        ranking=RankingEngine(rng=random.Random(seed)),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_store_initializes_counters(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        memory = await service.store("test content", {"tag": "x"})
        assert memory.usefulness == 0.0
        assert memory.access_count == 0
        assert memory.last_accessed == memory.created_at
        assert memory.is_live

        loaded = await service.repository.find_by_id(memory.id)
        assert loaded.metadata == {"tag": "x"}
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_store_rejects_bad_input(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        with pytest.raises(ValueError):
            await service.store("")
        with pytest.raises(ValueError):
            await service.store("ok", {"bad": object()})
        assert await service.repository.count() == 0
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_store_many_keeps_input_order(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        stored = await service.store_many(
            [
                {"content": "alpha note"},
                {"content": "beta note", "embedding_text": "beta"},
                {"content": "gamma note", "metadata": {"n": 3}},
            ]
        )
        assert [memory.content for memory in stored] == ["alpha note", "beta note", "gamma note"]
        assert stored[1].embedding == (await service.embeddings.embed("beta"))
        assert stored[2].metadata == {"n": 3}
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_continuity_intent_favors_recent_memories(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        old = await service.store("project status update")
        new = await service.store("project status update")

        aged = await service.repository.find_by_id(old.id)
        await service.repository.upsert(
            replace(aged, last_accessed=datetime.now(timezone.utc) - timedelta(hours=100))
        )

        results = await service.search("project status", "continuity")
        assert len(results) >= 2
        assert results[0].id == new.id
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_frequent_intent_favors_high_utility_memories(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        await service.store("coding patterns")
        frequent = await service.store("coding patterns")
        await service.vote(frequent.id, 5)

        results = await service.search("coding", "frequent")
        assert results[0].id == frequent.id
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_fact_check_intent_favors_relevance(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        exact = await service.store("TypeScript compiler options and settings")
        await service.store("cooking recipes for dinner party")

        results = await service.search("TypeScript compiler", "fact_check")
        assert len(results) >= 1
        assert results[0].id == exact.id
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_explore_returns_requested_count(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db", seed=3)
    try:
        for i in range(5):
            await service.store(f"memory item {i} about testing")

        first = await service.search("testing", "explore", limit=5)
        second = await service.search("testing", "explore", limit=5)
        assert len(first) == 5
        assert len(second) == 5
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_search_is_read_only(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        memory = await service.store("read only test")

        await service.search("read only", "fact_check")
        await service.search("read only", "continuity")

        after = await service.repository.find_by_id(memory.id)
        assert after.access_count == memory.access_count
        assert after.last_accessed == memory.last_accessed
        assert after.usefulness == memory.usefulness
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_search_validates_arguments(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        with pytest.raises(ValueError):
            await service.search("", "fact_check")
        with pytest.raises(ValueError):
            await service.search("query", "gossip")
        with pytest.raises(ValueError):
            await service.search("query", "fact_check", limit=0)
        assert await service.search("nothing stored yet", "explore") == []
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_soft_delete_round_trip(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        memory = await service.store("obsolete deployment notes")
        assert await service.delete(memory.id) is True
        assert await service.delete(memory.id) is False
        assert await service.delete("missing") is False

        assert await service.search("deployment notes", "fact_check") == []
        shown = await service.search("deployment notes", "fact_check", include_deleted=True)
        assert [m.id for m in shown] == [memory.id]
        assert shown[0].is_deleted

        fetched = await service.get(memory.id)
        assert fetched.is_deleted
        assert fetched.access_count == 0
        assert await service.repository.count() == 1
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_get_bumps_access_and_absent_returns_none(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        memory = await service.store("access me")

        first = await service.get(memory.id)
        second = await service.get(memory.id)
        assert first.access_count == 1
        assert second.access_count == 2
        assert second.last_accessed >= first.last_accessed

        stored = await service.repository.find_by_id(memory.id)
        assert stored.access_count == 2
        assert await service.get("missing") is None
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_update_re_embeds_only_when_text_changes(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        memory = await service.store("original wording", {"v": 1})

        meta_only = await service.update(memory.id, metadata={"v": 2})
        assert meta_only.embedding == memory.embedding
        assert meta_only.metadata == {"v": 2}
        assert meta_only.content == "original wording"

        reworded = await service.update(memory.id, content="completely different text")
        assert reworded.embedding != memory.embedding
        assert reworded.metadata == {"v": 2}
        assert reworded.updated_at >= memory.updated_at

        assert await service.update("missing", content="x") is None
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_vote_changes_usefulness_and_counts_as_access(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        memory = await service.store("vote on me")

        up = await service.vote(memory.id, 1)
        down = await service.vote(memory.id, -3)
        assert up.usefulness == 1.0
        assert down.usefulness == -2.0
        assert down.access_count == 2

        assert await service.vote("missing", 1) is None
        with pytest.raises(ValueError):
            await service.vote(memory.id, float("nan"))
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_supersede_points_search_at_replacement(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        old = await service.store("use poetry for packaging")
        new = await service.store("use uv for dependency management")

        assert await service.supersede(old.id, old.id) is False
        assert await service.supersede(old.id, "missing") is False
        assert await service.supersede(old.id, new.id) is True
        # old is no longer live
        assert await service.supersede(old.id, new.id) is False

        ranked = await service.search_ranked("poetry packaging", "fact_check")
        assert ranked[0].memory.id == new.id
        assert ranked[0].retrieved_id == old.id
        assert [item.memory.id for item in ranked].count(new.id) == 1
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_track_access_counts_existing_ids(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        a = await service.store("first")
        b = await service.store("second")

        assert await service.track_access([a.id, "missing", b.id]) == 2
        assert await service.track_access([]) == 0
        assert (await service.repository.find_by_id(a.id)).access_count == 1
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_track_access_skips_deleted_and_superseded(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        gone = await service.store("removed note")
        old = await service.store("old note")
        new = await service.store("new note")
        await service.delete(gone.id)
        assert await service.supersede(old.id, new.id) is True

        assert await service.track_access([gone.id, old.id, new.id]) == 1
        assert (await service.repository.find_by_id(gone.id)).access_count == 0
        assert (await service.repository.find_by_id(old.id)).access_count == 0
        assert (await service.repository.find_by_id(new.id)).access_count == 1
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_search_keeps_original_when_replacement_was_deleted(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        original = await service.store("poetry packaging uses pyproject metadata")
        replacement = await service.store("zzz unrelated replacement text")
        assert await service.supersede(original.id, replacement.id) is True
        assert await service.delete(replacement.id) is True

        assert await service.search_ranked("poetry packaging", "fact_check") == []

        shown = await service.search_ranked(
            "poetry packaging", "fact_check", include_deleted=True
        )
        assert shown[0].memory.id == original.id
        assert shown[0].retrieved_id == original.id
        assert shown[0].deleted is True
        assert shown[0].to_dict()["deleted"] is True
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_handoff_is_rendered_overwritten_and_tracks_references(tmp_path: Path) -> None:
    fixed_now = datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc)
    service = _service(tmp_path / "memories.db", clock=lambda: fixed_now)
    try:
        note = await service.store("parser uses pratt precedence")

        handoff = await service.store_handoff(
            project="demo",
            summary="Finished the parser",
            completed=["lexer", "parser"],
            memory_ids=[note.id],
            metadata={"session": 7},
        )
        assert handoff.id == HANDOFF_ID
        assert handoff.content.startswith(
            "# Handoff - demo\n**Date:** 2024-06-01 09:30 | **Branch:** unknown\n"
        )
        assert "## Completed\n- lexer\n- parser\n" in handoff.content
        assert "## In Progress / Blocked\n- (none)\n" in handoff.content
        assert handoff.content.endswith(f"## Memory IDs\n- {note.id}")
        assert handoff.metadata == {
            "session": 7,
            "type": "handoff",
            "project": "demo",
            "date": "2024-06-01",
            "branch": "unknown",
            "memory_ids": [note.id],
        }
        assert len(handoff.embedding) == _DIM
        assert (await service.repository.find_by_id(note.id)).access_count == 1

        await service.store_handoff(project="demo", summary="Second session", branch="main")
        assert await service.repository.count() == 2

        latest = await service.get_latest_handoff()
        assert "Second session" in latest.content
        assert latest.metadata["branch"] == "main"

        result = await service.get_handoff_with_references()
        assert result is not None
        _, referenced = result
        assert referenced == []
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_handoff_references_skip_deleted_memories(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        keep = await service.store("keep me")
        drop = await service.store("drop me")
        await service.store_handoff(project="demo", summary="s", memory_ids=[keep.id, drop.id])
        await service.delete(drop.id)

        handoff, referenced = await service.get_handoff_with_references()
        assert handoff.id == HANDOFF_ID
        assert [memory.id for memory in referenced] == [keep.id]
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_no_handoff_returns_none(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        assert await service.get_latest_handoff() is None
        assert await service.get_handoff_with_references() is None
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_health_reports_count_and_model(tmp_path: Path) -> None:
    service = _service(tmp_path / "memories.db")
    try:
        await service.store("one")
        status = await service.health()
        assert status["memories"] == 1
        assert status["embeddingDimension"] == _DIM
        assert status["embeddingBackend"] == "hash"
    finally:
        await service.close()


def test_dimension_mismatch_is_rejected(tmp_path: Path) -> None:
    repository = MemoryRepository(VectorStore(_sqlite_url(tmp_path / "m.db")), vector_dim=8)
    with pytest.raises(ValueError):
        MemoryService(repository, EmbeddingService(backend="hash", dimension=16))
