"""
MCP Server for the Vector Memory store

This module provides the MCP (Model Context Protocol) interface for a coding
assistant to store, search, and curate its long-term memories.

Every tool returns a JSON string. Failures never raise to the client; they
come back as {"ok": false, "error": "..."}.

Search requires an intent that says what kind of recall is wanted:
- continuity   - "where was I": favors recently touched memories
- fact_check   - "what exactly did we decide": favors textual/semantic match
- frequent     - "what do I keep needing": favors memories voted useful
- associative  - "what is related": relevance with some recency/utility
- explore      - "surprise me": balanced blend with more randomness
"""

import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.fastmcp import FastMCP
from models import Memory
from services import get_memory_service
from services.ranking import SearchIntent

logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP("Vector Memory")

SEARCH_HARD_MAX_RESULTS = 100


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False)


def _tool_response(*, ok: bool, message: str, **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": bool(ok), "message": message}
    payload.update(extra)
    return _to_json(payload)


def _tool_error(error: str, **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": False, "error": error}
    payload.update(extra)
    return _to_json(payload)


def _validate_id_list(ids: Any) -> List[str]:
    if not isinstance(ids, list) or not ids:
        raise ValueError("'ids' must be a non-empty list of memory ids")
    for memory_id in ids:
        if not isinstance(memory_id, str) or not memory_id.strip():
            raise ValueError("every id must be a non-empty string")
    return ids


def _validate_items(items: Any, name: str, required: str) -> List[Dict[str, Any]]:
    if not isinstance(items, list) or not items:
        raise ValueError(f"'{name}' must be a non-empty list")
    for position, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValueError(f"{name}[{position}] must be an object")
        value = item.get(required)
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{name}[{position}].{required} must be a non-empty string")
        metadata = item.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValueError(f"{name}[{position}].metadata must be an object")
    return items


def _memory_payload(memory: Memory) -> Dict[str, Any]:
    return memory.to_dict()


@mcp.tool()
async def store_memories(memories: List[Dict[str, Any]]) -> str:
    """
    Store one or more memories.

    Args:
        memories: List of {"content": str, "embedding_text"?: str, "metadata"?: dict}.
            embedding_text, when given, is embedded instead of content (useful
            when the content is long but one sentence captures it).

    Returns:
        JSON with the new ids.
    """
    try:
        items = _validate_items(memories, "memories", "content")
    except ValueError as exc:
        return _tool_error(str(exc))

    try:
        stored = await get_memory_service().store_many(items)
    except Exception as exc:
        return _tool_error(str(exc))

    ids = [memory.id for memory in stored]
    message = (
        f"Memory stored with ID: {ids[0]}"
        if len(ids) == 1
        else f"Stored {len(ids)} memories"
    )
    return _tool_response(ok=True, message=message, ids=ids)


@mcp.tool()
async def update_memories(updates: List[Dict[str, Any]]) -> str:
    """
    Update memories in place. Omitted fields stay as they are; metadata is
    replaced wholesale; new content or embedding_text is re-embedded.

    Args:
        updates: List of {"id": str, "content"?: str, "embedding_text"?: str, "metadata"?: dict}

    Returns:
        JSON with per-id results.
    """
    try:
        items = _validate_items(updates, "updates", "id")
    except ValueError as exc:
        return _tool_error(str(exc))

    try:
        results = await get_memory_service().update_many(items)
    except Exception as exc:
        return _tool_error(str(exc))

    payload = [{"id": memory_id, "updated": memory is not None} for memory_id, memory in results]
    updated = sum(1 for item in payload if item["updated"])
    return _tool_response(
        ok=True,
        message=f"Updated {updated} of {len(payload)} memories",
        results=payload,
    )


@mcp.tool()
async def delete_memories(ids: List[str]) -> str:
    """
    Soft-delete memories. Deleted memories disappear from search unless
    include_deleted is requested; nothing is physically removed.

    Args:
        ids: Memory ids to delete.
    """
    try:
        memory_ids = _validate_id_list(ids)
    except ValueError as exc:
        return _tool_error(str(exc))

    try:
        results = await get_memory_service().delete_many(memory_ids)
    except Exception as exc:
        return _tool_error(str(exc))

    payload = [{"id": memory_id, "deleted": deleted} for memory_id, deleted in results]
    deleted_count = sum(1 for item in payload if item["deleted"])
    return _tool_response(
        ok=True,
        message=f"Deleted {deleted_count} of {len(payload)} memories",
        results=payload,
    )


@mcp.tool()
async def get_memories(ids: List[str]) -> str:
    """
    Read memories by id. Reading a live memory counts as an access.

    Args:
        ids: Memory ids to read.
    """
    try:
        memory_ids = _validate_id_list(ids)
    except ValueError as exc:
        return _tool_error(str(exc))

    try:
        results = await get_memory_service().get_many(memory_ids)
    except Exception as exc:
        return _tool_error(str(exc))

    payload = [
        {
            "id": memory_id,
            "found": memory is not None,
            "memory": _memory_payload(memory) if memory is not None else None,
        }
        for memory_id, memory in results
    ]
    return _to_json({"ok": True, "memories": payload})


@mcp.tool()
async def search_memories(
    query: str,
    intent: str,
    limit: int = 10,
    include_deleted: bool = False,
) -> str:
    """
    Search memories with intent-aware hybrid ranking (semantic + keyword).

    Search does not count as an access; call get_memories or
    report_memory_usefulness for memories you actually used.

    Args:
        query: What to look for.
        intent: One of continuity, fact_check, frequent, associative, explore.
        limit: Max results (1-100, default 10).
        include_deleted: Also return soft-deleted memories.
    """
    if not isinstance(query, str) or not query.strip():
        return _tool_error("'query' must be a non-empty string")
    try:
        search_intent = SearchIntent.parse(intent)
    except ValueError as exc:
        return _tool_error(str(exc))
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        return _tool_error("'limit' must be an integer >= 1")
    limit = min(limit, SEARCH_HARD_MAX_RESULTS)

    try:
        ranked = await get_memory_service().search_ranked(
            query, search_intent, limit=limit, include_deleted=bool(include_deleted)
        )
    except Exception as exc:
        return _tool_error(str(exc))

    results = [item.to_dict() for item in ranked]
    return _to_json(
        {
            "ok": True,
            "query": query,
            "intent": search_intent.value,
            "count": len(results),
            "memories": results,
        }
    )


@mcp.tool()
async def report_memory_usefulness(memory_id: str, useful: bool) -> str:
    """
    Tell the store whether a memory helped. Useful memories rank higher for
    the "frequent" intent.

    Args:
        memory_id: The memory that was used.
        useful: True for useful (+1), False for not useful (-1).
    """
    if not isinstance(memory_id, str) or not memory_id.strip():
        return _tool_error("'memory_id' must be a non-empty string")
    if not isinstance(useful, bool):
        return _tool_error("'useful' must be a boolean")

    try:
        memory = await get_memory_service().vote(memory_id, 1 if useful else -1)
    except Exception as exc:
        return _tool_error(str(exc))

    if memory is None:
        return _tool_error(f"Memory {memory_id} not found", memory_id=memory_id)
    return _tool_response(
        ok=True,
        message=(
            f"Memory {memory_id} marked as {'useful' if useful else 'not useful'}. "
            f"New usefulness score: {memory.usefulness}"
        ),
        memory_id=memory_id,
        usefulness=memory.usefulness,
    )


@mcp.tool()
async def store_handoff(
    project: str,
    summary: str,
    branch: Optional[str] = None,
    completed: Optional[List[str]] = None,
    in_progress_blocked: Optional[List[str]] = None,
    key_decisions: Optional[List[str]] = None,
    next_steps: Optional[List[str]] = None,
    memory_ids: Optional[List[str]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Save the session handoff (overwrites the previous one).

    Args:
        project: Project name.
        summary: What happened this session.
        branch: Current git branch.
        completed / in_progress_blocked / key_decisions / next_steps: bullet items.
        memory_ids: Memories the next session should read first.
        metadata: Extra metadata to keep with the handoff.
    """
    for name, value in (("project", project), ("summary", summary)):
        if not isinstance(value, str) or not value.strip():
            return _tool_error(f"'{name}' must be a non-empty string")
    for name, value in (
        ("completed", completed),
        ("in_progress_blocked", in_progress_blocked),
        ("key_decisions", key_decisions),
        ("next_steps", next_steps),
        ("memory_ids", memory_ids),
    ):
        if value is not None and (
            not isinstance(value, list) or not all(isinstance(v, str) for v in value)
        ):
            return _tool_error(f"'{name}' must be a list of strings")
    if metadata is not None and not isinstance(metadata, dict):
        return _tool_error("'metadata' must be an object")

    try:
        handoff = await get_memory_service().store_handoff(
            project,
            summary,
            branch=branch,
            completed=completed,
            in_progress_blocked=in_progress_blocked,
            key_decisions=key_decisions,
            next_steps=next_steps,
            memory_ids=memory_ids,
            metadata=metadata,
        )
    except Exception as exc:
        return _tool_error(str(exc))

    return _tool_response(
        ok=True,
        message=f"Handoff stored with memory ID: {handoff.id}",
        id=handoff.id,
    )


@mcp.tool()
async def get_handoff() -> str:
    """
    Read the latest handoff together with the memories it references.
    """
    try:
        result = await get_memory_service().get_handoff_with_references()
    except Exception as exc:
        return _tool_error(str(exc))

    if result is None:
        return _tool_response(ok=True, message="No stored handoff found.", found=False)

    handoff, referenced = result
    text = handoff.content
    if referenced:
        sections = "\n\n".join(
            f"### Memory: {memory.id}\n{memory.content}" for memory in referenced
        )
        text += f"\n\n## Referenced Memories\n\n{sections}"
    return _to_json(
        {
            "ok": True,
            "found": True,
            "content": text,
            "handoff": _memory_payload(handoff),
            "referencedMemories": [
                {"id": memory.id, "content": memory.content} for memory in referenced
            ],
        }
    )


# =============================================================================
# Startup
# =============================================================================


async def startup():
    """Open the store (bootstrap / migrate the table) before serving."""
    service = get_memory_service()
    count = await service.repository.count()
    logger.info("Vector memory store ready (%d memories)", count)


if __name__ == "__main__":
    from cli import main

    main(["--transport", "stdio", "--no-http"])
