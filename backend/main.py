"""
REST bridge for the vector memory store.

Session hooks and scripts that cannot speak MCP use these routes. Every route
delegates to the memory service; nothing here touches the database directly.
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from auth import auth_failure_reason
from models import Memory
from services import close_memory_service, get_memory_service, get_settings
from services.ranking import SearchIntent

logger = logging.getLogger(__name__)

_STARTED_AT = time.monotonic()


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _not_found() -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, "Memory not found")


def _server_error(operation: str, exc: Exception) -> JSONResponse:
    logger.exception("%s failed", operation)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc) or type(exc).__name__)


async def require_api_key(request: Request) -> None:
    reason = auth_failure_reason(request)
    if reason is not None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "auth_failed", "reason": reason},
            headers={"WWW-Authenticate": "Bearer"},
        )


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    intent: SearchIntent
    limit: int = Field(default=10, ge=1, le=100)
    include_deleted: bool = Field(default=False, alias="includeDeleted")

    model_config = ConfigDict(populate_by_name=True)


class StoreRequest(BaseModel):
    content: str = Field(min_length=1)
    metadata: Optional[Dict[str, Any]] = None
    embedding_text: Optional[str] = Field(default=None, alias="embeddingText")

    model_config = ConfigDict(populate_by_name=True)


class UpdateRequest(BaseModel):
    content: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    embedding_text: Optional[str] = Field(default=None, alias="embeddingText")

    model_config = ConfigDict(populate_by_name=True)


class VoteRequest(BaseModel):
    useful: bool


class AccessRequest(BaseModel):
    ids: List[str]


class HandoffRequest(BaseModel):
    project: str = Field(min_length=1)
    summary: str = Field(min_length=1)
    branch: Optional[str] = None
    completed: Optional[List[str]] = None
    in_progress_blocked: Optional[List[str]] = None
    key_decisions: Optional[List[str]] = None
    next_steps: Optional[List[str]] = None
    memory_ids: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


router = APIRouter(dependencies=[Depends(require_api_key)])


@router.post("/search")
async def search(body: SearchRequest):
    try:
        ranked = await get_memory_service().search_ranked(
            body.query,
            body.intent,
            limit=body.limit,
            include_deleted=body.include_deleted,
        )
    except ValueError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))
    except Exception as exc:
        return _server_error("search", exc)

    memories = [item.to_dict() for item in ranked]
    return {"memories": memories, "count": len(memories)}


@router.post("/store")
async def store(body: StoreRequest):
    try:
        memory = await get_memory_service().store(
            body.content, metadata=body.metadata, embedding_text=body.embedding_text
        )
    except ValueError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))
    except Exception as exc:
        return _server_error("store", exc)
    return {"id": memory.id, "createdAt": memory.to_dict()["createdAt"]}


@router.get("/memories/{memory_id}")
async def get_memory(memory_id: str):
    try:
        memory = await get_memory_service().get(memory_id)
    except Exception as exc:
        return _server_error("get", exc)
    if memory is None or memory.is_deleted:
        return _not_found()
    return memory.to_dict()


@router.patch("/memories/{memory_id}")
async def update_memory(memory_id: str, body: UpdateRequest):
    try:
        memory = await get_memory_service().update(
            memory_id,
            content=body.content,
            embedding_text=body.embedding_text,
            metadata=body.metadata,
        )
    except ValueError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))
    except Exception as exc:
        return _server_error("update", exc)
    if memory is None:
        return _not_found()
    return memory.to_dict()


@router.delete("/memories/{memory_id}")
async def delete_memory(memory_id: str):
    try:
        deleted = await get_memory_service().delete(memory_id)
    except Exception as exc:
        return _server_error("delete", exc)
    if not deleted:
        return _not_found()
    return {"deleted": True}


@router.post("/memories/{memory_id}/vote")
async def vote(memory_id: str, body: VoteRequest):
    try:
        memory = await get_memory_service().vote(memory_id, 1 if body.useful else -1)
    except ValueError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))
    except Exception as exc:
        return _server_error("vote", exc)
    if memory is None:
        return _not_found()
    return {"id": memory.id, "usefulness": memory.usefulness}


@router.post("/access")
async def track_access(body: AccessRequest):
    try:
        tracked = await get_memory_service().track_access(body.ids)
    except Exception as exc:
        return _server_error("track_access", exc)
    return {"tracked": tracked}


def _handoff_payload(handoff: Memory, referenced: List[Memory]) -> Dict[str, Any]:
    handoff_dict = handoff.to_dict()
    return {
        "content": handoff.content,
        "metadata": handoff.metadata,
        "referencedMemories": [
            {"id": memory.id, "content": memory.content} for memory in referenced
        ],
        "updatedAt": handoff_dict["updatedAt"],
    }


@router.get("/handoff")
async def get_handoff():
    try:
        result = await get_memory_service().get_handoff_with_references()
    except Exception as exc:
        return _server_error("get_handoff", exc)
    if result is None:
        return _error(status.HTTP_404_NOT_FOUND, "No handoff found")
    handoff, referenced = result
    return _handoff_payload(handoff, referenced)


@router.post("/handoff")
async def store_handoff(body: HandoffRequest):
    try:
        handoff = await get_memory_service().store_handoff(
            body.project,
            body.summary,
            branch=body.branch,
            completed=body.completed,
            in_progress_blocked=body.in_progress_blocked,
            key_decisions=body.key_decisions,
            next_steps=body.next_steps,
            memory_ids=body.memory_ids,
            metadata=body.metadata,
        )
    except ValueError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))
    except Exception as exc:
        return _server_error("store_handoff", exc)
    return {"id": handoff.id, "updatedAt": handoff.to_dict()["updatedAt"]}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the store on startup and close it on shutdown."""
    logger.info("Vector memory API starting...")
    try:
        await get_memory_service().health()
    except Exception as e:
        logger.error("Failed to initialize memory store: %s", e)
        raise RuntimeError("Failed to initialize memory store during startup") from e

    yield

    logger.info("Closing memory store...")
    await close_memory_service()


def create_app(manage_service: bool = True) -> FastAPI:
    """
    Build the REST app. With `manage_service=False` the caller owns the
    service lifecycle (the CLI shares one service between MCP and HTTP).
    """
    application = FastAPI(
        title="Vector Memory API",
        description="Persistent memory store for coding-assistant sessions",
        version="0.1.0",
        lifespan=lifespan if manage_service else None,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.get("/health")
    async def health():
        payload: Dict[str, Any] = {
            "status": "ok",
            "timestamp": _utc_iso_now(),
            "pid": os.getpid(),
            "uptime": int(time.monotonic() - _STARTED_AT),
            "config": get_settings().public_dict(),
        }
        try:
            payload["store"] = await get_memory_service().health()
        except Exception as e:
            payload["status"] = "degraded"
            payload["store"] = {"error": str(e)}
        return payload

    application.include_router(router)
    return application


app = create_app()
