from typing import Optional

from config import Settings, load_settings
from db.memory_repository import MemoryRepository
from db.vector_store import VectorStore

from .embeddings import EmbeddingError, EmbeddingService
from .memory_service import MemoryService
from .ranking import RankingConfig, RankingEngine, SearchIntent

_memory_service: Optional[MemoryService] = None
_settings: Optional[Settings] = None


def build_memory_service(settings: Settings) -> MemoryService:
    """Wire store, embeddings and ranking from settings."""
    store = VectorStore(settings.database_url)
    repository = MemoryRepository(
        store,
        vector_dim=settings.embedding_dim,
        rrf_k=settings.rrf_k,
        index_wait_timeout=settings.index_wait_timeout,
    )
    embeddings = EmbeddingService(
        backend=settings.embedding_backend,
        model_name=settings.embedding_model,
        dimension=settings.embedding_dim,
        api_base=settings.embedding_api_base,
        api_key=settings.embedding_api_key,
        timeout=settings.remote_timeout,
    )
    ranking = RankingEngine(
        RankingConfig(
            recency_decay_per_hour=settings.recency_decay_per_hour,
            rrf_k=settings.rrf_k,
            overfetch_factor=settings.overfetch_factor,
            max_chain_hops=settings.max_chain_hops,
        )
    )
    return MemoryService(repository, embeddings, ranking=ranking)


def configure(settings: Settings) -> None:
    """Use `settings` for the next `get_memory_service()` build."""
    global _settings
    _settings = settings


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def get_memory_service() -> MemoryService:
    """Get the global MemoryService instance."""
    global _memory_service
    if _memory_service is None:
        _memory_service = build_memory_service(get_settings())
    return _memory_service


async def close_memory_service() -> None:
    """Close the global MemoryService and its database engine."""
    global _memory_service
    if _memory_service:
        await _memory_service.close()
        _memory_service = None


__all__ = [
    "EmbeddingError",
    "EmbeddingService",
    "MemoryService",
    "RankingConfig",
    "RankingEngine",
    "SearchIntent",
    "build_memory_service",
    "close_memory_service",
    "configure",
    "get_memory_service",
    "get_settings",
]
