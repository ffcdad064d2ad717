from .memory_repository import HybridRow, MemoryRepository, SchemaMigrationError
from .single_flight import FlightState, SingleFlight
from .vector_store import IndexNotReadyError, RRFReranker, VectorStore, VectorTable

__all__ = [
    "FlightState",
    "HybridRow",
    "IndexNotReadyError",
    "MemoryRepository",
    "RRFReranker",
    "SchemaMigrationError",
    "SingleFlight",
    "VectorStore",
    "VectorTable",
]
