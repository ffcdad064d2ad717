import json
import math

import httpx
import pytest

from services.embeddings import EmbeddingError, EmbeddingService, hash_embedding


def _norm(vector) -> float:
    return math.sqrt(sum(v * v for v in vector))


def test_hash_embedding_is_deterministic_unit_length() -> None:
    first = hash_embedding("Deploy with  the blue/green flag", 32)
    second = hash_embedding("deploy with the blue/green flag", 32)

    assert len(first) == 32
    assert first == second
    assert _norm(first) == pytest.approx(1.0)
    assert _norm(hash_embedding("", 32)) == pytest.approx(1.0)
    assert _norm(hash_embedding("!!!", 32)) == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_hash_backend_batch_preserves_order() -> None:
    service = EmbeddingService(backend="hash", dimension=48)
    texts = ["alpha", "beta", "gamma"]

    batch = await service.embed_batch(texts)
    singles = [await service.embed(text) for text in texts]

    assert batch == singles
    assert service.dimension == 48


def test_unknown_backend_and_missing_api_base_are_rejected() -> None:
    with pytest.raises(ValueError):
        EmbeddingService(backend="carrier-pigeon")
    with pytest.raises(ValueError):
        EmbeddingService(backend="openai", api_base="")


@pytest.mark.asyncio
async def test_remote_backend_orders_by_index_and_normalizes() -> None:
    seen = {}

    def _handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "data": [
                    {"index": 1, "embedding": [0.0, 2.0, 0.0]},
                    {"index": 0, "embedding": [3.0, 0.0, 4.0]},
                ]
            },
        )

    service = EmbeddingService(
        backend="openai",
        model_name="text-embedding-3-small",
        dimension=3,
        api_base="https://embeddings.example/v1/embeddings",
        api_key="sk-test",
        transport=httpx.MockTransport(_handler),
    )
    vectors = await service.embed_batch(["first", "second"])

    assert seen["url"] == "https://embeddings.example/v1/embeddings"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"] == {"model": "text-embedding-3-small", "input": ["first", "second"]}
    assert vectors[0] == pytest.approx([0.6, 0.0, 0.8])
    assert vectors[1] == pytest.approx([0.0, 1.0, 0.0])


@pytest.mark.asyncio
async def test_remote_failure_raises_instead_of_falling_back() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "overloaded"})

    service = EmbeddingService(
        backend="api",
        dimension=3,
        api_base="https://embeddings.example/v1",
        transport=httpx.MockTransport(_handler),
    )
    with pytest.raises(EmbeddingError):
        await service.embed("hello")


@pytest.mark.asyncio
async def test_remote_wrong_dimension_raises() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0, 0.0]}]})

    service = EmbeddingService(
        backend="router",
        dimension=3,
        api_base="https://embeddings.example/v1",
        transport=httpx.MockTransport(_handler),
    )
    with pytest.raises(EmbeddingError, match="dimension"):
        await service.embed("hello")
