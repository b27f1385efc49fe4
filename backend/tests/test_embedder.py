import asyncio
import math
import threading
import time
from typing import Any, List

import pytest

from db.embedder import EMBEDDING_DIM, Embedder
from db.errors import EmbeddingUnavailableError


class _FakeSentenceModel:
    def __init__(self) -> None:
        self.encode_calls = 0

    def encode(self, texts: List[str], normalize_embeddings: bool = False) -> List[List[float]]:
        self.encode_calls += 1
        rows = []
        for index, _ in enumerate(texts):
            row = [0.0] * EMBEDDING_DIM
            row[index % EMBEDDING_DIM] = 3.0
            row[(index + 1) % EMBEDDING_DIM] = 4.0
            rows.append(row)
        return rows


def _norm(vector: List[float]) -> float:
    return math.sqrt(sum(v * v for v in vector))


@pytest.mark.asyncio
async def test_concurrent_first_calls_load_local_model_once() -> None:
    loader_calls: List[str] = []
    loader_guard = threading.Lock()

    def _slow_loader(model_name: str) -> Any:
        with loader_guard:
            loader_calls.append(model_name)
        time.sleep(0.1)
        return _FakeSentenceModel()

    embedder = Embedder(backend="local", model="fake-mini", loader=_slow_loader)
    vectors = await asyncio.gather(*(embedder.embed(f"text {i}") for i in range(6)))

    assert loader_calls == ["fake-mini"]
    assert embedder.load_count == 1
    assert embedder.is_loaded
    assert len(vectors) == 6
    for vector in vectors:
        assert len(vector) == EMBEDDING_DIM
        assert _norm(vector) == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_hash_backend_returns_unit_vectors_and_is_deterministic() -> None:
    embedder = Embedder(backend="hash")

    first = await embedder.embed("Bhavya prefers dark mode")
    second = await embedder.embed("Bhavya   prefers dark mode")

    assert len(first) == EMBEDDING_DIM
    assert _norm(first) == pytest.approx(1.0)
    assert first == pytest.approx(second)


@pytest.mark.asyncio
async def test_try_embed_reports_truncation() -> None:
    embedder = Embedder(backend="hash", max_input_chars=10)

    outcome = await embedder.try_embed("alpha beta gamma delta epsilon")
    short = await embedder.try_embed("alpha")

    assert outcome.ok
    assert outcome.truncated is True
    assert short.ok
    assert short.truncated is False
    prefix, truncated = embedder.prepare("alpha beta gamma delta epsilon")
    assert prefix == "alpha beta"
    assert truncated is True


@pytest.mark.asyncio
async def test_disabled_backend_fails_softly_through_try_embed() -> None:
    embedder = Embedder(backend="none")

    outcome = await embedder.try_embed("anything")

    assert not outcome.ok
    assert outcome.vector is None
    assert "disabled" in (outcome.error or "")
    with pytest.raises(EmbeddingUnavailableError, match="batch_embed"):
        await embedder.embed("anything")


@pytest.mark.asyncio
async def test_failed_model_load_is_reported_not_raised_by_try_embed() -> None:
    def _broken_loader(_model_name: str) -> Any:
        raise OSError("weights missing")

    embedder = Embedder(backend="local", model="broken", loader=_broken_loader)
    outcome = await embedder.try_embed("hello")

    assert not outcome.ok
    assert "failed to load" in (outcome.error or "")
    assert embedder.available is False
    assert embedder.status()["load_error"].startswith("OSError")


@pytest.mark.asyncio
async def test_successful_retry_clears_load_error() -> None:
    attempts = []

    def _flaky_loader(_model_name: str) -> Any:
        attempts.append(_model_name)
        if len(attempts) == 1:
            raise OSError("transient")
        return _FakeSentenceModel()

    embedder = Embedder(backend="local", model="flaky", loader=_flaky_loader)
    first = await embedder.try_embed("hello")
    assert not first.ok
    assert embedder.available is False

    second = await embedder.try_embed("hello")

    assert second.ok
    assert embedder.available is True
    assert embedder.status()["load_error"] is None
    assert embedder.load_count == 1


@pytest.mark.asyncio
async def test_api_backend_without_base_url_is_unavailable() -> None:
    embedder = Embedder(backend="api", api_base="", api_key="")

    with pytest.raises(EmbeddingUnavailableError, match="api base"):
        await embedder.embed("hello")


def test_extract_embeddings_orders_by_index() -> None:
    payload = {
        "data": [
            {"index": 1, "embedding": [0.0, 1.0]},
            {"index": 0, "embedding": [1.0, 0.0]},
        ]
    }
    assert Embedder._extract_embeddings(payload) == [[1.0, 0.0], [0.0, 1.0]]
    assert Embedder._extract_embeddings({"data": "nope"}) is None


@pytest.mark.asyncio
async def test_wrong_dimension_model_output_is_rejected() -> None:
    class _TinyModel:
        def encode(self, texts, normalize_embeddings=False):
            return [[1.0, 0.0, 0.0] for _ in texts]

    embedder = Embedder(backend="local", model="tiny", loader=lambda _name: _TinyModel())
    outcome = await embedder.try_embed("hello")

    assert not outcome.ok
    assert "dimensions" in (outcome.error or "")
