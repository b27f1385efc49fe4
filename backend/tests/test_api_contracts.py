from typing import Any, Dict, List, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import maintenance as maintenance_api
from api import records as records_api
from api import search as search_api
from db.errors import (
    EmbeddingUnavailableError,
    ImmutableRecordError,
    NotFoundError,
    WriteContentionError,
)
from runtime_state import IndexTaskWorker


class _FakeStore:
    def __init__(self) -> None:
        self.saves: List[Dict[str, Any]] = []
        self.weights = {"vector": 0.4, "fts": 0.3, "recency": 0.2, "importance": 0.1}

    async def save(self, kind: str, fields: Dict[str, Any], *, index_now: bool = True):
        if kind not in {"memory", "entity", "note"}:
            raise ValueError(f"unknown kind '{kind}'")
        self.saves.append({"kind": kind, "fields": dict(fields), "index_now": index_now})
        return {
            "record": {"id": "mem_new", "kind": kind, **fields},
            "embedding": {"embedded": index_now, "pending": not index_now},
        }

    async def get_record(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        if record_id == "mem_known":
            return {"id": record_id, "kind": kind, "content": "Known"}
        return None

    async def update(self, kind: str, record_id: str, patch: Dict[str, Any], *, reason=None):
        raise ImmutableRecordError(record_id, ["core_value"])

    async def supersede(self, old_id: str, new_content: str, *, reason=None, overrides=None):
        raise NotFoundError("memory", old_id)

    async def delete(self, kind: str, record_id: str, *, reason=None):
        raise WriteContentionError("delete", 5.0)

    async def delete_link(self, link_id: str):
        if link_id != "lnk_known":
            raise NotFoundError("link", link_id)
        return {"deleted": True, "link": {"id": link_id}}

    async def hybrid_search(self, query: str, *, kinds=None, limit=10, weights=None):
        raise EmbeddingUnavailableError("embedding backend is disabled")

    async def text_search(self, query: str, *, kinds=None, limit=10):
        return {"results": [], "meta": {"returned": 0, "query_logged": True}}

    async def get_retrieval_weights(self) -> Dict[str, float]:
        return dict(self.weights)

    async def set_retrieval_weights(self, weights: Dict[str, Any]) -> Dict[str, float]:
        self.weights.update(weights)
        return dict(self.weights)


def _build_client(monkeypatch: pytest.MonkeyPatch, store: _FakeStore, *, worker_enabled: bool) -> TestClient:
    async def _ensure_started(_factory) -> None:
        return None

    worker = IndexTaskWorker()
    monkeypatch.setattr(worker, "_enabled", worker_enabled)
    monkeypatch.setattr(maintenance_api.runtime_state, "ensure_started", _ensure_started)
    monkeypatch.setattr(maintenance_api.runtime_state, "index_worker", worker)
    for module in (records_api, search_api, maintenance_api):
        monkeypatch.setattr(module, "get_sqlite_client", lambda: store)

    app = FastAPI()
    app.include_router(records_api.router)
    app.include_router(search_api.router)
    app.include_router(maintenance_api.router)
    return TestClient(app)


def test_missing_record_returns_404_with_dict_detail(monkeypatch: pytest.MonkeyPatch) -> None:
    with _build_client(monkeypatch, _FakeStore(), worker_enabled=False) as client:
        found = client.get("/records/memory/mem_known")
        missing = client.get("/records/memory/mem_missing")
        superseded = client.post(
            "/records/memory/mem_gone/supersede", json={"new_content": "New fact"}
        )

    assert found.status_code == 200
    assert missing.status_code == 404
    assert missing.json()["detail"]["error"] == "not_found"
    assert superseded.status_code == 404
    assert superseded.json()["detail"] == {
        "reason": "memory 'mem_gone' not found",
        "error": "not_found",
        "kind": "memory",
        "id": "mem_gone",
    }


def test_immutable_record_update_returns_409(monkeypatch: pytest.MonkeyPatch) -> None:
    with _build_client(monkeypatch, _FakeStore(), worker_enabled=False) as client:
        response = client.patch(
            "/records/memory/mem_core", json={"patch": {"content": "changed"}}
        )

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["error"] == "immutable"
    assert detail["reasons"] == ["core_value"]
    assert detail["id"] == "mem_core"


def test_invalid_kind_returns_422_invalid_argument(monkeypatch: pytest.MonkeyPatch) -> None:
    with _build_client(monkeypatch, _FakeStore(), worker_enabled=False) as client:
        response = client.post("/records", json={"kind": "planet", "fields": {"name": "Mars"}})

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["error"] == "invalid_argument"
    assert "unknown kind" in detail["reason"]


def test_unavailable_embeddings_and_contention_return_503(monkeypatch: pytest.MonkeyPatch) -> None:
    with _build_client(monkeypatch, _FakeStore(), worker_enabled=False) as client:
        search = client.post("/search/hybrid", json={"query": "dark mode"})
        text_only = client.post("/search/text", json={"query": "dark mode"})
        deleted = client.delete("/records/memory/mem_known")

    assert search.status_code == 503
    assert search.json()["detail"]["error"] == "embedding_unavailable"
    assert "batch" in search.json()["detail"]["hint"]
    assert text_only.status_code == 200
    assert deleted.status_code == 503
    assert deleted.json()["detail"]["error"] == "write_contention"
    assert deleted.json()["detail"]["operation"] == "delete"


def test_save_indexes_inline_when_worker_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _FakeStore()
    with _build_client(monkeypatch, store, worker_enabled=False) as client:
        response = client.post(
            "/records", json={"kind": "memory", "fields": {"content": "Likes jazz"}}
        )

    assert response.status_code == 201
    assert store.saves[0]["index_now"] is True
    assert "index_job" not in response.json()


def test_save_hands_embedding_to_worker_when_enabled(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _FakeStore()
    calls: List[Dict[str, Any]] = []

    async def _enqueue(*, kind: str, record_id: str, reason: str = "write"):
        calls.append({"kind": kind, "record_id": record_id, "reason": reason})
        return {"queued": True, "job_id": "idx-test", "record_id": record_id}

    with _build_client(monkeypatch, store, worker_enabled=True) as client:
        monkeypatch.setattr(
            maintenance_api.runtime_state.index_worker, "enqueue_embed_record", _enqueue
        )
        response = client.post(
            "/records", json={"kind": "memory", "fields": {"content": "Likes jazz"}}
        )

    assert response.status_code == 201
    assert store.saves[0]["index_now"] is False
    assert calls == [{"kind": "memory", "record_id": "mem_new", "reason": "save"}]
    assert response.json()["index_job"]["job_id"] == "idx-test"


def test_save_keeps_record_when_index_job_is_dropped(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _FakeStore()

    async def _enqueue(*, kind: str, record_id: str, reason: str = "write"):
        return {"queued": False, "dropped": True, "job_id": "idx-drop", "reason": "queue_full"}

    with _build_client(monkeypatch, store, worker_enabled=True) as client:
        monkeypatch.setattr(
            maintenance_api.runtime_state.index_worker, "enqueue_embed_record", _enqueue
        )
        response = client.post(
            "/records", json={"kind": "memory", "fields": {"content": "Likes jazz"}}
        )

    # The row is already committed, so a retry would only duplicate it.
    assert response.status_code == 201
    body = response.json()
    assert body["record"]["id"] == "mem_new"
    assert body["embedding"]["pending"] is True
    assert body["index_job"]["dropped"] is True
    assert body["index_job"]["reason"] == "queue_full"
    assert len(store.saves) == 1


def test_dropped_background_batch_returns_503(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _enqueue_batch(*, limit: int = 100, reason: str = "manual"):
        return {"queued": False, "dropped": True, "job_id": "idx-full", "reason": "queue_full"}

    with _build_client(monkeypatch, _FakeStore(), worker_enabled=True) as client:
        monkeypatch.setattr(
            maintenance_api.runtime_state.index_worker, "enqueue_batch_embed", _enqueue_batch
        )
        response = client.post("/maintenance/embeddings/batch", json={"background": True})

    assert response.status_code == 503
    assert response.json()["detail"] == {
        "error": "index_job_enqueue_failed",
        "reason": "queue_full",
        "operation": "batch_embed",
        "job_id": "idx-full",
    }


def test_weights_endpoints_round_trip(monkeypatch: pytest.MonkeyPatch) -> None:
    store = _FakeStore()
    with _build_client(monkeypatch, store, worker_enabled=False) as client:
        updated = client.put("/maintenance/config/weights", json={"recency": 0.0})
        current = client.get("/maintenance/config/weights")
        rejected = client.put("/maintenance/config/weights", json={"vector": -1})

    assert updated.status_code == 200
    assert updated.json()["weights"]["recency"] == 0.0
    assert current.json()["weights"] == updated.json()["weights"]
    assert rejected.status_code == 422


def test_background_batch_requires_enabled_worker(monkeypatch: pytest.MonkeyPatch) -> None:
    with _build_client(monkeypatch, _FakeStore(), worker_enabled=False) as client:
        response = client.post("/maintenance/embeddings/batch", json={"background": True})

    assert response.status_code == 409
    assert response.json()["detail"]["error"] == "index_worker_disabled"


def test_unknown_index_job_returns_404(monkeypatch: pytest.MonkeyPatch) -> None:
    with _build_client(monkeypatch, _FakeStore(), worker_enabled=False) as client:
        response = client.get("/maintenance/index/job/idx-missing")

    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "job_not_found"


def test_decay_endpoint_reports_degraded_result(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _run_decay(*, client_factory, force: bool, reason: str):
        return {"applied": False, "degraded": True, "reason": "disk I/O error"}

    with _build_client(monkeypatch, _FakeStore(), worker_enabled=False) as client:
        monkeypatch.setattr(maintenance_api.runtime_state.decay, "run_decay", _run_decay)
        response = client.post("/maintenance/decay", params={"force": "true"})

    assert response.status_code == 200
    assert response.json()["ok"] is False
    assert response.json()["status"] == "degraded"


def test_delete_link_route_is_not_shadowed_by_record_delete(monkeypatch: pytest.MonkeyPatch) -> None:
    with _build_client(monkeypatch, _FakeStore(), worker_enabled=False) as client:
        deleted = client.delete("/records/links/lnk_known")
        missing = client.delete("/records/links/lnk_missing")

    assert deleted.status_code == 200
    assert deleted.json() == {"deleted": True, "link": {"id": "lnk_known"}}
    assert missing.status_code == 404
    assert missing.json()["detail"]["kind"] == "link"
