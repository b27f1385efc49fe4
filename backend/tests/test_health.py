from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

import main


class _StatusStore:
    def __init__(self, payload: Dict[str, Any]) -> None:
        self.payload = payload

    async def get_index_status(self) -> Dict[str, Any]:
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


def _index_payload(*, fts: bool = True, consistent: bool = True, embedder: bool = True):
    return {
        "kinds": {
            "memory": {"fts_available": fts, "consistent": consistent},
            "note": {"fts_available": True, "consistent": True},
        },
        "embedder": {"available": embedder},
    }


def _get_health(monkeypatch: pytest.MonkeyPatch, payload) -> Dict[str, Any]:
    monkeypatch.setattr(main, "get_sqlite_client", lambda: _StatusStore(payload))
    # No context manager: the lifespan (init_db) is not run.
    client = TestClient(main.app)
    response = client.get("/health")
    assert response.status_code == 200
    return response.json()


def test_health_ok_when_indexes_are_consistent(monkeypatch: pytest.MonkeyPatch) -> None:
    body = _get_health(monkeypatch, _index_payload())

    assert body["status"] == "ok"
    assert body["index"]["degraded"] is False
    assert body["index"]["degrade_reasons"] == []
    assert "index_worker" in body["runtime"]


def test_health_lists_degrade_reasons(monkeypatch: pytest.MonkeyPatch) -> None:
    body = _get_health(
        monkeypatch, _index_payload(fts=False, consistent=False, embedder=False)
    )

    assert body["status"] == "degraded"
    assert body["index"]["degrade_reasons"] == [
        "memory:fts_unavailable",
        "memory:vector_flag_mismatch",
        "embedder_unavailable",
    ]


def test_health_degrades_when_store_is_unreachable(monkeypatch: pytest.MonkeyPatch) -> None:
    body = _get_health(monkeypatch, RuntimeError("database is locked"))

    assert body["status"] == "degraded"
    assert body["index"] == {"degraded": True, "reason": "database is locked"}
