from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import select, text

from db.embedder import Embedder
from db.models import Memory
from db.sqlite_client import SQLiteClient


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _make_client(tmp_path: Path, name: str, backend: str = "hash") -> SQLiteClient:
    client = SQLiteClient(_sqlite_url(tmp_path / name), embedder=Embedder(backend=backend))
    await client.init_db()
    return client


@pytest.mark.asyncio
async def test_batch_embed_backfills_and_is_idempotent(tmp_path: Path) -> None:
    client = await _make_client(tmp_path, "batch.db", backend="none")
    for content in ("Fern needs water weekly", "Cactus needs water monthly", "Orchid likes shade"):
        await client.save("memory", {"content": content, "category": "plants"})
    await client.save("note", {"title": "Repotting", "content": "Use bark mix"})

    failed = await client.batch_embed(["memory"])
    assert failed["memory"]["embedded"] == 0
    assert failed["memory"]["errors"] == 3

    client.embedder = Embedder(backend="hash")
    first = await client.batch_embed(limit=10)
    second = await client.batch_embed(limit=10)

    assert first["memory"] == {"embedded": 3, "errors": 0}
    assert first["note"] == {"embedded": 1, "errors": 0}
    assert first["entity"] == {"embedded": 0, "errors": 0}
    assert second["memory"]["embedded"] == 0
    assert second["note"]["embedded"] == 0

    status = await client.get_index_status()
    assert status["kinds"]["memory"]["vectors"] == 3
    assert status["kinds"]["memory"]["has_embedding"] == 3
    assert status["kinds"]["memory"]["consistent"] is True
    assert status["kinds"]["note"]["missing_embeddings"] == 0
    await client.close()


@pytest.mark.asyncio
async def test_batch_embed_respects_limit_per_kind(tmp_path: Path) -> None:
    client = await _make_client(tmp_path, "batch-limit.db", backend="none")
    for index in range(5):
        await client.save("memory", {"content": f"Backlog item {index}", "category": "todo"})

    client.embedder = Embedder(backend="hash")
    first = await client.batch_embed(["memory"], limit=2)
    status = await client.get_index_status()

    assert first == {"memory": {"embedded": 2, "errors": 0}}
    assert status["kinds"]["memory"]["missing_embeddings"] == 3
    await client.close()


@pytest.mark.asyncio
async def test_query_log_records_searches_and_reports_stats(tmp_path: Path) -> None:
    client = await _make_client(tmp_path, "qlog.db")
    await client.save("memory", {"content": "Book club on Wednesdays", "category": "routine"})

    await client.hybrid_search("book club")
    await client.hybrid_search("book club")
    await client.text_search("wednesdays")

    by_tool = await client.get_query_stats(group_by="tool")
    by_query = await client.get_query_stats(group_by="query")

    assert by_tool["total_queries"] == 3
    top = by_tool["groups"][0]
    assert (top["tool"], top["count"], top["avg_results"]) == ("hybrid_search", 2, 1.0)
    assert top["avg_time_ms"] >= 0.0
    assert by_query["groups"][0]["query"] == "book club"
    with pytest.raises(ValueError, match="group_by"):
        await client.get_query_stats(group_by="user")

    cleaned = await client.cleanup_query_log(older_than_days=30)
    assert cleaned["deleted"] == 0
    await client.close()


@pytest.mark.asyncio
async def test_broken_query_log_never_changes_search_results(tmp_path: Path) -> None:
    client = await _make_client(tmp_path, "qlog-broken.db")
    await client.save("memory", {"content": "Garage code is on the fridge", "category": "home"})

    healthy = await client.hybrid_search("garage code")
    async with client.session() as session:
        await session.execute(text("DROP TABLE query_log"))
    broken = await client.hybrid_search("garage code")

    assert healthy["meta"]["query_logged"] is True
    assert broken["meta"]["query_logged"] is False
    assert [item["id"] for item in broken["results"]] == [item["id"] for item in healthy["results"]]
    assert [item["score"] for item in broken["results"]] == pytest.approx(
        [item["score"] for item in healthy["results"]]
    )
    await client.close()


@pytest.mark.asyncio
async def test_apply_decay_is_daily_idempotent_and_skips_immutable(tmp_path: Path) -> None:
    client = await _make_client(tmp_path, "decay.db")
    idle = await client.save("memory", {"content": "Old hobby was chess", "category": "hobby"})
    pinned = await client.save(
        "memory", {"content": "Always be kind", "category": "value", "subcategory": "core"}
    )

    month_ago = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=30)
    async with client.session() as session:
        rows = (await session.execute(select(Memory))).scalars().all()
        for row in rows:
            row.last_accessed_at = month_ago

    first = await client.apply_decay(force=False, reason="test")
    second = await client.apply_decay(force=False, reason="test")
    third = await client.apply_decay(force=True, reason="test.force")

    assert first["applied"] is True
    assert first["updated_memories"] == 1
    assert second == {"applied": False, "reason": "already_applied_today", "day": first["day"]}
    assert third["applied"] is True

    decayed = await client.get_record("memory", idle["record"]["id"])
    untouched = await client.get_record("memory", pinned["record"]["id"])
    assert 0.05 <= decayed["decay_score"] < 1.0
    assert untouched["decay_score"] == pytest.approx(1.0)

    status = await client.get_index_status()
    assert status["meta"]["decay.last_reason"] == "test.force"
    await client.close()


@pytest.mark.asyncio
async def test_index_status_reports_capabilities(tmp_path: Path) -> None:
    client = await _make_client(tmp_path, "status.db")
    status = await client.get_index_status()

    assert set(status["kinds"]) == {"memory", "entity", "note"}
    assert status["kinds"]["memory"]["fts_available"] is True
    assert status["meta"]["fts_available.memory"] == "1"
    assert status["meta"]["embedding_dim"] == "384"
    assert status["embedder"]["backend"] == "hash"
    assert status["write_lane"]["timeouts"] == 0
    await client.close()


@pytest.mark.asyncio
async def test_config_round_trip(tmp_path: Path) -> None:
    client = await _make_client(tmp_path, "config.db")

    await client.set_config("ui.theme", "dark", "Preferred UI theme")
    await client.set_config("ui.theme", "light")
    config = await client.get_config("ui.")

    assert config["ui.theme"]["value"] == "light"
    assert config["ui.theme"]["description"] == "Preferred UI theme"
    assert await client.get_retrieval_weights() == {
        "vector": 0.4,
        "fts": 0.3,
        "recency": 0.2,
        "importance": 0.1,
    }

    await client.set_config("retrieval.fts_weight", "not-a-number")
    weights = await client.get_retrieval_weights()
    assert weights["fts"] == 0.3
    await client.close()
