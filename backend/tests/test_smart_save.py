from pathlib import Path

import pytest

from db.embedder import Embedder
from db.sqlite_client import SQLiteClient, token_overlap


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _make_client(tmp_path: Path, name: str, backend: str = "hash") -> SQLiteClient:
    client = SQLiteClient(_sqlite_url(tmp_path / name), embedder=Embedder(backend=backend))
    await client.init_db()
    return client


def test_token_overlap_is_shared_over_union() -> None:
    assert token_overlap("dark mode on", "dark mode off") == pytest.approx(2 / 4)
    assert token_overlap("Same Words", "same words") == pytest.approx(1.0)
    assert token_overlap("", "") == 0.0


@pytest.mark.asyncio
async def test_same_content_twice_needs_decision(tmp_path: Path) -> None:
    client = await _make_client(tmp_path, "smart-dup.db")
    first = await client.smart_save("User prefers dark mode in every editor", {"category": "preference"})
    second = await client.smart_save("User prefers dark mode in every editor", {"category": "preference"})

    assert first["action"] == "added"
    assert first["record"]["has_embedding"] is True
    assert second["action"] == "needs_decision"
    assert second["method"] == "vector"
    assert second["suggested_action"] == "review"
    assert [item["id"] for item in second["similar"]] == [first["record"]["id"]]
    assert second["similar"][0]["distance"] == pytest.approx(0.0, abs=1e-4)
    assert second["similar"][0]["similarity"] == pytest.approx(1.0, abs=1e-4)

    history = await client.get_history(first["record"]["id"])
    assert [entry["operation"] for entry in history] == ["created"]
    assert history[0]["reason"] == "Proactive save"
    assert len(await client.list_records("memory")) == 1
    await client.close()


@pytest.mark.asyncio
async def test_force_add_skips_detection(tmp_path: Path) -> None:
    client = await _make_client(tmp_path, "smart-force.db")
    await client.smart_save("Weekly review on Fridays", {"category": "routine"})
    forced = await client.smart_save(
        "Weekly review on Fridays", {"category": "routine"}, force_add=True
    )

    assert forced["action"] == "added"
    assert len(await client.list_records("memory")) == 2
    await client.close()


@pytest.mark.asyncio
async def test_unrelated_content_is_added(tmp_path: Path) -> None:
    client = await _make_client(tmp_path, "smart-unrelated.db")
    await client.smart_save("Coffee order is a flat white", {"category": "preference"})
    other = await client.smart_save("Dentist appointment next Thursday", {"category": "todo"})

    assert other["action"] == "added"
    await client.close()


@pytest.mark.asyncio
async def test_correction_flag_forces_top_importance(tmp_path: Path) -> None:
    client = await _make_client(tmp_path, "smart-correction.db")
    result = await client.smart_save(
        "Meeting room is B12, not B21",
        {"category": "fact", "importance": 2},
        is_correction=True,
    )
    by_category = await client.smart_save("Wifi password rotates monthly", {"category": "correction"})

    assert result["record"]["importance"] == 5
    assert by_category["record"]["importance"] == 5
    history = await client.get_history(result["record"]["id"])
    assert history[0]["reason"] == "User correction"

    duplicate = await client.smart_save(
        "Meeting room is B12, not B21", {"category": "fact"}, is_correction=True
    )
    assert duplicate["action"] == "needs_decision"
    assert duplicate["suggested_action"] == "supersede"
    await client.close()


@pytest.mark.asyncio
async def test_text_fallback_detects_duplicates_without_embeddings(tmp_path: Path) -> None:
    client = await _make_client(tmp_path, "smart-text.db", backend="none")
    first = await client.smart_save("Parents visit every December", {"category": "family"})
    second = await client.smart_save("Parents visit every December", {"category": "family"})

    assert first["action"] == "added"
    assert first["embedding"]["embedded"] is False
    assert first["record"]["has_embedding"] is False
    assert second["action"] == "needs_decision"
    assert second["method"] == "fts"
    assert second["similar"][0]["id"] == first["record"]["id"]
    assert second["similar"][0]["overlap"] == pytest.approx(1.0)

    # Shares one of six distinct tokens, so it does not match the first record.
    third = await client.smart_save("Parents prefer email", {"category": "family"})
    assert third["action"] == "added"
    await client.close()


@pytest.mark.asyncio
async def test_superseded_records_are_not_duplicates(tmp_path: Path) -> None:
    client = await _make_client(tmp_path, "smart-superseded.db")
    first = await client.smart_save("Drives a grey Civic", {"category": "fact"})
    await client.supersede(first["record"]["id"], "Commutes by train now")

    again = await client.smart_save("Drives a grey Civic", {"category": "fact"})
    assert again["action"] == "added"
    await client.close()
