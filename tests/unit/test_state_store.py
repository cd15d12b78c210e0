"""Tests for the JSON state store."""

import asyncio
import json

import pytest

from taskrelay.storage.state_store import JsonStateStore


@pytest.mark.asyncio
async def test_store_initialization(tmp_path):
    """Test the state directory is created."""
    store = JsonStateStore(tmp_path / "nested" / "state")
    assert store.state_dir.exists()


@pytest.mark.asyncio
async def test_missing_collection_is_empty(state_store):
    assert await state_store.load("deployments") == {}
    assert await state_store.get("deployments", "nope") is None


@pytest.mark.asyncio
async def test_transaction_persists(state_store, temp_state_dir):
    """Test transaction writes the collection document."""
    async with state_store.transaction("deployments") as records:
        records["d1"] = {"id": "d1", "status": "working"}

    document = json.loads((temp_state_dir / "deployments.json").read_text())
    assert document["collection"] == "deployments"
    assert document["records"]["d1"]["status"] == "working"
    assert "updated_at" in document
    assert not (temp_state_dir / "deployments.tmp").exists()


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(state_store):
    """Test nothing is written when the block raises."""
    async with state_store.transaction("tasks") as records:
        records["t1"] = {"id": "t1", "title": "before"}

    with pytest.raises(RuntimeError):
        async with state_store.transaction("tasks") as records:
            records["t1"]["title"] = "after"
            raise RuntimeError("boom")

    loaded = await state_store.get("tasks", "t1")
    assert loaded["title"] == "before"


@pytest.mark.asyncio
async def test_insertion_order_survives_reload(state_store, temp_state_dir):
    for record_id in ["c", "a", "b"]:
        async with state_store.transaction("deployments") as records:
            records[record_id] = {"id": record_id}

    reopened = JsonStateStore(temp_state_dir)
    assert list(await reopened.load("deployments")) == ["c", "a", "b"]


@pytest.mark.asyncio
async def test_concurrent_transactions_do_not_lose_updates(state_store):
    """Test the collection lock serializes read-modify-write cycles."""

    async def increment() -> None:
        async with state_store.transaction("counters") as records:
            current = records.get("n", {"value": 0})["value"]
            await asyncio.sleep(0)
            records["n"] = {"value": current + 1}

    await asyncio.gather(*(increment() for _ in range(10)))

    assert (await state_store.get("counters", "n"))["value"] == 10


@pytest.mark.asyncio
async def test_unicode_is_stored_verbatim(state_store, temp_state_dir):
    async with state_store.transaction("plan_revisions") as records:
        records["r1"] = {"content": "🔄 Planning..."}

    assert "🔄" in (temp_state_dir / "plan_revisions.json").read_text()
