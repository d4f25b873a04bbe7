"""Tests for command execution."""

import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from pulse.daemon.executor import CommandExecutor
from pulse.daemon.store import WorkItemStore


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
LATER = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_vault():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(temp_vault):
    return WorkItemStore(temp_vault)


@pytest.fixture
def executor(store):
    return CommandExecutor(store)


@pytest.mark.asyncio
async def test_complete_action_is_idempotent(store, executor):
    await store.create_item("alice", "action", "Email", item_id="1", now=NOW)

    first = await executor.execute("alice", {"op": "complete_action", "ref_id": "1"})
    second = await executor.execute("alice", {"op": "complete_action", "ref_id": "1"})

    assert first.ok and second.ok
    assert (await store.get_item("alice", "action", "1")).status == "done"


@pytest.mark.asyncio
async def test_numeric_ref_id(store, executor):
    await store.create_item("alice", "action", "Email", item_id="42", now=NOW)
    result = await executor.execute("alice", {"op": "complete_action", "ref_id": 42})
    assert result.ok


@pytest.mark.asyncio
async def test_resolve_blocker(store, executor):
    await store.create_item("alice", "blocker", "CI red", item_id="b1", now=NOW)

    result = await executor.execute("alice", {"op": "resolve_blocker", "ref_id": "b1"})

    assert result.to_dict() == {"ok": True}
    assert (await store.get_item("alice", "blocker", "b1")).status == "resolved"


@pytest.mark.asyncio
async def test_resume_ops_touch_the_item(store, executor):
    await store.create_item("alice", "session", "Deep work", item_id="s1", now=NOW)
    await store.create_item("alice", "action", "Draft", item_id="a1", now=NOW)

    assert (await executor.execute("alice", {"op": "resume_session", "ref_id": "s1"}, now=LATER)).ok
    assert (await executor.execute("alice", {"op": "resume_action", "ref_id": "a1"}, now=LATER)).ok

    session = await store.get_item("alice", "session", "s1")
    action = await store.get_item("alice", "action", "a1")
    assert session.updated_at == LATER
    assert action.updated_at == LATER
    assert action.status == "in_progress"


@pytest.mark.asyncio
async def test_open_finds_the_item_kind(store, executor):
    await store.create_item("alice", "decision", "Pick vendor", item_id="d1", now=NOW)

    assert (await executor.execute("alice", {"op": "open", "ref_id": "d1"}, now=LATER)).ok
    assert (await store.get_item("alice", "decision", "d1")).updated_at == LATER

    missing = await executor.execute("alice", {"op": "open", "ref_id": "zz"})
    assert not missing.ok
    assert "not found" in missing.error


@pytest.mark.asyncio
async def test_unknown_op(executor):
    result = await executor.execute("alice", {"op": "delete_everything", "ref_id": "1"})
    assert not result.ok
    assert result.error == "unknown op: delete_everything"

    assert not (await executor.execute("alice", {"op": ["complete_action"], "ref_id": "1"})).ok
    assert not (await executor.execute("alice", "complete_action")).ok


@pytest.mark.asyncio
async def test_missing_ref_and_item(executor):
    no_ref = await executor.execute("alice", {"op": "complete_action"})
    assert not no_ref.ok
    assert "ref_id" in no_ref.error

    missing = await executor.execute("alice", {"op": "complete_action", "ref_id": "404"})
    assert missing.to_dict() == {"ok": False, "error": "action not found: 404"}


@pytest.mark.asyncio
async def test_store_errors_become_failures(executor):
    result = await executor.execute("alice", {"op": "complete_action", "ref_id": "../../etc"})
    assert not result.ok
    assert "invalid item id" in result.error
