"""Tests for the vault work item store."""

import tempfile
from datetime import datetime, timezone
from pathlib import Path

import frontmatter
import pytest

from pulse.daemon.error_handling import StoreError
from pulse.daemon.store import WorkItemStore


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_vault():
    """Create a temporary vault for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        vault_path = Path(tmpdir) / "test_vault"
        vault_path.mkdir()
        yield vault_path


@pytest.mark.asyncio
async def test_create_and_list(temp_vault):
    store = WorkItemStore(temp_vault)

    item = await store.create_item("alice", "action", "Write report", priority="high",
                                   project="q4", item_id="a1", now=NOW)
    assert item.id == "a1"
    assert item.status == "open"
    assert item.updated_at == NOW

    path = temp_vault / "users" / "alice" / "actions" / "a1.md"
    post = frontmatter.load(path)
    assert post["title"] == "Write report"
    assert post["kind"] == "action"

    items = await store.list_items("alice", "action")
    assert [i.id for i in items] == ["a1"]
    assert items[0].priority == "high"
    assert items[0].project == "q4"


@pytest.mark.asyncio
async def test_default_status_per_kind(temp_vault):
    store = WorkItemStore(temp_vault)

    decision = await store.create_item("alice", "decision", "Pick vendor")
    blocker = await store.create_item("alice", "blocker", "Waiting on legal")
    session = await store.create_item("alice", "session", "Deep work")

    assert decision.status == "unresolved"
    assert blocker.status == "active"
    assert session.status == "active"


@pytest.mark.asyncio
async def test_users_are_isolated(temp_vault):
    store = WorkItemStore(temp_vault)
    await store.create_item("alice", "action", "Alice's task", item_id="1")

    assert await store.list_items("bob", "action") == []
    assert await store.get_item("bob", "action", "1") is None


@pytest.mark.asyncio
async def test_update_is_idempotent(temp_vault):
    store = WorkItemStore(temp_vault)
    await store.create_item("alice", "action", "Ship", item_id="1", now=NOW)
    path = temp_vault / "users" / "alice" / "actions" / "1.md"

    later = datetime(2026, 10, 19, 13, 0, tzinfo=timezone.utc)
    updated = await store.update_item("alice", "action", "1", {"status": "done"}, now=later)
    assert updated.status == "done"
    assert updated.updated_at == later
    first_write = path.read_text()

    again = await store.update_item("alice", "action", "1", {"status": "done"},
                                    now=datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc))
    assert again.status == "done"
    assert path.read_text() == first_write


@pytest.mark.asyncio
async def test_touch_updates_timestamp(temp_vault):
    store = WorkItemStore(temp_vault)
    await store.create_item("alice", "session", "Deep work", item_id="s1", now=NOW)

    later = datetime(2026, 10, 20, 9, 0, tzinfo=timezone.utc)
    touched = await store.update_item("alice", "session", "s1", touch=True, now=later)
    assert touched.updated_at == later


@pytest.mark.asyncio
async def test_update_missing_item(temp_vault):
    store = WorkItemStore(temp_vault)
    assert await store.update_item("alice", "action", "nope", {"status": "done"}) is None


@pytest.mark.asyncio
async def test_find_item_across_kinds(temp_vault):
    store = WorkItemStore(temp_vault)
    await store.create_item("alice", "decision", "Pick vendor", item_id="d1")

    kind, item = await store.find_item("alice", "d1")
    assert kind == "decision"
    assert item.title == "Pick vendor"
    assert await store.find_item("alice", "zzz") is None


@pytest.mark.asyncio
async def test_rejects_bad_input(temp_vault):
    store = WorkItemStore(temp_vault)

    with pytest.raises(StoreError):
        await store.create_item("../etc", "action", "x")
    with pytest.raises(StoreError):
        await store.create_item("alice", "chore", "x")
    with pytest.raises(StoreError):
        await store.create_item("alice", "action", "  ")
    with pytest.raises(StoreError):
        await store.update_item("alice", "action", "1", {"owner": "bob"})

    await store.create_item("alice", "action", "x", item_id="dup")
    with pytest.raises(StoreError):
        await store.create_item("alice", "action", "y", item_id="dup")


@pytest.mark.asyncio
async def test_unreadable_note_is_skipped(temp_vault):
    store = WorkItemStore(temp_vault)
    await store.create_item("alice", "action", "Good", item_id="good")
    (temp_vault / "users" / "alice" / "actions" / "bad.md").write_text("---\ntitle: no id\n---\n")

    items = await store.list_items("alice", "action")
    assert [i.id for i in items] == ["good"]


@pytest.mark.asyncio
async def test_broken_front_matter_is_skipped(temp_vault):
    store = WorkItemStore(temp_vault)
    await store.create_item("alice", "action", "Good", item_id="good")
    (temp_vault / "users" / "alice" / "actions" / "bad.md").write_text(
        "---\ntitle: [unclosed\n---\n"
    )

    items = await store.list_items("alice", "action")
    assert [i.id for i in items] == ["good"]

    with pytest.raises(StoreError):
        await store.get_item("alice", "action", "bad")


@pytest.mark.asyncio
async def test_due_at_is_validated_before_writing(temp_vault):
    store = WorkItemStore(temp_vault)

    with pytest.raises(StoreError):
        await store.create_item("alice", "action", "Ship", due_at="tomorrow", item_id="a1")
    assert not (temp_vault / "users" / "alice" / "actions" / "a1.md").exists()

    item = await store.create_item("alice", "action", "Ship", due_at="2026-10-20T09:00:00+00:00",
                                   item_id="a2")
    assert item.due_at == datetime(2026, 10, 20, 9, 0, tzinfo=timezone.utc)

    with pytest.raises(StoreError):
        await store.update_item("alice", "action", "a2", {"due_at": "someday"})
    assert (await store.get_item("alice", "action", "a2")).due_at == item.due_at
