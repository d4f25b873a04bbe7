"""Tests for event bus and the telemetry the API publishes on it."""

import asyncio
import tempfile
from pathlib import Path

import pytest
from aiohttp.test_utils import TestClient, TestServer

from pulse.daemon.api import create_api_app
from pulse.daemon.bus import (
    ITEM_CREATED, NOW_ACTION_TAKEN, NOW_COMPUTED, NOW_DISMISSED, EventBus, Event,
)
from pulse.daemon.config import Config
from pulse.daemon.main import PulseDaemon


@pytest.fixture
def daemon():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield PulseDaemon(Config(vault_path=Path(tmpdir)))


@pytest.mark.asyncio
async def test_execute_and_defer_publish_action_taken(daemon):
    await daemon.event_bus.start()
    taken = []

    async def on_action_taken(event: Event):
        taken.append(event.data)

    daemon.event_bus.subscribe(NOW_ACTION_TAKEN, on_action_taken)

    async with TestClient(TestServer(create_api_app(daemon))) as client:
        resp = await client.post("/items", json={"user_id": "alice", "kind": "action", "title": "Email"})
        item_id = (await resp.json())["id"]
        await client.post("/now/execute", json={
            "user_id": "alice", "op": "complete_action", "ref_id": item_id,
        })
        # Failed executions publish nothing
        await client.post("/now/execute", json={"user_id": "alice", "op": "nope", "ref_id": "1"})
        await client.post("/now/events", json={"user_id": "alice", "type": "DEFER_NOW"})

    await asyncio.sleep(0.1)
    await daemon.event_bus.stop()

    assert taken == [
        {"user_id": "alice", "action_id": "complete_action", "source": "primary"},
        {"user_id": "alice", "action_id": "defer", "source": "secondary"},
    ]


@pytest.mark.asyncio
async def test_now_wildcard_sees_engine_telemetry_only(daemon):
    await daemon.event_bus.start()
    now_events = []

    async def on_now(event: Event):
        now_events.append(event.type)

    daemon.event_bus.subscribe("now.*", on_now)

    async with TestClient(TestServer(create_api_app(daemon))) as client:
        await client.post("/items", json={"user_id": "alice", "kind": "action", "title": "Email"})
        await client.get("/now", params={"user_id": "alice"})
        await client.post("/now/dismiss", json={"user_id": "alice", "key": "action:1"})

    await asyncio.sleep(0.1)
    await daemon.event_bus.stop()

    assert now_events == [NOW_COMPUTED, NOW_DISMISSED]
    assert ITEM_CREATED not in now_events

@pytest.mark.asyncio
async def test_bound_method_handlers_stay_subscribed():
    class Counter:
        def __init__(self):
            self.seen = 0

        async def on_event(self, event: Event):
            self.seen += 1

    bus = EventBus()
    await bus.start()
    counter = Counter()
    bus.subscribe(NOW_COMPUTED, counter.on_event)

    await bus.emit(Event(type=NOW_COMPUTED, data={}))
    await asyncio.sleep(0.1)
    assert counter.seen == 1

    bus.unsubscribe(NOW_COMPUTED, counter.on_event)
    await bus.emit(Event(type=NOW_COMPUTED, data={}))
    await asyncio.sleep(0.1)
    assert counter.seen == 1

    await bus.stop()


@pytest.mark.asyncio
async def test_handler_errors_do_not_reach_publisher():
    bus = EventBus()
    await bus.start()

    async def broken(event: Event):
        raise RuntimeError("boom")

    bus.subscribe("*", broken)
    await bus.emit(Event(type=NOW_COMPUTED, data={}))
    await asyncio.sleep(0.1)

    assert bus.get_stats()['handler_errors'] == 1

    await bus.stop()


@pytest.mark.asyncio
async def test_event_queue_full():
    """Test behavior when event queue is full."""
    bus = EventBus(maxsize=2)

    # Not started, so nothing drains the queue
    assert bus.emit_nowait(Event(type="test.1", data={}))
    assert bus.emit_nowait(Event(type="test.2", data={}))

    # This should be dropped
    assert not bus.emit_nowait(Event(type="test.3", data={}))

    stats = bus.get_stats()
    assert stats['dropped'] == 1
    assert stats['emitted'] == 2


def test_pattern_matching():
    """Test pattern matching logic."""
    bus = EventBus()

    # Exact match
    assert bus._matches_pattern("now.computed", "now.computed")
    assert not bus._matches_pattern("now.computed", "now.dismissed")

    # Wildcard
    assert bus._matches_pattern("now.computed", "now.*")
    assert bus._matches_pattern("item.created", "item.*")
    assert not bus._matches_pattern("now.computed", "item.*")
    assert not bus._matches_pattern("nowhere.x", "now.*")

    # Global wildcard
    assert bus._matches_pattern("anything", "*")
