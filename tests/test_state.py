"""Tests for resource snapshots and the state store's publish/watch channel."""

import asyncio
import contextlib

import pytest

from operator_couchbase.exceptions import ResourceFailedError
from operator_couchbase.state import (
    ResourceKind,
    ResourceSnapshot,
    ResourceState,
    ResourceStateStore,
)


@pytest.fixture
def store():
    store = ResourceStateStore()
    store.register(ResourceSnapshot("couchbase", ResourceKind.CLUSTER))
    store.register(ResourceSnapshot("db", ResourceKind.SERVER_GROUP, parent="couchbase"))
    store.register(ResourceSnapshot("db-0", ResourceKind.SERVER, parent="db"))
    store.register(ResourceSnapshot("orders", ResourceKind.BUCKET, parent="couchbase"))
    return store


def test_snapshot_transition_is_a_copy():
    snapshot = ResourceSnapshot("couchbase", ResourceKind.CLUSTER)

    running = snapshot.transition(ResourceState.RUNNING, urls=("http://localhost:8091",))

    assert snapshot.state is ResourceState.NOT_STARTED
    assert running.state is ResourceState.RUNNING
    assert running.urls == ("http://localhost:8091",)
    assert running.updated_at >= snapshot.updated_at


def test_with_property_none_removes_key():
    snapshot = ResourceSnapshot("db-0", ResourceKind.SERVER).with_property("initialized", True)
    assert snapshot.properties == {"initialized": True}

    assert snapshot.with_property("initialized", None).properties == {}


@pytest.mark.parametrize(
    "state,terminal",
    [
        (ResourceState.RUNNING, False),
        (ResourceState.STOPPING, False),
        (ResourceState.EXITED, True),
        (ResourceState.FAILED_TO_START, True),
    ],
)
def test_is_terminal(state, terminal):
    assert ResourceSnapshot("x", ResourceKind.BUCKET, state=state).is_terminal is terminal


def test_children(store):
    assert [s.name for s in store.children("couchbase")] == ["db", "orders"]
    assert [s.name for s in store.children("db")] == ["db-0"]


def test_publish_unknown_resource(store):
    with pytest.raises(KeyError):
        store.publish("missing", lambda s: s)


@pytest.mark.asyncio
async def test_watch_replays_then_streams(store):
    seen = []

    async def consume():
        async with contextlib.aclosing(store.watch()) as stream:
            async for snapshot in stream:
                seen.append((snapshot.name, snapshot.state))
                if len(seen) == 5:
                    return

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    store.publish("couchbase", lambda s: s.transition(ResourceState.STARTING))
    await asyncio.wait_for(consumer, timeout=2)

    assert seen == [
        ("couchbase", ResourceState.NOT_STARTED),
        ("db", ResourceState.NOT_STARTED),
        ("db-0", ResourceState.NOT_STARTED),
        ("orders", ResourceState.NOT_STARTED),
        ("couchbase", ResourceState.STARTING),
    ]


@pytest.mark.asyncio
async def test_wait_for_current_state(store):
    """Test a resource already in a wanted state returns immediately."""
    snapshot = await asyncio.wait_for(
        store.wait_for("db-0", [ResourceState.NOT_STARTED]), timeout=2
    )
    assert snapshot.name == "db-0"


@pytest.mark.asyncio
async def test_wait_for_future_state_with_predicate(store):
    waiter = asyncio.create_task(
        store.wait_for(
            "db-0",
            [ResourceState.RUNNING],
            predicate=lambda s: s.properties.get("initialized"),
        )
    )
    await asyncio.sleep(0)
    store.publish("db-0", lambda s: s.transition(ResourceState.RUNNING))
    await asyncio.sleep(0)
    assert not waiter.done()

    store.publish("db-0", lambda s: s.with_property("initialized", True))
    snapshot = await asyncio.wait_for(waiter, timeout=2)

    assert snapshot.properties["initialized"] is True


@pytest.mark.asyncio
async def test_wait_until_running_fails_fast(store):
    waiter = asyncio.create_task(store.wait_until_running("db-0"))
    await asyncio.sleep(0)
    store.publish("db-0", lambda s: s.transition(ResourceState.FAILED_TO_START, exit_code=1))

    with pytest.raises(ResourceFailedError) as exc_info:
        await asyncio.wait_for(waiter, timeout=2)

    assert exc_info.value.resource == "db-0"
    assert exc_info.value.state == "FailedToStart"


@pytest.mark.asyncio
async def test_subscription_released_after_wait(store):
    store.publish("db-0", lambda s: s.transition(ResourceState.RUNNING))

    await store.wait_until_running("db-0")

    assert store._subscribers == set()
