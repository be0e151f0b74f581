"""
Tests for ClusterOrchestrator.

These tests drive full bootstrap runs against a scripted management API and
verify:
- The exact request sequence for fresh and already-initialized clusters
- Per-node join isolation and rebalance gating
- Published state for every resource on success, failure and stop
- Bucket provisioning after the cluster is running, and its cancellation
"""

import asyncio
import contextlib

import pytest

from operator_couchbase.buckets import BucketProvisioner
from operator_couchbase.exceptions import TopologyValidationError
from operator_couchbase.orchestrator import INITIALIZED_PROPERTY, ClusterOrchestrator
from operator_couchbase.protocols import NodeControllerProtocol, ResourceCommand
from operator_couchbase.rebalance import RebalanceController
from operator_couchbase.state import ResourceState
from operator_couchbase.topology import (
    BucketDefinition,
    CertificateAuthority,
    ClusterTopology,
    SampleBucketDefinition,
    ServerGroup,
    Services,
)

POOL = "/pools/default"
INIT = "/clusterInit"
ALTERNATE = "/node/controller/setupAlternateAddresses/external"
NODES = "/pools/nodes"
ADD_NODE = "/controller/addNode"
REBALANCE = "/controller/rebalance"
PROGRESS = "/pools/default/rebalanceProgress"
ORDERS = "/pools/default/buckets/orders"
LOAD_CAS = "/node/controller/loadTrustedCAs"
RELOAD_CERT = "/node/controller/reloadCertificate"


def _members(*names: str) -> tuple[int, dict]:
    return (200, {"nodes": [{"hostname": f"{name}.dev.internal:8091"} for name in names]})


def _fresh_cluster(transport, *, joined_later: tuple[str, ...] = ()) -> None:
    """Routes for an uninitialized cluster; later pool checks see it initialized."""
    transport.route("GET", POOL, (404, None), (200, {"name": "default"}))
    transport.route("POST", INIT, (200, None))
    transport.route("PUT", ALTERNATE, (200, None))
    transport.route("GET", NODES, _members("db-0"), _members("db-0", *joined_later))
    transport.route("POST", ADD_NODE, (200, None))
    transport.route("POST", REBALANCE, (200, None))
    transport.route("GET", PROGRESS, (200, {"status": "running"}), (200, {"status": "none"}))


@pytest.fixture
def build(make_client, states, node_controller):
    def _build(topology: ClusterTopology) -> ClusterOrchestrator:
        client = make_client(topology)
        return ClusterOrchestrator(
            topology,
            client,
            states=states,
            nodes=node_controller,
            rebalancer=RebalanceController(client, poll_interval=0),
            buckets=BucketProvisioner(client, states, health_poll_interval=0, task_poll_interval=0),
        )

    return _build


def _record(
    states, name: str, until: ResourceState
) -> tuple[list[ResourceState], asyncio.Task]:
    """Collect every state published for one resource until it reaches `until`."""
    seen: list[ResourceState] = []

    async def _consume():
        async with contextlib.aclosing(states.watch()) as stream:
            async for snapshot in stream:
                if snapshot.name == name and (not seen or seen[-1] is not snapshot.state):
                    seen.append(snapshot.state)
                if snapshot.name == name and snapshot.state is until:
                    return

    return seen, asyncio.create_task(_consume())


async def _settle(orchestrator: ClusterOrchestrator):
    return await asyncio.wait_for(orchestrator.wait_until_settled(), timeout=5)


async def _bucket_tasks_done(orchestrator: ClusterOrchestrator) -> None:
    while orchestrator._bucket_tasks:
        await asyncio.sleep(0)


def test_fake_controller_satisfies_protocol(node_controller):
    assert isinstance(node_controller, NodeControllerProtocol)


# =============================================================================
# Bootstrap sequences
# =============================================================================


@pytest.mark.asyncio
async def test_fresh_single_node_sequence(transport, build, states, node_controller, single_node_topology):
    """Test a fresh one-node cluster issues pool check, init and alternate addresses only."""
    _fresh_cluster(transport)
    orchestrator = build(single_node_topology)

    orchestrator.start()
    snapshot = await _settle(orchestrator)

    assert snapshot.state is ResourceState.RUNNING
    assert transport.calls() == [("GET", POOL), ("POST", INIT), ("PUT", ALTERNATE)]
    assert node_controller.started == ["db-0"]
    assert snapshot.urls == ("http://db-0.dev.internal:8091",)
    assert snapshot.environment == {"CB_USERNAME": "Administrator", "CB_PASSWORD": "password"}
    assert states.current("db").state is ResourceState.RUNNING
    assert states.current("db-0").properties == {INITIALIZED_PROPERTY: True}
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_three_nodes_join_then_single_rebalance(transport, build, states, three_node_topology):
    """Test both secondaries join, then exactly one rebalance runs to completion."""
    _fresh_cluster(transport)
    orchestrator = build(three_node_topology)
    history, recorder = _record(states, "couchbase", until=ResourceState.RUNNING)
    await asyncio.sleep(0)

    orchestrator.start()
    snapshot = await _settle(orchestrator)
    await asyncio.wait_for(recorder, timeout=5)

    assert snapshot.state is ResourceState.RUNNING
    calls = transport.calls()
    assert calls[:4] == [("GET", POOL), ("POST", INIT), ("PUT", ALTERNATE), ("GET", NODES)]
    assert sorted(f["hostname"] for f in transport.forms("POST", ADD_NODE)) == [
        "db-1.dev.internal",
        "db-2.dev.internal",
    ]
    assert len(transport.calls("PUT", ALTERNATE)) == 3
    assert transport.calls("POST", REBALANCE) == [("POST", REBALANCE)]
    rebalance_at = calls.index(("POST", REBALANCE))
    assert all(call[1] != ADD_NODE for call in calls[rebalance_at:])
    assert calls[rebalance_at + 1:] == [("GET", PROGRESS), ("GET", PROGRESS)]
    (body,) = transport.forms("POST", REBALANCE)
    assert body["knownNodes"] == (
        "ns_1@db-0.dev.internal,ns_1@db-1.dev.internal,ns_1@db-2.dev.internal"
    )
    assert history == [
        ResourceState.NOT_STARTED,
        ResourceState.STARTING,
        ResourceState.INITIALIZING,
        ResourceState.REBALANCING,
        ResourceState.RUNNING,
    ]
    for name in ("db-0", "db-1", "db-2"):
        assert states.current(name).properties.get(INITIALIZED_PROPERTY) is True
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_second_pass_makes_no_mutating_calls(transport, build, three_node_topology):
    """Test bootstrapping an initialized, fully joined cluster again changes nothing."""
    _fresh_cluster(transport, joined_later=("db-1", "db-2"))
    orchestrator = build(three_node_topology)
    orchestrator.start()
    await _settle(orchestrator)
    transport.reset()

    context = await orchestrator.bootstrap()

    assert transport.mutating_calls == []
    assert context.cluster_initialized is False
    assert context.nodes_added is False
    assert transport.calls("GET", PROGRESS) == []
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_second_pass_with_ca_skips_certificates(transport, build):
    """Test certificates are loaded once per node and never on an initialized cluster."""
    topology = ClusterTopology(
        name="couchbase",
        password="password",
        certificate_authority=CertificateAuthority(certificate="pem"),
    )
    topology.add_server_group(ServerGroup("db", replicas=3))
    _fresh_cluster(transport, joined_later=("db-1", "db-2"))
    transport.route("POST", LOAD_CAS, (200, None))
    transport.route("POST", RELOAD_CERT, (200, None))
    orchestrator = build(topology)

    orchestrator.start()
    await _settle(orchestrator)

    assert transport.calls()[:4] == [
        ("GET", POOL),
        ("POST", LOAD_CAS),
        ("POST", RELOAD_CERT),
        ("POST", INIT),
    ]
    assert len(transport.calls("POST", LOAD_CAS)) == 3

    transport.reset()
    context = await orchestrator.bootstrap()

    assert transport.mutating_calls == []
    assert context.cluster_initialized is False
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_join_failure_excluded_from_rebalance(transport, build, states, form, three_node_topology):
    """Test a failed join is logged, skipped by rebalance and leaves the cluster running."""
    _fresh_cluster(transport)

    def add_node(request):
        if form(request)["hostname"] == "db-1.dev.internal":
            return (400, "Failed to reach erlang port mapper")
        return (200, None)

    transport.route("POST", ADD_NODE, add_node)
    orchestrator = build(three_node_topology)

    orchestrator.start()
    snapshot = await _settle(orchestrator)

    assert snapshot.state is ResourceState.RUNNING
    (body,) = transport.forms("POST", REBALANCE)
    assert body["knownNodes"] == "ns_1@db-0.dev.internal,ns_1@db-2.dev.internal"
    assert INITIALIZED_PROPERTY not in states.current("db-1").properties
    assert states.current("db-2").properties.get(INITIALIZED_PROPERTY) is True
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_init_failure_fails_cluster(transport, build, states, single_node_topology):
    """Test a failed init marks the cluster failed and its children exited."""
    single_node_topology.add_bucket(BucketDefinition("orders"))
    transport.route("GET", POOL, (404, None))
    transport.route("POST", INIT, (400, '["Requested memory quota is too small"]'))
    orchestrator = build(single_node_topology)

    orchestrator.start()
    snapshot = await _settle(orchestrator)

    assert snapshot.state is ResourceState.FAILED_TO_START
    assert snapshot.exit_code == 1
    assert "memory quota is too small" in snapshot.error
    for child in ("db", "orders"):
        assert states.current(child).state is ResourceState.EXITED
        assert states.current(child).exit_code == 0
    assert states.current("db-0").state is ResourceState.RUNNING
    assert transport.calls("GET", ORDERS) == []
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_invalid_topology_rejected_before_any_call(transport, build, states):
    topology = ClusterTopology(name="couchbase", password="password")
    topology.add_server_group(ServerGroup("query", services=Services.QUERY))
    orchestrator = build(topology)

    with pytest.raises(TopologyValidationError):
        orchestrator.start()

    assert transport.requests == []
    assert states.current("couchbase").state is ResourceState.NOT_STARTED


@pytest.mark.asyncio
async def test_start_is_ignored_while_active(transport, build, single_node_topology):
    _fresh_cluster(transport)
    orchestrator = build(single_node_topology)

    assert orchestrator.start() is not None
    assert orchestrator.start() is None

    await _settle(orchestrator)
    assert orchestrator.start() is None
    await orchestrator.shutdown()


def test_duplicate_resource_names(build):
    topology = ClusterTopology(name="couchbase", password="password")
    topology.add_server_group(ServerGroup("db"))
    topology.add_bucket(BucketDefinition("db-0"))

    with pytest.raises(ValueError, match="Duplicate resource names: db-0"):
        build(topology)


# =============================================================================
# Buckets
# =============================================================================


@pytest.mark.asyncio
async def test_buckets_provisioned_after_cluster_running(transport, build, states, single_node_topology):
    single_node_topology.add_bucket(BucketDefinition("orders"))
    single_node_topology.add_bucket(SampleBucketDefinition("travel-sample"))
    _fresh_cluster(transport)
    transport.route(
        "GET", ORDERS, (404, None), (200, {"name": "orders", "nodes": [{"status": "healthy"}]})
    )
    transport.route("POST", "/pools/default/buckets", (202, None))
    transport.route("POST", "/sampleBuckets/install", (202, {"tasks": [{"taskId": "t1"}]}))
    transport.route("GET", "/pools/default/tasks", (200, [{"task_id": "t1"}]), (200, []))
    orchestrator = build(single_node_topology)

    orchestrator.start()
    await _settle(orchestrator)
    orders = await asyncio.wait_for(
        states.wait_for("orders", [ResourceState.RUNNING]), timeout=5
    )
    travel = await asyncio.wait_for(
        states.wait_for("travel-sample", [ResourceState.RUNNING]), timeout=5
    )

    assert orders.exit_code is None
    assert travel.state is ResourceState.RUNNING
    first_bucket_call = min(
        transport.calls().index(("GET", ORDERS)),
        transport.calls().index(("GET", "/pools/default/buckets/travel-sample")),
    )
    assert transport.calls()[:first_bucket_call] == [("GET", POOL), ("POST", INIT), ("PUT", ALTERNATE)]
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_bucket_failure_is_isolated(transport, build, states, single_node_topology):
    single_node_topology.add_bucket(BucketDefinition("orders"))
    _fresh_cluster(transport)
    transport.route("POST", "/pools/default/buckets", (400, '{"errors":{"name":"Bucket with given name already exists"}}'))
    orchestrator = build(single_node_topology)

    orchestrator.start()
    await _settle(orchestrator)
    bucket = await asyncio.wait_for(
        states.wait_for("orders", [ResourceState.FAILED_TO_START]), timeout=5
    )

    assert bucket.exit_code == 1
    assert "already exists" in bucket.error
    assert states.current("couchbase").state is ResourceState.RUNNING
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_stopping_bucket_cancels_provisioning(transport, build, states, single_node_topology):
    """Test a bucket stopped mid-provisioning ends EXITED, never failed."""
    single_node_topology.add_bucket(BucketDefinition("orders"))
    _fresh_cluster(transport)
    requested = asyncio.Event()
    never = asyncio.Event()

    async def hang(request):
        requested.set()
        await never.wait()
        return (404, None)

    transport.route("GET", ORDERS, hang)
    orchestrator = build(single_node_topology)

    orchestrator.start()
    await _settle(orchestrator)
    await asyncio.wait_for(requested.wait(), timeout=5)
    await asyncio.wait_for(orchestrator.stop_bucket("orders"), timeout=5)

    bucket = states.current("orders")
    assert bucket.state is ResourceState.EXITED
    assert bucket.exit_code == 0
    assert bucket.error is None
    assert transport.calls("POST", "/pools/default/buckets") == []
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_stopping_sample_bucket_during_install(transport, build, states, single_node_topology):
    """Test a sample bucket stopped while its install request is in flight stays EXITED."""
    single_node_topology.add_bucket(SampleBucketDefinition("travel-sample"))
    _fresh_cluster(transport)

    def install(request):
        states.publish(
            "travel-sample", lambda s: s.transition(ResourceState.EXITED, exit_code=0)
        )
        return (202, {"tasks": [{"taskId": "t1"}]})

    transport.route("POST", "/sampleBuckets/install", install)
    transport.route("GET", "/pools/default/tasks", (200, [{"task_id": "t1"}]))
    orchestrator = build(single_node_topology)
    history, recorder = _record(states, "travel-sample", until=ResourceState.EXITED)
    await asyncio.sleep(0)

    orchestrator.start()
    await _settle(orchestrator)
    await asyncio.wait_for(recorder, timeout=5)
    await asyncio.wait_for(_bucket_tasks_done(orchestrator), timeout=5)

    bucket = states.current("travel-sample")
    assert bucket.state is ResourceState.EXITED
    assert bucket.exit_code == 0
    assert ResourceState.LOADING not in history
    assert ResourceState.RUNNING not in history
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_flush_requires_running_bucket(transport, build, single_node_topology):
    single_node_topology.add_bucket(BucketDefinition("orders"))
    orchestrator = build(single_node_topology)

    with pytest.raises(ValueError, match="not running"):
        await orchestrator.execute_command("orders", ResourceCommand.FLUSH)


@pytest.mark.asyncio
async def test_unsupported_command(build, single_node_topology):
    orchestrator = build(single_node_topology)

    with pytest.raises(ValueError, match="not supported"):
        await orchestrator.execute_command("couchbase", ResourceCommand.FLUSH)


# =============================================================================
# Stop and events
# =============================================================================


@pytest.mark.asyncio
async def test_stop_exits_hierarchy(transport, build, states, node_controller, three_node_topology):
    three_node_topology.add_bucket(BucketDefinition("orders"))
    _fresh_cluster(transport)
    transport.route("GET", ORDERS, (200, {"name": "orders", "nodes": [{"status": "healthy"}]}))
    orchestrator = build(three_node_topology)
    orchestrator.start()
    await _settle(orchestrator)
    await asyncio.wait_for(states.wait_for("orders", [ResourceState.RUNNING]), timeout=5)

    await asyncio.wait_for(orchestrator.execute_command("couchbase", ResourceCommand.STOP), timeout=5)

    cluster = states.current("couchbase")
    assert cluster.state is ResourceState.EXITED
    assert cluster.exit_code == 0
    assert cluster.urls == ()
    assert cluster.environment == {}
    assert sorted(node_controller.stopped) == ["db-0", "db-1", "db-2"]
    for name in ("db", "orders", "db-0", "db-1", "db-2"):
        assert states.current(name).state is ResourceState.EXITED


@pytest.mark.asyncio
async def test_stop_during_bootstrap_is_not_a_failure(transport, build, states, single_node_topology):
    """Test cancelling an in-flight bootstrap never publishes FailedToStart."""
    requested = asyncio.Event()
    never = asyncio.Event()

    async def hang(request):
        requested.set()
        await never.wait()
        return (404, None)

    transport.route("GET", POOL, hang)
    orchestrator = build(single_node_topology)
    history, recorder = _record(states, "couchbase", until=ResourceState.EXITED)
    await asyncio.sleep(0)

    orchestrator.start()
    await asyncio.wait_for(requested.wait(), timeout=5)
    await asyncio.wait_for(orchestrator.stop(), timeout=5)
    await asyncio.wait_for(recorder, timeout=5)

    assert ResourceState.FAILED_TO_START not in history
    assert states.current("couchbase").state is ResourceState.EXITED
    assert states.current("couchbase").exit_code == 0
    assert transport.calls("POST", INIT) == []


@pytest.mark.asyncio
async def test_primary_running_starts_cluster(transport, build, states, node_controller, single_node_topology):
    """Test run() starts the cluster when the primary comes up and clears flags on exit."""
    _fresh_cluster(transport)
    orchestrator = build(single_node_topology)
    runner = asyncio.create_task(orchestrator.run())
    await asyncio.sleep(0)

    states.publish("db-0", lambda s: s.transition(ResourceState.RUNNING))
    snapshot = await _settle(orchestrator)

    assert snapshot.state is ResourceState.RUNNING
    assert node_controller.started == []
    assert states.current("db-0").properties.get(INITIALIZED_PROPERTY) is True

    requests_before_exit = len(transport.requests)
    states.publish("db-0", lambda s: s.transition(ResourceState.EXITED, exit_code=137))
    cleared = await asyncio.wait_for(
        states.wait_for("db-0", predicate=lambda s: s.is_terminal and not s.properties),
        timeout=5,
    )
    assert cleared.exit_code == 137

    runner.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await runner
    assert len(transport.requests) == requests_before_exit


@pytest.mark.asyncio
async def test_run_without_data_node_keeps_following(transport, build, states):
    """Test run() on a topology with no primary never starts the cluster and keeps running."""
    topology = ClusterTopology(name="couchbase", password="password")
    topology.add_server_group(ServerGroup("query", services=Services.QUERY))
    orchestrator = build(topology)
    runner = asyncio.create_task(orchestrator.run())
    await asyncio.sleep(0)

    states.publish(
        "query-0",
        lambda s: s.transition(ResourceState.RUNNING).with_property(INITIALIZED_PROPERTY, True),
    )
    states.publish("query-0", lambda s: s.transition(ResourceState.EXITED, exit_code=0))
    await asyncio.wait_for(
        states.wait_for("query-0", predicate=lambda s: s.is_terminal and not s.properties),
        timeout=5,
    )

    assert not runner.done()
    assert states.current("couchbase").state is ResourceState.NOT_STARTED
    assert transport.requests == []

    runner.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await runner
