"""Shared fixtures: scripted management API transport, clients and topologies."""

import inspect
from urllib.parse import parse_qsl

import httpx
import pytest
from httpx import Request, Response

from operator_couchbase.client import ManagementApiClient
from operator_couchbase.retry import RetryPolicy
from operator_couchbase.state import ResourceState, ResourceStateStore
from operator_couchbase.topology import ClusterTopology, ServerGroup


class MockTransport(httpx.AsyncBaseTransport):
    """
    Mock transport answering (method, path) routes and recording every request.

    A route holds a sequence of answers consumed in order; the last one
    repeats. An answer is one of:
    - (status_code, body) with body None, text or JSON-serializable data
    - an exception instance, raised from the transport
    - a callable (sync or async) taking the request and returning an answer
    Unrouted requests get 404.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[Request] = []

    def route(self, method: str, path: str, *answers) -> None:
        self.routes[(method, path)] = list(answers)

    async def handle_async_request(self, request: Request) -> Response:
        self.requests.append(request)
        answers = self.routes.get((request.method, request.url.path))
        if not answers:
            return Response(status_code=404, request=request)

        answer = answers.pop(0) if len(answers) > 1 else answers[0]
        while callable(answer):
            answer = answer(request)
            if inspect.isawaitable(answer):
                answer = await answer
        if isinstance(answer, Exception):
            raise answer

        status_code, body = answer
        if body is None:
            return Response(status_code=status_code, request=request)
        if isinstance(body, str):
            return Response(status_code=status_code, text=body, request=request)
        return Response(status_code=status_code, json=body, request=request)

    def calls(self, method: str | None = None, path: str | None = None) -> list[tuple[str, str]]:
        """(method, path) of recorded requests, optionally filtered."""
        return [
            (r.method, r.url.path)
            for r in self.requests
            if (method is None or r.method == method) and (path is None or r.url.path == path)
        ]

    def forms(self, method: str, path: str) -> list[dict[str, str]]:
        """Decoded form bodies of matching requests."""
        return [
            dict(parse_qsl(r.content.decode()))
            for r in self.requests
            if r.method == method and r.url.path == path
        ]

    @property
    def mutating_calls(self) -> list[tuple[str, str]]:
        return [(r.method, r.url.path) for r in self.requests if r.method == "POST"]

    def reset(self) -> None:
        self.requests.clear()


def form_of(request: Request) -> dict[str, str]:
    return dict(parse_qsl(request.content.decode()))


@pytest.fixture
def transport():
    return MockTransport()


@pytest.fixture
def sleeps():
    """Delays passed to the retry policy's sleep, in order."""
    return []


@pytest.fixture
def make_client(transport, sleeps):
    """Build a ManagementApiClient over the mock transport with instant retries."""

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    def _make(topology: ClusterTopology, max_attempts: int = 60) -> ManagementApiClient:
        return ManagementApiClient(
            topology=topology,
            http=httpx.AsyncClient(transport=transport),
            retry=RetryPolicy(max_attempts=max_attempts, sleep=_sleep),
        )

    return _make


@pytest.fixture
def form():
    return form_of


@pytest.fixture
def single_node_topology():
    topology = ClusterTopology(name="couchbase", password="password")
    topology.add_server_group(ServerGroup("db"))
    return topology


@pytest.fixture
def three_node_topology():
    topology = ClusterTopology(name="couchbase", password="password")
    topology.add_server_group(ServerGroup("db", replicas=3))
    return topology


class FakeNodeController:
    """Node controller that reports nodes RUNNING/EXITED as soon as it is asked."""

    def __init__(self, states: ResourceStateStore) -> None:
        self.states = states
        self.started: list[str] = []
        self.stopped: list[str] = []

    async def start_node(self, node) -> None:
        self.started.append(node.name)
        self.states.publish(node.name, lambda s: s.transition(ResourceState.RUNNING))

    async def stop_node(self, node) -> None:
        self.stopped.append(node.name)
        self.states.publish(
            node.name, lambda s: s.transition(ResourceState.EXITED, exit_code=0)
        )


@pytest.fixture
def states():
    return ResourceStateStore()


@pytest.fixture
def node_controller(states):
    return FakeNodeController(states)
