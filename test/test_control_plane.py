import asyncio
import random
from typing import AsyncGenerator

import aiohttp
import pytest
import pytest_asyncio
from control_plane_server import ControlPlaneServer
from resource_reconciler.control_plane_client import (
    STATUS_ACTIVE,
    STATUS_CREATING,
    STATUS_DISABLED,
    STATUS_DISABLING,
    ControlPlaneClient,
    ResourceLifecycle,
)
from resource_reconciler.errors import WaitCancelledError
from resource_reconciler.models import LifecycleConfig, ResourceHandle, WaitSpec
from resource_reconciler.resource_reconciler import wait_for

BASE_URL_TEMPLATE = "http://localhost:{}"


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[ControlPlaneServer, None]:
    """Start and yield a mock control plane on a random port."""
    port = unused_tcp_port_factory()
    server_instance = ControlPlaneServer(convergence_time=0.5)
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest_asyncio.fixture
async def session() -> AsyncGenerator[aiohttp.ClientSession, None]:
    async with aiohttp.ClientSession() as client_session:
        yield client_session


@pytest.fixture
def config() -> LifecycleConfig:
    """Provide short timeouts and fast polling for the lifecycle handlers."""
    return LifecycleConfig(
        create_timeout=10.0,
        update_timeout=10.0,
        delete_timeout=10.0,
        min_delay=0.1,
        max_delay=0.5,
        backoff_factor=2.0,
    )


@pytest.fixture
def client(server, session) -> ControlPlaneClient:
    _, port = server
    return ControlPlaneClient(BASE_URL_TEMPLATE.format(port), session)


def request_kinds(server_instance: ControlPlaneServer) -> list:
    return [kind for kind, _ in server_instance.requests]


@pytest.mark.asyncio
async def test_create(client, config):
    """Test creating a resource and waiting for it to become active."""
    status_changes = []

    async def status_callback(snapshot):
        status_changes.append(snapshot.status)

    lifecycle = ResourceLifecycle(client, config, on_status_change=status_callback)
    snapshot = await lifecycle.create(ResourceHandle(id="web"), {"size": 1})

    assert snapshot.status == STATUS_ACTIVE
    assert snapshot.elapsed_time > 0
    assert snapshot.raw_response["properties"] == {"size": 1}
    assert status_changes == [STATUS_CREATING, STATUS_ACTIVE]


@pytest.mark.asyncio
async def test_create_with_visibility_lag(server, client, config):
    """Test a new resource answering 404 for a while after creation."""
    server_instance, _ = server
    server_instance.visibility_lag = 0.4

    snapshot = await ResourceLifecycle(client, config).create(
        ResourceHandle(id="lagging"), {}
    )

    assert snapshot.status == STATUS_ACTIVE


@pytest.mark.asyncio
async def test_create_nested_resource(client, config):
    handle = ResourceHandle(id="child", parent_id="parent")
    lifecycle = ResourceLifecycle(client, config)

    await lifecycle.create(handle, {})
    resource = await lifecycle.read(handle)

    assert resource["key"] == "parent/child"
    assert await lifecycle.read(ResourceHandle(id="child")) is None


@pytest.mark.asyncio
async def test_update(client, config):
    handle = ResourceHandle(id="db")
    lifecycle = ResourceLifecycle(client, config)
    await lifecycle.create(handle, {"size": 1})

    snapshot = await lifecycle.update(handle, {"size": 2})

    assert snapshot.status == STATUS_ACTIVE
    resource = await lifecycle.read(handle)
    assert resource["properties"] == {"size": 2}


@pytest.mark.asyncio
async def test_delete(server, client, config):
    """Test the disable then delete transition of an active resource."""
    server_instance, _ = server
    handle = ResourceHandle(id="queue")
    lifecycle = ResourceLifecycle(client, config)
    await lifecycle.create(handle, {})

    snapshot = await lifecycle.delete(handle)

    assert snapshot.absent
    assert await lifecycle.read(handle) is None
    assert request_kinds(server_instance) == ["create", "disable", "delete"]


@pytest.mark.asyncio
async def test_delete_already_disabled(server, client, config):
    """Test that a disabled resource is deleted without disabling it again."""
    server_instance, _ = server
    handle = ResourceHandle(id="cache")
    lifecycle = ResourceLifecycle(client, config)
    await lifecycle.create(handle, {})
    await client.disable_resource(handle)
    await wait_for(
        client.status_probe(handle),
        WaitSpec(
            target={STATUS_DISABLED}, pending={STATUS_DISABLING}, min_delay=0.1
        ),
    )

    snapshot = await lifecycle.delete(handle)

    assert snapshot.absent
    assert request_kinds(server_instance) == ["create", "disable", "delete"]


@pytest.mark.asyncio
async def test_delete_missing(server, client, config):
    server_instance, _ = server

    snapshot = await ResourceLifecycle(client, config).delete(ResourceHandle(id="ghost"))

    assert snapshot.absent
    assert server_instance.requests == []


@pytest.mark.asyncio
async def test_delete_while_creating(server, client, config):
    """Test the disable request being retried until the create has settled."""
    server_instance, _ = server
    handle = ResourceHandle(id="busy")
    await client.create_resource(handle, {})

    snapshot = await ResourceLifecycle(client, config).delete(handle)

    assert snapshot.absent
    kinds = request_kinds(server_instance)
    assert kinds.count("disable") > 1
    assert kinds[-1] == "delete"


@pytest.mark.asyncio
async def test_timeout_scenario(server, client, config):
    """Test timeout handling."""
    server_instance, _ = server
    server_instance.convergence_time = 30.0
    config.create_timeout = 1.0

    with pytest.raises(TimeoutError) as excinfo:
        await ResourceLifecycle(client, config).create(ResourceHandle(id="slow"), {})

    assert excinfo.value.last_status == STATUS_CREATING


@pytest.mark.asyncio
async def test_throttling(server, client, config):
    """Test throttled requests being retried transparently."""
    server_instance, _ = server
    server_instance.error_rate = 0.3
    random.seed(7)

    snapshot = await ResourceLifecycle(client, config).create(
        ResourceHandle(id="throttled"), {}
    )

    assert snapshot.status == STATUS_ACTIVE


@pytest.mark.asyncio
async def test_server_unavailable(session, config):
    """Test behavior when the control plane is not reachable."""
    client = ControlPlaneClient("http://localhost:9999", session)  # Invalid port
    config.create_timeout = 0.5

    with pytest.raises(TimeoutError) as excinfo:
        await ResourceLifecycle(client, config).create(ResourceHandle(id="x"), {})

    assert isinstance(excinfo.value.__cause__, aiohttp.ClientConnectionError)


@pytest.mark.asyncio
async def test_cancellation(server, client, config):
    server_instance, _ = server
    server_instance.convergence_time = 30.0
    cancel_event = asyncio.Event()
    asyncio.get_event_loop().call_later(0.3, cancel_event.set)

    lifecycle = ResourceLifecycle(client, config, cancel_event=cancel_event)
    with pytest.raises(WaitCancelledError):
        await lifecycle.create(ResourceHandle(id="interrupted"), {})


@pytest.mark.asyncio
async def test_multiple_resources(client, config):
    """Test several independent resources converging concurrently."""
    lifecycle = ResourceLifecycle(client, config)

    results = await asyncio.gather(
        *[lifecycle.create(ResourceHandle(id=f"node-{i}"), {}) for i in range(3)]
    )

    assert [result.status for result in results] == [STATUS_ACTIVE] * 3
