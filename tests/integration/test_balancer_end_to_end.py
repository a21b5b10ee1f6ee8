"""
End-to-end tests running a full Balancer in front of real asyncio
backend servers on localhost.

Covers:
- Session affinity through the proxy
- Retry onto the next ring backend when the owner dies
- Fast probing marking the dead owner unhealthy, and reclaiming on recovery
- Draining with requests in flight
- The status endpoint and the JSON event log
"""

import asyncio
from typing import Awaitable, Callable

import msgspec
import orjson
import pytest

from ringwarden import Balancer, BackendHealth
from ringwarden.env import BalancerConfig
from ringwarden.env.balancer_config import BackendSpec
from ringwarden.http import find_header
from ringwarden.logging import Logger
from ringwarden.reconcile import LogOnlyProvisioner
from ringwarden.routing import SessionKeyExtractor

from tests.backends import BackendServer, send_request


SESSION_KEY = SessionKeyExtractor("ip_hash").extract("127.0.0.1")


async def wait_until(
    predicate: Callable[[], bool],
    timeout: float = 3.0,
    interval: float = 0.02,
) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")

        await asyncio.sleep(interval)


@pytest.fixture
async def start_balancer(
    tmp_path,
    backend_servers: list[BackendServer],
):
    balancers: list[Balancer] = []

    async def start(
        names: list[str],
        **overrides,
    ) -> Balancer:
        for name in names:
            server = BackendServer(name)
            await server.start()
            backend_servers.append(server)

        settings = dict(
            listen_host="127.0.0.1",
            listen_port=0,
            backends=tuple(
                BackendSpec(server.name, server.host, server.port)
                for server in backend_servers
            ),
            min_healthy=1,
            desired_capacity=len(names),
            reconcile_interval=0.05,
            probe_interval=0.05,
            probe_timeout=0.5,
            failure_threshold=2,
            success_threshold=1,
            health_check_path="/health",
            request_timeout=5.0,
            connect_timeout=0.5,
            virtual_nodes=64,
        )
        settings.update(overrides)

        logger = Logger()
        logger.configure(name="events", path=str(tmp_path / "events.json"))

        balancer = Balancer(
            BalancerConfig(**settings),
            provisioner=LogOnlyProvisioner(logger=logger, logger_name="events"),
            logger=logger,
            node_id="test-balancer",
        )
        await balancer.start()
        balancers.append(balancer)

        return balancer

    yield start

    for balancer in balancers:
        await balancer.stop()


StartBalancer = Callable[..., Awaitable[Balancer]]


def server_named(servers: list[BackendServer], name: str) -> BackendServer:
    return next(server for server in servers if server.name == name)


@pytest.mark.asyncio
async def test_requests_stick_to_ring_owner(
    start_balancer: StartBalancer,
    backend_servers: list[BackendServer],
):
    balancer = await start_balancer(["web-1", "web-2", "web-3"])
    owner = await balancer.router.route(SESSION_KEY)

    served_by = set()
    for _ in range(5):
        response = await send_request(balancer.port, target="/cart")
        assert response.status == 200
        served_by.add(find_header(response.headers, "X-Backend"))

    assert served_by == {owner.backend_id}
    assert len(server_named(backend_servers, owner.backend_id).requests) == 5


@pytest.mark.asyncio
async def test_forwarded_headers_reach_backend(
    start_balancer: StartBalancer,
    backend_servers: list[BackendServer],
):
    balancer = await start_balancer(["web-1", "web-2"])
    owner = await balancer.router.route(SESSION_KEY)

    response = await send_request(
        balancer.port,
        method="POST",
        target="/orders",
        body=b":order",
    )

    assert response.status == 200
    assert response.body == f"{owner.backend_id}:order".encode()

    upstream = server_named(backend_servers, owner.backend_id).requests[-1]
    assert upstream.header("X-Forwarded-For") == "127.0.0.1"
    assert upstream.header("X-Real-IP") == "127.0.0.1"
    assert upstream.header("X-Request-Deadline-Ms") is not None


@pytest.mark.asyncio
async def test_dead_owner_fails_over_and_is_reclaimed(
    tmp_path,
    start_balancer: StartBalancer,
    backend_servers: list[BackendServer],
):
    balancer = await start_balancer(
        ["web-1", "web-2", "web-3"],
        probe_interval=0.5,
    )
    owner = await balancer.router.route(SESSION_KEY)
    successor = await balancer.router.next_backend(
        SESSION_KEY,
        exclude=(owner.backend_id,),
    )

    owner_server = server_named(backend_servers, owner.backend_id)
    await owner_server.stop()

    response = await send_request(balancer.port, target="/cart")

    assert response.status == 200
    assert find_header(response.headers, "X-Backend") == successor.backend_id

    await wait_until(
        lambda: balancer.registry.get(owner.backend_id).health == BackendHealth.UNHEALTHY
    )

    for _ in range(3):
        response = await send_request(balancer.port, target="/cart")
        assert find_header(response.headers, "X-Backend") == successor.backend_id

    await owner_server.start()

    await wait_until(
        lambda: balancer.registry.get(owner.backend_id).health == BackendHealth.HEALTHY
    )

    response = await send_request(balancer.port, target="/cart")
    assert find_header(response.headers, "X-Backend") == owner.backend_id

    await balancer.stop()

    events = [
        msgspec.json.decode(line)["entry"]
        for line in (tmp_path / "events.json").read_bytes().splitlines()
        if line.strip()
    ]

    transitions = [
        (event["backend_id"], event["current"])
        for event in events
        if "current" in event and "previous" in event
    ]

    assert (owner.backend_id, "UNHEALTHY") in transitions
    assert (owner.backend_id, "HEALTHY") in transitions

    assert any(
        event.get("backend_id") == owner.backend_id and event.get("will_retry") is True
        for event in events
    )


@pytest.mark.asyncio
async def test_non_idempotent_request_not_retried(
    start_balancer: StartBalancer,
    backend_servers: list[BackendServer],
):
    balancer = await start_balancer(["web-1", "web-2"])
    owner = await balancer.router.route(SESSION_KEY)

    owner_server = server_named(backend_servers, owner.backend_id)
    owner_server.fail_mode = "reset"

    response = await send_request(
        balancer.port,
        method="POST",
        target="/orders",
        body=b"{}",
    )

    assert response.status == 502
    assert orjson.loads(response.body)["error"] == "ForwardingFailure"

    other = next(
        server for server in backend_servers
        if server.name != owner.backend_id
    )
    assert other.requests == []


@pytest.mark.asyncio
async def test_no_healthy_backend_returns_503(
    start_balancer: StartBalancer,
    backend_servers: list[BackendServer],
):
    balancer = await start_balancer(["web-1"])

    await backend_servers[0].stop()

    await wait_until(
        lambda: balancer.registry.healthy_count() == 0
    )

    response = await send_request(balancer.port, target="/")

    assert response.status == 503
    assert orjson.loads(response.body)["error"] == "NoAvailableBackend"


@pytest.mark.asyncio
async def test_drain_waits_for_in_flight_requests(
    start_balancer: StartBalancer,
    backend_servers: list[BackendServer],
):
    balancer = await start_balancer(["web-1", "web-2", "web-3"])
    owner = await balancer.router.route(SESSION_KEY)

    owner_server = server_named(backend_servers, owner.backend_id)
    owner_server.hold = asyncio.Event()

    in_flight = [
        asyncio.create_task(send_request(balancer.port, target=f"/slow/{idx}"))
        for idx in range(5)
    ]

    await wait_until(lambda: owner_server.active == 5)
    assert balancer.registry.tracker.count(owner.backend_id) == 5

    drain = asyncio.create_task(balancer.drain(owner.backend_id, timeout=5.0))

    await wait_until(
        lambda: balancer.registry.get(owner.backend_id).health == BackendHealth.DRAINING
    )

    response = await send_request(balancer.port, target="/cart")
    assert response.status == 200
    assert find_header(response.headers, "X-Backend") != owner.backend_id

    assert not drain.done()

    owner_server.hold.set()

    responses = await asyncio.gather(*in_flight)
    assert all(response.status == 200 for response in responses)
    assert all(
        find_header(response.headers, "X-Backend") == owner.backend_id
        for response in responses
    )

    assert await drain is True
    assert owner.backend_id not in balancer.registry


@pytest.mark.asyncio
async def test_status_endpoint(
    start_balancer: StartBalancer,
):
    balancer = await start_balancer(["web-1", "web-2"])

    response = await send_request(balancer.port, target="/__ringwarden/status")

    assert response.status == 200
    assert find_header(response.headers, "Content-Type") == "application/json"

    status = orjson.loads(response.body)

    assert status["node_id"] == "test-balancer"
    assert status["capacity"]["state"] == "AT_CAPACITY"
    assert {backend["backend_id"] for backend in status["backends"]} == {"web-1", "web-2"}
    assert all(backend["in_flight"] == 0 for backend in status["backends"])


@pytest.mark.asyncio
async def test_backends_added_and_removed_at_runtime(
    start_balancer: StartBalancer,
    backend_servers: list[BackendServer],
):
    balancer = await start_balancer(["web-1"])

    late = BackendServer("web-2")
    await late.start()
    backend_servers.append(late)

    await balancer.add_backend("web-2", late.host, late.port)

    assert "web-2" in balancer.registry
    await wait_until(lambda: late.health_checks > 0)
    assert "web-2" in balancer.prober.probing

    removed = await balancer.remove_backend("web-2")

    assert removed is not None
    assert removed.backend_id == "web-2"
    assert "web-2" not in balancer.registry
    assert "web-2" not in balancer.prober.probing

    assert await balancer.remove_backend("web-2") is None
