import asyncio

import pytest

from bridge_server import CommandBridge, set_bridge
from command_queue import CommandQueue, RetentionPolicy


class FakeClock:
    """Manually advanced replacement for time.time()."""

    def __init__(self, start: float = 1_760_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(clock):
    return CommandQueue(RetentionPolicy(max_age_seconds=None, max_commands=None), clock=clock)


@pytest.fixture
def bridge():
    return CommandBridge(host="127.0.0.1")


@pytest.fixture
async def client(aiohttp_client, bridge):
    return await aiohttp_client(bridge.app)


@pytest.fixture
async def relay_url(aiohttp_server, bridge):
    server = await aiohttp_server(bridge.app)
    return f"http://{server.host}:{server.port}"


@pytest.fixture
def registered_bridge(bridge):
    set_bridge(bridge)
    yield bridge
    set_bridge(None)


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
