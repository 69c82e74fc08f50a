import pytest_asyncio

from helpers import start_session
from transport.memory import MemoryNetwork


@pytest_asyncio.fixture
async def network():
    return MemoryNetwork()


@pytest_asyncio.fixture
async def pair(network):
    """Two registered sessions on one in-memory network: 111111 and 222222."""
    alice = await start_session(network, [111111])
    bob = await start_session(network, [222222])
    yield alice, bob
    await alice.stop()
    await bob.stop()
