import pytest

from mock_heos_device import MockHeosServer, MockSsdpResponder, HEOS_REPLY, NOISE_REPLY

@pytest.fixture
async def command_server():
    server = MockHeosServer()
    await server.start()
    yield server
    await server.stop()

@pytest.fixture
async def event_server():
    server = MockHeosServer()
    await server.start()
    yield server
    await server.stop()

@pytest.fixture
async def ssdp_responder():
    responder = MockSsdpResponder([NOISE_REPLY, HEOS_REPLY])
    await responder.start()
    yield responder
    responder.stop()
