from typing import AsyncGenerator, Tuple

import pytest
import pytest_asyncio
from prediction_client.models import ClientConfig, RetryConfig, WaitConfig
from prediction_client.prediction_client import PredictionClient
from prediction_server import PredictionServer

BASE_URL_TEMPLATE = "http://localhost:{}"


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[Tuple[PredictionServer, int], None]:
    """Start and yield a test PredictionServer instance on a random port."""
    port = unused_tcp_port_factory()
    server_instance = PredictionServer()
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest.fixture
def config(server) -> ClientConfig:
    """Client configuration pointing at the test server with short delays."""
    _, port = server
    return ClientConfig(
        base_url=BASE_URL_TEMPLATE.format(port),
        auth="test-token",
        retry=RetryConfig(max_retries=3, interval=0.01, jitter=0.0),
        wait=WaitConfig(interval=0.01),
    )


@pytest_asyncio.fixture
async def client(config) -> AsyncGenerator[PredictionClient, None]:
    async with PredictionClient(config) as client_instance:
        yield client_instance
