from typing import AsyncGenerator

import pytest
import pytest_asyncio
from ocr_client.models import ClientConfig
from ocr_client.ocr_client import OCRClient
from ocr_server import API_PREFIX, OCRServer

API_KEY = "test-key"
BASE_URL_TEMPLATE = "http://localhost:{}" + API_PREFIX


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[tuple[OCRServer, int], None]:
    """Start and yield a fake OCR service on a random port."""
    port = unused_tcp_port_factory()
    server_instance = OCRServer(api_key=API_KEY, completion_time=0.5)
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest.fixture
def config() -> ClientConfig:
    """Client configuration with fast retries."""
    return ClientConfig(
        timeout=5.0,
        max_retries=3,
        retry_delay=0.01,
        retry_multiplier=2.0,
        max_retry_delay=0.05,
    )


@pytest_asyncio.fixture
async def client(server, config) -> AsyncGenerator[OCRClient, None]:
    _, port = server
    config.base_url = BASE_URL_TEMPLATE.format(port)
    async with OCRClient(API_KEY, config) as ocr_client:
        yield ocr_client
