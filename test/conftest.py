import httpx
import pytest

from _helper import Receiver
from orderflow.config import Settings
from orderflow.engine import build_engine


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url=None,
        redis_url=None,
        worker_in_process=False,
        webhook_max_attempts=3,
        webhook_backoff_base_seconds=0,
        webhook_timeout_seconds=2,
        order_lock_timeout_seconds=1,
    )


@pytest.fixture
def receiver() -> Receiver:
    return Receiver()


@pytest.fixture
async def engine(settings, receiver):
    http = httpx.AsyncClient(transport=httpx.MockTransport(receiver.handler))
    engine = await build_engine(settings, http=http)
    yield engine
    await engine.close()
