from fakeredis import FakeServer, aioredis
import pytest

from geosocial.core.config import Settings
from geosocial.db.session import create_engine, create_session_factory, init_db
from geosocial.services.store import AuthoritativeStore

from tests.helpers import build_services

MEMORY_DB = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def test_settings():
    return Settings(DATABASE_URL=MEMORY_DB, REDIS_URL=None, DB_CREATE_TABLES=True)


@pytest.fixture
async def redis_client():
    client = aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def broken_redis():
    """A client whose every command fails with redis.exceptions.ConnectionError."""
    server = FakeServer()
    server.connected = False
    return aioredis.FakeRedis(server=server, decode_responses=True)


@pytest.fixture
async def session_factory():
    engine = create_engine(MEMORY_DB, echo=False)
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory, test_settings):
    return AuthoritativeStore(session_factory, settings=test_settings)


@pytest.fixture
def services(redis_client, store, test_settings):
    return build_services(redis_client, store, test_settings)


@pytest.fixture
def search_service(services):
    return services[0]


@pytest.fixture
def mutations(services):
    return services[1]


@pytest.fixture
def store_only_services(store, test_settings):
    """Same data, no Redis: every search takes the store path."""
    return build_services(None, store, test_settings)
