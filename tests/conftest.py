"""Pytest configuration for depcache tests."""

import logging
import pytest

# Import from depcache
from depcache import ConnectionPool, DependencyCache, PoolConfig
from depcache.backends.memory import MemoryBackend
from depcache.backends.redis import RedisBackend

# Add fixtures that should be available for all tests here
logging.getLogger("depcache").setLevel(logging.DEBUG)

REDIS_URL = "redis://localhost:6379/15"


@pytest.fixture
def memory_backend():
    """Return a fresh memory backend for each test."""
    return MemoryBackend()


@pytest.fixture
def memory_pool(memory_backend):
    """Return a pool whose connections are sessions on memory_backend."""
    pool = ConnectionPool(dial=lambda: memory_backend)
    yield pool
    pool.close()


@pytest.fixture
def memory_cache(memory_pool):
    """Return a DependencyCache over the memory pool."""
    return DependencyCache(pool=memory_pool, debug=True)


try:
    import redis
    HAS_REDIS = True
except ImportError:
    HAS_REDIS = False


@pytest.fixture
def redis_url():
    """URL of the dedicated Redis test database."""
    return REDIS_URL


@pytest.fixture
def redis_client():
    """Return a Redis client for testing if Redis is available.

    The fixture automatically:
    1. Uses a dedicated DB for testing
    2. Flushes the DB before each test
    3. Cleans up after the test is finished
    """
    if not HAS_REDIS:
        pytest.skip("Redis is not installed")
    client = redis.Redis.from_url(REDIS_URL)
    try:
        client.ping()  # Check connection
    except redis.ConnectionError:
        pytest.skip("Redis server is not running")

    # FLUSH THE ENTIRE TEST DB to ensure clean state
    client.flushdb()

    # Run the test
    yield client

    # Clean up after the test
    client.flushdb()
    client.close()


@pytest.fixture
def redis_backend(redis_client):
    """Return a RedisBackend over the test client."""
    return RedisBackend(redis_client)


@pytest.fixture
def redis_cache(redis_client, redis_url):
    """Return a DependencyCache with its own pool on the test DB."""
    cache = DependencyCache(pool=ConnectionPool(PoolConfig.from_url(redis_url)), debug=True)
    yield cache
    cache.close()


# Add a marker for Redis tests
def pytest_configure(config):
    config.addinivalue_line("markers", "redis: mark test as requiring Redis")
