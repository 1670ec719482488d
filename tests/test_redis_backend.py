"""Tests for the RedisBackend implementation."""

from unittest import mock

import pytest
from redis import exceptions as redis_exceptions

from depcache import (
    BackendCommandError,
    ConnectionUnavailable,
    RedisBackend,
    ScriptUnknownHandle,
    TransactionAborted,
)
from depcache.scripts import KILL_BY_DEPENDENCY_LUA


def test_redis_backend_translates_noscript():
    """NOSCRIPT replies surface as ScriptUnknownHandle."""
    client = mock.Mock()
    client.evalsha.side_effect = redis_exceptions.NoScriptError("No matching script")
    backend = RedisBackend(client)

    with pytest.raises(ScriptUnknownHandle) as exc_info:
        backend.evalsha("abc", 1, "depend:x")

    assert exc_info.value.command == "EVALSHA"
    assert isinstance(exc_info.value.__cause__, redis_exceptions.NoScriptError)
    assert backend.broken is False


def test_redis_backend_translates_connection_errors():
    """Connection failures mark the session broken."""
    client = mock.Mock()
    client.get.side_effect = redis_exceptions.ConnectionError("Connection refused")
    backend = RedisBackend(client)

    with pytest.raises(ConnectionUnavailable):
        backend.get("key")
    assert backend.broken is True


def test_redis_backend_translates_response_errors():
    client = mock.Mock()
    client.sadd.side_effect = redis_exceptions.ResponseError("WRONGTYPE Operation")
    backend = RedisBackend(client)

    with pytest.raises(BackendCommandError) as exc_info:
        backend.sadd("key", "member")
    assert exc_info.value.command == "SADD"
    assert not isinstance(exc_info.value, ScriptUnknownHandle)
    assert backend.broken is False


def test_redis_backend_transaction_error_is_aborted():
    """A failing EXEC raises TransactionAborted and resets the pipeline."""
    pipeline = mock.Mock()
    pipeline.execute.side_effect = redis_exceptions.ResponseError("WRONGTYPE Operation")
    client = mock.Mock()
    client.pipeline.return_value = pipeline
    backend = RedisBackend(client)

    transaction = backend.pipeline(transaction=True)
    transaction.sadd("depend:x", "key")

    with pytest.raises(TransactionAborted):
        transaction.execute()
    client.pipeline.assert_called_once_with(transaction=True)
    pipeline.sadd.assert_called_once_with("depend:x", "key")
    pipeline.reset.assert_called_once_with()


def test_redis_backend_delete_nothing():
    client = mock.Mock()
    backend = RedisBackend(client)
    assert backend.delete() == 0
    client.delete.assert_not_called()


@pytest.mark.redis
def test_redis_backend_get_set(redis_backend):
    """Test basic get/set operations with Redis backend."""
    backend = redis_backend

    # Set value
    backend.set("test:key1", "value1")
    assert backend.get("test:key1") == b"value1"

    # Overwrite value
    backend.set("test:key1", b"value2")
    assert backend.get("test:key1") == b"value2"

    # Get non-existent key
    assert backend.get("test:nonexistent") is None


@pytest.mark.redis
def test_redis_backend_setex(redis_client, redis_backend):
    """Test setting values with expiration."""
    redis_backend.setex("test:key1", 5, "value1")
    assert redis_backend.get("test:key1") == b"value1"

    # Check TTL is set
    ttl = redis_client.ttl("test:key1")
    assert 0 < ttl <= 5


@pytest.mark.redis
def test_redis_backend_delete(redis_backend):
    """Test key deletion."""
    backend = redis_backend

    backend.set("test:key1", "value1")
    backend.set("test:key2", "value2")
    backend.set("test:key3", "value3")

    assert backend.delete("test:key1") == 1
    assert backend.get("test:key1") is None
    assert backend.get("test:key2") == b"value2"

    assert backend.delete("test:key2", "test:key3", "test:nonexistent") == 2


@pytest.mark.redis
def test_redis_backend_set_operations(redis_backend):
    """Test set operations (sadd, srem, sismember, smembers)."""
    backend = redis_backend

    assert backend.sadd("test:set1", "value1", "value2") == 2
    assert backend.sadd("test:set1", "value2", "value3") == 1

    members = backend.smembers("test:set1")
    assert members == {b"value1", b"value2", b"value3"}
    assert backend.sismember("test:set1", "value1") is True

    assert backend.srem("test:set1", "value1") == 1
    assert backend.sismember("test:set1", "value1") is False

    assert backend.smembers("test:nonexistent") == set()


@pytest.mark.redis
def test_redis_backend_hash_and_list(redis_backend):
    backend = redis_backend
    backend.hset("test:hash", "a", "1")
    backend.hset("test:hash", mapping={"b": "2"})
    assert backend.hget("test:hash", "a") == b"1"
    assert backend.hmget("test:hash", ["a", "b", "c"]) == [b"1", b"2", None]

    assert backend.rpush("test:list", "x", "y") == 2
    assert backend.lrange("test:list", 0, -1) == [b"x", b"y"]


@pytest.mark.redis
def test_redis_backend_expire(redis_client, redis_backend):
    """Test setting expiry on existing keys."""
    redis_backend.set("test:key1", "value1")

    assert redis_backend.expire("test:key1", 5) is True
    assert redis_backend.expire("test:nonexistent", 5) is False

    ttl = redis_client.ttl("test:key1")
    assert 0 < ttl <= 5


@pytest.mark.redis
def test_redis_backend_transaction(redis_backend):
    """Test MULTI/EXEC through the pipeline wrapper."""
    transaction = redis_backend.pipeline(transaction=True)
    transaction.sadd("test:set1", "a")
    transaction.sadd("test:set2", "b")

    assert transaction.execute() == [1, 1]
    assert redis_backend.smembers("test:set1") == {b"a"}


@pytest.mark.redis
def test_redis_backend_transaction_wrong_type(redis_backend):
    redis_backend.set("test:string", "value")
    transaction = redis_backend.pipeline(transaction=True)
    transaction.sadd("test:string", "a")

    with pytest.raises(TransactionAborted):
        transaction.execute()


@pytest.mark.redis
def test_redis_backend_scripts(redis_client, redis_backend):
    """SCRIPT LOAD is idempotent and NOSCRIPT is reported after a flush."""
    sha = redis_backend.script_load(KILL_BY_DEPENDENCY_LUA)
    assert redis_backend.script_load(KILL_BY_DEPENDENCY_LUA) == sha

    redis_backend.set("test:a", "1")
    redis_backend.sadd("depend:test:x", "test:a")
    assert redis_backend.evalsha(sha, 1, "depend:test:x") == 1
    assert redis_backend.get("test:a") is None

    redis_client.script_flush()
    with pytest.raises(ScriptUnknownHandle):
        redis_backend.evalsha(sha, 1, "depend:test:x")
