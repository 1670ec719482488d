"""Redis backend implementation for depcache."""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Set, Union

import redis
from redis import exceptions as redis_exceptions

from ..errors import (
    BackendCommandError,
    ConnectionUnavailable,
    ScriptUnknownHandle,
    TransactionAborted,
)
from .base import StoreBackend, StoreReply, StoreValue, logger

# Type aliases to help with type checking without importing Redis types
RedisClient = Any  # Any Redis-compatible client
RedisPipeline = Any  # Any Redis-compatible pipeline/transaction


class RedisBackend(StoreBackend):
    """
    Redis-compatible backend over one redis-py client.
    Works with any Redis-compatible server (Redis, ValKey, etc).

    The pool gives every borrower its own RedisBackend bound to a client
    that owns a single connection, so commands issued through one backend
    never interleave with another borrower's.

    redis-py exceptions are translated into depcache errors:
    NoScriptError into ScriptUnknownHandle, connection and timeout errors
    into ConnectionUnavailable, everything else into BackendCommandError.
    """

    def __init__(self, client: RedisClient):
        """
        Initialize with a Redis client.

        Args:
            client: A redis.Redis instance (or any client with the same methods)
        """
        self.client = client
        self.broken = False
        logger.debug("Initialized RedisBackend with %s", client)

    @contextmanager
    def _command(self, command: str) -> Iterator[None]:
        """Translate redis-py errors raised by ``command``."""
        try:
            yield
        except redis_exceptions.NoScriptError as e:
            raise ScriptUnknownHandle(str(e), command=command) from e
        except (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError) as e:
            self.broken = True
            raise ConnectionUnavailable(f"Redis {command} failed: {e}") from e
        except redis_exceptions.RedisError as e:
            raise BackendCommandError(f"Redis {command} failed: {e}", command=command) from e

    def ping(self) -> bool:
        with self._command("PING"):
            return bool(self.client.ping())

    def close(self) -> None:
        """Close the client and disconnect its connection."""
        logger.debug("Closing RedisBackend %s", self.client)
        try:
            self.client.close()
        finally:
            pool = getattr(self.client, "connection_pool", None)
            if pool is not None:
                pool.disconnect()

    def get(self, key: str) -> StoreReply:
        """Get a value from Redis."""
        logger.debug("Redis GET %s", key)
        with self._command("GET"):
            return self.client.get(key)

    def set(self, key: str, value: StoreValue, expire: Optional[int] = None) -> bool:
        """Set a value in Redis with optional expiration."""
        logger.debug("Redis SET %s", key)
        if expire:
            return self.setex(key, expire, value)
        with self._command("SET"):
            return bool(self.client.set(key, value))

    def setex(self, key: str, expiration_seconds: int, value: StoreValue) -> bool:
        """Set a value with expiration time."""
        logger.debug("Redis SETEX %s %s", key, expiration_seconds)
        with self._command("SETEX"):
            return bool(self.client.setex(key, expiration_seconds, value))

    def exists(self, *keys: str) -> int:
        logger.debug("Redis EXISTS %s", keys)
        with self._command("EXISTS"):
            return self.client.exists(*keys)

    def delete(self, *keys: str) -> int:
        """Delete one or more keys."""
        if not keys:
            return 0

        logger.debug("Redis DEL %s", keys)
        with self._command("DEL"):
            return self.client.delete(*keys)

    def ttl(self, key: str) -> int:
        """Get the time-to-live for a key."""
        logger.debug("Redis TTL %s", key)
        with self._command("TTL"):
            return self.client.ttl(key)

    def expire(self, key: str, expiration_seconds: int) -> bool:
        """Set expiration on a key."""
        logger.debug("Redis EXPIRE %s %s", key, expiration_seconds)
        with self._command("EXPIRE"):
            return bool(self.client.expire(key, expiration_seconds))

    def keys(self, pattern: str) -> List[Union[str, bytes]]:
        """Find keys matching pattern."""
        logger.debug("Redis KEYS %s", pattern)
        with self._command("KEYS"):
            return self.client.keys(pattern)

    def flushall(self) -> bool:
        logger.debug("Redis FLUSHALL")
        with self._command("FLUSHALL"):
            return bool(self.client.flushall())

    def hset(self, name: str, key: Optional[str] = None, value: Optional[StoreValue] = None,
             mapping: Optional[Dict[str, StoreValue]] = None) -> int:
        logger.debug("Redis HSET %s %s", name, key if mapping is None else list(mapping))
        with self._command("HSET"):
            return self.client.hset(name, key, value, mapping=mapping)

    def hget(self, name: str, key: str) -> StoreReply:
        logger.debug("Redis HGET %s %s", name, key)
        with self._command("HGET"):
            return self.client.hget(name, key)

    def hmget(self, name: str, keys: List[str]) -> List[StoreReply]:
        logger.debug("Redis HMGET %s %s", name, keys)
        with self._command("HMGET"):
            return self.client.hmget(name, keys)

    def rpush(self, name: str, *values: StoreValue) -> int:
        logger.debug("Redis RPUSH %s (%d values)", name, len(values))
        with self._command("RPUSH"):
            return self.client.rpush(name, *values)

    def lrange(self, name: str, start: int, end: int) -> List[Union[str, bytes]]:
        logger.debug("Redis LRANGE %s %s %s", name, start, end)
        with self._command("LRANGE"):
            return self.client.lrange(name, start, end)

    def sadd(self, key: str, *values: StoreValue) -> int:
        """Add values to a set."""
        logger.debug("Redis SADD %s %s", key, values)
        with self._command("SADD"):
            return self.client.sadd(key, *values)

    def srem(self, key: str, *values: StoreValue) -> int:
        logger.debug("Redis SREM %s %s", key, values)
        with self._command("SREM"):
            return self.client.srem(key, *values)

    def sismember(self, key: str, value: StoreValue) -> bool:
        logger.debug("Redis SISMEMBER %s %s", key, value)
        with self._command("SISMEMBER"):
            return bool(self.client.sismember(key, value))

    def smembers(self, key: str) -> Set[Union[str, bytes]]:
        """Get all members of a set."""
        logger.debug("Redis SMEMBERS %s", key)
        with self._command("SMEMBERS"):
            return self.client.smembers(key)

    def script_load(self, script: str) -> str:
        logger.debug("Redis SCRIPT LOAD")
        with self._command("SCRIPT LOAD"):
            return self.client.script_load(script)

    def evalsha(self, sha: str, numkeys: int, *keys_and_args: Any) -> Any:
        logger.debug("Redis EVALSHA %s %s %s", sha, numkeys, keys_and_args)
        with self._command("EVALSHA"):
            return self.client.evalsha(sha, numkeys, *keys_and_args)

    def pipeline(self, transaction: bool = True) -> "RedisTransaction":
        """
        Get a pipeline/transaction object from the Redis client.

        Returns:
            A wrapper around a redis-py pipeline; with ``transaction=True`` the
            queued commands are sent inside MULTI/EXEC.
        """
        logger.debug("Creating Redis %s", "transaction" if transaction else "pipeline")
        return RedisTransaction(self, self.client.pipeline(transaction=transaction), transaction)


class RedisTransaction:
    """Wrapper for a Redis pipeline that translates errors on execute()."""

    def __init__(self, backend: RedisBackend, pipeline: RedisPipeline, transaction: bool = True):
        """
        Initialize the wrapper.

        Args:
            backend: The RedisBackend that created the pipeline
            pipeline: redis-py pipeline object
            transaction: Whether execute() runs MULTI/EXEC
        """
        self.backend = backend
        self.pipeline = pipeline
        self.transaction = transaction

    def __getattr__(self, name: str):
        """Proxy command methods to the underlying pipeline, returning self for chaining."""
        orig_method = getattr(self.pipeline, name)

        def wrapped_method(*args, **kwargs):
            orig_method(*args, **kwargs)
            return self

        return wrapped_method

    def execute(self) -> List[Any]:
        """Execute the queued commands."""
        command = "EXEC" if self.transaction else "PIPELINE"
        try:
            return self.pipeline.execute()
        except (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError) as e:
            self.backend.broken = True
            raise ConnectionUnavailable(f"Redis {command} failed: {e}") from e
        except redis_exceptions.RedisError as e:
            if self.transaction:
                raise TransactionAborted(f"Redis transaction aborted: {e}", command=command) from e
            raise BackendCommandError(f"Redis {command} failed: {e}", command=command) from e
        finally:
            self.pipeline.reset()


def make_client(**connection_kwargs: Any) -> redis.Redis:
    """
    Build a redis-py client that owns exactly one connection.

    Args:
        **connection_kwargs: Keyword arguments for redis.ConnectionPool
            (host, port, db, username, password, socket timeouts...)
    """
    pool = redis.ConnectionPool(max_connections=1, **connection_kwargs)
    return redis.Redis(connection_pool=pool)
