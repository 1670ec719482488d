"""
Main client for depcache.

This module contains DependencyCache, the object callers construct and pass
around to read and write keys, declare dependencies and invalidate them.
"""

import datetime
import logging
from typing import Dict, List, Optional, Tuple, Union

from .backends.base import StoreBackend, StoreValue
from .backends.memory import MemoryBackend
from .dependency import kill_by_dependency, link_dependencies
from .errors import BackendCommandError, DepCacheError
from .pool import ConnectionPool, PoolConfig
from .scripts import Script, kill_by_dependency_script

# Setup logger
logger = logging.getLogger("depcache")

TTL = Union[int, float, datetime.timedelta]


class WriteResult:
    """
    Outcome of a write that declared dependencies.

    The primary write and the dependency link are two separate steps. If the
    write fails the method raises and nothing is returned, so getting a
    WriteResult back means the value was stored. If only the link
    fails the value *is* stored, but it will not be removed when its
    dependencies are invalidated: ``linked`` is False and ``link_error``
    holds the reason. Call ``raise_for_link()`` to treat that as an error.
    """

    __slots__ = ("key", "dependencies", "link_error")

    def __init__(self, key: str, dependencies: Tuple[str, ...] = (),
                 link_error: Optional[DepCacheError] = None):
        self.key = key
        self.dependencies = dependencies
        self.link_error = link_error

    @property
    def linked(self) -> bool:
        return self.link_error is None

    def raise_for_link(self) -> "WriteResult":
        if self.link_error is not None:
            raise self.link_error
        return self

    def __repr__(self) -> str:
        return f"WriteResult(key={self.key!r}, dependencies={self.dependencies!r}, linked={self.linked})"


def _seconds(ttl: TTL) -> int:
    if isinstance(ttl, datetime.timedelta):
        ttl = ttl.total_seconds()
    seconds = int(ttl)
    if seconds <= 0:
        raise ValueError(f"TTL must be at least one second, got {ttl!r}")
    return seconds


def _check_value(value: StoreValue, what: str = "value") -> StoreValue:
    if not isinstance(value, (str, bytes)):
        raise TypeError(f"{what} must be str or bytes, got {type(value).__name__}")
    return value


def _to_str(value) -> Optional[str]:
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise BackendCommandError(f"Value is not valid UTF-8, read it with get_bytes: {e}") from e
    return value


def _to_bytes(value) -> Optional[bytes]:
    if isinstance(value, str):
        return value.encode("utf-8")
    return value


class DependencyCache:
    """
    Key-value client with dependency tracking on top of a connection pool.

    Values written with dependencies are recorded in a reverse index, so a
    single ``kill_by_dependency`` call removes every key that depends on a
    name. Each method borrows one pooled connection for its duration.

    Usage:
    ```python
    cache = connect_to_url("redis://localhost:6379/0")

    # Store a value that depends on two other things
    cache.set("user:42", "...", "org:7", "plan:pro")

    # Drop everything depending on org:7, and org:7 itself
    cache.kill_by_dependency("org:7")

    cache.close()
    ```

    Writes that accept dependencies return a WriteResult. Linking the
    dependencies is best effort: when it fails the value stays written but
    is no longer covered by invalidation, check ``result.linked``.
    """

    def __init__(self, pool: Optional[ConnectionPool] = None, debug: bool = False):
        """
        Initialize the client.

        Args:
            pool: ConnectionPool to borrow connections from. If not provided,
                  uses a pool over a private in-memory backend.
            debug: When True, enables verbose debug logging. Default: False
        """
        # Set up logger
        if debug:
            logger.setLevel(logging.DEBUG)
            # Add a handler if none exists
            if not logger.handlers:
                handler = logging.StreamHandler()
                formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
                handler.setFormatter(formatter)
                logger.addHandler(handler)
        self.debug = debug

        if pool is None:
            logger.info("No pool provided, using in-memory backend")
            backend = MemoryBackend()
            pool = ConnectionPool(dial=lambda: backend)
        self.pool = pool
        self.kill_script: Script = kill_by_dependency_script()
        logger.debug("DependencyCache initialized with %s", pool)

    def connection(self):
        """Borrow a connection, see ConnectionPool.connection()."""
        return self.pool.connection()

    def register_scripts(self) -> None:
        """Register the server-side scripts now instead of on first use."""
        with self.connection() as backend:
            self.kill_script.register(backend)

    def did_register_kill_by_dependency_script(self) -> bool:
        return self.kill_script.registered

    # Reads

    def get(self, key: str) -> Optional[str]:
        """Get a string value, None if the key does not exist. Binary values need get_bytes."""
        with self.connection() as backend:
            return _to_str(backend.get(key))

    def get_bytes(self, key: str) -> Optional[bytes]:
        """Get a value as bytes, None if the key does not exist."""
        with self.connection() as backend:
            return _to_bytes(backend.get(key))

    def get_list(self, key: str) -> List[str]:
        """Get every element of a list."""
        with self.connection() as backend:
            return [_to_str(item) for item in backend.lrange(key, 0, -1)]

    def get_all_keys(self) -> List[str]:
        """Get every key in the store, dependency sets included."""
        with self.connection() as backend:
            return [_to_str(key) for key in backend.keys("*")]

    def exists(self, key: str) -> bool:
        with self.connection() as backend:
            return backend.exists(key) > 0

    def hash_get(self, name: str, field: str) -> Optional[str]:
        with self.connection() as backend:
            return _to_str(backend.hget(name, field))

    def hash_map_get(self, name: str, *fields: str) -> List[Optional[str]]:
        """Get several hash fields, None for the ones that are missing."""
        if not fields:
            return []
        with self.connection() as backend:
            return [_to_str(value) for value in backend.hmget(name, list(fields))]

    def set_is_member(self, name: str, member: StoreValue) -> bool:
        with self.connection() as backend:
            return backend.sismember(name, _check_value(member, "member"))

    # Writes without dependencies

    def set_list(self, key: str, values: List[StoreValue]) -> int:
        """
        Append values to a list.

        Returns:
            Length of the list after the append
        """
        if not values:
            raise ValueError("set_list needs at least one value")
        values = [_check_value(value) for value in values]
        with self.connection() as backend:
            return backend.rpush(key, *values)

    def expire(self, key: str, ttl: TTL) -> bool:
        """
        Set a timeout on a key.

        Returns:
            False if the key does not exist
        """
        with self.connection() as backend:
            return backend.expire(key, _seconds(ttl))

    def set_add_many(self, name: str, *members: StoreValue) -> int:
        """Add members to a set without declaring dependencies."""
        if not members:
            return 0
        members = tuple(_check_value(member, "member") for member in members)
        with self.connection() as backend:
            return backend.sadd(name, *members)

    def set_remove_member(self, name: str, member: StoreValue) -> int:
        """
        Remove a member from a set.

        Also the way to drop a single key from a dependency index:
        ``set_remove_member(dependency_key("org:7"), "user:42")``.
        """
        with self.connection() as backend:
            return backend.srem(name, _check_value(member, "member"))

    def destroy_cache(self) -> None:
        """Flush every key from the store. Registered scripts are kept."""
        logger.warning("Flushing the whole store")
        with self.connection() as backend:
            backend.flushall()

    # Writes with dependencies

    def _link(self, backend: StoreBackend, key: str, dependencies: Tuple[str, ...]) -> WriteResult:
        try:
            link_dependencies(backend, key, *dependencies)
        except DepCacheError as e:
            logger.warning("Value %s was written but linking dependencies %s failed: %s",
                           key, dependencies, e)
            return WriteResult(key, dependencies, link_error=e)
        return WriteResult(key, dependencies)

    def link(self, key: str, *dependencies: str) -> None:
        """
        Declare that ``key`` depends on each of ``dependencies``.

        Raises:
            TransactionAborted: the link transaction failed
        """
        with self.connection() as backend:
            link_dependencies(backend, key, *dependencies)

    def set(self, key: str, value: StoreValue, *dependencies: str) -> WriteResult:
        """
        Store a value and link it to its dependencies.

        Args:
            key: The key to write
            value: str or bytes
            *dependencies: Names whose invalidation must delete ``key``

        Returns:
            WriteResult; ``linked`` is False if the value was stored but
            the dependencies could not be recorded
        """
        _check_value(value)
        with self.connection() as backend:
            backend.set(key, value)
            return self._link(backend, key, dependencies)

    def set_exp(self, key: str, value: StoreValue, ttl: TTL, *dependencies: str) -> WriteResult:
        """Same as set(), with the key expiring after ``ttl``."""
        _check_value(value)
        seconds = _seconds(ttl)
        with self.connection() as backend:
            backend.setex(key, seconds, value)
            return self._link(backend, key, dependencies)

    def hash_set(self, name: str, field: str, value: StoreValue, *dependencies: str) -> WriteResult:
        """Set one field of a hash and link the whole hash to ``dependencies``."""
        _check_value(value)
        with self.connection() as backend:
            backend.hset(name, field, value)
            return self._link(backend, name, dependencies)

    def hash_map_set(self, name: str, pairs: Union[Dict[str, StoreValue], List[Tuple[str, StoreValue]]],
                     *dependencies: str) -> WriteResult:
        """Set several fields of a hash and link the whole hash to ``dependencies``."""
        mapping = self._mapping(pairs)
        with self.connection() as backend:
            backend.hset(name, mapping=mapping)
            return self._link(backend, name, dependencies)

    def hash_map_set_exp(self, name: str, pairs: Union[Dict[str, StoreValue], List[Tuple[str, StoreValue]]],
                         ttl: TTL, *dependencies: str) -> WriteResult:
        """Same as hash_map_set(), with the hash expiring after ``ttl``."""
        mapping = self._mapping(pairs)
        seconds = _seconds(ttl)
        with self.connection() as backend:
            backend.hset(name, mapping=mapping)
            backend.expire(name, seconds)
            return self._link(backend, name, dependencies)

    def set_add(self, name: str, member: StoreValue, *dependencies: str) -> WriteResult:
        """Add a member to a set and link the whole set to ``dependencies``."""
        _check_value(member, "member")
        with self.connection() as backend:
            backend.sadd(name, member)
            return self._link(backend, name, dependencies)

    @staticmethod
    def _mapping(pairs) -> Dict[str, StoreValue]:
        mapping = dict(pairs)
        if not mapping:
            raise ValueError("At least one field/value pair is required")
        for value in mapping.values():
            _check_value(value)
        return mapping

    # Invalidation

    def kill_by_dependency(self, *keys: str) -> int:
        """
        Delete every key that depends on any of ``keys``, then ``keys`` themselves.

        Finding and deleting the dependents is atomic. Deleting ``keys`` is a
        separate command sent right after; if it fails the dependents are
        already gone and the error is raised.

        Returns:
            Number of dependent keys deleted (``keys`` are not counted)
        """
        if not keys:
            return 0
        with self.connection() as backend:
            return kill_by_dependency(backend, self.kill_script, *keys)

    def delete(self, *keys: str) -> int:
        """Alias for kill_by_dependency()."""
        return self.kill_by_dependency(*keys)

    def delete_without_dependency(self, *keys: str) -> int:
        """
        Delete keys one DEL at a time, without touching dependents.

        Returns:
            Number of DEL commands issued
        """
        total = 0
        with self.connection() as backend:
            for key in keys:
                backend.delete(key)
                total += 1
        return total

    # Lifecycle

    def close(self) -> None:
        """Close the pool and forget registered script handles."""
        self.kill_script.reset()
        self.pool.close()

    def __enter__(self) -> "DependencyCache":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def connect(config: Optional[PoolConfig] = None, dependency_mode: bool = True,
            debug: bool = False, **options) -> DependencyCache:
    """
    Create a pool from explicit settings and return a client over it.

    Args:
        config: PoolConfig; if omitted one is built from ``options``
        dependency_mode: Open a connection right away and register the
                         invalidation script, failing early when the
                         server is unreachable
        debug: Enable debug logging
        **options: PoolConfig fields (host, port, db, password, max_active...)

    Raises:
        ConnectionUnavailable: dependency_mode is on and the server cannot be reached
    """
    if config is None:
        config = PoolConfig(**options)
    elif options:
        raise TypeError("Pass either a PoolConfig or keyword options, not both")
    cache = DependencyCache(ConnectionPool(config), debug=debug)
    if dependency_mode:
        try:
            cache.register_scripts()
        except DepCacheError:
            cache.close()
            raise
    return cache


def connect_to_url(url: str, dependency_mode: bool = True, debug: bool = False,
                   **options) -> DependencyCache:
    """Same as connect(), with connection settings taken from a redis:// URL."""
    return connect(PoolConfig.from_url(url, **options), dependency_mode=dependency_mode, debug=debug)
