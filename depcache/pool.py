"""
Connection pool for depcache.

The pool hands out StoreBackend sessions, one borrower at a time, and keeps
released sessions around for reuse. It enforces a cap on open connections,
a cap on idle ones, an idle timeout, a maximum connection lifetime and a
health check (PING) for sessions that sat idle for a while.
"""

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

from redis.connection import parse_url

from .backends.base import StoreBackend
from .backends.redis import RedisBackend, make_client
from .errors import ConnectionUnavailable, DepCacheError

logger = logging.getLogger("depcache")

Dialer = Callable[[], StoreBackend]


@dataclass
class PoolConfig:
    """
    Connection and pool settings.

    Args:
        url: redis:// or rediss:// URL; host/port/db/credentials given
             alongside it take precedence over the URL
        max_active: Maximum number of open connections, 0 for no limit
        max_idle: Maximum number of idle connections kept for reuse
        idle_timeout: Seconds after which an idle connection is closed, 0 to keep forever
        max_conn_lifetime: Seconds after which a connection is closed, 0 for no limit
        test_on_borrow_after: Idle seconds after which a connection is pinged
                              before being handed out, None to never ping
        wait_timeout: Seconds to wait for a free connection when max_active is
                      reached, None to wait forever, 0 to fail immediately
    """

    url: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    db: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    max_active: int = 0
    max_idle: int = 10
    idle_timeout: float = 240
    max_conn_lifetime: float = 0
    test_on_borrow_after: Optional[float] = 60
    wait_timeout: Optional[float] = None
    connect_timeout: Optional[float] = None
    socket_timeout: Optional[float] = None
    socket_keepalive: bool = False

    def __post_init__(self):
        if self.max_active < 0 or self.max_idle < 0:
            raise ValueError("max_active and max_idle cannot be negative")
        if self.url is not None:
            # fail on a malformed URL now rather than on first borrow
            parse_url(self.url)

    @classmethod
    def from_url(cls, url: str, **overrides: Any) -> "PoolConfig":
        return cls(url=url, **overrides)

    def connection_kwargs(self) -> Dict[str, Any]:
        """
        Keyword arguments for redis.ConnectionPool.

        Settings parsed from ``url`` come first; host, port, db, username and
        password given explicitly override them.
        """
        if self.url is not None:
            kwargs: Dict[str, Any] = parse_url(self.url)
        else:
            kwargs = {"host": "localhost", "port": 6379, "db": 0}
        for name in ("host", "port", "db", "username", "password"):
            value = getattr(self, name)
            if value is not None:
                kwargs[name] = value
        if self.socket_timeout is not None:
            kwargs["socket_timeout"] = self.socket_timeout
        if self.connect_timeout is not None:
            kwargs["socket_connect_timeout"] = self.connect_timeout
        if self.socket_keepalive:
            kwargs["socket_keepalive"] = True
        return kwargs


class PooledConnection:
    """Bookkeeping for one connection owned by the pool."""

    def __init__(self, backend: StoreBackend, created_at: float):
        self.backend = backend
        self.created_at = created_at
        self.returned_at = created_at


class ConnectionPool:
    """
    Thread-safe pool of backend sessions.

    Usage:
    ```python
    pool = ConnectionPool(PoolConfig.from_url("redis://localhost:6379/0"))
    with pool.connection() as backend:
        backend.get("key")
    pool.close()
    ```

    ``dial`` builds a new session; by default it opens a Redis connection
    from ``config`` and pings it.
    """

    def __init__(self, config: Optional[PoolConfig] = None, dial: Optional[Dialer] = None):
        self.config = config or PoolConfig()
        self.dial = dial or self._dial_redis
        self._idle: Deque[PooledConnection] = deque()
        self._borrowed: List[PooledConnection] = []
        self._open = 0
        self._closed = False
        self._cond = threading.Condition(threading.Lock())
        logger.debug("Initialized ConnectionPool with %s", self.config)

    @property
    def closed(self) -> bool:
        return self._closed

    def _dial_redis(self) -> StoreBackend:
        client = make_client(**self.config.connection_kwargs())
        backend = RedisBackend(client)
        try:
            backend.ping()
        except DepCacheError:
            backend.close()
            raise
        return backend

    def _expired(self, entry: PooledConnection, now: float) -> bool:
        config = self.config
        if config.max_conn_lifetime and now - entry.created_at >= config.max_conn_lifetime:
            return True
        if config.idle_timeout and now - entry.returned_at >= config.idle_timeout:
            return True
        return False

    def _needs_check(self, entry: PooledConnection, now: float) -> bool:
        after = self.config.test_on_borrow_after
        return after is not None and now - entry.returned_at >= after

    def _close_quietly(self, entry: PooledConnection) -> None:
        try:
            entry.backend.close()
        except Exception:
            logger.warning("Failed to close pooled connection %s", entry.backend, exc_info=True)

    def _take(self) -> Optional[PooledConnection]:
        """
        Reserve a slot: return an idle entry, or None when the caller must dial.

        Stale idle entries found on the way are closed.
        """
        deadline = None
        if self.config.wait_timeout is not None:
            deadline = time.time() + self.config.wait_timeout
        stale: List[PooledConnection] = []
        try:
            with self._cond:
                while True:
                    if self._closed:
                        raise ConnectionUnavailable("Connection pool is closed")

                    now = time.time()
                    expired = [entry for entry in self._idle if self._expired(entry, now)]
                    if expired:
                        self._idle = deque(e for e in self._idle if e not in expired)
                        self._open -= len(expired)
                        stale.extend(expired)

                    if self._idle:
                        entry = self._idle.pop()
                        self._borrowed.append(entry)
                        return entry

                    if not self.config.max_active or self._open < self.config.max_active:
                        self._open += 1
                        return None

                    if deadline is None:
                        self._cond.wait()
                        continue
                    remaining = deadline - time.time()
                    if remaining <= 0 or not self._cond.wait(remaining):
                        raise ConnectionUnavailable(
                            f"Connection pool exhausted ({self.config.max_active} active connections)")
        finally:
            for entry in stale:
                logger.debug("Closing stale idle connection %s", entry.backend)
                self._close_quietly(entry)

    def _discard(self, entry: Optional[PooledConnection]) -> None:
        with self._cond:
            if entry is not None and entry in self._borrowed:
                self._borrowed.remove(entry)
            self._open -= 1
            self._cond.notify()
        if entry is not None:
            self._close_quietly(entry)

    def get_connection(self) -> StoreBackend:
        """
        Borrow a session. It must be handed back with release().

        Raises:
            ConnectionUnavailable: the pool is closed or exhausted, or dialing failed
        """
        while True:
            entry = self._take()
            if entry is None:
                return self._new_connection()

            if not self._needs_check(entry, time.time()):
                return entry.backend
            try:
                alive = entry.backend.ping()
            except DepCacheError:
                alive = False
            if alive:
                return entry.backend
            logger.info("Idle connection %s failed its health check, discarding", entry.backend)
            self._discard(entry)

    def _new_connection(self) -> StoreBackend:
        try:
            backend = self.dial()
        except DepCacheError as e:
            self._discard(None)
            if isinstance(e, ConnectionUnavailable):
                raise
            raise ConnectionUnavailable(f"Could not open a connection: {e}") from e
        except BaseException:
            self._discard(None)
            raise
        entry = PooledConnection(backend, time.time())
        with self._cond:
            self._borrowed.append(entry)
            closed = self._closed
        if closed:
            self.release(backend)
            raise ConnectionUnavailable("Connection pool is closed")
        logger.debug("Opened new connection %s", backend)
        return backend

    def release(self, backend: StoreBackend) -> None:
        """
        Hand a borrowed session back to the pool.

        The session is closed instead of kept when the pool is closed, the
        session is broken or too old, or max_idle sessions are already idle.
        """
        with self._cond:
            entry = next((e for e in self._borrowed if e.backend is backend), None)
            if entry is None:
                raise ValueError("Connection was not borrowed from this pool")
            self._borrowed.remove(entry)
            now = time.time()
            lifetime = self.config.max_conn_lifetime
            keep = not (
                self._closed
                or getattr(backend, "broken", False)
                or (lifetime and now - entry.created_at >= lifetime)
                or len(self._idle) >= self.config.max_idle
            )
            if keep:
                entry.returned_at = now
                self._idle.append(entry)
            else:
                self._open -= 1
            self._cond.notify()
        if not keep:
            logger.debug("Closing released connection %s", backend)
            self._close_quietly(entry)

    @contextmanager
    def connection(self) -> Iterator[StoreBackend]:
        """Borrow a session for the duration of a ``with`` block."""
        backend = self.get_connection()
        try:
            yield backend
        finally:
            self.release(backend)

    def stats(self) -> Dict[str, int]:
        """Counts of open, idle and borrowed connections."""
        with self._cond:
            return {
                "open": self._open,
                "idle": len(self._idle),
                "borrowed": len(self._borrowed),
            }

    def close(self) -> None:
        """
        Close idle connections and refuse further borrowing.

        Connections still borrowed are closed when they are released.
        """
        with self._cond:
            if self._closed:
                return
            self._closed = True
            idle, self._idle = list(self._idle), deque()
            self._open -= len(idle)
            self._cond.notify_all()
        for entry in idle:
            self._close_quietly(entry)
        logger.info("Connection pool closed, %d idle connections released", len(idle))

    def __enter__(self) -> "ConnectionPool":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
