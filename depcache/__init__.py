"""
depcache - dependency-aware invalidation on top of Redis.

Keys are written together with the names of the things they depend on, and
invalidating one of those names deletes every dependent key in a single
atomic server-side script.
"""

__version__ = '0.1.0'

# Import main components
from .backends.base import StoreBackend
from .backends.memory import MemoryBackend
from .backends.redis import RedisBackend
from .cache import DependencyCache, WriteResult, connect, connect_to_url
from .dependency import DEPENDENCY_PREFIX, dependency_key
from .errors import (
    BackendCommandError,
    ConnectionUnavailable,
    DepCacheError,
    ScriptRegistrationFailed,
    ScriptUnknownHandle,
    TransactionAborted,
)
from .pool import ConnectionPool, PoolConfig

# Export public API
__all__ = [
    'DependencyCache',
    'WriteResult',
    'connect',
    'connect_to_url',
    'ConnectionPool',
    'PoolConfig',
    'StoreBackend',
    'MemoryBackend',
    'RedisBackend',
    'DEPENDENCY_PREFIX',
    'dependency_key',
    'DepCacheError',
    'ConnectionUnavailable',
    'BackendCommandError',
    'TransactionAborted',
    'ScriptUnknownHandle',
    'ScriptRegistrationFailed',
]
