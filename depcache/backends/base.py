"""Base store backend interface for depcache."""

import logging
from typing import Any, Dict, List, Optional, Set, Union

# Setup logger
logger = logging.getLogger("depcache")

# Type aliases for stored values
StoreValue = Union[str, bytes]
StoreReply = Union[str, bytes, None]


class StoreBackend:
    """
    Base class for store backends.

    A backend is one session against the store: the pool hands it out to a
    single borrower at a time. All backends must implement these methods to
    be compatible with DependencyCache.
    """

    #: Set by a backend when its session can no longer be trusted, the pool
    #: closes broken sessions instead of reusing them.
    broken: bool = False

    def ping(self) -> bool:
        """
        Check that the session is alive.

        Returns:
            True if the store answered
        """
        raise NotImplementedError("Backend must implement ping()")

    def close(self) -> None:
        """Close the underlying session."""
        raise NotImplementedError("Backend must implement close()")

    def get(self, key: str) -> StoreReply:
        """
        Get a value from the store.

        Args:
            key: The key to retrieve

        Returns:
            The stored value or None if not found
        """
        raise NotImplementedError("Backend must implement get()")

    def set(self, key: str, value: StoreValue, expire: Optional[int] = None) -> bool:
        """
        Set a value in the store with optional expiration.

        Args:
            key: The key to set
            value: The value to store
            expire: Optional expiration time in seconds

        Returns:
            True if successful
        """
        raise NotImplementedError("Backend must implement set()")

    def setex(self, key: str, expiration_seconds: int, value: StoreValue) -> bool:
        """
        Set a value with expiration time.

        Args:
            key: The key to set
            expiration_seconds: Expiration time in seconds
            value: The value to store

        Returns:
            True if successful
        """
        raise NotImplementedError("Backend must implement setex()")

    def exists(self, *keys: str) -> int:
        """
        Count how many of the given keys exist.

        Args:
            *keys: The keys to check

        Returns:
            Number of existing keys
        """
        raise NotImplementedError("Backend must implement exists()")

    def delete(self, *keys: str) -> int:
        """
        Delete one or more keys.

        Args:
            *keys: The keys to delete

        Returns:
            Number of keys deleted
        """
        raise NotImplementedError("Backend must implement delete()")

    def ttl(self, key: str) -> int:
        """
        Get the time-to-live for a key.

        Args:
            key: The key to check

        Returns:
            Time-to-live in seconds, -1 if the key has no expiry
            or -2 if key does not exist
        """
        raise NotImplementedError("Backend must implement ttl()")

    def expire(self, key: str, expiration_seconds: int) -> bool:
        """
        Set expiration on a key.

        Args:
            key: The key to set expiration on
            expiration_seconds: Expiration time in seconds

        Returns:
            True if the key exists and the timeout was set
        """
        raise NotImplementedError("Backend must implement expire()")

    def keys(self, pattern: str) -> List[Union[str, bytes]]:
        """
        Find keys matching pattern.

        Args:
            pattern: Pattern to match (glob-style)

        Returns:
            List of matching keys
        """
        raise NotImplementedError("Backend must implement keys()")

    def flushall(self) -> bool:
        """Remove every key from the store. Registered scripts survive."""
        raise NotImplementedError("Backend must implement flushall()")

    def hset(self, name: str, key: Optional[str] = None, value: Optional[StoreValue] = None,
             mapping: Optional[Dict[str, StoreValue]] = None) -> int:
        """
        Set one field, or every field of ``mapping``, in a hash.

        Returns:
            Number of fields that were added
        """
        raise NotImplementedError("Backend must implement hset()")

    def hget(self, name: str, key: str) -> StoreReply:
        """Get one field of a hash."""
        raise NotImplementedError("Backend must implement hget()")

    def hmget(self, name: str, keys: List[str]) -> List[StoreReply]:
        """Get several fields of a hash, None for missing fields."""
        raise NotImplementedError("Backend must implement hmget()")

    def rpush(self, name: str, *values: StoreValue) -> int:
        """
        Append values to a list.

        Returns:
            Length of the list after the push
        """
        raise NotImplementedError("Backend must implement rpush()")

    def lrange(self, name: str, start: int, end: int) -> List[Union[str, bytes]]:
        """Get a slice of a list, ``end`` is inclusive and may be negative."""
        raise NotImplementedError("Backend must implement lrange()")

    def sadd(self, key: str, *values: StoreValue) -> int:
        """
        Add values to a set.

        Args:
            key: The set key
            *values: Values to add to the set

        Returns:
            Number of values added
        """
        raise NotImplementedError("Backend must implement sadd()")

    def srem(self, key: str, *values: StoreValue) -> int:
        """
        Remove values from a set.

        Returns:
            Number of values removed
        """
        raise NotImplementedError("Backend must implement srem()")

    def sismember(self, key: str, value: StoreValue) -> bool:
        """Check set membership."""
        raise NotImplementedError("Backend must implement sismember()")

    def smembers(self, key: str) -> Set[Union[str, bytes]]:
        """
        Get all members of a set.

        Args:
            key: The set key

        Returns:
            Set of all members
        """
        raise NotImplementedError("Backend must implement smembers()")

    def pipeline(self, transaction: bool = True) -> Any:
        """
        Get a pipeline/transaction object.

        Commands called on the returned object are queued and run by its
        execute() method. With ``transaction=True`` they run as one
        MULTI/EXEC block and a failure raises TransactionAborted.

        Returns:
            A pipeline object that implements the same methods as the backend
        """
        raise NotImplementedError("Backend must implement pipeline()")

    def script_load(self, script: str) -> str:
        """
        Register a script body with the store.

        Returns:
            The content handle (SHA1 hex digest) of the script
        """
        raise NotImplementedError("Backend must implement script_load()")

    def evalsha(self, sha: str, numkeys: int, *keys_and_args: Any) -> Any:
        """
        Run a registered script by its content handle.

        Raises:
            ScriptUnknownHandle: the store does not know ``sha``
        """
        raise NotImplementedError("Backend must implement evalsha()")
