"""Memory backend implementation for depcache."""

import copy
import fnmatch
import hashlib
import threading
import time
from typing import Any, Dict, List, Optional, Set, Union

from ..errors import BackendCommandError, ScriptUnknownHandle, TransactionAborted
from ..scripts import KILL_BY_DEPENDENCY_LUA
from .base import StoreBackend, StoreReply, StoreValue, logger

WRONGTYPE = "WRONGTYPE Operation against a key holding the wrong kind of value"

_MISSING = object()

# Commands whose first argument is the only key they touch, and commands whose
# arguments are all keys. A transaction made only of these saves just those keys.
_FIRST_ARG_KEY = frozenset({
    "get", "set", "setex", "ttl", "expire", "hset", "hget", "hmget",
    "rpush", "lrange", "sadd", "srem", "sismember", "smembers",
})
_ALL_ARGS_KEYS = frozenset({"delete", "exists"})


class MemoryBackend(StoreBackend):
    """
    In-memory backend implementation.
    Useful for testing or applications that don't need persistence.

    This backend stores all data in memory and is not persistent.
    It's thread-safe and supports all the same operations as the Redis backend.

    This implementation uses a single RLock to protect all operations.
    The lock ensures that compound operations (transactions and scripts)
    are executed atomically. Every borrower of a pool built on a
    MemoryBackend shares the same data, like sessions to one server.

    Lua cannot run in process, so the backend only accepts the scripts
    depcache ships and runs a Python rendering of each under the lock.
    SCRIPT LOAD returns the same SHA1 handle Redis would, and
    ``script_flush()`` forgets loaded scripts the way a restarted server does.

    The _check_expiry and _check_type methods are internal methods that
    assume the lock is already held by the caller.
    """

    def __init__(self):
        """Initialize an empty in-memory store."""
        self.data: Dict[str, Any] = {}  # Strings
        self.hashes: Dict[str, Dict[str, Any]] = {}
        self.lists: Dict[str, List[Any]] = {}
        self.sets: Dict[str, Set[Any]] = {}
        self.expires: Dict[str, float] = {}  # Expiration times
        self.scripts: Dict[str, str] = {}  # Loaded handles -> handler name
        self.lock = threading.RLock()  # For thread safety
        self.broken = False
        logger.debug("Initialized MemoryBackend")

    # Python renderings of the scripts this backend can run, keyed by body
    script_handlers = {
        KILL_BY_DEPENDENCY_LUA: "_script_kill_by_dependency",
    }

    def _stores(self):
        return (self.data, self.hashes, self.lists, self.sets)

    def _check_expiry(self, key: str) -> bool:
        """
        Check if key is expired and delete if so.

        IMPORTANT: This method assumes the lock is already held!

        Returns:
            True if the key was expired and removed, False otherwise
        """
        if key in self.expires and self.expires[key] <= time.time():
            logger.debug("Key %s expired, removing", key)
            self._remove(key)
            return True
        return False

    def _check_type(self, key: str, store: Dict) -> None:
        """Raise WRONGTYPE if ``key`` exists in another store than ``store``."""
        self._check_expiry(key)
        for other in self._stores():
            if other is not store and key in other:
                raise BackendCommandError(WRONGTYPE)

    def _contains(self, key: str) -> bool:
        self._check_expiry(key)
        return any(key in store for store in self._stores())

    def _remove(self, key: str) -> bool:
        found = False
        for store in self._stores():
            if key in store:
                del store[key]
                found = True
        self.expires.pop(key, None)
        return found

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        """Nothing to release, the data outlives every session."""
        logger.debug("Closing MemoryBackend session")

    def get(self, key: str) -> StoreReply:
        """Get a value from the in-memory store."""
        logger.debug("Memory GET %s", key)
        with self.lock:
            self._check_type(key, self.data)
            return self.data.get(key)

    def set(self, key: str, value: StoreValue, expire: Optional[int] = None) -> bool:
        """Set a value in the in-memory store with optional expiration."""
        logger.debug("Memory SET %s", key)
        with self.lock:
            # SET overwrites whatever type the key held
            self._remove(key)
            self.data[key] = value
            if expire:
                self.expires[key] = time.time() + expire
        return True

    def setex(self, key: str, expiration_seconds: int, value: StoreValue) -> bool:
        """Set a value with expiration time."""
        logger.debug("Memory SETEX %s", key)
        if expiration_seconds <= 0:
            raise BackendCommandError("ERR invalid expire time in 'setex' command", command="SETEX")
        return self.set(key, value, expiration_seconds)

    def exists(self, *keys: str) -> int:
        logger.debug("Memory EXISTS %s", keys)
        with self.lock:
            return sum(1 for key in keys if self._contains(key))

    def delete(self, *keys: str) -> int:
        """Delete one or more keys."""
        logger.debug("Memory DELETE %s", keys)
        count = 0
        with self.lock:
            for key in keys:
                self._check_expiry(key)
                if self._remove(key):
                    count += 1
        return count

    def ttl(self, key: str) -> int:
        logger.debug("Memory TTL %s", key)
        with self.lock:
            if not self._contains(key):
                return -2
            if key not in self.expires:
                return -1
            return max(0, int(round(self.expires[key] - time.time())))

    def expire(self, key: str, expiration_seconds: int) -> bool:
        """Set expiration on a key."""
        logger.debug("Memory EXPIRE %s %s", key, expiration_seconds)
        with self.lock:
            if not self._contains(key):
                return False
            self.expires[key] = time.time() + expiration_seconds
            # a non-positive timeout deletes the key right away
            self._check_expiry(key)
            return True

    def keys(self, pattern: str) -> List[str]:
        """Find keys matching pattern using fnmatch."""
        logger.debug("Memory KEYS %s", pattern)
        with self.lock:
            # Make a copy of keys since expiry checks modify the stores
            all_keys = [key for store in self._stores() for key in list(store)]
            return [key for key in all_keys
                    if not self._check_expiry(key) and fnmatch.fnmatchcase(key, pattern)]

    def flushall(self) -> bool:
        logger.debug("Memory FLUSHALL")
        with self.lock:
            for store in self._stores():
                store.clear()
            self.expires.clear()
        return True

    def hset(self, name: str, key: Optional[str] = None, value: Optional[StoreValue] = None,
             mapping: Optional[Dict[str, StoreValue]] = None) -> int:
        logger.debug("Memory HSET %s %s", name, key if mapping is None else list(mapping))
        items = dict(mapping or {})
        if key is not None:
            items[key] = value
        if not items:
            raise BackendCommandError("ERR wrong number of arguments for 'hset' command", command="HSET")
        with self.lock:
            self._check_type(name, self.hashes)
            fields = self.hashes.setdefault(name, {})
            added = sum(1 for field in items if field not in fields)
            fields.update(items)
            return added

    def hget(self, name: str, key: str) -> StoreReply:
        logger.debug("Memory HGET %s %s", name, key)
        with self.lock:
            self._check_type(name, self.hashes)
            return self.hashes.get(name, {}).get(key)

    def hmget(self, name: str, keys: List[str]) -> List[StoreReply]:
        logger.debug("Memory HMGET %s %s", name, keys)
        with self.lock:
            self._check_type(name, self.hashes)
            fields = self.hashes.get(name, {})
            return [fields.get(key) for key in keys]

    def rpush(self, name: str, *values: StoreValue) -> int:
        logger.debug("Memory RPUSH %s (%d values)", name, len(values))
        with self.lock:
            self._check_type(name, self.lists)
            items = self.lists.setdefault(name, [])
            items.extend(values)
            return len(items)

    def lrange(self, name: str, start: int, end: int) -> List[Union[str, bytes]]:
        logger.debug("Memory LRANGE %s %s %s", name, start, end)
        with self.lock:
            self._check_type(name, self.lists)
            items = self.lists.get(name, [])
            length = len(items)
            if start < 0:
                start = max(0, length + start)
            if end < 0:
                end = length + end
            return list(items[start:end + 1])

    def sadd(self, key: str, *values: StoreValue) -> int:
        """Add values to a set."""
        logger.debug("Memory SADD %s %s", key, values)
        with self.lock:
            self._check_type(key, self.sets)
            members = self.sets.setdefault(key, set())
            count = 0
            for val in values:
                if val not in members:
                    members.add(val)
                    count += 1
            return count

    def srem(self, key: str, *values: StoreValue) -> int:
        logger.debug("Memory SREM %s %s", key, values)
        with self.lock:
            self._check_type(key, self.sets)
            members = self.sets.get(key)
            if not members:
                return 0
            count = 0
            for val in values:
                if val in members:
                    members.discard(val)
                    count += 1
            if not members:
                self._remove(key)
            return count

    def sismember(self, key: str, value: StoreValue) -> bool:
        logger.debug("Memory SISMEMBER %s %s", key, value)
        with self.lock:
            self._check_type(key, self.sets)
            return value in self.sets.get(key, set())

    def smembers(self, key: str) -> Set[Union[str, bytes]]:
        """Get all members of a set."""
        logger.debug("Memory SMEMBERS %s", key)
        with self.lock:
            self._check_type(key, self.sets)
            # Return a copy, callers must not see later writes
            return set(self.sets.get(key, set()))

    def script_load(self, script: str) -> str:
        """Register one of the scripts this backend knows how to run."""
        logger.debug("Memory SCRIPT LOAD")
        handler = self.script_handlers.get(script)
        if handler is None:
            raise BackendCommandError("ERR MemoryBackend cannot run arbitrary scripts",
                                      command="SCRIPT LOAD")
        sha = hashlib.sha1(script.encode("utf-8")).hexdigest()
        with self.lock:
            self.scripts[sha] = handler
        return sha

    def script_flush(self) -> bool:
        """Forget every loaded script, like SCRIPT FLUSH or a server restart."""
        logger.debug("Memory SCRIPT FLUSH")
        with self.lock:
            self.scripts.clear()
        return True

    def evalsha(self, sha: str, numkeys: int, *keys_and_args: Any) -> Any:
        logger.debug("Memory EVALSHA %s %s %s", sha, numkeys, keys_and_args)
        keys, args = list(keys_and_args[:numkeys]), list(keys_and_args[numkeys:])
        with self.lock:
            handler = self.scripts.get(sha)
            if handler is None:
                raise ScriptUnknownHandle("NOSCRIPT No matching script. Please use EVAL.",
                                          command="EVALSHA")
            return getattr(self, handler)(keys, args)

    def _script_kill_by_dependency(self, keys: List[str], args: List[Any]) -> int:
        dependents = set()
        for key in keys:
            self._check_type(key, self.sets)
            dependents.update(self.sets.get(key, set()))
        for dependent in dependents:
            self._remove(self._as_key(dependent))
        for key in keys:
            self._remove(key)
        return len(dependents)

    @staticmethod
    def _as_key(member: Union[str, bytes]) -> str:
        return member.decode("utf-8") if isinstance(member, bytes) else member

    def pipeline(self, transaction: bool = True) -> "MemoryPipeline":
        """Get a pipeline for batched operations."""
        logger.debug("Creating Memory pipeline")
        return MemoryPipeline(self, transaction=transaction)

    def _snapshot(self, keys: Optional[Set[str]] = None):
        """
        Copy the state a transaction may change.

        With ``keys`` only the entries for those keys are copied, otherwise the
        whole store is.
        """
        if keys is None:
            return copy.deepcopy((self.data, self.hashes, self.lists, self.sets, self.expires))
        stores = self._stores() + (self.expires,)
        return {key: [copy.deepcopy(store[key]) if key in store else _MISSING for store in stores]
                for key in keys}

    def _restore(self, snapshot) -> None:
        if isinstance(snapshot, tuple):
            self.data, self.hashes, self.lists, self.sets, self.expires = snapshot
            return
        stores = self._stores() + (self.expires,)
        for key, saved in snapshot.items():
            for store, value in zip(stores, saved):
                if value is _MISSING:
                    store.pop(key, None)
                else:
                    store[key] = value


class MemoryPipeline:
    """
    Simple pipeline implementation for batched operations with the MemoryBackend.

    In transaction mode a failing command rolls the whole batch back before
    TransactionAborted is raised, so no other session ever sees part of it.
    """

    def __init__(self, backend: MemoryBackend, transaction: bool = True):
        """
        Initialize with a reference to the backend.

        Args:
            backend: The MemoryBackend instance
            transaction: Run the batch all-or-nothing
        """
        self.backend = backend
        self.transaction = transaction
        self.commands = []

    def __getattr__(self, name: str):
        """Proxy attribute access to the backend."""
        # Get the method from the backend
        if not hasattr(self.backend, name):
            raise AttributeError(f"'{type(self.backend).__name__}' object has no attribute '{name}'")

        backend_method = getattr(self.backend, name)

        # Create a method that stores commands
        def method(*args: Any, **kwargs: Any) -> 'MemoryPipeline':
            self.commands.append((backend_method, args, kwargs))
            return self

        return method

    def _touched_keys(self, commands) -> Optional[Set[str]]:
        keys: Set[str] = set()
        for method, args, kwargs in commands:
            name = method.__name__
            if name in _ALL_ARGS_KEYS:
                keys.update(args)
            elif name in _FIRST_ARG_KEY and args:
                keys.add(args[0])
            else:
                return None
        return keys

    def execute(self) -> List[Any]:
        """Execute all queued commands."""
        results = []
        commands, self.commands = self.commands, []
        # Use a single lock acquisition for the entire batch
        with self.backend.lock:
            snapshot = None
            if self.transaction:
                snapshot = self.backend._snapshot(self._touched_keys(commands))
            for method, args, kwargs in commands:
                try:
                    results.append(method(*args, **kwargs))
                except BackendCommandError as e:
                    if not self.transaction:
                        raise
                    self.backend._restore(snapshot)
                    raise TransactionAborted(f"Transaction aborted: {e}", command="EXEC") from e
        return results
