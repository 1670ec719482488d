"""
Server-side scripts used by depcache and the lifecycle of their handles.

A Script is registered with SCRIPT LOAD the first time it is needed (or
eagerly through DependencyCache.register_scripts) and then invoked with
EVALSHA. When the backend forgets the script, after a restart or a
SCRIPT FLUSH, EVALSHA fails with NOSCRIPT: the handle is marked stale, the
body is loaded again and the call is retried once.

SCRIPT LOAD is idempotent and returns the SHA1 of the body, so concurrent
re-registrations from several threads all end up with the same handle and
no client-side lock is needed.
"""

import logging
from enum import Enum
from typing import Any, Optional, Sequence

from .errors import BackendCommandError, ScriptRegistrationFailed, ScriptUnknownHandle

logger = logging.getLogger("depcache")


class ScriptState(Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    STALE = "stale"


class Script:
    """A Lua script and its cached content handle."""

    def __init__(self, name: str, body: str):
        self.name = name
        self.body = body
        self.handle: Optional[str] = None
        self._state = ScriptState.UNREGISTERED

    @property
    def state(self) -> ScriptState:
        return self._state

    @property
    def registered(self) -> bool:
        return self._state is ScriptState.REGISTERED

    def register(self, backend) -> str:
        """
        Load the script body on the backend and cache the returned handle.

        Args:
            backend: StoreBackend session to register through

        Returns:
            The content handle

        Raises:
            ScriptRegistrationFailed: the backend refused the script
        """
        logger.debug("Registering script %s", self.name)
        try:
            handle = backend.script_load(self.body)
        except BackendCommandError as e:
            raise ScriptRegistrationFailed(f"Could not register script {self.name}: {e}") from e
        if isinstance(handle, bytes):
            handle = handle.decode("utf-8")
        self.handle = handle
        self._state = ScriptState.REGISTERED
        logger.debug("Script %s registered as %s", self.name, handle)
        return handle

    def execute(self, backend, keys: Sequence[str] = (), args: Sequence[Any] = ()) -> Any:
        """
        Run the script by handle, registering it first if needed.

        A NOSCRIPT reply triggers exactly one re-registration and retry; a
        second NOSCRIPT is raised to the caller.

        Raises:
            ScriptUnknownHandle: the handle was still unknown after re-registering
            ScriptRegistrationFailed: the script could not be loaded
        """
        handle = self.handle
        if handle is None or self._state is not ScriptState.REGISTERED:
            handle = self.register(backend)
        try:
            return backend.evalsha(handle, len(keys), *keys, *args)
        except ScriptUnknownHandle:
            logger.warning("Script %s handle %s is unknown to the backend, registering again",
                           self.name, handle)
            self._state = ScriptState.STALE
            handle = self.register(backend)
            return backend.evalsha(handle, len(keys), *keys, *args)

    def reset(self) -> None:
        """Forget the handle, used when the owning pool is torn down."""
        self.handle = None
        self._state = ScriptState.UNREGISTERED


# Deletes every member of the dependency sets given as KEYS together with the
# sets themselves and returns the number of distinct dependents. Both members
# and KEYS are deleted in chunks to stay below Lua's unpack() limit.
KILL_BY_DEPENDENCY_LUA = """
local seen = {}
local dependents = {}
for _, key in ipairs(KEYS) do
    for _, member in ipairs(redis.call('SMEMBERS', key)) do
        if not seen[member] then
            seen[member] = true
            dependents[#dependents + 1] = member
        end
    end
end
for i = 1, #dependents, 5000 do
    redis.call('DEL', unpack(dependents, i, math.min(i + 4999, #dependents)))
end
for i = 1, #KEYS, 5000 do
    redis.call('DEL', unpack(KEYS, i, math.min(i + 4999, #KEYS)))
end
return #dependents
"""


def kill_by_dependency_script() -> Script:
    """Return a fresh, unregistered cascading-delete script."""
    return Script("kill_by_dependency", KILL_BY_DEPENDENCY_LUA)
