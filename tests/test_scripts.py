"""Tests for script registration and NOSCRIPT recovery."""

import threading
from unittest import mock

import pytest

from depcache import BackendCommandError, MemoryBackend, ScriptRegistrationFailed, ScriptUnknownHandle
from depcache.scripts import KILL_BY_DEPENDENCY_LUA, Script, ScriptState, kill_by_dependency_script


def test_script_starts_unregistered():
    script = kill_by_dependency_script()
    assert script.state is ScriptState.UNREGISTERED
    assert script.handle is None
    assert script.registered is False


def test_script_register(memory_backend):
    """Registering caches the handle returned by SCRIPT LOAD."""
    script = kill_by_dependency_script()
    handle = script.register(memory_backend)

    assert script.state is ScriptState.REGISTERED
    assert script.handle == handle
    assert memory_backend.script_load(KILL_BY_DEPENDENCY_LUA) == handle


def test_script_registers_lazily(memory_backend):
    script = kill_by_dependency_script()
    assert script.execute(memory_backend, keys=["depend:nothing"]) == 0
    assert script.registered


def test_script_recovers_from_flushed_handle(memory_backend):
    """The backend forgot the script: re-register and retry without an error."""
    script = kill_by_dependency_script()
    script.register(memory_backend)
    memory_backend.script_flush()

    memory_backend.set("a", "1")
    memory_backend.sadd("depend:x", "a")

    assert script.execute(memory_backend, keys=["depend:x"]) == 1
    assert script.state is ScriptState.REGISTERED
    assert memory_backend.get("a") is None


def test_script_retries_exactly_once():
    """A second NOSCRIPT after re-registering is raised."""
    backend = mock.Mock()
    backend.script_load.return_value = "sha"
    backend.evalsha.side_effect = ScriptUnknownHandle("NOSCRIPT")
    script = Script("test", "return 1")

    with pytest.raises(ScriptUnknownHandle):
        script.execute(backend, keys=["k"])

    assert backend.evalsha.call_count == 2
    assert backend.script_load.call_count == 2


def test_script_first_call_unknown_then_succeeds():
    """Simulated NOSCRIPT on the first call is invisible to the caller."""
    backend = mock.Mock()
    backend.script_load.return_value = "sha"
    backend.evalsha.side_effect = [ScriptUnknownHandle("NOSCRIPT"), 3]
    script = Script("test", "return 3")
    script.register(backend)

    assert script.execute(backend, keys=["k1", "k2"], args=["x"]) == 3
    backend.evalsha.assert_called_with("sha", 2, "k1", "k2", "x")
    assert backend.script_load.call_count == 2


def test_script_registration_failure():
    backend = mock.Mock()
    backend.script_load.side_effect = BackendCommandError("ERR Error compiling script")
    script = Script("broken", "this is not lua")

    with pytest.raises(ScriptRegistrationFailed):
        script.execute(backend)
    assert script.state is ScriptState.UNREGISTERED
    backend.evalsha.assert_not_called()


def test_script_handle_from_bytes():
    backend = mock.Mock()
    backend.script_load.return_value = b"abc"
    script = Script("test", "return 1")
    assert script.register(backend) == "abc"


def test_script_reset(memory_backend):
    script = kill_by_dependency_script()
    script.register(memory_backend)
    script.reset()
    assert script.state is ScriptState.UNREGISTERED
    assert script.handle is None


def test_concurrent_reregistration_is_safe():
    """Threads seeing NOSCRIPT at the same time all recover with one handle."""
    backend = MemoryBackend()
    script = kill_by_dependency_script()
    handle = script.register(backend)
    backend.script_flush()

    errors = []
    barrier = threading.Barrier(8)

    def invalidate(i):
        barrier.wait()
        try:
            script.execute(backend, keys=[f"depend:{i}"])
        except Exception as e:  # collected for the assertion below
            errors.append(e)

    threads = [threading.Thread(target=invalidate, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert script.handle == handle
    assert script.registered
