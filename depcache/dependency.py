"""
Dependency index and cascading invalidation.

Every key written with dependencies is added to one reverse-index set per
dependency, named ``depend:<dependency>``. Invalidating a dependency deletes
all the keys found in its set in one atomic script call, then deletes the
dependency key itself.
"""

import logging
from typing import List

from .errors import BackendCommandError, TransactionAborted
from .scripts import Script

logger = logging.getLogger("depcache")

DEPENDENCY_PREFIX = "depend:"


def dependency_key(dependency: str) -> str:
    """Name of the reverse-index set for a dependency."""
    return f"{DEPENDENCY_PREFIX}{dependency}"


def _unique(keys) -> List[str]:
    # keep caller order, drop repeats
    return list(dict.fromkeys(keys))


def link_dependencies(backend, key: str, *dependencies: str) -> None:
    """
    Record that ``key`` depends on each of ``dependencies``.

    All SADD commands run inside one MULTI/EXEC block: either every
    dependency set gains the key or, from the point of view of other
    clients, none does. Adding a key that is already a member is a no-op.

    Args:
        backend: StoreBackend session
        key: The primary key that was written
        *dependencies: Dependency names, nothing is sent when empty

    Raises:
        TransactionAborted: a queued command failed, the first error is chained
    """
    if not dependencies:
        return

    logger.debug("Linking %s to dependencies %s", key, dependencies)
    pipeline = backend.pipeline(transaction=True)
    for dependency in dependencies:
        pipeline.sadd(dependency_key(dependency), key)
    try:
        pipeline.execute()
    except TransactionAborted:
        raise
    except BackendCommandError as e:
        raise TransactionAborted(f"Linking {key} failed: {e}", command="EXEC") from e


def kill_by_dependency(backend, script: Script, *keys: str) -> int:
    """
    Delete every key depending on any of ``keys``, then ``keys`` themselves.

    The lookup and deletion of dependents runs as one server-side script,
    so no other client can observe a dependent surviving a completed
    invalidation. Deleting the named keys is a second command issued after
    the script; if it fails the dependents stay deleted.

    Args:
        backend: StoreBackend session
        script: The registered cascading-delete script
        *keys: Dependency names to invalidate

    Returns:
        Number of dependent keys deleted, the named keys are not counted
    """
    if not keys:
        return 0

    unique_keys = _unique(keys)
    dependency_sets = [dependency_key(key) for key in unique_keys]

    total = script.execute(backend, keys=dependency_sets)
    total = int(total or 0)

    backend.delete(*unique_keys)
    logger.info("Invalidated %d dependent keys for %s", total, unique_keys)
    return total
