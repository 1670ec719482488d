"""Backend package for depcache."""

from .base import StoreBackend
from .memory import MemoryBackend
from .redis import RedisBackend

__all__ = ["StoreBackend", "MemoryBackend", "RedisBackend"]
