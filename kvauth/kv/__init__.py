"""Versioned key-value store with in-memory and Redis backends.

Usage::

    from kvauth.kv import MemoryKeyValueStore

    async with MemoryKeyValueStore() as store:
        await store.set(("users", "ada"), {"admin": True})
        entry = await store.get(("users", "ada"))
        async for item in store.list({"prefix": ("users",)}):
            ...
"""

from ._factory import open_store
from .base import AtomicOperation, KeyValueStore, KvListIterator
from .encoding import KeyPart, KvKey
from .memory import MemoryKeyValueStore
from .redis import RedisCredentials, RedisKeyValueStore
from .types import AtomicCheck, CommitFailure, CommitResult, KvEntry


__all__ = [
    "AtomicCheck",
    "AtomicOperation",
    "CommitFailure",
    "CommitResult",
    "KeyPart",
    "KeyValueStore",
    "KvEntry",
    "KvKey",
    "KvListIterator",
    "MemoryKeyValueStore",
    "RedisCredentials",
    "RedisKeyValueStore",
    "open_store",
]
