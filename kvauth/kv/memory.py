"""In-memory key-value store.

Default backend for single-process deployments, development and tests.
Values go through the same JSON codec as the Redis backend on the way
in (so both backends accept and return the same values) and are
deep-copied on the way out.
"""

from __future__ import annotations

import asyncio
import bisect
import copy
import dataclasses

from typing import TYPE_CHECKING

from .base import KeyValueStore, apply_numeric
from .encoding import decode_value, encode_value, pack_key
from .types import CommitFailure, CommitResult, KvEntry, MutationType, QueueMessage, format_versionstamp


if TYPE_CHECKING:
    from collections.abc import Callable

    from .encoding import KeyRange, KvKey
    from .types import AtomicCheck, Mutation


class MemoryKeyValueStore(KeyValueStore):
    """Dict-backed store guarded by an ``asyncio.Lock``.

    Checks and mutations of a commit run under the lock, so every commit
    sees a consistent snapshot.

    Parameters
    ----------
    clock : callable, optional
        Epoch-seconds clock; inject a fake one to simulate time.
    queue_poll_interval : float
        Seconds between queue polls.
    queue_max_attempts : int
        Handler failures before a queued value is abandoned.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] | None = None,
        queue_poll_interval: float = 1.0,
        queue_max_attempts: int = 5,
    ) -> None:
        super().__init__(
            clock=clock,
            queue_poll_interval=queue_poll_interval,
            queue_max_attempts=queue_max_attempts,
        )
        self._entries: dict[str, KvEntry] = {}
        # Packed keys kept sorted for range scans.
        self._order: list[str] = []
        self._queue: dict[str, QueueMessage] = {}
        self._version = 0
        self._lock = asyncio.Lock()

    # Callers must hold the lock for the helpers below.

    def _remove(self, packed: str) -> None:
        del self._entries[packed]
        del self._order[bisect.bisect_left(self._order, packed)]

    def _put(self, packed: str, entry: KvEntry) -> None:
        if packed not in self._entries:
            bisect.insort(self._order, packed)
        self._entries[packed] = entry

    def _live(self, packed: str, now: float) -> KvEntry | None:
        entry = self._entries.get(packed)
        if entry is not None and entry.expire_at is not None and entry.expire_at <= now:
            self._remove(packed)
            return None
        return entry

    @staticmethod
    def _copy(entry: KvEntry) -> KvEntry:
        return dataclasses.replace(entry, value=copy.deepcopy(entry.value))

    async def _read(self, keys: list[KvKey]) -> list[KvEntry]:
        async with self._lock:
            now = self._clock()
            result = []
            for key in keys:
                entry = self._live(pack_key(key), now)
                result.append(self._copy(entry) if entry else KvEntry(key=key))
            return result

    async def _scan(self, key_range: KeyRange, reverse: bool, limit: int) -> list[tuple[str, KvEntry]]:
        async with self._lock:
            now = self._clock()
            if key_range.lower is None:
                lo = 0
            elif key_range.lower_inclusive:
                lo = bisect.bisect_left(self._order, key_range.lower)
            else:
                lo = bisect.bisect_right(self._order, key_range.lower)
            hi = len(self._order) if key_range.upper is None else bisect.bisect_left(self._order, key_range.upper)

            candidates = self._order[lo:hi]
            if reverse:
                candidates.reverse()

            result: list[tuple[str, KvEntry]] = []
            for packed in candidates:
                entry = self._live(packed, now)
                if entry is None:
                    continue
                result.append((packed, self._copy(entry)))
                if len(result) >= limit:
                    break
            return result

    async def _commit(
        self, checks: list[AtomicCheck], mutations: list[Mutation]
    ) -> CommitResult | CommitFailure:
        async with self._lock:
            now = self._clock()
            for check in checks:
                entry = self._live(pack_key(check.key), now)
                if (entry.versionstamp if entry else None) != check.versionstamp:
                    return CommitFailure()

            # Encode everything before applying anything: a bad value fails the whole commit.
            values = [
                decode_value(encode_value(m.value))
                if m.type in (MutationType.SET, MutationType.ENQUEUE)
                else None
                for m in mutations
            ]

            self._version += 1
            versionstamp = format_versionstamp(self._version)

            for mutation, value in zip(mutations, values):
                if mutation.type is MutationType.ENQUEUE:
                    message = QueueMessage(
                        value=value,
                        ready_at=now + (mutation.delay or 0),
                        keys_if_undelivered=list(mutation.keys_if_undelivered),
                    )
                    self._queue[message.message_id] = message
                    continue

                packed = pack_key(mutation.key)
                if mutation.type is MutationType.DELETE:
                    if packed in self._entries:
                        self._remove(packed)
                elif mutation.type is MutationType.SET:
                    expire_at = now + mutation.expire_in if mutation.expire_in else None
                    self._put(
                        packed,
                        KvEntry(mutation.key, value, versionstamp, expire_at),
                    )
                else:
                    current = self._live(packed, now)
                    total = apply_numeric(current.value if current else None, mutation)
                    self._put(packed, KvEntry(mutation.key, total, versionstamp))

            return CommitResult(versionstamp)

    async def _queue_claim(self, now: float, lease: float, limit: int) -> list[QueueMessage]:
        async with self._lock:
            due = sorted(
                (m for m in self._queue.values() if m.ready_at <= now),
                key=lambda m: m.ready_at,
            )[:limit]
            claimed = []
            for message in due:
                message.ready_at = now + lease
                claimed.append(dataclasses.replace(message))
            return claimed

    async def _queue_ack(self, message: QueueMessage) -> None:
        async with self._lock:
            self._queue.pop(message.message_id, None)

    async def _queue_release(self, message: QueueMessage) -> None:
        async with self._lock:
            self._queue[message.message_id] = dataclasses.replace(message)

    async def _close(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._order.clear()
            self._queue.clear()
