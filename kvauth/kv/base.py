"""Abstract base class for the versioned key-value store.

The public surface (get, set, delete, list, atomic, enqueue,
listen_queue, watch, close) is implemented once here on top of a small
set of backend primitives, so the in-memory and Redis backends differ
only in how they read, scan, commit and queue.
"""

# pylint: disable=unnecessary-ellipsis

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time

from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..exceptions import StoreClosedError
from .encoding import KeyRange, decode_cursor, encode_cursor, pack_key, selector_range, validate_key
from .types import AtomicCheck, CommitFailure, CommitResult, KvEntry, Mutation, MutationType


if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .encoding import KvKey
    from .types import QueueMessage


logger = logging.getLogger("kvauth.kv")

QueueHandler = Callable[[Any], "Awaitable[None] | None"]

# Seconds a claimed queue message stays invisible to other listeners.
_MIN_QUEUE_LEASE = 30.0
_MAX_RETRY_DELAY = 60.0


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def apply_numeric(current: Any, mutation: Mutation) -> int:
    """Resolve a sum/min/max mutation against the current value.

    A missing or non-integer current value counts as absent, in which
    case the operand becomes the new value.
    """
    operand = mutation.value
    if not _is_int(current):
        return operand
    if mutation.type is MutationType.SUM:
        return current + operand
    if mutation.type is MutationType.MIN:
        return min(current, operand)
    return max(current, operand)


class AtomicOperation:
    """Accumulates checks and mutations, applied all-or-nothing by ``commit()``.

    Every builder method returns the operation itself so calls chain::

        result = await (
            store.atomic()
            .check(entry)
            .set(("users", 1), {"name": "Ada"})
            .sum(("stats", "users"), 1)
            .commit()
        )
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._checks: list[AtomicCheck] = []
        self._mutations: list[Mutation] = []

    def check(self, *checks: AtomicCheck | KvEntry) -> AtomicOperation:
        """Require keys to still be at the given versionstamps.

        Parameters
        ----------
        *checks : AtomicCheck or KvEntry
            Anything with ``key`` and ``versionstamp``. A ``None``
            versionstamp requires the key to be absent.
        """
        for item in checks:
            self._checks.append(AtomicCheck(validate_key(item.key), item.versionstamp))
        return self

    def set(self, key: Sequence[Any], value: Any, *, expire_in: float | None = None) -> AtomicOperation:
        """Overwrite ``key`` with ``value``, optionally expiring after ``expire_in`` seconds."""
        if expire_in is not None and expire_in <= 0:
            msg = f"expire_in must be positive, got {expire_in}"
            raise ValueError(msg)
        self._mutations.append(
            Mutation(MutationType.SET, validate_key(key), value, expire_in=expire_in)
        )
        return self

    def delete(self, key: Sequence[Any]) -> AtomicOperation:
        """Remove ``key``."""
        self._mutations.append(Mutation(MutationType.DELETE, validate_key(key)))
        return self

    def _numeric(self, kind: MutationType, key: Sequence[Any], operand: int) -> AtomicOperation:
        if not _is_int(operand):
            msg = f"{kind.value} operand must be an int, got {type(operand).__name__}"
            raise TypeError(msg)
        self._mutations.append(Mutation(kind, validate_key(key), operand))
        return self

    def sum(self, key: Sequence[Any], operand: int) -> AtomicOperation:
        """Add ``operand`` to the integer at ``key``."""
        return self._numeric(MutationType.SUM, key, operand)

    def min(self, key: Sequence[Any], operand: int) -> AtomicOperation:
        """Store the smaller of ``operand`` and the integer at ``key``."""
        return self._numeric(MutationType.MIN, key, operand)

    def max(self, key: Sequence[Any], operand: int) -> AtomicOperation:
        """Store the larger of ``operand`` and the integer at ``key``."""
        return self._numeric(MutationType.MAX, key, operand)

    def enqueue(
        self,
        value: Any,
        *,
        delay: float | None = None,
        keys_if_undelivered: Iterable[Sequence[Any]] | None = None,
    ) -> AtomicOperation:
        """Queue ``value`` for delivery to ``listen_queue`` handlers."""
        if delay is not None and delay < 0:
            msg = f"delay must not be negative, got {delay}"
            raise ValueError(msg)
        self._mutations.append(
            Mutation(
                MutationType.ENQUEUE,
                value=value,
                delay=delay,
                keys_if_undelivered=tuple(validate_key(k) for k in keys_if_undelivered or ()),
            )
        )
        return self

    async def commit(self) -> CommitResult | CommitFailure:
        """Apply every mutation if every check matches.

        Returns
        -------
        CommitResult or CommitFailure
            ``CommitFailure`` (``ok`` false) when a check did not match;
            nothing is applied in that case.

        Raises
        ------
        StoreClosedError
            If the store has been closed.
        """
        return await self._store._commit_atomic(self._checks, self._mutations)


class KvListIterator:
    """Lazy async iterator over a key range.

    ``cursor`` holds the position after the most recently yielded entry;
    passing it to a new ``list()`` call resumes strictly after that entry.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key_range: KeyRange,
        *,
        limit: int | None,
        reverse: bool,
        cursor: str | None,
        batch_size: int,
    ) -> None:
        self._store = store
        self._range = key_range
        self._limit = limit
        self._reverse = reverse
        self._batch_size = batch_size
        self._buffer: deque[tuple[str, KvEntry]] = deque()
        self._exhausted = False
        self._yielded = 0
        self._position: str | None = decode_cursor(cursor) if cursor else None
        self.cursor = cursor or ""

    def __aiter__(self) -> KvListIterator:
        return self

    async def __anext__(self) -> KvEntry:
        if self._limit is not None and self._yielded >= self._limit:
            raise StopAsyncIteration
        if not self._buffer and not self._exhausted:
            await self._fill()
        if not self._buffer:
            raise StopAsyncIteration

        packed, entry = self._buffer.popleft()
        self._position = packed
        self.cursor = encode_cursor(packed)
        self._yielded += 1
        return entry

    async def _fill(self) -> None:
        key_range = self._range
        if self._position is not None:
            key_range = key_range.after(self._position, self._reverse)
        count = self._batch_size
        if self._limit is not None:
            count = min(count, self._limit - self._yielded)
        batch = await self._store._scan_range(key_range, self._reverse, count)
        if len(batch) < count:
            self._exhausted = True
        self._buffer.extend(batch)


@dataclass(eq=False)
class _Watcher:
    keys: list[KvKey]
    packed: frozenset[str]
    queue: asyncio.Queue[list[KvEntry] | None] = field(default_factory=asyncio.Queue)


class KeyValueStore(ABC):
    """Abstract versioned key-value store.

    Parameters
    ----------
    clock : callable, optional
        Returns the current time in epoch seconds. Drives expiry and
        queue delays; defaults to ``time.time``.
    queue_poll_interval : float
        Seconds between queue polls when no local enqueue wakes the
        listener.
    queue_max_attempts : int
        Handler failures after which a queued value is abandoned and
        written to its ``keys_if_undelivered``.
    list_batch_size : int
        Entries fetched per backend round trip while listing.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] | None = None,
        queue_poll_interval: float = 1.0,
        queue_max_attempts: int = 5,
        list_batch_size: int = 100,
    ) -> None:
        self._clock = clock or time.time
        self._queue_poll_interval = queue_poll_interval
        self._queue_max_attempts = queue_max_attempts
        self._list_batch_size = list_batch_size
        self._closed = False
        self._watchers: set[_Watcher] = set()
        self._queue_wakeup = asyncio.Event()

    # ── Backend primitives ──────────────────────────────────────────

    @abstractmethod
    async def _read(self, keys: list[KvKey]) -> list[KvEntry]:
        """Read live entries, returning absent entries for missing keys.

        Expired entries are removed and reported as absent.
        """
        ...

    @abstractmethod
    async def _scan(self, key_range: KeyRange, reverse: bool, limit: int) -> list[tuple[str, KvEntry]]:
        """Return up to ``limit`` live ``(packed key, entry)`` pairs in order.

        Fewer than ``limit`` results means the range is exhausted.
        """
        ...

    @abstractmethod
    async def _commit(
        self, checks: list[AtomicCheck], mutations: list[Mutation]
    ) -> CommitResult | CommitFailure:
        """Atomically verify checks and apply mutations under one new versionstamp."""
        ...

    @abstractmethod
    async def _queue_claim(self, now: float, lease: float, limit: int) -> list[QueueMessage]:
        """Claim due messages, hiding them from other listeners for ``lease`` seconds."""
        ...

    @abstractmethod
    async def _queue_ack(self, message: QueueMessage) -> None:
        """Remove a delivered (or abandoned) message."""
        ...

    @abstractmethod
    async def _queue_release(self, message: QueueMessage) -> None:
        """Store a message back for redelivery at ``message.ready_at``."""
        ...

    @abstractmethod
    async def _close(self) -> None:
        """Release backend resources."""
        ...

    # ── Lifecycle ───────────────────────────────────────────────────

    @property
    def closed(self) -> bool:
        """Whether ``close()`` has been called."""
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreClosedError(store=type(self).__name__)

    async def close(self) -> None:
        """Close the store. Safe to call more than once.

        Ends every active ``watch`` iterator and ``listen_queue`` loop.
        """
        if self._closed:
            return
        self._closed = True
        for watcher in self._watchers:
            watcher.queue.put_nowait(None)
        self._queue_wakeup.set()
        await self._close()
        logger.debug("%s closed", type(self).__name__)

    async def __aenter__(self) -> KeyValueStore:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ── Reads ───────────────────────────────────────────────────────

    async def get(self, key: Sequence[Any]) -> KvEntry:
        """Read one entry.

        Parameters
        ----------
        key : sequence
            The entry key.

        Returns
        -------
        KvEntry
            The entry; ``value`` and ``versionstamp`` are ``None`` when the
            key is absent or expired.
        """
        self._ensure_open()
        (entry,) = await self._read([validate_key(key)])
        return entry

    async def get_many(self, keys: Iterable[Sequence[Any]]) -> list[KvEntry]:
        """Read several entries in one consistent pass, in request order."""
        self._ensure_open()
        return await self._read([validate_key(k) for k in keys])

    def list(
        self,
        selector: dict[str, Any],
        *,
        limit: int | None = None,
        reverse: bool = False,
        cursor: str | None = None,
        batch_size: int | None = None,
    ) -> KvListIterator:
        """Iterate entries matching a selector in key order.

        Parameters
        ----------
        selector : dict
            ``{"prefix": k}``, optionally with ``"start"`` or ``"end"``, or
            ``{"start": s, "end": e}``.
        limit : int, optional
            Maximum number of entries to yield.
        reverse : bool
            Iterate from the highest key down.
        cursor : str, optional
            Cursor from a previous iterator; iteration resumes strictly
            after the entry it points at.
        batch_size : int, optional
            Entries fetched per backend round trip.

        Returns
        -------
        KvListIterator
            Async iterator of ``KvEntry``.
        """
        self._ensure_open()
        if limit is not None and limit < 0:
            msg = f"limit must not be negative, got {limit}"
            raise ValueError(msg)
        return KvListIterator(
            self,
            selector_range(selector),
            limit=limit,
            reverse=reverse,
            cursor=cursor,
            batch_size=batch_size or self._list_batch_size,
        )

    async def _scan_range(self, key_range: KeyRange, reverse: bool, limit: int) -> list[tuple[str, KvEntry]]:
        self._ensure_open()
        if limit <= 0:
            return []
        return await self._scan(key_range, reverse, limit)

    # ── Writes ──────────────────────────────────────────────────────

    def atomic(self) -> AtomicOperation:
        """Start an atomic operation."""
        self._ensure_open()
        return AtomicOperation(self)

    async def set(
        self, key: Sequence[Any], value: Any, *, expire_in: float | None = None
    ) -> CommitResult | CommitFailure:
        """Unconditionally write ``value`` at ``key``.

        Parameters
        ----------
        key : sequence
            The entry key.
        value : Any
            JSON-serializable value (``bytes`` allowed).
        expire_in : float, optional
            Seconds until the entry expires.

        Returns
        -------
        CommitResult
            Carries the new versionstamp.
        """
        return await self.atomic().set(key, value, expire_in=expire_in).commit()

    async def delete(self, key: Sequence[Any]) -> None:
        """Remove ``key`` if present."""
        await self.atomic().delete(key).commit()

    async def enqueue(
        self,
        value: Any,
        *,
        delay: float | None = None,
        keys_if_undelivered: Iterable[Sequence[Any]] | None = None,
    ) -> CommitResult | CommitFailure:
        """Queue ``value`` for ``listen_queue`` handlers.

        Parameters
        ----------
        value : Any
            JSON-serializable payload.
        delay : float, optional
            Seconds before the value becomes deliverable.
        keys_if_undelivered : iterable of keys, optional
            Keys that receive the value if delivery is abandoned.
        """
        return await (
            self.atomic().enqueue(value, delay=delay, keys_if_undelivered=keys_if_undelivered).commit()
        )

    async def _commit_atomic(
        self, checks: list[AtomicCheck], mutations: list[Mutation]
    ) -> CommitResult | CommitFailure:
        self._ensure_open()
        result = await self._commit(checks, mutations)
        if not result.ok:
            logger.debug("Atomic commit rejected: %d check(s) did not match", len(checks))
            return result
        changed = [m.key for m in mutations if m.key is not None]
        if changed:
            await self._notify(changed)
        if any(m.type is MutationType.ENQUEUE for m in mutations):
            self._queue_wakeup.set()
        return result

    # ── Watch ───────────────────────────────────────────────────────

    async def _notify(self, changed: list[KvKey]) -> None:
        packed = {pack_key(k) for k in changed}
        for watcher in list(self._watchers):
            if watcher.packed & packed:
                watcher.queue.put_nowait(await self._read(watcher.keys))

    async def watch(self, keys: Iterable[Sequence[Any]]) -> AsyncIterator[list[KvEntry]]:
        """Yield snapshots of ``keys``: one immediately, then one per change.

        Only changes made through this store instance are observed.
        Breaking out of the loop (or ``aclose()``) unregisters the
        watcher; closing the store ends iteration.

        Parameters
        ----------
        keys : iterable of keys
            Keys to observe.

        Yields
        ------
        list[KvEntry]
            Current entries in the order of ``keys``.
        """
        self._ensure_open()
        normalized = [validate_key(k) for k in keys]
        watcher = _Watcher(normalized, frozenset(pack_key(k) for k in normalized))
        self._watchers.add(watcher)
        try:
            yield await self._read(normalized)
            while True:
                snapshot = await watcher.queue.get()
                if snapshot is None:
                    return
                yield snapshot
        finally:
            self._watchers.discard(watcher)

    # ── Queue ───────────────────────────────────────────────────────

    def _retry_delay(self, attempts: int) -> float:
        return min(self._queue_poll_interval * 2 ** (attempts - 1), _MAX_RETRY_DELAY)

    async def listen_queue(self, handler: QueueHandler) -> None:
        """Deliver queued values to ``handler`` until the store closes.

        Each value is delivered at least once and removed after the
        handler returns. A raising handler is retried with backoff; after
        ``queue_max_attempts`` failures the value is written to its
        ``keys_if_undelivered`` and dropped. Run this in its own task.

        Parameters
        ----------
        handler : callable
            Sync or async callable receiving the queued value.
        """
        self._ensure_open()
        lease = max(_MIN_QUEUE_LEASE, self._queue_poll_interval * 30)
        while not self._closed:
            self._queue_wakeup.clear()
            messages = await self._queue_claim(self._clock(), lease, self._list_batch_size)
            for message in messages:
                if self._closed:
                    break
                await self._deliver(message, handler)
            if not messages and not self._closed:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._queue_wakeup.wait(), timeout=self._queue_poll_interval)

    async def _deliver(self, message: QueueMessage, handler: QueueHandler) -> None:
        try:
            result = handler(message.value)
            if inspect.isawaitable(result):
                await result
        except Exception:
            if self._closed:
                # Lease expiry redelivers the message to the next listener.
                return
            message.attempts += 1
            if message.attempts >= self._queue_max_attempts:
                logger.exception(
                    "Queue message %s undelivered after %d attempts",
                    message.message_id,
                    message.attempts,
                )
                await self._abandon(message)
                return
            logger.warning(
                "Queue handler failed for message %s (attempt %d), retrying",
                message.message_id,
                message.attempts,
                exc_info=True,
            )
            message.ready_at = self._clock() + self._retry_delay(message.attempts)
            await self._queue_release(message)
            return
        if not self._closed:
            await self._queue_ack(message)

    async def _abandon(self, message: QueueMessage) -> None:
        if message.keys_if_undelivered:
            op = self.atomic()
            for key in message.keys_if_undelivered:
                op.set(key, message.value)
            await op.commit()
        await self._queue_ack(message)
