"""Redis key-value store.

Production backend for multi-worker deployments.

Layout (``p`` is the key prefix, wrapped in a ``{hash tag}`` in cluster
mode so every key lands in one slot):

- ``p:entry:<packed key>``: JSON envelope with versionstamp, key, value
  and expiry; native ``PX`` TTL when the entry expires
- ``p:index``: sorted set of packed keys (all scores 0), ranged with
  ``ZRANGEBYLEX`` for ordered listing
- ``p:meta:version``: global version counter (``INCR``)
- ``p:queue``: sorted set of message ids scored by ready time
- ``p:queue:msg:<id>`` / ``p:queue:claim:<id>``: message body and the
  delivery lease of the listener currently holding it

Commits run as one Lua script that re-checks every entry the commit
read, takes the next versionstamp and applies the writes. Check, stamp
and write are therefore one atomic step in standalone and cluster mode
alike, and versionstamps follow commit order.
"""

from __future__ import annotations

import logging

from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis
from redis.asyncio.cluster import RedisCluster
from redis.credentials import CredentialProvider as RedisCredentialProvider

from .base import KeyValueStore, apply_numeric
from .encoding import decode_value, encode_value, pack_key
from .types import (
    CommitFailure,
    CommitResult,
    KvEntry,
    MutationType,
    QueueMessage,
    format_versionstamp,
)


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..config import KvSettings
    from ..credentials import AccessCredential, CredentialRefresher
    from .encoding import KeyRange, KvKey
    from .types import AtomicCheck, Mutation


logger = logging.getLogger("kvauth.kv")

# Optimistic commit attempts before reporting a conflict.
_MAX_COMMIT_ATTEMPTS = 16

# Written in place of the versionstamp; the commit script splices the real one in.
_STAMP_SLOT = format_versionstamp(0)

# Expected-raw markers: "=<raw>" for a present entry, "-" for an absent one.
_ABSENT = "-"

# KEYS: version, index, queue, <ndep dependency entries>, <one key per write>
# ARGV: ndep, <ndep expected raws>, then per write:
#   "set", member, envelope head, envelope tail, ttl ms (0 = none)
#   "delete", member
#   "enqueue", message id, body, ready_at
_COMMIT_SCRIPT = """
local ndep = tonumber(ARGV[1])
for i = 1, ndep do
    local raw = redis.call('GET', KEYS[3 + i])
    local expected = ARGV[1 + i]
    if raw then
        if expected ~= '=' .. raw then return false end
    elseif expected ~= '-' then
        return false
    end
end
local stamp = string.format('%020d', redis.call('INCR', KEYS[1]))
local k = 4 + ndep
local a = 2 + ndep
while a <= #ARGV do
    local op = ARGV[a]
    if op == 'set' then
        local body = ARGV[a + 2] .. stamp .. ARGV[a + 3]
        local ttl = tonumber(ARGV[a + 4])
        if ttl > 0 then
            redis.call('SET', KEYS[k], body, 'PX', ttl)
        else
            redis.call('SET', KEYS[k], body)
        end
        redis.call('ZADD', KEYS[2], 0, ARGV[a + 1])
        a = a + 5
    elseif op == 'delete' then
        redis.call('DEL', KEYS[k])
        redis.call('ZREM', KEYS[2], ARGV[a + 1])
        a = a + 2
    else
        redis.call('SET', KEYS[k], ARGV[a + 2])
        redis.call('ZADD', KEYS[3], ARGV[a + 3], ARGV[a + 1])
        a = a + 4
    end
    k = k + 1
end
return stamp
"""

# KEYS: index, <n entries>; ARGV: <n members>, <n expected raws>
_PRUNE_SCRIPT = """
local n = #KEYS - 1
local removed = 0
for i = 1, n do
    local raw = redis.call('GET', KEYS[1 + i])
    local expected = ARGV[n + i]
    if (raw and expected == '=' .. raw) or (not raw and expected == '-') then
        redis.call('DEL', KEYS[1 + i])
        redis.call('ZREM', KEYS[1], ARGV[i])
        removed = removed + 1
    end
end
return removed
"""


def _expected(raw: str | None) -> str:
    return _ABSENT if raw is None else f"={raw}"


class RedisCredentials(RedisCredentialProvider):
    """Mutable credential source consulted whenever redis-py opens a connection."""

    def __init__(self, username: str = "", password: str = "") -> None:
        self._username = username
        self._password = password

    @property
    def username(self) -> str:
        """Current user name."""
        return self._username

    def update(self, username: str, password: str) -> None:
        """Swap in a new credential for future connections."""
        self._username = username
        self._password = password

    def get_credentials(self) -> tuple[str] | tuple[str, str]:
        """Return ``(username, password)`` or ``(password,)``."""
        if self._username:
            return self._username, self._password
        return (self._password,)


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store for horizontal scaling.

    Commits read the entries they depend on, evaluate checks and numeric
    mutations locally, then hand the writes to a Lua script that applies
    them only if those entries are still unchanged. A changed entry makes
    the commit re-read and try again.

    Parameters
    ----------
    redis_client : Redis, optional
        Pre-configured client (for testing with fakeredis). Must decode
        responses. When omitted a client is built from the connection
        arguments and closed with the store.
    host, port, db, tls : optional
        Connection target.
    username, password : str, optional
        Static credentials, ignored when ``credentials`` is given.
    credentials : RedisCredentials, optional
        Rotating credential source (managed identity).
    prefix : str
        Key prefix for all Redis keys.
    cluster : bool
        Connect with ``RedisCluster``.
    connect_timeout, socket_timeout : float
        Socket timeouts in seconds.
    clock : callable, optional
        Epoch-seconds clock used for expiry and queue delays.
    queue_poll_interval : float
        Seconds between queue polls.
    queue_max_attempts : int
        Handler failures before a queued value is abandoned.
    """

    def __init__(
        self,
        *,
        redis_client: Any | None = None,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        tls: bool = False,
        username: str = "",
        password: str = "",
        credentials: RedisCredentials | None = None,
        prefix: str = "kvauth",
        cluster: bool = False,
        connect_timeout: float = 5.0,
        socket_timeout: float = 5.0,
        clock: Callable[[], float] | None = None,
        queue_poll_interval: float = 1.0,
        queue_max_attempts: int = 5,
    ) -> None:
        super().__init__(
            clock=clock,
            queue_poll_interval=queue_poll_interval,
            queue_max_attempts=queue_max_attempts,
        )
        self._prefix = f"{{{prefix}}}" if cluster else prefix
        self._cluster = cluster
        self._credentials = credentials
        self._refresher: CredentialRefresher | None = None
        self._owns_client = redis_client is None

        if redis_client is not None:
            self._client = redis_client
        else:
            kwargs: dict[str, Any] = {
                "host": host,
                "port": port,
                "ssl": tls,
                "decode_responses": True,
                "socket_connect_timeout": connect_timeout,
                "socket_timeout": socket_timeout,
            }
            if credentials is not None:
                kwargs["credential_provider"] = credentials
            else:
                kwargs["username"] = username or None
                kwargs["password"] = password or None
            self._client = RedisCluster(**kwargs) if cluster else Redis(db=db, **kwargs)

        self._commit_script = self._client.register_script(_COMMIT_SCRIPT)
        self._prune_script = self._client.register_script(_PRUNE_SCRIPT)

    @classmethod
    def from_settings(
        cls,
        settings: KvSettings,
        *,
        credentials: RedisCredentials | None = None,
        clock: Callable[[], float] | None = None,
    ) -> RedisKeyValueStore:
        """Build a store from the ``kv`` configuration section."""
        return cls(
            host=settings.host,
            port=settings.port,
            db=settings.db,
            tls=settings.tls,
            username=settings.username,
            password=settings.password,
            credentials=credentials,
            prefix=settings.prefix,
            cluster=settings.cluster,
            connect_timeout=settings.connect_timeout,
            socket_timeout=settings.socket_timeout,
            clock=clock,
            queue_poll_interval=settings.queue_poll_interval,
            queue_max_attempts=settings.queue_max_attempts,
        )

    @property
    def client(self) -> Any:
        """The underlying redis-py client."""
        return self._client

    # ── Key names ───────────────────────────────────────────────────

    def _entry_key(self, packed: str) -> str:
        return f"{self._prefix}:entry:{packed}"

    def _index_key(self) -> str:
        return f"{self._prefix}:index"

    def _version_key(self) -> str:
        return f"{self._prefix}:meta:version"

    def _queue_key(self) -> str:
        return f"{self._prefix}:queue"

    def _message_key(self, message_id: str) -> str:
        return f"{self._prefix}:queue:msg:{message_id}"

    def _claim_key(self, message_id: str) -> str:
        return f"{self._prefix}:queue:claim:{message_id}"

    def _pipeline(self) -> Any:
        # Cluster pipelines reject MULTI on older redis-py; the keys share a slot anyway.
        return self._client.pipeline(transaction=not self._cluster)

    # ── Credentials ─────────────────────────────────────────────────

    def attach_refresher(self, refresher: CredentialRefresher) -> None:
        """Stop ``refresher`` when the store closes."""
        self._refresher = refresher

    async def reauthenticate(self, credential: AccessCredential) -> None:
        """Hot-swap the connection credential without reconnecting.

        New connections pick the credential up from the rotating source;
        the live connection is re-authenticated with ``AUTH``.
        """
        if self._credentials is not None:
            self._credentials.update(credential.username, credential.password)
        if not self._cluster:
            await self._client.auth(credential.password, credential.username or None)
        logger.info("Redis credential refreshed for user %s", credential.username or "<default>")

    # ── Serialization ───────────────────────────────────────────────

    @staticmethod
    def _encode_entry(entry: KvEntry) -> str:
        # versionstamp first: the commit script splits the envelope at it
        return encode_value(
            {
                "versionstamp": entry.versionstamp,
                "key": list(entry.key),
                "value": entry.value,
                "expire_at": entry.expire_at,
            }
        )

    @staticmethod
    def _decode_entry(raw: str | None, now: float) -> KvEntry | None:
        """Decode an envelope; ``None`` when absent or expired."""
        if raw is None:
            return None
        data = decode_value(raw)
        expire_at = data.get("expire_at")
        if expire_at is not None and expire_at <= now:
            return None
        return KvEntry(tuple(data["key"]), data["value"], data["versionstamp"], expire_at)

    @staticmethod
    def _encode_message(message: QueueMessage) -> str:
        return encode_value(
            {
                "message_id": message.message_id,
                "value": message.value,
                "ready_at": message.ready_at,
                "attempts": message.attempts,
                "keys_if_undelivered": [list(k) for k in message.keys_if_undelivered],
            }
        )

    @staticmethod
    def _decode_message(raw: str) -> QueueMessage:
        data = decode_value(raw)
        return QueueMessage(
            value=data["value"],
            ready_at=data["ready_at"],
            attempts=data["attempts"],
            keys_if_undelivered=[tuple(k) for k in data["keys_if_undelivered"]],
            message_id=data["message_id"],
        )

    # ── Reads ───────────────────────────────────────────────────────

    async def _prune(self, stale: list[tuple[str, str | None]]) -> None:
        """Drop expired entries and their index members.

        An entry is only removed if it still holds the raw value that was
        found expired, so a concurrent write is never lost.
        """
        members = [member for member, _ in stale]
        removed = await self._prune_script(
            keys=[self._index_key(), *(self._entry_key(m) for m in members)],
            args=[*members, *(_expected(raw) for _, raw in stale)],
        )
        if removed < len(stale):
            logger.debug("Skipped pruning %d entries after a concurrent write", len(stale) - removed)

    async def _read(self, keys: list[KvKey]) -> list[KvEntry]:
        packed_keys = [pack_key(k) for k in keys]
        raws = await self._client.mget([self._entry_key(p) for p in packed_keys])
        now = self._clock()
        result = []
        expired = []
        for key, packed, raw in zip(keys, packed_keys, raws):
            entry = self._decode_entry(raw, now)
            if entry is None and raw is not None:
                expired.append((packed, raw))
            result.append(entry or KvEntry(key=key))
        if expired:
            await self._prune(expired)
        return result

    async def _scan(self, key_range: KeyRange, reverse: bool, limit: int) -> list[tuple[str, KvEntry]]:
        result: list[tuple[str, KvEntry]] = []
        while len(result) < limit:
            want = limit - len(result)
            lo, hi = key_range.redis_bounds()
            if reverse:
                members = await self._client.zrevrangebylex(self._index_key(), hi, lo, start=0, num=want)
            else:
                members = await self._client.zrangebylex(self._index_key(), lo, hi, start=0, num=want)
            if not members:
                break

            raws = await self._client.mget([self._entry_key(m) for m in members])
            now = self._clock()
            stale = []
            for member, raw in zip(members, raws):
                entry = self._decode_entry(raw, now)
                if entry is None:
                    stale.append((member, raw))
                else:
                    result.append((member, entry))
            if stale:
                await self._prune(stale)
            if len(members) < want:
                break
            key_range = key_range.after(members[-1], reverse)
        return result

    # ── Commits ─────────────────────────────────────────────────────

    def _stage(
        self,
        mutations: list[Mutation],
        current: dict[str, KvEntry | None],
        now: float,
    ) -> tuple[list[str], list[Any]]:
        """Translate mutations into commit script keys and arguments."""
        keys: list[str] = []
        args: list[Any] = []
        for mutation in mutations:
            if mutation.type is MutationType.ENQUEUE:
                message = QueueMessage(
                    value=mutation.value,
                    ready_at=now + (mutation.delay or 0),
                    keys_if_undelivered=list(mutation.keys_if_undelivered),
                )
                keys.append(self._message_key(message.message_id))
                args += ["enqueue", message.message_id, self._encode_message(message), repr(message.ready_at)]
                continue

            packed = pack_key(mutation.key)
            entry_key = self._entry_key(packed)
            keys.append(entry_key)
            if mutation.type is MutationType.DELETE:
                args += ["delete", packed]
                current[entry_key] = None
                continue

            if mutation.type is MutationType.SET:
                entry = KvEntry(
                    mutation.key,
                    mutation.value,
                    _STAMP_SLOT,
                    now + mutation.expire_in if mutation.expire_in else None,
                )
            else:
                previous = current.get(entry_key)
                value = apply_numeric(previous.value if previous else None, mutation)
                entry = KvEntry(mutation.key, value, _STAMP_SLOT)

            head, tail = self._encode_entry(entry).split(_STAMP_SLOT, 1)
            ttl_ms = max(1, int((entry.expire_at - now) * 1000)) if entry.expire_at is not None else 0
            args += ["set", packed, head, tail, ttl_ms]
            current[entry_key] = entry
        return keys, args

    async def _commit(
        self, checks: list[AtomicCheck], mutations: list[Mutation]
    ) -> CommitResult | CommitFailure:
        numeric = [
            m.key
            for m in mutations
            if m.type in (MutationType.SUM, MutationType.MIN, MutationType.MAX)
        ]
        depends = [self._entry_key(pack_key(k)) for k in [c.key for c in checks] + numeric]

        for attempt in range(1, _MAX_COMMIT_ATTEMPTS + 1):
            raws = await self._client.mget(depends) if depends else []
            now = self._clock()
            current = {key: self._decode_entry(raw, now) for key, raw in zip(depends, raws)}
            for check in checks:
                entry = current[self._entry_key(pack_key(check.key))]
                if (entry.versionstamp if entry else None) != check.versionstamp:
                    return CommitFailure()

            keys, args = self._stage(mutations, current, now)
            versionstamp = await self._commit_script(
                keys=[self._version_key(), self._index_key(), self._queue_key(), *depends, *keys],
                args=[len(depends), *(_expected(raw) for raw in raws), *args],
            )
            if versionstamp is not None:
                return CommitResult(versionstamp)
            logger.debug("Commit raced a concurrent write, retrying (attempt %d)", attempt)
        logger.warning("Commit abandoned after %d conflicting attempts", _MAX_COMMIT_ATTEMPTS)
        return CommitFailure()

    # ── Queue ───────────────────────────────────────────────────────

    async def _queue_claim(self, now: float, lease: float, limit: int) -> list[QueueMessage]:
        ids = await self._client.zrangebyscore(self._queue_key(), "-inf", now, start=0, num=limit)
        claimed = []
        for message_id in ids:
            won = await self._client.set(
                self._claim_key(message_id), "1", nx=True, px=int(lease * 1000)
            )
            if not won:
                continue
            raw = await self._client.get(self._message_key(message_id))
            if raw is None:
                # Acknowledged by another listener after we read the ids.
                await self._client.zrem(self._queue_key(), message_id)
                await self._client.delete(self._claim_key(message_id))
                continue
            message = self._decode_message(raw)
            if message.ready_at > now:
                await self._client.delete(self._claim_key(message_id))
                continue
            await self._client.zadd(self._queue_key(), {message_id: now + lease})
            claimed.append(message)
        return claimed

    async def _queue_ack(self, message: QueueMessage) -> None:
        async with self._pipeline() as pipe:
            await pipe.delete(self._message_key(message.message_id))
            await pipe.zrem(self._queue_key(), message.message_id)
            await pipe.delete(self._claim_key(message.message_id))
            await pipe.execute()

    async def _queue_release(self, message: QueueMessage) -> None:
        async with self._pipeline() as pipe:
            await pipe.set(self._message_key(message.message_id), self._encode_message(message))
            await pipe.zadd(self._queue_key(), {message.message_id: message.ready_at})
            await pipe.delete(self._claim_key(message.message_id))
            await pipe.execute()

    async def _close(self) -> None:
        if self._refresher is not None:
            await self._refresher.stop()
        if self._owns_client:
            await self._client.aclose()
