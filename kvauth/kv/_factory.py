"""Store construction from configuration.

Uses Redis when the ``kv`` section selects it, falling back to the
in-memory store when the managed identity is unavailable or Redis cannot
be reached. The caller owns the returned store and must close it.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING

from redis.exceptions import RedisError

from ..credentials import CredentialRefresher, ManagedIdentityCredentialProvider
from ..exceptions import CredentialUnavailableError
from .memory import MemoryKeyValueStore
from .redis import RedisCredentials, RedisKeyValueStore


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..config import KvSettings
    from ..credentials import CredentialProvider
    from .base import KeyValueStore


logger = logging.getLogger("kvauth.kv")


def _memory_store(settings: KvSettings, clock: Callable[[], float] | None) -> MemoryKeyValueStore:
    return MemoryKeyValueStore(
        clock=clock,
        queue_poll_interval=settings.queue_poll_interval,
        queue_max_attempts=settings.queue_max_attempts,
    )


async def open_store(
    settings: KvSettings,
    *,
    credential_provider: CredentialProvider | None = None,
    clock: Callable[[], float] | None = None,
) -> KeyValueStore:
    """Open the configured key-value store.

    Parameters
    ----------
    settings : KvSettings
        The ``kv`` configuration section.
    credential_provider : CredentialProvider, optional
        Overrides the managed-identity provider (tests, custom identity).
    clock : callable, optional
        Epoch-seconds clock passed to the store.

    Returns
    -------
    KeyValueStore
        A Redis store, or an in-memory store when Redis is not selected
        or not usable.
    """
    if not settings.use_redis:
        logger.info("Using in-memory key-value store")
        return _memory_store(settings, clock)

    credentials: RedisCredentials | None = None
    refresher: CredentialRefresher | None = None
    if settings.managed_identity or credential_provider is not None:
        provider = credential_provider or ManagedIdentityCredentialProvider(
            scope=settings.identity_scope,
            client_id=settings.managed_identity_client_id or None,
            timeout=settings.credential_timeout,
        )
        try:
            credential = await provider.acquire()
        except CredentialUnavailableError as exc:
            logger.warning("Managed identity unavailable, falling back to in-memory store: %s", exc)
            await provider.close()
            return _memory_store(settings, clock)
        credentials = RedisCredentials(credential.username, credential.password)

    store = RedisKeyValueStore.from_settings(settings, credentials=credentials, clock=clock)
    try:
        await store.client.ping()
    except (RedisError, OSError):
        logger.exception(
            "Redis at %s:%d is unreachable, falling back to in-memory store",
            settings.host,
            settings.port,
        )
        await store.close()
        if credentials is not None:
            await provider.close()
        return _memory_store(settings, clock)

    if credentials is not None:
        refresher = CredentialRefresher(
            provider,
            store.reauthenticate,
            current=credential,
            max_interval=settings.token_refresh_interval,
        )
        store.attach_refresher(refresher)
        refresher.start()

    logger.info(
        "Using Redis key-value store at %s:%d (managed identity: %s)",
        settings.host,
        settings.port,
        credentials is not None,
    )
    return store
