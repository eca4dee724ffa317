"""FastAPI application factory.

The key-value store is opened in the lifespan startup hook and closed at
shutdown; the flow controller, provider and session codec hang off
``app.state``. Injected stores and providers belong to the caller and
are left open.
"""

from __future__ import annotations

import logging

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from .auth import AuthorizationFlowController, B2CProvider, SessionCookieCodec, create_auth_router
from .config import get_settings
from .kv import open_store
from .log import configure


if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .config import KvAuthSettings
    from .credentials import CredentialProvider
    from .kv import KeyValueStore


logger = logging.getLogger("kvauth")


def create_app(
    settings: KvAuthSettings | None = None,
    *,
    store: KeyValueStore | None = None,
    provider: B2CProvider | None = None,
    credential_provider: CredentialProvider | None = None,
) -> FastAPI:
    """Create the kvauth application.

    Parameters
    ----------
    settings : KvAuthSettings, optional
        Settings; loaded from the environment and config files when omitted.
    store : KeyValueStore, optional
        Pre-opened store. The caller keeps ownership and closes it.
    provider : B2CProvider, optional
        Authorization server client (for testing).
    credential_provider : CredentialProvider, optional
        Overrides the managed-identity provider used for Redis.

    Returns
    -------
    FastAPI
        The configured application.
    """
    settings = settings or get_settings()
    configure(settings.log)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        kv = store or await open_store(settings.kv, credential_provider=credential_provider)
        b2c = provider or B2CProvider(settings.oauth)
        session_codec = SessionCookieCodec.from_settings(settings.session)

        app.state.settings = settings
        app.state.store = kv
        app.state.session_codec = session_codec
        app.state.auth_flow = AuthorizationFlowController(kv, b2c, session_codec, settings.oauth)
        logger.info("kvauth started (%s)", type(kv).__name__)
        try:
            yield
        finally:
            if provider is None:
                await b2c.close()
            if store is None:
                await kv.close()
            logger.info("kvauth stopped")

    app = FastAPI(title="kvauth", lifespan=lifespan)
    app.include_router(create_auth_router())
    return app
