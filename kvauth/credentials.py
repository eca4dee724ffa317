"""Access credentials for the backing store.

``ManagedIdentityCredentialProvider`` obtains short-lived access tokens
from the platform identity endpoint; ``CredentialRefresher`` renews them
in the background and hands each new credential to a callback (the
Redis store re-authenticates its live connection with it).
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import random
import time

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from azure.core.exceptions import ClientAuthenticationError
from azure.identity import DefaultAzureCredential, ManagedIdentityCredential

from .exceptions import CredentialUnavailableError
from .utils import unverified_jwt_claims


logger = logging.getLogger("kvauth.credentials")

REDIS_SCOPE = "https://redis.azure.com/.default"

# Lower bound between refresh attempts.
_MIN_REFRESH_DELAY = 1.0


@dataclass(frozen=True)
class AccessCredential:
    """A bearer credential and its expiry.

    Attributes
    ----------
    token : str
        The access token, used as the connection password.
    expires_on : float
        Expiry in epoch seconds (``inf`` for static credentials).
    username : str
        Connection user name; the ``oid`` claim of managed-identity tokens.
    """

    token: str = field(repr=False)
    expires_on: float
    username: str = ""

    @classmethod
    def from_access_token(cls, token: str, expires_on: float) -> AccessCredential:
        """Build a credential whose user name is the token's ``oid`` claim."""
        try:
            username = str(unverified_jwt_claims(token).get("oid", ""))
        except ValueError:
            logger.warning("Access token is not a JWT; connecting without a user name")
            username = ""
        return cls(token=token, expires_on=float(expires_on), username=username)

    @property
    def password(self) -> str:
        """The secret half of the credential."""
        return self.token

    def remaining(self, now: float | None = None) -> float:
        """Seconds until expiry (negative once expired)."""
        return self.expires_on - (time.time() if now is None else now)


class CredentialProvider(ABC):
    """Source of access credentials."""

    @abstractmethod
    async def acquire(self) -> AccessCredential:
        """Obtain a fresh credential.

        Raises
        ------
        CredentialUnavailableError
            If no credential can be obtained.
        """

    async def close(self) -> None:
        """Release provider resources."""


class StaticCredentialProvider(CredentialProvider):
    """Fixed user name and password that never expire."""

    def __init__(self, password: str, username: str = "") -> None:
        self._credential = AccessCredential(token=password, expires_on=math.inf, username=username)

    async def acquire(self) -> AccessCredential:
        """Return the fixed credential."""
        return self._credential


class ManagedIdentityCredentialProvider(CredentialProvider):
    """Managed-identity tokens via ``azure-identity``.

    The synchronous azure credential runs in a worker thread so token
    requests never block the event loop.

    Parameters
    ----------
    scope : str
        Token scope (Redis data plane by default).
    client_id : str, optional
        Client id of a user-assigned identity. When omitted,
        ``DefaultAzureCredential`` resolves the identity.
    timeout : float
        Seconds to wait for the identity endpoint.
    credential : azure credential, optional
        Pre-built credential (for testing).
    """

    def __init__(
        self,
        scope: str = REDIS_SCOPE,
        client_id: str | None = None,
        timeout: float = 10.0,
        credential: Any | None = None,
    ) -> None:
        self.scope = scope
        self.client_id = client_id
        self.timeout = timeout
        self._credential = credential

    def _get_credential(self) -> Any:
        if self._credential is None:
            if self.client_id:
                self._credential = ManagedIdentityCredential(client_id=self.client_id)
            else:
                self._credential = DefaultAzureCredential()
        return self._credential

    async def acquire(self) -> AccessCredential:
        """Request a token for ``scope``."""
        credential = self._get_credential()
        try:
            token = await asyncio.wait_for(
                asyncio.to_thread(credential.get_token, self.scope), timeout=self.timeout
            )
        except ClientAuthenticationError as exc:
            msg = "Managed identity could not issue a token"
            raise CredentialUnavailableError(msg, scope=self.scope) from exc
        except asyncio.TimeoutError as exc:
            msg = f"Identity endpoint did not answer within {self.timeout}s"
            raise CredentialUnavailableError(msg, scope=self.scope) from exc

        if token is None or not token.token:
            msg = "Identity endpoint returned an empty token"
            raise CredentialUnavailableError(msg, scope=self.scope)
        return AccessCredential.from_access_token(token.token, token.expires_on)

    async def close(self) -> None:
        """Close the underlying azure credential."""
        if self._credential is not None:
            self._credential.close()


RefreshCallback = Callable[[AccessCredential], Awaitable[None]]


class CredentialRefresher:
    """Background task keeping a credential fresh.

    Each tick sleeps a jittered 50-80% of the time left on the current
    credential (capped at ``max_interval``), acquires a new credential
    and passes it to ``on_refresh``. Failures are logged; the previous
    credential stays in use until a later tick succeeds.

    Parameters
    ----------
    provider : CredentialProvider
        Credential source.
    on_refresh : callable
        Coroutine function receiving each new credential.
    current : AccessCredential
        Credential in use when the refresher starts.
    max_interval : float
        Upper bound in seconds for the delay base.
    clock : callable, optional
        Epoch-seconds clock.
    """

    jitter: tuple[float, float] = (0.5, 0.8)

    def __init__(
        self,
        provider: CredentialProvider,
        on_refresh: RefreshCallback,
        current: AccessCredential,
        max_interval: float = 240.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.provider = provider
        self.on_refresh = on_refresh
        self.current = current
        self.max_interval = max_interval
        self._clock = clock or time.time
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the background task is active."""
        return self._task is not None and not self._task.done()

    def next_delay(self) -> float:
        """Seconds to wait before the next refresh."""
        base = min(max(self.current.remaining(self._clock()), 0.0), self.max_interval)
        return max(random.uniform(*self.jitter) * base, _MIN_REFRESH_DELAY)

    async def refresh(self) -> bool:
        """Acquire a new credential and apply it.

        Returns
        -------
        bool
            True when the credential was replaced.
        """
        try:
            credential = await self.provider.acquire()
            await self.on_refresh(credential)
        except Exception:
            logger.warning(
                "Credential refresh failed; keeping the current credential (expires in %.0fs)",
                self.current.remaining(self._clock()),
                exc_info=True,
            )
            return False
        self.current = credential
        logger.debug("Credential refreshed, expires in %.0fs", credential.remaining(self._clock()))
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.next_delay())
            await self.refresh()

    def start(self) -> None:
        """Start the background task (no-op if already running)."""
        if not self.running:
            self._task = asyncio.create_task(self._run(), name="kvauth-credential-refresh")

    async def stop(self) -> None:
        """Cancel the background task and close the provider."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self.provider.close()
