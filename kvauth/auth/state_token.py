"""Encrypted, signed OAuth ``state`` tokens.

A token is an HS256 JWT of the :class:`StatePayload` claims, wrapped in a
compact JWE (``dir`` + ``A256GCM``). Both layers use a fresh 32-byte
secret that never leaves the server: it is stored in the key-value store
under the token itself and expires with it. Without the stored secret
a token cannot be read, so tampering and expiry are indistinguishable.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import secrets
import time

from typing import TYPE_CHECKING

from authlib.jose import JsonWebEncryption, JsonWebToken  # type: ignore[import-untyped]
from authlib.jose.errors import ExpiredTokenError, JoseError  # type: ignore[import-untyped]
from cryptography.exceptions import InvalidTag

from ..exceptions import SecretNotFoundError, SignatureInvalidError, TokenExpiredError
from .pkce import STATE_NAMESPACE
from .types import StatePayload


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..kv.base import KeyValueStore
    from ..kv.types import KvEntry


logger = logging.getLogger("kvauth.auth")

DEFAULT_TTL = 7200
SECRET_BYTES = 32

_JWE_HEADER = {"alg": "dir", "enc": "A256GCM"}
_JWT_HEADER = {"alg": "HS256", "typ": "JWT"}


def secret_key(token: str) -> tuple[str, str, str]:
    """Key of the per-token secret."""
    return (STATE_NAMESPACE, token, "secret")


class StateTokenCodec:
    """Mints and verifies state tokens.

    Parameters
    ----------
    store : KeyValueStore
        Where per-token secrets live.
    ttl : int
        Token lifetime in seconds; also the secret's expiry.
    clock : callable, optional
        Epoch-seconds clock for ``iat``/``exp``.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl: int = DEFAULT_TTL,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock or time.time
        self._jwt = JsonWebToken(["HS256"])
        self._jwe = JsonWebEncryption(algorithms=["dir", "A256GCM"])

    async def mint(self, payload: StatePayload) -> str:
        """Create a token for ``payload`` and store its secret.

        Parameters
        ----------
        payload : StatePayload
            Claims to embed.

        Returns
        -------
        str
            The compact JWE token.
        """
        secret = secrets.token_bytes(SECRET_BYTES)
        issued_at = int(self._clock())
        claims = {**payload.to_claims(), "iat": issued_at, "exp": issued_at + self.ttl}

        signed = self._jwt.encode(_JWT_HEADER, claims, secret)
        token = self._jwe.serialize_compact(_JWE_HEADER, signed, secret).decode("ascii")

        await self.store.set(secret_key(token), secret.hex(), expire_in=self.ttl)
        logger.debug("Minted state token for authority %s", claims["authority"])
        return token

    async def verify(self, token: str) -> StatePayload:
        """Verify a token and return its payload.

        Raises
        ------
        SecretNotFoundError
            If no unexpired secret is stored for the token.
        SignatureInvalidError
            If decryption or signature verification fails.
        TokenExpiredError
            If the embedded ``exp`` has passed.
        """
        payload, _ = await self.verify_entry(token)
        return payload

    async def verify_entry(self, token: str) -> tuple[StatePayload, KvEntry]:
        """Verify a token, also returning the secret's store entry.

        The entry's versionstamp lets callers consume the token atomically.
        """
        entry = await self.store.get(secret_key(token))
        if not entry.exists:
            msg = "No secret stored for state token"
            raise SecretNotFoundError(msg)

        try:
            secret = bytes.fromhex(entry.value)
            decrypted = self._jwe.deserialize_compact(token, secret)
            claims = self._jwt.decode(decrypted["payload"], secret)
        except (JoseError, InvalidTag, ValueError, KeyError, TypeError) as exc:
            msg = "State token failed decryption or signature verification"
            raise SignatureInvalidError(msg) from exc

        try:
            claims.validate(now=int(self._clock()), leeway=0)
        except ExpiredTokenError as exc:
            msg = "State token has expired"
            raise TokenExpiredError(msg) from exc
        except JoseError as exc:
            msg = "State token claims are invalid"
            raise SignatureInvalidError(msg) from exc

        try:
            payload = StatePayload.from_claims(dict(claims))
        except KeyError as exc:
            msg = "State token is missing required claims"
            raise SignatureInvalidError(msg, claim=str(exc)) from exc
        return payload, entry

    async def revoke(self, token: str) -> None:
        """Delete the token's secret so it can never verify again."""
        await self.store.delete(secret_key(token))
