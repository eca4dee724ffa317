"""Encrypted session cookie.

The cookie value is a compact JWE (``dir`` + ``A256GCM``) of
``{"user": ..., "idToken": ..., "exp": ...}``. The encryption key is the
SHA-256 of the configured session secret, so any secret length works.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import time

from typing import TYPE_CHECKING, Any

from authlib.jose import JsonWebEncryption  # type: ignore[import-untyped]
from authlib.jose.errors import JoseError  # type: ignore[import-untyped]
from cryptography.exceptions import InvalidTag

from .types import SessionPayload


if TYPE_CHECKING:
    from collections.abc import Callable

    from fastapi import Response

    from ..config import SessionSettings


logger = logging.getLogger("kvauth.auth")

_JWE_HEADER = {"alg": "dir", "enc": "A256GCM"}


class SessionCookieCodec:
    """Encrypts, decrypts and sets the session cookie.

    Parameters
    ----------
    secret : str or bytes
        Session secret.
    max_age : int
        Cookie and session lifetime in seconds.
    cookie_name : str
        Cookie name.
    secure : bool
        Set the ``Secure`` attribute.
    clock : callable, optional
        Epoch-seconds clock.
    """

    def __init__(
        self,
        secret: str | bytes,
        max_age: int = 86400,
        cookie_name: str = "session",
        secure: bool = True,
        clock: Callable[[], float] | None = None,
    ) -> None:
        raw = secret.encode("utf-8") if isinstance(secret, str) else secret
        self._key = hashlib.sha256(raw).digest()
        self.max_age = max_age
        self.cookie_name = cookie_name
        self.secure = secure
        self._clock = clock or time.time
        self._jwe = JsonWebEncryption(algorithms=["dir", "A256GCM"])

    @classmethod
    def from_settings(cls, settings: SessionSettings) -> SessionCookieCodec:
        """Build a codec from the ``session`` section.

        An empty secret gets a random per-process one, which invalidates
        every session on restart and across workers.
        """
        secret = settings.secret
        if not secret:
            logger.warning("No session secret configured; sessions will not survive a restart")
            secret = secrets.token_urlsafe(32)
        return cls(
            secret,
            max_age=settings.max_age,
            cookie_name=settings.cookie_name,
            secure=settings.secure,
        )

    def encrypt(self, payload: SessionPayload) -> str:
        """Encrypt a session payload into a cookie value."""
        body = {**payload.to_dict(), "exp": int(self._clock()) + self.max_age}
        data = json.dumps(body, separators=(",", ":")).encode("utf-8")
        return self._jwe.serialize_compact(_JWE_HEADER, data, self._key).decode("ascii")

    def decrypt(self, value: str | None) -> SessionPayload | None:
        """Decrypt a cookie value.

        Returns
        -------
        SessionPayload or None
            ``None`` when the value is missing, tampered with or expired.
        """
        if not value:
            return None
        try:
            decrypted = self._jwe.deserialize_compact(value, self._key)
            body: dict[str, Any] = json.loads(decrypted["payload"])
            if int(body["exp"]) <= int(self._clock()):
                logger.debug("Session cookie expired")
                return None
            return SessionPayload.from_dict(body)
        except (JoseError, InvalidTag, ValueError, KeyError, TypeError):
            logger.debug("Rejected unreadable session cookie")
            return None

    def set_cookie(self, response: Response, value: str) -> None:
        """Attach the session cookie to a response."""
        response.set_cookie(
            key=self.cookie_name,
            value=value,
            max_age=self.max_age,
            path="/",
            httponly=True,
            secure=self.secure,
            samesite="lax",
        )

    def refresh(self, response: Response, payload: SessionPayload) -> None:
        """Re-issue the cookie for a decrypted session with a renewed expiry."""
        self.set_cookie(response, self.encrypt(payload))

    def delete_cookie(self, response: Response) -> None:
        """Remove the session cookie."""
        response.delete_cookie(
            key=self.cookie_name,
            path="/",
            httponly=True,
            secure=self.secure,
            samesite="lax",
        )
