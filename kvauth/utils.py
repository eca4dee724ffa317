"""Small helpers shared across kvauth modules."""

from __future__ import annotations

import base64
import json

from typing import Any


def b64url_decode(data: str) -> bytes:
    """Decode unpadded base64url."""
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def unverified_jwt_claims(token: str) -> dict[str, Any]:
    """Read the claims of a JWS compact token without verifying it.

    Only for tokens received directly from a trusted endpoint over TLS.

    Parameters
    ----------
    token : str
        ``header.payload.signature`` compact serialization.

    Returns
    -------
    dict
        The decoded claims.

    Raises
    ------
    ValueError
        If the token is not a well-formed JWT.
    """
    parts = token.split(".")
    if len(parts) != 3:
        msg = "Token is not a JWS compact serialization"
        raise ValueError(msg)
    try:
        claims = json.loads(b64url_decode(parts[1]))
    except (ValueError, UnicodeDecodeError) as exc:
        msg = "Token payload is not valid base64url JSON"
        raise ValueError(msg) from exc
    if not isinstance(claims, dict):
        msg = "Token payload is not a JSON object"
        raise ValueError(msg)
    return claims
