"""Shared test helpers."""

from __future__ import annotations

import base64
import json
import time

from typing import Any
from urllib.parse import parse_qs

import httpx

from authlib.jose import JsonWebKey, JsonWebToken


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_jwt(claims: dict[str, Any]) -> str:
    """Build an unsigned JWS compact token carrying ``claims``."""

    def _part(data: dict[str, Any]) -> str:
        raw = json.dumps(data).encode("utf-8")
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    return f"{_part({'alg': 'none', 'typ': 'JWT'})}.{_part(claims)}.sig"


# Generated once; RSA key generation is slow.
SIGNING_KEY = JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": "test-key"})

_DISCOVERY_SUFFIX = "/v2.0/.well-known/openid-configuration"
_KEYS_SUFFIX = "/discovery/v2.0/keys"
_TOKEN_SUFFIX = "/oauth2/v2.0/token"


def issuer_for(authority_url: str) -> str:
    """Issuer a policy authority stamps on its ID tokens."""
    return f"{authority_url}/v2.0/"


def sign_id_token(claims: dict[str, Any], key: Any = SIGNING_KEY) -> str:
    """Sign ``claims`` as an RS256 ID token."""
    header = {"alg": "RS256", "kid": "test-key"}
    return JsonWebToken(["RS256"]).encode(header, claims, key).decode("ascii")


class FakeAuthorityServer:
    """Mock policy authority serving discovery, signing keys and the token endpoint.

    Use as an ``httpx.MockTransport`` handler. Token responses carry an ID
    token signed with ``SIGNING_KEY`` for the authority the request was
    sent to.

    Parameters
    ----------
    claims : dict
        Identity claims placed in every ID token.
    audience : str
        ``aud`` claim.
    status : int
        Token endpoint status; non-200 returns ``invalid_grant``.
    extra : dict, optional
        Additional token response fields.
    """

    def __init__(
        self,
        claims: dict[str, Any],
        *,
        audience: str = "client-123",
        status: int = 200,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.claims = claims
        self.audience = audience
        self.status = status
        self.extra = extra or {}
        # Overrides applied to the signed claims (e.g. an expired ``exp``).
        self.overrides: dict[str, Any] = {}
        # Replaces the signed token outright when set.
        self.id_token: str | None = None
        self.token_requests: list[httpx.Request] = []
        self.discovery_requests = 0

    @property
    def forms(self) -> list[dict[str, str]]:
        """Form bodies of every token request."""
        return [
            {k: v[0] for k, v in parse_qs(r.content.decode()).items()} for r in self.token_requests
        ]

    def signed_claims(self, authority_url: str) -> dict[str, Any]:
        now = int(time.time())
        claims = {
            **self.claims,
            "iss": issuer_for(authority_url),
            "aud": self.audience,
            "iat": now,
            "exp": now + 3600,
        }
        claims.update(self.overrides)
        return claims

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url.endswith(_DISCOVERY_SUFFIX):
            self.discovery_requests += 1
            authority_url = url[: -len(_DISCOVERY_SUFFIX)]
            return httpx.Response(
                200,
                json={"issuer": issuer_for(authority_url), "jwks_uri": f"{authority_url}{_KEYS_SUFFIX}"},
            )
        if url.endswith(_KEYS_SUFFIX):
            return httpx.Response(200, json={"keys": [SIGNING_KEY.as_dict(is_private=False, kid="test-key")]})

        self.token_requests.append(request)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": "invalid_grant"})
        authority_url = url.split("?", 1)[0][: -len(_TOKEN_SUFFIX)]
        id_token = self.id_token or sign_id_token(self.signed_claims(authority_url))
        return httpx.Response(200, json={"id_token": id_token, **self.extra})
