"""Authorization server client.

``B2CProvider`` talks to an Azure AD B2C style authorization server
where every user flow (sign-in, password reset, profile edit) is its own
policy authority with its own authorize, token and logout endpoints.
ID tokens are verified against the signing keys each policy publishes
in its OpenID Connect discovery document.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import json
import logging

from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from authlib.jose import JsonWebKey, JsonWebToken  # type: ignore[import-untyped]
from authlib.jose.errors import JoseError  # type: ignore[import-untyped]

from ..exceptions import TokenExchangeError, UnrecognizedAuthorityError
from ..log import redact_sensitive_data
from ..utils import b64url_decode
from .types import Authority, TokenExchangeResult


if TYPE_CHECKING:
    from ..config import OAuthSettings
    from .pkce import PKCEChallenge


logger = logging.getLogger("kvauth.auth")

# Scopes the server always grants alongside the requested ones.
IDENTITY_SCOPES = ("openid", "offline_access")

# Signature algorithms accepted on ID tokens.
ID_TOKEN_ALGORITHMS = ["RS256"]


def _parse_client_info(client_info: str | None) -> dict[str, Any]:
    """Decode the base64url JSON ``client_info`` returned by the server."""
    if not client_info:
        return {}
    try:
        data = json.loads(b64url_decode(client_info))
    except (ValueError, UnicodeDecodeError):
        logger.warning("Ignoring malformed client_info in token response")
        return {}
    return data if isinstance(data, dict) else {}


def build_account(claims: dict[str, Any], client_info: str | None = None) -> dict[str, Any]:
    """Build the account record stored in the session.

    Parameters
    ----------
    claims : dict
        ID token claims.
    client_info : str, optional
        ``client_info`` from the token response.

    Returns
    -------
    dict
        ``home_account_id``, ``local_account_id``, ``username``,
        ``name``, ``tenant_id`` and ``id_token_claims``.
    """
    info = _parse_client_info(client_info)
    local_id = claims.get("oid") or claims.get("sub") or ""
    tenant_id = claims.get("tid") or info.get("utid") or ""
    if info.get("uid") and info.get("utid"):
        home_id = f"{info['uid']}.{info['utid']}"
    else:
        home_id = f"{local_id}.{tenant_id}" if tenant_id else local_id

    emails = claims.get("emails") or []
    username = claims.get("preferred_username") or claims.get("email") or (emails[0] if emails else "")
    return {
        "home_account_id": home_id,
        "local_account_id": local_id,
        "username": username,
        "name": claims.get("name", ""),
        "tenant_id": tenant_id,
        "id_token_claims": claims,
    }


class B2CProvider:
    """Client for one tenant's policy authorities.

    Parameters
    ----------
    settings : OAuthSettings
        Client credentials, tenant, policies and redirect URI.
    http_client : httpx.AsyncClient, optional
        Shared client (for testing with a mock transport).
    """

    def __init__(self, settings: OAuthSettings, http_client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._http_client = http_client
        # authority URL -> (issuer, signing keys)
        self._signing: dict[str, tuple[str, Any]] = {}
        self._policies = {
            Authority.SIGN_IN: settings.sign_in_policy,
            Authority.PASSWORD_RESET: settings.password_reset_policy,
            Authority.PROFILE_EDIT: settings.profile_edit_policy,
        }

    @property
    def redirect_uri(self) -> str:
        """Callback URL registered with the server."""
        return self.settings.resolved_redirect_uri

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.settings.token_exchange_timeout)
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client. Call from app shutdown lifecycle."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    def authority_url(self, authority: Authority | str) -> str:
        """Policy authority URL for a flow.

        Raises
        ------
        UnrecognizedAuthorityError
            If the flow has no configured policy.
        """
        policy = self._policies.get(authority) if isinstance(authority, Authority) else None
        if policy is None:
            msg = f"No policy configured for authority {authority!r}"
            raise UnrecognizedAuthorityError(msg, authority=str(authority))
        return self.settings.authority_url(policy)

    def scopes_for(self, authority: Authority | str) -> list[str]:
        """Scopes requested at the token endpoint for a flow.

        Profile edits only refresh identity claims, so they request no
        API scopes.
        """
        if authority is Authority.PROFILE_EDIT:
            return ["openid"]
        scopes = list(self.settings.scopes)
        for scope in IDENTITY_SCOPES:
            if scope not in scopes:
                scopes.append(scope)
        return scopes

    def build_authorize_url(
        self,
        authority: Authority,
        state: str,
        pkce: PKCEChallenge,
        extra_params: dict[str, str] | None = None,
    ) -> str:
        """Build the full authorization URL.

        Parameters
        ----------
        authority : Authority
            The user flow to start.
        state : str
            The state token.
        pkce : PKCEChallenge
            PKCE challenge for the flow.
        extra_params : dict, optional
            Additional query parameters.

        Returns
        -------
        str
            The full authorization URL.
        """
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": self.settings.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes_for(authority)),
            "state": state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
            "access_type": "offline",
            "include_granted_scopes": "true",
        }
        if extra_params:
            params.update(extra_params)
        return f"{self.authority_url(authority)}/oauth2/v2.0/authorize?{urlencode(params)}"

    async def _signing_keys(self, authority: Authority) -> tuple[str, Any]:
        """Issuer and signing keys of a policy authority, cached per authority.

        Raises
        ------
        TokenExchangeError
            If the discovery document or key set cannot be fetched.
        """
        authority_url = self.authority_url(authority)
        cached = self._signing.get(authority_url)
        if cached is not None:
            return cached

        client = await self._get_client()
        try:
            resp = await client.get(f"{authority_url}/v2.0/.well-known/openid-configuration")
            resp.raise_for_status()
            config = resp.json()
            issuer = config["issuer"]
            resp = await client.get(config["jwks_uri"])
            resp.raise_for_status()
            key_set = JsonWebKey.import_key_set(resp.json())
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Signing key discovery failed for %s: %s", authority_url, exc)
            msg = "Signing keys unavailable for authority"
            raise TokenExchangeError(msg, authority=authority.value) from exc

        self._signing[authority_url] = (issuer, key_set)
        return self._signing[authority_url]

    async def validate_id_token(self, authority: Authority, id_token: str) -> dict[str, Any]:
        """Verify an ID token's signature, issuer, audience and expiry.

        Parameters
        ----------
        authority : Authority
            The flow whose policy issued the token.
        id_token : str
            The raw ID token JWT string.

        Returns
        -------
        dict
            The validated claims.

        Raises
        ------
        TokenExchangeError
            If validation fails for any reason.
        """
        issuer, key_set = await self._signing_keys(authority)
        claims_options: dict[str, Any] = {
            "iss": {"essential": True, "value": issuer},
            "aud": {"essential": True, "value": self.settings.client_id},
            "exp": {"essential": True},
        }
        try:
            claims = JsonWebToken(ID_TOKEN_ALGORITHMS).decode(id_token, key_set, claims_options=claims_options)
            claims.validate()
        except (JoseError, ValueError) as exc:
            msg = f"ID token validation failed: {exc}"
            raise TokenExchangeError(msg, authority=authority.value) from exc
        return dict(claims)

    async def exchange_code(
        self,
        authority: Authority,
        code: str,
        pkce_verifier: str,
        client_info: str | None = None,
    ) -> TokenExchangeResult:
        """Exchange an authorization code for tokens.

        Parameters
        ----------
        authority : Authority
            The flow the code was issued for.
        code : str
            The authorization code from the callback.
        pkce_verifier : str
            The PKCE code verifier.
        client_info : str, optional
            ``client_info`` from the callback; requests it in the response.

        Returns
        -------
        TokenExchangeResult
            ID token, claims and account record.

        Raises
        ------
        TokenExchangeError
            If the server is unreachable, rejects the code, or returns no
            valid ID token.
        """
        token_url = f"{self.authority_url(authority)}/oauth2/v2.0/token"
        data = {
            "grant_type": "authorization_code",
            "client_id": self.settings.client_id,
            "code": code,
            "redirect_uri": self.redirect_uri,
            "code_verifier": pkce_verifier,
            "scope": " ".join(self.scopes_for(authority)),
        }
        if self.settings.client_secret:
            data["client_secret"] = self.settings.client_secret
        if client_info:
            data["client_info"] = "1"

        client = await self._get_client()
        try:
            resp = await client.post(token_url, data=data, timeout=self.settings.token_exchange_timeout)
        except httpx.HTTPError as exc:
            msg = f"Token endpoint request failed: {exc.__class__.__name__}"
            raise TokenExchangeError(msg, authority=authority.value) from exc

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code != 200:
            logger.warning(
                "Token endpoint returned %d: %s",
                resp.status_code,
                redact_sensitive_data(body) if isinstance(body, dict) else body,
            )
            msg = f"Token exchange rejected with status {resp.status_code}"
            raise TokenExchangeError(
                msg,
                authority=authority.value,
                status=resp.status_code,
                error=body.get("error") if isinstance(body, dict) else None,
            )

        id_token = body.get("id_token") if isinstance(body, dict) else None
        if not id_token:
            msg = "Token response has no id_token"
            raise TokenExchangeError(msg, authority=authority.value)
        claims = await self.validate_id_token(authority, id_token)

        return TokenExchangeResult(
            id_token=id_token,
            id_token_claims=claims,
            account=build_account(claims, body.get("client_info") or client_info),
            access_token=body.get("access_token"),
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
            scope=body.get("scope", ""),
        )

    def build_logout_url(self, post_logout_redirect_uri: str | None = None) -> str:
        """End-session URL of the sign-in authority."""
        target = post_logout_redirect_uri or self.settings.base_url
        query = urlencode({"post_logout_redirect_uri": target})
        return f"{self.authority_url(Authority.SIGN_IN)}/oauth2/v2.0/logout?{query}"
