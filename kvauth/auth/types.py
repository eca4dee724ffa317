"""Data types for the authorization flow."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..exceptions import UnknownAuthoritySelectorError


class Authority(str, Enum):
    """User flows the authorization server offers."""

    SIGN_IN = "sign-in"
    PASSWORD_RESET = "password-reset"
    PROFILE_EDIT = "profile-edit"

    @classmethod
    def from_selector(cls, selector: str) -> Authority:
        """Resolve a route selector (``login``, ``password``, ``profile``).

        The enum values themselves are accepted too.

        Raises
        ------
        UnknownAuthoritySelectorError
            If the selector names no authority.
        """
        authority = _SELECTORS.get(selector)
        if authority is not None:
            return authority
        try:
            return cls(selector)
        except ValueError:
            msg = f"No authority for selector {selector!r}"
            raise UnknownAuthoritySelectorError(msg, selector=selector) from None


_SELECTORS: dict[str, Authority] = {
    "login": Authority.SIGN_IN,
    "password": Authority.PASSWORD_RESET,
    "profile": Authority.PROFILE_EDIT,
}


class FlowState(str, Enum):
    """Lifecycle of one authorization attempt."""

    IDLE = "idle"
    INITIATED = "initiated"
    AWAITING_CALLBACK = "awaiting_callback"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class StatePayload:
    """Claims carried inside a state token.

    Attributes
    ----------
    state : str
        Random hex nonce (256 bits).
    authority : Authority or str
        Flow the token was minted for. A plain string means the token
        names an authority this deployment does not know.
    referer : str or None
        Where to send the user once the flow completes.
    """

    state: str
    authority: Authority | str
    referer: str | None = None

    def to_claims(self) -> dict[str, Any]:
        """Serialize to JWT claims."""
        authority = self.authority.value if isinstance(self.authority, Authority) else self.authority
        return {"state": self.state, "authority": authority, "referer": self.referer}

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> StatePayload:
        """Deserialize from JWT claims.

        Raises
        ------
        KeyError
            If ``state`` or ``authority`` is missing.
        """
        raw_authority = claims["authority"]
        try:
            authority: Authority | str = Authority(raw_authority)
        except ValueError:
            authority = str(raw_authority)
        return cls(state=str(claims["state"]), authority=authority, referer=claims.get("referer"))


@dataclass(frozen=True)
class AuthorizationRequest:
    """Result of initiating a flow.

    Attributes
    ----------
    url : str
        Authorization server URL to redirect the browser to.
    state_token : str
        The minted state token (the OAuth ``state`` parameter).
    authority : Authority
        The flow that was started.
    """

    url: str
    state_token: str
    authority: Authority


@dataclass(frozen=True)
class TokenExchangeResult:
    """Tokens and account returned by the token endpoint.

    Attributes
    ----------
    id_token : str
        The raw ID token.
    id_token_claims : dict
        Decoded ID token claims.
    account : dict
        Account record (ids, username, name, tenant, claims).
    access_token : str or None
        Access token, when scopes beyond identity were granted.
    refresh_token : str or None
        Refresh token (``offline_access``).
    expires_in : int or None
        Access token lifetime in seconds.
    scope : str
        Granted scopes.
    """

    id_token: str
    id_token_claims: dict[str, Any]
    account: dict[str, Any]
    access_token: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str = ""


@dataclass(frozen=True)
class SessionPayload:
    """Contents of the encrypted session cookie."""

    user: dict[str, Any]
    id_token: str

    def to_dict(self) -> dict[str, Any]:
        """Serialize for encryption."""
        return {"user": self.user, "idToken": self.id_token}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionPayload:
        """Deserialize after decryption."""
        return cls(user=dict(data["user"]), id_token=str(data["idToken"]))


@dataclass(frozen=True)
class FlowOutcome:
    """Result of completing a flow.

    Attributes
    ----------
    redirect_to : str
        Where to send the browser.
    state : FlowState
        ``COMPLETED`` or ``CANCELLED``.
    authority : Authority or str
        The flow that finished.
    session_cookie : str or None
        Encrypted session cookie value to set, if a session was issued.
    message : str or None
        User-facing message appended to the redirect.
    tokens : TokenExchangeResult or None
        Tokens from the exchange, if one happened.
    """

    redirect_to: str
    state: FlowState
    authority: Authority | str
    session_cookie: str | None = None
    message: str | None = None
    tokens: TokenExchangeResult | None = field(default=None, repr=False)
