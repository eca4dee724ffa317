"""OAuth2 authorization-code flow with PKCE and stateless state tokens.

``AuthorizationFlowController`` issues authorization URLs and completes
callbacks. All per-flow state (the token secret and the PKCE material)
lives in the key-value store under keys namespaced by the state token,
so any worker can complete a flow another worker started.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import hashlib
import logging
import secrets

from typing import TYPE_CHECKING
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from ..exceptions import (
    MissingParameterError,
    ProviderError,
    StateInvalidError,
    StateTokenError,
    StoreError,
    UnrecognizedAuthorityError,
    VerifierMissingError,
)
from .pkce import PKCE_FIELDS, PKCEChallenge, pkce_key
from .state_token import StateTokenCodec, secret_key
from .types import (
    AuthorizationRequest,
    Authority,
    FlowOutcome,
    FlowState,
    SessionPayload,
    StatePayload,
)


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..config import OAuthSettings
    from ..kv.base import KeyValueStore
    from ..kv.types import KvEntry
    from .providers import B2CProvider
    from .session import SessionCookieCodec


logger = logging.getLogger("kvauth.auth")

CANCELLED_MESSAGE = "User has cancelled the operation"


def sanitize_referer(referer: str | None, base_url: str) -> str | None:
    """Keep only same-origin return URLs.

    Parameters
    ----------
    referer : str or None
        Candidate return URL (absolute or path-relative).
    base_url : str
        The application's public origin.

    Returns
    -------
    str or None
        ``referer`` when it is a relative path or an absolute URL on the
        application origin, ``None`` otherwise.
    """
    if not referer:
        return None
    parts = urlsplit(referer)
    if not parts.scheme and not parts.netloc:
        if referer.startswith("/") and not referer.startswith(("//", "/\\")):
            return referer
        return None
    base = urlsplit(base_url)
    if (parts.scheme.lower(), parts.netloc.lower()) == (base.scheme.lower(), base.netloc.lower()):
        return referer
    return None


def with_query(url: str, **params: str) -> str:
    """Append query parameters to a URL, keeping existing ones."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True) + list(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def _fingerprint(token: str) -> str:
    """Short, non-reversible token id for log lines."""
    return hashlib.sha256(token.encode("ascii", "replace")).hexdigest()[:12]


class AuthorizationFlowController:
    """Orchestrates initiation and completion of authorization flows.

    Parameters
    ----------
    store : KeyValueStore
        Holds token secrets and PKCE material.
    provider : B2CProvider
        Authorization server client.
    session_codec : SessionCookieCodec
        Encrypts the session issued on success.
    settings : OAuthSettings
        Token lifetime, base URL and cancellation code.
    codec : StateTokenCodec, optional
        State token codec; built from ``store`` when omitted.
    clock : callable, optional
        Epoch-seconds clock for the default codec.
    """

    def __init__(
        self,
        store: KeyValueStore,
        provider: B2CProvider,
        session_codec: SessionCookieCodec,
        settings: OAuthSettings,
        *,
        codec: StateTokenCodec | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.session_codec = session_codec
        self.settings = settings
        self.codec = codec or StateTokenCodec(store, ttl=settings.state_token_ttl, clock=clock)

    @staticmethod
    def _transition(token: str, state: FlowState) -> None:
        logger.debug("Flow %s -> %s", _fingerprint(token), state.value)

    async def initiate(self, selector: str, referer: str | None = None) -> AuthorizationRequest:
        """Start a flow and build the authorization redirect.

        Parameters
        ----------
        selector : str
            ``login``, ``password`` or ``profile`` (or an authority value).
        referer : str, optional
            Where to return once the flow completes; dropped unless it is
            same-origin.

        Returns
        -------
        AuthorizationRequest
            Redirect URL, state token and authority.

        Raises
        ------
        UnknownAuthoritySelectorError
            If the selector names no authority. No state is created.
        """
        # 1. Resolve the authority before creating any state
        authority = Authority.from_selector(selector)

        # 2. Generate PKCE
        pkce = PKCEChallenge.generate()

        # 3. Mint the state token
        payload = StatePayload(
            state=secrets.token_hex(32),
            authority=authority,
            referer=sanitize_referer(referer, self.settings.base_url),
        )
        token = await self.codec.mint(payload)
        self._transition(token, FlowState.INITIATED)

        # 4. Persist PKCE material under the token namespace
        op = self.store.atomic()
        for key, value in pkce.records(token).items():
            op.set(key, value, expire_in=self.codec.ttl)
        result = await op.commit()
        if not result.ok:
            await self.codec.revoke(token)
            msg = "Could not persist PKCE material"
            raise StoreError(msg, authority=authority.value)

        # 5. Build the redirect
        url = self.provider.build_authorize_url(authority, token, pkce)
        self._transition(token, FlowState.AWAITING_CALLBACK)
        logger.info("Authorization flow %s started for %s", _fingerprint(token), authority.value)
        return AuthorizationRequest(url=url, state_token=token, authority=authority)

    async def _consume(self, token: str, secret_entry: KvEntry, pkce_entries: list[KvEntry]) -> bool:
        """Delete all state for ``token`` if nobody consumed it first."""
        op = self.store.atomic().check(secret_entry, *pkce_entries)
        op.delete(secret_key(token))
        for field_name in PKCE_FIELDS:
            op.delete(pkce_key(token, field_name))
        result = await op.commit()
        return result.ok

    async def complete(
        self,
        code: str | None,
        state: str | None,
        *,
        client_info: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> FlowOutcome:
        """Complete a flow from the authorization server callback.

        Parameters
        ----------
        code : str or None
            Authorization code.
        state : str or None
            The state token.
        client_info : str, optional
            ``client_info`` passed through to the token request.
        error, error_description : str, optional
            Error reported by the authorization server.

        Returns
        -------
        FlowOutcome
            Redirect target plus the session cookie (or the cancellation
            message).

        Raises
        ------
        MissingParameterError
            If ``state`` (or ``code`` outside the error path) is absent.
        StateInvalidError
            If the token fails verification for any reason.
        VerifierMissingError
            If the PKCE verifier is gone or the flow was already completed.
        ProviderError
            If the server reported an error other than a cancelled
            password reset.
        UnrecognizedAuthorityError
            If the token names an authority with no handler.
        TokenExchangeError
            If the code exchange fails.
        """
        # 1. Required parameters
        if not state:
            msg = "Callback is missing the state parameter"
            raise MissingParameterError(msg, parameter="state")
        if not error and not code:
            msg = "Callback is missing the code parameter"
            raise MissingParameterError(msg, parameter="code")

        # 2. Verify the token; the specific failure is only logged
        try:
            payload, secret_entry = await self.codec.verify_entry(state)
        except StateTokenError as exc:
            self._transition(state, FlowState.FAILED)
            logger.warning("State token rejected (%s): %s", exc.kind.value if exc.kind else "?", exc)
            msg = "State token rejected"
            raise StateInvalidError(msg, reason=exc.kind) from exc

        authority = payload.authority
        authority_name = authority.value if isinstance(authority, Authority) else authority
        referer = payload.referer or "/"
        pkce_entries = await self.store.get_many([pkce_key(state, f) for f in PKCE_FIELDS])
        verifier_entry, challenge_entry, method_entry = pkce_entries

        # 3. Errors reported by the authorization server
        if error:
            if not await self._consume(state, secret_entry, pkce_entries):
                msg = "State already consumed"
                raise VerifierMissingError(msg, authority=authority_name)
            cancelled = self.settings.cancellation_error_code in (error_description or "")
            if authority is Authority.PASSWORD_RESET and cancelled:
                self._transition(state, FlowState.CANCELLED)
                logger.info("Password reset cancelled by user")
                return FlowOutcome(
                    redirect_to=with_query(referer, message=CANCELLED_MESSAGE),
                    state=FlowState.CANCELLED,
                    authority=authority,
                    message=CANCELLED_MESSAGE,
                )
            self._transition(state, FlowState.FAILED)
            msg = f"Authorization server returned {error}"
            raise ProviderError(
                msg,
                error=error,
                error_description=error_description,
                authority=authority_name,
            )

        # 4. Load the verifier
        if not verifier_entry.exists:
            self._transition(state, FlowState.FAILED)
            msg = "No PKCE verifier stored for state token"
            raise VerifierMissingError(msg, authority=authority_name)
        if challenge_entry.exists:
            pkce = PKCEChallenge(
                verifier=verifier_entry.value,
                challenge=challenge_entry.value,
                method=method_entry.value or "S256",
            )
            if not pkce.matches(verifier_entry.value):
                msg = "Stored PKCE verifier does not match its challenge"
                raise VerifierMissingError(msg, authority=authority_name)

        # 5. Consume: exactly one callback wins
        if not await self._consume(state, secret_entry, pkce_entries):
            self._transition(state, FlowState.FAILED)
            msg = "State already consumed"
            raise VerifierMissingError(msg, authority=authority_name)

        # 6. Dispatch on authority
        if not isinstance(authority, Authority):
            self._transition(state, FlowState.FAILED)
            msg = f"No handler for authority {authority!r}"
            raise UnrecognizedAuthorityError(msg, authority=authority_name)

        # 7. Exchange the code
        tokens = await self.provider.exchange_code(
            authority,
            code,
            verifier_entry.value,
            client_info=client_info,
        )

        # 8. Issue the session
        cookie = self.session_codec.encrypt(SessionPayload(user=tokens.account, id_token=tokens.id_token))
        self._transition(state, FlowState.COMPLETED)
        logger.info(
            "Authorization flow %s completed for %s (%s)",
            _fingerprint(state),
            tokens.account.get("username") or tokens.account.get("local_account_id"),
            authority.value,
        )
        return FlowOutcome(
            redirect_to=referer,
            state=FlowState.COMPLETED,
            authority=authority,
            session_cookie=cookie,
            tokens=tokens,
        )

    def logout_url(self, post_logout_redirect_uri: str | None = None) -> str:
        """End-session URL of the sign-in authority."""
        return self.provider.build_logout_url(post_logout_redirect_uri)
