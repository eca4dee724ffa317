"""Tests for the authorization flow controller."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import asyncio

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from kvauth.auth.flow import AuthorizationFlowController, sanitize_referer, with_query
from kvauth.auth.pkce import PKCE_FIELDS, PKCEChallenge, pkce_key, s256
from kvauth.auth.providers import B2CProvider
from kvauth.auth.session import SessionCookieCodec
from kvauth.auth.state_token import secret_key
from kvauth.auth.types import Authority, FlowState, StatePayload
from kvauth.exceptions import (
    AuthenticationError,
    ErrorKind,
    MissingParameterError,
    ProviderError,
    StateInvalidError,
    TokenExchangeError,
    UnknownAuthoritySelectorError,
    UnrecognizedAuthorityError,
    VerifierMissingError,
)
from tests.helpers import FakeAuthorityServer


ID_CLAIMS = {"oid": "user-oid", "tid": "tenant", "name": "Ada", "emails": ["ada@example.com"]}


class TokenEndpoint(FakeAuthorityServer):
    """Mock authority recording every token request."""

    def __init__(self, status: int = 200) -> None:
        super().__init__(ID_CLAIMS, status=status, extra={"refresh_token": "rt"})


@pytest.fixture
def endpoint() -> TokenEndpoint:
    """A successful token endpoint."""
    return TokenEndpoint()


@pytest.fixture
def session_codec(clock) -> SessionCookieCodec:
    """Session codec with a fixed secret."""
    return SessionCookieCodec("session-secret", clock=clock)


@pytest.fixture
def controller(memory_store, oauth_settings, endpoint, session_codec, clock) -> AuthorizationFlowController:
    """Controller over the in-memory store and mock token endpoint."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    provider = B2CProvider(oauth_settings, http_client=http_client)
    return AuthorizationFlowController(memory_store, provider, session_codec, oauth_settings, clock=clock)


async def _state_keys(store, token: str) -> list:
    return [entry.key async for entry in store.list({"prefix": ("oauth_state", token)})]


# --- Referer Tests ---


class TestSanitizeReferer:
    """Tests for sanitize_referer and with_query."""

    def test_relative_paths_kept(self) -> None:
        """Site-relative paths are allowed."""
        assert sanitize_referer("/dashboard?tab=1", "https://app.example.com") == "/dashboard?tab=1"

    def test_same_origin_kept(self) -> None:
        """Absolute URLs on the app origin are allowed."""
        url = "https://APP.example.com/page"
        assert sanitize_referer(url, "https://app.example.com") == url

    def test_foreign_origins_dropped(self) -> None:
        """Other hosts, schemes and protocol-relative URLs are dropped."""
        base = "https://app.example.com"
        assert sanitize_referer("https://evil.example.net/", base) is None
        assert sanitize_referer("http://app.example.com/", base) is None
        assert sanitize_referer("//evil.example.net/x", base) is None
        assert sanitize_referer("/\\evil.example.net", base) is None
        assert sanitize_referer("javascript:alert(1)", base) is None
        assert sanitize_referer("relative/path", base) is None
        assert sanitize_referer(None, base) is None

    def test_with_query_appends(self) -> None:
        """Existing query parameters are kept."""
        assert with_query("/p?a=1", message="hi there") == "/p?a=1&message=hi+there"


# --- Initiation Tests ---


class TestInitiate:
    """Tests for AuthorizationFlowController.initiate."""

    @pytest.mark.asyncio
    async def test_login_creates_state(self, controller, memory_store) -> None:
        """Initiation stores the secret and PKCE material under the token."""
        request = await controller.initiate("login", referer="/dashboard")

        assert request.authority is Authority.SIGN_IN
        params = parse_qs(urlsplit(request.url).query)
        assert params["state"] == [request.state_token]
        assert "B2C_1_Signup_Login/oauth2/v2.0/authorize" in request.url

        keys = await _state_keys(memory_store, request.state_token)
        assert sorted(keys) == sorted(
            [secret_key(request.state_token)] + [pkce_key(request.state_token, f) for f in PKCE_FIELDS]
        )
        verifier, challenge, method = await memory_store.get_many(
            [pkce_key(request.state_token, f) for f in PKCE_FIELDS]
        )
        assert s256(verifier.value) == challenge.value == params["code_challenge"][0]
        assert method.value == "S256"
        assert verifier.expire_at is not None

    @pytest.mark.asyncio
    async def test_selectors(self, controller) -> None:
        """Each selector starts its own flow."""
        assert (await controller.initiate("password")).authority is Authority.PASSWORD_RESET
        assert (await controller.initiate("profile")).authority is Authority.PROFILE_EDIT
        assert (await controller.initiate("sign-in")).authority is Authority.SIGN_IN

    @pytest.mark.asyncio
    async def test_unknown_selector_creates_nothing(self, controller, memory_store) -> None:
        """An unknown selector fails before any state is written."""
        with pytest.raises(UnknownAuthoritySelectorError) as exc_info:
            await controller.initiate("admin")
        assert exc_info.value.status_code == 404
        assert [e async for e in memory_store.list({"prefix": ("oauth_state",)})] == []

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self, controller) -> None:
        """Concurrent initiations never share a token."""
        requests = await asyncio.gather(*(controller.initiate("login") for _ in range(10)))
        assert len({r.state_token for r in requests}) == 10


# --- Completion Tests ---


class TestComplete:
    """Tests for AuthorizationFlowController.complete."""

    @pytest.mark.asyncio
    async def test_success(self, controller, memory_store, endpoint, session_codec) -> None:
        """A valid callback exchanges the code and issues a session."""
        request = await controller.initiate("login", referer="https://app.example.com/reports")
        challenge = parse_qs(urlsplit(request.url).query)["code_challenge"][0]

        outcome = await controller.complete("auth-code", request.state_token)

        assert outcome.state is FlowState.COMPLETED
        assert outcome.redirect_to == "https://app.example.com/reports"
        assert outcome.authority is Authority.SIGN_IN
        form = endpoint.forms[0]
        assert form["code"] == "auth-code"
        assert s256(form["code_verifier"]) == challenge

        session = session_codec.decrypt(outcome.session_cookie)
        assert session.user["username"] == "ada@example.com"
        assert session.id_token == outcome.tokens.id_token
        assert await _state_keys(memory_store, request.state_token) == []

    @pytest.mark.asyncio
    async def test_foreign_referer_redirects_home(self, controller) -> None:
        """A cross-origin referer is replaced by the site root."""
        request = await controller.initiate("login", referer="https://evil.example.net/phish")
        outcome = await controller.complete("code", request.state_token)
        assert outcome.redirect_to == "/"

    @pytest.mark.asyncio
    async def test_replay_rejected(self, controller, endpoint) -> None:
        """A state token completes at most once."""
        request = await controller.initiate("login")
        await controller.complete("code", request.state_token)

        with pytest.raises(StateInvalidError) as exc_info:
            await controller.complete("code", request.state_token)
        assert exc_info.value.reason is ErrorKind.SECRET_NOT_FOUND
        assert len(endpoint.forms) == 1

    @pytest.mark.asyncio
    async def test_concurrent_callbacks_single_winner(self, controller, endpoint) -> None:
        """Of two simultaneous callbacks only one exchanges the code."""
        request = await controller.initiate("login")
        results = await asyncio.gather(
            controller.complete("code", request.state_token),
            controller.complete("code", request.state_token),
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], (StateInvalidError, VerifierMissingError))
        assert len(endpoint.forms) == 1

    @pytest.mark.asyncio
    async def test_consume_only_once(self, controller, memory_store) -> None:
        """The atomic consume loses once another callback deleted the state."""
        request = await controller.initiate("login")
        token = request.state_token
        _, secret_entry = await controller.codec.verify_entry(token)
        pkce_entries = await memory_store.get_many([pkce_key(token, f) for f in PKCE_FIELDS])

        assert await controller._consume(token, secret_entry, pkce_entries)
        assert not await controller._consume(token, secret_entry, pkce_entries)

    @pytest.mark.asyncio
    async def test_missing_parameters(self, controller) -> None:
        """state is always required; code unless an error is reported."""
        with pytest.raises(MissingParameterError) as exc_info:
            await controller.complete("code", None)
        assert exc_info.value.parameter == "state"
        assert exc_info.value.public_message == "Missing required parameters"

        request = await controller.initiate("login")
        with pytest.raises(MissingParameterError) as exc_info:
            await controller.complete(None, request.state_token)
        assert exc_info.value.parameter == "code"

    @pytest.mark.asyncio
    async def test_unknown_state(self, controller) -> None:
        """Unknown tokens are rejected with a generic 403."""
        with pytest.raises(StateInvalidError) as exc_info:
            await controller.complete("code", "forged-token")
        assert exc_info.value.status_code == 403
        assert exc_info.value.public_message == "Invalid state"

    @pytest.mark.asyncio
    async def test_verifier_missing(self, controller, memory_store) -> None:
        """A deleted verifier fails the callback."""
        request = await controller.initiate("login")
        await memory_store.delete(pkce_key(request.state_token, "verifier"))
        with pytest.raises(VerifierMissingError) as exc_info:
            await controller.complete("code", request.state_token)
        assert exc_info.value.public_message == "Verifier not found"

    @pytest.mark.asyncio
    async def test_verifier_mismatch(self, controller, memory_store) -> None:
        """A verifier that does not match its challenge is refused."""
        request = await controller.initiate("login")
        await memory_store.set(pkce_key(request.state_token, "verifier"), "tampered", expire_in=60)
        with pytest.raises(VerifierMissingError):
            await controller.complete("code", request.state_token)

    @pytest.mark.asyncio
    async def test_password_reset_cancelled(self, controller, memory_store, endpoint) -> None:
        """Cancelling a password reset returns to the referer with a message."""
        request = await controller.initiate("password", referer="/settings?tab=security")
        outcome = await controller.complete(
            None,
            request.state_token,
            error="access_denied",
            error_description="AADB2C90091: The user has cancelled entering self-asserted information.",
        )

        assert outcome.state is FlowState.CANCELLED
        assert outcome.session_cookie is None
        assert outcome.message == "User has cancelled the operation"
        parts = urlsplit(outcome.redirect_to)
        assert parts.path == "/settings"
        assert parse_qs(parts.query) == {"tab": ["security"], "message": ["User has cancelled the operation"]}
        assert endpoint.forms == []
        assert await _state_keys(memory_store, request.state_token) == []

    @pytest.mark.asyncio
    async def test_cancel_code_on_sign_in_is_an_error(self, controller) -> None:
        """Only password resets treat the cancellation code as a cancel."""
        request = await controller.initiate("login")
        with pytest.raises(ProviderError) as exc_info:
            await controller.complete(
                None, request.state_token, error="access_denied", error_description="AADB2C90091"
            )
        assert exc_info.value.error == "access_denied"

    @pytest.mark.asyncio
    async def test_provider_error_consumes_state(self, controller, memory_store) -> None:
        """A reported error ends the flow for good."""
        request = await controller.initiate("profile")
        with pytest.raises(ProviderError):
            await controller.complete("code", request.state_token, error="server_error")
        assert await _state_keys(memory_store, request.state_token) == []

    @pytest.mark.asyncio
    async def test_unrecognized_authority(self, controller, memory_store) -> None:
        """A verified token naming an unknown flow is a server error."""
        token = await controller.codec.mint(StatePayload(state="s", authority="legacy-flow"))
        pkce = PKCEChallenge.generate()
        for key, value in pkce.records(token).items():
            await memory_store.set(key, value, expire_in=60)

        with pytest.raises(UnrecognizedAuthorityError) as exc_info:
            await controller.complete("code", token)
        assert exc_info.value.status_code == 500
        assert exc_info.value.authority == "legacy-flow"

    @pytest.mark.asyncio
    async def test_exchange_failure(self, memory_store, oauth_settings, session_codec, clock) -> None:
        """A rejected exchange surfaces as TokenExchangeError and burns the state."""
        endpoint = TokenEndpoint(status=400)
        provider = B2CProvider(
            oauth_settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
        )
        controller = AuthorizationFlowController(
            memory_store, provider, session_codec, oauth_settings, clock=clock
        )
        request = await controller.initiate("login")

        with pytest.raises(TokenExchangeError):
            await controller.complete("code", request.state_token)
        with pytest.raises(AuthenticationError):
            await controller.complete("code", request.state_token)
        assert len(endpoint.forms) == 1

    @pytest.mark.asyncio
    async def test_expired_state(self, controller, clock) -> None:
        """Callbacks after the token lifetime are rejected."""
        request = await controller.initiate("login")
        clock.advance(7201)
        with pytest.raises(StateInvalidError):
            await controller.complete("code", request.state_token)

    @pytest.mark.asyncio
    async def test_logout_url(self, controller) -> None:
        """Logout delegates to the provider."""
        assert "/oauth2/v2.0/logout?post_logout_redirect_uri=" in controller.logout_url()
