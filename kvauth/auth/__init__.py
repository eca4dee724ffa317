"""OAuth2 authorization-code flow with PKCE and encrypted state tokens.

Usage::

    from kvauth.auth import AuthorizationFlowController, B2CProvider, SessionCookieCodec

    controller = AuthorizationFlowController(store, B2CProvider(oauth), codec, oauth)
    request = await controller.initiate("login", referer="/dashboard")
    # ... browser returns to /api/auth/redirect ...
    outcome = await controller.complete(code, state)
"""

from .flow import AuthorizationFlowController, sanitize_referer
from .pkce import PKCEChallenge
from .providers import B2CProvider
from .routes import create_auth_router
from .session import SessionCookieCodec
from .state_token import StateTokenCodec
from .types import (
    AuthorizationRequest,
    Authority,
    FlowOutcome,
    FlowState,
    SessionPayload,
    StatePayload,
    TokenExchangeResult,
)


__all__ = [
    "Authority",
    "AuthorizationFlowController",
    "AuthorizationRequest",
    "B2CProvider",
    "FlowOutcome",
    "FlowState",
    "PKCEChallenge",
    "SessionCookieCodec",
    "SessionPayload",
    "StatePayload",
    "StateTokenCodec",
    "TokenExchangeResult",
    "create_auth_router",
    "sanitize_referer",
]
