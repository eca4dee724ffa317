"""FastAPI routes for the authorization flow.

Provides initiation (``/api/auth/{selector}``), callback
(``/api/auth/redirect``), session refresh and logout endpoints. The
controller and session codec are read from ``app.state`` so the router
can be created before the store is opened.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from ..exceptions import AuthenticationError, TokenExchangeError, UnknownAuthoritySelectorError
from ..log import redact_url


if TYPE_CHECKING:
    from .flow import AuthorizationFlowController
    from .session import SessionCookieCodec


logger = logging.getLogger("kvauth.auth")


def _controller(request: Request) -> AuthorizationFlowController:
    return request.app.state.auth_flow  # type: ignore[no-any-return]


def _session_codec(request: Request) -> SessionCookieCodec:
    return request.app.state.session_codec  # type: ignore[no-any-return]


def _error_response(exc: AuthenticationError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})


def create_auth_router() -> APIRouter:
    """Create a FastAPI router with the authorization routes.

    Expects ``app.state.auth_flow`` (``AuthorizationFlowController``) and
    ``app.state.session_codec`` (``SessionCookieCodec``).

    Returns
    -------
    APIRouter
        Router with ``/api/auth/*`` routes.
    """
    router = APIRouter(prefix="/api/auth", tags=["authentication"])

    @router.get("/redirect")
    async def auth_callback(
        request: Request,
        code: str | None = None,
        state: str | None = None,
        client_info: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> Response:
        """Handle the authorization server callback.

        Verifies the state token, exchanges the code, sets the session
        cookie and redirects to the page the flow started from.
        """
        controller = _controller(request)
        try:
            outcome = await controller.complete(
                code,
                state,
                client_info=client_info,
                error=error,
                error_description=error_description,
            )
        except TokenExchangeError as exc:
            logger.error("Callback failed (%s): %s", exc.kind.value, exc, exc_info=exc.__cause__ is not None)
            return _error_response(exc)
        except AuthenticationError as exc:
            logger.warning("Callback failed (%s): %s", exc.kind.value if exc.kind else "?", exc)
            return _error_response(exc)
        except Exception:
            logger.exception("Callback failed for %s", redact_url(str(request.url)))
            return JSONResponse(status_code=500, content={"error": "An internal error occurred"})

        response = RedirectResponse(url=outcome.redirect_to, status_code=302)
        if outcome.session_cookie:
            _session_codec(request).set_cookie(response, outcome.session_cookie)
        return response

    @router.get("/logout")
    async def auth_logout(request: Request) -> Response:
        """Clear the session cookie and end the server-side session."""
        controller = _controller(request)
        response = RedirectResponse(url=controller.logout_url(), status_code=302)
        _session_codec(request).delete_cookie(response)
        return response

    @router.get("/session")
    async def auth_session(request: Request) -> Response:
        """Return the signed-in account and renew the cookie expiry."""
        codec = _session_codec(request)
        payload = codec.decrypt(request.cookies.get(codec.cookie_name))
        if payload is None:
            return JSONResponse(status_code=401, content={"error": "Not authenticated"})
        response = JSONResponse(
            content={
                "authenticated": True,
                "user": {k: v for k, v in payload.user.items() if k != "id_token_claims"},
            }
        )
        codec.refresh(response, payload)
        return response

    @router.get("/{selector}")
    async def auth_initiate(request: Request, selector: str) -> Response:
        """Start a flow (``login``, ``password`` or ``profile``)."""
        controller = _controller(request)
        try:
            auth_request = await controller.initiate(selector, request.headers.get("referer"))
        except UnknownAuthoritySelectorError as exc:
            logger.info("Unknown authorization selector %r", exc.selector)
            return _error_response(exc)
        except Exception:
            logger.exception("Failed to initiate %s flow", selector)
            return JSONResponse(status_code=500, content={"error": "An internal error occurred"})
        return RedirectResponse(url=auth_request.url, status_code=302)

    return router
