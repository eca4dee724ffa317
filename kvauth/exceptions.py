"""kvauth exception hierarchy.

All kvauth-specific exceptions inherit from KvAuthException, enabling
catch-all handling while supporting specific error types. Every class
carries an ``ErrorKind`` so HTTP handlers can map failures to status
codes without inspecting messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Machine-readable failure categories."""

    STORE_CLOSED = "StoreClosed"
    COMMIT_CONFLICT = "CommitConflict"
    CREDENTIAL_UNAVAILABLE = "CredentialUnavailable"
    SECRET_NOT_FOUND = "SecretNotFound"
    SIGNATURE_INVALID = "SignatureInvalid"
    EXPIRED = "Expired"
    MISSING_PARAMETER = "MissingParameter"
    STATE_INVALID = "StateInvalid"
    VERIFIER_MISSING = "VerifierMissing"
    TOKEN_EXCHANGE_FAILED = "TokenExchangeFailed"
    UNRECOGNIZED_AUTHORITY = "UnrecognizedAuthority"
    UNKNOWN_AUTHORITY_SELECTOR = "UnknownAuthoritySelector"
    PROVIDER_ERROR = "ProviderError"


class KvAuthException(Exception):
    """Base exception for all kvauth errors."""

    kind: ErrorKind | None = None

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize kvauth exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (key, authority, provider, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


# ── Key-value store ─────────────────────────────────────────────────


class StoreError(KvAuthException):
    """Key-value store operation failed."""


class StoreClosedError(StoreError):
    """Operation attempted on a store after ``close()``."""

    kind = ErrorKind.STORE_CLOSED

    def __init__(self, message: str = "Store is closed", **context: Any) -> None:
        super().__init__(message, **context)


class CredentialUnavailableError(KvAuthException):
    """The identity endpoint could not issue a credential.

    Raised by credential providers when the managed identity is not
    reachable or returned no token. Store construction treats this as a
    signal to fall back to the in-memory backend.
    """

    kind = ErrorKind.CREDENTIAL_UNAVAILABLE

    def __init__(self, message: str, scope: str | None = None, **context: Any) -> None:
        """Initialize credential error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        scope : str, optional
            The token scope that was requested.
        **context : Any
            Additional context.
        """
        super().__init__(message, scope=scope, **context)
        self.scope = scope


# ── State tokens ────────────────────────────────────────────────────


class StateTokenError(KvAuthException):
    """A state token could not be verified."""


class SecretNotFoundError(StateTokenError):
    """No unexpired secret exists for the presented token.

    Tampered and expired tokens are indistinguishable at this level.
    """

    kind = ErrorKind.SECRET_NOT_FOUND


class SignatureInvalidError(StateTokenError):
    """The token failed decryption or signature verification."""

    kind = ErrorKind.SIGNATURE_INVALID


class TokenExpiredError(StateTokenError):
    """The token's embedded expiry has passed."""

    kind = ErrorKind.EXPIRED


# ── Authorization flow ──────────────────────────────────────────────


class AuthenticationError(KvAuthException):
    """Authorization flow failed.

    Base for every failure surfaced by the flow controller. ``status_code``
    is the HTTP status the routes respond with, and ``public_message`` is
    the only text shown to the client.
    """

    status_code: int = 400
    public_message: str = "Authentication failed"

    def __init__(
        self,
        message: str,
        authority: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message (logged, never sent to clients).
        authority : str, optional
            The authority the flow was running against.
        **context : Any
            Additional context.
        """
        super().__init__(message, authority=authority, **context)
        self.authority = authority


class MissingParameterError(AuthenticationError):
    """A required callback parameter was absent."""

    kind = ErrorKind.MISSING_PARAMETER
    public_message = "Missing required parameters"

    def __init__(self, message: str, parameter: str, **context: Any) -> None:
        super().__init__(message, parameter=parameter, **context)
        self.parameter = parameter


class StateInvalidError(AuthenticationError):
    """The state token failed verification."""

    kind = ErrorKind.STATE_INVALID
    status_code = 403
    public_message = "Invalid state"

    def __init__(self, message: str, reason: ErrorKind | None = None, **context: Any) -> None:
        """Initialize state error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        reason : ErrorKind, optional
            The underlying verification failure, logged server-side only.
        **context : Any
            Additional context.
        """
        super().__init__(message, reason=reason.value if reason else None, **context)
        self.reason = reason


class VerifierMissingError(AuthenticationError):
    """No PKCE verifier is stored for the token, or it was already consumed."""

    kind = ErrorKind.VERIFIER_MISSING
    public_message = "Verifier not found"


class TokenExchangeError(AuthenticationError):
    """The authorization server rejected or failed the code exchange."""

    kind = ErrorKind.TOKEN_EXCHANGE_FAILED
    status_code = 500
    public_message = "Authentication failed"


class UnrecognizedAuthorityError(AuthenticationError):
    """The verified token named an authority with no completion handler."""

    kind = ErrorKind.UNRECOGNIZED_AUTHORITY
    status_code = 500
    public_message = "Unrecognized authority"


class UnknownAuthoritySelectorError(AuthenticationError):
    """The initiation selector maps to no configured authority."""

    kind = ErrorKind.UNKNOWN_AUTHORITY_SELECTOR
    status_code = 404
    public_message = "Not found"

    def __init__(self, message: str, selector: str, **context: Any) -> None:
        super().__init__(message, selector=selector, **context)
        self.selector = selector


class ProviderError(AuthenticationError):
    """The authorization server redirected back with an error."""

    kind = ErrorKind.PROVIDER_ERROR
    public_message = "Authentication failed"

    def __init__(
        self,
        message: str,
        error: str | None = None,
        error_description: str | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message, error=error, **context)
        self.error = error
        self.error_description = error_description
