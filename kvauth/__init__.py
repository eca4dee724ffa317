"""kvauth - OAuth2 PKCE authorization over a versioned key-value store.

Components:

- ``kvauth.kv``: transactional key-value store (in-memory and Redis)
- ``kvauth.credentials``: managed-identity credentials with background refresh
- ``kvauth.auth``: state tokens, authorization flow controller, routes
- ``kvauth.app``: FastAPI application factory
"""

from .config import KvAuthSettings, get_settings
from .exceptions import ErrorKind, KvAuthException


__version__ = "0.1.0"

__all__ = [
    "ErrorKind",
    "KvAuthException",
    "KvAuthSettings",
    "__version__",
    "get_settings",
]
