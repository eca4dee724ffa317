"""Configuration system for kvauth using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.kvauth] section (project-level)
3. ./kvauth.toml (project-level, explicit)
4. ~/.config/kvauth/config.toml (user-level, overrides project)
5. KVAUTH_CONFIG_FILE (explicit file, highest file priority)
6. Environment variables (highest priority)

Environment variables use the KVAUTH_ prefix with nested delimiter __.
Example: KVAUTH_KV__HOST, KVAUTH_OAUTH__TENANT_NAME
"""

from __future__ import annotations

import logging
import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    NoDecode,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


logger = logging.getLogger("kvauth.config")


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    # Project-level pyproject.toml [tool.kvauth] (lowest file priority)
    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    kvauth_toml = Path("kvauth.toml")
    if kvauth_toml.exists():
        files.append(kvauth_toml)

    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "kvauth" / "config.toml"
    else:
        user_config = Path("~/.config/kvauth/config.toml")
    user_config = user_config.expanduser()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("KVAUTH_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)
        else:
            logger.warning("KVAUTH_CONFIG_FILE points to a missing file: %s", env_config)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", config_file, exc)
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("kvauth", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _split_csv(v: Any) -> list[str]:
    if isinstance(v, str):
        return [p.strip() for p in v.replace(",", " ").split() if p.strip()]
    return list(v or [])


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {
    "password",
    "client_secret",
    "secret",
}

_REDACTED = "********"


class KvSettings(BaseSettings):
    """Key-value store settings.

    A non-empty ``host`` selects the Redis backend when ``backend`` is
    ``auto``; otherwise the in-memory backend is used.

    Environment prefix: KVAUTH_KV__
    Example: KVAUTH_KV__HOST=cache.example.net
    """

    model_config = SettingsConfigDict(
        env_prefix="KVAUTH_KV__",
        extra="ignore",
    )

    backend: Literal["auto", "memory", "redis"] = Field(
        default="auto",
        description="Store backend: auto (redis when host is set), memory, or redis",
    )
    host: str = Field(default="", description="Redis host name")
    port: int = Field(default=6379, ge=1, le=65535, description="Redis port")
    db: int = Field(default=0, ge=0, description="Redis database index")
    tls: bool = Field(default=False, description="Connect to Redis over TLS")
    username: str = Field(default="", description="Redis ACL user name")
    password: str = Field(default="", description="Redis password")
    prefix: str = Field(default="kvauth", description="Key prefix for all Redis keys")
    cluster: bool = Field(default=False, description="Connect in Redis Cluster mode")

    managed_identity: bool = Field(
        default=False,
        description="Authenticate to Redis with a managed identity access token",
    )
    managed_identity_client_id: str = Field(
        default="",
        description="Client id of a user-assigned managed identity (empty for system-assigned)",
    )
    identity_scope: str = Field(
        default="https://redis.azure.com/.default",
        description="Token scope requested from the identity endpoint",
    )
    token_refresh_interval: float = Field(
        default=240.0,
        gt=0,
        description="Upper bound in seconds between credential refreshes",
    )
    credential_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds to wait for the identity endpoint",
    )

    connect_timeout: float = Field(default=5.0, gt=0, description="Redis connect timeout")
    socket_timeout: float = Field(default=5.0, gt=0, description="Redis socket timeout")

    queue_poll_interval: float = Field(
        default=1.0,
        gt=0,
        description="Seconds between queue polls when no local enqueue wakes the listener",
    )
    queue_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Handler failures before a queued value is treated as undelivered",
    )

    @property
    def use_redis(self) -> bool:
        """Whether the configuration selects the Redis backend."""
        if self.backend == "auto":
            return bool(self.host)
        return self.backend == "redis"


class OAuthSettings(BaseSettings):
    """Authorization server settings.

    Environment prefix: KVAUTH_OAUTH__
    Example: KVAUTH_OAUTH__TENANT_NAME=contoso

    TOML section: [tool.kvauth.oauth]
    """

    model_config = SettingsConfigDict(
        env_prefix="KVAUTH_OAUTH__",
        extra="ignore",
    )

    client_id: str = Field(default="", description="Application (client) id")
    client_secret: str = Field(default="", description="Application client secret")
    tenant_name: str = Field(default="", description="Directory tenant name")
    authority_domain: str = Field(
        default="",
        description="Authority host, derived from tenant_name when empty",
    )

    sign_in_policy: str = Field(default="B2C_1_Signup_Login")
    password_reset_policy: str = Field(default="B2C_1_Password_Reset")
    profile_edit_policy: str = Field(default="B2C_1_Profile_Editing")

    base_url: str = Field(
        default="http://localhost:3000",
        description="Public origin of the application",
    )
    redirect_uri: str = Field(
        default="",
        description="Callback URL, derived from base_url when empty",
    )
    scopes: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["openid", "offline_access"],
        description="Scopes requested at sign-in (comma or space separated)",
    )

    state_token_ttl: int = Field(
        default=7200,
        ge=60,
        description="Seconds a state token and its PKCE material stay valid",
    )
    token_exchange_timeout: float = Field(
        default=15.0,
        gt=0,
        description="Seconds to wait for the token endpoint",
    )
    cancellation_error_code: str = Field(
        default="AADB2C90091",
        description="Error code the authorization server reports for user cancellation",
    )

    @field_validator("scopes", mode="before")
    @classmethod
    def _parse_scopes(cls, v: Any) -> list[str]:
        """Accept a comma/space separated string (from env var) or a list."""
        return _split_csv(v)

    @property
    def resolved_authority_domain(self) -> str:
        """Authority host including scheme."""
        if self.authority_domain:
            return self.authority_domain.rstrip("/")
        return f"https://{self.tenant_name}.b2clogin.com"

    @property
    def resolved_redirect_uri(self) -> str:
        """Callback URL registered with the authorization server."""
        return self.redirect_uri or f"{self.base_url.rstrip('/')}/api/auth/redirect"

    def authority_url(self, policy: str) -> str:
        """Build the authority URL for a user-flow policy.

        Parameters
        ----------
        policy : str
            Policy (user flow) name.

        Returns
        -------
        str
            ``{authority_domain}/{tenant}.onmicrosoft.com/{policy}``.
        """
        return f"{self.resolved_authority_domain}/{self.tenant_name}.onmicrosoft.com/{policy}"


class SessionSettings(BaseSettings):
    """Session cookie settings.

    Environment prefix: KVAUTH_SESSION__
    Example: KVAUTH_SESSION__MAX_AGE=3600
    """

    model_config = SettingsConfigDict(
        env_prefix="KVAUTH_SESSION__",
        extra="ignore",
    )

    cookie_name: str = Field(default="session")
    max_age: int = Field(default=86400, ge=60, description="Cookie lifetime in seconds")
    secret: str = Field(
        default="",
        description="Cookie encryption secret (random per process when empty)",
    )
    secure: bool = Field(default=True, description="Set the Secure cookie attribute")


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: KVAUTH_LOG__
    Example: KVAUTH_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="KVAUTH_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class ServerSettings(BaseSettings):
    """HTTP server settings for ``kvauth serve``.

    Environment prefix: KVAUTH_SERVER__
    """

    model_config = SettingsConfigDict(
        env_prefix="KVAUTH_SERVER__",
        extra="ignore",
    )

    host: str = "127.0.0.1"
    port: int = Field(default=3000, ge=1, le=65535)
    reload: bool = False


# (env prefix, attribute, display name)
_SECTIONS: tuple[tuple[str, str, str], ...] = (
    ("KV", "kv", "Key-Value Store"),
    ("OAUTH", "oauth", "Authorization Server"),
    ("SESSION", "session", "Session Cookie"),
    ("LOG", "log", "Logging"),
    ("SERVER", "server", "HTTP Server"),
)


class KvAuthSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: KVAUTH_

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.kvauth] section
    3. ./kvauth.toml (project-level)
    4. ~/.config/kvauth/config.toml (user-level, overrides project)
    5. KVAUTH_CONFIG_FILE
    6. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="KVAUTH_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    kv: KvSettings = Field(default_factory=KvSettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    log: LogSettings = Field(default_factory=LogSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    def __init__(self, **data: Any) -> None:
        merged = _deep_merge(_load_toml_config(), data)
        super().__init__(**merged)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Rank environment variables above file and keyword values."""
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    def _redacted_dump(self) -> dict[str, Any]:
        # Dump from top-level model to avoid tainted section instances.
        return self.model_dump(exclude={attr: _SENSITIVE_FIELDS for _, attr, _ in _SECTIONS})

    def to_env(self) -> str:
        """Export settings as shell environment variables."""
        lines = [
            "# kvauth Environment Variables",
            "# Generated by: kvauth config --env",
            "",
        ]
        all_data = self._redacted_dump()

        for env_prefix, attr_name, _ in _SECTIONS:
            for field_name, field_value in all_data.get(attr_name, {}).items():
                env_name = f"KVAUTH_{env_prefix}__{field_name.upper()}"
                if isinstance(field_value, list):
                    value_str = ",".join(str(v) for v in field_value)
                elif isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                else:
                    value_str = str(field_value)
                lines.append(f'export {env_name}="{value_str}"')
            section_cls = type(getattr(self, attr_name))
            for redacted_name in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys()):
                lines.append(f'export KVAUTH_{env_prefix}__{redacted_name.upper()}="{_REDACTED}"')

        return "\n".join(lines)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["kvauth Configuration", "=" * 60, ""]
        all_data = self._redacted_dump()

        for _, attr_name, display_name in _SECTIONS:
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in all_data.get(attr_name, {}).items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:26} = {value_str}")
            section_cls = type(getattr(self, attr_name))
            lines.extend(
                f"  {rn:26} = {_REDACTED}"
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> KvAuthSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return KvAuthSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()
