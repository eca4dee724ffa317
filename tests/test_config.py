"""Tests for the layered configuration system."""

from __future__ import annotations

import pytest

from kvauth.config import (
    KvAuthSettings,
    KvSettings,
    OAuthSettings,
    clear_settings,
    get_settings,
)


class TestDefaults:
    """Tests for built-in defaults."""

    def test_defaults(self) -> None:
        """Without files or env vars the defaults apply."""
        settings = KvAuthSettings()
        assert settings.kv.backend == "auto"
        assert settings.kv.port == 6379
        assert settings.kv.identity_scope == "https://redis.azure.com/.default"
        assert settings.oauth.scopes == ["openid", "offline_access"]
        assert settings.oauth.state_token_ttl == 7200
        assert settings.oauth.cancellation_error_code == "AADB2C90091"
        assert settings.session.cookie_name == "session"
        assert settings.session.secure is True
        assert settings.log.level == "WARNING"
        assert settings.server.port == 3000


class TestKvSettings:
    """Tests for backend selection."""

    @pytest.mark.parametrize(
        ("backend", "host", "expected"),
        [
            ("auto", "", False),
            ("auto", "cache.example.net", True),
            ("memory", "cache.example.net", False),
            ("redis", "", True),
        ],
    )
    def test_use_redis(self, backend, host, expected) -> None:
        """auto selects Redis only when a host is configured."""
        assert KvSettings(backend=backend, host=host).use_redis is expected

    def test_rejects_bad_port(self) -> None:
        """Ports are range checked."""
        with pytest.raises(ValueError):
            KvSettings(port=0)


class TestOAuthSettings:
    """Tests for derived authorization server values."""

    def test_derived_urls(self) -> None:
        """Authority domain and redirect URI derive from tenant and base URL."""
        settings = OAuthSettings(tenant_name="contoso", base_url="https://app.example.com/")
        assert settings.resolved_authority_domain == "https://contoso.b2clogin.com"
        assert settings.resolved_redirect_uri == "https://app.example.com/api/auth/redirect"
        assert settings.authority_url("B2C_1_x") == (
            "https://contoso.b2clogin.com/contoso.onmicrosoft.com/B2C_1_x"
        )

    def test_explicit_overrides(self) -> None:
        """Explicit authority domain and redirect URI win."""
        settings = OAuthSettings(
            tenant_name="contoso",
            authority_domain="https://login.contoso.com/",
            redirect_uri="https://other.example.com/cb",
        )
        assert settings.resolved_authority_domain == "https://login.contoso.com"
        assert settings.resolved_redirect_uri == "https://other.example.com/cb"

    def test_scopes_from_env(self, monkeypatch) -> None:
        """Scopes accept a comma or space separated string."""
        monkeypatch.setenv("KVAUTH_OAUTH__SCOPES", "openid, offline_access api://read")
        assert OAuthSettings().scopes == ["openid", "offline_access", "api://read"]

    def test_state_ttl_minimum(self) -> None:
        """Very short state lifetimes are rejected."""
        with pytest.raises(ValueError):
            OAuthSettings(state_token_ttl=10)


class TestLayering:
    """Tests for file and environment precedence."""

    def test_env_override(self, monkeypatch) -> None:
        """Nested env vars set section fields."""
        monkeypatch.setenv("KVAUTH_KV__HOST", "cache.example.net")
        monkeypatch.setenv("KVAUTH_KV__PORT", "6380")
        monkeypatch.setenv("KVAUTH_LOG__LEVEL", "DEBUG")
        settings = KvAuthSettings()
        assert settings.kv.host == "cache.example.net"
        assert settings.kv.port == 6380
        assert settings.kv.use_redis
        assert settings.log.level == "DEBUG"

    def test_pyproject_section(self, tmp_path) -> None:
        """[tool.kvauth] in pyproject.toml is read."""
        (tmp_path / "pyproject.toml").write_text(
            '[project]\nname = "app"\n\n[tool.kvauth.oauth]\ntenant_name = "contoso"\n',
            encoding="utf-8",
        )
        assert KvAuthSettings().oauth.tenant_name == "contoso"

    def test_kvauth_toml_overrides_pyproject(self, tmp_path) -> None:
        """kvauth.toml ranks above pyproject.toml and merges per field."""
        (tmp_path / "pyproject.toml").write_text(
            '[tool.kvauth.kv]\nhost = "from-pyproject"\nport = 7000\n', encoding="utf-8"
        )
        (tmp_path / "kvauth.toml").write_text('[kv]\nhost = "from-kvauth"\n', encoding="utf-8")
        settings = KvAuthSettings()
        assert settings.kv.host == "from-kvauth"
        assert settings.kv.port == 7000

    def test_user_config(self, tmp_path) -> None:
        """The user config file overrides project files."""
        (tmp_path / "kvauth.toml").write_text('[session]\ncookie_name = "project"\n', encoding="utf-8")
        user_dir = tmp_path / ".config" / "kvauth"
        user_dir.mkdir(parents=True)
        (user_dir / "config.toml").write_text('[session]\ncookie_name = "user"\n', encoding="utf-8")
        assert KvAuthSettings().session.cookie_name == "user"

    def test_config_file_env(self, tmp_path, monkeypatch) -> None:
        """KVAUTH_CONFIG_FILE is the highest-priority file."""
        (tmp_path / "kvauth.toml").write_text('[kv]\nprefix = "project"\n', encoding="utf-8")
        explicit = tmp_path / "deploy.toml"
        explicit.write_text('[kv]\nprefix = "deploy"\n', encoding="utf-8")
        monkeypatch.setenv("KVAUTH_CONFIG_FILE", str(explicit))
        assert KvAuthSettings().kv.prefix == "deploy"

    def test_missing_config_file(self, tmp_path, monkeypatch, caplog) -> None:
        """A missing KVAUTH_CONFIG_FILE is logged and skipped."""
        monkeypatch.setenv("KVAUTH_CONFIG_FILE", str(tmp_path / "nope.toml"))
        with caplog.at_level("WARNING", logger="kvauth.config"):
            settings = KvAuthSettings()
        assert settings.kv.prefix == "kvauth"
        assert "missing file" in caplog.text

    def test_unreadable_file_ignored(self, tmp_path, caplog) -> None:
        """Invalid TOML is logged and skipped."""
        (tmp_path / "kvauth.toml").write_text("[kv\nhost = ", encoding="utf-8")
        with caplog.at_level("WARNING", logger="kvauth.config"):
            settings = KvAuthSettings()
        assert settings.kv.host == ""
        assert "Ignoring unreadable config file" in caplog.text

    def test_env_beats_files(self, tmp_path, monkeypatch) -> None:
        """Environment variables rank above every file."""
        (tmp_path / "kvauth.toml").write_text('[kv]\nhost = "file-host"\ndb = 3\n', encoding="utf-8")
        monkeypatch.setenv("KVAUTH_KV__HOST", "env-host")
        settings = KvAuthSettings()
        assert settings.kv.host == "env-host"
        assert settings.kv.db == 3

    def test_keyword_arguments_override_files(self, tmp_path) -> None:
        """Keyword values rank above files."""
        (tmp_path / "kvauth.toml").write_text('[oauth]\nclient_id = "file"\n', encoding="utf-8")
        assert KvAuthSettings(oauth={"client_id": "kw"}).oauth.client_id == "kw"


class TestOutput:
    """Tests for show() and to_env()."""

    def _settings(self) -> KvAuthSettings:
        return KvAuthSettings(
            kv={"host": "cache", "password": "redis-pass"},
            oauth={"client_secret": "oauth-secret", "scopes": ["openid", "api://read"]},
            session={"secret": "cookie-secret", "secure": False},
        )

    def test_to_env(self) -> None:
        """to_env exports every section with secrets redacted."""
        output = self._settings().to_env()
        assert 'export KVAUTH_KV__HOST="cache"' in output
        assert 'export KVAUTH_OAUTH__SCOPES="openid,api://read"' in output
        assert 'export KVAUTH_SESSION__SECURE="false"' in output
        assert 'export KVAUTH_KV__PASSWORD="********"' in output
        assert 'export KVAUTH_OAUTH__CLIENT_SECRET="********"' in output
        assert 'export KVAUTH_SESSION__SECRET="********"' in output
        for secret in ("redis-pass", "oauth-secret", "cookie-secret"):
            assert secret not in output

    def test_show(self) -> None:
        """show() lists sections with secrets redacted."""
        output = self._settings().show()
        assert "Key-Value Store" in output
        assert "Authorization Server" in output
        assert "HTTP Server" in output
        assert "********" in output
        for secret in ("redis-pass", "oauth-secret", "cookie-secret"):
            assert secret not in output


class TestGetSettings:
    """Tests for the cached accessor."""

    def test_cached_until_cleared(self, monkeypatch) -> None:
        """get_settings caches until clear_settings is called."""
        clear_settings()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("KVAUTH_KV__PREFIX", "reloaded")
        clear_settings()
        assert get_settings().kv.prefix == "reloaded"
        clear_settings()
