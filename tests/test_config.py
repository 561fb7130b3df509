"""Unit tests for core/config.py -- Settings validation.

Covers:
- production mode without SECRET_KEY refuses to start
- dev mode generates a usable key
- short keys rejected in both modes
- comma-separated ALLOWED_ROLES / ALLOWED_CLIENT_IDS from the environment
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import ACCESS_TOKEN_TTL_SECONDS, MIN_SECRET_LENGTH, Settings

GOOD_SECRET = "k" * MIN_SECRET_LENGTH


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("DEBUG", "SECRET_KEY", "ALLOWED_ROLES", "ALLOWED_CLIENT_IDS", "REFRESH_STORE"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSecretKey:
    def test_production_requires_secret(self, clean_env) -> None:
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            Settings(_env_file=None)

    def test_debug_generates_secret(self, clean_env) -> None:
        settings = Settings(_env_file=None, debug=True)
        assert len(settings.secret_key) >= MIN_SECRET_LENGTH

    @pytest.mark.parametrize("debug", [True, False])
    def test_short_secret_rejected(self, clean_env, debug: bool) -> None:
        with pytest.raises(ValidationError, match="at least"):
            Settings(_env_file=None, debug=debug, secret_key="too-short")

    def test_secret_from_environment(self, clean_env) -> None:
        clean_env.setenv("SECRET_KEY", GOOD_SECRET)
        assert Settings(_env_file=None).secret_key == GOOD_SECRET


class TestDefaults:
    def test_token_defaults(self, clean_env) -> None:
        settings = Settings(_env_file=None, secret_key=GOOD_SECRET)
        assert settings.access_token_expire_seconds == ACCESS_TOKEN_TTL_SECONDS == 3600
        assert settings.refresh_token_expire_seconds == 0
        assert settings.refresh_store == "memory"
        assert settings.allowed_roles == ["admin", "dispatcher", "booker", "driver"]
        assert settings.allowed_client_ids == []

    def test_unknown_refresh_store_rejected(self, clean_env) -> None:
        clean_env.setenv("REFRESH_STORE", "redis")
        with pytest.raises(ValidationError):
            Settings(_env_file=None, secret_key=GOOD_SECRET)


class TestListFields:
    def test_roles_from_csv(self, clean_env) -> None:
        clean_env.setenv("ALLOWED_ROLES", " Admin, driver,ADMIN,, Auditor ")
        settings = Settings(_env_file=None, secret_key=GOOD_SECRET)
        assert settings.allowed_roles == ["admin", "driver", "auditor"]

    def test_client_ids_from_csv(self, clean_env) -> None:
        clean_env.setenv("ALLOWED_CLIENT_IDS", "mobile-app,web-portal")
        settings = Settings(_env_file=None, secret_key=GOOD_SECRET)
        assert settings.allowed_client_ids == ["mobile-app", "web-portal"]
