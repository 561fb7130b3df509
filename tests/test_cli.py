"""Tests for main.py -- the operator CLI.

Each test points DATABASE_URL at a temporary SQLite file and clears the
get_settings() cache so the CLI opens that file rather than the default.
"""

from __future__ import annotations

import pytest

import main
from auth.store import IdentityStore
from core.config import get_settings


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    get_settings.cache_clear()
    yield url
    get_settings.cache_clear()


def test_seed_roles(db_url: str, capsys) -> None:
    assert main.main(["seed-roles"]) == 0
    store = IdentityStore(db_url)
    try:
        assert sorted(store.list_roles()) == ["admin", "booker", "dispatcher", "driver"]
    finally:
        store.close()
    assert "Roles present" in capsys.readouterr().out


def test_create_admin(db_url: str) -> None:
    assert main.main(["create-admin", "--username", "root", "--password", "root-pass-123", "--email", "root@example.com"]) == 0
    store = IdentityStore(db_url)
    try:
        admin = store.get_by_username("root")
        assert admin is not None
        assert store.get_roles(admin.user_id) == ["admin"]
        assert store.check_password(admin, "root-pass-123")
        assert [(c.type, c.value) for c in store.get_claims(admin.user_id)] == [("email", "root@example.com")]
    finally:
        store.close()


def test_create_admin_refuses_duplicate(db_url: str, capsys) -> None:
    assert main.main(["create-admin", "--username", "root", "--password", "root-pass-123"]) == 0
    assert main.main(["create-admin", "--username", "root", "--password", "other-pass-456"]) == 1
    assert "already exists" in capsys.readouterr().err


def test_create_admin_rejects_overlong_password(db_url: str, capsys) -> None:
    assert main.main(["create-admin", "--username", "root", "--password", "x" * 100]) == 1
    assert "at most 72 bytes" in capsys.readouterr().err
    store = IdentityStore(db_url)
    try:
        assert store.get_by_username("root") is None
    finally:
        store.close()


def test_no_command_prints_help(db_url: str, capsys) -> None:
    assert main.main([]) == 2
    assert "create-admin" in capsys.readouterr().out
