import importlib.util
from pathlib import Path

import pytest

from tenantauth.service.auth import build_password_hasher
from tenantauth.storage.memory import MemoryStore

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


bootstrap = _load_script()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hasher():
    return build_password_hasher(fast=True)


def test_creates_admin_with_password(store, hasher):
    result = bootstrap.bootstrap_admin(
        store, "Root@Acme.test", "bootstrap-password", "acme", hasher=hasher
    )

    assert result["status"] == "created"
    user = store.get_user(result["user_id"])
    assert user.email == "root@acme.test"
    assert user.role == "admin"
    stored_hash, algo = store.get_password_record(user.id)
    assert algo == "argon2id"
    assert hasher.verify(stored_hash, "bootstrap-password")


def test_promotes_existing_member(store, hasher):
    member = store.create_user("root@acme.test", tenant_id="acme", is_active=False)

    result = bootstrap.bootstrap_admin(store, "root@acme.test", "bootstrap-password", "acme", hasher=hasher)

    assert result == {"user_id": member.id, "email": "root@acme.test", "status": "promoted"}
    promoted = store.get_user(member.id)
    assert promoted.role == "admin"
    assert promoted.is_active is True


def test_existing_admin_is_left_alone(store, hasher):
    admin = store.create_user("root@acme.test", tenant_id="acme", role="admin")

    result = bootstrap.bootstrap_admin(store, "root@acme.test", "bootstrap-password", "acme", hasher=hasher)

    assert result["status"] == "already_admin"
    assert store.get_password_record(admin.id) is None


def test_dry_run_writes_nothing(store, hasher):
    result = bootstrap.bootstrap_admin(
        store, "root@acme.test", "bootstrap-password", "acme", dry_run=True, hasher=hasher
    )

    assert result["status"] == "dry_run"
    assert store.list_users("acme") == []


def test_short_password_is_refused(store, hasher):
    with pytest.raises(ValueError):
        bootstrap.bootstrap_admin(store, "root@acme.test", "short", "acme", hasher=hasher)


def test_cli_requires_credentials(monkeypatch, capsys):
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)

    assert bootstrap.main([]) == 1
    assert "required" in capsys.readouterr().out
