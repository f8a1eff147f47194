"""Unit tests for refresh credential issuance, redemption and revocation."""

from datetime import datetime, timedelta, timezone

import pytest

from tenantauth.service.errors import RefreshExpiredError, RefreshNotFoundError
from tenantauth.service.refresh import RefreshCredentialManager, build_refresh_hasher
from tenantauth.storage.memory import MemoryStore


class DateClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return DateClock()


@pytest.fixture
def manager(store, clock):
    return RefreshCredentialManager(
        store,
        default_ttl=timedelta(days=7),
        hasher=build_refresh_hasher(fast=True),
        clock=clock,
    )


@pytest.fixture
def user(store):
    return store.create_user("ada@example.com", tenant_id="acme")


class TestIssue:
    def test_only_hash_is_stored(self, manager, store, user):
        issued = manager.issue(user.id)

        records = store.list_refresh_credentials()
        assert len(records) == 1
        assert records[0].id == issued.record_id
        assert records[0].token_hash != issued.secret
        assert issued.secret not in records[0].token_hash

    def test_secrets_are_unique_and_long(self, manager, user):
        first = manager.issue(user.id)
        second = manager.issue(user.id)

        assert first.secret != second.secret
        assert len(first.secret) >= 40

    def test_default_and_explicit_ttl(self, manager, clock, user):
        assert manager.issue(user.id).expires_at == clock.now + timedelta(days=7)
        assert manager.issue(user.id, timedelta(days=30)).expires_at == clock.now + timedelta(days=30)

    def test_repr_hides_secret(self, manager, user):
        issued = manager.issue(user.id)

        assert issued.secret not in repr(issued)


class TestRedeem:
    def test_redeem_returns_owner(self, manager, user):
        issued = manager.issue(user.id)

        assert manager.redeem(issued.secret) == user.id

    def test_redeem_picks_matching_record_among_many(self, manager, store, user):
        other = store.create_user("bob@example.com", tenant_id="acme")
        manager.issue(other.id)
        mine = manager.issue(user.id)
        manager.issue(other.id)

        assert manager.locate(mine.secret).id == mine.record_id

    def test_unknown_secret_is_not_found(self, manager, user):
        manager.issue(user.id)

        with pytest.raises(RefreshNotFoundError):
            manager.redeem("not-a-real-secret")

    def test_empty_secret_is_not_found(self, manager):
        with pytest.raises(RefreshNotFoundError):
            manager.redeem("")

    def test_expired_match_is_deleted_on_use(self, manager, store, clock, user):
        issued = manager.issue(user.id)
        clock.advance(days=7)

        with pytest.raises(RefreshExpiredError):
            manager.redeem(issued.secret)
        assert store.list_refresh_credentials() == []

        # Once deleted, the secret is simply unknown.
        with pytest.raises(RefreshNotFoundError):
            manager.redeem(issued.secret)

    def test_expired_records_seen_during_scan_are_purged(self, manager, store, clock, user):
        manager.issue(user.id, timedelta(days=1))
        keeper = manager.issue(user.id, timedelta(days=10))
        clock.advance(days=2)

        assert manager.redeem(keeper.secret) == user.id
        assert [r.id for r in store.list_refresh_credentials()] == [keeper.record_id]


class TestRevoke:
    def test_revoke_is_idempotent(self, manager, store, user):
        issued = manager.issue(user.id)

        manager.revoke(issued.record_id)
        manager.revoke(issued.record_id)
        manager.revoke("never-existed")

        assert store.list_refresh_credentials() == []
        with pytest.raises(RefreshNotFoundError):
            manager.redeem(issued.secret)

    def test_revoke_all_only_touches_one_user(self, manager, store, user):
        other = store.create_user("bob@example.com", tenant_id="acme")
        manager.issue(user.id)
        manager.issue(user.id)
        survivor = manager.issue(other.id)

        assert manager.revoke_all(user.id) == 2
        assert [r.id for r in store.list_refresh_credentials()] == [survivor.record_id]


class TestRotate:
    def test_rotation_replaces_secret_and_keeps_ceiling(self, manager, clock, user):
        original = manager.issue(user.id)
        clock.advance(days=3)

        rotated = manager.rotate(original.secret)

        assert rotated.secret != original.secret
        assert rotated.expires_at == original.expires_at
        assert manager.redeem(rotated.secret) == user.id
        with pytest.raises(RefreshNotFoundError):
            manager.redeem(original.secret)

    def test_rotating_twice_with_same_secret_fails(self, manager, user):
        original = manager.issue(user.id)
        manager.rotate(original.secret)

        with pytest.raises(RefreshNotFoundError):
            manager.rotate(original.secret)
