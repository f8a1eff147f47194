from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from tenantauth.logging import get_logger
from tenantauth.service.errors import RefreshExpiredError, RefreshNotFoundError
from tenantauth.storage.models import RefreshCredential, utcnow

logger = get_logger(__name__)

SECRET_BYTES = 32


class RefreshStore(Protocol):
    def create_refresh_credential(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshCredential: ...

    def list_refresh_credentials(self) -> List[RefreshCredential]: ...

    def delete_refresh_credential(self, record_id: str) -> bool: ...

    def delete_user_refresh_credentials(self, user_id: str) -> int: ...


@dataclass(frozen=True)
class IssuedRefreshCredential:
    """Plaintext secret plus its record; the secret is never available again."""

    secret: str
    record_id: str
    user_id: str
    expires_at: datetime

    def __repr__(self) -> str:
        return (
            f"IssuedRefreshCredential(record_id={self.record_id!r}, "
            f"user_id={self.user_id!r}, expires_at={self.expires_at!r})"
        )


def build_refresh_hasher(*, fast: bool = False) -> PasswordHasher:
    """Hasher for refresh secrets.

    The secrets carry 256 bits of entropy, so the work factor only needs to
    make offline guessing pointless, not slow down dictionary attacks. Every
    redemption verifies against each stored record, which keeps the memory
    cost low.
    """
    if fast:
        return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    return PasswordHasher(time_cost=1, memory_cost=8192, parallelism=1, type=Type.ID)


class RefreshCredentialManager:
    """Issues, redeems, rotates and revokes long-lived refresh credentials.

    Clients present only the plaintext secret, with no record identifier, so
    redemption verifies the secret against every stored record. The cost is
    linear in the number of live credentials; expired records found during the
    scan are deleted to keep that number down.
    """

    def __init__(
        self,
        store: RefreshStore,
        *,
        default_ttl: timedelta,
        hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.default_ttl = default_ttl
        self._hasher = hasher or build_refresh_hasher()
        self._clock = clock
        self._rotate_lock = threading.Lock()

    def issue(self, user_id: str, ttl: Optional[timedelta] = None) -> IssuedRefreshCredential:
        return self._issue(user_id, self._clock() + (ttl or self.default_ttl))

    def _issue(self, user_id: str, expires_at: datetime) -> IssuedRefreshCredential:
        secret = secrets.token_urlsafe(SECRET_BYTES)
        record = self.store.create_refresh_credential(
            user_id, self._hasher.hash(secret), expires_at
        )
        logger.info(
            "refresh_credential_issued",
            user_id=user_id,
            record_id=record.id,
            expires_at=record.expires_at.isoformat(),
        )
        return IssuedRefreshCredential(
            secret=secret,
            record_id=record.id,
            user_id=user_id,
            expires_at=record.expires_at,
        )

    def _matches(self, record: RefreshCredential, secret: str) -> bool:
        try:
            return self._hasher.verify(record.token_hash, secret)
        except (InvalidHash, VerificationError):
            return False

    def locate(self, secret: str) -> RefreshCredential:
        """Return the live record for ``secret``.

        Raises RefreshExpiredError when the matching record has passed its
        expiry (the record is deleted first) and RefreshNotFoundError when no
        record matches.
        """
        if not secret:
            raise RefreshNotFoundError()
        now = self._clock()
        stale: list[str] = []
        match: Optional[RefreshCredential] = None
        for record in self.store.list_refresh_credentials():
            if self._matches(record, secret):
                match = record
                break
            if record.is_expired(now):
                stale.append(record.id)
        for record_id in stale:
            self.store.delete_refresh_credential(record_id)
        if stale:
            logger.info("refresh_credentials_expired_purged", count=len(stale))

        if match is None:
            logger.info("refresh_credential_not_found")
            raise RefreshNotFoundError()
        if match.is_expired(now):
            self.store.delete_refresh_credential(match.id)
            logger.info(
                "refresh_credential_expired", record_id=match.id, user_id=match.user_id
            )
            raise RefreshExpiredError()
        return match

    def redeem(self, secret: str) -> str:
        return self.locate(secret).user_id

    def rotate(self, secret: str) -> IssuedRefreshCredential:
        """Swap ``secret`` for a fresh one carrying the same absolute expiry.

        Serialized so two redemptions of one secret cannot both rotate it; the
        loser sees RefreshNotFoundError.
        """
        with self._rotate_lock:
            record = self.locate(secret)
            if not self.store.delete_refresh_credential(record.id):
                raise RefreshNotFoundError()
            issued = self._issue(record.user_id, record.expires_at)
        logger.info(
            "refresh_credential_rotated",
            user_id=record.user_id,
            previous_record_id=record.id,
            record_id=issued.record_id,
        )
        return issued

    def revoke(self, record_id: str) -> None:
        if self.store.delete_refresh_credential(record_id):
            logger.info("refresh_credential_revoked", record_id=record_id)

    def revoke_all(self, user_id: str) -> int:
        return self.store.delete_user_refresh_credentials(user_id)
