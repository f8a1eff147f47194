from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation, StoreUnavailable
from tenantauth.storage.models import (
    ROLE_ADMIN,
    ROLE_MEMBER,
    RefreshCredential,
    User,
    utcnow,
)

_UPDATABLE_USER_COLUMNS = (
    "email",
    "first_name",
    "last_name",
    "avatar_url",
    "role",
    "is_active",
)

_REQUIRED_TABLES = ("app_user", "user_auth_credential", "refresh_credential")


class PostgresStore:
    """Postgres-backed credential store. DDL lives in ``scripts/schema.sql``."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable() from exc

    def _verify_required_schema(self) -> None:
        """Fail fast when the credential tables have not been installed."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict) -> User:
        now = utcnow()
        return User(
            id=str(row["id"]),
            email=row["email"],
            tenant_id=str(row["tenant_id"]),
            role=row.get("role", ROLE_MEMBER),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            avatar_url=row.get("avatar_url"),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or now,
            updated_at=row.get("updated_at") or now,
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshCredential:
        return RefreshCredential(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        tenant_id: str,
        role: str = ROLE_MEMBER,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, tenant_id, role, first_name, last_name, avatar_url, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, tenant_id, role, first_name, last_name, avatar_url, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str, *, tenant_id: str | None = None) -> Optional[User]:
        try:
            with self._connect() as conn:
                if tenant_id is None:
                    row = conn.execute(
                        "SELECT * FROM app_user WHERE id = %s", (user_id,)
                    ).fetchone()
                else:
                    row = conn.execute(
                        "SELECT * FROM app_user WHERE id = %s AND tenant_id = %s",
                        (user_id, tenant_id),
                    ).fetchone()
        except errors.InvalidTextRepresentation:
            # not a uuid, so no such user
            return None
        return self._user_from_row(row) if row else None

    def find_users_by_email(self, email: str) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s AND tenant_id = %s",
                (email, tenant_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, tenant_id: str, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user WHERE tenant_id = %s ORDER BY created_at ASC LIMIT %s",
                (tenant_id, limit),
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user(self, user_id: str, *, tenant_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - set(_UPDATABLE_USER_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        columns = [c for c in _UPDATABLE_USER_COLUMNS if c in fields]
        assignments = ", ".join(f"{c} = %s" for c in columns)
        if assignments:
            assignments += ", "
        params = [fields[c] for c in columns] + [user_id, tenant_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}updated_at = now() "
                    "WHERE id = %s AND tenant_id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.InvalidTextRepresentation:
            return None
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row) if row else None

    def count_active_admins(self, tenant_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM app_user WHERE tenant_id = %s AND role = %s AND is_active",
                (tenant_id, ROLE_ADMIN),
            ).fetchone()
        return int(row["total"]) if row else 0

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # refresh credentials
    def create_refresh_credential(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshCredential:
        record_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_credential (id, user_id, token_hash, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (record_id, user_id, token_hash, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for refresh credential", {"user_id": user_id}
            )
        return self._refresh_from_row(row)

    def list_refresh_credentials(self) -> List[RefreshCredential]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM refresh_credential").fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def delete_refresh_credential(self, record_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_credential WHERE id = %s", (record_id,)
            )
            return cur.rowcount > 0

    def delete_user_refresh_credentials(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_credential WHERE user_id = %s", (user_id,)
            )
            deleted = cur.rowcount or 0
        if deleted:
            self.logger.info("refresh_credentials_purged", user_id=user_id, count=deleted)
        return deleted
