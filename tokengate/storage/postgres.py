from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokengate.logging import get_logger
from tokengate.storage.cursors import decode_time_id_cursor
from tokengate.storage.errors import (
    ConstraintViolation,
    GRANT_REFERENCE,
    ONE_ACTIVE_GRANT,
    UNIQUE_EMAIL,
    USER_REFERENCE,
)
from tokengate.storage.models import (
    REQUEST_PENDING,
    AccessGrant,
    AccessRequest,
    RefreshSecret,
    User,
    new_id,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS access_grant (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        jti TEXT NOT NULL UNIQUE,
        scopes TEXT[] NOT NULL,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        last_used_at TIMESTAMPTZ,
        static_token_tag TEXT UNIQUE
    )
    """,
    # at most one active grant per user, whatever the application does
    """
    CREATE UNIQUE INDEX IF NOT EXISTS access_grant_one_active_per_user
        ON access_grant (user_id) WHERE active
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_secret (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        grant_id TEXT NOT NULL REFERENCES access_grant(id) ON DELETE CASCADE,
        secret_hash TEXT NOT NULL,
        lookup_tag TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS refresh_secret_one_live_per_grant
        ON refresh_secret (grant_id) WHERE revoked_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS access_request (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        scopes TEXT[] NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'approved', 'rejected')),
        admin_note TEXT,
        grant_id TEXT REFERENCES access_grant(id) ON DELETE SET NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS access_request_status_created
        ON access_request (status, created_at DESC, id DESC)
    """,
)


def _constraint_name(exc: Exception) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    return getattr(diag, "constraint_name", None) if diag else None


class PostgresStore:
    """Postgres-backed store for users, grants, refresh secrets and requests.

    Conditional writes lean on the database: ``FOR UPDATE`` inside a
    transaction for read-modify-write, ``rowcount`` for compare-and-set and
    partial unique indexes as the last line against duplicate active rows.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            is_admin=bool(row.get("is_admin", False)),
            created_at=row["created_at"],
        )

    @staticmethod
    def _grant_from_row(row: dict) -> AccessGrant:
        return AccessGrant(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            jti=row["jti"],
            scopes=list(row.get("scopes") or []),
            active=bool(row["active"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            last_used_at=row.get("last_used_at"),
            static_token_tag=row.get("static_token_tag"),
        )

    @staticmethod
    def _secret_from_row(row: dict) -> RefreshSecret:
        return RefreshSecret(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            grant_id=str(row["grant_id"]),
            secret_hash=row["secret_hash"],
            lookup_tag=row["lookup_tag"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _request_from_row(row: dict) -> AccessRequest:
        return AccessRequest(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            scopes=list(row.get("scopes") or []),
            status=row["status"],
            admin_note=row.get("admin_note"),
            grant_id=str(row["grant_id"]) if row.get("grant_id") else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch_one(self, sql: str, params: tuple) -> Optional[dict]:
        with self._connect() as conn:
            return conn.execute(sql, params).fetchone()

    # users
    def create_user(self, email: str, *, is_admin: bool = False) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, is_admin)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), email, is_admin),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint=UNIQUE_EMAIL
            )
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        row = self._fetch_one("SELECT * FROM app_user WHERE id = %s", (user_id,))
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self._fetch_one("SELECT * FROM app_user WHERE email = %s", (email,))
        return self._user_from_row(row) if row else None

    def set_user_admin(self, user_id: str, is_admin: bool) -> Optional[User]:
        row = self._fetch_one(
            "UPDATE app_user SET is_admin = %s WHERE id = %s RETURNING *",
            (is_admin, user_id),
        )
        return self._user_from_row(row) if row else None

    # grants
    def get_grant(self, grant_id: str) -> Optional[AccessGrant]:
        row = self._fetch_one("SELECT * FROM access_grant WHERE id = %s", (grant_id,))
        return self._grant_from_row(row) if row else None

    def get_grant_by_jti(self, jti: str) -> Optional[AccessGrant]:
        row = self._fetch_one("SELECT * FROM access_grant WHERE jti = %s", (jti,))
        return self._grant_from_row(row) if row else None

    def get_grant_by_static_tag(self, tag: str) -> Optional[AccessGrant]:
        row = self._fetch_one(
            "SELECT * FROM access_grant WHERE static_token_tag = %s", (tag,)
        )
        return self._grant_from_row(row) if row else None

    def get_active_grant_for_user(self, user_id: str) -> Optional[AccessGrant]:
        row = self._fetch_one(
            "SELECT * FROM access_grant WHERE user_id = %s AND active", (user_id,)
        )
        return self._grant_from_row(row) if row else None

    def list_grants_for_user(self, user_id: str) -> List[AccessGrant]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM access_grant WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._grant_from_row(row) for row in rows]

    def upsert_active_grant(
        self, user_id: str, scopes: List[str], expires_at: datetime, *, now: datetime
    ) -> tuple[AccessGrant, bool]:
        """Update the user's active grant in place or insert a new one.

        The row lock serializes concurrent upserts that both see an existing
        grant; concurrent inserts collide on the partial unique index.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        "SELECT id FROM access_grant WHERE user_id = %s AND active FOR UPDATE",
                        (user_id,),
                    ).fetchone()
                    if row:
                        updated = conn.execute(
                            """
                            UPDATE access_grant
                               SET scopes = %s, expires_at = %s, revoked_at = NULL
                             WHERE id = %s
                         RETURNING *
                            """,
                            (list(scopes), expires_at, row["id"]),
                        ).fetchone()
                        return self._grant_from_row(updated), False
                    grant = AccessGrant.new(user_id, scopes, expires_at, now=now)
                    inserted = conn.execute(
                        """
                        INSERT INTO access_grant (id, user_id, jti, scopes, active, created_at, expires_at)
                        VALUES (%s, %s, %s, %s, TRUE, %s, %s)
                        RETURNING *
                        """,
                        (grant.id, user_id, grant.jti, list(scopes), now, expires_at),
                    ).fetchone()
                    return self._grant_from_row(inserted), True
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "user already has an active grant",
                {"user_id": user_id},
                constraint=_constraint_name(exc) or ONE_ACTIVE_GRANT,
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "grant user missing", {"user_id": user_id}, constraint=USER_REFERENCE
            )

    def revoke_grant(self, grant_id: str, *, now: datetime) -> Optional[AccessGrant]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE access_grant
                       SET active = FALSE, revoked_at = COALESCE(revoked_at, %s)
                     WHERE id = %s
                 RETURNING *
                    """,
                    (now, grant_id),
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    "UPDATE refresh_secret SET revoked_at = %s WHERE grant_id = %s AND revoked_at IS NULL",
                    (now, grant_id),
                )
        return self._grant_from_row(row)

    def touch_grant(self, grant_id: str, *, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE access_grant SET last_used_at = %s WHERE id = %s",
                (now, grant_id),
            )

    def set_static_token_tag(self, grant_id: str, tag: str) -> Optional[AccessGrant]:
        try:
            row = self._fetch_one(
                "UPDATE access_grant SET static_token_tag = %s WHERE id = %s RETURNING *",
                (tag, grant_id),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("static token tag collision", {"grant_id": grant_id})
        return self._grant_from_row(row) if row else None

    def expire_grants(self, *, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE access_grant SET active = FALSE WHERE active AND expires_at <= %s",
                (now,),
            )
            return result.rowcount

    # refresh secrets
    def create_refresh_secret(
        self,
        grant_id: str,
        user_id: str,
        secret_hash: str,
        lookup_tag: str,
        expires_at: datetime,
        *,
        now: datetime,
    ) -> RefreshSecret:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    # serialize secret replacement per grant
                    conn.execute(
                        "SELECT 1 FROM access_grant WHERE id = %s FOR UPDATE", (grant_id,)
                    )
                    conn.execute(
                        "UPDATE refresh_secret SET revoked_at = %s WHERE grant_id = %s AND revoked_at IS NULL",
                        (now, grant_id),
                    )
                    row = conn.execute(
                        """
                        INSERT INTO refresh_secret (id, user_id, grant_id, secret_hash, lookup_tag, created_at, expires_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (new_id(), user_id, grant_id, secret_hash, lookup_tag, now, expires_at),
                    ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "refresh secret grant missing",
                {"grant_id": grant_id},
                constraint=GRANT_REFERENCE,
            )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh secret conflict",
                {"grant_id": grant_id},
                constraint=_constraint_name(exc),
            )
        return self._secret_from_row(row)

    def get_refresh_secret_by_tag(self, lookup_tag: str) -> Optional[RefreshSecret]:
        row = self._fetch_one(
            "SELECT * FROM refresh_secret WHERE lookup_tag = %s", (lookup_tag,)
        )
        return self._secret_from_row(row) if row else None

    def list_refresh_secrets_for_grant(self, grant_id: str) -> List[RefreshSecret]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_secret WHERE grant_id = %s ORDER BY created_at",
                (grant_id,),
            ).fetchall()
        return [self._secret_from_row(row) for row in rows]

    def revoke_refresh_secret_if_live(self, secret_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_secret SET revoked_at = %s
                 WHERE id = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (now, secret_id, now),
            )
            return result.rowcount == 1

    def purge_refresh_secrets(self, *, expired_before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_secret WHERE expires_at < %s", (expired_before,)
            )
            return result.rowcount

    # access requests
    def create_request(
        self, user_id: str, scopes: List[str], *, now: datetime
    ) -> AccessRequest:
        try:
            row = self._fetch_one(
                """
                INSERT INTO access_request (id, user_id, scopes, status, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (new_id(), user_id, list(scopes), REQUEST_PENDING, now, now),
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "request user missing", {"user_id": user_id}, constraint=USER_REFERENCE
            )
        return self._request_from_row(row)

    def get_request(self, request_id: str) -> Optional[AccessRequest]:
        row = self._fetch_one("SELECT * FROM access_request WHERE id = %s", (request_id,))
        return self._request_from_row(row) if row else None

    def list_requests(
        self,
        status: Optional[str] = None,
        *,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> List[AccessRequest]:
        clauses: List[str] = []
        params: List[Any] = []
        if status:
            clauses.append("status = %s")
            params.append(status)
        if cursor:
            created_at, identifier = decode_time_id_cursor(cursor)
            clauses.append("(created_at, id) < (%s, %s)")
            params.extend([created_at, identifier])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM access_request {where} ORDER BY created_at DESC, id DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [self._request_from_row(row) for row in rows]

    def decide_request(
        self,
        request_id: str,
        status: str,
        *,
        now: datetime,
        note: Optional[str] = None,
        grant_id: Optional[str] = None,
    ) -> Optional[AccessRequest]:
        row = self._fetch_one(
            """
            UPDATE access_request
               SET status = %s, admin_note = %s, grant_id = %s, updated_at = %s
             WHERE id = %s AND status = %s
         RETURNING *
            """,
            (status, note, grant_id, now, request_id, REQUEST_PENDING),
        )
        return self._request_from_row(row) if row else None
