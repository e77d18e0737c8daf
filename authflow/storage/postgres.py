from __future__ import annotations

from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authflow.logging import get_logger
from authflow.storage.errors import ConstraintViolation
from authflow.storage.models import PERSISTED_TOKEN_TYPES, StoredToken, TokenType, User

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL UNIQUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        requested_new_email TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id BIGINT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id BIGSERIAL PRIMARY KEY,
        value TEXT NOT NULL,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_type TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_value_idx ON auth_token (value, token_type)",
    "CREATE INDEX IF NOT EXISTS auth_token_user_idx ON auth_token (user_id, token_type)",
)


class PostgresStore:
    """Postgres-backed user and token store.

    Lookup-and-delete runs as a single ``DELETE ... RETURNING`` statement, so
    when two transactions race for the same record exactly one of them gets
    the row back.
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

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=int(row["id"]),
            email=row["email"],
            name=row["name"],
            email_verified=bool(row["email_verified"]),
            two_factor_enabled=bool(row["two_factor_enabled"]),
            requested_new_email=row.get("requested_new_email"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> StoredToken:
        return StoredToken(
            id=int(row["id"]),
            value=row["value"],
            user_id=int(row["user_id"]),
            token_type=TokenType(row["token_type"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _unique_field(exc: errors.UniqueViolation) -> str:
        constraint = getattr(exc.diag, "constraint_name", None) or ""
        return "name" if "name" in constraint else "email"

    # users
    def create_user(
        self,
        email: str,
        name: str,
        *,
        email_verified: bool = False,
        two_factor_enabled: bool = False,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email, name, email_verified, two_factor_enabled)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (email, name, email_verified, two_factor_enabled),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = self._unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def email_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return row is not None

    def name_exists(self, name: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_user WHERE name = %s", (name,)
            ).fetchone()
        return row is not None

    def save_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET email = %s, name = %s, email_verified = %s,
                        two_factor_enabled = %s, requested_new_email = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        user.email,
                        user.name,
                        user.email_verified,
                        user.two_factor_enabled,
                        user.requested_new_email,
                        user.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = self._unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        if not row:
            raise ConstraintViolation("user does not exist", {"user_id": user.id})
        return self._row_to_user(row)

    def delete_user(self, user_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM app_user WHERE id = %s RETURNING id", (user_id,)
            ).fetchone()
        return row is not None

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
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

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # tokens
    def save_token(self, user_id: int, value: str, token_type: TokenType) -> StoredToken:
        token_type = TokenType(token_type)
        if token_type not in PERSISTED_TOKEN_TYPES:
            raise ValueError(f"{token_type.value} tokens are not stored")
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_token (value, user_id, token_type)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (value, user_id, token_type.value),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._row_to_token(row)

    def find_token(self, value: str, token_type: TokenType) -> Optional[StoredToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE value = %s AND token_type = %s LIMIT 1",
                (value, TokenType(token_type).value),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def find_token_for_user(
        self, user_id: int, token_type: TokenType
    ) -> Optional[StoredToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_token
                WHERE user_id = %s AND token_type = %s
                ORDER BY id DESC LIMIT 1
                """,
                (user_id, TokenType(token_type).value),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def delete_token(self, token: StoredToken) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_token WHERE id = %s", (token.id,))

    def pop_token(self, value: str, token_type: TokenType) -> Optional[StoredToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM auth_token
                WHERE id = (
                    SELECT id FROM auth_token
                    WHERE value = %s AND token_type = %s
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                (value, TokenType(token_type).value),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def pop_token_for_user(
        self, user_id: int, token_type: TokenType, value: str
    ) -> Optional[StoredToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM auth_token
                WHERE id = (
                    SELECT id FROM auth_token
                    WHERE user_id = %s AND token_type = %s
                    ORDER BY id DESC LIMIT 1
                    FOR UPDATE
                )
                AND value = %s
                RETURNING *
                """,
                (user_id, TokenType(token_type).value, value),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def delete_user_tokens(
        self, user_id: int, token_type: Optional[TokenType] = None
    ) -> int:
        with self._connect() as conn:
            if token_type is None:
                cur = conn.execute(
                    "DELETE FROM auth_token WHERE user_id = %s", (user_id,)
                )
            else:
                cur = conn.execute(
                    "DELETE FROM auth_token WHERE user_id = %s AND token_type = %s",
                    (user_id, TokenType(token_type).value),
                )
            return cur.rowcount
