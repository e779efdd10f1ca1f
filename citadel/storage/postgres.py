from __future__ import annotations

import functools
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from citadel.logging import get_logger
from citadel.storage.errors import ConstraintViolation, StoreUnavailableError
from citadel.storage.models import PasswordReset, Session, User, utcnow

_REQUIRED_TABLES = ("users", "sessions", "password_resets", "password_reset_attempts")


def _store_op(operation: str):
    """Translate connection and pool failures into :class:`StoreUnavailableError`."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except (OperationalError, PoolTimeout) as exc:
                raise StoreUnavailableError(operation, exc) from exc

        return wrapper

    return decorator


def _row_to_user(row: Dict[str, Any]) -> User:
    return User(
        id=int(row["user_id"]),
        username=row["username"],
        email=row["email"],
        password_hash=row["password_hash"],
        salt=bytes(row["salt"]),
        first_name=row.get("first_name") or "",
        last_name=row.get("last_name") or "",
        last_login=row.get("last_login"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _row_to_reset(row: Dict[str, Any]) -> PasswordReset:
    return PasswordReset(
        token=row["token"],
        user_id=int(row["user_id"]),
        expires_at=row["expires_at"],
        used=bool(row["used"]),
        created_at=row.get("created_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed persistence for users, sessions and password resets."""

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

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Fail fast when sql/schema.sql has not been applied."""

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
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- users ---------------------------------------------------------------

    @_store_op("create_user")
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        salt: bytes,
        *,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (username, email, first_name, last_name, password_hash, salt)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (username, email, first_name, last_name, password_hash, salt),
                ).fetchone()
        except errors.UniqueViolation:
            # which column collided is deliberately not reported
            raise ConstraintViolation("account already exists", {"field": "account"})
        return _row_to_user(row)

    @_store_op("get_user")
    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE user_id = %s", (user_id,)
            ).fetchone()
        return _row_to_user(row) if row else None

    @_store_op("get_user_by_email")
    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (email,)
            ).fetchone()
        return _row_to_user(row) if row else None

    @_store_op("touch_last_login")
    def touch_last_login(self, user_id: int, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET last_login = %s WHERE user_id = %s",
                (when or utcnow(), user_id),
            )

    @_store_op("update_password")
    def update_password(self, user_id: int, password_hash: str, salt: bytes) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE users SET password_hash = %s, salt = %s, updated_at = %s
                WHERE user_id = %s
                """,
                (password_hash, salt, utcnow(), user_id),
            )
            return cur.rowcount > 0

    # -- sessions ------------------------------------------------------------

    @_store_op("create_session")
    def create_session(self, user_id: int, ttl_hours: int = 24) -> Session:
        sess = Session.new(user_id, ttl_hours=ttl_hours)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (token, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (sess.token, sess.user_id, sess.expires_at, sess.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return sess

    @_store_op("get_session_user")
    def get_session_user(self, token: str, now: Optional[datetime] = None) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.* FROM sessions s
                JOIN users u ON u.user_id = s.user_id
                WHERE s.token = %s AND s.expires_at > %s
                """,
                (token, now or utcnow()),
            ).fetchone()
        return _row_to_user(row) if row else None

    @_store_op("delete_session")
    def delete_session(self, token: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM sessions WHERE token = %s", (token,))

    @_store_op("set_session_flash")
    def set_session_flash(self, token: str, message: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE sessions SET flash = %s WHERE token = %s AND expires_at > %s",
                (message, token, utcnow()),
            )
            return cur.rowcount > 0

    @_store_op("pop_session_flash")
    def pop_session_flash(self, token: str) -> Optional[str]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT flash FROM sessions WHERE token = %s AND expires_at > %s FOR UPDATE",
                (token, utcnow()),
            ).fetchone()
            if not row or row.get("flash") is None:
                return None
            conn.execute("UPDATE sessions SET flash = NULL WHERE token = %s", (token,))
            return row["flash"]

    @_store_op("purge_expired_sessions")
    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM sessions WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount

    # -- password resets -----------------------------------------------------

    @_store_op("create_password_reset")
    def create_password_reset(
        self, user_id: int, ttl: timedelta = timedelta(hours=1)
    ) -> PasswordReset:
        reset = PasswordReset.new(user_id, ttl=ttl)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_resets (token, user_id, expires_at, used, created_at)
                    VALUES (%s, %s, %s, FALSE, %s)
                    """,
                    (reset.token, reset.user_id, reset.expires_at, reset.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return reset

    @_store_op("get_valid_password_reset")
    def get_valid_password_reset(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[PasswordReset]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM password_resets
                WHERE token = %s AND expires_at > %s AND used = FALSE
                """,
                (token, now or utcnow()),
            ).fetchone()
        return _row_to_reset(row) if row else None

    @_store_op("consume_password_reset")
    def consume_password_reset(
        self,
        token: str,
        password_hash: str,
        salt: bytes,
        now: Optional[datetime] = None,
    ) -> bool:
        """Apply a new password and mark the reset used in one transaction."""
        now = now or utcnow()
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                SELECT user_id FROM password_resets
                WHERE token = %s AND expires_at > %s AND used = FALSE
                FOR UPDATE
                """,
                (token, now),
            ).fetchone()
            if not row:
                return False
            conn.execute(
                """
                UPDATE users SET password_hash = %s, salt = %s, updated_at = %s
                WHERE user_id = %s
                """,
                (password_hash, salt, now, row["user_id"]),
            )
            conn.execute(
                "UPDATE password_resets SET used = TRUE WHERE token = %s", (token,)
            )
        return True

    # -- reset attempts ------------------------------------------------------

    @_store_op("record_reset_attempt")
    def record_reset_attempt(
        self, email: str, ip_address: str, when: Optional[datetime] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_attempts (email, ip_address, attempted_at)
                VALUES (%s, %s, %s)
                """,
                (email, ip_address, when or utcnow()),
            )

    @_store_op("count_reset_attempts")
    def count_reset_attempts(
        self,
        since: datetime,
        *,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        clauses = ["attempted_at > %s"]
        params: list[Any] = [since]
        if email is not None:
            clauses.append("email = %s")
            params.append(email)
        if ip_address is not None:
            clauses.append("ip_address = %s")
            params.append(ip_address)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM password_reset_attempts WHERE "
                + " AND ".join(clauses),
                tuple(params),
            ).fetchone()
        return int(row["c"]) if row else 0

    @_store_op("prune_reset_attempts")
    def prune_reset_attempts(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM password_reset_attempts WHERE attempted_at < %s", (before,)
            )
            return cur.rowcount
