from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Iterator, Optional

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessiongate.logging import get_logger
from sessiongate.storage.errors import ConstraintViolation
from sessiongate.storage.models import (
    Challenge,
    ChallengeFlow,
    Session,
    SessionScope,
    SessionWithUser,
    User,
)

# One table per flow; all share the challenge protocol columns and a unique user_id.
CHALLENGE_TABLES: dict[ChallengeFlow, str] = {
    ChallengeFlow.EMAIL_VERIFICATION: "email_verification_request",
    ChallengeFlow.EMAIL_UPDATE: "email_update_request",
    ChallengeFlow.PASSWORD_RESET: "password_reset_request",
}

REQUIRED_TABLES = ("app_user", "auth_session", *CHALLENGE_TABLES.values())

# Connection bound by an open transaction() block in the current context
_tx_conn: ContextVar[Optional[Connection]] = ContextVar("sessiongate_tx_conn", default=None)


class PostgresStore:
    """Postgres-backed store for users, sessions and challenges."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def close(self) -> None:
        self.pool.close()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        bound = _tx_conn.get()
        if bound is not None:
            yield bound
            return
        with self.pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run every store call in the block on one connection and commit once.

        Nested blocks join the outer transaction. The pool commits when the
        block exits cleanly and rolls back when it raises.
        """
        if _tx_conn.get() is not None:
            yield
            return
        with self.pool.connection() as conn:
            token = _tx_conn.set(conn)
            try:
                yield
            finally:
                _tx_conn.reset(token)

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/migrate.py to install sql/schema.sql.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # -- users ---------------------------------------------------------------

    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            username=row.get("username"),
            email_verified=bool(row.get("email_verified", False)),
            created_at=row["created_at"],
        )

    def create_user(
        self, email: str, password_hash: str, username: Optional[str] = None
    ) -> User:
        user = User.new(email, password_hash, username)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, password_hash, email_verified, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.username,
                        user.password_hash,
                        user.email_verified,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )

    def mark_email_verified(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET email_verified = TRUE WHERE id = %s", (user_id,)
            )

    def update_email(self, user_id: str, email: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE app_user SET email = %s WHERE id = %s", (email, user_id)
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    # -- sessions ------------------------------------------------------------

    def create_session(
        self,
        session_id: str,
        user_id: str,
        expires_at: datetime,
        scope: SessionScope = SessionScope.AUTH,
    ) -> Session:
        sess = Session(id=session_id, user_id=user_id, expires_at=expires_at, scope=scope)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, scope, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (sess.id, sess.user_id, sess.scope.value, sess.created_at, sess.expires_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"field": "id"})
        return sess

    def get_session_with_user(self, session_id: str) -> Optional[SessionWithUser]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT s.id, s.user_id, s.scope, s.created_at, s.expires_at, u.email_verified
                FROM auth_session s
                JOIN app_user u ON u.id = s.user_id
                WHERE s.id = %s
                """,
                (session_id,),
            ).fetchone()
        if not row:
            return None
        sess = Session(
            id=row["id"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            scope=SessionScope(row["scope"]),
            created_at=row["created_at"],
        )
        return SessionWithUser(session=sess, email_verified=bool(row["email_verified"]))

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET expires_at = %s WHERE id = %s",
                (expires_at, session_id),
            )

    def delete_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def delete_user_sessions(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))

    # -- challenges ----------------------------------------------------------

    @staticmethod
    def _challenge_from_row(flow: ChallengeFlow, row: dict[str, Any]) -> Challenge:
        return Challenge(
            flow=flow,
            user_id=str(row["user_id"]),
            challenge_hash=row["code_challenge"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            new_email=row.get("new_email"),
            validated_at=row.get("validated_at"),
        )

    def upsert_challenge(
        self,
        flow: ChallengeFlow,
        user_id: str,
        challenge_hash: str,
        created_at: datetime,
        expires_at: datetime,
        *,
        new_email: Optional[str] = None,
    ) -> Challenge:
        table = CHALLENGE_TABLES[flow]
        # Table name comes from the fixed mapping above, never from input.
        query = f"""
            INSERT INTO {table} (user_id, code_challenge, created_at, expires_at, new_email, validated_at)
            VALUES (%s, %s, %s, %s, %s, NULL)
            ON CONFLICT (user_id) DO UPDATE SET
                code_challenge = EXCLUDED.code_challenge,
                created_at = EXCLUDED.created_at,
                expires_at = EXCLUDED.expires_at,
                new_email = EXCLUDED.new_email,
                validated_at = NULL
            RETURNING *
        """
        try:
            with self._connect() as conn:
                row = conn.execute(
                    query, (user_id, challenge_hash, created_at, expires_at, new_email)
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("challenge user missing", {"user_id": user_id})
        return self._challenge_from_row(flow, row)

    def get_challenge(self, flow: ChallengeFlow, user_id: str) -> Optional[Challenge]:
        table = CHALLENGE_TABLES[flow]
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._challenge_from_row(flow, row) if row else None

    def mark_challenge_validated(
        self, flow: ChallengeFlow, user_id: str, validated_at: datetime, *, challenge_hash: str
    ) -> bool:
        """Stamp ``validated_at`` on the exact challenge whose code was checked."""
        table = CHALLENGE_TABLES[flow]
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE {table} SET validated_at = %s WHERE user_id = %s AND code_challenge = %s",
                (validated_at, user_id, challenge_hash),
            )
        return bool(cur.rowcount)

    def delete_challenge(
        self, flow: ChallengeFlow, user_id: str, *, challenge_hash: Optional[str] = None
    ) -> bool:
        """Delete the user's row for ``flow``; True if a row was removed.

        With ``challenge_hash`` only that exact challenge is removed, so two
        requests racing to consume one code cannot both succeed.
        """
        table = CHALLENGE_TABLES[flow]
        with self._connect() as conn:
            if challenge_hash is None:
                cur = conn.execute(f"DELETE FROM {table} WHERE user_id = %s", (user_id,))
            else:
                cur = conn.execute(
                    f"DELETE FROM {table} WHERE user_id = %s AND code_challenge = %s",
                    (user_id, challenge_hash),
                )
        return bool(cur.rowcount)

    def delete_expired_challenges(
        self, flow: ChallengeFlow, now: datetime, *, user_id: Optional[str] = None
    ) -> int:
        table = CHALLENGE_TABLES[flow]
        with self._connect() as conn:
            if user_id is None:
                cur = conn.execute(f"DELETE FROM {table} WHERE expires_at <= %s", (now,))
            else:
                cur = conn.execute(
                    f"DELETE FROM {table} WHERE user_id = %s AND expires_at <= %s",
                    (user_id, now),
                )
        return cur.rowcount or 0
