from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional, Sequence

import psycopg

from gatehouse.auth.errors import PersistenceError
from gatehouse.auth.models import Credential, OAuthAccountLink, Session

logger = logging.getLogger(__name__)

_SESSION_COLUMNS = "id, user_id, created_at, last_seen_at, expires_at, user_agent, ip_address"


def _connect(dsn: str):
    return psycopg.connect(dsn)


def _row_to_session(r: Sequence[Any]) -> Session:
    return Session(
        id=str(r[0]),
        user_id=str(r[1]),
        created_at=r[2],
        last_seen_at=r[3],
        expires_at=r[4],
        user_agent=str(r[5]) if r[5] else None,
        ip_address=str(r[6]) if r[6] else None,
    )


class PostgresAuthStore:
    """AuthStore backed by Postgres (psycopg 3). One short-lived connection per call."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    @contextmanager
    def _conn(self, op: str) -> Iterator[Any]:
        try:
            with _connect(self._dsn) as conn:
                yield conn
        except psycopg.Error as e:
            logger.error("Postgres %s failed: %s", op, type(e).__name__)
            raise PersistenceError(f"Postgres {op} failed") from e

    # ---- Users / credentials ----

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        with self._conn("get_credential_by_email") as conn:
            row = conn.execute(
                """
                SELECT id, email, password_hash, password_salt
                FROM users
                WHERE email = %s;
                """,
                (email,),
            ).fetchone()
        if not row:
            return None
        return Credential(
            user_id=str(row[0]),
            email=str(row[1]),
            password_hash=str(row[2]) if row[2] else None,
            password_salt=str(row[3]) if row[3] else None,
        )

    def get_user_id_by_email(self, email: str) -> Optional[str]:
        with self._conn("get_user_id_by_email") as conn:
            row = conn.execute("SELECT id FROM users WHERE email = %s;", (email,)).fetchone()
        return str(row[0]) if row else None

    def upsert_user(
        self, *, email: str, password_hash: Optional[str], password_salt: Optional[str], display_name: Optional[str]
    ) -> str:
        with self._conn("upsert_user") as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO users (email, password_hash, password_salt, display_name)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (email) DO UPDATE
                      SET password_hash = EXCLUDED.password_hash,
                          password_salt = EXCLUDED.password_salt,
                          display_name = COALESCE(EXCLUDED.display_name, users.display_name)
                    RETURNING id;
                    """,
                    (email, password_hash, password_salt, display_name),
                ).fetchone()
        if not row:
            raise PersistenceError("Failed to upsert user")
        return str(row[0])

    # ---- Federated accounts ----

    def find_oauth_link(self, provider: str, provider_user_id: str) -> Optional[str]:
        with self._conn("find_oauth_link") as conn:
            row = conn.execute(
                """
                SELECT user_id
                FROM user_oauth_accounts
                WHERE provider = %s AND provider_user_id = %s;
                """,
                (provider, provider_user_id),
            ).fetchone()
        return str(row[0]) if row else None

    def upsert_oauth_link(self, link: OAuthAccountLink) -> None:
        with self._conn("upsert_oauth_link") as conn:
            with conn.transaction():
                conn.execute(
                    """
                    INSERT INTO user_oauth_accounts (provider, provider_user_id, user_id, issuer, tenant_id)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (provider, provider_user_id) DO UPDATE
                      SET issuer = EXCLUDED.issuer,
                          tenant_id = EXCLUDED.tenant_id,
                          updated_at = now();
                    """,
                    (link.provider, link.provider_user_id, link.user_id, link.issuer, link.tenant_id),
                )

    def is_provider_allowed(self, user_id: str, provider: str) -> bool:
        with self._conn("is_provider_allowed") as conn:
            row = conn.execute(
                "SELECT 1 FROM user_allowed_providers WHERE user_id = %s AND provider = %s;",
                (user_id, provider),
            ).fetchone()
        return bool(row)

    def allow_provider(self, user_id: str, provider: str) -> None:
        with self._conn("allow_provider") as conn:
            with conn.transaction():
                conn.execute(
                    """
                    INSERT INTO user_allowed_providers (user_id, provider)
                    VALUES (%s, %s)
                    ON CONFLICT (user_id, provider) DO NOTHING;
                    """,
                    (user_id, provider),
                )

    # ---- Sessions ----

    def create_session(self, session: Session) -> Session:
        with self._conn("create_session") as conn:
            with conn.transaction():
                row = conn.execute(
                    f"""
                    INSERT INTO sessions ({_SESSION_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_SESSION_COLUMNS};
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.created_at,
                        session.last_seen_at,
                        session.expires_at,
                        session.user_agent,
                        session.ip_address,
                    ),
                ).fetchone()
        if not row:
            raise PersistenceError("Session insert returned no row")
        return _row_to_session(row)

    def get_session(self, session_id: str, *, now: datetime) -> Optional[Session]:
        with self._conn("get_session") as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = %s AND expires_at > %s;",
                (session_id, now),
            ).fetchone()
        return _row_to_session(row) if row else None

    def touch_session(
        self,
        session_id: str,
        *,
        now: datetime,
        user_agent: Optional[str],
        ip_address: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> Optional[Session]:
        with self._conn("touch_session") as conn:
            with conn.transaction():
                row = conn.execute(
                    f"""
                    UPDATE sessions
                    SET last_seen_at = %s,
                        user_agent = COALESCE(%s, user_agent),
                        ip_address = COALESCE(%s, ip_address),
                        expires_at = COALESCE(%s, expires_at)
                    WHERE id = %s AND expires_at > %s
                    RETURNING {_SESSION_COLUMNS};
                    """,
                    (now, user_agent, ip_address, expires_at, session_id, now),
                ).fetchone()
        return _row_to_session(row) if row else None

    def delete_session(self, session_id: str) -> None:
        with self._conn("delete_session") as conn:
            with conn.transaction():
                conn.execute("DELETE FROM sessions WHERE id = %s;", (session_id,))

    def delete_sessions_for_user(self, user_id: str) -> int:
        with self._conn("delete_sessions_for_user") as conn:
            with conn.transaction():
                cur = conn.execute("DELETE FROM sessions WHERE user_id = %s;", (user_id,))
                return int(cur.rowcount or 0)

    def delete_expired_sessions(self, *, now: datetime) -> int:
        with self._conn("delete_expired_sessions") as conn:
            with conn.transaction():
                cur = conn.execute("DELETE FROM sessions WHERE expires_at <= %s;", (now,))
                return int(cur.rowcount or 0)
