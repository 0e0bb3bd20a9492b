"""
Server-tracked sessions.

The session record in the store is the source of truth; the client only holds the
session id, signed with itsdangerous so tampered cookies are rejected without a lookup.

Expiry is absolute (created_at + TTL) unless AUTH_SESSION_SLIDING is enabled, in which
case every touch moves expires_at to now + TTL and the cookie is re-issued.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from gatehouse.auth.config import AuthConfig
from gatehouse.auth.cookies import SecretStore
from gatehouse.auth.ephemeral import OAUTH_COOKIE_PATH, OAUTH_KEYS, utcnow
from gatehouse.auth.errors import ConfigError, PersistenceError, SessionCreateError
from gatehouse.auth.models import Session, SessionMeta
from gatehouse.auth.util import fingerprint, random_token
from gatehouse.store.base import AuthStore

logger = logging.getLogger(__name__)

SESSION_SALT = "gatehouse-session-v1"
SESSION_COOKIE_PATH = "/"
SESSION_ID_BYTES = 32


def session_cookie_name(cfg: AuthConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-gatehouse_sid" if cfg.cookie_secure else "gatehouse_sid"


class SessionManager:
    def __init__(self, store: AuthStore, cfg: AuthConfig, *, clock: Callable[[], datetime] = utcnow) -> None:
        if not cfg.session_secret:
            raise ConfigError("Session signing is not configured (AUTH_SESSION_SECRET)")
        self._store = store
        self._cfg = cfg
        self._clock = clock
        self._ttl = timedelta(seconds=cfg.session_ttl_seconds)
        self._serializer = URLSafeTimedSerializer(secret_key=cfg.session_secret, salt=SESSION_SALT)

    @property
    def cookie_name(self) -> str:
        return session_cookie_name(self._cfg)

    @property
    def sliding(self) -> bool:
        return self._cfg.session_sliding

    def create(self, user_id: str, meta: SessionMeta, secret_store: SecretStore) -> Session:
        """Persist a new session and hand its (signed) id to the caller."""
        now = self._clock()
        session = Session(
            id=random_token(SESSION_ID_BYTES),
            user_id=user_id,
            created_at=now,
            last_seen_at=now,
            expires_at=now + self._ttl,
            user_agent=meta.user_agent,
            ip_address=meta.ip_address,
        )
        try:
            saved = self._store.create_session(session)
        except Exception as e:
            logger.error("Session create failed for user_id=%s: %s", user_id, type(e).__name__)
            raise SessionCreateError() from e

        self.issue_cookie(saved, secret_store)
        logger.info("Session created sid=%s user_id=%s", fingerprint(saved.id), user_id)
        return saved

    def issue_cookie(self, session: Session, secret_store: SecretStore) -> None:
        secret_store.set(
            self.cookie_name,
            self._serializer.dumps(session.id),
            expires=session.expires_at,
            path=SESSION_COOKIE_PATH,
            secure=self._cfg.cookie_secure,
            http_only=True,
            same_site="lax",
        )

    def read_session_id(self, secret_store: SecretStore) -> Optional[str]:
        """Return the session id from the caller's cookie, or None if absent/tampered."""
        value = secret_store.get(self.cookie_name)
        if not value:
            return None
        try:
            sid = self._serializer.loads(value, max_age=self._cfg.session_ttl_seconds)
        except BadSignature:
            return None
        return sid if isinstance(sid, str) and sid else None

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        """Return the session if it exists and has not expired; None otherwise."""
        if not session_id:
            return None
        now = self._clock()
        session = self._store.get_session(session_id, now=now)
        if session is None or not session.is_valid(now):
            return None
        return session

    def touch(self, session_id: Optional[str], meta: SessionMeta) -> Optional[Session]:
        if not session_id:
            return None
        now = self._clock()
        return self._store.touch_session(
            session_id,
            now=now,
            user_agent=meta.user_agent,
            ip_address=meta.ip_address,
            expires_at=(now + self._ttl) if self.sliding else None,
        )

    def delete(self, session_id: str) -> None:
        self._store.delete_session(session_id)
        logger.info("Session deleted sid=%s", fingerprint(session_id))

    def delete_all_for_user(self, user_id: str) -> int:
        n = self._store.delete_sessions_for_user(user_id)
        logger.info("Revoked %d session(s) for user_id=%s", n, user_id)
        return n

    def delete_expired(self) -> int:
        try:
            n = self._store.delete_expired_sessions(now=self._clock())
        except PersistenceError:
            logger.warning("Expired session sweep failed")
            raise
        if n:
            logger.info("Swept %d expired session(s)", n)
        return n

    def clear_client_state(self, secret_store: SecretStore) -> None:
        """Remove the session cookie and any leftover OAuth ephemeral cookies."""
        secret_store.delete(self.cookie_name, path=SESSION_COOKIE_PATH, secure=self._cfg.cookie_secure)
        for name in OAUTH_KEYS:
            secret_store.delete(name, path=OAUTH_COOKIE_PATH, secure=self._cfg.cookie_secure)
