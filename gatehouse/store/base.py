from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from gatehouse.auth.models import Credential, OAuthAccountLink, Session


class AuthStore(Protocol):
    """
    Persistence interface consumed by the auth core.

    Implementations raise gatehouse.auth.errors.PersistenceError when the backend is
    unavailable. The `(provider, provider_user_id)` pair must be unique.
    """

    # Users / credentials
    def get_credential_by_email(self, email: str) -> Optional[Credential]: ...

    def get_user_id_by_email(self, email: str) -> Optional[str]: ...

    # Federated accounts
    def find_oauth_link(self, provider: str, provider_user_id: str) -> Optional[str]:
        """Return the linked user id, if any."""

    def upsert_oauth_link(self, link: OAuthAccountLink) -> None: ...

    def is_provider_allowed(self, user_id: str, provider: str) -> bool: ...

    # Sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str, *, now: datetime) -> Optional[Session]:
        """Return the session only if `expires_at > now`."""

    def touch_session(
        self,
        session_id: str,
        *,
        now: datetime,
        user_agent: Optional[str],
        ip_address: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> Optional[Session]:
        """Update last_seen_at (+ metadata, + expiry when given) on a live session."""

    def delete_session(self, session_id: str) -> None: ...

    def delete_sessions_for_user(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, *, now: datetime) -> int: ...
