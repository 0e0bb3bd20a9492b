from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from gatehouse.auth.config import DEFAULT_OAUTH_TTL_SECONDS
from gatehouse.auth.cookies import SecretStore
from gatehouse.auth.models import EphemeralToken
from gatehouse.auth.util import b64url, random_token

STATE_KEY = "oauth_state"
CODE_VERIFIER_KEY = "oauth_code_verifier"
NONCE_KEY = "oauth_nonce"
OAUTH_KEYS = (STATE_KEY, CODE_VERIFIER_KEY, NONCE_KEY)

# Ephemeral cookies are only sent back to the callback route.
OAUTH_COOKIE_PATH = "/oauth"

TOKEN_BYTES = 32  # 43 base64url chars -> also a valid PKCE verifier


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pkce_challenge(verifier: str) -> str:
    """PKCE S256 challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return b64url(digest)


class EphemeralSecretManager:
    """
    Short-lived, single-use secrets for one authorization attempt, held only in the
    caller's scoped store.
    """

    def __init__(
        self,
        store: SecretStore,
        *,
        ttl_seconds: int = DEFAULT_OAUTH_TTL_SECONDS,
        secure: bool = False,
        path: str = OAUTH_COOKIE_PATH,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._ttl = timedelta(seconds=ttl_seconds)
        self._secure = secure
        self._path = path
        self._clock = clock

    def issue(self, name: str) -> EphemeralToken:
        token = EphemeralToken(name=name, value=random_token(TOKEN_BYTES), expires_at=self._clock() + self._ttl)
        self._store.set(
            name,
            token.value,
            expires=token.expires_at,
            path=self._path,
            secure=self._secure,
            http_only=True,
            same_site="lax",
        )
        return token

    def read(self, name: str) -> Optional[str]:
        return self._store.get(name)

    def validate(self, name: str, presented: Optional[str]) -> bool:
        stored = self._store.get(name)
        if not stored or not presented:
            return False
        return hmac.compare_digest(stored.encode("utf-8"), presented.encode("utf-8"))

    def clear(self, *names: str) -> None:
        for name in names or OAUTH_KEYS:
            self._store.delete(name, path=self._path, secure=self._secure)
