"""In-memory fakes and token helpers shared by the auth tests."""

from __future__ import annotations

import dataclasses
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple
from unittest.mock import MagicMock

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa

from gatehouse.auth.config import AuthConfig
from gatehouse.auth.errors import PersistenceError
from gatehouse.auth.models import Credential, OAuthAccountLink, Session
from gatehouse.auth.password import generate_salt, hash_password

CLIENT_ID = "client-123"
TENANT_ID = "tenant-abc"
DISCOVERY_URL = "https://login.example.com/common/v2.0/.well-known/openid-configuration"
JWKS_URI = "https://login.example.com/common/discovery/v2.0/keys"
ISSUER_TEMPLATE = "https://login.example.com/{tenantid}/v2.0"
TOKEN_URL = "https://login.example.com/common/oauth2/v2.0/token"
AUTH_URL = "https://login.example.com/common/oauth2/v2.0/authorize"
USERINFO_URL = "https://api.example.com/users/@me"

PRIVATE_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
OTHER_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)


def make_config(**overrides: Any) -> AuthConfig:
    base = AuthConfig(
        public_base_url="http://testserver",
        cookie_secure=False,
        sign_in_path="/sign-in",
        after_login_path="/private",
        session_secret="test-secret-key-for-testing-purposes-only",
        session_ttl_seconds=604800,
        session_sliding=False,
        oauth_ttl_seconds=300,
        microsoft_client_id=None,
        microsoft_client_secret=None,
        microsoft_tenant_id="common",
        oidc_discovery_url=None,
        oidc_client_id=None,
        oidc_client_secret=None,
        oidc_scopes=["openid", "email", "profile"],
        discord_client_id=None,
        discord_client_secret=None,
    )
    return dataclasses.replace(base, **overrides)


class Clock:
    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class MemorySecretStore:
    """SecretStore fake that records cookie attributes and deletions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.values: Dict[str, str] = dict(initial or {})
        self.attrs: Dict[str, Dict[str, Any]] = {}
        self.deleted: List[Tuple[str, str]] = []
        self.deleted_secure: Dict[str, bool] = {}

    def get(self, name: str) -> Optional[str]:
        return self.values.get(name)

    def set(
        self,
        name: str,
        value: str,
        *,
        expires: datetime,
        path: str,
        secure: bool,
        http_only: bool = True,
        same_site: str = "lax",
    ) -> None:
        self.values[name] = value
        self.attrs[name] = {
            "expires": expires,
            "path": path,
            "secure": secure,
            "http_only": http_only,
            "same_site": same_site,
        }

    def delete(self, name: str, *, path: str, secure: bool = False) -> None:
        self.values.pop(name, None)
        self.deleted.append((name, path))
        self.deleted_secure[name] = secure


class MemoryAuthStore:
    """AuthStore fake. `fail_ops` makes the named operations raise PersistenceError."""

    def __init__(self, *, ignore_expiry: bool = False) -> None:
        self.users: Dict[str, Credential] = {}
        self.allowed: Set[Tuple[str, str]] = set()
        self.links: Dict[Tuple[str, str], OAuthAccountLink] = {}
        self.sessions: Dict[str, Session] = {}
        self.created: List[Session] = []
        self.fail_ops: Set[str] = set()
        self.ignore_expiry = ignore_expiry

    def _check(self, op: str) -> None:
        if op in self.fail_ops:
            raise PersistenceError(f"{op} unavailable")

    def add_user(self, email: str, password: Optional[str] = None, *, user_id: Optional[str] = None) -> Credential:
        salt = generate_salt() if password else None
        cred = Credential(
            user_id=user_id or f"user-{len(self.users) + 1}",
            email=email,
            password_hash=hash_password(password, salt) if password and salt else None,
            password_salt=salt,
        )
        self.users[email] = cred
        return cred

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        self._check("get_credential_by_email")
        return self.users.get(email)

    def get_user_id_by_email(self, email: str) -> Optional[str]:
        self._check("get_user_id_by_email")
        cred = self.users.get(email)
        return cred.user_id if cred else None

    def find_oauth_link(self, provider: str, provider_user_id: str) -> Optional[str]:
        self._check("find_oauth_link")
        link = self.links.get((provider, provider_user_id))
        return link.user_id if link else None

    def upsert_oauth_link(self, link: OAuthAccountLink) -> None:
        self._check("upsert_oauth_link")
        self.links[(link.provider, link.provider_user_id)] = link

    def is_provider_allowed(self, user_id: str, provider: str) -> bool:
        self._check("is_provider_allowed")
        return (user_id, provider) in self.allowed

    def create_session(self, session: Session) -> Session:
        self._check("create_session")
        self.sessions[session.id] = session
        self.created.append(session)
        return session

    def get_session(self, session_id: str, *, now: datetime) -> Optional[Session]:
        self._check("get_session")
        s = self.sessions.get(session_id)
        if s is None:
            return None
        if not self.ignore_expiry and s.expires_at <= now:
            return None
        return s

    def touch_session(
        self,
        session_id: str,
        *,
        now: datetime,
        user_agent: Optional[str],
        ip_address: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> Optional[Session]:
        self._check("touch_session")
        s = self.sessions.get(session_id)
        if s is None or s.expires_at <= now:
            return None
        updated = dataclasses.replace(
            s,
            last_seen_at=now,
            user_agent=user_agent or s.user_agent,
            ip_address=ip_address or s.ip_address,
            expires_at=expires_at or s.expires_at,
        )
        self.sessions[session_id] = updated
        return updated

    def delete_session(self, session_id: str) -> None:
        self._check("delete_session")
        self.sessions.pop(session_id, None)

    def delete_sessions_for_user(self, user_id: str) -> int:
        self._check("delete_sessions_for_user")
        ids = [sid for sid, s in self.sessions.items() if s.user_id == user_id]
        for sid in ids:
            del self.sessions[sid]
        return len(ids)

    def delete_expired_sessions(self, *, now: datetime) -> int:
        self._check("delete_expired_sessions")
        ids = [sid for sid, s in self.sessions.items() if s.expires_at <= now]
        for sid in ids:
            del self.sessions[sid]
        return len(ids)


# ---- HTTP + token helpers ----


def fake_response(status: int = 200, payload: Any = None, *, json_error: bool = False) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    if json_error:
        resp.json.side_effect = ValueError("not json")
    else:
        resp.json.return_value = payload
    return resp


def jwks(kid: str = "k1", key: Any = PRIVATE_KEY) -> Dict[str, Any]:
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(key.public_key()))
    jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return {"keys": [jwk]}


def discovery_document(issuer: str = ISSUER_TEMPLATE) -> Dict[str, Any]:
    return {
        "issuer": issuer,
        "jwks_uri": JWKS_URI,
        "authorization_endpoint": AUTH_URL,
        "token_endpoint": TOKEN_URL,
    }


def id_token_claims(nonce: Optional[str] = None, **overrides: Any) -> Dict[str, Any]:
    now = int(time.time())
    claims: Dict[str, Any] = {
        "iss": f"https://login.example.com/{TENANT_ID}/v2.0",
        "aud": CLIENT_ID,
        "sub": "provider-user-1",
        "tid": TENANT_ID,
        "iat": now,
        "exp": now + 600,
        "email": "  A@X.com ",
        "name": "Ada",
    }
    if nonce is not None:
        claims["nonce"] = nonce
    claims.update(overrides)
    return claims


def make_id_token(claims: Dict[str, Any], *, kid: str = "k1", key: Any = PRIVATE_KEY) -> str:
    return jwt.encode(claims, key, algorithm="RS256", headers={"kid": kid})


def http_router(routes: Dict[str, Any]):
    """
    side_effect for a patched requests.get: URL -> response (or exception).

    A list value is consumed in order, one item per request.
    """

    calls: List[str] = []

    def _get(url: str, *args: Any, **kwargs: Any) -> Any:
        calls.append(url)
        result = routes[url]
        if isinstance(result, list):
            result = result.pop(0) if len(result) > 1 else result[0]
        if isinstance(result, BaseException):
            raise result
        return result

    _get.calls = calls  # type: ignore[attr-defined]
    return _get
