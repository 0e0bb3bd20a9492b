from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Credential:
    """Local password credential of a user (hex scrypt digest + hex salt)."""

    user_id: str
    email: str
    password_hash: Optional[str]
    password_salt: Optional[str]

    @property
    def complete(self) -> bool:
        return bool(self.password_hash and self.password_salt)


@dataclass(frozen=True)
class EphemeralToken:
    name: str  # state|code_verifier|nonce
    value: str
    expires_at: datetime


@dataclass(frozen=True)
class OidcConfig:
    issuer: str  # may contain a {tenantid} placeholder
    jwks_uri: str
    authorization_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    userinfo_endpoint: Optional[str] = None


@dataclass(frozen=True)
class FederatedIdentity:
    """Normalized identity returned by a provider callback. Never persisted verbatim."""

    provider_user_id: str
    email: str
    name: Optional[str] = None
    issuer: Optional[str] = None
    tenant_id: Optional[str] = None


@dataclass(frozen=True)
class OAuthAccountLink:
    provider: str
    provider_user_id: str
    user_id: str
    issuer: Optional[str] = None
    tenant_id: Optional[str] = None


@dataclass(frozen=True)
class SessionMeta:
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass(frozen=True)
class Session:
    id: str
    user_id: str
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class AuthFailure:
    code: str
    category: str
    message: str
    status: int


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a sign-in attempt: exactly one of `session` / `failure` is set."""

    session: Optional[Session] = None
    failure: Optional[AuthFailure] = None

    @property
    def ok(self) -> bool:
        return self.session is not None and self.failure is None


@dataclass(frozen=True)
class AuthRedirect:
    """Outcome of starting an OAuth flow: the provider URL, or a failure."""

    url: Optional[str] = None
    failure: Optional[AuthFailure] = None
