from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

DEFAULT_SESSION_TTL_SECONDS = 60 * 60 * 24 * 7  # 7 days
DEFAULT_OAUTH_TTL_SECONDS = 60 * 5


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except Exception:
        return default


def _parse_scopes(value: Optional[str], default: List[str]) -> List[str]:
    items = [x.strip() for x in (value or "").replace(",", " ").split()]
    return [x for x in items if x] or list(default)


@dataclass(frozen=True)
class AuthConfig:
    # Redirects and cookies
    public_base_url: Optional[str]  # Required for OAuth redirect URIs
    cookie_secure: bool
    sign_in_path: str
    after_login_path: str

    # Sessions
    session_secret: Optional[str]  # Required; signs the session cookie
    session_ttl_seconds: int
    session_sliding: bool

    # OAuth ephemeral secrets (state, PKCE verifier, nonce)
    oauth_ttl_seconds: int

    # Microsoft Entra ID (OIDC mode)
    microsoft_client_id: Optional[str]
    microsoft_client_secret: Optional[str]
    microsoft_tenant_id: str

    # Generic OIDC provider (endpoints come from discovery)
    oidc_discovery_url: Optional[str]
    oidc_client_id: Optional[str]
    oidc_client_secret: Optional[str]
    oidc_scopes: List[str]

    # Discord (user-info mode)
    discord_client_id: Optional[str]
    discord_client_secret: Optional[str]

    @property
    def microsoft_enabled(self) -> bool:
        return bool(self.microsoft_client_id and self.microsoft_client_secret)

    @property
    def oidc_enabled(self) -> bool:
        """Generic OIDC is enabled if discovery URL and credentials are configured."""
        return bool(self.oidc_discovery_url and self.oidc_client_id and self.oidc_client_secret)

    @property
    def discord_enabled(self) -> bool:
        return bool(self.discord_client_id and self.discord_client_secret)

    def redirect_uri(self, provider: str) -> str:
        base = (self.public_base_url or "").strip().rstrip("/")
        return f"{base}/oauth/{provider.lower()}"


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    A provider is enabled only when both its client id and client secret are set.
    """
    public_base_url = _env_str("AUTH_PUBLIC_BASE_URL")
    cookie_secure_env = (os.getenv("AUTH_COOKIE_SECURE", "") or "").strip().lower()
    if cookie_secure_env in ("1", "true", "yes", "on"):
        cookie_secure = True
    elif cookie_secure_env in ("0", "false", "no", "off"):
        cookie_secure = False
    else:
        # Default: secure cookies in production or when the base URL is https.
        production = (os.getenv("APP_ENV", "") or "").strip().lower() == "production"
        cookie_secure = production or (public_base_url or "").startswith("https://")

    ttl = _env_int("AUTH_SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL_SECONDS)
    if ttl <= 60:
        ttl = 60

    oauth_ttl = _env_int("AUTH_OAUTH_TTL_SECONDS", DEFAULT_OAUTH_TTL_SECONDS)
    oauth_ttl = max(60, min(oauth_ttl, 15 * 60))

    return AuthConfig(
        public_base_url=public_base_url,
        cookie_secure=cookie_secure,
        sign_in_path=_env_str("AUTH_SIGN_IN_PATH") or "/sign-in",
        after_login_path=_env_str("AUTH_AFTER_LOGIN_PATH") or "/private",
        session_secret=_env_str("AUTH_SESSION_SECRET"),
        session_ttl_seconds=ttl,
        session_sliding=_env_bool("AUTH_SESSION_SLIDING", False),
        oauth_ttl_seconds=oauth_ttl,
        microsoft_client_id=_env_str("MICROSOFT_CLIENT_ID"),
        microsoft_client_secret=_env_str("MICROSOFT_CLIENT_SECRET"),
        microsoft_tenant_id=_env_str("MICROSOFT_TENANT_ID") or "common",
        oidc_discovery_url=_env_str("OIDC_DISCOVERY_URL"),
        oidc_client_id=_env_str("OIDC_CLIENT_ID"),
        oidc_client_secret=_env_str("OIDC_CLIENT_SECRET"),
        oidc_scopes=_parse_scopes(os.getenv("OIDC_SCOPES"), ["openid", "email", "profile"]),
        discord_client_id=_env_str("DISCORD_CLIENT_ID"),
        discord_client_secret=_env_str("DISCORD_CLIENT_SECRET"),
    )
