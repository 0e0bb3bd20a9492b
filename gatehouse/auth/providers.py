"""
Provider configuration for the generic OAuth client.

Each provider is data: endpoints, scopes, identity mode, the raw identity schema and the
mapping to FederatedIdentity.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from gatehouse.auth.config import AuthConfig
from gatehouse.auth.errors import ConfigError, InvalidProviderError
from gatehouse.auth.models import FederatedIdentity
from gatehouse.auth.oauth import OAuthClient, OidcIdentity, UserInfoIdentity
from gatehouse.auth.oidc import KeyResolver, OidcTokenVerifier


class OAuthProvider(str, Enum):
    MICROSOFT = "microsoft"
    OIDC = "oidc"
    DISCORD = "discord"


def parse_provider(raw: Optional[str]) -> OAuthProvider:
    value = (raw or "").strip().lower()
    for p in OAuthProvider:
        if p.value == value:
            return p
    raise InvalidProviderError(value or "<empty>")


def enabled_providers(cfg: AuthConfig) -> List[OAuthProvider]:
    out: List[OAuthProvider] = []
    if cfg.microsoft_enabled:
        out.append(OAuthProvider.MICROSOFT)
    if cfg.oidc_enabled:
        out.append(OAuthProvider.OIDC)
    if cfg.discord_enabled:
        out.append(OAuthProvider.DISCORD)
    return out


def _redirect_uri(cfg: AuthConfig, provider: OAuthProvider) -> str:
    if not cfg.public_base_url:
        raise ConfigError("AUTH_PUBLIC_BASE_URL is required for OAuth")
    return cfg.redirect_uri(provider.value)


# ---- Microsoft Entra ID ----


class MicrosoftUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sub: str
    name: Optional[str] = None
    email: Optional[str] = None
    preferred_username: Optional[str] = None
    iss: Optional[str] = None
    tid: Optional[str] = None


def _microsoft_identity(p: MicrosoftUser) -> FederatedIdentity:
    return FederatedIdentity(
        provider_user_id=p.sub,
        email=p.email or p.preferred_username or "",
        name=p.name or "Unknown",
        issuer=p.iss,
        tenant_id=p.tid,
    )


def create_microsoft_client(cfg: AuthConfig, resolver: KeyResolver) -> OAuthClient[MicrosoftUser]:
    tenant = cfg.microsoft_tenant_id or "common"
    base = f"https://login.microsoftonline.com/{tenant}"
    verifier = OidcTokenVerifier(
        discovery_url=f"{base}/v2.0/.well-known/openid-configuration",
        client_id=str(cfg.microsoft_client_id),
        resolver=resolver,
    )
    return OAuthClient(
        provider=OAuthProvider.MICROSOFT.value,
        client_id=str(cfg.microsoft_client_id),
        client_secret=str(cfg.microsoft_client_secret),
        scopes=["openid", "profile", "email"],
        auth_url=f"{base}/oauth2/v2.0/authorize",
        token_url=f"{base}/oauth2/v2.0/token",
        redirect_uri=_redirect_uri(cfg, OAuthProvider.MICROSOFT),
        identity=OidcIdentity(verifier=verifier),
        user_schema=MicrosoftUser,
        parse_user=_microsoft_identity,
        oauth_ttl_seconds=cfg.oauth_ttl_seconds,
        cookie_secure=cfg.cookie_secure,
    )


# ---- Generic OIDC (endpoints from discovery) ----


class OidcUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sub: str
    email: Optional[str] = None
    name: Optional[str] = None
    iss: Optional[str] = None


def _oidc_identity(p: OidcUser) -> FederatedIdentity:
    return FederatedIdentity(provider_user_id=p.sub, email=p.email or "", name=p.name, issuer=p.iss)


def create_oidc_client(cfg: AuthConfig, resolver: KeyResolver) -> OAuthClient[OidcUser]:
    discovery_url = str(cfg.oidc_discovery_url)
    disc = resolver.discover(discovery_url)
    if not disc.authorization_endpoint or not disc.token_endpoint:
        raise ConfigError("OIDC discovery missing authorization_endpoint/token_endpoint")

    verifier = OidcTokenVerifier(discovery_url=discovery_url, client_id=str(cfg.oidc_client_id), resolver=resolver)
    return OAuthClient(
        provider=OAuthProvider.OIDC.value,
        client_id=str(cfg.oidc_client_id),
        client_secret=str(cfg.oidc_client_secret),
        scopes=cfg.oidc_scopes,
        auth_url=disc.authorization_endpoint,
        token_url=disc.token_endpoint,
        redirect_uri=_redirect_uri(cfg, OAuthProvider.OIDC),
        identity=OidcIdentity(verifier=verifier),
        user_schema=OidcUser,
        parse_user=_oidc_identity,
        oauth_ttl_seconds=cfg.oauth_ttl_seconds,
        cookie_secure=cfg.cookie_secure,
    )


# ---- Discord (plain OAuth2, user-info endpoint) ----


class DiscordUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    username: str
    global_name: Optional[str] = None
    email: Optional[str] = None
    verified: Optional[bool] = None


def _discord_identity(p: DiscordUser) -> FederatedIdentity:
    # Unverified Discord emails must not be used for account linking.
    email = p.email if p.verified is not False else None
    return FederatedIdentity(provider_user_id=p.id, email=email or "", name=p.global_name or p.username)


def create_discord_client(cfg: AuthConfig) -> OAuthClient[DiscordUser]:
    return OAuthClient(
        provider=OAuthProvider.DISCORD.value,
        client_id=str(cfg.discord_client_id),
        client_secret=str(cfg.discord_client_secret),
        scopes=["identify", "email"],
        auth_url="https://discord.com/oauth2/authorize",
        token_url="https://discord.com/api/oauth2/token",
        redirect_uri=_redirect_uri(cfg, OAuthProvider.DISCORD),
        identity=UserInfoIdentity(userinfo_url="https://discord.com/api/users/@me"),
        user_schema=DiscordUser,
        parse_user=_discord_identity,
        oauth_ttl_seconds=cfg.oauth_ttl_seconds,
        cookie_secure=cfg.cookie_secure,
    )


def get_oauth_client(provider: OAuthProvider, cfg: AuthConfig, resolver: KeyResolver) -> OAuthClient:
    if provider not in enabled_providers(cfg):
        raise InvalidProviderError(provider.value)
    if provider is OAuthProvider.MICROSOFT:
        return create_microsoft_client(cfg, resolver)
    if provider is OAuthProvider.OIDC:
        return create_oidc_client(cfg, resolver)
    if provider is OAuthProvider.DISCORD:
        return create_discord_client(cfg)
    raise InvalidProviderError(provider.value)
