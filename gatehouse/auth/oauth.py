"""
Generic OAuth2 / OIDC federation client (authorization code + PKCE S256).

Identity resolution is selected by configuration:
- OidcIdentity: verify the signed ID token returned by the token endpoint
- UserInfoIdentity: call the provider's user-info endpoint with the access token
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, Generic, List, Optional, Protocol, Type, TypeVar
from urllib.parse import urlencode

import requests
from pydantic import BaseModel, ConfigDict, ValidationError

from gatehouse.auth.config import DEFAULT_OAUTH_TTL_SECONDS
from gatehouse.auth.cookies import SecretStore
from gatehouse.auth.ephemeral import (
    CODE_VERIFIER_KEY,
    NONCE_KEY,
    STATE_KEY,
    EphemeralSecretManager,
    pkce_challenge,
)
from gatehouse.auth.errors import (
    FetchUserError,
    InvalidCodeVerifierError,
    InvalidStateError,
    InvalidTokenError,
    InvalidTokenSchemaError,
    InvalidUserSchemaError,
    RetrieveTokenError,
)
from gatehouse.auth.models import FederatedIdentity
from gatehouse.auth.oidc import HTTP_TIMEOUT_SECONDS, OidcTokenVerifier

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class TokenResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    token_type: str
    id_token: Optional[str] = None


class IdentityMode(Protocol):
    kind: ClassVar[str]

    def resolve(self, tokens: TokenResponse, *, expected_nonce: Optional[str]) -> Any:
        """Return the raw identity payload for schema validation."""


@dataclass(frozen=True)
class OidcIdentity:
    verifier: OidcTokenVerifier
    kind: ClassVar[str] = "oidc"

    def resolve(self, tokens: TokenResponse, *, expected_nonce: Optional[str]) -> Any:
        if not tokens.id_token:
            raise InvalidTokenError("Missing id_token in token response")
        return self.verifier.verify(tokens.id_token, expected_nonce=expected_nonce)


@dataclass(frozen=True)
class UserInfoIdentity:
    userinfo_url: str
    timeout: float = HTTP_TIMEOUT_SECONDS
    kind: ClassVar[str] = "userinfo"

    def resolve(self, tokens: TokenResponse, *, expected_nonce: Optional[str]) -> Any:
        token_type = "Bearer" if tokens.token_type.lower() == "bearer" else tokens.token_type
        try:
            r = requests.get(
                self.userinfo_url,
                headers={"Authorization": f"{token_type} {tokens.access_token}", "Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise FetchUserError() from e
        if r.status_code >= 400:
            raise FetchUserError(f"Failed to fetch OAuth user (status={r.status_code})")
        try:
            return r.json()
        except ValueError as e:
            raise FetchUserError() from e


class OAuthClient(Generic[T]):
    def __init__(
        self,
        *,
        provider: str,
        client_id: str,
        client_secret: str,
        scopes: List[str],
        auth_url: str,
        token_url: str,
        redirect_uri: str,
        identity: IdentityMode,
        user_schema: Type[T],
        parse_user: Callable[[T], FederatedIdentity],
        oauth_ttl_seconds: int = DEFAULT_OAUTH_TTL_SECONDS,
        cookie_secure: bool = False,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self.provider = provider
        self.client_id = client_id
        self._client_secret = client_secret
        self.scopes = list(scopes)
        self.auth_url = auth_url
        self.token_url = token_url
        self.redirect_uri = redirect_uri
        self.identity = identity
        self.user_schema = user_schema
        self.parse_user = parse_user
        self._oauth_ttl_seconds = oauth_ttl_seconds
        self._cookie_secure = cookie_secure
        self._timeout = timeout

    def _secrets(self, store: SecretStore) -> EphemeralSecretManager:
        return EphemeralSecretManager(store, ttl_seconds=self._oauth_ttl_seconds, secure=self._cookie_secure)

    def create_auth_url(self, store: SecretStore) -> str:
        """
        Issue state, PKCE verifier and nonce into the caller's store and build the
        provider authorization URL.
        """
        secrets = self._secrets(store)
        state = secrets.issue(STATE_KEY).value
        verifier = secrets.issue(CODE_VERIFIER_KEY).value
        nonce = secrets.issue(NONCE_KEY).value

        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "code_challenge_method": "S256",
            "code_challenge": pkce_challenge(verifier),
            "nonce": nonce,
        }
        sep = "&" if "?" in self.auth_url else "?"
        return f"{self.auth_url}{sep}{urlencode(params)}"

    def fetch_user(self, code: str, state: str, store: SecretStore) -> FederatedIdentity:
        """
        Complete the callback: state check, code exchange, identity resolution,
        schema validation and normalization. Ephemeral secrets are single-use.
        """
        secrets = self._secrets(store)
        if not secrets.validate(STATE_KEY, state):
            secrets.clear()
            raise InvalidStateError()

        try:
            verifier = secrets.read(CODE_VERIFIER_KEY)
            if not verifier:
                raise InvalidCodeVerifierError()
            nonce = secrets.read(NONCE_KEY)

            tokens = self._fetch_token(code, verifier)
            raw = self.identity.resolve(tokens, expected_nonce=nonce)
        finally:
            secrets.clear()

        try:
            parsed = self.user_schema.model_validate(raw)
        except ValidationError as e:
            raise InvalidUserSchemaError() from e

        identity = self.parse_user(parsed)
        return dataclasses.replace(identity, email=(identity.email or "").strip().lower())

    def _fetch_token(self, code: str, verifier: str) -> TokenResponse:
        payload: Dict[str, str] = {
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "code_verifier": verifier,
        }
        try:
            r = requests.post(
                self.token_url,
                data=payload,
                headers={"Accept": "application/json", "Cache-Control": "no-store"},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise RetrieveTokenError() from e
        if r.status_code >= 400:
            # Avoid leaking provider response bodies; status is enough context.
            raise RetrieveTokenError(f"Token exchange failed (status={r.status_code})")
        try:
            data = r.json()
        except ValueError as e:
            raise RetrieveTokenError("Invalid token response") from e

        try:
            return TokenResponse.model_validate(data)
        except ValidationError as e:
            raise InvalidTokenSchemaError() from e
