from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, Sequence

import jwt  # PyJWT
import requests

from gatehouse.auth.errors import ConfigError, DiscoveryError, InvalidNonceError, InvalidTokenError
from gatehouse.auth.models import OidcConfig

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 10
TENANT_PLACEHOLDER = "{tenantid}"
# Unknown kids re-fetch the key set at most this often.
JWKS_MIN_REFETCH_SECONDS = 60


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) and value else None


def discover(discovery_url: str, *, timeout: float = HTTP_TIMEOUT_SECONDS) -> OidcConfig:
    """
    Fetch the OIDC discovery document. Always a fresh request (never cached).

    Raises:
        DiscoveryError: network failure, non-success status or a non-JSON body
        ConfigError: the document lacks a string `issuer` or `jwks_uri`
    """
    try:
        r = requests.get(
            discovery_url,
            headers={"Accept": "application/json", "Cache-Control": "no-cache"},
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise DiscoveryError(f"OIDC discovery request failed: {type(e).__name__}") from e
    if r.status_code >= 400:
        raise DiscoveryError(f"OIDC discovery failed: {r.status_code}")
    try:
        data = r.json()
    except ValueError as e:
        raise DiscoveryError("OIDC discovery returned invalid JSON") from e
    if not isinstance(data, dict):
        raise ConfigError("Invalid OIDC discovery document")

    issuer = data.get("issuer")
    jwks_uri = data.get("jwks_uri")
    if not isinstance(issuer, str) or not isinstance(jwks_uri, str) or not issuer or not jwks_uri:
        raise ConfigError("OIDC discovery missing issuer or jwks_uri")

    return OidcConfig(
        issuer=issuer,
        jwks_uri=jwks_uri,
        authorization_endpoint=_optional_str(data, "authorization_endpoint"),
        token_endpoint=_optional_str(data, "token_endpoint"),
        userinfo_endpoint=_optional_str(data, "userinfo_endpoint"),
    )


class KeySet:
    """
    Provider signing keys (JWKS), fetched lazily on first use.

    An unknown `kid` triggers one re-fetch to pick up rotated keys, unless the set was
    fetched less than `min_refetch_seconds` ago.
    """

    def __init__(
        self,
        jwks_uri: str,
        *,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        min_refetch_seconds: float = JWKS_MIN_REFETCH_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.jwks_uri = jwks_uri
        self._timeout = timeout
        self._min_refetch_seconds = min_refetch_seconds
        self._clock = clock
        self._keys: Optional[Dict[str, Dict[str, Any]]] = None
        self.fetched_at: float = 0.0

    def _fetch(self) -> Dict[str, Dict[str, Any]]:
        try:
            r = requests.get(self.jwks_uri, headers={"Accept": "application/json"}, timeout=self._timeout)
        except requests.RequestException as e:
            raise DiscoveryError(f"JWKS request failed: {type(e).__name__}") from e
        if r.status_code >= 400:
            raise DiscoveryError(f"JWKS fetch failed: {r.status_code}")
        try:
            data = r.json()
        except ValueError as e:
            raise DiscoveryError("JWKS returned invalid JSON") from e
        keys = data.get("keys") if isinstance(data, dict) else None
        if not isinstance(keys, list):
            raise ConfigError("Invalid JWKS keys")

        out: Dict[str, Dict[str, Any]] = {}
        for k in keys:
            if isinstance(k, dict) and k.get("kid"):
                out[str(k["kid"])] = k
        self._keys = out
        self.fetched_at = self._clock()
        logger.debug("Fetched %d signing key(s) from %s", len(out), self.jwks_uri)
        return out

    def signing_key(self, kid: str) -> Any:
        keys = self._keys if self._keys is not None else self._fetch()
        jwk = keys.get(kid)
        if jwk is None and self._clock() - self.fetched_at >= self._min_refetch_seconds:
            jwk = self._fetch().get(kid)
        if jwk is None:
            raise InvalidTokenError("Unknown signing key (kid)")
        try:
            return jwt.PyJWK(jwk).key
        except jwt.PyJWTError as e:
            raise InvalidTokenError("Unusable signing key") from e


class KeyResolver:
    """Resolves discovery documents (fresh) and key sets (cached per JWKS URI)."""

    def __init__(
        self,
        *,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        min_refetch_seconds: float = JWKS_MIN_REFETCH_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout = timeout
        self._min_refetch_seconds = min_refetch_seconds
        self._clock = clock
        self._key_sets: Dict[str, KeySet] = {}

    def discover(self, discovery_url: str) -> OidcConfig:
        return discover(discovery_url, timeout=self._timeout)

    def resolve_key_set(self, jwks_uri: str) -> KeySet:
        key_set = self._key_sets.get(jwks_uri)
        if key_set is None:
            key_set = KeySet(
                jwks_uri, timeout=self._timeout, min_refetch_seconds=self._min_refetch_seconds, clock=self._clock
            )
            self._key_sets[jwks_uri] = key_set
        return key_set


def expected_issuer(issuer: str, unverified_claims: Dict[str, Any]) -> str:
    """
    Fill the tenant placeholder from the (not yet verified) `tid` claim.

    This only selects which issuer string to demand; the signature check that follows
    still enforces it.
    """
    if TENANT_PLACEHOLDER not in issuer:
        return issuer
    tid = unverified_claims.get("tid")
    if not isinstance(tid, str) or not tid:
        raise InvalidTokenError("ID token missing tenant id")
    return issuer.replace(TENANT_PLACEHOLDER, tid)


class OidcTokenVerifier:
    def __init__(
        self,
        *,
        discovery_url: str,
        client_id: str,
        resolver: KeyResolver,
        algorithms: Sequence[str] = ("RS256",),
        leeway_seconds: int = 30,
    ) -> None:
        self.discovery_url = discovery_url
        self.client_id = client_id
        self.resolver = resolver
        self.algorithms = list(algorithms)
        self.leeway_seconds = leeway_seconds

    def verify(self, id_token: str, *, expected_nonce: Optional[str]) -> Dict[str, Any]:
        """
        Validate an ID token from the provider.
        - Verifies the JWT signature against the provider's published keys
        - Validates issuer (after tenant substitution), audience, expiry
        - Checks the nonce when one was issued, and `email_verified` when present
        """
        config = self.resolver.discover(self.discovery_url)

        try:
            unverified = jwt.decode(id_token, options={"verify_signature": False})
            hdr = jwt.get_unverified_header(id_token)
        except jwt.PyJWTError as e:
            raise InvalidTokenError("Malformed ID token") from e

        issuer = expected_issuer(config.issuer, unverified)
        kid = str(hdr.get("kid") or "")
        if not kid:
            raise InvalidTokenError("ID token missing kid")

        key = self.resolver.resolve_key_set(config.jwks_uri).signing_key(kid)
        try:
            claims = jwt.decode(
                id_token,
                key=key,
                algorithms=self.algorithms,
                audience=self.client_id,
                issuer=issuer,
                leeway=self.leeway_seconds,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except jwt.PyJWTError as e:
            logger.info("ID token verification failed: %s", type(e).__name__)
            raise InvalidTokenError() from e

        if expected_nonce is not None:
            nonce = claims.get("nonce")
            if not isinstance(nonce, str) or nonce != expected_nonce:
                raise InvalidNonceError()

        # Some providers omit email_verified; treat it as optional.
        email_verified = claims.get("email_verified")
        if email_verified is not None and email_verified is not True:
            raise InvalidTokenError("Email not verified")

        return claims
