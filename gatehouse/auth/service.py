"""
Authentication orchestrator: local password and federated sign-in, sign-out and session
checks.

Component errors are translated into AuthFailure here; nothing raises out of the public
methods below.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from gatehouse.auth.config import AuthConfig
from gatehouse.auth.cookies import SecretStore
from gatehouse.auth.ephemeral import EphemeralSecretManager
from gatehouse.auth.errors import (
    AuthError,
    EmailRequiredError,
    InvalidCredentialsError,
    InvalidRequestError,
    InvalidSessionError,
    MissingCallbackParamsError,
    NotProvisionedError,
    ProviderError,
    ProviderNotAllowedError,
)
from gatehouse.auth.models import (
    AuthFailure,
    AuthRedirect,
    AuthResult,
    FederatedIdentity,
    OAuthAccountLink,
    Session,
    SessionMeta,
)
from gatehouse.auth.oauth import OAuthClient
from gatehouse.auth.oidc import KeyResolver
from gatehouse.auth.password import MAX_PASSWORD_LENGTH, dummy_verify, verify_password
from gatehouse.auth.providers import OAuthProvider, get_oauth_client, parse_provider
from gatehouse.auth.session import SessionManager
from gatehouse.store.base import AuthStore

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_STATUS_BY_CATEGORY = {
    "validation": 400,
    "authentication": 401,
    "authorization": 403,
    "upstream": 503,
    "server": 500,
}


class PasswordSignIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str
    password: str

    @field_validator("email", mode="before")
    @classmethod
    def _email_norm(cls, v: Any) -> str:
        email = str(v or "").strip().lower()
        if len(email) > 254 or not _EMAIL_RE.match(email):
            raise ValueError("Enter a valid email")
        return email

    @field_validator("password")
    @classmethod
    def _password_len(cls, v: str) -> str:
        if len(v) < 8 or len(v) > MAX_PASSWORD_LENGTH:
            raise ValueError("Password must be 8-200 characters")
        return v


def failure_for(exc: BaseException) -> AuthFailure:
    """Map an error to the user-visible failure. Authentication failures stay generic."""
    if not isinstance(exc, AuthError):
        return AuthFailure(code="server_error", category="server", message="Internal server error", status=500)

    category = exc.category
    if category == "validation":
        message = "Invalid request"
    elif category == "authentication":
        message = "Invalid credentials" if isinstance(exc, InvalidCredentialsError) else "Authentication failed"
    elif category == "authorization":
        message = str(exc)
    elif category == "upstream":
        message = "Service unavailable. Try again."
    else:
        message = "Internal server error"
    return AuthFailure(code=exc.code, category=category, message=message, status=_STATUS_BY_CATEGORY.get(category, 500))


def _log_failure(flow: str, exc: BaseException) -> None:
    if not isinstance(exc, AuthError):
        logger.error("%s: unexpected error", flow, exc_info=exc)
    elif exc.category in ("upstream", "server"):
        logger.error("%s failed: code=%s reason=%s", flow, exc.code, str(exc), exc_info=exc)
    else:
        logger.warning("%s failed: code=%s reason=%s", flow, exc.code, str(exc))


class AuthService:
    def __init__(
        self,
        *,
        cfg: AuthConfig,
        store: AuthStore,
        sessions: SessionManager,
        resolver: Optional[KeyResolver] = None,
        client_factory: Optional[Callable[[OAuthProvider], OAuthClient]] = None,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.sessions = sessions
        self.resolver = resolver or KeyResolver()
        self._client_factory = client_factory or (lambda p: get_oauth_client(p, cfg, self.resolver))

    def _fail(self, flow: str, exc: BaseException) -> AuthFailure:
        _log_failure(flow, exc)
        return failure_for(exc)

    # ---- Local password ----

    def sign_in_with_password(
        self, email: Any, password: Any, secret_store: SecretStore, meta: SessionMeta = SessionMeta()
    ) -> AuthResult:
        try:
            try:
                creds = PasswordSignIn.model_validate({"email": email, "password": password})
            except ValidationError as e:
                raise InvalidRequestError() from e

            credential = self.store.get_credential_by_email(creds.email)
            if credential is None or not credential.complete:
                dummy_verify(creds.password)
                raise InvalidCredentialsError()

            if not verify_password(creds.password, str(credential.password_salt), str(credential.password_hash)):
                raise InvalidCredentialsError()

            session = self.sessions.create(credential.user_id, meta, secret_store)
            return AuthResult(session=session)
        except Exception as e:
            return AuthResult(failure=self._fail("password sign-in", e))

    # ---- Federated ----

    def start_oauth(self, provider_name: str, secret_store: SecretStore) -> AuthRedirect:
        try:
            client = self._client_factory(parse_provider(provider_name))
            return AuthRedirect(url=client.create_auth_url(secret_store))
        except Exception as e:
            return AuthRedirect(failure=self._fail(f"oauth start ({provider_name})", e))

    def handle_oauth_callback(
        self,
        provider_name: str,
        params: Mapping[str, Optional[str]],
        secret_store: SecretStore,
        meta: SessionMeta = SessionMeta(),
    ) -> AuthResult:
        """Validate raw callback query parameters, then run sign_in_with_provider."""
        try:
            parse_provider(provider_name)
            error = (params.get("error") or "").strip()
            code = (params.get("code") or "").strip()
            state = (params.get("state") or "").strip()
            if error:
                raise ProviderError(error, params.get("error_description"))
            if not code or not state:
                raise MissingCallbackParamsError()
        except Exception as e:
            # The attempt is over either way; drop its secrets.
            EphemeralSecretManager(secret_store).clear()
            return AuthResult(failure=self._fail(f"oauth callback ({provider_name})", e))

        return self.sign_in_with_provider(provider_name, code, state, secret_store, meta)

    def sign_in_with_provider(
        self,
        provider_name: str,
        code: str,
        state: str,
        secret_store: SecretStore,
        meta: SessionMeta = SessionMeta(),
    ) -> AuthResult:
        try:
            provider = parse_provider(provider_name)
            client = self._client_factory(provider)
            identity = client.fetch_user(code, state, secret_store)
            user_id = self._link_account(provider, identity)
            session = self.sessions.create(user_id, meta, secret_store)
            return AuthResult(session=session)
        except Exception as e:
            return AuthResult(failure=self._fail(f"oauth sign-in ({provider_name})", e))

    def _link_account(self, provider: OAuthProvider, identity: FederatedIdentity) -> str:
        """
        Resolve the local user for a federated identity.

        Existing links win. Otherwise the email must belong to an existing account that
        has this provider on its allow-list; accounts are never auto-created.
        """
        email = (identity.email or "").strip().lower()
        if not email:
            raise EmailRequiredError()

        linked = self.store.find_oauth_link(provider.value, identity.provider_user_id)
        if linked:
            return linked

        user_id = self.store.get_user_id_by_email(email)
        if not user_id:
            raise NotProvisionedError()
        if not self.store.is_provider_allowed(user_id, provider.value):
            raise ProviderNotAllowedError()

        self.store.upsert_oauth_link(
            OAuthAccountLink(
                provider=provider.value,
                provider_user_id=identity.provider_user_id,
                user_id=user_id,
                issuer=identity.issuer,
                tenant_id=identity.tenant_id,
            )
        )
        logger.info("Linked %s account to user_id=%s", provider.value, user_id)
        return user_id

    # ---- Sessions ----

    def sign_out(self, session_id: Optional[str], secret_store: SecretStore) -> None:
        """Best-effort server-side revocation; client state is always cleared."""
        try:
            if session_id:
                self.sessions.delete(session_id)
        except Exception as e:
            logger.warning("sign-out: session delete failed: %s", type(e).__name__)
        finally:
            self.sessions.clear_client_state(secret_store)

    def check_session(self, secret_store: SecretStore) -> AuthResult:
        """Read-only validity check for the caller's session cookie."""
        try:
            session = self.sessions.get(self.sessions.read_session_id(secret_store))
            if session is None:
                raise InvalidSessionError()
            return AuthResult(session=session)
        except InvalidSessionError as e:
            return AuthResult(failure=failure_for(e))
        except Exception as e:
            return AuthResult(failure=self._fail("session check", e))

    def authenticate(self, secret_store: SecretStore, meta: SessionMeta = SessionMeta()) -> AuthResult:
        """Validate and touch the caller's session (updates last seen + contact metadata)."""
        try:
            session: Optional[Session] = self.sessions.touch(self.sessions.read_session_id(secret_store), meta)
            if session is None:
                raise InvalidSessionError()
            if self.sessions.sliding:
                self.sessions.issue_cookie(session, secret_store)
            return AuthResult(session=session)
        except InvalidSessionError as e:
            return AuthResult(failure=failure_for(e))
        except Exception as e:
            return AuthResult(failure=self._fail("session authenticate", e))
