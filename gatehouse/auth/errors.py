"""
Typed authentication errors.

Every error carries a machine-readable `code` (the value surfaced to the routing layer as
`?error=<code>`) and a `category` that decides how much the end user is told:

- validation: malformed input or schema mismatch (400, generic)
- authentication: bad credentials or a failed state/nonce/verifier/token check (401, generic)
- authorization: provisioning decisions (403, distinct messages; not secrets)
- upstream: provider or persistence unavailable (503, no internal detail)
- server: anything unexpected (500)
"""

from __future__ import annotations

from typing import Optional


class AuthError(Exception):
    code = "server_error"
    category = "server"
    default_message = "Authentication failed"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)


# ---- Validation ----


class InvalidRequestError(AuthError):
    code = "invalid_request"
    category = "validation"
    default_message = "Invalid request"


class InvalidProviderError(AuthError):
    code = "invalid_provider"
    category = "validation"

    def __init__(self, provider: str) -> None:
        super().__init__(f"Unsupported OAuth provider: {provider}")
        self.provider = provider


class MissingCallbackParamsError(AuthError):
    code = "callback_params_missing"
    category = "validation"
    default_message = "Missing OAuth callback parameters"


class InvalidTokenSchemaError(AuthError):
    code = "invalid_token"
    category = "validation"
    default_message = "Token response did not match the expected shape"


class InvalidUserSchemaError(AuthError):
    code = "invalid_user_schema"
    category = "validation"
    default_message = "Identity payload did not match the provider schema"


class EmailRequiredError(AuthError):
    code = "email_required"
    category = "validation"
    default_message = "Email is required but was not provided by the OAuth provider"


# ---- Authentication ----


class InvalidCredentialsError(AuthError):
    code = "invalid_credentials"
    category = "authentication"
    default_message = "Invalid credentials"


class InvalidStateError(AuthError):
    code = "invalid_state"
    category = "authentication"
    default_message = "Invalid state"


class InvalidCodeVerifierError(AuthError):
    code = "invalid_code_verifier"
    category = "authentication"
    default_message = "Invalid code verifier"


class InvalidTokenError(AuthError):
    code = "invalid_token"
    category = "authentication"
    default_message = "Invalid token"


class InvalidNonceError(AuthError):
    code = "invalid_nonce"
    category = "authentication"
    default_message = "Invalid nonce"


class InvalidSessionError(AuthError):
    code = "invalid_session"
    category = "authentication"
    default_message = "No valid session"


class ProviderError(AuthError):
    code = "provider_error"
    category = "authentication"

    def __init__(self, error: str, error_description: Optional[str] = None) -> None:
        super().__init__(error_description or f"OAuth provider error: {error}")
        self.error = error
        self.error_description = error_description


# ---- Authorization / provisioning ----


class NotProvisionedError(AuthError):
    code = "not_provisioned"
    category = "authorization"
    default_message = "No account is provisioned for this identity"


class ProviderNotAllowedError(AuthError):
    code = "provider_not_allowed"
    category = "authorization"
    default_message = "This sign-in method is not enabled for your account"


# ---- Upstream ----


class RetrieveTokenError(AuthError):
    code = "token_retrieval_failed"
    category = "upstream"
    default_message = "Failed to retrieve OAuth token"


class FetchUserError(AuthError):
    code = "fetch_user_failed"
    category = "upstream"
    default_message = "Failed to fetch OAuth user"


class DiscoveryError(AuthError):
    code = "oidc_discovery_failed"
    category = "upstream"
    default_message = "OIDC discovery failed"


class ConfigError(AuthError):
    code = "oidc_config_invalid"
    category = "upstream"
    default_message = "OIDC configuration is invalid"


class PersistenceError(AuthError):
    code = "persistence_unavailable"
    category = "upstream"
    default_message = "Persistence layer unavailable"


class SessionCreateError(PersistenceError):
    default_message = "Failed to create user session"
