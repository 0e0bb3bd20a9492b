from __future__ import annotations

from datetime import timedelta
from typing import Optional
from unittest.mock import patch

from gatehouse.auth.ephemeral import NONCE_KEY, OAUTH_KEYS, STATE_KEY
from gatehouse.auth.errors import InvalidNonceError, RetrieveTokenError
from gatehouse.auth.models import FederatedIdentity, OAuthAccountLink, SessionMeta
from gatehouse.auth.oauth import OAuthClient, OidcIdentity
from gatehouse.auth.oidc import KeyResolver, OidcTokenVerifier
from gatehouse.auth.providers import MicrosoftUser, OAuthProvider
from gatehouse.auth.service import AuthService, failure_for
from gatehouse.auth.session import SessionManager
from support import (
    AUTH_URL,
    CLIENT_ID,
    DISCOVERY_URL,
    JWKS_URI,
    TOKEN_URL,
    Clock,
    MemoryAuthStore,
    MemorySecretStore,
    discovery_document,
    fake_response,
    http_router,
    id_token_claims,
    jwks,
    make_config,
    make_id_token,
)

META = SessionMeta(user_agent="pytest", ip_address="198.51.100.4")
PASSWORD = "correct-horse-battery"


class _StubClient:
    """Stands in for OAuthClient when the provider exchange itself is not under test."""

    def __init__(self, identity: Optional[FederatedIdentity] = None, error: Optional[Exception] = None) -> None:
        self.identity = identity
        self.error = error
        self.calls = []

    def create_auth_url(self, store) -> str:
        return f"{AUTH_URL}?state=stub"

    def fetch_user(self, code, state, store) -> FederatedIdentity:
        self.calls.append((code, state))
        if self.error is not None:
            raise self.error
        assert self.identity is not None
        return self.identity


def _service(store: MemoryAuthStore, client=None, clock=None, **cfg_overrides) -> AuthService:
    cfg = make_config(microsoft_client_id=CLIENT_ID, microsoft_client_secret="shh", **cfg_overrides)
    sessions = SessionManager(store, cfg, clock=clock or Clock())
    factory = (lambda p: client) if client is not None else None
    return AuthService(cfg=cfg, store=store, sessions=sessions, client_factory=factory)


def _identity(email: str = "a@x.com", sub: str = "ms-sub-1") -> FederatedIdentity:
    return FederatedIdentity(provider_user_id=sub, email=email, name="Ada", issuer="https://idp", tenant_id="t1")


# ---- Local password ----


def test_password_sign_in_creates_exactly_one_session() -> None:
    store = MemoryAuthStore()
    store.add_user("a@x.com", PASSWORD)
    secrets = MemorySecretStore()
    svc = _service(store)

    result = svc.sign_in_with_password("  A@X.com ", PASSWORD, secrets, META)

    assert result.ok
    assert len(store.created) == 1
    session = store.created[0]
    assert session.expires_at - session.created_at == timedelta(seconds=604800)
    assert svc.sessions.read_session_id(secrets) == session.id


def test_wrong_password_and_unknown_user_fail_identically() -> None:
    store = MemoryAuthStore()
    store.add_user("a@x.com", PASSWORD)
    svc = _service(store)

    wrong = svc.sign_in_with_password("a@x.com", "not-the-password", MemorySecretStore(), META)
    with patch("gatehouse.auth.service.dummy_verify") as mock_dummy:
        unknown = svc.sign_in_with_password("nobody@x.com", PASSWORD, MemorySecretStore(), META)

    assert wrong.failure == unknown.failure
    assert wrong.failure is not None
    assert wrong.failure.code == "invalid_credentials"
    assert wrong.failure.status == 401
    assert wrong.failure.message == "Invalid credentials"
    mock_dummy.assert_called_once_with(PASSWORD)
    assert store.created == []


def test_account_without_password_cannot_use_password_sign_in() -> None:
    store = MemoryAuthStore()
    store.add_user("sso-only@x.com")
    result = _service(store).sign_in_with_password("sso-only@x.com", PASSWORD, MemorySecretStore(), META)
    assert result.failure is not None
    assert result.failure.code == "invalid_credentials"


def test_password_sign_in_rejects_malformed_input() -> None:
    svc = _service(MemoryAuthStore())
    for email, password in [("not-an-email", PASSWORD), ("a@x.com", "short"), ("a@x.com", None), (None, PASSWORD)]:
        result = svc.sign_in_with_password(email, password, MemorySecretStore(), META)
        assert result.failure is not None
        assert result.failure.code == "invalid_request"
        assert result.failure.status == 400


def test_password_sign_in_when_store_is_down() -> None:
    store = MemoryAuthStore()
    store.fail_ops.add("get_credential_by_email")
    result = _service(store).sign_in_with_password("a@x.com", PASSWORD, MemorySecretStore(), META)
    assert result.failure is not None
    assert result.failure.code == "persistence_unavailable"
    assert result.failure.status == 503
    assert result.failure.message == "Service unavailable. Try again."


def test_session_store_failure_surfaces_as_persistence_error() -> None:
    store = MemoryAuthStore()
    store.add_user("a@x.com", PASSWORD)
    store.fail_ops.add("create_session")
    secrets = MemorySecretStore()
    result = _service(store).sign_in_with_password("a@x.com", PASSWORD, secrets, META)
    assert result.failure is not None
    assert result.failure.code == "persistence_unavailable"
    assert secrets.values == {}


# ---- Federated: account linking policy ----


def test_unknown_email_is_not_provisioned() -> None:
    store = MemoryAuthStore()
    svc = _service(store, client=_StubClient(_identity("new@x.com")))
    result = svc.sign_in_with_provider("microsoft", "code", "state", MemorySecretStore(), META)
    assert result.failure is not None
    assert result.failure.code == "not_provisioned"
    assert result.failure.status == 403
    assert store.created == []
    assert store.links == {}


def test_provider_not_on_allow_list_creates_no_link() -> None:
    store = MemoryAuthStore()
    store.add_user("a@x.com", PASSWORD)
    svc = _service(store, client=_StubClient(_identity()))
    result = svc.sign_in_with_provider("microsoft", "code", "state", MemorySecretStore(), META)
    assert result.failure is not None
    assert result.failure.code == "provider_not_allowed"
    assert store.links == {}
    assert store.created == []


def test_allow_listed_user_is_linked_and_signed_in() -> None:
    store = MemoryAuthStore()
    cred = store.add_user("a@x.com", PASSWORD)
    store.allowed.add((cred.user_id, "microsoft"))
    secrets = MemorySecretStore()
    svc = _service(store, client=_StubClient(_identity()))

    result = svc.sign_in_with_provider("microsoft", "code", "state", secrets, META)

    assert result.ok
    assert result.session is not None and result.session.user_id == cred.user_id
    link = store.links[("microsoft", "ms-sub-1")]
    assert link.user_id == cred.user_id
    assert link.tenant_id == "t1"
    assert len(store.created) == 1


def test_existing_link_wins_over_email() -> None:
    store = MemoryAuthStore()
    store.add_user("a@x.com", PASSWORD)
    store.links[("microsoft", "ms-sub-1")] = OAuthAccountLink(
        provider="microsoft", provider_user_id="ms-sub-1", user_id="user-linked"
    )
    svc = _service(store, client=_StubClient(_identity(email="renamed@x.com")))

    result = svc.sign_in_with_provider("microsoft", "code", "state", MemorySecretStore(), META)

    assert result.ok
    assert result.session is not None and result.session.user_id == "user-linked"


def test_identity_without_email_is_rejected() -> None:
    store = MemoryAuthStore()
    svc = _service(store, client=_StubClient(_identity(email="  ")))
    result = svc.sign_in_with_provider("microsoft", "code", "state", MemorySecretStore(), META)
    assert result.failure is not None
    assert result.failure.code == "email_required"
    assert store.created == []


def test_upstream_failure_maps_to_503_without_detail() -> None:
    svc = _service(MemoryAuthStore(), client=_StubClient(error=RetrieveTokenError("status=502 body=secret")))
    result = svc.sign_in_with_provider("microsoft", "code", "state", MemorySecretStore(), META)
    assert result.failure is not None
    assert result.failure.code == "token_retrieval_failed"
    assert result.failure.status == 503
    assert "secret" not in result.failure.message


def test_nonce_failure_never_creates_session() -> None:
    store = MemoryAuthStore()
    cred = store.add_user("a@x.com", PASSWORD)
    store.allowed.add((cred.user_id, "microsoft"))
    svc = _service(store, client=_StubClient(error=InvalidNonceError()))
    result = svc.sign_in_with_provider("microsoft", "code", "state", MemorySecretStore(), META)
    assert result.failure is not None
    assert result.failure.code == "invalid_nonce"
    assert result.failure.message == "Authentication failed"
    assert store.created == []


# ---- Federated: callback handling with a real client ----


def _real_client() -> OAuthClient:
    verifier = OidcTokenVerifier(discovery_url=DISCOVERY_URL, client_id=CLIENT_ID, resolver=KeyResolver())
    return OAuthClient(
        provider=OAuthProvider.MICROSOFT.value,
        client_id=CLIENT_ID,
        client_secret="shh",
        scopes=["openid", "profile", "email"],
        auth_url=AUTH_URL,
        token_url=TOKEN_URL,
        redirect_uri="http://testserver/oauth/microsoft",
        identity=OidcIdentity(verifier=verifier),
        user_schema=MicrosoftUser,
        parse_user=lambda u: FederatedIdentity(
            provider_user_id=u.sub, email=u.email or "", name=u.name, issuer=u.iss, tenant_id=u.tid
        ),
    )


def test_full_callback_links_and_signs_in() -> None:
    store = MemoryAuthStore()
    cred = store.add_user("a@x.com", PASSWORD)
    store.allowed.add((cred.user_id, "microsoft"))
    svc = _service(store, client=_real_client())
    secrets = MemorySecretStore()

    started = svc.start_oauth("microsoft", secrets)
    assert started.url is not None and started.url.startswith(AUTH_URL)

    token = make_id_token(id_token_claims(nonce=secrets.values[NONCE_KEY]))
    routes = {DISCOVERY_URL: fake_response(200, discovery_document()), JWKS_URI: fake_response(200, jwks())}
    with patch("gatehouse.auth.oidc.requests.get", side_effect=http_router(routes)), patch(
        "gatehouse.auth.oauth.requests.post",
        return_value=fake_response(200, {"access_token": "at", "token_type": "Bearer", "id_token": token}),
    ):
        result = svc.handle_oauth_callback(
            "microsoft", {"code": "c-1", "state": secrets.values[STATE_KEY]}, secrets, META
        )

    assert result.ok
    assert result.session is not None and result.session.user_id == cred.user_id
    assert all(secrets.values.get(k) is None for k in OAUTH_KEYS)
    assert svc.sessions.read_session_id(secrets) == result.session.id


def test_tampered_state_never_exchanges_code_or_creates_session() -> None:
    store = MemoryAuthStore()
    svc = _service(store, client=_real_client())
    secrets = MemorySecretStore()
    svc.start_oauth("microsoft", secrets)

    with patch("gatehouse.auth.oauth.requests.post") as mock_post:
        result = svc.handle_oauth_callback("microsoft", {"code": "c-1", "state": "forged"}, secrets, META)

    assert result.failure is not None
    assert result.failure.code == "invalid_state"
    mock_post.assert_not_called()
    assert store.created == []
    assert all(secrets.values.get(k) is None for k in OAUTH_KEYS)


def test_callback_with_provider_error() -> None:
    secrets = MemorySecretStore({STATE_KEY: "s"})
    client = _StubClient(_identity())
    svc = _service(MemoryAuthStore(), client=client)
    result = svc.handle_oauth_callback(
        "microsoft", {"error": "access_denied", "error_description": "User cancelled"}, secrets, META
    )
    assert result.failure is not None
    assert result.failure.code == "provider_error"
    assert client.calls == []
    assert STATE_KEY not in secrets.values


def test_callback_with_missing_params() -> None:
    svc = _service(MemoryAuthStore(), client=_StubClient(_identity()))
    result = svc.handle_oauth_callback("microsoft", {"code": "c-1"}, MemorySecretStore(), META)
    assert result.failure is not None
    assert result.failure.code == "callback_params_missing"
    assert result.failure.status == 400


def test_unknown_or_disabled_provider() -> None:
    svc = _service(MemoryAuthStore())
    result = svc.handle_oauth_callback("github", {"code": "c", "state": "s"}, MemorySecretStore(), META)
    assert result.failure is not None
    assert result.failure.code == "invalid_provider"

    started = svc.start_oauth("discord", MemorySecretStore())
    assert started.url is None
    assert started.failure is not None and started.failure.code == "invalid_provider"


# ---- Sessions ----


def test_sign_out_deletes_session_and_clears_cookies() -> None:
    store = MemoryAuthStore()
    store.add_user("a@x.com", PASSWORD)
    svc = _service(store)
    secrets = MemorySecretStore()
    result = svc.sign_in_with_password("a@x.com", PASSWORD, secrets, META)
    assert result.session is not None

    svc.sign_out(result.session.id, secrets)

    assert store.sessions == {}
    assert secrets.values == {}


def test_sign_out_clears_cookies_even_when_delete_fails() -> None:
    store = MemoryAuthStore()
    store.fail_ops.add("delete_session")
    secrets = MemorySecretStore({"gatehouse_sid": "whatever", STATE_KEY: "s"})

    _service(store).sign_out("sid-1", secrets)

    assert secrets.values == {}


def test_check_session_and_authenticate() -> None:
    clock = Clock()
    store = MemoryAuthStore()
    store.add_user("a@x.com", PASSWORD)
    svc = _service(store, clock=clock)
    secrets = MemorySecretStore()
    svc.sign_in_with_password("a@x.com", PASSWORD, secrets, META)

    assert svc.check_session(secrets).ok
    clock.advance(minutes=5)
    touched = svc.authenticate(secrets, SessionMeta(user_agent="browser"))
    assert touched.ok
    assert touched.session is not None and touched.session.last_seen_at == clock.now

    clock.advance(days=8)
    expired = svc.check_session(secrets)
    assert expired.failure is not None
    assert expired.failure.code == "invalid_session"
    assert expired.failure.status == 401


def test_authenticate_with_sliding_sessions_reissues_cookie() -> None:
    clock = Clock()
    store = MemoryAuthStore()
    store.add_user("a@x.com", PASSWORD)
    svc = _service(store, clock=clock, session_sliding=True)
    secrets = MemorySecretStore()
    svc.sign_in_with_password("a@x.com", PASSWORD, secrets, META)

    clock.advance(days=2)
    result = svc.authenticate(secrets, META)

    assert result.session is not None
    assert result.session.expires_at == clock.now + timedelta(seconds=604800)
    assert secrets.attrs[svc.sessions.cookie_name]["expires"] == result.session.expires_at


def test_failure_for_unexpected_errors_is_generic() -> None:
    failure = failure_for(KeyError("boom"))
    assert failure.code == "server_error"
    assert failure.status == 500
    assert failure.message == "Internal server error"
