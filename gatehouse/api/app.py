"""
HTTP surface for the auth core (FastAPI).

Routes:
- POST /api/auth/login            local email/password sign-in (JSON)
- POST /api/auth/logout           sign out (always clears cookies)
- GET  /api/auth/session          session validation for gateways/middleware
- GET  /api/auth/mode             enabled sign-in methods (public)
- GET  /api/auth/login/{provider} start an OAuth flow (redirect to provider)
- GET  /oauth/{provider}          OAuth callback (redirect to app or sign-in with ?error=)
- GET  /api/auth/me               protected; current session
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict
from urllib.parse import urlencode

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from gatehouse.auth.config import AuthConfig, load_auth_config
from gatehouse.auth.cookies import ResponseCookieStore
from gatehouse.auth.models import SessionMeta
from gatehouse.auth.providers import enabled_providers
from gatehouse.auth.service import AuthService
from gatehouse.auth.session import SESSION_COOKIE_PATH, SessionManager
from gatehouse.auth.util import client_ip

logger = logging.getLogger(__name__)


def _is_public_path(path: str) -> bool:
    if path == "/healthz":
        return True
    # Sign-in entry points and the OAuth callback must be reachable without a session.
    if path == "/api/auth/login" or path.startswith("/api/auth/login/") or path.startswith("/oauth/"):
        return True
    # Logout works even if the cookie is already missing/invalid; the session
    # check endpoint reports its own status.
    if path in ("/api/auth/logout", "/api/auth/session", "/api/auth/mode"):
        return True
    return False


def _meta(request: Request) -> SessionMeta:
    peer = request.client.host if request.client else None
    return SessionMeta(user_agent=request.headers.get("user-agent"), ip_address=client_ip(request.headers, peer))


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _sign_in_redirect(cfg: AuthConfig, code: str) -> RedirectResponse:
    resp = RedirectResponse(url=f"{cfg.sign_in_path}?{urlencode({'error': code})}", status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def create_app(service: AuthService) -> FastAPI:
    app = FastAPI(title="Gatehouse auth")
    app.state.auth_service = service

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log requests and enforce a valid session on every non-public path."""
        start_time = time.time()
        path = request.url.path or ""
        try:
            if request.method == "OPTIONS" or _is_public_path(path):
                response = await call_next(request)
                logger.debug(
                    "%s %s - %d (%.3fs)", request.method, path, response.status_code, time.time() - start_time
                )
                return response

            # Fail closed: anything not explicitly public requires a session.
            svc = _service(request)
            store = ResponseCookieStore(request.cookies)
            result = await run_in_threadpool(svc.authenticate, store, _meta(request))
            if not result.ok:
                failure = result.failure
                status = failure.status if failure else 401
                error = "Unauthorized" if status == 401 or failure is None else failure.message
                resp = JSONResponse(status_code=status, content={"success": False, "error": error})
                if status == 401:
                    # Stale cookie: drop it so the client stops presenting it.
                    store.delete(svc.sessions.cookie_name, path=SESSION_COOKIE_PATH, secure=svc.cfg.cookie_secure)
                return store.apply(resp)

            request.state.session = result.session
            response = await call_next(request)
            store.apply(response)
            logger.debug("%s %s - %d (%.3fs)", request.method, path, response.status_code, time.time() - start_time)
            return response
        except Exception as e:
            logger.exception(
                "%s %s - ERROR after %.3fs: %s", request.method, path, time.time() - start_time, type(e).__name__
            )
            raise

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True}

    @app.get("/api/auth/mode")
    def auth_mode(request: Request) -> Dict[str, Any]:
        """Enabled sign-in methods so the UI can render the right options. Returns no secrets."""
        cfg = _service(request).cfg
        return {
            "ok": True,
            "localEnabled": True,
            "providers": [{"name": p.value, "loginUrl": f"/api/auth/login/{p.value}"} for p in enabled_providers(cfg)],
        }

    @app.post("/api/auth/login")
    async def auth_login(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse(status_code=400, content={"success": False, "error": "Malformed JSON"})
        if not isinstance(body, dict):
            return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request body"})

        svc = _service(request)
        store = ResponseCookieStore(request.cookies)
        result = await run_in_threadpool(
            svc.sign_in_with_password, body.get("email"), body.get("password"), store, _meta(request)
        )
        if not result.ok:
            failure = result.failure
            resp = JSONResponse(
                status_code=failure.status if failure else 500,
                content={"success": False, "error": failure.message if failure else "Internal server error"},
            )
        else:
            resp = JSONResponse(content={"success": True})
        resp.headers["Cache-Control"] = "no-store"
        return store.apply(resp)

    @app.post("/api/auth/logout")
    def auth_logout(request: Request) -> JSONResponse:
        svc = _service(request)
        store = ResponseCookieStore(request.cookies)
        svc.sign_out(svc.sessions.read_session_id(store), store)
        resp = JSONResponse(content={"ok": True})
        resp.headers["Cache-Control"] = "no-store"
        return store.apply(resp)

    @app.get("/api/auth/session")
    def auth_session(request: Request) -> JSONResponse:
        result = _service(request).check_session(ResponseCookieStore(request.cookies))
        if result.ok:
            resp = JSONResponse(status_code=200, content={"success": True})
        else:
            status = result.failure.status if result.failure else 401
            resp = JSONResponse(status_code=status, content={"success": False})
        resp.headers["Cache-Control"] = "no-store"
        return resp

    @app.get("/api/auth/me")
    def auth_me(request: Request) -> Dict[str, Any]:
        session = request.state.session
        return {
            "ok": True,
            "session": {
                "userId": session.user_id,
                "createdAt": session.created_at.isoformat(),
                "lastSeenAt": session.last_seen_at.isoformat(),
                "expiresAt": session.expires_at.isoformat(),
            },
        }

    @app.get("/api/auth/login/{provider}")
    def auth_login_oauth(request: Request, provider: str):
        """Start an OAuth flow: issue state/verifier/nonce cookies and redirect to the provider."""
        svc = _service(request)
        store = ResponseCookieStore(request.cookies)
        started = svc.start_oauth(provider, store)
        if started.url is None:
            code = started.failure.code if started.failure else "server_error"
            return store.apply(_sign_in_redirect(svc.cfg, code))

        resp = RedirectResponse(url=started.url, status_code=302)
        resp.headers["Cache-Control"] = "no-store"
        return store.apply(resp)

    @app.get("/oauth/{provider}")
    def auth_callback_oauth(request: Request, provider: str):
        """Handle the provider callback (`code`/`state`, or `error`/`error_description`)."""
        svc = _service(request)
        store = ResponseCookieStore(request.cookies)
        result = svc.handle_oauth_callback(provider, dict(request.query_params), store, _meta(request))
        if not result.ok:
            code = result.failure.code if result.failure else "server_error"
            return store.apply(_sign_in_redirect(svc.cfg, code))

        resp = RedirectResponse(url=svc.cfg.after_login_path, status_code=302)
        resp.headers["Cache-Control"] = "no-store"
        return store.apply(resp)

    return app


def build_service_from_env() -> AuthService:
    """Construct the process-wide auth service (store, sessions, key resolver) once."""
    from gatehouse.store.config import build_postgres_dsn, load_store_config
    from gatehouse.store.postgres import PostgresAuthStore

    cfg = load_auth_config()
    dsn = build_postgres_dsn(load_store_config())
    if not dsn:
        raise RuntimeError("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars)")
    store = PostgresAuthStore(dsn)
    return AuthService(cfg=cfg, store=store, sessions=SessionManager(store, cfg))


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    from gatehouse.store.migrate import maybe_auto_migrate

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    did_attempt, msg = maybe_auto_migrate()
    if did_attempt:
        logger.info("DB migrations: %s", msg)

    app = create_app(build_service_from_env())

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )
    logger.info("Starting auth server on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
