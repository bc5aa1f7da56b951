"""
Secrets web server.

Local and federated (Google, Facebook) login with a signed session cookie; signed-in
users can post one secret each and read everybody's secrets.
"""

from __future__ import annotations

import logging
import os
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path
from typing import AsyncIterator, Optional

import requests
from fastapi import APIRouter, FastAPI, Form, Query, Request
from fastapi.responses import RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.concurrency import run_in_threadpool

from secrets_app.auth import facebook, oidc
from secrets_app.auth.deps import authenticate_request, current_user
from secrets_app.auth.federation import complete_login, fetch_facebook_profile, fetch_google_profile
from secrets_app.auth.local import authenticate_local, register_local
from secrets_app.auth.models import User
from secrets_app.auth.session import clear_session_cookie_kwargs, encode_session, session_cookie_kwargs
from secrets_app.config import AppConfig, load_app_config
from secrets_app.errors import (
    AuthenticationFailure,
    DuplicateUsername,
    InvalidCredentials,
    NotFound,
    StoreUnavailable,
)
from secrets_app.store.base import UserStore

logger = logging.getLogger(__name__)

WEB_DIR = Path(__file__).resolve().parent.parent / "web"
TEMPLATES_DIR = WEB_DIR / "templates"
STATIC_DIR = WEB_DIR / "static"

router = APIRouter()


# ---- Provider handshake cookies ----
_OAUTH_COOKIE_PATH = "/auth"
_OAUTH_TTL_SECONDS = 10 * 60
_OAUTH_STATE = "secrets_oauth_state"
_OAUTH_NONCE = "secrets_oauth_nonce"
_OAUTH_VERIFIER = "secrets_oauth_verifier"


def _oauth_cookie_kwargs(cfg: AppConfig, *, key: str, value: str, max_age: int) -> dict:
    return {
        "key": key,
        "value": value,
        "max_age": max_age,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": _OAUTH_COOKIE_PATH,
    }


def _oauth_cookie_clear_kwargs(cfg: AppConfig, *, key: str) -> dict:
    return _oauth_cookie_kwargs(cfg, key=key, value="", max_age=0)


def _clear_oauth_cookies(cfg: AppConfig, resp: Response) -> None:
    for key in (_OAUTH_STATE, _OAUTH_NONCE, _OAUTH_VERIFIER):
        resp.set_cookie(**_oauth_cookie_clear_kwargs(cfg, key=key))


def _is_public_path(path: str) -> bool:
    # Health checks and assets never need the session user.
    return path == "/healthz" or path.startswith("/static/")


def _redirect(url: str, *, no_store: bool = False) -> RedirectResponse:
    resp = RedirectResponse(url=url, status_code=302)
    if no_store:
        resp.headers["Cache-Control"] = "no-store"
    return resp


def _login_redirect(cfg: AppConfig, user: User) -> RedirectResponse:
    """Redirect to /secrets carrying a fresh session cookie for `user`."""
    session_value = encode_session(cfg, user)
    if not session_value:
        # create_app() always installs a key; this only trips on a hand-built config.
        logger.error("Session signing is not configured; cannot log in user %s", user.id)
        return _redirect("/login", no_store=True)
    resp = _redirect("/secrets", no_store=True)
    resp.set_cookie(**session_cookie_kwargs(cfg, session_value))
    return resp


def _cfg(request: Request) -> AppConfig:
    return request.app.state.config


def _store(request: Request) -> UserStore:
    return request.app.state.store


def _render(request: Request, name: str, **context) -> Response:
    templates: Jinja2Templates = request.app.state.templates
    cfg = _cfg(request)
    context.setdefault("user", current_user(request))
    context.setdefault("google_enabled", cfg.google_enabled)
    context.setdefault("facebook_enabled", cfg.facebook_enabled)
    return templates.TemplateResponse(request, name, context)


async def log_requests(request: Request, call_next):
    """Log all incoming HTTP requests and attach the session user (if any)."""
    start_time = time.time()
    logger.debug("%s %s", request.method, request.url.path)
    try:
        request.state.user = None
        if not _is_public_path(request.url.path or ""):
            request.state.user = await authenticate_request(request)

        response = await call_next(request)
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
        raise


@router.get("/healthz")
def healthz():
    return {"ok": True}


@router.get("/")
async def home(request: Request):
    return _render(request, "home.html")


@router.get("/login")
async def login_page(request: Request):
    return _render(request, "login.html")


@router.get("/register")
async def register_page(request: Request):
    return _render(request, "register.html")


@router.post("/register")
async def register(request: Request, username: str = Form(""), password: str = Form("")):
    """Create a local user and log it straight in."""
    cfg = _cfg(request)
    try:
        user = await register_local(_store(request), username, password)
    except (DuplicateUsername, InvalidCredentials) as e:
        logger.info("Registration failed: %s", str(e))
        return _redirect("/register", no_store=True)
    except StoreUnavailable as e:
        logger.warning("Registration failed, store unavailable: %s", str(e))
        return _redirect("/register", no_store=True)
    return _login_redirect(cfg, user)


@router.post("/login")
async def login(request: Request, username: str = Form(""), password: str = Form("")):
    cfg = _cfg(request)
    try:
        user = await authenticate_local(_store(request), username, password)
    except InvalidCredentials:
        logger.info("Local login failed for %r", (username or "").strip())
        return _redirect("/login", no_store=True)
    except StoreUnavailable as e:
        logger.warning("Local login failed, store unavailable: %s", str(e))
        return _redirect("/login", no_store=True)
    return _login_redirect(cfg, user)


@router.get("/auth/google")
async def auth_google(request: Request):
    """Start Google sign-in (scope: profile + email)."""
    cfg = _cfg(request)
    if not cfg.google_enabled:
        logger.info("Google sign-in requested but not configured")
        return _redirect("/login")

    state = secrets.token_urlsafe(32)
    nonce = secrets.token_urlsafe(32)
    verifier = secrets.token_urlsafe(32)  # 43+ chars (base64url) -> valid PKCE verifier
    try:
        url = await run_in_threadpool(
            oidc.build_authorize_url,
            cfg,
            redirect_uri=cfg.callback_url("google"),
            state=state,
            nonce=nonce,
            code_challenge=oidc.pkce_challenge(verifier),
        )
    except (ValueError, requests.RequestException) as e:
        logger.warning("Cannot start Google sign-in: %s", str(e))
        return _redirect("/login", no_store=True)

    resp = _redirect(url, no_store=True)
    resp.set_cookie(**_oauth_cookie_kwargs(cfg, key=_OAUTH_STATE, value=state, max_age=_OAUTH_TTL_SECONDS))
    resp.set_cookie(**_oauth_cookie_kwargs(cfg, key=_OAUTH_NONCE, value=nonce, max_age=_OAUTH_TTL_SECONDS))
    resp.set_cookie(**_oauth_cookie_kwargs(cfg, key=_OAUTH_VERIFIER, value=verifier, max_age=_OAUTH_TTL_SECONDS))
    return resp


@router.get("/auth/google/secrets")
async def auth_google_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    cfg = _cfg(request)
    cookie_state = (request.cookies.get(_OAUTH_STATE) or "").strip()
    cookie_nonce = (request.cookies.get(_OAUTH_NONCE) or "").strip()
    cookie_verifier = (request.cookies.get(_OAUTH_VERIFIER) or "").strip()

    try:
        if not cfg.google_enabled:
            raise AuthenticationFailure("Google sign-in is not configured")
        if error:
            raise AuthenticationFailure(f"Google returned error={error}")
        if not code:
            raise AuthenticationFailure("Missing authorization code")
        if not cookie_state or cookie_state != (state or "").strip():
            raise AuthenticationFailure("Invalid OAuth state")
        if not cookie_nonce or not cookie_verifier:
            raise AuthenticationFailure("Missing OAuth verifier/nonce")

        profile = await fetch_google_profile(
            cfg,
            code=code,
            redirect_uri=cfg.callback_url("google"),
            code_verifier=cookie_verifier,
            nonce=cookie_nonce,
        )
        user = await complete_login(_store(request), profile)
    except (AuthenticationFailure, StoreUnavailable) as e:
        logger.info("Google sign-in failed: %s", str(e))
        resp = _redirect("/login", no_store=True)
        _clear_oauth_cookies(cfg, resp)
        return resp

    resp = _login_redirect(cfg, user)
    _clear_oauth_cookies(cfg, resp)
    return resp


@router.get("/auth/facebook")
async def auth_facebook(request: Request):
    """Start Facebook login (scope: email)."""
    cfg = _cfg(request)
    if not cfg.facebook_enabled:
        logger.info("Facebook login requested but not configured")
        return _redirect("/login")

    state = secrets.token_urlsafe(32)
    url = facebook.build_authorize_url(cfg, redirect_uri=cfg.callback_url("facebook"), state=state)
    resp = _redirect(url, no_store=True)
    resp.set_cookie(**_oauth_cookie_kwargs(cfg, key=_OAUTH_STATE, value=state, max_age=_OAUTH_TTL_SECONDS))
    return resp


@router.get("/auth/facebook/secrets")
async def auth_facebook_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    cfg = _cfg(request)
    cookie_state = (request.cookies.get(_OAUTH_STATE) or "").strip()

    try:
        if not cfg.facebook_enabled:
            raise AuthenticationFailure("Facebook login is not configured")
        if error:
            raise AuthenticationFailure(f"Facebook returned error={error}")
        if not code:
            raise AuthenticationFailure("Missing authorization code")
        if not cookie_state or cookie_state != (state or "").strip():
            raise AuthenticationFailure("Invalid OAuth state")

        profile = await fetch_facebook_profile(cfg, code=code, redirect_uri=cfg.callback_url("facebook"))
        user = await complete_login(_store(request), profile)
    except (AuthenticationFailure, StoreUnavailable) as e:
        logger.info("Facebook login failed: %s", str(e))
        resp = _redirect("/login", no_store=True)
        _clear_oauth_cookies(cfg, resp)
        return resp

    resp = _login_redirect(cfg, user)
    _clear_oauth_cookies(cfg, resp)
    return resp


@router.get("/secrets")
async def secrets_page(request: Request):
    if current_user(request) is None:
        return _redirect("/login")
    try:
        users_with_secrets = await _store(request).list_with_secrets()
    except StoreUnavailable as e:
        logger.warning("Cannot list secrets: %s", str(e))
        return _redirect("/")
    return _render(request, "secrets.html", users_with_secrets=users_with_secrets)


@router.get("/submit")
async def submit_page(request: Request):
    if current_user(request) is None:
        return _redirect("/login")
    return _render(request, "submit.html")


@router.post("/submit")
async def submit_secret(request: Request, secret: str = Form("")):
    """
    Overwrite the requester's secret.

    A failed save is logged and the user still lands on /secrets with the old value.
    A post without a `secret` field changes nothing.
    """
    user = current_user(request)
    if user is None:
        return _redirect("/login")
    if "secret" not in await request.form():
        return _redirect("/secrets")

    store = _store(request)
    try:
        # Re-read by id so we never write through a stale record.
        owner = await store.find_by_id(user.id)
        await store.save(owner.with_secret(secret))
        logger.info("User %s updated their secret", owner.id)
    except (NotFound, StoreUnavailable) as e:
        logger.warning("Secret not saved for user %s: %s", user.id, str(e))
    return _redirect("/secrets")


@router.get("/logout")
async def logout(request: Request):
    resp = _redirect("/", no_store=True)
    resp.set_cookie(**clear_session_cookie_kwargs(_cfg(request)))
    return resp


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Startup: auto-apply DB migrations when DB_AUTO_MIGRATE=1 (failures are logged,
    never fatal). Shutdown: release the user store.
    """
    from secrets_app.store.migrate import maybe_auto_migrate

    did_attempt, msg = await run_in_threadpool(maybe_auto_migrate, app.state.config)
    if did_attempt:
        logger.info("DB migrations: %s", msg)
    yield
    await app.state.store.close()


def create_app(cfg: AppConfig, store: Optional[UserStore] = None) -> FastAPI:
    """
    Build the application around an explicit config and user store.

    Without a configured session secret a random key is generated, so every
    restart logs all users out.
    """
    if not cfg.session_secret:
        logger.warning("SESSION_SECRET is not set; using a per-process key (sessions end on restart)")
        cfg = replace(cfg, session_secret=secrets.token_urlsafe(32))

    if store is None:
        from secrets_app.store.postgres import PostgresUserStore

        store = PostgresUserStore(cfg.database_url, connect_timeout=cfg.db_connect_timeout)

    app = FastAPI(title="Secrets", lifespan=lifespan)
    app.state.config = cfg
    app.state.store = store
    app.state.templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

    app.middleware("http")(log_requests)

    app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")
    app.include_router(router)
    return app


def run(cfg: Optional[AppConfig] = None) -> None:
    import uvicorn

    # Configure logging for the application
    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    cfg = cfg or load_app_config()
    logger.info("Starting secrets server on %s:%d (log_level=%s)", cfg.host, cfg.port, log_level)
    uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port, log_level=uvicorn_log_level)
