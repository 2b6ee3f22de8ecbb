"""
Sitegate HTTP + WebSocket server.

Thin adapter over `AuthService`: GitHub login/callback/logout, one-shot flash messages, the
current identity, and the realtime endpoint that joins site channels.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import RedirectResponse
from fastapi.requests import HTTPConnection

from sitegate.auth import github
from sitegate.auth.config import AuthConfig
from sitegate.auth.models import ProviderFailure, ProviderResult, ProviderSuccess, SessionRecord
from sitegate.auth.service import AuthService, build_auth_service_from_env
from sitegate.auth.session import (
    cookie_kwargs,
    decode_session_id,
    encode_session_id,
    session_cookie_kwargs,
    session_cookie_name,
)
from sitegate.auth.util import random_token
from sitegate.store.base import StoreError
from sitegate.store.config import load_store_config

logger = logging.getLogger(__name__)

router = APIRouter()

_OAUTH_COOKIE_PATH = "/auth"
_OAUTH_STATE_COOKIE = "sitegate_oauth_state"
_OAUTH_TTL_SECONDS = 10 * 60


def _oauth_cookie_kwargs(cfg: AuthConfig, *, value: str, max_age: int) -> dict:
    return cookie_kwargs(cfg, _OAUTH_STATE_COOKIE, value, max_age=max_age, path=_OAUTH_COOKIE_PATH)


def _public_base_url(cfg: AuthConfig) -> str:
    base = (cfg.public_base_url or "").strip().rstrip("/")
    if not base:
        raise HTTPException(status_code=500, detail="AUTH_PUBLIC_BASE_URL is required for GitHub login")
    return base


def _service(conn: HTTPConnection) -> AuthService:
    svc = getattr(conn.app.state, "auth_service", None)
    if svc is None:
        svc = build_auth_service_from_env()
        conn.app.state.auth_service = svc
    return svc


def _session_id(svc: AuthService, conn: HTTPConnection) -> Optional[str]:
    return decode_session_id(svc.cfg, conn.cookies.get(session_cookie_name(svc.cfg)))


def _set_session_cookie(resp: RedirectResponse, svc: AuthService, session: SessionRecord) -> None:
    value = encode_session_id(svc.cfg, session.session_id)
    if not value:
        raise HTTPException(status_code=500, detail="Session signing is not configured (AUTH_SESSION_SECRET)")
    resp.set_cookie(**session_cookie_kwargs(svc.cfg, value))


def _redirect(url: str) -> RedirectResponse:
    resp = RedirectResponse(url=url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/healthz")
async def healthz(request: Request) -> Dict[str, Any]:
    svc = _service(request)
    return {"ok": True, "joinFailures": svc.join_failures.total}


@router.get("/auth/github")
async def auth_login_github(request: Request, redirect: Optional[str] = Query(None)):
    """Start the GitHub handshake, remembering where to land afterwards."""
    svc = _service(request)
    cfg = svc.cfg
    if not cfg.github_enabled:
        raise HTTPException(status_code=403, detail="GitHub login is not enabled")
    redirect_uri = f"{_public_base_url(cfg)}/auth/github/callback"

    session = await svc.lifecycle.load(_session_id(svc, request))
    await svc.lifecycle.start_handshake(session, redirect)

    state = random_token(24)
    resp = _redirect(github.build_authorize_url(cfg, redirect_uri=redirect_uri, state=state))
    _set_session_cookie(resp, svc, session)
    resp.set_cookie(**_oauth_cookie_kwargs(cfg, value=state, max_age=_OAUTH_TTL_SECONDS))
    return resp


async def _provider_result(
    cfg: AuthConfig, request: Request, *, code: Optional[str], state: Optional[str], error: Optional[str]
) -> ProviderResult:
    cookie_state = (request.cookies.get(_OAUTH_STATE_COOKIE) or "").strip()
    if not cookie_state or cookie_state != (state or "").strip():
        return ProviderFailure("invalid OAuth state")
    if error:
        return ProviderFailure(f"provider error: {error}")
    if not code:
        return ProviderFailure("missing code")

    redirect_uri = f"{_public_base_url(cfg)}/auth/github/callback"
    timeout = cfg.github_validate_timeout_seconds
    try:
        token = await asyncio.to_thread(
            github.exchange_code_for_token, cfg, redirect_uri=redirect_uri, code=code, timeout=timeout
        )
        profile = await asyncio.to_thread(github.fetch_profile, cfg, token, timeout=timeout)
    except Exception as e:
        return ProviderFailure(f"{type(e).__name__}: {e}")
    return ProviderSuccess(profile=profile, access_token=token)


@router.get("/auth/github/callback")
async def auth_callback_github(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    """Finish the GitHub handshake: success lands on the pending path, failure on the default path."""
    svc = _service(request)
    cfg = svc.cfg
    if not cfg.github_enabled:
        raise HTTPException(status_code=403, detail="GitHub login is not enabled")

    session = await svc.lifecycle.load(_session_id(svc, request))
    result = await _provider_result(cfg, request, code=code, state=state, error=error)
    outcome = await svc.lifecycle.complete_handshake(session, result)

    resp = _redirect(outcome.redirect_to)
    _set_session_cookie(resp, svc, outcome.session)
    resp.set_cookie(**_oauth_cookie_kwargs(cfg, value="", max_age=0))
    return resp


@router.api_route("/logout", methods=["GET", "POST"])
async def auth_logout(request: Request):
    svc = _service(request)
    target = svc.cfg.default_redirect_path
    session_id = _session_id(svc, request)
    if session_id:
        session = await svc.lifecycle.load(session_id)
        target = await svc.lifecycle.logout(session)
    resp = _redirect(target)
    resp.set_cookie(**session_cookie_kwargs(svc.cfg))
    return resp


@router.get("/api/flash")
async def flash(request: Request) -> Dict[str, Any]:
    """Pending one-shot messages; reading them clears them."""
    svc = _service(request)
    session_id = _session_id(svc, request)
    if not session_id:
        return {"ok": True, "flash": {}}
    session = await svc.lifecycle.load(session_id)
    messages = await svc.lifecycle.consume_flash(session)
    return {
        "ok": True,
        "flash": {kind: [{"title": m.title, "message": m.message} for m in items] for kind, items in messages.items()},
    }


@router.get("/api/auth/me")
async def auth_me(request: Request) -> Dict[str, Any]:
    svc = _service(request)
    identity = await svc.lifecycle.deserialize(_session_id(svc, request))
    if identity is None:
        # No WWW-Authenticate: browsers would pop a basic-auth dialog.
        raise HTTPException(status_code=401, detail="Unauthorized")
    return {
        "ok": True,
        "user": {
            "id": identity.id,
            "username": identity.display_handle,
            "email": identity.email,
            "signedInAt": identity.last_signed_in_at.isoformat() if identity.last_signed_in_at else None,
        },
    }


class WebSocketConnection:
    """Broker-facing wrapper around a Starlette WebSocket."""

    def __init__(self, websocket: WebSocket, session_id: Optional[str]) -> None:
        self.websocket = websocket
        self.session_id = session_id
        self.connection_id = uuid.uuid4().hex

    async def send_json(self, message: Dict[str, Any]) -> None:
        await self.websocket.send_json(message)


@router.websocket("/ws")
async def realtime(websocket: WebSocket) -> None:
    svc = _service(websocket)
    await websocket.accept()
    conn = WebSocketConnection(websocket, _session_id(svc, websocket))
    try:
        channels = await svc.channels.schedule(conn)
        await websocket.send_json({"type": "ready", "channels": sorted(channels)})
        while True:
            msg = await websocket.receive_text()
            if msg == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        await svc.broker.leave_all(conn)
        logger.debug("Connection %s closed", conn.connection_id)


def create_app(service: Optional[AuthService] = None) -> FastAPI:
    app = FastAPI(title="Sitegate")
    if service is not None:
        app.state.auth_service = service

    @app.on_event("startup")
    def _startup_maybe_migrate_db() -> None:
        """
        Optional dev behavior: auto-apply DB migrations when DB_AUTO_MIGRATE=1.

        This should never prevent the server from starting; failures are logged.
        """
        try:
            from sitegate.store.migrate import maybe_auto_migrate

            did_attempt, msg = maybe_auto_migrate()
            if did_attempt:
                logger.info("DB migrations: %s", msg)
        except Exception as e:
            logger.warning("DB migrations: startup auto-migrate failed: %s", str(e))

    @app.on_event("startup")
    def _startup_build_auth_service() -> None:
        if getattr(app.state, "auth_service", None) is None:
            app.state.auth_service = build_auth_service_from_env()
        cfg = app.state.auth_service.cfg
        # Avoid logging secrets; which pieces are configured is enough.
        logger.info(
            "Auth config: github_enabled=%s allowed_orgs=%d session_secret=%s cookie_secure=%s ttl=%ds",
            cfg.github_enabled,
            len(cfg.github_allowed_org_ids),
            "set" if cfg.session_secret else "missing",
            cfg.cookie_secure,
            cfg.session_ttl_seconds,
        )

    @app.on_event("startup")
    async def _startup_purge_expired_sessions() -> None:
        # Both bundled stores sweep; a custom SessionStore may not.
        purge = getattr(app.state.auth_service.sessions, "purge_expired", None)
        if purge is None or not load_store_config().purge_sessions_on_startup:
            return
        try:
            await purge()
        except StoreError as e:
            logger.warning("Session purge failed: %s", e)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming HTTP requests."""
        start_time = time.time()
        logger.debug("%s %s", request.method, request.url.path)
        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
            raise
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response

    app.include_router(router)
    return app


app = create_app()


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
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

    logger.info("Starting Sitegate server on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
