"""
HTTP surface of the broker.

  GET /api/auth/{provider}?redirect_url=        -> 302 to the provider consent page | 400
  GET /api/auth/{provider}/callback?state&code  -> 302 to the client callback URL
  GET /api/check                                -> 200 + X-Auth-* headers | 401
  GET /api, /api/health                         -> 200

Components (registry, state store, orchestrator, checker) are built once per app and shared
by every request; nothing lives at module level.
"""
from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from authorizer.check import AccessChecker
from authorizer.config import AuthConfig, load_auth_config
from authorizer.flow import SESSION_COOKIE_NAME, FlowOrchestrator
from authorizer.oauth.google import GOOGLE_JWKS_URL, GoogleProvider
from authorizer.oauth.jwks import JWKSCache
from authorizer.oauth.registry import ProviderRegistry
from authorizer.repository import PostgresRepository, Repository, build_repository
from authorizer.state import StateStore

logger = logging.getLogger(__name__)


def build_registry(cfg: AuthConfig) -> ProviderRegistry:
    providers = []
    if cfg.google_enabled:
        jwks = JWKSCache(
            GOOGLE_JWKS_URL,
            refresh_interval=cfg.jwks_refresh_seconds,
            timeout=cfg.http_timeout_seconds,
        )
        providers.append(
            GoogleProvider(
                client_id=cfg.google_client_id or "",
                client_secret=cfg.google_client_secret or "",
                callback_url=cfg.google_callback_url,
                scopes=cfg.google_scopes,
                jwks=jwks,
                timeout=cfg.http_timeout_seconds,
            )
        )
    else:
        logger.warning("Google OAuth is not configured (GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET)")
    return ProviderRegistry(providers)


def _start_key_refreshers(registry: ProviderRegistry) -> None:
    for name in registry.names():
        provider = registry.by_name(name)
        jwks = getattr(provider, "jwks", None)
        if isinstance(jwks, JWKSCache):
            jwks.start()


def create_app(
    cfg: Optional[AuthConfig] = None,
    *,
    registry: Optional[ProviderRegistry] = None,
    state_store: Optional[StateStore] = None,
    repository: Optional[Repository] = None,
    flow: Optional[FlowOrchestrator] = None,
) -> FastAPI:
    """
    Build the FastAPI app. Every collaborator can be injected (tests); anything omitted is
    built from `cfg` (environment by default).
    """
    cfg = cfg or load_auth_config()
    registry = registry if registry is not None else build_registry(cfg)
    state_store = state_store or StateStore(ttl_seconds=cfg.state_ttl_seconds)
    repository = repository or build_repository(cfg)
    flow = flow or FlowOrchestrator(
        registry=registry,
        state_store=state_store,
        repository=repository,
        allowed_redirect_urls=cfg.allowed_redirect_urls,
        cookie_secure=cfg.cookie_secure,
    )
    checker = AccessChecker(registry)

    if not cfg.allowed_redirect_urls:
        logger.warning("AUTH_ALLOWED_REDIRECT_URLS is empty; every Auth request will be rejected")

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        _start_key_refreshers(registry)
        if isinstance(repository, PostgresRepository):
            # Never prevent the server from starting; failures are logged.
            try:
                repository.ensure_schema()
            except Exception as e:
                logger.warning("Users table check failed: %s", str(e))
        logger.info(
            "Authorizer started: providers=%s base_url=%s state_ttl=%ss",
            ",".join(registry.names()) or "-",
            cfg.public_base_url,
            cfg.state_ttl_seconds,
        )
        yield
        flow.close()
        state_store.close()
        registry.close()

    app = FastAPI(title="Authorizer", lifespan=lifespan)
    app.state.config = cfg
    app.state.registry = registry
    app.state.state_store = state_store
    app.state.flow = flow
    app.state.checker = checker

    if cfg.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cfg.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "OPTIONS"],
            allow_headers=["*"],
            max_age=3600,
        )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        """Log every request and attach baseline security headers."""
        start_time = time.time()
        response = await call_next(request)
        # Responses may carry sensitive data (session cookies, identity headers).
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Cache-Control"] = "no-store, max-age=0"
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response

    @app.exception_handler(Exception)
    async def unhandled_exception(request: Request, exc: Exception) -> JSONResponse:
        # Recovery boundary: full detail in the logs, nothing in the response.
        logger.exception("%s %s - unhandled %s", request.method, request.url.path, type(exc).__name__)
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})

    @app.get("/api")
    @app.get("/api/health")
    def health() -> Dict[str, Any]:
        return {}

    @app.get("/api/check")
    def check(request: Request) -> Response:
        return checker.check(request.cookies.get(SESSION_COOKIE_NAME))

    @app.get("/api/auth/{provider}")
    def auth(provider: str, redirect_url: Optional[str] = Query(None)) -> Response:
        return flow.auth(provider, redirect_url)

    @app.get("/api/auth/{provider}/callback")
    def callback(
        provider: str,
        state: Optional[str] = Query(None),
        code: Optional[str] = Query(None),
        error: Optional[str] = Query(None),
    ) -> Response:
        return flow.callback(provider, state, code, error)

    return app


def run(host: str = "0.0.0.0", port: int = 8080, log_level: Optional[str] = None) -> None:
    import uvicorn

    log_level = (log_level or os.getenv("LOG_LEVEL", "info")).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    app = create_app()
    logger.info("Starting authorizer on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
