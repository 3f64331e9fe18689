"""
OAuth flow orchestration: the Auth leg (mint state, redirect to the provider) and the
Callback leg (consume state, redeem code, verify token, set the session cookie).

START -> AUTH_REQUESTED -> CALLBACK_RECEIVED -> SUCCESS | FAILURE

Redirect policy on the Callback leg:
- Before the state is consumed the real client callback URL is unknown, so errors go to the
  first allow-listed URL.
- After the state is consumed every outcome goes to the entry's client callback URL, which was
  checked against the allow-list when the flow started.
- Public error values are fixed codes (or the provider's own `error` value); upstream
  diagnostics stay in the server logs.
"""
from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from fastapi.responses import JSONResponse, RedirectResponse, Response

from authorizer.errors import (
    AuthorizerError,
    InternalError,
    StateTimeoutError,
    UnsupportedProviderError,
    ValidationError,
)
from authorizer.oauth.base import Claims, OAuthProvider
from authorizer.oauth.pkce import generate_pkce
from authorizer.oauth.registry import ProviderRegistry
from authorizer.repository import Repository, User
from authorizer.state import StateEntry, StateStore
from authorizer.util import random_token, truncate_secret, with_query_param
from authorizer.validation import (
    validate_auth_code,
    validate_provider,
    validate_redirect_url,
    validate_state,
)

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "session"

# Public `error=` values for the Callback leg.
ERROR_INVALID_STATE = "invalid_state"
ERROR_TIMEOUT = StateTimeoutError.code
ERROR_INTERNAL = InternalError.code


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _bad_request(detail: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": detail})


def _error_redirect(target: Optional[str], error: str) -> Response:
    if not target:
        # No allow-listed URL configured: nowhere safe to send the browser.
        return _bad_request(error)
    resp = RedirectResponse(url=with_query_param(target, "error", error), status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


class FlowOrchestrator:
    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        state_store: StateStore,
        repository: Repository,
        allowed_redirect_urls: Sequence[str],
        cookie_secure: bool,
        executor: Optional[Executor] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            registry: Providers by name.
            state_store: Holder of in-flight flow state.
            repository: Login-history sink, called off the request path.
            allowed_redirect_urls: Where flows may end; the first entry is the fallback.
            cookie_secure: Whether the session cookie gets the Secure attribute.
            executor: Runs the user upsert; defaults to a small owned thread pool.
        """
        self.registry = registry
        self.state_store = state_store
        self.repository = repository
        self.allowed_redirect_urls = list(allowed_redirect_urls)
        self.cookie_secure = cookie_secure
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="user-upsert")
        self._now = now

    @property
    def fallback_redirect_url(self) -> Optional[str]:
        return self.allowed_redirect_urls[0] if self.allowed_redirect_urls else None

    # ---- Auth leg ----

    def auth(self, provider_name: str, redirect_url: Optional[str]) -> Response:
        """Start a flow: validate, mint state + PKCE, redirect to the provider's consent page."""
        client_callback_url = (redirect_url or "").strip() or (self.fallback_redirect_url or "")

        try:
            validate_provider(provider_name)
            validate_redirect_url(client_callback_url, self.allowed_redirect_urls)
        except ValidationError as e:
            logger.warning("Auth rejected: provider=%r redirect_url=%r: %s", provider_name, redirect_url, str(e))
            return _bad_request(str(e))

        provider = self.registry.by_name(provider_name)
        if provider is None:
            logger.warning("Auth rejected: provider is not supported: %s", provider_name)
            return _bad_request(str(UnsupportedProviderError("provider is not supported")))

        pkce = generate_pkce()
        entry = StateEntry(
            id=random_token(32),
            code_verifier=pkce.verifier,
            client_callback_url=client_callback_url,
            provider=provider.name,
        )
        self.state_store.store(entry)

        resp = RedirectResponse(url=provider.get_auth_url(entry.id, pkce.challenge), status_code=302)
        resp.headers["Cache-Control"] = "no-store"
        resp.headers["X-Frame-Options"] = "DENY"
        logger.info("Auth started: provider=%s state=%s", provider.name, truncate_secret(entry.id))
        return resp

    # ---- Callback leg ----

    def callback(
        self,
        provider_name: str,
        state: Optional[str],
        code: Optional[str],
        error: Optional[str] = None,
    ) -> Response:
        """Finish a flow started by `auth`. Always answers with a redirect."""
        try:
            validate_state(state)
        except ValidationError:
            logger.warning("Callback with malformed state: %r", truncate_secret(state))
            return _error_redirect(self.fallback_redirect_url, ERROR_INVALID_STATE)

        entry = self.state_store.consume(state or "")
        if entry is None:
            # Expired or forged: the real client callback URL is gone.
            logger.warning("Callback state not found (expired or unknown): %s", truncate_secret(state))
            return _error_redirect(self.fallback_redirect_url, ERROR_TIMEOUT)

        # From here on, only the verified client callback URL is a valid destination.
        target = entry.client_callback_url

        if error:
            logger.warning("Provider called back with error: provider=%s error=%s", provider_name, error)
            return _error_redirect(target, error)

        try:
            provider = self._resolve_callback_provider(provider_name, entry)
            token, claims = self._redeem(provider, entry, code)
        except AuthorizerError as e:
            logger.error("Callback failed: provider=%s (%s): %s", provider_name, type(e).__name__, str(e))
            return _error_redirect(target, ERROR_INTERNAL)

        self._submit_upsert(claims)

        resp = RedirectResponse(url=with_query_param(target, "provider", provider.name), status_code=302)
        resp.headers["Cache-Control"] = "no-store"
        resp.set_cookie(**self.session_cookie_kwargs(token, claims))
        logger.info("Callback succeeded: provider=%s email=%s", provider.name, claims.email)
        return resp

    def _resolve_callback_provider(self, provider_name: str, entry: StateEntry) -> OAuthProvider:
        try:
            validate_provider(provider_name)
        except ValidationError as e:
            raise InternalError(f"invalid provider in callback: {e}") from e

        provider = self.registry.by_name(provider_name)
        if provider is None:
            raise InternalError(f"callback from unknown provider: {provider_name}")
        # The path and the stored flow must agree; a mismatch is not reachable by honest clients.
        if provider.name != entry.provider:
            raise InternalError(f"callback provider {provider_name} does not match flow provider {entry.provider}")
        return provider

    def _redeem(self, provider: OAuthProvider, entry: StateEntry, code: Optional[str]) -> tuple[str, Claims]:
        try:
            valid_code = validate_auth_code(code)
        except ValidationError as e:
            raise InternalError(f"invalid code in callback: {e}") from e

        token = provider.token_from_code(valid_code, entry.code_verifier)
        claims = provider.decode_token(token)
        return token, claims

    def session_cookie_kwargs(self, token: str, claims: Claims) -> dict:
        # The cookie expires with the token it carries.
        remaining = int((claims.expires_at - self._now()).total_seconds())
        return {
            "key": SESSION_COOKIE_NAME,
            "value": token,
            "max_age": max(remaining, 1),
            "path": "/",
            "secure": self.cookie_secure,
            "httponly": True,
            "samesite": "strict",
        }

    # ---- Login history (fire-and-forget) ----

    def _submit_upsert(self, claims: Claims) -> None:
        user = User(
            email=claims.email,
            given_name=claims.given_name,
            family_name=claims.family_name,
            picture_url=claims.picture_url,
        )
        try:
            self._executor.submit(self._upsert_user, user)
        except RuntimeError as e:
            # Executor already shut down (app stopping); the login itself still succeeds.
            logger.warning("User upsert not scheduled: %s", str(e))

    def _upsert_user(self, user: User) -> None:
        try:
            self.repository.upsert_user(user)
        except Exception:
            logger.exception("User upsert failed: email=%s", user.email)

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)

