from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from authorizer.errors import AudienceMismatchError, UpstreamError
from authorizer.flow import SESSION_COOKIE_NAME, FlowOrchestrator
from authorizer.oauth.base import Claims
from authorizer.oauth.pkce import pkce_challenge
from authorizer.oauth.registry import ProviderRegistry
from authorizer.repository import User
from authorizer.state import StateStore
from authorizer.validation import ERR_INVALID_PROVIDER, ERR_INVALID_REDIRECT_URL, ERR_UNKNOWN_REDIRECT_URL
from conftest import FIXED_NOW, FakeProvider

ALLOWED = ["https://allowed.com", "https://app.example/cb?tenant=1"]
CODE = "4/0AX4XfWh-abc_def"


@pytest.fixture
def google() -> FakeProvider:
    return FakeProvider("google")


@pytest.fixture
def store():
    s = StateStore(ttl_seconds=60)
    yield s
    s.close()


@pytest.fixture
def executor():
    ex = ThreadPoolExecutor(max_workers=1)
    yield ex
    ex.shutdown(wait=True)


@pytest.fixture
def repository() -> MagicMock:
    return MagicMock()


@pytest.fixture
def flow(google, store, repository, executor) -> FlowOrchestrator:
    return FlowOrchestrator(
        registry=ProviderRegistry([google, FakeProvider("acme", frozenset({"https://login.acme.test"}))]),
        state_store=store,
        repository=repository,
        allowed_redirect_urls=ALLOWED,
        cookie_secure=True,
        executor=executor,
        now=lambda: FIXED_NOW,
    )


def _state_from(resp) -> str:
    return parse_qs(urlparse(resp.headers["location"]).query)["state"][0]


def _start(flow: FlowOrchestrator, redirect_url: str = "https://allowed.com") -> str:
    resp = flow.auth("google", redirect_url)
    assert resp.status_code == 302
    return _state_from(resp)


# ---- Auth leg ----


def test_auth_redirects_to_provider_and_stores_state(flow, store, google) -> None:
    resp = flow.auth("google", "https://allowed.com")

    assert resp.status_code == 302
    assert resp.headers["location"].startswith("https://provider.example/auth?")
    assert resp.headers["cache-control"] == "no-store"
    assert resp.headers["x-frame-options"] == "DENY"

    state = _state_from(resp)
    assert len(state) == 43
    entry = store.consume(state)
    assert entry is not None
    assert entry.client_callback_url == "https://allowed.com"
    assert entry.provider == "google"
    assert google.challenges[state] == pkce_challenge(entry.code_verifier)


def test_auth_each_request_gets_fresh_state(flow) -> None:
    assert _start(flow) != _start(flow)


def test_auth_without_redirect_url_uses_first_allowed(flow, store) -> None:
    state = _state_from(flow.auth("google", None))
    assert store.consume(state).client_callback_url == "https://allowed.com"


@pytest.mark.parametrize(
    "provider, redirect_url, detail",
    [
        ("Google", "https://allowed.com", ERR_INVALID_PROVIDER),
        ("a" * 21, "https://allowed.com", ERR_INVALID_PROVIDER),
        ("github", "https://allowed.com", "provider is not supported"),
        ("google", "https://evil.com", ERR_UNKNOWN_REDIRECT_URL),
        ("google", "javascript:alert(1)", ERR_INVALID_REDIRECT_URL),
    ],
)
def test_auth_rejections_store_nothing(flow, store, provider, redirect_url, detail) -> None:
    resp = flow.auth(provider, redirect_url)
    assert resp.status_code == 400
    assert json.loads(resp.body) == {"detail": detail}
    assert len(store) == 0


# ---- Callback leg ----


def test_callback_success_sets_session_cookie(flow, google, repository, executor) -> None:
    state = _start(flow)

    resp = flow.callback("google", state, CODE)

    assert resp.status_code == 302
    assert resp.headers["location"] == "https://allowed.com?provider=google"
    cookie = resp.headers["set-cookie"]
    attrs = [a.strip().lower() for a in cookie.split(";")]
    assert f"{SESSION_COOKIE_NAME}={google.token}".lower() in attrs
    assert "max-age=3600" in attrs
    assert "path=/" in attrs
    assert "httponly" in attrs
    assert "secure" in attrs
    assert "samesite=strict" in attrs

    # PKCE: the verifier presented at redemption matches the challenge sent at Auth time.
    [(code, verifier)] = google.exchanges
    assert code == CODE
    assert google.challenges[state] == pkce_challenge(verifier)
    assert google.decoded == [google.token]

    executor.shutdown(wait=True)
    repository.upsert_user.assert_called_once_with(
        User(
            email="ada@example.com",
            given_name="Ada",
            family_name="Lovelace",
            picture_url="https://example.com/ada.png",
        )
    )


def test_callback_success_keeps_existing_query(flow) -> None:
    state = _start(flow, "https://app.example/cb?tenant=1")
    resp = flow.callback("google", state, CODE)
    assert resp.headers["location"] == "https://app.example/cb?tenant=1&provider=google"


def test_state_is_single_use(flow) -> None:
    state = _start(flow)
    assert flow.callback("google", state, CODE).headers["location"].endswith("provider=google")

    replay = flow.callback("google", state, CODE)
    assert replay.status_code == 302
    assert replay.headers["location"] == "https://allowed.com?error=request_timeout"


@pytest.mark.parametrize("state", [None, "", "short", "x" * 43 + "!"])
def test_malformed_state_goes_to_fallback(flow, google, state) -> None:
    resp = flow.callback("google", state, CODE)
    assert resp.status_code == 302
    assert resp.headers["location"] == "https://allowed.com?error=invalid_state"
    assert google.exchanges == []


def test_unknown_state_is_a_timeout(flow, google) -> None:
    resp = flow.callback("google", "A" * 43, CODE)
    assert resp.headers["location"] == "https://allowed.com?error=request_timeout"
    assert google.exchanges == []


def test_expired_state_is_a_timeout(google, repository, executor) -> None:
    store = StateStore(ttl_seconds=60)
    flow = FlowOrchestrator(
        registry=ProviderRegistry([google]),
        state_store=store,
        repository=repository,
        allowed_redirect_urls=ALLOWED,
        cookie_secure=True,
        executor=executor,
    )
    state = _start(flow, "https://app.example/cb?tenant=1")
    store._expire(state, store._entries[state])

    resp = flow.callback("google", state, CODE)
    # The entry is gone, so its URL is unknown: the fallback is used.
    assert resp.headers["location"] == "https://allowed.com?error=request_timeout"
    store.close()


def test_provider_error_is_forwarded_to_client(flow, google) -> None:
    state = _start(flow, "https://app.example/cb?tenant=1")
    resp = flow.callback("google", state, None, error="access_denied")

    assert resp.status_code == 302
    assert resp.headers["location"] == "https://app.example/cb?tenant=1&error=access_denied"
    assert google.exchanges == []
    # The state was consumed even though the flow failed.
    assert flow.callback("google", state, CODE).headers["location"].endswith("error=request_timeout")


@pytest.mark.parametrize("path_provider", ["acme", "nope", "BAD NAME"])
def test_callback_provider_mismatch_is_internal_error(flow, google, path_provider) -> None:
    state = _start(flow)
    resp = flow.callback(path_provider, state, CODE)
    assert resp.headers["location"] == "https://allowed.com?error=internal_server_error"
    assert google.exchanges == []


@pytest.mark.parametrize("code", [None, "", "bad code", "a" * 201])
def test_invalid_code_is_internal_error(flow, google, code) -> None:
    state = _start(flow)
    resp = flow.callback("google", state, code)
    assert resp.headers["location"] == "https://allowed.com?error=internal_server_error"
    assert google.exchanges == []


def test_token_exchange_failure_is_internal_error(flow, google, repository, executor) -> None:
    google.exchange_error = UpstreamError("token exchange failed (status=400)")
    state = _start(flow)

    resp = flow.callback("google", state, CODE)

    assert resp.headers["location"] == "https://allowed.com?error=internal_server_error"
    assert "set-cookie" not in resp.headers
    executor.shutdown(wait=True)
    repository.upsert_user.assert_not_called()


def test_token_verification_failure_is_internal_error(flow, google) -> None:
    google.decode_error = AudienceMismatchError("Audience doesn't match")
    state = _start(flow)

    resp = flow.callback("google", state, CODE)

    assert resp.headers["location"] == "https://allowed.com?error=internal_server_error"
    assert "set-cookie" not in resp.headers


def test_repository_failure_does_not_affect_login(flow, repository, executor) -> None:
    repository.upsert_user.side_effect = RuntimeError("db down")
    state = _start(flow)

    resp = flow.callback("google", state, CODE)

    assert resp.headers["location"] == "https://allowed.com?provider=google"
    executor.shutdown(wait=True)
    repository.upsert_user.assert_called_once()


def test_login_succeeds_after_upsert_executor_shutdown(flow, executor) -> None:
    state = _start(flow)
    executor.shutdown(wait=True)
    assert flow.callback("google", state, CODE).headers["location"] == "https://allowed.com?provider=google"


def test_concurrent_callbacks_consume_state_once(flow) -> None:
    state = _start(flow)
    n = 8
    barrier = threading.Barrier(n)
    locations = []
    lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        loc = flow.callback("google", state, CODE).headers["location"]
        with lock:
            locations.append(loc)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert locations.count("https://allowed.com?provider=google") == 1
    assert locations.count("https://allowed.com?error=request_timeout") == n - 1


def test_callback_without_allow_list_answers_400(google, store, repository) -> None:
    flow = FlowOrchestrator(
        registry=ProviderRegistry([google]),
        state_store=store,
        repository=repository,
        allowed_redirect_urls=[],
        cookie_secure=False,
    )
    resp = flow.callback("google", "bad", CODE)
    assert resp.status_code == 400
    flow.close()


def test_cookie_max_age_is_at_least_one_second(flow) -> None:
    claims = Claims(issuer="https://accounts.google.com", expires_at=FIXED_NOW, email="ada@example.com")
    assert flow.session_cookie_kwargs("t", claims)["max_age"] == 1
