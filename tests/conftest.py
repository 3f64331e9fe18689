"""
Pytest config.

Local imports like `import authorizer` rely on the repo root being on sys.path; when a global
`pytest` entrypoint is used that doesn't happen reliably during collection, so it is pinned here.

Shared fakes:
- `signing_key`: an RSA key with its public JWK, able to mint RS256 ID tokens.
- `StubSession`: stands in for `requests.Session` (JWKS fetch and token exchange).
- `FakeProvider`: an OAuthProvider that checks PKCE and returns canned tokens/claims.
"""

from __future__ import annotations

import json
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

import jwt  # noqa: E402
import requests  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402
from jwt.algorithms import RSAAlgorithm  # noqa: E402

from authorizer.config import load_auth_config  # noqa: E402
from authorizer.errors import UpstreamError  # noqa: E402
from authorizer.oauth.base import Claims  # noqa: E402
from authorizer.oauth.pkce import pkce_challenge  # noqa: E402
from authorizer.util import b64url  # noqa: E402

CLIENT_ID = "client-id.apps.googleusercontent.com"


@pytest.fixture(autouse=True)
def _fresh_auth_config():
    """Config is cached per process; every test starts from its own environment."""
    load_auth_config.cache_clear()
    yield
    load_auth_config.cache_clear()


class SigningKey:
    def __init__(self, kid: str):
        self.kid = kid
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        jwk = json.loads(RSAAlgorithm.to_jwk(self.private_key.public_key()))
        jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
        self.jwk: Dict[str, Any] = jwk

    def sign(self, claims: Dict[str, Any], *, kid: Optional[str] = None, with_kid: bool = True) -> str:
        headers = {"kid": kid or self.kid} if with_kid else None
        return jwt.encode(claims, self.private_key, algorithm="RS256", headers=headers)


@pytest.fixture(scope="session")
def signing_key() -> SigningKey:
    return SigningKey("key-1")


@pytest.fixture(scope="session")
def other_signing_key() -> SigningKey:
    return SigningKey("key-2")


def id_token_claims(**overrides: Any) -> Dict[str, Any]:
    now = int(time.time())
    claims: Dict[str, Any] = {
        "iss": "https://accounts.google.com",
        "aud": CLIENT_ID,
        "sub": "110169484474386276334",
        "iat": now,
        "exp": now + 3600,
        "email": "ada@example.com",
        "given_name": "Ada",
        "family_name": "Lovelace",
        "picture": "https://lh3.googleusercontent.com/a/ada",
    }
    claims.update(overrides)
    return {k: v for k, v in claims.items() if v is not None}


class StubResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class StubSession:
    """
    Minimal `requests.Session` stand-in.

    `get_responses` / `post_responses` are consumed in order; the last one repeats.
    An exception instance in either list is raised instead of returned.
    """

    def __init__(self, get_responses: Optional[List[Any]] = None, post_responses: Optional[List[Any]] = None):
        self.get_responses = list(get_responses or [])
        self.post_responses = list(post_responses or [])
        self.get_calls: List[Dict[str, Any]] = []
        self.post_calls: List[Dict[str, Any]] = []
        self.closed = False
        self._lock = threading.Lock()

    @staticmethod
    def _next(responses: List[Any]) -> Any:
        item = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url: str, **kwargs: Any) -> StubResponse:
        with self._lock:
            self.get_calls.append({"url": url, **kwargs})
            return self._next(self.get_responses)

    def post(self, url: str, **kwargs: Any) -> StubResponse:
        with self._lock:
            self.post_calls.append({"url": url, **kwargs})
            return self._next(self.post_responses)

    def close(self) -> None:
        self.closed = True


def jwks_response(*keys: SigningKey) -> StubResponse:
    return StubResponse(200, {"keys": [k.jwk for k in keys]})


def unsigned_token(payload: Dict[str, Any]) -> str:
    """JWT-shaped token with a readable payload and a junk signature."""
    header = b64url(json.dumps({"alg": "RS256", "kid": "key-1"}).encode())
    body = b64url(json.dumps(payload).encode())
    return f"{header}.{body}.c2ln"


SESSION_TOKEN = unsigned_token({"iss": "https://accounts.google.com", "email": "ada@example.com"})


class FakeProvider:
    """OAuthProvider test double that enforces PKCE like a real provider would."""

    def __init__(
        self,
        name: str = "google",
        issuers: frozenset = frozenset({"https://accounts.google.com"}),
        *,
        token: str = SESSION_TOKEN,
        claims: Optional[Claims] = None,
    ):
        self.name = name
        self.issuers = issuers
        self.token = token
        self.claims = claims or Claims(
            issuer="https://accounts.google.com",
            expires_at=datetime(2030, 1, 1, 13, 0, tzinfo=timezone.utc),
            email="ada@example.com",
            given_name="Ada",
            family_name="Lovelace",
            picture_url="https://example.com/ada.png",
        )
        self.exchange_error: Optional[Exception] = None
        self.decode_error: Optional[Exception] = None
        self.challenges: Dict[str, str] = {}
        self.exchanges: List[tuple] = []
        self.decoded: List[str] = []
        self.closed = False

    def get_auth_url(self, state: str, code_challenge: str) -> str:
        self.challenges[state] = code_challenge
        return f"https://provider.example/auth?state={state}&code_challenge={code_challenge}"

    def token_from_code(self, code: str, code_verifier: str) -> str:
        self.exchanges.append((code, code_verifier))
        if self.exchange_error is not None:
            raise self.exchange_error
        if pkce_challenge(code_verifier) not in self.challenges.values():
            raise UpstreamError("invalid_grant: code_verifier does not match")
        return self.token

    def decode_token(self, token: str) -> Claims:
        self.decoded.append(token)
        if self.decode_error is not None:
            raise self.decode_error
        return self.claims

    def close(self) -> None:
        self.closed = True


# Fixed clock one hour before FakeProvider's default token expiry.
FIXED_NOW = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)