"""
Forward-auth session check.

A gateway calls `/api/check` with the browser's cookies; on success the verified identity is
returned as response headers for the gateway to forward. Any failure is a bare 401.
"""
from __future__ import annotations

import json
import logging
from typing import Optional
from urllib.parse import quote

from fastapi.responses import JSONResponse, Response

from authorizer.errors import MalformedTokenError, TokenError
from authorizer.oauth.registry import ProviderRegistry
from authorizer.util import b64url_decode

logger = logging.getLogger(__name__)

X_AUTH_EMAIL = "X-Auth-Email"
X_AUTH_NAME = "X-Auth-Name"
X_AUTH_PICTURE = "X-Auth-Picture"

# Browsers cap a cookie at about 4 KB; real ID tokens are well under that.
MAX_TOKEN_LEN = 8192


def unverified_issuer(token: str) -> str:
    """
    Read the `iss` claim without any signature check.

    Only used to pick which provider verifies the token; never trusted for authorization.
    """
    if len(token) > MAX_TOKEN_LEN:
        raise MalformedTokenError(f"token is longer than {MAX_TOKEN_LEN} characters")
    parts = token.split(".")
    if len(parts) != 3:
        raise MalformedTokenError(f"token expected to have 3 parts but had {len(parts)}")
    try:
        payload = json.loads(b64url_decode(parts[1]))
    except (ValueError, UnicodeDecodeError, RecursionError) as e:
        raise MalformedTokenError(f"failed to decode token payload: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedTokenError("token payload is not an object")
    return str(payload.get("iss") or "")


def _header_value(value: str) -> str:
    # HTTP header values are latin-1 on the wire; percent-encode anything else (e.g. CJK names).
    try:
        value.encode("latin-1")
        return value
    except UnicodeEncodeError:
        return quote(value, safe=" @./:-_")


def _unauthorized() -> JSONResponse:
    # No WWW-Authenticate: browsers would pop a basic-auth dialog.
    return JSONResponse(status_code=401, content={"detail": "Unauthorized"})


class AccessChecker:
    def __init__(self, registry: ProviderRegistry):
        self.registry = registry

    def check(self, token: Optional[str]) -> Response:
        if not token:
            logger.info("Check: no session cookie")
            return _unauthorized()

        try:
            issuer = unverified_issuer(token)
        except MalformedTokenError as e:
            logger.info("Check: %s", str(e))
            return _unauthorized()

        provider = self.registry.by_issuer(issuer)
        if provider is None:
            logger.info("Check: no provider for issuer %r", issuer)
            return _unauthorized()

        try:
            claims = provider.decode_token(token)
        except TokenError as e:
            logger.info("Check: token rejected by %s (%s): %s", provider.name, type(e).__name__, str(e))
            return _unauthorized()

        headers = {
            X_AUTH_EMAIL: _header_value(claims.email),
            X_AUTH_NAME: _header_value(claims.full_name),
            X_AUTH_PICTURE: _header_value(claims.picture_url),
        }
        return Response(status_code=200, headers=headers)
