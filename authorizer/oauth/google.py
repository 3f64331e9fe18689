from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Optional
from urllib.parse import urlencode

import jwt  # PyJWT
import requests

from authorizer.errors import (
    AudienceMismatchError,
    InvalidSignatureError,
    MalformedTokenError,
    TokenExpiredError,
    UnknownIssuerError,
    UpstreamError,
)
from authorizer.oauth.base import Claims
from authorizer.oauth.jwks import JWKSCache

logger = logging.getLogger(__name__)

# https://developers.google.com/identity/protocols/oauth2/web-server
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"

# Google ID tokens carry either form of the issuer.
GOOGLE_ISSUERS: FrozenSet[str] = frozenset({"accounts.google.com", "https://accounts.google.com"})

_MAX_LOGGED_BODY = 2000


class GoogleProvider:
    """
    Google implementation of OAuthProvider.

    Token verification follows https://developers.google.com/identity/gsi/web/guides/verify-google-id-token
    """

    name = "google"
    issuers = GOOGLE_ISSUERS

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        callback_url: str,
        scopes: str,
        jwks: JWKSCache,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.callback_url = callback_url
        self.scopes = scopes
        self.jwks = jwks
        self.timeout = float(timeout)
        self._session = session or requests.Session()

    def get_auth_url(self, state: str, code_challenge: str) -> str:
        params = {
            "client_id": self.client_id,
            "scope": self.scopes,
            "response_type": "code",
            "redirect_uri": self.callback_url,
            "include_granted_scopes": "true",
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def token_from_code(self, code: str, code_verifier: str) -> str:
        payload = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.callback_url,
            "code_verifier": code_verifier,
            "grant_type": "authorization_code",
        }
        try:
            r = self._session.post(GOOGLE_TOKEN_URL, data=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamError(f"token exchange request failed: {e}") from e

        if not 200 <= r.status_code < 300:
            # Body is for diagnostics only; it never reaches the end user.
            logger.error(
                "Google token exchange failed: status=%d body=%s", r.status_code, (r.text or "")[:_MAX_LOGGED_BODY]
            )
            raise UpstreamError(f"token exchange failed (status={r.status_code})")

        try:
            data = r.json()
        except ValueError as e:
            raise UpstreamError("token response is not JSON") from e
        if not isinstance(data, dict):
            raise UpstreamError("invalid token response")

        id_token = str(data.get("id_token") or "").strip()
        if not id_token:
            raise UpstreamError("token response has no id_token")
        return id_token

    def decode_token(self, token: str) -> Claims:
        try:
            header = jwt.get_unverified_header(token)
        except (jwt.PyJWTError, RecursionError) as e:
            # Includes a non-string `kid` and absurdly nested header JSON.
            raise MalformedTokenError(f"token header is not decodable: {e}") from e

        kid = header.get("kid")
        if not kid or not isinstance(kid, str):
            raise MalformedTokenError("token has no kid")

        # KeySetFetchError / InvalidSignatureError (unknown kid) propagate as-is.
        signing_key = self.jwks.get_signing_key(kid)
        if signing_key.key_type != "RSA":
            raise InvalidSignatureError(f"signing key {kid} is {signing_key.key_type}, expected RSA")

        try:
            raw = jwt.decode(
                token,
                key=signing_key.key,
                algorithms=["RS256"],
                audience=self.client_id,
                options={
                    "require": ["exp", "iss", "aud"],
                    # Checked below: more than one issuer string is valid.
                    "verify_iss": False,
                },
            )
        except jwt.InvalidSignatureError as e:
            raise InvalidSignatureError(str(e)) from e
        except jwt.ExpiredSignatureError as e:
            raise TokenExpiredError(str(e)) from e
        except jwt.InvalidAudienceError as e:
            raise AudienceMismatchError(str(e)) from e
        except (jwt.PyJWTError, RecursionError) as e:
            raise MalformedTokenError(str(e)) from e
        except (TypeError, ValueError) as e:
            # Key material PyJWT could not use for RS256.
            raise InvalidSignatureError(f"token could not be verified: {e}") from e

        issuer = str(raw.get("iss") or "")
        if issuer not in self.issuers:
            raise UnknownIssuerError(f"token has unknown issuer: {issuer}")

        return _claims_from_payload(raw, issuer)

    def close(self) -> None:
        self.jwks.close()
        self._session.close()


def _claims_from_payload(raw: Dict[str, Any], issuer: str) -> Claims:
    email = str(raw.get("email") or "").strip()
    if not email:
        raise MalformedTokenError("token has no email claim")
    try:
        expires_at = datetime.fromtimestamp(int(raw["exp"]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedTokenError("token has an invalid exp claim") from e

    return Claims(
        issuer=issuer,
        expires_at=expires_at,
        email=email,
        given_name=str(raw.get("given_name") or ""),
        family_name=str(raw.get("family_name") or ""),
        picture_url=str(raw.get("picture") or ""),
    )
