"""
Syntactic checks for parameters received from browsers and providers.

All of these run before any provider lookup, state mutation or network call.
"""
from __future__ import annotations

import re
from typing import Sequence
from urllib.parse import urlparse

from authorizer.errors import ValidationError

MAX_PROVIDER_LEN = 20
MAX_REDIRECT_URL_LEN = 200
MAX_CODE_LEN = 200

_PROVIDER_RE = re.compile(r"^[a-z0-9_-]+$")
_CODE_RE = re.compile(r"^[A-Za-z0-9/_-]+$")
# State ids are random_token(32): 43 base64url chars.
_STATE_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")

ERR_INVALID_PROVIDER = "provider must be up to 20 characters and must include only a-z, 0-9, - and _"
ERR_INVALID_REDIRECT_URL = "redirect_url must be present, must be up to 200 characters and a valid url"
ERR_UNKNOWN_REDIRECT_URL = "redirect_url is not allowed"
ERR_INVALID_STATE = "state is malformed"
ERR_INVALID_CODE = "code is malformed"


def validate_provider(name: str | None) -> str:
    p = name or ""
    if not p or len(p) > MAX_PROVIDER_LEN or not _PROVIDER_RE.match(p):
        raise ValidationError(ERR_INVALID_PROVIDER)
    return p


def validate_redirect_url(url: str | None, allowed: Sequence[str]) -> str:
    u = url or ""
    if not u or len(u) > MAX_REDIRECT_URL_LEN:
        raise ValidationError(ERR_INVALID_REDIRECT_URL)
    try:
        parsed = urlparse(u)
    except ValueError as e:
        raise ValidationError(ERR_INVALID_REDIRECT_URL) from e
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(ERR_INVALID_REDIRECT_URL)
    if u not in allowed:
        raise ValidationError(ERR_UNKNOWN_REDIRECT_URL)
    return u


def validate_state(state: str | None) -> str:
    s = state or ""
    if not _STATE_RE.match(s):
        raise ValidationError(ERR_INVALID_STATE)
    return s


def validate_auth_code(code: str | None) -> str:
    c = code or ""
    if not c or len(c) > MAX_CODE_LEN or not _CODE_RE.match(c):
        raise ValidationError(ERR_INVALID_CODE)
    return c
