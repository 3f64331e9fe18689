from __future__ import annotations

import base64
import os


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    """Decode unpadded base64url (as used by JWT segments)."""
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def with_query_param(url: str, key: str, value: str) -> str:
    """
    Append a single query parameter to a URL that may or may not already carry a query.

    The parameter goes into the query part, before any `#fragment`.
    """
    from urllib.parse import quote, urlsplit, urlunsplit

    parts = urlsplit(url)
    param = f"{key}={quote(value, safe='')}"
    query = f"{parts.query}&{param}" if parts.query else param
    return urlunsplit(parts._replace(query=query))


def truncate_secret(value: str | None, keep: int = 8) -> str:
    # Log-safe prefix of ids/tokens.
    v = value or ""
    return v[:keep] + "..." if len(v) > keep else v
