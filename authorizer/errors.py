"""
Error taxonomy.

Every failure the broker can produce maps to one of these classes. The HTTP layer flattens
them into a small set of public codes (400 bodies, `error=` redirect parameters, bare 401s);
the class and message are for server-side logs only.
"""
from __future__ import annotations


class AuthorizerError(Exception):
    """Base class for all broker errors."""

    # Public code used when the error is surfaced to a browser (query param / JSON body).
    code = "internal_server_error"


class ValidationError(AuthorizerError):
    """Malformed provider name, redirect URL, state or code."""

    code = "bad_request"


class UnsupportedProviderError(AuthorizerError):
    """Provider name is well-formed but not registered."""

    code = "unsupported_provider"


class UpstreamError(AuthorizerError):
    """Provider network failure, non-2xx response or malformed response body."""


class StateTimeoutError(AuthorizerError):
    """State is absent at callback time (expired, forged or already consumed)."""

    code = "request_timeout"


class InternalError(AuthorizerError):
    """Should-not-happen conditions (type mismatches, inconsistent provider, marshaling)."""


class TokenError(AuthorizerError):
    """Identity token rejected. Always surfaced as a bare 401 / internal error."""

    code = "unauthorized"


class KeySetFetchError(TokenError):
    """The provider's JWKS could not be fetched or parsed."""


class MalformedTokenError(TokenError):
    """Token is not a decodable JWT or lacks a required claim."""


class InvalidSignatureError(TokenError):
    """Signature does not verify against any key in the provider's key set."""


class AudienceMismatchError(TokenError):
    """`aud` is not this application's client id."""


class UnknownIssuerError(TokenError):
    """`iss` is not one of the provider's issuers."""


class TokenExpiredError(TokenError):
    """`exp` is not strictly in the future."""
