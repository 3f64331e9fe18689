from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Protocol


@dataclass(frozen=True)
class Claims:
    """Identity claims from a signature-checked provider token."""

    issuer: str
    expires_at: datetime  # timezone-aware UTC
    email: str
    given_name: str = ""
    family_name: str = ""
    picture_url: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.given_name} {self.family_name}".strip()


class OAuthProvider(Protocol):
    """
    One identity provider: authorization URL, code-to-token exchange and token verification.

    Implementations must be safe to share across concurrent requests.
    """

    name: str
    # A provider may validly issue tokens under more than one `iss` string.
    issuers: FrozenSet[str]

    def get_auth_url(self, state: str, code_challenge: str) -> str:
        """
        URL of the provider's consent page.

        `state` comes back untouched on the callback; `code_challenge` is the S256 PKCE challenge.
        """

    def token_from_code(self, code: str, code_verifier: str) -> str:
        """
        Redeem an authorization code for the identity token.

        Raises UpstreamError on network failure, non-2xx or an unusable response body.
        """

    def decode_token(self, token: str) -> Claims:
        """
        Verify signature, audience, issuer and expiry; return the claims.

        Raises a TokenError subclass identifying the failed check.
        """

    def close(self) -> None:
        """Release background resources (key refresh threads, HTTP sessions)."""
