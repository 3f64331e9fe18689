"""
PKCE (Proof Key for Code Exchange), RFC 7636, S256 method only.

The verifier stays server-side in the state store; the challenge goes to the provider with
the authorization request; the verifier is presented again at code redemption.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass

from authorizer.util import b64url, random_token


@dataclass(frozen=True)
class PKCEPair:
    verifier: str
    challenge: str
    method: str = "S256"


def pkce_challenge(verifier: str) -> str:
    """base64url_nopad(SHA256(verifier))"""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return b64url(digest)


def generate_pkce() -> PKCEPair:
    verifier = random_token(32)  # 43 chars (base64url) -> valid PKCE verifier
    return PKCEPair(verifier=verifier, challenge=pkce_challenge(verifier))
