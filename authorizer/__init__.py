"""
Authorizer: OAuth 2.0 (authorization code + PKCE) broker with forward-auth session checks.

Design goals:
- Provider-agnostic (Google now; others plug into the registry).
- Server-side flow state only; nothing sensitive travels in the `state` parameter.
- Cookie-based session (HttpOnly) carrying the provider's identity token.
"""
