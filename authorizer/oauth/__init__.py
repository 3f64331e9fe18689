from authorizer.oauth.base import Claims, OAuthProvider
from authorizer.oauth.google import GoogleProvider
from authorizer.oauth.registry import ProviderRegistry

__all__ = ["Claims", "GoogleProvider", "OAuthProvider", "ProviderRegistry"]
