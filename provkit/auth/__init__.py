from provkit.auth.apikey import APIKeyManager
from provkit.auth.device import DeviceAuthorization, DeviceCodeFlow
from provkit.auth.oauth import (
    OAuthCredentialManager,
    OAuthEndpoints,
    TokenResponse,
    needs_refresh,
)
from provkit.auth.pkce import AuthorizationCodeFlow, CallbackServer, PKCEPair, generate_pkce

__all__ = [
    "APIKeyManager",
    "AuthorizationCodeFlow",
    "CallbackServer",
    "DeviceAuthorization",
    "DeviceCodeFlow",
    "OAuthCredentialManager",
    "OAuthEndpoints",
    "PKCEPair",
    "TokenResponse",
    "generate_pkce",
    "needs_refresh",
]
