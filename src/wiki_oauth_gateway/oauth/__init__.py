"""OAuth 1.0a module for the wiki gateway.

Provides request signing, the three-legged login flow and session
storage.
"""

from wiki_oauth_gateway.oauth.flows import AuthFlow, LoginStart, ProviderEndpoints
from wiki_oauth_gateway.oauth.session import Credential, Session, SessionState, WikiUser
from wiki_oauth_gateway.oauth.signer import OAuthSigner
from wiki_oauth_gateway.oauth.token_store import (
    FallbackTokenStore,
    InMemoryTokenStore,
    RedisTokenStore,
    TokenStore,
    create_token_store,
)

__all__ = [
    "AuthFlow",
    "Credential",
    "FallbackTokenStore",
    "InMemoryTokenStore",
    "LoginStart",
    "OAuthSigner",
    "ProviderEndpoints",
    "RedisTokenStore",
    "Session",
    "SessionState",
    "TokenStore",
    "WikiUser",
    "create_token_store",
]
