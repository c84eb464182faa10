"""Gateway assembly.

Wires configuration, session storage, the OAuth signer, the flow
controller and the proxy into one Starlette application.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from wiki_oauth_gateway.logging_config import get_logger
from wiki_oauth_gateway.oauth.flows import AuthFlow
from wiki_oauth_gateway.oauth.signer import OAuthSigner
from wiki_oauth_gateway.oauth.token_store import create_token_store
from wiki_oauth_gateway.proxy import ApiProxy
from wiki_oauth_gateway.web import create_web_app

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    import httpx
    from starlette.applications import Starlette

    from wiki_oauth_gateway.config import Config
    from wiki_oauth_gateway.oauth.token_store import TokenStore

logger = get_logger(__name__)


def build_token_store(config: Config) -> TokenStore:
    """Create the session store described by the configuration."""
    encryption_key = (
        config.session_encryption_key.get_secret_value()
        if config.session_encryption_key
        else None
    )
    return create_token_store(
        redis_url=config.redis_url,
        encryption_key=encryption_key,
        memory_fallback=config.memory_fallback_enabled,
    )


def create_app(
    config: Config,
    *,
    token_store: TokenStore | None = None,
    signer: OAuthSigner | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Starlette:
    """Create the gateway application.

    Args:
        config: Application configuration
        token_store: Session storage (built from config if not provided)
        signer: Provider request signer (built from config if not provided)
        http_client: HTTP client for a signer built here

    Returns:
        Configured Starlette application
    """
    if not config.has_consumer_credentials:
        logger.warning("OAuth consumer key or secret is not configured; logins will fail")

    store = token_store or build_token_store(config)
    oauth_signer = signer or OAuthSigner.from_config(config, http_client=http_client)

    auth_flow = AuthFlow.from_config(config, oauth_signer, store)
    proxy = ApiProxy(auth_flow, oauth_signer, config.api_url)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        yield
        await oauth_signer.close()
        await store.close()
        logger.info("Gateway stopped")

    logger.info(
        "Creating gateway '%s' (environment: %s, callback mode: %s)",
        config.app_name,
        config.environment.value,
        config.callback_mode.value,
    )

    return create_web_app(config, auth_flow, proxy, token_store=store, lifespan=lifespan)
