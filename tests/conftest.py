"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import respx

from wiki_oauth_gateway.config import CallbackMode, Config, Environment, LogLevel
from wiki_oauth_gateway.oauth.flows import AuthFlow
from wiki_oauth_gateway.oauth.session import Credential, Session, WikiUser
from wiki_oauth_gateway.oauth.signer import OAuthSigner
from wiki_oauth_gateway.oauth.token_store import InMemoryTokenStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator

INDEX_URL = "https://meta.wikimedia.org/w/index.php"
API_URL = "https://en.wikipedia.org/w/api.php"
FRONTEND_URL = "https://app.example.org"

REQUEST_TOKEN_BODY = "oauth_token=tok1&oauth_token_secret=reqsecret1&oauth_callback_confirmed=true"
ACCESS_TOKEN_BODY = "oauth_token=acc1&oauth_token_secret=accsecret1"
USERINFO_BODY = {
    "batchcomplete": "",
    "query": {"userinfo": {"id": 1, "name": "Alice", "groups": ["*", "user", "autoconfirmed"]}},
}


def mock_provider(router: respx.MockRouter) -> None:
    """Register the provider's token endpoints and the userinfo query on a router."""
    router.post(INDEX_URL, params={"title": "Special:OAuth/initiate"}, name="initiate").respond(
        200, text=REQUEST_TOKEN_BODY
    )
    router.post(INDEX_URL, params={"title": "Special:OAuth/token"}, name="token").respond(
        200, text=ACCESS_TOKEN_BODY
    )
    router.get(API_URL, params={"meta": "userinfo"}, name="userinfo").respond(
        200, json=USERINFO_BODY
    )


@pytest.fixture
def default_config() -> Config:
    """Create a default configuration for testing."""
    return Config()


@pytest.fixture
def config() -> Config:
    """Popup-mode configuration with consumer credentials."""
    return Config(
        app_name="Test Gateway",
        log_level=LogLevel.DEBUG,
        environment=Environment.DEV,
        consumer_key="test-consumer-key",
        consumer_secret="test-consumer-secret",
        callback_mode=CallbackMode.POPUP,
        callback_url="https://gateway.example.org/auth/callback",
        frontend_url=FRONTEND_URL,
    )


@pytest.fixture
def oob_config(config: Config) -> Config:
    """Out-of-band configuration."""
    return config.model_copy(update={"callback_mode": CallbackMode.OOB})


@pytest.fixture
def redirect_config(config: Config) -> Config:
    """Redirect-mode configuration."""
    return config.model_copy(update={"callback_mode": CallbackMode.REDIRECT})


@pytest.fixture
def store() -> InMemoryTokenStore:
    """Empty in-memory session store."""
    return InMemoryTokenStore()


@pytest.fixture
async def signer(config: Config) -> AsyncIterator[OAuthSigner]:
    """Signer using the test consumer credentials."""
    oauth_signer = OAuthSigner.from_config(config)
    yield oauth_signer
    await oauth_signer.close()


@pytest.fixture
def auth_flow(config: Config, signer: OAuthSigner, store: InMemoryTokenStore) -> AuthFlow:
    """Popup-mode flow over the in-memory store."""
    return AuthFlow.from_config(config, signer, store)


@pytest.fixture
def oob_flow(oob_config: Config, signer: OAuthSigner, store: InMemoryTokenStore) -> AuthFlow:
    """Out-of-band flow over the in-memory store."""
    return AuthFlow.from_config(oob_config, signer, store)


@pytest.fixture
def authenticated_session() -> Session:
    """Session as it looks after a completed login."""
    return Session(
        request_token=Credential("tok1", "reqsecret1"),
        access_token=Credential("acc1", "accsecret1"),
        user=WikiUser(id=1, name="Alice", groups=("*", "user")),
        authenticated=True,
    )


@pytest.fixture
def provider() -> Iterator[respx.MockRouter]:
    """Mocked provider answering the happy path."""
    with respx.mock(assert_all_called=False) as router:
        mock_provider(router)
        yield router
