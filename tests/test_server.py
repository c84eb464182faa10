"""Tests for gateway assembly."""

from __future__ import annotations

from typing import TYPE_CHECKING

from starlette.applications import Starlette
from starlette.testclient import TestClient

from wiki_oauth_gateway.oauth.token_store import (
    FallbackTokenStore,
    InMemoryTokenStore,
    RedisTokenStore,
)
from wiki_oauth_gateway.server import build_token_store, create_app

if TYPE_CHECKING:
    from wiki_oauth_gateway.config import Config


class TestBuildTokenStore:
    """Tests for build_token_store function."""

    def test_memory_by_default(self, default_config: Config) -> None:
        """Test that no redis URL gives an in-memory store."""
        assert isinstance(build_token_store(default_config), InMemoryTokenStore)

    def test_redis_with_fallback(self, default_config: Config) -> None:
        """Test that a redis URL gives a redis store behind a memory fallback."""
        config = default_config.model_copy(update={"redis_url": "redis://localhost:6379/0"})

        store = build_token_store(config)

        assert isinstance(store, FallbackTokenStore)
        assert isinstance(store._durable, RedisTokenStore)
        assert store._fallback_enabled is True

    def test_fallback_disabled(self, default_config: Config) -> None:
        """Test that the fallback switch is passed through."""
        config = default_config.model_copy(
            update={"redis_url": "redis://localhost:6379/0", "memory_fallback_enabled": False}
        )

        store = build_token_store(config)

        assert isinstance(store, FallbackTokenStore)
        assert store._fallback_enabled is False


class TestCreateApp:
    """Tests for create_app function."""

    def test_creates_starlette_app(self, config: Config) -> None:
        """Test that create_app returns a Starlette application."""
        assert isinstance(create_app(config), Starlette)

    def test_uses_injected_store(self, config: Config) -> None:
        """Test that an injected store backs the sessions."""
        store = InMemoryTokenStore()
        debug_config = config.model_copy(update={"enable_debug_endpoint": True})

        with TestClient(create_app(debug_config, token_store=store)) as client:
            response = client.get("/debug")

        assert response.json()["tokenStore"] == "InMemoryTokenStore"

    def test_routes_registered(self, config: Config) -> None:
        """Test that every endpoint is routed."""
        app = create_app(config)
        paths = {route.path for route in app.routes}  # type: ignore[attr-defined]

        assert {
            "/",
            "/health",
            "/auth/login",
            "/auth/callback",
            "/auth/verify-code",
            "/auth/verify",
            "/auth/logout",
            "/proxy",
        } <= paths
        assert "/debug" not in paths

    def test_lifespan_runs(self, default_config: Config) -> None:
        """Test startup and shutdown without consumer credentials."""
        with TestClient(create_app(default_config)) as client:
            assert client.get("/health").status_code == 200
