"""Tests for the OAuth login flow."""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlsplit

import pytest

from wiki_oauth_gateway.exceptions import (
    AuthenticationError,
    CallbackNotConfirmedError,
    RequestFormatError,
    SessionNotAuthenticatedError,
    SessionNotFoundError,
    StorageError,
    TokenResponseError,
)
from wiki_oauth_gateway.oauth.flows import OOB_INSTRUCTIONS, AuthFlow, LoginStart
from wiki_oauth_gateway.oauth.session import Credential, Session, SessionState, WikiUser

if TYPE_CHECKING:
    import respx

    from wiki_oauth_gateway.oauth.token_store import InMemoryTokenStore

CALLBACK_URL = "https://gateway.example.org/auth/callback"


class TestLoginStart:
    """Tests for LoginStart dataclass."""

    def test_to_dict(self) -> None:
        """Test the JSON shape returned to clients."""
        start = LoginStart(auth_url="https://x/auth", session_id="abc", is_out_of_band=False)
        assert start.to_dict() == {
            "authUrl": "https://x/auth",
            "sessionId": "abc",
            "isOutOfBand": False,
        }

    def test_to_dict_with_instructions(self) -> None:
        """Test that out-of-band instructions are included."""
        start = LoginStart("https://x/auth", "abc", True, OOB_INSTRUCTIONS)
        assert start.to_dict()["instructions"] == OOB_INSTRUCTIONS


class TestBegin:
    """Tests for AuthFlow.begin."""

    @pytest.mark.asyncio
    async def test_begin_stores_pending_session(
        self,
        auth_flow: AuthFlow,
        store: InMemoryTokenStore,
        provider: respx.MockRouter,
    ) -> None:
        """Test that a login stores the request token under a new session id."""
        start = await auth_flow.begin(CALLBACK_URL)

        assert start.is_out_of_band is False
        assert start.instructions is None
        assert len(start.session_id) == 64

        session = await store.get(start.session_id)
        assert session is not None
        assert session.state == SessionState.INITIATED
        assert session.request_token == Credential("tok1", "reqsecret1")

        found = await store.find_by_request_token("tok1")
        assert found is not None
        assert found[0] == start.session_id

    @pytest.mark.asyncio
    async def test_begin_auth_url(
        self, auth_flow: AuthFlow, provider: respx.MockRouter
    ) -> None:
        """Test the authorization URL handed to the browser."""
        start = await auth_flow.begin(CALLBACK_URL)

        parts = urlsplit(start.auth_url)
        query = parse_qs(parts.query)
        assert parts.path == "/wiki/Special:OAuth/authorize"
        assert query["oauth_token"] == ["tok1"]
        assert query["oauth_consumer_key"] == ["test-consumer-key"]

    @pytest.mark.asyncio
    async def test_begin_sends_callback(
        self, auth_flow: AuthFlow, provider: respx.MockRouter
    ) -> None:
        """Test that the callback URL is signed into the request."""
        await auth_flow.begin(CALLBACK_URL)

        authorization = provider["initiate"].calls.last.request.headers["Authorization"]
        assert "oauth_callback=" in authorization
        assert "gateway.example.org" in authorization

    @pytest.mark.asyncio
    async def test_begin_out_of_band(
        self, oob_flow: AuthFlow, store: InMemoryTokenStore, provider: respx.MockRouter
    ) -> None:
        """Test an out-of-band login."""
        start = await oob_flow.begin(CALLBACK_URL)

        assert start.is_out_of_band is True
        assert start.instructions == OOB_INSTRUCTIONS
        authorization = provider["initiate"].calls.last.request.headers["Authorization"]
        assert 'oauth_callback="oob"' in authorization

        session = await store.get(start.session_id)
        assert session is not None
        assert session.is_out_of_band is True

    @pytest.mark.asyncio
    async def test_session_ids_are_unique(
        self, auth_flow: AuthFlow, store: InMemoryTokenStore, provider: respx.MockRouter
    ) -> None:
        """Test that consecutive logins never share a session id."""
        ids = {(await auth_flow.begin(CALLBACK_URL)).session_id for _ in range(200)}
        assert len(ids) == 200

    @pytest.mark.asyncio
    async def test_begin_requires_callback(
        self, auth_flow: AuthFlow, provider: respx.MockRouter
    ) -> None:
        """Test that redirect and popup logins need a callback URL."""
        with pytest.raises(RequestFormatError, match="callback"):
            await auth_flow.begin(None)

        assert not provider["initiate"].called

    @pytest.mark.asyncio
    async def test_callback_not_confirmed(
        self, auth_flow: AuthFlow, store: InMemoryTokenStore, provider: respx.MockRouter
    ) -> None:
        """Test that an unconfirmed callback is a hard error."""
        provider["initiate"].respond(200, text="oauth_token=tok1&oauth_token_secret=s")

        with pytest.raises(CallbackNotConfirmedError):
            await auth_flow.begin(CALLBACK_URL)

        assert await store.list_sessions() == []

    @pytest.mark.asyncio
    async def test_missing_request_token(
        self, auth_flow: AuthFlow, provider: respx.MockRouter
    ) -> None:
        """Test a confirmation without a token pair."""
        provider["initiate"].respond(200, text="oauth_callback_confirmed=true")

        with pytest.raises(TokenResponseError, match="request token"):
            await auth_flow.begin(CALLBACK_URL)

    @pytest.mark.asyncio
    async def test_mapping_failure_does_not_abort(
        self,
        auth_flow: AuthFlow,
        store: InMemoryTokenStore,
        provider: respx.MockRouter,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that the reverse index is best-effort."""

        async def failing_mapping(token_key: str, session_id: str, ttl: int) -> None:
            raise StorageError("index unavailable")

        monkeypatch.setattr(store, "set_token_mapping", failing_mapping)

        start = await auth_flow.begin(CALLBACK_URL)

        # The in-memory store still finds the session by scanning
        found = await store.find_by_request_token("tok1")
        assert found is not None
        assert found[0] == start.session_id


class TestComplete:
    """Tests for AuthFlow.complete."""

    @pytest.mark.asyncio
    async def test_full_login_scenario(
        self,
        auth_flow: AuthFlow,
        store: InMemoryTokenStore,
        provider: respx.MockRouter,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test begin, callback and verify end to end."""
        monkeypatch.setattr("wiki_oauth_gateway.oauth.flows.generate_session_id", lambda: "abc")

        start = await auth_flow.begin(CALLBACK_URL)
        assert start.session_id == "abc"
        assert "oauth_token=tok1" in start.auth_url

        session_id, user = await auth_flow.complete("v1", request_token_key="tok1")

        assert session_id == "abc"
        assert user == WikiUser(id=1, name="Alice", groups=("*", "user", "autoconfirmed"))

        stored = await store.get("abc")
        assert stored is not None
        assert stored.authenticated is True
        assert stored.access_token == Credential("acc1", "accsecret1")
        assert stored.user == user

        verified = await auth_flow.verify("abc")
        assert verified.id == 1
        assert verified.name == "Alice"

    @pytest.mark.asyncio
    async def test_exchange_signs_request_token_and_verifier(
        self, auth_flow: AuthFlow, provider: respx.MockRouter
    ) -> None:
        """Test the access-token request."""
        await auth_flow.begin(CALLBACK_URL)
        await auth_flow.complete("v1", request_token_key="tok1")

        authorization = provider["token"].calls.last.request.headers["Authorization"]
        assert 'oauth_token="tok1"' in authorization
        assert 'oauth_verifier="v1"' in authorization

        userinfo = provider["userinfo"].calls.last.request
        assert userinfo.url.params["uiprop"] == "groups"
        assert 'oauth_token="acc1"' in userinfo.headers["Authorization"]

    @pytest.mark.asyncio
    async def test_unknown_session_raises(
        self, auth_flow: AuthFlow, store: InMemoryTokenStore, provider: respx.MockRouter
    ) -> None:
        """Test that completing an unknown login creates nothing."""
        with pytest.raises(SessionNotFoundError):
            await auth_flow.complete("v1", request_token_key="unknown")

        assert await store.list_sessions() == []
        assert not provider["token"].called

    @pytest.mark.asyncio
    async def test_missing_verifier(self, auth_flow: AuthFlow) -> None:
        """Test that a verifier is required."""
        with pytest.raises(RequestFormatError, match="verifier"):
            await auth_flow.complete("  ", request_token_key="tok1")

    @pytest.mark.asyncio
    async def test_rejected_exchange_leaves_session(
        self, auth_flow: AuthFlow, store: InMemoryTokenStore, provider: respx.MockRouter
    ) -> None:
        """Test that a failed exchange keeps the pending session retry-able."""
        start = await auth_flow.begin(CALLBACK_URL)
        provider["token"].respond(401, text="mwoauth-invalid-authorization")

        with pytest.raises(AuthenticationError):
            await auth_flow.complete("bad", request_token_key="tok1")

        session = await store.get(start.session_id)
        assert session is not None
        assert session.state == SessionState.INITIATED

        provider["token"].respond(200, text="oauth_token=acc1&oauth_token_secret=accsecret1")
        session_id, _ = await auth_flow.complete("v1", request_token_key="tok1")
        assert session_id == start.session_id

    @pytest.mark.asyncio
    async def test_incomplete_access_token(
        self, auth_flow: AuthFlow, store: InMemoryTokenStore, provider: respx.MockRouter
    ) -> None:
        """Test an access-token response missing the secret."""
        start = await auth_flow.begin(CALLBACK_URL)
        provider["token"].respond(200, text="oauth_token=acc1")

        with pytest.raises(TokenResponseError, match="access token"):
            await auth_flow.complete("v1", request_token_key="tok1")

        session = await store.get(start.session_id)
        assert session is not None
        assert session.authenticated is False

    @pytest.mark.asyncio
    async def test_userinfo_error(
        self, auth_flow: AuthFlow, store: InMemoryTokenStore, provider: respx.MockRouter
    ) -> None:
        """Test that an API error while fetching the user fails the login."""
        start = await auth_flow.begin(CALLBACK_URL)
        provider["userinfo"].respond(
            200, json={"error": {"code": "mwoauth-invalid-authorization", "info": "nope"}}
        )

        with pytest.raises(AuthenticationError):
            await auth_flow.complete("v1", request_token_key="tok1")

        session = await store.get(start.session_id)
        assert session is not None
        assert session.authenticated is False

    @pytest.mark.asyncio
    async def test_anonymous_user_rejected(
        self, auth_flow: AuthFlow, provider: respx.MockRouter
    ) -> None:
        """Test that an anonymous identity is not accepted."""
        await auth_flow.begin(CALLBACK_URL)
        provider["userinfo"].respond(
            200, json={"query": {"userinfo": {"id": 0, "name": "127.0.0.1", "anon": ""}}}
        )

        with pytest.raises(AuthenticationError):
            await auth_flow.complete("v1", request_token_key="tok1")

    @pytest.mark.asyncio
    async def test_out_of_band_completion(
        self, oob_flow: AuthFlow, store: InMemoryTokenStore, provider: respx.MockRouter
    ) -> None:
        """Test completing with a copied verification code."""
        start = await oob_flow.begin()

        session_id, user = await oob_flow.complete("  v1\n", session_id=start.session_id)

        assert session_id == start.session_id
        assert user.name == "Alice"
        authorization = provider["token"].calls.last.request.headers["Authorization"]
        assert 'oauth_verifier="v1"' in authorization

    @pytest.mark.asyncio
    async def test_out_of_band_session_rejects_callback(
        self, oob_flow: AuthFlow, provider: respx.MockRouter
    ) -> None:
        """Test that an out-of-band login cannot be completed by request token."""
        await oob_flow.begin()

        with pytest.raises(RequestFormatError, match="verification code"):
            await oob_flow.complete("v1", request_token_key="tok1")

    @pytest.mark.asyncio
    async def test_callback_session_rejects_code(
        self, auth_flow: AuthFlow, provider: respx.MockRouter
    ) -> None:
        """Test that a popup login cannot be completed by session id."""
        start = await auth_flow.begin(CALLBACK_URL)

        with pytest.raises(RequestFormatError, match="callback"):
            await auth_flow.complete("v1", session_id=start.session_id)

    @pytest.mark.asyncio
    async def test_complete_requires_locator(self, auth_flow: AuthFlow) -> None:
        """Test that either a request token or a session id is needed."""
        with pytest.raises(RequestFormatError):
            await auth_flow.complete("v1")


class TestVerify:
    """Tests for AuthFlow.verify and logout."""

    @pytest.mark.asyncio
    async def test_verify_authenticated(
        self, auth_flow: AuthFlow, store: InMemoryTokenStore, authenticated_session: Session
    ) -> None:
        """Test verifying a completed login refreshes activity."""
        await store.put("sid1", authenticated_session, 10)

        user = await auth_flow.verify("sid1")

        assert user.name == "Alice"
        stored = await store.get("sid1")
        assert stored is not None
        assert stored.last_activity is not None
        assert stored.expires_at is not None
        assert stored.expires_at > stored.last_activity

    @pytest.mark.asyncio
    async def test_verify_extends_ttl(
        self, auth_flow: AuthFlow, store: InMemoryTokenStore, authenticated_session: Session
    ) -> None:
        """Test the sliding session lifetime."""
        await store.put("sid1", authenticated_session, 10)
        first = (await store.get("sid1")).expires_at  # type: ignore[union-attr]

        await auth_flow.verify("sid1")

        second = (await store.get("sid1")).expires_at  # type: ignore[union-attr]
        assert first is not None
        assert second is not None
        assert (second - first).total_seconds() > 3600

    @pytest.mark.asyncio
    async def test_verify_unauthenticated(
        self, auth_flow: AuthFlow, store: InMemoryTokenStore
    ) -> None:
        """Test that a pending login is reported invalid."""
        await store.put("sid1", Session(request_token=Credential("tok1", "s")), 60)

        with pytest.raises(SessionNotAuthenticatedError):
            await auth_flow.verify("sid1")

    @pytest.mark.asyncio
    async def test_verify_unknown(self, auth_flow: AuthFlow) -> None:
        """Test that an unknown session is reported invalid."""
        with pytest.raises(SessionNotFoundError):
            await auth_flow.verify("nope")

    @pytest.mark.asyncio
    async def test_verify_empty_id(self, auth_flow: AuthFlow) -> None:
        """Test that an empty session id is rejected."""
        with pytest.raises(SessionNotFoundError):
            await auth_flow.verify("")

    @pytest.mark.asyncio
    async def test_logout(
        self, auth_flow: AuthFlow, store: InMemoryTokenStore, authenticated_session: Session
    ) -> None:
        """Test that logout deletes the session and is idempotent."""
        await store.put("sid1", authenticated_session, 60)

        await auth_flow.logout("sid1")
        await auth_flow.logout("sid1")

        with pytest.raises(SessionNotFoundError):
            await auth_flow.verify("sid1")
