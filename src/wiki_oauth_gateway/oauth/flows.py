"""OAuth 1.0a three-legged login flow.

begin() obtains a request token and stores a pending session,
complete() exchanges the approved request token for an access token and
records the user, verify() checks that a session is authenticated.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from wiki_oauth_gateway.exceptions import (
    AuthenticationError,
    CallbackNotConfirmedError,
    RequestFormatError,
    SessionNotAuthenticatedError,
    SessionNotFoundError,
    StorageError,
)
from wiki_oauth_gateway.logging_config import get_logger
from wiki_oauth_gateway.oauth.session import Credential, Session, WikiUser
from wiki_oauth_gateway.oauth.signer import credential_from_response, parse_token_response
from wiki_oauth_gateway.responses import ApiResponse
from wiki_oauth_gateway.security import generate_session_id, token_hint

if TYPE_CHECKING:
    from wiki_oauth_gateway.config import Config
    from wiki_oauth_gateway.oauth.signer import OAuthSigner
    from wiki_oauth_gateway.oauth.token_store import TokenStore

logger = get_logger(__name__)

OOB_CALLBACK = "oob"

OOB_INSTRUCTIONS = (
    "Visit the authUrl, authorize the application, and you will receive a "
    "verification code. Submit this code to the /auth/verify-code endpoint."
)

# Defaults match the provider's token lifetimes
DEFAULT_PENDING_TTL = 3600
DEFAULT_SESSION_TTL = 86400


@dataclass(frozen=True)
class ProviderEndpoints:
    """URLs of the OAuth provider and its action API."""

    request_token_url: str
    authorize_url: str
    access_token_url: str
    api_url: str

    @classmethod
    def from_config(cls, config: Config) -> ProviderEndpoints:
        return cls(
            request_token_url=config.request_token_url,
            authorize_url=config.authorize_url,
            access_token_url=config.access_token_url,
            api_url=config.api_url,
        )


@dataclass(frozen=True)
class LoginStart:
    """Result of beginning a login."""

    auth_url: str
    session_id: str
    is_out_of_band: bool
    instructions: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "authUrl": self.auth_url,
            "sessionId": self.session_id,
            "isOutOfBand": self.is_out_of_band,
        }
        if self.instructions:
            data["instructions"] = self.instructions
        return data


class AuthFlow:
    """Drives the OAuth handshake and keeps its state in a TokenStore.

    The store is the single source of truth: every step re-reads the
    session by id and writes back a complete record.
    """

    def __init__(
        self,
        signer: OAuthSigner,
        token_store: TokenStore,
        endpoints: ProviderEndpoints,
        out_of_band: bool = False,
        pending_ttl: int = DEFAULT_PENDING_TTL,
        session_ttl: int = DEFAULT_SESSION_TTL,
    ) -> None:
        """Initialize the flow.

        Args:
            signer: Signs provider requests
            token_store: Session storage
            endpoints: Provider URLs
            out_of_band: Complete logins with a verification code instead of a callback
            pending_ttl: Seconds an unauthorized login is kept
            session_ttl: Idle seconds before an authenticated session expires
        """
        self.signer = signer
        self.token_store = token_store
        self.endpoints = endpoints
        self.out_of_band = out_of_band
        self.pending_ttl = pending_ttl
        self.session_ttl = session_ttl

    @classmethod
    def from_config(
        cls, config: Config, signer: OAuthSigner, token_store: TokenStore
    ) -> AuthFlow:
        """Build a flow using the configured endpoints, mode and TTLs."""
        return cls(
            signer=signer,
            token_store=token_store,
            endpoints=ProviderEndpoints.from_config(config),
            out_of_band=config.is_out_of_band,
            pending_ttl=config.pending_session_ttl,
            session_ttl=config.session_ttl,
        )

    async def begin(self, callback_url: str | None = None) -> LoginStart:
        """Obtain a request token and store a pending session.

        Args:
            callback_url: Where the provider sends the user back; ignored in
                out-of-band mode

        Returns:
            LoginStart with the authorization URL and new session id

        Raises:
            RequestFormatError: If no callback URL is available
            CallbackNotConfirmedError: If the provider did not accept the callback
            TokenResponseError: If the provider returned no request token
        """
        if self.out_of_band:
            callback = OOB_CALLBACK
        elif callback_url:
            callback = callback_url
        else:
            raise RequestFormatError("No OAuth callback URL configured")

        logger.info("Starting OAuth flow (callback: %s)", callback)

        body = await self.signer.request(
            self.endpoints.request_token_url, "POST", callback=callback
        )

        params = parse_token_response(body)
        if params.get("oauth_callback_confirmed", "").lower() != "true":
            logger.error("Provider did not confirm callback %s", callback)
            raise CallbackNotConfirmedError()

        request_token = credential_from_response(body, "request token")

        session_id = generate_session_id()
        session = Session(request_token=request_token, is_out_of_band=self.out_of_band)
        await self.token_store.put(session_id, session, self.pending_ttl)

        try:
            await self.token_store.set_token_mapping(
                request_token.key, session_id, self.pending_ttl
            )
        except StorageError as e:
            logger.warning(
                "Could not index request token %s: %s", token_hint(request_token.key), e.message
            )

        auth_url = self.signer.build_authorize_url(
            self.endpoints.authorize_url, request_token.key
        )

        logger.info("OAuth flow started for session %s", token_hint(session_id))

        return LoginStart(
            auth_url=auth_url,
            session_id=session_id,
            is_out_of_band=self.out_of_band,
            instructions=OOB_INSTRUCTIONS if self.out_of_band else None,
        )

    async def complete(
        self,
        verifier: str,
        request_token_key: str | None = None,
        session_id: str | None = None,
    ) -> tuple[str, WikiUser]:
        """Exchange an approved request token and record the user.

        Redirect and popup logins are located by the provider's request
        token; out-of-band logins by the session id the client holds.
        On any failure the stored session is left as it was.

        Args:
            verifier: ``oauth_verifier`` or the copied verification code
            request_token_key: ``oauth_token`` from the callback
            session_id: Session id, for out-of-band completion

        Returns:
            Tuple of (session id, authenticated user)

        Raises:
            SessionNotFoundError: If no pending session matches
            RequestFormatError: If the verifier is missing or the session was
                started in a different callback mode
            AuthenticationError: If the provider rejects the exchange or identity
            TokenResponseError: If the access token response is incomplete
        """
        verifier = (verifier or "").strip()
        if not verifier:
            raise RequestFormatError("Missing OAuth verifier")

        session_id, session = await self._find_pending(request_token_key, session_id)

        body = await self.signer.request(
            self.endpoints.access_token_url,
            "POST",
            token=session.request_token,
            verifier=verifier,
        )
        access_token = credential_from_response(body, "access token")

        user = await self.fetch_user(access_token)

        session.mark_authenticated(access_token, user)
        await self.token_store.put(session_id, session, self.session_ttl)

        logger.info(
            "OAuth flow completed for user %s (session %s)", user.name, token_hint(session_id)
        )

        return session_id, user

    async def _find_pending(
        self, request_token_key: str | None, session_id: str | None
    ) -> tuple[str, Session]:
        if request_token_key:
            found = await self.token_store.find_by_request_token(request_token_key)
            if found is None:
                logger.warning(
                    "No pending session for request token %s", token_hint(request_token_key)
                )
                raise SessionNotFoundError()
            found_id, session = found
            if session.is_out_of_band:
                raise RequestFormatError("This login must be completed with a verification code")
            return found_id, session

        if session_id:
            session = await self.token_store.get(session_id)
            if session is None:
                logger.warning("No pending session %s", token_hint(session_id))
                raise SessionNotFoundError()
            if not session.is_out_of_band:
                raise RequestFormatError("This login must be completed through the callback")
            return session_id, session

        raise RequestFormatError("Missing session id or request token")

    async def fetch_user(self, access_token: Credential) -> WikiUser:
        """Fetch the identity behind an access token.

        Args:
            access_token: Freshly issued access token

        Returns:
            WikiUser with id, name and groups

        Raises:
            AuthenticationError: If the API reports an error or an anonymous user
        """
        body = await self.signer.request(
            self.endpoints.api_url,
            "GET",
            token=access_token,
            data={"action": "query", "meta": "userinfo", "uiprop": "groups", "format": "json"},
        )

        try:
            response = ApiResponse.model_validate(body)
        except ValidationError as e:
            logger.error("Unexpected userinfo response: %s", e)
            raise AuthenticationError("Failed to read user information") from e

        if response.error is not None:
            logger.error("Userinfo request failed: %s - %s", response.error.code, response.error.info)
            raise AuthenticationError("Failed to read user information")

        info = response.query.userinfo if response.query else None
        if info is None or info.is_anonymous:
            logger.error("Userinfo response has no authenticated user")
            raise AuthenticationError("Failed to read user information")

        return WikiUser(id=info.id, name=info.name, groups=tuple(info.groups))

    async def verify(self, session_id: str) -> WikiUser:
        """Check that a session is authenticated and refresh its activity.

        Does not contact the provider.

        Args:
            session_id: Session identifier

        Returns:
            The stored user

        Raises:
            SessionNotFoundError: If the session is unknown or expired
            SessionNotAuthenticatedError: If the handshake is incomplete
        """
        session = await self.authenticated_session(session_id)
        await self.touch(session_id, session)
        if session.user is None:
            raise SessionNotAuthenticatedError()
        logger.debug("Session %s verified for %s", token_hint(session_id), session.user.name)
        return session.user

    async def authenticated_session(self, session_id: str) -> Session:
        """Load a session and require it to be authenticated.

        Raises:
            SessionNotFoundError: If the session is unknown or expired
            SessionNotAuthenticatedError: If the handshake is incomplete
        """
        if not session_id:
            raise SessionNotFoundError("Session ID required")
        session = await self.token_store.get(session_id)
        if session is None:
            raise SessionNotFoundError()
        if not session.authenticated or session.access_token is None:
            raise SessionNotAuthenticatedError()
        return session

    async def touch(self, session_id: str, session: Session) -> None:
        """Record activity and extend the session's lifetime."""
        session.touch()
        await self.token_store.put(session_id, session, self.session_ttl)

    async def logout(self, session_id: str) -> None:
        """Delete a session. Unknown ids are ignored."""
        await self.token_store.delete(session_id)
        logger.info("Session %s logged out", token_hint(session_id))
