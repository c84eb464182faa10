"""Authenticated pass-through to the wiki action API."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from wiki_oauth_gateway.exceptions import RequestFormatError
from wiki_oauth_gateway.logging_config import get_logger
from wiki_oauth_gateway.security import token_hint

if TYPE_CHECKING:
    from wiki_oauth_gateway.oauth.flows import AuthFlow
    from wiki_oauth_gateway.oauth.signer import OAuthSigner

logger = get_logger(__name__)


def normalize_params(params: dict[str, Any] | None) -> dict[str, str]:
    """Convert caller parameters to action API form values.

    None values are dropped, lists are joined with ``|`` and booleans
    follow the API's presence convention: True becomes ``1``, False is
    omitted.

    Args:
        params: Raw parameters from the caller

    Returns:
        Flat dict of string values
    """
    result: dict[str, str] = {}
    for key, value in (params or {}).items():
        if value is None or value is False:
            continue
        if value is True:
            result[key] = "1"
        elif isinstance(value, (list, tuple)):
            result[key] = "|".join(str(item) for item in value)
        else:
            result[key] = str(value)
    return result


class ApiProxy:
    """Forwards named API actions on behalf of an authenticated session."""

    def __init__(self, auth_flow: AuthFlow, signer: OAuthSigner, api_url: str) -> None:
        """Initialize the proxy.

        Args:
            auth_flow: Flow controller owning session lookup and refresh
            signer: Signs requests with the session's access token
            api_url: Action API endpoint
        """
        self.auth_flow = auth_flow
        self.signer = signer
        self.api_url = api_url

    async def call(
        self,
        session_id: str,
        action: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send one action with the session's access token.

        Args:
            session_id: Authenticated session
            action: API action name, e.g. ``query`` or ``edit``
            params: Additional parameters

        Returns:
            Upstream response body, unmodified

        Raises:
            RequestFormatError: If no action is given
            SessionNotFoundError: If the session is unknown or expired
            SessionNotAuthenticatedError: If the handshake is incomplete
            AuthenticationError: If the provider rejects the signature
            TransportError: On network failures and other HTTP errors
        """
        if not action:
            raise RequestFormatError("Missing action")

        session = await self.auth_flow.authenticated_session(session_id)

        # Caller params may override format but never action
        payload: dict[str, str] = {"format": "json", **normalize_params(params)}
        payload["action"] = action

        logger.info(
            "Proxying action %s for session %s (user: %s)",
            action,
            token_hint(session_id),
            session.user.name if session.user else "unknown",
        )

        body = await self.signer.request(
            self.api_url, "POST", token=session.access_token, data=payload
        )

        await self.auth_flow.touch(session_id, session)
        return body
