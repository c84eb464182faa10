"""Async client for the gateway's HTTP surface.

Drives the login flow and sends API actions through ``/proxy``, keeping
the session id between calls.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qs, urlsplit

import httpx

from wiki_oauth_gateway.exceptions import PageNotFoundError, WikiOAuthError
from wiki_oauth_gateway.logging_config import get_logger
from wiki_oauth_gateway.responses import ApiResponse, Page, csrf_token, select_first_page
from wiki_oauth_gateway.security import token_hint

logger = get_logger(__name__)

# Default timeout for gateway requests (seconds)
DEFAULT_TIMEOUT = 30.0

DEFAULT_RECENT_CHANGES_LIMIT = 50
DEFAULT_REVISIONS_LIMIT = 2


class GatewayClientError(WikiOAuthError):
    """Gateway call failed.

    Attributes:
        message: Reason reported by the gateway
        status_code: HTTP status of the gateway response, if any
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class WikiGatewayClient:
    """Client for a running gateway.

    Example:
        ```python
        client = WikiGatewayClient("https://gateway.example.org")
        start = await client.login()
        # user visits start["authUrl"] and copies the code
        await client.submit_verification_code("abc123")
        changes = await client.get_recent_changes(limit=10)
        ```
    """

    def __init__(
        self,
        backend_url: str,
        session_id: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            backend_url: Base URL of the gateway
            session_id: Session id from an earlier login
            http_client: Optional custom HTTP client
        """
        self.backend_url = backend_url.rstrip("/")
        self.session_id = session_id
        self.user: dict[str, Any] | None = None
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=DEFAULT_TIMEOUT,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> WikiGatewayClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _request(
        self, method: str, path: str, json_body: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Call a gateway endpoint and unwrap its envelope.

        Raises:
            GatewayClientError: On network failures, non-JSON bodies or
                ``success: false``
        """
        client = await self._get_client()
        url = f"{self.backend_url}{path}"

        try:
            response = await client.request(method, url, json=json_body)
        except httpx.HTTPError as e:
            logger.error("Gateway request %s %s failed: %s", method, path, e)
            raise GatewayClientError(f"Gateway request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            raise GatewayClientError(
                f"Gateway error ({response.status_code}): {response.text or 'no body'}",
                response.status_code,
            ) from None

        if not isinstance(data, dict) or not data.get("success"):
            message = data.get("error") if isinstance(data, dict) else None
            raise GatewayClientError(
                message or f"Gateway error ({response.status_code})", response.status_code
            )

        return data

    def _require_session(self) -> str:
        if not self.session_id:
            raise GatewayClientError("Not logged in")
        return self.session_id

    async def login(self) -> dict[str, Any]:
        """Start a login.

        Returns:
            Gateway response with ``authUrl``, ``sessionId`` and ``isOutOfBand``
        """
        data = await self._request("GET", "/auth/login")
        self.session_id = data.get("sessionId")
        self.user = None
        logger.info("Login started (session %s)", token_hint(data.get("sessionId")))
        return data

    def handle_callback(self, query: str | Mapping[str, str]) -> bool:
        """Read the parameters the redirect-mode callback appends to the front-end URL.

        Args:
            query: Full URL, query string, or already parsed parameters

        Returns:
            True if a session was received, False if the query carries no result

        Raises:
            GatewayClientError: If the callback reported an error
        """
        if isinstance(query, str):
            raw = urlsplit(query).query if "://" in query else query.lstrip("?")
            params = {key: values[0] for key, values in parse_qs(raw).items()}
        else:
            params = dict(query)

        if params.get("oauth_error"):
            raise GatewayClientError(params["oauth_error"])

        if params.get("oauth_success") and params.get("session"):
            self.session_id = params["session"]
            self.user = None
            return True

        return False

    async def submit_verification_code(self, code: str) -> dict[str, Any]:
        """Complete an out-of-band login.

        Args:
            code: Verification code shown by the provider

        Returns:
            The authenticated user
        """
        session_id = self._require_session()
        data = await self._request(
            "POST",
            "/auth/verify-code",
            {"sessionId": session_id, "verificationCode": code.strip()},
        )
        self.session_id = data.get("sessionId", session_id)
        self.user = data.get("user")
        return self.user or {}

    async def verify_session(self) -> dict[str, Any] | None:
        """Check the current session.

        Local state is cleared when the gateway reports it invalid.

        Returns:
            The user, or None if there is no valid session
        """
        if not self.session_id:
            return None
        try:
            data = await self._request("POST", "/auth/verify", {"sessionId": self.session_id})
        except GatewayClientError as e:
            logger.info("Session verification failed: %s", e.message)
            self.session_id = None
            self.user = None
            return None
        self.user = data.get("user")
        return self.user

    async def logout(self) -> None:
        """End the session on the gateway and forget it locally."""
        session_id = self.session_id
        self.session_id = None
        self.user = None
        if session_id:
            await self._request("POST", "/auth/logout", {"sessionId": session_id})

    def is_logged_in(self) -> bool:
        return self.session_id is not None and self.user is not None

    async def api_call(self, action: str, params: dict[str, Any] | None = None) -> Any:
        """Send an action through the gateway.

        Args:
            action: API action name
            params: Additional parameters

        Returns:
            The wiki's response body
        """
        session_id = self._require_session()
        data = await self._request(
            "POST",
            "/proxy",
            {"sessionId": session_id, "action": action, "params": params or {}},
        )
        body = data.get("data")
        if isinstance(body, dict) and "error" in body:
            error = ApiResponse.model_validate(body).error
            if error is not None:
                raise GatewayClientError(f"{error.code}: {error.info}")
        return body

    async def get_user_info(self) -> dict[str, Any]:
        data = await self.api_call("query", {"meta": "userinfo", "uiprop": "groups"})
        return data.get("query", {}).get("userinfo", {})

    async def get_recent_changes(
        self, limit: int = DEFAULT_RECENT_CHANGES_LIMIT, namespace: int | None = None
    ) -> list[dict[str, Any]]:
        """List recent edits and page creations."""
        data = await self.api_call(
            "query",
            {
                "list": "recentchanges",
                "rcprop": "title|ids|sizes|flags|user|timestamp|comment",
                "rclimit": limit,
                "rctype": "edit|new",
                "rcnamespace": namespace,
            },
        )
        return list(data.get("query", {}).get("recentchanges", []))

    async def get_page_revisions(
        self,
        title: str,
        limit: int = DEFAULT_REVISIONS_LIMIT,
        start_id: int | None = None,
    ) -> Page:
        """Fetch the latest revisions of a page, with content.

        Raises:
            PageNotFoundError: If the response holds no page
        """
        data = await self.api_call(
            "query",
            {
                "prop": "revisions",
                "titles": title,
                "rvprop": "content|ids",
                "rvslots": "main",
                "rvlimit": limit,
                "rvstartid": start_id,
            },
        )
        return select_first_page(data)

    async def _csrf_token(self) -> str:
        data = await self.api_call("query", {"meta": "tokens"})
        return csrf_token(data)

    async def revert_page(
        self, title: str, to_rev_id: int, summary: str | None = None
    ) -> dict[str, Any]:
        """Restore a page to the content of an earlier revision.

        Args:
            title: Page title
            to_rev_id: Revision whose content becomes current
            summary: Edit summary

        Returns:
            The wiki's edit response

        Raises:
            PageNotFoundError: If the revision or its content is not found
        """
        data = await self.api_call(
            "query",
            {"prop": "revisions", "revids": to_rev_id, "rvprop": "content", "rvslots": "main"},
        )
        page = select_first_page(data)
        content = page.revisions[0].content if page.revisions else None
        if content is None:
            raise PageNotFoundError("Could not find revision to revert to")

        token = await self._csrf_token()
        return await self.api_call(
            "edit",
            {"title": title, "text": content, "summary": summary, "token": token},
        )

    async def edit_user_talk_page(
        self, username: str, content: str, summary: str | None = None
    ) -> dict[str, Any]:
        """Append a message to a user's talk page."""
        token = await self._csrf_token()
        return await self.api_call(
            "edit",
            {
                "title": f"User talk:{username}",
                "appendtext": f"\n\n{content}",
                "summary": summary,
                "token": token,
            },
        )
