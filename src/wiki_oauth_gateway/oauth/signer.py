"""OAuth 1.0a request signing.

Signs requests with the shared consumer credential plus, when present,
the per-session token, executes them over httpx and maps provider
failures onto the gateway's error types. Signing itself is delegated to
Authlib's httpx integration.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlencode

import httpx
from authlib.integrations.httpx_client import OAuth1Auth

from wiki_oauth_gateway.exceptions import (
    AuthenticationError,
    RequestFormatError,
    TokenResponseError,
    TransportError,
)
from wiki_oauth_gateway.logging_config import get_logger
from wiki_oauth_gateway.oauth.session import Credential
from wiki_oauth_gateway.security import redact, token_hint

if TYPE_CHECKING:
    from wiki_oauth_gateway.config import Config

logger = get_logger(__name__)

# Default HTTP timeout for provider requests
DEFAULT_TIMEOUT = 30.0

DEFAULT_USER_AGENT = "wiki-oauth-gateway/0.1.0"


def parse_token_response(body: Any) -> dict[str, str]:
    """Decode a token endpoint response.

    The provider answers form-encoded by default and JSON when asked.

    Args:
        body: Response body as returned by OAuthSigner.request

    Returns:
        Flat dict of response parameters
    """
    if isinstance(body, dict):
        return {str(k): str(v) for k, v in body.items() if v is not None}
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    return dict(parse_qsl(str(body).strip(), keep_blank_values=True))


def credential_from_response(body: Any, what: str) -> Credential:
    """Extract a token pair from a token endpoint response.

    Args:
        body: Response body from the token endpoint
        what: Token kind, used in the error message

    Returns:
        Credential built from ``oauth_token``/``oauth_token_secret``

    Raises:
        TokenResponseError: If either half of the pair is missing
    """
    params = parse_token_response(body)
    key = params.get("oauth_token")
    secret = params.get("oauth_token_secret")
    if not key or not secret:
        logger.error(
            "Token response lacks %s (fields: %s)", what, ", ".join(sorted(params)) or "none"
        )
        raise TokenResponseError(f"Failed to get {what}", status_code=200, response_body=body)
    return Credential(key=key, secret=secret)


class OAuthSigner:
    """Signs and executes requests against the OAuth provider.

    One attempt per call; retries are left to the caller. The URL that
    is signed is exactly the URL that is sent, including fixed routing
    query parameters such as ``title=Special:OAuth/initiate``.
    """

    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the signer.

        Args:
            consumer_key: OAuth consumer key
            consumer_secret: OAuth consumer secret
            user_agent: User-Agent header for every request
            timeout: Request timeout in seconds
            http_client: Optional custom HTTP client
        """
        self.consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self.user_agent = user_agent
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

        logger.info(
            "OAuth signer configured (consumer key: %s, secret: %s)",
            token_hint(consumer_key),
            redact(consumer_secret),
        )

    @classmethod
    def from_config(
        cls, config: Config, http_client: httpx.AsyncClient | None = None
    ) -> OAuthSigner:
        """Build a signer from application config."""
        return cls(
            consumer_key=config.consumer_key or "",
            consumer_secret=(
                config.consumer_secret.get_secret_value() if config.consumer_secret else ""
            ),
            user_agent=config.user_agent,
            timeout=config.http_timeout,
            http_client=http_client,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _auth(
        self,
        token: Credential | None,
        callback: str | None = None,
        verifier: str | None = None,
    ) -> OAuth1Auth:
        """Build the Authorization-header signer for one request."""
        return OAuth1Auth(
            client_id=self.consumer_key,
            client_secret=self._consumer_secret,
            token=token.key if token else None,
            token_secret=token.secret if token else None,
            redirect_uri=callback,
            verifier=verifier,
        )

    def build_authorize_url(self, authorize_url: str, request_token_key: str) -> str:
        """Build the unsigned browser URL for the authorization step.

        Args:
            authorize_url: Provider authorization page
            request_token_key: Key of the freshly issued request token

        Returns:
            URL the user should visit
        """
        separator = "&" if "?" in authorize_url else "?"
        query = urlencode({
            "oauth_token": request_token_key,
            "oauth_consumer_key": self.consumer_key,
        })
        return f"{authorize_url}{separator}{query}"

    async def request(
        self,
        url: str,
        method: str = "GET",
        token: Credential | None = None,
        data: dict[str, Any] | None = None,
        *,
        callback: str | None = None,
        verifier: str | None = None,
    ) -> Any:
        """Sign and execute a request.

        POST payloads are form-encoded; GET payloads become query
        parameters. OAuth protocol parameters travel in the
        Authorization header.

        Args:
            url: Target URL, sent exactly as signed
            method: "GET" or "POST"
            token: Request or access token, None for the request-token step
            data: Non-OAuth payload
            callback: ``oauth_callback`` value (request-token step only)
            verifier: ``oauth_verifier`` value (access-token step only)

        Returns:
            Parsed JSON body, or the body text for non-JSON responses

        Raises:
            AuthenticationError: On HTTP 401
            RequestFormatError: On HTTP 400
            TransportError: On other non-2xx statuses and network failures
        """
        client = await self._get_client()
        method = method.upper()
        payload = {k: v for k, v in (data or {}).items() if v is not None}
        auth = self._auth(token, callback=callback, verifier=verifier)
        headers = {"User-Agent": self.user_agent}

        logger.debug(
            "OAuth %s %s (token: %s, params: %s)",
            method,
            url,
            token_hint(token.key) if token else "none",
            ", ".join(sorted(payload)) or "none",
        )

        try:
            if method == "POST":
                response = await client.post(
                    url, data=payload, headers=headers, auth=auth
                )
            elif method == "GET":
                response = await client.get(
                    url, params=payload or None, headers=headers, auth=auth
                )
            else:
                msg = f"Unsupported HTTP method: {method}"
                raise ValueError(msg)
        except httpx.HTTPError as e:
            logger.error("OAuth request to %s failed: %s", url, e)
            raise TransportError(f"Request to provider failed: {e}") from e

        if response.is_success:
            logger.debug(
                "OAuth request to %s succeeded (%d, %d bytes)",
                url,
                response.status_code,
                len(response.content),
            )
            return self._parse_body(response)

        self._handle_error_response(url, response)
        return None  # pragma: no cover - _handle_error_response always raises

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                return response.json()
            except json.JSONDecodeError:
                return response.text
        return response.text

    @staticmethod
    def _handle_error_response(url: str, response: httpx.Response) -> None:
        """Map an error response onto a gateway exception.

        Args:
            url: Requested URL, for the log line
            response: HTTP response object

        Raises:
            WikiOAuthError: Appropriate exception based on status code
        """
        status = response.status_code
        body = response.text

        # Provider bodies stay in the server log
        logger.error("OAuth request to %s failed: %d - %s", url, status, body[:500])

        if status == 401:
            raise AuthenticationError()
        if status == 400:
            raise RequestFormatError()
        raise TransportError(
            f"Provider returned HTTP {status}", status_code=status, response_body=body
        )
