"""Exceptions raised by the wiki OAuth gateway.

Every error carries a short ``message`` that is safe to show to the
browser. Provider response bodies are kept on the exception for
server-side logging only.
"""

from __future__ import annotations

from typing import Any


class WikiOAuthError(Exception):
    """Base exception for gateway errors.

    Attributes:
        message: Human-readable error message
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationError(WikiOAuthError):
    """Raised when the provider rejects our credentials or signature (401)."""

    def __init__(
        self,
        message: str = "OAuth authentication failed - check consumer key/secret",
    ) -> None:
        super().__init__(message)


class RequestFormatError(WikiOAuthError):
    """Raised when the provider reports a malformed OAuth request (400)."""

    def __init__(
        self,
        message: str = "Bad OAuth request - check callback URL configuration",
    ) -> None:
        super().__init__(message)


class CallbackNotConfirmedError(RequestFormatError):
    """Raised when the provider did not accept the callback configuration."""

    def __init__(
        self,
        message: str = "OAuth provider did not confirm the callback",
    ) -> None:
        super().__init__(message)


class SessionNotFoundError(WikiOAuthError):
    """Raised for unknown or expired session ids and request tokens."""

    def __init__(self, message: str = "Invalid or expired session") -> None:
        super().__init__(message)


class SessionNotAuthenticatedError(WikiOAuthError):
    """Raised when a session exists but the handshake is not complete."""

    def __init__(self, message: str = "Invalid or expired session") -> None:
        super().__init__(message)


class TransportError(WikiOAuthError):
    """Raised for network failures and unclassified non-2xx responses.

    Attributes:
        status_code: HTTP status code (if a response was received)
        response_body: Raw response body (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    def __str__(self) -> str:
        if self.status_code:
            return f"[{self.status_code}] {self.message}"
        return self.message


class TokenResponseError(TransportError):
    """Raised when a token endpoint answers without a complete token pair."""


class StorageError(WikiOAuthError):
    """Raised when a session storage backend fails to read or write."""


class PageNotFoundError(WikiOAuthError):
    """Raised when a wiki API response contains no usable page."""

    def __init__(self, message: str = "No page found in API response") -> None:
        super().__init__(message)


class EditTokenError(WikiOAuthError):
    """Raised when a ``meta=tokens`` response carries no CSRF token."""

    def __init__(self, message: str = "No edit token in API response") -> None:
        super().__init__(message)
