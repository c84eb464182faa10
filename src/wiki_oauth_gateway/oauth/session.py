"""Session data model for the OAuth handshake.

A session is created when a login begins (holding only the request
token), upgraded once when the handshake completes, and afterwards only
touched to record activity.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """Where a session is in the three-legged handshake."""

    INITIATED = "initiated"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class Credential:
    """An OAuth token pair issued by the provider.

    Used for both the short-lived request token and the access token.
    """

    key: str
    secret: str = field(repr=False)

    def to_dict(self) -> dict[str, str]:
        return {"key": self.key, "secret": self.secret}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credential:
        return cls(key=str(data["key"]), secret=str(data["secret"]))


@dataclass(frozen=True)
class WikiUser:
    """Identity of the authorizing wiki user."""

    id: int
    name: str
    groups: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "groups": list(self.groups)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WikiUser:
        return cls(
            id=int(data["id"]),
            name=str(data["name"]),
            groups=tuple(data.get("groups") or ()),
        )


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _to_timestamp(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _from_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=UTC)


@dataclass
class Session:
    """Server-side record of one login.

    Attributes:
        request_token: Token pair obtained when the login began
        is_out_of_band: Whether the login completes with a verification code
        access_token: Token pair obtained at completion
        user: Authorizing user, fetched at completion
        authenticated: Whether the handshake has completed
        created_at: When the login began
        expires_at: Stamped by the token store on every write
        last_activity: Last verify or proxy call
    """

    request_token: Credential
    is_out_of_band: bool = False
    access_token: Credential | None = None
    user: WikiUser | None = None
    authenticated: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    expires_at: datetime | None = None
    last_activity: datetime | None = None

    @property
    def state(self) -> SessionState:
        if self.authenticated and self.access_token is not None:
            return SessionState.AUTHENTICATED
        return SessionState.INITIATED

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the stored expiry stamp has passed.

        Args:
            now: Reference time (defaults to the current time)

        Returns:
            True if the session has an expiry stamp in the past
        """
        if self.expires_at is None:
            return False
        return (now or _utcnow()) > self.expires_at

    def touch(self) -> None:
        """Update last activity timestamp."""
        self.last_activity = _utcnow()

    def mark_authenticated(self, access_token: Credential, user: WikiUser) -> None:
        """Record the outcome of a completed handshake."""
        self.access_token = access_token
        self.user = user
        self.authenticated = True
        self.touch()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict for storage."""
        return {
            "request_token": self.request_token.to_dict(),
            "is_out_of_band": self.is_out_of_band,
            "access_token": self.access_token.to_dict() if self.access_token else None,
            "user": self.user.to_dict() if self.user else None,
            "authenticated": self.authenticated,
            "created_at": _to_timestamp(self.created_at),
            "expires_at": _to_timestamp(self.expires_at),
            "last_activity": _to_timestamp(self.last_activity),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        """Deserialize a dict produced by to_dict."""
        access_token = data.get("access_token")
        user = data.get("user")
        return cls(
            request_token=Credential.from_dict(data["request_token"]),
            is_out_of_band=bool(data.get("is_out_of_band", False)),
            access_token=Credential.from_dict(access_token) if access_token else None,
            user=WikiUser.from_dict(user) if user else None,
            authenticated=bool(data.get("authenticated", False)),
            created_at=_from_timestamp(data.get("created_at")) or _utcnow(),
            expires_at=_from_timestamp(data.get("expires_at")),
            last_activity=_from_timestamp(data.get("last_activity")),
        )
