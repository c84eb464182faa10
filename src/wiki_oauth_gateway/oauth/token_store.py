"""Session storage implementations.

Sessions are keyed by session id and carry a TTL stamped at write time.
A reverse index maps the provider's request-token key back to the
session id, because the OAuth callback only carries the provider token.

Concurrent writes to the same session id are last-write-wins. Two
simultaneous completions of one login can therefore overwrite each
other; each request still sees a consistent record.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from cryptography.fernet import Fernet, InvalidToken
from redis.exceptions import RedisError

from wiki_oauth_gateway.exceptions import StorageError
from wiki_oauth_gateway.logging_config import get_logger
from wiki_oauth_gateway.oauth.session import Session
from wiki_oauth_gateway.security import constant_time_equals, token_hint

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "session:"
TOKEN_KEY_PREFIX = "token:"


def _stamp(session: Session, ttl: int) -> None:
    """Set the expiry of a session being written."""
    session.expires_at = datetime.now(UTC) + timedelta(seconds=ttl)


class TokenStore(ABC):
    """Abstract base class for session storage.

    Lookups return None for unknown and expired entries; expired entries
    are removed when they are read.
    """

    @abstractmethod
    async def put(self, session_id: str, session: Session, ttl: int) -> None:
        """Store or overwrite a session.

        Stamps ``session.expires_at`` from the TTL.

        Args:
            session_id: Session identifier
            session: Session to store
            ttl: Seconds until the session expires

        Raises:
            StorageError: If the backend cannot be written
        """

    @abstractmethod
    async def get(self, session_id: str) -> Session | None:
        """Retrieve a session.

        Args:
            session_id: Session identifier

        Returns:
            Session if found and not expired, None otherwise
        """

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        """Remove a session and any reverse-index entry pointing to it.

        Deleting an unknown session is not an error.

        Args:
            session_id: Session identifier
        """

    @abstractmethod
    async def find_by_request_token(self, token_key: str) -> tuple[str, Session] | None:
        """Resolve a provider request-token key to its session.

        Args:
            token_key: The ``oauth_token`` value from the callback

        Returns:
            Tuple of (session id, session), or None
        """

    @abstractmethod
    async def set_token_mapping(self, token_key: str, session_id: str, ttl: int) -> None:
        """Record a request-token key -> session id mapping.

        Args:
            token_key: Request-token key
            session_id: Session identifier
            ttl: Seconds until the mapping expires
        """

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryTokenStore(TokenStore):
    """In-memory session storage.

    Sessions are lost on restart and are not shared between processes.
    Records are stored serialized so callers never hold a live reference
    to stored state.
    """

    def __init__(self) -> None:
        """Initialize in-memory store."""
        self._sessions: dict[str, dict[str, Any]] = {}
        self._token_index: dict[str, tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    async def put(self, session_id: str, session: Session, ttl: int) -> None:
        async with self._lock:
            _stamp(session, ttl)
            self._sessions[session_id] = session.to_dict()
            self._sweep_expired()
            logger.debug("Stored session %s in memory", token_hint(session_id))

    async def get(self, session_id: str) -> Session | None:
        async with self._lock:
            return self._get_live(session_id)

    async def delete(self, session_id: str) -> None:
        async with self._lock:
            self._remove(session_id)

    async def find_by_request_token(self, token_key: str) -> tuple[str, Session] | None:
        async with self._lock:
            entry = self._token_index.get(token_key)
            if entry is not None:
                session_id, expires_at = entry
                session = None
                if datetime.now(UTC) <= expires_at:
                    session = self._get_live(session_id)
                if session is not None and constant_time_equals(
                    session.request_token.key, token_key
                ):
                    return session_id, session
                del self._token_index[token_key]

            # No usable mapping: scan
            for session_id in list(self._sessions):
                session = self._get_live(session_id)
                if session is not None and constant_time_equals(
                    session.request_token.key, token_key
                ):
                    return session_id, session

            return None

    async def set_token_mapping(self, token_key: str, session_id: str, ttl: int) -> None:
        async with self._lock:
            expires_at = datetime.now(UTC) + timedelta(seconds=ttl)
            self._token_index[token_key] = (session_id, expires_at)

    async def list_sessions(self) -> list[tuple[str, Session]]:
        """Return all live sessions, for diagnostics.

        Returns:
            List of (session id, session) tuples
        """
        async with self._lock:
            result = []
            for session_id in list(self._sessions):
                session = self._get_live(session_id)
                if session is not None:
                    result.append((session_id, session))
            return result

    async def clear(self) -> None:
        """Clear all stored sessions."""
        async with self._lock:
            self._sessions.clear()
            self._token_index.clear()

    def _get_live(self, session_id: str) -> Session | None:
        data = self._sessions.get(session_id)
        if data is None:
            return None
        session = Session.from_dict(data)
        if session.is_expired():
            logger.debug("Session %s has expired", token_hint(session_id))
            self._remove(session_id)
            return None
        return session

    def _remove(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            logger.debug("Deleted session %s from memory", token_hint(session_id))
        stale = [key for key, (sid, _) in self._token_index.items() if sid == session_id]
        for key in stale:
            del self._token_index[key]

    def _sweep_expired(self) -> None:
        now = datetime.now(UTC)
        expired = [
            session_id
            for session_id, data in self._sessions.items()
            if Session.from_dict(data).is_expired(now)
        ]
        for session_id in expired:
            self._remove(session_id)

        dangling = [
            key
            for key, (sid, expires_at) in self._token_index.items()
            if now > expires_at or sid not in self._sessions
        ]
        for key in dangling:
            del self._token_index[key]

        if expired:
            logger.debug("Swept %d expired sessions", len(expired))


class RedisTokenStore(TokenStore):
    """Redis-backed session storage.

    Records are JSON documents written with a native Redis expiry and,
    when an encryption key is configured, Fernet-encrypted. Any Redis
    failure surfaces as StorageError.
    """

    def __init__(self, client: Redis, encryption_key: str | None = None) -> None:
        """Initialize Redis store.

        Args:
            client: redis.asyncio client
            encryption_key: Optional Fernet key for records at rest

        Raises:
            StorageError: If encryption key is invalid
        """
        self._client = client
        self._fernet: Fernet | None = None
        if encryption_key:
            try:
                self._fernet = Fernet(encryption_key.encode())
            except Exception as e:
                raise StorageError(f"Invalid encryption key: {e}") from e

    @classmethod
    def from_url(cls, url: str, encryption_key: str | None = None) -> RedisTokenStore:
        """Create a store connected to a Redis URL."""
        from redis.asyncio import from_url

        return cls(from_url(url), encryption_key=encryption_key)

    def _encode(self, value: Any) -> bytes:
        payload = json.dumps(value).encode()
        if self._fernet is not None:
            return self._fernet.encrypt(payload)
        return payload

    def _decode(self, raw: bytes | str) -> Any:
        data = raw.encode() if isinstance(raw, str) else raw
        if self._fernet is not None:
            try:
                data = self._fernet.decrypt(data)
            except InvalidToken:
                logger.error("Failed to decrypt session record - wrong key?")
                raise StorageError("Failed to decrypt session record") from None
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            raise StorageError(f"Failed to parse session record: {e}") from e

    async def put(self, session_id: str, session: Session, ttl: int) -> None:
        _stamp(session, ttl)
        try:
            await self._client.set(
                f"{SESSION_KEY_PREFIX}{session_id}",
                self._encode(session.to_dict()),
                ex=ttl,
            )
        except (RedisError, OSError) as e:
            logger.error("Redis write failed for session %s: %s", token_hint(session_id), e)
            raise StorageError(f"Session write failed: {e}") from e
        logger.debug("Stored session %s in redis", token_hint(session_id))

    async def get(self, session_id: str) -> Session | None:
        try:
            raw = await self._client.get(f"{SESSION_KEY_PREFIX}{session_id}")
        except (RedisError, OSError) as e:
            logger.error("Redis read failed for session %s: %s", token_hint(session_id), e)
            raise StorageError(f"Session read failed: {e}") from e

        if raw is None:
            return None

        session = Session.from_dict(self._decode(raw))
        if session.is_expired():
            await self.delete(session_id)
            return None
        return session

    async def delete(self, session_id: str) -> None:
        keys = [f"{SESSION_KEY_PREFIX}{session_id}"]
        try:
            raw = await self._client.get(keys[0])
            if raw is not None:
                try:
                    data = self._decode(raw)
                    keys.append(f"{TOKEN_KEY_PREFIX}{data['request_token']['key']}")
                except (StorageError, KeyError, TypeError):
                    # The mapping will resolve to "not found" once the session is gone
                    logger.debug(
                        "Could not read request token of %s", token_hint(session_id)
                    )
            await self._client.delete(*keys)
        except (RedisError, OSError) as e:
            logger.error("Redis delete failed for session %s: %s", token_hint(session_id), e)
            raise StorageError(f"Session delete failed: {e}") from e

    async def find_by_request_token(self, token_key: str) -> tuple[str, Session] | None:
        mapping_key = f"{TOKEN_KEY_PREFIX}{token_key}"
        try:
            raw = await self._client.get(mapping_key)
        except (RedisError, OSError) as e:
            logger.error("Redis token lookup failed: %s", e)
            raise StorageError(f"Token lookup failed: {e}") from e

        if raw is None:
            return None

        session_id = str(self._decode(raw))
        session = await self.get(session_id)
        if session is None or not constant_time_equals(session.request_token.key, token_key):
            logger.debug("Dropping stale token mapping %s", token_hint(token_key))
            try:
                await self._client.delete(mapping_key)
            except (RedisError, OSError) as e:
                logger.warning("Failed to drop stale token mapping: %s", e)
            return None
        return session_id, session

    async def set_token_mapping(self, token_key: str, session_id: str, ttl: int) -> None:
        try:
            await self._client.set(
                f"{TOKEN_KEY_PREFIX}{token_key}", self._encode(session_id), ex=ttl
            )
        except (RedisError, OSError) as e:
            logger.error("Redis token mapping failed: %s", e)
            raise StorageError(f"Token mapping failed: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()


class FallbackTokenStore(TokenStore):
    """Durable store backed by an in-memory fallback.

    Writes that fail on the durable backend are kept in memory instead,
    unless the fallback is disabled. A live memory record is always newer
    than the durable one: a successful durable write drops the memory
    copy, so reads consult memory first and then the durable backend.
    """

    def __init__(
        self,
        durable: TokenStore,
        memory: InMemoryTokenStore | None = None,
        fallback_enabled: bool = True,
    ) -> None:
        """Initialize the composed store.

        Args:
            durable: Primary durable backend
            memory: In-memory fallback (created if not provided)
            fallback_enabled: Whether failures may fall back to memory
        """
        self._durable = durable
        self._memory = memory or InMemoryTokenStore()
        self._fallback_enabled = fallback_enabled

    async def put(self, session_id: str, session: Session, ttl: int) -> None:
        try:
            await self._durable.put(session_id, session, ttl)
        except StorageError as e:
            if not self._fallback_enabled:
                raise
            logger.warning(
                "Durable store unavailable, keeping session %s in memory: %s",
                token_hint(session_id),
                e.message,
            )
        else:
            if self._fallback_enabled:
                await self._memory.delete(session_id)
            return

        await self._memory.put(session_id, session, ttl)

        # The durable copy is now stale
        try:
            await self._durable.delete(session_id)
        except StorageError as e:
            logger.warning(
                "Could not drop stale durable session %s: %s", token_hint(session_id), e.message
            )

    async def get(self, session_id: str) -> Session | None:
        if self._fallback_enabled:
            session = await self._memory.get(session_id)
            if session is not None:
                return session

        try:
            return await self._durable.get(session_id)
        except StorageError as e:
            if not self._fallback_enabled:
                raise
            logger.warning("Durable read failed: %s", e.message)
            return None

    async def delete(self, session_id: str) -> None:
        try:
            await self._durable.delete(session_id)
        except StorageError as e:
            if not self._fallback_enabled:
                raise
            logger.warning("Durable delete failed: %s", e.message)
        await self._memory.delete(session_id)

    async def find_by_request_token(self, token_key: str) -> tuple[str, Session] | None:
        if self._fallback_enabled:
            found = await self._memory.find_by_request_token(token_key)
            if found is not None:
                return found

        try:
            found = await self._durable.find_by_request_token(token_key)
        except StorageError as e:
            if not self._fallback_enabled:
                raise
            logger.warning("Durable token lookup failed: %s", e.message)
            return None
        return found

    async def set_token_mapping(self, token_key: str, session_id: str, ttl: int) -> None:
        try:
            await self._durable.set_token_mapping(token_key, session_id, ttl)
        except StorageError as e:
            logger.warning("Durable token mapping failed: %s", e.message)
        if self._fallback_enabled:
            await self._memory.set_token_mapping(token_key, session_id, ttl)

    async def close(self) -> None:
        await self._durable.close()


def create_token_store(
    redis_url: str | None = None,
    encryption_key: str | None = None,
    memory_fallback: bool = True,
) -> TokenStore:
    """Create appropriate token store based on configuration.

    Args:
        redis_url: Optional URL of a durable Redis backend
        encryption_key: Optional Fernet key for records in Redis
        memory_fallback: Whether Redis failures may fall back to memory

    Returns:
        Configured TokenStore instance
    """
    if redis_url:
        logger.info("Using redis session storage (memory fallback: %s)", memory_fallback)
        durable = RedisTokenStore.from_url(redis_url, encryption_key=encryption_key)
        return FallbackTokenStore(durable, InMemoryTokenStore(), memory_fallback)

    logger.info("Using in-memory session storage (not shared between processes)")
    return InMemoryTokenStore()
