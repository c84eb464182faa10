"""Typed views over MediaWiki action API responses.

Only the parts of the ``query`` envelope the gateway reads are modelled;
everything else is kept as extra fields and passed through untouched.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from wiki_oauth_gateway.exceptions import EditTokenError, PageNotFoundError


class ApiErrorInfo(BaseModel):
    """The ``error`` object of a failed API call."""

    model_config = ConfigDict(extra="allow")

    code: str = "unknown"
    info: str = ""


class UserInfo(BaseModel):
    """``meta=userinfo`` result."""

    model_config = ConfigDict(extra="allow")

    id: int = 0
    name: str = ""
    groups: list[str] = Field(default_factory=list)
    anon: Any = None

    @property
    def is_anonymous(self) -> bool:
        return self.anon is not None or self.id == 0


class Revision(BaseModel):
    """One entry of ``prop=revisions``."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    revid: int | None = None
    parentid: int | None = None
    legacy_content: str | None = Field(default=None, alias="*")
    slots: dict[str, dict[str, Any]] | None = None

    @property
    def content(self) -> str | None:
        """Wikitext of the revision in either legacy or slot layout."""
        if self.legacy_content is not None:
            return self.legacy_content
        main = (self.slots or {}).get("main") or {}
        value = main.get("*", main.get("content"))
        return str(value) if value is not None else None


class Page(BaseModel):
    """One page of a ``query`` result."""

    model_config = ConfigDict(extra="allow")

    pageid: int | None = None
    ns: int | None = None
    title: str = ""
    missing: Any = None
    invalid: Any = None
    revisions: list[Revision] = Field(default_factory=list)

    @property
    def exists(self) -> bool:
        """Whether this is a real page rather than a missing or invalid title."""
        return self.pageid is not None and self.missing is None and self.invalid is None


class QueryResult(BaseModel):
    """The ``query`` object."""

    model_config = ConfigDict(extra="allow")

    userinfo: UserInfo | None = None
    pages: dict[str, Page] | list[Page] | None = None
    tokens: dict[str, str] | None = None


class ApiResponse(BaseModel):
    """Top-level action API response."""

    model_config = ConfigDict(extra="allow")

    query: QueryResult | None = None
    error: ApiErrorInfo | None = None


def select_first_page(data: dict[str, Any] | ApiResponse) -> Page:
    """Pick the page with the lowest page id from a query response.

    Handles both the ``formatversion=1`` mapping keyed by page id and
    the ``formatversion=2`` list.

    Args:
        data: Raw or parsed API response

    Returns:
        The selected page

    Raises:
        PageNotFoundError: If the response holds no existing page
    """
    response = data if isinstance(data, ApiResponse) else ApiResponse.model_validate(data)
    pages = (response.query.pages if response.query else None) or []
    candidates = pages.values() if isinstance(pages, dict) else pages
    existing = [page for page in candidates if page.exists]
    if not existing:
        raise PageNotFoundError()

    return min(existing, key=lambda page: page.pageid or 0)


def csrf_token(data: dict[str, Any]) -> str:
    """Extract the CSRF token from a ``meta=tokens`` response.

    Raises:
        EditTokenError: If the response carries no token
    """
    response = ApiResponse.model_validate(data)
    tokens = response.query.tokens if response.query else None
    token = (tokens or {}).get("csrftoken")
    if not token:
        raise EditTokenError()
    return token
