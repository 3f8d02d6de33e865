"""Collaborator contracts for the CRM and its credentials.

The lifecycle core depends only on these protocols; concrete adapters
live alongside (:mod:`.hubspot`, :mod:`.memory`, :mod:`.oauth`).
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any, Final, Protocol, runtime_checkable

from consentflow.models.contact import BatchUpdateInput, Contact, ContactFilter, ContactPage

# Maximum inputs per batch call accepted by the CRM.
BATCH_LIMIT: Final[int] = 100
DEFAULT_PAGE_SIZE: Final[int] = 100


@runtime_checkable
class ContactStore(Protocol):
    """Async access to CRM contacts.

    Implementations raise :class:`~consentflow.errors.NotFound` for
    missing contacts, :class:`~consentflow.errors.NotAuthenticated` when
    credentials are absent or rejected, and
    :class:`~consentflow.errors.ExternalServiceError` for anything else.
    """

    async def get_by_id(self, contact_id: str, fields: Sequence[str]) -> Contact: ...

    async def get_by_email(self, email: str, fields: Sequence[str]) -> Contact | None: ...

    async def search(
        self,
        filters: Sequence[ContactFilter],
        fields: Sequence[str],
        limit: int = DEFAULT_PAGE_SIZE,
        after: str | None = None,
    ) -> ContactPage: ...

    async def get_page(
        self,
        fields: Sequence[str],
        limit: int = DEFAULT_PAGE_SIZE,
        after: str | None = None,
    ) -> ContactPage: ...

    async def update(self, contact_id: str, properties: dict[str, str]) -> Contact: ...

    async def batch_update(self, inputs: Sequence[BatchUpdateInput]) -> None: ...

    async def archive(self, contact_id: str) -> None: ...

    def paginate_all(self, fields: Sequence[str], page_size: int = DEFAULT_PAGE_SIZE) -> AsyncIterator[Contact]: ...

    async def list_property_names(self) -> set[str]: ...

    async def create_property_group(self, name: str, label: str) -> None: ...

    async def create_property(self, definition: dict[str, Any]) -> None: ...


@runtime_checkable
class TokenProvider(Protocol):
    async def get_valid_access_token(self) -> str: ...


PageFetcher = Callable[[str | None], Awaitable[ContactPage]]


async def iterate_pages(fetch_page: PageFetcher) -> AsyncIterator[Contact]:
    """Walk a cursor-paginated listing until no next cursor is returned.

    Restartable in the sense that each page is fetched by cursor; a failure
    propagates out of the iterator and stops the walk.
    """
    cursor: str | None = None
    while True:
        page = await fetch_page(cursor)
        for contact in page.results:
            yield contact
        if not page.next_cursor:
            return
        cursor = page.next_cursor


async def iterate_search(
    store: ContactStore,
    filters: Sequence[ContactFilter],
    fields: Sequence[str],
    page_size: int = DEFAULT_PAGE_SIZE,
) -> list[Contact]:
    """Collect every contact matching *filters* across all search pages."""

    async def fetch(cursor: str | None) -> ContactPage:
        return await store.search(filters, fields, limit=page_size, after=cursor)

    return [contact async for contact in iterate_pages(fetch)]


def chunked(items: Sequence[BatchUpdateInput], size: int = BATCH_LIMIT) -> list[list[BatchUpdateInput]]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]
