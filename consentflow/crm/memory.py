"""Process-local :class:`ContactStore` for development and tests.

Behaves like the HubSpot contacts API where it matters to the lifecycle
core: cursor pagination, empty-string updates clear a property, archived
contacts disappear from listings and lookups, and batch updates are
capped at :data:`BATCH_LIMIT` inputs.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable, Sequence
from typing import Any

import structlog

from consentflow.crm.base import BATCH_LIMIT, DEFAULT_PAGE_SIZE, iterate_pages
from consentflow.errors import NotFound, ValidationError
from consentflow.models.contact import (
    BatchUpdateInput,
    Contact,
    ContactFilter,
    ContactPage,
    FilterOperator,
)
from consentflow.services.date_rules import parse_datetime

logger = structlog.get_logger(__name__)


def _compare(actual: str, expected: str) -> int:
    """Three-way compare, preferring date then numeric then text semantics."""
    actual_dt, expected_dt = parse_datetime(actual), parse_datetime(expected)
    if actual_dt is not None and expected_dt is not None:
        return (actual_dt > expected_dt) - (actual_dt < expected_dt)
    try:
        a, b = float(actual), float(expected)
    except ValueError:
        return (actual > expected) - (actual < expected)
    return (a > b) - (a < b)


def _matches(contact: Contact, flt: ContactFilter) -> bool:
    actual = contact.prop(flt.property_name)
    expected = flt.value or ""
    match flt.operator:
        case FilterOperator.HAS_PROPERTY:
            return actual != ""
        case FilterOperator.NOT_HAS_PROPERTY:
            return actual == ""
        case FilterOperator.EQ:
            return actual == expected
        case FilterOperator.NEQ:
            return actual != expected
    if actual == "":
        return False
    order = _compare(actual, expected)
    match flt.operator:
        case FilterOperator.LT:
            return order < 0
        case FilterOperator.LTE:
            return order <= 0
        case FilterOperator.GT:
            return order > 0
        case FilterOperator.GTE:
            return order >= 0
    raise ValueError(f"unsupported operator {flt.operator}")


class InMemoryContactStore:
    """Dictionary-backed contact store.

    Parameters
    ----------
    contacts:
        Optional initial population.
    """

    def __init__(self, contacts: Iterable[Contact] = ()) -> None:
        self._contacts: dict[str, Contact] = {}
        self._archived: dict[str, Contact] = {}
        self._property_names: set[str] = {"email", "firstname", "lastname"}
        self._property_groups: set[str] = set()
        self._lock = asyncio.Lock()
        for contact in contacts:
            self._contacts[contact.id] = contact

    # -- Test / seeding helpers ------------------------------------------------

    def add(self, contact_id: str, **properties: str | None) -> Contact:
        contact = Contact(id=contact_id, properties=dict(properties))
        self._contacts[contact_id] = contact
        return contact

    def peek(self, contact_id: str) -> Contact | None:
        """Return a contact without any I/O semantics (archived included)."""
        return self._contacts.get(contact_id) or self._archived.get(contact_id)

    @property
    def archived_ids(self) -> set[str]:
        return set(self._archived)

    def __len__(self) -> int:
        return len(self._contacts)

    # -- Internal --------------------------------------------------------------

    def _require(self, contact_id: str) -> Contact:
        contact = self._contacts.get(contact_id)
        if contact is None:
            raise NotFound("contact", contact_id)
        return contact

    @staticmethod
    def _project(contact: Contact, fields: Sequence[str]) -> Contact:
        if not fields:
            return contact.model_copy(deep=True)
        return Contact(
            id=contact.id,
            properties={name: contact.properties.get(name) for name in fields},
            archived=contact.archived,
        )

    @staticmethod
    def _slice(contacts: list[Contact], limit: int, after: str | None) -> ContactPage:
        start = int(after) if after else 0
        window = contacts[start : start + limit]
        end = start + len(window)
        return ContactPage(
            results=window,
            next_cursor=str(end) if end < len(contacts) else None,
            total=len(contacts),
        )

    # -- ContactStore interface -----------------------------------------------

    async def get_by_id(self, contact_id: str, fields: Sequence[str]) -> Contact:
        return self._project(self._require(contact_id), fields)

    async def get_by_email(self, email: str, fields: Sequence[str]) -> Contact | None:
        wanted = email.strip().lower()
        for contact in self._contacts.values():
            if contact.prop("email").lower() == wanted:
                return self._project(contact, fields)
        return None

    async def search(
        self,
        filters: Sequence[ContactFilter],
        fields: Sequence[str],
        limit: int = DEFAULT_PAGE_SIZE,
        after: str | None = None,
    ) -> ContactPage:
        matched = [
            self._project(contact, fields)
            for contact in self._contacts.values()
            if all(_matches(contact, flt) for flt in filters)
        ]
        return self._slice(matched, limit, after)

    async def get_page(
        self,
        fields: Sequence[str],
        limit: int = DEFAULT_PAGE_SIZE,
        after: str | None = None,
    ) -> ContactPage:
        contacts = [self._project(c, fields) for c in self._contacts.values()]
        return self._slice(contacts, limit, after)

    async def update(self, contact_id: str, properties: dict[str, str]) -> Contact:
        async with self._lock:
            current = self._require(contact_id)
            merged = {**current.properties, **properties}
            updated = current.model_copy(update={"properties": merged})
            self._contacts[contact_id] = updated
            return updated.model_copy(deep=True)

    async def batch_update(self, inputs: Sequence[BatchUpdateInput]) -> None:
        if len(inputs) > BATCH_LIMIT:
            raise ValidationError("inputs", f"batch update accepts at most {BATCH_LIMIT} inputs")
        for item in inputs:
            self._require(item.id)
        for item in inputs:
            await self.update(item.id, item.properties)

    async def archive(self, contact_id: str) -> None:
        async with self._lock:
            contact = self._require(contact_id)
            del self._contacts[contact_id]
            self._archived[contact_id] = contact.model_copy(update={"archived": True})
        logger.debug("memory_store.archived", contact_id=contact_id)

    def paginate_all(self, fields: Sequence[str], page_size: int = DEFAULT_PAGE_SIZE) -> AsyncIterator[Contact]:
        async def fetch(cursor: str | None) -> ContactPage:
            return await self.get_page(fields, limit=page_size, after=cursor)

        return iterate_pages(fetch)

    async def list_property_names(self) -> set[str]:
        return set(self._property_names)

    async def create_property_group(self, name: str, label: str) -> None:
        self._property_groups.add(name)

    async def create_property(self, definition: dict[str, Any]) -> None:
        self._property_names.add(definition["name"])
