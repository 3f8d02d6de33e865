"""CRM-side contact representation.

These models mirror what a CRM returns for a contact object: an id, a
flat map of string-valued properties, and paging cursors.  They carry no
consent semantics; see :mod:`consentflow.services.contact_properties` for
the mapping onto :class:`~consentflow.models.consent.ConsentSnapshot`.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class Contact(BaseModel):
    id: str
    properties: dict[str, str | None] = Field(default_factory=dict)
    archived: bool = False

    def prop(self, name: str) -> str:
        """Return a property value, treating missing and null as ``""``."""
        return self.properties.get(name) or ""


class FilterOperator(StrEnum):
    __slots__ = ()

    EQ = "EQ"
    NEQ = "NEQ"
    LT = "LT"
    LTE = "LTE"
    GT = "GT"
    GTE = "GTE"
    HAS_PROPERTY = "HAS_PROPERTY"
    NOT_HAS_PROPERTY = "NOT_HAS_PROPERTY"


class ContactFilter(BaseModel):
    """A single property predicate; a search ANDs a list of these."""

    property_name: str
    operator: FilterOperator
    value: str | None = None


class ContactPage(BaseModel):
    results: list[Contact] = Field(default_factory=list)
    next_cursor: str | None = None
    total: int | None = None


class BatchUpdateInput(BaseModel):
    id: str
    properties: dict[str, str]
