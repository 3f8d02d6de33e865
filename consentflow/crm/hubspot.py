"""HubSpot CRM v3 adapter for :class:`~consentflow.crm.base.ContactStore`.

Reads (lookups, searches, listings) are retried with exponential backoff
on transport errors, ``429`` and ``5xx`` responses.  Writes are issued
once; a failed write surfaces as :class:`ExternalServiceError` and the
caller decides whether the contact counts as failed.

API reference: https://developers.hubspot.com/docs/api/crm/contacts
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from consentflow.crm.base import BATCH_LIMIT, DEFAULT_PAGE_SIZE, TokenProvider, iterate_pages
from consentflow.errors import ExternalServiceError, NotAuthenticated, NotFound, ValidationError
from consentflow.models.contact import BatchUpdateInput, Contact, ContactFilter, ContactPage, FilterOperator

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_CONTACTS = "/crm/v3/objects/contacts"
_PROPERTIES = "/crm/v3/properties/contacts"
_PROPERTY_GROUPS = "/crm/v3/properties/contacts/groups"


class _TransientError(ExternalServiceError):
    """A failure worth retrying: transport error, 429 or 5xx."""


_read_retry = retry(
    retry=retry_if_exception_type(_TransientError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    reraise=True,
)


def _to_contact(payload: dict[str, Any]) -> Contact:
    return Contact(
        id=str(payload["id"]),
        properties=payload.get("properties") or {},
        archived=bool(payload.get("archived", False)),
    )


def _to_page(payload: dict[str, Any]) -> ContactPage:
    next_cursor = ((payload.get("paging") or {}).get("next") or {}).get("after")
    return ContactPage(
        results=[_to_contact(item) for item in payload.get("results", [])],
        next_cursor=next_cursor,
        total=payload.get("total"),
    )


# ---------------------------------------------------------------------------
# HubSpotContactStore
# ---------------------------------------------------------------------------


class HubSpotContactStore:
    """Contact store backed by the HubSpot CRM REST API.

    Parameters
    ----------
    token_provider:
        Supplies a bearer token per request (OAuth or private-app token).
    base_url:
        API host, ``https://api.hubapi.com`` in production.
    client:
        Optional pre-built :class:`httpx.AsyncClient`; tests pass one
        wired to :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str = "https://api.hubapi.com",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._tokens = token_provider
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=30.0,
            headers={"Accept": "application/json"},
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        not_found: tuple[str, str] | None = None,
        ignore_conflict: bool = False,
    ) -> Any:
        token = await self._tokens.get_valid_access_token()
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as exc:
            logger.warning("hubspot.transport_error", method=method, path=path, error=str(exc))
            raise _TransientError(f"HubSpot request failed: {exc}") from exc

        status = response.status_code
        if status == 401:
            raise NotAuthenticated("HubSpot rejected the access token")
        if status == 404 and not_found is not None:
            raise NotFound(*not_found)
        if status == 409 and ignore_conflict:
            return None
        if status == 429 or status >= 500:
            logger.warning("hubspot.transient_status", method=method, path=path, status=status)
            raise _TransientError(f"HubSpot returned {status}", status_code=status)
        if status >= 400:
            logger.error("hubspot.request_rejected", method=method, path=path, status=status, body=response.text[:500])
            raise ExternalServiceError(f"HubSpot returned {status} for {method} {path}", status_code=status)

        if status == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            logger.error("hubspot.invalid_json", method=method, path=path, status=status)
            raise ExternalServiceError(
                f"HubSpot returned a non-JSON body for {method} {path}",
                status_code=status,
            ) from exc

    @_read_retry
    async def _read(self, method: str, path: str, **kwargs: Any) -> Any:
        return await self._send(method, path, **kwargs)

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def get_by_id(self, contact_id: str, fields: Sequence[str]) -> Contact:
        payload = await self._read(
            "GET",
            f"{_CONTACTS}/{contact_id}",
            params={"properties": ",".join(fields)} if fields else None,
            not_found=("contact", contact_id),
        )
        return _to_contact(payload)

    async def get_by_email(self, email: str, fields: Sequence[str]) -> Contact | None:
        page = await self.search(
            [ContactFilter(property_name="email", operator=FilterOperator.EQ, value=email.strip().lower())],
            fields,
            limit=1,
        )
        return page.results[0] if page.results else None

    async def search(
        self,
        filters: Sequence[ContactFilter],
        fields: Sequence[str],
        limit: int = DEFAULT_PAGE_SIZE,
        after: str | None = None,
    ) -> ContactPage:
        hs_filters = []
        for flt in filters:
            entry: dict[str, Any] = {"propertyName": flt.property_name, "operator": str(flt.operator)}
            if flt.value is not None:
                entry["value"] = flt.value
            hs_filters.append(entry)
        body: dict[str, Any] = {
            "filterGroups": [{"filters": hs_filters}] if hs_filters else [],
            "properties": list(fields),
            "limit": min(limit, DEFAULT_PAGE_SIZE),
        }
        if after:
            body["after"] = after
        return _to_page(await self._read("POST", f"{_CONTACTS}/search", json=body))

    async def get_page(
        self,
        fields: Sequence[str],
        limit: int = DEFAULT_PAGE_SIZE,
        after: str | None = None,
    ) -> ContactPage:
        params: dict[str, Any] = {"limit": min(limit, DEFAULT_PAGE_SIZE)}
        if fields:
            params["properties"] = ",".join(fields)
        if after:
            params["after"] = after
        return _to_page(await self._read("GET", _CONTACTS, params=params))

    def paginate_all(self, fields: Sequence[str], page_size: int = DEFAULT_PAGE_SIZE) -> AsyncIterator[Contact]:
        async def fetch(cursor: str | None) -> ContactPage:
            return await self.get_page(fields, limit=page_size, after=cursor)

        return iterate_pages(fetch)

    async def update(self, contact_id: str, properties: dict[str, str]) -> Contact:
        payload = await self._send(
            "PATCH",
            f"{_CONTACTS}/{contact_id}",
            json={"properties": properties},
            not_found=("contact", contact_id),
        )
        return _to_contact(payload)

    async def batch_update(self, inputs: Sequence[BatchUpdateInput]) -> None:
        if len(inputs) > BATCH_LIMIT:
            raise ValidationError("inputs", f"batch update accepts at most {BATCH_LIMIT} inputs")
        if not inputs:
            return
        await self._send(
            "POST",
            f"{_CONTACTS}/batch/update",
            json={"inputs": [item.model_dump() for item in inputs]},
        )
        logger.debug("hubspot.batch_updated", count=len(inputs))

    async def archive(self, contact_id: str) -> None:
        await self._send("DELETE", f"{_CONTACTS}/{contact_id}", not_found=("contact", contact_id))
        logger.info("hubspot.contact_archived", contact_id=contact_id)

    # ------------------------------------------------------------------
    # Property schema
    # ------------------------------------------------------------------

    async def list_property_names(self) -> set[str]:
        payload = await self._read("GET", _PROPERTIES)
        return {item["name"] for item in (payload or {}).get("results", [])}

    async def create_property_group(self, name: str, label: str) -> None:
        await self._send(
            "POST",
            _PROPERTY_GROUPS,
            json={"name": name, "label": label, "displayOrder": -1},
            ignore_conflict=True,
        )

    async def create_property(self, definition: dict[str, Any]) -> None:
        await self._send("POST", _PROPERTIES, json=definition, ignore_conflict=True)
        logger.info("hubspot.property_created", name=definition.get("name"))
