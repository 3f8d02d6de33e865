"""Tests for the HubSpot contact store against a mocked HTTP transport."""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from consentflow.crm.base import BATCH_LIMIT
from consentflow.crm.hubspot import HubSpotContactStore
from consentflow.crm.oauth import StaticTokenProvider
from consentflow.errors import ExternalServiceError, NotAuthenticated, NotFound, ValidationError
from consentflow.models.contact import BatchUpdateInput, ContactFilter, FilterOperator

Handler = Callable[[httpx.Request], httpx.Response]


class _Recorder:
    """Wraps a handler and keeps every request it saw."""

    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


def _store(handler: Handler, token: str = "pat-123") -> tuple[HubSpotContactStore, _Recorder]:
    recorder = _Recorder(handler)
    client = httpx.AsyncClient(base_url="https://api.hubapi.com", transport=httpx.MockTransport(recorder))
    return HubSpotContactStore(StaticTokenProvider(token), client=client), recorder


def _contact(contact_id: str, **properties: str) -> dict:
    return {"id": contact_id, "properties": properties, "archived": False}


# -----------------------------------------------------------------------
# Reads
# -----------------------------------------------------------------------


class TestReads:
    @pytest.mark.asyncio
    async def test_get_by_id_sends_bearer_token_and_fields(self) -> None:
        store, recorder = _store(lambda r: httpx.Response(200, json=_contact("101", email="a@example.com")))

        contact = await store.get_by_id("101", ["email", "gdpr_consent_status"])

        assert contact.id == "101"
        assert contact.prop("email") == "a@example.com"
        request = recorder.requests[0]
        assert request.headers["Authorization"] == "Bearer pat-123"
        assert request.url.path == "/crm/v3/objects/contacts/101"
        assert request.url.params["properties"] == "email,gdpr_consent_status"

    @pytest.mark.asyncio
    async def test_404_maps_to_not_found(self) -> None:
        store, _ = _store(lambda r: httpx.Response(404, json={"message": "not found"}))
        with pytest.raises(NotFound):
            await store.get_by_id("missing", ["email"])

    @pytest.mark.asyncio
    async def test_non_json_body_is_an_external_failure(self) -> None:
        store, recorder = _store(lambda r: httpx.Response(200, text="<html>maintenance</html>"))
        with pytest.raises(ExternalServiceError) as excinfo:
            await store.get_by_id("101", ["email"])
        assert excinfo.value.status_code == 200
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_401_maps_to_not_authenticated(self) -> None:
        store, recorder = _store(lambda r: httpx.Response(401))
        with pytest.raises(NotAuthenticated):
            await store.get_by_id("101", ["email"])
        assert len(recorder.requests) == 1, "authentication failures are not retried"

    @pytest.mark.asyncio
    async def test_missing_token_fails_before_any_request(self) -> None:
        store, recorder = _store(lambda r: httpx.Response(200, json=_contact("101")), token="")
        with pytest.raises(NotAuthenticated):
            await store.get_by_id("101", ["email"])
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_transient_status_is_retried(self) -> None:
        responses = iter([httpx.Response(503), httpx.Response(200, json=_contact("101"))])
        store, recorder = _store(lambda r: next(responses))

        contact = await store.get_by_id("101", ["email"])

        assert contact.id == "101"
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_retries_give_up_after_three_attempts(self) -> None:
        store, recorder = _store(lambda r: httpx.Response(500))
        with pytest.raises(ExternalServiceError) as excinfo:
            await store.get_by_id("101", ["email"])
        assert excinfo.value.status_code == 500
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_paginate_all_follows_cursors(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("after") == "2":
                return httpx.Response(200, json={"results": [_contact("3")]})
            return httpx.Response(
                200,
                json={"results": [_contact("1"), _contact("2")], "paging": {"next": {"after": "2"}}},
            )

        store, recorder = _store(handler)

        ids = [c.id async for c in store.paginate_all(["email"], page_size=2)]

        assert ids == ["1", "2", "3"]
        assert [r.url.params.get("limit") for r in recorder.requests] == ["2", "2"]

    @pytest.mark.asyncio
    async def test_search_body(self) -> None:
        store, recorder = _store(lambda r: httpx.Response(200, json={"results": [_contact("7")], "total": 1}))

        page = await store.search(
            [ContactFilter(property_name="scheduled_purge_date", operator=FilterOperator.HAS_PROPERTY)],
            ["scheduled_purge_date"],
            limit=500,
        )

        assert page.total == 1
        body = json.loads(recorder.requests[0].content)
        assert body["filterGroups"] == [
            {"filters": [{"propertyName": "scheduled_purge_date", "operator": "HAS_PROPERTY"}]}
        ]
        assert body["limit"] == 100
        assert "after" not in body

    @pytest.mark.asyncio
    async def test_get_by_email_normalises_and_returns_none(self) -> None:
        store, recorder = _store(lambda r: httpx.Response(200, json={"results": []}))

        assert await store.get_by_email(" Ada@Example.com ", ["email"]) is None
        body = json.loads(recorder.requests[0].content)
        assert body["filterGroups"][0]["filters"][0]["value"] == "ada@example.com"
        assert body["limit"] == 1


# -----------------------------------------------------------------------
# Writes
# -----------------------------------------------------------------------


class TestWrites:
    @pytest.mark.asyncio
    async def test_update_patches_properties(self) -> None:
        store, recorder = _store(lambda r: httpx.Response(200, json=_contact("101", reconsent_required="yes")))

        contact = await store.update("101", {"reconsent_required": "yes"})

        assert contact.prop("reconsent_required") == "yes"
        request = recorder.requests[0]
        assert request.method == "PATCH"
        assert json.loads(request.content) == {"properties": {"reconsent_required": "yes"}}

    @pytest.mark.asyncio
    async def test_writes_are_not_retried(self) -> None:
        store, recorder = _store(lambda r: httpx.Response(503))
        with pytest.raises(ExternalServiceError):
            await store.update("101", {"email": "a@example.com"})
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_batch_update_limit(self) -> None:
        store, recorder = _store(lambda r: httpx.Response(200, json={"status": "COMPLETE"}))
        inputs = [BatchUpdateInput(id=str(i), properties={"reconsent_required": "yes"}) for i in range(BATCH_LIMIT + 1)]

        with pytest.raises(ValidationError):
            await store.batch_update(inputs)
        assert recorder.requests == []

        await store.batch_update(inputs[:BATCH_LIMIT])
        body = json.loads(recorder.requests[0].content)
        assert len(body["inputs"]) == BATCH_LIMIT
        assert body["inputs"][0] == {"id": "0", "properties": {"reconsent_required": "yes"}}

    @pytest.mark.asyncio
    async def test_empty_batch_sends_nothing(self) -> None:
        store, recorder = _store(lambda r: httpx.Response(200))
        await store.batch_update([])
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_archive_missing_contact(self) -> None:
        store, recorder = _store(lambda r: httpx.Response(404))
        with pytest.raises(NotFound):
            await store.archive("101")
        assert recorder.requests[0].method == "DELETE"

    @pytest.mark.asyncio
    async def test_archive_returns_on_204(self) -> None:
        store, _ = _store(lambda r: httpx.Response(204))
        await store.archive("101")

    @pytest.mark.asyncio
    async def test_property_conflicts_are_ignored(self) -> None:
        store, recorder = _store(lambda r: httpx.Response(409, json={"message": "exists"}))

        await store.create_property_group("gdpr_ccpa_consent", "GDPR/CCPA Consent")
        await store.create_property({"name": "gdpr_consent_status"})

        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_list_property_names(self) -> None:
        payload = {"results": [{"name": "email"}, {"name": "gdpr_consent_status"}]}
        store, _ = _store(lambda r: httpx.Response(200, json=payload))
        assert await store.list_property_names() == {"email", "gdpr_consent_status"}
