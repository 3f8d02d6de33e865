"""Tests for consent timeline events."""

from __future__ import annotations

import json

import httpx
import pytest

from consentflow.crm.oauth import StaticTokenProvider
from consentflow.crm.timeline import (
    EVENT_TEMPLATES,
    HubSpotTimelineNotifier,
    NullTimelineNotifier,
    TimelineEventKind,
    notify_best_effort,
)
from consentflow.errors import ExternalServiceError, ValidationError


def _notifier(handler, app_id: str = "4242") -> tuple[HubSpotTimelineNotifier, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(base_url="https://api.hubapi.com", transport=httpx.MockTransport(record))
    return HubSpotTimelineNotifier(StaticTokenProvider("pat-1"), app_id, client=client), requests


class TestTemplates:
    def test_every_event_kind_has_a_template(self) -> None:
        assert set(EVENT_TEMPLATES) == set(TimelineEventKind)

    @pytest.mark.asyncio
    async def test_initialize_reports_created_and_existing(self) -> None:
        counter = iter(range(1, 100))

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            if body["name"] == TimelineEventKind.CONSENT_GRANTED:
                return httpx.Response(409, json={"message": "exists"})
            return httpx.Response(201, json={"id": str(next(counter))})

        notifier, requests = _notifier(handler)
        outcome = await notifier.initialize_templates()

        assert outcome["existing"] == ["consent_granted"]
        assert len(outcome["created"]) == len(TimelineEventKind) - 1
        assert requests[0].url.path == "/integrators/timeline/v3/4242/event-templates"
        assert json.loads(requests[0].content)["objectType"] == "CONTACT"

    @pytest.mark.asyncio
    async def test_rejected_template_is_skipped(self) -> None:
        notifier, _ = _notifier(lambda r: httpx.Response(400))
        outcome = await notifier.initialize_templates()
        assert outcome == {"created": [], "existing": []}

    @pytest.mark.asyncio
    async def test_app_id_is_required(self) -> None:
        notifier, requests = _notifier(lambda r: httpx.Response(201, json={"id": "1"}), app_id="")
        with pytest.raises(ValidationError):
            await notifier.initialize_templates()
        assert requests == []


class TestNotify:
    @pytest.mark.asyncio
    async def test_event_is_posted_with_template_id(self) -> None:
        notifier, requests = _notifier(lambda r: httpx.Response(201, json={"id": "evt"}))
        notifier.set_template_id(TimelineEventKind.PURGE_SCHEDULED, "tpl-9")

        await notifier.notify(TimelineEventKind.PURGE_SCHEDULED, "101", {"purge_date": "2025-07-15"})

        body = json.loads(requests[0].content)
        assert requests[0].url.path == "/crm/v3/timeline/events"
        assert requests[0].headers["Authorization"] == "Bearer pat-1"
        assert body["eventTemplateId"] == "tpl-9"
        assert body["objectId"] == "101"
        assert body["tokens"] == {"purge_date": "2025-07-15"}
        assert body["timestamp"].endswith("Z")

    @pytest.mark.asyncio
    async def test_missing_template_is_skipped(self) -> None:
        notifier, requests = _notifier(lambda r: httpx.Response(201))
        await notifier.notify(TimelineEventKind.CONSENT_GRANTED, "101", {})
        assert requests == []

    @pytest.mark.asyncio
    async def test_api_error_raises(self) -> None:
        notifier, _ = _notifier(lambda r: httpx.Response(500))
        notifier.set_template_id(TimelineEventKind.CCPA_OPTOUT, "tpl-1")
        with pytest.raises(ExternalServiceError):
            await notifier.notify(TimelineEventKind.CCPA_OPTOUT, "101", {})

    @pytest.mark.asyncio
    async def test_best_effort_swallows_failures(self) -> None:
        notifier, requests = _notifier(lambda r: httpx.Response(500))
        notifier.set_template_id(TimelineEventKind.CCPA_OPTOUT, "tpl-1")

        await notify_best_effort(notifier, TimelineEventKind.CCPA_OPTOUT, "101")

        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_best_effort_swallows_unexpected_errors(self) -> None:
        class _Exploding:
            async def notify(self, kind, contact_id, tokens) -> None:
                request = httpx.Request("POST", "https://api.hubapi.com/crm/v3/timeline/events")
                raise httpx.HTTPStatusError("boom", request=request, response=httpx.Response(500, request=request))

        assert await notify_best_effort(_Exploding(), TimelineEventKind.PURGE_SCHEDULED, "101") is None

    @pytest.mark.asyncio
    async def test_null_notifier(self) -> None:
        assert await NullTimelineNotifier().notify(TimelineEventKind.DATA_PURGED, "101", {}) is None
