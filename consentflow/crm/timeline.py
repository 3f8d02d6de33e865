"""Consent events on the CRM contact timeline.

Timeline events are informational.  Callers treat :meth:`notify` as
best-effort and log, rather than propagate, any failure it raises.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from consentflow.crm.base import TokenProvider
from consentflow.errors import ExternalServiceError, ValidationError
from consentflow.services.date_rules import format_datetime

logger = structlog.get_logger(__name__)


class TimelineEventKind(StrEnum):
    __slots__ = ()

    CONSENT_GRANTED = "consent_granted"
    CONSENT_REVOKED = "consent_revoked"
    CONSENT_RENEWED = "consent_renewed"
    CONSENT_EXPIRED = "consent_expired"
    RECONSENT_REQUESTED = "reconsent_requested"
    PURGE_SCHEDULED = "purge_scheduled"
    DATA_PURGED = "data_purged"
    CCPA_OPTOUT = "ccpa_optout"


def _token(name: str, label: str) -> dict[str, str]:
    return {"name": name, "label": label, "type": "string"}


# (header, detail, tokens) per event kind.
EVENT_TEMPLATES: dict[TimelineEventKind, tuple[str, str, list[dict[str, str]]]] = {
    TimelineEventKind.CONSENT_GRANTED: (
        "Consent Granted: {{category}}",
        "Consent was granted for {{category}} via {{source}}. Legal basis: {{legal_basis}}",
        [_token("category", "Consent Category"), _token("source", "Source"), _token("legal_basis", "Legal Basis")],
    ),
    TimelineEventKind.CONSENT_REVOKED: (
        "Consent Revoked: {{category}}",
        "Consent was revoked for {{category}} via {{source}}.",
        [_token("category", "Consent Category"), _token("source", "Source")],
    ),
    TimelineEventKind.CONSENT_RENEWED: (
        "Consent Renewed",
        "Consent was renewed. New expiry: {{expiry_date}}",
        [_token("expiry_date", "Expiry Date"), _token("categories", "Categories")],
    ),
    TimelineEventKind.CONSENT_EXPIRED: (
        "Consent Expired",
        "Consent has expired. Re-consent required.",
        [_token("original_consent_date", "Original Consent Date")],
    ),
    TimelineEventKind.RECONSENT_REQUESTED: (
        "Re-consent Request Sent",
        "Re-consent request sent. Reason: {{reason}}",
        [_token("reason", "Reason"), _token("categories", "Categories")],
    ),
    TimelineEventKind.PURGE_SCHEDULED: (
        "Data Purge Scheduled",
        "Contact data purge scheduled for {{purge_date}}. Reason: {{reason}}",
        [_token("purge_date", "Purge Date"), _token("reason", "Reason")],
    ),
    TimelineEventKind.DATA_PURGED: (
        "Data Purged",
        "Contact data has been purged. Reason: {{reason}}",
        [_token("reason", "Reason")],
    ),
    TimelineEventKind.CCPA_OPTOUT: (
        "CCPA Opt-Out",
        "Contact has exercised CCPA Do Not Sell rights",
        [],
    ),
}


@runtime_checkable
class TimelineNotifier(Protocol):
    async def notify(self, kind: TimelineEventKind, contact_id: str, tokens: dict[str, str]) -> None: ...


class NullTimelineNotifier:
    """Discards every event."""

    __slots__ = ()

    async def notify(self, kind: TimelineEventKind, contact_id: str, tokens: dict[str, str]) -> None:
        return None


class HubSpotTimelineNotifier:
    """Posts consent events through the HubSpot timeline API.

    Event templates must exist before events can be created; call
    :meth:`initialize_templates` once per app (existing templates are
    reported, not recreated).  Events for kinds without a known template
    id are skipped with a warning.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        app_id: str,
        *,
        base_url: str = "https://api.hubapi.com",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._tokens = token_provider
        self._app_id = app_id
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=15.0)
        self._template_ids: dict[TimelineEventKind, str] = {}

    async def close(self) -> None:
        await self._client.aclose()

    def set_template_id(self, kind: TimelineEventKind, template_id: str) -> None:
        self._template_ids[kind] = template_id

    async def _headers(self) -> dict[str, str]:
        token = await self._tokens.get_valid_access_token()
        return {"Authorization": f"Bearer {token}"}

    async def initialize_templates(self) -> dict[str, list[str]]:
        """Register every event template; returns created and existing names."""
        if not self._app_id:
            raise ValidationError("HUBSPOT_APP_ID", "app id is required to register timeline templates")

        headers = await self._headers()
        created: list[str] = []
        existing: list[str] = []
        for kind, (header, detail, tokens) in EVENT_TEMPLATES.items():
            body: dict[str, Any] = {
                "name": str(kind),
                "headerTemplate": header,
                "detailTemplate": detail,
                "objectType": "CONTACT",
                "tokens": tokens,
            }
            response = await self._client.post(
                f"/integrators/timeline/v3/{self._app_id}/event-templates",
                json=body,
                headers=headers,
            )
            if response.status_code == 409:
                existing.append(str(kind))
                continue
            if response.status_code >= 400:
                logger.error("timeline.template_failed", template=str(kind), status=response.status_code)
                continue
            self._template_ids[kind] = str(response.json()["id"])
            created.append(str(kind))

        logger.info("timeline.templates_initialized", created=len(created), existing=len(existing))
        return {"created": created, "existing": existing}

    async def notify(self, kind: TimelineEventKind, contact_id: str, tokens: dict[str, str]) -> None:
        template_id = self._template_ids.get(kind)
        if template_id is None:
            logger.warning("timeline.template_missing", kind=str(kind))
            return

        try:
            response = await self._client.post(
                "/crm/v3/timeline/events",
                json={
                    "eventTemplateId": template_id,
                    "objectId": contact_id,
                    "tokens": tokens,
                    "timestamp": format_datetime(datetime.now(UTC)),
                },
                headers=await self._headers(),
            )
        except httpx.TransportError as exc:
            raise ExternalServiceError(f"timeline event failed: {exc}") from exc
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"timeline API returned {response.status_code}",
                status_code=response.status_code,
            )


async def notify_best_effort(
    notifier: TimelineNotifier,
    kind: TimelineEventKind,
    contact_id: str,
    tokens: dict[str, str] | None = None,
) -> None:
    """Send a timeline event, logging instead of raising on failure."""
    try:
        await notifier.notify(kind, contact_id, tokens or {})
    except Exception:
        logger.warning("timeline.notify_failed", kind=str(kind), contact_id=contact_id, exc_info=True)
