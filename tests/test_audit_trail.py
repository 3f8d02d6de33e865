"""Tests for the append-only consent audit trail and its CRM mirror."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import orjson
import pytest
from pydantic import ValidationError as PydanticValidationError

from consentflow.crm.memory import InMemoryContactStore
from consentflow.errors import AuditMirrorFailure, ExternalServiceError
from consentflow.models.consent import AuditMetadata, AuditRecord
from consentflow.models.enums import ConsentAction, ConsentSource
from consentflow.services.audit_trail import AuditTrail, ContactPropertyAuditMirror
from consentflow.services.clock import FixedClock
from consentflow.services.contact_properties import CONSENT_AUDIT_LOG

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=UTC)


class _FailingMirror:
    def __init__(self) -> None:
        self.calls = 0

    async def append(self, record: AuditRecord) -> None:
        self.calls += 1
        raise AuditMirrorFailure("mirror unavailable")


class _BrokenUpdateStore(InMemoryContactStore):
    async def update(self, contact_id: str, properties: dict[str, str]):
        raise ExternalServiceError("CRM down", status_code=503)


class _CrashingMirror:
    async def append(self, record: AuditRecord) -> None:
        raise RuntimeError("unexpected mirror bug")


class _GarbledReadStore(InMemoryContactStore):
    async def get_by_id(self, contact_id: str, fields):
        raise ValueError("Expecting value: line 1 column 1")


async def _grant(trail: AuditTrail, contact_id: str, category: str = "marketing") -> AuditRecord:
    return await trail.record(contact_id, ConsentAction.GRANTED, category, None, True, ConsentSource.API)


# -----------------------------------------------------------------------
# Recording
# -----------------------------------------------------------------------


class TestRecord:
    @pytest.mark.asyncio
    async def test_record_is_indexed_with_clock_timestamp(self) -> None:
        trail = AuditTrail(FixedClock(NOW))
        record = await trail.record(
            "c1",
            ConsentAction.REVOKED,
            "analytics",
            True,
            False,
            ConsentSource.WEB_FORM,
            AuditMetadata(ip_address="10.0.0.1", user_agent="pytest", notes="user request"),
        )
        assert len(trail) == 1
        assert record.timestamp == NOW
        assert record.previous_value is True
        assert record.new_value is False
        assert record.ip_address == "10.0.0.1"
        assert record.notes == "user request"
        assert trail.query_by_contact("c1") == [record]

    @pytest.mark.asyncio
    async def test_record_ids_are_unique(self) -> None:
        trail = AuditTrail(FixedClock(NOW))
        ids = {(await _grant(trail, "c1")).id for _ in range(20)}
        assert len(ids) == 20

    @pytest.mark.asyncio
    async def test_records_are_immutable(self) -> None:
        trail = AuditTrail(FixedClock(NOW))
        record = await _grant(trail, "c1")
        with pytest.raises(PydanticValidationError):
            record.new_value = False  # type: ignore[misc]

    @pytest.mark.asyncio
    async def test_mirror_failure_does_not_reach_caller(self) -> None:
        mirror = _FailingMirror()
        trail = AuditTrail(FixedClock(NOW), mirror)
        record = await _grant(trail, "c1")
        assert mirror.calls == 1
        assert trail.query_by_contact("c1") == [record], "record must survive a mirror failure"

    @pytest.mark.asyncio
    async def test_unexpected_mirror_error_does_not_reach_caller(self) -> None:
        trail = AuditTrail(FixedClock(NOW), _CrashingMirror())
        record = await _grant(trail, "c1")
        assert trail.query_by_contact("c1") == [record]


# -----------------------------------------------------------------------
# Queries
# -----------------------------------------------------------------------


class TestQueries:
    @pytest.mark.asyncio
    async def test_contact_history_is_oldest_first(self) -> None:
        clock = FixedClock(NOW)
        trail = AuditTrail(clock)
        first = await _grant(trail, "c1")
        clock.advance(hours=1)
        second = await _grant(trail, "c1", "analytics")
        await _grant(trail, "c2")
        assert trail.query_by_contact("c1") == [first, second]
        assert trail.query_by_contact("missing") == []

    @pytest.mark.asyncio
    async def test_get_all_is_newest_first(self) -> None:
        clock = FixedClock(NOW)
        trail = AuditTrail(clock)
        older = await _grant(trail, "c1")
        clock.advance(minutes=5)
        newer = await _grant(trail, "c2")
        assert trail.get_all() == [newer, older]

    @pytest.mark.asyncio
    async def test_timestamp_ties_keep_insertion_order(self) -> None:
        trail = AuditTrail(FixedClock(NOW))
        a = await _grant(trail, "c1", "marketing")
        b = await _grant(trail, "c1", "analytics")
        assert trail.query_by_contact("c1") == [a, b], "ties are oldest-insertion first per contact"
        assert trail.get_all() == [b, a], "ties are latest-insertion first across contacts"

    @pytest.mark.asyncio
    async def test_date_range_is_inclusive(self) -> None:
        clock = FixedClock(NOW)
        trail = AuditTrail(clock)
        at_start = await _grant(trail, "c1")
        clock.advance(days=1)
        at_end = await _grant(trail, "c2")
        clock.advance(days=1)
        await _grant(trail, "c3")
        window = trail.query_by_date_range(NOW, NOW + timedelta(days=1))
        assert window == [at_end, at_start]

    @pytest.mark.asyncio
    async def test_query_by_action_and_recent(self) -> None:
        clock = FixedClock(NOW)
        trail = AuditTrail(clock)
        for _ in range(12):
            await _grant(trail, "c1")
            clock.advance(seconds=1)
        revoked = await trail.record("c1", ConsentAction.REVOKED, "marketing", True, False, ConsentSource.API)
        assert trail.query_by_action(ConsentAction.REVOKED) == [revoked]
        assert len(trail.recent(10)) == 10
        assert trail.recent(1) == [revoked]


# -----------------------------------------------------------------------
# Reports
# -----------------------------------------------------------------------


class TestReports:
    @pytest.mark.asyncio
    async def test_summarize(self) -> None:
        clock = FixedClock(NOW)
        trail = AuditTrail(clock)
        await _grant(trail, "c1", "marketing")
        clock.advance(hours=1)
        await trail.record("c1", ConsentAction.REVOKED, "analytics", None, False, ConsentSource.API)
        clock.advance(hours=1)
        await _grant(trail, "c1", "marketing")

        summary = trail.summarize("c1")
        assert summary.total_changes == 3
        assert summary.granted_count == 2
        assert summary.revoked_count == 1
        assert summary.last_change == NOW + timedelta(hours=2)
        assert summary.categories == ["marketing", "analytics"]

    def test_summarize_unknown_contact(self) -> None:
        summary = AuditTrail(FixedClock(NOW)).summarize("nobody")
        assert summary.total_changes == 0
        assert summary.last_change is None

    @pytest.mark.asyncio
    async def test_compliance_report_counts(self) -> None:
        clock = FixedClock(NOW)
        trail = AuditTrail(clock)
        await _grant(trail, "c1", "marketing")
        await _grant(trail, "c2", "marketing")
        await trail.record("c2", ConsentAction.REVOKED, "analytics", True, False, ConsentSource.WEB_FORM)
        clock.advance(days=40)
        await _grant(trail, "c3", "analytics")

        report = trail.compliance_report(NOW - timedelta(days=1), NOW + timedelta(days=1))
        assert report.total_consent_changes == 3
        assert report.consents_by_action == {"granted": 2, "revoked": 1}
        assert report.consents_by_source == {"api": 2, "web_form": 1}
        assert report.consents_by_category == {"marketing": 2, "analytics": 1}
        assert report.generated_at == NOW + timedelta(days=40)

    @pytest.mark.asyncio
    async def test_export_json(self) -> None:
        trail = AuditTrail(FixedClock(NOW))
        await _grant(trail, "c1")
        await _grant(trail, "c2")
        exported = orjson.loads(trail.export_json())
        assert [entry["contact_id"] for entry in exported] == ["c2", "c1"]
        only_c1 = orjson.loads(trail.export_json("c1"))
        assert len(only_c1) == 1
        assert only_c1[0]["action"] == "granted"
        assert only_c1[0]["timestamp"].startswith("2025-06-15T12:00:00")


# -----------------------------------------------------------------------
# Contact-property mirror
# -----------------------------------------------------------------------


class TestContactPropertyAuditMirror:
    @pytest.mark.asyncio
    async def test_mirror_appends_json_to_contact(self) -> None:
        store = InMemoryContactStore()
        store.add("c1", email="ada@example.com")
        trail = AuditTrail(FixedClock(NOW), ContactPropertyAuditMirror(store))
        first = await _grant(trail, "c1")
        second = await _grant(trail, "c1", "analytics")

        blob = orjson.loads(store.peek("c1").prop(CONSENT_AUDIT_LOG))
        assert [entry["id"] for entry in blob] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_mirror_keeps_most_recent_records(self) -> None:
        store = InMemoryContactStore()
        store.add("c1")
        trail = AuditTrail(FixedClock(NOW), ContactPropertyAuditMirror(store, max_records=2))
        records = [await _grant(trail, "c1") for _ in range(3)]

        blob = orjson.loads(store.peek("c1").prop(CONSENT_AUDIT_LOG))
        assert [entry["id"] for entry in blob] == [records[1].id, records[2].id]
        assert len(trail.query_by_contact("c1")) == 3, "the index is never truncated"

    @pytest.mark.asyncio
    async def test_corrupt_blob_is_replaced(self) -> None:
        store = InMemoryContactStore()
        store.add("c1", **{CONSENT_AUDIT_LOG: "{not json"})
        trail = AuditTrail(FixedClock(NOW), ContactPropertyAuditMirror(store))
        record = await _grant(trail, "c1")
        blob = orjson.loads(store.peek("c1").prop(CONSENT_AUDIT_LOG))
        assert [entry["id"] for entry in blob] == [record.id]

    @pytest.mark.asyncio
    async def test_store_errors_become_mirror_failures(self) -> None:
        store = _BrokenUpdateStore()
        store.add("c1")
        mirror = ContactPropertyAuditMirror(store)
        record = AuditRecord(
            contact_id="c1",
            action=ConsentAction.GRANTED,
            category="marketing",
            new_value=True,
            source=ConsentSource.API,
        )
        with pytest.raises(AuditMirrorFailure):
            await mirror.append(record)

    @pytest.mark.asyncio
    async def test_non_domain_errors_become_mirror_failures(self) -> None:
        store = _GarbledReadStore()
        store.add("c1")
        mirror = ContactPropertyAuditMirror(store)
        record = AuditRecord(
            contact_id="c1",
            action=ConsentAction.GRANTED,
            category="marketing",
            new_value=True,
            source=ConsentSource.API,
        )
        with pytest.raises(AuditMirrorFailure):
            await mirror.append(record)

    @pytest.mark.asyncio
    async def test_missing_contact_is_logged_not_raised(self) -> None:
        trail = AuditTrail(FixedClock(NOW), ContactPropertyAuditMirror(InMemoryContactStore()))
        record = await _grant(trail, "ghost")
        assert trail.query_by_contact("ghost") == [record]
