"""Append-only consent audit trail.

Every consent-state change (grant, revoke, expiry detection, purge) is
recorded here as an immutable :class:`AuditRecord`.  The in-process index
is the source of truth for every query.  Each new record is additionally
copied to an :class:`AuditMirror`; the default mirror keeps the most
recent records as a JSON blob on the contact's ``consent_audit_log``
property so the history travels with the CRM record.

The mirror is a read-modify-write of that blob with no compare-and-swap,
so two processes appending to the same contact can lose each other's
entries.  Mirror failures are logged and never reach the caller.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Final, Protocol, runtime_checkable

import orjson
import structlog

from consentflow.crm.base import ContactStore
from consentflow.errors import AuditMirrorFailure
from consentflow.models.consent import AuditMetadata, AuditRecord
from consentflow.models.enums import ConsentAction, ConsentSource
from consentflow.models.results import AuditComplianceReport, AuditSummary
from consentflow.services.clock import Clock
from consentflow.services.contact_properties import CONSENT_AUDIT_LOG

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Keeps the mirrored blob under the CRM's property size limit.
DEFAULT_MIRROR_RECORDS: Final[int] = 100


# ---------------------------------------------------------------------------
# Mirrors
# ---------------------------------------------------------------------------


@runtime_checkable
class AuditMirror(Protocol):
    async def append(self, record: AuditRecord) -> None:
        """Copy *record* to external storage; raise AuditMirrorFailure on error."""
        ...


class NullAuditMirror:
    __slots__ = ()

    async def append(self, record: AuditRecord) -> None:
        return None


class ContactPropertyAuditMirror:
    """Keeps the last *max_records* audit records on the contact itself.

    Parameters
    ----------
    store:
        Contact store used to read and rewrite the audit-log property.
    max_records:
        Cap on mirrored records per contact; the oldest are dropped first.
    """

    __slots__ = ("_max_records", "_store")

    def __init__(self, store: ContactStore, max_records: int = DEFAULT_MIRROR_RECORDS) -> None:
        self._store = store
        self._max_records = max_records

    @staticmethod
    def _decode(blob: str) -> list[dict]:
        if not blob:
            return []
        try:
            existing = orjson.loads(blob)
        except orjson.JSONDecodeError:
            logger.warning("audit.mirror_blob_corrupt", length=len(blob))
            return []
        return existing if isinstance(existing, list) else []

    async def append(self, record: AuditRecord) -> None:
        try:
            contact = await self._store.get_by_id(record.contact_id, [CONSENT_AUDIT_LOG])
            log = self._decode(contact.prop(CONSENT_AUDIT_LOG))
            log.append(record.model_dump(mode="json"))
            log = log[-self._max_records :]
            await self._store.update(
                record.contact_id,
                {CONSENT_AUDIT_LOG: orjson.dumps(log).decode()},
            )
        except Exception as exc:
            raise AuditMirrorFailure(f"audit mirror write failed for {record.contact_id}: {exc}") from exc


# ---------------------------------------------------------------------------
# AuditTrail
# ---------------------------------------------------------------------------


class AuditTrail:
    """In-process, append-only index of consent audit records.

    Parameters
    ----------
    clock:
        Source of record timestamps.
    mirror:
        Best-effort external copy; defaults to :class:`NullAuditMirror`.
    """

    __slots__ = ("_by_contact", "_clock", "_mirror", "_records")

    def __init__(self, clock: Clock, mirror: AuditMirror | None = None) -> None:
        self._clock = clock
        self._mirror = mirror if mirror is not None else NullAuditMirror()
        # Insertion order is preserved in both structures; queries sort
        # stably so timestamp ties keep that order.
        self._records: list[AuditRecord] = []
        self._by_contact: dict[str, list[AuditRecord]] = {}

    def __len__(self) -> int:
        return len(self._records)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def record(
        self,
        contact_id: str,
        action: ConsentAction,
        category: str,
        previous_value: bool | None,
        new_value: bool,
        source: ConsentSource,
        metadata: AuditMetadata | None = None,
    ) -> AuditRecord:
        """Append a new audit record and mirror it.

        The record is in the index before the mirror is attempted, so a
        mirror failure cannot lose it.
        """
        meta = metadata or AuditMetadata()
        entry = AuditRecord(
            contact_id=contact_id,
            action=action,
            category=category,
            previous_value=previous_value,
            new_value=new_value,
            source=source,
            timestamp=self._clock.now(),
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            notes=meta.notes,
        )
        self._records.append(entry)
        self._by_contact.setdefault(contact_id, []).append(entry)

        logger.info(
            "audit.recorded",
            audit_id=entry.id,
            contact_id=contact_id,
            action=str(action),
            category=category,
        )

        try:
            await self._mirror.append(entry)
        except Exception:
            logger.warning("audit.mirror_failed", audit_id=entry.id, contact_id=contact_id, exc_info=True)

        return entry

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query_by_contact(self, contact_id: str) -> list[AuditRecord]:
        """History of one contact, oldest first."""
        return sorted(self._by_contact.get(contact_id, []), key=lambda r: r.timestamp)

    def get_all(self) -> list[AuditRecord]:
        """Every record, newest first; ties put the later insertion first."""
        return sorted(reversed(self._records), key=lambda r: r.timestamp, reverse=True)

    def query_by_action(self, action: ConsentAction) -> list[AuditRecord]:
        return [r for r in self.get_all() if r.action == action]

    def query_by_date_range(self, start: datetime, end: datetime) -> list[AuditRecord]:
        """Records with ``start <= timestamp <= end``, newest first."""
        return [r for r in self.get_all() if start <= r.timestamp <= end]

    def recent(self, limit: int = 10) -> list[AuditRecord]:
        return self.get_all()[:limit]

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def summarize(self, contact_id: str) -> AuditSummary:
        history = self.query_by_contact(contact_id)
        return AuditSummary(
            total_changes=len(history),
            last_change=history[-1].timestamp if history else None,
            granted_count=sum(1 for r in history if r.action == ConsentAction.GRANTED),
            revoked_count=sum(1 for r in history if r.action == ConsentAction.REVOKED),
            categories=list(dict.fromkeys(r.category for r in history)),
        )

    def compliance_report(self, start: datetime, end: datetime) -> AuditComplianceReport:
        """Counts of consent changes by action, source and category in a window."""
        window = self.query_by_date_range(start, end)
        return AuditComplianceReport(
            period_start=start,
            period_end=end,
            generated_at=self._clock.now(),
            total_consent_changes=len(window),
            consents_by_action=dict(Counter(str(r.action) for r in window)),
            consents_by_source=dict(Counter(str(r.source) for r in window)),
            consents_by_category=dict(Counter(r.category for r in window)),
        )

    def export_json(self, contact_id: str | None = None) -> str:
        """Serialise one contact's history (oldest first) or every record (newest first)."""
        records = self.query_by_contact(contact_id) if contact_id else self.get_all()
        return orjson.dumps(
            [r.model_dump(mode="json") for r in records],
            option=orjson.OPT_INDENT_2,
        ).decode()
