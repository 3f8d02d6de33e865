"""Consent property schema on the CRM contact object.

Defines the custom contact properties ConsentFlow reads and writes, how
their values are encoded (``"yes"``/``"no"`` flags, ISO-8601 dates,
enumeration values) and how a raw :class:`Contact` is decoded into a
:class:`ConsentSnapshot`.
"""

from __future__ import annotations

from typing import Any, Final

import structlog

from consentflow.models.consent import ConsentSnapshot
from consentflow.models.contact import Contact
from consentflow.models.enums import (
    CategoryConsent,
    ConsentCategory,
    ConsentSource,
    ConsentStatus,
    LegalBasis,
)
from consentflow.services.date_rules import parse_datetime

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Property names
# ---------------------------------------------------------------------------

PROPERTY_GROUP: Final[str] = "gdpr_ccpa_consent"
PROPERTY_GROUP_LABEL: Final[str] = "GDPR/CCPA Consent"

EMAIL: Final[str] = "email"
CONSENT_STATUS: Final[str] = "gdpr_consent_status"
LEGAL_BASIS: Final[str] = "gdpr_legal_basis"
CONSENT_DATE: Final[str] = "gdpr_consent_date"
CONSENT_EXPIRY_DATE: Final[str] = "gdpr_consent_expiry_date"
CCPA_OPT_OUT: Final[str] = "ccpa_opt_out"
LAST_ACTIVITY_DATE: Final[str] = "last_activity_date"
RECONSENT_REQUIRED: Final[str] = "reconsent_required"
SCHEDULED_PURGE_DATE: Final[str] = "scheduled_purge_date"
CONSENT_SOURCE: Final[str] = "consent_source"
CONSENT_AUDIT_LOG: Final[str] = "consent_audit_log"

YES: Final[str] = "yes"
NO: Final[str] = "no"


def category_property(category: ConsentCategory) -> str:
    return f"gdpr_{category}_consent"


def _options(values: list[tuple[str, str]]) -> list[dict[str, Any]]:
    return [
        {"label": label, "value": value, "displayOrder": index, "hidden": False}
        for index, (label, value) in enumerate(values)
    ]


_GRANTED_OPTIONS = _options([("Granted", "granted"), ("Not Granted", "not_granted")])
_YES_NO_OPTIONS = _options([("Yes", YES), ("No", NO)])


def _definition(
    name: str,
    label: str,
    description: str,
    *,
    type_: str,
    field_type: str,
    options: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    definition: dict[str, Any] = {
        "name": name,
        "label": label,
        "description": description,
        "groupName": PROPERTY_GROUP,
        "type": type_,
        "fieldType": field_type,
    }
    if options is not None:
        definition["options"] = options
    return definition


PROPERTY_DEFINITIONS: Final[tuple[dict[str, Any], ...]] = (
    _definition(
        CONSENT_STATUS,
        "GDPR Consent Status",
        "Overall GDPR consent status for the contact",
        type_="enumeration",
        field_type="select",
        options=_options([(s.value.title(), s.value) for s in ConsentStatus]),
    ),
    _definition(
        LEGAL_BASIS,
        "Legal Basis for Processing",
        "The legal basis under which contact data is processed",
        type_="enumeration",
        field_type="select",
        options=_options([(b.value.replace("_", " ").title(), b.value) for b in LegalBasis]),
    ),
    _definition(CONSENT_DATE, "Consent Date", "Date when consent was last granted", type_="date", field_type="date"),
    _definition(
        CONSENT_EXPIRY_DATE, "Consent Expiry Date", "Date when consent will expire", type_="date", field_type="date"
    ),
    _definition(
        category_property(ConsentCategory.MARKETING),
        "Marketing Consent",
        "Consent for marketing communications",
        type_="enumeration",
        field_type="radio",
        options=_GRANTED_OPTIONS,
    ),
    _definition(
        category_property(ConsentCategory.ANALYTICS),
        "Analytics Consent",
        "Consent for analytics and tracking",
        type_="enumeration",
        field_type="radio",
        options=_GRANTED_OPTIONS,
    ),
    _definition(
        category_property(ConsentCategory.PERSONALIZATION),
        "Personalization Consent",
        "Consent for personalized content and recommendations",
        type_="enumeration",
        field_type="radio",
        options=_GRANTED_OPTIONS,
    ),
    _definition(
        CCPA_OPT_OUT,
        "CCPA Opt-Out",
        "Whether the contact has opted out under CCPA (Do Not Sell)",
        type_="enumeration",
        field_type="radio",
        options=_YES_NO_OPTIONS,
    ),
    _definition(
        LAST_ACTIVITY_DATE, "Last Activity Date", "Date of last interaction or activity", type_="date", field_type="date"
    ),
    _definition(
        RECONSENT_REQUIRED,
        "Re-consent Required",
        "Whether the contact requires re-consent",
        type_="enumeration",
        field_type="radio",
        options=_YES_NO_OPTIONS,
    ),
    _definition(
        SCHEDULED_PURGE_DATE,
        "Scheduled Purge Date",
        "Date when the contact is scheduled for data purge",
        type_="date",
        field_type="date",
    ),
    _definition(
        CONSENT_SOURCE,
        "Consent Source",
        "How consent was obtained",
        type_="enumeration",
        field_type="select",
        options=_options([(s.value.replace("_", " ").title(), s.value) for s in ConsentSource]),
    ),
    _definition(
        CONSENT_AUDIT_LOG, "Consent Audit Log", "JSON log of consent changes", type_="string", field_type="textarea"
    ),
)

PROPERTY_NAMES: Final[tuple[str, ...]] = tuple(d["name"] for d in PROPERTY_DEFINITIONS)

# Properties fetched for every lifecycle decision; the audit blob is
# excluded because it can be large and is only read by the mirror.
SNAPSHOT_FIELDS: Final[tuple[str, ...]] = (EMAIL,) + tuple(n for n in PROPERTY_NAMES if n != CONSENT_AUDIT_LOG)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _enum_or_default(enum_cls: type, raw: str, default: Any) -> Any:
    if not raw:
        return default
    try:
        return enum_cls(raw)
    except ValueError:
        logger.warning("contact_properties.unknown_value", enum=enum_cls.__name__, value=raw)
        return default


def snapshot_from_contact(contact: Contact) -> ConsentSnapshot:
    """Decode a CRM contact into an immutable consent snapshot.

    Unknown enumeration values fall back to the neutral default rather
    than failing the whole reconciliation pass.
    """
    categories = {
        category: _enum_or_default(CategoryConsent, contact.prop(category_property(category)), CategoryConsent.PENDING)
        for category in ConsentCategory
    }
    return ConsentSnapshot(
        contact_id=contact.id,
        email=contact.prop(EMAIL),
        legal_basis=_enum_or_default(LegalBasis, contact.prop(LEGAL_BASIS), LegalBasis.NOT_APPLICABLE),
        consent_status=_enum_or_default(ConsentStatus, contact.prop(CONSENT_STATUS), ConsentStatus.UNKNOWN),
        categories=categories,
        ccpa_opt_out=contact.prop(CCPA_OPT_OUT) == YES,
        consent_date=parse_datetime(contact.prop(CONSENT_DATE)),
        last_activity_date=parse_datetime(contact.prop(LAST_ACTIVITY_DATE)),
        reconsent_required=contact.prop(RECONSENT_REQUIRED) == YES,
        scheduled_purge_date=parse_datetime(contact.prop(SCHEDULED_PURGE_DATE)),
        archived=contact.archived,
    )


def yes_no(flag: bool) -> str:
    return YES if flag else NO
