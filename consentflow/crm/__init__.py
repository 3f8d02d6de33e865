"""CRM collaborators: the contact store, credentials and timeline events."""

from consentflow.crm.base import BATCH_LIMIT, ContactStore, TokenProvider, iterate_pages, iterate_search
from consentflow.crm.hubspot import HubSpotContactStore
from consentflow.crm.memory import InMemoryContactStore
from consentflow.crm.oauth import HubSpotOAuthTokenProvider, OAuthTokens, StaticTokenProvider
from consentflow.crm.timeline import (
    HubSpotTimelineNotifier,
    NullTimelineNotifier,
    TimelineEventKind,
    TimelineNotifier,
    notify_best_effort,
)

__all__ = [
    "BATCH_LIMIT",
    "ContactStore",
    "HubSpotContactStore",
    "HubSpotOAuthTokenProvider",
    "HubSpotTimelineNotifier",
    "InMemoryContactStore",
    "NullTimelineNotifier",
    "OAuthTokens",
    "StaticTokenProvider",
    "TimelineEventKind",
    "TimelineNotifier",
    "TokenProvider",
    "iterate_pages",
    "iterate_search",
    "notify_best_effort",
]
