"""Exception hierarchy for ConsentFlow.

Every error surfaced from a public entry point derives from
:class:`ConsentFlowError`; the HTTP layer maps each subclass to a status
code.  :class:`AuditMirrorFailure` is the exception to that rule: it is
raised by audit mirrors and always caught inside the audit trail.
"""

from __future__ import annotations

from typing import Any


class ConsentFlowError(Exception):
    """Base class for all ConsentFlow errors."""


class NotAuthenticated(ConsentFlowError):
    """No credential has been established, or it was rejected."""


class NotFound(ConsentFlowError):
    """The contact or resource does not exist."""

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(f"{resource} '{identifier}' not found")
        self.resource = resource
        self.identifier = identifier


class ValidationError(ConsentFlowError):
    """Malformed input to a public entry point."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class ExternalServiceError(ConsentFlowError):
    """The contact store, token endpoint or timeline API failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ReconciliationAborted(ExternalServiceError):
    """A reconciliation run stopped before walking every page.

    ``partial`` holds the run result accumulated up to the failure; side
    effects already applied are not rolled back.
    """

    def __init__(self, message: str, *, partial: Any, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code)
        self.partial = partial


class JobAlreadyRunning(ConsentFlowError):
    """A run of this compliance job is already in progress."""

    def __init__(self, job: str) -> None:
        super().__init__(f"job '{job}' is already running")
        self.job = job


class AuditMirrorFailure(ConsentFlowError):
    """Best-effort write of the audit mirror failed."""
