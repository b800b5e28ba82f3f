from __future__ import annotations

from typing import Optional


class AuditError(Exception):
    """Base class for every error raised by the audit engine."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class SourceUnavailable(AuditError):
    def __init__(self, source: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Roster source '{source}' could not be read: {cause}", cause=cause)
        self.source = source


class EmptyRoster(AuditError):
    def __init__(self, source: str) -> None:
        super().__init__(f"Roster source '{source}' contains no analysts")
        self.source = source


class DirectoryUnavailable(AuditError):
    def __init__(self, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Failed to list tenants: {cause}", cause=cause)


class TenantUnreachable(AuditError):
    def __init__(self, tenant_id: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Failed to list subscriptions of tenant {tenant_id}: {cause}", cause=cause)
        self.tenant_id = tenant_id


class ScopeFailure(AuditError):
    def __init__(
        self,
        subscription_id: str,
        cause: Optional[BaseException] = None,
        *,
        tenant_id: Optional[str] = None,
    ) -> None:
        super().__init__(f"Failed to list role assignments of subscription {subscription_id}: {cause}", cause=cause)
        self.subscription_id = subscription_id
        self.tenant_id = tenant_id


class AuditAlreadyRunning(AuditError):
    def __init__(self, state: str) -> None:
        super().__init__(f"An audit run is already in progress (state: {state})")
        self.state = state


class ReportNotReady(AuditError):
    def __init__(self) -> None:
        super().__init__("The audit report is not complete yet")


# Errors that abort a run before or at the start of the directory walk.
FATAL_ERRORS = (SourceUnavailable, EmptyRoster, DirectoryUnavailable)
