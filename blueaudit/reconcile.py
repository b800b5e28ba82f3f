from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional, Sequence

from blueaudit.catalog import Analyst, RoleCatalog, RosterSource, load_roster
from blueaudit.directory import DirectoryClient, DirectoryWalker, RoleAssignment, Subscription, Tenant
from blueaudit.errors import AuditAlreadyRunning, AuditError, ScopeFailure, TenantUnreachable
from blueaudit.report import AuditReport, ReportRow, ScopeFailureRecord
from blueaudit.resolver import AssignmentResolver


DEFAULT_MAX_WORKERS = 1


class RunState(str, Enum):
    IDLE = "idle"
    LOADING_INPUTS = "loading_inputs"
    WALKING = "walking"
    COMPLETE = "complete"
    FAILED = "failed"


_BUSY_STATES = (RunState.LOADING_INPUTS, RunState.WALKING)


@dataclass(frozen=True)
class ProgressEvent:
    kind: str
    tenant_id: Optional[str] = None
    subscription_id: Optional[str] = None
    detail: Optional[str] = None
    error: Optional[BaseException] = None
    total: Optional[int] = None


EventCallback = Callable[[ProgressEvent], None]


def _describe(e: AuditError) -> str:
    cause = e.cause if e.cause is not None else e
    return str(cause) or type(cause).__name__


class GapReconciler:
    """Computes held vs. missing required roles for each analyst at one subscription."""

    def __init__(self, catalog: RoleCatalog) -> None:
        self._catalog = catalog

    def reconcile(
        self,
        analyst: Analyst,
        grouped: Mapping[str, Sequence[RoleAssignment]],
    ) -> tuple[tuple[str, ...], tuple[str, ...], tuple[str, ...]]:
        held = [a.role_name for a in grouped.get(analyst.identity, ())]
        held_set = set(held)
        assigned = tuple(r for r in self._catalog if r in held_set)
        missing = tuple(r for r in self._catalog if r not in held_set)
        other = tuple(dict.fromkeys(r for r in held if r not in self._catalog))
        return assigned, missing, other

    def reconcile_subscription(
        self,
        tenant: Tenant,
        subscription: Subscription,
        analysts: Sequence[Analyst],
        grouped: Mapping[str, Sequence[RoleAssignment]],
    ) -> list[ReportRow]:
        rows: list[ReportRow] = []
        for analyst in analysts:
            assigned, missing, other = self.reconcile(analyst, grouped)
            rows.append(
                ReportRow(
                    tenant_id=tenant.tenant_id,
                    subscription_id=subscription.subscription_id,
                    analyst=analyst,
                    assigned_roles=assigned,
                    missing_roles=missing,
                    other_roles=other,
                    subscription_name=subscription.display_name,
                )
            )
        return rows


class _DirectSink:
    def __init__(self, report: AuditReport) -> None:
        self._report = report

    def tenant(self) -> None:
        self._report.add_tenant()

    def rows(self, rows: list[ReportRow]) -> None:
        self._report.add_subscription(rows)

    def failure(self, record: ScopeFailureRecord) -> None:
        self._report.add_failure(record)


class _BufferedSink:
    """Holds one tenant's results until they can be merged in directory order."""

    def __init__(self) -> None:
        self._ops: list[tuple[str, tuple]] = []

    def tenant(self) -> None:
        self._ops.append(("tenant", ()))

    def rows(self, rows: list[ReportRow]) -> None:
        self._ops.append(("rows", (rows,)))

    def failure(self, record: ScopeFailureRecord) -> None:
        self._ops.append(("failure", (record,)))

    def flush_into(self, report: AuditReport) -> None:
        direct = _DirectSink(report)
        for op, args in self._ops:
            getattr(direct, op)(*args)
        self._ops = []


class AuditEngine:
    """
    Drives one audit: load the roster, walk tenants and subscriptions, resolve
    assignments once per subscription and reconcile every analyst against them.

    Per-tenant work can fan out over `max_workers` threads; results are merged in the
    order the directory listed the tenants so the report does not depend on scheduling.
    """

    def __init__(
        self,
        client: DirectoryClient,
        catalog: RoleCatalog,
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
        on_event: Optional[EventCallback] = None,
    ) -> None:
        self._client = client
        self._catalog = catalog
        self._max_workers = max(1, int(max_workers))
        self._on_event = on_event or (lambda _: None)
        self._resolver = AssignmentResolver(client)
        self._reconciler = GapReconciler(catalog)
        self._state = RunState.IDLE
        self._state_lock = threading.Lock()
        self._cancel = threading.Event()

    @property
    def state(self) -> RunState:
        return self._state

    def cancel(self) -> None:
        self._cancel.set()

    def _set_state(self, state: RunState) -> None:
        with self._state_lock:
            self._state = state

    def _emit(self, event: ProgressEvent) -> None:
        self._on_event(event)

    def run(self, roster_source: RosterSource) -> AuditReport:
        with self._state_lock:
            if self._state in _BUSY_STATES:
                raise AuditAlreadyRunning(self._state.value)
            self._state = RunState.LOADING_INPUTS
            self._cancel.clear()

        try:
            analysts = load_roster(roster_source)
            report = AuditReport(self._catalog, analysts)
            direct = _DirectSink(report)
            walker = DirectoryWalker(
                self._client,
                on_tenant=self._tenant_started,
                on_failure=lambda err: self._tenant_failed(err, direct),
            )
            tenants = walker.tenants()
        except BaseException:
            self._set_state(RunState.FAILED)
            raise

        self._set_state(RunState.WALKING)
        self._emit(ProgressEvent("run_started", total=len(tenants), detail=f"{len(analysts)} analysts"))
        try:
            if self._max_workers == 1 or len(tenants) <= 1:
                for tenant, subs in walker.walk(tenants, stop=self._cancel.is_set):
                    self._audit_subscriptions(tenant, subs, analysts, direct)
            else:
                self._audit_parallel(walker, tenants, analysts, report)
        except BaseException:
            self._set_state(RunState.FAILED)
            raise

        report.mark_complete(cancelled=self._cancel.is_set())
        self._set_state(RunState.COMPLETE)
        self._emit(ProgressEvent("run_complete", total=report.subscriptions_processed))
        return report

    def _audit_parallel(
        self,
        walker: DirectoryWalker,
        tenants: list[Tenant],
        analysts: list[Analyst],
        report: AuditReport,
    ) -> None:
        def worker(tenant: Tenant) -> _BufferedSink:
            sink = _BufferedSink()
            if self._cancel.is_set():
                return sink
            subs = walker.subscriptions_for(tenant, on_failure=lambda err: self._tenant_failed(err, sink))
            if subs is not None:
                self._audit_subscriptions(tenant, subs, analysts, sink)
            return sink

        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(tenants))) as ex:
            futs = [ex.submit(worker, t) for t in tenants]
            # Single writer: merge in submission order.
            for fut in futs:
                fut.result().flush_into(report)

    def _tenant_started(self, tenant: Tenant) -> None:
        self._emit(ProgressEvent("tenant_started", tenant_id=tenant.tenant_id, detail=tenant.label))

    def _tenant_failed(self, err: TenantUnreachable, sink) -> None:
        tid = err.tenant_id
        sink.failure(ScopeFailureRecord("tenant", tid, None, _describe(err)))
        self._emit(ProgressEvent("scope_failure", tenant_id=tid, detail=_describe(err), error=err))
        self._emit(ProgressEvent("tenant_done", tenant_id=tid, detail="unreachable"))

    def _audit_subscriptions(self, tenant: Tenant, subs: list[Subscription], analysts: list[Analyst], sink) -> None:
        tid = tenant.tenant_id
        sink.tenant()
        self._emit(ProgressEvent("subscriptions_listed", tenant_id=tid, total=len(subs)))
        done = 0
        for sub in subs:
            if self._cancel.is_set():
                break
            sid = sub.subscription_id
            self._emit(ProgressEvent("subscription_started", tenant_id=tid, subscription_id=sid, detail=sub.display_name))
            try:
                grouped = self._resolver.resolve_assignments(sub)
            except ScopeFailure as err:
                sink.failure(ScopeFailureRecord("subscription", tid, sid, _describe(err)))
                self._emit(
                    ProgressEvent("scope_failure", tenant_id=tid, subscription_id=sid, detail=_describe(err), error=err)
                )
                continue
            sink.rows(self._reconciler.reconcile_subscription(tenant, sub, analysts, grouped))
            done += 1
            self._emit(ProgressEvent("subscription_done", tenant_id=tid, subscription_id=sid))
        self._emit(ProgressEvent("tenant_done", tenant_id=tid, detail=f"{done}/{len(subs)} subscriptions"))
