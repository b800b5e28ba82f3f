from __future__ import annotations

import csv
import json
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from blueaudit.catalog import Analyst, RoleCatalog
from blueaudit.errors import ReportNotReady


SCHEMA_VERSION = 1
TOOL_NAME = "Blue Analyst Audit"
CSV_COLUMNS = [
    "tenant_id",
    "subscription_id",
    "subscription_name",
    "analyst",
    "assigned_roles",
    "missing_roles",
    "other_roles",
]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def atomic_write_json(path: str, obj: Any) -> None:
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=False, default=str)
        f.write("\n")
    os.replace(tmp_path, path)


@dataclass(frozen=True)
class ReportRow:
    tenant_id: str
    subscription_id: str
    analyst: Analyst
    assigned_roles: tuple[str, ...]
    missing_roles: tuple[str, ...]
    other_roles: tuple[str, ...] = ()
    subscription_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "subscription_id": self.subscription_id,
            "subscription_name": self.subscription_name,
            "analyst": str(self.analyst),
            "assigned_roles": list(self.assigned_roles),
            "missing_roles": list(self.missing_roles),
            "other_roles": list(self.other_roles),
        }


@dataclass(frozen=True)
class ScopeFailureRecord:
    kind: str  # tenant | subscription
    tenant_id: str
    subscription_id: Optional[str]
    cause: str

    def to_dict(self) -> dict:
        out = {"kind": self.kind, "tenant_id": self.tenant_id, "cause": self.cause}
        if self.subscription_id:
            out["subscription_id"] = self.subscription_id
        return out


@dataclass
class _Tally:
    subscriptions: int = 0
    tenants: int = 0
    failures: list[ScopeFailureRecord] = field(default_factory=list)


class AuditReport:
    """
    Rows in the order they were produced plus the per-analyst missing-role totals.

    Writers go through `add_subscription`/`add_failure` under a lock. Readers must wait
    until `mark_complete` has been called.
    """

    def __init__(self, catalog: RoleCatalog, analysts: Iterable[Analyst]) -> None:
        self._lock = threading.Lock()
        self.required_roles = catalog.required_roles
        self._rows: list[ReportRow] = []
        # Seeded so analysts never evaluated still report 0.
        self._missing: dict[Analyst, int] = {}
        for a in analysts:
            self._missing.setdefault(a, 0)
        self._tally = _Tally()
        self._complete = False
        self.cancelled = False
        self.started_at = utc_now_iso()
        self.finished_at: Optional[str] = None

    def add_subscription(self, rows: Iterable[ReportRow]) -> None:
        with self._lock:
            self._check_writable()
            for row in rows:
                self._rows.append(row)
                self._missing[row.analyst] = self._missing.get(row.analyst, 0) + len(row.missing_roles)
            self._tally.subscriptions += 1

    def add_tenant(self) -> None:
        with self._lock:
            self._check_writable()
            self._tally.tenants += 1

    def add_failure(self, record: ScopeFailureRecord) -> None:
        with self._lock:
            self._check_writable()
            self._tally.failures.append(record)

    def _check_writable(self) -> None:
        if self._complete:
            raise RuntimeError("Cannot modify a completed report")

    def mark_complete(self, *, cancelled: bool = False) -> None:
        with self._lock:
            self._complete = True
            self.cancelled = cancelled
            self.finished_at = utc_now_iso()

    @property
    def complete(self) -> bool:
        return self._complete

    @property
    def subscriptions_processed(self) -> int:
        return self._tally.subscriptions

    @property
    def tenants_visited(self) -> int:
        return self._tally.tenants

    def _require_complete(self) -> None:
        if not self._complete:
            raise ReportNotReady()

    def rows(self) -> tuple[ReportRow, ...]:
        self._require_complete()
        return tuple(self._rows)

    def missing_counts(self) -> dict[Analyst, int]:
        self._require_complete()
        return dict(self._missing)

    def scope_failures(self) -> tuple[ScopeFailureRecord, ...]:
        self._require_complete()
        return tuple(self._tally.failures)


def build_report(report: AuditReport, *, extra_summary: Optional[dict] = None) -> dict:
    rows = report.rows()
    counts = report.missing_counts()
    failures = report.scope_failures()
    summary = {
        "total_rows": len(rows),
        "analysts": len(counts),
        "analysts_without_gaps": sum(1 for c in counts.values() if c == 0),
        "tenants_visited": report.tenants_visited,
        "subscriptions_processed": report.subscriptions_processed,
        "scope_failures": len(failures),
        "cancelled": report.cancelled,
    }
    if extra_summary:
        summary.update(extra_summary)

    return {
        "tool": TOOL_NAME,
        "schema_version": SCHEMA_VERSION,
        "generated_at": utc_now_iso(),
        "started_at": report.started_at,
        "finished_at": report.finished_at,
        "required_roles": list(report.required_roles),
        "rows": [r.to_dict() for r in rows],
        "missing_counts": {str(a): c for a, c in counts.items()},
        "scope_failures": [f.to_dict() for f in failures],
        "summary": summary,
    }


def write_csv(path: str, rows: Iterable[ReportRow]) -> int:
    n = 0
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS)
        writer.writeheader()
        for row in rows:
            d = row.to_dict()
            for key in ("assigned_roles", "missing_roles", "other_roles"):
                d[key] = ";".join(d[key])
            writer.writerow(d)
            n += 1
    return n
