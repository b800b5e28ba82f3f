from __future__ import annotations

import threading

import pytest

from blueaudit.catalog import RoleCatalog
from blueaudit.directory import RoleAssignment, Subscription, Tenant
from blueaudit.errors import TenantUnreachable


class FakeDirectoryClient:
    """
    In-memory directory built from {tenant_id: {subscription_id: {identity: [roles]}}}.

    Every call is recorded in `calls`; failures are injected per tenant / subscription.
    """

    def __init__(
        self,
        layout: dict,
        *,
        fail_tenants=(),
        fail_subscriptions=(),
        fail_listing: bool = False,
    ) -> None:
        self.layout = layout
        self.fail_tenants = set(fail_tenants)
        self.fail_subscriptions = set(fail_subscriptions)
        self.fail_listing = fail_listing
        self.calls: list[tuple] = []
        self._lock = threading.Lock()

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def list_tenants(self):
        self._record("list_tenants")
        if self.fail_listing:
            raise RuntimeError("AADSTS50076: directory unreachable")
        return [Tenant(tenant_id=tid, display_name=f"{tid}-name") for tid in self.layout]

    def list_subscriptions(self, tenant_id):
        self._record("list_subscriptions", tenant_id)
        if tenant_id in self.fail_tenants:
            raise TenantUnreachable(tenant_id, RuntimeError("403 Forbidden"))
        return [
            Subscription(subscription_id=sid, tenant_id=tenant_id, display_name=f"{sid}-name")
            for sid in self.layout[tenant_id]
        ]

    def list_role_assignments(self, subscription):
        self._record("list_role_assignments", subscription.subscription_id)
        if subscription.subscription_id in self.fail_subscriptions:
            raise RuntimeError("429 Too Many Requests")
        by_identity = self.layout[subscription.tenant_id][subscription.subscription_id]
        out = []
        for identity, roles in by_identity.items():
            for role in roles:
                out.append(
                    RoleAssignment(
                        principal_identity=identity,
                        role_name=role,
                        principal_id=f"oid-{identity}",
                        principal_type="User" if identity else "Group",
                        scope=subscription.scope,
                    )
                )
        return out


@pytest.fixture
def catalog():
    return RoleCatalog(["Reader", "Responder", "SecReader"])


@pytest.fixture
def make_client():
    def factory(layout, **kwargs):
        return FakeDirectoryClient(layout, **kwargs)

    return factory


@pytest.fixture
def roster_file(tmp_path):
    def write(text: str, name: str = "analysts.txt"):
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return str(path)

    return write
