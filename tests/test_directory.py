"""
Unit tests for the tenant/subscription walker and the assignment resolver.
"""

import pytest

from blueaudit.directory import DirectoryWalker, Subscription, Tenant
from blueaudit.errors import DirectoryUnavailable, ScopeFailure, TenantUnreachable
from blueaudit.resolver import AssignmentResolver


LAYOUT = {
    "t-b": {"sub-b1": {"alice": ["Reader"]}},
    "t-a": {"sub-a1": {}, "sub-a2": {"bob": ["Owner"]}},
    "t-c": {"sub-c1": {}},
}


class TestDirectoryWalker:
    def test_walk_keeps_directory_order(self, make_client):
        walker = DirectoryWalker(make_client(LAYOUT))
        visited = [(t.tenant_id, [s.subscription_id for s in subs]) for t, subs in walker.walk()]
        assert visited == [("t-b", ["sub-b1"]), ("t-a", ["sub-a1", "sub-a2"]), ("t-c", ["sub-c1"])]

    def test_walk_is_lazy(self, make_client):
        client = make_client(LAYOUT)
        it = DirectoryWalker(client).walk()
        assert client.calls == [("list_tenants",)]
        next(it)
        assert client.calls == [("list_tenants",), ("list_subscriptions", "t-b")]

    def test_unreachable_tenant_is_skipped_and_reported(self, make_client):
        seen = []
        walker = DirectoryWalker(make_client(LAYOUT, fail_tenants={"t-a"}), on_failure=seen.append)
        visited = [t.tenant_id for t, _ in walker.walk()]
        assert visited == ["t-b", "t-c"]
        assert len(seen) == 1
        assert isinstance(seen[0], TenantUnreachable)
        assert seen[0].tenant_id == "t-a"

    def test_unexpected_error_wrapped_as_tenant_unreachable(self):
        class Client:
            def list_tenants(self):
                return [Tenant("t1")]

            def list_subscriptions(self, tenant_id):
                raise KeyError("subscriptions")

        seen = []
        walker = DirectoryWalker(Client(), on_failure=seen.append)
        assert list(walker.walk()) == []
        err = seen[0]
        assert isinstance(err, TenantUnreachable)
        assert isinstance(err.cause, KeyError)

    def test_per_call_failure_callback_overrides_default(self, make_client):
        default, override = [], []
        walker = DirectoryWalker(make_client(LAYOUT, fail_tenants={"t-c"}), on_failure=default.append)
        assert walker.subscriptions_for(Tenant("t-c"), on_failure=override.append) is None
        assert default == []
        assert len(override) == 1

    def test_on_tenant_fires_before_listing(self, make_client):
        client = make_client(LAYOUT, fail_tenants={"t-a"})
        started = []

        def on_tenant(tenant):
            started.append((tenant.tenant_id, len(client.calls)))

        list(DirectoryWalker(client, on_tenant=on_tenant).walk())
        assert started == [("t-b", 1), ("t-a", 2), ("t-c", 3)]

    def test_walk_reuses_listed_tenants_and_honours_stop(self, make_client):
        client = make_client(LAYOUT)
        walker = DirectoryWalker(client)
        tenants = walker.tenants()
        visited = []
        for tenant, _ in walker.walk(tenants, stop=lambda: len(visited) == 2):
            visited.append(tenant.tenant_id)
        assert visited == ["t-b", "t-a"]
        assert [c for c in client.calls if c[0] == "list_tenants"] == [("list_tenants",)]
        assert ("list_subscriptions", "t-c") not in client.calls

    def test_tenant_listing_failure_is_fatal_at_call_time(self, make_client):
        walker = DirectoryWalker(make_client(LAYOUT, fail_listing=True))
        with pytest.raises(DirectoryUnavailable) as exc:
            walker.walk()
        assert "AADSTS50076" in str(exc.value.cause)


class TestAssignmentResolver:
    def test_groups_by_sign_in_identity(self, make_client):
        layout = {"t1": {"s1": {"alice": ["Reader", "Owner"], "bob": ["Reader"], None: ["Contributor"]}}}
        resolver = AssignmentResolver(make_client(layout))
        grouped = resolver.resolve_assignments(Subscription("s1", "t1"))
        assert sorted(grouped) == ["alice", "bob"]
        assert [a.role_name for a in grouped["alice"]] == ["Reader", "Owner"]

    def test_no_assignments(self, make_client):
        resolver = AssignmentResolver(make_client({"t1": {"s1": {}}}))
        assert resolver.resolve_assignments(Subscription("s1", "t1")) == {}

    def test_retrieval_error_becomes_scope_failure(self, make_client):
        resolver = AssignmentResolver(make_client({"t1": {"s1": {}}}, fail_subscriptions={"s1"}))
        with pytest.raises(ScopeFailure) as exc:
            resolver.resolve_assignments(Subscription("s1", "t1"))
        assert exc.value.subscription_id == "s1"
        assert exc.value.tenant_id == "t1"
        assert "429" in str(exc.value.cause)
