from __future__ import annotations

from collections import defaultdict

from blueaudit.directory import DirectoryClient, RoleAssignment, Subscription
from blueaudit.errors import ScopeFailure


class AssignmentResolver:
    """Fetches the role assignments of one subscription and groups them by sign-in identity."""

    def __init__(self, client: DirectoryClient) -> None:
        self._client = client

    def resolve_assignments(self, subscription: Subscription) -> dict[str, list[RoleAssignment]]:
        try:
            assignments = list(self._client.list_role_assignments(subscription))
        except ScopeFailure:
            raise
        except Exception as e:
            raise ScopeFailure(subscription.subscription_id, e, tenant_id=subscription.tenant_id) from e

        by_identity: dict[str, list[RoleAssignment]] = defaultdict(list)
        for a in assignments:
            # Groups and service principals have no sign-in name and cannot match an analyst.
            if not isinstance(a.principal_identity, str):
                continue
            by_identity[a.principal_identity].append(a)
        return dict(by_identity)
