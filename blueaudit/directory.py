from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Protocol, Sequence

from blueaudit.errors import DirectoryUnavailable, TenantUnreachable


@dataclass(frozen=True)
class Tenant:
    tenant_id: str
    display_name: Optional[str] = None
    default_domain: Optional[str] = None

    @property
    def label(self) -> str:
        return self.display_name or self.default_domain or self.tenant_id


@dataclass(frozen=True)
class Subscription:
    subscription_id: str
    tenant_id: str
    display_name: Optional[str] = None
    state: Optional[str] = None

    @property
    def scope(self) -> str:
        return f"/subscriptions/{self.subscription_id}"


@dataclass(frozen=True)
class RoleAssignment:
    # Sign-in name of the principal; None for groups, service principals and
    # users the directory could not resolve.
    principal_identity: Optional[str]
    role_name: str
    principal_id: Optional[str] = None
    principal_type: Optional[str] = None
    scope: Optional[str] = None


class DirectoryClient(Protocol):
    """The three read-only calls the engine needs from a cloud directory."""

    def list_tenants(self) -> Sequence[Tenant]:
        ...

    def list_subscriptions(self, tenant_id: str) -> Sequence[Subscription]:
        ...

    def list_role_assignments(self, subscription: Subscription) -> Sequence[RoleAssignment]:
        ...


class DirectoryWalker:
    """
    Enumerates tenant -> subscription pairs.

    Only the initial tenant listing is fatal. A tenant whose subscriptions cannot be
    listed is reported through `on_failure` and skipped. `on_tenant` fires before each
    tenant's subscriptions are listed. Tenants are visited in the order the directory
    returns them.
    """

    def __init__(
        self,
        client: DirectoryClient,
        *,
        on_failure: Optional[Callable[[TenantUnreachable], None]] = None,
        on_tenant: Optional[Callable[[Tenant], None]] = None,
    ) -> None:
        self._client = client
        self._on_failure = on_failure or (lambda _: None)
        self._on_tenant = on_tenant or (lambda _: None)

    def tenants(self) -> list[Tenant]:
        try:
            return list(self._client.list_tenants())
        except DirectoryUnavailable:
            raise
        except Exception as e:
            raise DirectoryUnavailable(e) from e

    def subscriptions_for(
        self,
        tenant: Tenant,
        *,
        on_failure: Optional[Callable[[TenantUnreachable], None]] = None,
    ) -> Optional[list[Subscription]]:
        self._on_tenant(tenant)
        try:
            return list(self._client.list_subscriptions(tenant.tenant_id))
        except TenantUnreachable as e:
            err = e
        except Exception as e:
            err = TenantUnreachable(tenant.tenant_id, e)
            err.__cause__ = e
        (on_failure or self._on_failure)(err)
        return None

    def walk(
        self,
        tenants: Optional[Sequence[Tenant]] = None,
        *,
        stop: Optional[Callable[[], bool]] = None,
    ) -> Iterator[tuple[Tenant, list[Subscription]]]:
        # Tenant listing happens eagerly so DirectoryUnavailable surfaces at call time.
        if tenants is None:
            tenants = self.tenants()
        should_stop = stop or (lambda: False)

        def gen() -> Iterator[tuple[Tenant, list[Subscription]]]:
            for tenant in tenants:
                if should_stop():
                    return
                subs = self.subscriptions_for(tenant)
                if subs is None:
                    continue
                yield tenant, subs

        return gen()
