from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Iterable, Optional

import requests
from azure.core.exceptions import HttpResponseError
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.resource import SubscriptionClient

from blueaudit.auth import GRAPH_SCOPE, TenantScopedCredential
from blueaudit.directory import RoleAssignment, Subscription, Tenant
from blueaudit.errors import DirectoryUnavailable, ScopeFailure, TenantUnreachable


logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_TIMEOUT = 30
ROLE_DEFINITION_WORKERS = 8
ENABLED_STATES = ("enabled", "pastdue", "warned")


def _as_dict(obj: Any) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "as_dict"):
        try:
            return obj.as_dict()
        except Exception:
            pass
    # Last resort: best-effort public attrs.
    if hasattr(obj, "__dict__"):
        return dict(obj.__dict__)
    return obj


def _first(d: dict[str, Any], *keys: str) -> Any:
    for k in keys:
        v = d.get(k)
        if v not in (None, ""):
            return v
    return None


def _enum_value(v: Any) -> Optional[str]:
    if v is None:
        return None
    return str(getattr(v, "value", v))


class AzureDirectoryClient:
    """
    Directory client over the Azure management SDKs and Microsoft Graph.

    Role assignments only carry principal object ids and role definition ids, so each
    listing resolves role names with `role_definitions.get` and user principals to their
    `userPrincipalName` through Graph. Both lookups are cached for the lifetime of the client.
    """

    def __init__(
        self,
        credential: Any,
        *,
        tenant_filter: Optional[Iterable[str]] = None,
        include_disabled: bool = False,
        resolve_principals: bool = True,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._credential = credential
        self._tenant_filter = [t.strip().lower() for t in (tenant_filter or []) if t and t.strip()]
        self._include_disabled = include_disabled
        self._resolve_principals = resolve_principals
        self._session = session or requests.Session()
        self._role_names: dict[str, Optional[str]] = {}
        self._principals: dict[tuple[str, str], Optional[str]] = {}
        self._cache_lock = threading.Lock()

    def _tenant_credential(self, tenant_id: str) -> TenantScopedCredential:
        return TenantScopedCredential(self._credential, tenant_id)

    def list_tenants(self) -> list[Tenant]:
        try:
            raw = [_as_dict(t) for t in SubscriptionClient(self._credential).tenants.list()]
        except Exception as e:
            raise DirectoryUnavailable(e) from e

        tenants: list[Tenant] = []
        for d in raw:
            if not isinstance(d, dict):
                continue
            tid = (_first(d, "tenant_id", "tenantId") or "").strip()
            if not tid:
                continue
            if self._tenant_filter and tid.lower() not in self._tenant_filter:
                continue
            tenants.append(
                Tenant(
                    tenant_id=tid,
                    display_name=_first(d, "display_name", "displayName"),
                    default_domain=_first(d, "default_domain", "defaultDomain"),
                )
            )
        return tenants

    def list_subscriptions(self, tenant_id: str) -> list[Subscription]:
        try:
            client = SubscriptionClient(self._tenant_credential(tenant_id))
            raw = [_as_dict(s) for s in client.subscriptions.list()]
        except Exception as e:
            raise TenantUnreachable(tenant_id, e) from e

        subs: list[Subscription] = []
        for d in raw:
            if not isinstance(d, dict):
                continue
            sid = (_first(d, "subscription_id", "subscriptionId") or "").strip()
            if not sid:
                continue
            owner = _first(d, "tenant_id", "tenantId")
            # Lighthouse-delegated subscriptions show up under the managing tenant too.
            if owner and owner.lower() != tenant_id.lower():
                continue
            state = _enum_value(d.get("state"))
            if not self._include_disabled and state and state.lower() not in ENABLED_STATES:
                logger.debug("Skipping subscription %s in state %s", sid, state)
                continue
            subs.append(
                Subscription(
                    subscription_id=sid,
                    tenant_id=tenant_id,
                    display_name=_first(d, "display_name", "displayName"),
                    state=state,
                )
            )
        return subs

    def list_role_assignments(self, subscription: Subscription) -> list[RoleAssignment]:
        sid = subscription.subscription_id
        tid = subscription.tenant_id
        credential = self._tenant_credential(tid)
        scope = subscription.scope
        try:
            authz = AuthorizationManagementClient(credential, sid)
            raw = self._fetch_assignments(authz, scope)
            role_names = self._role_names_for(authz, scope, raw)
        except ScopeFailure:
            raise
        except Exception as e:
            raise ScopeFailure(sid, e, tenant_id=tid) from e

        out: list[RoleAssignment] = []
        for a in raw:
            rdid = _first(a, "role_definition_id", "roleDefinitionId")
            role_name = _first(a, "role_definition_name", "roleDefinitionName") or role_names.get((rdid or "").lower())
            if not role_name:
                logger.debug("Unresolved role definition %s in subscription %s", rdid, sid)
                continue
            pid = _first(a, "principal_id", "principalId")
            ptype = _enum_value(_first(a, "principal_type", "principalType"))
            identity = _first(a, "sign_in_name", "signInName")
            if identity is None and pid and self._resolve_principals and (ptype is None or ptype.lower() == "user"):
                identity = self._principal_sign_in_name(tid, pid)
            out.append(
                RoleAssignment(
                    principal_identity=identity,
                    role_name=role_name,
                    principal_id=pid,
                    principal_type=ptype,
                    scope=a.get("scope"),
                )
            )
        return out

    def _fetch_assignments(self, authz: AuthorizationManagementClient, scope: str) -> list[dict[str, Any]]:
        ops = authz.role_assignments
        try:
            # Includes assignments inherited from above and those on nested scopes.
            lister = getattr(ops, "list_for_subscription", None) or ops.list
            return [d for d in (_as_dict(a) for a in lister()) if isinstance(d, dict)]
        except HttpResponseError as e:
            # Some tenants reject subscription-wide listing; fall back to the subscription scope only.
            logger.debug("Subscription-wide listing failed for %s (%s); retrying atScope()", scope, e)
            return [d for d in (_as_dict(a) for a in ops.list_for_scope(scope, filter="atScope()")) if isinstance(d, dict)]

    def _role_names_for(
        self,
        authz: AuthorizationManagementClient,
        scope: str,
        assignments: list[dict[str, Any]],
    ) -> dict[str, Optional[str]]:
        wanted: set[str] = set()
        for a in assignments:
            rdid = _first(a, "role_definition_id", "roleDefinitionId")
            if isinstance(rdid, str) and rdid.strip():
                wanted.add(rdid.strip())

        with self._cache_lock:
            missing = sorted(r for r in wanted if r.lower() not in self._role_names)

        def fetch_role_def(full_id: str) -> tuple[str, Optional[str]]:
            role_guid = full_id.rsplit("/", 1)[-1]
            rd = _as_dict(authz.role_definitions.get(scope, role_guid)) or {}
            return full_id, _first(rd, "role_name", "roleName")

        if missing:
            with ThreadPoolExecutor(max_workers=min(ROLE_DEFINITION_WORKERS, len(missing))) as ex:
                futs = [ex.submit(fetch_role_def, rid) for rid in missing]
                for fut in as_completed(futs):
                    rid, name = fut.result()
                    with self._cache_lock:
                        self._role_names[rid.lower()] = name

        with self._cache_lock:
            return {r.lower(): self._role_names.get(r.lower()) for r in wanted}

    def _principal_sign_in_name(self, tenant_id: str, object_id: str) -> Optional[str]:
        key = (tenant_id.lower(), object_id)
        with self._cache_lock:
            if key in self._principals:
                return self._principals[key]

        token = self._credential.get_token(GRAPH_SCOPE, tenant_id=tenant_id).token
        r = self._session.get(
            f"{GRAPH_BASE_URL}/users/{object_id}",
            headers={"Authorization": f"Bearer {token}"},
            params={"$select": "id,userPrincipalName"},
            timeout=GRAPH_TIMEOUT,
        )
        if r.status_code == 404:
            upn = None
        elif r.status_code >= 400:
            raise RuntimeError(f"Graph lookup failed ({r.status_code}): {r.text[:200]}")
        else:
            data = r.json()
            upn = data.get("userPrincipalName") if isinstance(data, dict) else None

        with self._cache_lock:
            self._principals[key] = upn
        return upn
