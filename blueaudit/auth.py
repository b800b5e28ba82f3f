from __future__ import annotations

import base64
import json
import os
import threading
import time
from typing import Any, Optional

import msal
from azure.core.credentials import AccessToken
from azure.identity import ClientSecretCredential, DeviceCodeCredential


AZURE_PUBLIC_CLIENT_ID = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"  # Common public client (Azure CLI app id)
LOGIN_AUTHORITY = "https://login.microsoftonline.com"
ARM_SCOPE = "https://management.azure.com/.default"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
AUTH_METHODS = ("auto", "client-secret", "device-code", "az-cache")


class AzureMsalTokenCacheCredential:
    """
    Reuse the Azure CLI MSAL token cache (~/.azure/msal_token_cache.json) without invoking `az`.

    A `tenant_id` keyword on `get_token` switches the authority to that tenant, so one
    `az login` session can mint tokens for every tenant the account is a member of.
    """

    def __init__(
        self,
        *,
        cache_path: Optional[str] = None,
        client_id: str = AZURE_PUBLIC_CLIENT_ID,
        default_tenant: str = "organizations",
    ) -> None:
        self._cache_path = cache_path or os.path.expanduser("~/.azure/msal_token_cache.json")
        self._client_id = client_id
        self._default_tenant = default_tenant
        self._cache = msal.SerializableTokenCache()
        self._apps: dict[str, msal.PublicClientApplication] = {}
        self._lock = threading.Lock()
        self._loaded = False
        self._load()

    def _load(self) -> None:
        if self._loaded:
            return
        if not os.path.exists(self._cache_path):
            raise RuntimeError(f"Azure CLI token cache not found at {self._cache_path}")
        with open(self._cache_path, "r", encoding="utf-8") as f:
            self._cache.deserialize(f.read())
        self._loaded = True

    def _app(self, tenant: str) -> msal.PublicClientApplication:
        with self._lock:
            app = self._apps.get(tenant)
            if app is None:
                app = msal.PublicClientApplication(
                    client_id=self._client_id,
                    authority=f"{LOGIN_AUTHORITY}/{tenant}",
                    token_cache=self._cache,
                )
                self._apps[tenant] = app
            return app

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        tenant = kwargs.get("tenant_id") or self._default_tenant
        app = self._app(tenant)
        accounts = app.get_accounts()
        if not accounts:
            raise RuntimeError("No accounts found in Azure CLI token cache. Run `az login` or use device-code/client-secret auth.")
        result = app.acquire_token_silent(list(scopes), account=accounts[0])
        if not result or "access_token" not in result:
            raise RuntimeError(f"Failed to acquire token silently from Azure CLI cache for tenant {tenant}: {result}")
        expires_on = result.get("expires_on") or int(time.time()) + int(result.get("expires_in") or 300)
        return AccessToken(result["access_token"], int(expires_on))


def _jwt_claims(token: str) -> dict[str, Any]:
    """
    Decode JWT claims WITHOUT verifying signature (best-effort).
    Useful to extract oid/upn/tid from access tokens.
    """
    try:
        parts = token.split(".")
        if len(parts) < 2:
            return {}
        payload = parts[1]
        pad = "=" * (-len(payload) % 4)
        data = base64.urlsafe_b64decode(payload + pad)
        obj = json.loads(data.decode("utf-8", errors="ignore"))
        return obj if isinstance(obj, dict) else {}
    except Exception:
        return {}


def current_identity(credential: Any) -> dict[str, Any]:
    """Acquire an ARM token (fails fast on bad auth) and return who we are."""
    token = credential.get_token(ARM_SCOPE).token
    claims = _jwt_claims(token)
    return {
        "oid": claims.get("oid") or claims.get("http://schemas.microsoft.com/identity/claims/objectidentifier"),
        "upn": claims.get("upn") or claims.get("preferred_username"),
        "tid": claims.get("tid"),
    }


class StaticTokenCredential:
    """Pre-issued bearer tokens. They are bound to one tenant, so `tenant_id` is ignored."""

    def __init__(self, *, arm_token: str, graph_token: Optional[str] = None) -> None:
        self._arm_token = (arm_token or "").strip()
        self._graph_token = (graph_token or "").strip() or None

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        if any("graph.microsoft.com" in s for s in scopes):
            if not self._graph_token:
                raise ValueError("Graph token is required for Microsoft Graph scopes. Provide --graph-token or use --no-resolve-principals.")
            token = self._graph_token
        else:
            token = self._arm_token
        exp = _jwt_claims(token).get("exp")
        return AccessToken(token, int(exp) if exp else int(time.time()) + 300)


class TenantScopedCredential:
    """Pins every token request to one tenant unless the caller names another."""

    def __init__(self, credential: Any, tenant_id: str) -> None:
        self._credential = credential
        self.tenant_id = tenant_id

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        kwargs.setdefault("tenant_id", self.tenant_id)
        return self._credential.get_token(*scopes, **kwargs)

    def close(self) -> None:
        pass


def build_credential(args) -> Any:
    # Avoid `AzureCliCredential` to ensure we don't shell out to the `az` CLI.
    auth_method = (getattr(args, "auth_method", None) or "auto").strip().lower()
    if auth_method not in AUTH_METHODS:
        raise ValueError(f"Invalid --auth-method. Use one of: {', '.join(AUTH_METHODS)}")

    if getattr(args, "arm_token", None):
        return StaticTokenCredential(arm_token=args.arm_token, graph_token=getattr(args, "graph_token", None))

    # "*" lets the same credential request tokens for every tenant we walk.
    if args.client_id and args.tenant_id and args.client_secret:
        return ClientSecretCredential(
            tenant_id=args.tenant_id,
            client_id=args.client_id,
            client_secret=args.client_secret,
            additionally_allowed_tenants=["*"],
        )

    env_tid = os.getenv("AZURE_TENANT_ID")
    env_cid = os.getenv("AZURE_CLIENT_ID")
    env_sec = os.getenv("AZURE_CLIENT_SECRET")
    if auth_method in ("auto", "client-secret") and env_tid and env_cid and env_sec:
        return ClientSecretCredential(
            tenant_id=env_tid,
            client_id=env_cid,
            client_secret=env_sec,
            additionally_allowed_tenants=["*"],
        )

    if auth_method in ("auto", "az-cache") and not args.no_az_token_cache:
        try:
            return AzureMsalTokenCacheCredential(default_tenant=args.tenant_id or "organizations")
        except Exception:
            if auth_method == "az-cache":
                raise

    if auth_method == "client-secret":
        raise ValueError("client-secret auth selected but missing --tenant-id/--client-id/--client-secret (or env vars).")

    if auth_method == "az-cache":
        raise ValueError("az-cache auth selected but no Azure CLI token cache was usable. Run `az login` or use another auth method.")

    tenant_id = args.tenant_id or os.getenv("AZURE_TENANT_ID") or "organizations"
    client_id = args.device_client_id or AZURE_PUBLIC_CLIENT_ID

    def prompt_callback(verification_uri, user_code, expires_on):
        print(f"To sign in, open {verification_uri} and enter the code {user_code}.")

    return DeviceCodeCredential(
        tenant_id=tenant_id,
        client_id=client_id,
        prompt_callback=prompt_callback,
        additionally_allowed_tenants=["*"],
    )
