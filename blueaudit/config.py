from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from blueaudit.catalog import DEFAULT_REQUIRED_ROLES, RoleCatalog


DEFAULT_MAX_PARALLEL_TENANTS = 4
CONFIG_KEYS = ("roles", "tenants", "max_parallel_tenants", "include_disabled", "resolve_principals")


@dataclass
class AuditSettings:
    catalog: RoleCatalog
    tenants: list[str] = field(default_factory=list)
    max_parallel_tenants: int = DEFAULT_MAX_PARALLEL_TENANTS
    include_disabled: bool = False
    resolve_principals: bool = True


def _load_yaml(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML mapping in {path}")
    return data


def _str_list(value: Any, key: str) -> list[str]:
    if isinstance(value, str):
        return [x.strip() for x in value.split(",") if x.strip()]
    if isinstance(value, list) and all(isinstance(x, str) for x in value):
        return [x.strip() for x in value if x.strip()]
    raise ValueError(f"'{key}' must be a list of strings or a comma-separated string")


def load_config(path: Optional[str]) -> dict[str, Any]:
    """Read and validate the optional YAML configuration file."""
    if not path:
        return {}
    data = _load_yaml(path)
    unknown = sorted(set(data) - set(CONFIG_KEYS))
    if unknown:
        raise ValueError(f"Unknown configuration keys in {path}: {', '.join(unknown)}")

    out: dict[str, Any] = {}
    if "roles" in data:
        out["roles"] = _str_list(data["roles"], "roles")
    if "tenants" in data:
        out["tenants"] = _str_list(data["tenants"], "tenants")
    if "max_parallel_tenants" in data:
        n = data["max_parallel_tenants"]
        if isinstance(n, bool) or not isinstance(n, int) or n < 1:
            raise ValueError("'max_parallel_tenants' must be a positive integer")
        out["max_parallel_tenants"] = n
    for key in ("include_disabled", "resolve_principals"):
        if key in data:
            if not isinstance(data[key], bool):
                raise ValueError(f"'{key}' must be true or false")
            out[key] = data[key]
    return out


def resolve_settings(args, file_cfg: dict[str, Any]) -> AuditSettings:
    """Explicit CLI flags win over the config file, which wins over the defaults."""
    if getattr(args, "roles", None):
        catalog = RoleCatalog.from_arg(args.roles)
    else:
        catalog = RoleCatalog(file_cfg.get("roles") or DEFAULT_REQUIRED_ROLES)

    tenants = list(getattr(args, "tenant", None) or file_cfg.get("tenants") or [])

    max_parallel = getattr(args, "max_parallel_tenants", None)
    if max_parallel is None:
        max_parallel = file_cfg.get("max_parallel_tenants", DEFAULT_MAX_PARALLEL_TENANTS)
    if max_parallel < 1:
        raise ValueError("--max-parallel-tenants must be at least 1")

    include_disabled = getattr(args, "include_disabled", None)
    if include_disabled is None:
        include_disabled = file_cfg.get("include_disabled", False)

    resolve_principals = getattr(args, "resolve_principals", None)
    if resolve_principals is None:
        resolve_principals = file_cfg.get("resolve_principals", True)

    return AuditSettings(
        catalog=catalog,
        tenants=tenants,
        max_parallel_tenants=max_parallel,
        include_disabled=include_disabled,
        resolve_principals=resolve_principals,
    )
