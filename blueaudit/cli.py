from __future__ import annotations

import argparse
import logging
import signal
import sys
from itertools import groupby
from typing import Optional

from termcolor import colored
from tqdm import tqdm

from blueaudit.auth import AUTH_METHODS, build_credential, current_identity
from blueaudit.azure import AzureDirectoryClient
from blueaudit.catalog import FileRosterSource, StaticRosterSource, load_roster
from blueaudit.config import load_config, resolve_settings
from blueaudit.errors import FATAL_ERRORS, AuditError
from blueaudit.progress import StageProgress
from blueaudit.reconcile import AuditEngine, ProgressEvent
from blueaudit.report import AuditReport, atomic_write_json, build_report, write_csv


EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(name)s: %(message)s")


def _err(msg: str) -> None:
    print(f"{colored('[-] ', 'red')}{msg}", file=sys.stderr)


def _print_section(title: str) -> None:
    print(colored(title, "yellow", attrs=["bold"]) + ":")


def _print_kv(key: str, value: str) -> None:
    print(f"{colored(key + ':', 'white')} {value}")


def _fmt_roles(roles, color: str) -> str:
    if not roles:
        return colored("none", "white")
    return ", ".join(colored(r, color) for r in roles)


def _print_report_stdout(report: AuditReport, *, tenant_labels: dict[str, str]) -> None:
    rows = report.rows()
    for tid, tenant_rows in groupby(rows, key=lambda r: r.tenant_id):
        label = tenant_labels.get(tid)
        title = f"Tenant {label} ({tid})" if label and label != tid else f"Tenant {tid}"
        print()
        _print_section(title)
        for sid, sub_rows in groupby(tenant_rows, key=lambda r: r.subscription_id):
            sub_rows = list(sub_rows)
            name = sub_rows[0].subscription_name or "unknown"
            print(f"  {colored(sid, 'yellow')} ({colored(name, 'blue')})")
            for r in sub_rows:
                mark = colored("[+]", "green") if not r.missing_roles else colored("[!]", "red")
                line = f"    {mark} {r.analyst}: assigned {_fmt_roles(r.assigned_roles, 'green')}; missing {_fmt_roles(r.missing_roles, 'red')}"
                if r.other_roles:
                    line += f"; other {', '.join(r.other_roles)}"
                print(line)

    print()
    _print_section("Missing permissions per analyst")
    counts = report.missing_counts()
    for analyst, count in sorted(counts.items(), key=lambda kv: (-kv[1], str(kv[0]))):
        color = "green" if count == 0 else "red"
        print(f"  {colored(str(count).rjust(4), color)}  {analyst}")

    failures = report.scope_failures()
    if failures:
        print()
        print(colored("Scope failures (these scopes are absent from the report):", "red", attrs=["bold"]))
        for f in failures:
            where = f"subscription {f.subscription_id} (tenant {f.tenant_id})" if f.subscription_id else f"tenant {f.tenant_id}"
            print(f"  - {where}: {f.cause}")

    print()
    _print_kv("Required roles", ", ".join(report.required_roles))
    _print_kv("Tenants visited", str(report.tenants_visited))
    _print_kv("Subscriptions audited", str(report.subscriptions_processed))
    if report.cancelled:
        print(f"{colored('[*] ', 'yellow')}Run was interrupted; the report only covers completed subscriptions.")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="audit",
        description="Audit whether security analysts hold the required Azure RBAC roles in every reachable tenant and subscription.",
    )
    ap.add_argument("--roster", required=True, help="Text file with one analyst sign-in name per line.")
    ap.add_argument("--roles", help="Comma-separated required role names (default: Reader, Microsoft Sentinel Responder, Security Reader).")
    ap.add_argument("--config", help="YAML file with roles/tenants/max_parallel_tenants/include_disabled/resolve_principals.")
    ap.add_argument("--tenant", action="append", help="Only audit this tenant ID (repeatable). Default: every reachable tenant.")
    ap.add_argument("--max-parallel-tenants", type=int, default=None, help="Max tenants to audit in parallel (default: 4).")
    ap.add_argument("--include-disabled", action="store_true", default=None, help="Also audit disabled subscriptions.")
    ap.add_argument(
        "--no-resolve-principals",
        dest="resolve_principals",
        action="store_false",
        default=None,
        help="Disable Microsoft Graph sign-in name resolution.",
    )
    ap.add_argument("--out-json", help="Write the full JSON report to this path (stdout stays human-readable).")
    ap.add_argument("--out-csv", help="Write one CSV line per analyst and subscription to this path.")
    ap.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    ap.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    # Auth (no az CLI).
    ap.add_argument(
        "--auth-method",
        default="auto",
        help=f"Authentication method: {', '.join(AUTH_METHODS)} (default: auto).",
    )
    ap.add_argument("--tenant-id", help="Home tenant ID (required for client-secret auth; optional for device-code).")
    ap.add_argument("--client-id", help="Service principal (app) client ID for client-secret auth.")
    ap.add_argument("--client-secret", help="Service principal client secret for client-secret auth.")
    ap.add_argument("--arm-token", help="Azure Resource Manager access token (Bearer). If provided, bypasses other auth methods.")
    ap.add_argument("--graph-token", help="Microsoft Graph access token (Bearer). Used for sign-in name resolution with --arm-token.")
    ap.add_argument("--device-client-id", help="Public client ID for device-code auth (default: Azure CLI public app id).")
    ap.add_argument(
        "--no-az-token-cache",
        action="store_true",
        help="Do not read tokens from ~/.azure/msal_token_cache.json; force device-code/client-secret auth.",
    )
    return ap


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        settings = resolve_settings(args, load_config(args.config))
    except (OSError, ValueError) as e:
        _err(f"Error: {e}")
        return EXIT_USAGE

    # The roster is validated before anything touches the directory.
    try:
        analysts = load_roster(FileRosterSource(args.roster))
    except FATAL_ERRORS as e:
        _err(str(e))
        return EXIT_FATAL

    try:
        credential = build_credential(args)
        identity = current_identity(credential)
    except Exception as e:
        _err(f"Azure authentication failed: {e}")
        return EXIT_FATAL

    client = AzureDirectoryClient(
        credential,
        tenant_filter=settings.tenants,
        include_disabled=settings.include_disabled,
        resolve_principals=settings.resolve_principals,
    )

    tenant_labels: dict[str, str] = {}

    def on_failure(ev: ProgressEvent) -> None:
        if ev.subscription_id:
            where = f"subscription {ev.subscription_id} in tenant {ev.tenant_id}"
        else:
            where = f"tenant {ev.tenant_id}"
        progress.write(f"{colored('[-] ', 'red')}Skipping {where}: {ev.detail}")

    progress = StageProgress(
        desc="Auditing tenants",
        unit="tenant",
        tqdm_factory=None if args.no_progress else tqdm,
        on_failure=on_failure,
    )

    def on_event(ev: ProgressEvent) -> None:
        if ev.kind == "tenant_started" and ev.tenant_id and ev.detail:
            tenant_labels[ev.tenant_id] = ev.detail
        progress.handle(ev)

    engine = AuditEngine(client, settings.catalog, max_workers=settings.max_parallel_tenants, on_event=on_event)

    def handle_interrupt(signum, frame):
        print(f"\n{colored('[*] ', 'yellow')}Interrupt received. Finishing the subscriptions in flight...", file=sys.stderr)
        engine.cancel()
        signal.signal(signal.SIGINT, signal.SIG_DFL)

    previous_handler = signal.signal(signal.SIGINT, handle_interrupt)
    print(f"{colored('[*] ', 'yellow')}Auditing {len(analysts)} analysts as {identity.get('upn') or identity.get('oid') or 'unknown'}")
    try:
        report = engine.run(StaticRosterSource([a.identity for a in analysts], name=args.roster))
    except AuditError as e:
        progress.close()
        _err(str(e))
        return EXIT_FATAL
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    _print_report_stdout(report, tenant_labels=tenant_labels)

    if args.out_json:
        atomic_write_json(
            args.out_json,
            build_report(report, extra_summary={"caller": identity, "tenant_filter": settings.tenants}),
        )
        print(f"{colored('[+] ', 'green')}JSON report written to {args.out_json}")
    if args.out_csv:
        n = write_csv(args.out_csv, report.rows())
        print(f"{colored('[+] ', 'green')}{n} rows written to {args.out_csv}")

    return EXIT_OK


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
