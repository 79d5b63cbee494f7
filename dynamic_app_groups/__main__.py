"""
Dynamic application groups — Main entry point

Usage:
    python -m dynamic_app_groups "7-Zip" "Google Chrome"
    python -m dynamic_app_groups "7-Zip" --config config.json
    python -m dynamic_app_groups "7-Zip" --tenant-id ... --client-id ... --cert-path ./base64.txt
    python -m dynamic_app_groups "7-Zip" --dry-run --verbose
    python -m dynamic_app_groups --list-permissions

Tenant credentials default to DYNAMIC_APP_GROUPS_TENANT_ID,
DYNAMIC_APP_GROUPS_CLIENT_ID and DYNAMIC_APP_GROUPS_CERT_PATH.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from . import __version__
from .auth.authenticator import Authenticator, AuthenticationError
from .config import JobConfig, CertificateAuth, ConfigurationError
from .graph.client import GraphClient
from .logs import configure_logging
from .reconciler import Reconciler
from .reporting import export_json, format_summary
from .safety.guardian import SafetyGuardian
from .services import DirectoryService, InventoryService

logger = logging.getLogger("dynamic_app_groups.main")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="dynamic-app-groups",
        description="Sync Entra ID security groups with Intune detected applications",
    )
    parser.add_argument(
        "applications",
        nargs="*",
        metavar="APP",
        help="Application display name (substring match against Intune detected apps)",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Path to JSON configuration file",
    )
    parser.add_argument("--tenant-id", default=None, help="Tenant ID (overrides config/env)")
    parser.add_argument("--client-id", default=None, help="App registration client ID (overrides config/env)")
    parser.add_argument(
        "--cert-path",
        type=Path,
        default=None,
        help="Path to base64-encoded PFX certificate (overrides config/env)",
    )
    parser.add_argument("--group-prefix", default=None, help="Group display name prefix")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for daily log files")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Resolve and diff only; no group is created and no membership is changed",
    )
    parser.add_argument(
        "--report",
        type=Path,
        default=None,
        help="Write a JSON run report to this path",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Show VERBOSE messages")
    verbosity.add_argument("--debug", action="store_true", help="Show DEBUG messages")
    parser.add_argument(
        "--list-permissions",
        action="store_true",
        help="Print the Graph application permissions this tool needs and exit",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    args = parser.parse_args(argv)
    if not args.list_permissions and not args.applications:
        parser.error("at least one application name is required")
    return args


def build_config(args: argparse.Namespace) -> JobConfig:
    """
    Build configuration from config file and environment, then CLI overrides.
    Each certificate field is taken from the first source that sets it:
    CLI flag, config file, environment.
    """
    env_config = JobConfig.from_env()
    if args.config:
        if not args.config.exists():
            raise ConfigurationError(f"Config file not found: {args.config}")
        config = JobConfig.from_file(args.config)
    else:
        config = env_config

    file_cert = config.auth.certificate
    env_cert = env_config.auth.certificate

    def pick(flag: Optional[str], name: str, default: str = "") -> str:
        if flag:
            return flag
        for cert in (file_cert, env_cert):
            if cert and getattr(cert, name):
                return getattr(cert, name)
        return default

    tenant_id = pick(args.tenant_id, "tenant_id")
    client_id = pick(args.client_id, "client_id")
    if not tenant_id or not client_id:
        raise ConfigurationError(
            "No tenant credentials found. Use --tenant-id/--client-id, --config, "
            "or DYNAMIC_APP_GROUPS_TENANT_ID/DYNAMIC_APP_GROUPS_CLIENT_ID."
        )
    config.auth.certificate = CertificateAuth(
        tenant_id=tenant_id,
        client_id=client_id,
        certificate_path=pick(
            str(args.cert_path) if args.cert_path else None,
            "certificate_path",
            "./base64.txt",
        ),
        certificate_password=pick(None, "certificate_password"),
        thumbprint=pick(None, "thumbprint"),
    )

    if args.group_prefix:
        config.sync.group_prefix = args.group_prefix
    if args.dry_run:
        config.sync.dry_run = True
    if args.log_dir:
        config.logging.log_dir = str(args.log_dir)
    if args.debug:
        config.logging.console_level = "DEBUG"
    elif args.verbose:
        config.logging.console_level = "VERBOSE"

    return config


async def run(
    config: JobConfig,
    applications: Sequence[str],
    report_path: Optional[Path] = None,
) -> int:
    """Authenticate, reconcile every application, report. Returns the exit code."""
    run_id = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]
    mode = "DRY-RUN" if config.sync.dry_run else "WRITE"
    logger.info(
        f"Run {run_id} started ({mode}) for {len(applications)} application(s)",
        extra={"action": "Start"},
    )

    authenticator = Authenticator(config.auth)
    try:
        token = await authenticator.acquire_token()
    except AuthenticationError as e:
        logger.error(str(e), extra={"action": "Authenticate"})
        return 1

    guardian = SafetyGuardian(dry_run=config.sync.dry_run)
    async with GraphClient(access_token=token, guardian=guardian) as client:
        reconciler = Reconciler(
            config.sync,
            InventoryService(client),
            DirectoryService(client),
        )
        summary = await reconciler.reconcile(applications)
        stats = client.get_stats()

    print()
    for line in format_summary(summary):
        print(line)
    print()

    if report_path:
        path = export_json(summary, report_path, run_id, guardian.get_audit_record(), stats)
        logger.info(f"Run report written to {path}", extra={"action": "Report"})

    logger.info(
        f"Run {run_id} finished: {summary.total_added} added, {summary.total_removed} removed, "
        f"{stats['total_requests']} Graph requests, exit code {summary.exit_code}",
        extra={"action": "Finish"},
    )
    return summary.exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Synchronous entry point for `python -m dynamic_app_groups`."""
    args = parse_args(argv)

    if args.list_permissions:
        for permission, reason in Authenticator.list_required_permissions().items():
            print(f"  {permission:<45s} {reason}")
        return 0

    try:
        config = build_config(args)
    except ConfigurationError as e:
        print(f"\n❌ {e}", file=sys.stderr)
        return 1

    log_path = configure_logging(config.logging)
    logger.debug(f"Logging to {log_path}", extra={"action": "Start"})
    return asyncio.run(run(config, args.applications, args.report))


if __name__ == "__main__":
    sys.exit(main())
