"""
Run reporting — console summary and optional JSON export of one run.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from . import __version__
from .models import RunSummary, STATUS_FAILED, STATUS_NO_MATCHES, STATUS_SKIPPED


def format_summary(summary: RunSummary) -> list[str]:
    """Human-readable lines, one block per application."""
    lines = []
    for r in summary.results:
        if r.status == STATUS_SKIPPED:
            lines.append(f"  ⏭  {r.application_name!r}: skipped")
            continue
        if r.status == STATUS_NO_MATCHES:
            lines.append(f"  ·  {r.application_name}: no detected applications, nothing to do")
            continue
        if r.status == STATUS_FAILED:
            lines.append(f"  ❌ {r.application_name}: {r.error}")
            continue

        prefix = "[dry-run] " if r.dry_run else ""
        if not r.added and not r.removed:
            lines.append(f"  ✅ {prefix}{r.group_name}: in sync ({r.installed_count} devices)")
        else:
            lines.append(
                f"  ✅ {prefix}{r.group_name}: +{len(r.added)} / -{len(r.removed)} "
                f"({r.installed_count} devices installed)"
            )
            for name in r.added:
                lines.append(f"      + {name}")
            for name in r.removed:
                lines.append(f"      - {name}")
        for failure in r.failures:
            lines.append(f"      ⚠  {failure}")
        if r.unresolved:
            lines.append(f"      ⚠  {len(r.unresolved)} devices without a directory identity")
    lines.append(
        f"  Total: {summary.total_added} added, {summary.total_removed} removed, "
        f"exit code {summary.exit_code}"
    )
    return lines


def export_json(
    summary: RunSummary,
    path: Path,
    run_id: str,
    audit: Optional[dict] = None,
    stats: Optional[dict] = None,
) -> Path:
    """
    Write the run summary to a JSON file.

    Returns:
        Path to the created JSON file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    payload: dict[str, Any] = {
        "metadata": {
            "tool": "dynamic-app-groups",
            "version": __version__,
            "run_id": run_id,
            "generated_utc": datetime.now(timezone.utc).isoformat(),
        },
        "summary": summary.to_dict(),
    }
    if audit is not None:
        payload["safety"] = audit
    if stats is not None:
        payload["graph"] = stats

    with open(path, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str, ensure_ascii=False)

    return path
