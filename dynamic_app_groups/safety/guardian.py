"""
Safety Guardian — Restricts writes to the endpoints this job needs.
Validates every HTTP request, blocks anything else, and logs safety events.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("dynamic_app_groups.safety")

# ─── Write Allow-list ────────────────────────────────────────────────────────

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# The only writes reconciliation ever performs
ALLOWED_WRITES = [
    ("POST", re.compile(r"/groups$")),                                  # Create group
    ("POST", re.compile(r"/groups/[^/]+/members/\$ref$")),              # Add member
    ("DELETE", re.compile(r"/groups/[^/]+/members/[^/]+/\$ref$")),      # Remove member
]


class SafetyViolation(Exception):
    """Raised when a write outside the allow-list, or any write in dry-run, is attempted."""
    pass


class SafetyGuardian:
    """
    Validates every outbound HTTP request.
    In dry-run mode all writes are blocked; otherwise only ALLOWED_WRITES pass.
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self.violations: list[dict] = []
        self.checks_performed: int = 0
        self.writes_allowed: int = 0
        self.started_at: str = datetime.now(timezone.utc).isoformat()

    def validate_request(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        """
        Validate a request.
        Returns True if allowed, raises SafetyViolation if not.
        """
        self.checks_performed += 1
        method_upper = method.upper()

        if method_upper in ("GET", "HEAD", "OPTIONS"):
            return True

        if method_upper not in WRITE_METHODS:
            self._record_violation(method_upper, url, "Unknown HTTP method")
            raise SafetyViolation(f"Unknown HTTP method: {method_upper} {url}")

        if self.dry_run:
            self._record_violation(method_upper, url, "Write blocked in dry-run mode")
            raise SafetyViolation(f"Dry-run: write blocked: {method_upper} {url}")

        path = url.split("?", 1)[0]
        for allowed_method, pattern in ALLOWED_WRITES:
            if method_upper == allowed_method and pattern.search(path):
                self.writes_allowed += 1
                return True

        self._record_violation(method_upper, url, "Write outside allow-list")
        raise SafetyViolation(f"Write outside allow-list blocked: {method_upper} {url}")

    def _record_violation(self, method: str, url: str, reason: str):
        """Record a safety violation for audit."""
        violation = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "method": method,
            "url": url,
            "reason": reason,
        }
        self.violations.append(violation)
        logger.error(f"SAFETY VIOLATION: {reason} — {method} {url}", extra={"action": "Safety"})

    def get_audit_record(self) -> dict:
        """Return the safety audit record included in run reports."""
        return {
            "mode": "DRY-RUN" if self.dry_run else "WRITE",
            "started_at": self.started_at,
            "checks_performed": self.checks_performed,
            "writes_allowed": self.writes_allowed,
            "violations_detected": len(self.violations),
            "violations": self.violations,
        }
