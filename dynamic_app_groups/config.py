"""
Configuration module for the dynamic application group job.
Defines authentication settings, Graph API constants, and sync behaviour.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


ENV_PREFIX = "DYNAMIC_APP_GROUPS_"


class ConfigurationError(Exception):
    """Raised when the run cannot be configured from file, env and flags."""
    pass


# ─── Tenant Authentication ───────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str          # Path to base64-encoded PFX
    certificate_password: str = "" # Will be prompted if empty
    thumbprint: str = ""

@dataclass
class AuthConfig:
    """Authentication configuration."""
    certificate: Optional[CertificateAuth] = None


# ─── Graph API Settings ─────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"

# Throttling
MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0     # First retry delay
MAX_BACKOFF_SECONDS = 120.0       # Cap on exponential backoff
BACKOFF_MULTIPLIER = 2.0          # Exponential factor

# Pagination
DEFAULT_PAGE_SIZE = 100           # managedDevices listing pages
MAX_PAGES_PER_ENDPOINT = 10000    # Safety cap on pagination loops


# ─── Sync Settings ──────────────────────────────────────────────────────────

DEFAULT_GROUP_PREFIX = "Intune - DynamicApp"


@dataclass
class SyncConfig:
    """Controls how application names map to groups and membership."""
    group_prefix: str = DEFAULT_GROUP_PREFIX
    group_description: str = "Devices with {app} installed (managed by dynamic-app-groups)"
    page_size: int = DEFAULT_PAGE_SIZE
    dry_run: bool = False
    nickname_attempts: int = 5    # Tries to find an unused mailNickname


# ─── Logging ────────────────────────────────────────────────────────────────

@dataclass
class LoggingConfig:
    """Log directory and console verbosity."""
    log_dir: str = "logs"
    console_level: str = "INFO"   # DEBUG, VERBOSE, INFO, WARNING, ERROR

    @property
    def log_path(self) -> Path:
        return Path(self.log_dir)


# ─── Master Configuration ───────────────────────────────────────────────────

@dataclass
class JobConfig:
    """Top-level configuration for one reconciliation run."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: str | Path) -> "JobConfig":
        """Load configuration from a JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a JSON object")

        config = cls()
        auth = data.get("auth")
        c = auth.get("certificate") if isinstance(auth, dict) else None
        if isinstance(c, dict):
            # Blank fields are filled from the environment or CLI later
            config.auth.certificate = CertificateAuth(
                tenant_id=c.get("tenant_id", ""),
                client_id=c.get("client_id", ""),
                certificate_path=c.get("certificate_path", ""),
                certificate_password=c.get("certificate_password", ""),
                thumbprint=c.get("thumbprint", ""),
            )
        if isinstance(data.get("sync"), dict):
            for k, v in data["sync"].items():
                if hasattr(config.sync, k):
                    setattr(config.sync, k, v)
        if isinstance(data.get("logging"), dict):
            for k, v in data["logging"].items():
                if hasattr(config.logging, k):
                    setattr(config.logging, k, v)
        return config

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "JobConfig":
        """Build configuration from DYNAMIC_APP_GROUPS_* environment variables."""
        env = os.environ if environ is None else environ
        config = cls()
        tenant_id = env.get(f"{ENV_PREFIX}TENANT_ID", "")
        client_id = env.get(f"{ENV_PREFIX}CLIENT_ID", "")
        cert_path = env.get(f"{ENV_PREFIX}CERT_PATH", "")
        if tenant_id or client_id or cert_path:
            config.auth.certificate = CertificateAuth(
                tenant_id=tenant_id,
                client_id=client_id,
                certificate_path=cert_path,
                certificate_password=env.get(f"{ENV_PREFIX}CERT_PASSWORD", ""),
            )
        if env.get(f"{ENV_PREFIX}LOG_DIR"):
            config.logging.log_dir = env[f"{ENV_PREFIX}LOG_DIR"]
        if env.get(f"{ENV_PREFIX}GROUP_PREFIX"):
            config.sync.group_prefix = env[f"{ENV_PREFIX}GROUP_PREFIX"]
        return config


# ─── Required Graph API Permissions (Application) ─────────────────────────

REQUIRED_PERMISSIONS = {
    "DeviceManagementManagedDevices.Read.All": "Read detected apps and managed devices",
    "Device.Read.All": "Resolve Entra device objects by deviceId",
    "Group.ReadWrite.All": "Find and create the per-application security groups",
    "GroupMember.ReadWrite.All": "Add and remove device members",
}
