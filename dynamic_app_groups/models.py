"""
Data models — Typed records built from Graph responses during one run.
Nothing here is persisted; every run rebuilds state from the API.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class DetectedApplication:
    """One application/version pair reported by Intune."""
    id: str
    display_name: str
    version: str = ""
    device_count: int = 0

    @classmethod
    def from_graph(cls, item: dict) -> "DetectedApplication":
        return cls(
            id=item["id"],
            display_name=item.get("displayName") or "",
            version=item.get("version") or "",
            device_count=item.get("deviceCount") or 0,
        )

    @property
    def label(self) -> str:
        return f"{self.display_name} {self.version}".strip()


@dataclass(frozen=True)
class ManagedDevice:
    """A device enrolled in Intune."""
    id: str
    device_name: str
    azure_ad_device_id: str = ""
    operating_system: str = ""

    @classmethod
    def from_graph(cls, item: dict) -> "ManagedDevice":
        azure_ad_device_id = item.get("azureADDeviceId") or ""
        # Intune reports unregistered devices with an all-zero id
        if azure_ad_device_id.strip("0-") == "":
            azure_ad_device_id = ""
        return cls(
            id=item["id"],
            device_name=item.get("deviceName") or "",
            azure_ad_device_id=azure_ad_device_id,
            operating_system=item.get("operatingSystem") or "",
        )


@dataclass(frozen=True)
class DeviceBinding:
    """A managed device paired with the id of its Entra device object."""
    managed_device: ManagedDevice
    directory_id: str

    @property
    def name(self) -> str:
        return self.managed_device.device_name


@dataclass(frozen=True)
class TargetGroup:
    """The security group that mirrors one application's install base."""
    id: str
    display_name: str
    mail_nickname: str = ""
    created: bool = False

    @classmethod
    def from_graph(cls, item: dict, created: bool = False) -> "TargetGroup":
        return cls(
            id=item["id"],
            display_name=item.get("displayName") or "",
            mail_nickname=item.get("mailNickname") or "",
            created=created,
        )


@dataclass(frozen=True)
class GroupMember:
    """A device currently in a target group."""
    id: str
    display_name: str = ""

    @classmethod
    def from_graph(cls, item: dict) -> "GroupMember":
        return cls(id=item["id"], display_name=item.get("displayName") or "")


@dataclass
class MembershipDiff:
    """Changes needed to make group membership match the install set."""
    to_add: list[DeviceBinding] = field(default_factory=list)
    to_remove: list[GroupMember] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.to_add and not self.to_remove


# Values of ApplicationResult.status
STATUS_SYNCED = "synced"
STATUS_NO_MATCHES = "no_matches"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


@dataclass
class ApplicationResult:
    """Outcome of reconciling one application name."""
    application_name: str
    group_name: str
    status: str = STATUS_SYNCED
    group: Optional[TargetGroup] = None
    matched_apps: list[DetectedApplication] = field(default_factory=list)
    installed_count: int = 0
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    error: str = ""
    failed_step: str = ""          # inventory, group or membership
    dry_run: bool = False

    @property
    def inventory_failed(self) -> bool:
        return self.status == STATUS_FAILED and self.failed_step == "inventory"

    def to_dict(self) -> dict:
        return {
            "application_name": self.application_name,
            "group_name": self.group_name,
            "group_id": self.group.id if self.group else None,
            "group_created": self.group.created if self.group else False,
            "status": self.status,
            "dry_run": self.dry_run,
            "matched_apps": [
                {"id": a.id, "display_name": a.display_name, "version": a.version}
                for a in self.matched_apps
            ],
            "installed_count": self.installed_count,
            "added": self.added,
            "removed": self.removed,
            "unresolved": self.unresolved,
            "failures": self.failures,
            "error": self.error,
            "failed_step": self.failed_step,
        }


@dataclass
class RunSummary:
    """All application results of one invocation."""
    results: list[ApplicationResult] = field(default_factory=list)

    @property
    def total_added(self) -> int:
        return sum(len(r.added) for r in self.results)

    @property
    def total_removed(self) -> int:
        return sum(len(r.removed) for r in self.results)

    @property
    def exit_code(self) -> int:
        """Non-zero when any inventory query failed; per-member failures don't count."""
        return 1 if any(r.inventory_failed for r in self.results) else 0

    def to_dict(self) -> dict:
        return {
            "total_added": self.total_added,
            "total_removed": self.total_removed,
            "exit_code": self.exit_code,
            "applications": [r.to_dict() for r in self.results],
        }
