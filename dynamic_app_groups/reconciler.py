"""
Reconciler — Keeps one security group per application in step with the
devices Intune reports as having that application installed.

Application names are processed strictly one after another, and every
Graph call is awaited before the next is issued.
"""

from __future__ import annotations

import logging
import random
import re
from typing import Iterable, Optional

from .config import SyncConfig
from .logs import VERBOSE
from .models import (
    ApplicationResult,
    DetectedApplication,
    DeviceBinding,
    GroupMember,
    MembershipDiff,
    RunSummary,
    TargetGroup,
    STATUS_FAILED,
    STATUS_NO_MATCHES,
    STATUS_SKIPPED,
)
from .safety.guardian import SafetyViolation
from .services.directory import DirectoryError, DirectoryService, GroupProvisioningError
from .services.inventory import InventoryQueryError, InventoryService

logger = logging.getLogger("dynamic_app_groups.reconciler")

MAIL_NICKNAME_MAX = 64
_NICKNAME_INVALID = re.compile(r"[^A-Za-z0-9._-]+")


def group_name_for(application_name: str, prefix: str) -> str:
    """Display name of the group that tracks ``application_name``."""
    return f"{prefix} - {application_name}"


def compute_diff(
    installed: Iterable[DeviceBinding],
    current: Iterable[GroupMember],
) -> MembershipDiff:
    """Set difference keyed by directory object id."""
    installed_by_id = {b.directory_id: b for b in installed}
    current_by_id = {m.id: m for m in current}

    diff = MembershipDiff()
    for directory_id, binding in installed_by_id.items():
        if directory_id in current_by_id:
            diff.unchanged.append(directory_id)
        else:
            diff.to_add.append(binding)
    for member_id, member in current_by_id.items():
        if member_id not in installed_by_id:
            diff.to_remove.append(member)
    return diff


class Reconciler:
    """
    Reconciles group membership for a list of application names.

    Failures are isolated per application name: an inventory failure for one
    name is recorded and the run moves on to the next one.
    """

    def __init__(
        self,
        config: SyncConfig,
        inventory: InventoryService,
        directory: DirectoryService,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.inventory = inventory
        self.directory = directory
        self._rng = rng or random.Random()

    def group_name_for(self, application_name: str) -> str:
        return group_name_for(application_name, self.config.group_prefix)

    async def reconcile(self, application_names: Iterable[str]) -> RunSummary:
        summary = RunSummary()
        seen: set[str] = set()

        for raw_name in application_names:
            name = raw_name.strip()
            if not name or name in seen:
                logger.warning(
                    f"Skipping {'blank' if not name else 'duplicate'} application name {raw_name!r}",
                    extra={"action": "Start"},
                )
                summary.results.append(ApplicationResult(
                    application_name=raw_name,
                    group_name=self.group_name_for(name) if name else "",
                    status=STATUS_SKIPPED,
                    dry_run=self.config.dry_run,
                ))
                continue
            seen.add(name)
            summary.results.append(await self.reconcile_application(name))

        return summary

    async def reconcile_application(self, name: str) -> ApplicationResult:
        result = ApplicationResult(
            application_name=name,
            group_name=self.group_name_for(name),
            dry_run=self.config.dry_run,
        )
        logger.info(f"Processing application '{name}'", extra={"action": "Start"})

        # 1. Inventory
        try:
            apps = await self.inventory.find_detected_apps(name)
        except InventoryQueryError as e:
            return self._fail(result, "inventory", f"Inventory query failed: {e}", "FindApps")

        if not apps:
            logger.info(f"No detected applications match '{name}'", extra={"action": "FindApps"})
            result.status = STATUS_NO_MATCHES
            return result
        result.matched_apps = apps
        for app in apps:
            logger.log(VERBOSE, f"Matched {app.label} ({app.id})", extra={"action": "FindApps"})

        # 2. Target group
        try:
            group = await self._ensure_group(name, result.group_name)
        except (DirectoryError, SafetyViolation) as e:
            return self._fail(result, "group", f"Group lookup/creation failed: {e}", "EnsureGroup")
        result.group = group

        # 3. Install set
        try:
            installed = await self._collect_installed(apps, result)
        except InventoryQueryError as e:
            return self._fail(result, "inventory", f"Inventory query failed: {e}", "ResolveDevice")
        except DirectoryError as e:
            return self._fail(result, "resolve", f"Device resolution failed: {e}", "ResolveDevice")
        result.installed_count = len(installed)

        # 4. Current membership
        if group is None:
            current: list[GroupMember] = []
        else:
            try:
                current = await self.directory.list_device_members(group.id)
            except DirectoryError as e:
                return self._fail(result, "membership", f"Membership check failed: {e}", "CheckMembership")

        # 5. Diff and apply
        diff = compute_diff(installed, current)
        await self._apply(group, diff, result)

        # 6. Summary
        self._log_summary(result, diff)
        return result

    # ------------------------------------------------------------------

    async def _ensure_group(self, name: str, display_name: str) -> Optional[TargetGroup]:
        group = await self.directory.find_group(display_name)
        if group:
            logger.log(VERBOSE, f"Found group '{display_name}' ({group.id})", extra={"action": "EnsureGroup"})
            return group

        if self.config.dry_run:
            logger.info(f"[dry-run] Would create group '{display_name}'", extra={"action": "EnsureGroup"})
            return None

        mail_nickname = await self._unused_mail_nickname(name)
        group = await self.directory.create_group(
            display_name,
            mail_nickname,
            self.config.group_description.format(app=name),
        )
        logger.info(
            f"Created group '{display_name}' ({group.id}, mailNickname {mail_nickname})",
            extra={"action": "EnsureGroup"},
        )
        return group

    def _mail_nickname_candidate(self, name: str) -> str:
        slug = _NICKNAME_INVALID.sub("-", name).strip("-.") or "app"
        suffix = f"{self._rng.randrange(10**6):06d}"
        base = f"DynamicApp-{slug}"[:MAIL_NICKNAME_MAX - len(suffix) - 1]
        return f"{base}-{suffix}"

    async def _unused_mail_nickname(self, name: str) -> str:
        for _ in range(self.config.nickname_attempts):
            candidate = self._mail_nickname_candidate(name)
            if not await self.directory.mail_nickname_in_use(candidate):
                return candidate
            logger.debug(f"mailNickname {candidate} already taken", extra={"action": "EnsureGroup"})
        raise GroupProvisioningError(
            f"No unused mailNickname for '{name}' after {self.config.nickname_attempts} attempts"
        )

    async def _collect_installed(
        self,
        apps: list[DetectedApplication],
        result: ApplicationResult,
    ) -> list[DeviceBinding]:
        """Resolve every device of every matched app version, across all pages."""
        bindings: dict[str, DeviceBinding] = {}
        seen_devices: set[str] = set()

        for app in apps:
            page_number = 0
            async for page in self.inventory.iter_managed_device_pages(app.id, self.config.page_size):
                page_number += 1
                logger.debug(
                    f"{app.label}: page {page_number} with {len(page)} devices",
                    extra={"action": "ResolveDevice"},
                )
                for listed in page:
                    if listed.id in seen_devices:
                        continue
                    seen_devices.add(listed.id)
                    binding = await self._resolve(listed.id, listed.device_name, result)
                    if binding:
                        bindings.setdefault(binding.directory_id, binding)

        return list(bindings.values())

    async def _resolve(
        self,
        managed_device_id: str,
        device_name: str,
        result: ApplicationResult,
    ) -> Optional[DeviceBinding]:
        device = await self.inventory.get_managed_device(managed_device_id)
        if not device.azure_ad_device_id:
            logger.warning(
                f"{device.device_name or device_name} has no Entra device id; skipped",
                extra={"action": "ResolveDevice"},
            )
            result.unresolved.append(device.device_name or device_name)
            return None

        directory_id = await self.directory.find_device(device.azure_ad_device_id)

        if not directory_id:
            logger.warning(
                f"{device.device_name}: no directory device with deviceId "
                f"{device.azure_ad_device_id}; skipped",
                extra={"action": "ResolveDevice"},
            )
            result.unresolved.append(device.device_name)
            return None

        logger.log(
            VERBOSE,
            f"{device.device_name} -> {directory_id}",
            extra={"action": "ResolveDevice"},
        )
        return DeviceBinding(managed_device=device, directory_id=directory_id)

    async def _apply(
        self,
        group: Optional[TargetGroup],
        diff: MembershipDiff,
        result: ApplicationResult,
    ) -> None:
        if self.config.dry_run or group is None:
            for binding in diff.to_add:
                logger.info(f"[dry-run] Would add {binding.name}", extra={"action": "AddMember"})
                result.added.append(binding.name)
            for member in diff.to_remove:
                logger.info(f"[dry-run] Would remove {member.display_name}", extra={"action": "RemoveMember"})
                result.removed.append(member.display_name)
            return

        for binding in diff.to_add:
            try:
                await self.directory.add_member(group.id, binding.directory_id)
            except (DirectoryError, SafetyViolation) as e:
                logger.warning(f"Could not add {binding.name}: {e}", extra={"action": "AddMember"})
                result.failures.append(f"add {binding.name}: {e}")
                continue
            logger.info(f"Added {binding.name} to '{group.display_name}'", extra={"action": "AddMember"})
            result.added.append(binding.name)

        for member in diff.to_remove:
            try:
                await self.directory.remove_member(group.id, member.id)
            except (DirectoryError, SafetyViolation) as e:
                logger.warning(f"Could not remove {member.display_name}: {e}", extra={"action": "RemoveMember"})
                result.failures.append(f"remove {member.display_name}: {e}")
                continue
            logger.info(
                f"Removed {member.display_name} from '{group.display_name}'",
                extra={"action": "RemoveMember"},
            )
            result.removed.append(member.display_name)

    def _log_summary(self, result: ApplicationResult, diff: MembershipDiff) -> None:
        if diff.in_sync:
            logger.info(
                f"'{result.group_name}' already in sync ({len(diff.unchanged)} devices)",
                extra={"action": "Summary"},
            )
            return
        verb = "would be " if result.dry_run else ""
        logger.info(
            f"'{result.group_name}': {len(result.added)} {verb}added"
            f"{' (' + ', '.join(result.added) + ')' if result.added else ''}, "
            f"{len(result.removed)} {verb}removed"
            f"{' (' + ', '.join(result.removed) + ')' if result.removed else ''}",
            extra={"action": "Summary"},
        )
        if result.failures:
            logger.warning(
                f"'{result.group_name}': {len(result.failures)} membership changes failed",
                extra={"action": "Summary"},
            )

    def _fail(self, result: ApplicationResult, step: str, message: str, action: str) -> ApplicationResult:
        logger.error(message, extra={"action": action})
        result.status = STATUS_FAILED
        result.failed_step = step
        result.error = message
        return result
