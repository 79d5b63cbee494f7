"""
Directory Service (Entra ID)
Device lookup, group lookup/creation, and device membership changes.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..config import GRAPH_BASE_URL, GRAPH_API_VERSION
from ..models import GroupMember, TargetGroup
from .base import BaseService, ServiceError, odata_quote

logger = logging.getLogger("dynamic_app_groups.services.directory")


class DirectoryError(ServiceError):
    """Raised when a directory call fails."""
    pass


class GroupProvisioningError(DirectoryError):
    """Raised when the target group cannot be found or created."""
    pass


class DirectoryService(BaseService):
    name = "directory"
    error_class = DirectoryError

    async def find_device(self, azure_ad_device_id: str) -> Optional[str]:
        """Return the directory object id of the device with this deviceId, if any."""
        data = await self._call(
            f"Device lookup for deviceId {azure_ad_device_id}",
            self.graph.get(
                "devices",
                params={
                    "$filter": f"deviceId eq {odata_quote(azure_ad_device_id)}",
                    "$select": "id,deviceId,displayName",
                },
            ),
        )
        matches = data.get("value", [])
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                f"{len(matches)} directory devices share deviceId {azure_ad_device_id}; "
                f"using {matches[0]['id']}",
                extra={"action": "ResolveDevice"},
            )
        return matches[0]["id"]

    async def find_group(self, display_name: str) -> Optional[TargetGroup]:
        """Find a group by exact display name."""
        items = await self._call(
            f"Group lookup for '{display_name}'",
            self.graph.get_all_pages(
                "groups",
                params={
                    "$filter": f"displayName eq {odata_quote(display_name)}",
                    "$select": "id,displayName,mailNickname",
                },
            ),
        )
        # Graph compares case-insensitively; keep exact matches only
        exact = [g for g in items if g.get("displayName") == display_name]
        if not exact:
            return None
        if len(exact) > 1:
            logger.warning(
                f"{len(exact)} groups named '{display_name}'; using {exact[0]['id']}",
                extra={"action": "FindGroup"},
            )
        return TargetGroup.from_graph(exact[0])

    async def mail_nickname_in_use(self, mail_nickname: str) -> bool:
        data = await self._call(
            f"mailNickname check for '{mail_nickname}'",
            self.graph.get(
                "groups",
                params={
                    "$filter": f"mailNickname eq {odata_quote(mail_nickname)}",
                    "$select": "id",
                },
            ),
        )
        return bool(data.get("value"))

    async def create_group(
        self,
        display_name: str,
        mail_nickname: str,
        description: str = "",
    ) -> TargetGroup:
        """Create a non-mail-enabled security group."""
        body = {
            "displayName": display_name,
            "description": description,
            "groupTypes": [],
            "mailEnabled": False,
            "mailNickname": mail_nickname,
            "securityEnabled": True,
        }
        try:
            item = await self._call(
                f"Group creation for '{display_name}'",
                self.graph.post("groups", body),
            )
        except DirectoryError as e:
            raise GroupProvisioningError(str(e), e.status_code) from e
        return TargetGroup.from_graph(item, created=True)

    async def list_device_members(self, group_id: str) -> list[GroupMember]:
        """Current device members of a group. Other member types are ignored."""
        items = await self._call(
            f"Membership listing for group {group_id}",
            self.graph.get_all_pages(
                f"groups/{group_id}/members/microsoft.graph.device",
                params={"$select": "id,displayName", "$top": "999"},
            ),
        )
        return [GroupMember.from_graph(item) for item in items]

    async def add_member(self, group_id: str, directory_id: str) -> None:
        body = {
            "@odata.id": f"{GRAPH_BASE_URL}/{GRAPH_API_VERSION}/directoryObjects/{directory_id}"
        }
        await self._call(
            f"Adding {directory_id} to group {group_id}",
            self.graph.post(f"groups/{group_id}/members/$ref", body),
        )

    async def remove_member(self, group_id: str, directory_id: str) -> None:
        await self._call(
            f"Removing {directory_id} from group {group_id}",
            self.graph.delete(f"groups/{group_id}/members/{directory_id}/$ref"),
        )
