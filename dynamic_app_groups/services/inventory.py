"""
Application Inventory Service (Intune)
Finds detected applications and the managed devices that report them.
"""

from __future__ import annotations

import logging
from typing import AsyncGenerator

import httpx

from ..config import DEFAULT_PAGE_SIZE
from ..graph.client import GraphAPIError
from ..models import DetectedApplication, ManagedDevice
from .base import BaseService, ServiceError, odata_quote

logger = logging.getLogger("dynamic_app_groups.services.inventory")


class InventoryQueryError(ServiceError):
    """Raised when the inventory service cannot be queried."""
    pass


class InventoryService(BaseService):
    name = "inventory"
    error_class = InventoryQueryError

    async def find_detected_apps(self, name: str) -> list[DetectedApplication]:
        """All detected application records whose display name contains ``name``."""
        items = await self._call(
            f"Detected app query for '{name}'",
            self.graph.get_all_pages(
                "deviceManagement/detectedApps",
                params={
                    "$filter": f"contains(displayName, {odata_quote(name)})",
                    "$select": "id,displayName,version,deviceCount",
                },
            ),
        )
        return [DetectedApplication.from_graph(item) for item in items]

    async def iter_managed_device_pages(
        self,
        app_id: str,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AsyncGenerator[list[ManagedDevice], None]:
        """
        Yield the managed devices of one detected app, a page at a time,
        ordered by device name.
        """
        pages = self.graph.iter_pages(
            f"deviceManagement/detectedApps/{app_id}/managedDevices",
            params={
                "$select": "id,deviceName",
                "$orderby": "deviceName",
                "$top": str(page_size),
            },
        )
        try:
            async for page in pages:
                yield [ManagedDevice.from_graph(item) for item in page]
        except GraphAPIError as e:
            raise InventoryQueryError(
                f"Managed device listing for app {app_id} failed: {e}", e.status_code
            ) from e
        except httpx.HTTPError as e:
            raise InventoryQueryError(
                f"Managed device listing for app {app_id} failed: {type(e).__name__}: {e}"
            ) from e

    async def get_managed_device(self, device_id: str) -> ManagedDevice:
        """Fetch one managed device, including its Entra device id."""
        item = await self._call(
            f"Managed device lookup for {device_id}",
            self.graph.get(
                f"deviceManagement/managedDevices/{device_id}",
                params={"$select": "id,deviceName,azureADDeviceId,operatingSystem"},
            ),
        )
        return ManagedDevice.from_graph(item)
