from .base import BaseService, ServiceError, odata_quote
from .inventory import InventoryService, InventoryQueryError
from .directory import DirectoryService, DirectoryError, GroupProvisioningError

__all__ = [
    "BaseService",
    "ServiceError",
    "odata_quote",
    "InventoryService",
    "InventoryQueryError",
    "DirectoryService",
    "DirectoryError",
    "GroupProvisioningError",
]
