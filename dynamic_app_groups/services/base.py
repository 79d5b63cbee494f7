"""
Base service class — Shared plumbing for the Graph-backed services.
Translates transport and Graph failures into the service's own error type.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable

import httpx

from ..graph.client import GraphClient, GraphAPIError

logger = logging.getLogger("dynamic_app_groups.services")


class ServiceError(Exception):
    """Base class for failures raised by a remote service."""
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


def odata_quote(value: str) -> str:
    """Quote a string literal for an OData $filter expression."""
    return "'" + value.replace("'", "''") + "'"


class BaseService:
    """
    Wraps a GraphClient for one remote collaborator.
    Subclasses set ``error_class`` to the exception raised on failure.
    """

    name: str = "base"
    error_class: type[ServiceError] = ServiceError

    def __init__(self, graph: GraphClient):
        self.graph = graph

    async def _call(self, description: str, awaitable: Awaitable[Any]) -> Any:
        """Await a Graph call, converting failures to ``error_class``."""
        try:
            return await awaitable
        except GraphAPIError as e:
            raise self.error_class(f"{description} failed: {e}", e.status_code) from e
        except httpx.HTTPError as e:
            raise self.error_class(f"{description} failed: {type(e).__name__}: {e}") from e
