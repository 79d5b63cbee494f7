from __future__ import annotations

import json

import httpx
import pytest
import respx

from dynamic_app_groups.graph.client import GraphClient
from dynamic_app_groups.safety.guardian import SafetyGuardian
from dynamic_app_groups.services import (
    DirectoryError,
    DirectoryService,
    GroupProvisioningError,
    InventoryQueryError,
    InventoryService,
    odata_quote,
)

GRAPH = "graph.microsoft.com"


def _client(dry_run: bool = False) -> GraphClient:
    return GraphClient("token", SafetyGuardian(dry_run=dry_run), initial_backoff=0, max_retries=1)


def test_odata_quote_doubles_single_quotes() -> None:
    assert odata_quote("Paint.NET") == "'Paint.NET'"
    assert odata_quote("Bob's Tool") == "'Bob''s Tool'"


@pytest.mark.asyncio
async def test_find_detected_apps_filters_by_substring(respx_mock: respx.Router) -> None:
    captured: list[httpx.Request] = []

    def _responder(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"value": [
            {"id": "a1", "displayName": "7-Zip 19.00 (x64)", "version": "19.00", "deviceCount": 3},
            {"id": "a2", "displayName": "7-Zip 23.01 (x64)", "version": "23.01", "deviceCount": 5},
        ]})

    respx_mock.get(host=GRAPH, path="/v1.0/deviceManagement/detectedApps").mock(side_effect=_responder)

    async with _client() as client:
        apps = await InventoryService(client).find_detected_apps("7-Zip")

    assert [a.id for a in apps] == ["a1", "a2"]
    assert apps[1].version == "23.01"
    assert captured[0].url.params["$filter"] == "contains(displayName, '7-Zip')"


@pytest.mark.asyncio
async def test_find_detected_apps_raises_inventory_error(respx_mock: respx.Router) -> None:
    respx_mock.get(host=GRAPH, path="/v1.0/deviceManagement/detectedApps").mock(
        return_value=httpx.Response(403, json={"error": {"message": "Forbidden"}})
    )

    async with _client() as client:
        with pytest.raises(InventoryQueryError) as exc_info:
            await InventoryService(client).find_detected_apps("7-Zip")

    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_managed_device_pages_follow_next_link(respx_mock: respx.Router) -> None:
    path = "/v1.0/deviceManagement/detectedApps/a1/managedDevices"
    next_link = f"https://{GRAPH}{path}?$skiptoken=page2"
    route = respx_mock.get(host=GRAPH, path=path).mock(side_effect=[
        httpx.Response(200, json={
            "value": [{"id": "m1", "deviceName": "PC-001"}, {"id": "m2", "deviceName": "PC-002"}],
            "@odata.nextLink": next_link,
        }),
        httpx.Response(200, json={"value": [{"id": "m3", "deviceName": "PC-003"}]}),
    ])

    async with _client() as client:
        pages = [
            [d.device_name for d in page]
            async for page in InventoryService(client).iter_managed_device_pages("a1", page_size=2)
        ]

    assert pages == [["PC-001", "PC-002"], ["PC-003"]]
    first, second = route.calls
    assert first.request.url.params["$orderby"] == "deviceName"
    assert first.request.url.params["$top"] == "2"
    assert second.request.url.params["$skiptoken"] == "page2"


@pytest.mark.asyncio
async def test_managed_device_page_failure_is_inventory_error(respx_mock: respx.Router) -> None:
    respx_mock.get(host=GRAPH, path="/v1.0/deviceManagement/detectedApps/a1/managedDevices").mock(
        return_value=httpx.Response(500, json={"error": {"message": "boom"}})
    )

    async with _client() as client:
        with pytest.raises(InventoryQueryError):
            async for _ in InventoryService(client).iter_managed_device_pages("a1"):
                pass


@pytest.mark.asyncio
async def test_get_managed_device_reads_azure_ad_device_id(respx_mock: respx.Router) -> None:
    respx_mock.get(host=GRAPH, path="/v1.0/deviceManagement/managedDevices/m1").mock(
        return_value=httpx.Response(200, json={
            "id": "m1",
            "deviceName": "PC-001",
            "azureADDeviceId": "b0f8e2a4-0000-4000-8000-000000000001",
            "operatingSystem": "Windows",
        })
    )

    async with _client() as client:
        device = await InventoryService(client).get_managed_device("m1")

    assert device.azure_ad_device_id == "b0f8e2a4-0000-4000-8000-000000000001"
    assert device.operating_system == "Windows"


@pytest.mark.asyncio
async def test_find_device_returns_directory_object_id(respx_mock: respx.Router) -> None:
    route = respx_mock.get(host=GRAPH, path="/v1.0/devices").mock(
        return_value=httpx.Response(200, json={"value": [{"id": "dir-1", "deviceId": "aad-1"}]})
    )

    async with _client() as client:
        directory_id = await DirectoryService(client).find_device("aad-1")

    assert directory_id == "dir-1"
    assert route.calls.last.request.url.params["$filter"] == "deviceId eq 'aad-1'"


@pytest.mark.asyncio
async def test_find_device_returns_none_when_missing(respx_mock: respx.Router) -> None:
    respx_mock.get(host=GRAPH, path="/v1.0/devices").mock(
        return_value=httpx.Response(200, json={"value": []})
    )

    async with _client() as client:
        assert await DirectoryService(client).find_device("aad-404") is None


@pytest.mark.asyncio
async def test_find_group_requires_exact_display_name(respx_mock: respx.Router) -> None:
    respx_mock.get(host=GRAPH, path="/v1.0/groups").mock(
        return_value=httpx.Response(200, json={"value": [
            {"id": "g-lower", "displayName": "intune - dynamicapp - 7-zip"},
            {"id": "g1", "displayName": "Intune - DynamicApp - 7-Zip", "mailNickname": "DynamicApp-7-Zip-1"},
        ]})
    )

    async with _client() as client:
        group = await DirectoryService(client).find_group("Intune - DynamicApp - 7-Zip")

    assert group.id == "g1"
    assert group.mail_nickname == "DynamicApp-7-Zip-1"
    assert not group.created


@pytest.mark.asyncio
async def test_create_group_posts_security_group(respx_mock: respx.Router) -> None:
    route = respx_mock.post(host=GRAPH, path="/v1.0/groups").mock(
        return_value=httpx.Response(201, json={
            "id": "g-new",
            "displayName": "Intune - DynamicApp - 7-Zip",
            "mailNickname": "DynamicApp-7-Zip-000123",
        })
    )

    async with _client() as client:
        group = await DirectoryService(client).create_group(
            "Intune - DynamicApp - 7-Zip", "DynamicApp-7-Zip-000123", "Devices with 7-Zip installed"
        )

    body = json.loads(route.calls.last.request.content)
    assert body["mailEnabled"] is False
    assert body["securityEnabled"] is True
    assert body["groupTypes"] == []
    assert body["mailNickname"] == "DynamicApp-7-Zip-000123"
    assert group.id == "g-new"
    assert group.created


@pytest.mark.asyncio
async def test_create_group_failure_is_provisioning_error(respx_mock: respx.Router) -> None:
    respx_mock.post(host=GRAPH, path="/v1.0/groups").mock(
        return_value=httpx.Response(400, json={"error": {"message": "Another object with the same value"}})
    )

    async with _client() as client:
        with pytest.raises(GroupProvisioningError):
            await DirectoryService(client).create_group("X", "x-1")


@pytest.mark.asyncio
async def test_list_device_members_reads_all_pages(respx_mock: respx.Router) -> None:
    path = "/v1.0/groups/g1/members/microsoft.graph.device"
    respx_mock.get(host=GRAPH, path=path).mock(side_effect=[
        httpx.Response(200, json={
            "value": [{"id": "dir-1", "displayName": "PC-001"}],
            "@odata.nextLink": f"https://{GRAPH}{path}?$skiptoken=2",
        }),
        httpx.Response(200, json={"value": [{"id": "dir-2", "displayName": "PC-002"}]}),
    ])

    async with _client() as client:
        members = await DirectoryService(client).list_device_members("g1")

    assert [m.display_name for m in members] == ["PC-001", "PC-002"]


@pytest.mark.asyncio
async def test_add_and_remove_member(respx_mock: respx.Router) -> None:
    add = respx_mock.post(host=GRAPH, path="/v1.0/groups/g1/members/$ref").mock(
        return_value=httpx.Response(204)
    )
    remove = respx_mock.delete(host=GRAPH, path="/v1.0/groups/g1/members/dir-2/$ref").mock(
        return_value=httpx.Response(204)
    )

    async with _client() as client:
        service = DirectoryService(client)
        await service.add_member("g1", "dir-1")
        await service.remove_member("g1", "dir-2")

    assert json.loads(add.calls.last.request.content) == {
        "@odata.id": "https://graph.microsoft.com/v1.0/directoryObjects/dir-1"
    }
    assert remove.called


@pytest.mark.asyncio
async def test_remove_member_failure_is_directory_error(respx_mock: respx.Router) -> None:
    respx_mock.delete(host=GRAPH, path="/v1.0/groups/g1/members/dir-2/$ref").mock(
        return_value=httpx.Response(404, json={"error": {"message": "Not found"}})
    )

    async with _client() as client:
        with pytest.raises(DirectoryError) as exc_info:
            await DirectoryService(client).remove_member("g1", "dir-2")

    assert exc_info.value.status_code == 404
