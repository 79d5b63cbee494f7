from __future__ import annotations

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest
import respx

from dynamic_app_groups.graph.client import GraphAPIError, GraphClient, _retry_after_seconds
from dynamic_app_groups.safety.guardian import SafetyGuardian, SafetyViolation

GRAPH = "graph.microsoft.com"


@pytest.mark.asyncio
async def test_throttled_request_is_retried(respx_mock: respx.Router) -> None:
    route = respx_mock.get(host=GRAPH, path="/v1.0/groups").mock(side_effect=[
        httpx.Response(429, headers={"Retry-After": "0"}, json={"error": {"message": "Too many requests"}}),
        httpx.Response(200, json={"value": [{"id": "g1"}]}),
    ])

    async with GraphClient("token", SafetyGuardian(), initial_backoff=0) as client:
        data = await client.get("groups")
        stats = client.get_stats()

    assert data["value"] == [{"id": "g1"}]
    assert route.call_count == 2
    assert stats == {"total_requests": 2, "throttle_events": 1}


@pytest.mark.asyncio
async def test_retry_after_http_date_is_honoured(respx_mock: respx.Router) -> None:
    route = respx_mock.get(host=GRAPH, path="/v1.0/groups").mock(side_effect=[
        httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}),
        httpx.Response(200, json={"value": [{"id": "g1"}]}),
    ])

    async with GraphClient("token", SafetyGuardian(), initial_backoff=0) as client:
        data = await client.get("groups")

    assert data["value"] == [{"id": "g1"}]
    assert route.call_count == 2


@pytest.mark.asyncio
async def test_unparseable_retry_after_falls_back_to_backoff(respx_mock: respx.Router) -> None:
    route = respx_mock.get(host=GRAPH, path="/v1.0/groups").mock(side_effect=[
        httpx.Response(503, headers={"Retry-After": "soon"}),
        httpx.Response(200, json={"value": []}),
    ])

    async with GraphClient("token", SafetyGuardian(), initial_backoff=0) as client:
        data = await client.get("groups")

    assert data == {"value": []}
    assert route.call_count == 2


def test_retry_after_seconds_parsing() -> None:
    assert _retry_after_seconds("7", 2.0) == 7.0
    assert _retry_after_seconds(None, 2.0) == 2.0
    assert _retry_after_seconds("not a date", 2.0) == 2.0
    assert _retry_after_seconds("Wed, 21 Oct 2015 07:28:00 GMT", 2.0) == 0.0
    future = format_datetime(datetime.now(timezone.utc) + timedelta(seconds=90), usegmt=True)
    assert 0 < _retry_after_seconds(future, 2.0) <= 90


@pytest.mark.asyncio
async def test_throttling_gives_up_after_max_retries(respx_mock: respx.Router) -> None:
    respx_mock.get(host=GRAPH, path="/v1.0/groups").mock(
        return_value=httpx.Response(503, headers={"Retry-After": "0"})
    )

    async with GraphClient("token", SafetyGuardian(), initial_backoff=0, max_retries=2) as client:
        with pytest.raises(GraphAPIError) as exc_info:
            await client.get("groups")

    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_error_message_comes_from_graph_body(respx_mock: respx.Router) -> None:
    respx_mock.get(host=GRAPH, path="/v1.0/devices").mock(
        return_value=httpx.Response(400, json={"error": {"message": "Invalid filter clause"}})
    )

    async with GraphClient("token", SafetyGuardian()) as client:
        with pytest.raises(GraphAPIError, match="Invalid filter clause"):
            await client.get("devices")


@pytest.mark.asyncio
async def test_bearer_token_is_sent(respx_mock: respx.Router) -> None:
    route = respx_mock.get(host=GRAPH, path="/v1.0/groups").mock(
        return_value=httpx.Response(200, json={"value": []})
    )

    async with GraphClient("secret-token", SafetyGuardian()) as client:
        await client.get("groups")

    assert route.calls.last.request.headers["Authorization"] == "Bearer secret-token"


@pytest.mark.asyncio
async def test_pages_are_fetched_lazily(respx_mock: respx.Router) -> None:
    route = respx_mock.get(host=GRAPH, path="/v1.0/groups").mock(side_effect=[
        httpx.Response(200, json={"value": [1], "@odata.nextLink": f"https://{GRAPH}/v1.0/groups?$skiptoken=2"}),
        httpx.Response(200, json={"value": [2]}),
    ])

    async with GraphClient("token", SafetyGuardian()) as client:
        pages = client.iter_pages("groups")
        first = await pages.__anext__()
        assert first == [1]
        assert route.call_count == 1
        rest = [page async for page in pages]

    assert rest == [[2]]
    assert route.call_count == 2


@pytest.mark.asyncio
async def test_delete_with_no_content(respx_mock: respx.Router) -> None:
    respx_mock.delete(host=GRAPH, path="/v1.0/groups/g1/members/d1/$ref").mock(
        return_value=httpx.Response(204)
    )

    async with GraphClient("token", SafetyGuardian()) as client:
        assert await client.delete("groups/g1/members/d1/$ref") is None


@pytest.mark.asyncio
async def test_dry_run_blocks_writes_before_sending() -> None:
    guardian = SafetyGuardian(dry_run=True)

    async with GraphClient("token", guardian) as client:
        with pytest.raises(SafetyViolation):
            await client.post("groups", {"displayName": "x"})

    assert len(guardian.violations) == 1


@pytest.mark.asyncio
async def test_client_requires_context_manager() -> None:
    client = GraphClient("token", SafetyGuardian())

    with pytest.raises(RuntimeError):
        await client.get("groups")
