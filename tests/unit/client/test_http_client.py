import asyncio
import json

import httpx
import pytest

from attio_core.batch import BatchItem
from attio_core.cancellation import AbortController, AbortSignal
from attio_core.client import AttioClient, ClientHooks
from attio_core.client.hooks import CORRELATION_ID_HEADER
from attio_core.config import FrozenConfig
from attio_core.exceptions import (
    ClientError,
    ConfigurationError,
    OperationCancelledError,
    RateLimitError,
    RequestTimeoutError,
    ResponseValidationError,
    ServerError,
    TransportError,
)

pytestmark = pytest.mark.unit


def json_response(status: int = 200, body=None, **kwargs) -> httpx.Response:
    return httpx.Response(status, json=body if body is not None else {}, **kwargs)


def sequence(*responses):
    """Handler serving ``responses`` in order; exceptions are raised."""
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return handler


# --- Construction ---


def test_missing_api_key_is_a_configuration_error():
    with pytest.raises(ConfigurationError, match="ATTIO_API_KEY"):
        AttioClient(FrozenConfig(api_key=None))


def test_mapping_config_is_resolved(mock_api_key):
    client = AttioClient({"api_key": mock_api_key, "max_retries": 1})

    assert client.config.max_retries == 1
    assert client.retry.max_retries == 1


# --- Requests ---


@pytest.mark.asyncio
async def test_request_sends_auth_and_returns_json(frozen_config, mock_transport, mock_api_key):
    transport = mock_transport(lambda r: json_response(body={"data": {"id": "abc"}}))

    async with AttioClient(frozen_config, transport=transport) as client:
        payload = await client.get("/v2/objects/people", params={"limit": 1})

    assert payload == {"data": {"id": "abc"}}
    sent = transport.calls[0]
    assert sent.headers["Authorization"] == f"Bearer {mock_api_key}"
    assert sent.headers["Accept"] == "application/json"
    assert sent.url == "https://api.attio.test/v2/objects/people?limit=1"


@pytest.mark.asyncio
async def test_empty_body_returns_none(frozen_config, mock_transport):
    transport = mock_transport(lambda r: httpx.Response(204))

    async with AttioClient(frozen_config, transport=transport) as client:
        assert await client.delete("/v2/notes/n1") is None


@pytest.mark.asyncio
async def test_transient_failures_are_retried(frozen_config, mock_transport):
    transport = mock_transport(
        sequence(
            json_response(503, {"message": "unavailable"}),
            httpx.ConnectError("reset"),
            json_response(body={"data": []}),
        )
    )

    async with AttioClient(frozen_config, transport=transport) as client:
        assert await client.post("/v2/objects/people/records/query", json={}) == {"data": []}

    assert len(transport.calls) == 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(frozen_config, mock_transport):
    transport = mock_transport(
        lambda r: json_response(400, {"message": "Invalid filter", "code": "validation_type"})
    )

    async with AttioClient(frozen_config, transport=transport) as client:
        with pytest.raises(ClientError) as ei:
            await client.post("/v2/objects/people/records/query", json={"filter": 1})

    assert len(transport.calls) == 1
    assert ei.value.status == 400
    assert ei.value.code == "validation_type"
    assert str(ei.value) == "Invalid filter"


@pytest.mark.asyncio
async def test_exhausted_retries_surface_last_server_error(frozen_config, mock_transport):
    transport = mock_transport(lambda r: json_response(500, {"message": "boom"}))

    async with AttioClient(frozen_config, transport=transport) as client:
        with pytest.raises(ServerError):
            await client.get("/v2/objects")

    assert len(transport.calls) == frozen_config.max_retries + 1


@pytest.mark.asyncio
async def test_call_site_retry_override_wins(frozen_config, mock_transport):
    transport = mock_transport(lambda r: json_response(429, {"message": "slow down"}))

    async with AttioClient(frozen_config, transport=transport, retry={"max_retries": 5}) as client:
        with pytest.raises(RateLimitError):
            await client.get("/v2/objects", retry={"max_retries": 0})

    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_transport_errors_are_normalized(frozen_config, mock_transport):
    transport = mock_transport(sequence(*[httpx.ConnectError("refused")] * 4))

    async with AttioClient(frozen_config, transport=transport) as client:
        with pytest.raises(TransportError) as ei:
            await client.get("/v2/objects")

    assert isinstance(ei.value.__cause__, httpx.ConnectError)
    assert ei.value.request is not None


@pytest.mark.asyncio
async def test_timeout_fails_the_attempt_without_retry(frozen_config):
    calls = 0

    async def slow(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        await asyncio.sleep(1)
        return json_response()

    async with AttioClient(frozen_config, transport=httpx.MockTransport(slow)) as client:
        with pytest.raises(RequestTimeoutError):
            await client.get("/v2/objects", timeout=0.01)

    assert calls == 1


@pytest.mark.asyncio
async def test_timeouts_retry_when_opted_in(frozen_config):
    calls = 0

    async def slow_then_fast(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            await asyncio.sleep(1)
        return json_response(body={"ok": True})

    async with AttioClient(
        frozen_config,
        transport=httpx.MockTransport(slow_then_fast),
        retry={"retry_on_timeout": True},
    ) as client:
        assert await client.get("/v2/objects", timeout=0.01) == {"ok": True}

    assert calls == 2


@pytest.mark.asyncio
async def test_caller_cancellation_interrupts_in_flight_request(frozen_config):
    controller = AbortController()

    async def hang(request: httpx.Request) -> httpx.Response:
        controller.abort(OperationCancelledError("user navigated away"))
        await asyncio.sleep(1)
        return json_response()

    async with AttioClient(frozen_config, transport=httpx.MockTransport(hang)) as client:
        with pytest.raises(OperationCancelledError, match="navigated away"):
            await client.get("/v2/objects", signal=controller.signal)

    assert controller.signal.listener_count == 0


@pytest.mark.asyncio
async def test_already_aborted_signal_sends_nothing(frozen_config, mock_transport):
    transport = mock_transport(lambda r: json_response())

    async with AttioClient(frozen_config, transport=transport) as client:
        with pytest.raises(OperationCancelledError):
            await client.get("/v2/objects", signal=AbortSignal.aborted_with())

    assert transport.calls == []


@pytest.mark.asyncio
async def test_correlation_ids_are_sent_and_reported(frozen_config, mock_transport):
    config = FrozenConfig(**{**_fields(frozen_config), "correlation_ids": True})
    transport = mock_transport(lambda r: json_response())
    events = []

    hooks = ClientHooks(on_request=events.append, on_response=events.append)
    async with AttioClient(config, transport=transport, hooks=hooks) as client:
        await client.get("/v2/self")

    header = transport.calls[0].headers[CORRELATION_ID_HEADER]
    assert header
    assert [e.correlation_id for e in events] == [header, header]


@pytest.mark.asyncio
async def test_hooks_see_every_attempt_and_failures(frozen_config, mock_transport):
    transport = mock_transport(
        sequence(json_response(502, {"message": "bad gateway"}), json_response())
    )
    requests, responses, errors = [], [], []
    hooks = ClientHooks(
        on_request=requests.append, on_response=responses.append, on_error=errors.append
    )

    async with AttioClient(frozen_config, transport=transport, hooks=hooks) as client:
        await client.get("/v2/objects")

    assert [e.attempt for e in requests] == [0, 1]
    assert [e.response.status_code for e in responses] == [502, 200]
    assert len(errors) == 1
    assert isinstance(errors[0].error, ServerError)


@pytest.mark.asyncio
async def test_broken_hook_does_not_break_the_request(frozen_config, mock_transport):
    def explode(_event):
        raise RuntimeError("hook bug")

    transport = mock_transport(lambda r: json_response(body={"ok": True}))
    async with AttioClient(
        frozen_config, transport=transport, hooks=ClientHooks(on_request=explode)
    ) as client:
        assert await client.get("/v2/self") == {"ok": True}


# --- Collections ---


@pytest.mark.asyncio
async def test_fetch_items_validates_item_type(frozen_config, mock_transport):
    transport = mock_transport(lambda r: json_response(body={"data": [{"id": 1}, {"id": "x"}]}))

    async with AttioClient(frozen_config, transport=transport) as client:
        assert await client.fetch_items("GET", "/v2/lists") == [{"id": 1}, {"id": "x"}]
        with pytest.raises(ResponseValidationError) as ei:
            await client.fetch_items("GET", "/v2/lists", item_type=dict[str, int])

    assert ei.value.errors


def _fields(config: FrozenConfig) -> dict:
    return {name: getattr(config, name) for name in FrozenConfig.__dataclass_fields__}


def paged_handler(total: int):
    """Serve ``total`` records through offset/limit in a POST body or query."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            body = json.loads(request.content)
            offset, limit = body["offset"], body["limit"]
        else:
            offset = int(request.url.params["offset"])
            limit = int(request.url.params["limit"])
        rows = [{"id": i} for i in range(offset, min(offset + limit, total))]
        return json_response(body={"data": rows})

    return handler


@pytest.mark.asyncio
async def test_paginate_posts_offsets_in_body(frozen_config, mock_transport):
    transport = mock_transport(paged_handler(120))

    async with AttioClient(frozen_config, transport=transport) as client:
        rows = await client.paginate(
            "POST",
            "/v2/objects/people/records/query",
            json={"sorts": []},
            limit=50,
            max_items=110,
        )

    assert [r["id"] for r in rows] == list(range(110))
    bodies = [json.loads(c.content) for c in transport.calls]
    assert [(b["offset"], b["limit"]) for b in bodies] == [(0, 50), (50, 50), (100, 50)]
    assert all(b["sorts"] == [] for b in bodies)


@pytest.mark.asyncio
async def test_paginate_uses_configured_page_size_for_get(frozen_config, mock_transport):
    config = FrozenConfig(**{**_fields(frozen_config), "page_size": 10})
    transport = mock_transport(paged_handler(15))

    async with AttioClient(config, transport=transport) as client:
        rows = await client.paginate("GET", "/v2/lists/sales/entries")

    assert len(rows) == 15
    assert transport.calls[0].url.params["limit"] == "10"


@pytest.mark.asyncio
async def test_stream_is_lazy(frozen_config, mock_transport):
    transport = mock_transport(paged_handler(100))

    async with AttioClient(frozen_config, transport=transport) as client:
        seen = []
        async for row in client.stream("GET", "/v2/objects/people/records", limit=20):
            seen.append(row["id"])
            if len(seen) == 5:
                break

    assert seen == list(range(5))
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_batch_uses_configured_concurrency(frozen_config, mock_transport):
    transport = mock_transport(lambda r: json_response(body={"data": {"path": r.url.path}}))

    async with AttioClient(frozen_config, transport=transport) as client:
        outcomes = await client.batch(
            [
                BatchItem(lambda slug=slug: client.get(f"/v2/objects/{slug}"), label=slug)
                for slug in ("people", "companies")
            ]
        )

    assert [o.label for o in outcomes] == ["people", "companies"]
    assert outcomes[1].value == {"data": {"path": "/v2/objects/companies"}}


@pytest.mark.asyncio
async def test_external_http_client_is_not_closed(frozen_config):
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: json_response()))

    async with AttioClient(frozen_config, http_client=http):
        pass

    assert not http.is_closed
    await http.aclose()
