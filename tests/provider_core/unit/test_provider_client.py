from __future__ import annotations

import asyncio

import httpx
import pytest
from pytest_httpx import HTTPXMock

from provider_core.circuit_breaker import CircuitOpenError, InMemoryCircuitRegistry
from provider_core.errors import ProviderError, ProviderErrorCategory
from provider_core.provider_client import ProviderHttpClient, create_provider_client
from provider_core.resilient import ResilientClient
from tests.provider_core.support.fakes import FakeClock, FakeLogger, RecordingSleep

pytestmark = pytest.mark.asyncio

_PROVIDER = "solis_cloud"
_BASE_URL = "https://www.soliscloud.example:13333"
_PATH = "/v1/api/userStationList"
_URL = f"{_BASE_URL}{_PATH}"


def _build_client(
    http_client: httpx.AsyncClient,
    sleep: RecordingSleep,
    *,
    registry: InMemoryCircuitRegistry | None = None,
    default_headers: dict[str, str] | None = None,
    logger: FakeLogger | None = None,
) -> ProviderHttpClient:
    resilient = ResilientClient(
        client=http_client,
        registry=registry,
        sleep=sleep,
        logger=FakeLogger(),
    )
    return ProviderHttpClient(
        resilient=resilient,
        provider=_PROVIDER,
        base_url=_BASE_URL,
        default_headers=default_headers,
        logger=logger if logger is not None else FakeLogger(),
    )


async def test_get_returns_parsed_json(
    httpx_mock: HTTPXMock, recording_sleep: RecordingSleep
) -> None:
    httpx_mock.add_response(method="GET", url=_URL, json={"data": {"records": [1]}})

    async with httpx.AsyncClient() as http_client:
        client = _build_client(http_client, recording_sleep)
        payload = await client.get(_PATH)

    assert payload == {"data": {"records": [1]}}
    request = httpx_mock.get_requests()[0]
    assert "Content-Type" not in request.headers


async def test_post_serializes_json_body_and_merges_headers(
    httpx_mock: HTTPXMock, recording_sleep: RecordingSleep
) -> None:
    httpx_mock.add_response(method="POST", url=_URL, json={"success": True})

    async with httpx.AsyncClient() as http_client:
        client = _build_client(
            http_client,
            recording_sleep,
            default_headers={"X-Tenant": "default", "Accept": "application/json"},
        )
        payload = await client.post(
            _PATH,
            {"pageNo": 1, "pageSize": 100},
            headers={"X-Tenant": "tenant-a"},
        )

    assert payload == {"success": True}
    request = httpx_mock.get_requests()[0]
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["X-Tenant"] == "tenant-a"
    assert request.headers["Accept"] == "application/json"
    assert request.content == b'{"pageNo": 1, "pageSize": 100}'


async def test_post_with_non_json_content_type_sends_text(
    httpx_mock: HTTPXMock, recording_sleep: RecordingSleep
) -> None:
    httpx_mock.add_response(method="POST", url=_URL, json={})

    async with httpx.AsyncClient() as http_client:
        client = _build_client(http_client, recording_sleep)
        await client.post(
            _PATH,
            "grant_type=password",
            content_type="application/x-www-form-urlencoded",
        )

    request = httpx_mock.get_requests()[0]
    assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
    assert request.content == b"grant_type=password"


async def test_absolute_url_overrides_base_url(
    httpx_mock: HTTPXMock, recording_sleep: RecordingSleep
) -> None:
    other_url = "https://auth.example.com/oauth/token"
    httpx_mock.add_response(url=other_url, json={"access_token": "t"})

    async with httpx.AsyncClient() as http_client:
        client = _build_client(http_client, recording_sleep)
        payload = await client.get("/ignored", absolute_url=other_url)

    assert payload == {"access_token": "t"}


async def test_set_base_url_redirects_relative_paths(
    httpx_mock: HTTPXMock, recording_sleep: RecordingSleep
) -> None:
    regional = "https://eu.soliscloud.example"
    httpx_mock.add_response(url=f"{regional}{_PATH}", json={})

    async with httpx.AsyncClient() as http_client:
        client = _build_client(http_client, recording_sleep)
        client.set_base_url(regional)
        await client.get(_PATH)

    assert client.base_url == regional


async def test_empty_body_parses_to_empty_dict(
    httpx_mock: HTTPXMock, recording_sleep: RecordingSleep
) -> None:
    httpx_mock.add_response(url=_URL, text="   ")

    async with httpx.AsyncClient() as http_client:
        client = _build_client(http_client, recording_sleep)
        assert await client.get(_PATH) == {}


@pytest.mark.parametrize(
    ("status", "category", "message"),
    [
        (401, ProviderErrorCategory.AUTH, "Auth failed (401): denied"),
        (403, ProviderErrorCategory.AUTH, "Auth failed (403): denied"),
        (404, ProviderErrorCategory.NOT_FOUND, f"Not found: {_PATH}"),
        (422, ProviderErrorCategory.UNKNOWN, "Client error 422: denied"),
    ],
)
async def test_client_errors_are_normalized_without_retry(
    httpx_mock: HTTPXMock,
    recording_sleep: RecordingSleep,
    status: int,
    category: ProviderErrorCategory,
    message: str,
) -> None:
    httpx_mock.add_response(url=_URL, status_code=status, text="denied")

    async with httpx.AsyncClient() as http_client:
        client = _build_client(http_client, recording_sleep)
        with pytest.raises(ProviderError) as excinfo:
            await client.get(_PATH)

    error = excinfo.value
    assert error.category == category
    assert str(error) == message
    assert error.http_status == status
    assert error.retryable is False
    assert error.provider_id == _PROVIDER
    assert len(httpx_mock.get_requests()) == 1


async def test_exhausted_rate_limit_becomes_rate_limit_error(
    httpx_mock: HTTPXMock, recording_sleep: RecordingSleep
) -> None:
    for _ in range(3):
        httpx_mock.add_response(url=_URL, status_code=429)

    async with httpx.AsyncClient() as http_client:
        client = _build_client(http_client, recording_sleep)
        with pytest.raises(ProviderError) as excinfo:
            await client.get(_PATH)

    error = excinfo.value
    assert error.category == ProviderErrorCategory.RATE_LIMIT
    assert str(error) == "Rate limit exceeded"
    assert error.retryable is True
    assert error.attempts == 3
    assert len(recording_sleep.delays) == 2


async def test_exhausted_server_errors_become_provider_down(
    httpx_mock: HTTPXMock, recording_sleep: RecordingSleep
) -> None:
    body = "x" * 500
    for _ in range(3):
        httpx_mock.add_response(url=_URL, status_code=502, text=body)

    async with httpx.AsyncClient() as http_client:
        client = _build_client(http_client, recording_sleep)
        with pytest.raises(ProviderError) as excinfo:
            await client.get(_PATH)

    error = excinfo.value
    assert error.category == ProviderErrorCategory.PROVIDER_DOWN
    assert str(error) == f"Server error: {'x' * 200}"
    assert error.http_status == 502
    assert error.retryable is True


async def test_network_failure_becomes_provider_down(
    httpx_mock: HTTPXMock, recording_sleep: RecordingSleep
) -> None:
    httpx_mock.add_exception(httpx.ConnectError("dns lookup failed"), url=_URL)

    async with httpx.AsyncClient() as http_client:
        client = _build_client(http_client, recording_sleep)
        with pytest.raises(ProviderError) as excinfo:
            await client.get(_PATH, no_retry=True)

    error = excinfo.value
    assert error.category == ProviderErrorCategory.PROVIDER_DOWN
    assert error.http_status is None
    assert "dns lookup failed" in str(error)
    assert recording_sleep.delays == []


async def test_timeout_becomes_timeout_error() -> None:
    async def _slow_handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5.0)
        return httpx.Response(200)

    sleep = RecordingSleep()
    transport = httpx.MockTransport(_slow_handler)
    async with httpx.AsyncClient(transport=transport) as http_client:
        client = _build_client(http_client, sleep)
        with pytest.raises(ProviderError) as excinfo:
            await client.get(_PATH, timeout=0.02, no_retry=True)

    error = excinfo.value
    assert error.category == ProviderErrorCategory.TIMEOUT
    assert str(error) == "Request timed out after 20ms"
    assert error.retryable is True
    assert error.attempts == 1


async def test_unexpected_attempt_error_becomes_unknown_error(
    recording_sleep: RecordingSleep,
) -> None:
    registry = InMemoryCircuitRegistry()

    async with httpx.AsyncClient() as http_client:
        client = _build_client(http_client, recording_sleep, registry=registry)
        with pytest.raises(ProviderError) as excinfo:
            await client.get(_PATH, absolute_url="http://[::1", no_retry=True)

    error = excinfo.value
    assert error.category == ProviderErrorCategory.UNKNOWN
    assert error.retryable is False
    assert error.provider_id == _PROVIDER
    assert error.attempts == 1
    assert "InvalidURL" in str(error)
    assert (await registry.get_or_create(_PROVIDER)).failure_count == 1


async def test_html_body_is_flagged_as_auth_redirect(
    httpx_mock: HTTPXMock, recording_sleep: RecordingSleep
) -> None:
    httpx_mock.add_response(url=_URL, text="<html><body>Login</body></html>")

    async with httpx.AsyncClient() as http_client:
        client = _build_client(http_client, recording_sleep)
        with pytest.raises(ProviderError) as excinfo:
            await client.get(_PATH)

    error = excinfo.value
    assert error.category == ProviderErrorCategory.PARSE
    assert str(error).startswith("HTML response (likely auth redirect): <html>")
    assert error.retryable is False


async def test_invalid_json_is_parse_error(
    httpx_mock: HTTPXMock, recording_sleep: RecordingSleep
) -> None:
    httpx_mock.add_response(url=_URL, text="not json at all")

    async with httpx.AsyncClient() as http_client:
        client = _build_client(http_client, recording_sleep)
        with pytest.raises(ProviderError) as excinfo:
            await client.get(_PATH)

    assert excinfo.value.category == ProviderErrorCategory.PARSE
    assert str(excinfo.value) == "Invalid JSON: not json at all"


async def test_circuit_open_error_propagates_unchanged(
    httpx_mock: HTTPXMock,
    recording_sleep: RecordingSleep,
    fake_clock: FakeClock,
) -> None:
    registry = InMemoryCircuitRegistry()
    for _ in range(5):
        await registry.record_failure(_PROVIDER)

    async with httpx.AsyncClient() as http_client:
        client = _build_client(http_client, recording_sleep, registry=registry)
        with pytest.raises(CircuitOpenError):
            await client.get(_PATH)

    assert httpx_mock.get_requests() == []


async def test_prepared_request_log_masks_sensitive_headers(
    httpx_mock: HTTPXMock, recording_sleep: RecordingSleep
) -> None:
    httpx_mock.add_response(url=_URL, json={})
    logger = FakeLogger()

    async with httpx.AsyncClient() as http_client:
        client = _build_client(
            http_client,
            recording_sleep,
            default_headers={"Authorization": "Bearer abcdefghijklmnop"},
            logger=logger,
        )
        await client.get(_PATH)

    fields = logger.fields_for("provider.request.prepared")[0]
    assert fields["headers"] == {"Authorization": "Bear****mnop"}
    assert fields["provider_id"] == _PROVIDER


async def test_create_provider_client_uses_defaults(
    httpx_mock: HTTPXMock, recording_sleep: RecordingSleep
) -> None:
    httpx_mock.add_response(url=_URL, json={"ok": 1})

    async with httpx.AsyncClient() as http_client:
        resilient = ResilientClient(
            client=http_client, sleep=recording_sleep, logger=FakeLogger()
        )
        client = create_provider_client(
            resilient, _PROVIDER, _BASE_URL, {"X-Api-Id": "1300386381676"}
        )
        assert await client.get(_PATH) == {"ok": 1}

    assert client.provider == _PROVIDER
    assert httpx_mock.get_requests()[0].headers["X-Api-Id"] == "1300386381676"
