import httpx
import pytest
import respx
from driftwood.clients.base import BaseHTTPClient, is_retryable_status
from driftwood.core.errors import ProviderCallError
from httpx import Response


class ExampleClient(BaseHTTPClient):
    provider = "example"

    def _headers(self):
        return {"Authorization": "Bearer test-token"}


@pytest.mark.asyncio
async def test_client_success():
    client = ExampleClient("https://api.example.com/")

    with respx.mock:
        route = respx.get("https://api.example.com/v1/things/1").mock(
            return_value=Response(200, json={"id": "1", "name": "thing"})
        )

        body = await client.request("GET", "/v1/things/1", params={"view": "full"})

        assert body == {"id": "1", "name": "thing"}
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer test-token"
        assert request.url.params["view"] == "full"
    await client.aclose()


@pytest.mark.asyncio
async def test_client_absolute_url_and_extra_headers():
    client = ExampleClient("https://api.example.com")

    with respx.mock:
        route = respx.post("https://other.example.com/op").mock(return_value=Response(204))

        body = await client.request(
            "POST", "https://other.example.com/op", json={"a": 1}, headers={"X-Trace": "t"}
        )

        assert body == {}
        assert route.calls.last.request.headers["X-Trace"] == "t"
    await client.aclose()


@pytest.mark.asyncio
async def test_client_server_error_is_retryable():
    client = ExampleClient("https://api.example.com")

    with respx.mock:
        route = respx.get("https://api.example.com/v1/things/1")
        route.mock(return_value=Response(503, json={"error": {"message": "try later"}}))

        with pytest.raises(ProviderCallError) as exc_info:
            await client.request("GET", "/v1/things/1")

        assert exc_info.value.status == 503
        assert exc_info.value.retryable
        assert exc_info.value.provider == "example"
        assert "try later" in exc_info.value.message
        # retrying is the caller's decision
        assert route.call_count == 1


@pytest.mark.asyncio
async def test_client_permanent_error():
    client = ExampleClient("https://api.example.com")

    with respx.mock:
        respx.delete("https://api.example.com/v1/things/1").mock(
            return_value=Response(404, text="not here")
        )

        with pytest.raises(ProviderCallError) as exc_info:
            await client.request("DELETE", "/v1/things/1")

        assert exc_info.value.status == 404
        assert not exc_info.value.retryable
        assert "not here" in exc_info.value.message


@pytest.mark.asyncio
async def test_client_network_error_is_retryable():
    client = ExampleClient("https://api.example.com")

    with respx.mock:
        respx.get("https://api.example.com/v1/things/1").mock(
            side_effect=httpx.ConnectError("refused")
        )

        with pytest.raises(ProviderCallError) as exc_info:
            await client.request("GET", "/v1/things/1")

        assert exc_info.value.retryable
        assert exc_info.value.status is None


@pytest.mark.parametrize(
    "status,expected",
    [(408, True), (429, True), (500, True), (503, True), (400, False), (409, False)],
)
def test_is_retryable_status(status, expected):
    assert is_retryable_status(status) is expected
