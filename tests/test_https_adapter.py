"""Tests for the HTTPS adapter using httpx.MockTransport."""

import httpx
import pytest

from discovery_engine.errors import (
    AuthenticationFailure,
    ConnectionTimeout,
    InvalidConfigurationError,
    ProtocolError,
)
from discovery_engine.protocols.https import HttpsAdapter, build_url
from discovery_engine.schemas import HttpsSettings

from conftest import DictSecretResolver

TOKEN = "s3cr3t-bearer-token"

SETTINGS = {"protocol": "https", "base_url": "https://files.example.com"}
BEARER_SETTINGS = {
    **SETTINGS,
    "auth_type": "bearer",
    "token_secret_name": "reports-token",
}


def make_adapter(handler) -> HttpsAdapter:
    return HttpsAdapter(
        DictSecretResolver({"reports-token": TOKEN}),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_probe_found():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            headers={
                "content-length": "2048",
                "last-modified": "Fri, 15 Mar 2024 07:55:00 GMT",
                "etag": '"abc"',
            },
        )

    files = await make_adapter(handler).list_candidates(SETTINGS, "/rpt", "20240315.csv")

    assert len(files) == 1
    assert files[0].reference == "https://files.example.com/rpt/20240315.csv"
    assert files[0].name == "20240315.csv"
    assert files[0].size == 2048
    assert files[0].last_modified.hour == 7
    assert requests[0].method == "HEAD"


@pytest.mark.asyncio
async def test_probe_not_found_is_empty():
    adapter = make_adapter(lambda request: httpx.Response(404))
    assert await adapter.list_candidates(SETTINGS, "/rpt", "20240315.csv") == []


@pytest.mark.asyncio
async def test_head_not_allowed_falls_back_to_get():
    methods = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append(request.method)
        if request.method == "HEAD":
            return httpx.Response(405)
        return httpx.Response(200, content=b"a,b\n1,2\n")

    files = await make_adapter(handler).list_candidates(SETTINGS, "/rpt", "20240315.csv")

    assert methods == ["HEAD", "GET"]
    assert len(files) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error",
    [
        (500, ProtocolError),
        (503, ProtocolError),
        (429, ProtocolError),
        (401, AuthenticationFailure),
        (403, AuthenticationFailure),
        (400, InvalidConfigurationError),
        (408, InvalidConfigurationError),
        (410, InvalidConfigurationError),
    ],
)
async def test_status_categorization(status, error):
    adapter = make_adapter(lambda request: httpx.Response(status))

    with pytest.raises(error):
        await adapter.list_candidates(SETTINGS, "/rpt", "20240315.csv")


@pytest.mark.asyncio
async def test_retryable_flags():
    with pytest.raises(ProtocolError) as exc_info:
        await make_adapter(lambda r: httpx.Response(502)).list_candidates(SETTINGS, "/rpt", "f.csv")
    assert exc_info.value.retryable is True

    with pytest.raises(AuthenticationFailure) as exc_info:
        await make_adapter(lambda r: httpx.Response(401)).list_candidates(SETTINGS, "/rpt", "f.csv")
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_timeout_is_connection_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("connect timed out", request=request)

    with pytest.raises(ConnectionTimeout):
        await make_adapter(handler).list_candidates(SETTINGS, "/rpt", "20240315.csv")


@pytest.mark.asyncio
async def test_bearer_token_sent_and_never_in_errors():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("authorization"))
        raise httpx.ConnectError(f"connection reset while sending {TOKEN}", request=request)

    with pytest.raises(ProtocolError) as exc_info:
        await make_adapter(handler).list_candidates(BEARER_SETTINGS, "/rpt", "20240315.csv")

    assert seen == [f"Bearer {TOKEN}"]
    assert TOKEN not in str(exc_info.value)


@pytest.mark.asyncio
async def test_missing_secret_names_only_the_secret():
    adapter = HttpsAdapter(
        DictSecretResolver({}),
        transport=httpx.MockTransport(lambda r: httpx.Response(200)),
    )

    with pytest.raises(InvalidConfigurationError) as exc_info:
        await adapter.list_candidates(BEARER_SETTINGS, "/rpt", "20240315.csv")
    assert "reports-token" in str(exc_info.value)
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_extension_filter_applies_to_probe():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200)

    files = await make_adapter(handler).list_candidates(SETTINGS, "/rpt", "20240315.txt", "csv")

    assert files == []
    assert calls == []


@pytest.mark.asyncio
async def test_json_index_listing():
    index = [
        {"name": "report_20240315.csv", "url": "https://cdn.example.com/a.csv", "size": 10,
         "lastModified": "2024-03-15T07:00:00Z", "contentType": "text/csv", "etag": "x"},
        {"Name": "REPORT_20240315_B.CSV", "size": 0},
        {"name": "summary_20240315.pdf"},
        "not-an-object",
    ]
    settings = {**SETTINGS, "listing_mode": "json_index"}
    adapter = make_adapter(lambda request: httpx.Response(200, json=index))

    files = await adapter.list_candidates(settings, "/rpt/index", "report_20240315*", "csv")

    assert [f.name for f in files] == ["report_20240315.csv", "REPORT_20240315_B.CSV"]
    assert files[0].reference == "https://cdn.example.com/a.csv"
    assert files[0].size == 10
    assert files[0].metadata["content_type"] == "text/csv"
    assert files[1].reference == "https://files.example.com/rpt/index/REPORT_20240315_B.CSV"
    assert files[1].size is None


@pytest.mark.asyncio
async def test_json_index_must_be_array():
    settings = {**SETTINGS, "listing_mode": "json_index"}
    adapter = make_adapter(lambda request: httpx.Response(200, json={"files": []}))

    with pytest.raises(InvalidConfigurationError):
        await adapter.list_candidates(settings, "/rpt/index", "*")


@pytest.mark.asyncio
async def test_test_connection():
    await make_adapter(lambda r: httpx.Response(200)).test_connection(SETTINGS)

    with pytest.raises(AuthenticationFailure):
        await make_adapter(lambda r: httpx.Response(403)).test_connection(SETTINGS)


def test_build_url():
    settings = HttpsSettings(base_url="https://files.example.com/")
    assert build_url(settings, "/rpt/2024/", "f.csv") == "https://files.example.com/rpt/2024/f.csv"
    assert build_url(settings, "", "f.csv") == "https://files.example.com/f.csv"
    assert build_url(settings, "https://other.example.com/x", "f.csv") == "https://other.example.com/x/f.csv"
