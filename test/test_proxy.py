import sys
from pathlib import Path

import pytest
from aiohttp.test_utils import make_mocked_request
from multidict import CIMultiDict

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
from backend_api_proxy.config import GatewayConfig
from backend_api_proxy.content import ContentCategory, classify
from backend_api_proxy.headers import (
    REQUEST_STRIP_HEADERS,
    sanitize_request_headers,
    sanitize_response_headers,
)
from backend_api_proxy.proxy import (
    ConfigurationError,
    _reserialize_json_body,
    adapt_request,
    resolve_target,
)


@pytest.mark.parametrize(
    "base_url, mount_prefix, raw_path, expected",
    [
        ("http://backend:8000", "/api", "/api/items", "http://backend:8000/items"),
        (
            "http://backend:8000",
            "/api",
            "/api/libraries/1/files?page=2&size=10",
            "http://backend:8000/libraries/1/files?page=2&size=10",
        ),
        # 正規化やデコードは行わない
        ("http://backend:8000", "/api", "/api/a/../b", "http://backend:8000/a/../b"),
        ("http://backend:8000", "/api", "/api/files/a%2Fb%20c", "http://backend:8000/files/a%2Fb%20c"),
        ("http://backend:8000", "/api", "/api/q?x=%20&x=2", "http://backend:8000/q?x=%20&x=2"),
        ("http://backend:8000/", "/api", "/api/items", "http://backend:8000//items"),
        ("http://backend:8000/v1", "/api/", "/api/items", "http://backend:8000/v1/items"),
        ("http://backend:8000", "/api", "/api", "http://backend:8000/"),
        ("http://backend:8000", "/api", "/api/", "http://backend:8000/"),
        # 空のクエリ文字列は付けない
        ("http://backend:8000", "/api", "/api/items?", "http://backend:8000/items"),
        # 先頭以外の /api/ はそのまま
        ("http://backend:8000", "/api", "/api/v1/api/items", "http://backend:8000/v1/api/items"),
        ("http://backend:8000", "", "/items?a=1", "http://backend:8000/items?a=1"),
    ],
)
def test_resolve_target(base_url, mount_prefix, raw_path, expected):
    assert resolve_target(base_url, mount_prefix, raw_path) == expected


@pytest.mark.parametrize("base_url", [None, ""])
def test_resolve_target_without_base_url(base_url):
    with pytest.raises(ConfigurationError, match="API_SERVER_URL"):
        resolve_target(base_url, "/api", "/api/items")


@pytest.mark.parametrize(
    "content_type, expected",
    [
        ("multipart/form-data; boundary=abc", ContentCategory.MULTIPART),
        ("Multipart/Form-Data; boundary=abc", ContentCategory.MULTIPART),
        ("application/json", ContentCategory.JSON),
        ("application/json; charset=utf-8", ContentCategory.JSON),
        ("APPLICATION/JSON", ContentCategory.JSON),
        ("application/x-www-form-urlencoded", ContentCategory.FORM_URLENCODED),
        ("application/octet-stream", ContentCategory.OPAQUE),
        ("text/plain", ContentCategory.OPAQUE),
        ("application/problem+json", ContentCategory.OPAQUE),
        ("", ContentCategory.OPAQUE),
        (None, ContentCategory.OPAQUE),
    ],
)
def test_classify(content_type, expected):
    assert classify(content_type) is expected


def test_sanitize_request_headers():
    headers = CIMultiDict(
        [
            ("Host", "localhost:8080"),
            ("Content-Length", "42"),
            ("X-Forwarded-For", "203.0.113.7"),
            ("x-forwarded-host", "ui.example.com"),
            ("X-FORWARDED-PROTO", "https"),
            ("Content-Type", "application/json"),
            ("Cookie", "a=1"),
            ("Cookie", "b=2"),
            ("Accept", "*/*"),
        ]
    )

    sanitized = sanitize_request_headers(headers)

    for name in ("host", "content-length", "x-forwarded-for", "x-forwarded-host", "x-forwarded-proto"):
        assert name not in sanitized
    assert list(sanitized.items()) == [
        ("Content-Type", "application/json"),
        ("Cookie", "a=1"),
        ("Cookie", "b=2"),
        ("Accept", "*/*"),
    ]
    # 元のヘッダーは変更しない
    assert headers["Host"] == "localhost:8080"


def test_request_strip_headers():
    assert {
        "host",
        "x-forwarded-host",
        "x-forwarded-for",
        "x-forwarded-proto",
        "content-length",
    } <= REQUEST_STRIP_HEADERS


def test_sanitize_response_headers():
    headers = CIMultiDict(
        [
            ("Content-Type", "application/octet-stream"),
            ("Content-Encoding", "gzip"),
            ("Content-Length", "100"),
            ("Transfer-Encoding", "chunked"),
            ("Set-Cookie", "a=1"),
            ("Set-Cookie", "b=2"),
            ("ETag", '"abc"'),
        ]
    )

    sanitized = sanitize_response_headers(headers)

    assert "Content-Encoding" not in sanitized
    assert "Content-Length" not in sanitized
    assert "Transfer-Encoding" not in sanitized
    assert sanitized["Content-Type"] == "application/octet-stream"
    assert sanitized.getall("Set-Cookie") == ["a=1", "b=2"]
    assert sanitized["ETag"] == '"abc"'


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["GET", "HEAD"])
async def test_adapt_request_without_body(method):
    request = make_mocked_request(
        method,
        "/api/items?x=1",
        headers={"Host": "localhost:8080", "Content-Type": "application/json", "X-Trace": "t1"},
    )

    upstream = await adapt_request(request, "http://backend:8000/items?x=1", 1024)

    assert upstream.method == method
    assert upstream.url == "http://backend:8000/items?x=1"
    assert upstream.data is None
    assert "Host" not in upstream.headers
    assert upstream.headers["X-Trace"] == "t1"


def test_upstream_json_is_reserialized():
    assert _reserialize_json_body(b'{ "id" : "1" ,"name":"x" }', "http://b/x") == b'{"id":"1","name":"x"}'


def test_upstream_invalid_json_is_kept():
    assert _reserialize_json_body(b"{broken", "http://b/x") == b"{broken"
    assert _reserialize_json_body(b"", "http://b/x") == b""


def test_gateway_config_from_env():
    config = GatewayConfig.from_env({"API_SERVER_URL": "http://backend:8000"})
    assert config.upstream_url == "http://backend:8000"
    assert config.is_configured

    missing = GatewayConfig.from_env({})
    assert missing.upstream_url is None
    assert not missing.is_configured
