"""HTTP リバースプロキシハンドラー

バックエンド API へのリクエストを Content-Type に応じて整形しながら中継する
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone

import aiohttp
import structlog
from aiohttp import BodyPartReader, hdrs, payload, web
from multidict import CIMultiDict

from .config import UPSTREAM_URL_ENV, GatewayConfig
from .content import ContentCategory, classify
from .headers import sanitize_request_headers, sanitize_response_headers

logger = structlog.get_logger()

STREAM_CHUNK_SIZE = 64 * 1024

# ボディを読まず転送もしないメソッド
BODYLESS_METHODS = frozenset({hdrs.METH_GET, hdrs.METH_HEAD})


class ProxyError(Exception):
    """プロキシ処理中のエラー"""


class ConfigurationError(ProxyError):
    """プロキシ先が設定されていない"""


class BodyDecodeError(ProxyError):
    """リクエストボディを解析できない"""


@dataclass
class UpstreamRequest:
    """バックエンドへ送るリクエスト"""

    method: str
    url: str
    headers: CIMultiDict
    data: object = None
    skip_auto_headers: frozenset[str] = field(default_factory=frozenset)


@dataclass
class RelayResponse:
    """ブラウザへ返すレスポンス

    body が None の場合はバックエンドのボディをそのままストリーミングする
    """

    status: int
    reason: str | None
    headers: CIMultiDict
    body: bytes | None = None

    @property
    def is_streamed(self) -> bool:
        return self.body is None


def resolve_target(base_url: str | None, mount_prefix: str, raw_path: str) -> str:
    """プロキシ先の URL を組み立てる

    マウントプレフィックスを取り除いた残りのパスとクエリ文字列をベース URL に連結する。
    パスの正規化やパーセントエンコーディングの変換は行わない

    Args:
        base_url: バックエンドのベース URL
        mount_prefix: ゲートウェイのマウントプレフィックス
        raw_path: リクエストの生のパス (クエリ文字列を含む)

    Returns:
        プロキシ先の URL

    Raises:
        ConfigurationError: ベース URL が設定されていない場合
    """
    if not base_url:
        raise ConfigurationError(f"{UPSTREAM_URL_ENV} environment variable is not set")

    path, _, query = raw_path.partition("?")
    prefix = mount_prefix.rstrip("/")
    if path == prefix:
        path = ""
    elif path.startswith(prefix + "/"):
        path = path[len(prefix) + 1 :]
    elif path.startswith("/"):
        path = path[1:]

    search = f"?{query}" if query else ""
    return f"{base_url}/{path}{search}"


async def adapt_request(
    request: web.Request, target_url: str, max_body_size: int
) -> UpstreamRequest:
    """受信したリクエストからバックエンドへ送るリクエストを作成する

    Args:
        request: HTTP リクエストオブジェクト
        target_url: プロキシ先の URL
        max_body_size: マルチパートボディを展開する際の最大バイト数

    Returns:
        バックエンドへ送るリクエスト

    Raises:
        BodyDecodeError: JSON やマルチパートのボディを解析できない場合
    """
    upstream = UpstreamRequest(
        method=request.method,
        url=target_url,
        headers=sanitize_request_headers(request.headers),
    )
    if request.method in BODYLESS_METHODS:
        return upstream

    category = classify(request.headers.get(hdrs.CONTENT_TYPE))
    # JSON は空のボディも解析エラーとして扱う
    if not request.body_exists and category is not ContentCategory.JSON:
        return upstream

    match category:
        case ContentCategory.MULTIPART:
            upstream.data = await _reencode_multipart(request, max_body_size)
            # 新しい boundary を送信側に付けさせる
            upstream.headers.popall(hdrs.CONTENT_TYPE, None)
        case ContentCategory.JSON:
            upstream.data = await _reserialize_json(request)
        case ContentCategory.FORM_URLENCODED:
            upstream.data = await request.read()
        case ContentCategory.OPAQUE:
            upstream.data = request.content
            if hdrs.CONTENT_TYPE not in upstream.headers:
                upstream.skip_auto_headers = frozenset({hdrs.CONTENT_TYPE})
    return upstream


async def _reserialize_json(request: web.Request) -> bytes:
    try:
        body = await request.json()
    except ValueError as e:
        raise BodyDecodeError(f"Invalid JSON body: {e}") from e
    return _dump_json(body)


async def _reencode_multipart(request: web.Request, max_body_size: int) -> aiohttp.MultipartWriter:
    """マルチパートフォームを読み込み、新しい boundary で組み直す"""
    writer = aiohttp.MultipartWriter("form-data")
    total = 0
    try:
        reader = await request.multipart()
        async for part in reader:
            if not isinstance(part, BodyPartReader):
                raise BodyDecodeError("Nested multipart bodies are not supported")
            if part.name is None:
                raise BodyDecodeError("Multipart part is missing a field name")

            value = bytearray()
            while True:
                chunk = await part.read_chunk(STREAM_CHUNK_SIZE)
                if not chunk:
                    break
                total += len(chunk)
                if total > max_body_size:
                    raise BodyDecodeError(f"Multipart body exceeds {max_body_size} bytes")
                value.extend(chunk)
            # Content-Transfer-Encoding を解除してから送り直す
            writer.append_payload(_form_field(part, part.decode(bytes(value))))
    except BodyDecodeError:
        raise
    except Exception as e:
        raise BodyDecodeError(f"Invalid multipart body: {e}") from e
    return writer


def _form_field(part: BodyPartReader, value: bytes) -> payload.Payload:
    content_type = part.headers.get(hdrs.CONTENT_TYPE)
    params = {"name": part.name}
    if part.filename is not None:
        params["filename"] = part.filename

    if part.filename is None and content_type is None:
        field_payload = payload.StringPayload(value.decode(part.get_charset(default="utf-8")))
    else:
        field_payload = payload.BytesPayload(
            value, content_type=content_type or "application/octet-stream"
        )
    field_payload.set_content_disposition("form-data", quote_fields=False, **params)
    return field_payload


async def adapt_response(resp: aiohttp.ClientResponse, method: str) -> RelayResponse:
    """バックエンドのレスポンスからブラウザへ返すレスポンスを作成する

    JSON は解析し直して返し、解析できなければ受信したバイト列をそのまま返す。
    それ以外のボディはストリーミングで転送する

    Args:
        resp: バックエンドからのレスポンス
        method: 受信したリクエストのメソッド

    Returns:
        ブラウザへ返すレスポンス
    """
    relay = RelayResponse(
        status=resp.status,
        reason=resp.reason,
        headers=sanitize_response_headers(resp.headers),
    )
    match classify(resp.headers.get(hdrs.CONTENT_TYPE)):
        case ContentCategory.JSON:
            relay.body = _reserialize_json_body(await resp.read(), str(resp.url))
        case _:
            if method == hdrs.METH_HEAD or _must_be_empty_body(resp.status):
                relay.body = await resp.read()
    return relay


def _reserialize_json_body(raw: bytes, url: str) -> bytes:
    if not raw:
        return raw
    try:
        return _dump_json(json.loads(raw))
    except ValueError as e:
        logger.warning("upstream_json_decode_failed", url=url, error=str(e))
        return raw


def _must_be_empty_body(status: int) -> bool:
    return status < 200 or status in (204, 304)


def _dump_json(obj: object) -> bytes:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProxyHandler:
    """バックエンド API へのリバースプロキシを提供するハンドラー"""

    def __init__(self, config: GatewayConfig):
        """ProxyHandler を初期化する

        Args:
            config: ゲートウェイの設定
        """
        self.config = config

    async def handle_proxy(self, request: web.Request) -> web.StreamResponse:
        """リクエストをバックエンドに転送し、レスポンスを返す

        ゲートウェイ内で発生したエラーはすべて 500 の JSON レスポンスに変換する

        Args:
            request: HTTP リクエストオブジェクト

        Returns:
            バックエンドからのレスポンス
        """
        try:
            target_url = resolve_target(
                self.config.upstream_url, self.config.mount_prefix, request.raw_path
            )
        except ConfigurationError as e:
            logger.error("upstream_not_configured", method=request.method, path=request.path)
            return web.json_response(
                {
                    "error": "Backend server not configured",
                    "details": str(e),
                    "timestamp": _timestamp(),
                },
                status=500,
            )

        logger.debug("proxy_request", method=request.method, url=target_url)

        # クライアントが切断するとハンドラーがキャンセルされ、セッションごと上流の接続も閉じる
        async with aiohttp.ClientSession() as session:
            try:
                upstream = await adapt_request(request, target_url, self.config.max_body_size)
                resp = await session.request(
                    upstream.method,
                    upstream.url,
                    headers=upstream.headers,
                    data=upstream.data,
                    skip_auto_headers=upstream.skip_auto_headers,
                    allow_redirects=False,
                )
            except Exception as e:
                return self._error_response(request, target_url, e)

            async with resp:
                try:
                    relay = await adapt_response(resp, request.method)
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    return self._error_response(request, target_url, e)
                return await self._send(request, resp, relay)

    async def _send(
        self, request: web.Request, resp: aiohttp.ClientResponse, relay: RelayResponse
    ) -> web.StreamResponse:
        if not relay.is_streamed:
            return web.Response(
                body=relay.body, status=relay.status, reason=relay.reason, headers=relay.headers
            )

        stream = web.StreamResponse(status=relay.status, reason=relay.reason, headers=relay.headers)
        await stream.prepare(request)
        try:
            async for chunk in resp.content.iter_chunked(STREAM_CHUNK_SIZE):
                await stream.write(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            # ヘッダー送信済みのためエラーレスポンスに差し替えられない
            logger.error("upstream_stream_error", url=str(resp.url), error=str(e))
            raise
        await stream.write_eof()
        return stream

    def _error_response(
        self, request: web.Request, target_url: str, error: Exception
    ) -> web.Response:
        """プロキシエラーの JSON レスポンスを生成する

        Args:
            request: HTTP リクエストオブジェクト
            target_url: プロキシ先の URL
            error: 発生した例外

        Returns:
            エラー情報を含む HTTP レスポンス
        """
        details = str(error) or type(error).__name__
        logger.error(
            "proxy_error",
            method=request.method,
            url=target_url,
            error=details,
            error_type=type(error).__name__,
        )
        return web.json_response(
            {
                "error": "API proxy error",
                "details": details,
                "timestamp": _timestamp(),
                "url": target_url,
                "method": request.method,
            },
            status=500,
        )
