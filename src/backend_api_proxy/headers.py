"""転送時のヘッダー整形"""

from collections.abc import Iterable

from multidict import CIMultiDict, CIMultiDictProxy

# 接続ごとのヘッダー (ボディの送信側がフレーミングを決める)
HOP_BY_HOP_HEADERS = frozenset({"connection", "keep-alive", "transfer-encoding"})

# バックエンドへ転送しないリクエストヘッダー
REQUEST_STRIP_HEADERS = frozenset(
    {
        "host",
        "x-forwarded-host",
        "x-forwarded-for",
        "x-forwarded-proto",
        "content-length",
    }
    | HOP_BY_HOP_HEADERS
)

# ブラウザへ返さないレスポンスヘッダー (ボディを再構築すると値が合わなくなる)
RESPONSE_STRIP_HEADERS = frozenset({"content-encoding", "content-length"} | HOP_BY_HOP_HEADERS)


def strip_headers(
    headers: CIMultiDict | CIMultiDictProxy | dict, remove: Iterable[str]
) -> CIMultiDict:
    """指定したヘッダーを取り除いたコピーを返す

    同じキーが複数ある場合は出現順を保ったまますべてコピーする

    Args:
        headers: 元のヘッダー
        remove: 取り除くヘッダー名 (大文字小文字は区別しない)

    Returns:
        整形済みのヘッダー
    """
    removed = {name.lower() for name in remove}
    return CIMultiDict((k, v) for k, v in headers.items() if k.lower() not in removed)


def sanitize_request_headers(headers: CIMultiDict | CIMultiDictProxy | dict) -> CIMultiDict:
    return strip_headers(headers, REQUEST_STRIP_HEADERS)


def sanitize_response_headers(headers: CIMultiDict | CIMultiDictProxy | dict) -> CIMultiDict:
    return strip_headers(headers, RESPONSE_STRIP_HEADERS)
