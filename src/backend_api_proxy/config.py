"""ゲートウェイ設定

プロキシ先のバックエンド URL などの設定値を保持する
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass

UPSTREAM_URL_ENV = "API_SERVER_URL"
DEFAULT_MOUNT_PREFIX = "/api"
# JSON / フォーム / マルチパートのボディをメモリに展開する際の上限
DEFAULT_MAX_BODY_SIZE = 100 * 1024 * 1024


@dataclass(frozen=True)
class GatewayConfig:
    """プロキシゲートウェイの設定

    Attributes:
        upstream_url: バックエンドのベース URL。未設定の場合は None
        mount_prefix: このゲートウェイにルーティングされるパスのプレフィックス
        max_body_size: ボディを展開する際の最大バイト数
    """

    upstream_url: str | None
    mount_prefix: str = DEFAULT_MOUNT_PREFIX
    max_body_size: int = DEFAULT_MAX_BODY_SIZE

    @property
    def is_configured(self) -> bool:
        return bool(self.upstream_url)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> "GatewayConfig":
        """環境変数から設定を作成する

        Args:
            environ: 参照する環境変数。省略時は os.environ
            **overrides: 環境変数以外から与える設定値

        Returns:
            GatewayConfig インスタンス
        """
        if environ is None:
            environ = os.environ
        upstream_url = environ.get(UPSTREAM_URL_ENV) or None
        return cls(upstream_url=upstream_url, **overrides)
