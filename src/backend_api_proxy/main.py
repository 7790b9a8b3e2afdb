import argparse
import asyncio
import dataclasses
import logging
import signal
from collections.abc import Mapping

from aiohttp import web

from .config import DEFAULT_MAX_BODY_SIZE, DEFAULT_MOUNT_PREFIX, UPSTREAM_URL_ENV, GatewayConfig
from .proxy import ProxyHandler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def create_app(config: GatewayConfig) -> web.Application:
    """Web アプリケーションを作成し、ルーティングを設定する

    Args:
        config: ゲートウェイの設定

    Returns:
        設定済みの aiohttp Application インスタンス
    """
    app = web.Application(client_max_size=config.max_body_size)

    proxy_handler = ProxyHandler(config)

    # プレフィックス以下のすべてのリクエストをプロキシハンドラーに転送
    prefix = config.mount_prefix.rstrip("/")
    app.router.add_route("*", prefix + "/{tail:.*}", proxy_handler.handle_proxy)

    return app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Backend API Proxy - Reverse proxy gateway between the admin UI and the backend API"
    )
    parser.add_argument(
        "--api-server-url",
        type=str,
        default=None,
        help=f"Backend API base URL (default: ${UPSTREAM_URL_ENV})",
    )
    parser.add_argument(
        "--mount-prefix",
        type=str,
        default=DEFAULT_MOUNT_PREFIX,
        help=f"Path prefix forwarded to the backend (default: {DEFAULT_MOUNT_PREFIX})",
    )
    parser.add_argument("--port", type=int, default=8080, help="Server port (default: 8080)")
    parser.add_argument(
        "--host", type=str, default="0.0.0.0", help="Server host (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--max-body-size",
        type=int,
        default=DEFAULT_MAX_BODY_SIZE,
        help=f"Maximum buffered request body size in bytes (default: {DEFAULT_MAX_BODY_SIZE})",
    )
    return parser


def load_config(args: argparse.Namespace, environ: Mapping[str, str] | None = None) -> GatewayConfig:
    """コマンドライン引数と環境変数から設定を作成する

    --api-server-url が指定されていれば環境変数より優先する
    """
    config = GatewayConfig.from_env(
        environ, mount_prefix=args.mount_prefix, max_body_size=args.max_body_size
    )
    if args.api_server_url:
        config = dataclasses.replace(config, upstream_url=args.api_server_url)
    return config


async def main():
    """メインの非同期エントリーポイント

    コマンドライン引数を解析し、サーバーを起動する
    """
    args = build_parser().parse_args()
    config = load_config(args)

    if not config.is_configured:
        logger.warning(
            f"{UPSTREAM_URL_ENV} is not set; every proxied request will fail with 500"
        )

    app = create_app(config)

    # クライアント切断時にハンドラーをキャンセルし、上流へのリクエストも中断する
    runner = web.AppRunner(app, handler_cancellation=True)
    await runner.setup()
    site = web.TCPSite(runner, args.host, args.port)

    logger.info(f"Starting Backend API Proxy on {args.host}:{args.port}")
    logger.info(f"Proxying {config.mount_prefix}/* to {config.upstream_url}")

    # シャットダウンイベント (グレースフルシャットダウン用)
    shutdown_event = asyncio.Event()

    def signal_handler(_signum, _frame):
        """シグナルを受信したらシャットダウンイベントをセットする"""
        shutdown_event.set()

    # SIGINT (Ctrl+C) と SIGTERM シグナルをハンドリング
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await site.start()
        # シャットダウンシグナルを待機
        await shutdown_event.wait()
    finally:
        logger.info("Shutting down gracefully...")
        await runner.cleanup()
        logger.info("Server shutdown complete")


def run_server():
    """エントリポイント用のラッパー関数

    非同期メイン関数を実行し、KeyboardInterrupt を適切に処理する
    """
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        # Ctrl-C を優雅に処理
        pass


if __name__ == "__main__":
    run_server()
