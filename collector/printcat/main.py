"""3D プリンタ価格カタログ収集 — メインエントリーポイント.

サブコマンド:
  scrape          Amazon 検索結果から新規商品を取り込む（cron 用）
  refresh-prices  既存商品の価格・在庫を更新する
  serve           管理 API を起動する
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from datetime import datetime

from printcat.config import DEFAULT_MAX_PER_QUERY, LOG_DIR, PRICE_REFRESH_LIMIT, SEARCH_QUERIES
from printcat.errors import AlreadyRunningError
from printcat.models import RunStatus
from printcat.pipeline import IngestionOrchestrator
from printcat.refresher import PriceRefresher


def setup_logging() -> None:
    """ロギングの初期設定."""
    log_file = LOG_DIR / f"collector_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="3D printer price catalog collector")
    sub = parser.add_subparsers(dest="command", required=True)

    scrape = sub.add_parser("scrape", help="Amazon 検索結果から商品を取り込む")
    scrape.add_argument(
        "--categories", nargs="*", default=None,
        choices=sorted({q.category for q in SEARCH_QUERIES}),
        help="対象カテゴリ (例: 3d_printer filament)。省略時は全クエリ",
    )
    scrape.add_argument("--max-per-query", type=int, default=DEFAULT_MAX_PER_QUERY)

    refresh = sub.add_parser("refresh-prices", help="既存商品の価格・在庫を更新する")
    refresh.add_argument("--limit", type=int, default=PRICE_REFRESH_LIMIT)

    serve = sub.add_parser("serve", help="管理 API を起動する")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=3000)
    serve.add_argument("--debug", action="store_true")

    return parser


def run_scrape(categories: list[str] | None, max_per_query: int) -> int:
    logger = logging.getLogger(__name__)
    logger.info("=== 商品取り込み 開始 ===")
    start_time = time.time()

    run = IngestionOrchestrator().run(categories, max_per_query)

    elapsed = time.time() - start_time
    logger.info("=== 商品取り込み 完了 ===")
    logger.info(
        "ステータス: %s, 検出: %d 件, 保存: %d 件, エラー: %d 件, 所要時間: %.1f 秒",
        run.status.value, run.products_found, run.products_saved, run.errors_count, elapsed,
    )
    return 1 if run.status is RunStatus.FAILED else 0


def run_refresh(limit: int) -> int:
    logger = logging.getLogger(__name__)
    logger.info("=== 価格更新 開始 ===")
    summary = PriceRefresher().run(limit)
    logger.info(
        "=== 価格更新 完了 === 確認 %d 件, 更新 %d 件, 在庫なし %d 件, エラー %d 件",
        summary.checked, summary.updated, summary.unavailable, summary.errors,
    )
    return 0


def run(argv: list[str] | None = None) -> int:
    """メイン処理."""
    args = build_parser().parse_args(argv)
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        if args.command == "scrape":
            return run_scrape(args.categories, args.max_per_query)
        if args.command == "refresh-prices":
            return run_refresh(args.limit)
    except AlreadyRunningError as e:
        logger.warning("%s", e)
        return 2

    from printcat.admin import create_app

    logger.info("管理 API を起動: http://%s:%d", args.host, args.port)
    create_app().run(host=args.host, port=args.port, debug=args.debug)
    return 0


if __name__ == "__main__":
    sys.exit(run())
