"""Supabase データベース操作モジュール.

products（商品カタログ）と scrape_logs（取り込み実行記録）を扱う。
"""

from __future__ import annotations

import logging
from functools import lru_cache

from supabase import Client, create_client

from printcat.config import (
    LOCALE,
    MANUAL_ID_PREFIX,
    PRODUCTS_TABLE,
    SCRAPE_LOGS_TABLE,
    SUPABASE_SECRET_KEY,
    SUPABASE_URL,
)
from printcat.errors import PersistenceError

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _get_client() -> Client:
    """Supabase クライアントを初回呼び出し時に作る."""
    return create_client(SUPABASE_URL, SUPABASE_SECRET_KEY)


def _table(name: str):
    """テーブルを参照する."""
    return _get_client().table(name)


def fetch_known_identifiers(offset: int, limit: int) -> list[str]:
    """既存商品の ASIN を 1 ページ分取得する.

    Args:
        offset: 開始位置（0 始まり）
        limit: 取得件数

    Returns:
        ASIN のリスト。limit 未満なら最終ページ。
    """
    resp = (
        _table(PRODUCTS_TABLE)
        .select("amazon_asin")
        .eq("locale", LOCALE)
        .order("amazon_asin")
        .range(offset, offset + limit - 1)
        .execute()
    )
    return [row["amazon_asin"] for row in resp.data if row.get("amazon_asin")]


def insert_items(records: list[dict]) -> int:
    """商品レコードを一括挿入する（既知 ASIN は呼び出し側で除外済み）.

    Args:
        records: CatalogItem.to_record() のリスト

    Returns:
        挿入件数

    Raises:
        PersistenceError: 書き込み失敗
    """
    if not records:
        return 0
    try:
        _table(PRODUCTS_TABLE).insert(records).execute()
    except Exception as e:
        raise PersistenceError(f"products 挿入失敗 ({len(records)} 件): {e}") from e
    logger.info("products に %d 件挿入", len(records))
    return len(records)


def insert_ingestion_run(record: dict) -> None:
    """取り込み実行記録を 1 件追加する.

    Args:
        record: {"status", "products_found", "products_saved", "errors_count",
                 "error_details", "started_at", "completed_at"}

    Raises:
        PersistenceError: 書き込み失敗
    """
    try:
        _table(SCRAPE_LOGS_TABLE).insert(record).execute()
    except Exception as e:
        raise PersistenceError(f"scrape_logs 挿入失敗: {e}") from e
    logger.info("scrape_logs に記録: status=%s", record.get("status"))


def get_refreshable_items(limit: int) -> list[dict]:
    """価格更新対象（手動登録以外）の商品を取得する.

    Returns:
        [{"id", "amazon_asin", "price", "is_available"}, ...]
    """
    resp = (
        _table(PRODUCTS_TABLE)
        .select("id, amazon_asin, price, is_available")
        .not_.like("amazon_asin", f"{MANUAL_ID_PREFIX}%")
        .limit(limit)
        .execute()
    )
    return resp.data


def update_item(item_id, fields: dict) -> None:
    """商品 1 件を更新する.

    Raises:
        PersistenceError: 書き込み失敗
    """
    try:
        _table(PRODUCTS_TABLE).update(fields).eq("id", item_id).execute()
    except Exception as e:
        raise PersistenceError(f"products 更新失敗: id={item_id}: {e}") from e
