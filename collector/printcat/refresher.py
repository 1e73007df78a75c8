"""既存商品の価格・在庫更新モジュール.

取得戦略（商品ページの現在価格）:
  1. ページ埋め込み JSON の "priceAmount"（主戦略）
  2. a-price ブロックの表示価格
  3. JSON-LD (schema.org/Product) の offers.price（フォールバック）
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from bs4 import BeautifulSoup

from printcat import db
from printcat.classifier import is_challenge_page
from printcat.config import (
    PRICE_REFRESH_BATCH_SIZE,
    PRICE_REFRESH_INTERVAL,
    PRICE_REFRESH_LIMIT,
    UNAVAILABLE_MARKERS,
)
from printcat.errors import AlreadyRunningError, NetworkError, PersistenceError
from printcat.extractor import PRICE_MATCHER, PatternMatcher, parse_price
from printcat.fetcher import build_product_url, fetch_page
from printcat.models import FetchResult, RefreshSummary
from printcat.runstate import RunGuard

logger = logging.getLogger(__name__)

PAGE_PRICE_MATCHERS: list[PatternMatcher] = [
    PatternMatcher("price_amount_json", re.compile(r'"priceAmount":\s*(\d+(?:\.\d+)?)')),
    PRICE_MATCHER,
]

# 1 商品の処理結果（RefreshSummary のフィールド名）
UPDATED = "updated"
UNCHANGED = "unchanged"
UNAVAILABLE = "unavailable"
BLOCKED = "blocked"
ERROR = "errors"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_unavailable_page(html: str) -> bool:
    """販売終了・在庫なしの表示を含むか."""
    return any(marker in html for marker in UNAVAILABLE_MARKERS)


def _price_from_json_ld(html: str) -> float | None:
    """JSON-LD の offers.price から価格を取る."""
    soup = BeautifulSoup(html, "html.parser")

    for script in soup.find_all("script", type="application/ld+json"):
        try:
            data = json.loads(script.string)
        except (json.JSONDecodeError, TypeError):
            continue

        entries = data if isinstance(data, list) else [data]
        for entry in entries:
            if not isinstance(entry, dict) or entry.get("@type") != "Product":
                continue
            offers = entry.get("offers") or {}
            if isinstance(offers, list):
                offers = offers[0] if offers else {}
            price = parse_price(str(offers.get("price", "")))
            if price:
                return price

    return None


def extract_current_price(html: str) -> float | None:
    """商品ページから現在価格を取る. 0 以下・取得失敗は None."""
    for matcher in PAGE_PRICE_MATCHERS:
        price = parse_price(matcher.first(html))
        if price is not None and price > 0:
            return price

    price = _price_from_json_ld(html)
    if price is not None and price > 0:
        return price
    return None


class PriceRefresher:
    """既存商品の価格を少数ずつ並行して再取得する（同時実行は 1 本のみ）."""

    def __init__(
        self,
        store=db,
        fetch: Callable[[str], FetchResult] = fetch_page,
        sleep: Callable[[float], None] = time.sleep,
        batch_size: int = PRICE_REFRESH_BATCH_SIZE,
        interval: float = PRICE_REFRESH_INTERVAL,
        guard: RunGuard | None = None,
    ):
        self.store = store
        self.fetch = fetch
        self.sleep = sleep
        self.batch_size = batch_size
        self.interval = interval
        self.guard = guard or RunGuard("price-refresh")
        self.last_summary: RefreshSummary | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self.guard.running

    def wait(self, timeout: float | None = None) -> None:
        """バックグラウンド実行の終了を待つ."""
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self, limit: int = PRICE_REFRESH_LIMIT) -> RefreshSummary:
        """価格更新を同期実行する.

        Raises:
            AlreadyRunningError: 既に実行中
        """
        if not self.guard.try_start():
            raise AlreadyRunningError("価格更新は既に実行中です")
        return self._run_started(limit)

    def start_in_background(self, limit: int = PRICE_REFRESH_LIMIT) -> bool:
        """価格更新を別スレッドで開始する. 実行中なら False."""
        if not self.guard.try_start():
            return False
        self._thread = threading.Thread(
            target=self._run_in_thread, args=(limit,), name="price-refresh", daemon=True
        )
        self._thread.start()
        return True

    def _run_in_thread(self, limit: int) -> None:
        try:
            self._run_started(limit)
        except Exception:
            logger.exception("価格更新が異常終了しました")

    def _run_started(self, limit: int) -> RefreshSummary:
        with self.guard.held() as outcome:
            summary = self._execute(limit)
            outcome.completed()
            return summary

    def _execute(self, limit: int) -> RefreshSummary:
        summary = RefreshSummary()
        items = self.store.get_refreshable_items(limit)
        if not items:
            logger.info("価格更新の対象商品がありません")
            self.last_summary = summary
            return summary

        logger.info("価格更新開始: %d 件", len(items))
        for start in range(0, len(items), self.batch_size):
            batch = items[start:start + self.batch_size]
            with ThreadPoolExecutor(max_workers=self.batch_size) as pool:
                outcomes = list(pool.map(self._refresh_one, batch))

            for result in outcomes:
                summary.checked += 1
                setattr(summary, result, getattr(summary, result) + 1)

            if start + self.batch_size < len(items):
                self.sleep(self.interval)

        logger.info(
            "価格更新完了: 更新 %d, 変更なし %d, 在庫なし %d, ブロック %d, エラー %d",
            summary.updated, summary.unchanged, summary.unavailable,
            summary.blocked, summary.errors,
        )
        self.last_summary = summary
        return summary

    def _refresh_one(self, item: dict) -> str:
        """1 商品を更新し、結果種別を返す."""
        asin = item["amazon_asin"]
        try:
            result = self.fetch(build_product_url(asin))

            if is_challenge_page(result.text):
                logger.warning("商品ページがブロックされました: asin=%s", asin)
                return BLOCKED
            if not 200 <= result.status_code < 300 or is_unavailable_page(result.text):
                return self._mark_unavailable(item)

            price = extract_current_price(result.text)
            if price is None:
                logger.info("価格が見つかりません: asin=%s", asin)
                return UNCHANGED

            old_price = item.get("price")
            if old_price is not None and abs(float(old_price) - price) < 0.005 and item.get("is_available", True):
                return UNCHANGED

            self.store.update_item(
                item["id"], {"price": price, "is_available": True, "updated_at": _now()}
            )
            logger.info("価格更新: asin=%s, %s → %s", asin, old_price, price)
            return UPDATED
        except NetworkError as e:
            logger.warning("商品ページ取得失敗（更新せず）: asin=%s, error=%s", asin, e)
            return ERROR
        except PersistenceError as e:
            logger.error("更新失敗: asin=%s, error=%s", asin, e)
            return ERROR
        except Exception:
            logger.exception("価格更新中の例外: asin=%s", asin)
            return ERROR

    def _mark_unavailable(self, item: dict) -> str:
        self.store.update_item(item["id"], {"is_available": False, "updated_at": _now()})
        logger.info("在庫なしに更新: asin=%s", item["amazon_asin"])
        return UNAVAILABLE
