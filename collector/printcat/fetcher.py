"""Amazon ページ取得モジュール.

プロキシ設定時はすべてのリクエストをプロキシ経由で送る（ボット対策はプロキシ側の責務）。
未設定時は User-Agent をリクエストごとにランダムに選び、ブラウザ相当のヘッダを付与する。
リトライは行わない（再試行方針はオーケストレータ側）。
"""

from __future__ import annotations

import logging
import random
import time

import requests

from printcat.config import (
    AFFILIATE_TAG,
    PRODUCT_URL_TEMPLATE,
    REQUEST_INTERVAL_MAX,
    REQUEST_INTERVAL_MIN,
    REQUEST_TIMEOUT,
    SCRAPER_PROXY_URL,
    SEARCH_URL_TEMPLATE,
    USER_AGENTS,
)
from printcat.errors import NetworkError
from printcat.models import FetchResult

logger = logging.getLogger(__name__)


def build_search_url(query: str) -> str:
    """検索結果ページの URL を組み立てる（query は URL エンコード済み）."""
    return SEARCH_URL_TEMPLATE.format(query=query, tag=AFFILIATE_TAG)


def build_product_url(asin: str) -> str:
    """商品ページの URL を組み立てる."""
    return PRODUCT_URL_TEMPLATE.format(asin=asin, tag=AFFILIATE_TAG)


def build_headers(proxied: bool = False) -> dict[str, str]:
    """リクエストヘッダを組み立てる.

    Args:
        proxied: プロキシ経由なら最小限のヘッダのみ

    Returns:
        ヘッダ dict。直接アクセス時は User-Agent を毎回ランダムに選ぶ。
    """
    if proxied:
        return {"Accept": "text/html,application/xhtml+xml"}

    return {
        "User-Agent": random.choice(USER_AGENTS),
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "none",
        "Sec-Fetch-User": "?1",
        "Upgrade-Insecure-Requests": "1",
    }


def fetch_page(
    url: str,
    proxy_url: str | None = None,
    timeout: float = REQUEST_TIMEOUT,
) -> FetchResult:
    """ページを取得し、ステータスと本文を返す.

    Args:
        url: 取得対象 URL
        proxy_url: フォワードプロキシ URL。None なら config の SCRAPER_PROXY_URL
        timeout: タイムアウト秒

    Returns:
        FetchResult。ステータスが 2xx 以外でも例外にはしない（判定は classifier）。

    Raises:
        NetworkError: 通信失敗・タイムアウト
    """
    proxy = proxy_url if proxy_url is not None else SCRAPER_PROXY_URL
    proxies = {"http": proxy, "https": proxy} if proxy else None

    try:
        resp = requests.get(
            url,
            headers=build_headers(proxied=bool(proxy)),
            proxies=proxies,
            timeout=timeout,
        )
    except requests.RequestException as e:
        logger.error("ページ取得失敗: url=%s, error=%s", url, e)
        raise NetworkError(f"ページ取得失敗: {url}: {e}") from e

    logger.debug("取得: url=%s, status=%d, length=%d", url, resp.status_code, len(resp.text))
    return FetchResult(url=url, status_code=resp.status_code, text=resp.text)


def wait_interval(
    min_seconds: float = REQUEST_INTERVAL_MIN,
    max_seconds: float = REQUEST_INTERVAL_MAX,
) -> None:
    """リクエスト間隔を min〜max 秒ランダムで待機する."""
    interval = random.uniform(min_seconds, max_seconds)
    time.sleep(interval)
