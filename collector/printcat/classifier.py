"""取得ページの判定モジュール.

ボット検知ページは商品を含まないので、抽出前に判定して空結果と区別する。
"""

from __future__ import annotations

from printcat.config import BLOCK_MARKERS, MIN_PAGE_LENGTH
from printcat.errors import BlockedError, HttpStatusError
from printcat.models import FetchResult, PageStatus


def is_challenge_page(body: str) -> bool:
    """CAPTCHA・ボット検知の目印を含むか."""
    return any(marker in body for marker in BLOCK_MARKERS)


def classify_page(status_code: int, body: str) -> PageStatus:
    """ステータスと本文からページを判定する.

    判定順:
      1. 検知マーカーを含む → BLOCKED
      2. 2xx 以外 → HTTP_ERROR
      3. 本文が MIN_PAGE_LENGTH 未満 → BLOCKED
    """
    if is_challenge_page(body):
        return PageStatus.BLOCKED
    if not 200 <= status_code < 300:
        return PageStatus.HTTP_ERROR
    if len(body) < MIN_PAGE_LENGTH:
        return PageStatus.BLOCKED
    return PageStatus.USABLE


def ensure_usable(result: FetchResult) -> str:
    """USABLE でなければ例外を送出し、USABLE なら本文を返す.

    Raises:
        BlockedError: ボット検知・極小ページ
        HttpStatusError: 2xx 以外
    """
    status = classify_page(result.status_code, result.text)
    if status is PageStatus.BLOCKED:
        raise BlockedError(
            f"ボット検知ページ: url={result.url}, length={len(result.text)}"
        )
    if status is PageStatus.HTTP_ERROR:
        raise HttpStatusError(result.status_code, result.url)
    return result.text
