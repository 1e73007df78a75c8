"""商品範囲テキストからのフィールド抽出モジュール.

各フィールドは PatternMatcher の順序付きリストで抽出する。
先頭のパターンから順に試し、最初に得られた（タイトルはゴミ判定を通過した）値を採用する。
"""

from __future__ import annotations

import html
import logging
import re
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from printcat.config import BRANDS, LOCALE
from printcat.fetcher import build_product_url
from printcat.models import CatalogItem, SearchQuery

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatternMatcher:
    """名前付きの正規表現 1 本. group(1) を抽出値とする."""

    name: str
    pattern: re.Pattern

    def find_all(self, text: str) -> Iterator[str]:
        for m in self.pattern.finditer(text):
            yield m.group(1)

    def first(self, text: str) -> str | None:
        m = self.pattern.search(text)
        return m.group(1) if m else None


# --- タイトル ---
TITLE_MATCHERS: list[PatternMatcher] = [
    # 見出し付近の a-text-normal スタイルの span
    PatternMatcher(
        "styled_text_span",
        re.compile(r'<span[^>]*class="a-size-[^"]*a-text-normal[^"]*"[^>]*>([^<]+)</span>', re.I),
    ),
    # 商品リンクの aria-label
    PatternMatcher(
        "link_aria_label",
        re.compile(r'<a\b[^>]*\baria-label="([^"]+)"', re.I),
    ),
    # h2 直下（リンク経由を含む）の素の span
    PatternMatcher(
        "heading_span",
        re.compile(r"<h2\b[^>]*>\s*(?:<a\b[^>]*>\s*)?<span[^>]*>([^<]+)</span>", re.I),
    ),
]

TITLE_MIN_LENGTH = 10
TITLE_BOILERPLATE = (
    "Check each product",
    "buying options",
    "Sponsored",
    "Best Seller",
)
_NUMERIC_LIKE = re.compile(r"^[\s$€£¥.,:%+\-\d]*$")
_STAR_RATING = re.compile(r"\d+(?:\.\d+)?\s+out\s+of\s+5\s+stars", re.I)
_COUNT_LABEL = re.compile(r"^[\d,.]+\s+(?:ratings?|reviews?)$", re.I)

# --- 価格（小数 2 桁必須、桁区切り可）---
PRICE_MATCHER = PatternMatcher(
    "a_price_block",
    re.compile(
        r'<span class="a-price"[^>]*>.*?\$((?:\d{1,3}(?:,\d{3})+|\d+)\.\d{2})(?![\d.])',
        re.S,
    ),
)

# --- 評価・レビュー数（任意項目）---
RATING_MATCHERS: list[PatternMatcher] = [
    PatternMatcher("star_rating_text", re.compile(r"(\d(?:\.\d)?) out of 5 stars")),
]
REVIEW_COUNT_MATCHERS: list[PatternMatcher] = [
    PatternMatcher("ratings_aria_label", re.compile(r'aria-label="([\d,]+) ratings?"')),
    PatternMatcher(
        "underlined_count_span",
        re.compile(r'<span class="a-size-base s-underline-text">\s*([\d,]+)\s*</span>'),
    ),
]

# --- タイトル由来の仕様 ---
_BUILD_VOLUME = re.compile(r"(\d{2,4})\s*[x×]\s*(\d{2,4})\s*[x×]\s*(\d{2,4})\s*mm")
_WEIGHT_KG = re.compile(r"(\d+(?:\.\d+)?)\s*kg\b")
_FILAMENT_DIAMETER = re.compile(r"(1\.75|2\.85)\s*mm")
_NOZZLE_SIZE = re.compile(r"(0\.\d)\s*mm\s*nozzle")
_USED_WORDS = re.compile(r"\b(?:renewed|refurbished|used)\b", re.I)

# 液体レジンがプリンタ検索に混ざる場合の閾値
RESIN_LIQUID_MAX_PRICE = 80.0


def clean_text(raw: str) -> str:
    """HTML エンティティを戻し、空白を 1 つにまとめる."""
    return " ".join(html.unescape(raw).split())


def is_garbage_title(title: str) -> bool:
    """タイトル候補がゴミ（短すぎ・数値のみ・星評価・定型文）か判定する."""
    if len(title) < TITLE_MIN_LENGTH:
        return True
    if _NUMERIC_LIKE.match(title):
        return True
    if _STAR_RATING.search(title):
        return True
    if _COUNT_LABEL.match(title):
        return True
    lowered = title.lower()
    return any(phrase.lower() in lowered for phrase in TITLE_BOILERPLATE)


def extract_title(span: str, matchers: Sequence[PatternMatcher] = TITLE_MATCHERS) -> str | None:
    """パターン順・出現順に候補を試し、最初のゴミでないタイトルを返す."""
    for matcher in matchers:
        for raw in matcher.find_all(span):
            title = clean_text(raw)
            if not is_garbage_title(title):
                return title
    return None


def parse_price(text: str | None) -> float | None:
    """"1,299.99" 形式の金額を float に変換する."""
    if not text:
        return None
    try:
        return float(text.replace(",", ""))
    except ValueError:
        return None


def extract_price(span: str) -> float | None:
    """価格を抽出する. 見つからない・0 以下なら None."""
    price = parse_price(PRICE_MATCHER.first(span))
    if price is None or price <= 0:
        return None
    return price


def _first_match(span: str, matchers: Sequence[PatternMatcher]) -> str | None:
    for matcher in matchers:
        value = matcher.first(span)
        if value is not None:
            return value
    return None


def extract_rating(span: str) -> float | None:
    """星評価（0.0〜5.0）を抽出する."""
    value = _first_match(span, RATING_MATCHERS)
    if value is None:
        return None
    rating = float(value)
    return rating if 0.0 <= rating <= 5.0 else None


def extract_review_count(span: str) -> int | None:
    """レビュー数を抽出する."""
    value = _first_match(span, REVIEW_COUNT_MATCHERS)
    if value is None:
        return None
    digits = value.replace(",", "")
    return int(digits) if digits else None


def detect_brand(title: str, brands: Sequence[str] = BRANDS) -> str | None:
    """タイトルに含まれる最初のブランドを返す（大文字小文字は無視）."""
    upper = title.upper()
    for brand in brands:
        if brand.upper() in upper:
            return brand
    return None


def detect_condition(title: str) -> str:
    """整備品・中古の表記があれば "used"."""
    if _USED_WORDS.search(title):
        return "used"
    return "new"


def parse_specs(title: str) -> dict:
    """タイトルから造形サイズ・重量・フィラメント径・ノズル径を拾う."""
    lowered = title.lower()
    specs: dict = {}

    m = _BUILD_VOLUME.search(lowered)
    if m:
        specs["build_volume"] = f"{m.group(1)}x{m.group(2)}x{m.group(3)}mm"

    m = _WEIGHT_KG.search(lowered)
    if m:
        specs["weight_kg"] = float(m.group(1))

    m = _FILAMENT_DIAMETER.search(lowered)
    if m:
        specs["filament_diameter"] = f"{m.group(1)}mm"

    m = _NOZZLE_SIZE.search(lowered)
    if m:
        specs["nozzle_size"] = f"{m.group(1)}mm"

    return specs


def resolve_category(query: SearchQuery, specs: dict, price: float) -> tuple[str, str]:
    """カテゴリ・種別を決める.

    レジンプリンタ検索に混ざった液体レジン（造形サイズ表記なし・安価）は resin/uv_resin に振り替える。
    """
    if (
        query.product_type == "resin_sla"
        and "build_volume" not in specs
        and price < RESIN_LIQUID_MAX_PRICE
    ):
        return "resin", "uv_resin"
    return query.category, query.product_type


def extract_item(asin: str, span: str, query: SearchQuery) -> CatalogItem | None:
    """1 商品分の範囲から商品レコードを作る.

    Args:
        asin: 商品 ASIN
        span: segmenter が切り出した範囲テキスト
        query: 検索クエリ（カテゴリ・種別の元）

    Returns:
        CatalogItem。タイトルまたは価格が取れなければ None（エラーではない）。
    """
    title = extract_title(span)
    if title is None:
        logger.debug("タイトルなし: asin=%s", asin)
        return None

    price = extract_price(span)
    if price is None:
        logger.debug("価格なし: asin=%s", asin)
        return None

    specs = parse_specs(title)
    category, product_type = resolve_category(query, specs, price)

    return CatalogItem(
        amazon_asin=asin,
        product_name=title,
        price=price,
        category=category,
        product_type=product_type,
        amazon_url=build_product_url(asin),
        brand=detect_brand(title),
        condition=detect_condition(title),
        locale=LOCALE,
        rating=extract_rating(span),
        review_count=extract_review_count(span),
        is_available=True,
        build_volume=specs.get("build_volume"),
        weight_kg=specs.get("weight_kg"),
        specs_text=specs.get("build_volume") or specs.get("filament_diameter"),
    )
