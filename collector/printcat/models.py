"""データモデル定義."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum


class PageStatus(Enum):
    """取得ページの判定結果."""

    USABLE = "usable"
    BLOCKED = "blocked"  # CAPTCHA・ボット検知・極小ページ
    HTTP_ERROR = "http_error"


class RunStatus(str, Enum):
    """取り込み実行の最終ステータス."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class RunState(Enum):
    """単一実行ガードの状態."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class SearchQuery:
    """検索クエリ設定（静的）."""

    query: str  # URL エンコード済み (例: 3D+printer+FDM)
    category: str  # 3d_printer / filament / resin / accessories / 3d_pen
    product_type: str  # fdm / pla / uv_resin など
    label: str  # 表示用


@dataclass
class FetchResult:
    """HTTP 取得結果."""

    url: str
    status_code: int
    text: str


@dataclass
class CatalogItem:
    """products テーブルに書き込む商品レコード."""

    amazon_asin: str
    product_name: str
    price: float
    category: str
    product_type: str
    amazon_url: str
    brand: str | None = None
    condition: str = "new"  # "new" or "used"
    locale: str = "us"
    rating: float | None = None  # 0.0〜5.0
    review_count: int | None = None
    is_available: bool = True
    build_volume: str | None = None
    weight_kg: float | None = None
    specs_text: str | None = None
    created_at: str | None = None  # ISO 8601（初回検出）
    updated_at: str | None = None  # ISO 8601

    def to_record(self) -> dict:
        """DB 書き込み用 dict に変換する（未設定のタイムスタンプは除外）."""
        record = asdict(self)
        for key in ("created_at", "updated_at"):
            if record[key] is None:
                del record[key]
        return record


@dataclass
class IngestionRun:
    """scrape_logs テーブルに書き込む実行記録."""

    status: RunStatus
    products_found: int
    products_saved: int
    errors_count: int
    started_at: str  # ISO 8601
    completed_at: str  # ISO 8601
    error_details: str | None = None

    def to_record(self) -> dict:
        record = asdict(self)
        record["status"] = self.status.value
        return record


@dataclass
class RunCounters:
    """1 回の取り込み実行内のカウンタ."""

    found: int = 0
    saved: int = 0
    errors: int = 0
    blocked: int = 0
    http_errors: int = 0
    queries_processed: int = 0
    queries_failed: int = 0


@dataclass
class RefreshSummary:
    """価格更新の結果集計."""

    checked: int = 0
    updated: int = 0
    unchanged: int = 0
    unavailable: int = 0
    blocked: int = 0
    errors: int = 0
