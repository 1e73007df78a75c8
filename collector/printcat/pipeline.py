"""Amazon 検索結果からの商品取り込み.

処理フロー（クエリごと、順番に 1 本ずつ）:
  1. 検索結果 1 ページ目を取得
  2. ページ判定（ブロック・HTTP エラーならエラー 1 件としてスキップ）
  3. 商品ごとの範囲に分割し、既知 ASIN を除外
  4. 新規 ASIN からフィールド抽出（クエリあたり上限件数まで）
  5. 一括挿入し、成功した ASIN を既知集合に追加
  6. ランダム間隔で待機
クエリ単位の失敗は実行全体を止めない。最後に scrape_logs へ 1 件記録する。
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace
from datetime import datetime, timezone

from printcat import db
from printcat.classifier import ensure_usable
from printcat.config import DEFAULT_MAX_PER_QUERY, MAX_PER_QUERY_LIMIT, SEARCH_QUERIES
from printcat.dedup import KnownIdentifierSet, load_known_identifiers
from printcat.errors import (
    AlreadyRunningError,
    BlockedError,
    HttpStatusError,
    NetworkError,
    PersistenceError,
)
from printcat.extractor import extract_item
from printcat.fetcher import build_search_url, fetch_page, wait_interval
from printcat.models import (
    CatalogItem,
    FetchResult,
    IngestionRun,
    RunCounters,
    RunStatus,
    SearchQuery,
)
from printcat.runstate import ProgressLog, RunGuard
from printcat.segmenter import iter_item_spans

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def clamp_max_per_query(value) -> int:
    """クエリあたりの上限件数を 1〜MAX_PER_QUERY_LIMIT に収める."""
    try:
        n = int(value)
    except (TypeError, ValueError):
        return DEFAULT_MAX_PER_QUERY
    if n <= 0:
        return DEFAULT_MAX_PER_QUERY
    return min(n, MAX_PER_QUERY_LIMIT)


def normalize_categories(value, allowed: Iterable[str]) -> list[str] | None:
    """カテゴリ指定を検証してリストにする.

    Args:
        value: None・空・カテゴリ名 1 つ（str）・カテゴリ名のリスト
        allowed: 検索クエリに設定済みのカテゴリ

    Returns:
        カテゴリ名のリスト。未指定（None・空）なら None（全クエリ対象）。

    Raises:
        ValueError: リスト以外、または未知のカテゴリを含む
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)) or not all(isinstance(c, str) for c in value):
        raise ValueError("categories はカテゴリ名のリストで指定してください")
    if not value:
        return None

    unknown = sorted(set(value) - set(allowed))
    if unknown:
        raise ValueError(f"未知のカテゴリ: {', '.join(unknown)}")
    return list(value)


def determine_status(
    queries_processed: int,
    queries_failed: int,
    cancelled: bool = False,
) -> RunStatus:
    """全クエリ失敗なら failed、一部なら partial、なければ success.

    中断した実行は success にしない（1 クエリも処理せずに中断したら failed）。
    """
    if cancelled and not queries_processed:
        return RunStatus.FAILED
    if queries_processed and queries_failed >= queries_processed:
        return RunStatus.FAILED
    if queries_failed or cancelled:
        return RunStatus.PARTIAL
    return RunStatus.SUCCESS


class IngestionOrchestrator:
    """取り込み実行を管理する（同時実行は 1 本のみ）."""

    def __init__(
        self,
        store=db,
        fetch: Callable[[str], FetchResult] = fetch_page,
        sleep: Callable[[], None] = wait_interval,
        queries: Sequence[SearchQuery] = SEARCH_QUERIES,
        guard: RunGuard | None = None,
        progress: ProgressLog | None = None,
    ):
        self.store = store
        self.fetch = fetch
        self.sleep = sleep
        self.queries = list(queries)
        self.guard = guard or RunGuard("ingestion")
        self.progress = progress or ProgressLog()
        self.counters = RunCounters()
        self.last_run: IngestionRun | None = None
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self.guard.running

    @property
    def categories(self) -> set[str]:
        """検索クエリに設定されたカテゴリ."""
        return {q.category for q in self.queries}

    def select_queries(self, categories=None) -> list[SearchQuery]:
        """カテゴリ指定があれば該当クエリだけに絞る.

        Raises:
            ValueError: 不正なカテゴリ指定
        """
        wanted = normalize_categories(categories, self.categories)
        if not wanted:
            return list(self.queries)
        return [q for q in self.queries if q.category in wanted]

    def wait(self, timeout: float | None = None) -> None:
        """バックグラウンド実行の終了を待つ."""
        if self._thread is not None:
            self._thread.join(timeout)

    def cancel(self) -> None:
        """次のクエリに進む前に実行を打ち切るよう要求する."""
        if self.running:
            self._cancel.set()

    def run(
        self,
        categories: Iterable[str] | None = None,
        max_per_query: int = DEFAULT_MAX_PER_QUERY,
    ) -> IngestionRun:
        """取り込みを同期実行する.

        Raises:
            ValueError: 不正なカテゴリ指定
            AlreadyRunningError: 既に実行中
        """
        queries = self.select_queries(categories)
        if not self.guard.try_start():
            raise AlreadyRunningError("取り込みは既に実行中です")
        self._cancel.clear()
        return self._run_started(queries, max_per_query)

    def start_in_background(
        self,
        categories: Iterable[str] | None = None,
        max_per_query: int = DEFAULT_MAX_PER_QUERY,
    ) -> bool:
        """取り込みを別スレッドで開始する. 実行中なら開始せず False.

        Raises:
            ValueError: 不正なカテゴリ指定
        """
        queries = self.select_queries(categories)
        if not self.guard.try_start():
            return False
        self._cancel.clear()
        self._thread = threading.Thread(
            target=self._run_in_thread,
            args=(queries, max_per_query),
            name="ingestion",
            daemon=True,
        )
        self._thread.start()
        return True

    def _run_in_thread(self, queries, max_per_query) -> None:
        try:
            self._run_started(queries, max_per_query)
        except Exception as e:
            self.progress.log("error", f"致命的エラー: {e}", error=str(e))
            logger.exception("取り込み実行が異常終了しました")

    def _run_started(self, queries: list[SearchQuery], max_per_query) -> IngestionRun:
        with self.guard.held() as outcome:
            run = self._execute(queries, clamp_max_per_query(max_per_query))
            if run.status is not RunStatus.FAILED:
                outcome.completed()
            return run

    def _execute(self, queries: list[SearchQuery], max_per_query: int) -> IngestionRun:
        self.counters = RunCounters()
        self.progress.reset()
        started_at = _now()

        self.progress.log(
            "start",
            f"取り込み開始: {len(queries)} クエリ, 上限 {max_per_query} 件/クエリ",
        )

        try:
            known = load_known_identifiers(self.store.fetch_known_identifiers)
        except Exception as e:
            self.progress.log("error", f"既知 ASIN の読み込みに失敗: {e}", error=str(e))
            run = IngestionRun(
                status=RunStatus.FAILED,
                products_found=0,
                products_saved=0,
                errors_count=1,
                started_at=started_at,
                completed_at=_now(),
                error_details=f"既知 ASIN の読み込みに失敗: {e}",
            )
            self.last_run = run
            self._record_run(run)
            raise

        cancelled = False
        for i, query in enumerate(queries, start=1):
            if self._cancel.is_set():
                cancelled = True
                self.progress.log("cancel", f"中断要求により {i - 1}/{len(queries)} クエリで終了")
                break

            step = f"[{i}/{len(queries)}] {query.label}"
            self.counters.queries_processed += 1
            if not self._process_query(query, known, max_per_query, step):
                self.counters.queries_failed += 1

            if i < len(queries):
                self.sleep()

        c = self.counters
        status = determine_status(c.queries_processed, c.queries_failed, cancelled)
        run = IngestionRun(
            status=status,
            products_found=c.found,
            products_saved=c.saved,
            errors_count=c.errors,
            started_at=started_at,
            completed_at=_now(),
            error_details=self._error_details(cancelled),
        )
        self.progress.log(
            "done",
            f"取り込み完了: 検出 {c.found} 件, 保存 {c.saved} 件, エラー {c.errors} 件",
            totalFound=c.found,
            totalSaved=c.saved,
            errorsCount=c.errors,
            status=status.value,
        )
        self.last_run = run
        self._record_run(run)
        return run

    def _process_query(
        self,
        query: SearchQuery,
        known: KnownIdentifierSet,
        max_per_query: int,
        step: str,
    ) -> bool:
        """1 クエリ分を処理する. 失敗したら False."""
        try:
            self.progress.log("search", f"{step}: 検索中", query=query.query)
            html = ensure_usable(self.fetch(build_search_url(query.query)))

            self.progress.log("parse", f"{step}: {len(html):,} 文字取得、解析中")
            candidates = self._extract_new(html, query, known, max_per_query, step)
            self.progress.log("extract", f"{step}: 価格付き商品 {len(candidates)} 件を抽出")

            if not candidates:
                self.progress.log("warn", f"{step}: 新規の価格付き商品なし")
                return True

            self.counters.found += len(candidates)
            return self._save(candidates, known, step)

        except BlockedError as e:
            self.counters.errors += 1
            self.counters.blocked += 1
            self.progress.log("blocked", f"{step}: {e}")
            return False
        except HttpStatusError as e:
            self.counters.errors += 1
            self.counters.http_errors += 1
            self.progress.log("error", f"{step}: HTTP {e.status_code}", status=e.status_code)
            return False
        except NetworkError as e:
            self.counters.errors += 1
            self.progress.log("error", f"{step}: 通信エラー: {e}", error=str(e))
            return False
        except Exception as e:
            logger.exception("クエリ処理中の例外: %s", query.query)
            self.counters.errors += 1
            self.progress.log("error", f"{step}: 例外: {e}", error=str(e))
            return False

    def _extract_new(
        self,
        html: str,
        query: SearchQuery,
        known: KnownIdentifierSet,
        max_per_query: int,
        step: str,
    ) -> list[CatalogItem]:
        """未知 ASIN の範囲だけからフィールド抽出する."""
        spans = dict(iter_item_spans(html))
        new_ids = known.filter_new(spans)
        self.progress.log(
            "parse",
            f"{step}: ASIN {len(spans)} 件（既知 {len(spans) - len(new_ids)} 件をスキップ）",
        )

        candidates: list[CatalogItem] = []
        for asin in new_ids:
            item = extract_item(asin, spans[asin], query)
            if item is not None:
                candidates.append(item)
                if len(candidates) >= max_per_query:
                    break
        return candidates

    def _save(self, candidates: list[CatalogItem], known: KnownIdentifierSet, step: str) -> bool:
        now = _now()
        records = [replace(c, created_at=now, updated_at=now).to_record() for c in candidates]
        try:
            self.store.insert_items(records)
        except PersistenceError as e:
            self.counters.errors += len(candidates)
            self.progress.log("error", f"{step}: DB エラー: {e}", error=str(e))
            return False

        known.mark_all(c.amazon_asin for c in candidates)
        self.counters.saved += len(candidates)
        self.progress.log("save", f"{step}: {len(candidates)} 件を保存")
        return True

    def _error_details(self, cancelled: bool) -> str | None:
        c = self.counters
        parts = []
        if c.blocked:
            parts.append(f"blocked={c.blocked}")
        if c.http_errors:
            parts.append(f"http_errors={c.http_errors}")
        if c.queries_failed:
            parts.append(f"failed_queries={c.queries_failed}/{c.queries_processed}")
        if cancelled:
            parts.append("cancelled")
        return ", ".join(parts) or None

    def _record_run(self, run: IngestionRun) -> None:
        try:
            self.store.insert_ingestion_run(run.to_record())
        except PersistenceError as e:
            self.progress.log("error", f"実行記録の保存に失敗: {e}", error=str(e))
