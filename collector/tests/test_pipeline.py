"""pipeline モジュールのテスト（DB・HTTP はフェイクに差し替え）."""

import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from printcat.errors import AlreadyRunningError, NetworkError, PersistenceError
from printcat.extractor import extract_item
from printcat.fetcher import build_search_url
from printcat.models import FetchResult, RunState, RunStatus, SearchQuery
from printcat.pipeline import (
    IngestionOrchestrator,
    clamp_max_per_query,
    determine_status,
    normalize_categories,
)

FIXTURES_DIR = Path(__file__).parent / "fixtures"

FDM = SearchQuery("3D+printer+FDM", "3d_printer", "fdm", "3D Printer FDM")
PLA = SearchQuery("3D+printer+filament+PLA", "filament", "pla", "PLA Filament")
PEN = SearchQuery("3D+pen", "3d_pen", "3d_pen", "3D Pen")

_PADDING = "<style>" + ".s-pad { margin: 0; }\n" * 400 + "</style>"


def _load_fixture(name: str) -> str:
    return (FIXTURES_DIR / name).read_text(encoding="utf-8")


def _item(asin: str, title: str | None = None, price: str | None = None, rating: str | None = None) -> str:
    parts = [f'<div data-asin="{asin}" data-component-type="s-search-result">']
    if title:
        parts.append(
            f'<h2><a href="/dp/{asin}"><span class="a-size-medium a-color-base a-text-normal">'
            f"{title}</span></a></h2>"
        )
    if rating:
        parts.append(f'<span class="a-icon-alt">{rating} out of 5 stars</span>')
    if price:
        parts.append(f'<span class="a-price"><span class="a-offscreen">{price}</span></span>')
    parts.append("</div>")
    return "".join(parts)


def _page(*items: str) -> str:
    return f"<html><head>{_PADDING}</head><body>{''.join(items)}</body></html>"


def _priced_page(*asins: str) -> str:
    return _page(*(_item(a, f"Test Product Title for {a}", "$19.99") for a in asins))


class FakeStore:
    """db モジュールの代わり."""

    def __init__(self, known=(), fail_asins=(), fail_count=None, fail_load=False):
        self.rows = list(known)
        self.inserted: list[dict] = []
        self.runs: list[dict] = []
        self.fail_asins = set(fail_asins)
        self.fail_count = fail_count
        self.fail_load = fail_load

    def fetch_known_identifiers(self, offset, limit):
        if self.fail_load:
            raise RuntimeError("connection refused")
        return self.rows[offset:offset + limit]

    def insert_items(self, records):
        if any(r["amazon_asin"] in self.fail_asins for r in records):
            if self.fail_count is None or self.fail_count > 0:
                if self.fail_count is not None:
                    self.fail_count -= 1
                raise PersistenceError("insert failed")
        self.inserted.extend(records)
        self.rows.extend(r["amazon_asin"] for r in records)
        return len(records)

    def insert_ingestion_run(self, record):
        self.runs.append(record)


class FakeFetch:
    """検索 URL → FetchResult（または例外）を返す."""

    def __init__(self, pages: dict):
        self.pages = {build_search_url(q.query): page for q, page in pages.items()}
        self.calls: list[str] = []

    def __call__(self, url):
        self.calls.append(url)
        page = self.pages[url]
        if isinstance(page, Exception):
            raise page
        if isinstance(page, FetchResult):
            return page
        return FetchResult(url=url, status_code=200, text=page)


def _orchestrator(store, pages, queries=None, sleep=None):
    return IngestionOrchestrator(
        store=store,
        fetch=FakeFetch(pages),
        sleep=sleep or (lambda: None),
        queries=queries or list(pages),
    )


class TestScenario:
    """既知・新規・価格なしが混在する検索結果."""

    def test_known_new_and_dropped(self):
        html = _page(
            _item("A100000001", "Some Known Printer Already Saved", "$299.99"),
            _item("A200000002", "ACME X1 3D Printer FDM 220x220x250", "$199.99"),
            _item("A300000003", rating="4.2"),
        )
        store = FakeStore(known=["A100000001"])
        orch = _orchestrator(store, {FDM: html})

        run = orch.run()

        assert [r["amazon_asin"] for r in store.inserted] == ["A200000002"]
        record = store.inserted[0]
        assert record["price"] == 199.99
        assert record["category"] == "3d_printer"
        assert record["product_type"] == "fdm"
        assert record["product_name"] == "ACME X1 3D Printer FDM 220x220x250"
        assert "created_at" in record and "updated_at" in record

        assert run.products_found == 1
        assert run.products_saved == 1
        assert run.errors_count == 0
        assert run.status is RunStatus.SUCCESS
        assert store.runs == [run.to_record()]


class TestKnownIdentifiers:
    """既知 ASIN の除外."""

    def test_known_never_extracted(self):
        store = FakeStore(known=["B0AAAAAAA1"])
        orch = _orchestrator(store, {FDM: _load_fixture("search_results.html")})

        with patch("printcat.pipeline.extract_item", wraps=extract_item) as spy:
            orch.run()

        extracted = [c.args[0] for c in spy.call_args_list]
        assert "B0AAAAAAA1" not in extracted
        assert [r["amazon_asin"] for r in store.inserted] == ["B0AAAAAAA2"]

    def test_idempotent_second_run(self):
        store = FakeStore()
        orch = _orchestrator(store, {FDM: _load_fixture("search_results.html")})

        first = orch.run()
        second = orch.run()

        assert first.products_saved == 2
        assert second.products_saved == 0
        assert second.products_found == 0
        assert second.status is RunStatus.SUCCESS

    def test_saved_items_become_known_within_run(self):
        html = _priced_page("C100000001", "C100000002")
        store = FakeStore()
        orch = _orchestrator(store, {FDM: html, PLA: html})

        run = orch.run()

        assert len(store.inserted) == 2
        assert run.products_saved == 2
        assert orch.counters.queries_failed == 0


class TestPageErrors:
    """ブロック・HTTP エラー・通信エラー."""

    def test_blocked_page_skips_extraction(self):
        store = FakeStore()
        orch = _orchestrator(store, {FDM: _load_fixture("captcha.html")})

        with patch("printcat.pipeline.iter_item_spans") as mock_spans, \
                patch("printcat.pipeline.extract_item") as mock_extract:
            run = orch.run()

        mock_spans.assert_not_called()
        mock_extract.assert_not_called()
        assert store.inserted == []
        assert run.errors_count == 1
        assert run.products_found == 0
        assert run.products_saved == 0
        assert orch.counters.blocked == 1
        assert run.status is RunStatus.FAILED
        assert "blocked=1" in run.error_details
        assert "blocked" in [e["type"] for e in orch.progress.snapshot()]

    def test_http_error_then_continue(self):
        store = FakeStore()
        pages = {
            FDM: FetchResult(url="", status_code=500, text=_priced_page("D100000001")),
            PLA: _priced_page("D200000002"),
        }
        orch = _orchestrator(store, pages)

        run = orch.run()

        assert run.errors_count == 1
        assert orch.counters.http_errors == 1
        assert [r["amazon_asin"] for r in store.inserted] == ["D200000002"]
        assert run.status is RunStatus.PARTIAL

    def test_network_error_is_per_query(self):
        store = FakeStore()
        pages = {FDM: NetworkError("timed out"), PLA: _priced_page("E100000001")}
        orch = _orchestrator(store, pages)

        run = orch.run()

        assert run.errors_count == 1
        assert run.products_saved == 1
        assert run.status is RunStatus.PARTIAL

    def test_unexpected_exception_is_per_query(self):
        store = FakeStore()
        pages = {FDM: ValueError("unexpected"), PLA: _priced_page("E200000001")}
        orch = _orchestrator(store, pages)

        run = orch.run()

        assert run.errors_count == 1
        assert run.products_saved == 1


class TestRunStatus:
    """一括挿入の失敗数と最終ステータス."""

    @pytest.mark.parametrize(
        "failing, expected",
        [
            (3, RunStatus.FAILED),
            (1, RunStatus.PARTIAL),
            (0, RunStatus.SUCCESS),
        ],
    )
    def test_status_by_failed_queries(self, failing, expected):
        pages = {
            FDM: _priced_page("F100000001"),
            PLA: _priced_page("F200000002"),
            PEN: _priced_page("F300000003"),
        }
        failing_asins = ["F100000001", "F200000002", "F300000003"][:failing]
        store = FakeStore(fail_asins=failing_asins)
        orch = _orchestrator(store, pages)

        run = orch.run()

        assert run.status is expected
        assert run.errors_count == failing
        assert run.products_saved == 3 - failing
        assert store.runs[-1]["status"] == expected.value

    def test_failed_batch_not_marked_known(self):
        """失敗したバッチの ASIN は既知にならず、後続クエリで保存されること."""
        html = _priced_page("G100000001", "G100000002")
        store = FakeStore(fail_asins=["G100000001"], fail_count=1)
        orch = _orchestrator(store, {FDM: html, PLA: html})

        run = orch.run()

        assert run.errors_count == 2
        assert run.products_found == 4
        assert run.products_saved == 2
        assert {r["amazon_asin"] for r in store.inserted} == {"G100000001", "G100000002"}
        assert run.status is RunStatus.PARTIAL

    def test_determine_status(self):
        assert determine_status(3, 3) is RunStatus.FAILED
        assert determine_status(3, 1) is RunStatus.PARTIAL
        assert determine_status(3, 0) is RunStatus.SUCCESS
        assert determine_status(0, 0) is RunStatus.SUCCESS

    def test_cancelled_run_is_never_success(self):
        assert determine_status(0, 0, cancelled=True) is RunStatus.FAILED
        assert determine_status(1, 0, cancelled=True) is RunStatus.PARTIAL
        assert determine_status(1, 1, cancelled=True) is RunStatus.FAILED


class TestRunControl:
    """単一実行・上限・カテゴリ絞り込み・中断."""

    def test_setup_failure_fails_run(self):
        store = FakeStore(fail_load=True)
        orch = _orchestrator(store, {FDM: _priced_page("H100000001")})

        with pytest.raises(RuntimeError):
            orch.run()

        assert store.runs[-1]["status"] == "failed"
        assert orch.guard.state is RunState.FAILED
        assert not orch.running
        assert orch.fetch.calls == []

    def test_already_running(self):
        orch = _orchestrator(FakeStore(), {FDM: _priced_page("H200000001")})
        orch.guard.try_start()

        with pytest.raises(AlreadyRunningError):
            orch.run()

    def test_guard_completed_after_run(self):
        orch = _orchestrator(FakeStore(), {FDM: _priced_page("H300000001")})
        orch.run()
        assert orch.guard.state is RunState.COMPLETED

    def test_max_per_query(self):
        html = _priced_page(*(f"J{i:09d}" for i in range(10)))
        store = FakeStore()
        orch = _orchestrator(store, {FDM: html})

        run = orch.run(max_per_query=3)

        assert run.products_saved == 3
        assert [r["amazon_asin"] for r in store.inserted] == ["J000000000", "J000000001", "J000000002"]

    def test_clamp_max_per_query(self):
        assert clamp_max_per_query(500) == 100
        assert clamp_max_per_query("abc") == 30
        assert clamp_max_per_query(0) == 30
        assert clamp_max_per_query(None) == 30
        assert clamp_max_per_query("12") == 12

    def test_category_filter(self):
        store = FakeStore()
        pages = {FDM: _priced_page("K100000001"), PLA: _priced_page("K200000002")}
        orch = _orchestrator(store, pages)

        orch.run(categories=["filament"])

        assert orch.fetch.calls == [build_search_url(PLA.query)]
        assert store.inserted[0]["category"] == "filament"

    def test_single_category_string(self):
        """カテゴリ名 1 つの文字列でも該当クエリが実行されること."""
        store = FakeStore()
        pages = {FDM: _priced_page("K300000001"), PLA: _priced_page("K400000002")}
        orch = _orchestrator(store, pages)

        run = orch.run(categories="filament")

        assert orch.fetch.calls == [build_search_url(PLA.query)]
        assert run.products_saved == 1

    @pytest.mark.parametrize("categories", [["printer"], ["filament", "printer"], 42, {"filament": 1}])
    def test_invalid_categories_rejected(self, categories):
        """不正なカテゴリ指定は実行を開始せずに ValueError."""
        store = FakeStore()
        orch = _orchestrator(store, {FDM: _priced_page("K500000001"), PLA: _priced_page("K600000002")})

        with pytest.raises(ValueError):
            orch.run(categories=categories)
        with pytest.raises(ValueError):
            orch.start_in_background(categories=categories)

        assert orch.fetch.calls == []
        assert store.runs == []
        assert orch.guard.state is RunState.IDLE

    def test_normalize_categories(self):
        allowed = {"3d_printer", "filament"}
        assert normalize_categories(None, allowed) is None
        assert normalize_categories([], allowed) is None
        assert normalize_categories("", allowed) is None
        assert normalize_categories("filament", allowed) == ["filament"]
        assert normalize_categories(["3d_printer", "filament"], allowed) == ["3d_printer", "filament"]
        with pytest.raises(ValueError):
            normalize_categories(["resin"], allowed)
        with pytest.raises(ValueError):
            normalize_categories([1], allowed)

    def test_sleep_between_queries(self):
        sleeps = []
        pages = {FDM: _priced_page("L100000001"), PLA: _priced_page("L200000002"), PEN: _priced_page("L300000003")}
        orch = _orchestrator(FakeStore(), pages, sleep=lambda: sleeps.append(1))

        orch.run()

        assert len(sleeps) == 2

    def test_cancel_between_queries(self):
        store = FakeStore()
        pages = {FDM: _priced_page("M100000001"), PLA: _priced_page("M200000002")}
        orch = _orchestrator(store, pages)
        orch.sleep = orch.cancel

        run = orch.run()

        assert orch.fetch.calls == [build_search_url(FDM.query)]
        assert run.products_saved == 1
        assert "cancelled" in run.error_details
        assert orch.progress.snapshot()[-2]["type"] == "cancel"
        assert run.status is RunStatus.PARTIAL

    def test_cancel_before_first_query(self):
        """クエリを 1 本も処理せずに中断した実行は failed で記録されること."""
        store = FakeStore()
        orch = _orchestrator(store, {FDM: _priced_page("M300000001")})
        load = store.fetch_known_identifiers

        def load_then_cancel(offset, limit):
            orch.cancel()
            return load(offset, limit)

        store.fetch_known_identifiers = load_then_cancel

        run = orch.run()

        assert orch.fetch.calls == []
        assert run.status is RunStatus.FAILED
        assert store.runs[-1]["status"] == "failed"
        assert "cancelled" in run.error_details
        assert not orch.running

    def test_progress_feed(self):
        orch = _orchestrator(FakeStore(), {FDM: _priced_page("N100000001")})
        orch.run()

        types = [e["type"] for e in orch.progress.snapshot()]
        assert types[0] == "start"
        assert "save" in types
        assert types[-1] == "done"


class TestBackground:
    """バックグラウンド実行."""

    def test_second_trigger_rejected(self):
        release = threading.Event()
        store = FakeStore()
        fetch = FakeFetch({FDM: _priced_page("P100000001")})

        def slow_fetch(url):
            release.wait(5)
            return fetch(url)

        orch = IngestionOrchestrator(store=store, fetch=slow_fetch, sleep=lambda: None, queries=[FDM])

        assert orch.start_in_background()
        assert orch.running
        assert not orch.start_in_background()

        release.set()
        orch.wait(5)

        assert not orch.running
        assert orch.last_run.products_saved == 1
        assert orch.start_in_background()
        orch.wait(5)
