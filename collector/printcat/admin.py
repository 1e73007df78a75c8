"""管理用 API — 取り込み・価格更新の起動と進捗参照.

起動系エンドポイントは受付のみ行い即座に応答する。
結果は進捗フィードと scrape_logs で確認する。
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone

from flask import Blueprint, Flask, current_app, jsonify, request

from printcat.config import ADMIN_KEY, DEFAULT_MAX_PER_QUERY
from printcat.pipeline import IngestionOrchestrator, clamp_max_per_query, normalize_categories
from printcat.refresher import PriceRefresher

logger = logging.getLogger(__name__)

bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _orchestrator() -> IngestionOrchestrator:
    return current_app.extensions["printcat.orchestrator"]


def _refresher() -> PriceRefresher:
    return current_app.extensions["printcat.refresher"]


def _is_admin() -> bool:
    """X-Admin-Key ヘッダか key クエリで管理キーを照合する. 未設定なら常に拒否."""
    expected = current_app.config.get("ADMIN_KEY") or ""
    given = request.headers.get("X-Admin-Key") or request.args.get("key") or ""
    return bool(expected) and hmac.compare_digest(given, expected)


def _unauthorized():
    return jsonify({"error": "Unauthorized: invalid admin key"}), 401


@bp.route("/scrape", methods=["POST"])
def trigger_scrape():
    """取り込みを開始する（不正なカテゴリ指定なら 400、実行中なら 409）."""
    if not _is_admin():
        return _unauthorized()

    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    orchestrator = _orchestrator()
    try:
        categories = normalize_categories(body.get("categories"), orchestrator.categories)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    max_per_query = clamp_max_per_query(body.get("maxPerQuery", DEFAULT_MAX_PER_QUERY))

    if not orchestrator.start_in_background(categories, max_per_query):
        return jsonify({"error": "Scraper is already running"}), 409

    logger.info("取り込みを受付: categories=%s, maxPerQuery=%d", categories, max_per_query)
    return jsonify({
        "message": "Scraper started",
        "startedAt": datetime.now(timezone.utc).isoformat(),
        "categories": categories,
        "maxPerQuery": max_per_query,
    }), 202


@bp.route("/scrape/cancel", methods=["POST"])
def cancel_scrape():
    if not _is_admin():
        return _unauthorized()
    orchestrator = _orchestrator()
    if not orchestrator.running:
        return jsonify({"error": "Scraper is not running"}), 409
    orchestrator.cancel()
    return jsonify({"message": "Cancellation requested"}), 202


@bp.route("/scrape-progress", methods=["GET"])
def scrape_progress():
    orchestrator = _orchestrator()
    progress = orchestrator.progress.snapshot()
    return jsonify({
        "running": orchestrator.running,
        "progress": progress,
        "total": len(progress),
    })


@bp.route("/scrape-running", methods=["GET"])
def scrape_running():
    return jsonify({"running": _orchestrator().running})


@bp.route("/update-prices", methods=["POST"])
def trigger_price_update():
    """価格更新を開始する（実行中なら 409）."""
    if not _is_admin():
        return _unauthorized()
    if not _refresher().start_in_background():
        return jsonify({"error": "Price update is already running"}), 409
    return jsonify({"message": "Price update started"}), 202


@bp.route("/update-prices-running", methods=["GET"])
def price_update_running():
    return jsonify({"running": _refresher().running})


def create_app(
    orchestrator: IngestionOrchestrator | None = None,
    refresher: PriceRefresher | None = None,
    admin_key: str | None = None,
) -> Flask:
    """管理 API の Flask アプリを作る."""
    app = Flask(__name__)
    app.config["ADMIN_KEY"] = ADMIN_KEY if admin_key is None else admin_key
    app.extensions["printcat.orchestrator"] = orchestrator or IngestionOrchestrator()
    app.extensions["printcat.refresher"] = refresher or PriceRefresher()
    app.register_blueprint(bp)

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app
