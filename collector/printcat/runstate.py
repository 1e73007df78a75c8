"""単一実行ガードと進捗ログ.

取り込み・価格更新はそれぞれ同時に 1 本だけ実行する。
実行中の起動要求は待たせずに拒否する。
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from printcat.config import PROGRESS_LOG_MAX
from printcat.models import RunState

logger = logging.getLogger(__name__)


class RunOutcome:
    """held() の中で結果状態を設定するためのハンドル. 既定は FAILED."""

    def __init__(self) -> None:
        self.state = RunState.FAILED

    def completed(self) -> None:
        self.state = RunState.COMPLETED


class RunGuard:
    """IDLE → RUNNING → COMPLETED / FAILED の状態機械."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._state = RunState.IDLE

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is RunState.RUNNING

    def try_start(self) -> bool:
        """RUNNING へ遷移できれば True. 実行中なら False."""
        with self._lock:
            if self._state is RunState.RUNNING:
                return False
            self._state = RunState.RUNNING
            return True

    def finish(self, state: RunState) -> None:
        """RUNNING を終了状態へ遷移させる."""
        if state not in (RunState.COMPLETED, RunState.FAILED):
            raise ValueError(f"終了状態ではありません: {state}")
        with self._lock:
            self._state = state
        logger.info("%s: %s", self.name, state.value)

    @contextmanager
    def held(self) -> Iterator[RunOutcome]:
        """try_start() 済みの実行本体. 抜ける時に必ず finish() する."""
        outcome = RunOutcome()
        try:
            yield outcome
        finally:
            self.finish(outcome.state)


class ProgressLog:
    """管理画面がポーリングする進捗フィード（件数上限付き）."""

    def __init__(self, maxlen: int = PROGRESS_LOG_MAX):
        self._lock = threading.Lock()
        self._events: deque[dict] = deque(maxlen=maxlen)

    def reset(self) -> None:
        with self._lock:
            self._events.clear()

    def log(self, event_type: str, message: str, **data) -> dict:
        """イベントを追加し、同じ内容をロガーにも出力する."""
        entry = {
            "time": datetime.now(timezone.utc).isoformat(),
            "type": event_type,
            "message": message,
            **data,
        }
        with self._lock:
            self._events.append(entry)

        if event_type in ("error", "blocked"):
            logger.warning("[%s] %s", event_type, message)
        else:
            logger.info("[%s] %s", event_type, message)
        return entry

    def snapshot(self) -> list[dict]:
        with self._lock:
            return list(self._events)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
