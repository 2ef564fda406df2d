"""
定期同期スケジューラ。

デーモンスレッドで poll_interval_seconds ごとに同期サイクルを実行する。
実行中の同期がある場合は待たずにスキップし、例外はログに残して次の周期で再試行する。
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from record_collector.models import SyncResult

logger = logging.getLogger(__name__)


class PollingScheduler:
    def __init__(self, coordinator, interval_seconds: float, song_index=None):
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self.song_index = song_index
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Optional[SyncResult]:
        """
        1周期分の処理を行う。

        楽曲データの再読み込みと同期を行い、同期の結果を返す。
        同期が例外で失敗した場合はログに記録して None を返す。
        """
        if self.song_index is not None:
            self.song_index.reload_if_changed()

        try:
            result = self.coordinator.trigger_sync_if_needed(wait=False)
        except Exception:
            logger.exception("periodic sync failed; will retry next tick")
            return None

        logger.debug("periodic sync result: %s", result.value)
        return result

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval_seconds)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="sync-poller", daemon=True)
        self._thread.start()
        logger.info("polling scheduler started (interval=%ss)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """停止要求が出るまで待つ。停止された場合 True。"""
        return self._stop.wait(timeout)
