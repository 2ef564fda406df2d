"""
参照系クエリと手動同期の窓口(RecordService)。

CLIなどの表示層はこのクラスだけを使う。
参照系は呼び出しごとに専用のSQLite接続を開くため、同期処理のロックとは無関係に動作する。
"""

from __future__ import annotations

import logging
from contextlib import closing
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, List, Optional, Tuple, Union

from record_collector import db
from record_collector.errors import ConfigError
from record_collector.models import (
    ChartType,
    DifficultyCategory,
    PlaylogRecord,
    ScoreRecord,
    SyncResult,
)
from record_collector.rating import RatedSet, rate_score, select_rated_set
from record_collector.song_index import SongMetadataIndex

logger = logging.getLogger(__name__)

JST = timezone(timedelta(hours=9))
GAME_DAY_START_HOUR = 4


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def game_day_of(now: datetime) -> date:
    """
    指定時刻が属するゲーム日(JST 04:00 区切り)を返す。

    例: JST 2025/01/16 03:59 は 2025/01/15 のゲーム日に属する。
    """
    local = now.astimezone(JST)
    return (local - timedelta(hours=GAME_DAY_START_HOUR)).date()


def day_window(day: date) -> Tuple[datetime, datetime]:
    """ゲーム日 day の範囲 [JST day 04:00, 翌日 04:00) を返す。"""
    start = datetime.combine(day, time(hour=GAME_DAY_START_HOUR), tzinfo=JST)
    return start, start + timedelta(days=1)


def _enum_value(value: Union[ChartType, DifficultyCategory, str]) -> str:
    return value.value if isinstance(value, (ChartType, DifficultyCategory)) else str(value)


class RecordService:
    """
    表示層向けの窓口。

    Args:
        db_path: SQLiteファイルパス。
        coordinator: 手動同期に使う SyncCoordinator。未指定の場合は同期不可。
        song_index: レーティング計算に使う楽曲データ索引。
        clock: 現在時刻を返す関数(タイムゾーン付き)。
    """

    def __init__(
        self,
        db_path: str,
        coordinator=None,
        song_index: Optional[SongMetadataIndex] = None,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.db_path = db_path
        self.coordinator = coordinator
        self.song_index = song_index or SongMetadataIndex()
        self._clock = clock

    def _open(self):
        return closing(db.open_store(self.db_path))

    def query_chart(
        self,
        title: str,
        chart_type: Union[ChartType, str],
        diff_category: Union[DifficultyCategory, str],
    ) -> Optional[ScoreRecord]:
        with self._open() as con:
            return db.query_chart(con, title, _enum_value(chart_type), _enum_value(diff_category))

    def query_recent(self, limit: int = 50) -> List[PlaylogRecord]:
        with self._open() as con:
            return db.query_recent(con, limit)

    def query_by_day(self, window_start: datetime, window_end: datetime) -> List[PlaylogRecord]:
        with self._open() as con:
            return db.query_by_day(con, window_start, window_end)

    def query_today(self, day: Optional[date] = None) -> List[PlaylogRecord]:
        """
        ゲーム日単位(JST 04:00 区切り)のプレイ履歴を古い順に返す。

        Args:
            day: 対象のゲーム日。未指定の場合は現在時刻が属するゲーム日。
        """
        if day is None:
            day = game_day_of(self._clock())
        start, end = day_window(day)
        return self.query_by_day(start, end)

    def query_all_rated(self) -> List[ScoreRecord]:
        with self._open() as con:
            return db.query_all_rated(con)

    def search_scores(self, term: str) -> List[ScoreRecord]:
        with self._open() as con:
            return db.search_scores(con, term)

    def rating_report(self) -> RatedSet:
        """保存済みの全スコアからベスト枠を集計する。"""
        charts = [rate_score(record, self.song_index) for record in self.query_all_rated()]
        rated = select_rated_set(charts)
        if rated.missing_data:
            logger.info("%d charts excluded from rating (missing song data)", rated.missing_data)
        return rated

    def trigger_sync_if_needed(self, wait: bool = True) -> SyncResult:
        """
        手動同期を実行する。

        Raises:
            ConfigError: 同期処理が構成されていない場合。
        """
        if self.coordinator is None:
            raise ConfigError("remote sync is not configured (missing credentials)")
        return self.coordinator.trigger_sync_if_needed(wait=wait)
