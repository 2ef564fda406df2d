"""
同期処理(SyncCoordinator)。

1サイクルの流れ:
    メンテナンス判定 → playerData取得 → 累計プレイ回数の比較 → {スキップ | 全件再取得} → カーソル保存

- 累計プレイ回数が前回と同じならスコア一覧・プレイ履歴は取得しない
- カーソルが未保存(初回)の場合は全件取得するが、初プレイ判定は行わない (seeded)
- 全件再取得は「スコア一覧(5難易度)→ scores 置き換え」「プレイ履歴 → playlogs 追加」の順で行い、
  前者のコミットは後者が失敗しても取り消さない
- 累計プレイ回数が前回より小さい場合はスキップし、カーソルは更新しない
- playerData取得〜カーソル保存はプロセス内で同時に1つしか実行しない
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from record_collector.credit import classify_first_plays, segment_latest_credits
from record_collector.db import (
    get_cursor_int,
    insert_playlogs,
    open_store,
    recorded_chart_keys,
    replace_scores,
    set_cursor_int,
    unix_now,
)
from record_collector.errors import AuthExpired, Maintenance
from record_collector.models import ChartType, DifficultyCategory, PlayerSummary, SyncResult
from record_collector.parser import parse_player_summary, parse_recent_plays, parse_score_list
from record_collector.scraper import PLAYER_DATA_URL, RECORD_URL, score_list_url

logger = logging.getLogger(__name__)

CURSOR_TOTAL_PLAY_COUNT = "player.total_play_count"
CURSOR_RATING = "player.rating"

# 定期実行と手動実行で共有する
_SYNC_LOCK = threading.Lock()

NewPlaysCallback = Callable[[int, PlayerSummary], None]


class SyncCoordinator:
    """
    maimai DX NET からの取得とストアへの反映を調停する。

    client には以下を持つオブジェクトを渡す:
    - in_maintenance() -> bool
    - fetch_html(url) -> str   (AuthExpired / TransportError / Maintenance を送出し得る)
    - login() -> None
    """

    def __init__(
        self,
        client,
        db_path: str,
        *,
        clock: Callable[[], int] = unix_now,
        on_new_plays: Optional[NewPlaysCallback] = None,
        lock: Optional[threading.Lock] = None,
    ):
        self.client = client
        self.db_path = db_path
        self._clock = clock
        self._on_new_plays = on_new_plays
        self._lock = lock or _SYNC_LOCK

    def trigger_sync_if_needed(self, wait: bool = True) -> SyncResult:
        """
        同期サイクルを1回実行する。

        Args:
            wait: 別の同期が実行中の場合に完了を待つかどうか。
                  False の場合は待たずに skipped を返す（定期実行用）。

        Returns:
            SyncResult。

        Raises:
            AuthExpired: 再ログイン後も認証に失敗した場合。
            TransportError: 通信に失敗した場合。
            MalformedDocument: ページ構造が想定と異なる場合。
            StoreError: DBへの読み書きに失敗した場合。
        """
        if self.client.in_maintenance():
            logger.info("maintenance window; sync skipped")
            return SyncResult.SKIPPED

        if not self._lock.acquire(blocking=wait):
            logger.info("another sync is in progress; skipped")
            return SyncResult.SKIPPED

        try:
            # サマリ取得もロック内で行う
            summary = parse_player_summary(self._fetch_html(PLAYER_DATA_URL))
            con = open_store(self.db_path)
            try:
                result, inserted = self._run_locked(con, summary)
            finally:
                con.close()
        except Maintenance as e:
            logger.info("sync skipped: %s", e)
            return SyncResult.SKIPPED
        finally:
            self._lock.release()

        if result == SyncResult.SYNCED and inserted > 0 and self._on_new_plays is not None:
            self._on_new_plays(inserted, summary)

        return result

    def _run_locked(self, con, summary: PlayerSummary):
        stored_total = get_cursor_int(con, CURSOR_TOTAL_PLAY_COUNT)

        if stored_total is not None and stored_total == summary.total_play_count:
            logger.debug("total play count unchanged (%d); skip rescan", stored_total)
            self._persist_cursor(con, summary)
            return SyncResult.SKIPPED, 0

        if stored_total is not None and summary.total_play_count < stored_total:
            # カーソルは巻き戻さない
            logger.warning(
                "remote total play count went backwards (%d < %d); skipped",
                summary.total_play_count,
                stored_total,
            )
            return SyncResult.SKIPPED, 0

        seeding = stored_total is None
        logger.info(
            "total play count changed (%s -> %d); rescanning%s",
            stored_total,
            summary.total_play_count,
            " (seeding)" if seeding else "",
        )

        inserted = self._full_rescan(con, summary, seeding=seeding)
        self._persist_cursor(con, summary)

        if seeding:
            logger.info("seeded store: %d playlogs", inserted)
            return SyncResult.SEEDED, inserted

        logger.info("synced: %d new playlogs", inserted)
        return SyncResult.SYNCED, inserted

    def _full_rescan(self, con, summary: PlayerSummary, *, seeding: bool) -> int:
        # 置き換え前の状態で初プレイ判定する
        known = recorded_chart_keys(con)

        rows = []
        for diff in DifficultyCategory:
            html = self._fetch_html(score_list_url(diff.index))
            rows.extend(parse_score_list(html, diff))

        scraped_at = self._clock()
        stored = replace_scores(con, scraped_at, rows)
        logger.info("scores replaced: %d charts", stored)

        entries = parse_recent_plays(self._fetch_html(RECORD_URL))
        entries = segment_latest_credits(entries, summary.total_play_count)

        if not seeding:

            def has_score(title: str, chart_type: ChartType, diff: DifficultyCategory) -> bool:
                return (title, chart_type.value, diff.value) in known

            entries = classify_first_plays(entries, has_score)

        return insert_playlogs(con, scraped_at, entries)

    def _persist_cursor(self, con, summary: PlayerSummary) -> None:
        now = self._clock()
        set_cursor_int(con, CURSOR_TOTAL_PLAY_COUNT, summary.total_play_count, now)
        set_cursor_int(con, CURSOR_RATING, summary.rating, now)

    def _fetch_html(self, url: str) -> str:
        """
        メンテナンス判定のうえでページを取得する。

        セッション切れの場合は1回だけ再ログインして取り直す。
        """
        try:
            return self._guarded_fetch(url)
        except AuthExpired:
            logger.info("session expired; logging in again")

        self.client.login()
        return self._guarded_fetch(url)

    def _guarded_fetch(self, url: str) -> str:
        if self.client.in_maintenance():
            raise Maintenance("maintenance window started during sync")
        return self.client.fetch_html(url)
