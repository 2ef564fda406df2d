"""
SQLiteへのプレイ記録保存処理を提供するモジュール。

テーブルは以下の3つのみ:
- playlogs: プレイ履歴の台帳。played_at_unixtime を不変IDとし、INSERTのみ行う
- scores: 譜面ごとのベストスコアのスナップショット。再取得のたびに丸ごと置き換える
- app_state: 同期カーソル(累計プレイ回数・レーティング)を保持するkey/value

処理方針:
- playlogs は ON CONFLICT DO NOTHING とし、一度保存した行は後続の同期で一切上書きしない
- scores は「全削除 → 全件upsert」を1トランザクションで行い、途中失敗時は前回の内容を残す
- sqlite3 由来の例外は StoreError に変換して上位へ伝播する
"""

from __future__ import annotations

import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, List, Optional, Set, Tuple

from record_collector.errors import StoreError
from record_collector.models import (
    PlayEntry,
    PlaylogRecord,
    ScoreRecord,
    ScoreRow,
)
from record_collector.normalize import percent_to_x10000

logger = logging.getLogger(__name__)

RECENT_LIMIT_MAX = 500
SEARCH_LIMIT = 50

_PLAYLOG_COLUMNS = """
    played_at_unixtime, played_at, track, credit_play_count,
    title, chart_type, diff_category, level,
    achievement_x10000, achievement_new_record, first_play,
    score_rank, fc, sync, dx_score, dx_score_max, scraped_at
"""

_SCORE_COLUMNS = """
    title, chart_type, diff_category, level,
    achievement_x10000, rank, fc, sync,
    dx_score, dx_score_max, source_idx, scraped_at
"""


def unix_now() -> int:
    """現在時刻をUNIX秒で返す。"""
    return int(time.time())


@contextmanager
def _store_op(what: str) -> Iterator[None]:
    """sqlite3.Error を StoreError に変換する。"""
    try:
        yield
    except sqlite3.Error as e:
        raise StoreError(f"{what} failed: {e}") from e


def connect_db(path: str) -> sqlite3.Connection:
    """
    SQLite DBへ接続する。

    WALモードを有効にし、同期処理の書き込み中も参照系クエリが待たされないようにする。

    Args:
        path: SQLiteファイルパス。":memory:" も指定可能。

    Returns:
        sqlite3.Connectionオブジェクト。
    """
    with _store_op("connect sqlite"):
        if path != ":memory:":
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        con = sqlite3.connect(path, timeout=30)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA journal_mode=WAL")
        con.execute("PRAGMA synchronous=NORMAL")
        return con


def init_schema(con: sqlite3.Connection) -> None:
    """
    DBスキーマを初期化する。

    playlogs/scores/app_state テーブルが存在しない場合に作成する。

    Args:
        con: SQLite接続。
    """
    with _store_op("init schema"):
        cur = con.cursor()

        cur.execute("""
        CREATE TABLE IF NOT EXISTS playlogs (
            played_at_unixtime INTEGER PRIMARY KEY,
            played_at TEXT NULL,
            track INTEGER NULL,
            credit_play_count INTEGER NULL,
            title TEXT NOT NULL,
            chart_type TEXT NOT NULL,
            diff_category TEXT NULL,
            level TEXT NULL,
            achievement_x10000 INTEGER NULL,
            achievement_new_record INTEGER NOT NULL DEFAULT 0,
            first_play INTEGER NOT NULL DEFAULT 0,
            score_rank TEXT NULL,
            fc TEXT NULL,
            sync TEXT NULL,
            dx_score INTEGER NULL,
            dx_score_max INTEGER NULL,
            scraped_at INTEGER NOT NULL
        )
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS scores (
            title TEXT NOT NULL,
            chart_type TEXT NOT NULL,
            diff_category TEXT NOT NULL,
            level TEXT NOT NULL,
            achievement_x10000 INTEGER NULL,
            rank TEXT NULL,
            fc TEXT NULL,
            sync TEXT NULL,
            dx_score INTEGER NULL,
            dx_score_max INTEGER NULL,
            source_idx TEXT NULL,
            scraped_at INTEGER NOT NULL,
            PRIMARY KEY (title, chart_type, diff_category)
        )
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS app_state (
            key TEXT PRIMARY KEY,
            value TEXT NULL,
            updated_at INTEGER NOT NULL
        )
        """)

        con.commit()


def open_store(path: str) -> sqlite3.Connection:
    """接続してスキーマを初期化した接続を返す。"""
    con = connect_db(path)
    init_schema(con)
    return con


# ------------------------------------------------------------
# playlogs
# ------------------------------------------------------------


def insert_playlogs(con: sqlite3.Connection, scraped_at: int, entries: Iterable[PlayEntry]) -> int:
    """
    プレイ履歴を playlogs へINSERTする。

    played_at_unixtime が同じ行が既に存在する場合は新しい行を丸ごと破棄する。
    played_at_unixtime が取得できていないエントリは保存しない。
    全件を1トランザクションで処理する。

    Args:
        con: SQLite接続。
        scraped_at: 取得時刻(UNIX秒)。
        entries: クレジット分割・初プレイ判定済みのエントリ。

    Returns:
        実際に追加された行数。
    """
    inserted = 0
    with _store_op("insert playlogs"):
        with con:
            for entry in entries:
                if entry.played_at_unixtime is None:
                    continue
                cur = con.execute(
                    f"""
                    INSERT INTO playlogs ({_PLAYLOG_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(played_at_unixtime) DO NOTHING
                    """,
                    (
                        entry.played_at_unixtime,
                        entry.played_at,
                        entry.track,
                        entry.credit_play_count,
                        entry.title,
                        entry.chart_type.value,
                        entry.diff_category.value if entry.diff_category else None,
                        entry.level,
                        percent_to_x10000(entry.achievement_percent),
                        int(entry.achievement_new_record),
                        int(entry.first_play),
                        entry.score_rank,
                        entry.fc,
                        entry.sync,
                        entry.dx_score,
                        entry.dx_score_max,
                        scraped_at,
                    ),
                )
                inserted += cur.rowcount
    return inserted


def count_playlogs(con: sqlite3.Connection) -> int:
    """playlogs の件数を返す。"""
    with _store_op("count playlogs"):
        row = con.execute("SELECT COUNT(*) AS cnt FROM playlogs").fetchone()
        return int(row["cnt"])


def _to_playlog(row: sqlite3.Row) -> PlaylogRecord:
    return PlaylogRecord(
        played_at_unixtime=int(row["played_at_unixtime"]),
        played_at=row["played_at"],
        track=row["track"],
        credit_play_count=row["credit_play_count"],
        title=row["title"],
        chart_type=row["chart_type"],
        diff_category=row["diff_category"],
        level=row["level"],
        achievement_x10000=row["achievement_x10000"],
        achievement_new_record=bool(row["achievement_new_record"]),
        first_play=bool(row["first_play"]),
        score_rank=row["score_rank"],
        fc=row["fc"],
        sync=row["sync"],
        dx_score=row["dx_score"],
        dx_score_max=row["dx_score_max"],
        scraped_at=int(row["scraped_at"]),
    )


def get_playlog(con: sqlite3.Connection, played_at_unixtime: int) -> Optional[PlaylogRecord]:
    """IDを指定して playlogs の1行を返す。存在しなければ None。"""
    with _store_op("get playlog"):
        row = con.execute(
            f"SELECT {_PLAYLOG_COLUMNS} FROM playlogs WHERE played_at_unixtime=?",
            (played_at_unixtime,),
        ).fetchone()
    return _to_playlog(row) if row is not None else None


def query_recent(con: sqlite3.Connection, limit: int = 50) -> List[PlaylogRecord]:
    """
    新しい順にプレイ履歴を返す。

    Args:
        con: SQLite接続。
        limit: 取得件数。1〜500に丸める。
    """
    limit = max(1, min(int(limit), RECENT_LIMIT_MAX))
    with _store_op("query recent"):
        rows = con.execute(
            f"""
            SELECT {_PLAYLOG_COLUMNS} FROM playlogs
            ORDER BY played_at_unixtime DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
    return [_to_playlog(r) for r in rows]


def query_by_day(
    con: sqlite3.Connection,
    window_start: datetime,
    window_end: datetime,
) -> List[PlaylogRecord]:
    """
    [window_start, window_end) の範囲に遊んだプレイ履歴を古い順に返す。

    Args:
        con: SQLite接続。
        window_start: 範囲の開始(タイムゾーン付き)。この時刻を含む。
        window_end: 範囲の終了(タイムゾーン付き)。この時刻を含まない。
    """
    start = int(window_start.timestamp())
    end = int(window_end.timestamp())
    with _store_op("query by day"):
        rows = con.execute(
            f"""
            SELECT {_PLAYLOG_COLUMNS} FROM playlogs
            WHERE played_at_unixtime >= ? AND played_at_unixtime < ?
            ORDER BY played_at_unixtime ASC
            """,
            (start, end),
        ).fetchall()
    return [_to_playlog(r) for r in rows]


# ------------------------------------------------------------
# scores
# ------------------------------------------------------------


def _upsert_score(con: sqlite3.Connection, scraped_at: int, row: ScoreRow) -> None:
    """
    scores テーブルに1件upsertする。

    キー(title, chart_type, diff_category)が衝突した場合はキー以外の全列を置き換える。
    """
    con.execute(
        f"""
        INSERT INTO scores ({_SCORE_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(title, chart_type, diff_category) DO UPDATE SET
            level=excluded.level,
            achievement_x10000=excluded.achievement_x10000,
            rank=excluded.rank,
            fc=excluded.fc,
            sync=excluded.sync,
            dx_score=excluded.dx_score,
            dx_score_max=excluded.dx_score_max,
            source_idx=excluded.source_idx,
            scraped_at=excluded.scraped_at
        """,
        (
            row.title,
            row.chart_type.value,
            row.diff_category.value,
            row.level,
            percent_to_x10000(row.achievement_percent),
            row.rank,
            row.fc,
            row.sync,
            row.dx_score,
            row.dx_score_max,
            row.source_idx,
            scraped_at,
        ),
    )


def replace_scores(con: sqlite3.Connection, scraped_at: int, rows: Iterable[ScoreRow]) -> int:
    """
    scores テーブルを今回取得した内容で丸ごと置き換える。

    削除と再登録を1トランザクションで行うため、途中で失敗した場合は
    前回のスナップショットがそのまま残る。

    Args:
        con: SQLite接続。
        scraped_at: 取得時刻(UNIX秒)。
        rows: 全難易度分のスコア一覧。

    Returns:
        登録した件数（重複キーは1件として数える）。
    """
    with _store_op("replace scores"):
        with con:
            con.execute("DELETE FROM scores")
            for row in rows:
                _upsert_score(con, scraped_at, row)
            count = con.execute("SELECT COUNT(*) AS cnt FROM scores").fetchone()["cnt"]
    return int(count)


def recorded_chart_keys(con: sqlite3.Connection) -> Set[Tuple[str, str, str]]:
    """達成率付きスコアが存在する譜面キー(title, chart_type, diff_category)の集合を返す。"""
    with _store_op("list recorded charts"):
        rows = con.execute(
            """
            SELECT title, chart_type, diff_category FROM scores
            WHERE achievement_x10000 IS NOT NULL
            """
        ).fetchall()
    return {(r["title"], r["chart_type"], r["diff_category"]) for r in rows}


def _to_score(row: sqlite3.Row) -> ScoreRecord:
    return ScoreRecord(
        title=row["title"],
        chart_type=row["chart_type"],
        diff_category=row["diff_category"],
        level=row["level"],
        achievement_x10000=row["achievement_x10000"],
        rank=row["rank"],
        fc=row["fc"],
        sync=row["sync"],
        dx_score=row["dx_score"],
        dx_score_max=row["dx_score_max"],
        source_idx=row["source_idx"],
        scraped_at=int(row["scraped_at"]),
    )


def query_chart(
    con: sqlite3.Connection,
    title: str,
    chart_type: str,
    diff_category: str,
) -> Optional[ScoreRecord]:
    """譜面キーを指定して達成率付きのスコアを返す。存在しなければ None。"""
    with _store_op("query score by key"):
        row = con.execute(
            f"""
            SELECT {_SCORE_COLUMNS} FROM scores
            WHERE title=? AND chart_type=? AND diff_category=?
              AND achievement_x10000 IS NOT NULL
            """,
            (title, chart_type, diff_category),
        ).fetchone()
    return _to_score(row) if row is not None else None


def query_all_rated(con: sqlite3.Connection) -> List[ScoreRecord]:
    """達成率付きのスコアを全件返す。"""
    with _store_op("query all rated scores"):
        rows = con.execute(
            f"""
            SELECT {_SCORE_COLUMNS} FROM scores
            WHERE achievement_x10000 IS NOT NULL
            ORDER BY title, chart_type, diff_category
            """
        ).fetchall()
    return [_to_score(r) for r in rows]


def search_scores(con: sqlite3.Connection, term: str) -> List[ScoreRecord]:
    """曲名の部分一致でスコアを検索する(最大50件)。"""
    with _store_op("search scores"):
        rows = con.execute(
            f"""
            SELECT {_SCORE_COLUMNS} FROM scores
            WHERE title LIKE ? AND achievement_x10000 IS NOT NULL
            ORDER BY title
            LIMIT ?
            """,
            (f"%{term}%", SEARCH_LIMIT),
        ).fetchall()
    return [_to_score(r) for r in rows]


# ------------------------------------------------------------
# app_state
# ------------------------------------------------------------


def get_cursor(con: sqlite3.Connection, key: str) -> Optional[str]:
    """app_state の値を返す。キーが存在しなければ None。"""
    with _store_op("get app_state value"):
        row = con.execute("SELECT value FROM app_state WHERE key=?", (key,)).fetchone()
    return row["value"] if row is not None else None


def set_cursor(con: sqlite3.Connection, key: str, value: str, updated_at: int) -> None:
    """app_state に値と更新時刻をまとめて書き込む。"""
    with _store_op("set app_state value"):
        with con:
            con.execute(
                """
                INSERT INTO app_state (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value=excluded.value,
                    updated_at=excluded.updated_at
                """,
                (key, value, updated_at),
            )


def get_cursor_int(con: sqlite3.Connection, key: str) -> Optional[int]:
    """
    app_state の値を整数として返す。

    値が整数として解釈できない場合は未保存と同じ扱い(None)にする。
    """
    value = get_cursor(con, key)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("app_state %s is not an integer (%r); treating as missing", key, value)
        return None


def set_cursor_int(con: sqlite3.Connection, key: str, value: int, updated_at: int) -> None:
    set_cursor(con, key, str(int(value)), updated_at)
