"""SQLiteストアのテスト。"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from record_collector import db
from record_collector.errors import StoreError
from record_collector.models import ChartType, DifficultyCategory, PlayEntry, ScoreRow


def _play(unixtime, title="Song", credit_play_count=100, **kwargs) -> PlayEntry:
    return PlayEntry(
        title=title,
        chart_type=ChartType.DX,
        track=1,
        played_at_unixtime=unixtime,
        diff_category=DifficultyCategory.MASTER,
        level="13+",
        achievement_percent=99.5,
        credit_play_count=credit_play_count,
        **kwargs,
    )


def _score(title, achievement=100.0, diff=DifficultyCategory.MASTER, **kwargs) -> ScoreRow:
    return ScoreRow(
        title=title,
        chart_type=ChartType.DX,
        diff_category=diff,
        level="13",
        achievement_percent=achievement,
        **kwargs,
    )


@pytest.mark.light
def test_schema_has_exactly_three_tables(con):
    tables = {
        r["name"]
        for r in con.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    }
    assert tables == {"playlogs", "scores", "app_state"}


@pytest.mark.light
def test_insert_playlogs_is_insert_only(con):
    assert db.insert_playlogs(con, 1000, [_play(500, credit_play_count=100)]) == 1

    # 同じIDで異なる内容の行は破棄される
    assert db.insert_playlogs(con, 2000, [_play(500, credit_play_count=101, title="Other")]) == 0

    row = db.get_playlog(con, 500)
    assert row.credit_play_count == 100
    assert row.title == "Song"
    assert row.scraped_at == 1000
    assert db.count_playlogs(con) == 1


@pytest.mark.light
def test_insert_playlogs_skips_entries_without_id(con):
    inserted = db.insert_playlogs(con, 1000, [_play(None), _play(600)])
    assert inserted == 1
    assert db.count_playlogs(con) == 1


@pytest.mark.light
def test_insert_playlogs_stores_fixed_point_achievement(con):
    db.insert_playlogs(con, 1000, [_play(700, first_play=True, achievement_new_record=True)])

    row = db.get_playlog(con, 700)
    assert row.achievement_x10000 == 995000
    assert row.first_play is True
    assert row.achievement_new_record is True
    assert row.diff_category == "MASTER"
    assert row.chart_type == "DX"


@pytest.mark.light
def test_query_recent_is_newest_first_and_clamped(con):
    db.insert_playlogs(con, 1000, [_play(t) for t in (100, 300, 200)])

    assert [r.played_at_unixtime for r in db.query_recent(con, 10)] == [300, 200, 100]
    assert [r.played_at_unixtime for r in db.query_recent(con, 0)] == [300]


@pytest.mark.light
def test_query_by_day_is_half_open_and_ascending(con):
    start = datetime(2025, 1, 15, 4, 0, tzinfo=timezone(timedelta(hours=9)))
    end = start + timedelta(days=1)
    s = int(start.timestamp())
    e = int(end.timestamp())
    db.insert_playlogs(con, 1000, [_play(s - 1), _play(s + 10), _play(s), _play(e)])

    rows = db.query_by_day(con, start, end)

    assert [r.played_at_unixtime for r in rows] == [s, s + 10]


@pytest.mark.light
def test_replace_scores_replaces_whole_snapshot(con):
    db.replace_scores(con, 1000, [_score("A"), _score("B")])
    count = db.replace_scores(con, 2000, [_score("B", achievement=100.5), _score("C")])

    assert count == 2
    assert db.query_chart(con, "A", "DX", "MASTER") is None
    b = db.query_chart(con, "B", "DX", "MASTER")
    assert b.achievement_x10000 == 1005000
    assert b.scraped_at == 2000


@pytest.mark.light
def test_replace_scores_rolls_back_on_failure(con):
    db.replace_scores(con, 1000, [_score("A"), _score("B")])

    broken = ScoreRow(
        title="Broken",
        chart_type=ChartType.DX,
        diff_category=DifficultyCategory.MASTER,
        level=None,  # NOT NULL 制約違反
        achievement_percent=99.0,
    )
    with pytest.raises(StoreError):
        db.replace_scores(con, 2000, [_score("C"), broken])

    titles = [r.title for r in db.query_all_rated(con)]
    assert titles == ["A", "B"]


@pytest.mark.light
def test_duplicate_score_keys_collapse_to_last(con):
    count = db.replace_scores(con, 1000, [_score("A", achievement=98.0), _score("A", achievement=99.0)])
    assert count == 1
    assert db.query_chart(con, "A", "DX", "MASTER").achievement_percent == pytest.approx(99.0)


@pytest.mark.light
def test_unplayed_scores_are_not_rated(con):
    db.replace_scores(con, 1000, [_score("Played"), _score("Unplayed", achievement=None)])

    assert [r.title for r in db.query_all_rated(con)] == ["Played"]
    assert db.recorded_chart_keys(con) == {("Played", "DX", "MASTER")}


@pytest.mark.light
def test_search_scores_matches_substring(con):
    db.replace_scores(con, 1000, [_score("Alpha Song"), _score("Beta"), _score("Song Gamma")])
    assert [r.title for r in db.search_scores(con, "Song")] == ["Alpha Song", "Song Gamma"]


@pytest.mark.light
def test_cursor_roundtrip_and_cold_store(con):
    assert db.get_cursor_int(con, "player.total_play_count") is None

    db.set_cursor_int(con, "player.total_play_count", 1500, 1000)
    db.set_cursor_int(con, "player.total_play_count", 1501, 2000)

    assert db.get_cursor_int(con, "player.total_play_count") == 1501
    row = con.execute("SELECT updated_at FROM app_state WHERE key='player.total_play_count'").fetchone()
    assert row["updated_at"] == 2000


@pytest.mark.light
def test_non_integer_cursor_is_treated_as_missing(con, caplog):
    db.set_cursor(con, "player.rating", "oops", 1000)
    assert db.get_cursor_int(con, "player.rating") is None
    assert "not an integer" in caplog.text


@pytest.mark.light
def test_sqlite_errors_are_wrapped(con):
    con.close()
    with pytest.raises(StoreError):
        db.count_playlogs(con)
