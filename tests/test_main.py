"""CLI 出力のテスト。"""

from __future__ import annotations

import pytest

import main
from record_collector import db
from record_collector.models import ChartType, DifficultyCategory, PlayEntry


def _play(unixtime, achievement) -> PlayEntry:
    return PlayEntry(
        title="Song",
        chart_type=ChartType.DX,
        track=1,
        played_at_unixtime=unixtime,
        diff_category=DifficultyCategory.MASTER,
        level="13+",
        achievement_percent=achievement,
        credit_play_count=100,
    )


@pytest.mark.light
def test_print_playlogs_formats_fixed_point_achievement(con, capsys):
    db.insert_playlogs(con, 1000, [_play(700, 100.5), _play(600, None)])

    main._print_playlogs(db.query_recent(con, 10))

    lines = capsys.readouterr().out.splitlines()
    assert "100.5000%" in lines[0]
    assert "N/A" in lines[1]
