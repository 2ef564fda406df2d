"""
クレジット分割と初プレイ判定。

最近のプレイ履歴(新しい順)を「直近で完了したクレジット」までに切り詰め、
各エントリにクレジット単位のプレイ回数を付与する。
また、自己ベスト更新エントリのうち既存スコアが無い譜面を初プレイとして印を付ける。
"""

from __future__ import annotations

from dataclasses import replace
from typing import Callable, List, Sequence

from record_collector.models import ChartType, DifficultyCategory, PlayEntry

HasScore = Callable[[str, ChartType, DifficultyCategory], bool]


def segment_latest_credits(entries: Sequence[PlayEntry], total_play_count: int) -> List[PlayEntry]:
    """
    プレイ履歴をクレジット単位に切り詰め、credit_play_count を付与する。

    処理内容:
    - track == 1 のエントリのうち最も古い側(最後の出現)までを残す
    - track == 1 が1件も無い場合は空リストを返す（取得範囲に完結したクレジットが無い）
    - 新しい順に走査し、credit_play_count = max(total_play_count - 既出クレジット数, 0) を付与
    - track == 1 のエントリを付与した後にクレジット数を1進める

    track が取得できない(None)エントリはクレジット数を進めない。

    Args:
        entries: parse_recent_plays の結果（新しい順）。
        total_play_count: playerData の累計プレイ回数。

    Returns:
        credit_play_count 付与済みの新しいリスト。入力は変更しない。
    """
    last_track_one = None
    for idx, entry in enumerate(entries):
        if entry.track == 1:
            last_track_one = idx

    if last_track_one is None:
        return []

    out: List[PlayEntry] = []
    seen = 0
    for entry in entries[: last_track_one + 1]:
        out.append(replace(entry, credit_play_count=max(total_play_count - seen, 0)))
        if entry.track == 1:
            seen += 1

    return out


def classify_first_plays(entries: Sequence[PlayEntry], has_score: HasScore) -> List[PlayEntry]:
    """
    初プレイ(その難易度で初めて記録が付いたプレイ)に first_play を立てる。

    自己ベスト更新(achievement_new_record)かつ難易度が判明しているエントリについて、
    has_score が False を返した場合のみ first_play=True とする。

    ストアが空の初回同期では全譜面が初プレイと誤判定されるため、
    呼び出し側で初回同期時は本関数を呼ばないこと。

    Args:
        entries: segment_latest_credits の結果。
        has_score: (title, chart_type, diff_category) に達成率付きスコアが存在するか返す関数。

    Returns:
        first_play 付与済みの新しいリスト。
    """
    out: List[PlayEntry] = []
    for entry in entries:
        if entry.achievement_new_record and entry.diff_category is not None:
            if not has_score(entry.title, entry.chart_type, entry.diff_category):
                entry = replace(entry, first_play=True)
        out.append(entry)
    return out
