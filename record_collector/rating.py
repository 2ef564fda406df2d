"""
レーティング計算モジュール。

譜面1件ごとの単曲レート値と、新曲枠15件・旧曲枠35件のベスト枠集計を計算する。
本モジュールの関数はすべて副作用を持たない。

係数表は maimai DX のレーティング仕様(Gen 3 / 3.5)に準拠する。
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from record_collector.models import ScoreRecord, SongBucket, SongMetadata

ACHIEVEMENT_CAP = 100.5
NEW_BUCKET_SIZE = 15
OLD_BUCKET_SIZE = 35

# (下限達成率, 係数)。上から順に評価し、最初に下限以上となった係数を使う。
_COEFFICIENT_TABLE = [
    (100.5, 22.4),
    (100.4999, 22.2),
    (100.0, 21.6),
    (99.9999, 21.4),
    (99.5, 21.1),
    (99.0, 20.8),
    (98.9999, 20.6),
    (98.0, 20.3),
    (97.0, 20.0),
    (96.9999, 17.6),
    (94.0, 16.8),
    (90.0, 15.2),
    (80.0, 13.6),
    (79.9999, 12.8),
    (75.0, 12.0),
    (70.0, 11.2),
    (60.0, 9.6),
    (50.0, 8.0),
    (40.0, 6.4),
    (30.0, 4.8),
    (20.0, 3.2),
    (10.0, 1.6),
]

_PERFECT_FC = {"AP", "AP+"}


@dataclass(frozen=True)
class RatedChart:
    """
    レート計算結果付きの譜面。

    internal_level / bucket が解決できない場合は None となり、
    rating_points も None になる（0点扱いにはしない）。
    """

    title: str
    chart_type: str
    diff_category: str
    level: Optional[str]
    achievement_percent: Optional[float]
    fc: Optional[str]
    internal_level: Optional[float]
    bucket: Optional[SongBucket]
    rating_points: Optional[int]


@dataclass(frozen=True)
class RatedSet:
    """
    ベスト枠集計結果。

    Attributes:
        new_top: 新曲枠の上位(最大15件)。降順。
        old_top: 旧曲枠の上位(最大35件)。降順。
        total: 両枠の単曲レート合計。
        missing_data: 内部レベルまたは枠が解決できず除外した譜面数。
    """

    new_top: List[RatedChart] = field(default_factory=list)
    old_top: List[RatedChart] = field(default_factory=list)
    total: int = 0
    missing_data: int = 0

    @property
    def new_total(self) -> int:
        return sum(c.rating_points or 0 for c in self.new_top)

    @property
    def old_total(self) -> int:
        return sum(c.rating_points or 0 for c in self.old_top)


def coefficient(achievement_percent: float) -> float:
    """
    達成率に対応する係数を返す。

    達成率は 100.5 を上限として丸めてから係数表を引く。

    Args:
        achievement_percent: 達成率(%)。

    Returns:
        係数(0.0〜22.4)。
    """
    a = min(achievement_percent, ACHIEVEMENT_CAP)
    for lower_bound, coef in _COEFFICIENT_TABLE:
        if a >= lower_bound:
            return coef
    return 0.0


def rating_points(internal_level: float, achievement_percent: float, perfect_bonus: bool) -> int:
    """
    単曲レート値を計算する。

    floor(係数 * 内部レベル * min(達成率, 100.5) / 100) を基本値とし、
    AP / AP+ の場合は基本値に1を加算する。
    計算結果が有限でない、または負の場合は0とする。

    Args:
        internal_level: 譜面の内部レベル。
        achievement_percent: 達成率(%)。
        perfect_bonus: AP / AP+ ボーナスを加算するかどうか。

    Returns:
        単曲レート値。
    """
    coef = coefficient(achievement_percent)
    ach = min(achievement_percent, ACHIEVEMENT_CAP)
    raw = (coef * internal_level * ach) / 100.0
    base = math.floor(raw) if math.isfinite(raw) and raw > 0 else 0
    if perfect_bonus:
        return base + 1
    return base


def is_perfect_bonus(fc: Optional[str]) -> bool:
    """フルコンボ状態が AP / AP+ かどうか。"""
    return fc in _PERFECT_FC


def fallback_internal_level(level: Optional[str]) -> Optional[float]:
    """
    表示レベル文字列から内部レベルの代替値を求める。

    - "13+" のように末尾が "+" の場合: 数値部 + 0.6
    - それ以外: 数値部 + 0.0
    - 空文字、"N/A"、数値にできない場合は None

    Args:
        level: 表示レベル文字列。

    Returns:
        内部レベルの代替値、または None。
    """
    s = (level or "").strip()
    if not s or s == "N/A":
        return None

    has_plus = s.endswith("+")
    numeric = s.rstrip("+").strip() if has_plus else s
    try:
        base = float(numeric)
    except ValueError:
        return None
    if not math.isfinite(base):
        return None

    return round(base + (0.6 if has_plus else 0.0), 1)


def resolve_internal_level(metadata: SongMetadata, level: Optional[str]) -> Optional[float]:
    """楽曲データの内部レベルを優先し、無ければ表示レベルから代替値を求める。"""
    if metadata.internal_level is not None:
        return metadata.internal_level
    return fallback_internal_level(level)


def rate_chart(
    *,
    title: str,
    chart_type: str,
    diff_category: str,
    level: Optional[str],
    achievement_percent: Optional[float],
    fc: Optional[str],
    metadata: SongMetadata,
) -> RatedChart:
    """譜面1件の内部レベル・枠・単曲レート値を解決して RatedChart を返す。"""
    internal_level = resolve_internal_level(metadata, level)

    points = None
    if internal_level is not None and achievement_percent is not None:
        points = rating_points(internal_level, achievement_percent, is_perfect_bonus(fc))

    return RatedChart(
        title=title,
        chart_type=chart_type,
        diff_category=diff_category,
        level=level,
        achievement_percent=achievement_percent,
        fc=fc,
        internal_level=internal_level,
        bucket=metadata.bucket,
        rating_points=points,
    )


def rate_score(record: ScoreRecord, song_index) -> RatedChart:
    """
    scores テーブルの1行をレート計算する。

    Args:
        record: ScoreRecord。
        song_index: lookup(title, chart_type, diff_category) を持つ楽曲データ索引。
    """
    metadata = song_index.lookup(record.title, record.chart_type, record.diff_category)
    return rate_chart(
        title=record.title,
        chart_type=record.chart_type,
        diff_category=record.diff_category,
        level=record.level,
        achievement_percent=record.achievement_percent,
        fc=record.fc,
        metadata=metadata,
    )


def _sort_key(chart: RatedChart):
    return (chart.rating_points or 0, chart.achievement_percent or 0.0)


def select_rated_set(charts: Iterable[RatedChart]) -> RatedSet:
    """
    ベスト枠(新曲15件 / 旧曲35件)を選出して合計する。

    枠ごとに (単曲レート値, 達成率) の降順で並べ、上位を採用する。
    枠または単曲レート値が解決できない譜面は集計から除外し、missing_data に数える。

    Args:
        charts: レート計算済みの譜面。

    Returns:
        RatedSet。
    """
    new_charts: List[RatedChart] = []
    old_charts: List[RatedChart] = []
    missing = 0

    for chart in charts:
        if chart.bucket is None or chart.rating_points is None:
            missing += 1
            continue
        if chart.bucket == SongBucket.NEW:
            new_charts.append(chart)
        else:
            old_charts.append(chart)

    new_top = sorted(new_charts, key=_sort_key, reverse=True)[:NEW_BUCKET_SIZE]
    old_top = sorted(old_charts, key=_sort_key, reverse=True)[:OLD_BUCKET_SIZE]
    total = sum(c.rating_points for c in new_top) + sum(c.rating_points for c in old_top)

    return RatedSet(new_top=new_top, old_top=old_top, total=total, missing_data=missing)
