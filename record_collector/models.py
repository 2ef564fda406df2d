"""
データモデル定義モジュール。

パース結果（PlayEntry / ScoreRow / PlayerSummary）を同期処理・DB登録へ渡すためのモデルと、
DBから読み出した結果（PlaylogRecord / ScoreRecord）を定義する。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from record_collector.normalize import x10000_to_percent


class ChartType(str, Enum):
    """譜面種別（スタンダード / でらっくす）。"""

    STD = "STD"
    DX = "DX"

    @classmethod
    def from_lowercase(cls, value: str) -> Optional["ChartType"]:
        """楽曲データJSONの小文字表記("std", "dx")から変換する。"""
        mapping = {"std": cls.STD, "dx": cls.DX}
        return mapping.get((value or "").strip().lower())


class DifficultyCategory(str, Enum):
    """難易度カテゴリ。"""

    BASIC = "BASIC"
    ADVANCED = "ADVANCED"
    EXPERT = "EXPERT"
    MASTER = "MASTER"
    REMASTER = "Re:MASTER"

    @classmethod
    def from_lowercase(cls, value: str) -> Optional["DifficultyCategory"]:
        """楽曲データJSONの小文字表記("basic" ... "remaster")から変換する。"""
        mapping = {
            "basic": cls.BASIC,
            "advanced": cls.ADVANCED,
            "expert": cls.EXPERT,
            "master": cls.MASTER,
            "remaster": cls.REMASTER,
        }
        return mapping.get((value or "").strip().lower())

    @property
    def index(self) -> int:
        return list(DifficultyCategory).index(self)


class SongBucket(str, Enum):
    """レーティング対象枠（新曲枠 / 旧曲枠）。"""

    NEW = "New"
    OLD = "Old"


class SyncResult(str, Enum):
    """1回の同期サイクルの結果。"""

    SKIPPED = "skipped"
    SEEDED = "seeded"
    SYNCED = "synced"


@dataclass(frozen=True)
class PlayerSummary:
    """
    playerData ページのプレイヤー情報。

    Attributes:
        display_name: プレイヤー名。
        rating: 現在のレーティング。
        current_version_play_count: 現バージョンのプレイ回数。
        total_play_count: 累計プレイ回数（単調増加するカウンタ）。
    """

    display_name: str
    rating: int
    current_version_play_count: int
    total_play_count: int


@dataclass(frozen=True)
class PlayEntry:
    """
    最近のプレイ履歴(record)ページ1件分の情報。

    - track は1クレジット内の曲順(1..4)。取得できない場合は None
    - played_at_unixtime はプレイ日時の絶対時刻で、playlogs の不変IDになる
    - credit_play_count / first_play は同期処理の中で付与される
    """

    title: str
    chart_type: ChartType
    track: Optional[int] = None
    played_at: Optional[str] = None
    played_at_unixtime: Optional[int] = None
    diff_category: Optional[DifficultyCategory] = None
    level: Optional[str] = None
    achievement_percent: Optional[float] = None
    achievement_new_record: bool = False
    score_rank: Optional[str] = None
    fc: Optional[str] = None
    sync: Optional[str] = None
    dx_score: Optional[int] = None
    dx_score_max: Optional[int] = None
    credit_play_count: Optional[int] = None
    first_play: bool = False


@dataclass(frozen=True)
class ScoreRow:
    """スコア一覧ページ1件分（1譜面のベスト）の情報。"""

    title: str
    chart_type: ChartType
    diff_category: DifficultyCategory
    level: str
    achievement_percent: Optional[float] = None
    rank: Optional[str] = None
    fc: Optional[str] = None
    sync: Optional[str] = None
    dx_score: Optional[int] = None
    dx_score_max: Optional[int] = None
    source_idx: Optional[str] = None


@dataclass(frozen=True)
class PlaylogRecord:
    """playlogs テーブルの1行。"""

    played_at_unixtime: int
    played_at: Optional[str]
    track: Optional[int]
    credit_play_count: Optional[int]
    title: str
    chart_type: str
    diff_category: Optional[str]
    level: Optional[str]
    achievement_x10000: Optional[int]
    achievement_new_record: bool
    first_play: bool
    score_rank: Optional[str]
    fc: Optional[str]
    sync: Optional[str]
    dx_score: Optional[int]
    dx_score_max: Optional[int]
    scraped_at: int


@dataclass(frozen=True)
class ScoreRecord:
    """scores テーブルの1行。"""

    title: str
    chart_type: str
    diff_category: str
    level: str
    achievement_x10000: Optional[int]
    rank: Optional[str]
    fc: Optional[str]
    sync: Optional[str]
    dx_score: Optional[int]
    dx_score_max: Optional[int]
    source_idx: Optional[str]
    scraped_at: int

    @property
    def achievement_percent(self) -> Optional[float]:
        return x10000_to_percent(self.achievement_x10000)


@dataclass(frozen=True)
class SongMetadata:
    """
    楽曲データから引いた譜面メタ情報。

    見つからない項目は None のまま返す（lookup は例外を送出しない）。
    """

    internal_level: Optional[float] = None
    bucket: Optional[SongBucket] = None
    version: Optional[str] = None
    image_name: Optional[str] = None
