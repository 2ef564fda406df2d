"""
楽曲データ(data.json)の読み込みと譜面メタ情報の索引。

data.json の形式:
    {"songs": [{"title": ..., "version": ..., "imageName": ...,
                "sheets": [{"type": "dx", "difficulty": "master",
                            "internalLevelValue": 14.4}, ...]}]}

- 内部レベルは (正規化曲名, 譜面種別, 難易度) で引く
- 新曲枠/旧曲枠はバージョン名から判定する
- ファイルの更新時刻が変わった場合に reload_if_changed で読み直せる
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple, Union

from record_collector.models import ChartType, DifficultyCategory, SongBucket, SongMetadata
from record_collector.normalize import normalize_title_key

logger = logging.getLogger(__name__)

SheetKey = Tuple[str, str, str]


@dataclass
class _IndexData:
    internal_levels: Dict[SheetKey, float] = field(default_factory=dict)
    versions: Dict[str, str] = field(default_factory=dict)
    image_names: Dict[str, str] = field(default_factory=dict)


def _parse_internal_level(sheet: dict) -> Optional[float]:
    """internalLevelValue(数値) または internalLevel(文字列) を float にする。"""
    raw = sheet.get("internalLevelValue")
    if raw is None:
        raw = sheet.get("internalLevel")
    if raw is None:
        return None
    try:
        return float(str(raw).strip())
    except ValueError:
        return None


def build_index_data(root: dict) -> _IndexData:
    """
    data.json のルートオブジェクトから索引を構築する。

    同名曲が複数ある場合、バージョン・画像名は最初に現れたものを採用する。
    譜面種別・難易度が解釈できないシートは無視する。
    """
    data = _IndexData()

    for song in root.get("songs") or []:
        title_key = normalize_title_key(song.get("title"))
        if not title_key:
            continue

        version = (song.get("version") or "").strip()
        if version:
            data.versions.setdefault(title_key, version)

        image_name = (song.get("imageName") or "").strip()
        if image_name:
            data.image_names.setdefault(title_key, image_name)

        for sheet in song.get("sheets") or []:
            chart_type = ChartType.from_lowercase(sheet.get("type", ""))
            diff = DifficultyCategory.from_lowercase(sheet.get("difficulty", ""))
            internal = _parse_internal_level(sheet)
            if chart_type is None or diff is None or internal is None:
                continue
            data.internal_levels[(title_key, chart_type.value, diff.value)] = internal

    return data


class SongMetadataIndex:
    """
    譜面メタ情報の読み取り専用索引。

    lookup は例外を送出せず、見つからない項目は None の SongMetadata を返す。
    """

    def __init__(
        self,
        path: Optional[str] = None,
        new_versions: Iterable[str] = ("PRiSM PLUS", "CiRCLE"),
    ):
        self.path = path
        self.new_versions = frozenset(v.strip() for v in new_versions)
        self._lock = threading.Lock()
        self._data = _IndexData()
        self._mtime: Optional[float] = None

    @classmethod
    def from_root(cls, root: dict, new_versions: Iterable[str] = ("PRiSM PLUS", "CiRCLE")):
        """メモリ上の data.json 相当の辞書から索引を作る。"""
        index = cls(path=None, new_versions=new_versions)
        index._data = build_index_data(root)
        return index

    def load(self) -> bool:
        """
        data.json を読み込む。

        ファイルが存在しない場合は致命的エラーとせず、空の索引のまま False を返す。

        Returns:
            読み込めた場合 True。

        Raises:
            ValueError: JSONのパースに失敗した場合。
        """
        if not self.path or not os.path.exists(self.path):
            logger.warning("song data not found at %s (non-fatal); rating uses level labels only", self.path)
            return False

        mtime = os.path.getmtime(self.path)
        with open(self.path, "r", encoding="utf-8") as f:
            root = json.load(f)

        data = build_index_data(root)
        with self._lock:
            self._data = data
            self._mtime = mtime

        logger.info(
            "song data loaded: %s (sheets=%d, songs=%d)",
            self.path,
            len(data.internal_levels),
            len(data.versions),
        )
        return True

    def reload_if_changed(self) -> bool:
        """
        data.json の更新時刻が前回読み込み時から変わっていれば読み直す。

        読み直しに失敗した場合は警告を出し、以前の索引を使い続ける。

        Returns:
            読み直した場合 True。
        """
        if not self.path or not os.path.exists(self.path):
            return False
        if self._mtime is not None and os.path.getmtime(self.path) == self._mtime:
            return False
        try:
            return self.load()
        except (OSError, ValueError) as e:
            logger.warning("song data reload failed; keeping previous index: %s", e)
            return False

    def __len__(self) -> int:
        return len(self._data.internal_levels)

    def _bucket_for(self, version: Optional[str]) -> Optional[SongBucket]:
        if version is None:
            return None
        return SongBucket.NEW if version in self.new_versions else SongBucket.OLD

    def lookup(
        self,
        title: str,
        chart_type: Union[ChartType, str],
        diff_category: Union[DifficultyCategory, str],
    ) -> SongMetadata:
        """
        譜面のメタ情報を返す。

        Args:
            title: 曲名。
            chart_type: 譜面種別("STD"/"DX" または ChartType)。
            diff_category: 難易度("MASTER" 等 または DifficultyCategory)。

        Returns:
            SongMetadata。見つからない項目は None。
        """
        data = self._data
        title_key = normalize_title_key(title)
        chart_value = chart_type.value if isinstance(chart_type, ChartType) else str(chart_type)
        diff_value = (
            diff_category.value
            if isinstance(diff_category, DifficultyCategory)
            else str(diff_category)
        )

        version = data.versions.get(title_key)
        return SongMetadata(
            internal_level=data.internal_levels.get((title_key, chart_value, diff_value)),
            bucket=self._bucket_for(version),
            version=version,
            image_name=data.image_names.get(title_key),
        )
