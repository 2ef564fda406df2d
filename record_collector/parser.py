"""
HTMLパーサ。

maimai DX NET の以下のページHTMLを解析し、モデルへ変換する責務を持つ。
- playerData: プレイヤー名・レーティング・累計プレイ回数 (PlayerSummary)
- record: 最近のプレイ履歴 (PlayEntry のリスト、新しい順)
- record/musicGenre/search: 難易度別スコア一覧 (ScoreRow のリスト)

想定仕様:
- ランク・FC・SYNC はアイコン画像のファイル名から判定する
- 各プレイの不変IDは idx 入力値の末尾(UNIX秒)を使い、無ければ日時表記(JST)から求める
- 必須項目が欠けている場合は MalformedDocument を送出する
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple

from bs4 import BeautifulSoup

from record_collector.errors import MalformedDocument
from record_collector.models import (
    ChartType,
    DifficultyCategory,
    PlayEntry,
    PlayerSummary,
    ScoreRow,
)

JST = timezone(timedelta(hours=9))

_RANK_ICON_KEYS = {
    "sssp": "SSS+",
    "sss": "SSS",
    "ssp": "SS+",
    "ss": "SS",
    "sp": "S+",
    "s": "S",
    "aaa": "AAA",
    "aa": "AA",
    "a": "A",
    "bbb": "BBB",
    "bb": "BB",
    "b": "B",
    "c": "C",
    "d": "D",
}

_PLAYLOG_RANK_STEMS = {
    "sssplus": "SSS+",
    "ssplus": "SS+",
    "splus": "S+",
}

_FC_KEYS = {"app": "AP+", "ap": "AP", "fcp": "FC+", "fc": "FC"}

_SYNC_KEYS = {"fdxp": "FDX+", "fdx": "FDX", "fsp": "FS+", "fs": "FS", "sync": "SYNC"}

_SYNC_PRIORITY = {"FDX+": 5, "FDX": 4, "FS+": 3, "FS": 2, "SYNC": 1}

_DIFF_ICONS = {
    "diff_basic.png": DifficultyCategory.BASIC,
    "diff_advanced.png": DifficultyCategory.ADVANCED,
    "diff_expert.png": DifficultyCategory.EXPERT,
    "diff_master.png": DifficultyCategory.MASTER,
    "diff_remaster.png": DifficultyCategory.REMASTER,
}

_PLAYED_AT_RE = re.compile(r"(\d{4})/(\d{1,2})/(\d{1,2})\s+(\d{1,2}):(\d{2})")


def _text(tag: Any) -> str:
    return tag.get_text("", strip=False) if tag is not None else ""


def _icon_file(src: Optional[str]) -> Optional[str]:
    """画像URLからクエリを除いたファイル名を返す。"""
    if not src:
        return None
    return src.rsplit("/", 1)[-1].split("?", 1)[0]


def _icon_stem(src: Optional[str], prefix: str = "") -> Optional[str]:
    """画像ファイル名から prefix と拡張子 .png を除いた部分を返す。"""
    file = _icon_file(src)
    if not file or not file.startswith(prefix) or not file.endswith(".png"):
        return None
    return file[len(prefix) : -len(".png")].lower()


def _merge_sync(existing: Optional[str], candidate: Optional[str]) -> Optional[str]:
    """SYNC状態は優先度の高い方を採用する。"""
    if candidate is None:
        return existing
    if existing is None:
        return candidate
    if _SYNC_PRIORITY.get(candidate, 0) > _SYNC_PRIORITY.get(existing, 0):
        return candidate
    return existing


def parse_percent(text: str) -> Optional[float]:
    """"100.5000%" 形式の文字列を float にする。"%" を含まない場合は None。"""
    s = (text or "").strip()
    if "%" not in s:
        return None
    s = re.sub(r"[%\s]", "", s)
    try:
        return float(s)
    except ValueError:
        return None


def parse_dx_score_pair(text: str) -> Optional[Tuple[int, int]]:
    """"1,234 / 2,000" 形式の文字列を (でらっくすスコア, 最大値) にする。"""
    if "/" not in (text or ""):
        return None
    left, right = text.split("/", 1)
    left_digits = re.sub(r"\D", "", left)
    right_digits = re.sub(r"\D", "", right.split("/", 1)[0])
    if not left_digits or not right_digits:
        return None
    return int(left_digits), int(right_digits)


def _chart_type_from_src(src: Optional[str]) -> Optional[ChartType]:
    if not src:
        return None
    if "/img/music_dx.png" in src:
        return ChartType.DX
    if "/img/music_standard.png" in src:
        return ChartType.STD
    return None


def _extract_number_after(haystack: str, needle: str) -> Optional[int]:
    pos = haystack.find(needle)
    if pos < 0:
        return None
    m = re.search(r"\d[\d,]*", haystack[pos + len(needle) :])
    if not m:
        return None
    return int(m.group(0).replace(",", ""))


# ------------------------------------------------------------
# playerData
# ------------------------------------------------------------


def parse_player_summary(html: str) -> PlayerSummary:
    """
    playerData ページからプレイヤー情報を抽出する。

    Args:
        html: playerData ページのHTML文字列。

    Returns:
        PlayerSummary。

    Raises:
        MalformedDocument: プレイヤー名・レーティング・プレイ回数のいずれかが見つからない場合。
    """
    soup = BeautifulSoup(html, "html.parser")

    name = _text(soup.select_one(".name_block")).strip()
    if not name:
        raise MalformedDocument("missing user name (.name_block)")

    rating_digits = re.sub(r"\D", "", _text(soup.select_one(".rating_block")))
    if not rating_digits:
        raise MalformedDocument("missing rating (.rating_block)")

    counts_text = ""
    for block in soup.select("div.m_5.m_b_5.t_r.f_12"):
        text = _text(block)
        if "play count of current version" in text:
            counts_text = text
            break
    if not counts_text:
        raise MalformedDocument("missing play count block")

    current = _extract_number_after(counts_text, "play count of current version")
    total = _extract_number_after(counts_text, "maimaiDX total play count")
    if current is None:
        raise MalformedDocument("missing current version play count")
    if total is None:
        raise MalformedDocument("missing total play count")

    return PlayerSummary(
        display_name=name,
        rating=int(rating_digits),
        current_version_play_count=current,
        total_play_count=total,
    )


# ------------------------------------------------------------
# record (recent plays)
# ------------------------------------------------------------


def parse_subtitle(text: str) -> Tuple[Optional[int], Optional[str]]:
    """
    "TRACK 01 2025/01/15 21:34" 形式のサブタイトルから曲順と日時表記を取り出す。

    Returns:
        (track, played_at)。取得できない項目は None。
    """
    normalized = (text or "").replace(" ", " ").replace("　", " ")

    track = None
    m = re.search(r"TRACK\D*(\d+)", normalized)
    if m:
        track = int(m.group(1))

    played_at = None
    m = _PLAYED_AT_RE.search(normalized)
    if m:
        y, mo, d, h, mi = (int(x) for x in m.groups())
        played_at = f"{y:04d}/{mo:02d}/{d:02d} {h:02d}:{mi:02d}"

    return track, played_at


def played_at_to_unixtime(played_at: Optional[str]) -> Optional[int]:
    """日時表記(JST, "YYYY/MM/DD HH:MM")をUNIX秒にする。解釈できない場合は None。"""
    if not played_at:
        return None
    try:
        dt = datetime.strptime(played_at, "%Y/%m/%d %H:%M").replace(tzinfo=JST)
    except ValueError:
        return None
    return int(dt.timestamp())


def playlog_idx_to_unixtime(idx: Optional[str]) -> Optional[int]:
    """idx 入力値("12,1736944440" 形式)の末尾をUNIX秒として返す。"""
    if not idx:
        return None
    tail = idx.strip().rsplit(",", 1)[-1].strip()
    if not tail.isdigit():
        return None
    return int(tail)


def _find_playlog_entry(top: Any) -> Optional[Any]:
    """playlog_top_container を含むプレイ1件分のブロックを祖先から探す。"""
    for parent in top.parents:
        classes = parent.get("class") or []
        if "p_10" in classes and "t_l" in classes and "v_b" in classes:
            return parent
    return None


def _find_song_container(entry: Any) -> Optional[Any]:
    for div in entry.find_all("div"):
        cls = " ".join(div.get("class") or [])
        if "playlog_" in cls and "_container" in cls and div.select_one("div.basic_block"):
            return div
    return None


def _strip_level_prefix(raw: str, level: Optional[str]) -> str:
    s = raw.strip()
    if level and s.startswith(level):
        s = s[len(level) :]
    return s.strip()


def parse_recent_plays(html: str) -> List[PlayEntry]:
    """
    record ページから最近のプレイ履歴を抽出する。

    Args:
        html: record ページのHTML文字列。

    Returns:
        PlayEntry のリスト（ページ上の順序 = 新しい順）。

    Raises:
        MalformedDocument: プレイ履歴ブロックが1件も見つからず、ページ構造を判定できない場合。
    """
    soup = BeautifulSoup(html, "html.parser")
    tops = soup.select(".playlog_top_container")
    if not tops and not soup.select_one(".wrapper, #wrap, body"):
        raise MalformedDocument("record page has no recognizable structure")

    out: List[PlayEntry] = []
    for top in tops:
        entry = _find_playlog_entry(top)
        if entry is None:
            continue

        container = _find_song_container(entry)
        if container is None:
            continue
        song_block = container.select_one("div.basic_block")

        diff_img = entry.select_one("img.playlog_diff")
        diff_category = _DIFF_ICONS.get(_icon_file(diff_img.get("src")) if diff_img else None)

        sub_title = entry.select_one(".sub_title")
        track, played_at = parse_subtitle(sub_title.get_text(" ", strip=True) if sub_title else "")

        level = _text(song_block.select_one(".playlog_level_icon")).strip() or None
        title = _strip_level_prefix(_text(song_block), level)

        idx_input = entry.select_one('input[name="idx"]')
        unixtime = playlog_idx_to_unixtime(idx_input.get("value") if idx_input else None)
        if unixtime is None:
            unixtime = played_at_to_unixtime(played_at)

        achievement = parse_percent(_text(entry.select_one(".playlog_achievement_txt")))
        new_record = entry.select_one("img.playlog_achievement_newrecord") is not None or any(
            "newrecord" in (img.get("src") or "") for img in entry.find_all("img")
        )

        rank_img = entry.select_one("img.playlog_scorerank")
        rank_stem = _icon_stem(rank_img.get("src") if rank_img else None)
        score_rank = None
        if rank_stem:
            score_rank = _PLAYLOG_RANK_STEMS.get(rank_stem) or _RANK_ICON_KEYS.get(rank_stem)

        dx_pair = parse_dx_score_pair(_text(entry.select_one(".playlog_score_block .white")))

        kind_img = entry.select_one("img.playlog_music_kind_icon")
        chart_type = _chart_type_from_src(kind_img.get("src") if kind_img else None) or ChartType.STD

        fc = None
        sync = None
        for img in entry.find_all("img"):
            src = img.get("src")
            if fc is None:
                fc = _FC_KEYS.get(_icon_stem(src, "fc_") or "")
            sync = _merge_sync(sync, _SYNC_KEYS.get(_icon_stem(src, "sync_") or ""))

        out.append(
            PlayEntry(
                title=title,
                chart_type=chart_type,
                track=track,
                played_at=played_at,
                played_at_unixtime=unixtime,
                diff_category=diff_category,
                level=level,
                achievement_percent=achievement,
                achievement_new_record=new_record,
                score_rank=score_rank,
                fc=fc,
                sync=sync,
                dx_score=dx_pair[0] if dx_pair else None,
                dx_score_max=dx_pair[1] if dx_pair else None,
            )
        )

    return out


# ------------------------------------------------------------
# score list
# ------------------------------------------------------------


def _find_chart_type(entry: Any) -> ChartType:
    """譜面種別アイコンを自身→祖先の順に探す。見つからなければSTD。"""
    for node in [entry, *entry.parents]:
        if not hasattr(node, "select_one"):
            continue
        img = node.select_one("img.music_kind_icon")
        if img is not None:
            found = _chart_type_from_src(img.get("src"))
            if found is not None:
                return found
    return ChartType.STD


def parse_score_list(html: str, diff_category: DifficultyCategory) -> List[ScoreRow]:
    """
    難易度別スコア一覧ページからベストスコアを抽出する。

    Args:
        html: スコア一覧ページのHTML文字列。
        diff_category: 取得対象の難易度。

    Returns:
        ScoreRow のリスト。未プレイ譜面は achievement_percent が None になる。

    Raises:
        MalformedDocument: 譜面のレベル表記が欠けている場合。
    """
    soup = BeautifulSoup(html, "html.parser")

    rows: List[ScoreRow] = []
    for entry in soup.select('div[class*="music_"][class*="_score_back"]'):
        title = _text(entry.select_one(".music_name_block")).strip()

        idx_input = entry.select_one('input[name="idx"]')
        source_idx = idx_input.get("value") if idx_input else None

        level = _text(entry.select_one(".music_lv_block")).strip()
        if not level:
            raise MalformedDocument(f"missing level (.music_lv_block): {title}")

        achievement = None
        dx_pair = None
        for block in entry.select(".music_score_block"):
            text = _text(block)
            if achievement is None:
                achievement = parse_percent(text)
                if achievement is not None:
                    continue
            if dx_pair is None:
                dx_pair = parse_dx_score_pair(text)

        rank = None
        fc = None
        sync = None
        for img in entry.find_all("img"):
            key = _icon_stem(img.get("src"), "music_icon_")
            if key is None:
                continue
            if rank is None:
                rank = _RANK_ICON_KEYS.get(key)
            if fc is None:
                fc = _FC_KEYS.get(key)
            sync = _merge_sync(sync, _SYNC_KEYS.get(key))

        rows.append(
            ScoreRow(
                title=title,
                chart_type=_find_chart_type(entry),
                diff_category=diff_category,
                level=level,
                achievement_percent=achievement,
                rank=rank,
                fc=fc,
                sync=sync,
                dx_score=dx_pair[0] if dx_pair else None,
                dx_score_max=dx_pair[1] if dx_pair else None,
                source_idx=source_idx,
            )
        )

    return rows
