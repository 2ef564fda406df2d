"""
文字列・数値の正規化ユーティリティ。

楽曲データ(data.json)とmaimai DX NETの曲名表記の揺れを吸収して照合キーを作る処理と、
達成率を整数(x10000)の固定小数点へ変換する処理を提供する。
"""

from __future__ import annotations

import re
import unicodedata
from typing import Optional


_QUOTE_MAP = {
    "“": '"',
    "”": '"',
    "’": "'",
    "‘": "'",
}

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_title_key(s: Optional[str]) -> str:
    """
    曲名を楽曲データ照合用のキーへ正規化して返す。

    正規化内容:
    - Unicode正規化 (NFKC)
    - 引用符の統一
    - 空白類(全角スペース・改行含む)をすべて除去
    - 小文字化

    Args:
        s: 曲名。

    Returns:
        正規化済み文字列。入力が None の場合は空文字を返す。
    """
    if s is None:
        return ""

    s = unicodedata.normalize("NFKC", s)

    for k, v in _QUOTE_MAP.items():
        s = s.replace(k, v)

    # 空白は表記揺れが大きいため完全に除去する
    s = _WHITESPACE_RE.sub("", s)

    return s.lower()


def percent_to_x10000(percent: Optional[float]) -> Optional[int]:
    """
    達成率(%)を10000倍した整数へ変換する。

    浮動小数点の誤差をDBへ持ち込まないため、保存時は常にこの値を使う。

    Args:
        percent: 達成率。例: 100.5

    Returns:
        10000倍して四捨五入した整数。例: 1005000。入力が None の場合は None。
    """
    if percent is None:
        return None
    return int(round(percent * 10000.0))


def x10000_to_percent(value: Optional[int]) -> Optional[float]:
    """percent_to_x10000 の逆変換。"""
    if value is None:
        return None
    return value / 10000.0


def format_percent(percent: Optional[float]) -> str:
    """達成率を小数4桁の表示用文字列にする。None は "N/A"。"""
    if percent is None:
        return "N/A"
    return f"{percent:.4f}%"
