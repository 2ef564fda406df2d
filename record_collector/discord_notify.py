"""
Discord Webhook通知を行うユーティリティ。

同期で新しいプレイが保存された場合や、手動同期が失敗した場合にDiscordへ送信する。
通知失敗は処理全体の失敗とはみなさず、警告ログを残して例外は握りつぶす。
"""

from __future__ import annotations

import logging
from typing import Optional

import requests
from requests import RequestException

from record_collector.models import PlayerSummary

logger = logging.getLogger(__name__)


def send_discord(webhook_url: Optional[str], message: str) -> None:
    """
    Discord Webhookへメッセージを送信する。

    webhook_urlが空の場合は何もせず終了する。
    通知失敗は致命的なエラーとせず、例外は握りつぶす。

    Args:
        webhook_url: Discord Webhook URL。
        message: 送信する本文。
    """
    if not webhook_url:
        return

    payload = {"content": message}

    try:
        response = requests.post(webhook_url, json=payload, timeout=15)
        response.raise_for_status()
    except RequestException as e:
        # 通知失敗は致命にしない
        logger.warning("Failed to send Discord notification: %s", e)


def build_new_plays_message(inserted: int, summary: PlayerSummary) -> str:
    """新規プレイ保存時の通知本文を作る。"""
    return (
        f"🎵 maimai DX プレイ記録を同期しました\n"
        f"- player: {summary.display_name}\n"
        f"- new plays: {inserted}\n"
        f"- rating: {summary.rating}\n"
        f"- total play count: {summary.total_play_count}\n"
    )


def build_failure_message(error_text: str) -> str:
    """同期失敗時の通知本文を作る。長いトレースバックは切り詰める。"""
    return f"❌ maimai DX 同期失敗\n```{error_text[:1800]}```"


def make_new_plays_notifier(webhook_url: Optional[str]):
    """
    SyncCoordinator の on_new_plays に渡すコールバックを返す。

    webhook_url が未設定の場合は None を返す（通知しない）。
    """
    if not webhook_url:
        return None

    def notify(inserted: int, summary: PlayerSummary) -> None:
        send_discord(webhook_url, build_new_plays_message(inserted, summary))

    return notify
