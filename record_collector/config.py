"""
設定ファイル(settings.yaml)と環境変数の読み込み処理を提供するモジュール。

settings.yaml から同期処理に必要な各種設定を読み込み、
アプリ内で扱いやすい dataclass に変換する。
SEGA ID などの秘密情報は settings.yaml には書かず、環境変数から読み込む。
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

import yaml

from record_collector.errors import ConfigError

DEFAULT_NEW_VERSIONS = ["PRiSM PLUS", "CiRCLE"]


@dataclass(frozen=True)
class MaintenanceConfig:
    """
    maimai DX NET の定期メンテナンス時間帯の設定。

    Attributes:
        start_hour: メンテナンス開始時刻(時)。この時刻を含む。
        end_hour: メンテナンス終了時刻(時)。この時刻を含まない。
        utc_offset_hours: 時刻判定に使うタイムゾーンのUTCオフセット。
    """

    start_hour: int = 4
    end_hour: int = 7
    utc_offset_hours: int = 9


@dataclass(frozen=True)
class HttpConfig:
    """
    HTTPクライアント設定。

    Attributes:
        timeout: requests に渡すタイムアウト秒。
        max_retries: 通信失敗時の最大試行回数。
        base_delay: 指数バックオフの基準秒。
    """

    timeout: int = 30
    max_retries: int = 3
    base_delay: float = 1.0


@dataclass(frozen=True)
class Settings:
    """
    アプリケーション全体設定。

    Attributes:
        database_path: SQLiteファイルパス。
        song_data_path: 楽曲データ(data.json)のパス。
        poll_interval_seconds: 定期同期の間隔(秒)。
        new_versions: 新曲枠として扱うバージョン名。
        maintenance: メンテナンス時間帯設定。
        http: HTTPクライアント設定。
    """

    database_path: str = "data/records.sqlite3"
    song_data_path: str = "data/song_data/data.json"
    poll_interval_seconds: int = 600
    new_versions: List[str] = field(default_factory=lambda: list(DEFAULT_NEW_VERSIONS))
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)
    http: HttpConfig = field(default_factory=HttpConfig)


@dataclass(frozen=True)
class Credentials:
    """
    環境変数から読み込む秘密情報。

    Attributes:
        sega_id: SEGA ID。
        sega_password: SEGA ID のパスワード。
        discord_webhook_url: 新規プレイ通知先(任意)。
    """

    sega_id: str
    sega_password: str
    discord_webhook_url: Optional[str] = None


def load_settings(path: str) -> Settings:
    """
    settings.yaml を読み込み Settings に変換する。

    ファイルが存在しない場合は全項目デフォルト値の Settings を返す。

    Args:
        path: settings.yaml のファイルパス。

    Returns:
        Settingsオブジェクト。

    Raises:
        ConfigError: YAMLのパースや数値変換に失敗した場合。
    """
    if not os.path.exists(path):
        return Settings()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"settings.yaml のパースに失敗しました: {path} ({e})") from e

    maintenance_data = data.get("maintenance") or {}
    http_data = data.get("http") or {}

    try:
        return Settings(
            database_path=str(data.get("database_path", "data/records.sqlite3")),
            song_data_path=str(data.get("song_data_path", "data/song_data/data.json")),
            poll_interval_seconds=int(data.get("poll_interval_seconds", 600)),
            new_versions=[
                str(v).strip()
                for v in (data.get("new_versions") or DEFAULT_NEW_VERSIONS)
            ],
            maintenance=MaintenanceConfig(
                start_hour=int(maintenance_data.get("start_hour", 4)),
                end_hour=int(maintenance_data.get("end_hour", 7)),
                utc_offset_hours=int(maintenance_data.get("utc_offset_hours", 9)),
            ),
            http=HttpConfig(
                timeout=int(http_data.get("timeout", 30)),
                max_retries=int(http_data.get("max_retries", 3)),
                base_delay=float(http_data.get("base_delay", 1.0)),
            ),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"settings.yaml の値が不正です: {e}") from e


def load_credentials() -> Credentials:
    """
    環境変数から認証情報を読み込む。

    環境変数の要件:
    - SEGA_ID: SEGA ID (必須)
    - SEGA_PASSWORD: パスワード (必須)
    - DISCORD_WEBHOOK_URL: 通知先 (オプション)

    Raises:
        ConfigError: 必須の環境変数が未設定の場合。
    """
    sega_id = os.environ.get("SEGA_ID", "").strip()
    sega_password = os.environ.get("SEGA_PASSWORD", "")
    if not sega_id:
        raise ConfigError("missing env var: SEGA_ID")
    if not sega_password:
        raise ConfigError("missing env var: SEGA_PASSWORD")

    webhook = os.environ.get("DISCORD_WEBHOOK_URL", "").strip() or None
    return Credentials(
        sega_id=sega_id,
        sega_password=sega_password,
        discord_webhook_url=webhook,
    )
