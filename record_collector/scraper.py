"""
maimai DX NET への通信処理。

ログイン済みセッションでページを取得する責務を持つ。
HTMLの解析は parser.py 側で行い、本モジュールは通信とセッション管理のみを担当する。

例外方針:
- メンテナンス時間帯、または503応答は Maintenance を送出する
- ログイン画面・エラー画面へ飛ばされた場合は AuthExpired を送出する（自動リトライしない）
- requests 由来の例外や5xx応答は最大 max_retries 回まで指数バックオフで再試行し、
  それでも失敗した場合は TransportError に変換して上位へ伝播する
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import urljoin, urlparse

import requests

from record_collector.config import Credentials, HttpConfig, MaintenanceConfig
from record_collector.errors import AuthExpired, Maintenance, MalformedDocument, TransportError

logger = logging.getLogger(__name__)

MAIMAI_MOBILE_ROOT = "https://maimaidx-eng.com/maimai-mobile/"
RECORD_URL = "https://maimaidx-eng.com/maimai-mobile/record/"
PLAYER_DATA_URL = "https://maimaidx-eng.com/maimai-mobile/playerData/"
SCORE_LIST_URL = "https://maimaidx-eng.com/maimai-mobile/record/musicGenre/search/?genre=99&diff={diff}"
LOGIN_PATH = "/common_auth/login/sid/"

DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9,ja;q=0.8",
}

_EXPIRED_BODY_MARKERS = (
    "Please login again.",
    "ERROR CODE",
    "title_error.png",
    "The connection time has been expired",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def score_list_url(diff: int) -> str:
    """
    難易度別スコア一覧ページのURLを返す。

    Args:
        diff: 0(BASIC)〜4(Re:MASTER)。
    """
    if not 0 <= diff <= 4:
        raise ValueError(f"diff must be 0..4: {diff}")
    return SCORE_LIST_URL.format(diff=diff)


def is_maintenance_window(now: datetime, config: MaintenanceConfig) -> bool:
    """
    指定時刻がメンテナンス時間帯 [start_hour, end_hour) に含まれるか判定する。

    Args:
        now: 判定する時刻(タイムゾーン付き)。
        config: メンテナンス時間帯設定。
    """
    local = now.astimezone(timezone(timedelta(hours=config.utc_offset_hours)))
    return config.start_hour <= local.hour < config.end_hour


def looks_like_login_or_expired(final_url: str, body: str) -> bool:
    """
    レスポンスがログイン画面・セッション切れ画面かどうか判定する。

    Args:
        final_url: リダイレクト後の最終URL。
        body: レスポンス本文。
    """
    parsed = urlparse(final_url)
    if parsed.path.startswith("/maimai-mobile/error/"):
        return True
    if "/common_auth/login" in final_url:
        return True
    if (parsed.hostname or "").endswith("am-all.net") and "/common_auth/" in final_url:
        return True
    return any(marker in body for marker in _EXPIRED_BODY_MARKERS)


class MaimaiClient:
    """
    maimai DX NET 用のHTTPクライアント。

    requests.Session のCookieでログイン状態を保持する。
    """

    def __init__(
        self,
        credentials: Credentials,
        http_config: Optional[HttpConfig] = None,
        maintenance: Optional[MaintenanceConfig] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.credentials = credentials
        self.http_config = http_config or HttpConfig()
        self.maintenance = maintenance or MaintenanceConfig()
        self.session = session or requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        self._clock = clock
        self._sleep = sleep

    def in_maintenance(self) -> bool:
        return is_maintenance_window(self._clock(), self.maintenance)

    def _ensure_not_maintenance(self) -> None:
        if self.in_maintenance():
            raise Maintenance(
                "maimai DX NET maintenance window "
                f"({self.maintenance.start_hour:02d}:00-{self.maintenance.end_hour:02d}:00); "
                "skipping request"
            )

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """
        リトライ付きでHTTPリクエストを送る。

        通信例外と503以外の5xxは base_delay * 2**attempt 秒待って再試行する。
        """
        last_error: Optional[str] = None

        for attempt in range(self.http_config.max_retries):
            if attempt > 0:
                delay = self.http_config.base_delay * (2 ** (attempt - 1))
                logger.warning("Retrying %s %s in %.1fs (%s)", method, url, delay, last_error)
                self._sleep(delay)

            try:
                response = self.session.request(
                    method, url, timeout=self.http_config.timeout, **kwargs
                )
            except requests.RequestException as e:
                last_error = str(e)
                continue

            if response.status_code == 503:
                raise Maintenance(
                    f"site unavailable (503). maimai DX NET may be under maintenance. url={response.url}"
                )
            if response.status_code >= 500:
                last_error = f"status {response.status_code}"
                continue
            return response

        raise TransportError(
            f"HTTP {method} failed after {self.http_config.max_retries} attempts: {url} ({last_error})"
        )

    def fetch_bytes(self, url: str) -> bytes:
        """
        ログイン済みセッションでURLを取得し、レスポンス本文を返す。

        Args:
            url: 取得対象URL。

        Returns:
            レスポンス本文(bytes)。

        Raises:
            Maintenance: メンテナンス時間帯、または503の場合。
            AuthExpired: ログイン画面・エラー画面へ飛ばされた場合。
            TransportError: 通信失敗、または成功以外のステータスの場合。
        """
        self._ensure_not_maintenance()
        response = self._request("GET", url)

        body = response.content
        text = body.decode("utf-8", errors="replace")
        if looks_like_login_or_expired(response.url, text):
            raise AuthExpired(f"session expired or not logged in. final_url={response.url}")
        if not response.ok:
            raise TransportError(f"non-success status: {response.status_code} url={response.url}")
        return body

    def fetch_html(self, url: str) -> str:
        """fetch_bytes の結果をUTF-8文字列として返す。"""
        body = self.fetch_bytes(url)
        try:
            return body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedDocument(f"response is not utf-8: {url}") from e

    def login(self) -> None:
        """
        SEGA ID でログインする。

        トップページがログインフォームを返さない場合は、既にログイン済みとみなす。

        Raises:
            AuthExpired: ログインに失敗した場合。
            Maintenance: メンテナンス時間帯の場合。
            TransportError: 通信失敗の場合。
        """
        self._ensure_not_maintenance()
        login_page = self._request("GET", MAIMAI_MOBILE_ROOT)
        login_html = login_page.text

        if 'id="sidForm"' not in login_html:
            if looks_like_login_or_expired(login_page.url, login_html):
                raise AuthExpired(f"unexpected login response. final_url={login_page.url}")
            logger.debug("already logged in")
            return

        post_url = urljoin(login_page.url, LOGIN_PATH)
        response = self._request(
            "POST",
            post_url,
            data={
                "sid": self.credentials.sega_id,
                "password": self.credentials.sega_password,
                "retention": "1",
            },
            headers={"Referer": login_page.url},
        )

        if looks_like_login_or_expired(response.url, response.text):
            raise AuthExpired(f"login failed or not completed. final_url={response.url}")

        logger.info("Logged in to maimai DX NET")
