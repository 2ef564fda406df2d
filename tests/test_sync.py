"""同期処理(SyncCoordinator)のテスト。"""

from __future__ import annotations

import threading

import pytest

from record_collector import db
from record_collector.errors import AuthExpired, Maintenance, TransportError
from record_collector.models import SyncResult
from record_collector.scraper import PLAYER_DATA_URL, RECORD_URL, score_list_url
from record_collector.sync import CURSOR_RATING, CURSOR_TOTAL_PLAY_COUNT, SyncCoordinator
from html_builders import (
    player_data_html,
    playlog_html,
    record_page_html,
    score_entry_html,
    score_list_html,
)


class FakeClient:
    """URLごとに固定のHTMLを返すクライアント。"""

    def __init__(self, pages: dict):
        self.pages = dict(pages)
        self.maintenance = False
        self.calls = []
        self.login_calls = 0
        self.expire_next = 0
        self.fail_urls = set()

    def in_maintenance(self) -> bool:
        return self.maintenance

    def fetch_html(self, url: str) -> str:
        self.calls.append(url)
        if self.expire_next > 0:
            self.expire_next -= 1
            raise AuthExpired("expired")
        if url in self.fail_urls:
            raise TransportError(f"failed: {url}")
        return self.pages[url]

    def login(self) -> None:
        self.login_calls += 1


def _pages(total: int, plays, master_scores, rating: int = 15000) -> dict:
    pages = {PLAYER_DATA_URL: player_data_html(total=total, rating=rating)}
    for diff in range(5):
        entries = master_scores if diff == 3 else []
        pages[score_list_url(diff)] = score_list_html(entries)
    pages[RECORD_URL] = record_page_html(plays)
    return pages


def _coordinator(client, db_path, **kwargs) -> SyncCoordinator:
    return SyncCoordinator(client, db_path, clock=lambda: 1_700_000_000, lock=threading.Lock(), **kwargs)


def _read(db_path, fn, *args):
    con = db.open_store(db_path)
    try:
        return fn(con, *args)
    finally:
        con.close()


BASE_PLAYS = [
    playlog_html(title="Known", track=2, unixtime=2000, new_record=True),
    playlog_html(title="Known", track=1, unixtime=1900),
    playlog_html(title="Older", track=4, unixtime=1500),
]
BASE_SCORES = [score_entry_html(title="Known", achievement="99.0000%")]


@pytest.mark.light
def test_first_run_seeds_without_first_play_marks(db_path):
    plays = [playlog_html(title="Fresh", track=1, unixtime=1000, new_record=True)]
    client = FakeClient(_pages(100, plays, []))

    result = _coordinator(client, db_path).trigger_sync_if_needed()

    assert result == SyncResult.SEEDED
    row = _read(db_path, db.get_playlog, 1000)
    assert row.first_play is False
    assert row.credit_play_count == 100
    assert _read(db_path, db.get_cursor_int, CURSOR_TOTAL_PLAY_COUNT) == 100
    assert _read(db_path, db.get_cursor_int, CURSOR_RATING) == 15000


@pytest.mark.light
def test_unchanged_counter_skips_rescan_but_persists_cursor(db_path):
    client = FakeClient(_pages(100, BASE_PLAYS, BASE_SCORES, rating=15000))
    coordinator = _coordinator(client, db_path)
    coordinator.trigger_sync_if_needed()

    client.pages[PLAYER_DATA_URL] = player_data_html(total=100, rating=15010)
    client.calls.clear()

    assert coordinator.trigger_sync_if_needed() == SyncResult.SKIPPED
    assert client.calls == [PLAYER_DATA_URL]
    assert _read(db_path, db.get_cursor_int, CURSOR_RATING) == 15010


@pytest.mark.light
def test_double_rescan_is_idempotent(db_path):
    client = FakeClient(_pages(100, BASE_PLAYS, BASE_SCORES))
    coordinator = _coordinator(client, db_path)
    coordinator.trigger_sync_if_needed()
    before = _read(db_path, db.query_recent, 50)
    scores_before = _read(db_path, db.query_all_rated)

    # カウンタだけ進めて同じ内容を再取得させる
    client.pages[PLAYER_DATA_URL] = player_data_html(total=101)
    assert coordinator.trigger_sync_if_needed() == SyncResult.SYNCED

    assert _read(db_path, db.query_recent, 50) == before
    assert [(s.title, s.achievement_x10000) for s in _read(db_path, db.query_all_rated)] == [
        (s.title, s.achievement_x10000) for s in scores_before
    ]


@pytest.mark.light
def test_ledger_keeps_original_credit_play_count(db_path):
    client = FakeClient(_pages(100, BASE_PLAYS, BASE_SCORES))
    coordinator = _coordinator(client, db_path)
    coordinator.trigger_sync_if_needed()

    client.pages[PLAYER_DATA_URL] = player_data_html(total=101)
    client.pages[RECORD_URL] = record_page_html(
        [playlog_html(title="Next", track=1, unixtime=3000)] + BASE_PLAYS
    )
    coordinator.trigger_sync_if_needed()

    assert _read(db_path, db.get_playlog, 3000).credit_play_count == 101
    assert _read(db_path, db.get_playlog, 2000).credit_play_count == 100


@pytest.mark.light
def test_incremental_sync_marks_first_play_against_previous_scores(db_path):
    client = FakeClient(_pages(100, BASE_PLAYS, BASE_SCORES))
    notified = []
    coordinator = _coordinator(
        client,
        db_path,
        on_new_plays=lambda inserted, summary: notified.append((inserted, summary.total_play_count)),
    )
    coordinator.trigger_sync_if_needed()

    client.pages[PLAYER_DATA_URL] = player_data_html(total=101)
    client.pages[score_list_url(3)] = score_list_html(
        BASE_SCORES + [score_entry_html(title="Fresh", achievement="95.0000%")]
    )
    client.pages[RECORD_URL] = record_page_html(
        [
            playlog_html(title="Fresh", track=2, unixtime=3100, new_record=True),
            playlog_html(title="Known", track=1, unixtime=3000, new_record=True),
        ]
        + BASE_PLAYS
    )

    assert coordinator.trigger_sync_if_needed() == SyncResult.SYNCED
    assert _read(db_path, db.get_playlog, 3100).first_play is True
    assert _read(db_path, db.get_playlog, 3000).first_play is False
    assert notified == [(2, 101)]


@pytest.mark.light
def test_maintenance_window_skips_without_io(db_path):
    client = FakeClient(_pages(100, BASE_PLAYS, BASE_SCORES))
    client.maintenance = True

    assert _coordinator(client, db_path).trigger_sync_if_needed() == SyncResult.SKIPPED
    assert client.calls == []
    assert _read(db_path, db.get_cursor_int, CURSOR_TOTAL_PLAY_COUNT) is None


@pytest.mark.light
def test_maintenance_raised_mid_cycle_is_soft_skip(db_path):
    client = FakeClient(_pages(100, BASE_PLAYS, BASE_SCORES))
    original = client.fetch_html

    def fetch_html(url):
        if url == RECORD_URL:
            raise Maintenance("503")
        return original(url)

    client.fetch_html = fetch_html

    assert _coordinator(client, db_path).trigger_sync_if_needed() == SyncResult.SKIPPED
    assert _read(db_path, db.get_cursor_int, CURSOR_TOTAL_PLAY_COUNT) is None


@pytest.mark.light
def test_expired_session_logs_in_once_and_retries(db_path):
    client = FakeClient(_pages(100, BASE_PLAYS, BASE_SCORES))
    client.expire_next = 1

    assert _coordinator(client, db_path).trigger_sync_if_needed() == SyncResult.SEEDED
    assert client.login_calls == 1
    assert client.calls[:2] == [PLAYER_DATA_URL, PLAYER_DATA_URL]


@pytest.mark.light
def test_second_auth_failure_is_surfaced(db_path):
    client = FakeClient(_pages(100, BASE_PLAYS, BASE_SCORES))
    client.expire_next = 2

    with pytest.raises(AuthExpired):
        _coordinator(client, db_path).trigger_sync_if_needed()
    assert client.login_calls == 1


@pytest.mark.light
def test_recent_failure_keeps_committed_scores(db_path):
    client = FakeClient(_pages(100, BASE_PLAYS, BASE_SCORES))
    client.fail_urls.add(RECORD_URL)

    with pytest.raises(TransportError):
        _coordinator(client, db_path).trigger_sync_if_needed()

    assert [s.title for s in _read(db_path, db.query_all_rated)] == ["Known"]
    assert _read(db_path, db.count_playlogs) == 0
    assert _read(db_path, db.get_cursor_int, CURSOR_TOTAL_PLAY_COUNT) is None


@pytest.mark.light
def test_score_list_failure_leaves_previous_snapshot(db_path):
    client = FakeClient(_pages(100, BASE_PLAYS, BASE_SCORES))
    coordinator = _coordinator(client, db_path)
    coordinator.trigger_sync_if_needed()

    client.pages[PLAYER_DATA_URL] = player_data_html(total=101)
    client.pages[score_list_url(3)] = score_list_html([score_entry_html(title="Other")])
    client.fail_urls.add(score_list_url(4))

    with pytest.raises(TransportError):
        coordinator.trigger_sync_if_needed()

    assert [s.title for s in _read(db_path, db.query_all_rated)] == ["Known"]
    assert _read(db_path, db.get_cursor_int, CURSOR_TOTAL_PLAY_COUNT) == 100


@pytest.mark.light
def test_busy_lock_bails_out_without_waiting(db_path):
    client = FakeClient(_pages(100, BASE_PLAYS, BASE_SCORES))
    lock = threading.Lock()
    coordinator = SyncCoordinator(client, db_path, lock=lock)

    lock.acquire()
    try:
        assert coordinator.trigger_sync_if_needed(wait=False) == SyncResult.SKIPPED
    finally:
        lock.release()

    assert client.calls == []
    assert _read(db_path, db.get_cursor_int, CURSOR_TOTAL_PLAY_COUNT) is None


class _ObservedLock:
    """blocking な acquire に入ったことを通知するロック。"""

    def __init__(self):
        self.inner = threading.Lock()
        self.waiting = threading.Event()

    def acquire(self, blocking=True):
        if blocking:
            self.waiting.set()
        return self.inner.acquire(blocking)

    def release(self):
        self.inner.release()


@pytest.mark.light
def test_waiting_trigger_reads_summary_after_previous_run(db_path):
    client = FakeClient(_pages(100, BASE_PLAYS, BASE_SCORES))
    _coordinator(client, db_path).trigger_sync_if_needed()

    lock = _ObservedLock()
    coordinator = SyncCoordinator(client, db_path, clock=lambda: 1_700_000_000, lock=lock)
    results = []
    waiter = threading.Thread(target=lambda: results.append(coordinator.trigger_sync_if_needed(wait=True)))

    lock.inner.acquire()
    try:
        waiter.start()
        assert lock.waiting.wait(timeout=5)
        # 先行する同期がプレイ回数101まで取り込んだ状態を再現する
        client.pages[PLAYER_DATA_URL] = player_data_html(total=101)
        _read(db_path, db.set_cursor_int, CURSOR_TOTAL_PLAY_COUNT, 101, 1_700_000_000)
        client.calls.clear()
    finally:
        lock.inner.release()
    waiter.join(timeout=5)

    assert results == [SyncResult.SKIPPED]
    assert client.calls == [PLAYER_DATA_URL]
    assert _read(db_path, db.get_cursor_int, CURSOR_TOTAL_PLAY_COUNT) == 101


@pytest.mark.light
def test_lower_remote_total_never_rewinds_cursor(db_path):
    client = FakeClient(_pages(100, BASE_PLAYS, BASE_SCORES))
    coordinator = _coordinator(client, db_path)
    coordinator.trigger_sync_if_needed()

    client.pages[PLAYER_DATA_URL] = player_data_html(total=99, rating=14000)
    client.calls.clear()

    assert coordinator.trigger_sync_if_needed() == SyncResult.SKIPPED
    assert client.calls == [PLAYER_DATA_URL]
    assert _read(db_path, db.get_cursor_int, CURSOR_TOTAL_PLAY_COUNT) == 100
    assert _read(db_path, db.get_cursor_int, CURSOR_RATING) == 15000


@pytest.mark.light
def test_maintenance_starting_during_relogin_stops_retry(db_path):
    client = FakeClient(_pages(100, BASE_PLAYS, BASE_SCORES))
    client.expire_next = 1

    def login():
        client.login_calls += 1
        client.maintenance = True

    client.login = login

    assert _coordinator(client, db_path).trigger_sync_if_needed() == SyncResult.SKIPPED
    assert client.login_calls == 1
    assert client.calls == [PLAYER_DATA_URL]
    assert _read(db_path, db.get_cursor_int, CURSOR_TOTAL_PLAY_COUNT) is None
