import argparse
import logging
import sys
import traceback
from datetime import date

from record_collector.config import load_credentials, load_settings
from record_collector.discord_notify import (
    build_failure_message,
    make_new_plays_notifier,
    send_discord,
)
from record_collector.errors import RecordCollectorError
from record_collector.models import ChartType, DifficultyCategory
from record_collector.normalize import format_percent, x10000_to_percent
from record_collector.scheduler import PollingScheduler
from record_collector.scraper import MaimaiClient
from record_collector.service import RecordService
from record_collector.song_index import SongMetadataIndex
from record_collector.sync import SyncCoordinator

logger = logging.getLogger("record_collector")


def build_service(settings, with_remote: bool):
    """
    設定から RecordService と楽曲データ索引を組み立てる。

    with_remote=True の場合は環境変数の認証情報を読み込み、同期処理も構成する。

    Returns:
        (RecordService, SongMetadataIndex, Credentials または None)
    """
    song_index = SongMetadataIndex(settings.song_data_path, settings.new_versions)
    song_index.load()

    coordinator = None
    credentials = None
    if with_remote:
        credentials = load_credentials()
        client = MaimaiClient(
            credentials,
            http_config=settings.http,
            maintenance=settings.maintenance,
        )
        coordinator = SyncCoordinator(
            client,
            settings.database_path,
            on_new_plays=make_new_plays_notifier(credentials.discord_webhook_url),
        )

    service = RecordService(settings.database_path, coordinator=coordinator, song_index=song_index)
    return service, song_index, credentials


def _print_playlogs(records) -> None:
    for r in records:
        first = " [FIRST]" if r.first_play else ""
        new_record = " [NEW RECORD]" if r.achievement_new_record else ""
        achievement = format_percent(x10000_to_percent(r.achievement_x10000))
        print(
            f"{r.played_at or '-'} T{r.track or '-'} {r.title} [{r.chart_type} {r.diff_category or '-'} {r.level or '-'}] "
            f"{achievement} {r.score_rank or ''} {r.fc or ''} {r.sync or ''}{new_record}{first}"
        )


def cmd_sync(args, settings) -> int:
    service, _, credentials = build_service(settings, with_remote=True)
    try:
        result = service.trigger_sync_if_needed(wait=True)
    except RecordCollectorError:
        err = traceback.format_exc()
        print(err, file=sys.stderr)
        send_discord(credentials.discord_webhook_url, build_failure_message(err))
        raise
    print(result.value)
    return 0


def cmd_poll(args, settings) -> int:
    service, song_index, _ = build_service(settings, with_remote=True)
    scheduler = PollingScheduler(service.coordinator, settings.poll_interval_seconds, song_index)
    scheduler.start()
    try:
        while not scheduler.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("stopping scheduler")
    finally:
        scheduler.stop(timeout=5.0)
    return 0


def cmd_recent(args, settings) -> int:
    service, _, _ = build_service(settings, with_remote=False)
    _print_playlogs(service.query_recent(args.limit))
    return 0


def cmd_today(args, settings) -> int:
    service, _, _ = build_service(settings, with_remote=False)
    day = date.fromisoformat(args.day) if args.day else None
    _print_playlogs(service.query_today(day))
    return 0


def cmd_rating(args, settings) -> int:
    service, _, _ = build_service(settings, with_remote=False)
    rated = service.rating_report()

    for label, charts, subtotal in (
        ("New", rated.new_top, rated.new_total),
        ("Old", rated.old_top, rated.old_total),
    ):
        print(f"== {label} ({len(charts)}) : {subtotal}")
        for i, c in enumerate(charts, start=1):
            print(
                f"{i:2d}. {c.rating_points:3d} {c.title} [{c.chart_type} {c.diff_category} "
                f"{c.internal_level:.1f}] {format_percent(c.achievement_percent)} {c.fc or ''}"
            )

    print(f"total: {rated.total}")
    if rated.missing_data:
        print(f"missing song data: {rated.missing_data}")
    return 0


def cmd_chart(args, settings) -> int:
    service, _, _ = build_service(settings, with_remote=False)
    record = service.query_chart(args.title, args.chart_type, args.diff)
    if record is None:
        print("no record")
        return 1
    print(
        f"{record.title} [{record.chart_type} {record.diff_category} {record.level}] "
        f"{format_percent(record.achievement_percent)} {record.rank or ''} {record.fc or ''} "
        f"{record.sync or ''} dx={record.dx_score or '-'}/{record.dx_score_max or '-'}"
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="maimai DX record collector")
    parser.add_argument("--settings", default="settings.yaml", help="settings.yaml path")
    parser.add_argument("--log-level", default="INFO", help="logging level (DEBUG, INFO, ...)")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sync", help="run one sync cycle now")
    p.set_defaults(func=cmd_sync)

    p = sub.add_parser("poll", help="run periodic sync until interrupted")
    p.set_defaults(func=cmd_poll)

    p = sub.add_parser("recent", help="show recent plays")
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_recent)

    p = sub.add_parser("today", help="show plays of a game day (04:00 JST boundary)")
    p.add_argument("--day", default=None, help="YYYY-MM-DD (default: current game day)")
    p.set_defaults(func=cmd_today)

    p = sub.add_parser("rating", help="show rating breakdown")
    p.set_defaults(func=cmd_rating)

    p = sub.add_parser("chart", help="show best score of a chart")
    p.add_argument("title")
    p.add_argument("chart_type", choices=[c.value for c in ChartType])
    p.add_argument("diff", choices=[d.value for d in DifficultyCategory])
    p.set_defaults(func=cmd_chart)

    return parser


def main(argv=None) -> int:
    """
    maimai DX レコード収集のエントリポイント。

    環境変数の要件(sync / poll のみ):
    - SEGA_ID: SEGA ID
    - SEGA_PASSWORD: パスワード
    - DISCORD_WEBHOOK_URL: Discord通知先(オプション)
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = load_settings(args.settings)
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())
