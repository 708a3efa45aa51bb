from __future__ import annotations

import argparse
from datetime import UTC, datetime, timedelta

from storybook_orchestrator.config.settings import get_settings
from storybook_orchestrator.storage.postgres import PostgresStoryStorage


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Delete old request logs, metrics and resolved error logs."
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default="",
        help="PostgreSQL connection URL (default: STORYBOOK_DATABASE_URL).",
    )
    parser.add_argument(
        "--request-log-days",
        type=int,
        default=30,
        help="Keep request logs newer than this many days (default: 30).",
    )
    parser.add_argument(
        "--metric-days",
        type=int,
        default=7,
        help="Keep metrics newer than this many days (default: 7).",
    )
    parser.add_argument(
        "--resolved-error-days",
        type=int,
        default=90,
        help="Keep resolved error logs newer than this many days (default: 90).",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    database_url = args.database_url or get_settings().database_url
    if not database_url:
        raise SystemExit("Set --database-url or STORYBOOK_DATABASE_URL.")

    now = datetime.now(UTC)
    storage = PostgresStoryStorage(database_url)
    removed = storage.purge_audit_logs(
        request_logs_before=now - timedelta(days=args.request_log_days),
        metrics_before=now - timedelta(days=args.metric_days),
        resolved_errors_before=now - timedelta(days=args.resolved_error_days),
    )
    print(f"Removed {removed} audit row(s).")


if __name__ == "__main__":
    main()
