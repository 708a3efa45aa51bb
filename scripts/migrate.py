from __future__ import annotations

import argparse

from storybook_orchestrator.config.settings import get_settings
from storybook_orchestrator.storage.postgres import PostgresStoryStorage


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create the storybook tables in PostgreSQL.")
    parser.add_argument(
        "--database-url",
        type=str,
        default="",
        help="PostgreSQL connection URL (default: STORYBOOK_DATABASE_URL).",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    database_url = args.database_url or get_settings().database_url
    if not database_url:
        raise SystemExit("Set --database-url or STORYBOOK_DATABASE_URL.")
    PostgresStoryStorage(database_url).migrate()
    print("Schema is up to date.")


if __name__ == "__main__":
    main()
