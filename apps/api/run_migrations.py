#!/usr/bin/env python3
"""Container entrypoint step: wait for Postgres, then ``alembic upgrade head``.

Exits non-zero when the database never comes up or a migration fails, so
the API never starts against a schema it does not know.
"""
import os
import sys
import time

from dotenv import load_dotenv

load_dotenv()

ALEMBIC_INI = os.path.join(os.path.dirname(os.path.abspath(__file__)), "alembic.ini")


def wait_for_database(attempts: int = 30, pause_s: float = 1.0) -> bool:
    from core.database import check_db_connection

    for attempt in range(1, attempts + 1):
        if check_db_connection():
            return True
        print(f"[migrations] database not ready ({attempt}/{attempts})")
        time.sleep(pause_s)
    return False


def upgrade_to_head() -> None:
    from alembic import command
    from alembic.config import Config

    command.upgrade(Config(ALEMBIC_INI), "head")


def main() -> int:
    if not wait_for_database():
        print("[migrations] giving up: database unreachable")
        return 1
    try:
        upgrade_to_head()
    except Exception as e:
        print(f"[migrations] upgrade failed: {e}")
        return 1
    print("[migrations] schema at head")
    return 0


if __name__ == "__main__":
    sys.exit(main())
