"""Database connectivity check: ``luckydraw-dbcheck``."""

import socket
import sys
from urllib.parse import urlparse

from sqlalchemy import func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .models import Activity, LotteryCode, LotteryRecord, Prize


def check_database(engine: Engine) -> dict[str, int]:
    """Run a trivial query, then count the core tables."""
    with engine.connect() as conn:
        conn.execute(text("select 1"))
        return {
            "activities": conn.scalar(select(func.count()).select_from(Activity)),
            "prizes": conn.scalar(select(func.count()).select_from(Prize)),
            "lottery_codes": conn.scalar(select(func.count()).select_from(LotteryCode)),
            "lottery_records": conn.scalar(select(func.count()).select_from(LotteryRecord)),
        }


def main() -> int:
    from .config import settings
    from .db import engine

    url = settings.database_url
    host = urlparse(url).hostname
    if host:
        # Show parsed host to catch hidden-character issues
        print("Parsed host:", host)
        try:
            socket.getaddrinfo(host, urlparse(url).port or 5432)
        except socket.gaierror as exc:
            print("DNS lookup failed:", exc)
            return 1
        print("DNS OK")

    try:
        counts = check_database(engine)
    except SQLAlchemyError as exc:
        print("Database check failed:", exc)
        return 1
    for table, count in counts.items():
        print(f"{table}_count =", count)
    return 0


if __name__ == "__main__":
    sys.exit(main())
