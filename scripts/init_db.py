"""Create the identity tables once the database accepts connections.

Run from the repository root: ``python -m scripts.init_db``.
"""

from __future__ import annotations

import argparse
import time
from typing import Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

import models  # noqa: F401  registers every mapped table on Base.metadata
from core.logging import get_logger
from database import Base, engine

logger = get_logger(__name__)


def wait_for_database(*, attempts: int, delay: float) -> None:
    for attempt in range(1, attempts + 1):
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return
        except OperationalError as exc:
            if attempt == attempts:
                raise
            logger.warning("Database not ready (%d/%d), retrying in %.1fs: %s", attempt, attempts, delay, exc)
            time.sleep(delay)


def init_db(*, attempts: int = 7, delay: float = 3.0) -> Sequence[str]:
    wait_for_database(attempts=attempts, delay=delay)
    Base.metadata.create_all(bind=engine)
    tables = sorted(Base.metadata.tables)
    logger.info("Identity tables ensured: %s", ", ".join(tables))
    return tables


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--attempts", type=int, default=7)
    parser.add_argument("--delay", type=float, default=3.0, help="Seconds between connection attempts.")
    args = parser.parse_args(argv)
    init_db(attempts=max(1, args.attempts), delay=max(0.0, args.delay))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
